class QDispatchError(Exception):
    """
    Brief: Base class for every error raised by the dispatch engine.

    Inputs:
    - message: description

    Outputs:
    - Exception instance
    """

    pass


class ConfigurationError(QDispatchError, ValueError):
    """
    Brief: Malformed allocation request or invalid engine option.

    Inputs:
    - message: description of the offending field or value

    Outputs:
    - Exception instance

    Raised synchronously by allocate()/set_option() and never retried.
    """

    pass


class ResolutionError(QDispatchError):
    """
    Brief: Hostname could not be resolved by any lookup strategy.

    Inputs:
    - message: description including the hostname

    Outputs:
    - Exception instance
    """

    pass


class SocketError(QDispatchError, OSError):
    """
    Brief: Socket creation/dial failure surfaced to the caller.

    Inputs:
    - message: description including the endpoint and OS error

    Outputs:
    - Exception instance

    Only raised for the first bind of a slot; later socket faults are
    recovered inside the send/receive loop.
    """

    pass
