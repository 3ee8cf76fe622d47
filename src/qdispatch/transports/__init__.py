"""Socket endpoints used by the dispatch engine."""

from .base import TransportEndpoint, poll
from .stream import STREAM_PROTOCOLS, StreamConnection
from .udp import UDPChannel, endpoint_key

__all__ = [
    "STREAM_PROTOCOLS",
    "StreamConnection",
    "TransportEndpoint",
    "UDPChannel",
    "endpoint_key",
    "poll",
]
