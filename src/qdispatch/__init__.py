"""qdispatch package"""

from .engine import DispatchEngine
from .errors import ConfigurationError, QDispatchError, ResolutionError, SocketError

__all__ = [
    "ConfigurationError",
    "DispatchEngine",
    "QDispatchError",
    "ResolutionError",
    "SocketError",
]
