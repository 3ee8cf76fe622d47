from __future__ import annotations

import logging
import selectors
import socket
import time
from typing import List, Optional, Sequence, Tuple

from ..errors import SocketError

logger = logging.getLogger(__name__)


class TransportEndpoint:
    """
    A pooled socket handle that can be opened, recreated in place and closed.

    Inputs:
      - endpoint_id: Channel id (UDP) or slot id (stream) owning the handle.
    Outputs:
      - open()/close()/recv()/fileno() plus routing helpers used by the
        receive loop.

    Subclasses implement _create() (returns a non-blocking socket), recv(),
    slot_for() and bound_slots().
    """

    kind = "endpoint"

    def __init__(self, endpoint_id: str) -> None:
        self.endpoint_id = endpoint_id
        self.recreated = False
        self._sock: Optional[socket.socket] = None

    def _create(self) -> socket.socket:  # pragma: no cover - abstract
        raise NotImplementedError

    @property
    def sock(self) -> Optional[socket.socket]:
        return self._sock

    @property
    def is_open(self) -> bool:
        return self._sock is not None

    def fileno(self) -> int:
        """Brief: File descriptor for the readiness selector; -1 when closed."""
        if self._sock is None:
            return -1
        return self._sock.fileno()

    def open(self, fatal: bool = False) -> bool:
        """
        Brief: Create the socket, replacing (and flagging) any live handle.

        Inputs:
          - fatal: Raise SocketError instead of returning False on failure.
        Outputs:
          - bool: True when a fresh socket is in place.
        """
        if self._sock is not None:
            self.recreated = True
            self.close()
        try:
            self._sock = self._create()
        except OSError as e:
            msg = f"Cannot create {self.kind} socket {self.endpoint_id}: {e}"
            if fatal:
                raise SocketError(msg) from e
            logger.debug(msg)
            return False
        return True

    def close(self) -> None:
        """Brief: Close the handle; never raises."""
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.close()
        except OSError as e:
            logger.debug("Error closing %s socket %s: %s", self.kind, self.endpoint_id, e)

    def recv(self, bufsize: int) -> Tuple[Optional[bytes], Optional[str]]:  # pragma: no cover - abstract
        raise NotImplementedError

    def slot_for(self, sender: Optional[str]) -> Optional[str]:  # pragma: no cover - abstract
        raise NotImplementedError

    def bound_slots(self) -> List[str]:  # pragma: no cover - abstract
        raise NotImplementedError


def poll(
    endpoints: Sequence[TransportEndpoint], timeout: float
) -> Tuple[List[TransportEndpoint], List[TransportEndpoint]]:
    """
    Brief: Wait up to timeout seconds for readable or errored endpoints.

    Inputs:
      - endpoints: Open endpoints to watch.
      - timeout: Maximum wait in seconds; 0 polls without blocking.
    Outputs:
      - (readable, errored): lists of endpoints. An endpoint whose handle the
        selector refuses (closed or invalid descriptor) is reported errored.
        Hangups and socket errors surface as readable and fail on read.

    Raises:
      - SocketError: The selector itself failed.

    Uses selectors.DefaultSelector (epoll/kqueue where available), so
    descriptors above FD_SETSIZE are watched like any other.
    """
    live = [ep for ep in endpoints if ep.is_open]
    if not live:
        if timeout > 0:
            time.sleep(timeout)
        return [], []

    errored: List[TransportEndpoint] = []
    with selectors.DefaultSelector() as selector:
        for ep in live:
            try:
                selector.register(ep, selectors.EVENT_READ)
            except KeyError:
                # same handle listed twice
                continue
            except (OSError, ValueError) as e:
                logger.debug("Cannot watch %s socket %s: %s", ep.kind, ep.endpoint_id, e)
                errored.append(ep)
        if not selector.get_map():
            return [], errored
        try:
            events = selector.select(max(0.0, timeout))
        except OSError as e:
            raise SocketError(f"Readiness poll failed: {e}") from e
    return [key.fileobj for key, _mask in events], errored


def drain_stale(endpoint: TransportEndpoint, bufsize: int) -> None:
    """
    Brief: Discard whatever an idle endpoint received between runs.

    Inputs:
      - endpoint: Endpoint to drain.
      - bufsize: Read size.
    Outputs:
      - None; endpoints reporting errors or EOF are recreated.
    """
    recreated = False
    while endpoint.is_open:
        readable, errored = poll([endpoint], 0)
        if not readable and not errored:
            return
        broken = bool(errored)
        if readable and not broken:
            data, _sender = endpoint.recv(bufsize)
            broken = not data
        if broken:
            if recreated:
                return
            logger.debug("Recreating %s socket %s", endpoint.kind, endpoint.endpoint_id)
            recreated = True
            endpoint.open()
