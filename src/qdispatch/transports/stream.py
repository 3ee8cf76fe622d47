import logging
import socket
import time
from typing import List, Optional, Sequence, Tuple

from .base import TransportEndpoint

logger = logging.getLogger(__name__)

STREAM_PROTOCOLS = ("tcp", "unix")


class StreamConnection(TransportEndpoint):
    """
    A single non-blocking TCP or unix stream connection owned by one slot.

    Inputs:
      - slot_id: Owning slot.
      - proto: 'tcp' or 'unix'.
      - address: Literal IP (tcp) or filesystem path (unix).
      - port: TCP port; None for unix.
      - connect_timeout: Dial timeout in seconds.
    Outputs:
      - send(packets) -> number of packets fully written; recv() for reads.
    """

    kind = "stream"

    def __init__(
        self,
        slot_id: str,
        proto: str,
        address: str,
        port: Optional[int],
        connect_timeout: float,
    ):
        super().__init__(slot_id)
        if proto not in STREAM_PROTOCOLS:
            raise ValueError(f"unsupported stream protocol {proto!r}")
        self.proto = proto
        self.address = address
        self.port = port
        self.connect_timeout = connect_timeout

    def describe(self) -> str:
        if self.proto == "tcp":
            return f"tcp://{self.address}:{self.port}"
        return f"unix://{self.address}"

    def _create(self) -> socket.socket:
        if self.proto == "tcp":
            s = socket.create_connection(
                (self.address, int(self.port)), timeout=self.connect_timeout
            )
            s.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        else:
            s = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                s.settimeout(self.connect_timeout)
                s.connect(self.address)
            except OSError:
                s.close()
                raise
        s.setblocking(False)
        return s

    def send(self, packets: Sequence[bytes], pause_s: float = 0.0) -> int:
        """
        Brief: Write packets in order, stopping at the first failed write.

        Inputs:
          - packets: Payloads in wire order.
          - pause_s: Sleep between packets.
        Outputs:
          - int: Count of packets written completely.
        """
        if self._sock is None:
            return 0
        for i, packet in enumerate(packets):
            if not self._write(packet):
                return i
            if pause_s > 0:
                time.sleep(pause_s)
        return len(packets)

    def _write(self, packet: bytes) -> bool:
        view = memoryview(packet)
        while view:
            try:
                n = self._sock.send(view)
            except OSError as e:
                logger.debug("Stream write to %s failed: %s", self.describe(), e)
                return False
            if n <= 0:
                return False
            view = view[n:]
        return True

    def recv(self, bufsize: int) -> Tuple[Optional[bytes], Optional[str]]:
        try:
            data = self._sock.recv(bufsize)
        except OSError as e:
            logger.debug("Stream read from %s failed: %s", self.describe(), e)
            return None, None
        return data, None

    def slot_for(self, sender: Optional[str]) -> Optional[str]:
        return self.endpoint_id

    def bound_slots(self) -> List[str]:
        return [self.endpoint_id]
