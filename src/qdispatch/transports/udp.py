import logging
import socket
import time
from typing import Dict, List, Optional, Sequence, Tuple

from ..resolver import canonical_address, family_tag
from .base import TransportEndpoint

logger = logging.getLogger(__name__)


def endpoint_key(family: int, address: str, port: int) -> str:
    """
    Brief: Key identifying a remote UDP endpoint, e.g. '4:127.0.0.1:27015'.

    Inputs:
    - family: socket.AF_INET or socket.AF_INET6
    - address: canonical literal address (see resolver.canonical_address)
    - port: remote port

    Outputs:
    - str key
    """
    return f"{family_tag(family)}:{address}:{int(port)}"


class UDPChannel(TransportEndpoint):
    """
    Brief: Shared non-blocking UDP socket multiplexing slots to distinct remotes.

    Inputs:
    - channel_id: pool key such as '4:0'
    - family: address family the socket is created for

    Outputs:
    - UDPChannel; `remotes` maps endpoint_key -> slot id for datagrams
      arriving on this socket.
    """

    kind = "udp"

    def __init__(self, channel_id: str, family: int) -> None:
        super().__init__(channel_id)
        self.family = family
        self.remotes: Dict[str, str] = {}

    def _create(self) -> socket.socket:
        s = socket.socket(self.family, socket.SOCK_DGRAM)
        s.setblocking(False)
        return s

    def send(
        self, packets: Sequence[bytes], address: str, port: int, pause_s: float = 0.0
    ) -> None:
        """
        Brief: sendto() every packet in order; failures are only logged.

        Inputs:
        - packets: payloads in wire order
        - address, port: remote endpoint
        - pause_s: sleep between packets

        Outputs:
        - None
        """
        for packet in packets:
            try:
                self._sock.sendto(packet, (address, int(port)))
            except OSError as e:
                logger.debug("UDP send on %s to %s:%s failed: %s", self.endpoint_id, address, port, e)
            if pause_s > 0:
                time.sleep(pause_s)

    def recv(self, bufsize: int) -> Tuple[Optional[bytes], Optional[str]]:
        try:
            data, addr = self._sock.recvfrom(bufsize)
        except OSError as e:
            logger.debug("UDP recv on %s failed: %s", self.endpoint_id, e)
            return None, None
        host = canonical_address(str(addr[0]).split("%", 1)[0])
        return data, endpoint_key(self.family, host, addr[1])

    def slot_for(self, sender: Optional[str]) -> Optional[str]:
        if sender is None:
            return None
        return self.remotes.get(sender)

    def bound_slots(self) -> List[str]:
        return list(self.remotes.values())
