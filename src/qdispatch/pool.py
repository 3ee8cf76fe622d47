from __future__ import annotations

import logging
from typing import Dict, Iterator, Optional, Sequence

from .config.settings import EngineSettings
from .resolver import family_tag
from .transports.base import TransportEndpoint, drain_stale
from .transports.stream import StreamConnection
from .transports.udp import UDPChannel, endpoint_key

logger = logging.getLogger(__name__)


class SocketPool:
    """
    Owner of every UDP channel and stream connection handle.

    Inputs:
      - settings: EngineSettings (connect timeout, pacing delays, buffer size).
    Outputs:
      - SocketPool with index-addressed tables:
          channels: channel id -> UDPChannel
          streams:  slot id -> StreamConnection

    Notes:
      - Handles survive across runs; only the per-run slot bindings and the
        recreated flags are reset by release_bindings().
      - Two slots for the same remote endpoint are never bound to the same
        channel: the n-th slot to a given endpoint gets channel '<fam>:<n>'.
    """

    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self.settings = settings or EngineSettings()
        self.channels: Dict[str, UDPChannel] = {}
        self.streams: Dict[str, StreamConnection] = {}
        # endpoint key -> {slot id: channel id} for the current run
        self._endpoint_slots: Dict[str, Dict[str, str]] = {}

    def endpoints(self) -> Iterator[TransportEndpoint]:
        yield from self.channels.values()
        yield from self.streams.values()

    def open_channel(self, channel_id: str, family: int, fatal: bool = False) -> bool:
        """
        Brief: Create (or recreate) the UDP socket for a channel.

        Inputs:
          - channel_id: Channel key.
          - family: socket.AF_INET or socket.AF_INET6.
          - fatal: Raise SocketError instead of returning False.
        Outputs:
          - bool: True when the channel has a live socket.
        """
        channel = self.channels.get(channel_id)
        if channel is None:
            channel = UDPChannel(channel_id, family)
            if not channel.open(fatal=fatal):
                return False
            self.channels[channel_id] = channel
            return True
        return channel.open(fatal=fatal)

    def open_stream_connection(
        self,
        slot_id: str,
        proto: str,
        address: str,
        port: Optional[int],
        fatal: bool = False,
    ) -> bool:
        """
        Brief: Dial (or redial) the stream connection owned by slot_id.

        Inputs:
          - slot_id: Owning slot.
          - proto: 'tcp' or 'unix'.
          - address: Literal IP or unix path.
          - port: TCP port or None.
          - fatal: Raise SocketError instead of returning False.
        Outputs:
          - bool: True when the connection is established.
        """
        conn = self.streams.get(slot_id)
        if conn is None:
            conn = StreamConnection(
                slot_id, proto, address, port, self.settings.connect_timeout
            )
            if not conn.open(fatal=fatal):
                return False
            self.streams[slot_id] = conn
            return True
        conn.connect_timeout = self.settings.connect_timeout
        return conn.open(fatal=fatal)

    def bind_udp(self, slot_id: str, family: int, address: str, port: int) -> str:
        """
        Brief: Bind a UDP slot to a channel, creating the socket if needed.

        Inputs:
          - slot_id: Slot being allocated.
          - family, address, port: Resolved remote endpoint.
        Outputs:
          - str: Channel id the slot sends and receives on.

        Raises:
          - SocketError: The channel did not exist and could not be created.
        """
        remote = endpoint_key(family, address, port)
        bound = self._endpoint_slots.setdefault(remote, {})
        channel_id = bound.get(slot_id)
        if channel_id is None:
            channel_id = f"{family_tag(family)}:{len(bound)}"
        if channel_id not in self.channels:
            self.open_channel(channel_id, family, fatal=True)
        self.channels[channel_id].remotes[remote] = slot_id
        bound[slot_id] = channel_id
        return channel_id

    def send_udp(
        self, channel_id: str, address: str, port: int, packets: Sequence[bytes]
    ) -> bool:
        """
        Brief: Send a slot's packets through its channel.

        Inputs:
          - channel_id: Bound channel.
          - address, port: Remote endpoint.
          - packets: Payloads in order.
        Outputs:
          - bool: True when the socket is alive (not that packets arrived).
        """
        channel = self.channels.get(channel_id)
        if channel is None:
            return False
        if not channel.is_open and not channel.open():
            return False
        channel.send(packets, address, port, self.settings.usleep_udp / 1_000_000)
        return True

    def send_stream(
        self, slot_id: str, packets: Sequence[bytes], retry: bool = False
    ) -> bool:
        """
        Brief: Write packets on a slot's connection; redial once on failure.

        Inputs:
          - slot_id: Owning slot.
          - packets: Payloads in order.
          - retry: Set on the single retry pass; a second failure gives up.
        Outputs:
          - bool: False when the connection could not be (re)established or
            the retry pass failed too.
        """
        conn = self.streams.get(slot_id)
        if conn is None:
            return False
        if not conn.is_open and not conn.open():
            return False

        written = conn.send(packets, self.settings.usleep_stream / 1_000_000)
        if written == len(packets):
            return True
        if retry:
            return False

        logger.debug("Recreating stream socket %s after write failure", slot_id)
        if not conn.open():
            return False
        return self.send_stream(slot_id, packets[written:], retry=True)

    def clean(self) -> None:
        """Brief: Drop data that arrived while no run was active."""
        bufsize = self.settings.socket_buffer
        for endpoint in list(self.endpoints()):
            drain_stale(endpoint, bufsize)

    def release_bindings(self) -> None:
        """Brief: Forget per-run slot bindings and recreated flags."""
        self._endpoint_slots.clear()
        for channel in self.channels.values():
            channel.remotes.clear()
            channel.recreated = False
        for conn in self.streams.values():
            conn.recreated = False

    def close_all(self) -> None:
        """Brief: Close every handle and empty the tables; idempotent."""
        for endpoint in list(self.endpoints()):
            endpoint.close()
        self.channels.clear()
        self.streams.clear()
        self._endpoint_slots.clear()
