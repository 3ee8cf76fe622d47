from __future__ import annotations

import logging
import time
from typing import List, Optional, Set

from .config.settings import EngineSettings
from .pool import SocketPool
from .registry import ExchangeRegistry
from .transports.base import TransportEndpoint, poll

logger = logging.getLogger(__name__)

# Hard cap (seconds) on a single readiness wait so expiring slots are noticed.
SELECT_MAX_WAIT = 0.001


class ReceiveLoop:
    """
    Readiness-driven receive side of a run.

    Inputs:
      - pool: SocketPool owning the handles.
      - settings: EngineSettings (read buffer size and timeouts).
    Outputs:
      - expire_overdue(registry) and drain(start, budget_ms, registry).

    Notes:
      - UDP is polled before streams in every drain() call.
      - Each phase keeps re-polling with a zero wait until nothing is ready,
        so a burst is consumed before control goes back to the caller.
    """

    def __init__(self, pool: SocketPool, settings: Optional[EngineSettings] = None):
        self.pool = pool
        self.settings = settings or EngineSettings()

    def expire_overdue(self, registry: ExchangeRegistry, now: Optional[float] = None) -> List[str]:
        """
        Brief: Stop listening for slots whose read timeout has elapsed.

        Inputs:
          - registry: ExchangeRegistry.
          - now: Optional monotonic timestamp (defaults to time.monotonic()).
        Outputs:
          - list[str]: Slot ids removed from the waiting sets.

        A slot that can still be retransmitted stays pending; otherwise it
        reaches its terminal state here.
        """
        now = time.monotonic() if now is None else now
        expired = []
        for waiting in (registry.waiting_udp, registry.waiting_stream):
            for slot_id, slot in list(waiting.items()):
                if not slot.read_expired(now, self.settings):
                    continue
                registry.unwatch(slot_id)
                expired.append(slot_id)
                if slot_id not in registry.pending_send:
                    slot.finish_silent()
                    logger.debug("Slot %s done after timeout (%s)", slot_id, slot.state.value)
        return expired

    def _endpoints(self, registry: ExchangeRegistry, udp: bool) -> List[TransportEndpoint]:
        if udp:
            table = self.pool.channels
            keys = registry.waiting_channels()
        else:
            table = self.pool.streams
            keys = list(registry.waiting_stream)
        return [table[k] for k in keys if k in table]

    def drain(self, start: float, budget_ms: float, registry: ExchangeRegistry) -> bool:
        """
        Brief: One receive pass over UDP then stream handles.

        Inputs:
          - start: Monotonic time the current send tick finished.
          - budget_ms: Receive budget for this tick in milliseconds.
          - registry: ExchangeRegistry.
        Outputs:
          - bool: False when the budget was already spent before the UDP
            phase, meaning the caller should go back to sending.
        """
        for udp in (True, False):
            remaining = budget_ms / 1000.0 - (time.monotonic() - start)
            if udp and remaining <= 0:
                return False

            endpoints = self._endpoints(registry, udp)
            if not endpoints:
                continue
            wait = max(0.0, min(remaining, SELECT_MAX_WAIT))
            readable, errored = poll(endpoints, wait)
            while readable or errored:
                self._dispatch(registry, readable, errored)
                endpoints = self._endpoints(registry, udp)
                if not endpoints:
                    break
                readable, errored = poll(endpoints, 0)
        return True

    def _dispatch(
        self,
        registry: ExchangeRegistry,
        readable: List[TransportEndpoint],
        errored: List[TransportEndpoint],
    ) -> None:
        now = time.monotonic()
        handled: Set[int] = set()
        for endpoint in readable:
            if not self._read(registry, endpoint, now):
                handled.add(id(endpoint))
        for endpoint in errored:
            if id(endpoint) in handled:
                continue
            logger.debug("Socket exception %s %s", endpoint.kind, endpoint.endpoint_id)
            self._on_fault(registry, endpoint)

    def _read(self, registry: ExchangeRegistry, endpoint: TransportEndpoint, now: float) -> bool:
        if not endpoint.is_open:
            return True
        data, sender = endpoint.recv(self.settings.socket_buffer)
        if data == b"" and self._answered(registry, endpoint):
            logger.debug("Peer closed %s after replying", endpoint.endpoint_id)
            endpoint.close()
            for slot_id in endpoint.bound_slots():
                registry.unwatch(slot_id)
            return False
        if not data:
            logger.debug("Socket exception %s %s", endpoint.kind, endpoint.endpoint_id)
            self._on_fault(registry, endpoint)
            return False

        slot_id = endpoint.slot_for(sender)
        if slot_id is None:
            logger.debug("Packet from unknown sender %s on %s", sender, endpoint.endpoint_id)
            return True
        slot = registry.get(slot_id)
        if slot is None or not registry.is_waiting(slot_id):
            logger.debug("Received timed out slot %s", slot_id)
            return True

        registry.pending_send.pop(slot_id, None)
        slot.record_response(data, now)
        if slot.is_satisfied:
            registry.unwatch(slot_id)
        return True

    def _answered(self, registry: ExchangeRegistry, endpoint: TransportEndpoint) -> bool:
        """Brief: True for a stream whose slot already got data and needs no resend."""
        if endpoint.kind != "stream":
            return False
        for slot_id in endpoint.bound_slots():
            slot = registry.get(slot_id)
            if slot is None or not slot.responses or slot_id in registry.pending_send:
                return False
        return True

    def _on_fault(self, registry: ExchangeRegistry, endpoint: TransportEndpoint) -> None:
        logger.debug("Recreating %s socket %s", endpoint.kind, endpoint.endpoint_id)
        if endpoint.open():
            return
        for slot_id in endpoint.bound_slots():
            registry.unwatch(slot_id)
