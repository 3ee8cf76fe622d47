from __future__ import annotations

import logging
import time
from typing import Optional

from .config.settings import EngineSettings
from .pool import SocketPool
from .registry import ExchangeRegistry, Slot

logger = logging.getLogger(__name__)


class SendScheduler:
    """
    Issues bounded bursts of sends, one tick at a time.

    Inputs:
      - pool: SocketPool used for transmission.
      - settings: EngineSettings (per-tick caps, timeouts, send_retry).
    Outputs:
      - tick(registry) -> bool: True when every due slot went out this tick,
        False when a per-transport cap held some back.

    Notes:
      - Slots are visited in allocation order, so earlier slots win when a
        cap is reached. UDP and stream caps are counted independently.
    """

    def __init__(self, pool: SocketPool, settings: Optional[EngineSettings] = None):
        self.pool = pool
        self.settings = settings or EngineSettings()

    def _due(self, slot: Slot, now: float) -> bool:
        if slot.attempts == 0:
            return True
        elapsed_ms = (now - slot.last_send) * 1000.0
        return elapsed_ms >= self.settings.timeout_for_attempt(slot.attempts)

    def tick(self, registry: ExchangeRegistry) -> bool:
        """
        Brief: Send every due slot, up to the per-tick caps.

        Inputs:
          - registry: ExchangeRegistry for the current run.
        Outputs:
          - bool: False if any due slot was held back by a cap.
        """
        s = self.settings
        sent_udp = 0
        sent_stream = 0
        drained = True

        for slot in list(registry.pending_send.values()):
            now = time.monotonic()
            if not self._due(slot, now):
                continue
            if slot.attempts > s.send_retry:
                logger.debug("Packet timed out %s", slot.slot_id)
                registry.pending_send.pop(slot.slot_id, None)
                if not registry.is_waiting(slot.slot_id):
                    slot.finish_silent()
                continue

            if slot.is_udp:
                capped = sent_udp >= s.send_once_udp
            else:
                capped = sent_stream >= s.send_once_stream
            if capped:
                drained = False
                continue

            if not slot.retry:
                registry.pending_send.pop(slot.slot_id, None)

            if slot.is_udp:
                ok = self.pool.send_udp(
                    slot.channel_id, slot.address, slot.port, slot.packets
                )
            else:
                ok = self.pool.send_stream(slot.slot_id, slot.packets)
            slot.mark_sent(now)

            if not ok:
                # nothing to read on a dead socket; attempt still counts
                logger.debug("Send failed for %s", slot.slot_id)
                continue

            if slot.is_udp:
                sent_udp += 1
            else:
                sent_stream += 1
            registry.watch(slot)

        return drained

    def next_due(self, registry: ExchangeRegistry) -> Optional[float]:
        """
        Brief: Earliest monotonic time at which a pending slot becomes due.

        Inputs:
          - registry: ExchangeRegistry.
        Outputs:
          - float or None when nothing is pending.
        """
        due = None
        for slot in registry.pending_send.values():
            if slot.attempts == 0:
                at = 0.0
            else:
                at = slot.last_send + self.settings.timeout_for_attempt(slot.attempts) / 1000.0
            if due is None or at < due:
                due = at
        return due
