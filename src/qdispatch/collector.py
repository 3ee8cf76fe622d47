from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .pool import SocketPool
from .registry import ExchangeRegistry, Slot


@dataclass
class SlotResult:
    """Brief: Final outcome of one slot after a run.

    Inputs:
      - responses: Received packets in arrival order.
      - recreated: True when the slot's socket was recreated during the run;
        responses may be incomplete.
      - first_response_latency: Seconds between first send and first packet.
      - response_count: len(responses).
      - state: 'satisfied' or 'expired'.
      - attempts: Number of sends issued.

    Outputs:
      - SlotResult instance.
    """

    responses: List[bytes] = field(default_factory=list)
    recreated: bool = False
    first_response_latency: Optional[float] = None
    response_count: int = 0
    state: str = "expired"
    attempts: int = 0

    @classmethod
    def from_slot(cls, slot: Slot) -> "SlotResult":
        return cls(
            responses=list(slot.responses),
            recreated=slot.recreated,
            first_response_latency=slot.first_response_latency,
            response_count=slot.response_count,
            state=slot.state.value,
            attempts=slot.attempts,
        )

    def to_dict(self, hex_payloads: bool = False) -> Dict[str, Any]:
        """Brief: JSON-friendly mapping; payloads as hex strings when asked."""
        return {
            "responses": [r.hex() for r in self.responses] if hex_payloads else list(self.responses),
            "recreated": self.recreated,
            "first_response_latency": self.first_response_latency,
            "response_count": self.response_count,
            "state": self.state,
            "attempts": self.attempts,
        }


class ResponseCollector:
    """Builds the per-slot result mapping returned by DispatchEngine.run()."""

    def recreated_slots(self, pool: SocketPool) -> Set[str]:
        flagged: Set[str] = set()
        for channel in pool.channels.values():
            if channel.recreated:
                flagged.update(channel.remotes.values())
        for slot_id, conn in pool.streams.items():
            if conn.recreated:
                flagged.add(slot_id)
        return flagged

    def collect(self, registry: ExchangeRegistry, pool: SocketPool) -> Dict[str, SlotResult]:
        flagged = self.recreated_slots(pool)
        results: Dict[str, SlotResult] = {}
        for slot_id, slot in registry.slots.items():
            slot.finish_silent()
            if slot_id in flagged:
                slot.recreated = True
            results[slot_id] = SlotResult.from_slot(slot)
        return results
