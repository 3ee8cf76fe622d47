from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

UDP = "udp"
TCP = "tcp"
UNIX = "unix"
TRANSPORTS = (UDP, TCP, UNIX)


class SlotState(enum.Enum):
    UNSENT = "unsent"
    AWAITING_FIRST = "awaiting_first"
    AWAITING_MORE = "awaiting_more"
    EXPIRED = "expired"
    SATISFIED = "satisfied"


TERMINAL_STATES = frozenset({SlotState.EXPIRED, SlotState.SATISFIED})


@dataclass
class Slot:
    """Brief: One pending request/response exchange.

    Inputs:
      - slot_id: '<target>:<queue>:<transport>:<fam>:<address>:<port>'.
      - transport: 'udp', 'tcp' or 'unix'.
      - packets: Outbound payloads, sent in order on every attempt.
      - address/port/family: Resolved remote endpoint (address is the unix
        path and family None for unix sockets).
      - channel_id: UDP channel the slot is bound to.
      - retry: False sends once and never retransmits.
      - max_responses: Stop listening after this many packets; None waits for
        the inter-packet timeout instead.

    Outputs:
      - Slot instance mutated by the scheduler and receive loop.
    """

    slot_id: str
    transport: str
    packets: List[bytes]
    address: str
    port: Optional[int] = None
    family: Optional[int] = None
    channel_id: Optional[str] = None
    retry: bool = True
    max_responses: Optional[int] = None

    state: SlotState = SlotState.UNSENT
    attempts: int = 0
    first_send: Optional[float] = None
    last_send: float = 0.0
    last_receive: float = 0.0
    responses: List[bytes] = field(default_factory=list)
    first_response_latency: Optional[float] = None
    recreated: bool = False

    @property
    def is_udp(self) -> bool:
        return self.transport == UDP

    @property
    def response_count(self) -> int:
        return len(self.responses)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_satisfied(self) -> bool:
        return (
            self.max_responses is not None
            and self.response_count >= self.max_responses
        )

    def mark_sent(self, now: float) -> None:
        self.attempts += 1
        self.last_send = now
        if self.first_send is None:
            self.first_send = now
        if self.state is SlotState.UNSENT:
            self.state = SlotState.AWAITING_FIRST

    def record_response(self, data: bytes, now: float) -> None:
        """Brief: Append a received packet and advance the state machine.

        Inputs:
          - data: Packet payload.
          - now: Receive timestamp (monotonic seconds).

        Outputs:
          - None; state becomes SATISFIED once max_responses is reached,
            AWAITING_MORE otherwise.
        """
        self.responses.append(data)
        self.last_receive = now
        if self.first_response_latency is None:
            self.first_response_latency = now - (self.first_send or self.last_send)
        if self.is_satisfied:
            self.state = SlotState.SATISFIED
        elif not self.is_terminal:
            self.state = SlotState.AWAITING_MORE

    def finish_silent(self) -> None:
        """Brief: End the slot after its timeouts ran out.

        An unbounded slot that got data ends satisfied; everything else that
        has not reached a terminal state expires.
        """
        if self.is_terminal:
            return
        if self.max_responses is None and self.responses:
            self.state = SlotState.SATISFIED
        else:
            self.state = SlotState.EXPIRED

    def read_expired(self, now: float, settings) -> bool:
        """Brief: True once the slot waited longer than its applicable timeout.

        Inputs:
          - now: Current monotonic time.
          - settings: EngineSettings.

        Outputs:
          - bool: With no responses the send-based timeout applies
            (read_timeout after the first send, read_retry_timeout after a
            retry); after any response, read_got_timeout since the last one.
        """
        if not self.responses:
            timeout = settings.timeout_for_attempt(self.attempts)
            return (now - self.last_send) * 1000.0 >= timeout
        return (now - self.last_receive) * 1000.0 >= settings.read_got_timeout


class ExchangeRegistry:
    """
    Per-run bookkeeping for every allocated slot.

    Inputs:
      - None
    Outputs:
      - ExchangeRegistry with:
          slots:          slot id -> Slot (allocation order)
          pending_send:   slots the scheduler may still (re)send
          waiting_udp:    UDP slots the receive loop listens for
          waiting_stream: stream slots the receive loop listens for
    """

    def __init__(self) -> None:
        self.slots: Dict[str, Slot] = {}
        self.pending_send: Dict[str, Slot] = {}
        self.waiting_udp: Dict[str, Slot] = {}
        self.waiting_stream: Dict[str, Slot] = {}

    def __len__(self) -> int:
        return len(self.slots)

    def add(self, slot: Slot) -> None:
        self.slots[slot.slot_id] = slot
        self.pending_send[slot.slot_id] = slot

    def get(self, slot_id: str) -> Optional[Slot]:
        return self.slots.get(slot_id)

    def watch(self, slot: Slot) -> None:
        if slot.is_udp:
            self.waiting_udp[slot.slot_id] = slot
        else:
            self.waiting_stream[slot.slot_id] = slot

    def unwatch(self, slot_id: str) -> None:
        self.waiting_udp.pop(slot_id, None)
        self.waiting_stream.pop(slot_id, None)

    def is_waiting(self, slot_id: str) -> bool:
        return slot_id in self.waiting_udp or slot_id in self.waiting_stream

    def has_waiting(self) -> bool:
        return bool(self.waiting_udp or self.waiting_stream)

    def has_work(self) -> bool:
        return bool(self.pending_send) or self.has_waiting()

    def waiting_channels(self) -> Set[str]:
        return {
            s.channel_id for s in self.waiting_udp.values() if s.channel_id is not None
        }

    def clear(self) -> None:
        self.slots.clear()
        self.pending_send.clear()
        self.waiting_udp.clear()
        self.waiting_stream.clear()
