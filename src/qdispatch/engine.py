from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from .collector import ResponseCollector, SlotResult
from .config.settings import EngineSettings, build_settings
from .errors import ConfigurationError
from .pool import SocketPool
from .receiver import ReceiveLoop
from .registry import TCP, TRANSPORTS, UDP, ExchangeRegistry, Slot
from .resolver import AddressResolver, family_tag
from .scheduler import SendScheduler

logger = logging.getLogger(__name__)


def _normalize_packets(raw: Any) -> List[bytes]:
    """Brief: Accept one payload or a sequence of payloads.

    Inputs:
      - raw: bytes/bytearray/memoryview or a list/tuple of them.

    Outputs:
      - list[bytes]: Non-empty list of payloads.

    Raises:
      - ConfigurationError: Missing, empty or non-bytes packets.
    """

    if raw is None:
        raise ConfigurationError("Missing 'packets' key in allocate()")
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = [raw]
    if not isinstance(raw, (list, tuple)) or not raw:
        raise ConfigurationError("'packets' must be bytes or a non-empty list of bytes")
    packets = []
    for p in raw:
        if not isinstance(p, (bytes, bytearray, memoryview)):
            raise ConfigurationError(f"Packet must be bytes, got {type(p).__name__}")
        packets.append(bytes(p))
    return packets


class DispatchEngine:
    """
    Dispatch many independent request/response exchanges in one run.

    Inputs:
      - settings: Optional EngineSettings.
      - **overrides: Individual tunables (validated ints), applied on top.
    Outputs:
      - DispatchEngine with allocate()/run()/shutdown().

    Notes:
      - Sockets and resolved addresses outlive a run; slots do not.
      - Single-threaded: only the readiness poll inside run() ever waits.

    Example:
      >>> engine = DispatchEngine(read_timeout=50, send_retry=0)
      >>> sid = engine.allocate("srv", "info", {
      ...     "transport": "udp", "address": "127.0.0.1", "port": 9999,
      ...     "packets": [b"ping"]})
      >>> engine.run()[sid].responses
      []
      >>> engine.shutdown()
    """

    def __init__(self, settings: Optional[EngineSettings] = None, **overrides: Any) -> None:
        self._settings = build_settings(settings, overrides)
        self._resolver = AddressResolver()
        self._pool = SocketPool(self._settings)
        self._registry = ExchangeRegistry()
        self._scheduler = SendScheduler(self._pool, self._settings)
        self._receiver = ReceiveLoop(self._pool, self._settings)
        self._collector = ResponseCollector()

    def __enter__(self) -> "DispatchEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def pool(self) -> SocketPool:
        return self._pool

    @property
    def registry(self) -> ExchangeRegistry:
        return self._registry

    @property
    def resolver(self) -> AddressResolver:
        return self._resolver

    def set_option(self, key: str, value: Any) -> None:
        """
        Brief: Change one tunable.

        Inputs:
          - key: Option name (see EngineSettings).
          - value: int value.
        Outputs:
          - None

        Raises:
          - ConfigurationError: Unknown key or invalid value.
        """
        self._apply_settings(build_settings(self._settings, {key: value}))

    def _apply_settings(self, settings: EngineSettings) -> None:
        self._settings = settings
        self._pool.settings = settings
        self._scheduler.settings = settings
        self._receiver.settings = settings

    def allocate(self, target_id: Any, queue_id: Any, options: Mapping[str, Any]) -> str:
        """
        Brief: Register one exchange for the next run.

        Inputs:
          - target_id: Caller's identity for the target (server id).
          - queue_id: Caller's identity for the request within the target.
          - options: Mapping with
              transport: 'udp' | 'tcp' | 'unix'
              address (alias addr) + port: for udp/tcp
              path: for unix
              packets: bytes or list of bytes, sent in order
              no_retry: optional bool, send only once
              response_count: optional positive int, stop after N packets
        Outputs:
          - str: Slot id used as the key in run() results.

        Raises:
          - ConfigurationError: Missing/invalid fields or unknown transport.
          - ResolutionError: Address could not be resolved.
          - SocketError: The slot's first socket could not be created.
        """
        if not isinstance(options, Mapping):
            raise ConfigurationError("allocate() options must be a mapping")

        transport = options.get("transport")
        if not transport:
            raise ConfigurationError("Missing 'transport' key in allocate()")
        transport = str(transport).lower()
        if transport not in TRANSPORTS:
            raise ConfigurationError(f"Unknown protocol {transport!r}")

        packets = _normalize_packets(options.get("packets"))

        no_retry = options.get("no_retry", False)
        if not isinstance(no_retry, bool):
            raise ConfigurationError("'no_retry' must be a bool")

        response_count = options.get("response_count")
        if response_count is not None and (
            isinstance(response_count, bool)
            or not isinstance(response_count, int)
            or response_count < 1
        ):
            raise ConfigurationError("'response_count' must be a positive int")

        if transport in (UDP, TCP):
            address = options.get("address", options.get("addr"))
            if not address or not isinstance(address, str):
                raise ConfigurationError("Missing valid 'address' key in allocate()")
            port = options.get("port")
            if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
                raise ConfigurationError("Missing valid 'port' key in allocate()")
            # hostnames with several addresses map to one resolved id
            family, address = self._resolver.resolve(address)
        else:
            address = options.get("path")
            if not address or not isinstance(address, str):
                raise ConfigurationError("Missing valid 'path' key in allocate()")
            family, port = None, None

        slot_id = ":".join(
            [
                str(target_id),
                str(queue_id),
                transport,
                family_tag(family),
                address,
                "" if port is None else str(port),
            ]
        )

        slot = Slot(
            slot_id=slot_id,
            transport=transport,
            packets=packets,
            address=address,
            port=port,
            family=family,
            retry=not no_retry,
            max_responses=response_count,
        )
        if transport == UDP:
            slot.channel_id = self._pool.bind_udp(slot_id, family, address, port)
        elif slot_id not in self._pool.streams:
            self._pool.open_stream_connection(
                slot_id, transport, address, port, fatal=True
            )

        self._registry.add(slot)
        logger.debug("Allocated slot %s", slot_id)
        return slot_id

    def run(self) -> Dict[str, SlotResult]:
        """
        Brief: Send every allocated slot and collect responses until done.

        Inputs:
          - None
        Outputs:
          - dict: slot id -> SlotResult for every allocated slot. Slots that
            never got a reply are present with empty responses.

        Per-run state is cleared afterwards; sockets stay pooled.
        """
        registry = self._registry
        if not registry.slots:
            self._pool.release_bindings()
            return {}

        try:
            self._pool.clean()
            while registry.has_work():
                if self._scheduler.tick(registry):
                    budget = self._settings.long_wait
                else:
                    budget = self._settings.loop_timeout
                start = time.monotonic()

                if not registry.has_waiting():
                    self._idle(budget)
                    continue

                while registry.has_waiting():
                    self._receiver.expire_overdue(registry)
                    if not self._receiver.drain(start, budget, registry):
                        break

            return self._collector.collect(registry, self._pool)
        finally:
            registry.clear()
            self._pool.release_bindings()

    def _idle(self, budget_ms: int) -> None:
        due = self._scheduler.next_due(self._registry)
        if due is None:
            return
        delay = min(due - time.monotonic(), budget_ms / 1000.0)
        if delay > 0:
            time.sleep(delay)

    def shutdown(self) -> None:
        """
        Brief: Close every pooled socket and drop cached state; idempotent.

        Inputs:
          - None
        Outputs:
          - None
        """
        self._pool.close_all()
        self._registry.clear()
        self._resolver.clear()
