"""
Brief: Tests for SendScheduler caps, retry limits and due-time tracking.

Inputs:
  - None

Outputs:
  - None
"""

from qdispatch.config.settings import EngineSettings
from qdispatch.registry import ExchangeRegistry, Slot, SlotState
from qdispatch.scheduler import SendScheduler


class _FakePool:
    def __init__(self, ok=True):
        self.ok = ok
        self.sent = []

    def send_udp(self, channel_id, address, port, packets):
        self.sent.append(("udp", channel_id))
        return self.ok

    def send_stream(self, slot_id, packets):
        self.sent.append(("stream", slot_id))
        return self.ok


def _registry(n_udp=0, n_stream=0, **kw):
    reg = ExchangeRegistry()
    for i in range(n_udp):
        reg.add(Slot(f"u{i}", "udp", [b"x"], "127.0.0.1", 9, channel_id=f"4:{i}", **kw))
    for i in range(n_stream):
        reg.add(Slot(f"t{i}", "tcp", [b"x"], "127.0.0.1", 9, **kw))
    return reg


def test_caps_are_counted_per_transport_in_allocation_order():
    pool = _FakePool()
    settings = EngineSettings(send_once_udp=5, send_once_stream=2, read_timeout=60000)
    sched = SendScheduler(pool, settings)
    reg = _registry(n_udp=7, n_stream=3)

    assert sched.tick(reg) is False
    assert [x for k, x in pool.sent if k == "udp"] == ["4:0", "4:1", "4:2", "4:3", "4:4"]
    assert [x for k, x in pool.sent if k == "stream"] == ["t0", "t1"]
    assert set(reg.waiting_udp) == {"u0", "u1", "u2", "u3", "u4"}

    pool.sent.clear()
    assert sched.tick(reg) is True
    assert pool.sent == [("udp", "4:5"), ("udp", "4:6"), ("stream", "t2")]

    pool.sent.clear()
    assert sched.tick(reg) is True
    assert pool.sent == []


def test_attempts_never_exceed_send_retry_plus_one():
    pool = _FakePool()
    settings = EngineSettings(read_timeout=0, read_retry_timeout=0, send_retry=2)
    sched = SendScheduler(pool, settings)
    reg = _registry(n_udp=1)

    for _ in range(6):
        sched.tick(reg)
    slot = reg.get("u0")
    assert slot.attempts == 3
    assert len(pool.sent) == 3
    assert reg.pending_send == {}


def test_no_retry_slot_is_sent_once():
    pool = _FakePool()
    settings = EngineSettings(read_timeout=0, read_retry_timeout=0, send_retry=5)
    sched = SendScheduler(pool, settings)
    reg = _registry(n_udp=1, retry=False)

    sched.tick(reg)
    sched.tick(reg)
    assert len(pool.sent) == 1
    assert reg.get("u0").attempts == 1
    assert "u0" not in reg.pending_send
    assert reg.is_waiting("u0")


def test_failed_send_counts_but_is_not_watched():
    pool = _FakePool(ok=False)
    settings = EngineSettings(read_timeout=0, read_retry_timeout=0, send_retry=1)
    sched = SendScheduler(pool, settings)
    reg = _registry(n_stream=1)

    sched.tick(reg)
    slot = reg.get("t0")
    assert slot.attempts == 1
    assert not reg.has_waiting()

    sched.tick(reg)
    sched.tick(reg)
    assert slot.attempts == 2
    assert not reg.has_work()
    assert slot.state is SlotState.EXPIRED


def test_slot_not_due_until_read_timeout():
    pool = _FakePool()
    settings = EngineSettings(read_timeout=60000)
    sched = SendScheduler(pool, settings)
    reg = _registry(n_udp=1)

    sched.tick(reg)
    sched.tick(reg)
    assert len(pool.sent) == 1


def test_next_due():
    sched = SendScheduler(_FakePool(), EngineSettings(read_timeout=500, read_retry_timeout=100))
    reg = _registry(n_udp=2)
    assert sched.next_due(ExchangeRegistry()) is None
    assert sched.next_due(reg) == 0.0

    reg.get("u0").mark_sent(10.0)
    reg.get("u1").mark_sent(10.0)
    reg.get("u1").mark_sent(10.2)
    assert sched.next_due(reg) == 10.2 + 0.1
