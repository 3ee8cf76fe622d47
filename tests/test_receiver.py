"""
Brief: Tests for ReceiveLoop routing, timeouts and socket fault handling.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import time

import pytest

from qdispatch.config.settings import EngineSettings
from qdispatch.pool import SocketPool
from qdispatch.receiver import ReceiveLoop
from qdispatch.registry import ExchangeRegistry, Slot, SlotState


@pytest.fixture
def server():
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    s.bind(("127.0.0.1", 0))
    s.settimeout(1.0)
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def setup(server):
    settings = EngineSettings(usleep_udp=0, read_timeout=5000, read_got_timeout=5000)
    pool = SocketPool(settings)
    reg = ExchangeRegistry()
    host, port = server.getsockname()
    slot = Slot("a", "udp", [b"ping"], host, port, family=socket.AF_INET)
    slot.channel_id = pool.bind_udp("a", socket.AF_INET, host, port)
    reg.add(slot)
    pool.send_udp(slot.channel_id, host, port, slot.packets)
    slot.mark_sent(time.monotonic())
    reg.watch(slot)
    _, peer = server.recvfrom(100)
    try:
        yield pool, reg, slot, ReceiveLoop(pool, settings), peer
    finally:
        pool.close_all()


def _drain(loop, reg, budget_ms=200):
    start = time.monotonic()
    while loop.drain(start, budget_ms, reg):
        if not reg.has_waiting() or reg.get("a").responses:
            break


def test_reply_is_routed_to_waiting_slot(server, setup):
    pool, reg, slot, loop, peer = setup
    server.sendto(b"pong", peer)
    _drain(loop, reg)
    assert slot.responses == [b"pong"]
    assert "a" not in reg.pending_send
    assert slot.state is SlotState.AWAITING_MORE


def test_bounded_slot_stops_listening(server, setup):
    pool, reg, slot, loop, peer = setup
    slot.max_responses = 1
    server.sendto(b"pong", peer)
    server.sendto(b"extra", peer)
    _drain(loop, reg)
    assert slot.responses == [b"pong"]
    assert not reg.is_waiting("a")
    assert slot.state is SlotState.SATISFIED


def test_unknown_sender_is_discarded(setup):
    pool, reg, slot, loop, peer = setup
    stranger = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        stranger.sendto(b"spoof", peer)
        time.sleep(0.02)
        start = time.monotonic()
        assert loop.drain(start, 50, reg) is True
    finally:
        stranger.close()
    assert slot.responses == []
    assert reg.is_waiting("a")


def test_reply_for_timed_out_slot_is_discarded(server, setup):
    pool, reg, slot, loop, peer = setup
    # another waiting slot keeps the channel polled
    other = Slot("b", "udp", [b"x"], "127.0.0.1", 9, family=socket.AF_INET)
    other.channel_id = pool.bind_udp("b", socket.AF_INET, "127.0.0.1", 9)
    reg.add(other)
    reg.watch(other)
    reg.unwatch("a")
    assert other.channel_id == slot.channel_id

    server.sendto(b"late", peer)
    time.sleep(0.02)
    loop.drain(time.monotonic(), 50, reg)
    assert slot.responses == []


def test_drain_returns_false_once_budget_is_spent(setup):
    pool, reg, slot, loop, peer = setup
    assert loop.drain(time.monotonic() - 1.0, 10, reg) is False


def test_expire_overdue(setup):
    pool, reg, slot, loop, peer = setup
    now = slot.last_send + 10.0

    assert loop.expire_overdue(reg, now=now) == ["a"]
    assert not reg.is_waiting("a")
    # still retransmittable, so not terminal yet
    assert slot.state is SlotState.AWAITING_FIRST

    reg.watch(slot)
    reg.pending_send.clear()
    assert loop.expire_overdue(reg, now=now) == ["a"]
    assert slot.state is SlotState.EXPIRED


def test_fault_recreates_channel(setup, monkeypatch):
    pool, reg, slot, loop, peer = setup
    channel = pool.channels[slot.channel_id]
    monkeypatch.setattr(channel, "recv", lambda bufsize: (None, None))
    # make the channel readable
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.sendto(b"x", peer)
    finally:
        s.close()
    time.sleep(0.02)
    loop.drain(time.monotonic(), 20, reg)
    assert channel.recreated
    assert reg.is_waiting("a")


def test_fault_without_replacement_stops_listening(setup, monkeypatch):
    pool, reg, slot, loop, peer = setup
    channel = pool.channels[slot.channel_id]

    def boom():
        raise OSError("no sockets left")

    monkeypatch.setattr(channel, "_create", boom)
    loop._on_fault(reg, channel)
    assert not channel.is_open
    assert not reg.is_waiting("a")
