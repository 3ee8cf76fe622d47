"""
Brief: Global pytest configuration: src/ on sys.path, per-test 10s timeout,
loopback stub servers.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import socket
import sys
import threading
import time

import pytest

# Ensure 'src' is on sys.path so 'qdispatch' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


class _UDPEcho:
    """Threaded UDP stub replying `replies` times with prefix + request."""

    def __init__(self, replies=1, prefix=b""):
        self.replies = replies
        self.prefix = prefix
        self.received = []
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.settimeout(0.1)
        self.addr = self.sock.getsockname()
        self._stop = False
        self.thread = threading.Thread(target=self._loop, daemon=True)

    def start(self):
        self.thread.start()
        return self

    def _loop(self):
        while not self._stop:
            try:
                data, peer = self.sock.recvfrom(65535)
            except socket.timeout:
                continue
            except OSError:
                return
            self.received.append((data, peer))
            for _ in range(self.replies):
                try:
                    self.sock.sendto(self.prefix + data, peer)
                except OSError:
                    return

    def close(self):
        self._stop = True
        self.thread.join(timeout=1)
        self.sock.close()


class _StreamEcho:
    """Threaded stream stub (TCP or unix) echoing chunks; can hang up after one reply."""

    def __init__(self, family=socket.AF_INET, path=None, close_after_reply=False):
        self.close_after_reply = close_after_reply
        self.sock = socket.socket(family, socket.SOCK_STREAM)
        if family == socket.AF_UNIX:
            self.sock.bind(path)
        else:
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(16)
        self.sock.settimeout(0.1)
        self.addr = self.sock.getsockname()
        self.accepted = 0
        self._stop = False
        self.thread = threading.Thread(target=self._loop, daemon=True)

    def start(self):
        self.thread.start()
        return self

    def _loop(self):
        while not self._stop:
            try:
                conn, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.accepted += 1
            threading.Thread(target=self._conn, args=(conn,), daemon=True).start()

    def _conn(self, conn):
        conn.settimeout(0.2)
        with conn:
            while not self._stop:
                try:
                    data = conn.recv(65535)
                except socket.timeout:
                    continue
                except OSError:
                    return
                if not data:
                    return
                try:
                    conn.sendall(data)
                except OSError:
                    return
                if self.close_after_reply:
                    return

    def close(self):
        self._stop = True
        self.thread.join(timeout=1)
        self.sock.close()


@pytest.fixture
def udp_echo():
    """
    Brief: Factory fixture starting UDP echo stubs on 127.0.0.1.

    Inputs:
      - replies: number of datagrams sent back per request
      - prefix: bytes prepended to each reply

    Outputs:
      - callable returning a started _UDPEcho; all are closed on teardown
    """
    servers = []

    def _make(replies=1, prefix=b""):
        s = _UDPEcho(replies=replies, prefix=prefix).start()
        servers.append(s)
        return s

    yield _make
    for s in servers:
        s.close()


@pytest.fixture
def tcp_echo():
    """
    Brief: Factory fixture starting TCP echo stubs on 127.0.0.1.

    Inputs:
      - close_after_reply: hang up after echoing the first chunk

    Outputs:
      - callable returning a started _StreamEcho
    """
    servers = []

    def _make(close_after_reply=False):
        s = _StreamEcho(close_after_reply=close_after_reply).start()
        servers.append(s)
        time.sleep(0.01)
        return s

    yield _make
    for s in servers:
        s.close()


@pytest.fixture
def unix_echo(tmp_path):
    """
    Brief: Start a unix stream echo stub at a temporary path.

    Outputs:
      - started _StreamEcho; `.addr` is the socket path
    """
    if not hasattr(socket, "AF_UNIX"):
        pytest.skip("unix sockets not available")
    s = _StreamEcho(family=socket.AF_UNIX, path=str(tmp_path / "echo.sock")).start()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def closed_port():
    """
    Brief: A localhost TCP/UDP port with no listener.

    Outputs:
      - int port number
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port
