import socket
import sys
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock

import paramiko
import pytest

# Add the src directory to PYTHONPATH
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from tunnelchain.credentials import insecure_ignore_host_key  # noqa: E402
from tunnelchain.errors import ListenerClosedError  # noqa: E402
from tunnelchain.tunnel import Tunnel  # noqa: E402


@pytest.fixture(scope="session")
def client_key():
    """An RSA key shared by the whole test session."""
    return paramiko.RSAKey.generate(2048)


@pytest.fixture(scope="session")
def other_key():
    return paramiko.RSAKey.generate(2048)


def _echo(conn: socket.socket):
    with conn:
        while True:
            data = conn.recv(4096)
            if not data:
                break
            conn.sendall(data)
        conn.shutdown(socket.SHUT_WR)


@pytest.fixture
def echo_server():
    """A local TCP echo service; yields its "host:port"."""
    server = socket.create_server(("127.0.0.1", 0))
    server.settimeout(0.2)
    stop = threading.Event()

    def serve():
        while not stop.is_set():
            try:
                conn, _ = server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.settimeout(None)
            threading.Thread(target=_echo, args=(conn,), daemon=True).start()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    host, port = server.getsockname()[:2]
    yield f"{host}:{port}"
    stop.set()
    thread.join(2)
    server.close()


def recv_exactly(conn, size: int, timeout: float = 5.0) -> bytes:
    deadline = time.monotonic() + timeout
    data = b""
    while len(data) < size and time.monotonic() < deadline:
        chunk = conn.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def recv_all(conn) -> bytes:
    data = b""
    while True:
        chunk = conn.recv(4096)
        if not chunk:
            return data
        data += chunk


def wait_for(condition, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


class FakeRemoteListener:
    def __init__(self, host, port):
        self.host = host
        self.port = port or 40000
        self.closed = False

    @property
    def address(self):
        return (self.host, self.port)

    def accept(self, timeout=None):
        raise ListenerClosedError()

    def close(self):
        self.closed = True


class FakeSession:
    """Stands in for HopSession; records what the tunnel does with it."""

    def __init__(self, hop, events, close_error=None):
        self.hop = hop
        self.events = events
        self.close_error = close_error
        self.closed = False
        self.fail_channels = False
        self.keepalive_answers = None
        self.listeners = []

    def open_channel(self, host, port, timeout=None):
        self.events.append(("open_channel", str(self.hop), f"{host}:{port}"))
        if self.fail_channels or self.closed:
            raise paramiko.ChannelException(2, "Connect failed")
        if host in ("127.0.0.1", "localhost"):
            # Real sockets so forwarded data can actually flow in tests.
            conn = socket.create_connection((host, port), timeout=2)
            conn.settimeout(None)
            return conn
        return MagicMock(name=f"channel-{host}:{port}")

    def listen(self, host, port):
        self.events.append(("listen", str(self.hop), f"{host}:{port}"))
        listener = FakeRemoteListener(host, port)
        self.listeners.append(listener)
        return listener

    def keepalive(self):
        if self.keepalive_answers:
            return self.keepalive_answers.pop(0)
        return not self.closed

    def close(self):
        self.events.append(("close", str(self.hop)))
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeSessionFactory:
    """Replaces ssh_handshake. Can refuse a given host or slow handshakes down."""

    def __init__(self, fail_host=None, fail_count=None, delay=0.0, close_errors=None):
        self.fail_host = fail_host
        self.fail_count = fail_count
        self.delay = delay
        self.close_errors = close_errors or {}
        self.events = []
        self.handshakes = []
        self.sessions = []
        self.host_key_callbacks = []
        self._lock = threading.Lock()

    def _should_fail(self, hop) -> bool:
        if self.fail_host is None or hop.host != self.fail_host:
            return False
        if self.fail_count is None:
            return True
        if self.fail_count > 0:
            self.fail_count -= 1
            return True
        return False

    def __call__(self, sock, hop, authenticators, host_key_callback, timeout, logger):
        with self._lock:
            self.handshakes.append(hop)
            self.host_key_callbacks.append(host_key_callback)
            self.events.append(("handshake", str(hop)))
            fail = self._should_fail(hop)
        if self.delay:
            time.sleep(self.delay)
        if fail:
            raise paramiko.SSHException("handshake refused")
        session = FakeSession(hop, self.events, self.close_errors.get(hop.host))
        self.sessions.append(session)
        return session


@pytest.fixture
def fake_factory():
    return FakeSessionFactory()


@pytest.fixture
def patched_dial(monkeypatch):
    """Replaces the first-hop TCP dial with a mock socket."""
    mock_dial = MagicMock(side_effect=lambda hop, timeout: MagicMock(name="underlay"))
    monkeypatch.setattr(Tunnel, "_dial_first_hop", mock_dial)
    return mock_dial


@pytest.fixture
def tunnel_options(client_key):
    return {
        "hops": ["alice@bastion.example.com:22", "bob@inside.example.com:2222"],
        "signers": [client_key],
        "host_key_callback": insecure_ignore_host_key,
        "keepalive": 0,
    }
