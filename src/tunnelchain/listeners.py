import socket
import threading
import time
from typing import Optional

from tunnelchain.constants import ACCEPT_POLL_INTERVAL
from tunnelchain.errors import ListenerClosedError
from tunnelchain.hop import join_host_port, split_host_port


class LocalListener:
    """A local TCP listener whose blocking accept can be ended by close()."""

    def __init__(self, address: str):
        host, port = split_host_port(address)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        self._sock = socket.create_server((host, port), family=family)
        # Poll so that a close from another thread ends a pending accept.
        self._sock.settimeout(ACCEPT_POLL_INTERVAL)
        self._closed = threading.Event()
        self.address: tuple = self._sock.getsockname()[:2]

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def accept(self, timeout: Optional[float] = None) -> socket.socket:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self.closed:
                raise ListenerClosedError()
            try:
                conn, _ = self._sock.accept()
            except socket.timeout:
                if deadline is not None and time.monotonic() >= deadline:
                    raise TimeoutError(f"no connection on {self}")
                continue
            except OSError:
                if self.closed:
                    raise ListenerClosedError()
                raise
            conn.settimeout(None)
            return conn

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._sock.close()

    def __str__(self):
        return join_host_port(self.address[0], self.address[1])

    def __repr__(self):
        state = "closed" if self.closed else "open"
        return f"LocalListener({self}, {state})"
