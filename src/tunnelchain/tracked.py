import logging
import socket
import threading
from typing import Callable, List, Optional, Set

import paramiko

from tunnelchain.errors import ListenerClosedError
from tunnelchain.logger import logger as default_logger


def close_write(conn) -> None:
    """Half-closes a socket or paramiko channel."""
    if isinstance(conn, paramiko.Channel):
        conn.shutdown_write()
    elif isinstance(conn, socket.socket):
        conn.shutdown(socket.SHUT_WR)
    else:
        conn.close_write()


class TrackedConnection:
    """Wraps a live stream so that closing it runs ``on_close`` exactly once."""

    def __init__(self, conn, on_close: Optional[Callable[["TrackedConnection"], None]] = None):
        self._conn = conn
        self._on_close = on_close
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def raw(self):
        return self._conn

    @property
    def closed(self) -> bool:
        return self._closed

    def recv(self, size: int) -> bytes:
        return self._conn.recv(size)

    def send(self, data: bytes) -> int:
        return self._conn.send(data)

    def sendall(self, data: bytes) -> None:
        self._conn.sendall(data)

    def close_write(self) -> None:
        close_write(self._conn)

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            if isinstance(self._conn, socket.socket):
                # Wakes up a recv blocked in another thread, close alone does not.
                try:
                    self._conn.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass
            self._conn.close()
        finally:
            if self._on_close is not None:
                self._on_close(self)

    def __getattr__(self, name):
        if name == "_conn":
            raise AttributeError(name)
        return getattr(self._conn, name)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        state = "closed" if self._closed else "open"
        return f"TrackedConnection({self._conn!r}, {state})"


class TrackedListener:
    """Wraps a local or remote listener registered with a tunnel."""

    def __init__(self, listener, on_close: Optional[Callable[["TrackedListener"], None]] = None):
        self._listener = listener
        self._on_close = on_close
        self._close_lock = threading.Lock()
        self._closed = False

    @property
    def raw(self):
        return self._listener

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def address(self) -> tuple:
        return self._listener.address

    def accept(self, timeout: Optional[float] = None):
        if self._closed:
            raise ListenerClosedError()
        return self._listener.accept(timeout=timeout)

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self._listener.close()
        finally:
            if self._on_close is not None:
                self._on_close(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        return f"TrackedListener({self._listener!r})"


class ResourceTracker:
    """Connections and listeners owned by one tunnel.

    Shares the tunnel's lock, which must be re-entrant: teardown holds it while
    closing tracked connections, and each close removes itself again.
    """

    def __init__(self, lock, track_connections: bool = True, logger: logging.Logger = default_logger):
        self._lock = lock
        self.track_connections = track_connections
        self.logger = logger
        self._connections: Set[TrackedConnection] = set()
        self._listeners: Set[TrackedListener] = set()

    @property
    def connections(self) -> List[TrackedConnection]:
        with self._lock:
            return list(self._connections)

    @property
    def listeners(self) -> List[TrackedListener]:
        with self._lock:
            return list(self._listeners)

    def track(self, conn) -> TrackedConnection:
        if isinstance(conn, TrackedConnection):
            return conn
        if not self.track_connections:
            return TrackedConnection(conn)
        tracked = TrackedConnection(conn, on_close=self._untrack)
        with self._lock:
            self._connections.add(tracked)
        return tracked

    def _untrack(self, conn: TrackedConnection) -> None:
        with self._lock:
            self._connections.discard(conn)

    def track_listener(self, listener) -> TrackedListener:
        tracked = TrackedListener(listener, on_close=self._untrack_listener)
        with self._lock:
            self._listeners.add(tracked)
        return tracked

    def _untrack_listener(self, listener: TrackedListener) -> None:
        with self._lock:
            self._listeners.discard(listener)

    def close_listeners(self) -> List[Exception]:
        """Closes every listener; returns failures other than double closes."""
        errors: List[Exception] = []
        with self._lock:
            for listener in list(self._listeners):
                try:
                    listener.close()
                except ListenerClosedError:
                    pass
                except Exception as e:
                    errors.append(e)
                self._listeners.discard(listener)
        return errors

    def close_connections(self) -> None:
        """Closes every tracked connection, ignoring failures."""
        with self._lock:
            for conn in list(self._connections):
                try:
                    conn.close()
                except Exception as e:
                    self.logger.debug(f"Ignoring error closing {conn!r}: {e}")
                self._connections.discard(conn)
