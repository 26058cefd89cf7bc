""" SSH session handle for one hop, backed by a paramiko Transport."""

import logging
import queue
import threading
from typing import Callable, Dict, List, Optional

import paramiko

from tunnelchain.constants import KEEPALIVE_REQUEST
from tunnelchain.errors import ListenerClosedError
from tunnelchain.hop import Hop, join_host_port
from tunnelchain.logger import logger as default_logger


class RemoteListener:
    """A tcpip-forward bound on the far side of a hop session.

    Forwarded channels are queued by the owning session and handed out by
    ``accept``.
    """

    _CLOSED = object()

    def __init__(self, session: "HopSession", host: str, port: int):
        self._session = session
        self.host = host
        self.port = port
        self._queue: queue.Queue = queue.Queue()
        self._closed = threading.Event()

    @property
    def address(self) -> tuple:
        return (self.host, self.port)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _deliver(self, channel: paramiko.Channel) -> None:
        if self.closed:
            channel.close()
            return
        self._queue.put(channel)

    def accept(self, timeout: Optional[float] = None) -> paramiko.Channel:
        """Waits for the next forwarded connection."""
        if self.closed:
            raise ListenerClosedError()
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError(f"no connection on {join_host_port(self.host, self.port)}")
        if item is self._CLOSED:
            self._queue.put(self._CLOSED)
            raise ListenerClosedError()
        return item

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._session._cancel_listener(self)
        finally:
            self._drain()

    def _drain(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is self._CLOSED:
                continue
            item.close()
        self._queue.put(self._CLOSED)

    def __repr__(self):
        state = "closed" if self.closed else "open"
        return f"RemoteListener({join_host_port(self.host, self.port)}, {state})"


class HopSession:
    """An authenticated SSH session to one hop."""

    def __init__(self, transport: paramiko.Transport, hop: Hop, logger: logging.Logger = default_logger):
        self._transport = transport
        self.hop = hop
        self.logger = logger
        self._lock = threading.Lock()
        self._listeners: Dict[int, RemoteListener] = {}

    @property
    def transport(self) -> paramiko.Transport:
        return self._transport

    @property
    def active(self) -> bool:
        return self._transport.is_active()

    def open_channel(self, host: str, port: int, timeout: Optional[float] = None) -> paramiko.Channel:
        """Opens a direct-tcpip channel from this hop to host:port."""
        return self._transport.open_channel(
            "direct-tcpip", (host, port), ("127.0.0.1", 0), timeout=timeout
        )

    def listen(self, host: str, port: int) -> RemoteListener:
        """Asks the hop to listen on host:port and route connections back here."""
        with self._lock:
            bound = self._transport.request_port_forward(host, port, handler=self._dispatch)
            listener = RemoteListener(self, host, bound)
            self._listeners[bound] = listener
        self.logger.debug(f"{self.hop} listening on {join_host_port(host, bound)}")
        return listener

    def _dispatch(self, channel: paramiko.Channel, origin: tuple, server: tuple) -> None:
        # paramiko keeps a single forward handler per transport, route by bound port.
        with self._lock:
            listener = self._listeners.get(server[1])
            if listener is None and len(self._listeners) == 1:
                listener = next(iter(self._listeners.values()))
        if listener is None:
            self.logger.debug(f"{self.hop} dropping forwarded channel for {server}")
            channel.close()
            return
        listener._deliver(channel)

    def _cancel_listener(self, listener: RemoteListener) -> None:
        with self._lock:
            if self._listeners.get(listener.port) is listener:
                del self._listeners[listener.port]
            remaining = len(self._listeners)
        if not self._transport.is_active():
            return
        if remaining:
            # cancel_port_forward also drops the transport's forward handler,
            # which the other listeners still depend on.
            self._transport.global_request(
                "cancel-tcpip-forward", (listener.host, listener.port), wait=True
            )
        else:
            self._transport.cancel_port_forward(listener.host, listener.port)

    def keepalive(self) -> bool:
        """Sends a keepalive request; True if the hop answered it."""
        response = self._transport.global_request(KEEPALIVE_REQUEST, wait=True)
        # A refusal still proves the peer is alive, paramiko reports it as None.
        return response is not None or self._transport.is_active()

    def close(self) -> None:
        with self._lock:
            listeners: List[RemoteListener] = list(self._listeners.values())
            self._listeners.clear()
        for listener in listeners:
            listener._closed.set()
            listener._drain()
        self._transport.close()

    def __repr__(self):
        state = "active" if self.active else "closed"
        return f"HopSession({self.hop}, {state})"


def _authenticate(transport: paramiko.Transport, user: str, authenticators: List[paramiko.PKey], logger: logging.Logger) -> None:
    last_error: Optional[Exception] = None
    for key in authenticators:
        try:
            transport.auth_publickey(user, key)
        except paramiko.AuthenticationException as e:
            logger.debug(f"Key {key.get_name()} rejected for {user}: {e}")
            last_error = e
            continue
        if transport.is_authenticated():
            return
    raise paramiko.AuthenticationException(
        f"all {len(authenticators)} authenticator(s) rejected for {user}: {last_error}"
    )


def ssh_handshake(
    sock,
    hop: Hop,
    authenticators: List[paramiko.PKey],
    host_key_callback: Callable,
    timeout: Optional[float] = None,
    logger: logging.Logger = default_logger,
) -> HopSession:
    """Runs the SSH client handshake over an established stream."""
    transport = paramiko.Transport(sock)
    if timeout:
        transport.banner_timeout = timeout
        transport.auth_timeout = timeout
        transport.handshake_timeout = timeout
    try:
        transport.start_client(timeout=timeout)
        host_key_callback(hop.host_port, transport.get_remote_server_key())
        _authenticate(transport, hop.user, authenticators, logger)
    except Exception:
        transport.close()
        raise
    return HopSession(transport, hop, logger)


SessionFactory = Callable[..., HopSession]
