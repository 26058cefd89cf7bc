import logging
import socket
import threading
from typing import List, Optional

import paramiko

from tunnelchain.bridge import bridge
from tunnelchain.config import TunnelConfig
from tunnelchain.constants import SUPPORTED_NETWORKS
from tunnelchain.credentials import open_agent, resolve_authenticators, resolve_host_key_callback
from tunnelchain.errors import (
    ChainCancelledError,
    DialRemoteError,
    ForwardError,
    HopError,
    ListenRemoteError,
    NoAuthError,
    NoHopsError,
    TeardownError,
    TunnelClosedError,
    TunnelError,
    UnsupportedNetworkError,
)
from tunnelchain.hop import Hop, split_host_port
from tunnelchain.keepalive import KeepaliveDriver
from tunnelchain.listeners import LocalListener
from tunnelchain.session import HopSession, SessionFactory, ssh_handshake
from tunnelchain.tracked import ResourceTracker, TrackedConnection, TrackedListener

# Failures an SSH hop or channel can raise at any point.
_IO_ERRORS = (OSError, EOFError, paramiko.SSHException)


def _check_network(network: str) -> None:
    if network not in SUPPORTED_NETWORKS:
        raise UnsupportedNetworkError(network)


class Tunnel:
    """
    A chain of SSH hops that can dial out from, and listen on, its last hop.

    Nothing touches the network until the first dial, listen or forward, which
    builds the whole chain once. ``close`` tears everything down in order.
    """

    def __init__(self, config: TunnelConfig, session_factory: SessionFactory = ssh_handshake):
        if not config.hops:
            raise NoHopsError()
        if not config.signers and not config.use_agent:
            raise NoAuthError("no SSH auth methods configured: provide signers or enable the agent")
        self.config: TunnelConfig = config
        self.logger: logging.Logger = config.logger
        self._session_factory = session_factory
        self._lock = threading.RLock()
        self._close_guard = threading.Lock()
        self._closed = threading.Event()
        self._torn_down = threading.Event()
        self._teardown_error: Optional[TeardownError] = None
        self._sessions: List[HopSession] = []
        self._keepalives: List[KeepaliveDriver] = []
        self._agent: Optional[paramiko.Agent] = None
        self.tracker = ResourceTracker(self._lock, config.track_connections, self.logger)

    @property
    def hops(self) -> List[Hop]:
        return list(self.config.hops)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def connected(self) -> bool:
        with self._lock:
            return len(self._sessions) == len(self.config.hops)

    # Chain construction

    def _ensure_chain(self, cancel: Optional[threading.Event] = None) -> HopSession:
        """Builds the hop chain once and returns the last hop's session."""
        if self.closed:
            raise TunnelClosedError()
        with self._lock:
            if self.closed:
                raise TunnelClosedError()
            if self._sessions:
                return self._sessions[-1]
            if self.config.use_agent and self._agent is None:
                self._agent = open_agent(self.logger)
            authenticators = resolve_authenticators(self.config.signers, self._agent)
            sessions: List[HopSession] = []
            keepalives: List[KeepaliveDriver] = []
            try:
                for index, hop in enumerate(self.config.hops):
                    if cancel is not None and cancel.is_set():
                        raise ChainCancelledError()
                    session = self._connect_hop(index, hop, sessions, authenticators)
                    sessions.append(session)
                    if self.config.keepalive > 0:
                        keepalives.append(
                            KeepaliveDriver(session, self.config.keepalive, self.logger).start()
                        )
            except Exception:
                self._rollback(sessions, keepalives)
                raise
            self._sessions = sessions
            self._keepalives = keepalives
            self.logger.info(
                f"Tunnel established through {len(sessions)} hop(s): "
                + " -> ".join(str(h) for h in self.config.hops)
            )
            return self._sessions[-1]

    def _connect_hop(self, index: int, hop: Hop, sessions: List[HopSession], authenticators) -> HopSession:
        timeout = self.config.timeout_for(hop)
        try:
            host_key_callback = resolve_host_key_callback(
                hop, self.config.host_key_callback, self.config.known_hosts_path
            )
        except TunnelError as e:
            raise HopError(index, hop, "known_hosts", e) from e

        if index == 0:
            self.logger.debug(f"Dialing hop {index} {hop.host_port}...")
            try:
                underlay = self._dial_first_hop(hop, timeout)
            except OSError as e:
                raise HopError(index, hop, "dial", e) from e
        else:
            self.logger.debug(f"Dialing hop {index} {hop.host_port} via {sessions[-1].hop}...")
            try:
                underlay = sessions[-1].open_channel(hop.host, hop.port, timeout=timeout)
            except _IO_ERRORS as e:
                raise HopError(index, hop, "dial", e) from e

        try:
            session = self._session_factory(
                underlay, hop, authenticators, host_key_callback, timeout, self.logger
            )
        except Exception as e:
            try:
                underlay.close()
            except _IO_ERRORS:
                pass
            raise HopError(index, hop, "handshake", e) from e
        self.logger.info(f"Hop {index} {hop} connected.")
        return session

    def _dial_first_hop(self, hop: Hop, timeout: float):
        return socket.create_connection((hop.host, hop.port), timeout=timeout or None)

    def _rollback(self, sessions: List[HopSession], keepalives: List[KeepaliveDriver]) -> None:
        for driver in keepalives:
            driver.stop()
        for index in reversed(range(len(sessions))):
            try:
                sessions[index].close()
            except Exception as e:
                self.logger.warning(f"Rollback: close hop {index} ({sessions[index].hop}) failed: {e}")

    # Operations

    def track(self, conn) -> TrackedConnection:
        """Registers a caller-owned connection so close() also closes it."""
        with self._lock:
            if self.closed:
                conn.close()
                raise TunnelClosedError()
            return self.tracker.track(conn)

    def _track_listener(self, listener) -> TrackedListener:
        with self._lock:
            if self.closed:
                listener.close()
                raise TunnelClosedError()
            return self.tracker.track_listener(listener)

    def dial(self, network: str, address: str) -> TrackedConnection:
        """Connects to address from the last hop."""
        return self.dial_context(None, network, address)

    def dial_context(self, cancel: Optional[threading.Event], network: str, address: str) -> TrackedConnection:
        """Like dial, but a set cancel event aborts a chain build that has not finished."""
        _check_network(network)
        host, port = split_host_port(address)
        last = self._ensure_chain(cancel)
        try:
            channel = last.open_channel(host, port, timeout=self.config.per_hop_timeout or None)
        except _IO_ERRORS as e:
            raise DialRemoteError(network, address, e) from e
        return self.track(channel)

    def listen(self, network: str, address: str, cancel: Optional[threading.Event] = None) -> TrackedListener:
        """Listens on address at the last hop; connections come back through the chain.

        The hop's sshd must allow it (AllowTcpForwarding, and GatewayPorts for
        non-loopback binds). Accepted channels belong to the caller unless
        passed to track(). A cancel event closes the listener when set.
        """
        _check_network(network)
        host, port = split_host_port(address)
        last = self._ensure_chain()
        try:
            remote = last.listen(host, port)
        except _IO_ERRORS as e:
            raise ListenRemoteError(network, address, e) from e
        listener = self._track_listener(remote)
        if cancel is not None:
            threading.Thread(
                target=self._close_on_cancel, args=(listener, cancel), daemon=True
            ).start()
        return listener

    def _close_on_cancel(self, listener: TrackedListener, cancel: threading.Event) -> None:
        # Exits on its own once the listener is closed some other way.
        while not cancel.wait(0.5):
            if listener.closed:
                return
        try:
            listener.close()
        except _IO_ERRORS as e:
            self.logger.debug(f"Closing cancelled listener failed: {e}")

    def forward(self, local_address: str, remote_address: str) -> TrackedListener:
        """Listens on local_address and forwards each connection to remote_address."""
        split_host_port(remote_address)
        self._ensure_chain()
        try:
            local = LocalListener(local_address)
        except OSError as e:
            raise ForwardError(local_address, e) from e
        listener = self._track_listener(local)
        threading.Thread(
            target=self._serve_forward,
            args=(listener, remote_address),
            name=f"forward-{local}",
            daemon=True,
        ).start()
        self.logger.info(f"Forwarding {local} -> {remote_address}")
        return listener

    def _serve_forward(self, listener: TrackedListener, remote_address: str) -> None:
        # Runs until the local listener is closed.
        while True:
            try:
                conn = listener.accept()
            except OSError:
                return
            try:
                local = self.track(conn)
            except TunnelClosedError:
                return
            threading.Thread(
                target=self._handle_forward, args=(local, remote_address), daemon=True
            ).start()

    def _handle_forward(self, local: TrackedConnection, remote_address: str) -> None:
        try:
            remote = self.dial("tcp", remote_address)
        except TunnelError as e:
            self.logger.warning(f"Forward to {remote_address} failed: {e}")
            local.close()
            return
        bridge(local, remote, self.logger)

    # Teardown

    def close(self) -> None:
        """Closes listeners, tracked connections, then hops from the last one back.

        Only the first call tears down. Callers arriving while it runs wait
        for it and see the same outcome; later calls return None. Raises
        TeardownError once everything was closed if any step failed.
        """
        with self._close_guard:
            first = not self._closed.is_set()
            self._closed.set()
            in_progress = not first and not self._torn_down.is_set()
        if not first:
            if in_progress:
                self._torn_down.wait()
                if self._teardown_error is not None:
                    raise self._teardown_error
            return None
        errors: List[Exception] = []
        try:
            with self._lock:
                errors.extend(self.tracker.close_listeners())
                if self.config.track_connections:
                    self.tracker.close_connections()
                for driver in self._keepalives:
                    driver.stop()
                for index in reversed(range(len(self._sessions))):
                    try:
                        self._sessions[index].close()
                    except Exception as e:
                        errors.append(HopError(index, self._sessions[index].hop, "close", e))
                self._sessions = []
                self._keepalives = []
                if self._agent is not None:
                    self._agent.close()
                    self._agent = None
            if errors:
                self._teardown_error = TeardownError(errors)
        finally:
            with self._close_guard:
                self._torn_down.set()
        if self._teardown_error is not None:
            raise self._teardown_error
        self.logger.debug("Tunnel closed.")
        return None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def __repr__(self):
        if self.closed:
            state = "closed"
        elif self.connected:
            state = "connected"
        else:
            state = "idle"
        return f"Tunnel({' -> '.join(str(h) for h in self.config.hops)}, {state})"


def create(config: Optional[TunnelConfig] = None, session_factory: SessionFactory = ssh_handshake, **options) -> Tunnel:
    """Builds a Tunnel from a config or from keyword options (see TunnelConfig)."""
    if config is None:
        config = TunnelConfig(**options)
    elif options:
        config = TunnelConfig(**{**dict(config), **options})
    return Tunnel(config, session_factory=session_factory)
