"""Authenticator and host key policy resolution for each hop."""

import io
import logging
import os
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import paramiko
from paramiko import ECDSAKey, Ed25519Key, RSAKey

from tunnelchain.constants import AGENT_SOCK_ENV, DEFAULT_SSH_PORT
from tunnelchain.errors import HostKeyError, KeyLoadError, NoAuthError
from tunnelchain.hop import Hop, split_host_port
from tunnelchain.logger import logger as default_logger

KEY_CLASSES = [RSAKey, ECDSAKey, Ed25519Key]

HostKeyCallback = Callable[[str, paramiko.PKey], None]


def _passphrase(passphrase) -> Optional[str]:
    if isinstance(passphrase, bytes):
        return passphrase.decode("utf-8")
    return passphrase or None


def load_key(pem, passphrase=None) -> paramiko.PKey:
    """Parses an in-memory PEM/OpenSSH private key."""
    if isinstance(pem, bytes):
        pem = pem.decode("utf-8")
    for key_class in KEY_CLASSES:
        try:
            key = key_class.from_private_key(io.StringIO(pem), password=_passphrase(passphrase))
            default_logger.debug(f"Loaded key using {key_class.__name__}")
            return key
        except (paramiko.SSHException, ValueError) as e:
            default_logger.debug(f"Failed to load with {key_class.__name__}: {e}")
            continue
    raise KeyLoadError("could not parse private key with any supported format")


def load_key_file(filename: str, passphrase=None) -> paramiko.PKey:
    """Loads a private key file, trying each supported key type in turn."""
    path = os.path.expanduser(str(filename))
    if not os.path.isfile(path):
        raise KeyLoadError(f"read key {path!r}: no such file")
    for key_class in KEY_CLASSES:
        try:
            key = key_class.from_private_key_file(filename=path, password=_passphrase(passphrase))
            default_logger.debug(f"Loaded {path} using {key_class.__name__}")
            return key
        except (paramiko.SSHException, ValueError) as e:
            default_logger.debug(f"Failed to load {path} with {key_class.__name__}: {e}")
            continue
    raise KeyLoadError(f"parse key {path!r}: unsupported or encrypted key")


def open_agent(logger: logging.Logger = default_logger) -> Optional[paramiko.Agent]:
    """Connects to the running SSH agent, if the environment points at one."""
    if not os.environ.get(AGENT_SOCK_ENV):
        logger.debug(f"{AGENT_SOCK_ENV} is not set, skipping agent auth.")
        return None
    try:
        return paramiko.Agent()
    except (paramiko.SSHException, OSError) as e:
        logger.warning(f"Unable to reach SSH agent: {e}")
        return None


def resolve_authenticators(
    signers: List[paramiko.PKey],
    agent: Optional[paramiko.Agent] = None,
) -> List[paramiko.PKey]:
    """Explicit signers first, then whatever keys the agent offers."""
    authenticators = list(signers)
    if agent is not None:
        authenticators.extend(agent.get_keys())
    if not authenticators:
        raise NoAuthError()
    return authenticators


def known_hosts_names(host_port: str) -> List[str]:
    host, port = split_host_port(host_port)
    if port == DEFAULT_SSH_PORT:
        return [host, f"[{host}]:{port}"]
    return [f"[{host}]:{port}"]


class KnownHostsPolicy:
    """Verifies host keys against an OpenSSH known_hosts file."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(str(path))
        self._host_keys = paramiko.HostKeys()
        try:
            self._host_keys.load(self.path)
        except (IOError, paramiko.SSHException) as e:
            raise HostKeyError(f"load known_hosts {self.path!r}: {e}") from e

    def __call__(self, host_port: str, key: paramiko.PKey) -> None:
        known = None
        for name in known_hosts_names(host_port):
            known = self._host_keys.lookup(name)
            if known is not None:
                break
        if known is None:
            raise HostKeyError(f"{host_port} is not in {self.path}")
        stored = known.get(key.get_name())
        if stored is None or stored != key:
            raise HostKeyError(
                f"host key mismatch for {host_port} ({key.get_name()}) in {self.path}"
            )

    def __repr__(self):
        return f"KnownHostsPolicy({self.path!r})"


def insecure_ignore_host_key(host_port: str, key: paramiko.PKey) -> None:
    """Accepts any host key. Only meant for tests and throwaway hosts."""
    return None


def default_known_hosts_path() -> str:
    try:
        home = Path.home()
    except (RuntimeError, KeyError) as e:
        home_env = os.environ.get("HOME")
        if not home_env:
            raise HostKeyError(f"resolve home dir for known_hosts: {e}") from e
        home = Path(home_env)
    return str(home / ".ssh" / "known_hosts")


def resolve_host_key_callback(
    hop: Hop,
    host_key_callback: Optional[HostKeyCallback] = None,
    known_hosts_path: Optional[str] = None,
) -> HostKeyCallback:
    """Picks the host key check for a hop: hop settings win over tunnel settings."""
    if hop.host_key_callback is not None:
        return hop.host_key_callback
    if hop.known_hosts_path:
        return KnownHostsPolicy(hop.known_hosts_path)
    if host_key_callback is not None:
        return host_key_callback
    return KnownHostsPolicy(known_hosts_path or default_known_hosts_path())


def signer_fingerprints(signers: List[paramiko.PKey]) -> List[Tuple[str, str]]:
    return [(key.get_name(), key.fingerprint) for key in signers]
