import getpass
import re
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tunnelchain.constants import DEFAULT_SSH_PORT
from tunnelchain.errors import InvalidHopError

# [user@]host[:port], host may be a bracketed IPv6 literal.
_HOP_RE = re.compile(
    r"^(?:(?P<user>[^@]*)@)?(?:\[(?P<host6>[^\]]+)\]|(?P<host>[^:@\[\]]+))(?::(?P<port>[^:]*))?$"
)


def current_user() -> str:
    """Returns the name of the user running this process."""
    try:
        name = getpass.getuser()
    except (KeyError, OSError, ImportError) as e:
        raise InvalidHopError(f"failed to detect current user: {e}") from e
    if not name:
        raise InvalidHopError("failed to detect current user")
    return name


def _parse_port(value: str, spec: str, min_port: int = 1) -> int:
    if not value.isdigit():
        raise InvalidHopError(f"invalid port {value!r} in {spec!r}")
    port = int(value)
    if port < min_port or port > 65535:
        raise InvalidHopError(f"port {port} out of range in {spec!r}")
    return port


def split_host_port(address: str) -> tuple[str, int]:
    """Splits "host:port" (or "[v6]:port") into a host and an int port.

    Port 0 is allowed here, it asks for an ephemeral port when binding.
    """
    if address.startswith("["):
        host, sep, rest = address[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise InvalidHopError(f"missing port in address {address!r}")
        port = rest[1:]
    else:
        host, sep, port = address.rpartition(":")
        if not sep:
            raise InvalidHopError(f"missing port in address {address!r}")
        if ":" in host:
            raise InvalidHopError(f"too many colons in address {address!r}")
    return host, _parse_port(port, address, min_port=0)


def join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class Hop(BaseModel):
    """One SSH jump in the chain (user@host:port)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user: str = Field(..., alias="user")  # Required field
    host: str = Field(..., alias="host")  # Required field
    port: int = Field(DEFAULT_SSH_PORT, alias="port", ge=1, le=65535)
    timeout: Optional[float] = Field(None, alias="timeout", ge=0)
    host_key_callback: Optional[Callable] = Field(None, alias="host_key_callback")
    known_hosts_path: Optional[str] = Field(None, alias="known_hosts")

    @model_validator(mode="before")
    @classmethod
    def _default_user(cls, data):
        if isinstance(data, dict) and not data.get("user"):
            data = dict(data)
            data["user"] = current_user()
        return data

    @field_validator("user", "host")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @property
    def host_port(self) -> str:
        return join_host_port(self.host, self.port)

    def __str__(self) -> str:
        return f"{self.user}@{self.host_port}"


def parse_hop(spec: str) -> Hop:
    """Parses "[user@]host[:port]", defaulting to the current user and port 22."""
    match = _HOP_RE.match(spec.strip())
    if match is None:
        raise InvalidHopError(f"invalid hop spec {spec!r}")
    user = match.group("user")
    if user is None:
        try:
            user = current_user()
        except InvalidHopError as e:
            raise InvalidHopError(f"missing user in hop {spec!r} and {e}") from e
    elif not user:
        raise InvalidHopError(f"empty user in hop {spec!r}")
    host = match.group("host6") or match.group("host")
    port = match.group("port")
    return Hop(
        user=user,
        host=host,
        port=_parse_port(port, spec) if port is not None else DEFAULT_SSH_PORT,
    )


def parse_hops(specs: List[str]) -> List[Hop]:
    """Parses several hop specs in order. Empty strings are skipped."""
    return [parse_hop(spec) for spec in specs if spec]
