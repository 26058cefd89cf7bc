import logging
from os import path
from pathlib import Path
from typing import Any, Callable, List, Optional

import paramiko
import yaml
from deepmerge import always_merger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tunnelchain.constants import DEFAULT_HOP_TIMEOUT, DEFAULT_KEEPALIVE
from tunnelchain.credentials import load_key, load_key_file
from tunnelchain.hop import Hop, parse_hop
from tunnelchain.logger import logger as default_logger


class TunnelConfig(BaseModel):
    """Everything a Tunnel needs; immutable once built."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, arbitrary_types_allowed=True)

    hops: List[Hop] = Field([], alias="hops")
    signers: List[paramiko.PKey] = Field([], alias="signers")
    use_agent: bool = Field(False, alias="agent")
    known_hosts_path: Optional[str] = Field(None, alias="known_hosts")
    host_key_callback: Optional[Callable] = Field(None, alias="host_key_callback")
    per_hop_timeout: float = Field(DEFAULT_HOP_TIMEOUT, alias="timeout", ge=0)
    keepalive: float = Field(DEFAULT_KEEPALIVE, alias="keepalive", ge=0)
    track_connections: bool = Field(True, alias="track_connections")
    logger: logging.Logger = Field(default_logger, alias="logger")

    @field_validator("hops", mode="before")
    @classmethod
    def _parse_hops(cls, value):
        if value is None:
            return []
        hops = []
        for item in value:
            if isinstance(item, str):
                # Empty specs are skipped, same as parse_hops.
                if item:
                    hops.append(parse_hop(item))
            else:
                hops.append(item)
        return hops

    @field_validator("signers", mode="before")
    @classmethod
    def _load_signers(cls, value):
        if value is None:
            return []
        return [load_key(item) if isinstance(item, (bytes, str)) else item for item in value]

    def timeout_for(self, hop: Hop) -> float:
        """Returns the hop's own timeout, falling back to the tunnel's."""
        return hop.timeout or self.per_hop_timeout

    @classmethod
    def from_profile(cls, profile_path, **overrides) -> "TunnelConfig":
        """Builds a config from a YAML connection profile.

        Keyword overrides win over profile values; ``hops`` and ``signers``
        overrides are appended to the profile's.
        """
        data = load_profile(Path(profile_path))
        signers = [_keyfile_signer(entry) for entry in data.pop("keyfiles", None) or []]
        data["signers"] = signers + list(overrides.pop("signers", []))
        data["hops"] = list(data.get("hops") or []) + list(overrides.pop("hops", []))
        for name, value in overrides.items():
            # Profiles use the aliases, and an alias beats a field name in validation.
            field = cls.model_fields.get(name)
            data[field.alias if field is not None and field.alias else name] = value
        return cls(**data)


def _keyfile_signer(entry: Any) -> paramiko.PKey:
    if isinstance(entry, dict):
        return load_key_file(entry["path"], entry.get("passphrase"))
    return load_key_file(entry)


def _include_path(include: str, profile_dir: Path) -> str:
    if path.isabs(include):
        return include
    return path.join(str(profile_dir), include)


def load_profile(profile_path: Path, _seen: Optional[set] = None) -> dict:
    """Reads a YAML profile, deep-merging any ``include`` file beneath it."""
    seen = _seen or set()
    resolved = str(profile_path.resolve())
    if resolved in seen:
        raise ValueError(f"Profile {profile_path} includes itself.")
    seen.add(resolved)
    with profile_path.open() as pf:
        data = yaml.safe_load(pf) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Profile {profile_path} must be a mapping.")
    include = data.pop("include", None)
    if include:
        included = load_profile(Path(_include_path(include, profile_path.parent)), seen)
        data = always_merger.merge(included, data)
    return data
