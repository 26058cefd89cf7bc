"""Multi-hop SSH tunnels: dial out from, and listen on, the far end of a chain."""

from tunnelchain.config import TunnelConfig, load_profile
from tunnelchain.credentials import (
    KnownHostsPolicy,
    default_known_hosts_path,
    insecure_ignore_host_key,
    load_key,
    load_key_file,
)
from tunnelchain.errors import (
    ChainCancelledError,
    DialRemoteError,
    ForwardError,
    HopError,
    HostKeyError,
    InvalidHopError,
    KeyLoadError,
    ListenerClosedError,
    ListenRemoteError,
    NoAuthError,
    NoHopsError,
    TeardownError,
    TunnelClosedError,
    TunnelError,
    UnsupportedNetworkError,
)
from tunnelchain.hop import Hop, parse_hop, parse_hops
from tunnelchain.tunnel import Tunnel, create

__all__ = [
    "ChainCancelledError",
    "DialRemoteError",
    "ForwardError",
    "Hop",
    "HopError",
    "HostKeyError",
    "InvalidHopError",
    "KeyLoadError",
    "KnownHostsPolicy",
    "ListenRemoteError",
    "ListenerClosedError",
    "NoAuthError",
    "NoHopsError",
    "TeardownError",
    "Tunnel",
    "TunnelClosedError",
    "TunnelConfig",
    "TunnelError",
    "UnsupportedNetworkError",
    "create",
    "default_known_hosts_path",
    "insecure_ignore_host_key",
    "load_key",
    "load_key_file",
    "load_profile",
    "parse_hop",
    "parse_hops",
]
