"""Exceptions raised by tunnelchain.

Callers can tell the configuration conditions (``NoHopsError``,
``NoAuthError``) and ``TunnelClosedError`` apart from generic I/O failures,
which always arrive wrapped in one of the operation errors below with the
underlying exception chained as ``__cause__``.
"""


class TunnelError(Exception):
    """Base class for every tunnelchain error."""


class NoHopsError(TunnelError):
    def __init__(self, message: str = "no hops configured"):
        super().__init__(message)


class NoAuthError(TunnelError):
    def __init__(self, message: str = "no SSH auth methods configured"):
        super().__init__(message)


class TunnelClosedError(TunnelError):
    def __init__(self, message: str = "tunnel closed"):
        super().__init__(message)


class InvalidHopError(TunnelError, ValueError):
    """A hop spec or address string could not be parsed."""


class UnsupportedNetworkError(TunnelError, ValueError):
    def __init__(self, network: str):
        self.network = network
        super().__init__(f"unsupported network {network!r}")


class KeyLoadError(TunnelError):
    """A private key could not be parsed with any supported key type."""


class HostKeyError(TunnelError):
    """A host key was rejected or no verification policy could be resolved."""


class ChainCancelledError(TunnelError):
    def __init__(self, message: str = "chain construction cancelled"):
        super().__init__(message)


class HopError(TunnelError):
    """A failure tied to one hop of the chain."""

    def __init__(self, index: int, hop, operation: str, cause: BaseException):
        self.index = index
        self.hop = hop
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} hop {index} ({hop}): {cause}")


class DialRemoteError(TunnelError):
    def __init__(self, network: str, address: str, cause: BaseException):
        self.network = network
        self.address = address
        super().__init__(f"dial remote {network} {address}: {cause}")


class ListenRemoteError(TunnelError):
    def __init__(self, network: str, address: str, cause: BaseException):
        self.network = network
        self.address = address
        super().__init__(f"listen remote {network} {address}: {cause}")


class ForwardError(TunnelError):
    def __init__(self, address: str, cause: BaseException):
        self.address = address
        super().__init__(f"listen {address}: {cause}")


class ListenerClosedError(TunnelError, OSError):
    def __init__(self, message: str = "listener closed"):
        super().__init__(message)


class TeardownError(TunnelError):
    """Raised by ``Tunnel.close`` after teardown finished with failures."""

    def __init__(self, errors: list):
        self.errors = list(errors)
        details = "; ".join(str(e) for e in self.errors)
        super().__init__(f"{len(self.errors)} error(s) during teardown: {details}")
