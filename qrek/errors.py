"""Fatal startup errors raised while bringing the listener up."""

from __future__ import annotations

from typing import Optional


class StartupError(Exception):
    """The service cannot reach a servable state."""

    exit_code = 1


class ConfigurationError(StartupError):
    """A configuration value (usually the bind address) is malformed."""

    exit_code = 2


class BindError(StartupError):
    """The bind address is well-formed but the socket cannot be acquired."""

    exit_code = 3

    def __init__(self, address: str, reason: str, errno: Optional[int] = None) -> None:
        super().__init__(f"Cannot listen on {address}: {reason}")
        self.address = address
        self.reason = reason
        self.errno = errno
