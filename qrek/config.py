"""Service configuration: bind address parsing and settings resolution."""

from __future__ import annotations

import ipaddress
import os
import re
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from qrek.errors import ConfigurationError


DEFAULT_LISTEN_AT = "0.0.0.0:8000"
CONFIG_PATH_ENV = "QREK_CONFIG"

# Settings field -> environment variable.
ENV_VARIABLES = {
    "listen_at": "LISTEN_AT",
    "log_level": "QREK_LOG_LEVEL",
    "backlog": "QREK_BACKLOG",
    "graceful_shutdown_timeout": "QREK_SHUTDOWN_TIMEOUT",
}

LOG_LEVELS = ("critical", "error", "warning", "info", "debug", "trace")

_ADDRESS_PATTERN = re.compile(
    r"(?:\[(?P<ipv6>[^\[\]]+)\]|(?P<host>[^:\[\]]+)):(?P<port>[0-9]{1,5})"
)
_HOSTNAME_LABEL = re.compile(r"(?!-)[A-Za-z0-9-]{1,63}(?<!-)")
_NUMERIC_HOST = re.compile(r"[0-9.]+")


class BindAddress(BaseModel):
    """Host/port pair the listening socket is bound to."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(ge=0, le=65535)

    @field_validator("host")
    @classmethod
    def validate_host(cls, value: str) -> str:
        if not value:
            raise ValueError("Host cannot be empty")
        if ":" in value:
            try:
                return str(ipaddress.IPv6Address(value))
            except ValueError as exc:
                raise ValueError(f"Invalid IPv6 address: {value}") from exc
        if _NUMERIC_HOST.fullmatch(value):
            try:
                return str(ipaddress.IPv4Address(value))
            except ValueError as exc:
                raise ValueError(f"Invalid IPv4 address: {value}") from exc
        labels = value[:-1].split(".") if value.endswith(".") else value.split(".")
        if len(value) > 253 or not all(_HOSTNAME_LABEL.fullmatch(label) for label in labels):
            raise ValueError(f"Invalid host name: {value}")
        return value

    @classmethod
    def parse(cls, value: str) -> "BindAddress":
        """Parse ``<host>:<port>`` or ``[<ipv6>]:<port>``.

        Raises :class:`ConfigurationError` for anything else; no part of a
        malformed value is ever defaulted.
        """

        match = _ADDRESS_PATTERN.fullmatch(value or "")
        if match is None:
            raise ConfigurationError(
                f"Invalid bind address {value!r}: expected <host>:<port>"
            )

        ipv6 = match.group("ipv6")
        if ipv6 is not None and ":" not in ipv6:
            raise ConfigurationError(
                f"Invalid bind address {value!r}: brackets are reserved for IPv6 literals"
            )

        try:
            return cls(host=ipv6 or match.group("host"), port=int(match.group("port")))
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid bind address {value!r}: {describe_validation_error(exc)}"
            ) from exc

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class ServiceSettings(BaseModel):
    """Resolved runtime settings, immutable once the process has started."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    listen_at: BindAddress = Field(default_factory=lambda: BindAddress.parse(DEFAULT_LISTEN_AT))
    log_level: str = "info"
    backlog: int = Field(default=2048, ge=1, le=65535)
    graceful_shutdown_timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("listen_at", mode="before")
    @classmethod
    def parse_listen_at(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return BindAddress.parse(value)
            except ConfigurationError as exc:
                raise ValueError(str(exc)) from exc
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, value: Any) -> str:
        level = str(value).strip().lower()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level {value!r}; expected one of {', '.join(LOG_LEVELS)}")
        return level

    def describe(self) -> dict[str, Any]:
        """Plain representation used for ``--check`` output and logging."""

        return {
            "listen_at": str(self.listen_at),
            "log_level": self.log_level,
            "backlog": self.backlog,
            "graceful_shutdown_timeout": self.graceful_shutdown_timeout,
        }


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"]) or "value"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


def read_config_file(path: Path | str) -> dict[str, Any]:
    """Load a YAML settings file whose top level must be a mapping."""

    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError(
            f"Cannot read configuration file {path}: {exc.strerror or exc}"
        ) from exc
    except UnicodeDecodeError as exc:
        raise ConfigurationError(f"Configuration file {path} is not valid UTF-8: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in configuration file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Configuration file {path} must contain a mapping at the top level"
        )
    return data


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    config_path: Path | str | None = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> ServiceSettings:
    """Resolve settings from defaults, YAML file, environment and overrides.

    Later sources win: overrides (CLI flags) beat the environment, which beats
    the YAML file named by ``config_path`` or ``QREK_CONFIG``. A variable that
    is present but empty is validated like any other value, so ``LISTEN_AT=""``
    fails instead of falling back to the default.
    """

    environ = os.environ if environ is None else environ
    values: dict[str, Any] = {}

    path = config_path or environ.get(CONFIG_PATH_ENV)
    if path:
        values.update(read_config_file(path))

    for field_name, variable in ENV_VARIABLES.items():
        if variable in environ:
            values[field_name] = environ[variable]

    if overrides:
        values.update({key: value for key, value in overrides.items() if value is not None})

    try:
        return ServiceSettings.model_validate(values)
    except ValidationError as exc:
        raise ConfigurationError(describe_validation_error(exc)) from exc
