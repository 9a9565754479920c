"""Process entrypoint: resolve LISTEN_AT, bind it and serve until terminated."""

from __future__ import annotations

import argparse
import enum
import json
import logging
import signal
import sys
import threading
from typing import Any, Mapping, Optional

import uvicorn

from qrek import __version__
from qrek.config import BindAddress, ServiceSettings, load_settings
from qrek.errors import ConfigurationError, StartupError
from qrek.listener import DEFAULT_BACKLOG, open_listener, sockname_address
from qrek.main import create_app


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class BootstrapState(str, enum.Enum):
    NOT_STARTED = "not_started"
    LISTENING = "listening"
    TERMINATED = "terminated"


class ListenerBootstrap:
    """Owns the listening socket and the uvicorn server running on it.

    The bind address is injected already parsed; the bootstrap never reads the
    environment itself. ``start()`` blocks until the server stops and releases
    the socket on every exit path.
    """

    def __init__(
        self,
        address: BindAddress,
        app: Any = None,
        *,
        log_level: str = "info",
        backlog: int = DEFAULT_BACKLOG,
        graceful_shutdown_timeout: Optional[float] = None,
    ) -> None:
        self.address = address
        self.app = app if app is not None else create_app(ServiceSettings(listen_at=address))
        self.log_level = log_level
        self.backlog = backlog
        self.graceful_shutdown_timeout = graceful_shutdown_timeout
        self.state = BootstrapState.NOT_STARTED
        self.bound_address: Optional[BindAddress] = None
        self.server: Optional[uvicorn.Server] = None
        self._lock = threading.Lock()
        self._stop_requested = False

    @classmethod
    def from_settings(cls, settings: ServiceSettings, app: Any = None) -> "ListenerBootstrap":
        return cls(
            settings.listen_at,
            app if app is not None else create_app(settings),
            log_level=settings.log_level,
            backlog=settings.backlog,
            graceful_shutdown_timeout=settings.graceful_shutdown_timeout,
        )

    # Public API -----------------------------------------------------------
    def start(self) -> None:
        """Bind the configured address and serve until shutdown.

        Raises :class:`BindError` when the socket cannot be acquired and
        :class:`StartupError` when the server fails to come up on it.
        SIGINT (and SIGTERM once :func:`main` has mapped it) end in a normal
        return.
        """

        if self.state is not BootstrapState.NOT_STARTED:
            raise RuntimeError(f"Listener bootstrap is already {self.state.value}")

        interrupted = False
        try:
            with open_listener(self.address, self.backlog) as sock:
                self.bound_address = sockname_address(sock)
                with self._lock:
                    self.server = uvicorn.Server(self._server_config())
                    if self._stop_requested:
                        self.server.should_exit = True
                self.state = BootstrapState.LISTENING
                try:
                    self.server.run(sockets=[sock])
                except KeyboardInterrupt:
                    interrupted = True
                    logger.info(
                        "Shutdown requested",
                        extra={"event": "shutdown", "listen_at": str(self.bound_address)},
                    )
                except SystemExit as exc:
                    # uvicorn exits the process itself when lifespan startup fails.
                    raise StartupError(f"Server on {self.bound_address} failed to start") from exc
                if not (self.server.started or interrupted):
                    raise StartupError(f"Server on {self.bound_address} failed to start")
        finally:
            self.state = BootstrapState.TERMINATED

    def stop(self) -> None:
        """Request graceful shutdown; safe from any thread, before or after start."""

        with self._lock:
            self._stop_requested = True
            if self.server is not None:
                self.server.should_exit = True

    # Internal helpers ----------------------------------------------------
    def _server_config(self) -> uvicorn.Config:
        return uvicorn.Config(
            self.app,
            log_level=self.log_level,
            lifespan="on",
            backlog=self.backlog,
            timeout_graceful_shutdown=self.graceful_shutdown_timeout,
        )


def configure_logging(level: str) -> None:
    numeric = logging.DEBUG if level == "trace" else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric, format=LOG_FORMAT)
    logging.getLogger("qrek").setLevel(numeric)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qrek",
        description="Run the qrek service on the address given by LISTEN_AT",
    )
    parser.add_argument("--listen-at", help="Bind address <host>:<port> (overrides LISTEN_AT)")
    parser.add_argument("--log-level", help="Log level (overrides QREK_LOG_LEVEL)")
    parser.add_argument("--config", help="YAML settings file (overrides QREK_CONFIG)")
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate configuration, print it and exit without binding",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[list[str]] = None, environ: Optional[Mapping[str, str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        settings = load_settings(
            environ,
            config_path=args.config,
            overrides={"listen_at": args.listen_at, "log_level": args.log_level},
        )
    except ConfigurationError as exc:
        configure_logging("info")
        logger.error(
            "Invalid configuration: %s",
            exc,
            extra={"event": "startup_failed", "reason": "configuration"},
        )
        return exc.exit_code

    configure_logging(settings.log_level)

    if args.check:
        print(json.dumps(settings.describe(), indent=2))
        return 0

    bootstrap = ListenerBootstrap.from_settings(settings)
    handle_sigterm = threading.current_thread() is threading.main_thread()
    if handle_sigterm:
        # SIGTERM takes the same graceful path as Ctrl-C.
        previous_handler = signal.signal(signal.SIGTERM, signal.default_int_handler)
    try:
        bootstrap.start()
    except StartupError as exc:
        logger.error(
            "Startup failed: %s",
            exc,
            extra={
                "event": "startup_failed",
                "reason": type(exc).__name__,
                "listen_at": str(settings.listen_at),
            },
        )
        return exc.exit_code
    finally:
        if handle_sigterm:
            signal.signal(signal.SIGTERM, previous_handler or signal.SIG_DFL)

    logger.info("qrek stopped", extra={"event": "shutdown_complete"})
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
