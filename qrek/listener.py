"""Scoped acquisition of the TCP listening socket."""

from __future__ import annotations

import logging
import os
import socket
from contextlib import contextmanager
from typing import Any, Iterator

from qrek.config import BindAddress
from qrek.errors import BindError


logger = logging.getLogger(__name__)

DEFAULT_BACKLOG = 2048


def _bind_error(address: BindAddress, exc: OSError) -> BindError:
    return BindError(str(address), exc.strerror or str(exc), exc.errno)


def resolve(address: BindAddress) -> tuple[int, int, int, Any]:
    """Return ``(family, type, proto, sockaddr)`` for a passive TCP socket.

    Host names resolving to several addresses bind the first IPv4 result, so
    ``localhost`` means ``127.0.0.1`` regardless of resolver ordering.
    """

    try:
        candidates = socket.getaddrinfo(
            address.host,
            address.port,
            type=socket.SOCK_STREAM,
            flags=socket.AI_PASSIVE,
        )
    except socket.gaierror as exc:
        raise _bind_error(address, exc) from exc

    chosen = next((info for info in candidates if info[0] == socket.AF_INET), candidates[0])
    family, socktype, proto, _, sockaddr = chosen
    return family, socktype, proto, sockaddr


def sockname_address(sock: socket.socket) -> BindAddress:
    """Address the socket is actually bound to (resolves port 0)."""

    host, port = sock.getsockname()[:2]
    return BindAddress(host=host, port=port)


@contextmanager
def open_listener(address: BindAddress, backlog: int = DEFAULT_BACKLOG) -> Iterator[socket.socket]:
    """Bind and listen on ``address``, closing the socket on every exit path.

    ``SO_REUSEADDR`` is only set on POSIX, where it does not allow binding a
    port another socket is already listening on. ``SO_REUSEPORT`` is never set.
    """

    family, socktype, proto, sockaddr = resolve(address)
    try:
        sock = socket.socket(family, socktype, proto)
    except OSError as exc:
        raise _bind_error(address, exc) from exc

    try:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(sockaddr)
        sock.listen(backlog)
    except OSError as exc:
        sock.close()
        logger.debug(
            "Listener bind failed",
            extra={"event": "listener_bind", "listen_at": str(address), "reason": exc.strerror},
        )
        raise _bind_error(address, exc) from exc

    bound = sockname_address(sock)
    logger.info("Listening on %s", bound, extra={"event": "listener_open", "listen_at": str(bound)})
    try:
        yield sock
    finally:
        sock.close()
        logger.info("Released listener on %s", bound, extra={"event": "listener_close", "listen_at": str(bound)})
