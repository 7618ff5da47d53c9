"""Bind, export and re-import listening sockets across a restart.

A listener crosses the process boundary in two halves: the descriptor itself
is inherited by the child at spawn time, and a small :class:`ListenerRecord`
describing it is sent over the control channel.
"""

from __future__ import annotations

import os
import re
import socket
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import msgspec

from .errors import ReconstructionFailed, UnsupportedTransport
from .logging import get_logger

logger = get_logger(__name__)

Transport = Literal["tcp", "unix"]

_IPV6_RE = re.compile(r"^\[(?P<host>[^\]]*)\]:(?P<port>\d+)$")


class ListenerRecord(msgspec.Struct, frozen=True):
    """Wire description of a listener handed to a restarted child."""

    addr: str
    fd: int
    filename: str

    @property
    def transport(self) -> str:
        return self.filename.partition(":")[0]


@dataclass(frozen=True, slots=True)
class TCPAddress:
    host: str
    port: int

    @property
    def family(self) -> socket.AddressFamily:
        return socket.AF_INET6 if ":" in self.host else socket.AF_INET

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class UnixAddress:
    path: str

    def __str__(self) -> str:
        return f"unix:{self.path}"


Address = TCPAddress | UnixAddress


def parse_address(addr: str) -> Address:
    """Parse ``":8000"``, ``"host:port"``, ``"[::1]:port"`` or ``"unix:/path"``."""
    addr = addr.strip()
    if addr.startswith("unix:"):
        path = addr[len("unix:"):]
        if not path:
            raise ValueError("unix address needs a socket path")
        return UnixAddress(path)

    match = _IPV6_RE.match(addr)
    if match:
        host, port_s = match["host"], match["port"]
    else:
        host, sep, port_s = addr.rpartition(":")
        if not sep:
            raise ValueError(f"address {addr!r} is missing a port")
        if ":" in host:
            raise ValueError(f"IPv6 address {addr!r} must be bracketed")
    try:
        port = int(port_s)
    except ValueError:
        raise ValueError(f"invalid port in address {addr!r}") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in address {addr!r}")
    return TCPAddress(host, port)


def bind_listener(addr: str | Address, *, backlog: int = socket.SOMAXCONN) -> socket.socket:
    """Create a listening stream socket bound to *addr*."""
    address = parse_address(addr) if isinstance(addr, str) else addr
    match address:
        case TCPAddress(host=host, port=port):
            sock = socket.create_server(
                (host, port), family=address.family, backlog=backlog
            )
        case UnixAddress(path=path):
            _unlink_stale_socket(Path(path))
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            try:
                sock.bind(path)
                sock.listen(backlog)
            except OSError:
                sock.close()
                raise
    logger.info("listener.bound", addr=str(address), fd=sock.fileno())
    return sock


def _unlink_stale_socket(path: Path) -> None:
    try:
        mode = path.stat().st_mode
    except FileNotFoundError:
        return
    if not stat.S_ISSOCK(mode):
        raise FileExistsError(f"{path} exists and is not a socket")
    path.unlink()


def format_sockname(sock: socket.socket) -> str:
    name = sock.getsockname()
    if sock.family == socket.AF_UNIX:
        if isinstance(name, bytes):
            # Linux abstract namespace.
            return name.decode("utf-8", errors="replace")
        return name
    if sock.family == socket.AF_INET6:
        return f"[{name[0]}]:{name[1]}"
    return f"{name[0]}:{name[1]}"


def _transport_of(sock: socket.socket) -> Transport:
    if sock.type != socket.SOCK_STREAM:
        raise UnsupportedTransport(f"unsupported socket type {sock.type!r}")
    if sock.family in (socket.AF_INET, socket.AF_INET6):
        return "tcp"
    if sock.family == socket.AF_UNIX:
        return "unix"
    raise UnsupportedTransport(f"unsupported address family {sock.family!r}")


def export_listener(sock: socket.socket) -> ListenerRecord:
    """Describe an open TCP or Unix listener for hand-off to a child.

    A closed socket has no transport left to describe, so it is rejected with
    :class:`UnsupportedTransport` like any other socket that cannot be handed off.
    """
    if sock.fileno() == -1:
        raise UnsupportedTransport("listener is closed")
    transport = _transport_of(sock)
    addr = format_sockname(sock)
    return ListenerRecord(addr=addr, fd=sock.fileno(), filename=f"{transport}:{addr}")


def import_listener(fd: int, name: str) -> socket.socket:
    """Rebuild a listening socket from an inherited descriptor.

    *name* is the ``filename`` of the exported record; its transport prefix
    must agree with the socket found behind *fd*.
    """
    expected, sep, _ = name.partition(":")
    if not sep or expected not in ("tcp", "unix"):
        raise ReconstructionFailed(f"unrecognised listener name {name!r}")

    try:
        sock = socket.socket(fileno=fd)
    except OSError as exc:
        raise ReconstructionFailed(f"descriptor {fd} is not an open socket: {exc}") from exc

    try:
        transport = _transport_of(sock)
    except UnsupportedTransport as exc:
        sock.detach()
        raise ReconstructionFailed(f"descriptor {fd}: {exc}") from exc
    if transport != expected:
        sock.detach()
        raise ReconstructionFailed(
            f"descriptor {fd} is a {transport} socket, expected {expected}"
        )
    so_acceptconn = getattr(socket, "SO_ACCEPTCONN", None)
    if so_acceptconn is not None and not sock.getsockopt(socket.SOL_SOCKET, so_acceptconn):
        sock.detach()
        raise ReconstructionFailed(f"descriptor {fd} is not listening")

    # Later restarts pass the descriptor explicitly; nothing else may inherit it.
    os.set_inheritable(fd, False)
    logger.info("listener.imported", fd=fd, name=name)
    return sock
