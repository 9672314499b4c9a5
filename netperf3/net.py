"""Socket helpers: dialing, announcing, and full-length reads and writes."""

from __future__ import annotations

import errno
import os
import select
import socket
import sys
from typing import Optional, Union

NET_SOFTERROR = -1
NET_HARDERROR = -2

_IFNAMSIZ = 16
_LISTEN_BACKLOG = 2**31 - 1

SockLike = Union[socket.socket, int]
AddrInfo = tuple


class NetError(OSError):
    """A failure while moving data over a socket."""

    code = 0


class SoftNetError(NetError):
    """A transient failure; the operation may succeed if retried."""

    code = NET_SOFTERROR


class HardNetError(NetError):
    """A failure that will not go away by retrying."""

    code = NET_HARDERROR


def _fileno(target: SockLike) -> int:
    return target if isinstance(target, int) else target.fileno()


def _raw_read(target: SockLike, size: int) -> bytes:
    if isinstance(target, int):
        return os.read(target, size)
    return target.recv(size)


def _raw_write(target: SockLike, data: memoryview) -> int:
    if isinstance(target, int):
        return os.write(target, data)
    return target.send(data)


def _bind_to_device(sock: socket.socket, bind_dev: str) -> None:
    option = getattr(socket, "SO_BINDTODEVICE", None)
    if option is None:
        raise OSError(errno.ENOPROTOOPT, "binding to a device is not supported")
    name = bind_dev.encode().ljust(_IFNAMSIZ, b"\0")[:_IFNAMSIZ]
    sock.setsockopt(socket.SOL_SOCKET, option, name)


def timeout_connect(sock: socket.socket, address, timeout: int = -1) -> None:
    """Connect ``sock`` to ``address``, waiting at most ``timeout`` milliseconds.

    A timeout of -1 waits as long as the connection attempt takes.
    Raises OSError on failure and TimeoutError when the wait runs out.
    """
    saved = sock.gettimeout()
    if timeout != -1:
        sock.setblocking(False)
    try:
        err = sock.connect_ex(address)
        if err == 0:
            return
        if err != errno.EINPROGRESS:
            raise OSError(err, os.strerror(err))
        wait = None if timeout < 0 else timeout / 1000.0
        _, writable, _ = select.select([], [sock], [], wait)
        if not writable:
            raise TimeoutError(errno.ETIMEDOUT, os.strerror(errno.ETIMEDOUT))
        err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err != 0:
            raise OSError(err, os.strerror(err))
    finally:
        if timeout != -1:
            sock.settimeout(saved)


def create_socket(
    domain: int,
    proto: int,
    local: Optional[str],
    bind_dev: Optional[str],
    local_port: int,
    server: Optional[str],
    port: int,
) -> tuple[socket.socket, AddrInfo]:
    """Create a socket aimed at ``server``, bound locally as requested.

    Returns the socket and the address-info entry of the server.
    """
    local_res = None
    if local:
        local_res = socket.getaddrinfo(local, None, domain, proto)[0]
    server_res = socket.getaddrinfo(server, str(port), domain, proto)[0]

    sock = socket.socket(server_res[0], proto, 0)
    try:
        if bind_dev:
            _bind_to_device(sock, bind_dev)

        if local_res is not None:
            sockaddr = local_res[4]
            if local_port:
                sockaddr = (sockaddr[0], local_port, *sockaddr[2:])
            sock.bind(sockaddr)
        elif local_port:
            family = server_res[0]
            if family == socket.AF_INET:
                sock.bind(("0.0.0.0", local_port))
            elif family == socket.AF_INET6:
                sock.bind(("::", local_port, 0, 0))
            else:
                raise OSError(errno.EAFNOSUPPORT, os.strerror(errno.EAFNOSUPPORT))
    except BaseException:
        sock.close()
        raise
    return sock, server_res


def netdial(
    domain: int,
    proto: int,
    local: Optional[str],
    bind_dev: Optional[str],
    local_port: int,
    server: Optional[str],
    port: int,
    timeout: int = -1,
) -> socket.socket:
    """Create a socket and connect it to ``server``:``port``."""
    sock, server_res = create_socket(
        domain, proto, local, bind_dev, local_port, server, port
    )
    try:
        timeout_connect(sock, server_res[4], timeout)
    except OSError as exc:
        if exc.errno != errno.EINPROGRESS:
            sock.close()
            raise
    except BaseException:
        sock.close()
        raise
    return sock


def netannounce(
    domain: int,
    proto: int,
    local: Optional[str],
    bind_dev: Optional[str],
    port: int,
) -> socket.socket:
    """Create a socket bound to ``port`` and, for streams, listening on it.

    With no address family and no local address, an IPv6 socket that also
    accepts IPv4 connections is created.
    """
    family = socket.AF_INET6 if domain == socket.AF_UNSPEC and not local else domain
    res = socket.getaddrinfo(local, str(port), family, proto, 0, socket.AI_PASSIVE)[0]

    sock = socket.socket(res[0], proto, 0)
    try:
        if bind_dev:
            _bind_to_device(sock, bind_dev)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if (
            hasattr(socket, "IPV6_V6ONLY")
            and not sys.platform.startswith("openbsd")
            and res[0] == socket.AF_INET6
            and domain in (socket.AF_UNSPEC, socket.AF_INET6)
        ):
            v6only = 0 if domain == socket.AF_UNSPEC else 1
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, v6only)
        sock.bind(res[4])
        if proto == socket.SOCK_STREAM:
            sock.listen(_LISTEN_BACKLOG)
    except BaseException:
        sock.close()
        raise
    return sock


def nread(sock: SockLike, count: int) -> bytes:
    """Read up to ``count`` bytes, stopping early at end of stream or when no data is ready."""
    chunks = []
    left = count
    while left > 0:
        try:
            chunk = _raw_read(sock, left)
        except (BlockingIOError, InterruptedError):
            break
        except OSError as exc:
            raise HardNetError(exc.errno, exc.strerror) from exc
        if not chunk:
            break
        chunks.append(chunk)
        left -= len(chunk)
    return b"".join(chunks)


def nwrite(sock: SockLike, data: bytes) -> int:
    """Write all of ``data`` unless the socket would block; return bytes written."""
    view = memoryview(data)
    count = len(view)
    left = count
    while left > 0:
        try:
            written = _raw_write(sock, view[count - left:])
        except (BlockingIOError, InterruptedError):
            return count - left
        except OSError as exc:
            if exc.errno == errno.ENOBUFS:
                raise SoftNetError(exc.errno, exc.strerror) from exc
            raise HardNetError(exc.errno, exc.strerror) from exc
        if written == 0:
            raise SoftNetError(0, "write returned no data")
        left -= written
    return count


def has_sendfile() -> bool:
    """Whether zero-copy file sending is available."""
    return hasattr(os, "sendfile")


def nsendfile(fromfd: int, sock: SockLike, count: int) -> int:
    """Send ``count`` bytes from the start of file ``fromfd`` to ``sock``."""
    if not has_sendfile():
        raise HardNetError(errno.ENOSYS, os.strerror(errno.ENOSYS))
    out_fd = _fileno(sock)
    left = count
    while left > 0:
        offset = count - left
        try:
            sent = os.sendfile(out_fd, fromfd, offset, left)
        except (BlockingIOError, InterruptedError) as exc:
            if left == count:
                raise SoftNetError(exc.errno, exc.strerror) from exc
            return count - left
        except OSError as exc:
            if exc.errno in (errno.ENOBUFS, errno.ENOMEM):
                raise SoftNetError(exc.errno, exc.strerror) from exc
            raise HardNetError(exc.errno, exc.strerror) from exc
        if sent == 0:
            raise SoftNetError(0, "sendfile sent no data")
        left -= sent
    return count


def setnonblocking(sock: SockLike, nonblocking: bool) -> None:
    """Switch ``sock`` between blocking and non-blocking mode."""
    if isinstance(sock, int):
        os.set_blocking(sock, not nonblocking)
    else:
        sock.setblocking(not nonblocking)


def getsockdomain(sock: SockLike) -> int:
    """Return the address family a socket is bound in."""
    if isinstance(sock, int):
        probe = socket.socket(fileno=sock)
        try:
            return int(probe.family)
        finally:
            probe.detach()
    sock.getsockname()
    return int(sock.family)