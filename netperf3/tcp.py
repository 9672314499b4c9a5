"""TCP data streams: moving test data and setting up stream connections."""

from __future__ import annotations

import contextlib
import enum
import errno
import socket
import struct
import sys
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from netperf3.net import NetError, create_socket, nread, nsendfile, nwrite
from netperf3.util import COOKIE_SIZE

_ACCESS_DENIED = struct.pack("b", -1)
_DEBUG_LEVEL_DEBUG = 4
_LISTEN_BACKLOG = 2**31 - 1

_HAVE_FLOWLABEL = sys.platform.startswith("linux")
_IPV6_FLOWLABEL_MGR = 32
_IPV6_FLOWINFO_SEND = 33
_IPV6_FLOWINFO_FLOWLABEL = 0x000FFFFF
_IPV6_FL_A_GET = 0
_IPV6_FL_F_CREATE = 1
_IPV6_FL_S_ANY = 255
_FLOWLABEL_REQ = struct.Struct("=16s4sBBHHH4x")


class StreamError(Exception):
    """Setting up or using a data stream failed; ``code`` says which step."""

    STREAM_CONNECT = "stream_connect"
    STREAM_LISTEN = "stream_listen"
    RECV_COOKIE = "recv_cookie"
    SEND_COOKIE = "send_cookie"
    SET_NODELAY = "set_nodelay"
    SET_MSS = "set_mss"
    SET_BUF = "set_buf"
    SET_BUF2 = "set_buf2"
    SET_USER_TIMEOUT = "set_user_timeout"
    SET_FLOW = "set_flow"
    REUSEADDR = "reuseaddr"
    V6ONLY = "v6only"
    STREAM_ACCEPT = "stream_accept"
    STREAM_READ = "stream_read"
    STREAM_WRITE = "stream_write"

    _MESSAGES = {
        STREAM_CONNECT: "unable to connect stream",
        STREAM_LISTEN: "unable to start stream listener",
        RECV_COOKIE: "unable to receive cookie at server",
        SEND_COOKIE: "unable to send cookie to server",
        SET_NODELAY: "unable to set TCP/SCTP NODELAY",
        SET_MSS: "unable to set TCP/SCTP MSS",
        SET_BUF: "unable to set socket buffer size",
        SET_BUF2: "socket buffer size not set correctly",
        SET_USER_TIMEOUT: "unable to set TCP USER_TIMEOUT",
        SET_FLOW: "unable to set IPv6 flow label",
        REUSEADDR: "unable to reuse address on socket",
        V6ONLY: "unable to set/reset IPV6_V6ONLY",
        STREAM_ACCEPT: "unable to accept stream connection",
        STREAM_READ: "unable to read from stream socket",
        STREAM_WRITE: "unable to write to stream socket",
    }

    def __init__(self, code: str, message: Optional[str] = None) -> None:
        self.code = code
        super().__init__(message or self._MESSAGES.get(code, code))


class TestState(enum.Enum):
    """Phases of a test that decide whether traffic is counted."""

    START = enum.auto()
    RUNNING = enum.auto()
    END = enum.auto()


@dataclass
class TestConfig:
    """Settings and shared state of one test run."""

    listener: Optional[socket.socket] = None
    prot_listener: Optional[socket.socket] = None
    server_hostname: Optional[str] = None
    server_port: int = 5201
    bind_address: Optional[str] = None
    bind_dev: Optional[str] = None
    bind_port: int = 0
    domain: int = socket.AF_UNSPEC
    blksize: int = 128 * 1024
    socket_bufsize: int = 0
    mss: int = 0
    no_delay: bool = False
    snd_timeout: int = 0
    flowlabel: int = 0
    fqrate: int = 0
    rate: int = 0
    zerocopy: bool = False
    reverse: bool = False
    udp_counters_64bit: bool = False
    debug: bool = False
    debug_level: int = 0
    json_output: bool = False
    json_start: dict[str, Any] = field(default_factory=dict)
    cookie: str = ""
    state: TestState = TestState.START
    read_set: set = field(default_factory=set)
    max_fd: int = -1


@dataclass
class StreamResult:
    """Byte counters of one stream."""

    bytes_received: int = 0
    bytes_received_this_interval: int = 0
    bytes_sent: int = 0
    bytes_sent_this_interval: int = 0


@dataclass(eq=False)
class Stream:
    """One data connection of a test and its counters."""

    socket: Any
    test: TestConfig
    buffer: Optional[bytearray] = None
    buffer_fd: int = -1
    pending_size: int = 0
    result: StreamResult = field(default_factory=StreamResult)
    packet_count: int = 0
    cnt_error: int = 0
    outoforder_packets: int = 0
    jitter: float = 0.0
    prev_transit: float = 0.0

    def __post_init__(self) -> None:
        if self.buffer is None:
            self.buffer = bytearray(self.test.blksize)
        elif not isinstance(self.buffer, bytearray):
            self.buffer = bytearray(self.buffer)


@contextlib.contextmanager
def _fail_as(code: str, sock: Optional[socket.socket] = None) -> Iterator[None]:
    """Turn an OSError into a StreamError, closing ``sock`` first."""
    try:
        yield
    except OSError as exc:
        if sock is not None:
            sock.close()
        raise StreamError(code, f"{StreamError._MESSAGES[code]}: {exc}") from exc


def _cookie_bytes(cookie: str) -> bytes:
    return cookie.encode("ascii")[: COOKIE_SIZE - 1].ljust(COOKIE_SIZE, b"\0")


def _cookie_text(raw: bytes) -> str:
    return raw.split(b"\0", 1)[0].decode("ascii", errors="replace")


def _warning(message: str) -> None:
    print(f"warning: {message}", file=sys.stderr)


def _set_common_options(test: TestConfig, sock: socket.socket) -> None:
    """Apply no-delay, MSS and buffer size settings, closing ``sock`` on failure."""
    if test.no_delay:
        with _fail_as(StreamError.SET_NODELAY, sock):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    if test.mss:
        with _fail_as(StreamError.SET_MSS, sock):
            option = getattr(socket, "TCP_MAXSEG", None)
            if option is None:
                raise OSError(errno.ENOPROTOOPT, "TCP_MAXSEG is not supported")
            sock.setsockopt(socket.IPPROTO_TCP, option, test.mss)
    if test.socket_bufsize:
        with _fail_as(StreamError.SET_BUF, sock):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, test.socket_bufsize)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, test.socket_bufsize)


def _apply_pacing(test: TestConfig, sock: socket.socket) -> None:
    pacing = getattr(socket, "SO_MAX_PACING_RATE", None)
    if pacing is not None and test.fqrate:
        fqrate = test.fqrate // 8
        if fqrate > 0:
            if test.debug:
                print(f"Setting fair-queue socket pacing to {fqrate}")
            try:
                sock.setsockopt(socket.SOL_SOCKET, pacing, fqrate)
            except OSError:
                _warning("Unable to set socket pacing")
    rate = test.rate // 8
    if rate > 0 and test.debug:
        print(f"Setting application pacing to {rate}")


def _read_back_buffers(test: TestConfig, sock: socket.socket) -> tuple[int, int]:
    """Check that the kernel granted the requested buffer sizes."""
    with _fail_as(StreamError.SET_BUF, sock):
        sndbuf = sock.getsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF)
    if test.debug:
        print(f"SNDBUF is {sndbuf}, expecting {test.socket_bufsize}")
    if test.socket_bufsize and test.socket_bufsize > sndbuf:
        raise StreamError(StreamError.SET_BUF2)

    with _fail_as(StreamError.SET_BUF, sock):
        rcvbuf = sock.getsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF)
    if test.debug:
        print(f"RCVBUF is {rcvbuf}, expecting {test.socket_bufsize}")
    if test.socket_bufsize and test.socket_bufsize > rcvbuf:
        raise StreamError(StreamError.SET_BUF2)
    return sndbuf, rcvbuf


def _set_flowlabel(test: TestConfig, sock: socket.socket, server_res: tuple) -> tuple:
    """Request an IPv6 flow label and return the address to connect to."""
    if server_res[0] != socket.AF_INET6:
        sock.close()
        raise StreamError(StreamError.SET_FLOW)
    address = server_res[4]
    label = test.flowlabel & _IPV6_FLOWINFO_FLOWLABEL
    request = _FLOWLABEL_REQ.pack(
        socket.inet_pton(socket.AF_INET6, address[0].split("%", 1)[0]),
        label.to_bytes(4, "big"),
        _IPV6_FL_A_GET,
        _IPV6_FL_S_ANY,
        _IPV6_FL_F_CREATE,
        0,
        0,
    )
    with _fail_as(StreamError.SET_FLOW, sock):
        sock.setsockopt(socket.IPPROTO_IPV6, _IPV6_FLOWLABEL_MGR, request)
        sock.setsockopt(socket.IPPROTO_IPV6, _IPV6_FLOWINFO_SEND, 1)
    return (address[0], address[1], label, address[3])


def tcp_recv(stream: Stream) -> int:
    """Read up to one block from the stream; return the number of bytes read."""
    data = nread(stream.socket, stream.test.blksize)
    received = len(data)
    stream.buffer[:received] = data

    if stream.test.state is TestState.RUNNING:
        stream.result.bytes_received += received
        stream.result.bytes_received_this_interval += received
    elif stream.test.debug:
        print(f"Late receive, state = {stream.test.state.value}")
    return received


def tcp_send(stream: Stream) -> int:
    """Send the pending part of one block; return the number of bytes sent."""
    test = stream.test
    if not stream.pending_size:
        stream.pending_size = test.blksize

    if test.zerocopy:
        sent = nsendfile(stream.buffer_fd, stream.socket, stream.pending_size)
    else:
        sent = nwrite(stream.socket, bytes(stream.buffer[: stream.pending_size]))

    stream.pending_size -= sent
    stream.result.bytes_sent += sent
    stream.result.bytes_sent_this_interval += sent

    if test.debug_level >= _DEBUG_LEVEL_DEBUG:
        print(
            f"sent {sent} bytes of {test.blksize}, pending {stream.pending_size}, "
            f"total {stream.result.bytes_sent}"
        )
    return sent


def tcp_accept(test: TestConfig) -> socket.socket:
    """Accept a stream connection and check its cookie.

    A connection whose cookie does not match the test's is told access is
    denied and closed; the closed socket is still returned.
    """
    with _fail_as(StreamError.STREAM_CONNECT):
        sock, _ = test.listener.accept()

    try:
        received = nread(sock, COOKIE_SIZE)
    except NetError as exc:
        raise StreamError(StreamError.RECV_COOKIE) from exc

    if _cookie_text(received) != test.cookie:
        try:
            nwrite(sock, _ACCESS_DENIED)
        except NetError as exc:
            print(
                "failed to send access denied from busy server to new connecting "
                f"client, errno = {exc.errno}",
                file=sys.stderr,
            )
        sock.close()
    return sock


def tcp_listen(test: TestConfig) -> socket.socket:
    """Prepare the listener for stream connections and return it.

    When no-delay, MSS or a buffer size is requested, the listener is
    recreated with those options so accepted streams inherit them.
    """
    sock = test.listener

    if test.no_delay or test.mss or test.socket_bufsize:
        test.read_set.discard(sock)
        sock.close()

        if test.domain == socket.AF_UNSPEC and not test.bind_address:
            family = socket.AF_INET6
        else:
            family = test.domain
        with _fail_as(StreamError.STREAM_LISTEN):
            res = socket.getaddrinfo(
                test.bind_address,
                str(test.server_port),
                family,
                socket.SOCK_STREAM,
                0,
                socket.AI_PASSIVE,
            )[0]
            sock = socket.socket(res[0], socket.SOCK_STREAM, 0)

        _set_common_options(test, sock)
        _apply_pacing(test, sock)

        with _fail_as(StreamError.REUSEADDR, sock):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        if (
            hasattr(socket, "IPV6_V6ONLY")
            and not sys.platform.startswith("openbsd")
            and res[0] == socket.AF_INET6
            and test.domain in (socket.AF_UNSPEC, socket.AF_INET)
        ):
            v6only = 0 if test.domain == socket.AF_UNSPEC else 1
            with _fail_as(StreamError.V6ONLY, sock):
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, v6only)

        with _fail_as(StreamError.STREAM_LISTEN, sock):
            sock.bind(res[4])
        with _fail_as(StreamError.STREAM_LISTEN):
            sock.listen(_LISTEN_BACKLOG)

        test.listener = sock

    sndbuf, rcvbuf = _read_back_buffers(test, sock)

    if test.json_output:
        test.json_start["sock_bufsize"] = test.socket_bufsize
        test.json_start["sndbuf_actual"] = sndbuf
        test.json_start["rcvbuf_actual"] = rcvbuf
    return sock


def tcp_connect(test: TestConfig) -> socket.socket:
    """Open a stream connection to the server and send the test cookie."""
    with _fail_as(StreamError.STREAM_CONNECT):
        sock, server_res = create_socket(
            test.domain,
            socket.SOCK_STREAM,
            test.bind_address,
            test.bind_dev,
            test.bind_port,
            test.server_hostname,
            test.server_port,
        )

    _set_common_options(test, sock)

    user_timeout = getattr(socket, "TCP_USER_TIMEOUT", None)
    if user_timeout is not None and test.snd_timeout:
        with _fail_as(StreamError.SET_USER_TIMEOUT, sock):
            sock.setsockopt(socket.IPPROTO_TCP, user_timeout, test.snd_timeout)

    sndbuf, rcvbuf = _read_back_buffers(test, sock)

    if test.json_output:
        test.json_start.setdefault("sock_bufsize", test.socket_bufsize)
        test.json_start.setdefault("sndbuf_actual", sndbuf)
        test.json_start.setdefault("rcvbuf_actual", rcvbuf)

    address = server_res[4]
    if _HAVE_FLOWLABEL and test.flowlabel:
        address = _set_flowlabel(test, sock, server_res)

    _apply_pacing(test, sock)

    err = sock.connect_ex(address)
    if err and err != errno.EINPROGRESS:
        sock.close()
        raise StreamError(StreamError.STREAM_CONNECT)

    try:
        nwrite(sock, _cookie_bytes(test.cookie))
    except NetError as exc:
        sock.close()
        raise StreamError(StreamError.SEND_COOKIE) from exc
    return sock