"""UDP data streams: sequence-numbered datagrams, loss and jitter accounting."""

from __future__ import annotations

import contextlib
import socket
import struct
import sys
from typing import Iterator, Optional

from netperf3.clock import Timestamp, diff, now as clock_now
from netperf3.net import NetError, SoftNetError, netannounce, netdial, nread, nwrite
from netperf3.tcp import Stream, StreamError, TestConfig, TestState

UDP_CONNECT_MSG = 0x36373839
UDP_CONNECT_REPLY = 0x39383736
LEGACY_UDP_CONNECT_REPLY = 987654321
UDP_BUFFER_EXTRA = 1024
MAX_REVERSE_OUT_OF_ORDER_PACKETS = 2

_DEBUG_LEVEL_INFO = 3
_DEBUG_LEVEL_DEBUG = 4
_CONNECT_TIMEOUT_SECS = 30

_HEADER_32 = struct.Struct(">III")
_HEADER_64 = struct.Struct(">IIQ")
_CONTROL = struct.Struct("=I")


def encode_header(sent: Timestamp, packet_count: int, counters_64bit: bool) -> bytes:
    """Pack the send time and sequence number that start every datagram."""
    if counters_64bit:
        return _HEADER_64.pack(
            sent.secs & 0xFFFFFFFF,
            sent.usecs & 0xFFFFFFFF,
            packet_count & 0xFFFFFFFFFFFFFFFF,
        )
    return _HEADER_32.pack(
        sent.secs & 0xFFFFFFFF,
        sent.usecs & 0xFFFFFFFF,
        packet_count & 0xFFFFFFFF,
    )


def decode_header(data: bytes, counters_64bit: bool) -> tuple[Timestamp, int]:
    """Unpack the send time and sequence number from a datagram."""
    layout = _HEADER_64 if counters_64bit else _HEADER_32
    if len(data) < layout.size:
        raise ValueError(f"datagram header needs {layout.size} bytes, got {len(data)}")
    secs, usecs, pcount = layout.unpack_from(data)
    return Timestamp(secs, usecs), pcount


@contextlib.contextmanager
def _fail_as(code: str) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise StreamError(code, f"{StreamError._MESSAGES[code]}: {exc}") from exc


def _warning(message: str) -> None:
    print(f"warning: {message}", file=sys.stderr)


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


def udp_recv(stream: Stream) -> int:
    """Receive one datagram, updating loss, ordering and jitter statistics."""
    test = stream.test
    data = nread(stream.socket, test.blksize)
    received = len(data)
    if received <= 0:
        return received
    stream.buffer[:received] = data

    if test.state is not TestState.RUNNING:
        if test.debug:
            print(f"Late receive, state = {test.state.value}")
        return received

    first_packet = stream.result.bytes_received == 0
    stream.result.bytes_received += received
    stream.result.bytes_received_this_interval += received

    sent_time, pcount = decode_header(data, test.udp_counters_64bit)

    if test.debug_level >= _DEBUG_LEVEL_DEBUG:
        print(f"pcount {pcount} packet_count {stream.packet_count}", file=sys.stderr)

    if pcount >= stream.packet_count + 1:
        if pcount > stream.packet_count + 1:
            stream.cnt_error += (pcount - 1) - stream.packet_count
        stream.packet_count = pcount
    else:
        stream.outoforder_packets += 1
        if stream.cnt_error > 0:
            stream.cnt_error -= 1
        if test.debug:
            print(
                f"OUT OF ORDER - incoming packet sequence {pcount} but expected "
                f"sequence {stream.packet_count + 1} on stream {stream.socket}",
                file=sys.stderr,
            )

    # Jitter as in RFC 1889, sections 6.3.1 and A.8.
    span, _ = diff(clock_now(), sent_time)
    transit = span.in_secs()
    if first_packet:
        stream.prev_transit = transit
    delta = abs(transit - stream.prev_transit)
    stream.prev_transit = transit
    stream.jitter += (delta - stream.jitter) / 16.0
    return received


def udp_send(stream: Stream) -> int:
    """Send one numbered datagram of the test's block size."""
    test = stream.test
    before = clock_now()
    stream.packet_count += 1

    header = encode_header(before, stream.packet_count, test.udp_counters_64bit)
    stream.buffer[: len(header)] = header

    try:
        sent = nwrite(stream.socket, bytes(stream.buffer[: test.blksize]))
    except NetError as exc:
        # A datagram that went nowhere may be resent with the same number.
        stream.packet_count -= 1
        if isinstance(exc, SoftNetError) and test.debug_level >= _DEBUG_LEVEL_INFO:
            print(f"UDP send failed on NET_SOFTERROR. errno={exc.strerror}")
        raise
    if sent <= 0:
        stream.packet_count -= 1

    stream.result.bytes_sent += sent
    stream.result.bytes_sent_this_interval += sent

    if test.debug_level >= _DEBUG_LEVEL_DEBUG:
        print(f"sent {sent} bytes of {test.blksize}, total {stream.result.bytes_sent}")
    return sent


def udp_buffercheck(test: TestConfig, sock: socket.socket) -> bool:
    """Apply and verify socket buffer sizes.

    Returns True when a buffer may be too small to hold one block.
    """
    too_small = False
    if test.socket_bufsize:
        with _fail_as(StreamError.SET_BUF):
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, test.socket_bufsize)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, test.socket_bufsize)

    with _fail_as(StreamError.SET_BUF):
        sndbuf = sock.getsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF)
    if test.debug:
        print(f"SNDBUF is {sndbuf}, expecting {test.socket_bufsize}")
    if test.socket_bufsize and test.socket_bufsize > sndbuf:
        raise StreamError(StreamError.SET_BUF2)
    if test.blksize > sndbuf:
        _warning(f"Block size {test.blksize} > sending socket buffer size {sndbuf}")
        too_small = True

    with _fail_as(StreamError.SET_BUF):
        rcvbuf = sock.getsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF)
    if test.debug:
        print(f"RCVBUF is {rcvbuf}, expecting {test.socket_bufsize}")
    if test.socket_bufsize and test.socket_bufsize > rcvbuf:
        raise StreamError(StreamError.SET_BUF2)
    if test.blksize > rcvbuf:
        _warning(f"Block size {test.blksize} > receiving socket buffer size {rcvbuf}")
        too_small = True

    if test.json_output:
        test.json_start.setdefault("sock_bufsize", test.socket_bufsize)
        test.json_start.setdefault("sndbuf_actual", sndbuf)
        test.json_start.setdefault("rcvbuf_actual", rcvbuf)
    return too_small


def _check_buffers(test: TestConfig, sock: socket.socket) -> None:
    if udp_buffercheck(test, sock) and test.socket_bufsize == 0:
        bufsize = test.blksize + UDP_BUFFER_EXTRA
        _warning(f"Increasing socket buffer size to {bufsize}")
        test.socket_bufsize = bufsize
        udp_buffercheck(test, sock)


def udp_accept(test: TestConfig) -> socket.socket:
    """Take over the listening socket for a client that announced itself.

    The listening socket is connected to the client and returned; a fresh
    listener replaces it in ``test.prot_listener``.
    """
    sock = test.prot_listener
    with _fail_as(StreamError.STREAM_ACCEPT):
        _, peer = sock.recvfrom(_CONTROL.size)
        sock.connect(peer)

    _check_buffers(test, sock)
    _apply_pacing(test, sock)

    with _fail_as(StreamError.STREAM_LISTEN):
        listener = netannounce(
            test.domain, socket.SOCK_DGRAM, test.bind_address, test.bind_dev, test.server_port
        )
    test.prot_listener = listener
    test.read_set.add(listener)
    test.max_fd = max(test.max_fd, listener.fileno())

    with _fail_as(StreamError.STREAM_WRITE):
        sock.send(_CONTROL.pack(UDP_CONNECT_REPLY))
    return sock


def udp_listen(test: TestConfig) -> socket.socket:
    """Create the socket on which clients announce new UDP streams."""
    with _fail_as(StreamError.STREAM_LISTEN):
        return netannounce(
            test.domain, socket.SOCK_DGRAM, test.bind_address, test.bind_dev, test.server_port
        )


def _set_receive_timeout(sock: socket.socket, secs: int) -> None:
    option = getattr(socket, "SO_RCVTIMEO", None)
    if option is None:
        return
    try:
        sock.setsockopt(socket.SOL_SOCKET, option, struct.pack("ll", secs, 0))
    except OSError:
        pass


def udp_connect(test: TestConfig) -> socket.socket:
    """Announce a new UDP stream to the server and wait for its reply."""
    with _fail_as(StreamError.STREAM_CONNECT):
        sock = netdial(
            test.domain,
            socket.SOCK_DGRAM,
            test.bind_address,
            test.bind_dev,
            test.bind_port,
            test.server_hostname,
            test.server_port,
            -1,
        )

    _check_buffers(test, sock)
    _apply_pacing(test, sock)
    # Guard against a server that never answers.
    _set_receive_timeout(sock, _CONNECT_TIMEOUT_SECS)

    if test.debug:
        print(f"Sending Connect message to Socket {sock.fileno()}")
    with _fail_as(StreamError.STREAM_WRITE):
        sock.send(_CONTROL.pack(UDP_CONNECT_MSG))

    max_wait = _CONTROL.size
    if test.reverse:
        # Data may already be flowing and overtake the reply.
        max_wait += MAX_REVERSE_OUT_OF_ORDER_PACKETS * test.blksize

    replies = (UDP_CONNECT_REPLY, LEGACY_UDP_CONNECT_REPLY)
    raw = _CONTROL.pack(UDP_CONNECT_MSG)
    reply: Optional[int] = None
    total = 0
    while True:
        with _fail_as(StreamError.STREAM_READ):
            data = sock.recv(_CONTROL.size)
        raw = data + raw[len(data):]
        (reply,) = _CONTROL.unpack(raw)
        if test.debug:
            print(
                f"Connect received for Socket {sock.fileno()}, sz={len(data)}, "
                f"buf={reply:x}, i={total}, max_len_wait_for_reply={max_wait}"
            )
        total += len(data)
        if reply in replies or total >= max_wait:
            break

    if reply not in replies:
        raise StreamError(StreamError.STREAM_READ)
    return sock