import socket
import struct
import threading

import pytest

from netperf3.clock import Timestamp, now
from netperf3.net import HardNetError
from netperf3.tcp import Stream, StreamError, TestConfig, TestState
from netperf3.udp import (
    LEGACY_UDP_CONNECT_REPLY,
    UDP_CONNECT_MSG,
    UDP_CONNECT_REPLY,
    decode_header,
    encode_header,
    udp_accept,
    udp_buffercheck,
    udp_connect,
    udp_listen,
    udp_recv,
    udp_send,
)

BLKSIZE = 64


@pytest.fixture
def pair():
    a, b = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
    b.setblocking(False)
    yield a, b
    a.close()
    b.close()


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


def _datagram(count, sent=None, wide=False):
    header = encode_header(sent or now(), count, wide)
    return header.ljust(BLKSIZE, b"\0")


def _receiver(sock, state=TestState.RUNNING, wide=False):
    test = TestConfig(blksize=BLKSIZE, state=state, udp_counters_64bit=wide)
    return Stream(socket=sock, test=test)


def test_encode_header_32bit_wire_bytes():
    data = encode_header(Timestamp(1, 2), 3, False)
    assert data == b"\x00\x00\x00\x01\x00\x00\x00\x02\x00\x00\x00\x03"


@pytest.mark.parametrize("wide", [False, True])
def test_header_round_trip(wide):
    sent = Timestamp(123456, 654321)
    data = encode_header(sent, 4242, wide)
    assert len(data) == (16 if wide else 12)
    assert decode_header(data, wide) == (sent, 4242)


def test_header_32bit_truncates_counter():
    data = encode_header(Timestamp(0, 0), 2**32 + 5, False)
    assert decode_header(data, False)[1] == 5


def test_decode_header_too_short():
    with pytest.raises(ValueError):
        decode_header(b"\x00" * 8, False)


def test_send_numbers_datagrams(pair):
    a, b = pair
    stream = Stream(socket=a, test=TestConfig(blksize=BLKSIZE))
    assert udp_send(stream) == BLKSIZE
    assert udp_send(stream) == BLKSIZE
    first = b.recv(1024)
    second = b.recv(1024)
    assert len(first) == BLKSIZE
    assert decode_header(first, False)[1] == 1
    assert decode_header(second, False)[1] == 2
    assert stream.packet_count == 2
    assert stream.result.bytes_sent == 2 * BLKSIZE
    assert stream.result.bytes_sent_this_interval == 2 * BLKSIZE


def test_send_64bit_counters(pair):
    a, b = pair
    stream = Stream(socket=a, test=TestConfig(blksize=BLKSIZE, udp_counters_64bit=True))
    udp_send(stream)
    assert decode_header(b.recv(1024), True)[1] == 1


def test_send_failure_restores_packet_count():
    a, b = socket.socketpair(socket.AF_UNIX, socket.SOCK_DGRAM)
    b.close()
    stream = Stream(socket=a, test=TestConfig(blksize=BLKSIZE))
    a.close()
    with pytest.raises(HardNetError):
        udp_send(stream)
    assert stream.packet_count == 0
    assert stream.result.bytes_sent == 0


def test_send_recv_round_trip(pair):
    a, b = pair
    sender = Stream(socket=a, test=TestConfig(blksize=BLKSIZE))
    receiver = _receiver(b)
    udp_send(sender)
    assert udp_recv(receiver) == BLKSIZE
    assert receiver.packet_count == 1
    assert receiver.cnt_error == 0
    assert receiver.jitter == 0.0


def test_recv_counts_loss_and_out_of_order(pair):
    a, b = pair
    stream = _receiver(b)
    a.send(_datagram(1))
    udp_recv(stream)
    assert (stream.packet_count, stream.cnt_error) == (1, 0)

    a.send(_datagram(3))
    udp_recv(stream)
    assert (stream.packet_count, stream.cnt_error) == (3, 1)

    a.send(_datagram(2))
    udp_recv(stream)
    assert stream.packet_count == 3
    assert stream.cnt_error == 0
    assert stream.outoforder_packets == 1
    assert stream.result.bytes_received == 3 * BLKSIZE


def test_recv_jitter_is_non_negative(pair):
    a, b = pair
    stream = _receiver(b)
    a.send(_datagram(1))
    udp_recv(stream)
    sent = now()
    sent.secs -= 1
    a.send(_datagram(2, sent))
    udp_recv(stream)
    assert stream.jitter > 0.0
    assert stream.prev_transit >= 1.0


def test_recv_with_no_data_returns_zero(pair):
    _, b = pair
    stream = _receiver(b)
    assert udp_recv(stream) == 0
    assert stream.result.bytes_received == 0


def test_late_receive_not_counted(pair):
    a, b = pair
    stream = _receiver(b, state=TestState.END)
    a.send(_datagram(7))
    assert udp_recv(stream) == BLKSIZE
    assert stream.result.bytes_received == 0
    assert stream.packet_count == 0


def test_buffercheck_reports_small_buffers():
    test = TestConfig(blksize=1 << 30, json_output=True)
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        assert udp_buffercheck(test, sock) is True
    assert test.json_start["sock_bufsize"] == 0
    assert test.json_start["sndbuf_actual"] > 0


def test_buffercheck_keeps_existing_json_entries():
    test = TestConfig(blksize=1024, json_output=True, json_start={"sndbuf_actual": -7})
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        assert udp_buffercheck(test, sock) is False
    assert test.json_start["sndbuf_actual"] == -7
    assert test.json_start["rcvbuf_actual"] > 0


def test_buffercheck_rejects_oversized_request():
    test = TestConfig(blksize=1024, socket_bufsize=1 << 30)
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        with pytest.raises(StreamError) as info:
            udp_buffercheck(test, sock)
    assert info.value.code in (StreamError.SET_BUF, StreamError.SET_BUF2)


def test_connect_and_accept_over_loopback():
    port = _free_port()
    server = TestConfig(
        domain=socket.AF_INET, bind_address="127.0.0.1", server_port=port, blksize=1024
    )
    client = TestConfig(
        domain=socket.AF_INET, server_hostname="127.0.0.1", server_port=port, blksize=1024
    )
    listener = udp_listen(server)
    server.prot_listener = listener
    outcome = {}

    def run_client():
        try:
            outcome["sock"] = udp_connect(client)
        except Exception as exc:  # reported below
            outcome["error"] = exc

    thread = threading.Thread(target=run_client)
    thread.start()
    accepted = udp_accept(server)
    thread.join(10)
    try:
        assert "error" not in outcome
        client_sock = outcome["sock"]
        assert accepted is listener
        assert server.prot_listener is not listener
        assert server.prot_listener in server.read_set
        assert server.max_fd == server.prot_listener.fileno()
        assert accepted.getpeername() == client_sock.getsockname()
        client_sock.close()
    finally:
        accepted.close()
        server.prot_listener.close()


@pytest.mark.parametrize("reply", [UDP_CONNECT_REPLY, LEGACY_UDP_CONNECT_REPLY])
def test_connect_accepts_both_replies(reply):
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as fake:
        fake.bind(("127.0.0.1", 0))
        port = fake.getsockname()[1]
        client = TestConfig(
            domain=socket.AF_INET, server_hostname="127.0.0.1", server_port=port, blksize=1024
        )

        def answer():
            data, peer = fake.recvfrom(16)
            fake.sendto(struct.pack("=I", reply), peer)
            received.append(data)

        received = []
        thread = threading.Thread(target=answer)
        thread.start()
        sock = udp_connect(client)
        thread.join(10)
        with sock:
            assert sock.getpeername() == ("127.0.0.1", port)
            assert sock.type == socket.SOCK_DGRAM
    assert received == [struct.pack("=I", UDP_CONNECT_MSG)]


def test_connect_rejects_wrong_reply():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as fake:
        fake.bind(("127.0.0.1", 0))
        port = fake.getsockname()[1]
        client = TestConfig(
            domain=socket.AF_INET, server_hostname="127.0.0.1", server_port=port, blksize=1024
        )

        def answer():
            _, peer = fake.recvfrom(16)
            fake.sendto(b"\x00\x00\x00\x00", peer)

        thread = threading.Thread(target=answer)
        thread.start()
        with pytest.raises(StreamError) as info:
            udp_connect(client)
        thread.join(10)
    assert info.value.code == StreamError.STREAM_READ


def test_listen_on_port_in_use_fails():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as busy:
        busy.bind(("127.0.0.1", 0))
        port = busy.getsockname()[1]
        test = TestConfig(domain=socket.AF_INET, bind_address="127.0.0.1", server_port=port)
        with pytest.raises(StreamError) as info:
            udp_listen(test)
    assert info.value.code == StreamError.STREAM_LISTEN