import io
import os
import socket

import pytest

from netperf3.util import (
    COOKIE_SIZE,
    CpuMeter,
    dump_fdset,
    fill_with_repeating_pattern,
    get_optional_features,
    get_system_info,
    is_closed,
    json_printf,
    make_cookie,
    read_entropy,
    timeval_diff,
    timeval_equals,
    timeval_to_double,
)


def test_read_entropy_lengths():
    assert read_entropy(0) == b""
    assert len(read_entropy(16)) == 16


def test_read_entropy_rejects_negative():
    with pytest.raises(ValueError):
        read_entropy(-1)


def test_repeating_pattern_values():
    assert fill_with_repeating_pattern(12) == b"012345678901"
    assert fill_with_repeating_pattern(0) == b""


@pytest.mark.parametrize("size", [1, 9, 10, 11, 100, 1001])
def test_repeating_pattern_invariant(size):
    data = fill_with_repeating_pattern(size)
    assert len(data) == size
    assert all(data[i] == ord("0") + i % 10 for i in range(size))


def test_make_cookie_is_36_characters():
    cookie = make_cookie()
    assert len(cookie) == 36
    assert len(cookie) == COOKIE_SIZE - 1


def test_make_cookie_alphabet():
    allowed = set("abcdefghijklmnopqrstuvwxyz234567")
    cookies = {make_cookie() for _ in range(20)}
    assert all(set(c) <= allowed for c in cookies)
    assert len(cookies) == 20


def test_is_closed_on_pipe():
    read_end, write_end = os.pipe()
    try:
        assert is_closed(read_end) is False
    finally:
        os.close(read_end)
        os.close(write_end)
    assert is_closed(read_end) is True


def test_is_closed_on_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    fd = sock.fileno()
    assert is_closed(fd) is False
    sock.close()
    assert is_closed(fd) is True


def test_is_closed_negative_fd():
    assert is_closed(-1) is True


def test_timeval_to_double_truncates_usecs():
    assert timeval_to_double(3, 999_999) == 3.0
    assert timeval_to_double(2, 2_000_000) == 4.0


def test_timeval_equals():
    assert timeval_equals((1, 2), (1, 2)) is True
    assert timeval_equals((1, 2), (1, 3)) is False
    assert timeval_equals((0, 2), (1, 2)) is False


def test_timeval_diff_is_symmetric():
    a = (1, 500_000)
    b = (3, 0)
    assert timeval_diff(a, b) == pytest.approx(1.5)
    assert timeval_diff(b, a) == pytest.approx(1.5)
    assert timeval_diff(a, a) == 0.0


def test_system_info_fields():
    info = get_system_info()
    uts = os.uname()
    assert info.startswith(uts.sysname + " " + uts.nodename)
    assert info.endswith(uts.machine)


def test_optional_features_prefix():
    text = get_optional_features()
    assert text.startswith("Optional features available: ")
    assert len(text) > len("Optional features available: ")


def test_json_printf_builds_object():
    obj = json_printf(
        "foo: %b  bar: %d  bletch: %f  eep: %s", True, 7, 2.5, "hello"
    )
    assert obj == {"foo": True, "bar": 7, "bletch": 2.5, "eep": "hello"}
    assert isinstance(obj["bletch"], float)


def test_json_printf_rejects_unknown_spec():
    with pytest.raises(ValueError):
        json_printf("foo: %x", 1)
    with pytest.raises(ValueError):
        json_printf("foo: %", 1)


def test_json_printf_argument_count():
    with pytest.raises(TypeError):
        json_printf("foo: %d bar: %d", 1)
    with pytest.raises(TypeError):
        json_printf("foo: %d", 1, 2)


def test_dump_fdset():
    out = io.StringIO()
    dump_fdset(out, "fds", 5, {1, 3, 9})
    assert out.getvalue() == "fds: [1, 3]\n"


def test_dump_fdset_empty():
    out = io.StringIO()
    dump_fdset(out, "none", 4, set())
    assert out.getvalue() == "none: []\n"


def test_cpu_meter_requires_start():
    with pytest.raises(RuntimeError):
        CpuMeter().sample()


def test_cpu_meter_sample():
    meter = CpuMeter()
    meter.start()
    total = 0
    for i in range(200_000):
        total += i * i
    sample = meter.sample()
    assert len(sample) == 3
    assert all(value >= 0 for value in sample)
    assert total > 0