"""Assorted helpers: entropy, test cookies, CPU accounting and small formatters."""

from __future__ import annotations

import errno
import math
import os
import select
import signal
import socket
import time
from typing import Any, Iterable, Optional, TextIO

from netperf3.clock import Timestamp, diff, now as clock_now

COOKIE_SIZE = 37
"""Size of a cookie buffer on the wire, including its terminating NUL."""

_COOKIE_CHARS = "abcdefghijklmnopqrstuvwxyz234567"
_FEATURES_PREFIX = "Optional features available: "


def read_entropy(size: int) -> bytes:
    """Return ``size`` bytes from the operating system's random source."""
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")
    if not size:
        return b""
    return os.urandom(size)


def fill_with_repeating_pattern(size: int) -> bytes:
    """Return ``size`` bytes of the repeating digits ``0123456789``."""
    if size < 0:
        raise ValueError(f"size must not be negative, got {size}")
    digits = b"0123456789"
    repeats, rest = divmod(size, len(digits))
    return digits * repeats + digits[:rest]


def make_cookie() -> str:
    """Generate a random test cookie of ``COOKIE_SIZE - 1`` characters."""
    raw = read_entropy(COOKIE_SIZE - 1)
    return "".join(_COOKIE_CHARS[byte % len(_COOKIE_CHARS)] for byte in raw)


def is_closed(fd: int) -> bool:
    """Return True if the file descriptor ``fd`` is no longer open."""
    if fd < 0:
        return True
    try:
        select.select([fd], [], [], 0)
    except OSError as exc:
        return exc.errno == errno.EBADF
    return False


def timeval_to_double(sec: int, usec: int) -> float:
    """Convert seconds and microseconds to seconds, counting only whole seconds of ``usec``."""
    return float(sec + usec // 1_000_000)


def timeval_equals(tv0: tuple[int, int], tv1: tuple[int, int]) -> bool:
    """Return True if two (seconds, microseconds) pairs are identical."""
    return tv0[0] == tv1[0] and tv0[1] == tv1[1]


def timeval_diff(tv0: tuple[int, int], tv1: tuple[int, int]) -> float:
    """Return the absolute difference in seconds between two (sec, usec) pairs."""
    time0 = tv0[0] + tv0[1] / 1_000_000.0
    time1 = tv1[0] + tv1[1] / 1_000_000.0
    return abs(time0 - time1)


def _percent(part: float, total: float) -> float:
    if total == 0:
        if part == 0:
            return math.nan
        return math.copysign(math.inf, part)
    return part / total * 100


class CpuMeter:
    """Measures CPU use of this process between ``start`` and ``sample``."""

    def __init__(self) -> None:
        self._wall: Optional[Timestamp] = None
        self._cpu = 0.0
        self._user = 0.0
        self._system = 0.0

    @staticmethod
    def _usage() -> tuple[float, float]:
        import resource

        usage = resource.getrusage(resource.RUSAGE_SELF)
        return usage.ru_utime * 1_000_000.0, usage.ru_stime * 1_000_000.0

    def start(self) -> None:
        """Record the reference point for later samples."""
        self._wall = clock_now()
        self._cpu = time.process_time()
        self._user, self._system = self._usage()

    def sample(self) -> tuple[float, float, float]:
        """Return (total, user, system) CPU use in percent since ``start``."""
        if self._wall is None:
            raise RuntimeError("CpuMeter.sample() called before start()")
        wall = clock_now()
        cpu = time.process_time()
        user, system = self._usage()

        span, _ = diff(wall, self._wall)
        timediff = float(span.in_usecs())

        total = _percent((cpu - self._cpu) * 1_000_000.0, timediff)
        return (
            total,
            _percent(user - self._user, timediff),
            _percent(system - self._system, timediff),
        )


def get_system_info() -> str:
    """Return the system name, host, release, version and machine, space separated."""
    uts = os.uname()
    return f"{uts.sysname} {uts.nodename} {uts.release} {uts.version} {uts.machine}"


def get_optional_features() -> str:
    """Describe the optional platform features available to this process."""
    checks = (
        ("CPU affinity setting", hasattr(os, "sched_setaffinity")),
        ("TCP congestion algorithm setting", hasattr(socket, "TCP_CONGESTION")),
        ("sendfile / zerocopy", hasattr(os, "sendfile")),
        ("socket pacing", hasattr(socket, "SO_MAX_PACING_RATE")),
        ("bind to device", hasattr(socket, "SO_BINDTODEVICE")),
        ("support IPv4 don't fragment", hasattr(socket, "IP_MTU_DISCOVER")),
    )
    features = [name for name, available in checks if available]
    return _FEATURES_PREFIX + (", ".join(features) if features else "None")


def json_printf(fmt: str, *args: Any) -> dict[str, Any]:
    """Build a JSON-ready dict from a ``"name: %x"`` style format.

    ``%b`` takes a boolean, ``%d`` an integer, ``%f`` a float and ``%s``
    a string. Blanks are ignored and colons end field names.
    """
    result: dict[str, Any] = {}
    values = iter(args)
    name: list[str] = []
    chars = iter(fmt)
    for ch in chars:
        if ch in " :":
            continue
        if ch != "%":
            name.append(ch)
            continue
        spec = next(chars, "")
        if spec not in ("b", "d", "f", "s"):
            raise ValueError(f"unsupported format specifier %{spec}")
        try:
            value = next(values)
        except StopIteration:
            raise TypeError("not enough arguments for format") from None
        if spec == "b":
            converted: Any = bool(value)
        elif spec == "d":
            converted = int(value)
        elif spec == "f":
            converted = float(value)
        else:
            converted = str(value)
        result["".join(name)] = converted
        name = []
    if next(values, _SENTINEL) is not _SENTINEL:
        raise TypeError("too many arguments for format")
    return result


_SENTINEL = object()


def dump_fdset(stream: TextIO, label: str, nfds: int, fds: Iterable[int]) -> None:
    """Write the descriptors below ``nfds`` that are in ``fds`` to ``stream``."""
    members = set(fds)
    listed = ", ".join(str(fd) for fd in range(nfds) if fd in members)
    stream.write(f"{label}: [{listed}]\n")


def daemonize(nochdir: bool = False, noclose: bool = False) -> None:
    """Detach the current process from its terminal without creating a new process.

    SIGHUP is ignored, a new session is started where the process is allowed
    to lead one, the working directory moves to ``/`` unless ``nochdir`` is
    set, and the standard streams are pointed at the null device unless
    ``noclose`` is set.
    """
    signal.signal(signal.SIGHUP, signal.SIG_IGN)

    try:
        os.setsid()
    except OSError:
        # Already a process group leader: stay in the current session.
        pass

    if not nochdir:
        os.chdir("/")

    if not noclose:
        try:
            fd = os.open(os.devnull, os.O_RDWR)
        except OSError:
            return
        for target in (0, 1, 2):
            os.dup2(fd, target)
        if fd > 2:
            os.close(fd)