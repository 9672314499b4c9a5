# netperf3

A library of building blocks for measuring network throughput over TCP and
UDP on POSIX systems. It has no third-party dependencies.

## What is in it

- `netperf3.clock`: monotonic `Timestamp` values (`secs`, `usecs`) with
  `add_usecs()`, `in_usecs()` and `in_secs()`, plus `now()`, `compare()`
  (returns -1, 0 or 1) and `diff()`, which returns the absolute distance
  between two timestamps and a flag that is `True` when the first is not
  later than the second.
- `netperf3.units`: parsing sizes and rates with `K`/`M`/`G`/`T` suffixes,
  either case (`unit_atof` and `unit_atoi` use powers of 1024,
  `unit_atof_rate` powers of 1000), and `unit_format`, which renders a byte
  count as bytes (upper-case formats `B`, `K`, `M`, `G`, `T`, `A`) or bits
  (lower-case formats); `A`/`a` picks the unit adaptively.
- `netperf3.timer`: a `TimerQueue` of one-shot and periodic `Timer`s kept in
  expiry order. An event loop drives it with `timeout()` (seconds until the
  next timer, or `None`) and `run()`; timers can be `reset()`, `cancel()`led,
  and the whole queue cleared with `destroy()`.
- `netperf3.tcpinfo`: `TcpInfo.from_bytes()` decodes the Linux `tcp_info`
  layout; `read_tcpinfo(sock)` reads it from a socket and returns `None` on
  platforms without it. `build_tcpinfo_message()` renders a one-line report.
- `netperf3.util`: test cookies (`make_cookie`), the `0123456789` payload
  pattern (`fill_with_repeating_pattern`), random bytes (`read_entropy`),
  CPU usage measurement (`CpuMeter`), `get_system_info`,
  `get_optional_features`, a small format-driven dict builder
  (`json_printf`), `dump_fdset`, `is_closed` and `daemonize`, which detaches
  the current process in place without forking.
- `netperf3.net`: `create_socket`, `netdial`, `netannounce` and
  `timeout_connect`; full-length `nread` and `nwrite`; `nsendfile` for
  zero-copy sending; `setnonblocking` and `getsockdomain`. Failures while
  moving data raise `SoftNetError` (worth retrying) or `HardNetError`, both
  subclasses of `NetError`.
- `netperf3.tcp`: `TestConfig`, `Stream` and `StreamResult` hold a test's
  settings and counters; `tcp_listen`, `tcp_accept`, `tcp_connect`,
  `tcp_send` and `tcp_recv` set up and drive TCP data streams, checking the
  test cookie on accept. Setup failures raise `StreamError`, whose `code`
  names the failing step.
- `netperf3.udp`: `encode_header`/`decode_header` for the timestamp and
  sequence number at the start of each datagram; `udp_send` and `udp_recv`
  with loss, out-of-order and jitter accounting; `udp_listen`, `udp_accept`,
  `udp_connect` and `udp_buffercheck` for the connection handshake and
  socket buffer sizing.

## Installation

```
pip install .
```

## Examples

```python
from netperf3.units import unit_atoi, unit_format

unit_atoi("4G")              # 4294967296
unit_format(1024.0, "A")     # '1.00 KByte'
unit_format(1000.0, "k")     # '8.00 Kbit'
```

```python
from netperf3.timer import TimerQueue

fired = []
queue = TimerQueue()
queue.create(lambda data, now: fired.append(data), "tick", 3_000_000, False, None)
queue.run(None)          # runs every timer that is due
queue.timeout(None)      # seconds until the next timer, or None
```

```python
from netperf3.clock import Timestamp
from netperf3.udp import decode_header, encode_header

header = encode_header(Timestamp(1, 2), 3, False)   # 12 bytes
decode_header(header, False)                         # (Timestamp(secs=1, usecs=2), 3)
```

```python
from netperf3.util import make_cookie

cookie = make_cookie()   # 36 characters from a-z and 2-7
```

## What it does not do

There is no command-line program and no complete client or server. The
package does not exchange test parameters or results over a control
connection, schedule a test's duration or reporting intervals, or print
throughput reports; those are left to the program that uses these pieces.

## Running the tests

```
pip install .[test]
pytest
```