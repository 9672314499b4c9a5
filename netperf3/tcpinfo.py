"""Reading the kernel's TCP_INFO statistics for a connected socket."""

from __future__ import annotations

import socket
import struct
import sys
from dataclasses import dataclass
from typing import Optional

_BASE = struct.Struct("=8B24I")
_SND_WND = struct.Struct("=I")
_SND_WND_OFFSET = 228
_FULL_SIZE = _SND_WND_OFFSET + _SND_WND.size


@dataclass(frozen=True)
class TcpInfo:
    """The fields of the Linux ``struct tcp_info`` that are reported."""

    state: int
    ca_state: int
    retransmits: int
    probes: int
    backoff: int
    options: int
    snd_wscale: int
    rcv_wscale: int
    rto: int
    ato: int
    snd_mss: int
    rcv_mss: int
    unacked: int
    sacked: int
    lost: int
    retrans: int
    fackets: int
    last_data_sent: int
    last_ack_sent: int
    last_data_recv: int
    last_ack_recv: int
    pmtu: int
    rcv_ssthresh: int
    rtt: int
    rttvar: int
    snd_ssthresh: int
    snd_cwnd: int
    advmss: int
    reordering: int
    rcv_rtt: int
    rcv_space: int
    total_retrans: int
    snd_wnd: Optional[int] = None

    @classmethod
    def from_bytes(cls, data: bytes) -> TcpInfo:
        """Decode the raw option value returned by getsockopt(TCP_INFO)."""
        if len(data) < _BASE.size:
            raise ValueError(
                f"tcp_info needs at least {_BASE.size} bytes, got {len(data)}"
            )
        values = _BASE.unpack_from(data)
        head = values[:6]
        wscale = values[6]
        counters = values[8:]
        snd_wnd = None
        if len(data) >= _FULL_SIZE:
            (snd_wnd,) = _SND_WND.unpack_from(data, _SND_WND_OFFSET)
        return cls(*head, wscale & 0x0F, wscale >> 4, *counters, snd_wnd=snd_wnd)

    def total_retransmits(self) -> int:
        """Total number of retransmitted segments."""
        return self.total_retrans

    def snd_cwnd_bytes(self) -> int:
        """Congestion window in octets."""
        return self.snd_cwnd * self.snd_mss

    def snd_wnd_bytes(self) -> Optional[int]:
        """Peer's advertised send window in octets, if the kernel reports it."""
        return self.snd_wnd


def has_tcpinfo() -> bool:
    """Whether TCP_INFO can be read and decoded on this platform."""
    return sys.platform.startswith("linux") and hasattr(socket, "TCP_INFO")


def has_tcpinfo_retransmits() -> bool:
    """Whether TCP_INFO carries a total retransmission count here."""
    return has_tcpinfo()


def read_tcpinfo(sock) -> Optional[TcpInfo]:
    """Read TCP_INFO from ``sock``; None where the platform lacks it."""
    if not has_tcpinfo():
        return None
    raw = sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_INFO, _FULL_SIZE)
    return TcpInfo.from_bytes(raw)


def build_tcpinfo_message(info: TcpInfo) -> str:
    """Render the main TCP_INFO counters as a one-line report."""
    return (
        f"TCP_INFO: snd_cwnd={info.snd_cwnd} snd_ssthresh={info.snd_ssthresh} "
        f"rcv_ssthresh={info.rcv_ssthresh} unacked={info.unacked} "
        f"sacked={info.sacked} lost={info.lost} retrans={info.retrans} "
        f"fackets={info.fackets} rtt={info.rtt} reordering={info.reordering}"
    )