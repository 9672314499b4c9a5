"""Building blocks for TCP and UDP network throughput testing."""

__version__ = "0.1.0"

__all__ = ["clock", "units", "timer", "tcpinfo", "util", "net", "tcp", "udp"]