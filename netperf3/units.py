"""Parsing and formatting of quantities with kilo/mega/giga/tera suffixes."""

from __future__ import annotations

import re

KILO_UNIT = 1024.0
MEGA_UNIT = 1024.0 * 1024.0
GIGA_UNIT = 1024.0 * 1024.0 * 1024.0
TERA_UNIT = 1024.0 * 1024.0 * 1024.0 * 1024.0

KILO_RATE_UNIT = 1000.0
MEGA_RATE_UNIT = 1000.0 * 1000.0
GIGA_RATE_UNIT = 1000.0 * 1000.0 * 1000.0
TERA_RATE_UNIT = 1000.0 * 1000.0 * 1000.0 * 1000.0

_BINARY_FACTORS = {"k": KILO_UNIT, "m": MEGA_UNIT, "g": GIGA_UNIT, "t": TERA_UNIT}
_RATE_FACTORS = {
    "k": KILO_RATE_UNIT,
    "m": MEGA_RATE_UNIT,
    "g": GIGA_RATE_UNIT,
    "t": TERA_RATE_UNIT,
}

_CONVERSION_BYTES = (
    1.0,
    1.0 / 1024,
    1.0 / 1024 / 1024,
    1.0 / 1024 / 1024 / 1024,
    1.0 / 1024 / 1024 / 1024 / 1024,
)
_CONVERSION_BITS = (
    1.0,
    1.0 / 1000,
    1.0 / 1000 / 1000,
    1.0 / 1000 / 1000 / 1000,
    1.0 / 1000 / 1000 / 1000 / 1000,
)
_LABEL_BYTE = ("Byte", "KByte", "MByte", "GByte", "TByte")
_LABEL_BIT = ("bit", "Kbit", "Mbit", "Gbit", "Tbit")
_FIXED_CONV = {"B": 0, "K": 1, "M": 2, "G": 3, "T": 4}
_TERA_CONV = 4

_HEX_NUMBER = re.compile(
    r"\s*([+-]?0[xX](?:[0-9a-fA-F]+\.?[0-9a-fA-F]*|\.[0-9a-fA-F]+)(?:[pP][+-]?\d+)?)"
)
_DEC_NUMBER = re.compile(
    r"\s*([+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf(?:inity)?|nan))",
    re.IGNORECASE,
)


def _scan(s: str) -> tuple[float, str]:
    """Read a leading number and the single character that follows it."""
    if s is None:
        raise TypeError("expected a string, got None")
    match = _HEX_NUMBER.match(s)
    if match:
        value = float.fromhex(match.group(1))
    else:
        match = _DEC_NUMBER.match(s)
        if not match:
            raise ValueError(f"no number found in {s!r}")
        value = float(match.group(1))
    rest = s[match.end():]
    return value, rest[:1]


def _scaled(s: str, factors: dict[str, float]) -> float:
    value, suffix = _scan(s)
    return value * factors.get(suffix.lower(), 1.0)


def unit_atof(s: str) -> float:
    """Parse a number with an optional binary [KMGT] suffix."""
    return _scaled(s, _BINARY_FACTORS)


def unit_atof_rate(s: str) -> float:
    """Parse a number with an optional decimal [KMGT] suffix."""
    return _scaled(s, _RATE_FACTORS)


def unit_atoi(s: str) -> int:
    """Parse a number with a binary [KMGT] suffix, truncated to an integer."""
    return int(unit_atof(s))


def unit_format(num: float, fmt: str) -> str:
    """Format a byte count with a Byte or bit label.

    Upper-case formats (B, K, M, G, T, A) give bytes; lower-case ones give
    bits. ``A``/``a`` or any unknown format picks the unit adaptively.
    """
    upper = fmt.isupper()
    if not upper:
        num *= 8
    conv = _FIXED_CONV.get(fmt.upper())
    if conv is None:
        step = 1024.0 if upper else 1000.0
        scaled = num
        conv = 0
        while scaled >= step and conv < _TERA_CONV:
            scaled /= step
            conv += 1

    if upper:
        num *= _CONVERSION_BYTES[conv]
        label = _LABEL_BYTE[conv]
    else:
        num *= _CONVERSION_BITS[conv]
        label = _LABEL_BIT[conv]

    if num < 9.995:
        return "%4.2f %s" % (num, label)
    if num < 99.95:
        return "%4.1f %s" % (num, label)
    return "%4.0f %s" % (num, label)