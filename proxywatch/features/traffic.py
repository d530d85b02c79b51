"""Human-readable traffic magnitudes (base 1024)."""

from typing import Union


TRAFFIC_UNITS = ['B', 'KB', 'MB', 'GB', 'TB']

Number = Union[int, float]


class TrafficDecodeError(ValueError):
    """Raised when a traffic string cannot be decoded back into bytes."""


def format_traffic(num: Number) -> str:
    """
    Format a byte count as a magnitude string.

    Divides by 1024 while the value is at least 1024 and a larger unit
    remains. Bytes render as an integer, larger units with two decimals.

    Args:
        num: Byte count

    Returns:
        Formatted string, e.g. '512 B' or '1.00 KB'
    """
    idx = 0
    value = float(num)
    while value >= 1024 and idx < len(TRAFFIC_UNITS) - 1:
        value /= 1024
        idx += 1

    if idx == 0:
        return f"{int(value)} {TRAFFIC_UNITS[idx]}"
    return f"{value:.2f} {TRAFFIC_UNITS[idx]}"


def parse_traffic(text: str) -> Number:
    """
    Decode a magnitude string produced by format_traffic.

    Args:
        text: String such as '10.00 KB' (unit is case-insensitive)

    Returns:
        Byte count (int when the result is whole)

    Raises:
        TrafficDecodeError: If the number or unit is not recognised
    """
    parts = text.strip().split(' ') if isinstance(text, str) else []
    if len(parts) != 2:
        raise TrafficDecodeError(f"Malformed traffic value: {text!r}")

    literal, unit = parts
    try:
        exponent = TRAFFIC_UNITS.index(unit.upper())
    except ValueError:
        raise TrafficDecodeError(f"Unknown traffic unit: {unit!r}") from None

    try:
        value = float(literal)
    except ValueError:
        raise TrafficDecodeError(f"Malformed traffic number: {literal!r}") from None

    result = value * (1024 ** exponent)
    if result.is_integer():
        return int(result)
    return result


def format_speed(upload: Number, download: Number) -> str:
    """Render an upload/download rate pair, '-' when idle."""
    if upload == 0 and download == 0:
        return '-'
    if upload != 0 and download != 0:
        return f"↑ {format_traffic(upload)}/s ↓ {format_traffic(download)}/s"
    if upload != 0:
        return f"↑ {format_traffic(upload)}/s"
    return f"↓ {format_traffic(download)}/s"
