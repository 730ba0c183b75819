"""
Parsing of Docker-style duration strings ("30s", "1m30s", "500ms", "2h").
"""

import re
from typing import Union

_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001, "us": 0.000001}
_TOKEN = re.compile(r"(\d+(?:\.\d+)?)(ms|us|h|m|s)")


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Convert a duration to seconds.

    Bare numbers are taken as seconds.

    Args:
        value: Duration such as "30s", "1m30s" or 45

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the string is not a valid duration
    """
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"duration cannot be negative: {value}")
        return float(value)

    text = value.strip()
    if not text:
        raise ValueError("duration cannot be empty")
    if re.fullmatch(r"\d+(\.\d+)?", text):
        return float(text)

    total = 0.0
    pos = 0
    for match in _TOKEN.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {value!r}")
    return total
