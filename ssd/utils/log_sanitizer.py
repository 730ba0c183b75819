"""
Log sanitization utilities.

Remote output (docker stderr, compose ps, env files) ends up in log lines;
these helpers keep it to a single bounded line and hide secrets.
"""

import re
from typing import Any

_CONTROL_RUN = re.compile(r"[\x00-\x1f\x7f-\x9f]+")


def sanitize_for_log(value: Any, max_length: int = 200) -> str:
    """
    Collapse a value to one bounded log line.

    Each run of control characters (newlines included) becomes a single
    space, so multi-line docker stderr cannot forge extra log lines.

    Args:
        value: Anything; exceptions are logged through their str()
        max_length: Characters kept before "..." is appended
    """
    sanitized = _CONTROL_RUN.sub(" ", str(value)).strip()

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized


def mask_env_value(line: str) -> str:
    """
    Mask the value part of a KEY=VALUE line.

    Keeps the first two characters of values longer than eight characters so
    an operator can still tell two secrets apart.

    Args:
        line: A single .env line

    Returns:
        The line with its value masked; comments and blank lines unchanged
    """
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return line

    key, value = stripped.split("=", 1)
    if len(value) > 8:
        return f"{key}={value[:2]}{'*' * 6}"
    return f"{key}={'*' * len(value)}"
