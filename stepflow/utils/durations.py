"""
Duration parsing for step wait directives.

Accepts the compact unit-suffixed form used in flow files: "300ms", "1.5s",
"2m", "1h30m", "-1s". A bare "0" is allowed; any other value needs a unit.
"""

import re

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str) -> float:
    """
    Parse a duration string into seconds.

    Args:
        value: Duration text such as "1m30s"

    Returns:
        Duration in seconds (may be negative)

    Raises:
        ValueError: If the text is not a valid duration
    """
    text = value.strip()
    original = text
    if not text:
        raise ValueError("invalid duration \"\"")

    sign = 1.0
    if text[0] in "+-":
        if text[0] == "-":
            sign = -1.0
        text = text[1:]

    if text == "0":
        return 0.0

    total = 0.0
    pos = 0
    while pos < len(text):
        match = _COMPONENT.match(text, pos)
        if not match:
            raise ValueError(f"invalid duration \"{original}\"")
        total += float(match.group(1)) * _UNITS[match.group(2)]
        pos = match.end()

    if pos == 0:
        raise ValueError(f"invalid duration \"{original}\"")

    return sign * total


def format_duration(seconds: float) -> str:
    """Human-readable duration used in wait log lines."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    minutes, secs = divmod(seconds, 60)
    if minutes >= 1:
        return f"{int(minutes)}m{secs:g}s"
    return f"{secs:g}s"
