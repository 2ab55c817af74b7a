"""Parsing of human-friendly sizes and durations for the CLIs."""

import re

SIZE_MULTIPLIERS = {"b": 1, "kb": 1000, "mb": 1000**2, "gb": 1000**3,
                    "kib": 1024, "mib": 1024**2, "gib": 1024**3}
DURATION_MULTIPLIERS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_size(s):
    """Parse a size like '10mb', '64KiB' or '1000' into bytes.

    Returns None when the string is not a size.
    """
    m = re.match(r'^(\d+(?:\.\d+)?)\s*([a-z]*)$', s.strip().lower())
    if not m:
        return None
    num = float(m.group(1))
    unit = m.group(2) or "b"
    if unit not in SIZE_MULTIPLIERS:
        return None
    return int(num * SIZE_MULTIPLIERS[unit])


def parse_duration(s):
    """Parse a duration like '30s', '500ms', '2m' or '1.5' (seconds) into seconds.

    Returns None when the string is not a duration.
    """
    m = re.match(r'^(\d+(?:\.\d+)?)\s*([a-z]*)$', s.strip().lower())
    if not m:
        return None
    unit = m.group(2) or "s"
    if unit not in DURATION_MULTIPLIERS:
        return None
    return float(m.group(1)) * DURATION_MULTIPLIERS[unit]
