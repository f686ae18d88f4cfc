import re

# e.g., "20s", "1500ms", "1m30s", "2h", "  5m  "
DELAY_RE = re.compile(
    r"(?i)^\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m(?!s))?\s*(?:(\d+(?:\.\d+)?)\s*s)?\s*(?:(\d+)\s*ms)?\s*$"
)


def parse_delay_to_seconds(s: str) -> float:
    """
    Parse delay strings like '20s', '1500ms', '1m30s', '0.5s', '2h'.
    Returns total seconds (float). Raises ValueError on bad input or zero.
    """
    if not s or not s.strip():
        raise ValueError("delay string is empty")
    m = DELAY_RE.match(s)
    if not m or not any(m.groups()):
        raise ValueError(f"Invalid delay format: {s!r}")
    h, m_, s_, ms = m.groups()
    total = 0.0
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += float(s_)
    if ms: total += int(ms) / 1000
    if total <= 0:
        raise ValueError("delay must be > 0 seconds")
    return total
