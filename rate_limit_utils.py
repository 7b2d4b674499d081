"""
Rate Limit Utilities
====================

Detection of upstream quota exhaustion in agent output.

A bare "429" anywhere in a line counts as a rate limit.  That is broad and can
fire on unrelated log text (a port number, a line count), but it matches how
the agent CLI reports HTTP 429 responses, so it is kept.
"""

import re
from typing import Optional

RATE_LIMIT_SIGNATURES = [
    "rate limit",
    "rate_limit",
    "token limit",
    "too many requests",
    "429",
    "quota exceeded",
]

# "retry after 30 seconds", "Retry-After: 30", "try again in 30s"
_RETRY_AFTER_RE = re.compile(
    r"(?:retry[-_ ]after|try again in)[:\s]*(\d+)\s*(s|sec|secs|seconds?|m|min|mins|minutes?)?",
    re.IGNORECASE,
)

MAX_RETRY_DELAY_SECONDS = 60 * 60


def is_rate_limit_error(text: str) -> bool:
    """Return True if ``text`` carries a rate-limit or quota signature (case-insensitive)."""
    if not text:
        return False
    lowered = text.lower()
    return any(signature in lowered for signature in RATE_LIMIT_SIGNATURES)


def parse_retry_after(text: str) -> Optional[int]:
    """
    Extract a retry delay in seconds from a rate-limit message.

    Returns:
        Seconds to wait, clamped to one hour, or None if no hint is present
    """
    if not text:
        return None
    match = _RETRY_AFTER_RE.search(text)
    if not match:
        return None
    seconds = int(match.group(1))
    unit = (match.group(2) or "s").lower()
    if unit.startswith("m"):
        seconds *= 60
    return clamp_retry_delay(seconds)


def clamp_retry_delay(seconds: int) -> int:
    return max(1, min(seconds, MAX_RETRY_DELAY_SECONDS))
