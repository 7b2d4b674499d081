"""
Authentication Error Detection
==============================

Detects agent CLI authentication failures in streamed output so the session
can tell the user how to log in instead of showing a wall of raw errors.
"""

import re

# Patterns that indicate authentication errors from the agent CLI
AUTH_ERROR_PATTERNS = [
    r"not\s+logged\s+in",
    r"not\s+authenticated",
    r"authentication\s+(failed|required|error)",
    r"login\s+required",
    r"please\s+(run\s+)?['\"]?claude\s+login",
    r"unauthorized",
    r"invalid\s+(token|credential|api.?key)",
    r"expired\s+(token|session|credential)",
    r"could\s+not\s+authenticate",
    r"sign\s+in\s+(to|required)",
]

_AUTH_ERROR_RE = re.compile("|".join(f"(?:{p})" for p in AUTH_ERROR_PATTERNS), re.IGNORECASE)


def is_auth_error(text: str) -> bool:
    """
    Check if text contains agent CLI authentication error messages.

    Args:
        text: Output text to check

    Returns:
        True if any auth error pattern matches, False otherwise
    """
    if not text:
        return False
    return _AUTH_ERROR_RE.search(text) is not None


# Streamed to observers once per run when an auth error is seen
AUTH_ERROR_HELP = """
================================================================================
  AUTHENTICATION ERROR DETECTED
================================================================================

The agent CLI requires authentication to work.

To fix this, run:
  claude login

This will open a browser window to sign in.
After logging in, send your message again.
================================================================================
"""
