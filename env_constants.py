"""
Shared Environment Constants
============================

Single source of truth for the environment variables Forge reads and the ones
it forwards to the agent process.  Imported by ``server/services`` (through
``chat_constants``) and by the process supervisor so the names and defaults
live in one place.

These allow Forge to use alternative API endpoints (Ollama, GLM, Vertex AI)
without affecting the user's global Claude Code settings.
"""

import logging
import os

logger = logging.getLogger(__name__)

API_ENV_VARS: list[str] = [
    # Core API configuration
    "ANTHROPIC_BASE_URL",              # Custom API endpoint (e.g., https://api.z.ai/api/anthropic)
    "ANTHROPIC_AUTH_TOKEN",            # API authentication token
    "ANTHROPIC_API_KEY",               # Direct API key
    "API_TIMEOUT_MS",                  # Request timeout in milliseconds
    # Model tier overrides
    "ANTHROPIC_DEFAULT_SONNET_MODEL",  # Model override for Sonnet
    "ANTHROPIC_DEFAULT_OPUS_MODEL",    # Model override for Opus
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",   # Model override for Haiku
    # Vertex AI configuration
    "CLAUDE_CODE_USE_VERTEX",          # Enable Vertex AI mode (set to "1")
    "CLOUD_ML_REGION",                 # GCP region (e.g., us-east5)
    "ANTHROPIC_VERTEX_PROJECT_ID",     # GCP project ID
]

# Forge settings
CLI_COMMAND_ENV = "FORGE_CLI_COMMAND"
AGENT_BACKEND_ENV = "FORGE_AGENT_BACKEND"
RUN_TIMEOUT_ENV = "FORGE_RUN_TIMEOUT_SECONDS"
LOG_LEVEL_ENV = "FORGE_LOG_LEVEL"
HOST_ENV = "FORGE_HOST"
PORT_ENV = "FORGE_PORT"

DEFAULT_CLI_COMMAND = "claude"
DEFAULT_AGENT_BACKEND = "cli"
DEFAULT_RUN_TIMEOUT_SECONDS = 30 * 60
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8888


def get_env_int(name: str, default: int) -> int:
    """Read a positive integer setting, falling back to ``default`` on bad input."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={value}, using {default}")
        return default
    return value


def get_forwarded_env() -> dict[str, str]:
    """Return the API_ENV_VARS that are actually set, for the agent process."""
    forwarded: dict[str, str] = {}
    for var in API_ENV_VARS:
        value = os.getenv(var)
        if value:
            forwarded[var] = value
    return forwarded
