"""
Forge Path Resolution
=====================

Central module for resolving paths to Forge-generated files.

Per-project runtime files live under ``project_dir / ".forge"``; user-wide
configuration (org command policy, project registry) lives under
``~/.forge``.  Both directories are created lazily by the ``ensure_*``
helpers, never by the ``get_*`` ones.
"""

from pathlib import Path

FORGE_DIRNAME = ".forge"

# ---------------------------------------------------------------------------
# .gitignore content written into every project .forge/ directory
# ---------------------------------------------------------------------------
_GITIGNORE_CONTENT = """\
# Forge runtime files
.claude_settings.hook.*.json
attachments/
"""


# ---------------------------------------------------------------------------
# User-wide config directory
# ---------------------------------------------------------------------------

def get_config_dir() -> Path:
    """Return ``~/.forge``.  Does NOT create it."""
    return Path.home() / FORGE_DIRNAME


def get_org_config_path() -> Path:
    """Return the org-level command policy file (``~/.forge/config.yaml``)."""
    return get_config_dir() / "config.yaml"


# ---------------------------------------------------------------------------
# Project .forge directory management
# ---------------------------------------------------------------------------

def get_forge_dir(project_dir: Path) -> Path:
    """Return the project's ``.forge`` directory path.  Does NOT create it."""
    return Path(project_dir) / FORGE_DIRNAME


def ensure_forge_dir(project_dir: Path) -> Path:
    """Create the project's ``.forge/`` directory (if needed) and write its ``.gitignore``.

    Returns:
        The path to the ``.forge`` directory.
    """
    forge_dir = get_forge_dir(project_dir)
    forge_dir.mkdir(parents=True, exist_ok=True)

    gitignore_path = forge_dir / ".gitignore"
    if not gitignore_path.exists():
        gitignore_path.write_text(_GITIGNORE_CONTENT, encoding="utf-8")

    return forge_dir


def get_project_config_path(project_dir: Path) -> Path:
    """Return the project-level command policy file."""
    return get_forge_dir(project_dir) / "allowed_commands.yaml"


def get_expand_prompt_path(project_dir: Path) -> Path:
    """Return the optional per-project override for the expansion system prompt."""
    return get_forge_dir(project_dir) / "prompts" / "expand_project.md"


def get_hook_settings_path(project_dir: Path, uuid_hex: str) -> Path:
    """Return the path for an ephemeral per-run hook settings file."""
    return get_forge_dir(project_dir) / f".claude_settings.hook.{uuid_hex}.json"


def get_attachments_dir(project_dir: Path) -> Path:
    """Return the directory user attachments are saved to.  Does NOT create it."""
    return get_forge_dir(project_dir) / "attachments"
