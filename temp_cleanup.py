"""
Temp Cleanup Module
===================

Removes transient files the agent CLI leaves behind.

Two scopes:

- ``cleanup_project_temp_files``: the project working directory, before and
  after every agent run.  The CLI drops ``claude-*-cwd`` marker files there,
  and on Windows a stray redirect can create a file literally named ``nul``,
  which ordinary deletion cannot remove.
- ``cleanup_stale_temp``: the system temp directory at server startup.  Only
  items older than an hour are deleted so running agents are not disturbed.

Failures are logged and swallowed; cleanup never fails a run.
"""

import logging
import subprocess
import sys
import tempfile
import time
from pathlib import Path

logger = logging.getLogger(__name__)

# Max age in seconds before a system temp item is considered stale (1 hour)
MAX_AGE_SECONDS = 3600

# File patterns to clean up in the system temp dir (glob patterns)
FILE_PATTERNS = [
    "claude-*-cwd",   # Claude CLI working directory temp files
]

# Windows device names that cannot be deleted through the normal path APIs
WINDOWS_RESERVED_NAMES = {"nul"}

RESERVED_DELETE_TIMEOUT_SECONDS = 10


def is_transient_agent_file(name: str) -> bool:
    """True for ``claude-*-cwd`` markers and reserved-name files like ``nul``."""
    lowered = name.lower()
    return ("claude-" in lowered and lowered.endswith("-cwd")) or lowered in WINDOWS_RESERVED_NAMES


def cleanup_project_temp_files(project_dir: Path) -> int:
    """
    Delete transient agent files from the top level of ``project_dir``.

    Returns:
        Number of files deleted
    """
    project_dir = Path(project_dir)
    if not project_dir.is_dir():
        return 0

    try:
        candidates = [item for item in project_dir.iterdir() if is_transient_agent_file(item.name)]
    except OSError as e:
        logger.warning(f"Failed to list {project_dir} for temp cleanup: {e}")
        return 0

    deleted = 0
    for item in candidates:
        try:
            if sys.platform == "win32" and item.name.lower() in WINDOWS_RESERVED_NAMES:
                _delete_windows_reserved_file(item)
            else:
                item.unlink(missing_ok=True)
            deleted += 1
            logger.debug(f"Deleted transient agent file: {item}")
        except OSError as e:
            logger.warning(f"Failed to delete transient agent file {item}: {e}")

    return deleted


def _delete_windows_reserved_file(path: Path) -> None:
    """
    Delete a file with a reserved device name via the ``\\\\.\\`` namespace.

    Falls back to a plain unlink if ``del`` fails or hangs.
    """
    target = "\\\\.\\" + str(path.resolve())
    try:
        result = subprocess.run(
            ["cmd.exe", "/c", "del", "/f", "/q", target],
            capture_output=True,
            timeout=RESERVED_DELETE_TIMEOUT_SECONDS,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
        if result.returncode == 0 and not path.exists():
            return
        logger.debug(f"del exited {result.returncode} for {target}, falling back to unlink")
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"del failed for {target}: {e}")
    path.unlink(missing_ok=True)


def cleanup_stale_temp(max_age_seconds: int = MAX_AGE_SECONDS) -> dict:
    """
    Clean up stale agent files in the system temp directory.

    Args:
        max_age_seconds: Maximum age in seconds before an item is deleted.

    Returns:
        Dictionary with cleanup statistics:
        - files_deleted: Number of files deleted
        - bytes_freed: Approximate bytes freed
        - errors: List of error messages (for debugging, not fatal)
    """
    temp_dir = Path(tempfile.gettempdir())
    cutoff_time = time.time() - max_age_seconds

    stats = {
        "files_deleted": 0,
        "bytes_freed": 0,
        "errors": [],
    }

    for pattern in FILE_PATTERNS:
        for item in temp_dir.glob(pattern):
            if not item.is_file():
                continue
            try:
                item_stat = item.stat()
                if item_stat.st_mtime < cutoff_time:
                    item.unlink(missing_ok=True)
                    stats["files_deleted"] += 1
                    stats["bytes_freed"] += item_stat.st_size
                    logger.debug(f"Deleted temp file: {item}")
            except OSError as e:
                stats["errors"].append(f"Failed to delete {item}: {e}")
                logger.debug(f"Failed to delete {item}: {e}")

    if stats["files_deleted"] > 0:
        logger.info(f"Temp cleanup: {stats['files_deleted']} files, {stats['bytes_freed']} bytes freed")

    return stats


if __name__ == "__main__":
    # Allow running directly for manual cleanup
    logging.basicConfig(level=logging.DEBUG)
    print("Running temp cleanup...")
    stats = cleanup_stale_temp()
    print(f"Cleanup complete: {stats['files_deleted']} files, {stats['bytes_freed']} bytes freed")
    if len(sys.argv) > 1:
        removed = cleanup_project_temp_files(Path(sys.argv[1]))
        print(f"Project cleanup: {removed} files removed from {sys.argv[1]}")
    if stats["errors"]:
        print(f"Errors (non-fatal): {len(stats['errors'])}")
