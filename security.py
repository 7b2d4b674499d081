"""
Command Security Policy
=======================

Allowlist validation for shell commands the coding agent wants to run.
Only explicitly permitted commands pass; everything else is denied.

``validate_command`` is pure: it takes a command line and a ``CommandPolicy``
and answers allow/deny without touching the filesystem.  Policies are built
by ``load_command_policy`` from the hardcoded defaults plus the optional org
(``~/.forge/config.yaml``) and project (``.forge/allowed_commands.yaml``)
YAML files.

The module doubles as a Claude Code ``PreToolUse`` hook::

    python security.py --hook        # tool call JSON on stdin, exit 2 blocks
    python security.py "rm -rf /"    # validate one command from the shell
"""

import argparse
import json
import logging
import os
import re
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TextIO

import yaml

from forge_paths import get_org_config_path, get_project_config_path

# Logger for security-related events (config problems, blocked commands)
logger = logging.getLogger(__name__)

# Regex pattern for valid pkill process names (no regex metacharacters allowed)
VALID_PROCESS_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")

# Leading token of a sub-command; anything else at the start is unparseable
LEADING_TOKEN_PATTERN = re.compile(r"^[a-zA-Z0-9_./-]+")

# +x, u+x, ug+x, a+x ...
CHMOD_EXEC_MODE_PATTERN = re.compile(r"^[ugoa]*\+x$")

# Sub-command separators; newlines end a command just like ';'
SEGMENT_SEPARATORS = frozenset("|&;\n\r")

MAX_PROJECT_COMMANDS = 100

# Allowed commands for development tasks
ALLOWED_COMMANDS = {
    # File inspection
    "ls",
    "cat",
    "head",
    "tail",
    "wc",
    "grep",
    "find",
    "file",
    "stat",
    # File operations
    "cp",
    "mkdir",
    "chmod",  # validated separately
    "mv",
    "rm",  # validated separately
    "touch",
    "ln",
    # Node.js development
    "npm",
    "npx",
    "pnpm",
    "node",
    # Python development
    "python",
    "python3",
    "pip",
    "pip3",
    # JVM development
    "java",
    "javac",
    "mvn",
    "gradle",
    # Version control
    "git",
    # Containers
    "docker",
    # Process management
    "ps",
    "lsof",
    "sleep",
    "kill",  # Kill by PID
    "pkill",  # validated separately
    # Network/API testing
    "curl",
    # Shell and environment
    "sh",
    "bash",
    "echo",
    "env",
    "export",
    "which",
    "pwd",
    "cd",
    # Script execution
    "init.sh",  # validated separately
}

# Commands that need additional validation even when in the allowlist
COMMANDS_NEEDING_EXTRA_VALIDATION = {"pkill", "chmod", "init.sh", "rm"}

# Commands that are NEVER allowed, not even through org or project config
BLOCKED_COMMANDS = {
    # Disk operations
    "dd",
    "mkfs",
    "fdisk",
    "parted",
    # System control
    "shutdown",
    "reboot",
    "poweroff",
    "halt",
    "init",
    # Ownership changes
    "chown",
    "chgrp",
    # System services
    "systemctl",
    "service",
    "launchctl",
    # Network security
    "iptables",
    "ufw",
}

# Commands that can reach outside the project; blocked like BLOCKED_COMMANDS
DANGEROUS_COMMANDS = {
    # Privilege escalation
    "sudo",
    "su",
    "doas",
    # Cloud CLIs (can modify production infrastructure)
    "aws",
    "gcloud",
    "az",
    # Container orchestration
    "kubectl",
    "docker-compose",
}

# Default pkill process names (dev servers and bundlers only)
DEFAULT_PKILL_PROCESSES = {
    "node",
    "npm",
    "npx",
    "vite",
    "next",
    "webpack",
    "esbuild",
}

# Numeric chmod modes accepted besides the +x forms
SAFE_CHMOD_MODES = {"755", "644"}


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one command line."""

    valid: bool
    message: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(True)

    @classmethod
    def deny(cls, message: str) -> "ValidationResult":
        return cls(False, message)


@dataclass(frozen=True)
class CommandPolicy:
    """
    Effective command policy.

    ``allowed`` may contain prefix patterns (``swift*``) and script paths
    (``./scripts/build.sh``) coming from config; ``blocked`` always wins.
    """

    allowed: frozenset = frozenset(ALLOWED_COMMANDS)
    blocked: frozenset = frozenset(BLOCKED_COMMANDS | DANGEROUS_COMMANDS)
    pkill_processes: frozenset = frozenset(DEFAULT_PKILL_PROCESSES)
    chmod_modes: frozenset = frozenset(SAFE_CHMOD_MODES)


DEFAULT_POLICY = CommandPolicy()


class CommandRejectedError(Exception):
    """Raised by ensure_command_allowed when a command fails validation."""

    def __init__(self, command: str, result: ValidationResult):
        super().__init__(result.message or "Command not allowed")
        self.command = command
        self.result = result


# ============================================================================
# Parsing
# ============================================================================

def split_command_segments(command_line: str) -> list[str]:
    """
    Split a command line into sub-commands on unquoted, unescaped ``|``, ``&``, ``;``.

    Separators inside single or double quotes, or preceded by a backslash,
    are part of the sub-command.  Empty segments (``&&``, ``;;``) are dropped.

    Raises:
        ValueError: if a quote is left unterminated
    """
    segments: list[str] = []
    current: list[str] = []
    quote: Optional[str] = None
    i = 0

    while i < len(command_line):
        ch = command_line[i]
        if ch == "\\" and quote != "'":
            current.append(command_line[i:i + 2])
            i += 2
            continue
        if quote:
            if ch == quote:
                quote = None
            current.append(ch)
        elif ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif ch in SEGMENT_SEPARATORS:
            segment = "".join(current).strip()
            if segment:
                segments.append(segment)
            current = []
        else:
            current.append(ch)
        i += 1

    if quote:
        raise ValueError(f"Unterminated {quote} quote")

    segment = "".join(current).strip()
    if segment:
        segments.append(segment)
    return segments


def extract_command_name(segment: str) -> Optional[str]:
    """
    Return the command name of a sub-command, or None if it cannot be parsed.

    Path-qualified commands are reduced to their final segment, so
    ``/usr/bin/git`` and ``./node_modules/.bin/vite`` become ``git``/``vite``.
    """
    match = LEADING_TOKEN_PATTERN.match(segment.strip())
    if not match:
        return None
    name = match.group(0).rsplit("/", 1)[-1]
    return name or None


# ============================================================================
# Extra-scrutiny checks
# ============================================================================

def validate_pkill_command(segment: str, allowed_processes: frozenset) -> ValidationResult:
    """
    Validate pkill commands - only allow killing dev-related processes.

    Every non-flag argument must name a permitted process.  For ``-f``
    patterns the first word is taken as the process name, e.g.
    ``pkill -f 'node server.js'`` targets ``node``.
    """
    try:
        tokens = shlex.split(segment)
    except ValueError:
        return ValidationResult.deny("Could not parse pkill command")

    args = [token for token in tokens[1:] if not token.startswith("-")]
    if not args:
        return ValidationResult.deny("pkill requires a process name")

    targets = [arg.split()[0] if arg.split() else arg for arg in args]
    if all(target in allowed_processes for target in targets):
        return ValidationResult.ok()
    return ValidationResult.deny(
        f"pkill only allowed for dev processes: {', '.join(sorted(allowed_processes))}"
    )


def validate_chmod_command(segment: str, safe_modes: frozenset) -> ValidationResult:
    """Validate chmod commands - only +x variants and a few safe numeric modes."""
    try:
        tokens = shlex.split(segment)
    except ValueError:
        return ValidationResult.deny("Could not parse chmod command")

    mode = None
    files = []
    for token in tokens[1:]:
        if token.startswith("-"):
            return ValidationResult.deny("chmod flags are not allowed")
        if mode is None:
            mode = token
        else:
            files.append(token)

    if mode is None:
        return ValidationResult.deny("chmod requires a mode")
    if not files:
        return ValidationResult.deny("chmod requires at least one file")
    if CHMOD_EXEC_MODE_PATTERN.match(mode) or mode in safe_modes:
        return ValidationResult.ok()
    return ValidationResult.deny(f"chmod only allowed with +x or safe modes, got: {mode}")


def validate_init_script(segment: str) -> ValidationResult:
    """Validate init.sh execution - only ``./init.sh`` or ``<relative-dir>/init.sh``."""
    try:
        tokens = shlex.split(segment)
    except ValueError:
        return ValidationResult.deny("Could not parse init script command")

    script = tokens[0] if tokens else ""
    if script.endswith("/init.sh") and not script.startswith("/"):
        return ValidationResult.ok()
    return ValidationResult.deny(f"init.sh must be called as ./init.sh, got: {script}")


def validate_rm_command(segment: str) -> ValidationResult:
    """Validate rm commands - never a recursive delete of the filesystem root."""
    try:
        tokens = shlex.split(segment)
    except ValueError:
        return ValidationResult.deny("Could not parse rm command")

    recursive = False
    targets = []
    end_of_flags = False
    for token in tokens[1:]:
        if end_of_flags or not token.startswith("-") or token == "-":
            targets.append(token)
        elif token == "--":
            end_of_flags = True
        elif token == "--no-preserve-root":
            return ValidationResult.deny("rm --no-preserve-root is not allowed")
        elif token == "--recursive" or (not token.startswith("--") and ("r" in token or "R" in token)):
            recursive = True

    if recursive and any(_is_filesystem_root(target) for target in targets):
        return ValidationResult.deny("rm -rf / is not allowed")
    return ValidationResult.ok()


def _is_filesystem_root(target: str) -> bool:
    stripped = target.rstrip("/*.")
    return target.startswith("/") and stripped == ""


_EXTRA_CHECKS: dict[str, Callable[[str, CommandPolicy], ValidationResult]] = {
    "pkill": lambda segment, policy: validate_pkill_command(segment, policy.pkill_processes),
    "chmod": lambda segment, policy: validate_chmod_command(segment, policy.chmod_modes),
    "init.sh": lambda segment, policy: validate_init_script(segment),
    "rm": lambda segment, policy: validate_rm_command(segment),
}


# ============================================================================
# Validation entry points
# ============================================================================

def matches_pattern(command: str, pattern: str) -> bool:
    """
    Check if a command matches a pattern.

    Supports:
    - Exact match: "swift"
    - Prefix wildcard: "swift*" matches "swift", "swiftc", "swiftformat"
    - Local script paths: "./scripts/build.sh" or "scripts/test.sh"
    """
    # A bare wildcard would match everything
    if pattern == "*":
        return False

    if command == pattern:
        return True

    if pattern.endswith("*"):
        prefix = pattern[:-1]
        if not prefix:
            return False
        return command.startswith(prefix)

    if "/" in pattern:
        return command == os.path.basename(pattern)

    return False


def is_command_allowed(command: str, allowed_commands) -> bool:
    """Check if a command is allowed (supports patterns)."""
    if command in allowed_commands:
        return True
    return any(matches_pattern(command, pattern) for pattern in allowed_commands)


def validate_command(command_line: Optional[str], policy: CommandPolicy = DEFAULT_POLICY) -> ValidationResult:
    """
    Decide whether a shell command line may run under ``policy``.

    Every sub-command must pass; the first failure's message is returned.
    Nothing is executed.
    """
    if command_line is None or not command_line.strip():
        return ValidationResult.deny("Empty command")

    try:
        segments = split_command_segments(command_line)
    except ValueError:
        return ValidationResult.deny(f"Could not parse command: {command_line}")

    if not segments:
        return ValidationResult.deny("Empty command")

    for segment in segments:
        name = extract_command_name(segment)
        if name is None:
            return ValidationResult.deny(f"Could not parse command: {segment}")

        if name in policy.blocked:
            return ValidationResult.deny(f"Command is blocked: {name}")

        if not is_command_allowed(name, policy.allowed):
            return ValidationResult.deny(f"Command not allowed: {name}")

        check = _EXTRA_CHECKS.get(name)
        if check is not None:
            result = check(segment, policy)
            if not result.valid:
                return result

    return ValidationResult.ok()


def ensure_command_allowed(command_line: Optional[str], policy: CommandPolicy = DEFAULT_POLICY) -> None:
    """Raise CommandRejectedError unless ``command_line`` passes validation."""
    result = validate_command(command_line, policy)
    if not result.valid:
        raise CommandRejectedError(command_line or "", result)


# ============================================================================
# Org / project configuration
# ============================================================================

def _validate_command_list(commands: list, config_path: Path, field_name: str) -> bool:
    """
    Validate a list of command entries from a YAML config.

    Each entry must be a dict with a non-empty string 'name' field.
    """
    if not isinstance(commands, list):
        logger.warning(f"Config at {config_path}: '{field_name}' must be a list")
        return False
    for i, cmd in enumerate(commands):
        if not isinstance(cmd, dict):
            logger.warning(f"Config at {config_path}: {field_name}[{i}] must be a dict")
            return False
        if not isinstance(cmd.get("name"), str) or not cmd["name"].strip():
            logger.warning(f"Config at {config_path}: {field_name}[{i}] has missing or invalid 'name'")
            return False
    return True


def _validate_pkill_processes(config: dict, config_path: Path) -> Optional[list[str]]:
    """
    Validate and normalize pkill_processes from a YAML config.

    Returns:
        Normalized list of process names (empty if the key is absent),
        or None if validation fails.
    """
    if "pkill_processes" not in config:
        return []

    processes = config["pkill_processes"]
    if not isinstance(processes, list):
        logger.warning(f"Config at {config_path}: 'pkill_processes' must be a list")
        return None

    normalized = []
    for i, proc in enumerate(processes):
        if not isinstance(proc, str):
            logger.warning(f"Config at {config_path}: pkill_processes[{i}] must be a string")
            return None
        proc = proc.strip()
        if not proc or not VALID_PROCESS_NAME_PATTERN.fullmatch(proc):
            logger.warning(f"Config at {config_path}: pkill_processes[{i}] has invalid value '{proc}'")
            return None
        normalized.append(proc)
    return normalized


def _load_yaml_config(config_path: Path, label: str) -> Optional[dict]:
    """Read a versioned YAML config file, or None if it is absent or unusable."""
    if not config_path.exists():
        return None

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {label} config at {config_path}: {e}")
        return None
    except OSError as e:
        logger.warning(f"Failed to read {label} config at {config_path}: {e}")
        return None

    if not config:
        logger.warning(f"{label.capitalize()} config at {config_path} is empty")
        return None
    if not isinstance(config, dict):
        logger.warning(f"{label.capitalize()} config at {config_path} must be a YAML dictionary")
        return None
    if "version" not in config:
        logger.warning(f"{label.capitalize()} config at {config_path} missing required 'version' field")
        return None

    normalized = _validate_pkill_processes(config, config_path)
    if normalized is None:
        return None
    config["pkill_processes"] = normalized
    return config


def load_org_config() -> Optional[dict]:
    """
    Load organization-level config from ~/.forge/config.yaml.

    Returns:
        Dict with parsed org config, or None if file doesn't exist or is invalid
    """
    config_path = get_org_config_path()
    config = _load_yaml_config(config_path, "org")
    if config is None:
        return None

    if "allowed_commands" in config:
        if not _validate_command_list(config["allowed_commands"], config_path, "allowed_commands"):
            return None

    if "blocked_commands" in config:
        blocked = config["blocked_commands"]
        if not isinstance(blocked, list) or not all(isinstance(cmd, str) for cmd in blocked):
            logger.warning(f"Org config at {config_path}: 'blocked_commands' must be a list of strings")
            return None

    return config


def load_project_commands(project_dir: Path) -> Optional[dict]:
    """
    Load allowed commands from the project's .forge/allowed_commands.yaml.

    Returns:
        Dict with parsed YAML config, or None if file doesn't exist or is invalid
    """
    config_path = get_project_config_path(Path(project_dir).resolve())
    config = _load_yaml_config(config_path, "project")
    if config is None:
        return None

    commands = config.get("commands", [])
    if isinstance(commands, list) and len(commands) > MAX_PROJECT_COMMANDS:
        logger.warning(
            f"Project config at {config_path} exceeds {MAX_PROJECT_COMMANDS} command limit "
            f"({len(commands)} commands)"
        )
        return None

    if not _validate_command_list(commands, config_path, "commands"):
        return None

    return config


def validate_project_command(cmd_config: dict) -> tuple[bool, str]:
    """
    Validate a single command entry from org or project config.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(cmd_config, dict):
        return False, "Command must be a dict"

    name = cmd_config.get("name")
    if not isinstance(name, str) or not name:
        return False, "Command name must be a non-empty string"

    if name == "*":
        return False, "Bare wildcard '*' is not allowed (matches all commands)"

    base_cmd = os.path.basename(name.rstrip("*"))
    if base_cmd in BLOCKED_COMMANDS or base_cmd in DANGEROUS_COMMANDS:
        return False, f"Command '{name}' is in the blocklist and cannot be allowed"

    if "description" in cmd_config and not isinstance(cmd_config["description"], str):
        return False, "Description must be a string"

    return True, ""


def load_command_policy(project_dir: Optional[Path] = None) -> CommandPolicy:
    """
    Build the effective policy for a project.

    Hierarchy (highest to lowest priority):
    1. BLOCKED_COMMANDS / DANGEROUS_COMMANDS (hardcoded) - always blocked
    2. Org blocked_commands - cannot be unblocked
    3. Org allowed_commands - adds to the defaults
    4. Project commands - adds to defaults + org
    """
    allowed = set(ALLOWED_COMMANDS)
    blocked = BLOCKED_COMMANDS | DANGEROUS_COMMANDS
    processes = set(DEFAULT_PKILL_PROCESSES)

    org_config = load_org_config()
    if org_config:
        blocked |= set(org_config.get("blocked_commands", []))
        for cmd_config in org_config.get("allowed_commands", []):
            valid, error = validate_project_command(cmd_config)
            if valid:
                allowed.add(cmd_config["name"])
            else:
                logger.warning(f"Ignoring org command entry: {error}")
        processes |= set(org_config["pkill_processes"])

    if project_dir:
        project_config = load_project_commands(Path(project_dir))
        if project_config:
            for cmd_config in project_config.get("commands", []):
                valid, error = validate_project_command(cmd_config)
                if valid:
                    allowed.add(cmd_config["name"])
                else:
                    logger.warning(f"Ignoring project command entry: {error}")
            processes |= set(project_config["pkill_processes"])

    # Blocklist takes precedence
    allowed -= blocked

    return CommandPolicy(
        allowed=frozenset(allowed),
        blocked=frozenset(blocked),
        pkill_processes=frozenset(processes),
    )


# ============================================================================
# Agent hooks
# ============================================================================

async def bash_security_hook(input_data, tool_use_id=None, context=None):
    """
    Pre-tool-use hook for the Claude Agent SDK that validates bash commands.

    Args:
        input_data: Dict containing tool_name and tool_input
        tool_use_id: Optional tool use ID
        context: Optional context dict with 'project_dir' key

    Returns:
        Empty dict to allow, or {"decision": "block", "reason": "..."} to block
    """
    if input_data.get("tool_name") != "Bash":
        return {}

    command = input_data.get("tool_input", {}).get("command", "")
    if not command:
        return {}

    project_dir = None
    if context and isinstance(context, dict) and context.get("project_dir"):
        project_dir = Path(context["project_dir"])

    result = validate_command(command, load_command_policy(project_dir))
    if result.valid:
        return {}

    logger.info(f"Blocked agent command {command!r}: {result.message}")
    return {"decision": "block", "reason": result.message}


def build_hook_settings(python_executable: Optional[str] = None) -> dict:
    """Return Claude Code settings that route every Bash tool call through ``--hook``."""
    python = python_executable or sys.executable
    script = Path(__file__).resolve()
    return {
        "hooks": {
            "PreToolUse": [
                {
                    "matcher": "Bash",
                    "hooks": [{"type": "command", "command": f'"{python}" "{script}" --hook'}],
                }
            ]
        }
    }


def run_hook(stdin: TextIO, stderr: TextIO) -> int:
    """
    Command-hook entry point.

    Reads the tool call JSON from ``stdin``.  Exit code 2 with the reason on
    ``stderr`` blocks the call; unreadable input is blocked too.
    """
    try:
        payload = json.load(stdin)
    except json.JSONDecodeError as e:
        print(f"Could not read hook input: {e}", file=stderr)
        return 2

    if not isinstance(payload, dict):
        print("Could not read hook input: expected a JSON object", file=stderr)
        return 2

    if payload.get("tool_name") != "Bash":
        return 0

    tool_input = payload.get("tool_input") or {}
    command = tool_input.get("command", "") if isinstance(tool_input, dict) else ""
    cwd = payload.get("cwd")

    result = validate_command(command, load_command_policy(Path(cwd) if cwd else None))
    if result.valid:
        return 0

    print(result.message, file=stderr)
    return 2


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Validate shell commands against the Forge command policy")
    parser.add_argument("command", nargs="?", help="Command line to validate")
    parser.add_argument("--hook", action="store_true", help="Run as a PreToolUse command hook (JSON on stdin)")
    parser.add_argument("--project-dir", type=Path, default=None, help="Project whose config extends the policy")
    args = parser.parse_args(argv)

    if args.hook:
        return run_hook(sys.stdin, sys.stderr)

    if args.command is None:
        parser.error("a command is required unless --hook is given")

    result = validate_command(args.command, load_command_policy(args.project_dir))
    if result.valid:
        print("ALLOWED")
        return 0
    print(f"BLOCKED: {result.message}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
