#!/usr/bin/env python3
"""
Security Policy Tests
=====================

Tests for the bash command validation logic and its YAML configuration.
Run with: python test_security.py  (or pytest)
"""

import asyncio
import io
import json
import os
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path

from security import (
    DEFAULT_POLICY,
    CommandPolicy,
    CommandRejectedError,
    bash_security_hook,
    build_hook_settings,
    ensure_command_allowed,
    extract_command_name,
    load_command_policy,
    load_org_config,
    load_project_commands,
    main as security_main,
    matches_pattern,
    run_hook,
    split_command_segments,
    validate_chmod_command,
    validate_command,
    validate_init_script,
    validate_pkill_command,
    validate_project_command,
    validate_rm_command,
)


@contextmanager
def temporary_home(home_path):
    """
    Context manager to temporarily set HOME (and Windows equivalents).

    Saves original environment variables and restores them on exit,
    even if an exception occurs.
    """
    saved_env = {
        "HOME": os.environ.get("HOME"),
        "USERPROFILE": os.environ.get("USERPROFILE"),
    }

    try:
        os.environ["HOME"] = str(home_path)
        if sys.platform == "win32":
            os.environ["USERPROFILE"] = str(home_path)
        yield
    finally:
        for key, value in saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


def write_project_config(project_dir: Path, content: str) -> Path:
    config_dir = project_dir / ".forge"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "allowed_commands.yaml"
    config_path.write_text(content)
    return config_path


def write_org_config(home_dir: Path, content: str) -> Path:
    config_dir = home_dir / ".forge"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "config.yaml"
    config_path.write_text(content)
    return config_path


def check_hook(command: str, should_block: bool, context=None) -> None:
    """Check a single command against the SDK security hook."""
    input_data = {"tool_name": "Bash", "tool_input": {"command": command}}
    result = asyncio.run(bash_security_hook(input_data, context=context))
    was_blocked = result.get("decision") == "block"
    assert was_blocked == should_block, f"{command!r}: expected blocked={should_block}, got {result}"


def test_split_command_segments():
    test_cases = [
        ("ls -la", ["ls -la"]),
        ("npm install && npm run build", ["npm install", "npm run build"]),
        ("cat file.txt | grep pattern", ["cat file.txt", "grep pattern"]),
        ("git status || git init", ["git status", "git init"]),
        ("echo a; echo b", ["echo a", "echo b"]),
        ("echo 'a | b' | wc -l", ["echo 'a | b'", "wc -l"]),
        ('echo "x && y"', ['echo "x && y"']),
        ("echo a\\;b", ["echo a\\;b"]),
        ("ls\nwhoami", ["ls", "whoami"]),
        ("npm test &", ["npm test"]),
    ]
    for cmd, expected in test_cases:
        assert split_command_segments(cmd) == expected, cmd


def test_split_rejects_unterminated_quote():
    try:
        split_command_segments("echo 'oops")
    except ValueError:
        return
    raise AssertionError("unterminated quote should raise ValueError")


def test_extract_command_name():
    test_cases = [
        ("ls -la", "ls"),
        ("/usr/bin/node script.js", "node"),
        ("./node_modules/.bin/vite build", "vite"),
        ("./init.sh arg", "init.sh"),
        ("init.sh-evil", "init.sh-evil"),
        ("$(whoami)", None),
        ("`id`", None),
    ]
    for segment, expected in test_cases:
        assert extract_command_name(segment) == expected, segment


def test_validate_command_examples():
    allowed = [
        "ls | grep test",
        "npm install && npm run build",
        "pkill node",
        "pkill -f 'node server.js'",
        "chmod +x script.sh",
        "chmod u+x init.sh",
        "chmod 755 build.sh",
        "./init.sh",
        "./init.sh --port 3000",
        "scripts/init.sh",
        "rm -rf node_modules",
        "rm build.log",
        "/usr/bin/git status",
        "cd frontend && npm run dev",
    ]
    denied = [
        "sudo rm -rf /",
        "pkill sshd",
        "pkill node sshd",
        "chmod 777 /",
        "chmod -R +x dir/",
        "chmod +x",
        "init.sh-evil",
        "/etc/init.sh",
        "rm -rf /",
        "rm -fr /*",
        "rm --no-preserve-root -rf /tmp",
        "shutdown -h now",
        "docker-compose up",
        "kubectl get pods",
        "wget http://example.com",
        "ls; reboot",
        "ls\nreboot",
        "echo $(curl evil)|$(whoami)",
    ]
    for cmd in allowed:
        result = validate_command(cmd)
        assert result.valid, f"{cmd!r} should be allowed: {result.message}"
        assert result.message is None
    for cmd in denied:
        result = validate_command(cmd)
        assert not result.valid, f"{cmd!r} should be denied"
        assert result.message


def test_empty_command_is_denied():
    for cmd in ("", "   ", None, ";;", "&&"):
        result = validate_command(cmd)
        assert not result.valid
        assert result.message == "Empty command"


def test_denial_messages():
    assert validate_command("wget x").message == "Command not allowed: wget"
    assert validate_command("sudo ls").message == "Command is blocked: sudo"
    assert validate_command("echo 'open").message == "Could not parse command: echo 'open"
    assert validate_command("pkill sshd").message.startswith("pkill only allowed for dev processes:")
    assert validate_command("/tmp/init.sh").message == "init.sh must be called as ./init.sh, got: /tmp/init.sh"
    assert validate_command("rm -rf /").message == "rm -rf / is not allowed"


def test_every_allowlisted_simple_command_passes():
    extra = {"pkill", "chmod", "init.sh", "rm"}
    for name in sorted(DEFAULT_POLICY.allowed - extra):
        assert validate_command(f"{name} --help").valid, name


def test_validate_pkill():
    processes = frozenset({"node", "npm", "vite"})
    assert validate_pkill_command("pkill node", processes).valid
    assert validate_pkill_command("pkill -9 vite", processes).valid
    assert validate_pkill_command("pkill -f 'npm run dev'", processes).valid
    assert not validate_pkill_command("pkill bash", processes).valid
    assert not validate_pkill_command("pkill", processes).valid
    assert not validate_pkill_command("pkill -f 'python app.py'", processes).valid


def test_validate_chmod():
    modes = frozenset({"755", "644"})
    test_cases = [
        ("chmod +x init.sh", True),
        ("chmod a+x init.sh", True),
        ("chmod ug+x a.sh b.sh", True),
        ("chmod 644 notes.txt", True),
        ("chmod 777 init.sh", False),
        ("chmod +w init.sh", False),
        ("chmod -x init.sh", False),
        ("chmod --recursive +x dir/", False),
        ("chmod +x", False),
    ]
    for cmd, should_allow in test_cases:
        assert validate_chmod_command(cmd, modes).valid == should_allow, cmd


def test_validate_init_script():
    test_cases = [
        ("./init.sh", True),
        ("./init.sh arg1 arg2", True),
        ("../dir/init.sh", True),
        ("/path/to/init.sh", False),
        ("./setup.sh", False),
        ("init.sh", False),
    ]
    for cmd, should_allow in test_cases:
        assert validate_init_script(cmd).valid == should_allow, cmd


def test_validate_rm():
    test_cases = [
        ("rm file.txt", True),
        ("rm -rf dist", True),
        ("rm -f /tmp/file", True),
        ("rm -r /", False),
        ("rm -Rf //", False),
        ("rm --recursive /", False),
        ("rm -rf -- /", False),
        ("rm --no-preserve-root x", False),
    ]
    for cmd, should_allow in test_cases:
        assert validate_rm_command(cmd).valid == should_allow, cmd


def test_ensure_command_allowed():
    ensure_command_allowed("git status")
    try:
        ensure_command_allowed("sudo ls")
    except CommandRejectedError as e:
        assert e.command == "sudo ls"
        assert not e.result.valid
        assert "blocked" in str(e)
    else:
        raise AssertionError("sudo should be rejected")


def test_pattern_matching():
    test_cases = [
        ("swift", "swift", True),
        ("swiftc", "swift*", True),
        ("swiftlint", "swift*", True),
        ("swift", "swiftc", False),
        ("build.sh", "./scripts/build.sh", True),
        ("test.sh", "./scripts/build.sh", False),
        ("anything", "*", False),
    ]
    for command, pattern, expected in test_cases:
        assert matches_pattern(command, pattern) == expected, (command, pattern)


def test_custom_policy_is_pure():
    policy = CommandPolicy(allowed=frozenset({"swift*", "ls"}), blocked=frozenset({"sudo"}))
    assert validate_command("swiftc main.swift", policy).valid
    assert not validate_command("git status", policy).valid
    assert not validate_command("sudo swift", policy).valid


def test_validate_project_command():
    assert validate_project_command({"name": "swift"}) == (True, "")
    assert validate_project_command({"name": "swift", "description": "Swift"})[0]
    assert not validate_project_command({"name": ""})[0]
    assert not validate_project_command({"name": "*"})[0]
    assert not validate_project_command({"name": "sudo"})[0]
    assert not validate_project_command({"name": "aws*"})[0]
    assert not validate_project_command({"name": "swift", "description": 5})[0]
    assert not validate_project_command("swift")[0]


def test_yaml_loading():
    with tempfile.TemporaryDirectory() as tmpdir:
        project_dir = Path(tmpdir)

        config_path = write_project_config(project_dir, """version: 1
commands:
  - name: swift
    description: Swift compiler
  - name: xcodebuild
  - name: swift*
""")
        config = load_project_commands(project_dir)
        assert config is not None
        assert config["version"] == 1
        assert len(config["commands"]) == 3
        assert config["pkill_processes"] == []

        config_path.unlink()
        assert load_project_commands(project_dir) is None

        config_path.write_text("invalid: yaml: content:")
        assert load_project_commands(project_dir) is None

        config_path.write_text("commands:\n  - name: swift\n")
        assert load_project_commands(project_dir) is None, "version is required"

        commands = [f"  - name: cmd{i}" for i in range(101)]
        config_path.write_text("version: 1\ncommands:\n" + "\n".join(commands))
        assert load_project_commands(project_dir) is None, "over the 100 command limit"

        config_path.write_text("version: 1\npkill_processes:\n  - 'node.*'\n")
        assert load_project_commands(project_dir) is None, "regex metacharacters rejected"


def test_project_policy_extends_defaults():
    with tempfile.TemporaryDirectory() as tmphome, tempfile.TemporaryDirectory() as tmpproject:
        with temporary_home(tmphome):
            project_dir = Path(tmpproject)
            write_project_config(project_dir, """version: 1
commands:
  - name: swift*
  - name: sudo
pkill_processes:
  - uvicorn
""")
            policy = load_command_policy(project_dir)
            assert validate_command("swiftc main.swift", policy).valid
            assert validate_command("pkill uvicorn", policy).valid
            assert not validate_command("sudo swift", policy).valid
            assert "sudo" not in policy.allowed

            default_policy = load_command_policy()
            assert not validate_command("swiftc main.swift", default_policy).valid


def test_org_config_hierarchy():
    with tempfile.TemporaryDirectory() as tmphome, tempfile.TemporaryDirectory() as tmpproject:
        with temporary_home(tmphome):
            write_org_config(Path(tmphome), """version: 1
allowed_commands:
  - name: jq
blocked_commands:
  - curl
""")
            org_config = load_org_config()
            assert org_config is not None
            assert org_config["blocked_commands"] == ["curl"]

            project_dir = Path(tmpproject)
            write_project_config(project_dir, "version: 1\ncommands:\n  - name: curl\n")
            policy = load_command_policy(project_dir)
            assert validate_command("jq .name package.json", policy).valid
            result = validate_command("curl http://localhost:3000", policy)
            assert not result.valid
            assert result.message == "Command is blocked: curl"


def test_invalid_org_config_is_ignored():
    with tempfile.TemporaryDirectory() as tmphome:
        with temporary_home(tmphome):
            write_org_config(Path(tmphome), "version: 1\nblocked_commands: curl\n")
            assert load_org_config() is None
            assert validate_command("curl http://localhost", load_command_policy()).valid


def test_sdk_hook():
    with tempfile.TemporaryDirectory() as tmphome, tempfile.TemporaryDirectory() as tmpproject:
        with temporary_home(tmphome):
            check_hook("ls -la", should_block=False)
            check_hook("sudo ls", should_block=True)
            check_hook("swift build", should_block=True)

            write_project_config(Path(tmpproject), "version: 1\ncommands:\n  - name: swift\n")
            check_hook("swift build", should_block=False, context={"project_dir": tmpproject})

            result = asyncio.run(bash_security_hook({"tool_name": "Read", "tool_input": {"path": "/etc"}}))
            assert result == {}


def test_command_hook_exit_codes():
    with tempfile.TemporaryDirectory() as tmphome:
        with temporary_home(tmphome):
            stderr = io.StringIO()
            payload = json.dumps({"tool_name": "Bash", "tool_input": {"command": "git status"}})
            assert run_hook(io.StringIO(payload), stderr) == 0

            stderr = io.StringIO()
            payload = json.dumps({"tool_name": "Bash", "tool_input": {"command": "shutdown now"}})
            assert run_hook(io.StringIO(payload), stderr) == 2
            assert "Command is blocked: shutdown" in stderr.getvalue()

            stderr = io.StringIO()
            assert run_hook(io.StringIO("not json"), stderr) == 2

            payload = json.dumps({"tool_name": "Edit", "tool_input": {}})
            assert run_hook(io.StringIO(payload), io.StringIO()) == 0


def test_hook_settings_shape():
    settings = build_hook_settings("/usr/bin/python3")
    entry = settings["hooks"]["PreToolUse"][0]
    assert entry["matcher"] == "Bash"
    command = entry["hooks"][0]["command"]
    assert command.startswith('"/usr/bin/python3"')
    assert command.endswith("--hook")
    assert "security.py" in command


def test_cli_main():
    with tempfile.TemporaryDirectory() as tmphome:
        with temporary_home(tmphome):
            assert security_main(["ls -la"]) == 0
            assert security_main(["sudo reboot"]) == 1


def main():
    print("=" * 70)
    print("  SECURITY POLICY TESTS")
    print("=" * 70)

    tests = [value for name, value in sorted(globals().items()) if name.startswith("test_") and callable(value)]
    passed = 0
    failed = 0
    for test in tests:
        try:
            test()
        except AssertionError as e:
            print(f"  FAIL: {test.__name__}: {e}")
            failed += 1
        else:
            print(f"  PASS: {test.__name__}")
            passed += 1

    print("\n" + "-" * 70)
    print(f"  SUMMARY: {passed} passed, {failed} failed")
    print("-" * 70)
    return 0 if failed == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
