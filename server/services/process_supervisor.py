"""
Agent Process Supervisor
========================

Runs the agent CLI for one prompt and owns the process until it is gone.

The prompt goes in on stdin (never argv, which has length limits on
Windows).  Merged stdout/stderr comes back line by line through
``iter_lines``, a generator that is restartable per run but not resumable
mid-run.  Whatever way the generator ends (exhausted, closed early, or
raising), its cleanup kills whatever is left of the process tree, including
descendants the agent left running after it exited, and removes the CLI's
transient files.

``request_stop`` may be called from any thread.  It flags the current run
and kills the tree at once, so a stuck agent is stopped even if it never
prints again, and a grandchild holding the output pipe cannot keep the run
alive.  Each run has its own stop token (``begin_run``); a stop that arrives
before the worker thread reaches ``iter_lines`` still applies to that run.
"""

import json
import logging
import os
import subprocess
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

import psutil

# Add parent directory to path for shared module imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from env_constants import (  # noqa: E402
    CLI_COMMAND_ENV,
    DEFAULT_CLI_COMMAND,
    DEFAULT_RUN_TIMEOUT_SECONDS,
    RUN_TIMEOUT_ENV,
    get_env_int,
    get_forwarded_env,
)
from forge_paths import ensure_forge_dir, get_hook_settings_path  # noqa: E402
from rate_limit_utils import is_rate_limit_error, parse_retry_after  # noqa: E402
from security import build_hook_settings  # noqa: E402
from temp_cleanup import cleanup_project_temp_files  # noqa: E402

from ..exceptions import AgentSpawnError, RateLimitError, RunTimeoutError, UserCancelled
from ..utils.process_utils import kill_process_tree, popen_platform_kwargs, snapshot_descendants

logger = logging.getLogger(__name__)

DEFAULT_CLI_ARGS = ("--print", "--dangerously-skip-permissions")

READY_TIMEOUT_SECONDS = 10

KILL_TIMEOUT_SECONDS = 5.0

# Minimum gap between descendant snapshots while output is flowing
SNAPSHOT_INTERVAL_SECONDS = 1.0


@dataclass
class ProcessHandle:
    """A live agent process; owned by the supervisor for the duration of one run."""

    process: subprocess.Popen
    started_at: datetime = field(default_factory=datetime.now)
    descendants: dict[int, psutil.Process] = field(default_factory=dict)
    snapshot_at: float = 0.0

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return self.process.poll() is None

    @property
    def stdout(self):
        return self.process.stdout

    @property
    def stdin(self):
        return self.process.stdin

    def remember_descendants(self, force: bool = False) -> None:
        """Record the current descendants so they can be killed after the root exits."""
        now = time.monotonic()
        if not force and now - self.snapshot_at < SNAPSHOT_INTERVAL_SECONDS:
            return
        self.snapshot_at = now
        for proc in snapshot_descendants(self.pid):
            self.descendants[proc.pid] = proc

    def kill_tree(self) -> None:
        kill_process_tree(self.process, KILL_TIMEOUT_SECONDS, list(self.descendants.values()))


def _platform_shim() -> list[str]:
    # cmd.exe resolves .cmd/.bat shims (npm-installed CLIs) on PATH
    return ["cmd.exe", "/c"] if sys.platform == "win32" else []


class ProcessSupervisor:
    """
    Spawns and supervises the agent CLI.

    One run at a time per supervisor; create one per session.
    """

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        extra_args: Sequence[str] = DEFAULT_CLI_ARGS,
        run_timeout: Optional[float] = None,
        gate_commands: bool = True,
        env: Optional[dict[str, str]] = None,
    ):
        """
        Args:
            command: Executable (plus any fixed leading args); defaults to
                ``$FORGE_CLI_COMMAND`` or ``claude``
            extra_args: Arguments appended for every run
            run_timeout: Seconds the process may take to exit after its
                output ends; defaults to ``$FORGE_RUN_TIMEOUT_SECONDS`` or 30 min
            gate_commands: Register the command-validation hook for the run
            env: Extra environment for the process
        """
        if command is None:
            command = [os.getenv(CLI_COMMAND_ENV, "").strip() or DEFAULT_CLI_COMMAND]
        self.command = list(command)
        self.extra_args = list(extra_args)
        self.run_timeout = run_timeout if run_timeout is not None else get_env_int(
            RUN_TIMEOUT_ENV, DEFAULT_RUN_TIMEOUT_SECONDS
        )
        self.gate_commands = gate_commands
        self.env = env

        self._handle: Optional[ProcessHandle] = None
        self._lock = threading.Lock()
        self._stop_requested = threading.Event()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._handle is not None and self._handle.alive

    def build_command(self, settings_file: Optional[Path] = None) -> list[str]:
        cmd = _platform_shim() + self.command + self.extra_args
        if settings_file is not None:
            cmd += ["--settings", str(settings_file)]
        return cmd

    def begin_run(self) -> threading.Event:
        """
        Open a new run's stop token.

        ``request_stop`` sets the token of the latest run.  Callers that hand
        the run to another thread call this first and pass the token on, so
        a stop issued in between is not lost.
        """
        token = threading.Event()
        with self._lock:
            self._stop_requested = token
        return token

    def run(
        self,
        prompt: str,
        working_dir: Path,
        on_line: Optional[Callable[[str], None]] = None,
        stop_token: Optional[threading.Event] = None,
    ) -> str:
        """
        Run the agent to completion and return the full transcript.

        ``on_line`` is called with each output line, in order, from the
        calling thread.

        Raises:
            RateLimitError, RunTimeoutError, UserCancelled, AgentSpawnError
        """
        lines = []
        for line in self.iter_lines(prompt, working_dir, stop_token):
            lines.append(line)
            if on_line is not None:
                on_line(line)
        return "".join(f"{line}\n" for line in lines)

    def iter_lines(
        self,
        prompt: str,
        working_dir: Path,
        stop_token: Optional[threading.Event] = None,
    ) -> Iterator[str]:
        """
        Spawn the agent and yield its output lines as they arrive.

        A rate-limit line is yielded and then ends the run with
        ``RateLimitError``; the process is not waited for.
        """
        stopped = stop_token if stop_token is not None else self.begin_run()
        if stopped.is_set():
            raise UserCancelled("Agent stopped by user")

        working_dir = Path(working_dir).resolve()
        cleanup_project_temp_files(working_dir)
        settings_file = self._write_hook_settings(working_dir) if self.gate_commands else None

        try:
            handle = self._spawn(self.build_command(settings_file), working_dir)
            if stopped.is_set():
                raise UserCancelled("Agent stopped by user")
            self._feed_prompt(handle, prompt)

            for raw in iter(handle.stdout.readline, b""):
                if stopped.is_set():
                    logger.info(f"Stop requested, abandoning output of PID {handle.pid}")
                    raise UserCancelled("Agent stopped by user")

                handle.remember_descendants()
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                yield line

                if is_rate_limit_error(line):
                    logger.warning(f"Detected rate/token limit in agent output: {line}")
                    raise RateLimitError(line, parse_retry_after(line))

            if stopped.is_set():
                raise UserCancelled("Agent stopped by user")

            handle.remember_descendants(force=True)
            try:
                exit_code = handle.process.wait(timeout=self.run_timeout)
            except subprocess.TimeoutExpired:
                logger.warning(f"Agent PID {handle.pid} did not exit within {self.run_timeout}s, killing tree")
                raise RunTimeoutError(f"Agent did not exit within {self.run_timeout} seconds")

            if exit_code != 0:
                logger.warning(f"Agent exited with code {exit_code}")
            else:
                logger.info(f"Agent PID {handle.pid} finished")
        finally:
            self._release()
            if settings_file is not None:
                try:
                    settings_file.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"Error removing hook settings file: {e}")
            cleanup_project_temp_files(working_dir)

    def request_stop(self) -> None:
        """Flag the current run as cancelled and kill its process tree now."""
        with self._lock:
            self._stop_requested.set()
            handle = self._handle
        if handle is not None:
            # Also when the root has exited: a descendant may still hold stdout open
            logger.info(f"Stop requested, terminating agent process tree {handle.pid}")
            handle.kill_tree()

    def is_ready(self) -> bool:
        """Best-effort check that the CLI can be invoked at all. Never raises."""
        try:
            result = subprocess.run(
                _platform_shim() + self.command + ["--version"],
                capture_output=True,
                timeout=READY_TIMEOUT_SECONDS,
                stdin=subprocess.DEVNULL,
            )
            return result.returncode == 0
        except Exception as e:
            logger.warning(f"Agent CLI not available: {e}")
            return False

    def _spawn(self, cmd: list[str], working_dir: Path) -> ProcessHandle:
        env = {**os.environ, **get_forwarded_env(), **(self.env or {})}
        logger.info(f"Starting agent in {working_dir}: {' '.join(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                cwd=str(working_dir),
                env=env,
                **popen_platform_kwargs(),
            )
        except OSError as e:
            raise AgentSpawnError(f"Failed to start agent ({cmd[0]}): {e}") from e

        handle = ProcessHandle(process)
        with self._lock:
            self._handle = handle
        logger.info(f"Agent started with PID {handle.pid}")
        return handle

    def _feed_prompt(self, handle: ProcessHandle, prompt: str) -> None:
        try:
            handle.stdin.write(prompt.encode("utf-8"))
            handle.stdin.flush()
        except (BrokenPipeError, OSError) as e:
            logger.warning(f"Agent closed stdin before the prompt was written: {e}")
        finally:
            try:
                handle.stdin.close()
            except OSError:
                pass

    def _release(self) -> None:
        with self._lock:
            handle = self._handle
            self._handle = None
        if handle is None:
            return
        # Completion and failure too: the agent may have left background descendants
        handle.kill_tree()
        if handle.stdout is not None:
            handle.stdout.close()

    def _write_hook_settings(self, working_dir: Path) -> Path:
        settings_file = get_hook_settings_path(working_dir, uuid.uuid4().hex)
        try:
            ensure_forge_dir(working_dir)
            with open(settings_file, "w", encoding="utf-8") as f:
                json.dump(build_hook_settings(), f, indent=2)
        except OSError as e:
            raise AgentSpawnError(f"Could not write command hook settings: {e}") from e
        return settings_file
