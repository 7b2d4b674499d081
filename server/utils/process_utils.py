"""
Process Tree Utilities
======================

Force-kills a process together with everything it spawned.

Order matters: descendants are enumerated and killed first, then the root.
Killing the root first would reparent its children before they could be
found.  Descendants that were already reparented (the root, or an
intermediate parent, exited first) are reached two other ways:

- a caller-supplied snapshot of descendants taken while the root was alive;
- on POSIX, ``SIGKILL`` to the process group.  Agent processes are started
  with ``start_new_session=True`` so the group id equals the root pid and
  outlives the root itself.  The group is swept on every kill.

If the tree is still alive after that, a platform fallback runs once:
``killpg`` on POSIX, ``taskkill /PID <pid> /T /F`` on Windows.

The terminator is chosen once at import; callers use ``kill_process_tree``
or ``terminate_tree`` and never branch on the platform themselves.
"""

import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass
from typing import Iterable, Optional

import psutil

logger = logging.getLogger(__name__)

# Pause between killing descendants and killing the root
DESCENDANT_GRACE_SECONDS = 0.1

DEFAULT_KILL_TIMEOUT_SECONDS = 5.0


@dataclass
class KillResult:
    """Outcome of a tree kill."""

    status: str  # "success", "partial" (needed the fallback) or "failure"
    parent_pid: int
    children_found: int = 0
    children_terminated: int = 0
    children_killed: int = 0
    fallback_used: bool = False


def _kill(proc: psutil.Process) -> None:
    try:
        proc.kill()
    except psutil.NoSuchProcess:
        pass
    except psutil.AccessDenied:
        logger.warning(f"Access denied killing PID {proc.pid}")


def _still_running(procs: list[psutil.Process]) -> list[psutil.Process]:
    alive = []
    for proc in procs:
        try:
            if proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE:
                alive.append(proc)
        except psutil.NoSuchProcess:
            continue
    return alive


def _merge(found: list[psutil.Process], known: Iterable[psutil.Process]) -> list[psutil.Process]:
    merged = {proc.pid: proc for proc in known}
    merged.update((proc.pid, proc) for proc in found)
    return list(merged.values())


def snapshot_descendants(pid: int) -> list[psutil.Process]:
    """All current descendants of ``pid``; empty if it is gone."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return []


class TreeTerminator:
    """Shared kill ordering; subclasses supply the group sweep and the fallback."""

    name = "generic"

    def terminate_tree(
        self,
        pid: int,
        timeout: float = DEFAULT_KILL_TIMEOUT_SECONDS,
        known_descendants: Iterable[psutil.Process] = (),
        root_reaped: bool = False,
    ) -> KillResult:
        """
        Kill ``pid`` and all of its descendants.

        Works whether or not the root is still running.

        Args:
            pid: Root process id
            timeout: Seconds to wait for the root to exit before the fallback
            known_descendants: Earlier snapshot of the root's descendants
            root_reaped: The root has been waited for, so ``pid`` may now
                name an unrelated process and must not be looked up

        Returns:
            KillResult describing what had to be done
        """
        root: Optional[psutil.Process] = None
        children: list[psutil.Process] = []
        if not root_reaped:
            try:
                root = psutil.Process(pid)
                children = root.children(recursive=True)
            except psutil.NoSuchProcess:
                root = None
        if root is None:
            logger.debug(f"Process {pid} already gone, sweeping what it left behind")
        children = _merge(children, known_descendants)

        result = KillResult(status="success", parent_pid=pid, children_found=len(children))
        logger.debug(f"Killing process tree for PID {pid} ({len(children)} descendants)")

        for child in children:
            _kill(child)
        psutil.wait_procs(children, timeout=DESCENDANT_GRACE_SECONDS)

        root_alive: list[psutil.Process] = []
        if root is not None:
            _kill(root)
            _, root_alive = psutil.wait_procs([root], timeout=timeout)

        # Reparented descendants are no longer children of the root
        self._sweep(pid)

        survivors = _still_running(children)
        result.children_terminated = len(children) - len(survivors)

        if root_alive or survivors:
            logger.warning(
                f"Process tree {pid} survived kill ({len(root_alive)} root, {len(survivors)} descendants), "
                f"trying {self.name} fallback"
            )
            result.fallback_used = True
            self._fallback(pid)
            for child in survivors:
                _kill(child)
            _, root_alive = psutil.wait_procs(root_alive, timeout=timeout)
            remaining = _still_running(survivors)
            result.children_killed = len(survivors) - len(remaining)
            if root_alive or remaining:
                result.status = "failure"
                logger.error(f"Could not kill process tree {pid}; {len(remaining)} descendants still alive")
            else:
                result.status = "partial"

        return result

    def _sweep(self, pid: int) -> None:
        pass

    def _fallback(self, pid: int) -> None:
        raise NotImplementedError


class PosixTreeTerminator(TreeTerminator):
    name = "killpg"

    def _sweep(self, pid: int) -> None:
        if pid == os.getpgrp():
            return
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            # No group left, or pid was never a group leader
            pass

    def _fallback(self, pid: int) -> None:
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError) as e:
            logger.debug(f"killpg({pid}) failed: {e}")


class WindowsTreeTerminator(TreeTerminator):
    name = "taskkill"

    def _fallback(self, pid: int) -> None:
        try:
            subprocess.run(
                ["taskkill", "/PID", str(pid), "/T", "/F"],
                capture_output=True,
                timeout=10,
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"taskkill for PID {pid} failed: {e}")


_terminator: TreeTerminator = WindowsTreeTerminator() if sys.platform == "win32" else PosixTreeTerminator()


def get_tree_terminator() -> TreeTerminator:
    return _terminator


def terminate_tree(
    pid: int,
    timeout: float = DEFAULT_KILL_TIMEOUT_SECONDS,
    known_descendants: Iterable[psutil.Process] = (),
) -> KillResult:
    return _terminator.terminate_tree(pid, timeout, known_descendants)


def kill_process_tree(
    proc: subprocess.Popen,
    timeout: float = DEFAULT_KILL_TIMEOUT_SECONDS,
    known_descendants: Iterable[psutil.Process] = (),
) -> KillResult:
    """Kill a Popen's whole tree and reap it so no zombie is left behind."""
    # poll() also reaps a root that exited but was never waited for
    root_reaped = proc.poll() is not None
    result = _terminator.terminate_tree(proc.pid, timeout, known_descendants, root_reaped)
    try:
        proc.wait(timeout=1)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {proc.pid} not reaped after tree kill")
    return result


def popen_platform_kwargs() -> dict:
    """Popen arguments that put the agent in its own process group / hide its console."""
    if sys.platform == "win32":
        return {"creationflags": subprocess.CREATE_NO_WINDOW | subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def pid_exists(pid: Optional[int]) -> bool:
    """True if ``pid`` names a live, non-zombie process."""
    if pid is None:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
