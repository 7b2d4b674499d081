"""
Error Taxonomy
==============

Exceptions raised by agent runs and chat sessions.

Agent run failures derive from ``AgentError`` so callers can tell a rate
limit (back off and retry later) from a timeout or a spawn failure, and can
treat ``UserCancelled`` as a normal outcome instead of a failure.  Session
protocol failures derive from ``SessionError``; the FastAPI app maps them to
HTTP status codes in ``server.main``.
"""

from typing import Optional


class AgentError(Exception):
    """Base class for agent run failures."""


class RateLimitError(AgentError):
    """The agent reported an upstream rate limit or exhausted quota."""

    def __init__(self, line: str, retry_after: Optional[int] = None):
        super().__init__(f"Rate limit detected: {line}")
        self.line = line
        self.retry_after = retry_after


class RunTimeoutError(AgentError, TimeoutError):
    """The agent process did not exit within the run ceiling after its output ended."""


class UserCancelled(AgentError):
    """The run was stopped on request; the process tree has been killed."""


class AgentSpawnError(AgentError, OSError):
    """The agent process could not be started."""


class SessionError(Exception):
    """Base class for chat session failures."""


class ProjectNotFoundError(SessionError):
    """The project is unknown to the project registry."""

    def __init__(self, project_name: str):
        super().__init__(f"Project not found in registry: {project_name}")
        self.project_name = project_name


class InvalidStateError(SessionError):
    """A session operation was requested in a state that forbids it."""

    def __init__(self, operation: str, state: str):
        super().__init__(f"Cannot {operation} while session is {state}")
        self.operation = operation
        self.state = state
