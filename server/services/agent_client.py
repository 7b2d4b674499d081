"""
Agent Clients
=============

The one interface chat sessions use to talk to a coding agent::

    transcript = await client.run(prompt, working_dir, on_event)

``on_event`` receives ``AgentEvent``s in output order: status notices,
activity labels, raw (sanitized) output lines and progress heartbeats.

Two implementations:

- ``CliAgentClient`` drives the agent CLI through ``ProcessSupervisor`` on
  a worker thread and bridges its lines onto the event loop.
- ``SdkAgentClient`` drives the same agent through the Claude Agent SDK,
  gating Bash tool calls with ``bash_security_hook``.

``create_agent_client`` picks one from ``$FORGE_AGENT_BACKEND``.
"""

import asyncio
import logging
import os
import re
import shutil
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
from claude_agent_sdk.types import HookMatcher
from dotenv import load_dotenv

# Add parent directory to path for shared module imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from activity_parser import (  # noqa: E402
    EVENT_STATUS,
    ActivityStream,
    AgentEvent,
    tool_activity,
)
from auth import AUTH_ERROR_HELP, is_auth_error  # noqa: E402
from env_constants import (  # noqa: E402
    AGENT_BACKEND_ENV,
    CLI_COMMAND_ENV,
    DEFAULT_AGENT_BACKEND,
    DEFAULT_CLI_COMMAND,
    get_forwarded_env,
)
from rate_limit_utils import is_rate_limit_error, parse_retry_after  # noqa: E402
from security import bash_security_hook  # noqa: E402

from ..exceptions import AgentError, AgentSpawnError, RateLimitError, UserCancelled
from .process_supervisor import ProcessSupervisor

# Load environment variables from .env file if present
load_dotenv()

logger = logging.getLogger(__name__)

EventCallback = Callable[[AgentEvent], Awaitable[None]]

STARTING_MESSAGE = "🚀 Starting agent..."
RECEIVING_MESSAGE = "📡 Receiving response from agent..."

SDK_MAX_TURNS = 100

# Patterns for sensitive data that should be redacted from output
SENSITIVE_PATTERNS = [
    r'sk-ant-[a-zA-Z0-9_-]+',  # Anthropic API keys
    r'sk-[a-zA-Z0-9]{20,}',
    r'ANTHROPIC_API_KEY\s*=\s*[^\s]+',
    r'api[_-]?key\s*[=:]\s*[^\s]+',
    r'token\s*[=:]\s*[^\s]+',
    r'password\s*[=:]\s*[^\s]+',
    r'secret\s*[=:]\s*[^\s]+',
    r'gh[pousr]_[a-zA-Z0-9]{36,}',  # GitHub tokens
    r'github_pat_[a-zA-Z0-9_]{40,}',
    r'AKIA[0-9A-Z]{16}',  # AWS access key ids
    r'aws[_-]?secret[_-]?access[_-]?key\s*[=:]\s*[^\s]+',
    r'-----BEGIN [A-Z ]*PRIVATE KEY-----',
]

_SENSITIVE_RE = re.compile("|".join(SENSITIVE_PATTERNS), re.IGNORECASE)


def sanitize_output(line: str) -> str:
    """Remove sensitive information from output lines."""
    return _SENSITIVE_RE.sub("[REDACTED]", line)


class AgentClient(Protocol):
    """Backend capability a chat session depends on."""

    async def run(self, prompt: str, working_dir: Path, on_event: Optional[EventCallback] = None) -> str: ...

    def request_stop(self) -> None: ...

    def is_ready(self) -> bool: ...

    def close(self) -> None: ...


async def _emit(on_event: Optional[EventCallback], event: AgentEvent) -> None:
    if on_event is not None:
        await on_event(event)


def _status(content: str) -> AgentEvent:
    return AgentEvent(EVENT_STATUS, content)


_DONE = object()


class CliAgentClient:
    """AgentClient backed by the agent CLI subprocess."""

    def __init__(self, supervisor: Optional[ProcessSupervisor] = None):
        self.supervisor = supervisor or ProcessSupervisor()

    async def run(self, prompt: str, working_dir: Path, on_event: Optional[EventCallback] = None) -> str:
        # Before any await, so a stop issued while the worker is queued still counts
        stop_token = self.supervisor.begin_run()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def pump() -> str:
            lines = []
            try:
                for line in self.supervisor.iter_lines(prompt, working_dir, stop_token):
                    lines.append(line)
                    loop.call_soon_threadsafe(queue.put_nowait, line)
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, _DONE)
            return "".join(f"{line}\n" for line in lines)

        stream = ActivityStream()
        auth_notified = False

        await _emit(on_event, _status(STARTING_MESSAGE))
        worker = loop.run_in_executor(None, pump)
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if stream.line_count == 0:
                    await _emit(on_event, _status(RECEIVING_MESSAGE))
                if not auth_notified and is_auth_error(item):
                    auth_notified = True
                    await _emit(on_event, _status(AUTH_ERROR_HELP.strip()))
                for event in stream.feed(sanitize_output(item)):
                    await _emit(on_event, event)
            transcript = await worker
        except BaseException:
            # Cancelled, or an observer failed: the worker thread must not outlive us
            if not worker.done():
                self.supervisor.request_stop()
            raise

        await _emit(on_event, _status(f"✅ Agent finished ({stream.line_count} lines processed)"))
        return transcript

    def request_stop(self) -> None:
        self.supervisor.request_stop()

    def is_ready(self) -> bool:
        return self.supervisor.is_ready()

    def close(self) -> None:
        self.supervisor.request_stop()


class SdkAgentClient:
    """AgentClient backed by the Claude Agent SDK."""

    def __init__(self, cli_command: Optional[str] = None, model: Optional[str] = None):
        self.cli_command = cli_command or os.getenv(CLI_COMMAND_ENV, "").strip() or DEFAULT_CLI_COMMAND
        self.model = model or (os.getenv("ANTHROPIC_DEFAULT_OPUS_MODEL") or "").strip() or None
        self._stop_requested = False
        self._client: Optional[ClaudeSDKClient] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def run(self, prompt: str, working_dir: Path, on_event: Optional[EventCallback] = None) -> str:
        self._stop_requested = False
        self._loop = asyncio.get_running_loop()
        project_dir = Path(working_dir).resolve()

        cli_path = shutil.which(self.cli_command)
        if not cli_path:
            raise AgentSpawnError(f"Agent CLI not found: {self.cli_command}")

        async def bash_hook_with_context(input_data, tool_use_id=None, context=None):
            return await bash_security_hook(input_data, tool_use_id, {"project_dir": str(project_dir)})

        options = ClaudeAgentOptions(
            model=self.model,
            cli_path=cli_path,
            cwd=str(project_dir),
            permission_mode="bypassPermissions",
            max_turns=SDK_MAX_TURNS,
            hooks={"PreToolUse": [HookMatcher(matcher="Bash", hooks=[bash_hook_with_context])]},
            env=get_forwarded_env(),
        )

        stream = ActivityStream()
        texts: list[str] = []
        auth_notified = False

        await _emit(on_event, _status(STARTING_MESSAGE))
        try:
            async with ClaudeSDKClient(options=options) as client:
                self._client = client
                await client.query(prompt)
                await _emit(on_event, _status(RECEIVING_MESSAGE))

                async for msg in client.receive_response():
                    if self._stop_requested:
                        raise UserCancelled("Agent stopped by user")
                    if type(msg).__name__ != "AssistantMessage" or not hasattr(msg, "content"):
                        continue

                    for block in msg.content:
                        block_type = type(block).__name__
                        if block_type == "ToolUseBlock" and hasattr(block, "name"):
                            for event in stream.note_activity(tool_activity(block.name)):
                                await _emit(on_event, event)
                        elif block_type == "TextBlock" and getattr(block, "text", ""):
                            texts.append(block.text)
                            for line in block.text.splitlines():
                                if not auth_notified and is_auth_error(line):
                                    auth_notified = True
                                    await _emit(on_event, _status(AUTH_ERROR_HELP.strip()))
                                for event in stream.feed(sanitize_output(line)):
                                    await _emit(on_event, event)
                                if is_rate_limit_error(line):
                                    logger.warning(f"Detected rate/token limit in agent output: {line}")
                                    raise RateLimitError(line, parse_retry_after(line))
        except AgentError:
            raise
        except Exception as e:
            if is_rate_limit_error(str(e)):
                raise RateLimitError(str(e), parse_retry_after(str(e))) from e
            logger.exception("Agent SDK run failed")
            raise AgentError(f"Agent run failed: {e}") from e
        finally:
            self._client = None

        if self._stop_requested:
            raise UserCancelled("Agent stopped by user")

        await _emit(on_event, _status(f"✅ Agent finished ({stream.line_count} lines processed)"))
        return "\n".join(texts)

    def request_stop(self) -> None:
        self._stop_requested = True
        client, loop = self._client, self._loop
        if client is not None and loop is not None and not loop.is_closed():
            logger.info("Stop requested, interrupting agent SDK run")
            asyncio.run_coroutine_threadsafe(client.interrupt(), loop)

    def is_ready(self) -> bool:
        return shutil.which(self.cli_command) is not None

    def close(self) -> None:
        self.request_stop()


def create_agent_client(backend: Optional[str] = None) -> AgentClient:
    """Build the AgentClient named by ``backend`` or ``$FORGE_AGENT_BACKEND`` (``cli``/``sdk``)."""
    backend = (backend or os.getenv(AGENT_BACKEND_ENV, "") or DEFAULT_AGENT_BACKEND).strip().lower()
    if backend == "cli":
        return CliAgentClient()
    if backend == "sdk":
        return SdkAgentClient()
    raise ValueError(f"Unknown agent backend: {backend!r} (expected 'cli' or 'sdk')")
