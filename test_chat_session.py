"""
Chat Session Tests
==================

Session state machine, session manager and the expansion chat protocol,
driven by a scripted in-memory agent client.
"""

import asyncio
import base64
import json
import sys
import tempfile
import time
from pathlib import Path
from typing import Optional

import pytest

from activity_parser import EVENT_LINE, AgentEvent
from server.exceptions import (
    AgentSpawnError,
    InvalidStateError,
    ProjectNotFoundError,
    RateLimitError,
    UserCancelled,
)
from server.services.chat_constants import ANALYZING_MESSAGE, INITIAL_MESSAGE, RESUME_MESSAGE, STOPPED_MESSAGE
from server.services.chat_protocol import NO_SESSION_MESSAGE, ChatProtocolHandler
from server.services.chat_session import ChatSession, SessionManager, SessionState, load_system_prompt
from server.services.feature_sink import InMemoryFeatureSink, parse_feature_blocks

FEATURE_REPLY = """Here is what I propose.
<features_to_create>
[
  {"category": "auth", "name": "Login form", "description": "Email login", "steps": ["Open /login"]},
  {"name": "Password reset"}
]
</features_to_create>"""


class ScriptedAgentClient:
    """AgentClient double: replays canned replies, or raises canned errors."""

    def __init__(self, replies=None, delay: float = 0.0):
        self.replies = list(replies or [])
        self.delay = delay
        self.prompts: list[str] = []
        self.active = 0
        self.max_active = 0
        self.stop_requests = 0
        self.closed = False

    async def run(self, prompt: str, working_dir: Path, on_event=None) -> str:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.prompts.append(prompt)
            reply = self.replies.pop(0) if self.replies else "Sounds good."
            await asyncio.sleep(self.delay)
            if isinstance(reply, BaseException):
                raise reply
            for line in reply.splitlines():
                if on_event is not None:
                    await on_event(AgentEvent(EVENT_LINE, line))
            return reply
        finally:
            self.active -= 1

    def request_stop(self) -> None:
        self.stop_requests += 1

    def is_ready(self) -> bool:
        return True

    def close(self) -> None:
        self.closed = True


class FakeLookup:
    def __init__(self, projects: dict[str, Path]):
        self.projects = projects

    def exists(self, project_name: str) -> bool:
        return project_name in self.projects

    def path(self, project_name: str) -> Optional[Path]:
        return self.projects.get(project_name)


class Recorder:
    """Observer collecting every protocol message it receives."""

    def __init__(self):
        self.messages: list[dict] = []

    async def __call__(self, message: dict) -> None:
        self.messages.append(message)

    def types(self) -> list[str]:
        return [message["type"] for message in self.messages]

    def texts(self) -> list[str]:
        return [message["content"] for message in self.messages if message["type"] == "text"]


@pytest.fixture
def project_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def make_session(project_dir: Path, *replies, delay: float = 0.0) -> ChatSession:
    client = ScriptedAgentClient(replies, delay=delay)
    return ChatSession("demo", project_dir, client, InMemoryFeatureSink(), system_prompt="SYSTEM")


def make_manager(project_dir: Path, clients: list) -> SessionManager:
    def factory():
        client = ScriptedAgentClient()
        clients.append(client)
        return client

    return SessionManager(lookup=FakeLookup({"demo": project_dir}), client_factory=factory)


# ============================================================================
# ChatSession
# ============================================================================

def test_start_streams_and_awaits_reply(project_dir):
    async def scenario():
        session = make_session(project_dir, "Hello!\nWhat should we add?")
        observer = Recorder()
        assert await session.start(observer) is True
        return session, observer

    session, observer = asyncio.run(scenario())
    assert observer.texts() == [ANALYZING_MESSAGE, "Hello!", "What should we add?"]
    assert observer.types()[-1] == "response_done"
    assert session.state == SessionState.AWAITING_REPLY
    assert [m.role for m in session.messages] == ["assistant"]


def test_second_start_resumes_without_new_run(project_dir):
    async def scenario():
        session = make_session(project_dir)
        first, second = Recorder(), Recorder()
        await session.start(first)
        assert await session.start(second) is False
        return session, first, second

    session, first, second = asyncio.run(scenario())
    assert len(session.client.prompts) == 1
    assert second.messages == [{"type": "text", "content": RESUME_MESSAGE}, {"type": "response_done"}]
    assert RESUME_MESSAGE not in first.texts()
    assert session.observer_count == 2


def test_messages_are_serialized(project_dir):
    async def scenario():
        session = make_session(project_dir, "intro", "one", "two", delay=0.05)
        await session.start(Recorder())
        await asyncio.gather(
            session.send_user_message("first"),
            session.send_user_message("second"),
        )
        return session

    session = asyncio.run(scenario())
    assert session.client.max_active == 1
    assert [(m.role, m.content) for m in session.messages] == [
        ("assistant", "intro"),
        ("user", "first"),
        ("assistant", "one"),
        ("user", "second"),
        ("assistant", "two"),
    ]


def test_prompt_carries_whole_conversation(project_dir):
    async def scenario():
        session = make_session(project_dir, "intro", "reply")
        await session.start(Recorder())
        await session.send_user_message("Add dark mode")
        return session

    session = asyncio.run(scenario())
    last_prompt = session.client.prompts[-1]
    assert last_prompt.startswith("SYSTEM\n\n---\n\n")
    assert f"User: {INITIAL_MESSAGE}" in last_prompt
    assert "Assistant: intro" in last_prompt
    assert last_prompt.endswith("User: Add dark mode")


def test_features_are_recorded(project_dir):
    async def scenario():
        session = make_session(project_dir, "intro", FEATURE_REPLY)
        observer = Recorder()
        await session.start(observer)
        await session.send_user_message("Add auth")
        total = await session.mark_complete()
        return session, observer, total

    session, observer, total = asyncio.run(scenario())
    created = [m for m in observer.messages if m["type"] == "features_created"]
    assert len(created) == 1
    assert created[0]["count"] == 2
    assert [f["name"] for f in created[0]["features"]] == ["Login form", "Password reset"]
    assert created[0]["features"][1]["category"] == "functional"
    assert total == 2
    assert observer.messages[-1] == {"type": "expansion_complete", "total_added": 2}
    assert session.state == SessionState.CLOSED


def test_closed_session_rejects_messages(project_dir):
    async def scenario():
        session = make_session(project_dir)
        await session.start(Recorder())
        await session.mark_complete()
        with pytest.raises(InvalidStateError):
            await session.send_user_message("more")
        with pytest.raises(InvalidStateError):
            await session.mark_complete()
        with pytest.raises(InvalidStateError):
            await session.start()
        return session

    session = asyncio.run(scenario())
    assert len(session.client.prompts) == 1


def test_message_before_start_is_invalid(project_dir):
    async def scenario():
        session = make_session(project_dir)
        with pytest.raises(InvalidStateError) as excinfo:
            await session.send_user_message("hi")
        return excinfo.value

    error = asyncio.run(scenario())
    assert str(error) == "Cannot send a message while session is idle"


def test_done_waits_for_inflight_exchange(project_dir):
    async def scenario():
        session = make_session(project_dir, "intro", FEATURE_REPLY, delay=0.05)
        observer = Recorder()
        await session.start(observer)
        pending = asyncio.create_task(session.send_user_message("Add auth"))
        await asyncio.sleep(0.01)
        total = await session.mark_complete()
        await pending
        return observer, total

    observer, total = asyncio.run(scenario())
    assert total == 2
    assert observer.types()[-1] == "expansion_complete"


def test_recoverable_failures_keep_session_usable(project_dir):
    async def scenario():
        session = make_session(
            project_dir,
            "intro",
            RateLimitError("429 Too Many Requests", 30),
            UserCancelled("Agent stopped by user"),
            "back again",
        )
        observer = Recorder()
        await session.start(observer)
        await session.send_user_message("one")
        assert session.state == SessionState.AWAITING_REPLY
        await session.send_user_message("two")
        assert session.state == SessionState.AWAITING_REPLY
        await session.send_user_message("three")
        return observer

    observer = asyncio.run(scenario())
    errors = [m["content"] for m in observer.messages if m["type"] == "error"]
    assert errors == ["Rate limit reached. Retry in about 30 seconds."]
    assert STOPPED_MESSAGE in observer.texts()
    assert "back again" in observer.texts()
    assert observer.types().count("response_done") == 4


def test_spawn_failure_errors_the_session(project_dir):
    async def scenario():
        session = make_session(project_dir, AgentSpawnError("Agent CLI not found: claude"))
        observer = Recorder()
        await session.start(observer)
        return session, observer

    session, observer = asyncio.run(scenario())
    assert session.state == SessionState.ERRORED
    assert session.is_terminal
    assert observer.messages[-1]["type"] == "error"
    assert "Agent CLI not found" in observer.messages[-1]["content"]


def test_failing_observer_is_dropped(project_dir):
    async def broken(message):
        raise ConnectionError("socket closed")

    async def scenario():
        session = make_session(project_dir)
        good = Recorder()
        session.add_observer(broken)
        await session.start(good)
        return session, good

    session, good = asyncio.run(scenario())
    assert session.observer_count == 1
    assert good.types()[-1] == "response_done"


def test_stop_only_when_busy(project_dir):
    async def scenario():
        session = make_session(project_dir, "intro", "slow", delay=0.1)
        await session.start(Recorder())
        assert await session.stop() is False
        pending = asyncio.create_task(session.send_user_message("go"))
        await asyncio.sleep(0.02)
        assert await session.stop() is True
        await pending
        return session

    session = asyncio.run(scenario())
    assert session.client.stop_requests == 1


def test_done_during_start_announcement_skips_the_run(project_dir):
    async def slow_observer(message):
        await asyncio.sleep(0.1)

    async def scenario():
        session = make_session(project_dir, "intro")
        starting = asyncio.create_task(session.start(slow_observer))
        await asyncio.sleep(0.02)
        assert await session.mark_complete() == 0
        await starting
        return session

    session = asyncio.run(scenario())
    assert session.state == SessionState.CLOSED
    assert session.client.prompts == []


SLOW_AGENT = """
import time
time.sleep(10)
print("finished normally", flush=True)
"""


def test_stop_as_soon_as_busy_cancels_real_run(project_dir):
    from server.services.agent_client import CliAgentClient
    from server.services.process_supervisor import ProcessSupervisor

    script = project_dir / "slow_agent.py"
    script.write_text(SLOW_AGENT)
    supervisor = ProcessSupervisor(command=[sys.executable, str(script)], extra_args=(), gate_commands=False)

    async def scenario():
        session = ChatSession("demo", project_dir, CliAgentClient(supervisor), InMemoryFeatureSink(), system_prompt="SYSTEM")
        observer = Recorder()
        starting = asyncio.create_task(session.start(observer))
        while not session.is_busy:
            await asyncio.sleep(0)
        assert await session.stop() is True
        await starting
        return session, observer

    started = time.monotonic()
    session, observer = asyncio.run(scenario())
    assert time.monotonic() - started < 8
    assert STOPPED_MESSAGE in observer.texts()
    assert "finished normally" not in observer.texts()
    assert session.state == SessionState.AWAITING_REPLY


def test_attachments_are_saved(project_dir):
    from server.schemas import ImageAttachment

    async def scenario():
        session = make_session(project_dir)
        await session.start(Recorder())
        image = ImageAttachment(
            filename="../../mock up.png",
            mimeType="image/png",
            base64Data=base64.b64encode(b"\x89PNG fake").decode(),
        )
        await session.send_user_message("", [image])
        return session

    session = asyncio.run(scenario())
    saved = session.messages[1].attachments
    assert len(saved) == 1
    saved_path = Path(saved[0])
    assert saved_path.read_bytes() == b"\x89PNG fake"
    assert saved_path.parent == (project_dir / ".forge" / "attachments").resolve()
    assert saved_path.name.endswith("_mock_up.png")
    assert f"[Attached image: {saved[0]}]" in session.client.prompts[-1]


def test_system_prompt_override(project_dir):
    assert "Project Expansion Assistant" in load_system_prompt(project_dir)
    assert str(project_dir.resolve()) in load_system_prompt(project_dir)

    override = project_dir / ".forge" / "prompts" / "expand_project.md"
    override.parent.mkdir(parents=True)
    override.write_text("Custom prompt for $ARGUMENTS")
    assert load_system_prompt(project_dir) == f"Custom prompt for {project_dir.resolve()}"


def test_parse_feature_blocks():
    text = FEATURE_REPLY + '\n<features_to_create>[{"name": "Login form"}, {"name": "Search"}, 3]</features_to_create>'
    text += "\n<features_to_create>[not json]</features_to_create>"
    assert [f["name"] for f in parse_feature_blocks(text)] == ["Login form", "Password reset", "Search"]
    assert parse_feature_blocks("no features here") == []


# ============================================================================
# SessionManager
# ============================================================================

def test_manager_get_or_create_is_idempotent(project_dir):
    clients = []
    manager = make_manager(project_dir, clients)

    session, created = manager.get_or_create_session("demo")
    again, created_again = manager.get_or_create_session("demo")
    assert created is True
    assert created_again is False
    assert again is session
    assert manager.get_session("demo") is session
    assert manager.list_sessions() == ["demo"]
    assert len(clients) == 1


def test_manager_unknown_project(project_dir):
    manager = make_manager(project_dir, [])
    with pytest.raises(ProjectNotFoundError) as excinfo:
        manager.create_session("missing")
    assert str(excinfo.value) == "Project not found in registry: missing"
    assert manager.get_session("missing") is None


def test_manager_replaces_finished_sessions(project_dir):
    manager = make_manager(project_dir, [])

    async def scenario():
        session = manager.create_session("demo")
        await session.start(Recorder())
        await session.mark_complete()
        return session

    finished = asyncio.run(scenario())
    assert finished.client.closed is False
    fresh, created = manager.get_or_create_session("demo")
    assert created is True
    assert fresh is not finished
    assert fresh.state == SessionState.IDLE
    assert finished.client.closed is True
    assert finished.observer_count == 0
    assert fresh.client.closed is False


def test_manager_remove_and_close_all(project_dir):
    clients = []
    manager = make_manager(project_dir, clients)

    async def scenario():
        manager.create_session("demo")
        assert await manager.remove_session("demo") is True
        assert await manager.remove_session("demo") is False
        manager.create_session("demo")
        await manager.close_all()

    asyncio.run(scenario())
    assert [client.closed for client in clients] == [True, True]
    assert manager.list_sessions() == []


# ============================================================================
# Protocol
# ============================================================================

def run_protocol(project_dir: Path, frames: list, manager: Optional[SessionManager] = None):
    manager = manager or make_manager(project_dir, [])
    replies = Recorder()

    async def scenario():
        handler = ChatProtocolHandler("demo", replies, manager)
        for frame in frames:
            await handler.handle_text(frame if isinstance(frame, str) else json.dumps(frame))
        return handler

    handler = asyncio.run(scenario())
    return handler, replies


def test_protocol_ping_and_errors(project_dir):
    _, replies = run_protocol(project_dir, [
        {"type": "ping"},
        "{not json",
        [1, 2],
        {"content": "no type"},
        {"type": "launch"},
        {"type": "message", "content": "hi"},
        {"type": "done"},
    ])
    assert replies.messages == [
        {"type": "pong"},
        {"type": "error", "content": "Invalid JSON"},
        {"type": "error", "content": "Malformed message: expected a JSON object"},
        {"type": "error", "content": "Malformed message: missing 'type'"},
        {"type": "error", "content": "Unknown message type: launch"},
        {"type": "error", "content": NO_SESSION_MESSAGE},
        {"type": "error", "content": NO_SESSION_MESSAGE},
    ]


def test_protocol_full_conversation(project_dir):
    _, replies = run_protocol(project_dir, [
        {"type": "start"},
        {"type": "message", "content": "   "},
        {"type": "message", "content": "hi", "attachments": [{"filename": "x.gif", "mimeType": "image/gif", "base64Data": ""}]},
        {"type": "message", "content": "Add search"},
        {"type": "done"},
        {"type": "message", "content": "one more"},
    ])
    errors = [m["content"] for m in replies.messages if m["type"] == "error"]
    assert errors == [
        "Empty message",
        "Invalid attachment format",
        "Cannot send a message while session is closed",
    ]
    assert replies.types().count("response_done") == 2
    assert {"type": "expansion_complete", "total_added": 0} in replies.messages


def test_protocol_unknown_project(project_dir):
    manager = SessionManager(lookup=FakeLookup({}), client_factory=ScriptedAgentClient)
    _, replies = run_protocol(project_dir, [{"type": "start"}], manager)
    assert replies.messages == [{"type": "error", "content": "Project not found in registry: demo"}]


def test_detach_keeps_session_for_resume(project_dir):
    manager = make_manager(project_dir, [])
    handler, first = run_protocol(project_dir, [{"type": "start"}], manager)
    handler.detach()

    session = manager.get_session("demo")
    assert session is not None
    assert session.observer_count == 0

    _, second = run_protocol(project_dir, [{"type": "start"}], manager)
    assert second.messages == [{"type": "text", "content": RESUME_MESSAGE}, {"type": "response_done"}]
    assert len(session.client.prompts) == 1
