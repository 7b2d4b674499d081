"""
Expansion Chat Session
======================

A per-project conversation that drives the coding agent turn by turn to add
features to an existing project.

State machine::

    IDLE -> ACTIVE -> AWAITING_REPLY <-> ACTIVE -> COMPLETING -> CLOSED
                 (any non-terminal state) -> ERRORED

Output is pushed to every attached observer (an async callable taking a
protocol message dict).  Observers come and go with client connections;
detaching the last one leaves the session alive so a new connection can
resume it.  Only one agent exchange runs at a time: further messages wait on
``_query_lock`` and run in arrival order.

``SessionManager`` keeps at most one live session per project.
"""

import asyncio
import logging
import re
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

# Add parent directory to path for shared module imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from activity_parser import AgentEvent  # noqa: E402
from forge_paths import ensure_forge_dir, get_attachments_dir, get_expand_prompt_path  # noqa: E402
from registry import ProjectLookup, RegistryProjectLookup  # noqa: E402

from ..exceptions import (
    AgentError,
    InvalidStateError,
    ProjectNotFoundError,
    RateLimitError,
    RunTimeoutError,
    UserCancelled,
)
from ..schemas import ImageAttachment
from .agent_client import AgentClient, create_agent_client
from .chat_constants import (
    ANALYZING_MESSAGE,
    DEFAULT_EXPAND_PROMPT,
    INITIAL_MESSAGE,
    PROJECT_PATH_PLACEHOLDER,
    RESUME_MESSAGE,
    STOPPED_MESSAGE,
)
from .feature_sink import FeatureSink, InMemoryFeatureSink, parse_feature_blocks

logger = logging.getLogger(__name__)

Observer = Callable[[dict], Awaitable[None]]

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class SessionState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    AWAITING_REPLY = "awaiting_reply"
    COMPLETING = "completing"
    CLOSED = "closed"
    ERRORED = "errored"


TERMINAL_STATES = {SessionState.CLOSED, SessionState.ERRORED}


@dataclass
class ChatMessage:
    """One transcript entry. Appended, never edited."""

    role: str
    content: str
    attachments: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "attachments": list(self.attachments),
            "timestamp": self.timestamp.isoformat(),
        }


def load_system_prompt(project_dir: Path) -> str:
    """Project override from ``.forge/prompts/expand_project.md`` if present, else the default."""
    override = get_expand_prompt_path(project_dir)
    template = DEFAULT_EXPAND_PROMPT
    if override.is_file():
        try:
            template = override.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning(f"Could not read expand prompt override {override}: {e}")
    return template.replace(PROJECT_PATH_PLACEHOLDER, str(Path(project_dir).resolve()))


class ChatSession:
    """Manages one project's expansion conversation."""

    def __init__(
        self,
        project_name: str,
        project_dir: Path,
        client: AgentClient,
        feature_sink: FeatureSink,
        system_prompt: Optional[str] = None,
    ):
        self.project_name = project_name
        self.project_dir = Path(project_dir)
        self.client = client
        self.feature_sink = feature_sink
        self.system_prompt = system_prompt if system_prompt is not None else load_system_prompt(self.project_dir)

        self.state = SessionState.IDLE
        self.messages: list[ChatMessage] = []
        self.created_at = datetime.now()
        self.updated_at = self.created_at
        self.features_created = 0
        self.created_feature_ids: list[Any] = []

        self._observers: set[Observer] = set()
        self._observers_lock = threading.Lock()
        self._query_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: Observer) -> None:
        with self._observers_lock:
            self._observers.add(observer)

    def remove_observer(self, observer: Observer) -> None:
        with self._observers_lock:
            self._observers.discard(observer)

    @property
    def observer_count(self) -> int:
        with self._observers_lock:
            return len(self._observers)

    async def _broadcast(self, message: dict) -> None:
        with self._observers_lock:
            observers = list(self._observers)

        for observer in observers:
            try:
                await observer(message)
            except Exception as e:
                logger.warning(f"Dropping observer of {self.project_name} session: {e}")
                self.remove_observer(observer)

    async def _on_agent_event(self, event: AgentEvent) -> None:
        await self._broadcast({"type": "text", "content": event.content})

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_complete(self) -> bool:
        return self.state in (SessionState.COMPLETING, SessionState.CLOSED)

    @property
    def is_busy(self) -> bool:
        return self._query_lock.locked()

    def get_messages(self) -> list[dict[str, Any]]:
        return [message.to_dict() for message in self.messages]

    def _set_state(self, state: SessionState) -> None:
        if state != self.state:
            logger.debug(f"Session {self.project_name}: {self.state.value} -> {state.value}")
            self.state = state
        self.updated_at = datetime.now()

    # ------------------------------------------------------------------
    # Protocol operations
    # ------------------------------------------------------------------

    async def start(self, observer: Optional[Observer] = None) -> bool:
        """
        Start the conversation, or resume it if it is already running.

        On resume only ``observer`` (or everyone, if None) gets the resume
        notice; no new agent run happens.

        Returns:
            True if this call started the conversation, False on resume
        """
        if observer is not None:
            self.add_observer(observer)

        if self.is_terminal or self.state == SessionState.COMPLETING:
            raise InvalidStateError("start", self.state.value)

        if self.state != SessionState.IDLE:
            notice = [{"type": "text", "content": RESUME_MESSAGE}, {"type": "response_done"}]
            for message in notice:
                if observer is not None:
                    await observer(message)
                else:
                    await self._broadcast(message)
            return False

        self._set_state(SessionState.ACTIVE)
        logger.info(f"Starting expansion session for {self.project_name}")
        await self._broadcast({"type": "text", "content": ANALYZING_MESSAGE})
        await self._exchange()
        return True

    async def send_user_message(self, content: str, attachments: Optional[list[ImageAttachment]] = None) -> None:
        """
        Add a user turn and stream the agent's reply.

        Raises:
            InvalidStateError: unless the session is ACTIVE or AWAITING_REPLY
        """
        self._require_conversing("send a message")

        async with self._query_lock:
            # The session may have been completed while this message was queued
            self._require_conversing("send a message")
            saved = self._save_attachments(attachments or [])
            self.messages.append(ChatMessage("user", content, saved))
            await self._exchange(locked=True)

    async def mark_complete(self) -> int:
        """
        Finish the session: wait for any in-flight exchange, announce the total, close.

        Returns:
            Number of features added during the session
        """
        if self.state in (SessionState.COMPLETING, SessionState.CLOSED):
            raise InvalidStateError("complete", self.state.value)

        self._set_state(SessionState.COMPLETING)
        async with self._query_lock:
            await self._broadcast({"type": "expansion_complete", "total_added": self.features_created})
            self._set_state(SessionState.CLOSED)

        logger.info(f"Expansion session for {self.project_name} complete ({self.features_created} features)")
        return self.features_created

    async def stop(self) -> bool:
        """Cancel the in-flight exchange, if any. The session stays usable."""
        if not self.is_busy:
            return False
        await asyncio.to_thread(self.client.request_stop)
        return True

    async def close(self) -> None:
        """Tear down: stop any run and drop observers. Used on explicit removal."""
        if not self.is_terminal:
            self._set_state(SessionState.CLOSED)
        try:
            await asyncio.to_thread(self.client.close)
        except Exception as e:
            logger.warning(f"Error closing agent client for {self.project_name}: {e}")
        self.detach_all()

    def detach_all(self) -> None:
        with self._observers_lock:
            self._observers.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_conversing(self, operation: str) -> None:
        if self.state not in (SessionState.ACTIVE, SessionState.AWAITING_REPLY):
            raise InvalidStateError(operation, self.state.value)

    async def _exchange(self, locked: bool = False) -> None:
        if not locked:
            async with self._query_lock:
                await self._exchange(locked=True)
            return

        if self.state not in (SessionState.ACTIVE, SessionState.AWAITING_REPLY):
            # Completed, closed or errored while waiting for the lock
            logger.info(f"Skipping agent run for {self.project_name}: session is {self.state.value}")
            return

        self._set_state(SessionState.ACTIVE)
        try:
            transcript = await self.client.run(self._build_prompt(), self.project_dir, self._on_agent_event)
        except UserCancelled:
            logger.info(f"Agent run for {self.project_name} stopped by request")
            await self._finish_turn({"type": "text", "content": STOPPED_MESSAGE})
            return
        except RateLimitError as e:
            hint = f" Retry in about {e.retry_after} seconds." if e.retry_after else " Try again later."
            await self._finish_turn({"type": "error", "content": f"Rate limit reached.{hint}"})
            return
        except RunTimeoutError as e:
            await self._finish_turn({"type": "error", "content": f"Agent timed out: {e}"})
            return
        except AgentError as e:
            logger.error(f"Agent run failed for {self.project_name}: {e}")
            self._set_state(SessionState.ERRORED)
            await self._broadcast({"type": "error", "content": f"Failed to run agent: {e}"})
            return
        except Exception:
            logger.exception(f"Unexpected error in {self.project_name} session")
            self._set_state(SessionState.ERRORED)
            await self._broadcast({"type": "error", "content": "Error while processing message"})
            return

        self.messages.append(ChatMessage("assistant", transcript))
        await self._record_features(transcript)
        await self._finish_turn()

    async def _finish_turn(self, message: Optional[dict] = None) -> None:
        if self.state == SessionState.ACTIVE:
            self._set_state(SessionState.AWAITING_REPLY)
        if message is not None:
            await self._broadcast(message)
        await self._broadcast({"type": "response_done"})

    def _build_prompt(self) -> str:
        # The agent CLI keeps no memory between runs, so every prompt carries the whole conversation
        turns = [f"User: {INITIAL_MESSAGE}"]
        for message in self.messages:
            speaker = "User" if message.role == "user" else "Assistant"
            text = message.content.strip()
            for path in message.attachments:
                text += f"\n[Attached image: {path}]"
            turns.append(f"{speaker}: {text}")
        return f"{self.system_prompt}\n\n---\n\n" + "\n\n".join(turns)

    def _save_attachments(self, attachments: list[ImageAttachment]) -> list[str]:
        if not attachments:
            return []
        ensure_forge_dir(self.project_dir)
        target_dir = get_attachments_dir(self.project_dir)
        target_dir.mkdir(parents=True, exist_ok=True)

        saved = []
        for attachment in attachments:
            name = _UNSAFE_FILENAME_CHARS.sub("_", Path(attachment.filename).name) or "image"
            path = target_dir / f"{uuid.uuid4().hex[:8]}_{name}"
            path.write_bytes(attachment.decode())
            saved.append(str(path.resolve()))
        logger.info(f"Saved {len(saved)} attachment(s) for {self.project_name}")
        return saved

    async def _record_features(self, transcript: str) -> None:
        proposed = parse_feature_blocks(transcript)
        if not proposed:
            return

        try:
            created = self.feature_sink.create_features(self.project_name, proposed)
        except Exception as e:
            logger.exception(f"Failed to create features for {self.project_name}")
            await self._broadcast({"type": "error", "content": f"Failed to create features: {e}"})
            return

        if not created:
            return
        self.features_created += len(created)
        self.created_feature_ids.extend(feature["id"] for feature in created)
        logger.info(f"Created {len(created)} features for {self.project_name}")
        await self._broadcast({"type": "features_created", "count": len(created), "features": created})


class SessionManager:
    """
    Process-wide map of project name to its chat session.

    ``get_or_create_session`` is atomic: concurrent callers for the same
    project get the same live session.  Sessions are only removed through
    ``remove_session``; a finished (CLOSED/ERRORED) session is replaced the
    next time one is requested.
    """

    def __init__(
        self,
        lookup: Optional[ProjectLookup] = None,
        client_factory: Callable[[], AgentClient] = create_agent_client,
        feature_sink: Optional[FeatureSink] = None,
    ):
        self.lookup = lookup or RegistryProjectLookup()
        self.client_factory = client_factory
        self.feature_sink = feature_sink or InMemoryFeatureSink()
        self._sessions: dict[str, ChatSession] = {}
        self._lock = threading.Lock()

    def get_session(self, project_name: str) -> Optional[ChatSession]:
        with self._lock:
            return self._sessions.get(project_name)

    def get_or_create_session(self, project_name: str) -> tuple[ChatSession, bool]:
        """
        Return the live session for a project, creating it if needed.

        Returns:
            (session, created)

        Raises:
            ProjectNotFoundError: if the project is not registered
        """
        if not self.lookup.exists(project_name):
            raise ProjectNotFoundError(project_name)
        project_dir = self.lookup.path(project_name)
        if project_dir is None:
            raise ProjectNotFoundError(project_name)

        with self._lock:
            existing = self._sessions.get(project_name)
            if existing is not None and not existing.is_terminal:
                return existing, False
            session = ChatSession(project_name, project_dir, self.client_factory(), self.feature_sink)
            self._sessions[project_name] = session

        if existing is not None:
            self._release_finished(existing)
        logger.info(f"Created expansion session for {project_name}")
        return session, True

    def _release_finished(self, session: ChatSession) -> None:
        # A finished session has no run in flight, so closing its client does not block
        try:
            session.client.close()
        except Exception as e:
            logger.warning(f"Error closing agent client for replaced {session.project_name} session: {e}")
        session.detach_all()
        logger.info(f"Replaced finished {session.state.value} expansion session for {session.project_name}")

    def create_session(self, project_name: str) -> ChatSession:
        return self.get_or_create_session(project_name)[0]

    async def remove_session(self, project_name: str) -> bool:
        with self._lock:
            session = self._sessions.pop(project_name, None)

        if session is None:
            return False
        try:
            await session.close()
        except Exception as e:
            logger.warning(f"Error closing expand session for {project_name}: {e}")
        logger.info(f"Removed expansion session for {project_name}")
        return True

    def list_sessions(self) -> list[str]:
        with self._lock:
            return list(self._sessions.keys())

    async def close_all(self) -> None:
        """Close all sessions. Called on server shutdown."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            try:
                await session.close()
            except Exception as e:
                logger.warning(f"Error closing expand session {session.project_name}: {e}")


_manager: Optional[SessionManager] = None
_manager_lock = threading.Lock()


def get_session_manager() -> SessionManager:
    global _manager
    with _manager_lock:
        if _manager is None:
            _manager = SessionManager()
        return _manager


def set_session_manager(manager: Optional[SessionManager]) -> None:
    """Install a manager (tests, embedding) or reset to lazy default with None."""
    global _manager
    with _manager_lock:
        _manager = manager
