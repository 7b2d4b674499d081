"""
Expansion Chat Protocol
=======================

Transport-agnostic handling of the expansion session protocol for one
connected client.

Client -> Server:
- {"type": "ping"} - Keep-alive ping
- {"type": "start"} - Start (or resume) the expansion session
- {"type": "message", "content": "...", "attachments": [...]} - User turn
- {"type": "done"} - Finish the session

Server -> Client:
- {"type": "pong"}
- {"type": "text", "content": "..."} - Streamed agent output and notices
- {"type": "features_created", "count": N, "features": [...]}
- {"type": "expansion_complete", "total_added": N}
- {"type": "response_done"}
- {"type": "error", "content": "..."}

Every inbound message gets a reply; nothing is silently dropped.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from ..exceptions import InvalidStateError, ProjectNotFoundError
from ..schemas import ImageAttachment
from .chat_session import ChatSession, SessionManager

logger = logging.getLogger(__name__)

NO_SESSION_MESSAGE = "No active session. Send 'start' first."

Sender = Callable[[dict], Awaitable[None]]


class ChatProtocolHandler:
    """Dispatches inbound messages from one client to the project's session."""

    def __init__(self, project_name: str, send: Sender, manager: SessionManager):
        self.project_name = project_name
        self.send = send
        self.manager = manager
        self.session: Optional[ChatSession] = None

    async def error(self, content: str) -> None:
        await self.send({"type": "error", "content": content})

    async def handle_text(self, data: str) -> None:
        """Handle one raw frame."""
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            await self.error("Invalid JSON")
            return
        await self.handle(message)

    async def handle(self, message: Any) -> None:
        if not isinstance(message, dict):
            await self.error("Malformed message: expected a JSON object")
            return

        msg_type = message.get("type")
        if not isinstance(msg_type, str) or not msg_type:
            await self.error("Malformed message: missing 'type'")
            return

        if msg_type == "ping":
            await self.send({"type": "pong"})
        elif msg_type == "start":
            await self._handle_start()
        elif msg_type == "message":
            await self._handle_message(message)
        elif msg_type == "done":
            await self._handle_done()
        else:
            await self.error(f"Unknown message type: {msg_type}")

    def detach(self) -> None:
        """Stop receiving session output. The session itself stays alive."""
        if self.session is not None:
            self.session.remove_observer(self.send)
            self.session = None

    def _attach(self, session: ChatSession) -> None:
        if self.session is not session:
            self.detach()
            self.session = session
        session.add_observer(self.send)

    def _current_session(self) -> Optional[ChatSession]:
        session = self.manager.get_session(self.project_name)
        if session is not None:
            self._attach(session)
        return session

    async def _handle_start(self) -> None:
        try:
            session, created = self.manager.get_or_create_session(self.project_name)
        except ProjectNotFoundError as e:
            await self.error(str(e))
            return

        self._attach(session)
        try:
            await session.start(observer=self.send)
        except InvalidStateError as e:
            await self.error(str(e))

    async def _handle_message(self, message: dict) -> None:
        session = self._current_session()
        if session is None:
            await self.error(NO_SESSION_MESSAGE)
            return

        content = message.get("content", "")
        if content is None:
            content = ""
        if not isinstance(content, str):
            await self.error("Malformed message: 'content' must be a string")
            return
        content = content.strip()

        raw_attachments = message.get("attachments") or []
        if not isinstance(raw_attachments, list):
            await self.error("Invalid attachment format")
            return

        attachments: list[ImageAttachment] = []
        try:
            for raw in raw_attachments:
                if not isinstance(raw, dict):
                    raise TypeError("attachment must be an object")
                attachments.append(ImageAttachment(**raw))
        except (ValidationError, TypeError) as e:
            logger.warning(f"Invalid attachment data: {e}")
            await self.error("Invalid attachment format")
            return

        # Allow empty content if attachments are present
        if not content and not attachments:
            await self.error("Empty message")
            return

        try:
            await session.send_user_message(content, attachments or None)
        except InvalidStateError as e:
            await self.error(str(e))

    async def _handle_done(self) -> None:
        session = self._current_session()
        if session is None:
            await self.error(NO_SESSION_MESSAGE)
            return

        try:
            await session.mark_complete()
        except InvalidStateError as e:
            await self.error(str(e))
