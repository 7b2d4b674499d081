"""
Expand Project Router
=====================

WebSocket and REST endpoints for interactive project expansion with the
coding agent.  Allows adding multiple features to existing projects via
natural language.
"""

import logging
import sys
from pathlib import Path

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from ..exceptions import InvalidStateError, ProjectNotFoundError
from ..schemas import ExpandSessionStatus
from ..services.chat_protocol import ChatProtocolHandler
from ..services.chat_session import ChatSession, get_session_manager

# Add parent directory to path for shared module imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from registry import validate_project_name  # noqa: E402

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/expand", tags=["expand-project"])


def _checked_project_name(project_name: str) -> str:
    if not validate_project_name(project_name):
        raise HTTPException(status_code=400, detail="Invalid project name")
    return project_name


def _require_session(project_name: str) -> ChatSession:
    manager = get_session_manager()
    session = manager.get_session(_checked_project_name(project_name))
    if session is None:
        if not manager.lookup.exists(project_name):
            raise ProjectNotFoundError(project_name)
        raise HTTPException(status_code=404, detail="No active expansion session for this project")
    return session


# ============================================================================
# REST Endpoints
# ============================================================================

@router.get("/sessions", response_model=list[str])
async def list_expand_sessions_endpoint():
    """List all expansion sessions."""
    return get_session_manager().list_sessions()


@router.get("/sessions/{project_name}", response_model=ExpandSessionStatus)
async def get_expand_session_status(project_name: str):
    """Get status of an expansion session."""
    session = _require_session(project_name)
    return ExpandSessionStatus(
        project_name=project_name,
        state=session.state.value,
        is_active=not session.is_terminal,
        is_complete=session.is_complete,
        is_busy=session.is_busy,
        features_created=session.features_created,
        message_count=len(session.messages),
        observers=session.observer_count,
    )


@router.post("/sessions/{project_name}/stop")
async def stop_expand_session(project_name: str):
    """Stop the agent run in progress; the session stays open."""
    session = _require_session(project_name)
    if session.is_terminal:
        raise InvalidStateError("stop", session.state.value)
    stopped = await session.stop()
    return {"success": True, "stopped": stopped}


@router.delete("/sessions/{project_name}")
async def cancel_expand_session(project_name: str):
    """Cancel and remove an expansion session."""
    _require_session(project_name)
    await get_session_manager().remove_session(project_name)
    return {"success": True, "message": "Expansion session cancelled"}


# ============================================================================
# WebSocket Endpoint
# ============================================================================

@router.websocket("/ws/{project_name}")
async def expand_project_websocket(websocket: WebSocket, project_name: str):
    """
    WebSocket endpoint for interactive project expansion chat.

    See ``server.services.chat_protocol`` for the message protocol.
    """
    if not validate_project_name(project_name):
        await websocket.close(code=4000, reason="Invalid project name")
        return

    manager = get_session_manager()
    if not manager.lookup.exists(project_name):
        await websocket.close(code=4004, reason="Project not found in registry")
        return

    await websocket.accept()
    handler = ChatProtocolHandler(project_name, websocket.send_json, manager)

    try:
        while True:
            data = await websocket.receive_text()
            await handler.handle_text(data)

    except WebSocketDisconnect:
        logger.info(f"Expand chat WebSocket disconnected for {project_name}")

    except Exception:
        logger.exception(f"Expand chat WebSocket error for {project_name}")
        try:
            await websocket.send_json({"type": "error", "content": "Internal server error"})
        except Exception:
            pass

    finally:
        # Don't remove the session on disconnect - allow resume
        handler.detach()
