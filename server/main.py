"""
FastAPI Main Application
========================

Main entry point for the Forge server.
Provides the expansion chat WebSocket and its REST companions.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .exceptions import InvalidStateError, ProjectNotFoundError
from .routers import expand_project_router, security_router
from .schemas import SetupStatus
from .services.agent_client import create_agent_client
from .services.chat_constants import ROOT_DIR  # noqa: F401  (puts the repo root on sys.path)
from .services.chat_session import get_session_manager

from env_constants import (  # noqa: E402
    AGENT_BACKEND_ENV,
    DEFAULT_AGENT_BACKEND,
    DEFAULT_HOST,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PORT,
    HOST_ENV,
    LOG_LEVEL_ENV,
    PORT_ENV,
    get_env_int,
)
from temp_cleanup import cleanup_stale_temp  # noqa: E402

logging.basicConfig(
    level=os.getenv(LOG_LEVEL_ENV, DEFAULT_LOG_LEVEL).upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Module logger
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    # Startup - clean up agent temp files left behind by previous runs
    stats = await asyncio.to_thread(cleanup_stale_temp)
    if stats["errors"]:
        logger.debug(f"Temp cleanup reported {len(stats['errors'])} errors")

    yield

    # Shutdown - stop running agents and drop all sessions
    await get_session_manager().close_all()


# Create FastAPI app
app = FastAPI(
    title="Forge",
    description="Interactive project expansion with a coding agent",
    version="1.0.0",
    lifespan=lifespan,
)

# Check if remote access is enabled via environment variable
ALLOW_REMOTE = os.environ.get("FORGE_ALLOW_REMOTE", "").lower() in ("1", "true", "yes")

if ALLOW_REMOTE:
    logger.warning(
        "FORGE_ALLOW_REMOTE is enabled. The agent chat is exposed to the network. "
        "Only use this in trusted network environments."
    )

# CORS - allow all origins when remote access is enabled, otherwise localhost only
if ALLOW_REMOTE:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",      # Vite dev server
            "http://127.0.0.1:5173",
            "http://localhost:8888",      # Production
            "http://127.0.0.1:8888",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ============================================================================
# Security Middleware
# ============================================================================

@app.middleware("http")
async def require_localhost(request: Request, call_next):
    """Only allow requests from localhost (disabled when FORGE_ALLOW_REMOTE=1)."""
    if ALLOW_REMOTE:
        return await call_next(request)

    client_host = request.client.host if request.client else None
    if client_host not in ("127.0.0.1", "::1", "localhost", None):
        return JSONResponse(status_code=403, content={"detail": "Localhost access only"})

    return await call_next(request)


# ============================================================================
# Error Mapping
# ============================================================================

@app.exception_handler(ProjectNotFoundError)
async def project_not_found_handler(request: Request, exc: ProjectNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(expand_project_router)
app.include_router(security_router)


# ============================================================================
# Setup & Health Endpoints
# ============================================================================

@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/api/setup/status", response_model=SetupStatus)
async def setup_status():
    """Check that the configured agent backend can be invoked."""
    backend = (os.getenv(AGENT_BACKEND_ENV, "") or DEFAULT_AGENT_BACKEND).strip().lower()
    try:
        client = create_agent_client(backend)
    except ValueError as e:
        logger.warning(str(e))
        return SetupStatus(backend=backend, agent_ready=False)

    agent_ready = await asyncio.to_thread(client.is_ready)
    return SetupStatus(backend=backend, agent_ready=agent_ready)


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server.main:app",
        host=os.getenv(HOST_ENV, DEFAULT_HOST),  # Localhost only unless overridden
        port=get_env_int(PORT_ENV, DEFAULT_PORT),
        reload=True,
    )
