"""
Security Router
===============

Check shell commands against the effective command policy without running
anything.  Used by the UI to explain why the agent was blocked.
"""

import logging
import sys
from pathlib import Path

from fastapi import APIRouter, HTTPException

from ..schemas import CommandValidationRequest, CommandValidationResponse

# Add parent directory to path for shared module imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from registry import get_project_path, validate_project_name  # noqa: E402
from security import load_command_policy, validate_command  # noqa: E402

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/security", tags=["security"])


@router.post("/validate", response_model=CommandValidationResponse)
async def validate_command_endpoint(request: CommandValidationRequest):
    """
    Validate a command line.

    With ``project_name`` the project's ``.forge/allowed_commands.yaml``
    extends the policy; otherwise only org config and defaults apply.
    """
    project_dir = None
    if request.project_name:
        if not validate_project_name(request.project_name):
            raise HTTPException(status_code=400, detail="Invalid project name")
        project_dir = get_project_path(request.project_name)
        if project_dir is None:
            raise HTTPException(status_code=404, detail="Project not found in registry")

    result = validate_command(request.command, load_command_policy(project_dir))
    if not result.valid:
        logger.debug(f"Command rejected by policy: {result.message}")
    return CommandValidationResponse(valid=result.valid, message=result.message)
