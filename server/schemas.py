"""
Pydantic Schemas
================

Request/Response models for the API endpoints and session protocol payloads.
"""

import base64
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

MAX_IMAGE_SIZE = 5 * 1024 * 1024


class ImageAttachment(BaseModel):
    """Image attachment sent with a chat message."""
    filename: str = Field(..., min_length=1, max_length=255)
    mimeType: Literal['image/jpeg', 'image/png']
    base64Data: str

    @field_validator('base64Data')
    @classmethod
    def validate_base64_and_size(cls, v: str) -> str:
        """Validate that base64 data is valid and within size limit."""
        try:
            decoded = base64.b64decode(v, validate=True)
        except ValueError as e:
            raise ValueError(f'Invalid base64 data: {e}')
        if len(decoded) > MAX_IMAGE_SIZE:
            raise ValueError(
                f'Image size ({len(decoded) / (1024 * 1024):.1f} MB) exceeds '
                f'maximum of {MAX_IMAGE_SIZE // (1024 * 1024)} MB'
            )
        return v

    def decode(self) -> bytes:
        return base64.b64decode(self.base64Data)


class ExpandSessionStatus(BaseModel):
    """Status of an expansion session."""
    project_name: str
    state: str
    is_active: bool
    is_complete: bool
    is_busy: bool
    features_created: int
    message_count: int
    observers: int


class CommandValidationRequest(BaseModel):
    """A shell command to check against the command policy."""
    command: str = Field(..., max_length=10000)
    project_name: Optional[str] = None


class CommandValidationResponse(BaseModel):
    """Result of a command policy check."""
    valid: bool
    message: Optional[str] = None


class SetupStatus(BaseModel):
    """System setup status."""
    backend: str
    agent_ready: bool
