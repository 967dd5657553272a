from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tenantauth.service.errors import ErrorKind

_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is always an ErrorKind value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))
