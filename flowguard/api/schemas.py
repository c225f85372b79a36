from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Stable error codes carried in the error envelope
_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "not_found",
    "conflict",
    "cycle_detected",
    "resource_limit_exceeded",
    "loop_detected",
    "storage_unavailable",
    "server_error",
})

MAX_THREAD_ID_LENGTH = 255
MAX_FEEDBACK_LENGTH = 8192


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ThreadInitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: Optional[str] = Field(default=None, max_length=255)


class ResumeRequest(BaseModel):
    """Human response to a pending interrupt."""

    model_config = ConfigDict(extra="forbid")

    action: str = Field(..., min_length=1, max_length=MAX_FEEDBACK_LENGTH)
    feedback: Optional[str] = Field(default=None, max_length=MAX_FEEDBACK_LENGTH)

    @field_validator("action")
    @classmethod
    def _strip_action(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("action must not be blank")
        return stripped


class InterruptPayloadResponse(BaseModel):
    type: str
    question: str
    options: List[str] = Field(default_factory=list)
    data: Optional[Any] = None
    timestamp: str


class ThreadInitResponse(BaseModel):
    is_new: bool
    thread_id: str
    state: Optional[Any] = None
    version: Optional[int] = None
    persisted: bool


class ThreadResponse(BaseModel):
    thread_id: str
    status: str
    current_checkpoint_version: Optional[int] = None
    state: Optional[Any] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    versions: List[int] = Field(default_factory=list)
    pending_interrupt: Optional[InterruptPayloadResponse] = None
    user_id: Optional[str] = None
    component: Optional[str] = None
    start_time: Optional[str] = None
    last_activity: Optional[str] = None


class ResumeResponse(BaseModel):
    thread_id: str
    intent: str
    next_step: Optional[str] = None
    feedback: Optional[str] = None
    state: Optional[Any] = None
    reinterrupted: bool = False
    follow_up: Optional[InterruptPayloadResponse] = None


class ThreadListResponse(BaseModel):
    items: List[str]
