"""Records for the audit trail and LLM call log."""
import datetime
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class AuditEntry(BaseModel):
    action: str  # e.g. link.created, link.removed, gl.re_evaluated, admin.clear_all
    entity_type: str
    entity_id: str | None = None
    before: Any | None = None
    after: Any | None = None
    notes: str | None = None
    created_at: datetime.datetime = Field(default_factory=_utcnow)


class AICallRecord(BaseModel):
    gl_entry_id: str | None = None
    call_type: str = "re_evaluation"
    model: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    latency_ms: int | None = None
    status: str = "success"  # success, error, timeout
    error_message: str | None = None
    request_json: str | None = None
    response_json: str | None = None
    created_at: datetime.datetime = Field(default_factory=_utcnow)
