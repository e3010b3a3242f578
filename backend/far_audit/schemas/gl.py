"""Pydantic schemas for GL rows and their audit results."""
import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from far_audit.core.parsing import parse_amount, parse_date
from far_audit.schemas.base import Amount, CamelModel


class AuditStatus(str, Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class GLRow(CamelModel):
    id: str
    account_number: str | None = None
    description: str = ""
    amount: Amount = Decimal("0")
    date: datetime.date | None = None
    category: str | None = None
    vendor: str | None = None
    contract_number: str | None = None

    @field_validator("description", mode="before")
    @classmethod
    def clean_description(cls, v):
        return "" if v is None else str(v)

    @field_validator("amount", mode="before")
    @classmethod
    def clean_amount(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return Decimal("0")
        amount = parse_amount(v)
        if amount is None:
            raise ValueError(f"unparseable amount: {v!r}")
        return amount

    @field_validator("date", mode="before")
    @classmethod
    def clean_date(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        parsed = parse_date(v)
        if parsed is None:
            raise ValueError(f"unparseable date: {v!r}")
        return parsed


class GLEntryIn(GLRow):
    """A GL row as uploaded; the id is minted on save when absent."""

    id: str | None = None


class AuditResult(GLRow):
    status: AuditStatus
    far_issue: str = "Compliant"
    far_section: str = ""

    # LLM re-evaluation outcome
    gpt_reasoning: str | None = None
    approvals_found: list[str] = Field(default_factory=list)
    approval_summary: str | None = None
    approval_based_re_evaluation: bool = False
    re_evaluation_reason: str | None = None
    re_evaluation_error: str | None = None
    diagnostics: list[str] = Field(default_factory=list)

    @field_validator("approvals_found", mode="before")
    @classmethod
    def clean_approvals_found(cls, v):
        # Models sometimes answer with a single string or null here
        if v is None:
            return []
        if isinstance(v, str):
            return [v] if v.strip() else []
        return [str(a) for a in v]


class GLSaveRequest(BaseModel):
    entries: list[GLEntryIn]


class GLSaveResponse(BaseModel):
    inserted: int
    ids: list[str]


class GLPage(BaseModel):
    rows: list[AuditResult]
    limit: int
    offset: int


class AuditResultsOut(BaseModel):
    results: list[AuditResult]


class ReviewRequest(BaseModel):
    gl_entry_ids: list[str] | None = None
