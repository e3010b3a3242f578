"""Pydantic schemas for OCR'd documents, their items and links to GL rows."""
import datetime
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from far_audit.core.parsing import parse_amount, parse_date
from far_audit.schemas.base import Amount


def _new_id() -> str:
    return str(uuid.uuid4())


class DocType(str, Enum):
    RECEIPT = "receipt"
    INVOICE = "invoice"
    APPROVAL = "approval"
    OTHER = "other"
    UNKNOWN = "unknown"


class ItemKind(str, Enum):
    RECEIPT = "receipt"
    INVOICE = "invoice"
    LINE = "line"
    APPROVAL = "approval"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


class LinkSource(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class Approval(BaseModel):
    decision: ApprovalDecision = ApprovalDecision.UNKNOWN
    approver: str | None = None
    title: str | None = None
    date: str | None = None  # ISO yyyy-mm-dd when parseable
    summary: str | None = None
    confidence: float | None = None


class Document(BaseModel):
    id: str = Field(default_factory=_new_id)
    filename: str = ""
    mime_type: str | None = None
    doc_type: DocType = DocType.UNKNOWN
    text_content: str | None = None
    meta: dict[str, Any] | None = None  # may carry ocr_data.raw_text
    approvals: list[Approval] = Field(default_factory=list)

    @property
    def raw_ocr_text(self) -> str | None:
        ocr_data = (self.meta or {}).get("ocr_data")
        if isinstance(ocr_data, dict):
            raw = ocr_data.get("raw_text")
            if isinstance(raw, str) and raw.strip():
                return raw
        return None


class DocumentItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    document_id: str = ""
    kind: ItemKind = ItemKind.RECEIPT
    vendor: str | None = None
    date: datetime.date | None = None
    amount: Amount | None = None
    currency: str = "USD"
    details: dict[str, Any] = Field(default_factory=dict)  # optional lines[] of {desc, amount}
    text_excerpt: str | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def clean_amount(cls, v):
        return parse_amount(v)

    @field_validator("date", mode="before")
    @classmethod
    def clean_date(cls, v):
        # OCR dates are best effort; an unreadable one just stops contributing to matches
        return parse_date(v)

    @property
    def detail_lines(self) -> list[dict[str, Any]]:
        lines = self.details.get("lines") if self.details else None
        return [line for line in lines if isinstance(line, dict)] if isinstance(lines, list) else []


class Link(BaseModel):
    document_item_id: str
    gl_entry_id: str
    source: LinkSource = LinkSource.MANUAL
    score: float | None = None
    created_at: datetime.datetime | None = None


class ItemsSnapshot(BaseModel):
    items: list[DocumentItem]
    links: list[Link]
    documents: list[Document]


class IngestRequest(BaseModel):
    document: Document
    items: list[DocumentItem] = Field(default_factory=list)


class IngestResponse(BaseModel):
    document: Document
    items: list[DocumentItem]
    auto_links: list[Link]


class LinkRequest(BaseModel):
    document_item_id: str = Field(min_length=1)
    gl_entry_id: str = Field(min_length=1)


class LinkResponse(BaseModel):
    ok: bool = True
    document_item_id: str
    gl_entry_id: str


class MatchCandidateOut(BaseModel):
    document_item_id: str
    score: float
    ui_score: float
    best: bool
    vendor_match: bool
    amount_delta: float | None
    date_delta_days: int | None
    discrepancies: list[str]


class SuggestionsOut(BaseModel):
    gl_entry_id: str
    candidates: list[MatchCandidateOut]
