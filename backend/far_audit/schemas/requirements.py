"""Pydantic schemas for the requirements projection."""
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from far_audit.schemas.base import Amount, CamelModel
from far_audit.schemas.gl import AuditStatus


class ApprovalState(str, Enum):
    FULL = "FULL"
    TENTATIVE = "TENTATIVE"
    PENDING = "PENDING"


class RequirementsRow(CamelModel):
    id: str
    status: AuditStatus
    amount: Amount = Decimal("0")
    attachments_count: int = 0
    approvals_count: int = 0
    has_receipt: bool = False
    has_approval: bool = False
    receipt_required: bool = False
    approval_required: bool = False
    pending: bool = False
    approval_state: ApprovalState = ApprovalState.PENDING
    doc_flag_unallowable: bool = False
    doc_summary: str | None = None
    reasons: list[str] = Field(default_factory=list)


class ReceiptPolicyOut(BaseModel):
    receipt_threshold: float | None


class RequirementsResponse(BaseModel):
    rows: list[RequirementsRow]
    policy: ReceiptPolicyOut
