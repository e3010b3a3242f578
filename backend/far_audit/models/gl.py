import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from far_audit.db.base import Base, TimestampMixin, UUIDMixin


class GLEntry(Base, UUIDMixin, TimestampMixin):
    """One General Ledger line plus the latest audit decoration."""

    __tablename__ = "gl_entries"

    account_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True, index=True)
    category: Mapped[str | None] = mapped_column(String(255), nullable=True)
    vendor: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    contract_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    row_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # upload order

    # Derived by the auditor / re-evaluator; NULL status means not yet audited
    status: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    far_issue: Mapped[str | None] = mapped_column(Text, nullable=True)
    far_section: Mapped[str | None] = mapped_column(String(50), nullable=True)
    gpt_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    approval_based_re_evaluation: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    audit_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # full AuditResult snapshot
