from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from far_audit.db.base import Base


class GLDocLink(Base):
    """Many-to-many relation between document items and GL rows."""

    __tablename__ = "gl_doc_links"

    document_item_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("doc_items.id", ondelete="CASCADE"), primary_key=True
    )
    gl_entry_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("gl_entries.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    source: Mapped[str] = mapped_column(String(10), nullable=False, default="manual")  # auto, manual
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
