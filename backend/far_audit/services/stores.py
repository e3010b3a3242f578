"""Storage collaborators for GL rows, documents, items and links.

Two interchangeable implementations:
  - MemoryStore: process-local dicts. Default backend; single worker only.
  - SqlStore:    async SQLAlchemy (PostgreSQL/asyncpg in production).

Every public method is one all-or-none unit. SqlStore opens a session and
transaction per call and wraps driver failures in StoreError. Methods that
take a `trail` commit those audit entries in the same unit as the change
they describe.
"""
import datetime
import json
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from far_audit.core.errors import LinkConflict, StoreError
from far_audit.models import AICallLog, AuditLog, GLDocLink, GLEntry
from far_audit.models import Document as DocumentRow
from far_audit.models import DocumentApproval as ApprovalRow
from far_audit.models import DocumentItem as ItemRow
from far_audit.schemas.audit import AICallRecord, AuditEntry
from far_audit.schemas.document import Approval, Document, DocumentItem, ItemsSnapshot, Link
from far_audit.schemas.gl import AuditResult, GLRow

logger = logging.getLogger(__name__)


class GLStore(Protocol):
    async def save_gl(self, rows: list[GLRow]) -> list[str]: ...
    async def list_gl(self) -> list[GLRow]: ...
    async def fetch_gl(self, limit: int, offset: int) -> list[GLRow]: ...
    async def get_gl(self, gl_entry_id: str) -> GLRow | None: ...
    async def count_gl(self) -> int: ...
    async def save_audit_results(
        self, results: list[AuditResult], trail: Sequence[AuditEntry] = ()
    ) -> None: ...
    async def list_audit_results(self) -> dict[str, AuditResult]: ...
    async def clear_gl(self) -> int: ...  # also drops every link
    # Row, stored result and links; returns links removed, None if the row is absent
    async def delete_gl(self, gl_entry_id: str, trail: AuditEntry | None = None) -> int | None: ...


class DocumentItemStore(Protocol):
    async def save_document(
        self,
        document: Document,
        items: list[DocumentItem],
        links: Sequence[Link] = (),
        trail: Sequence[AuditEntry] = (),
    ) -> None: ...
    async def list_items(self) -> ItemsSnapshot: ...
    async def get_item(self, document_item_id: str) -> DocumentItem | None: ...
    async def get_document(self, document_id: str) -> Document | None: ...
    async def clear_documents(self) -> int: ...  # also drops every link
    # Document, its items and their links; returns links removed, None if absent
    async def delete_document(self, document_id: str, trail: AuditEntry | None = None) -> int | None: ...


class LinkStore(Protocol):
    async def get_link(self, document_item_id: str, gl_entry_id: str) -> Link | None: ...
    async def insert_link(self, link: Link, trail: AuditEntry | None = None) -> Link: ...
    async def delete_link(
        self, document_item_id: str, gl_entry_id: str, trail: AuditEntry | None = None
    ) -> bool: ...
    async def list_links(
        self, gl_entry_id: str | None = None, document_item_id: str | None = None
    ) -> list[Link]: ...


class TrailStore(Protocol):
    async def append_audit(self, entry: AuditEntry) -> None: ...
    async def record_ai_call(self, record: AICallRecord) -> None: ...


class ComplianceStore(GLStore, DocumentItemStore, LinkStore, TrailStore, Protocol):
    """Everything the compliance service needs from persistence."""


def _gl_sort_key(row: GLRow):
    return (row.date or datetime.date.min, row.id)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ─── In-memory store ──────────────────────────────────────────────────────────

class MemoryStore:
    """Dict-backed store. All state lives on one event loop, so no locking here."""

    def __init__(self) -> None:
        self.gl: dict[str, GLRow] = {}
        self.audit_results: dict[str, AuditResult] = {}
        self.documents: dict[str, Document] = {}
        self.items: dict[str, DocumentItem] = {}
        self.links: dict[tuple[str, str], Link] = {}
        self.audit_trail: list[AuditEntry] = []
        self.ai_calls: list[AICallRecord] = []

    # ── GL ──
    async def save_gl(self, rows: list[GLRow]) -> list[str]:
        for row in rows:
            self.gl[row.id] = row
            self.audit_results.pop(row.id, None)
        return [row.id for row in rows]

    async def list_gl(self) -> list[GLRow]:
        return list(self.gl.values())

    async def fetch_gl(self, limit: int, offset: int) -> list[GLRow]:
        ordered = sorted(self.gl.values(), key=_gl_sort_key, reverse=True)
        return ordered[offset:offset + limit]

    async def get_gl(self, gl_entry_id: str) -> GLRow | None:
        return self.gl.get(gl_entry_id)

    async def count_gl(self) -> int:
        return len(self.gl)

    async def save_audit_results(
        self, results: list[AuditResult], trail: Sequence[AuditEntry] = ()
    ) -> None:
        await self._append_trail(trail)
        for result in results:
            if result.id in self.gl:
                self.audit_results[result.id] = result

    async def list_audit_results(self) -> dict[str, AuditResult]:
        return dict(self.audit_results)

    async def clear_gl(self) -> int:
        cleared = len(self.gl)
        self.gl.clear()
        self.audit_results.clear()
        self.links.clear()
        return cleared

    async def delete_gl(self, gl_entry_id: str, trail: AuditEntry | None = None) -> int | None:
        if gl_entry_id not in self.gl:
            return None
        await self._append_trail([trail] if trail else [])
        del self.gl[gl_entry_id]
        self.audit_results.pop(gl_entry_id, None)
        doomed = [key for key in self.links if key[1] == gl_entry_id]
        for key in doomed:
            del self.links[key]
        return len(doomed)

    # ── Documents / items ──
    async def save_document(
        self,
        document: Document,
        items: list[DocumentItem],
        links: Sequence[Link] = (),
        trail: Sequence[AuditEntry] = (),
    ) -> None:
        for link in links:
            if (link.document_item_id, link.gl_entry_id) in self.links:
                raise LinkConflict(f"link ({link.document_item_id}, {link.gl_entry_id}) already exists")
        await self._append_trail(trail)
        self.documents[document.id] = document
        for item in items:
            self.items[item.id] = item
        for link in links:
            self.links[(link.document_item_id, link.gl_entry_id)] = link.model_copy(
                update={"created_at": link.created_at or _utcnow()}
            )

    async def list_items(self) -> ItemsSnapshot:
        return ItemsSnapshot(
            items=list(self.items.values()),
            links=list(self.links.values()),
            documents=list(self.documents.values()),
        )

    async def get_item(self, document_item_id: str) -> DocumentItem | None:
        return self.items.get(document_item_id)

    async def get_document(self, document_id: str) -> Document | None:
        return self.documents.get(document_id)

    async def clear_documents(self) -> int:
        cleared = len(self.documents)
        self.documents.clear()
        self.items.clear()
        self.links.clear()
        return cleared

    async def delete_document(self, document_id: str, trail: AuditEntry | None = None) -> int | None:
        if document_id not in self.documents:
            return None
        await self._append_trail([trail] if trail else [])
        item_ids = {item.id for item in self.items.values() if item.document_id == document_id}
        doomed = [key for key in self.links if key[0] in item_ids]
        for key in doomed:
            del self.links[key]
        for item_id in item_ids:
            del self.items[item_id]
        del self.documents[document_id]
        return len(doomed)

    # ── Links ──
    async def get_link(self, document_item_id: str, gl_entry_id: str) -> Link | None:
        return self.links.get((document_item_id, gl_entry_id))

    async def insert_link(self, link: Link, trail: AuditEntry | None = None) -> Link:
        key = (link.document_item_id, link.gl_entry_id)
        if key in self.links:
            raise LinkConflict(f"link {key} already exists")
        stored = link.model_copy(update={"created_at": link.created_at or _utcnow()})
        await self._append_trail([trail] if trail else [])
        self.links[key] = stored
        return stored

    async def delete_link(
        self, document_item_id: str, gl_entry_id: str, trail: AuditEntry | None = None
    ) -> bool:
        key = (document_item_id, gl_entry_id)
        if key not in self.links:
            return False
        await self._append_trail([trail] if trail else [])
        del self.links[key]
        return True

    async def list_links(
        self, gl_entry_id: str | None = None, document_item_id: str | None = None
    ) -> list[Link]:
        return [
            link for link in self.links.values()
            if (gl_entry_id is None or link.gl_entry_id == gl_entry_id)
            and (document_item_id is None or link.document_item_id == document_item_id)
        ]

    # ── Trail ──
    async def append_audit(self, entry: AuditEntry) -> None:
        self.audit_trail.append(entry)

    async def _append_trail(self, entries: Sequence[AuditEntry]) -> None:
        # Runs before the mutation it describes; a failure leaves no partial trail
        mark = len(self.audit_trail)
        try:
            for entry in entries:
                await self.append_audit(entry)
        except Exception:
            del self.audit_trail[mark:]
            raise

    async def record_ai_call(self, record: AICallRecord) -> None:
        self.ai_calls.append(record)


# ─── SQL store ────────────────────────────────────────────────────────────────

def _gl_from_row(row: GLEntry) -> GLRow:
    return GLRow(
        id=row.id,
        account_number=row.account_number,
        description=row.description,
        amount=row.amount,
        date=row.date,
        category=row.category,
        vendor=row.vendor,
        contract_number=row.contract_number,
    )


def _document_from_row(row: DocumentRow) -> Document:
    return Document(
        id=row.id,
        filename=row.filename,
        mime_type=row.mime_type,
        doc_type=row.doc_type,
        text_content=row.text_content,
        meta=json.loads(row.meta_json) if row.meta_json else None,
        approvals=[
            Approval(
                decision=a.decision,
                approver=a.approver,
                title=a.title,
                date=a.date,
                summary=a.summary,
                confidence=a.confidence,
            )
            for a in row.approvals
        ],
    )


def _item_from_row(row: ItemRow) -> DocumentItem:
    return DocumentItem(
        id=row.id,
        document_id=row.document_id,
        kind=row.kind,
        vendor=row.vendor,
        date=row.date,
        amount=row.amount,
        currency=row.currency,
        details=json.loads(row.details_json) if row.details_json else {},
        text_excerpt=row.text_excerpt,
    )


def _link_from_row(row: GLDocLink) -> Link:
    return Link(
        document_item_id=row.document_item_id,
        gl_entry_id=row.gl_entry_id,
        source=row.source,
        score=row.score,
        created_at=row.created_at,
    )


def _audit_row(entry: AuditEntry) -> AuditLog:
    return AuditLog(
        action=entry.action,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        before_state=json.dumps(entry.before, default=str) if entry.before is not None else None,
        after_state=json.dumps(entry.after, default=str) if entry.after is not None else None,
        notes=entry.notes,
    )


def _link_row(link: Link) -> GLDocLink:
    return GLDocLink(
        document_item_id=link.document_item_id,
        gl_entry_id=link.gl_entry_id,
        source=link.source.value,
        score=link.score,
        created_at=link.created_at or _utcnow(),
    )


async def _flush_links(session: AsyncSession, links: Sequence[Link]) -> None:
    try:
        await session.flush()
    except IntegrityError as exc:
        pairs = ", ".join(f"({link.document_item_id}, {link.gl_entry_id})" for link in links)
        raise LinkConflict(f"link {pairs} already exists") from exc


class SqlStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            logger.error("Store operation failed: %s", exc)
            raise StoreError(f"database error: {exc.__class__.__name__}") from exc

    # ── GL ──
    async def save_gl(self, rows: list[GLRow]) -> list[str]:
        async with self._transaction() as session:
            last = (await session.execute(select(func.max(GLEntry.row_order)))).scalar()
            start = (last or 0) + 1
            for position, row in enumerate(rows, start=start):
                await session.merge(
                    GLEntry(
                        id=row.id,
                        account_number=row.account_number,
                        description=row.description,
                        amount=row.amount,
                        date=row.date,
                        category=row.category,
                        vendor=row.vendor,
                        contract_number=row.contract_number,
                        row_order=position,
                        status=None,
                        far_issue=None,
                        far_section=None,
                        gpt_reasoning=None,
                        approval_based_re_evaluation=False,
                        audit_json=None,
                    )
                )
        return [row.id for row in rows]

    async def list_gl(self) -> list[GLRow]:
        async with self._transaction() as session:
            result = await session.execute(select(GLEntry).order_by(GLEntry.row_order, GLEntry.id))
            return [_gl_from_row(r) for r in result.scalars().all()]

    async def fetch_gl(self, limit: int, offset: int) -> list[GLRow]:
        stmt = (
            select(GLEntry)
            .order_by(GLEntry.date.desc().nulls_last(), GLEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [_gl_from_row(r) for r in result.scalars().all()]

    async def get_gl(self, gl_entry_id: str) -> GLRow | None:
        async with self._transaction() as session:
            row = await session.get(GLEntry, gl_entry_id)
            return _gl_from_row(row) if row else None

    async def count_gl(self) -> int:
        async with self._transaction() as session:
            return (await session.execute(select(func.count(GLEntry.id)))).scalar() or 0

    async def save_audit_results(
        self, results: list[AuditResult], trail: Sequence[AuditEntry] = ()
    ) -> None:
        async with self._transaction() as session:
            session.add_all(_audit_row(entry) for entry in trail)
            for result in results:
                await session.execute(
                    update(GLEntry)
                    .where(GLEntry.id == result.id)
                    .values(
                        status=result.status.value,
                        far_issue=result.far_issue,
                        far_section=result.far_section,
                        gpt_reasoning=result.gpt_reasoning,
                        approval_based_re_evaluation=result.approval_based_re_evaluation,
                        audit_json=result.model_dump_json(),
                    )
                )

    async def list_audit_results(self) -> dict[str, AuditResult]:
        async with self._transaction() as session:
            result = await session.execute(select(GLEntry).where(GLEntry.audit_json.is_not(None)))
            return {
                r.id: AuditResult.model_validate_json(r.audit_json)
                for r in result.scalars().all()
            }

    async def clear_gl(self) -> int:
        async with self._transaction() as session:
            await session.execute(delete(GLDocLink))
            result = await session.execute(delete(GLEntry))
            return result.rowcount or 0

    async def delete_gl(self, gl_entry_id: str, trail: AuditEntry | None = None) -> int | None:
        async with self._transaction() as session:
            if await session.get(GLEntry, gl_entry_id) is None:
                return None
            result = await session.execute(delete(GLDocLink).where(GLDocLink.gl_entry_id == gl_entry_id))
            await session.execute(delete(GLEntry).where(GLEntry.id == gl_entry_id))
            if trail is not None:
                session.add(_audit_row(trail))
            return result.rowcount or 0

    # ── Documents / items ──
    async def save_document(
        self,
        document: Document,
        items: list[DocumentItem],
        links: Sequence[Link] = (),
        trail: Sequence[AuditEntry] = (),
    ) -> None:
        async with self._transaction() as session:
            session.add(
                DocumentRow(
                    id=document.id,
                    filename=document.filename,
                    mime_type=document.mime_type,
                    doc_type=document.doc_type.value,
                    text_content=document.text_content,
                    meta_json=json.dumps(document.meta, default=str) if document.meta is not None else None,
                    approvals=[
                        ApprovalRow(
                            decision=a.decision.value,
                            approver=a.approver,
                            title=a.title,
                            date=a.date,
                            summary=a.summary,
                            confidence=a.confidence,
                        )
                        for a in document.approvals
                    ],
                )
            )
            await session.flush()
            for item in items:
                session.add(
                    ItemRow(
                        id=item.id,
                        document_id=document.id,
                        kind=item.kind.value,
                        vendor=item.vendor,
                        date=item.date.isoformat() if item.date else None,
                        amount=item.amount,
                        currency=item.currency,
                        details_json=json.dumps(item.details, default=str) if item.details else None,
                        text_excerpt=item.text_excerpt,
                    )
                )
            if links:
                await session.flush()
                session.add_all(_link_row(link) for link in links)
                await _flush_links(session, links)
            session.add_all(_audit_row(entry) for entry in trail)

    async def list_items(self) -> ItemsSnapshot:
        async with self._transaction() as session:
            items = (await session.execute(select(ItemRow).order_by(ItemRow.created_at, ItemRow.id))).scalars().all()
            links = (await session.execute(select(GLDocLink).order_by(GLDocLink.created_at))).scalars().all()
            docs = (await session.execute(select(DocumentRow).order_by(DocumentRow.created_at))).scalars().all()
            return ItemsSnapshot(
                items=[_item_from_row(r) for r in items],
                links=[_link_from_row(r) for r in links],
                documents=[_document_from_row(r) for r in docs],
            )

    async def get_item(self, document_item_id: str) -> DocumentItem | None:
        async with self._transaction() as session:
            row = await session.get(ItemRow, document_item_id)
            return _item_from_row(row) if row else None

    async def get_document(self, document_id: str) -> Document | None:
        async with self._transaction() as session:
            result = await session.execute(select(DocumentRow).where(DocumentRow.id == document_id))
            row = result.scalars().first()
            return _document_from_row(row) if row else None

    async def clear_documents(self) -> int:
        async with self._transaction() as session:
            await session.execute(delete(GLDocLink))
            await session.execute(delete(ItemRow))
            await session.execute(delete(ApprovalRow))
            result = await session.execute(delete(DocumentRow))
            return result.rowcount or 0

    async def delete_document(self, document_id: str, trail: AuditEntry | None = None) -> int | None:
        async with self._transaction() as session:
            if await session.get(DocumentRow, document_id) is None:
                return None
            item_ids = select(ItemRow.id).where(ItemRow.document_id == document_id)
            result = await session.execute(
                delete(GLDocLink).where(GLDocLink.document_item_id.in_(item_ids))
            )
            await session.execute(delete(ItemRow).where(ItemRow.document_id == document_id))
            await session.execute(delete(ApprovalRow).where(ApprovalRow.document_id == document_id))
            await session.execute(delete(DocumentRow).where(DocumentRow.id == document_id))
            if trail is not None:
                session.add(_audit_row(trail))
            return result.rowcount or 0

    # ── Links ──
    async def get_link(self, document_item_id: str, gl_entry_id: str) -> Link | None:
        async with self._transaction() as session:
            row = await session.get(GLDocLink, (document_item_id, gl_entry_id))
            return _link_from_row(row) if row else None

    async def insert_link(self, link: Link, trail: AuditEntry | None = None) -> Link:
        async with self._transaction() as session:
            if trail is not None:
                session.add(_audit_row(trail))
            row = _link_row(link)
            session.add(row)
            await _flush_links(session, [link])
            return _link_from_row(row)

    async def delete_link(
        self, document_item_id: str, gl_entry_id: str, trail: AuditEntry | None = None
    ) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                delete(GLDocLink).where(
                    GLDocLink.document_item_id == document_item_id,
                    GLDocLink.gl_entry_id == gl_entry_id,
                )
            )
            if result.rowcount and trail is not None:
                session.add(_audit_row(trail))
            return bool(result.rowcount)

    async def list_links(
        self, gl_entry_id: str | None = None, document_item_id: str | None = None
    ) -> list[Link]:
        stmt = select(GLDocLink).order_by(GLDocLink.created_at)
        if gl_entry_id is not None:
            stmt = stmt.where(GLDocLink.gl_entry_id == gl_entry_id)
        if document_item_id is not None:
            stmt = stmt.where(GLDocLink.document_item_id == document_item_id)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [_link_from_row(r) for r in result.scalars().all()]

    # ── Trail ──
    async def append_audit(self, entry: AuditEntry) -> None:
        async with self._transaction() as session:
            session.add(_audit_row(entry))

    async def record_ai_call(self, record: AICallRecord) -> None:
        async with self._transaction() as session:
            session.add(
                AICallLog(
                    gl_entry_id=record.gl_entry_id,
                    call_type=record.call_type,
                    model=record.model,
                    prompt_tokens=record.prompt_tokens,
                    completion_tokens=record.completion_tokens,
                    latency_ms=record.latency_ms,
                    status=record.status,
                    error_message=record.error_message,
                    request_json=record.request_json,
                    response_json=record.response_json,
                )
            )
