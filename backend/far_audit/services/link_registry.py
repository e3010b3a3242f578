"""Link registry: the item ↔ GL relation stored as data.

Links are unique per (document_item_id, gl_entry_id). link/unlink are
idempotent, and every write for a given GL row runs under that row's lock
so concurrent auto-link and manual-link requests cannot interleave. Each
write reaches the store as a single call carrying its audit trail entry,
so a failed call leaves neither the change nor its trail behind.
"""
import asyncio
import datetime
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager

from far_audit.core.errors import LinkConflict, NotFoundError
from far_audit.schemas.audit import AuditEntry
from far_audit.schemas.document import Document, DocumentItem, Link, LinkSource
from far_audit.services import audit
from far_audit.services.stores import ComplianceStore

logger = logging.getLogger(__name__)


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold_all(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """Hold several keys at once, acquired in sorted order."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                await stack.enter_async_context(self.hold(key))
            yield

    def __len__(self) -> int:
        return len(self._locks)


def _link_key(document_item_id: str, gl_entry_id: str) -> str:
    return f"{document_item_id}:{gl_entry_id}"


def _created_entry(link: Link) -> AuditEntry:
    return audit.entry(
        action="link.created",
        entity_type="link",
        entity_id=_link_key(link.document_item_id, link.gl_entry_id),
        after=link.model_dump(mode="json"),
    )


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class LinkRegistry:
    def __init__(self, store: ComplianceStore):
        self._store = store
        self._locks = KeyedLock()

    async def _require(self, document_item_id: str, gl_entry_id: str) -> None:
        if await self._store.get_item(document_item_id) is None:
            raise NotFoundError("document item", document_item_id)
        if await self._store.get_gl(gl_entry_id) is None:
            raise NotFoundError("GL entry", gl_entry_id)

    async def link(
        self,
        document_item_id: str,
        gl_entry_id: str,
        source: LinkSource = LinkSource.MANUAL,
        score: float | None = None,
    ) -> Link:
        """Create the link, or return the existing one for the same pair."""
        async with self._locks.hold(gl_entry_id):
            await self._require(document_item_id, gl_entry_id)

            existing = await self._store.get_link(document_item_id, gl_entry_id)
            if existing is not None:
                return existing

            link = Link(
                document_item_id=document_item_id,
                gl_entry_id=gl_entry_id,
                source=source,
                score=score,
                created_at=_utcnow(),
            )
            try:
                created = await self._store.insert_link(link, _created_entry(link))
            except LinkConflict:
                # Another writer (e.g. a second worker on the same database) got there first
                existing = await self._store.get_link(document_item_id, gl_entry_id)
                if existing is None:
                    raise
                return existing

            logger.info(
                "Linked item %s to GL %s (%s, score=%s)",
                document_item_id, gl_entry_id, source.value, score,
            )
            return created

    async def unlink(self, document_item_id: str, gl_entry_id: str) -> None:
        """Remove the link if present. Removing an absent link is a no-op."""
        async with self._locks.hold(gl_entry_id):
            await self._require(document_item_id, gl_entry_id)
            existing = await self._store.get_link(document_item_id, gl_entry_id)
            if existing is None:
                return
            removed = await self._store.delete_link(
                document_item_id,
                gl_entry_id,
                audit.entry(
                    action="link.removed",
                    entity_type="link",
                    entity_id=_link_key(document_item_id, gl_entry_id),
                    before=existing.model_dump(mode="json"),
                ),
            )
            if removed:
                logger.info("Unlinked item %s from GL %s", document_item_id, gl_entry_id)

    async def save_document(
        self, document: Document, items: list[DocumentItem], links: list[Link]
    ) -> list[Link]:
        """Store a new document with its items and their initial links in one call.

        Holds every target GL row's lock for the duration. Links whose GL row
        has vanished or whose pair already exists are dropped; the rest are
        returned as stored.
        """
        async with self._locks.hold_all(link.gl_entry_id for link in links):
            accepted: list[Link] = []
            for link in links:
                if await self._store.get_gl(link.gl_entry_id) is None:
                    logger.warning("Auto-link target GL %s vanished before ingest", link.gl_entry_id)
                    continue
                if await self._store.get_link(link.document_item_id, link.gl_entry_id) is not None:
                    continue
                accepted.append(link.model_copy(update={"created_at": link.created_at or _utcnow()}))

            trail = [
                audit.entry(
                    action="document.ingested",
                    entity_type="document",
                    entity_id=document.id,
                    after={"filename": document.filename, "doc_type": document.doc_type.value},
                    notes=f"{len(items)} items",
                ),
                *(_created_entry(link) for link in accepted),
            ]
            await self._store.save_document(document, items, accepted, trail)
        for link in accepted:
            logger.info(
                "Linked item %s to GL %s (%s, score=%s)",
                link.document_item_id, link.gl_entry_id, link.source.value, link.score,
            )
        return accepted

    async def list_by_gl(self, gl_entry_id: str) -> list[Link]:
        return await self._store.list_links(gl_entry_id=gl_entry_id)

    async def list_by_item(self, document_item_id: str) -> list[Link]:
        return await self._store.list_links(document_item_id=document_item_id)

    async def cascade_on_delete(
        self,
        *,
        gl_entry_id: str | None = None,
        document_id: str | None = None,
        trail: AuditEntry | None = None,
    ) -> int:
        """Delete a GL row or a document together with every link touching it.

        The entity, its links and the trail entry go in one store call made
        under the lock of every affected GL row. Returns the number of links
        removed; raises NotFoundError when the entity does not exist.
        """
        if (gl_entry_id is None) == (document_id is None):
            raise ValueError("pass exactly one of gl_entry_id or document_id")

        if gl_entry_id is not None:
            async with self._locks.hold(gl_entry_id):
                removed = await self._store.delete_gl(gl_entry_id, trail)
            if removed is None:
                raise NotFoundError("GL entry", gl_entry_id)
        else:
            # Links of one document can span many GL rows
            snapshot = await self._store.list_items()
            item_ids = {item.id for item in snapshot.items if item.document_id == document_id}
            gl_ids = {link.gl_entry_id for link in snapshot.links if link.document_item_id in item_ids}
            async with self._locks.hold_all(gl_ids):
                removed = await self._store.delete_document(document_id, trail)
            if removed is None:
                raise NotFoundError("document", document_id)

        logger.info(
            "Deleted %s and %d link(s)",
            f"GL {gl_entry_id}" if gl_entry_id else f"document {document_id}", removed,
        )
        return removed
