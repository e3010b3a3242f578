"""Tests for the link registry: idempotence, concurrency and cascades."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from far_audit.core.errors import LinkConflict, NotFoundError, StoreError
from far_audit.schemas.audit import AuditEntry
from far_audit.schemas.document import Document, DocumentItem, Link, LinkSource
from far_audit.schemas.gl import GLRow
from far_audit.services.link_registry import KeyedLock, LinkRegistry
from far_audit.services.stores import MemoryStore


async def _seeded_store() -> MemoryStore:
    store = MemoryStore()
    await store.save_gl([GLRow(id="g1", description="Hotel"), GLRow(id="g2", description="Taxi")])
    await store.save_document(
        Document(id="d1", filename="receipt.pdf"),
        [DocumentItem(id="i1", document_id="d1"), DocumentItem(id="i2", document_id="d1")],
    )
    return store


# ─── link / unlink ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_link_twice_yields_one_link_and_one_audit_entry():
    store = await _seeded_store()
    registry = LinkRegistry(store)

    first = await registry.link("i1", "g1")
    second = await registry.link("i1", "g1", source=LinkSource.AUTO, score=9.5)

    assert first == second
    assert second.source is LinkSource.MANUAL
    assert await registry.list_by_gl("g1") == [first]
    assert [e.action for e in store.audit_trail] == ["link.created"]
    assert store.audit_trail[0].entity_id == "i1:g1"


@pytest.mark.asyncio
async def test_unlink_is_idempotent():
    store = await _seeded_store()
    registry = LinkRegistry(store)
    await registry.link("i1", "g1")

    await registry.unlink("i1", "g1")
    await registry.unlink("i1", "g1")

    assert await registry.list_by_item("i1") == []
    assert [e.action for e in store.audit_trail] == ["link.created", "link.removed"]


@pytest.mark.asyncio
async def test_link_to_unknown_gl_row_raises_not_found():
    registry = LinkRegistry(await _seeded_store())
    with pytest.raises(NotFoundError) as exc_info:
        await registry.link("i1", "missing")
    assert exc_info.value.entity_type == "GL entry"


@pytest.mark.asyncio
async def test_unlink_unknown_item_raises_not_found():
    registry = LinkRegistry(await _seeded_store())
    with pytest.raises(NotFoundError):
        await registry.unlink("nope", "g1")


@pytest.mark.asyncio
async def test_concurrent_links_for_same_pair_store_exactly_one():
    store = await _seeded_store()
    registry = LinkRegistry(store)

    results = await asyncio.gather(*(registry.link("i1", "g1") for _ in range(10)))

    assert len(store.links) == 1
    assert all(r == results[0] for r in results)
    assert len(registry._locks) == 0


@pytest.mark.asyncio
async def test_insert_conflict_from_another_writer_returns_existing_link():
    store = await _seeded_store()
    existing = Link(document_item_id="i1", gl_entry_id="g1", source=LinkSource.AUTO, score=7.0)
    store.get_link = AsyncMock(side_effect=[None, existing])
    store.insert_link = AsyncMock(side_effect=LinkConflict("duplicate"))

    link = await LinkRegistry(store).link("i1", "g1")

    assert link is existing
    assert store.audit_trail == []


# ─── Cascades ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cascade_on_gl_delete_removes_the_row_and_only_its_links():
    store = await _seeded_store()
    registry = LinkRegistry(store)
    await registry.link("i1", "g1")
    await registry.link("i2", "g1")
    await registry.link("i1", "g2")

    removed = await registry.cascade_on_delete(gl_entry_id="g1")

    assert removed == 2
    assert await store.get_gl("g1") is None
    assert [(l.document_item_id, l.gl_entry_id) for l in await store.list_links()] == [("i1", "g2")]
    assert len(registry._locks) == 0


@pytest.mark.asyncio
async def test_cascade_on_document_delete_spans_gl_rows():
    store = await _seeded_store()
    await store.save_document(Document(id="d2", filename="memo.pdf"), [DocumentItem(id="i3", document_id="d2")])
    registry = LinkRegistry(store)
    await registry.link("i1", "g1")
    await registry.link("i2", "g2")
    await registry.link("i3", "g2")

    assert await registry.cascade_on_delete(document_id="d1") == 2
    assert await store.get_item("i1") is None
    assert await store.get_document("d1") is None
    assert [l.document_item_id for l in await store.list_links()] == ["i3"]


@pytest.mark.asyncio
async def test_cascade_of_missing_entity_raises_not_found():
    registry = LinkRegistry(await _seeded_store())
    with pytest.raises(NotFoundError):
        await registry.cascade_on_delete(gl_entry_id="missing")
    with pytest.raises(NotFoundError):
        await registry.cascade_on_delete(document_id="missing")


@pytest.mark.asyncio
@pytest.mark.parametrize("kwargs", [{}, {"gl_entry_id": "g1", "document_id": "d1"}])
async def test_cascade_requires_exactly_one_key(kwargs):
    registry = LinkRegistry(await _seeded_store())
    with pytest.raises(ValueError):
        await registry.cascade_on_delete(**kwargs)


# ─── All-or-none writes ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_failed_trail_write_leaves_no_link():
    store = await _seeded_store()
    store.append_audit = AsyncMock(side_effect=StoreError("audit log unavailable"))
    registry = LinkRegistry(store)

    with pytest.raises(StoreError):
        await registry.link("i1", "g1")

    assert store.links == {}
    assert await registry.list_by_gl("g1") == []
    assert len(registry._locks) == 0


@pytest.mark.asyncio
async def test_failed_trail_write_keeps_the_link_on_unlink():
    store = await _seeded_store()
    registry = LinkRegistry(store)
    await registry.link("i1", "g1")
    store.append_audit = AsyncMock(side_effect=StoreError("audit log unavailable"))

    with pytest.raises(StoreError):
        await registry.unlink("i1", "g1")

    assert len(await registry.list_by_gl("g1")) == 1
    assert [e.action for e in store.audit_trail] == ["link.created"]


@pytest.mark.asyncio
async def test_failed_trail_write_keeps_the_gl_row_on_delete():
    store = await _seeded_store()
    registry = LinkRegistry(store)
    await registry.link("i1", "g1")
    store.append_audit = AsyncMock(side_effect=StoreError("audit log unavailable"))

    with pytest.raises(StoreError):
        await registry.cascade_on_delete(
            gl_entry_id="g1", trail=AuditEntry(action="gl.deleted", entity_type="gl_entry")
        )

    assert await store.get_gl("g1") is not None
    assert len(await registry.list_by_gl("g1")) == 1


@pytest.mark.asyncio
async def test_save_document_stores_document_items_links_and_trail_together():
    store = await _seeded_store()
    registry = LinkRegistry(store)
    links = [
        Link(document_item_id="i9", gl_entry_id="g1", source=LinkSource.AUTO, score=9.5),
        Link(document_item_id="i9", gl_entry_id="gone", source=LinkSource.AUTO, score=8.0),
    ]

    stored = await registry.save_document(
        Document(id="d9", filename="receipt.jpg"), [DocumentItem(id="i9", document_id="d9")], links
    )

    assert [(l.document_item_id, l.gl_entry_id) for l in stored] == [("i9", "g1")]
    assert stored[0].created_at is not None
    assert await store.get_link("i9", "g1") == stored[0]
    assert [e.action for e in store.audit_trail] == ["document.ingested", "link.created"]


@pytest.mark.asyncio
async def test_failed_trail_write_on_ingest_stores_nothing():
    store = await _seeded_store()
    store.append_audit = AsyncMock(side_effect=StoreError("audit log unavailable"))
    registry = LinkRegistry(store)
    link = Link(document_item_id="i9", gl_entry_id="g1", source=LinkSource.AUTO, score=9.5)

    with pytest.raises(StoreError):
        await registry.save_document(
            Document(id="d9", filename="receipt.jpg"), [DocumentItem(id="i9", document_id="d9")], [link]
        )

    assert await store.get_document("d9") is None
    assert await store.get_item("i9") is None
    assert store.links == {}


@pytest.mark.asyncio
async def test_partial_trail_is_rolled_back():
    store = await _seeded_store()
    append = store.append_audit
    calls = 0

    async def fail_second(entry):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise StoreError("audit log unavailable")
        await append(entry)

    store.append_audit = fail_second
    link = Link(document_item_id="i9", gl_entry_id="g1", source=LinkSource.AUTO)

    with pytest.raises(StoreError):
        await LinkRegistry(store).save_document(
            Document(id="d9", filename="receipt.jpg"), [DocumentItem(id="i9", document_id="d9")], [link]
        )

    assert store.audit_trail == []
    assert await store.get_document("d9") is None


# ─── KeyedLock ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    order: list[str] = []

    async def worker(name: str):
        async with locks.hold("g1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_keyed_lock_hold_all_blocks_each_key():
    locks = KeyedLock()
    order: list[str] = []

    async def single(key: str):
        async with locks.hold(key):
            order.append(key)

    async with locks.hold_all(["g2", "g1", "g2"]):
        waiter = asyncio.create_task(single("g1"))
        await asyncio.sleep(0)
        assert order == []
    await waiter

    assert order == ["g1"]
    assert len(locks) == 0
