"""Audit trail helpers: append-only entries through the store."""
import logging
from typing import Any

from far_audit.schemas.audit import AuditEntry
from far_audit.services.stores import TrailStore

logger = logging.getLogger(__name__)


def entry(
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    before: Any | None = None,
    after: Any | None = None,
    notes: str | None = None,
) -> AuditEntry:
    """Build an audit trail entry without writing it.

    Used when the entry must be committed together with the change it
    describes (link writes, document ingest, deletes).

    Args:
        action: Short verb, e.g. 'link.created', 'gl.re_evaluated', 'admin.clear_all'.
        entity_type: Domain name, e.g. 'link', 'gl_entry', 'document'.
        entity_id: Id of the affected record ("item:gl" for links).
        before: Snapshot of state before the action (JSON-serialisable).
        after: Snapshot of state after the action.
        notes: Free-text annotation.
    """
    return AuditEntry(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        before=before,
        after=after,
        notes=notes,
    )


async def log(
    store: TrailStore,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    before: Any | None = None,
    after: Any | None = None,
    notes: str | None = None,
) -> AuditEntry:
    """Write a single audit trail entry on its own. Arguments as for entry()."""
    record = entry(action, entity_type, entity_id, before=before, after=after, notes=notes)
    await store.append_audit(record)
    logger.debug("Audit: %s %s/%s", action, entity_type, entity_id)
    return record
