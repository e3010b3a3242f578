"""Requirements projection: what documentation each audited GL row still needs.

Derived per row from its audit status and its linked documents:

    receipt_required  = status != GREEN, or amount >= policy threshold (when set)
    approval_required = status == RED
    pending           = (receipt_required or approval_required) and no receipt linked
    approval_state    = FULL if receipt and approval present,
                        TENTATIVE if GREEN otherwise,
                        PENDING for everything else
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal

from far_audit.rules.auditor import audit_text
from far_audit.rules.far_rules import RuleIndex
from far_audit.schemas.document import Document, DocumentItem, ItemKind, ItemsSnapshot, Link
from far_audit.schemas.gl import AuditResult, AuditStatus
from far_audit.schemas.requirements import ApprovalState, RequirementsRow
from far_audit.services.approval_detector import find_approvals, has_approval

logger = logging.getLogger(__name__)

RECEIPT_KINDS = (ItemKind.RECEIPT, ItemKind.INVOICE)


@dataclass(frozen=True)
class ReceiptPolicy:
    receipt_threshold: Decimal | None = None

    @classmethod
    def from_settings(cls, threshold: float | None) -> "ReceiptPolicy":
        return cls(receipt_threshold=Decimal(str(threshold)) if threshold is not None else None)


def _doc_summary(item: DocumentItem) -> str:
    parts = [
        item.vendor or "",
        item.date.isoformat() if item.date else "",
        f"${item.amount:.2f}" if item.amount is not None else "",
    ]
    descs = [str(line.get("desc")) for line in item.detail_lines[:3] if line.get("desc")]
    if descs:
        parts.append("; ".join(descs))
    return " | ".join(p for p in parts if p)


def _flags_unallowable(item: DocumentItem, rule_index: RuleIndex) -> bool:
    texts = [str(line.get("desc") or "") for line in item.detail_lines]
    texts.append(item.text_excerpt or "")
    return any(audit_text(t, rule_index).status is AuditStatus.RED for t in texts if t)


def project_row(
    result: AuditResult,
    links: list[Link],
    items: dict[str, DocumentItem],
    documents: dict[str, Document],
    rule_index: RuleIndex,
    policy: ReceiptPolicy,
) -> RequirementsRow:
    linked_items = [items[link.document_item_id] for link in links if link.document_item_id in items]
    linked_docs = {
        item.document_id: documents[item.document_id]
        for item in linked_items
        if item.document_id in documents
    }

    has_receipt = any(item.kind in RECEIPT_KINDS for item in linked_items)
    approvals_count = sum(len(find_approvals(doc)) for doc in linked_docs.values())
    has_approval_flag = approvals_count > 0 or any(
        has_approval(documents.get(item.document_id), item) for item in linked_items
    )

    reasons: list[str] = []
    receipt_required = result.status is not AuditStatus.GREEN
    if receipt_required:
        reasons.append(f"Receipt required (status {result.status.value})")
    threshold = policy.receipt_threshold
    if threshold is not None and result.amount >= threshold:
        if not receipt_required:
            reasons.append(f"Receipt required (amount >= {threshold})")
        receipt_required = True

    approval_required = result.status is AuditStatus.RED
    if approval_required:
        reasons.append(f"Approval required ({result.far_issue})")

    if has_receipt and has_approval_flag:
        state = ApprovalState.FULL
    elif result.status is AuditStatus.GREEN:
        state = ApprovalState.TENTATIVE
    else:
        state = ApprovalState.PENDING

    pending = (receipt_required or approval_required) and not has_receipt
    if pending:
        reasons.append("No receipt or invoice linked")

    return RequirementsRow(
        id=result.id,
        status=result.status,
        amount=result.amount,
        attachments_count=len(links),
        approvals_count=approvals_count,
        has_receipt=has_receipt,
        has_approval=has_approval_flag,
        receipt_required=receipt_required,
        approval_required=approval_required,
        pending=pending,
        approval_state=state,
        doc_flag_unallowable=any(_flags_unallowable(item, rule_index) for item in linked_items),
        doc_summary=_doc_summary(linked_items[0]) if linked_items else None,
        reasons=reasons,
    )


def project_requirements(
    results: list[AuditResult],
    snapshot: ItemsSnapshot,
    rule_index: RuleIndex,
    policy: ReceiptPolicy | None = None,
) -> list[RequirementsRow]:
    """One requirements row per audited GL row, in input order."""
    policy = policy or ReceiptPolicy()
    items = {item.id: item for item in snapshot.items}
    documents = {doc.id: doc for doc in snapshot.documents}
    links_by_gl: dict[str, list[Link]] = defaultdict(list)
    for link in snapshot.links:
        links_by_gl[link.gl_entry_id].append(link)

    rows = [
        project_row(result, links_by_gl.get(result.id, []), items, documents, rule_index, policy)
        for result in results
    ]
    logger.debug(
        "Projected requirements for %d rows (%d pending)", len(rows), sum(r.pending for r in rows)
    )
    return rows
