"""Approval detection over linked documents.

`has_approval` is the cheap gate for LLM re-evaluation: a case-insensitive
keyword search over everything we know about a (document, item) pair.
`find_approvals` / `extract_approvals_from_text` pull structured approvals
(approver, title, date, decision) out of OCR text for the requirements view.
"""
import json
import logging
import re
from collections.abc import Iterator

from far_audit.core.errors import OCRParseError
from far_audit.schemas.document import Approval, ApprovalDecision, DocType, Document, DocumentItem

logger = logging.getLogger(__name__)

OCR_EXTRACTED_MARKER = "OCR extracted data: "

APPROVAL_KEYWORDS = (
    "approved",
    "approval",
    "approve",
    "approving",
    "authorized",
    "authorised",
    "authorization",
    "authorisation",
    "sign off",
    "sign-off",
    "signoff",
    "ok to pay",
    "payment approved",
    "authorized for payment",
    "reviewed and approved",
    "approved for payment",
    "sanctioned",
    "validated",
    "confirmed approval",
)

_TITLE_WORDS = (
    "manager", "supervisor", "director", "vp", "chief", "officer", "cfo", "ceo", "coo", "cto",
    "finance", "hr", "operations", "program", "project", "approver", "reviewer", "auditor",
)

_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")

_NOT_CONNECTIVE = r"(?!(?:by|on|dated|date)\b)"
_NAME = r"(" + _NOT_CONNECTIVE + r"[A-Z][a-zA-Z.'-]+(?:\s+" + _NOT_CONNECTIVE + r"[A-Z][a-zA-Z.'-]+){0,3})"
_TAIL = r"(?:\s*[,-]\s*([A-Za-z /&-]{2,50}))?(?:.*?\b(?:on|dated|date[: ]*)\s*(.+))?"
_SINGLE_LINE_PATTERNS = (
    re.compile(r"(?:approved|approval|authorized|authorised)\s*(?:by|:)?\s*" + _NAME + _TAIL, re.I),
    re.compile(r"(?:reviewed|verified)\s*(?:by|:)?\s*" + _NAME + _TAIL, re.I),
)
_BLOCK_HEADER = re.compile(r"^(approved|approval|reviewed|authorized|authorised)\b.*?:?$", re.I)
_BLOCK_NAME = re.compile(r"[A-Za-z][a-z]+\s+[A-Za-z.'-]+")
_BLOCK_DATE = re.compile(
    r"\b(\d{1,2}[/-]\d{1,2}[/-]\d{2,4}|20\d{2}-\d{1,2}-\d{1,2}"
    r"|(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)\.?\s+\d{1,2},\s*20\d{2})\b",
    re.I,
)
_NAME_ONLY = re.compile(_NAME)
_TRAILING_CONNECTIVE = re.compile(r"\s+(?:on|dated|date)$", re.I)

_ISO_DATE = re.compile(r"(20\d{2})[-/.](\d{1,2})[-/.](\d{1,2})")
_NUMERIC_DATE = re.compile(r"(\d{1,2})[/-](\d{1,2})[/-](\d{2,4})")
_MONTH_DATE = re.compile(
    r"\b(jan|feb|mar|apr|may|jun|jul|aug|sept?|oct|nov|dec)\w*\.?\s+(\d{1,2}),\s*(20\d{2})", re.I
)

_APPROVED_HINT = re.compile(r"\b(approved|approval)\b", re.I)
_REJECTED_HINT = re.compile(r"\b(denied|rejected|declined)\b", re.I)
_OK_TO_PAY = re.compile(r"\bok\s*to\s*pay\b", re.I)
_PAYMENT_APPROVED = re.compile(r"\bpayment\s*approved\b", re.I)


# ─── Keyword gate ─────────────────────────────────────────────────────────────

def contains_approval_keyword(text: str | None) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in APPROVAL_KEYWORDS)


def _parse_ocr_payload(text_content: str):
    try:
        return json.loads(text_content[len(OCR_EXTRACTED_MARKER):])
    except json.JSONDecodeError as exc:
        raise OCRParseError(f"embedded OCR payload is not JSON: {exc.msg}") from exc


def decode_ocr_payload(text_content: str | None) -> str | None:
    """Re-serialized JSON after the OCR marker, or None when absent or unreadable."""
    if not text_content or not text_content.lower().startswith(OCR_EXTRACTED_MARKER.lower()):
        return None
    try:
        payload = _parse_ocr_payload(text_content)
    except OCRParseError as exc:
        logger.debug("Ignoring OCR payload: %s", exc)
        return None
    return json.dumps(payload, ensure_ascii=False)


def _searchable_texts(document: Document | None, item: DocumentItem | None) -> Iterator[str]:
    if document is not None:
        yield document.filename
        if document.text_content:
            yield document.text_content
            decoded = decode_ocr_payload(document.text_content)
            if decoded:
                yield decoded
        if document.raw_ocr_text:
            yield document.raw_ocr_text
    if item is not None:
        yield item.model_dump_json()


def has_approval(document: Document | None, item: DocumentItem | None) -> bool:
    """True when any approval keyword appears in the document or item."""
    return any(contains_approval_keyword(text) for text in _searchable_texts(document, item))


# ─── Structured extraction ────────────────────────────────────────────────────

def _iso(year: int, month: int, day: int) -> str | None:
    if 1 <= month <= 12 and 1 <= day <= 31:
        return f"{year:04d}-{month:02d}-{day:02d}"
    return None


def parse_approval_date(text: str | None) -> str | None:
    """ISO date from 'yyyy-mm-dd', 'mm/dd/yyyy' (day-first if needed) or 'Mon dd, yyyy'."""
    if not text:
        return None
    m = _ISO_DATE.search(text)
    if m:
        iso = _iso(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        if iso:
            return iso
    m = _NUMERIC_DATE.search(text)
    if m:
        a, b, year = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if year < 100:
            year += 2000
        month, day = (b, a) if a > 12 and b <= 12 else (a, b)
        iso = _iso(year, month, day)
        if iso:
            return iso
    m = _MONTH_DATE.search(text)
    if m:
        month = _MONTHS.index(m.group(1).lower()[:3]) + 1
        return _iso(int(m.group(3)), month, int(m.group(2)))
    return None


def _decision(line: str) -> ApprovalDecision:
    if _APPROVED_HINT.search(line):
        return ApprovalDecision.APPROVED
    if _REJECTED_HINT.search(line):
        return ApprovalDecision.REJECTED
    if _OK_TO_PAY.search(line) or _PAYMENT_APPROVED.search(line):
        return ApprovalDecision.APPROVED
    return ApprovalDecision.UNKNOWN


def _summary(decision: ApprovalDecision, approver: str, title: str | None, date: str | None) -> str:
    verb = "Rejected" if decision is ApprovalDecision.REJECTED else "Approved"
    parts = [f"{verb} by {approver}"]
    if title:
        parts.append(f"({title})")
    if date:
        parts.append(f"on {date}")
    return " ".join(parts)


def _has_title_word(text: str) -> bool:
    lowered = text.lower()
    return any(word in lowered for word in _TITLE_WORDS)


def extract_approvals_from_text(text: str | None) -> list[Approval]:
    """Best-effort approvals from free text, deduplicated by (approver, date, decision)."""
    if not text or not text.strip():
        return []
    lines = [line.strip() for line in text.splitlines() if line.strip()]

    results: list[Approval] = []
    seen: set[tuple[str, str, str]] = set()

    def push(approval: Approval) -> None:
        key = ((approval.approver or "").lower(), approval.date or "", approval.decision.value)
        if key not in seen:
            seen.add(key)
            results.append(approval)

    # ── 1. "Approved by Jane Doe, Finance Manager on 03/14/2024" ──
    for line in lines:
        for pattern in _SINGLE_LINE_PATTERNS:
            m = pattern.search(line)
            if not m:
                continue
            approver = m.group(1).strip()
            title_raw = _TRAILING_CONNECTIVE.sub("", (m.group(2) or "").strip())
            title = title_raw if _has_title_word(title_raw) or len(title_raw) > 2 else None
            date = parse_approval_date(m.group(3)) or parse_approval_date(line)
            decision = _decision(line)
            push(Approval(
                decision=decision,
                approver=approver,
                title=title,
                date=date,
                summary=_summary(decision, approver, title, date),
                confidence=min(0.95, 0.6 + (0.2 if date else 0) + (0.1 if title else 0)),
            ))
            break

    # ── 2. "Approved by:" followed by name / title / date lines ──
    for i, line in enumerate(lines):
        if not _BLOCK_HEADER.match(line):
            continue
        block = lines[i + 1:i + 4]
        name_line = next((s for s in block if _BLOCK_NAME.search(s)), "")
        title_line = next((s for s in block if _has_title_word(s)), None)
        date_line = next((s for s in block if _BLOCK_DATE.search(s)), "")
        name_match = _NAME_ONLY.search(name_line)
        if not name_match:
            continue
        approver = name_match.group(1)
        date = parse_approval_date(date_line) or parse_approval_date(" ".join(block))
        decision = _decision(line)
        push(Approval(
            decision=decision,
            approver=approver,
            title=title_line,
            date=date,
            summary=_summary(decision, approver, title_line, date),
            confidence=min(0.95, 0.6 + (0.2 if date else 0) + (0.1 if title_line else 0)),
        ))

    # ── 3. Decision-only hints ──
    for line in lines:
        if _OK_TO_PAY.search(line):
            push(Approval(decision=ApprovalDecision.APPROVED, summary=line[:120], confidence=0.4))
        if _PAYMENT_APPROVED.search(line):
            push(Approval(decision=ApprovalDecision.APPROVED, summary=line[:120], confidence=0.45))
        if _REJECTED_HINT.search(line):
            push(Approval(decision=ApprovalDecision.REJECTED, summary=line[:120], confidence=0.45))

    return results


def find_approvals(document: Document) -> list[Approval]:
    """Stored approvals plus anything extractable from the document text."""
    found = list(document.approvals)
    known = {((a.approver or "").lower(), a.date or "", a.decision.value) for a in found}
    for text in (document.text_content, document.raw_ocr_text):
        for approval in extract_approvals_from_text(text):
            key = ((approval.approver or "").lower(), approval.date or "", approval.decision.value)
            if key not in known:
                known.add(key)
                found.append(approval)
    return found


def classify_document(text: str | None, filename: str | None) -> tuple[DocType, list[Approval]]:
    """Heuristic document type plus extracted approvals, for ingests without a type."""
    name = (filename or "").lower()
    lowered = (text or "").lower()

    def has_any(*terms: str) -> bool:
        return any(term in lowered for term in terms)

    approvals = extract_approvals_from_text(text)
    if "invoice" in name or has_any("invoice #", "invoice no", "invoice number", "bill to", "invoice date"):
        return DocType.INVOICE, approvals
    if "receipt" in name or has_any("merchant", "total", "subtotal", "sales tax", "thank you for your purchase"):
        return DocType.RECEIPT, approvals
    if "timesheet" in name or has_any("timesheet", "time sheet", "hours worked", "week ending"):
        return DocType.OTHER, approvals
    if has_any("approved", "approval", "approve", "authorized", "sign off", "sign-off"):
        if not approvals:
            approvals.append(Approval(
                decision=ApprovalDecision.APPROVED, summary="Approval note detected", confidence=0.4
            ))
        return DocType.APPROVAL, approvals
    return DocType.UNKNOWN, approvals
