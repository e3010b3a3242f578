"""LLM re-evaluation of a GL row's FAR verdict against its linked documents.

Architecture principle: the LLM is consulted only when a linked document
carries approval evidence. Without that evidence the deterministic verdict
stands untouched. Any failure on the LLM path (transport, timeout, bad JSON,
out-of-enum status) leaves the deterministic verdict in place and records
the error on the row. Nothing here raises past `re_evaluate`.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field

from far_audit.ai.llm_client import ChatClient
from far_audit.core.config import settings
from far_audit.core.errors import LLMError
from far_audit.rules.far_rules import RuleIndex
from far_audit.schemas.document import Document, DocumentItem, Link
from far_audit.schemas.gl import AuditResult, AuditStatus
from far_audit.services.approval_detector import find_approvals, has_approval

logger = logging.getLogger(__name__)

RE_EVALUATION_REASON = "Approval keywords detected in attached documents"
NO_RAW_OCR_TEXT = "No raw OCR text available"

SYSTEM_PROMPT = """You are a FAR (Federal Acquisition Regulation) compliance auditor reviewing General Ledger entries of a government contractor.

Status meanings:
- RED: expressly unallowable under FAR Part 31; the cost cannot be charged to a government contract.
- YELLOW: allowable only under conditions (limits, approvals, documentation) that must be verified.
- GREEN: allowable and adequately supported.

When you review an entry, consider:
1. Whether the attached documents contain approvals from an appropriate authority.
2. Whether those approvals satisfy the conditions of the cited FAR section.
3. Whether the documents agree with the GL entry on vendor, date and amount.
4. Whether the documentation is complete and looks legitimate.

Approvals never make an expressly unallowable cost allowable by themselves; explain your reasoning.

Return ONLY a JSON object with exactly these keys:
{"status": "RED" | "YELLOW" | "GREEN", "farIssue": string, "farSection": string, "reasoning": string, "approvalsFound": [string], "approvalSummary": string}"""


@dataclass
class LinkedDocument:
    link: Link
    item: DocumentItem
    document: Document


@dataclass(frozen=True)
class LLMVerdict:
    status: str | None
    far_issue: str | None = None
    far_section: str | None = None
    reasoning: str | None = None
    approvals_found: list[str] = field(default_factory=list)
    approval_summary: str | None = None


@dataclass(frozen=True)
class ReEvaluationOutcome:
    """Either a parsed verdict or the error that prevented one."""

    verdict: LLMVerdict | None = None
    error: LLMError | None = None
    raw_response: str | None = None

    @property
    def ok(self) -> bool:
        return self.verdict is not None


def approval_bearing(linked_docs: list[LinkedDocument]) -> list[LinkedDocument]:
    return [ld for ld in linked_docs if has_approval(ld.document, ld.item)]


def _document_context(linked: LinkedDocument) -> dict:
    item, document = linked.item, linked.document
    return {
        "filename": document.filename,
        "documentType": document.doc_type.value,
        "extractedFields": {
            "vendor": item.vendor,
            "date": item.date.isoformat() if item.date else None,
            "amount": float(item.amount) if item.amount is not None else None,
        },
        "rawOcrText": document.raw_ocr_text or NO_RAW_OCR_TEXT,
        "processedText": document.text_content or item.text_excerpt or "",
        "detectedApprovals": [
            a.model_dump(mode="json", exclude_none=True) for a in find_approvals(document)
        ],
    }


def build_messages(
    gl_row: AuditResult,
    linked_docs: list[LinkedDocument],
    rule_index: RuleIndex,
) -> list[dict[str, str]]:
    """System + user messages for one GL row."""
    gl_context = {
        "id": gl_row.id,
        "vendor": gl_row.vendor,
        "date": gl_row.date.isoformat() if gl_row.date else None,
        "amount": float(gl_row.amount),
        "description": gl_row.description,
        "category": gl_row.category,
        "accountNumber": gl_row.account_number,
    }
    current = {
        "status": gl_row.status.value,
        "farIssue": gl_row.far_issue,
        "farSection": gl_row.far_section,
    }
    rule = rule_index.get(gl_row.far_section) if gl_row.far_section else None
    if rule is not None:
        current["ruleDescription"] = rule.description

    user_prompt = (
        "Re-evaluate the FAR compliance status of this GL entry using its attached documents.\n\n"
        f"GL entry:\n{json.dumps(gl_context, indent=2)}\n\n"
        f"Current automated audit:\n{json.dumps(current, indent=2)}\n\n"
        f"Attached documents:\n{json.dumps([_document_context(ld) for ld in linked_docs], indent=2)}\n\n"
        "Compare the GL entry with the OCR data of each document and judge whether the "
        "documentation is complete and legitimate. Approvals from appropriate authorities may "
        "justify moving RED to YELLOW or GREEN, or YELLOW to GREEN. Keep the current status if "
        "the approvals do not address the FAR condition."
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def parse_verdict(text: str) -> LLMVerdict:
    """Parse the model's JSON answer. Raises LLMError on anything unusable."""
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise LLMError(f"LLM response is not JSON: {str(text)[:200]!r}") from exc
    if not isinstance(payload, dict):
        raise LLMError("LLM response is not a JSON object")

    status = payload.get("status")
    if status is not None:
        status = str(status).strip().upper()
        if status not in AuditStatus.__members__:
            raise LLMError(f"LLM returned invalid status {payload.get('status')!r}")

    def text_or_none(key: str) -> str | None:
        value = payload.get(key)
        return str(value).strip() if value not in (None, "") else None

    summary = text_or_none("approvalSummary")
    reasoning = text_or_none("reasoning")
    return LLMVerdict(
        status=status or None,
        far_issue=text_or_none("farIssue"),
        far_section=text_or_none("farSection"),
        reasoning=reasoning,
        approvals_found=_approval_list(
            payload.get("approvalsFound"), summary or reasoning or "Approval found"
        ),
        approval_summary=summary,
    )


def _approval_list(value: object, flag_label: str) -> list[str]:
    """Normalise ``approvalsFound``, which models send as a list, a string or a flag.

    ``true`` becomes a single entry labelled with the summary, ``false`` and
    null become an empty list, and any other scalar is kept as its string form.
    """
    if value is None or value is False:
        return []
    if value is True:
        return [flag_label]
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [a if isinstance(a, str) else json.dumps(a, default=str) for a in value]
    if isinstance(value, dict):
        return [json.dumps(value, default=str)]
    return [str(value)]


def merge_verdict(current: AuditResult, verdict: LLMVerdict, rule_index: RuleIndex) -> AuditResult:
    """Overlay the LLM verdict on the deterministic one, falling back field by field."""
    far_section = verdict.far_section or current.far_section
    diagnostics = list(current.diagnostics)
    if verdict.far_section and not rule_index.is_known(verdict.far_section):
        diagnostics.append(f"farSection {verdict.far_section!r} is not in the active rule index")

    return current.model_copy(
        update={
            "status": AuditStatus(verdict.status) if verdict.status else current.status,
            "far_issue": verdict.far_issue or current.far_issue,
            "far_section": far_section,
            "gpt_reasoning": verdict.reasoning,
            "approvals_found": list(verdict.approvals_found),
            "approval_summary": verdict.approval_summary,
            "approval_based_re_evaluation": True,
            "re_evaluation_reason": RE_EVALUATION_REASON,
            "re_evaluation_error": None,
            "diagnostics": diagnostics,
        }
    )


async def request_verdict(
    client: ChatClient,
    messages: list[dict[str, str]],
    *,
    timeout: float,
    temperature: float,
    max_tokens: int,
) -> ReEvaluationOutcome:
    """One bounded chat call, folded into a result value."""
    try:
        text = await asyncio.wait_for(
            client.chat(messages, temperature=temperature, max_tokens=max_tokens, json_mode=True),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        return ReEvaluationOutcome(error=LLMError(f"LLM call timed out after {timeout:g}s"))
    except LLMError as exc:
        return ReEvaluationOutcome(error=exc)
    except Exception as exc:  # noqa: BLE001  transport failures of any client are data here
        return ReEvaluationOutcome(error=LLMError(f"LLM call failed: {exc}"))

    try:
        return ReEvaluationOutcome(verdict=parse_verdict(text), raw_response=text)
    except LLMError as exc:
        return ReEvaluationOutcome(error=exc, raw_response=text)
    except (TypeError, ValueError, AttributeError) as exc:
        error = LLMError(f"LLM response could not be parsed: {exc}")
        return ReEvaluationOutcome(error=error, raw_response=text)


async def re_evaluate(
    gl_row: AuditResult,
    linked_docs: list[LinkedDocument],
    rule_index: RuleIndex,
    client: ChatClient,
    *,
    timeout: float | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> tuple[AuditResult, ReEvaluationOutcome | None]:
    """Re-evaluate one audited row. Returns the new result and the raw outcome.

    The outcome is None when no linked document carries approval evidence,
    in which case the row comes back unchanged.
    """
    if not approval_bearing(linked_docs):
        return gl_row, None

    messages = build_messages(gl_row, linked_docs, rule_index)
    outcome = await request_verdict(
        client,
        messages,
        timeout=timeout if timeout is not None else settings.LLM_TIMEOUT_SECONDS,
        temperature=temperature if temperature is not None else settings.LLM_TEMPERATURE,
        max_tokens=max_tokens if max_tokens is not None else settings.LLM_MAX_TOKENS,
    )

    if outcome.error is not None:
        logger.warning("LLM re-evaluation failed for GL %s: %s", gl_row.id, outcome.error.message)
        return gl_row.model_copy(update={"re_evaluation_error": outcome.error.message}), outcome

    merged = merge_verdict(gl_row, outcome.verdict, rule_index)
    if merged.status != gl_row.status:
        logger.info(
            "GL %s re-evaluated %s -> %s", gl_row.id, gl_row.status.value, merged.status.value
        )
    return merged, outcome
