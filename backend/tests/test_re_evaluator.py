"""Tests for LLM re-evaluation of audited GL rows.

The chat client is always mocked; these tests never reach a real model.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from far_audit.ai.re_evaluator import (
    RE_EVALUATION_REASON,
    LinkedDocument,
    build_messages,
    parse_verdict,
    re_evaluate,
)
from far_audit.core.errors import LLMError
from far_audit.rules.auditor import audit_all
from far_audit.rules.far_rules import load_rule_index
from far_audit.schemas.document import Document, DocumentItem, Link
from far_audit.schemas.gl import AuditResult, AuditStatus, GLRow

CALL_KWARGS = {"timeout": 1.0, "temperature": 0.1, "max_tokens": 800}


@pytest.fixture(scope="module")
def index():
    return load_rule_index(None)


@pytest.fixture
def red_row(index) -> AuditResult:
    row = GLRow(id="g1", description="Dinner and wine with client", amount="152.34", vendor="Bistro")
    return audit_all([row], index)[0]


def _linked(text: str, filename: str = "memo.pdf") -> LinkedDocument:
    document = Document(id="d1", filename=filename, text_content=text)
    item = DocumentItem(id="i1", document_id="d1", vendor="Bistro", amount="152.34")
    return LinkedDocument(link=Link(document_item_id="i1", gl_entry_id="g1"), item=item, document=document)


def _client(reply) -> MagicMock:
    client = MagicMock()
    if isinstance(reply, BaseException):
        client.chat = AsyncMock(side_effect=reply)
    else:
        client.chat = AsyncMock(return_value=reply)
    return client


GREEN_REPLY = json.dumps({
    "status": "GREEN",
    "farIssue": "Approved client entertainment reclassified",
    "farSection": "31.205-51",
    "reasoning": "Alcohol removed from the claim per the CFO approval.",
    "approvalsFound": ["CFO approval 2024-06-12"],
    "approvalSummary": "Approved by CFO",
})


# ─── Successful re-evaluation ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approval_evidence_lets_llm_override_status(red_row, index):
    assert red_row.status is AuditStatus.RED
    client = _client(GREEN_REPLY)

    result, outcome = await re_evaluate(
        red_row, [_linked("Approved by CFO on 2024-06-12")], index, client, **CALL_KWARGS
    )

    assert outcome.ok
    assert result.status is AuditStatus.GREEN
    assert result.approval_based_re_evaluation is True
    assert result.re_evaluation_reason == RE_EVALUATION_REASON
    assert result.approvals_found == ["CFO approval 2024-06-12"]
    assert result.gpt_reasoning.startswith("Alcohol removed")
    assert result.re_evaluation_error is None
    assert client.chat.await_args.kwargs["json_mode"] is True


@pytest.mark.asyncio
async def test_missing_fields_fall_back_to_deterministic_verdict(red_row, index):
    client = _client(json.dumps({"reasoning": "Approval does not cover alcohol."}))

    result, _ = await re_evaluate(red_row, [_linked("Approved by CFO")], index, client, **CALL_KWARGS)

    assert result.status is AuditStatus.RED
    assert result.far_section == "31.205-51"
    assert result.far_issue == red_row.far_issue
    assert result.approval_based_re_evaluation is True


@pytest.mark.asyncio
async def test_unknown_far_section_is_kept_with_a_diagnostic(red_row, index):
    reply = json.dumps({"status": "YELLOW", "farSection": "99.999-1"})
    result, _ = await re_evaluate(red_row, [_linked("Approved")], index, _client(reply), **CALL_KWARGS)

    assert result.status is AuditStatus.YELLOW
    assert result.far_section == "99.999-1"
    assert any("99.999-1" in d for d in result.diagnostics)


# ─── Gate and failures ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_no_approval_evidence_skips_the_llm(red_row, index):
    client = _client(GREEN_REPLY)

    result, outcome = await re_evaluate(
        red_row, [_linked("Bistro\nTotal 152.34", filename="receipt.jpg")], index, client, **CALL_KWARGS
    )

    assert outcome is None
    assert result == red_row
    client.chat.assert_not_awaited()


@pytest.mark.asyncio
async def test_no_linked_documents_skips_the_llm(red_row, index):
    client = _client(GREEN_REPLY)
    result, outcome = await re_evaluate(red_row, [], index, client, **CALL_KWARGS)
    assert (result, outcome) == (red_row, None)


@pytest.mark.asyncio
async def test_transport_failure_keeps_verdict_and_records_error(red_row, index):
    client = _client(ConnectionError("connection reset"))

    result, outcome = await re_evaluate(red_row, [_linked("Approved")], index, client, **CALL_KWARGS)

    assert not outcome.ok
    assert result.status is AuditStatus.RED
    assert result.approval_based_re_evaluation is False
    assert "connection reset" in result.re_evaluation_error


@pytest.mark.asyncio
async def test_llm_error_message_is_recorded_verbatim(red_row, index):
    client = _client(LLMError("ANTHROPIC_API_KEY is not configured"))
    result, _ = await re_evaluate(red_row, [_linked("Approved")], index, client, **CALL_KWARGS)
    assert result.re_evaluation_error == "ANTHROPIC_API_KEY is not configured"


@pytest.mark.asyncio
async def test_slow_llm_times_out(red_row, index):
    async def slow_chat(*args, **kwargs):
        await asyncio.sleep(5)
        return GREEN_REPLY

    client = MagicMock()
    client.chat = slow_chat

    result, outcome = await re_evaluate(
        red_row, [_linked("Approved")], index, client, timeout=0.01, temperature=0.1, max_tokens=800
    )

    assert result.status is AuditStatus.RED
    assert "timed out" in result.re_evaluation_error
    assert outcome.raw_response is None


@pytest.mark.asyncio
async def test_out_of_enum_status_is_an_error(red_row, index):
    client = _client(json.dumps({"status": "PURPLE"}))

    result, outcome = await re_evaluate(red_row, [_linked("Approved")], index, client, **CALL_KWARGS)

    assert result.status is AuditStatus.RED
    assert "PURPLE" in result.re_evaluation_error
    assert outcome.raw_response == '{"status": "PURPLE"}'


# ─── Prompt and parsing ───────────────────────────────────────────────────────

def test_build_messages_carries_row_and_documents(red_row, index):
    messages = build_messages(red_row, [_linked("Approved by CFO")], index)
    assert [m["role"] for m in messages] == ["system", "user"]
    user = messages[1]["content"]
    assert "Dinner and wine with client" in user
    assert "memo.pdf" in user
    assert "No raw OCR text available" in user
    assert "31.205-51" in user


@pytest.mark.parametrize("text", ["not json", "[1, 2]", '"GREEN"'])
def test_parse_verdict_rejects_non_objects(text):
    with pytest.raises(LLMError):
        parse_verdict(text)


def test_parse_verdict_normalizes_status_and_approvals():
    verdict = parse_verdict('{"status": " yellow ", "approvalsFound": "Signed by VP"}')
    assert verdict.status == "YELLOW"
    assert verdict.approvals_found == ["Signed by VP"]


@pytest.mark.asyncio
async def test_echoing_current_verdict_keeps_observable_fields(red_row, index):
    reply = json.dumps({
        "status": red_row.status.value,
        "farIssue": red_row.far_issue,
        "farSection": red_row.far_section,
    })

    result, _ = await re_evaluate(red_row, [_linked("Approved")], index, _client(reply), **CALL_KWARGS)

    assert (result.status, result.far_issue, result.far_section) == (
        red_row.status, red_row.far_issue, red_row.far_section
    )
    assert result.diagnostics == []


@pytest.mark.parametrize(
    ("flag", "expected"),
    [(True, ["approved"]), (False, []), (2, ["2"]), (None, [])],
)
@pytest.mark.asyncio
async def test_scalar_approvals_found_is_accepted(red_row, index, flag, expected):
    reply = json.dumps({"status": "GREEN", "reasoning": "approved", "approvalsFound": flag})

    result, outcome = await re_evaluate(
        red_row, [_linked("Approved by J. Doe")], index, _client(reply), **CALL_KWARGS
    )

    assert outcome.ok
    assert result.status is AuditStatus.GREEN
    assert result.approvals_found == expected
    assert result.re_evaluation_error is None


def test_approvals_flag_prefers_the_approval_summary():
    verdict = parse_verdict(
        '{"approvalsFound": true, "approvalSummary": "Signed by CFO", "reasoning": "ok"}'
    )
    assert verdict.approvals_found == ["Signed by CFO"]


@pytest.mark.asyncio
async def test_unexpected_parse_failure_is_recorded_as_llm_error(red_row, index, monkeypatch):
    from far_audit.ai import re_evaluator

    def broken(text):
        raise TypeError("'int' object is not iterable")

    monkeypatch.setattr(re_evaluator, "parse_verdict", broken)

    result, outcome = await re_evaluate(
        red_row, [_linked("Approved")], index, _client(GREEN_REPLY), **CALL_KWARGS
    )

    assert isinstance(outcome.error, LLMError)
    assert outcome.raw_response == GREEN_REPLY
    assert result.status is AuditStatus.RED
    assert "could not be parsed" in result.re_evaluation_error
