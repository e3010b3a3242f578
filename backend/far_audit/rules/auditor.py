"""Deterministic FAR auditor.

Architecture principle: the verdict here is a pure function of the row
description and the rule index. Amounts never influence classification,
and no I/O happens in this module.
"""
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from far_audit.rules.far_rules import RuleIndex
from far_audit.schemas.far_rule import FarRule, Severity
from far_audit.schemas.gl import AuditResult, AuditStatus, GLRow

logger = logging.getLogger(__name__)

COMPLIANT_ISSUE = "Compliant"

_STATUS_FOR_SEVERITY = {
    Severity.EXPRESSLY_UNALLOWABLE: AuditStatus.RED,
    Severity.LIMITED_ALLOWABLE: AuditStatus.YELLOW,
}


@dataclass(frozen=True)
class AuditVerdict:
    status: AuditStatus
    far_issue: str
    far_section: str
    matched_keyword: str | None = None


COMPLIANT = AuditVerdict(AuditStatus.GREEN, COMPLIANT_ISSUE, "")


def match_rule(text: str | None, rule_index: RuleIndex) -> tuple[FarRule, str] | None:
    """First (rule, keyword) whose keyword is a substring of the lowercased text."""
    if not text:
        return None
    haystack = text.lower()
    for rule in rule_index:
        for keyword in rule.keywords:
            if keyword in haystack:
                return rule, keyword
    return None


def audit_text(text: str | None, rule_index: RuleIndex) -> AuditVerdict:
    hit = match_rule(text, rule_index)
    if hit is None:
        return COMPLIANT
    rule, keyword = hit
    return AuditVerdict(
        status=_STATUS_FOR_SEVERITY[rule.severity],
        far_issue=rule.issue_label,
        far_section=rule.section,
        matched_keyword=keyword,
    )


def audit_row(row: GLRow, rule_index: RuleIndex) -> AuditVerdict:
    return audit_text(row.description, rule_index)


def audit_all(rows: Iterable[GLRow], rule_index: RuleIndex) -> list[AuditResult]:
    """Decorate every row with its verdict, preserving input order."""
    results: list[AuditResult] = []
    for row in rows:
        verdict = audit_row(row, rule_index)
        results.append(
            AuditResult(
                **row.model_dump(include=set(GLRow.model_fields)),
                status=verdict.status,
                far_issue=verdict.far_issue,
                far_section=verdict.far_section,
            )
        )
    counts = {s: sum(1 for r in results if r.status is s) for s in AuditStatus}
    logger.debug(
        "Audited %d rows: %d red, %d yellow, %d green",
        len(results), counts[AuditStatus.RED], counts[AuditStatus.YELLOW], counts[AuditStatus.GREEN],
    )
    return results
