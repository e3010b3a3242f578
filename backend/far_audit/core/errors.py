"""Typed failures raised by the compliance core.

Degraded paths (LLM failures, unreadable OCR payloads, broken rule files)
are caught close to where they happen and recorded on the affected row or
index. Everything else propagates to the API layer, which maps it to an
HTTP status in ``far_audit.main``.
"""


class ComplianceError(Exception):
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RuleLoadError(ComplianceError):
    """Built-in corpus or overlay file is missing or malformed."""

    kind = "rule_load"


class StoreError(ComplianceError):
    """A storage collaborator failed or timed out."""

    kind = "store"


class NotFoundError(ComplianceError):
    kind = "not_found"

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id!r} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class LinkConflict(ComplianceError):
    """Raised by a store when the (item, GL row) pair already exists."""

    kind = "link_conflict"


class LLMError(ComplianceError):
    kind = "llm"


class OCRParseError(ComplianceError):
    kind = "ocr_parse"
