"""FAR rule index: built-in corpus, optional JSON overlay, priority order.

Rules are merged by section (the overlay replaces a built-in in place, new
sections are appended) and then stably sorted so every EXPRESSLY_UNALLOWABLE
rule is scanned before any LIMITED_ALLOWABLE one. Within a severity the
source order decides, which is how a specific rule such as 31.205-46(b)
wins over the general 31.205-46 it refines.
"""
import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from far_audit.core.errors import RuleLoadError
from far_audit.schemas.far_rule import FarRule, Severity

logger = logging.getLogger(__name__)

BUILTIN_RULES_PATH = Path(__file__).parent / "data" / "far_rules.json"

SEVERITY_RANK = {
    Severity.EXPRESSLY_UNALLOWABLE: 0,
    Severity.LIMITED_ALLOWABLE: 1,
}


@dataclass(frozen=True)
class RuleIndex:
    """Immutable, priority-ordered rule list. Safe to share across tasks."""

    rules: tuple[FarRule, ...] = ()
    load_errors: tuple[str, ...] = field(default=())

    def __iter__(self) -> Iterator[FarRule]:
        return iter(self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def get(self, section: str) -> FarRule | None:
        for rule in self.rules:
            if rule.section == section:
                return rule
        return None

    def is_known(self, section: str | None) -> bool:
        return bool(section) and self.get(section) is not None

    @property
    def sections(self) -> list[str]:
        return [r.section for r in self.rules]


def _parse_rules(payload, source: str) -> list[FarRule]:
    if isinstance(payload, dict):
        payload = payload.get("rules")
    if not isinstance(payload, list):
        raise RuleLoadError(f"{source}: expected a list of rules or {{\"rules\": [...]}}")
    try:
        return [FarRule.model_validate(item) for item in payload]
    except ValidationError as exc:
        raise RuleLoadError(f"{source}: invalid rule: {exc.errors()[0]['msg']}") from exc


def load_builtin_rules(path: Path = BUILTIN_RULES_PATH) -> list[FarRule]:
    """Load the corpus shipped with the package. Raises RuleLoadError."""
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise RuleLoadError(f"built-in rules not found at {path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise RuleLoadError(f"built-in rules unreadable: {exc}") from exc
    return _parse_rules(payload, "built-in rules")


def load_overlay(path: str | Path | None) -> list[FarRule]:
    """Load an operator overlay. A missing file means no overlay."""
    if not path:
        return []
    overlay_path = Path(path)
    if not overlay_path.exists():
        logger.debug("No FAR rules overlay at %s", overlay_path)
        return []
    try:
        payload = json.loads(overlay_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise RuleLoadError(f"overlay {overlay_path} unreadable: {exc}") from exc
    return _parse_rules(payload, f"overlay {overlay_path}")


def load_rules(
    builtin: Iterable[FarRule],
    overlay: Iterable[FarRule] | None = None,
    load_errors: Iterable[str] = (),
) -> RuleIndex:
    """Merge built-ins with an overlay (overlay wins) and apply priority order."""
    merged: dict[str, FarRule] = {}
    for rule in builtin:
        merged[rule.section] = rule
    for rule in overlay or ():
        # dict assignment keeps an existing key's position
        merged[rule.section] = rule

    ordered = sorted(
        enumerate(merged.values()),
        key=lambda pair: (SEVERITY_RANK[pair[1].severity], pair[0]),
    )
    return RuleIndex(rules=tuple(rule for _, rule in ordered), load_errors=tuple(load_errors))


def load_rule_index(
    overlay_path: str | Path | None = None,
    builtin_path: Path = BUILTIN_RULES_PATH,
) -> RuleIndex:
    """Build the process-wide index, degrading instead of failing.

    A broken built-in corpus or overlay is logged and recorded on the index.
    If both are unusable the index is empty and every row audits GREEN.
    """
    errors: list[str] = []

    try:
        builtin = load_builtin_rules(builtin_path)
    except RuleLoadError as exc:
        logger.error("FAR built-in rules failed to load: %s", exc)
        errors.append(exc.message)
        builtin = []

    try:
        overlay = load_overlay(overlay_path)
    except RuleLoadError as exc:
        logger.error("FAR rules overlay ignored: %s", exc)
        errors.append(exc.message)
        overlay = []

    index = load_rules(builtin, overlay, errors)
    if not index.rules:
        logger.error("FAR rule index is empty; all GL rows will audit GREEN")
    else:
        logger.info(
            "FAR rule index loaded: %d rules (%d from overlay)", len(index), len(overlay)
        )
    return index
