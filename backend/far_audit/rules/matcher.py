"""Document item ↔ GL row matcher.

Scores are additive over three independent signals (amount, vendor, date)
so adding agreement on any signal can only raise a score. Auto-linking
uses `score`; the manual-link picker orders by `ui_score`, which also
credits amounts within $10.
"""
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from decimal import Decimal

from far_audit.core.parsing import parse_amount, parse_date
from far_audit.schemas.document import DocumentItem
from far_audit.schemas.gl import GLRow

AMOUNT_EXACT_TOLERANCE = Decimal("0.01")
AMOUNT_NEAR_LIMIT = Decimal("1.00")
AMOUNT_UI_LIMIT = Decimal("10.00")
DATE_CLOSE_DAYS = 2
DATE_NEAR_DAYS = 7

SCORE_AMOUNT_EXACT = 6.0
SCORE_AMOUNT_NEAR = 4.5
SCORE_AMOUNT_UI = 1.0
SCORE_VENDOR = 2.5
SCORE_DATE_CLOSE = 1.0
SCORE_DATE_NEAR = 0.5

AUTO_LINK_MIN_SCORE = 6.0

# Amount precision used for tie-breaks: higher is better
TIER_EXACT, TIER_NEAR, TIER_UI, TIER_NONE = 3, 2, 1, 0

_WEB_SUFFIX = re.compile(r"\.(com|net|org|io)\b")
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_CORPORATE_WORDS = re.compile(
    r"\b(the|inc|llc|corp|corporation|company|co|business|services|service|store|stores)\b"
)
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class MatchScore:
    gl_entry_id: str
    document_item_id: str
    score: float
    ui_score: float
    amount_tier: int
    amount_delta: Decimal | None
    vendor_match: bool
    date_delta_days: int | None
    discrepancies: tuple[str, ...] = field(default=())
    best: bool = False

    def auto_linkable(self, min_score: float = AUTO_LINK_MIN_SCORE) -> bool:
        return self.score >= min_score


def normalize_vendor(value: str | None) -> str:
    """Lowercase, drop punctuation, web and corporate suffixes. '' when absent."""
    text = str(value or "").lower()
    text = _WEB_SUFFIX.sub("", text)
    text = _NON_ALNUM.sub(" ", text)
    text = _CORPORATE_WORDS.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def normalize_amount(value) -> Decimal | None:
    return parse_amount(value)


def vendors_match(a: str | None, b: str | None) -> bool:
    va, vb = normalize_vendor(a), normalize_vendor(b)
    return bool(va and vb) and (va in vb or vb in va)


def evaluate(gl_row: GLRow, item: DocumentItem) -> MatchScore:
    """Score one (GL row, item) pair. Missing or unparseable fields score 0."""
    score = 0.0
    ui_bonus = 0.0
    discrepancies: list[str] = []

    # ── Amount ──
    tier = TIER_NONE
    delta: Decimal | None = None
    gl_amount = normalize_amount(gl_row.amount)
    item_amount = normalize_amount(item.amount)
    if gl_amount is not None and item_amount is not None:
        delta = abs(gl_amount - item_amount)
        if delta < AMOUNT_EXACT_TOLERANCE:
            tier, score = TIER_EXACT, score + SCORE_AMOUNT_EXACT
        elif delta <= AMOUNT_NEAR_LIMIT:
            tier, score = TIER_NEAR, score + SCORE_AMOUNT_NEAR
        elif delta <= AMOUNT_UI_LIMIT:
            tier, ui_bonus = TIER_UI, SCORE_AMOUNT_UI
        if tier != TIER_EXACT:
            discrepancies.append(f"amount differs by {delta:.2f}")

    # ── Vendor ──
    vendor_match = vendors_match(gl_row.vendor, item.vendor)
    if vendor_match:
        score += SCORE_VENDOR
    elif normalize_vendor(gl_row.vendor) and normalize_vendor(item.vendor):
        discrepancies.append(f"vendor {item.vendor!r} does not match {gl_row.vendor!r}")

    # ── Date ──
    date_delta: int | None = None
    gl_date, item_date = parse_date(gl_row.date), parse_date(item.date)
    if gl_date is not None and item_date is not None:
        date_delta = abs((gl_date - item_date).days)
        if date_delta <= DATE_CLOSE_DAYS:
            score += SCORE_DATE_CLOSE
        elif date_delta <= DATE_NEAR_DAYS:
            score += SCORE_DATE_NEAR
        if date_delta > DATE_CLOSE_DAYS:
            discrepancies.append(f"dates {date_delta} days apart")

    return MatchScore(
        gl_entry_id=gl_row.id,
        document_item_id=item.id,
        score=score,
        ui_score=score + ui_bonus,
        amount_tier=tier,
        amount_delta=delta,
        vendor_match=vendor_match,
        date_delta_days=date_delta,
        discrepancies=tuple(discrepancies),
    )


def score(gl_row: GLRow, item: DocumentItem) -> float:
    return evaluate(gl_row, item).score


def _id_key(value: str):
    # Numeric ids compare numerically, everything else lexically after them
    return (0, int(value), "") if value.isascii() and value.isdigit() else (1, 0, value)


def _rank(scores: list[MatchScore], *, ui: bool, by_item: bool) -> list[MatchScore]:
    def key(s: MatchScore):
        return (
            -(s.ui_score if ui else s.score),
            -s.amount_tier,
            not s.vendor_match,
            s.date_delta_days if s.date_delta_days is not None else math.inf,
            _id_key(s.document_item_id if by_item else s.gl_entry_id),
        )

    ranked = sorted(scores, key=key)
    if ranked and (ranked[0].ui_score if ui else ranked[0].score) > 0:
        ranked[0] = replace(ranked[0], best=True)
    return ranked


def rank_candidates(gl_row: GLRow, items: Iterable[DocumentItem], *, ui: bool = True) -> list[MatchScore]:
    """Document items ordered best-first for one GL row (the manual-link picker)."""
    return _rank([evaluate(gl_row, item) for item in items], ui=ui, by_item=True)


def rank_gl_rows(item: DocumentItem, gl_rows: Iterable[GLRow]) -> list[MatchScore]:
    """GL rows ordered best-first for one document item, by auto-link score."""
    return _rank([evaluate(row, item) for row in gl_rows], ui=False, by_item=False)


def select_auto_link(
    item: DocumentItem,
    gl_rows: Iterable[GLRow],
    min_score: float = AUTO_LINK_MIN_SCORE,
) -> MatchScore | None:
    """Best GL row for the item when it clears the auto-link bar, else None."""
    ranked = rank_gl_rows(item, gl_rows)
    if ranked and ranked[0].auto_linkable(min_score):
        return ranked[0]
    return None
