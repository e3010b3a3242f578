"""Unit tests for the document item ↔ GL matcher."""
from decimal import Decimal

import pytest

from far_audit.rules.matcher import (
    evaluate,
    normalize_amount,
    normalize_vendor,
    rank_candidates,
    rank_gl_rows,
    score,
    select_auto_link,
)
from far_audit.schemas.document import DocumentItem
from far_audit.schemas.gl import GLRow


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _gl(row_id="g1", vendor="Acme Corp", amount="152.34", date="2024-06-10") -> GLRow:
    return GLRow(id=row_id, vendor=vendor, amount=amount, date=date, description="Client dinner")


def _item(item_id="i1", vendor="acme", amount="152.34", date="2024-06-11") -> DocumentItem:
    return DocumentItem(id=item_id, document_id="d1", vendor=vendor, amount=amount, date=date)


# ─── Boundary scenarios ───────────────────────────────────────────────────────

def test_exact_amount_vendor_and_close_date_scores_9_5():
    gl = _gl()
    ranked = rank_candidates(gl, [_item()])
    assert ranked[0].score == pytest.approx(9.5)
    assert ranked[0].best is True
    assert select_auto_link(_item(), [gl]).gl_entry_id == "g1"


def test_unrelated_item_scores_zero_and_is_not_auto_linked():
    other = _item(vendor="Other Inc", amount="160", date="2024-06-20")
    assert score(_gl(), other) == 0
    assert select_auto_link(other, [_gl()]) is None


# ─── Score table ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "item_amount, expected",
    [
        ("152.34", 6.0),   # exact
        ("152.335", 6.0),  # within a cent
        ("153.34", 4.5),   # near, delta exactly 1.00
        ("153.35", 0.0),   # beyond near
    ],
)
def test_amount_tiers(item_amount, expected):
    item = _item(vendor=None, date=None, amount=item_amount)
    assert score(_gl(), item) == pytest.approx(expected)


def test_ui_tier_only_affects_ui_score():
    m = evaluate(_gl(), _item(vendor=None, date=None, amount="157.34"))
    assert m.score == 0
    assert m.ui_score == pytest.approx(1.0)


@pytest.mark.parametrize("item_date, expected", [("2024-06-12", 1.0), ("2024-06-15", 0.5), ("2024-06-17", 0.5), ("2024-06-18", 0.0)])
def test_date_tiers(item_date, expected):
    item = _item(vendor=None, amount=None, date=item_date)
    assert score(_gl(), item) == pytest.approx(expected)


def test_near_amount_with_vendor_is_auto_linkable():
    item = _item(amount="152.00", date=None)
    m = evaluate(_gl(), item)
    assert m.score == pytest.approx(7.0)
    assert m.auto_linkable()


def test_near_amount_alone_is_not_auto_linkable():
    item = _item(vendor="Someone Else", amount="152.00", date="2024-06-11")
    assert evaluate(_gl(), item).score == pytest.approx(5.5)
    assert select_auto_link(item, [_gl()]) is None


def test_missing_fields_score_zero():
    empty = DocumentItem(id="x", document_id="d1")
    assert score(GLRow(id="g"), empty) == 0


def test_adding_vendor_agreement_never_lowers_score():
    without = _item(vendor=None)
    with_vendor = _item(vendor="Acme")
    assert score(_gl(), with_vendor) >= score(_gl(), without)


def test_exact_vendor_scores_at_least_containment():
    exact = score(_gl(vendor="Acme"), _item(vendor="Acme"))
    contained = score(_gl(vendor="Acme Widgets"), _item(vendor="Acme"))
    assert exact >= contained


# ─── Ranking ──────────────────────────────────────────────────────────────────

def test_amount_precision_breaks_score_ties():
    """Near amount alone (4.5) outranks vendor + close date + $10 tier (4.5 UI score)."""
    near = _item("near", vendor=None, amount="152.00", date=None)
    loose = _item("loose", vendor="Acme", amount="160.00", date="2024-06-10")
    ranked = rank_candidates(_gl(), [loose, near], ui=True)
    assert [m.document_item_id for m in ranked] == ["near", "loose"]
    assert ranked[0].ui_score == ranked[1].ui_score


def test_smaller_date_delta_breaks_ties():
    far = _item("far", vendor=None, date="2024-07-10")
    nearer = _item("nearer", vendor=None, date="2024-06-25")
    ranked = rank_candidates(_gl(), [far, nearer])
    assert [m.document_item_id for m in ranked] == ["nearer", "far"]


def test_numeric_ids_break_remaining_ties_numerically():
    ranked = rank_candidates(_gl(), [_item("10"), _item("9")])
    assert [m.document_item_id for m in ranked] == ["9", "10"]
    assert [m.best for m in ranked] == [True, False]


def test_no_best_flag_when_nothing_matches():
    ranked = rank_candidates(_gl(), [_item(vendor="Zed", amount="999", date="2023-01-01")])
    assert ranked[0].best is False


def test_rank_gl_rows_picks_closest_row_for_item():
    rows = [_gl("g1", amount="10.00"), _gl("g2"), _gl("g3", vendor="Other")]
    ranked = rank_gl_rows(_item(), rows)
    assert ranked[0].gl_entry_id == "g2"


# ─── Normalization ────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("The Acme Corp., Inc.", "acme"),
        ("acme.com", "acme"),
        ("  Joe's   Coffee  Company ", "joe s coffee"),
        (None, ""),
    ],
)
def test_normalize_vendor(raw, expected):
    assert normalize_vendor(raw) == expected


@pytest.mark.parametrize(
    "raw, expected",
    [
        (" $1,234.50 ", Decimal("1234.50")),
        ("(12.00)", Decimal("-12.00")),
        (42, Decimal("42")),
        ("abc", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_amount(raw, expected):
    assert normalize_amount(raw) == expected
