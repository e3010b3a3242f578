"""Lenient parsers for amounts and dates coming from spreadsheets and OCR."""
import datetime
import re
from decimal import Decimal, InvalidOperation

_CURRENCY_NOISE = re.compile(r"[\s,$€£¥]")
_US_DATE_FORMATS = ("%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y")


def parse_amount(value) -> Decimal | None:
    """Return a Decimal for numbers or strings like " $1,234.50 " / "(12.00)".

    Returns None for missing or unparseable input.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if value == value and abs(value) != float("inf") else None

    text = _CURRENCY_NOISE.sub("", str(value))
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return -amount if negative else amount


def parse_date(value) -> datetime.date | None:
    """Return a date for date/datetime objects, ISO strings or US MM/DD/YYYY strings."""
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value

    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in _US_DATE_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None
