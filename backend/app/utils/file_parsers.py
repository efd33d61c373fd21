"""Streaming CSV parsing for transaction import.

The feed is read header-first, one row at a time, so memory use is bounded
by the import batch size rather than by the file. ``iter_csv_rows`` yields
``RawRow`` objects; ``parse_row`` turns a row into a ``ParsedTransaction``
or raises one of the ``ValueError`` subclasses below, which the import
service records per row.
"""

from __future__ import annotations

import csv
import hashlib
import io
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import BinaryIO, TextIO

from app.utils import money


class InvalidAmountError(ValueError):
    pass


class InvalidDateError(ValueError):
    pass


class InvalidRowError(ValueError):
    pass


# Logical field -> header aliases, in priority order. A header matches an
# alias when its lower-cased name contains the alias.
COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("date", "timestamp", "transaction date", "transaction_date", "posted date"),
    "description": ("description", "desc", "narrative", "details", "transaction description"),
    "amount": ("amount", "value", "transaction amount", "debit", "credit"),
    "currency": ("currency", "ccy", "curr"),
    "merchant": ("merchant", "vendor", "payee", "merchant name"),
    "reference": ("reference", "ref", "reference number", "transaction id", "transaction_id"),
}

_CURRENCY_NOISE = re.compile(r"[$£€¥,\s]")

_DATE_FORMATS = (
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%m/%d/%y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
)
_TIME_SUFFIXES = ("", " %H:%M", " %H:%M:%S")


@dataclass
class RawRow:
    """One data row of the feed, with its 1-based position after the header."""

    number: int
    data: dict[str, str | None]


@dataclass
class ColumnMapping:
    """Logical field -> header name in the feed (None when the feed lacks it)."""

    date: str | None = None
    description: str | None = None
    amount: str | None = None
    currency: str | None = None
    merchant: str | None = None
    reference: str | None = None

    @classmethod
    def from_dict(cls, mapping: dict[str, str]) -> ColumnMapping:
        known = {k: v for k, v in mapping.items() if k in COLUMN_ALIASES}
        # "timestamp" is accepted as a synonym for the date field
        if "date" not in known and mapping.get("timestamp"):
            known["date"] = mapping["timestamp"]
        return cls(**known)

    def to_dict(self) -> dict[str, str | None]:
        return {name: getattr(self, name) for name in COLUMN_ALIASES}


@dataclass
class ParsedTransaction:
    """Uniform transaction coming out of a feed row."""

    timestamp: datetime
    description: str
    amount: Decimal
    currency: str
    merchant: str | None = None
    reference_number: str | None = None
    raw: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Column detection
# ---------------------------------------------------------------------------

def find_column(headers: list[str], aliases: tuple[str, ...]) -> str | None:
    """Return the original spelling of the first header matching an alias."""
    lowered = [h.strip().lower() for h in headers]
    for alias in aliases:
        for original, low in zip(headers, lowered):
            if alias in low:
                return original
    return None


def detect_column_mapping(headers: list[str]) -> ColumnMapping:
    return ColumnMapping(
        **{field_name: find_column(headers, aliases) for field_name, aliases in COLUMN_ALIASES.items()}
    )


# ---------------------------------------------------------------------------
# Streaming reader
# ---------------------------------------------------------------------------

def _text_stream(stream: BinaryIO | TextIO) -> TextIO:
    if isinstance(stream, io.TextIOBase):
        return stream
    # utf-8-sig drops the BOM many spreadsheet exports prepend
    return io.TextIOWrapper(stream, encoding="utf-8-sig", newline="")


def _sniff_delimiter(header_line: str) -> str:
    separator = ","
    if header_line.count(";") > header_line.count(","):
        separator = ";"
    if header_line.count("\t") > header_line.count(separator):
        separator = "\t"
    return separator


def iter_csv_rows(stream: BinaryIO | TextIO) -> tuple[list[str], Iterator[RawRow]]:
    """Read the header line and return (headers, lazy row iterator).

    Blank lines are skipped and do not consume a row number.
    """
    text = _text_stream(stream)
    header_line = text.readline()
    while header_line and not header_line.strip():
        header_line = text.readline()
    if not header_line:
        return [], iter(())

    delimiter = _sniff_delimiter(header_line)
    headers = [h.strip() for h in next(csv.reader([header_line], delimiter=delimiter))]

    def rows() -> Iterator[RawRow]:
        reader = csv.DictReader(text, fieldnames=headers, delimiter=delimiter)
        number = 0
        for record in reader:
            if not any((v or "").strip() for k, v in record.items() if k is not None):
                continue
            number += 1
            yield RawRow(number=number, data={k: v for k, v in record.items() if k is not None})

    return headers, rows()


# ---------------------------------------------------------------------------
# Field parsers
# ---------------------------------------------------------------------------

def parse_amount(value) -> Decimal:
    """Parse an amount, handling currency symbols, thousands commas and (negatives)."""
    if value is None or not str(value).strip():
        raise InvalidAmountError("Amount is required")

    if isinstance(value, (int, float, Decimal)):
        return money.round(value)

    cleaned = _CURRENCY_NOISE.sub("", str(value))
    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    try:
        amount = Decimal(cleaned)
    except InvalidOperation as e:
        raise InvalidAmountError(f"Invalid amount: {value}") from e
    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value}")

    return money.round(-amount if negative else amount)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_date(value) -> datetime:
    """Parse ISO-8601 or a common locale date string into a naive UTC datetime."""
    if value is None or not str(value).strip():
        raise InvalidDateError("Date is required")
    if isinstance(value, datetime):
        return _to_naive_utc(value)

    text = str(value).strip()
    try:
        return _to_naive_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        for suffix in _TIME_SUFFIXES:
            try:
                return datetime.strptime(text, fmt + suffix)
            except ValueError:
                continue
    raise InvalidDateError(f"Invalid date format: {value}")


def _cell(row: dict[str, str | None], column: str | None) -> str | None:
    if not column:
        return None
    value = row.get(column)
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_row(row: dict[str, str | None], mapping: ColumnMapping, default_currency: str) -> ParsedTransaction:
    """Map one feed row to a ParsedTransaction or raise a ValueError subclass."""
    timestamp = parse_date(_cell(row, mapping.date))
    description = _cell(row, mapping.description)
    amount = parse_amount(_cell(row, mapping.amount))
    if not description:
        raise InvalidRowError("Description is required")

    currency = (_cell(row, mapping.currency) or default_currency).upper()[:3]
    return ParsedTransaction(
        timestamp=timestamp,
        description=description,
        amount=amount,
        currency=currency,
        merchant=_cell(row, mapping.merchant),
        reference_number=_cell(row, mapping.reference),
        raw=dict(row),
    )


# ---------------------------------------------------------------------------
# Idempotency
# ---------------------------------------------------------------------------

def compute_idempotency_key(account_id: int, pt: ParsedTransaction, index: int = 1) -> str:
    """Deterministic key for a feed row.

    A reference number identifies the row on its own. Otherwise the key is a
    hash of (timestamp, amount, description, merchant) plus ``index``, the
    order of the row among identical rows of the same file, so two identical
    purchases stay distinct and re-importing the file reproduces the keys.
    """
    if pt.reference_number:
        raw = f"ref|{account_id}|{pt.reference_number}"
    else:
        raw = "|".join(
            [
                str(account_id),
                pt.timestamp.isoformat(),
                str(pt.amount),
                pt.description.strip().lower(),
                (pt.merchant or "").strip().lower(),
                str(index),
            ]
        )
    return hashlib.sha256(raw.encode()).hexdigest()
