"""Delimited-text (CSV) statement parser.

Bank CSV exports disagree on everything: column names, column order, date
style, and whether direction is a signed amount or a Debit/Credit pair. This
parser finds the header row by matching column names against patterns and
maps whatever it finds onto :class:`ParsedTransaction`.

Sign convention:
    A signed amount column keeps its sign: positive is INCOME, negative is
    EXPENSE. With a Debit/Credit pair, a credit is INCOME and a debit is
    EXPENSE.

Account metadata can only come from the file name (institution and account
type keywords, last four digits before the extension).
"""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from statement_importer.lookups import INSTITUTIONS
from statement_importer.models import (
    CHECKING,
    CREDIT,
    EXPENSE,
    INCOME,
    INVESTMENT,
    SAVINGS,
    DetectedAccount,
    ParsedStatement,
    ParsedTransaction,
)

logger = logging.getLogger(__name__)

# How many leading rows may precede the header (bank preambles, titles).
HEADER_SCAN_ROWS = 10

DATE_PATTERNS = (r"date", r"posted", r"trans.*date", r"transaction.*date", r"posting.*date")
AMOUNT_PATTERNS = (r"^amount$", r"transaction.*amount")
DESCRIPTION_PATTERNS = (
    r"description", r"memo", r"narrative", r"details", r"payee", r"merchant", r"name",
)
DEBIT_PATTERNS = (r"debit", r"withdrawal", r"charge")
CREDIT_PATTERNS = (r"credit", r"deposit", r"payment")
CATEGORY_PATTERNS = (r"category", r"type", r"class")
CHECK_PATTERNS = (r"check.*no", r"check.*num", r"check")

_US_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_EU_DATE = re.compile(r"^(\d{2})/(\d{2})/(\d{4})$")
_FALLBACK_DATE_FORMATS = (
    "%Y/%m/%d",
    "%m-%d-%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y%m%d",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%d-%b-%Y",
)
_MASK_IN_FILE_NAME = re.compile(r"(\d{4})(?=\D*\.[^.]+$)")


@dataclass
class ColumnMapping:
    """Column indexes detected in the header row; ``None`` when absent."""

    date: int
    description: int
    amount: int | None = None
    debit: int | None = None
    credit: int | None = None
    category: int | None = None
    check_number: int | None = None


def parse(data: bytes, file_name: str) -> ParsedStatement:
    """Parse a delimited bank export into a :class:`ParsedStatement`.

    Args:
        data: Raw file bytes.
        file_name: Original file name (used for account hints only).

    Returns:
        A ParsedStatement. Malformed input yields no transactions and an
        explanatory warning instead of an exception.
    """
    warnings: list[str] = []
    content = data.decode("utf-8-sig", errors="replace")

    try:
        rows = [row for row in csv.reader(io.StringIO(content)) if any(cell.strip() for cell in row)]
    except csv.Error as exc:
        return ParsedStatement(warnings=(f"Failed to read CSV file: {exc}",))

    if len(rows) < 2:
        return ParsedStatement(warnings=("File contains no data rows",))

    header_idx, mapping = _find_header(rows)
    if mapping is None:
        return ParsedStatement(
            warnings=(
                "Could not detect column mapping. Expected columns: Date, Description, "
                "and either Amount or Debit/Credit.",
            )
        )

    transactions: list[ParsedTransaction] = []
    skipped_rows = 0

    for row in rows[header_idx + 1:]:
        txn_date = parse_date(_cell(row, mapping.date))
        if txn_date is None:
            skipped_rows += 1
            continue

        if mapping.amount is not None:
            amount = parse_amount(_cell(row, mapping.amount))
        else:
            debit = parse_amount(_cell(row, mapping.debit))
            credit = parse_amount(_cell(row, mapping.credit))
            amount = credit if credit > 0 else -abs(debit)

        if amount == 0:
            skipped_rows += 1
            continue

        category = _cell(row, mapping.category) or None
        check_number = _cell(row, mapping.check_number) or None

        transactions.append(
            ParsedTransaction(
                date=txn_date,
                amount=abs(amount),
                description=_cell(row, mapping.description) or "Unknown",
                type=INCOME if amount > 0 else EXPENSE,
                category=category,
                check_number=check_number,
            )
        )

    if skipped_rows:
        warnings.append(f"Skipped {skipped_rows} rows with missing or invalid data")

    logger.debug("%s: parsed %d transaction(s)", file_name, len(transactions))
    return ParsedStatement(
        transactions=tuple(transactions),
        account=detect_account_from_file_name(file_name),
        warnings=tuple(warnings),
    )


def detect_columns(headers: list[str]) -> ColumnMapping | None:
    """Map header names to column indexes.

    Returns:
        The mapping, or ``None`` if there is no date or description column,
        or neither a signed amount column nor a complete debit/credit pair.
    """
    date_idx = _find_column(headers, DATE_PATTERNS)
    description_idx = _find_column(headers, DESCRIPTION_PATTERNS)
    amount_idx = _find_column(headers, AMOUNT_PATTERNS)
    debit_idx = _find_column(headers, DEBIT_PATTERNS)
    credit_idx = _find_column(headers, CREDIT_PATTERNS)

    if date_idx is None or description_idx is None:
        return None
    if amount_idx is None and (debit_idx is None or credit_idx is None):
        return None

    return ColumnMapping(
        date=date_idx,
        description=description_idx,
        amount=amount_idx,
        debit=debit_idx,
        credit=credit_idx,
        category=_find_column(headers, CATEGORY_PATTERNS),
        check_number=_find_column(headers, CHECK_PATTERNS),
    )


def parse_date(value: str) -> date | None:
    """Parse a statement date string.

    Tries, in order: US ``M/D/YYYY`` (two-digit years are 20YY), ISO
    ``YYYY-MM-DD``, EU ``DD/MM/YYYY`` when the day exceeds 12, then a list of
    less common layouts.

    Returns:
        The date, or ``None`` if nothing matches.
    """
    cleaned = (value or "").strip()
    if not cleaned:
        return None

    us = _US_DATE.match(cleaned)
    if us:
        month, day, year = int(us.group(1)), int(us.group(2)), us.group(3)
        full_year = 2000 + int(year) if len(year) == 2 else int(year)
        try:
            return date(full_year, month, day)
        except ValueError:
            pass

    iso = _ISO_DATE.match(cleaned)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            return None

    eu = _EU_DATE.match(cleaned)
    if eu and int(eu.group(1)) > 12:
        try:
            return date(int(eu.group(3)), int(eu.group(2)), int(eu.group(1)))
        except ValueError:
            return None

    for fmt in _FALLBACK_DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def parse_amount(value: str) -> Decimal:
    """Parse an amount cell; ``$``, thousands separators and ``(x)`` negatives
    are accepted. Anything unparsable is ``Decimal("0")``."""
    cleaned = re.sub(r"[$,\s]", "", value or "")
    cleaned = re.sub(r"\((.+)\)", r"-\1", cleaned)
    if not cleaned:
        return Decimal("0")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return Decimal("0")
    return amount if amount.is_finite() else Decimal("0")


def detect_account_from_file_name(file_name: str) -> DetectedAccount:
    """Guess institution, account type and mask from a file name."""
    lower = file_name.lower()
    account = DetectedAccount()

    if "credit" in lower or "card" in lower:
        account.account_type = CREDIT
    elif "saving" in lower:
        account.account_type = SAVINGS
    elif "invest" in lower or "brokerage" in lower:
        account.account_type = INVESTMENT
    elif "check" in lower:
        account.account_type = CHECKING

    for keyword, display_name in INSTITUTIONS:
        if keyword in lower:
            account.institution = display_name
            break

    mask = _MASK_IN_FILE_NAME.search(file_name)
    if mask:
        account.account_mask = mask.group(1)

    return account


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _find_header(rows: list[list[str]]) -> tuple[int, ColumnMapping | None]:
    """Return the index and mapping of the first row that looks like a header."""
    for idx, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        mapping = detect_columns(row)
        if mapping is not None:
            return idx, mapping
    return 0, None


def _find_column(headers: list[str], patterns: tuple[str, ...]) -> int | None:
    """Index of the first header matching the first pattern that matches any."""
    for pattern in patterns:
        regex = re.compile(pattern, re.IGNORECASE)
        for idx, header in enumerate(headers):
            if regex.search(header.strip()):
                return idx
    return None


def _cell(row: list[str], idx: int | None) -> str:
    if idx is None or idx >= len(row):
        return ""
    return row[idx].strip()
