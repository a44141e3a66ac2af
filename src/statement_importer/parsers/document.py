"""PDF statement parser (heuristic free-text extraction).

PDF statements have no machine-readable structure, so this parser works on the
extracted page text line by line. Two layouts are recognized:

- *Section format*: transactions are grouped under sub-headings such as
  "Deposits and additions" or "Electronic withdrawals"; the active heading
  gives each transaction its type.
- *Column format*: one table with Deposits and Withdrawals columns. Text
  extraction loses the column positions, so every amount arrives unsigned.
  The direction is recovered from the running balance: for each day the
  signs of that day's amounts must add up to the change in the ending daily
  balance.

Every result carries a warning asking the user to review it.
"""

from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation

import pdfplumber

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

HEURISTIC_WARNING = (
    "PDF parsing uses heuristic text extraction and may not capture all "
    "transactions accurately. Please review carefully."
)

# Largest number of transactions on one day whose signs are solved by search.
MAX_SOLVABLE_DAY = 16
BALANCE_TOLERANCE = Decimal("0.02")

# Account metadata is only looked for in the statement header area.
HEADER_CHARS = 2000

# Lines after the table start that are scanned for column headers.
COLUMN_HEADER_WINDOW = 15

DATE_REGEX = re.compile(r"(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?")
AMOUNT_REGEX = re.compile(r"\$?\s*-?[\d,]+\.\d{2}")
_LINE_STARTS_WITH_DATE = re.compile(r"^\s*\d{1,2}/\d{1,2}")
_PAGE_MARKER = re.compile(r"^--\s*\d+\s+of\s+\d+\s*--$")
_PAGE_FOOTER = re.compile(r"page\s+\d+\s+of\s+\d+", re.IGNORECASE)
_CONTINUED = re.compile(r"\(continued\)", re.IGNORECASE)
_DESCRIPTION_PREFIX = re.compile(r"^\s*[-|<>]\s*")
_DESCRIPTION_REFERENCE = re.compile(r"\s+#?\d{4,}$")
_BEGINNING_BALANCE = re.compile(r"beginning\s+balance.*?\$?([\d,]+\.\d{2})", re.IGNORECASE)
_STATEMENT_YEAR = re.compile(
    r"(?:statement\s+(?:period|date)|january|february|march|april|may|june|july"
    r"|august|september|october|november|december).*?(\d{4})",
    re.IGNORECASE,
)
_FULL_DATE_YEAR = re.compile(r"\d{1,2}/\d{1,2}/(\d{4})")

TABLE_START_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\btransaction\s+history\b",
        r"\btransaction\s+detail",
        r"\baccount\s+activity\b",
        r"\btransaction\s+activity\b",
        r"\baccount\s+detail",
    )
)

TABLE_END_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bdaily\s+ending\s+balance\b",
        r"\bbalance\s+summary\b",
        r"\byear.to.date\s+summary",
        r"\bworksheet\s+to\b",
        r"\bcheck\s+images?\b",
        r"\bimportant\s+(?:account\s+)?information\b",
        r"\baccount\s+messages?\b",
        r"\bdisclosures?\b",
        r"\bterms\s+and\s+conditions\b",
        r"\bsummary\s+of\s+checks?\b",
        r"\bmonthly\s+service\s+fee\b",
        r"\baccount\s+(?:transaction\s+)?fees?\s+summary\b",
        r"\baccount\s+balance\s+calculation\b",
        r"^\s*totals?\s",
    )
)

# Order matters: the first matching heading decides the type.
SUB_SECTION_PATTERNS = tuple(
    (re.compile(p, re.IGNORECASE), txn_type)
    for p, txn_type in (
        (r"\bdeposits?\b.*\badditions?\b", INCOME),
        (r"\bdeposits?\b.*\bcredits?\b", INCOME),
        (r"\bcredits?\s+(?:and\s+)?additions?\b", INCOME),
        (r"\bother\s+credits?\b", INCOME),
        (r"\belectronic\s+deposits?\b", INCOME),
        (r"\bdeposits?\b", INCOME),
        (r"\binterest\s+(?:earned|paid)\b", INCOME),
        (r"\bpayments?\s+(?:and\s+)?(?:other\s+)?credits?\b", INCOME),
        (r"\bwithdrawals?\b.*\bsubtractions?\b", EXPENSE),
        (r"\bwithdrawals?\b.*\bdebits?\b", EXPENSE),
        (r"\bdebits?\s+(?:and\s+)?(?:other\s+)?subtractions?\b", EXPENSE),
        (r"\belectronic\s+(?:withdrawals?|payments?)\b", EXPENSE),
        (r"\bother\s+withdrawals?\b", EXPENSE),
        (r"\bwithdrawals?\b", EXPENSE),
        (r"\bpurchases?\b.*\badjustments?\b", EXPENSE),
        (r"\bpurchases?\b", EXPENSE),
        (r"\bchecks?\s+(?:paid|cleared|cashed)\b", EXPENSE),
        (r"\bservice\s+charges?\b", EXPENSE),
        (r"\bfees?\b", EXPENSE),
    )
)

SKIP_LINE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bbeginning\s+balance\b",
        r"\bending\s+balance\b",
        r"\bopening\s+balance\b",
        r"\bclosing\s+balance\b",
        r"\bprevious\s+balance\b",
        r"\bnew\s+balance\b",
        r"\bbalance\s+forward\b",
        r"\btotal\s+(?:deposits|withdrawals|credits|debits|charges|fees|interest)\b",
        r"\boverdraft\s+protection\b",
    )
)

INCOME_KEYWORDS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bdeposit",
        r"\bdirect\s*dep",
        r"\binterest\s+(?:earned|paid|payment)",
        r"\brefund",
        r"\bcash\s*back",
    )
)

_ACCOUNT_MASK_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"account\s*(?:number|#|no\.?)?\s*[:\s]*[*xX]{2,}(\d{4})",
        r"account\s*(?:number|#|no\.?)?\s*[:\s]*\.{2,}(\d{4})",
        r"(?:ending in|last four|xxxx)\s*(\d{4})",
    )
)


@dataclass
class RawLine:
    """A column-format transaction before its direction is known."""

    date: date
    amount: Decimal
    description: str
    ending_balance: Decimal | None = None


def parse(data: bytes, file_name: str) -> ParsedStatement:
    """Extract text from PDF bytes with pdfplumber and parse it.

    Args:
        data: Raw PDF bytes.
        file_name: Original file name.

    Returns:
        A ParsedStatement; unreadable or image-only PDFs yield a warning.
    """
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            text = "\n".join(page.extract_text() or "" for page in pdf.pages)
    except Exception as exc:
        logger.warning("%s: PDF text extraction failed: %s", file_name, exc)
        return ParsedStatement(warnings=(f"Failed to parse PDF: {exc}",))

    if not text.strip():
        return ParsedStatement(
            warnings=("PDF contains no extractable text. Scanned PDFs are not supported.",)
        )

    return parse_text(text, file_name)


def parse_text(text: str, file_name: str, today: date | None = None) -> ParsedStatement:
    """Parse already-extracted statement text.

    Args:
        text: Statement text, one printed line per line.
        file_name: Original file name (only used for logging).
        today: Reference date for the year fallback. Defaults to today.
    """
    warnings = [HEURISTIC_WARNING]
    account = detect_account_from_text(text)
    transactions = _extract_transactions(text, warnings, today or date.today())

    if not transactions:
        warnings.append(
            "Could not extract any transactions from the PDF. The format may not be supported."
        )

    logger.debug("%s: parsed %d transaction(s)", file_name, len(transactions))
    return ParsedStatement(transactions=tuple(transactions), account=account, warnings=tuple(warnings))


def detect_account_from_text(text: str) -> DetectedAccount:
    """Institution, account type and mask from the header area of *text*."""
    header = text[:HEADER_CHARS].lower()
    account = DetectedAccount()

    for keyword, display_name in INSTITUTIONS:
        if keyword in header:
            account.institution = display_name
            break

    if "credit card" in header or "card statement" in header or "card account" in header:
        account.account_type = CREDIT
    elif re.search(r"savings\b", header):
        account.account_type = SAVINGS
    elif re.search(r"checking\b", header):
        account.account_type = CHECKING
    elif "investment" in header or "brokerage" in header:
        account.account_type = INVESTMENT

    for pattern in _ACCOUNT_MASK_PATTERNS:
        match = pattern.search(text[:HEADER_CHARS])
        if match:
            account.account_mask = match.group(1)
            break

    return account


def extract_beginning_balance(text: str) -> Decimal | None:
    """The amount on the first "Beginning balance" line, if any."""
    match = _BEGINNING_BALANCE.search(text)
    if match is None:
        return None
    return _to_decimal(match.group(1))


def extract_statement_year(text: str, today: date) -> int:
    """Year the statement covers.

    Taken from the statement period or a month name, then from any full
    ``M/D/YYYY`` date. Implausible years are ignored, leaving ``today.year``.
    """
    for pattern in (_STATEMENT_YEAR, _FULL_DATE_YEAR):
        match = pattern.search(text)
        if match:
            year = int(match.group(1))
            if 2000 <= year <= 2100:
                return year
            break
    return today.year


def solve_signs_for_day(amounts: list[Decimal], net_change: Decimal) -> list[bool] | None:
    """Find the deposit/withdrawal assignment that explains a balance change.

    Searches all ``2**n`` sign assignments for those whose signed sum is
    within one cent of *net_change*. Assignments that differ only by swapping
    equal amounts count as the same answer.

    Args:
        amounts: Unsigned amounts of one day's transactions, in order.
        net_change: Ending balance minus the previous ending balance.

    Returns:
        One boolean per amount (``True`` means deposit), or ``None`` when no
        assignment fits, several genuinely different ones do, or the day has
        more than ``MAX_SOLVABLE_DAY`` transactions.
    """
    n = len(amounts)
    if n == 0 or n > MAX_SOLVABLE_DAY:
        return None

    solution: list[bool] | None = None
    signature = None
    for mask in range(1 << n):
        signs = [bool(mask & (1 << i)) for i in range(n)]
        total = sum(
            (amount if deposit else -amount for amount, deposit in zip(amounts, signs)),
            Decimal("0"),
        )
        if abs(total - net_change) >= BALANCE_TOLERANCE:
            continue
        candidate = sorted(zip(amounts, signs))
        if solution is None:
            solution, signature = signs, candidate
        elif candidate != signature:
            return None
    return solution


def infer_type_from_description(description: str) -> str:
    """Keyword guess used when balance arithmetic cannot decide."""
    if any(pattern.search(description) for pattern in INCOME_KEYWORDS):
        return INCOME
    return EXPENSE


def assign_types_from_balance(
    raw_lines: list[RawLine],
    beginning_balance: Decimal | None,
    warnings: list[str],
) -> list[ParsedTransaction]:
    """Turn column-format raw lines into typed transactions, day by day."""
    days: dict[date, list[RawLine]] = {}
    for raw in raw_lines:
        days.setdefault(raw.date, []).append(raw)

    result: list[ParsedTransaction] = []
    previous_balance = beginning_balance

    for day, day_lines in days.items():
        ending_balance = next(
            (raw.ending_balance for raw in reversed(day_lines) if raw.ending_balance is not None),
            None,
        )

        signs = None
        if ending_balance is not None and previous_balance is not None:
            signs = solve_signs_for_day([raw.amount for raw in day_lines], ending_balance - previous_balance)
            if signs is None:
                warnings.append(
                    f"Could not determine deposit/withdrawal for {day.month}/{day.day} "
                    "using balance. Falling back to keyword inference."
                )

        for idx, raw in enumerate(day_lines):
            if signs is not None:
                txn_type = INCOME if signs[idx] else EXPENSE
            else:
                txn_type = infer_type_from_description(raw.description)
            result.append(
                ParsedTransaction(
                    date=raw.date, amount=raw.amount, description=raw.description, type=txn_type
                )
            )

        if ending_balance is not None:
            previous_balance = ending_balance

    return result


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_transactions(text: str, warnings: list[str], today: date) -> list[ParsedTransaction]:
    lines = [line.strip() for line in text.splitlines() if line.strip()]

    start_idx, explicit_start = _find_table_start(lines)
    is_column_format = explicit_start and _is_column_format(lines, start_idx)
    if is_column_format:
        logger.debug("Column-format statement, solving signs from balances")
    year = extract_statement_year(text, today)

    current_type = EXPENSE
    raw_lines: list[RawLine] = []
    section_transactions: list[ParsedTransaction] = []

    pending_date: date | None = None
    pending_description = ""

    def add_transaction(txn_date: date, description: str, amounts: list[str]) -> None:
        first = _to_decimal(amounts[0])
        if first is None or first == 0:
            return
        description = description.strip() or "Transaction"
        if is_column_format:
            ending = _to_decimal(amounts[-1]) if len(amounts) >= 2 else None
            raw_lines.append(RawLine(txn_date, abs(first), description, ending))
        else:
            section_transactions.append(
                ParsedTransaction(date=txn_date, amount=abs(first), description=description, type=current_type)
            )

    for line in lines[start_idx:]:
        if explicit_start and any(p.search(line) for p in TABLE_END_PATTERNS):
            break

        if _CONTINUED.search(line) or any(p.search(line) for p in TABLE_START_PATTERNS):
            continue
        if _PAGE_MARKER.match(line) or _PAGE_FOOTER.search(line):
            continue

        amounts = [match.strip() for match in AMOUNT_REGEX.findall(line)]
        starts_with_date = bool(_LINE_STARTS_WITH_DATE.match(line))

        if not starts_with_date and not amounts:
            heading_type = _sub_section_type(line)
            if heading_type is not None:
                if not is_column_format:
                    current_type = heading_type
            elif pending_date is not None and len(line) < 80:
                pending_description += " " + line
            continue

        if any(p.search(line) for p in SKIP_LINE_PATTERNS):
            continue

        if starts_with_date:
            pending_date = None
            pending_description = ""

            date_match = DATE_REGEX.search(line)
            txn_date = _build_date(date_match, year)
            if txn_date is None:
                continue

            rest = line[date_match.end():]
            if amounts:
                first_at = rest.find(amounts[0])
                description = rest[:first_at].strip() if first_at >= 0 else ""
                if len(description) < 2:
                    last = amounts[-1]
                    description = rest[rest.rfind(last) + len(last):].strip()
                description = _DESCRIPTION_PREFIX.sub("", description).strip()
                description = _DESCRIPTION_REFERENCE.sub("", description).strip()
                if len(description) < 2:
                    description = "Transaction"
                add_transaction(txn_date, description, amounts)
            else:
                pending_date = txn_date
                pending_description = _DESCRIPTION_PREFIX.sub("", rest).strip()
        elif pending_date is not None and amounts:
            extra = line[: line.find(amounts[0])].strip()
            if len(extra) > 1:
                pending_description += " " + extra
            add_transaction(pending_date, pending_description, amounts)
            pending_date = None
            pending_description = ""

    if is_column_format:
        return assign_types_from_balance(raw_lines, extract_beginning_balance(text), warnings)
    return section_transactions


def _find_table_start(lines: list[str]) -> tuple[int, bool]:
    """Index of the first transaction line and whether the start was explicit."""
    for idx, line in enumerate(lines):
        if any(p.search(line) for p in TABLE_START_PATTERNS):
            return idx + 1, True

    for idx, line in enumerate(lines):
        if _LINE_STARTS_WITH_DATE.match(line):
            continue
        if _sub_section_type(line) is not None:
            return idx, False

    return 0, False


def _is_column_format(lines: list[str], start_idx: int) -> bool:
    """True when Deposits and Withdrawals/Debits headers precede the first dated line."""
    has_deposit = has_withdrawal = False
    for line in lines[start_idx:start_idx + COLUMN_HEADER_WINDOW]:
        if _LINE_STARTS_WITH_DATE.match(line):
            break
        if re.search(r"\bdeposits?\b", line, re.IGNORECASE):
            has_deposit = True
        if re.search(r"\bwithdrawals?\b|\bdebits?\b", line, re.IGNORECASE):
            has_withdrawal = True
    return has_deposit and has_withdrawal


def _sub_section_type(line: str) -> str | None:
    for pattern, txn_type in SUB_SECTION_PATTERNS:
        if pattern.search(line):
            return txn_type
    return None


def _build_date(match: re.Match | None, default_year: int) -> date | None:
    if match is None:
        return None
    month, day, year = int(match.group(1)), int(match.group(2)), match.group(3)
    if year is None:
        full_year = default_year
    elif len(year) == 2:
        full_year = 2000 + int(year)
    else:
        full_year = int(year)
    try:
        return date(full_year, month, day)
    except ValueError:
        return None


def _to_decimal(text: str) -> Decimal | None:
    cleaned = re.sub(r"[$,\s]", "", text)
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None
