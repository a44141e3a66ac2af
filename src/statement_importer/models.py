"""Core data models for Statement Importer.

This module defines all dataclasses and constants used throughout the
import pipeline and the recurring detector. It has zero internal imports --
everything depends on it, but it depends on nothing within the package.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal

# ---------------------------------------------------------------------------
# Enumerated string values
# ---------------------------------------------------------------------------

INCOME = "INCOME"
EXPENSE = "EXPENSE"
TRANSFER = "TRANSFER"
TRANSACTION_TYPES = (INCOME, EXPENSE, TRANSFER)

CHECKING = "CHECKING"
SAVINGS = "SAVINGS"
CREDIT = "CREDIT"
INVESTMENT = "INVESTMENT"
ACCOUNT_TYPES = (CHECKING, SAVINGS, CREDIT, INVESTMENT)

WEEKLY = "WEEKLY"
BIWEEKLY = "BIWEEKLY"
MONTHLY = "MONTHLY"
QUARTERLY = "QUARTERLY"
ANNUALLY = "ANNUALLY"
FREQUENCIES = (WEEKLY, BIWEEKLY, MONTHLY, QUARTERLY, ANNUALLY)

ACTIVE = "ACTIVE"
POSSIBLY_CANCELLED = "POSSIBLY_CANCELLED"

# Statement import lifecycle.
PENDING = "PENDING"
PARSING = "PARSING"
PREVIEW = "PREVIEW"
IMPORTING = "IMPORTING"
COMPLETED = "COMPLETED"
ERROR = "ERROR"
CANCELLED = "CANCELLED"


def generate_transaction_id(
    import_id: str,
    txn_date: date,
    description: str,
    amount: Decimal,
    row_ordinal: int,
) -> str:
    """Generate a deterministic transaction ID from uniqueness components.

    The ID is a 12-character hex string derived from a SHA-256 hash of the
    pipe-delimited concatenation of: import id, ISO date, uppercased and
    stripped description, amount as string, and 0-based row ordinal within
    the confirmed import.

    Two identical purchases on the same day are distinguished by their row
    ordinal, and re-confirming the same preview yields the same IDs.

    Args:
        import_id: The statement import the row belongs to.
        txn_date: Transaction date.
        description: Transaction description (stripped and uppercased).
        amount: Unsigned transaction amount.
        row_ordinal: 0-based position within the import.

    Returns:
        A 12-character lowercase hex string.
    """
    raw = f"{import_id}|{txn_date.isoformat()}|{description.strip().upper()}|{amount}|{row_ordinal}"
    return hashlib.sha256(raw.encode()).hexdigest()[:12]


# ---------------------------------------------------------------------------
# Parser output
# ---------------------------------------------------------------------------


@dataclass
class ParsedTransaction:
    """A canonical transaction produced by a format parser.

    Attributes:
        date: Calendar day of the transaction.
        amount: Unsigned amount; always strictly positive.
        description: Description text from the statement.
        type: One of ``INCOME``, ``EXPENSE`` or ``TRANSFER``. The direction
            lives here, never in the amount.
        merchant: Payee name when the format states one separately.
        category: Category supplied by the statement itself, if any.
        external_id: Format-native transaction id (OFX ``FITID``) used as
            an authoritative duplicate key.
        check_number: Check number, if any.
        memo: Free-form memo, if any.
    """

    date: date
    amount: Decimal
    description: str
    type: str
    merchant: str | None = None
    category: str | None = None
    external_id: str | None = None
    check_number: str | None = None
    memo: str | None = None

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError(f"Transaction amount must be positive, got {self.amount}")
        if self.type not in TRANSACTION_TYPES:
            raise ValueError(f"Unknown transaction type {self.type!r}")


@dataclass
class DetectedAccount:
    """Advisory account metadata found in a statement. Every field is optional."""

    institution: str | None = None
    account_type: str | None = None
    account_name: str | None = None
    account_mask: str | None = None


@dataclass(frozen=True)
class ParsedStatement:
    """The result of parsing one statement file.

    Parsers never raise on malformed input; they return an empty
    ``transactions`` tuple and explain why in ``warnings``.
    """

    transactions: tuple[ParsedTransaction, ...] = ()
    account: DetectedAccount = field(default_factory=DetectedAccount)
    warnings: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Categorization and preview
# ---------------------------------------------------------------------------


@dataclass
class Categorization:
    """Category suggestion for one parsed transaction.

    Attributes:
        category: Suggested category name.
        confidence: 0-100.
        source: ``"ai"``, ``"rule"``, ``"keyword"``, ``"cache"`` or
            ``"manual"``.
        cleaned_merchant: Display name of the merchant.
    """

    category: str
    confidence: int
    source: str
    cleaned_merchant: str = ""


@dataclass
class PreviewTransaction(ParsedTransaction):
    """A parsed transaction annotated for the import preview.

    Only ever stored in the transient preview cache.
    """

    is_duplicate: bool = False
    duplicate_of: str | None = None
    suggested_category: str = "Other"
    category_confidence: int = 50
    category_source: str = "keyword"
    cleaned_merchant: str = ""


@dataclass
class ImportPreview:
    """Everything the user reviews before confirming an import."""

    import_id: str
    file_name: str
    file_format: str
    account: DetectedAccount
    transactions: list[PreviewTransaction] = field(default_factory=list)
    total_transactions: int = 0
    duplicate_count: int = 0
    warnings: list[str] = field(default_factory=list)
    matched_account_id: str | None = None


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class Account:
    """A user's financial account."""

    id: str
    user_id: str
    name: str
    type: str
    institution: str
    mask: str | None = None
    balance: Decimal = Decimal("0")


@dataclass
class Transaction:
    """A confirmed, persisted transaction.

    Attributes:
        id: Deterministic 12-char hex id (see ``generate_transaction_id``).
        user_id: Owner.
        account_id: Account the transaction was imported into.
        date: Transaction date.
        amount: Unsigned amount.
        type: ``INCOME``, ``EXPENSE`` or ``TRANSFER``.
        description: Statement description.
        merchant: Cleaned merchant display name, if known.
        category: Assigned category.
        external_id: Format-native id carried over from the parser.
        import_id: Statement import that created the row.
        category_confidence: 0-100.
        category_source: Where the category came from.
    """

    id: str
    user_id: str
    account_id: str
    date: date
    amount: Decimal
    type: str
    description: str
    merchant: str | None = None
    category: str = "Other"
    external_id: str | None = None
    import_id: str | None = None
    category_confidence: int = 50
    category_source: str = "keyword"


@dataclass
class ImportRecord:
    """Lifecycle record of one uploaded statement."""

    id: str
    user_id: str
    file_name: str
    file_format: str
    status: str = PENDING
    account_id: str | None = None
    detected_institution: str | None = None
    detected_account_type: str | None = None
    detected_account_name: str | None = None
    detected_account_mask: str | None = None
    transactions_found: int = 0
    transactions_imported: int = 0
    duplicates_skipped: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class RecurringPattern:
    """A periodic merchant/amount pattern found in a user's history.

    ``transaction_ids`` reference persisted transactions; the pattern does
    not own them.
    """

    merchant_name: str
    frequency: str
    average_amount: Decimal
    last_amount: Decimal
    first_date: date
    last_date: date
    next_expected_date: date
    transaction_ids: list[str] = field(default_factory=list)
    category: str = "Other"
    status: str = ACTIVE
    description: str = ""
    type: str = EXPENSE


@dataclass
class MerchantRule:
    """A merchant-to-category mapping rule.

    Attributes:
        pattern: Normalized merchant key (lowercase alphanumerics).
        category: Target category.
        source: ``"user"`` (hand-authored, never overwritten) or
            ``"learned"`` (written when a user overrides a suggestion).
    """

    pattern: str
    category: str
    source: str = "user"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class DetectionSettings:
    """Tunable thresholds of the recurring detector.

    Attributes:
        amount_tolerance: Relative distance from a cluster's running mean
            within which an amount joins the cluster.
        interval_tolerance: Maximum relative deviation of any day-gap from
            the mean gap.
        min_occurrences: Minimum members for a merchant group or cluster.
        habitual_min_count: Groups smaller than this are never habitual.
        habitual_monthly_rate: Transactions per 30 days above which a group
            counts as high frequency.
        habitual_amount_cv: Amount coefficient of variation above which a
            high-frequency group is treated as habitual and dropped.
    """

    amount_tolerance: float = 0.10
    interval_tolerance: float = 0.20
    min_occurrences: int = 3
    habitual_min_count: int = 10
    habitual_monthly_rate: float = 10.0
    habitual_amount_cv: float = 0.20


@dataclass
class AppConfig:
    """Top-level application configuration loaded from config.toml.

    Attributes:
        user: User id that CLI operations act on.
        database: SQLite database path, relative to the project root.
        cache_dir: Directory for preview and merchant cache files.
        preview_ttl_seconds: Lifetime of a cached import preview.
        merchant_cache_ttl_days: Lifetime of a cached AI categorization.
        llm_batch_size: Transactions per LLM request.
        llm_provider: ``"anthropic"`` or ``"none"``.
        llm_model: Model identifier.
        llm_api_key_env: Name of the environment variable holding the key.
        detection: Recurring detector thresholds.
    """

    user: str = "default"
    database: str = "statements.db"
    cache_dir: str = "cache"
    preview_ttl_seconds: int = 3600
    merchant_cache_ttl_days: int = 30
    llm_batch_size: int = 50
    llm_provider: str = "anthropic"
    llm_model: str = "claude-sonnet-4-20250514"
    llm_api_key_env: str = "ANTHROPIC_API_KEY"
    detection: DetectionSettings = field(default_factory=DetectionSettings)
