"""Statement import pipeline: upload, preview, confirm, cancel, delete, detect.

An import moves through these states::

    PENDING -> PARSING -> PREVIEW -> IMPORTING -> COMPLETED
                  |          |           |
                  +-> ERROR  +-> CANCELLED  +-> ERROR

``process_upload`` parses a statement, categorizes it, matches it to an
account, flags duplicates and caches the result as a preview.
``confirm_import`` turns the preview into stored transactions and re-runs
recurring detection. Store and cache calls are made one at a time, in order.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal

from statement_importer.accounts import match_account
from statement_importer.cache import Cache
from statement_importer.categorizer import Categorizer, KeywordCategorizer
from statement_importer.dedup import comparison_window, detect_duplicates
from statement_importer.merchant import clean_merchant_name
from statement_importer.models import (
    CANCELLED,
    CHECKING,
    COMPLETED,
    ERROR,
    IMPORTING,
    PARSING,
    PENDING,
    PREVIEW,
    Account,
    AppConfig,
    Categorization,
    DetectedAccount,
    DetectionSettings,
    ImportPreview,
    ImportRecord,
    MerchantRule,
    ParsedTransaction,
    PreviewTransaction,
    RecurringPattern,
    Transaction,
    generate_transaction_id,
)
from statement_importer.parsers import PARSERS, get_parser
from statement_importer.recurring import detect_recurring_patterns
from statement_importer.store import TransactionStore

logger = logging.getLogger(__name__)

PREVIEW_KEY = "import-preview:{import_id}"
CANCELLABLE_STATUSES = (PENDING, PARSING, PREVIEW)


class StatementImportError(Exception):
    """An import could not be processed, confirmed or cancelled."""


@dataclass
class ConfirmRequest:
    """What the user decided after reviewing a preview.

    Attributes:
        account_id: Import into this existing account.
        create_new_account: Create a new account instead; name, type and
            institution default to the detected metadata.
        new_account_name: Name for the new account.
        new_account_type: Type for the new account.
        new_account_institution: Institution for the new account.
        category_overrides: Preview index -> category chosen by the user.
        skip_duplicates: Leave out transactions flagged as duplicates.
    """

    account_id: str | None = None
    create_new_account: bool = False
    new_account_name: str | None = None
    new_account_type: str | None = None
    new_account_institution: str | None = None
    category_overrides: dict[int, str] = field(default_factory=dict)
    skip_duplicates: bool = True


@dataclass
class DetectionResult:
    """Outcome of one recurring-detection run."""

    patterns: list[RecurringPattern] = field(default_factory=list)
    upserted: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class ConfirmResult:
    """Outcome of a confirmed import.

    Attributes:
        account_id: Account the transactions went into.
        transactions_imported: Rows actually stored.
        duplicates_skipped: Preview rows left out as duplicates.
        learned_rules: Merchant rules derived from category overrides.
        detection: Recurring detection result, or ``None`` if it failed.
    """

    account_id: str
    transactions_imported: int
    duplicates_skipped: int
    learned_rules: list[MerchantRule] = field(default_factory=list)
    detection: DetectionResult | None = None


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


def start_import(store: TransactionStore, user_id: str, file_name: str, file_format: str) -> ImportRecord:
    """Create a PENDING import record with a fresh id."""
    record = ImportRecord(
        id=uuid.uuid4().hex[:12],
        user_id=user_id,
        file_name=file_name,
        file_format=file_format.upper(),
        created_at=datetime.now(),
    )
    store.create_import(record)
    return record


def process_upload(
    store: TransactionStore,
    cache: Cache,
    user_id: str,
    import_id: str,
    data: bytes,
    file_name: str,
    file_format: str,
    categorizer: Categorizer | None = None,
    config: AppConfig | None = None,
) -> ImportPreview | None:
    """Parse an uploaded statement and cache a preview of it.

    Args:
        store: Transaction store.
        cache: Preview cache.
        user_id: Owner of the import.
        import_id: Existing import record (see :func:`start_import`).
        data: Raw file bytes.
        file_name: Original file name.
        file_format: Format tag: CSV, OFX, QFX or PDF.
        categorizer: Category suggester. Defaults to keyword scoring.
        config: Application config (preview TTL).

    Returns:
        The cached preview, or ``None`` when the file yielded no
        transactions (the import is then in ERROR with the parser warnings
        as its message).

    Raises:
        StatementImportError: On any other failure; the import is set to
            ERROR first.
    """
    config = config or AppConfig()
    try:
        store.update_import(import_id, status=PARSING)

        if file_format.upper() not in PARSERS:
            raise StatementImportError(f"Unsupported format: {file_format}")
        parsed = get_parser(file_format)(data, file_name)

        if not parsed.transactions:
            message = "; ".join(parsed.warnings) or "No transactions found in statement"
            logger.warning("Import %s: no transactions found in %s", import_id, file_name)
            store.update_import(import_id, status=ERROR, error_message=message)
            return None

        warnings = list(parsed.warnings)
        categorizations = _categorize(categorizer, parsed.transactions)
        matched = match_account(store.list_accounts(user_id), parsed.account)
        existing = _comparison_set(
            store, user_id, parsed.transactions, matched.id if matched else None, warnings
        )
        previews = detect_duplicates(existing, parsed.transactions, categorizations)
        duplicate_count = sum(1 for p in previews if p.is_duplicate)

        preview = ImportPreview(
            import_id=import_id,
            file_name=file_name,
            file_format=file_format.upper(),
            account=parsed.account,
            transactions=previews,
            total_transactions=len(previews),
            duplicate_count=duplicate_count,
            warnings=warnings,
            matched_account_id=matched.id if matched else None,
        )
        cache.set(PREVIEW_KEY.format(import_id=import_id), preview_to_json(preview), config.preview_ttl_seconds)

        store.update_import(
            import_id,
            status=PREVIEW,
            account_id=preview.matched_account_id,
            detected_institution=parsed.account.institution,
            detected_account_type=parsed.account.account_type,
            detected_account_name=parsed.account.account_name,
            detected_account_mask=parsed.account.account_mask,
            transactions_found=len(previews),
            duplicates_skipped=duplicate_count,
        )
        logger.info(
            "Import %s: %d transaction(s), %d duplicate(s)", import_id, len(previews), duplicate_count
        )
        return preview
    except Exception as exc:
        message = str(exc) or "Failed to process statement"
        logger.error("Import %s failed: %s", import_id, message)
        store.update_import(import_id, status=ERROR, error_message=message)
        if isinstance(exc, StatementImportError):
            raise
        raise StatementImportError(message) from exc


def load_preview(cache: Cache, import_id: str) -> ImportPreview | None:
    """The cached preview of an import, or ``None`` if missing or expired."""
    raw = cache.get(PREVIEW_KEY.format(import_id=import_id))
    return preview_from_json(raw) if raw is not None else None


# ---------------------------------------------------------------------------
# Confirm / cancel
# ---------------------------------------------------------------------------


def confirm_import(
    store: TransactionStore,
    cache: Cache,
    user_id: str,
    import_id: str,
    request: ConfirmRequest,
    settings: DetectionSettings | None = None,
    today: date | None = None,
) -> ConfirmResult:
    """Store the transactions of a previewed import.

    Raises:
        StatementImportError: If the import is not in PREVIEW, its preview
            expired, or no usable account was given. Failures after the
            import enters IMPORTING set it to ERROR and propagate unchanged.
    """
    record = store.get_import(user_id, import_id)
    if record is None or record.status != PREVIEW:
        raise StatementImportError("Import not found or not in preview state")

    preview = load_preview(cache, import_id)
    if preview is None:
        raise StatementImportError("Preview data expired. Please re-upload the statement.")

    store.update_import(import_id, status=IMPORTING)
    try:
        account_id = _resolve_account(store, user_id, record, preview, request)

        transactions = list(preview.transactions)
        learned: dict[str, MerchantRule] = {}
        for index, category in request.category_overrides.items():
            if not 0 <= index < len(transactions):
                logger.warning("Ignoring category override for unknown row %d", index)
                continue
            txn = transactions[index]
            txn.suggested_category = category
            txn.category_confidence = 100
            txn.category_source = "manual"
            key = clean_merchant_name(txn.merchant or txn.description).normalized_key
            if key:
                learned[key] = MerchantRule(pattern=key, category=category, source="learned")

        rows = [
            _to_transaction(txn, ordinal, user_id, account_id, import_id)
            for ordinal, txn in enumerate(transactions)
            if not (request.skip_duplicates and txn.is_duplicate)
        ]
        duplicates_skipped = len(transactions) - len(rows)

        stored = store.import_transactions(account_id, rows) if rows else []
        inserted = len(stored)

        store.update_import(
            import_id,
            status=COMPLETED,
            account_id=account_id,
            transactions_imported=inserted,
            duplicates_skipped=duplicates_skipped,
            completed_at=datetime.now(),
        )
        cache.delete(PREVIEW_KEY.format(import_id=import_id))
    except Exception as exc:
        logger.error("Import %s confirm failed: %s", import_id, exc)
        store.update_import(
            import_id, status=ERROR, error_message=str(exc) or "Failed to import transactions"
        )
        raise

    logger.info("Import %s: stored %d transaction(s) in %s", import_id, inserted, account_id)

    detection = None
    try:
        detection = run_detection(store, user_id, settings, today)
    except Exception as exc:
        logger.warning("Recurring detection after import %s failed: %s", import_id, exc)

    return ConfirmResult(
        account_id=account_id,
        transactions_imported=inserted,
        duplicates_skipped=duplicates_skipped,
        learned_rules=list(learned.values()),
        detection=detection,
    )


def cancel_import(store: TransactionStore, cache: Cache, user_id: str, import_id: str) -> None:
    """Cancel an import that has not been confirmed yet.

    Raises:
        StatementImportError: If the import does not exist or is past
            PREVIEW.
    """
    record = store.get_import(user_id, import_id)
    if record is None or record.status not in CANCELLABLE_STATUSES:
        raise StatementImportError("Import not found or cannot be cancelled")
    store.update_import(import_id, status=CANCELLED)
    cache.delete(PREVIEW_KEY.format(import_id=import_id))


def delete_import(store: TransactionStore, cache: Cache, user_id: str, import_id: str) -> int:
    """Delete an import in any state, with the transactions it stored.

    Account balances are restored as if the import never happened.

    Returns:
        The number of transactions deleted.

    Raises:
        StatementImportError: If the import does not exist.
    """
    if store.get_import(user_id, import_id) is None:
        raise StatementImportError("Import not found")
    deleted = store.delete_import(user_id, import_id)
    cache.delete(PREVIEW_KEY.format(import_id=import_id))
    logger.info("Import %s deleted with %d transaction(s)", import_id, deleted)
    return deleted


# ---------------------------------------------------------------------------
# Recurring detection
# ---------------------------------------------------------------------------


def run_detection(
    store: TransactionStore,
    user_id: str,
    settings: DetectionSettings | None = None,
    today: date | None = None,
) -> DetectionResult:
    """Detect recurring patterns over the user's full history and upsert them.

    A pattern that fails to save is reported in ``warnings``; the others
    are still saved.
    """
    history = store.transaction_history(user_id)
    patterns = detect_recurring_patterns(history, settings, today)

    result = DetectionResult(patterns=patterns)
    for pattern in patterns:
        try:
            store.upsert_recurring(user_id, pattern)
        except Exception as exc:
            message = f"Could not save pattern {pattern.merchant_name} ({pattern.frequency}): {exc}"
            logger.warning(message)
            result.warnings.append(message)
        else:
            result.upserted += 1
    return result


# ---------------------------------------------------------------------------
# Preview serialization
# ---------------------------------------------------------------------------


def preview_to_json(preview: ImportPreview) -> str:
    """Serialize a preview; dates become ISO strings, amounts decimal strings."""
    return json.dumps(asdict(preview), default=_json_default)


def preview_from_json(raw: str) -> ImportPreview:
    data = json.loads(raw)
    transactions = [
        PreviewTransaction(
            **{**item, "date": date.fromisoformat(item["date"]), "amount": Decimal(item["amount"])}
        )
        for item in data.pop("transactions")
    ]
    return ImportPreview(
        **{**data, "account": DetectedAccount(**data["account"]), "transactions": transactions}
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _json_default(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _categorize(
    categorizer: Categorizer | None, transactions: Sequence[ParsedTransaction]
) -> list[Categorization]:
    fallback = KeywordCategorizer()
    if categorizer is None:
        return fallback.categorize(transactions)
    try:
        results = categorizer.categorize(transactions)
    except Exception as exc:
        logger.warning("Categorization failed, using keyword fallback: %s", exc)
        return fallback.categorize(transactions)
    if len(results) != len(transactions):
        logger.warning(
            "Categorizer returned %d result(s) for %d transaction(s), using keyword fallback",
            len(results),
            len(transactions),
        )
        return fallback.categorize(transactions)
    return results


def _comparison_set(
    store: TransactionStore,
    user_id: str,
    incoming: Sequence[ParsedTransaction],
    account_id: str | None,
    warnings: list[str],
) -> list[Transaction]:
    window = comparison_window(incoming)
    if window is None:
        return []
    try:
        return store.find_transactions(user_id, window[0], window[1], account_id)
    except Exception as exc:
        logger.warning("Duplicate check skipped, store query failed: %s", exc)
        warnings.append(f"Could not check for duplicates: {exc}")
        return []


def _resolve_account(
    store: TransactionStore,
    user_id: str,
    record: ImportRecord,
    preview: ImportPreview,
    request: ConfirmRequest,
) -> str:
    if request.account_id:
        if store.get_account(user_id, request.account_id) is None:
            raise StatementImportError("Account not found")
        return request.account_id

    if request.create_new_account:
        detected = preview.account
        account = Account(
            id=uuid.uuid4().hex[:12],
            user_id=user_id,
            name=(
                request.new_account_name
                or detected.account_name
                or f"{detected.institution or 'Unknown'} Account"
            ),
            type=request.new_account_type or detected.account_type or CHECKING,
            institution=request.new_account_institution or detected.institution or "Unknown",
            mask=detected.account_mask,
        )
        store.create_account(account)
        logger.info("Created account %s (%s)", account.id, account.name)
        return account.id

    if record.account_id:
        return record.account_id

    raise StatementImportError(
        "No account specified. Please select an existing account or create a new one."
    )


def _to_transaction(
    txn: PreviewTransaction, ordinal: int, user_id: str, account_id: str, import_id: str
) -> Transaction:
    return Transaction(
        id=generate_transaction_id(import_id, txn.date, txn.description, txn.amount, ordinal),
        user_id=user_id,
        account_id=account_id,
        date=txn.date,
        amount=txn.amount,
        type=txn.type,
        description=txn.description,
        merchant=txn.cleaned_merchant or txn.merchant,
        category=txn.suggested_category,
        external_id=txn.external_id,
        import_id=import_id,
        category_confidence=txn.category_confidence,
        category_source=txn.category_source,
    )
