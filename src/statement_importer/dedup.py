"""Duplicate detection for incoming statement transactions.

Incoming transactions are compared against existing ones from the same
comparison window. Two checks apply, in order:

1. The format-native external id (OFX ``FITID``), when both sides have one.
2. A content fingerprint over date, amount, type and description.

Depends on ``models.py`` only.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta
from decimal import Decimal

from statement_importer.models import (
    Categorization,
    ParsedTransaction,
    PreviewTransaction,
    Transaction,
)

_WHITESPACE = re.compile(r"\s+")


def generate_fingerprint(txn_date: date | datetime, amount: Decimal, txn_type: str, description: str) -> str:
    """Content fingerprint of a transaction.

    The fingerprint is the first 16 hex characters of SHA-256 over
    ``ISO-date|amount-to-cents|type|description``, where the description is
    lowercased with whitespace collapsed. Datetimes are reduced to their
    calendar day, so the time of day never matters.

    Returns:
        A 16-character lowercase hex string.
    """
    if isinstance(txn_date, datetime):
        txn_date = txn_date.date()
    amount_str = f"{Decimal(amount):.2f}"
    desc = _WHITESPACE.sub(" ", description.lower()).strip()
    raw = f"{txn_date.isoformat()}|{amount_str}|{txn_type}|{desc}"
    return hashlib.sha256(raw.encode()).hexdigest()[:16]


def comparison_window(incoming: Sequence[ParsedTransaction]) -> tuple[date, date] | None:
    """Date range of existing records worth comparing against.

    Returns:
        ``(min date - 1 day, max date + 1 day)``, or ``None`` when there are
        no incoming transactions.
    """
    if not incoming:
        return None
    dates = [txn.date for txn in incoming]
    return min(dates) - timedelta(days=1), max(dates) + timedelta(days=1)


def detect_duplicates(
    existing: Iterable[Transaction],
    incoming: Sequence[ParsedTransaction],
    categorizations: Sequence[Categorization] | None = None,
) -> list[PreviewTransaction]:
    """Annotate incoming transactions with duplicate flags and categories.

    Args:
        existing: Persisted transactions inside the comparison window.
        incoming: Newly parsed transactions.
        categorizations: Category suggestions aligned with *incoming* by
            index. Missing entries default to the statement category (or
            ``Other``) with confidence 50 from the keyword source.

    Returns:
        One :class:`PreviewTransaction` per incoming transaction, in order.
    """
    fingerprints: dict[str, str] = {}
    external_ids: set[str] = set()

    for txn in existing:
        fingerprint = generate_fingerprint(txn.date, txn.amount, txn.type, txn.description or "")
        fingerprints.setdefault(fingerprint, txn.id)
        if txn.external_id:
            external_ids.add(txn.external_id)

    previews: list[PreviewTransaction] = []
    for idx, txn in enumerate(incoming):
        is_duplicate = False
        duplicate_of = None

        if txn.external_id and txn.external_id in external_ids:
            is_duplicate = True
        else:
            existing_id = fingerprints.get(
                generate_fingerprint(txn.date, txn.amount, txn.type, txn.description)
            )
            if existing_id is not None:
                is_duplicate = True
                duplicate_of = existing_id

        categorization = None
        if categorizations is not None and idx < len(categorizations):
            categorization = categorizations[idx]

        previews.append(
            PreviewTransaction(
                date=txn.date,
                amount=txn.amount,
                description=txn.description,
                type=txn.type,
                merchant=txn.merchant,
                category=txn.category,
                external_id=txn.external_id,
                check_number=txn.check_number,
                memo=txn.memo,
                is_duplicate=is_duplicate,
                duplicate_of=duplicate_of,
                suggested_category=categorization.category if categorization else (txn.category or "Other"),
                category_confidence=categorization.confidence if categorization else 50,
                category_source=categorization.source if categorization else "keyword",
                cleaned_merchant=(
                    categorization.cleaned_merchant if categorization else (txn.merchant or "")
                ),
            )
        )

    return previews
