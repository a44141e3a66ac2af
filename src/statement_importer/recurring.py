"""Recurring transaction detection.

Scans a user's transaction history for merchants that are paid (or pay the
user) at a steady interval with a steady amount, such as subscriptions,
rent and salaries.

Detection algorithm:
1. Group transactions by normalized merchant name.
2. Drop habitual spending: merchants visited very often with widely varying
   amounts (coffee shops, groceries).
3. Within a merchant, cluster transactions by amount (10% tolerance around
   the running cluster mean).
4. Keep clusters of 3+ transactions whose day gaps all stay within 20% of
   the mean gap, and whose mean gap falls in a known frequency band.

All thresholds come from :class:`DetectionSettings`.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable
from datetime import date, timedelta
from decimal import Decimal

from statement_importer.models import (
    ACTIVE,
    ANNUALLY,
    BIWEEKLY,
    INCOME,
    MONTHLY,
    POSSIBLY_CANCELLED,
    QUARTERLY,
    WEEKLY,
    DetectionSettings,
    RecurringPattern,
    Transaction,
)

logger = logging.getLogger(__name__)

# (frequency, shortest mean gap, longest mean gap) in days, inclusive.
FREQUENCY_BANDS = (
    (WEEKLY, 5, 9),
    (BIWEEKLY, 11, 17),
    (MONTHLY, 25, 35),
    (QUARTERLY, 82, 98),
    (ANNUALLY, 340, 390),
)

MONTHLY_MULTIPLIERS = {
    WEEKLY: Decimal(52) / Decimal(12),
    BIWEEKLY: Decimal(26) / Decimal(12),
    MONTHLY: Decimal(1),
    QUARTERLY: Decimal(1) / Decimal(3),
    ANNUALLY: Decimal(1) / Decimal(12),
}

_CENTS = Decimal("0.01")
_LONG_NUMBER = re.compile(r"\b\d{4,}\b")
_CORPORATE_SUFFIX = re.compile(r"\s+(inc|llc|corp|ltd|co|com)\.?\s*$", re.IGNORECASE)
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_merchant(raw: str | None) -> str:
    """Grouping key for a merchant string.

    Lowercases, drops asterisks, turns periods and commas into spaces,
    removes runs of four or more digits and a trailing corporate suffix
    (inc, llc, corp, ltd, co, com), strips remaining punctuation and
    collapses whitespace.

    Example: ``"NETFLIX.COM"`` and ``"Netflix.com Inc."`` both become
    ``"netflix"``.
    """
    if not raw:
        return ""
    normalized = raw.lower().replace("*", "")
    normalized = re.sub(r"[.,]", " ", normalized)
    normalized = _LONG_NUMBER.sub("", normalized)
    normalized = _CORPORATE_SUFFIX.sub("", normalized)
    normalized = _NON_ALNUM.sub("", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def classify_frequency(mean_gap: float) -> str | None:
    """Frequency whose band contains *mean_gap* (days), or ``None``."""
    for frequency, low, high in FREQUENCY_BANDS:
        if low <= mean_gap <= high:
            return frequency
    return None


def normalize_to_monthly(amount: Decimal, frequency: str) -> Decimal:
    """Monthly equivalent of a recurring *amount* paid at *frequency*."""
    return amount * MONTHLY_MULTIPLIERS[frequency]


def detect_recurring_patterns(
    transactions: Iterable[Transaction],
    settings: DetectionSettings | None = None,
    today: date | None = None,
) -> list[RecurringPattern]:
    """Find recurring patterns in a transaction history.

    Pure function: nothing is read or written outside the arguments.

    Args:
        transactions: The user's transactions, in any order.
        settings: Detection thresholds. Defaults to ``DetectionSettings()``.
        today: Reference date for the ACTIVE / POSSIBLY_CANCELLED status.
            Defaults to today.

    Returns:
        One pattern per qualifying (merchant, amount cluster), grouped by
        merchant in order of first appearance.
    """
    settings = settings or DetectionSettings()
    today = today or date.today()

    groups: dict[str, list[Transaction]] = {}
    for txn in sorted(transactions, key=lambda t: t.date):
        merchant = normalize_merchant(txn.merchant or txn.description or "unknown")
        if merchant:
            groups.setdefault(merchant, []).append(txn)

    patterns: list[RecurringPattern] = []
    for merchant, merchant_txns in groups.items():
        if len(merchant_txns) < settings.min_occurrences:
            continue
        if _is_habitual(merchant_txns, settings):
            logger.debug("Skipping habitual merchant %r (%d transactions)", merchant, len(merchant_txns))
            continue

        for cluster in _group_by_amount(merchant_txns, settings.amount_tolerance):
            if len(cluster) < settings.min_occurrences:
                continue
            pattern = _build_pattern(merchant, cluster, settings, today)
            if pattern is not None:
                patterns.append(pattern)

    logger.info("Detected %d recurring pattern(s) across %d merchant(s)", len(patterns), len(groups))
    return patterns


class RecurringMembership:
    """Answers "which recurring pattern is this transaction part of?".

    The transaction-id to pattern map is built from the store on first use
    and lives as long as this object. Create one per request or command so
    that every lookup in it sees the same snapshot.
    """

    def __init__(self, store, user_id: str) -> None:
        self.store = store
        self.user_id = user_id
        self._by_transaction: dict[str, RecurringPattern] | None = None

    def pattern_for(self, transaction_id: str) -> RecurringPattern | None:
        if self._by_transaction is None:
            self._by_transaction = {}
            for pattern in self.store.list_recurring(self.user_id):
                for txn_id in pattern.transaction_ids:
                    self._by_transaction.setdefault(txn_id, pattern)
        return self._by_transaction.get(transaction_id)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _build_pattern(
    merchant: str,
    cluster: list[Transaction],
    settings: DetectionSettings,
    today: date,
) -> RecurringPattern | None:
    intervals = _calculate_intervals(cluster)
    if not intervals:
        return None

    mean_gap = sum(intervals) / len(intervals)
    if any(abs(gap - mean_gap) / mean_gap > settings.interval_tolerance for gap in intervals):
        return None

    frequency = classify_frequency(mean_gap)
    if frequency is None:
        return None

    first, last = cluster[0], cluster[-1]
    average = (sum((t.amount for t in cluster), Decimal("0")) / len(cluster)).quantize(_CENTS)
    status = POSSIBLY_CANCELLED if (today - last.date).days > 2 * mean_gap else ACTIVE

    return RecurringPattern(
        merchant_name=merchant,
        frequency=frequency,
        average_amount=average,
        last_amount=last.amount,
        first_date=first.date,
        last_date=last.date,
        next_expected_date=last.date + timedelta(days=round(mean_gap)),
        transaction_ids=[t.id for t in cluster],
        category=last.category,
        status=status,
        description=_generate_description(merchant, frequency, average, last.type),
        type=last.type,
    )


def _is_habitual(transactions: list[Transaction], settings: DetectionSettings) -> bool:
    """High-frequency, high-variance spending at one merchant."""
    if len(transactions) < settings.habitual_min_count:
        return False

    dates = [t.date for t in transactions]
    day_span = (max(dates) - min(dates)).days
    if day_span == 0:
        return False

    per_month = len(transactions) / day_span * 30
    if per_month <= settings.habitual_monthly_rate:
        return False

    amounts = [float(t.amount) for t in transactions]
    mean = sum(amounts) / len(amounts)
    variance = sum((a - mean) ** 2 for a in amounts) / len(amounts)
    return math.sqrt(variance) / mean > settings.habitual_amount_cv


def _group_by_amount(transactions: list[Transaction], tolerance: float) -> list[list[Transaction]]:
    """Single-pass clustering of amounts sorted ascending.

    Each amount joins the current cluster when it is within *tolerance*
    (relative) of the cluster's running mean, otherwise it starts a new
    cluster. Clusters are returned in date order.
    """
    if not transactions:
        return []

    limit = Decimal(str(tolerance))
    ordered = sorted(transactions, key=lambda t: t.amount)
    clusters: list[list[Transaction]] = []
    current = [ordered[0]]
    mean = ordered[0].amount

    for txn in ordered[1:]:
        if abs(txn.amount - mean) / mean <= limit:
            current.append(txn)
            mean = sum((t.amount for t in current), Decimal("0")) / len(current)
        else:
            clusters.append(current)
            current = [txn]
            mean = txn.amount
    clusters.append(current)

    return [sorted(cluster, key=lambda t: t.date) for cluster in clusters]


def _calculate_intervals(transactions: list[Transaction]) -> list[int]:
    """Positive day gaps between consecutive transactions."""
    gaps = ((b.date - a.date).days for a, b in zip(transactions, transactions[1:]))
    return [gap for gap in gaps if gap > 0]


def _generate_description(merchant: str, frequency: str, amount: Decimal, txn_type: str) -> str:
    display = " ".join(word[:1].upper() + word[1:] for word in merchant.split(" "))
    label = frequency.capitalize()
    if txn_type == INCOME:
        return f"{label} income from {display} (~${amount:.2f})"
    return f"{label} payment to {display} (~${amount:.2f})"
