"""Preview and recurring-pattern reports.

- :func:`print_preview` prints an import preview for review before confirm.
- :func:`print_patterns` prints detected recurring patterns with their
  monthly cost.
- :func:`export_patterns` writes recurring patterns to a CSV file.
"""

from __future__ import annotations

import csv
from collections import Counter
from decimal import Decimal
from pathlib import Path

from statement_importer.models import (
    EXPENSE,
    INCOME,
    POSSIBLY_CANCELLED,
    TRANSFER,
    ImportPreview,
    RecurringPattern,
)
from statement_importer.recurring import normalize_to_monthly

PATTERN_COLUMNS = [
    "merchant_name",
    "frequency",
    "average_amount",
    "monthly_amount",
    "last_amount",
    "first_date",
    "last_date",
    "next_expected_date",
    "status",
    "type",
    "category",
    "occurrences",
    "description",
]


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------


def print_preview(preview: ImportPreview) -> None:
    """Print an import preview: account, per-row suggestions, duplicates, warnings."""
    account = preview.account
    print()
    print(f"== Import Preview: {preview.file_name} ({preview.file_format}) ==")
    print(f"Import:   {preview.import_id}")

    detected = account.account_name or " ".join(
        part for part in (account.institution, account.account_type, account.account_mask) if part
    )
    print(f"Account:  {detected or '(not detected)'}")
    if preview.matched_account_id:
        print(f"Matched:  {preview.matched_account_id}")

    print(f"Total:    {preview.total_transactions} transactions ({preview.duplicate_count} duplicates)")

    sources = Counter(t.category_source for t in preview.transactions)
    if sources:
        print("Sources:  " + ", ".join(f"{name} ({count})" for name, count in sorted(sources.items())))

    if preview.transactions:
        print()
        for idx, txn in enumerate(preview.transactions):
            sign = "+" if txn.type == INCOME else "-"
            marker = " [duplicate]" if txn.is_duplicate else ""
            print(
                f"  {idx:>3}. {txn.date.isoformat()}  {sign}${txn.amount:>10,.2f}  "
                f"{(txn.cleaned_merchant or txn.description)[:30]:<30}  "
                f"{txn.suggested_category} ({txn.category_confidence}%){marker}"
            )

    if preview.warnings:
        print()
        print(f"Warnings: {len(preview.warnings)}")
        for w in preview.warnings:
            print(f"  - {w}")

    print()


# ---------------------------------------------------------------------------
# Recurring patterns
# ---------------------------------------------------------------------------


def print_patterns(patterns: list[RecurringPattern]) -> None:
    """Print recurring patterns grouped by transaction type, with monthly totals."""
    print()
    print("== Recurring Transactions ==")
    if not patterns:
        print("No recurring patterns detected.")
        print()
        return

    for label, txn_type in (("Bills and subscriptions", EXPENSE), ("Income", INCOME), ("Transfers", TRANSFER)):
        group = [p for p in patterns if p.type == txn_type]
        if not group:
            continue
        group.sort(key=lambda p: -normalize_to_monthly(p.average_amount, p.frequency))
        total = sum((normalize_to_monthly(p.average_amount, p.frequency) for p in group), Decimal("0"))

        print()
        print(f"{label}: ~${total:,.2f}/month")
        for p in group:
            flag = "  (possibly cancelled)" if p.status == POSSIBLY_CANCELLED else ""
            print(
                f"  {p.description:<50} next {p.next_expected_date.isoformat()}"
                f"  [{p.category}]{flag}"
            )

    print()


def export_patterns(patterns: list[RecurringPattern], output_path: str | Path) -> Path:
    """Write recurring patterns to a CSV file, overwriting it.

    Returns:
        The path written.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=PATTERN_COLUMNS)
        writer.writeheader()
        for p in sorted(patterns, key=lambda p: (p.merchant_name, p.frequency)):
            monthly = normalize_to_monthly(p.average_amount, p.frequency).quantize(Decimal("0.01"))
            writer.writerow(
                {
                    "merchant_name": p.merchant_name,
                    "frequency": p.frequency,
                    "average_amount": str(p.average_amount),
                    "monthly_amount": str(monthly),
                    "last_amount": str(p.last_amount),
                    "first_date": p.first_date.isoformat(),
                    "last_date": p.last_date.isoformat(),
                    "next_expected_date": p.next_expected_date.isoformat(),
                    "status": p.status,
                    "type": p.type,
                    "category": p.category,
                    "occurrences": len(p.transaction_ids),
                    "description": p.description,
                }
            )

    return output_path
