"""Tests for statement_importer.pipeline -- upload, preview, confirm, cancel, delete, detection.

Runs the real parsers, categorizer and SQLite store; only the LLM is absent.
"""

from __future__ import annotations

import sqlite3
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from conftest import monthly_series

from statement_importer.models import (
    CANCELLED,
    CHECKING,
    COMPLETED,
    ERROR,
    PREVIEW,
    AppConfig,
)
from statement_importer.pipeline import (
    PREVIEW_KEY,
    ConfirmRequest,
    StatementImportError,
    cancel_import,
    confirm_import,
    delete_import,
    load_preview,
    process_upload,
    run_detection,
    start_import,
)
from statement_importer.store import SQLiteStore

FILE_NAME = "chase_checking_6789.csv"
TODAY = date(2024, 4, 1)


def _upload(store, cache, data, file_name=FILE_NAME, file_format="CSV", **kwargs):
    record = start_import(store, "u1", file_name, file_format)
    preview = process_upload(store, cache, "u1", record.id, data, file_name, file_format, **kwargs)
    return record.id, preview


class FlakyStore(SQLiteStore):
    """A store whose duplicate lookup fails."""

    def find_transactions(self, user_id, start, end, account_id=None):
        raise sqlite3.OperationalError("database is locked")


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


class TestProcessUpload:
    def test_preview_cached_and_record_updated(self, store, cache, checking_account, netflix_csv):
        import_id, preview = _upload(store, cache, netflix_csv)

        assert preview.total_transactions == 4
        assert preview.duplicate_count == 0
        assert preview.matched_account_id == "acct-chk"
        assert preview.file_format == "CSV"
        assert preview.transactions[0].suggested_category == "Entertainment"
        assert preview.transactions[0].cleaned_merchant == "Netflix"
        assert load_preview(cache, import_id) == preview

        record = store.get_import("u1", import_id)
        assert record.status == PREVIEW
        assert record.account_id == "acct-chk"
        assert record.transactions_found == 4
        assert record.detected_institution == "Chase"
        assert record.detected_account_type == CHECKING
        assert record.detected_account_mask == "6789"

    def test_no_account_match(self, store, cache, netflix_csv):
        _, preview = _upload(store, cache, netflix_csv, file_name="export.csv")
        assert preview.matched_account_id is None

    def test_empty_file_sets_error(self, store, cache):
        import_id, preview = _upload(store, cache, b"Date,Description,Amount\n")

        assert preview is None
        record = store.get_import("u1", import_id)
        assert record.status == ERROR
        assert record.error_message == "File contains no data rows"

    def test_unsupported_format(self, store, cache, netflix_csv):
        record = start_import(store, "u1", "a.xlsx", "XLSX")
        with pytest.raises(StatementImportError, match="Unsupported format: XLSX"):
            process_upload(store, cache, "u1", record.id, netflix_csv, "a.xlsx", "XLSX")
        assert store.get_import("u1", record.id).status == ERROR

    def test_failing_categorizer_falls_back_to_keywords(self, store, cache, netflix_csv):
        categorizer = MagicMock()
        categorizer.categorize.side_effect = RuntimeError("boom")
        _, preview = _upload(store, cache, netflix_csv, categorizer=categorizer)

        assert {t.category_source for t in preview.transactions} == {"keyword"}

    def test_duplicate_lookup_failure_is_a_warning(self, tmp_path, cache, netflix_csv):
        with FlakyStore(tmp_path / "flaky.db") as store:
            _, preview = _upload(store, cache, netflix_csv)

        assert preview.total_transactions == 4
        assert "Could not check for duplicates: database is locked" in preview.warnings

    def test_preview_ttl_from_config(self, store, netflix_csv):
        cache = MagicMock()
        _upload(store, cache, netflix_csv, config=AppConfig(preview_ttl_seconds=120))

        key, _, ttl = cache.set.call_args.args
        assert key.startswith("import-preview:")
        assert ttl == 120


# ---------------------------------------------------------------------------
# Confirm
# ---------------------------------------------------------------------------


class TestConfirmImport:
    def test_transactions_stored_and_balance_adjusted(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        result = confirm_import(store, cache, "u1", import_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)

        assert result.account_id == "acct-chk"
        assert result.transactions_imported == 4
        assert result.duplicates_skipped == 0

        stored = store.transaction_history("u1")
        assert len(stored) == 4
        assert {t.import_id for t in stored} == {import_id}
        assert stored[0].merchant == "Netflix"
        assert store.get_account("u1", "acct-chk").balance == Decimal("3452.03")

        record = store.get_import("u1", import_id)
        assert record.status == COMPLETED
        assert record.transactions_imported == 4
        assert record.completed_at is not None
        assert load_preview(cache, import_id) is None

    def test_recurring_detection_runs_after_import(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        result = confirm_import(store, cache, "u1", import_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)

        assert [p.merchant_name for p in result.detection.patterns] == ["netflix"]
        assert result.detection.upserted == 1
        assert [p.description for p in store.list_recurring("u1")] == ["Monthly payment to Netflix (~$15.99)"]

    def test_reupload_is_flagged_and_skipped(self, store, cache, checking_account, netflix_csv):
        first_id, _ = _upload(store, cache, netflix_csv)
        confirm_import(store, cache, "u1", first_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)

        second_id, preview = _upload(store, cache, netflix_csv)
        assert preview.duplicate_count == 4
        assert all(t.duplicate_of for t in preview.transactions)

        result = confirm_import(store, cache, "u1", second_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)
        assert result.transactions_imported == 0
        assert result.duplicates_skipped == 4
        assert len(store.transaction_history("u1")) == 4

    def test_forced_reimport_does_not_move_balance_twice(self, store, cache, checking_account, sgml_ofx):
        first_id, _ = _upload(store, cache, sgml_ofx, file_name="chase_checking_6789.ofx", file_format="OFX")
        confirm_import(store, cache, "u1", first_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)
        assert store.get_account("u1", "acct-chk").balance == Decimal("2157.83")

        second_id, preview = _upload(store, cache, sgml_ofx, file_name="chase_checking_6789.ofx", file_format="OFX")
        assert preview.duplicate_count == 3
        request = ConfirmRequest(account_id="acct-chk", skip_duplicates=False)
        result = confirm_import(store, cache, "u1", second_id, request, today=TODAY)

        assert result.transactions_imported == 0
        assert result.duplicates_skipped == 0
        assert store.get_account("u1", "acct-chk").balance == Decimal("2157.83")
        assert len(store.transaction_history("u1")) == 3

    def test_matched_account_used_by_default(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        result = confirm_import(store, cache, "u1", import_id, ConfirmRequest(), today=TODAY)
        assert result.account_id == "acct-chk"

    def test_create_new_account(self, store, cache, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        result = confirm_import(
            store, cache, "u1", import_id, ConfirmRequest(create_new_account=True), today=TODAY
        )

        account = store.get_account("u1", result.account_id)
        assert account.name == "Chase Account"
        assert account.institution == "Chase"
        assert account.type == CHECKING
        assert account.mask == "6789"

    def test_no_account_specified(self, store, cache, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        with pytest.raises(StatementImportError, match="No account specified"):
            confirm_import(store, cache, "u1", import_id, ConfirmRequest(), today=TODAY)
        assert store.get_import("u1", import_id).status == ERROR

    def test_unknown_account(self, store, cache, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        with pytest.raises(StatementImportError, match="Account not found"):
            confirm_import(store, cache, "u1", import_id, ConfirmRequest(account_id="nope"), today=TODAY)

    def test_category_override_learns_rule(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        request = ConfirmRequest(account_id="acct-chk", category_overrides={0: "Bills & Utilities", 99: "Other"})
        result = confirm_import(store, cache, "u1", import_id, request, today=TODAY)

        assert [(r.pattern, r.category, r.source) for r in result.learned_rules] == [
            ("netflix", "Bills & Utilities", "learned")
        ]
        first = store.transaction_history("u1")[0]
        assert (first.category, first.category_confidence, first.category_source) == (
            "Bills & Utilities",
            100,
            "manual",
        )

    def test_confirm_twice_rejected(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        confirm_import(store, cache, "u1", import_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)
        with pytest.raises(StatementImportError, match="not in preview state"):
            confirm_import(store, cache, "u1", import_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)

    def test_expired_preview(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        cache.delete(PREVIEW_KEY.format(import_id=import_id))
        with pytest.raises(StatementImportError, match="Preview data expired"):
            confirm_import(store, cache, "u1", import_id, ConfirmRequest(account_id="acct-chk"))

    def test_other_user_cannot_confirm(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        with pytest.raises(StatementImportError):
            confirm_import(store, cache, "u2", import_id, ConfirmRequest(account_id="acct-chk"))


# ---------------------------------------------------------------------------
# Cancel
# ---------------------------------------------------------------------------


class TestCancelImport:
    def test_cancel_preview(self, store, cache, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        cancel_import(store, cache, "u1", import_id)

        assert store.get_import("u1", import_id).status == CANCELLED
        assert load_preview(cache, import_id) is None

    def test_cancel_completed_rejected(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        confirm_import(store, cache, "u1", import_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)
        with pytest.raises(StatementImportError, match="cannot be cancelled"):
            cancel_import(store, cache, "u1", import_id)

    def test_cancel_unknown(self, store, cache):
        with pytest.raises(StatementImportError):
            cancel_import(store, cache, "u1", "missing")



# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDeleteImport:
    def test_delete_completed_restores_balance(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        confirm_import(store, cache, "u1", import_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)

        assert delete_import(store, cache, "u1", import_id) == 4
        assert store.get_account("u1", "acct-chk").balance == Decimal("1000.00")
        assert store.transaction_history("u1") == []
        assert store.get_import("u1", import_id) is None

    def test_delete_preview_clears_cache(self, store, cache, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)

        assert delete_import(store, cache, "u1", import_id) == 0
        assert load_preview(cache, import_id) is None
        assert store.get_import("u1", import_id) is None

    def test_delete_unknown(self, store, cache):
        with pytest.raises(StatementImportError, match="Import not found"):
            delete_import(store, cache, "u1", "missing")

    def test_other_user_cannot_delete(self, store, cache, checking_account, netflix_csv):
        import_id, _ = _upload(store, cache, netflix_csv)
        confirm_import(store, cache, "u1", import_id, ConfirmRequest(account_id="acct-chk"), today=TODAY)
        with pytest.raises(StatementImportError):
            delete_import(store, cache, "u2", import_id)
        assert len(store.transaction_history("u1")) == 4


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class TestRunDetection:
    def test_patterns_saved(self, store):
        store.insert_transactions(monthly_series(date(2024, 1, 1), 3, "15.99", "NETFLIX.COM"))
        result = run_detection(store, "u1", today=TODAY)

        assert result.upserted == 1
        assert result.warnings == []
        assert len(store.list_recurring("u1")) == 1

    def test_save_failure_reported(self):
        store = MagicMock()
        store.transaction_history.return_value = monthly_series(date(2024, 1, 1), 3, "15.99", "NETFLIX.COM")
        store.upsert_recurring.side_effect = RuntimeError("locked")

        result = run_detection(store, "u1", today=TODAY)
        assert result.upserted == 0
        assert result.warnings == ["Could not save pattern netflix (MONTHLY): locked"]
