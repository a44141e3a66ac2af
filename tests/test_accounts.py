"""Tests for statement_importer.accounts -- matching detected metadata to accounts."""

from __future__ import annotations

from decimal import Decimal

from statement_importer.accounts import match_account
from statement_importer.models import CHECKING, CREDIT, SAVINGS, Account, DetectedAccount


def _account(id, institution, type=CHECKING, mask=None):
    return Account(id=id, user_id="u1", name=id, type=type, institution=institution, mask=mask, balance=Decimal("0"))


ACCOUNTS = [
    _account("chase-chk", "Chase", CHECKING, "1234"),
    _account("chase-sav", "Chase", SAVINGS, "5678"),
    _account("amex", "American Express", CREDIT, "9999"),
]


class TestMatchAccount:
    def test_mask_wins(self):
        detected = DetectedAccount(institution="Chase", account_type=CHECKING, account_mask="5678")
        assert match_account(ACCOUNTS, detected).id == "chase-sav"

    def test_institution_and_type(self):
        detected = DetectedAccount(institution="Chase", account_type=SAVINGS)
        assert match_account(ACCOUNTS, detected).id == "chase-sav"

    def test_institution_substring_either_way(self):
        detected = DetectedAccount(institution="JPMorgan Chase Bank")
        assert match_account(ACCOUNTS, detected).id == "chase-chk"

    def test_tie_keeps_first(self):
        detected = DetectedAccount(institution="chase")
        assert match_account(ACCOUNTS, detected).id == "chase-chk"

    def test_type_alone_is_not_enough(self):
        detected = DetectedAccount(institution="Ally", account_type=CREDIT)
        assert match_account(ACCOUNTS, detected) is None

    def test_no_mask_no_institution(self):
        detected = DetectedAccount(account_type=CHECKING)
        assert match_account(ACCOUNTS, detected) is None

    def test_no_accounts(self):
        assert match_account([], DetectedAccount(institution="Chase")) is None
