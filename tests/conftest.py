"""Shared pytest fixtures for statement importer tests.

Provides reusable fixtures for:
- store: An in-memory SQLiteStore.
- cache: A FileCache rooted in a temporary directory.
- tmp_project_dir: A temporary project with default config files.
- Sample statement bytes (CSV and OFX) and transaction builders.
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from statement_importer.cache import FileCache
from statement_importer.config import initialize
from statement_importer.models import (
    EXPENSE,
    Account,
    Transaction,
    generate_transaction_id,
)
from statement_importer.store import SQLiteStore

# ---------------------------------------------------------------------------
# Sample statements
# ---------------------------------------------------------------------------

NETFLIX_CSV = (
    "Date,Description,Amount\n"
    "01/15/2024,NETFLIX.COM,-15.99\n"
    "02/15/2024,NETFLIX.COM,-15.99\n"
    "03/15/2024,NETFLIX.COM,-15.99\n"
    "03/20/2024,PAYROLL ACME CORP,2500.00\n"
)

SGML_OFX = """OFXHEADER:100
DATA:OFXSGML
VERSION:102
ENCODING:USASCII
CHARSET:1252

<OFX>
<SIGNONMSGSRSV1>
<SONRS>
<STATUS>
<CODE>0
<SEVERITY>INFO
</STATUS>
<DTSERVER>20240301120000
<LANGUAGE>ENG
<FI>
<ORG>Chase
<FID>10898
</FI>
</SONRS>
</SIGNONMSGSRSV1>
<BANKMSGSRSV1>
<STMTTRNRS>
<TRNUID>1
<STMTRS>
<CURDEF>USD
<BANKACCTFROM>
<BANKID>021000021
<ACCTID>000123456789
<ACCTTYPE>CHECKING
</BANKACCTFROM>
<BANKTRANLIST>
<DTSTART>20240201
<DTEND>20240229
<STMTTRN>
<TRNTYPE>DEBIT
<DTPOSTED>20240205120000[-5:EST]
<TRNAMT>-42.17
<FITID>FIT001
<NAME>WHOLEFDS MKT 10234
<MEMO>Groceries run
</STMTTRN>
<STMTTRN>
<TRNTYPE>CREDIT
<DTPOSTED>20240215
<TRNAMT>1500.00
<FITID>FIT002
<NAME>ACME PAYROLL
</STMTTRN>
<STMTTRN>
<TRNTYPE>CHECK
<DTPOSTED>20240220
<TRNAMT>-300.00
<FITID>FIT003
<CHECKNUM>1042
<MEMO>Rent check
</STMTTRN>
</BANKTRANLIST>
</STMTRS>
</STMTTRNRS>
</BANKMSGSRSV1>
</OFX>
"""

XML_CREDIT_OFX = """<?xml version="1.0" encoding="UTF-8"?>
<?OFX OFXHEADER="200" VERSION="220" SECURITY="NONE"?>
<OFX>
  <SIGNONMSGSRSV1>
    <SONRS>
      <FI><ORG>Capital One</ORG><FID>1001</FID></FI>
    </SONRS>
  </SIGNONMSGSRSV1>
  <CREDITCARDMSGSRSV1>
    <CCSTMTTRNRS>
      <CCSTMTRS>
        <CCACCTFROM><ACCTID>4111111111119876</ACCTID></CCACCTFROM>
        <BANKTRANLIST>
          <STMTTRN>
            <TRNTYPE>DEBIT</TRNTYPE>
            <DTPOSTED>20240310</DTPOSTED>
            <TRNAMT>-9.99</TRNAMT>
            <FITID>CC-1</FITID>
            <NAME>SPOTIFY USA</NAME>
          </STMTTRN>
          <STMTTRN>
            <TRNTYPE>CREDIT</TRNTYPE>
            <DTPOSTED>20240312</DTPOSTED>
            <TRNAMT>0.00</TRNAMT>
            <FITID>CC-2</FITID>
            <NAME>ZERO ADJUSTMENT</NAME>
          </STMTTRN>
        </BANKTRANLIST>
      </CCSTMTRS>
    </CCSTMTTRNRS>
  </CREDITCARDMSGSRSV1>
</OFX>
"""


@pytest.fixture
def netflix_csv() -> bytes:
    """Three monthly Netflix charges and one payroll deposit."""
    return NETFLIX_CSV.encode("utf-8")


@pytest.fixture
def sgml_ofx() -> bytes:
    """An OFX 1.x checking statement with three transactions."""
    return SGML_OFX.encode("ascii")


@pytest.fixture
def xml_credit_ofx() -> bytes:
    """An OFX 2.x credit card statement with one non-zero transaction."""
    return XML_CREDIT_OFX.encode("utf-8")


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    """Throwaway in-memory store."""
    with SQLiteStore(":memory:") as s:
        yield s


@pytest.fixture
def cache(tmp_path: Path) -> FileCache:
    return FileCache(tmp_path / "cache")


@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """A project directory created by ``initialize``."""
    project = tmp_path / "project"
    initialize(project)
    return project


@pytest.fixture
def checking_account(store) -> Account:
    account = Account(
        id="acct-chk",
        user_id="u1",
        name="Chase Checking",
        type="CHECKING",
        institution="Chase",
        mask="6789",
        balance=Decimal("1000.00"),
    )
    store.create_account(account)
    return account


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_transaction(
    txn_date: date,
    amount: str | Decimal,
    description: str = "NETFLIX.COM",
    *,
    txn_type: str = EXPENSE,
    merchant: str | None = None,
    category: str = "Entertainment",
    user_id: str = "u1",
    account_id: str = "acct-chk",
    external_id: str | None = None,
    ordinal: int = 0,
) -> Transaction:
    """Build a persisted-style Transaction with a deterministic id."""
    amount = Decimal(str(amount))
    return Transaction(
        id=generate_transaction_id("test", txn_date, description, amount, ordinal),
        user_id=user_id,
        account_id=account_id,
        date=txn_date,
        amount=amount,
        type=txn_type,
        description=description,
        merchant=merchant,
        category=category,
        external_id=external_id,
    )


def monthly_series(
    start: date,
    count: int,
    amount: str,
    description: str,
    *,
    gap_days: int = 30,
    txn_type: str = EXPENSE,
    category: str = "Entertainment",
) -> list[Transaction]:
    """*count* transactions *gap_days* apart starting at *start*."""
    return [
        make_transaction(
            start + timedelta(days=gap_days * i),
            amount,
            description,
            txn_type=txn_type,
            category=category,
            ordinal=i,
        )
        for i in range(count)
    ]
