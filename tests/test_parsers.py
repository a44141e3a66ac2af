"""Tests for the parser registry and the CSV and OFX/QFX parsers."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from statement_importer.models import CHECKING, CREDIT, EXPENSE, INCOME, SAVINGS
from statement_importer.parsers import PARSERS, format_from_file_name, get_parser
from statement_importer.parsers import delimited, ofx
from statement_importer.parsers.delimited import (
    detect_account_from_file_name,
    detect_columns,
    parse_amount,
    parse_date,
)

# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_all_formats_registered(self):
        assert set(PARSERS) == {"CSV", "OFX", "QFX", "PDF"}

    def test_get_parser_case_insensitive(self):
        assert get_parser("csv") is delimited.parse
        assert get_parser("qfx") is ofx.parse

    def test_get_parser_unknown(self):
        with pytest.raises(KeyError):
            get_parser("XLSX")

    @pytest.mark.parametrize(
        "name, expected",
        [("march.csv", "CSV"), ("export.QFX", "QFX"), ("stmt.pdf", "PDF"), ("notes.txt", None)],
    )
    def test_format_from_file_name(self, name, expected):
        assert format_from_file_name(name) == expected


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------


class TestCsvParse:
    def test_signed_amount_column(self, netflix_csv):
        result = delimited.parse(netflix_csv, "chase_checking_1234.csv")

        assert len(result.transactions) == 4
        first = result.transactions[0]
        assert first.date == date(2024, 1, 15)
        assert first.amount == Decimal("15.99")
        assert first.type == EXPENSE
        assert first.description == "NETFLIX.COM"
        payroll = result.transactions[3]
        assert payroll.type == INCOME
        assert payroll.amount == Decimal("2500.00")
        assert result.warnings == ()

    def test_account_from_file_name(self, netflix_csv):
        result = delimited.parse(netflix_csv, "chase_checking_1234.csv")
        assert result.account.institution == "Chase"
        assert result.account.account_type == CHECKING
        assert result.account.account_mask == "1234"

    def test_debit_credit_columns(self):
        data = (
            "Transaction Date,Description,Debit,Credit\n"
            "2024-03-01,GROCERY OUTLET,54.20,\n"
            "2024-03-02,INTEREST PAYMENT,,1.05\n"
        ).encode()
        result = delimited.parse(data, "export.csv")

        assert [t.type for t in result.transactions] == [EXPENSE, INCOME]
        assert [t.amount for t in result.transactions] == [Decimal("54.20"), Decimal("1.05")]

    def test_preamble_rows_before_header(self):
        data = (
            "Account Activity Export\n"
            "Generated 2024-04-01\n"
            "Posted Date,Payee,Amount,Category\n"
            "04/01/2024,SHELL OIL 5744,-40.00,Gas\n"
        ).encode()
        result = delimited.parse(data, "export.csv")

        assert len(result.transactions) == 1
        assert result.transactions[0].category == "Gas"
        assert result.transactions[0].description == "SHELL OIL 5744"

    def test_bad_rows_are_counted(self):
        data = (
            "Date,Description,Amount\n"
            "not a date,FOO,-1.00\n"
            "01/02/2024,ZERO,0.00\n"
            "01/03/2024,KEEP,-3.00\n"
        ).encode()
        result = delimited.parse(data, "export.csv")

        assert len(result.transactions) == 1
        assert result.warnings == ("Skipped 2 rows with missing or invalid data",)

    def test_blank_description_becomes_unknown(self):
        data = b"Date,Description,Amount\n01/03/2024,,-3.00\n"
        result = delimited.parse(data, "export.csv")
        assert result.transactions[0].description == "Unknown"

    def test_utf8_bom(self):
        data = "\ufeffDate,Description,Amount\n01/03/2024,CAFE,-3.50\n".encode("utf-8")
        result = delimited.parse(data, "export.csv")
        assert len(result.transactions) == 1

    def test_header_only(self):
        result = delimited.parse(b"Date,Description,Amount\n", "export.csv")
        assert result.transactions == ()
        assert result.warnings == ("File contains no data rows",)

    def test_no_recognizable_columns(self):
        result = delimited.parse(b"foo,bar\n1,2\n", "export.csv")
        assert result.transactions == ()
        assert result.warnings[0].startswith("Could not detect column mapping")


class TestDetectColumns:
    def test_amount_layout(self):
        mapping = detect_columns(["Date", "Description", "Amount"])
        assert (mapping.date, mapping.description, mapping.amount) == (0, 1, 2)

    def test_debit_credit_layout(self):
        mapping = detect_columns(["Posting Date", "Details", "Withdrawal", "Deposit", "Check No"])
        assert mapping.amount is None
        assert (mapping.debit, mapping.credit) == (2, 3)
        assert mapping.check_number == 4

    def test_incomplete_pair_rejected(self):
        assert detect_columns(["Date", "Description", "Debit"]) is None

    def test_missing_description_rejected(self):
        assert detect_columns(["Date", "Amount"]) is None


class TestParseDate:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("01/15/2024", date(2024, 1, 15)),
            ("1/5/24", date(2024, 1, 5)),
            ("2024-01-15", date(2024, 1, 15)),
            ("2024-01-15T10:30:00", date(2024, 1, 15)),
            ("25/01/2024", date(2024, 1, 25)),
            ("Jan 15, 2024", date(2024, 1, 15)),
            ("15.01.2024", date(2024, 1, 15)),
        ],
    )
    def test_formats(self, value, expected):
        assert parse_date(value) == expected

    def test_ambiguous_day_month_reads_us(self):
        assert parse_date("03/04/2024") == date(2024, 3, 4)

    @pytest.mark.parametrize("value", ["", "yesterday", "2024-13-45"])
    def test_invalid(self, value):
        assert parse_date(value) is None


class TestParseAmount:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("$1,234.56", Decimal("1234.56")),
            ("-15.99", Decimal("-15.99")),
            ("(42.00)", Decimal("-42.00")),
            (" 7 ", Decimal("7")),
            ("", Decimal("0")),
            ("n/a", Decimal("0")),
            ("NaN", Decimal("0")),
        ],
    )
    def test_values(self, value, expected):
        assert parse_amount(value) == expected


class TestDetectAccountFromFileName:
    def test_credit_card(self):
        account = detect_account_from_file_name("Amex_Card_Statement_9876.csv")
        assert account.account_type == CREDIT
        assert account.institution == "American Express"
        assert account.account_mask == "9876"

    def test_savings(self):
        account = detect_account_from_file_name("ally-savings.csv")
        assert account.account_type == SAVINGS
        assert account.institution == "Ally"
        assert account.account_mask is None

    def test_nothing_detected(self):
        account = detect_account_from_file_name("export.csv")
        assert account.institution is None
        assert account.account_type is None


# ---------------------------------------------------------------------------
# OFX / QFX
# ---------------------------------------------------------------------------


class TestOfxParse:
    def test_sgml_bank_statement(self, sgml_ofx):
        result = ofx.parse(sgml_ofx, "chase.ofx")

        assert result.warnings == ()
        assert len(result.transactions) == 3
        groceries, payroll, rent = result.transactions

        assert groceries.date == date(2024, 2, 5)
        assert groceries.amount == Decimal("42.17")
        assert groceries.type == EXPENSE
        assert groceries.merchant == "WHOLEFDS MKT 10234"
        assert groceries.memo == "Groceries run"
        assert groceries.external_id == "FIT001"

        assert payroll.type == INCOME
        assert payroll.amount == Decimal("1500.00")

        assert rent.description == "Rent check"
        assert rent.merchant is None
        assert rent.check_number == "1042"

    def test_sgml_account(self, sgml_ofx):
        account = ofx.parse(sgml_ofx, "chase.ofx").account
        assert account.institution == "Chase"
        assert account.account_type == CHECKING
        assert account.account_mask == "6789"
        assert account.account_name == "Chase Checking ···6789"

    def test_xml_credit_card_skips_zero_amounts(self, xml_credit_ofx):
        result = ofx.parse(xml_credit_ofx, "card.qfx")

        assert len(result.transactions) == 1
        txn = result.transactions[0]
        assert txn.description == "SPOTIFY USA"
        assert txn.external_id == "CC-1"
        assert result.account.account_type == CREDIT
        assert result.account.account_mask == "9876"
        assert result.account.account_name == "Capital One Credit Card ···9876"

    def test_text_in_place_of_blocks(self):
        data = (
            b"<OFX><SIGNONMSGSRSV1><SONRS><FI><ORG>Chase</ORG></FI></SONRS></SIGNONMSGSRSV1>"
            b"<BANKMSGSRSV1><STMTTRNRS><STMTRS>"
            b"<BANKACCTFROM>x</BANKACCTFROM>"
            b"<BANKTRANLIST>junk</BANKTRANLIST>"
            b"</STMTRS></STMTTRNRS></BANKMSGSRSV1></OFX>"
        )
        result = ofx.parse(data, "x.ofx")

        assert result.transactions == ()
        assert result.warnings == ("No transaction list found in statement",)
        assert result.account.institution == "Chase"
        assert result.account.account_mask is None

    def test_invalid_date_warns(self):
        data = (
            b"<OFX><BANKMSGSRSV1><STMTTRNRS><STMTRS><BANKTRANLIST>"
            b"<STMTTRN><DTPOSTED>garbage<TRNAMT>-1.00</STMTTRN>"
            b"<STMTTRN><DTPOSTED>20240102<TRNAMT>-2.00<NAME>KEEP</STMTTRN>"
            b"</BANKTRANLIST></STMTRS></STMTTRNRS></BANKMSGSRSV1></OFX>"
        )
        result = ofx.parse(data, "x.ofx")
        assert len(result.transactions) == 1
        assert result.warnings == ("Skipped transaction with invalid date: garbage",)

    def test_not_ofx(self):
        result = ofx.parse(b"Date,Description,Amount\n", "x.ofx")
        assert result.transactions == ()
        assert result.warnings == ("Failed to parse OFX file: no <OFX> root element found",)

    def test_no_statement(self):
        result = ofx.parse(b"<OFX><SIGNONMSGSRSV1><SONRS><FI><ORG>X</FI></SONRS></SIGNONMSGSRSV1></OFX>", "x.ofx")
        assert result.warnings == ("No statement data found in OFX file",)

    def test_no_transaction_list(self):
        data = b"<OFX><BANKMSGSRSV1><STMTTRNRS><STMTRS><CURDEF>USD</STMTRS></STMTTRNRS></BANKMSGSRSV1></OFX>"
        result = ofx.parse(data, "x.ofx")
        assert result.warnings == ("No transaction list found in statement",)


class TestOfxTree:
    def test_repeated_elements_become_lists(self):
        tree = ofx.build_tree("<A><B>1<B>2</A>")
        assert tree == {"A": {"B": ["1", "2"]}}

    def test_closing_tag_unwinds_unclosed_aggregates(self):
        tree = ofx.build_tree("<A><B><C>x</A><D>y")
        assert tree == {"A": {"B": {"C": "x"}}, "D": "y"}

    def test_decode_cp1252(self):
        data = b"OFXHEADER:100\nCHARSET:1252\n\n<OFX><NAME>CAF\xc9</OFX>"
        assert "CAFÉ" in ofx.decode(data)

    @pytest.mark.parametrize(
        "value, expected",
        [("20240131", date(2024, 1, 31)), ("20240131120000.000[-5:EST]", date(2024, 1, 31)), ("2024", None)],
    )
    def test_parse_ofx_date(self, value, expected):
        assert ofx.parse_ofx_date(value) == expected
