"""OFX / QFX statement parser.

Handles both OFX 1.x (SGML, leaf elements without closing tags) and OFX 2.x
(XML). The body is tokenized into ``<TAG>text`` pieces and folded into a
tree of nested dicts; repeated elements become lists. Exactly one statement
branch is read, in this order: bank, credit card, investment.

Sign convention:
    ``TRNAMT`` is signed. Positive is INCOME, negative is EXPENSE, zero is
    skipped.
"""

from __future__ import annotations

import codecs
import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation

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

TYPE_LABELS = {
    CHECKING: "Checking",
    SAVINGS: "Savings",
    CREDIT: "Credit Card",
    INVESTMENT: "Investment",
}

_TOKEN = re.compile(r"<(/?)([A-Za-z0-9_.]+)>([^<]*)")
_OFX_ROOT = re.compile(rb"<OFX>", re.IGNORECASE)
_SGML_HEADER_FIELD = re.compile(r"^\s*(CHARSET|ENCODING)\s*:\s*(\S+)", re.IGNORECASE | re.MULTILINE)
_XML_ENCODING = re.compile(r"encoding\s*=\s*[\"']([A-Za-z0-9_.-]+)[\"']", re.IGNORECASE)
_OFX_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})")

# SGML CHARSET values are Windows code page numbers.
_CHARSETS = {
    "1252": "cp1252",
    "ISO-8859-1": "latin-1",
    "8859-1": "latin-1",
}


def parse(data: bytes, file_name: str) -> ParsedStatement:
    """Parse an OFX or QFX file.

    Args:
        data: Raw file bytes.
        file_name: Original file name (only used for logging).

    Returns:
        A ParsedStatement. Unreadable files produce a warning instead of
        an exception.
    """
    tree = build_tree(decode(data))
    ofx = tree.get("OFX")
    if not isinstance(ofx, dict):
        return ParsedStatement(warnings=("Failed to parse OFX file: no <OFX> root element found",))

    bank = _find(ofx, "BANKMSGSRSV1", "STMTTRNRS", "STMTRS")
    credit = _find(ofx, "CREDITCARDMSGSRSV1", "CCSTMTTRNRS", "CCSTMTRS")
    invest = _find(ofx, "INVSTMTMSGSRSV1", "INVSTMTTRNRS", "INVSTMTRS")
    statement = bank or credit or invest
    if not statement:
        return ParsedStatement(warnings=("No statement data found in OFX file",))

    account = DetectedAccount()
    org = _find(ofx, "SIGNONMSGSRSV1", "SONRS", "FI", "ORG")
    if isinstance(org, str):
        account.institution = org

    if bank:
        acct_from = _find(bank, "BANKACCTFROM")
        if not isinstance(acct_from, dict):
            acct_from = {}
        acct_type = str(acct_from.get("ACCTTYPE", "")).upper()
        if acct_type in (CHECKING, SAVINGS):
            account.account_type = acct_type
        account.account_mask = _mask(acct_from)
    elif credit:
        account.account_type = CREDIT
        account.account_mask = _mask(_find(credit, "CCACCTFROM") or {})
    else:
        account.account_type = INVESTMENT
        account.account_mask = _mask(_find(invest, "INVACCTFROM") or {})

    name_parts = []
    if account.institution:
        name_parts.append(account.institution)
    if account.account_type:
        name_parts.append(TYPE_LABELS[account.account_type])
    if account.account_mask:
        name_parts.append(f"···{account.account_mask}")
    if name_parts:
        account.account_name = " ".join(name_parts)

    tran_list = next(
        (
            node
            for node in (_find(statement, "BANKTRANLIST"), _find(statement, "INVTRANLIST"))
            if isinstance(node, dict)
        ),
        None,
    )
    if tran_list is None:
        return ParsedStatement(account=account, warnings=("No transaction list found in statement",))

    warnings: list[str] = []
    transactions: list[ParsedTransaction] = []

    for trn in _statement_transactions(tran_list):
        raw_date = str(trn.get("DTPOSTED", ""))
        txn_date = parse_ofx_date(raw_date)
        if txn_date is None:
            warnings.append(f"Skipped transaction with invalid date: {raw_date}")
            continue

        raw_amount = str(trn.get("TRNAMT", "")).replace(",", ".")
        try:
            amount = Decimal(raw_amount)
        except InvalidOperation:
            warnings.append(f"Skipped transaction with invalid amount: {raw_amount}")
            continue
        if not amount.is_finite() or amount == 0:
            continue

        name = _text(trn, "NAME")
        memo = _text(trn, "MEMO")
        transactions.append(
            ParsedTransaction(
                date=txn_date,
                amount=abs(amount),
                description=name or memo or "Unknown",
                type=INCOME if amount > 0 else EXPENSE,
                merchant=name,
                external_id=_text(trn, "FITID"),
                check_number=_text(trn, "CHECKNUM"),
                memo=memo,
            )
        )

    if not transactions:
        warnings.append("No transactions could be extracted from the statement")

    logger.debug("%s: parsed %d transaction(s)", file_name, len(transactions))
    return ParsedStatement(transactions=tuple(transactions), account=account, warnings=tuple(warnings))


def decode(data: bytes) -> str:
    """Decode OFX bytes with the codec named in the file header.

    OFX 1.x declares ``CHARSET:1252`` style fields before the body; OFX 2.x
    uses the XML declaration. Unknown or missing declarations fall back to
    UTF-8. Undecodable bytes are replaced rather than rejected.
    """
    root = _OFX_ROOT.search(data)
    header = data[: root.start()] if root else data[:512]
    header_text = header.decode("latin-1")

    codec = "utf-8"
    xml_encoding = _XML_ENCODING.search(header_text)
    if xml_encoding:
        codec = xml_encoding.group(1)
    else:
        fields = {name.upper(): value.upper() for name, value in _SGML_HEADER_FIELD.findall(header_text)}
        if fields.get("CHARSET") in _CHARSETS:
            codec = _CHARSETS[fields["CHARSET"]]
        elif fields.get("ENCODING") == "USASCII":
            codec = "ascii"

    try:
        codecs.lookup(codec)
    except LookupError:
        logger.warning("Unknown OFX encoding %r, decoding as UTF-8", codec)
        codec = "utf-8"
    return data.decode(codec, errors="replace")


def build_tree(text: str) -> dict:
    """Fold OFX markup into nested dicts.

    An element followed by text is a leaf. An element without text opens an
    aggregate that lasts until its closing tag. A closing tag unwinds the
    stack to the matching aggregate, which also closes any SGML leaves and
    unclosed aggregates in between. Closing tags with no open aggregate are
    ignored.
    """
    root: dict = {}
    stack: list[tuple[str, dict]] = [("", root)]

    for closing, raw_name, raw_text in _TOKEN.findall(text):
        name = raw_name.upper()
        if closing:
            for depth in range(len(stack) - 1, 0, -1):
                if stack[depth][0] == name:
                    del stack[depth:]
                    break
            continue

        parent = stack[-1][1]
        value = raw_text.strip()
        if value:
            _add_child(parent, name, value)
        else:
            node: dict = {}
            _add_child(parent, name, node)
            stack.append((name, node))

    return root


def parse_ofx_date(value: str) -> date | None:
    """Parse the ``YYYYMMDD`` prefix of an OFX datetime."""
    match = _OFX_DATE.match(value.strip())
    if not match:
        return None
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _add_child(parent: dict, name: str, value) -> None:
    if name not in parent:
        parent[name] = value
    elif isinstance(parent[name], list):
        parent[name].append(value)
    else:
        parent[name] = [parent[name], value]


def _find(node, *path: str):
    """Walk *path* from *node*; lists resolve to their first element."""
    current = node
    for key in path:
        if isinstance(current, list):
            current = current[0] if current else None
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    if isinstance(current, list):
        return current[0] if current else None
    return current


def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _statement_transactions(tran_list: dict) -> list[dict]:
    """``STMTTRN`` records of a bank/card list, plus investment cash lines."""
    records = _as_list(tran_list.get("STMTTRN"))
    for bank_tran in _as_list(tran_list.get("INVBANKTRAN")):
        if isinstance(bank_tran, dict):
            records.extend(_as_list(bank_tran.get("STMTTRN")))
    return [record for record in records if isinstance(record, dict)]


def _text(node: dict, key: str) -> str | None:
    value = node.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _mask(acct_from: dict) -> str | None:
    acct_id = _text(acct_from, "ACCTID") if isinstance(acct_from, dict) else None
    return acct_id[-4:] if acct_id else None
