"""Parser registry for statement file formats.

Each parser is a module exposing a ``parse(data, file_name)`` function that
returns a :class:`~statement_importer.models.ParsedStatement`. The
``PARSERS`` dict maps format tags (as declared at upload time) to parse
functions, and ``get_parser()`` provides a convenient lookup with a clear
error on unknown tags.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import PurePath

from statement_importer.models import ParsedStatement
from statement_importer.parsers import delimited, document, ofx

PARSERS: dict[str, Callable[[bytes, str], ParsedStatement]] = {
    "CSV": delimited.parse,
    "OFX": ofx.parse,
    "QFX": ofx.parse,
    "PDF": document.parse,
}


def get_parser(file_format: str) -> Callable[[bytes, str], ParsedStatement]:
    """Look up a parser by format tag.

    Args:
        file_format: Format tag, e.g. ``"CSV"`` (case-insensitive).

    Returns:
        The parse function for the format.

    Raises:
        KeyError: If no parser is registered for the tag.
    """
    return PARSERS[file_format.upper()]


def format_from_file_name(file_name: str) -> str | None:
    """Infer the format tag from a file extension, or ``None`` if unknown."""
    tag = PurePath(file_name).suffix.lstrip(".").upper()
    return tag if tag in PARSERS else None
