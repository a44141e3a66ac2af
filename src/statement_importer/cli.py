"""Click CLI entry point for the statements command.

Handles argument parsing, config loading, and error display. All business
logic is delegated to ``pipeline``, ``categorizer``, ``config``, and
``export`` modules.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from statement_importer import __version__


def _configure_logging(verbose: bool, debug: bool) -> None:
    """Set up logging based on verbosity flags."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
        force=True,
    )


def _load_config(root: Path):
    """Load ``config.toml`` or exit with a hint to run ``init``."""
    from statement_importer.config import load_config

    try:
        return load_config(root)
    except FileNotFoundError as exc:
        click.echo(
            f"Error: {exc}. Run 'statements init' to create the project structure.",
            err=True,
        )
        sys.exit(1)
    except Exception as exc:
        click.echo(f"Error loading configuration: {exc}", err=True)
        sys.exit(1)


def _open_store(root: Path, config):
    from statement_importer.store import SQLiteStore

    try:
        return SQLiteStore(root / config.database)
    except Exception as exc:
        click.echo(f"Error opening database: {exc}", err=True)
        sys.exit(1)


def _open_cache(root: Path, config):
    from statement_importer.cache import FileCache

    return FileCache(root / config.cache_dir)


def _parse_overrides(values: tuple[str, ...]) -> dict[int, str]:
    """Turn ``INDEX=CATEGORY`` strings into a mapping."""
    overrides: dict[int, str] = {}
    for value in values:
        index, sep, category = value.partition("=")
        if not sep or not index.strip().isdigit() or not category.strip():
            raise click.BadParameter(
                f"Invalid override: {value!r}. Expected INDEX=CATEGORY (e.g. 3=Groceries)."
            )
        overrides[int(index)] = category.strip()
    return overrides


@click.group()
@click.version_option(version=__version__, prog_name="statement-importer")
def cli() -> None:
    """Import bank statements, categorize transactions and find recurring payments."""


@cli.command()
@click.option(
    "--dir", "target_dir", default=".", type=click.Path(), help="Directory to initialize."
)
def init(target_dir: str) -> None:
    """Initialize a new data directory with the standard structure."""
    from statement_importer.config import initialize

    target = Path(target_dir).resolve()

    try:
        initialize(target)
    except Exception as exc:
        click.echo(f"Error initializing project: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Initialized statement importer project in {target}")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--format",
    "file_format",
    type=click.Choice(["CSV", "OFX", "QFX", "PDF"], case_sensitive=False),
    default=None,
    help="Statement format. Defaults to the file extension.",
)
@click.option("--no-llm", is_flag=True, default=False, help="Skip LLM categorization.")
@click.option("--verbose", is_flag=True, default=False, help="Detailed progress output.")
@click.option("--debug", is_flag=True, default=False, help="Developer-level diagnostics.")
def upload(file: str, file_format: str | None, no_llm: bool, verbose: bool, debug: bool) -> None:
    """Parse a statement FILE and show a preview of what would be imported."""
    _configure_logging(verbose, debug)
    root = Path.cwd()
    config = _load_config(root)

    from statement_importer.parsers import format_from_file_name

    path = Path(file)
    file_format = (file_format or format_from_file_name(path.name) or "").upper()
    if not file_format:
        click.echo(
            f"Error: Cannot tell the format of {path.name}. Use --format.", err=True
        )
        sys.exit(1)

    try:
        from statement_importer.config import load_rules

        rules = load_rules(root)
    except FileNotFoundError as exc:
        click.echo(
            f"Error: {exc}. Run 'statements init' to create the project structure.",
            err=True,
        )
        sys.exit(1)
    except Exception as exc:
        click.echo(f"Error loading rules: {exc}", err=True)
        sys.exit(1)

    # Select LLM adapter
    from statement_importer.categorizer import MerchantCategorizer
    from statement_importer.llm import AnthropicAdapter

    llm_adapter = None
    if no_llm or config.llm_provider == "none":
        if verbose:
            click.echo("LLM categorization disabled.")
    else:
        llm_adapter = AnthropicAdapter(
            model=config.llm_model,
            api_key_env=config.llm_api_key_env,
        )
        if verbose:
            click.echo(f"Using LLM: {config.llm_provider} ({config.llm_model})")

    cache = _open_cache(root, config)
    categorizer = MerchantCategorizer(
        rules,
        cache=cache,
        llm_adapter=llm_adapter,
        cache_ttl_seconds=config.merchant_cache_ttl_days * 24 * 60 * 60,
        batch_size=config.llm_batch_size,
    )

    from statement_importer.export import print_preview
    from statement_importer.pipeline import StatementImportError, process_upload, start_import

    with _open_store(root, config) as store:
        record = start_import(store, config.user, path.name, file_format)
        try:
            preview = process_upload(
                store,
                cache,
                config.user,
                record.id,
                path.read_bytes(),
                path.name,
                file_format,
                categorizer=categorizer,
                config=config,
            )
        except StatementImportError as exc:
            click.echo(f"Error processing statement: {exc}", err=True)
            sys.exit(1)

        if preview is None:
            failed = store.get_import(config.user, record.id)
            click.echo(f"Error: {failed.error_message}", err=True)
            sys.exit(1)

    print_preview(preview)
    click.echo(f"Run 'statements confirm {preview.import_id}' to import these transactions.")


@cli.command()
@click.argument("import_id")
def preview(import_id: str) -> None:
    """Show the cached preview of an upload that has not been confirmed."""
    root = Path.cwd()
    config = _load_config(root)

    from statement_importer.export import print_preview
    from statement_importer.pipeline import load_preview

    preview_data = load_preview(_open_cache(root, config), import_id)
    if preview_data is None:
        click.echo("Error: Preview not found or expired.", err=True)
        sys.exit(1)

    print_preview(preview_data)


@cli.command()
@click.argument("import_id")
@click.option("--account-id", default=None, help="Import into this existing account.")
@click.option("--create-account", is_flag=True, default=False, help="Create a new account.")
@click.option("--account-name", default=None, help="Name for the new account.")
@click.option(
    "--account-type",
    type=click.Choice(["CHECKING", "SAVINGS", "CREDIT", "INVESTMENT"], case_sensitive=False),
    default=None,
    help="Type for the new account.",
)
@click.option("--institution", default=None, help="Institution for the new account.")
@click.option(
    "--override",
    "overrides",
    multiple=True,
    help="Set the category of a preview row, as INDEX=CATEGORY. Repeatable.",
)
@click.option(
    "--include-duplicates", is_flag=True, default=False, help="Import rows flagged as duplicates."
)
@click.option("--verbose", is_flag=True, default=False, help="Detailed progress output.")
@click.option("--debug", is_flag=True, default=False, help="Developer-level diagnostics.")
def confirm(
    import_id: str,
    account_id: str | None,
    create_account: bool,
    account_name: str | None,
    account_type: str | None,
    institution: str | None,
    overrides: tuple[str, ...],
    include_duplicates: bool,
    verbose: bool,
    debug: bool,
) -> None:
    """Import the transactions of a previewed upload."""
    _configure_logging(verbose, debug)

    try:
        category_overrides = _parse_overrides(overrides)
    except click.BadParameter as exc:
        click.echo(f"Error: {exc.format_message()}", err=True)
        sys.exit(1)

    root = Path.cwd()
    config = _load_config(root)

    from statement_importer.pipeline import ConfirmRequest, StatementImportError, confirm_import

    request = ConfirmRequest(
        account_id=account_id,
        create_new_account=create_account,
        new_account_name=account_name,
        new_account_type=account_type.upper() if account_type else None,
        new_account_institution=institution,
        category_overrides=category_overrides,
        skip_duplicates=not include_duplicates,
    )

    with _open_store(root, config) as store:
        try:
            result = confirm_import(
                store,
                _open_cache(root, config),
                config.user,
                import_id,
                request,
                settings=config.detection,
            )
        except StatementImportError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)
        except Exception as exc:
            click.echo(f"Error importing transactions: {exc}", err=True)
            sys.exit(1)

    if result.learned_rules:
        from statement_importer.config import load_rules, merge_learned_rules, save_learned_rules

        try:
            merged = merge_learned_rules(load_rules(root), result.learned_rules)
            save_learned_rules(root, merged)
        except Exception as exc:
            click.echo(f"Warning: could not save learned rules: {exc}", err=True)

    click.echo()
    click.echo("== Import Summary ==")
    click.echo(f"  Account:             {result.account_id}")
    click.echo(f"  Imported:            {result.transactions_imported}")
    click.echo(f"  Duplicates skipped:  {result.duplicates_skipped}")
    click.echo(f"  Rules learned:       {len(result.learned_rules)}")
    if result.detection is not None:
        click.echo(f"  Recurring patterns:  {len(result.detection.patterns)}")
        for warning in result.detection.warnings:
            click.echo(f"Warning: {warning}", err=True)
    click.echo()


@cli.command()
@click.argument("import_id")
def cancel(import_id: str) -> None:
    """Cancel an upload that has not been confirmed."""
    root = Path.cwd()
    config = _load_config(root)

    from statement_importer.pipeline import StatementImportError, cancel_import

    with _open_store(root, config) as store:
        try:
            cancel_import(store, _open_cache(root, config), config.user, import_id)
        except StatementImportError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    click.echo(f"Cancelled import {import_id}")


@cli.command()
@click.argument("import_id")
def delete(import_id: str) -> None:
    """Delete an import and the transactions it stored."""
    root = Path.cwd()
    config = _load_config(root)

    from statement_importer.pipeline import StatementImportError, delete_import

    with _open_store(root, config) as store:
        try:
            deleted = delete_import(store, _open_cache(root, config), config.user, import_id)
        except StatementImportError as exc:
            click.echo(f"Error: {exc}", err=True)
            sys.exit(1)

    if deleted:
        click.echo(f"Deleted import and {deleted} transactions")
    else:
        click.echo("Deleted import record")


@cli.command()
@click.option(
    "--export", "export_path", default=None, type=click.Path(), help="Also write patterns to CSV."
)
@click.option("--verbose", is_flag=True, default=False, help="Detailed progress output.")
@click.option("--debug", is_flag=True, default=False, help="Developer-level diagnostics.")
def detect(export_path: str | None, verbose: bool, debug: bool) -> None:
    """Detect recurring transactions across the whole history."""
    _configure_logging(verbose, debug)
    root = Path.cwd()
    config = _load_config(root)

    from statement_importer.export import export_patterns, print_patterns
    from statement_importer.pipeline import run_detection

    with _open_store(root, config) as store:
        try:
            result = run_detection(store, config.user, config.detection)
        except Exception as exc:
            click.echo(f"Error detecting recurring transactions: {exc}", err=True)
            sys.exit(1)

    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)

    print_patterns(result.patterns)

    if export_path:
        try:
            written = export_patterns(result.patterns, export_path)
        except Exception as exc:
            click.echo(f"Error writing output: {exc}", err=True)
            sys.exit(1)
        click.echo(f"Wrote {len(result.patterns)} pattern(s) to {written}")


@cli.command()
@click.option("--account-id", default=None, help="Only show this account.")
@click.option("--limit", default=50, show_default=True, help="Most recent N transactions.")
def history(account_id: str | None, limit: int) -> None:
    """List imported transactions, marking recurring ones."""
    root = Path.cwd()
    config = _load_config(root)

    from statement_importer.models import INCOME
    from statement_importer.recurring import RecurringMembership

    with _open_store(root, config) as store:
        transactions = store.transaction_history(config.user)
        if account_id:
            transactions = [t for t in transactions if t.account_id == account_id]
        membership = RecurringMembership(store, config.user)

        if not transactions:
            click.echo("No transactions imported yet.")
            return

        shown = sorted(transactions, key=lambda t: (t.date, t.id), reverse=True)[:limit]
        for txn in shown:
            sign = "+" if txn.type == INCOME else "-"
            pattern = membership.pattern_for(txn.id)
            marker = f"  [{pattern.frequency.lower()}]" if pattern else ""
            click.echo(
                f"{txn.date.isoformat()}  {sign}${txn.amount:>10,.2f}  "
                f"{(txn.merchant or txn.description)[:30]:<30}  {txn.category}{marker}"
            )
