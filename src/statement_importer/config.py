"""Configuration loading, writing, and project initialization.

Reads TOML config files using stdlib ``tomllib`` and writes them using
``tomli_w``.  Depends only on ``models.py``.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

import tomli_w

from statement_importer.models import AppConfig, DetectionSettings, MerchantRule

# ---------------------------------------------------------------------------
# Default file content
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_TOML = """\
# Statement importer configuration

[general]
user = "default"
database = "statements.db"
cache_dir = "cache"

[import]
preview_ttl_seconds = 3600       # How long an upload stays confirmable
merchant_cache_ttl_days = 30     # How long AI merchant categories are reused
llm_batch_size = 50

[recurring]
amount_tolerance = 0.10          # Relative amount drift within one pattern
interval_tolerance = 0.20        # Relative deviation of any gap from the mean gap
min_occurrences = 3
habitual_min_count = 10
habitual_monthly_rate = 10.0     # Transactions per 30 days
habitual_amount_cv = 0.20

[llm]
provider = "anthropic"          # "anthropic" or "none"
model = "claude-sonnet-4-20250514"
api_key_env = "ANTHROPIC_API_KEY"  # Name of env var containing the API key
"""

_DEFAULT_RULES_TOML = """\
# Merchant-to-category mapping rules
# User rules always take precedence over learned rules.
# Patterns are normalized merchant keys: lowercase letters and digits only.
# Matching: exact key first, then the longest pattern contained in the key.

[user_rules]
# Manually authored rules. The system never modifies this section.
# Format: pattern = "Category"

# Examples:
# "netflix" = "Entertainment"
# "wholefoods" = "Groceries"

[learned_rules]
# System-managed rules from confirmed category overrides. Do not hand-edit.
# Same format as user_rules.
"""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(root: Path) -> AppConfig:
    """Load ``config.toml`` from *root* and return an :class:`AppConfig`.

    Args:
        root: Project root directory containing ``config.toml``.

    Returns:
        A fully-populated :class:`AppConfig` instance; missing keys take
        their defaults.

    Raises:
        FileNotFoundError: If ``config.toml`` does not exist.
    """
    data = _read_toml(root / "config.toml")

    general = data.get("general", {})
    imports = data.get("import", {})
    recurring = data.get("recurring", {})
    llm = data.get("llm", {})

    defaults = DetectionSettings()
    detection = DetectionSettings(
        amount_tolerance=float(recurring.get("amount_tolerance", defaults.amount_tolerance)),
        interval_tolerance=float(recurring.get("interval_tolerance", defaults.interval_tolerance)),
        min_occurrences=int(recurring.get("min_occurrences", defaults.min_occurrences)),
        habitual_min_count=int(recurring.get("habitual_min_count", defaults.habitual_min_count)),
        habitual_monthly_rate=float(
            recurring.get("habitual_monthly_rate", defaults.habitual_monthly_rate)
        ),
        habitual_amount_cv=float(recurring.get("habitual_amount_cv", defaults.habitual_amount_cv)),
    )

    return AppConfig(
        user=general.get("user", "default"),
        database=general.get("database", "statements.db"),
        cache_dir=general.get("cache_dir", "cache"),
        preview_ttl_seconds=int(imports.get("preview_ttl_seconds", 3600)),
        merchant_cache_ttl_days=int(imports.get("merchant_cache_ttl_days", 30)),
        llm_batch_size=int(imports.get("llm_batch_size", 50)),
        llm_provider=llm.get("provider", "anthropic"),
        llm_model=llm.get("model", "claude-sonnet-4-20250514"),
        llm_api_key_env=llm.get("api_key_env", "ANTHROPIC_API_KEY"),
        detection=detection,
    )


def load_rules(root: Path) -> list[MerchantRule]:
    """Load ``rules.toml`` and return the merchant rules.

    User rules come first, then learned rules.  Within each group rules
    are in file order (insertion order preserved by ``tomllib``).

    Raises:
        FileNotFoundError: If ``rules.toml`` does not exist.
    """
    data = _read_toml(root / "rules.toml")
    rules = [
        MerchantRule(pattern=pattern, category=str(category).strip(), source="user")
        for pattern, category in data.get("user_rules", {}).items()
    ]
    rules.extend(
        MerchantRule(pattern=pattern, category=str(category).strip(), source="learned")
        for pattern, category in data.get("learned_rules", {}).items()
    )
    return rules


def save_learned_rules(root: Path, rules: list[MerchantRule]) -> None:
    """Write learned rules to the ``[learned_rules]`` section of ``rules.toml``.

    The ``[user_rules]`` section (and everything above it) is preserved
    verbatim.  Only the ``[learned_rules]`` section is rewritten.

    Args:
        root: Project root directory containing ``rules.toml``.
        rules: The complete list of learned rules to write.  Only rules
            with ``source="learned"`` are written; others are ignored.
    """
    rules_path = root / "rules.toml"
    original_text = rules_path.read_text(encoding="utf-8")

    marker = "[learned_rules]"
    idx = original_text.find(marker)
    if idx == -1:
        prefix = original_text.rstrip() + "\n\n"
    else:
        prefix = original_text[:idx]

    learned = {r.pattern: r.category for r in rules if r.source == "learned"}

    new_section = (
        "[learned_rules]\n"
        "# System-managed rules from confirmed category overrides. Do not hand-edit.\n"
        "# Same format as user_rules.\n"
    )
    if learned:
        # tomli_w emits its own "[learned_rules]" header; keep only the pairs.
        kv_text = tomli_w.dumps({"learned_rules": learned})
        new_section += kv_text.split("\n", 1)[1]

    rules_path.write_text(prefix + new_section, encoding="utf-8")


def merge_learned_rules(existing: list[MerchantRule], new_rules: list[MerchantRule]) -> list[MerchantRule]:
    """Combine learned rules, letting *new_rules* replace same-pattern entries.

    Patterns owned by a user rule are never learned over.

    Returns:
        The learned rules to persist, in first-seen order.
    """
    user_patterns = {r.pattern for r in existing if r.source == "user"}
    merged = {r.pattern: r for r in existing if r.source == "learned"}
    for rule in new_rules:
        if rule.pattern and rule.pattern not in user_patterns:
            merged[rule.pattern] = MerchantRule(rule.pattern, rule.category, source="learned")
    return list(merged.values())


def initialize(target_dir: Path) -> None:
    """Create default config files and the cache directory.

    Idempotent: existing directories are left alone and existing files
    are **not** overwritten.
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    (target_dir / "cache").mkdir(exist_ok=True)

    _write_if_missing(target_dir / "config.toml", _DEFAULT_CONFIG_TOML)
    _write_if_missing(target_dir / "rules.toml", _DEFAULT_RULES_TOML)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _read_toml(path: Path) -> dict:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _write_if_missing(path: Path, content: str) -> None:
    if not path.exists():
        path.write_text(content, encoding="utf-8")
