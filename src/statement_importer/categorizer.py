"""Categorization engine: merchant rules, merchant cache, LLM, keywords.

Suggestions for one import are produced tier by tier; a transaction leaves
the chain at the first tier that answers:

1. **Rule** -- a merchant rule whose pattern equals the cleaned merchant
   key, else the longest pattern contained in it (confidence 100).
2. **Cache** -- an earlier AI answer for the same merchant.
3. **AI** -- remaining transactions go to the LLM adapter in batches;
   answers are written back to the cache.
4. **Keyword** -- local keyword scoring, which always answers.

Cache and LLM failures are logged and fall through to the next tier.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Protocol

from statement_importer.cache import Cache
from statement_importer.llm import LLMAdapter
from statement_importer.lookups import CATEGORY_KEYWORDS, VALID_CATEGORIES
from statement_importer.merchant import clean_merchant_name, merchant_cache_key
from statement_importer.models import INCOME, Categorization, MerchantRule, ParsedTransaction

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 30 * 24 * 60 * 60
DEFAULT_BATCH_SIZE = 50


class Categorizer(Protocol):
    """Anything that suggests categories for a batch of parsed transactions."""

    def categorize(self, transactions: Sequence[ParsedTransaction]) -> list[Categorization]:
        """Return one :class:`Categorization` per transaction, aligned by index."""
        ...


# ---------------------------------------------------------------------------
# Keyword scoring
# ---------------------------------------------------------------------------


def keyword_categorize(txn: ParsedTransaction) -> Categorization:
    """Score *txn* against the category keyword lists.

    A category supplied by the statement itself is kept with confidence 80.
    Otherwise each category scores the summed length of its keywords found
    in the description, merchant and memo; the best score wins. Confidence
    is ``min(85, 45 + 10 * hits + min(score, 30))``. Unmatched income is
    ``Income`` at 65, anything else unmatched is ``Other`` at 20.
    """
    merchant = clean_merchant_name(txn.merchant or txn.description).display_name
    if txn.category:
        return Categorization(txn.category, 80, "keyword", merchant)

    text = " ".join(part for part in (txn.description, txn.merchant, txn.memo) if part).lower()

    best_category = "Other"
    best_score = 0
    best_hits = 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        matched = [keyword for keyword in keywords if keyword in text]
        score = sum(len(keyword) for keyword in matched)
        if score > best_score:
            best_category, best_score, best_hits = category, score, len(matched)

    if best_category == "Other":
        if txn.type == INCOME:
            return Categorization("Income", 65, "keyword", merchant)
        return Categorization("Other", 20, "keyword", merchant)

    confidence = min(85, 45 + best_hits * 10 + min(best_score, 30))
    return Categorization(best_category, confidence, "keyword", merchant)


class KeywordCategorizer:
    """Local-only categorizer; the fallback when the main one fails."""

    def categorize(self, transactions: Sequence[ParsedTransaction]) -> list[Categorization]:
        return [keyword_categorize(txn) for txn in transactions]


# ---------------------------------------------------------------------------
# Rule matching
# ---------------------------------------------------------------------------


def match_rule(merchant_key: str, rules: Sequence[MerchantRule]) -> MerchantRule | None:
    """Find the rule for a normalized merchant key.

    An exact pattern match wins. Otherwise the longest pattern contained in
    the key wins; ties are broken by list order, which puts user rules
    before learned rules (as produced by ``config.load_rules()``).
    """
    if not merchant_key:
        return None

    best: MerchantRule | None = None
    for rule in rules:
        if rule.pattern == merchant_key:
            return rule
        if rule.pattern and rule.pattern in merchant_key:
            if best is None or len(rule.pattern) > len(best.pattern):
                best = rule
    return best


# ---------------------------------------------------------------------------
# Tiered categorizer
# ---------------------------------------------------------------------------


class MerchantCategorizer:
    """Rules, then cache, then LLM, then keywords.

    Args:
        rules: Merchant rules, user rules first.
        cache: Merchant-category cache. ``None`` disables the cache tier.
        llm_adapter: LLM adapter. ``None`` disables the AI tier.
        cache_ttl_seconds: Lifetime of cached AI answers.
        batch_size: Transactions per LLM request.
    """

    def __init__(
        self,
        rules: Sequence[MerchantRule],
        cache: Cache | None = None,
        llm_adapter: LLMAdapter | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self.rules = list(rules)
        self.cache = cache
        self.llm_adapter = llm_adapter
        self.cache_ttl_seconds = cache_ttl_seconds
        self.batch_size = max(1, batch_size)

    def categorize(self, transactions: Sequence[ParsedTransaction]) -> list[Categorization]:
        results: list[Categorization | None] = [None] * len(transactions)
        cleaned = [clean_merchant_name(txn.merchant or txn.description) for txn in transactions]

        for idx, name in enumerate(cleaned):
            rule = match_rule(name.normalized_key, self.rules)
            if rule is not None:
                results[idx] = Categorization(rule.category, 100, "rule", name.display_name)

        if self.cache is not None:
            self._apply_cache(transactions, cleaned, results)

        if self.llm_adapter is not None:
            self._apply_llm(transactions, cleaned, results)

        for idx, txn in enumerate(transactions):
            if results[idx] is None:
                results[idx] = keyword_categorize(txn)

        counts: dict[str, int] = {}
        for result in results:
            counts[result.source] = counts.get(result.source, 0) + 1
        logger.info("Categorized %d transaction(s): %s", len(transactions), counts)
        return results

    def _apply_cache(self, transactions, cleaned, results) -> None:
        for idx, txn in enumerate(transactions):
            if results[idx] is not None or not cleaned[idx].normalized_key:
                continue
            key = merchant_cache_key(txn.merchant or txn.description)
            try:
                raw = self.cache.get(key)
            except Exception as exc:
                logger.warning("Merchant cache lookup failed, skipping cache: %s", exc)
                return
            if raw is None:
                continue
            try:
                entry = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Ignoring unreadable merchant cache entry %s", key)
                continue
            category = entry.get("category") if isinstance(entry, dict) else None
            if category in VALID_CATEGORIES:
                results[idx] = Categorization(
                    category,
                    int(entry.get("confidence") or 85),
                    "cache",
                    entry.get("cleaned_merchant") or cleaned[idx].display_name,
                )

    def _apply_llm(self, transactions, cleaned, results) -> None:
        pending = [idx for idx in range(len(transactions)) if results[idx] is None]
        categories = list(VALID_CATEGORIES)

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            items = [
                {
                    "index": batch_idx,
                    "merchant": cleaned[idx].display_name or transactions[idx].merchant or "",
                    "description": transactions[idx].description,
                    "amount": str(transactions[idx].amount),
                    "type": transactions[idx].type,
                }
                for batch_idx, idx in enumerate(batch)
            ]
            try:
                suggestions = self.llm_adapter.categorize_batch(items, categories)
            except Exception as exc:
                logger.warning("LLM categorization failed: %s", exc)
                return

            for suggestion in suggestions:
                batch_idx = suggestion["index"]
                if not 0 <= batch_idx < len(batch):
                    continue
                idx = batch[batch_idx]
                category = suggestion["category"]
                if category not in VALID_CATEGORIES:
                    category = "Other"
                result = Categorization(
                    category,
                    suggestion["confidence"],
                    "ai",
                    suggestion["cleaned_merchant"] or cleaned[idx].display_name,
                )
                results[idx] = result
                self._remember(transactions[idx], cleaned[idx].normalized_key, result)

    def _remember(self, txn: ParsedTransaction, merchant_key: str, result: Categorization) -> None:
        if self.cache is None or not merchant_key:
            return
        value = json.dumps(
            {
                "category": result.category,
                "confidence": result.confidence,
                "cleaned_merchant": result.cleaned_merchant,
            }
        )
        try:
            self.cache.set(merchant_cache_key(txn.merchant or txn.description), value, self.cache_ttl_seconds)
        except Exception as exc:
            logger.warning("Could not cache merchant category: %s", exc)
