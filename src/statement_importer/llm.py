"""LLM adapter interface and Anthropic implementation.

Defines the LLMAdapter protocol for categorizing statement transactions via
an LLM, plus two implementations:
- AnthropicAdapter: sends batches to the Anthropic Messages API via httpx.
- NullAdapter: no-op adapter that always returns an empty list (for --no-llm mode).

This module depends only on the standard library and httpx. It has no
internal imports from statement_importer -- the categorizer passes plain
dicts, not transaction objects, to keep the boundary clean.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"


class LLMAdapter(Protocol):
    """Protocol for LLM-based transaction categorization.

    Implementations receive a batch of transaction dicts and the list of
    valid category names, and return one suggestion dict per transaction
    they could categorize. On any failure, implementations must return an
    empty list rather than raising.
    """

    def categorize_batch(
        self,
        transactions: list[dict],
        categories: list[str],
    ) -> list[dict]:
        """Send a batch of transactions to the LLM for categorization.

        Args:
            transactions: List of dicts, each with keys:
                index, merchant, description, amount, type.
            categories: Valid category names.

        Returns:
            List of dicts, each with keys: index, category, confidence,
            cleaned_merchant. Empty list on any failure.
        """
        ...


def _build_prompt(transactions: list[dict], categories: list[str]) -> str:
    """Construct the categorization prompt.

    Args:
        transactions: Transaction dicts with index, merchant, description,
            amount and type.
        categories: Valid category names.

    Returns:
        The fully formatted prompt string.
    """
    txn_lines = [
        f"{txn['index']}|{txn['merchant']}|{txn['description']}|{txn['amount']}|{txn['type']}"
        for txn in transactions
    ]
    txn_text = "\n".join(txn_lines)

    return (
        "You are a financial transaction categorizer. Categorize each transaction\n"
        f"into exactly one of these categories: {', '.join(categories)}.\n"
        "\n"
        "## Transactions (format: index|merchant|description|amount|type)\n"
        f"{txn_text}\n"
        "\n"
        "## Response Format\n"
        "Return a JSON array. Each element:\n"
        '{"index": <number>, "category": "...", "confidence": <0-100>, "cleaned_merchant": "..."}\n'
        "\n"
        "Rules:\n"
        "- Use the merchant name as the primary signal.\n"
        "- confidence: 90+ for well-known merchants, 70-89 for likely matches, 50-69 for guesses.\n"
        '- cleaned_merchant: a clean, readable merchant name (e.g. "AMZN MKTP" -> "Amazon").\n'
        '- If unsure, use "Other" with low confidence.'
    )


def _parse_response(text: str) -> list[dict]:
    """Extract and parse the JSON array from the LLM response text.

    The LLM may wrap the JSON in markdown code fences or include
    explanatory text. This function finds the first '[' and last ']'
    to extract the array.

    Args:
        text: Raw text from the LLM response.

    Returns:
        Parsed list of dicts, or empty list if parsing fails.
    """
    start = text.find("[")
    end = text.rfind("]")
    if start == -1 or end == -1 or end <= start:
        logger.warning("LLM response does not contain a JSON array")
        return []

    try:
        result = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse JSON from LLM response: %s", exc)
        return []

    if not isinstance(result, list):
        logger.warning("LLM response JSON is not a list")
        return []

    validated: list[dict] = []
    for item in result:
        if not isinstance(item, dict):
            logger.warning("Skipping non-dict item in LLM response: %s", item)
            continue
        if "index" not in item or "category" not in item:
            logger.warning("Skipping item missing required keys: %s", item)
            continue
        try:
            index = int(item["index"])
            confidence = int(item.get("confidence", 50))
        except (TypeError, ValueError):
            logger.warning("Skipping item with non-numeric index or confidence: %s", item)
            continue
        validated.append(
            {
                "index": index,
                "category": str(item["category"]),
                "confidence": min(100, max(0, confidence)),
                "cleaned_merchant": str(item.get("cleaned_merchant", "")),
            }
        )

    return validated


class AnthropicAdapter:
    """LLM adapter that calls the Anthropic Messages API via httpx.

    Reads the API key from the environment variable specified in config
    (``api_key_env``). Sends one HTTP POST per batch and parses the
    structured JSON response.

    On any failure (missing API key, network error, auth error, rate
    limit, unparseable response), returns an empty list. The categorizer
    treats this as "LLM unavailable" and falls back to keywords.

    Args:
        model: The Anthropic model identifier, e.g. "claude-sonnet-4-20250514".
        api_key_env: Name of the environment variable containing the API key.
        max_tokens: Maximum tokens in the LLM response. Default: 4096.
        timeout: HTTP request timeout in seconds. Default: 60.
    """

    def __init__(
        self,
        model: str,
        api_key_env: str,
        max_tokens: int = 4096,
        timeout: float = 60.0,
    ) -> None:
        self.model = model
        self.api_key_env = api_key_env
        self.max_tokens = max_tokens
        self.timeout = timeout

    def categorize_batch(
        self,
        transactions: list[dict],
        categories: list[str],
    ) -> list[dict]:
        if not transactions:
            return []

        api_key = os.environ.get(self.api_key_env, "")
        if not api_key:
            logger.warning(
                "LLM API key not found in environment variable '%s'",
                self.api_key_env,
            )
            return []

        request_body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": 0.1,
            "messages": [
                {
                    "role": "user",
                    "content": _build_prompt(transactions, categories),
                }
            ],
        }

        headers = {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "content-type": "application/json",
        }

        try:
            response = httpx.post(
                ANTHROPIC_API_URL,
                json=request_body,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException:
            logger.warning("LLM request timed out")
            return []
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "LLM API returned HTTP %d: %s",
                exc.response.status_code,
                exc.response.text[:200],
            )
            return []
        except httpx.HTTPError as exc:
            logger.warning("LLM request failed: %s", exc)
            return []

        try:
            body = response.json()
            response_text = "\n".join(
                block["text"] for block in body.get("content", []) if block.get("type") == "text"
            )
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Failed to extract text from LLM response: %s", exc)
            return []

        if not response_text:
            logger.warning("LLM response contained no text content")
            return []

        return _parse_response(response_text)


class NullAdapter:
    """No-op LLM adapter used when llm_provider is "none" or --no-llm is given."""

    def categorize_batch(
        self,
        transactions: list[dict],
        categories: list[str],
    ) -> list[dict]:
        return []
