"""Match detected statement metadata to one of the user's accounts."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from statement_importer.models import Account, DetectedAccount

logger = logging.getLogger(__name__)

MASK_SCORE = 10
INSTITUTION_SCORE = 5
TYPE_SCORE = 3
MIN_SCORE = 5


def match_account(accounts: Iterable[Account], detected: DetectedAccount) -> Account | None:
    """Pick the existing account that best fits *detected*.

    Scoring per account: exact mask match +10, institution names containing
    one another (case-insensitive, either direction) +5, equal account type
    +3. The highest score wins when it reaches 5; on a tie the earlier
    account is kept.

    Returns:
        The matched account, or ``None``. Metadata without a mask and
        without an institution never matches.
    """
    if not detected.institution and not detected.account_mask:
        return None

    best: Account | None = None
    best_score = 0

    for account in accounts:
        score = 0
        if detected.account_mask and account.mask and detected.account_mask == account.mask:
            score += MASK_SCORE
        if detected.institution and account.institution:
            theirs = account.institution.lower()
            ours = detected.institution.lower()
            if ours in theirs or theirs in ours:
                score += INSTITUTION_SCORE
        if detected.account_type and account.type == detected.account_type:
            score += TYPE_SCORE

        if score > best_score:
            best, best_score = account, score

    if best_score >= MIN_SCORE:
        logger.debug("Matched account %s (score %d)", best.id, best_score)
        return best
    return None
