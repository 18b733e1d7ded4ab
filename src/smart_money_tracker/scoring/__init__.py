"""Entry-timing scoring - Classifier and wallet scorer."""

from smart_money_tracker.scoring.classifier import (
    SCORE_MATRIX,
    AfterContext,
    BeforeContext,
    classify_after,
    classify_before,
    classify_entry,
    classify_entry_detail,
)
from smart_money_tracker.scoring.wallet import WalletScore, WalletScorer, WalletScorerConfig

__all__ = [
    "SCORE_MATRIX",
    "AfterContext",
    "BeforeContext",
    "WalletScore",
    "WalletScorer",
    "WalletScorerConfig",
    "classify_after",
    "classify_before",
    "classify_entry",
    "classify_entry_detail",
]
