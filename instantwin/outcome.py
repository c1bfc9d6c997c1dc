# Copyright (c) 2025 The BATHRON 2.0 developers
# Distributed under the MIT software license

"""
InstantWin - Outcome Evaluator

Pure win/lose decision from a randomness value. No storage access.
"""

from decimal import Decimal

UINT256_LIMIT = 2 ** 256


def _validate(randomness: int, odds_denominator: int):
    if odds_denominator < 1:
        raise ValueError(f"odds_denominator must be >= 1, got {odds_denominator}")
    if not 0 <= randomness < UINT256_LIMIT:
        raise ValueError("randomness must be a uint256")


def is_win(randomness: int, odds_denominator: int) -> bool:
    """
    Decide a ticket outcome.

    Args:
        randomness: uint256 extracted from the issuer signature
        odds_denominator: 1 always wins, N wins roughly once in N

    Returns:
        True if randomness mod odds_denominator == 0
    """
    _validate(randomness, odds_denominator)
    return randomness % odds_denominator == 0


def win_probability(odds_denominator: int) -> Decimal:
    """Nominal win probability (1 / odds_denominator), for display only."""
    if odds_denominator < 1:
        raise ValueError(f"odds_denominator must be >= 1, got {odds_denominator}")
    return Decimal(1) / Decimal(odds_denominator)
