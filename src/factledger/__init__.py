"""
Fact Ledger - ledger append-only des facts de deals avec arbitrage et review.
"""

from factledger.facts.errors import (
    ArbitrationConflictError,
    CategoryMismatchError,
    ConcurrentModificationError,
    FactLedgerError,
    FactNotFoundError,
    FactValidationError,
    IllegalTransitionError,
    ReviewNotFoundError,
)
from factledger.facts.ledger import FactLedger, create_ledger

__version__ = "0.1.0"

__all__ = [
    "FactLedger",
    "create_ledger",
    "FactLedgerError",
    "FactValidationError",
    "CategoryMismatchError",
    "FactNotFoundError",
    "ReviewNotFoundError",
    "IllegalTransitionError",
    "ConcurrentModificationError",
    "ArbitrationConflictError",
]
