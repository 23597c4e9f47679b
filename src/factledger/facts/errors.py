"""Taxonomie d'erreurs du Fact Ledger."""

from typing import Optional


class FactLedgerError(Exception):
    """Erreur de base du Fact Ledger."""
    pass


class FactValidationError(FactLedgerError):
    """Entrée malformée, rejetée avant toute écriture."""
    pass


class CategoryMismatchError(FactValidationError):
    """Préfixe de fact_key hors taxonomie (mode strict uniquement)."""
    pass


class FactNotFoundError(FactLedgerError):
    """Event inexistant."""
    pass


class ReviewNotFoundError(FactNotFoundError):
    """Review inexistante ou déjà clôturée (indistinguables pour l'appelant)."""
    pass


class IllegalTransitionError(FactLedgerError):
    """Tentative de muter un event terminal, ou transition hors table."""
    pass


class ConcurrentModificationError(FactLedgerError):
    """Course perdue sur le même (deal, fact_key)."""
    pass


class ArbitrationConflictError(FactLedgerError):
    """Retries épuisés après des ConcurrentModificationError successives."""

    def __init__(self, message: str, attempts: Optional[int] = None):
        super().__init__(message)
        self.attempts = attempts
