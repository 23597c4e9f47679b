"""
Retry borné avec backoff exponentiel + jitter pour les conflits de concurrence.

Utilisé par l'Arbitration Engine et le Review Workflow: un writer qui perd la
course sur un (deal, fact_key) relance sa décision complète contre l'état
désormais courant. Seule ConcurrentModificationError est rejouée; les erreurs
de validation / not-found remontent immédiatement.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from factledger.facts.errors import ArbitrationConflictError, ConcurrentModificationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Paramètres du retry (max_attempts inclut la première tentative)."""

    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.arbitration_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Délai avant la tentative suivante (attempt commence à 0)."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    description: str = "operation",
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Exécute operation, rejoue sur ConcurrentModificationError.

    Raises:
        ArbitrationConflictError: Si toutes les tentatives échouent
    """
    sleep = sleep or time.sleep
    last_exception: Optional[ConcurrentModificationError] = None

    for attempt in range(policy.max_attempts):
        try:
            return operation()

        except ConcurrentModificationError as e:
            last_exception = e

            if attempt < policy.max_attempts - 1:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"{description} lost a concurrent race "
                    f"(attempt {attempt + 1}/{policy.max_attempts}): {e}. "
                    f"Retrying in {delay:.3f}s..."
                )
                sleep(delay)
            else:
                logger.error(
                    f"{description} failed after {policy.max_attempts} attempts: {e}",
                    exc_info=True
                )

    raise ArbitrationConflictError(
        f"{description} failed after {policy.max_attempts} attempts",
        attempts=policy.max_attempts,
    ) from last_exception

