"""
Fact Ledger - interface métier exposée au pipeline d'analyse et au dashboard.

Fournit:
- Ingestion (submit_fact, submit_facts)
- Requêtes (get_current_facts, get_current_fact, get_disputed_facts,
  get_fact_history, get_fact_store_summary, format_facts_as_json)
- Surface de review (list_pending_reviews, resolve_review)
- Suppression (delete_fact)
"""

import logging
from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from factledger.common.retry import RetryPolicy, run_with_retry
from factledger.facts.arbitration import ArbitrationEngine, ArbitrationPolicy, summarize_decisions
from factledger.facts.errors import ConcurrentModificationError, FactNotFoundError, FactValidationError
from factledger.facts.event_log import EventLog
from factledger.facts.resolver import FactKeySnapshot, StateResolver
from factledger.facts.review import ReviewWorkflow
from factledger.facts.schemas import (
    CurrentFact,
    FactCategory,
    FactEvent,
    FactEventType,
    FactStoreSummary,
    FactSubmission,
    PendingReview,
    ResolveResult,
    ReviewDecision,
    ReviewResolution,
    SubmitResult,
)

logger = logging.getLogger(__name__)

DEFAULT_LOW_CONFIDENCE_THRESHOLD = 70


def _validation_message(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
        for err in error.errors()
    )


class FactLedger:
    """
    Façade du ledger pour un store donné.

    Usage:
        ledger = create_ledger()
        result = ledger.submit_fact(
            deal_id="deal_2024_acme",
            fact_key="financial.arr",
            value=500000,
            source="DOCUMENT_EXTRACTION",
            source_confidence=70,
            created_by="document-extractor",
        )
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        policy: Optional[ArbitrationPolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        low_confidence_threshold: int = DEFAULT_LOW_CONFIDENCE_THRESHOLD,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.session_factory = session_factory
        self.policy = policy or ArbitrationPolicy()
        self.retry_policy = retry_policy or RetryPolicy()
        self.low_confidence_threshold = low_confidence_threshold
        self.sleep = sleep

        self.resolver = StateResolver(session_factory)
        self.arbitration = ArbitrationEngine(session_factory, self.policy, self.retry_policy, sleep)
        self.reviews = ReviewWorkflow(session_factory, self.retry_policy, sleep)

        logger.debug("FactLedger initialized")

    # ========================================
    # INGESTION
    # ========================================

    def submit_fact(
        self,
        deal_id: str,
        fact_key: str,
        value: Any,
        source: str,
        source_confidence: int,
        created_by: str,
        display_value: Optional[str] = None,
        reason: Optional[str] = None,
        unit: Optional[str] = None,
        source_document_id: Optional[str] = None,
        extracted_text: Optional[str] = None,
    ) -> SubmitResult:
        """
        Soumet une valeur candidate à l'arbitrage.

        Returns:
            SubmitResult (ACCEPTED, SUPERSEDED, ESCALATED, REJECTED ou UNCHANGED)

        Raises:
            FactValidationError: Candidat malformé (aucune écriture)
            ArbitrationConflictError: Conflits de concurrence persistants
        """
        submission = self._build_submission(
            deal_id=deal_id,
            fact_key=fact_key,
            value=value,
            display_value=display_value,
            unit=unit,
            source=source,
            source_confidence=source_confidence,
            created_by=created_by,
            reason=reason,
            source_document_id=source_document_id,
            extracted_text=extracted_text,
        )
        result = self.arbitration.submit(submission)

        logger.info(
            f"Fact submitted - Deal: {submission.deal_id}, Key: {submission.fact_key}, "
            f"Status: {result.status.value}, Event: {result.event_id}"
        )
        return result

    def submit_facts(self, deal_id: str, candidates: Iterable[Dict[str, Any]]) -> List[SubmitResult]:
        """
        Soumet un lot de candidats (une unité atomique par candidat).

        Le lot entier est validé avant la première écriture.
        """
        submissions = []
        for candidate in candidates:
            data = dict(candidate)
            if data.setdefault("deal_id", deal_id) != deal_id:
                raise FactValidationError(
                    f"Candidate deal_id {data['deal_id']} does not match batch deal_id {deal_id}"
                )
            submissions.append(self._build_submission(**data))
        for submission in submissions:
            self.arbitration.validate(submission)

        results = [self.arbitration.submit(submission) for submission in submissions]

        logger.info(
            f"Fact batch submitted - Deal: {deal_id}, Count: {len(results)}, "
            f"Statuses: {summarize_decisions(results)}"
        )
        return results

    @staticmethod
    def _build_submission(**data: Any) -> FactSubmission:
        try:
            return FactSubmission(**data)
        except ValidationError as e:
            logger.error(f"Fact validation failed: {e}")
            raise FactValidationError(_validation_message(e)) from e
        except TypeError as e:
            raise FactValidationError(str(e)) from e

    # ========================================
    # REQUÊTES
    # ========================================

    def get_current_facts(
        self,
        deal_id: str,
        category: Optional[str] = None,
        include_history: bool = False,
        include_empty: bool = False,
    ) -> List[CurrentFact]:
        """Projection courante des facts du deal, triée par fact_key."""
        category_filter = None
        if category is not None:
            try:
                category_filter = FactCategory(category.upper() if isinstance(category, str) else category)
            except ValueError as e:
                raise FactValidationError(f"Invalid category: {category}") from e

        return self.resolver.get_current_facts(
            deal_id,
            category=category_filter,
            include_history=include_history,
            include_empty=include_empty,
        )

    def get_current_fact(
        self,
        deal_id: str,
        fact_key: str,
        include_history: bool = False,
    ) -> Optional[CurrentFact]:
        return self.resolver.get_current_fact(
            deal_id, fact_key.strip().lower(), include_history=include_history
        )

    def get_disputed_facts(self, deal_id: str) -> List[CurrentFact]:
        return [
            fact for fact in self.resolver.get_current_facts(deal_id, include_empty=True)
            if fact.is_disputed
        ]

    def get_fact_history(self, deal_id: str, fact_key: str) -> List[FactEvent]:
        """Tous les events d'une fact_key, plus ancien d'abord."""
        return self.resolver.get_fact_history(deal_id, fact_key.strip().lower())

    def get_fact_store_summary(self, deal_id: str) -> FactStoreSummary:
        """Statistiques des valeurs courantes du deal."""
        facts = [
            fact for fact in self.resolver.get_current_facts(deal_id)
            if fact.current_event_id is not None
        ]

        by_category = Counter(fact.category.value for fact in facts)
        by_source = Counter(fact.current_source.value for fact in facts)
        confidences = [fact.current_confidence for fact in facts]

        summary = FactStoreSummary(
            total_facts=len(facts),
            by_category=dict(by_category),
            by_source=dict(by_source),
            average_confidence=round(sum(confidences) / len(confidences)) if confidences else 0,
            disputed_count=sum(1 for fact in facts if fact.is_disputed),
            low_confidence_count=sum(
                1 for confidence in confidences if confidence < self.low_confidence_threshold
            ),
        )
        logger.info(f"Fact store summary - Deal: {deal_id}, Total facts: {summary.total_facts}")
        return summary

    @staticmethod
    def format_facts_as_json(facts: Iterable[CurrentFact]) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """
        Regroupe les valeurs courantes par catégorie pour les prompts et exports.

        Format: {CATEGORY: {fact_key: {value, display, confidence, source, disputed?}}}
        """
        grouped: Dict[str, Dict[str, Dict[str, Any]]] = {}

        for fact in facts:
            if fact.current_event_id is None:
                continue

            entry: Dict[str, Any] = {
                "value": fact.current_value,
                "display": fact.current_display_value,
                "confidence": fact.current_confidence,
                "source": fact.current_source.value,
            }
            if fact.is_disputed:
                entry["disputed"] = True

            grouped.setdefault(fact.category.value, {})[fact.fact_key] = entry

        return grouped

    # ========================================
    # REVIEW
    # ========================================

    def list_pending_reviews(self, deal_id: str) -> List[PendingReview]:
        return self.reviews.list_pending_reviews(deal_id)

    def resolve_review(
        self,
        review_id: str,
        decision: str,
        reason: str,
        override_value: Any = None,
        override_display_value: Optional[str] = None,
        resolved_by: str = "reviewer",
        deal_id: Optional[str] = None,
    ) -> ResolveResult:
        """
        Clôture une review (ACCEPT_NEW, KEEP_EXISTING ou OVERRIDE).

        Raises:
            FactValidationError: Décision malformée
            ReviewNotFoundError: Review inexistante ou déjà clôturée
        """
        try:
            resolution = ReviewResolution(
                review_id=review_id,
                decision=ReviewDecision(decision.upper() if isinstance(decision, str) else decision),
                reason=reason,
                override_value=override_value,
                override_display_value=override_display_value,
                resolved_by=resolved_by,
            )
        except ValidationError as e:
            raise FactValidationError(_validation_message(e)) from e
        except ValueError as e:
            raise FactValidationError(f"Invalid review decision: {decision}") from e

        return self.reviews.resolve_review(resolution, deal_id=deal_id)

    # ========================================
    # SUPPRESSION
    # ========================================

    def delete_fact(self, deal_id: str, fact_key: str, deleted_by: str, reason: str) -> FactEvent:
        """
        Tombstone la valeur courante d'une fact_key (event DELETED).

        Raises:
            FactValidationError: Raison ou acteur manquant
            FactNotFoundError: Aucune valeur courante
        """
        if not deleted_by or not deleted_by.strip():
            raise FactValidationError("deleted_by is required")
        if not reason or not reason.strip():
            raise FactValidationError("reason is required to delete a fact")

        fact_key = fact_key.strip().lower()
        return run_with_retry(
            lambda: self._delete(deal_id, fact_key, deleted_by.strip(), reason.strip()),
            self.retry_policy,
            description=f"Delete {deal_id}/{fact_key}",
            sleep=self.sleep,
        )

    def _delete(self, deal_id: str, fact_key: str, deleted_by: str, reason: str) -> FactEvent:
        try:
            with self.session_factory() as session, session.begin():
                log = EventLog(session)
                seen_version = log.current_version(deal_id, fact_key)
                snapshot = FactKeySnapshot.from_events(log.list_by_fact_key(deal_id, fact_key))

                if snapshot.current is None:
                    raise FactNotFoundError(f"No current value for {deal_id}/{fact_key}")

                log.bump_version(deal_id, fact_key, seen_version)
                deleted = log.mark_terminal(
                    snapshot.current.id,
                    FactEventType.DELETED,
                    resolved_by=deleted_by,
                    resolution_reason=f"Deleted by {deleted_by}: {reason}",
                )
        except IntegrityError as e:
            raise ConcurrentModificationError(f"Concurrent delete on {deal_id}/{fact_key}") from e

        logger.info(f"Fact deleted - Deal: {deal_id}, Key: {fact_key}, Event: {deleted.id}")
        return deleted


def create_ledger(settings: Any = None, enable_console_logging: bool = True) -> FactLedger:
    """
    Construit un ledger depuis les settings (logging, base, politique).
    """
    from factledger.common.logging import configure_logging
    from factledger.config.settings import get_settings
    from factledger.db.base import SessionLocal, create_db_engine, init_db

    if settings is None:
        settings = get_settings()
        engine = None
    else:
        engine = create_db_engine(settings.resolved_database_url, echo=settings.debug_mode)

    configure_logging(settings, enable_console=enable_console_logging)
    init_db(engine)

    return FactLedger(
        SessionLocal,
        policy=ArbitrationPolicy.from_settings(settings),
        retry_policy=RetryPolicy.from_settings(settings),
        low_confidence_threshold=settings.low_confidence_threshold,
    )
