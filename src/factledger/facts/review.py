"""
Review Workflow - clôture humaine des PENDING_REVIEW.

Décisions:
- ACCEPT_NEW: valeur courante SUPERSEDED, review promue en CREATED
- KEEP_EXISTING: review RESOLVED, valeur courante intacte
- OVERRIDE: valeur courante SUPERSEDED, review RESOLVED, nouvel event
  HUMAN_OVERRIDE (confiance 100)

Chaque clôture agit sur la valeur courante au moment de la clôture et résout
aussi les marqueurs DISPUTED rattachés à la review.
"""

import logging
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from factledger.common.retry import RetryPolicy, run_with_retry
from factledger.facts.errors import ConcurrentModificationError, ReviewNotFoundError
from factledger.facts.event_log import EventLog
from factledger.facts.resolver import FactKeySnapshot, competing_candidate
from factledger.facts.schemas import (
    FactEvent,
    FactEventType,
    FactSource,
    PendingReview,
    ResolveResult,
    ReviewDecision,
    ReviewResolution,
)

logger = logging.getLogger(__name__)

RESOLUTION_PREFIXES = {
    ReviewDecision.ACCEPT_NEW: "Accepted by reviewer",
    ReviewDecision.KEEP_EXISTING: "Dismissed by reviewer",
    ReviewDecision.OVERRIDE: "Overridden by reviewer",
}

HUMAN_OVERRIDE_CONFIDENCE = 100


def _pending_review(review: FactEvent, snapshot: FactKeySnapshot) -> PendingReview:
    existing = snapshot.current
    return PendingReview(
        review_id=review.id,
        deal_id=review.deal_id,
        fact_key=review.fact_key,
        category=review.category,
        new_value=review.value,
        new_display_value=review.display_value,
        new_source=review.source,
        new_confidence=review.source_confidence,
        existing_event_id=existing.id if existing else None,
        existing_value=existing.value if existing else None,
        existing_display_value=existing.display_value if existing else None,
        existing_source=existing.source if existing else None,
        existing_confidence=existing.source_confidence if existing else None,
        contradiction_reason=review.reason,
        competing_candidates=[competing_candidate(marker) for marker in snapshot.disputed],
        created_at=review.created_at,
    )


class ReviewWorkflow:
    """Liste et clôture des reviews ouvertes."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.session_factory = session_factory
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    def list_pending_reviews(self, deal_id: str) -> List[PendingReview]:
        """Reviews ouvertes du deal, plus ancienne d'abord."""
        with self.session_factory() as session:
            log = EventLog(session)
            reviews = []
            for review in log.list_pending(deal_id):
                snapshot = FactKeySnapshot.from_events(
                    log.list_by_fact_key(review.deal_id, review.fact_key)
                )
                reviews.append(_pending_review(review, snapshot))

        logger.debug(f"Pending reviews listed - Deal: {deal_id}, Count: {len(reviews)}")
        return reviews

    def resolve_review(self, resolution: ReviewResolution, deal_id: Optional[str] = None) -> ResolveResult:
        """
        Applique une décision humaine de façon atomique.

        Args:
            resolution: Décision, raison et valeur imposée éventuelle
            deal_id: Deal attendu (une review d'un autre deal est introuvable)

        Raises:
            ReviewNotFoundError: Review inexistante ou déjà clôturée
            ArbitrationConflictError: Conflits de concurrence persistants
        """
        return run_with_retry(
            lambda: self._close(resolution, deal_id),
            self.retry_policy,
            description=f"Review closure {resolution.review_id}",
            sleep=self.sleep,
        )

    def _close(self, resolution: ReviewResolution, deal_id: Optional[str]) -> ResolveResult:
        try:
            with self.session_factory() as session, session.begin():
                log = EventLog(session)

                # deal_id et fact_key sont immuables: seul le statut est relu après la version
                review = log.find(resolution.review_id)
                if review is None or (deal_id is not None and review.deal_id != deal_id):
                    raise ReviewNotFoundError(f"Review not found: {resolution.review_id}")

                session.expire_all()
                seen_version = log.current_version(review.deal_id, review.fact_key)
                snapshot = FactKeySnapshot.from_events(
                    log.list_by_fact_key(review.deal_id, review.fact_key)
                )
                review = next(e for e in snapshot.events if e.id == resolution.review_id)
                if review.event_type != FactEventType.PENDING_REVIEW:
                    raise ReviewNotFoundError(f"Review not found: {resolution.review_id}")
                log.bump_version(review.deal_id, review.fact_key, seen_version)

                current_event_id = self._apply(log, review, snapshot, resolution)

        except IntegrityError as e:
            raise ConcurrentModificationError(
                f"Concurrent closure of review {resolution.review_id}"
            ) from e

        logger.info(
            f"Review resolved - ID: {resolution.review_id}, Decision: {resolution.decision.value}, "
            f"By: {resolution.resolved_by}, Current: {current_event_id}"
        )
        return ResolveResult(
            success=True,
            review_id=resolution.review_id,
            decision=resolution.decision,
            current_event_id=current_event_id,
        )

    def _apply(
        self,
        log: EventLog,
        review: FactEvent,
        snapshot: FactKeySnapshot,
        resolution: ReviewResolution,
    ) -> Optional[str]:
        decision = resolution.decision
        current = snapshot.current
        audit_reason = f"{RESOLUTION_PREFIXES[decision]}: {resolution.reason}"
        audit = {"resolved_by": resolution.resolved_by, "resolution_reason": audit_reason}

        if decision == ReviewDecision.KEEP_EXISTING:
            log.mark_terminal(review.id, FactEventType.RESOLVED, **audit)
            current_event_id = current.id if current else None

        elif decision == ReviewDecision.ACCEPT_NEW:
            if current is not None:
                log.mark_terminal(current.id, FactEventType.SUPERSEDED, **audit)
            log.promote(review.id, **audit)
            current_event_id = review.id

        else:
            if current is not None:
                log.mark_terminal(current.id, FactEventType.SUPERSEDED, **audit)
            log.mark_terminal(review.id, FactEventType.RESOLVED, **audit)
            override = log.append(
                deal_id=review.deal_id,
                fact_key=review.fact_key,
                value=resolution.override_value,
                display_value=resolution.override_display_value,
                unit=review.unit,
                source=FactSource.HUMAN_OVERRIDE,
                source_confidence=HUMAN_OVERRIDE_CONFIDENCE,
                created_by=resolution.resolved_by,
                event_type=FactEventType.CREATED,
                supersedes_event_id=current.id if current else review.id,
                reason=resolution.reason,
            )
            current_event_id = override.id

        for marker in snapshot.disputed:
            log.mark_terminal(marker.id, FactEventType.RESOLVED, **audit)

        return current_event_id
