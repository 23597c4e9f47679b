"""
Arbitration Engine - décision et application d'une valeur candidate.

Politique (ordre de priorité):
1. Pas de valeur courante -> CREATED (ACCEPTED)
2. Valeur équivalente à la courante -> no-op (UNCHANGED)
3. Source toujours prioritaire ou candidat dominant -> SUPERSEDED
4. Valeur courante dominante (AUTO_REJECT) -> candidat tracé RESOLVED (REJECTED)
5. Sinon escalade: PENDING_REVIEW, ou fusion dans la review déjà ouverte

La décision est une fonction pure (decide). L'application tourne dans une
transaction par (deal, fact_key), protégée par le jeton de version et rejouée
sur ConcurrentModificationError.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from factledger.common.retry import RetryPolicy, run_with_retry
from factledger.config.settings import DEFAULT_SOURCE_RANKS
from factledger.facts.errors import ConcurrentModificationError, FactValidationError
from factledger.facts.event_log import EventLog
from factledger.facts.fact_keys import (
    ValueKind,
    category_for_fact_key,
    get_fact_key_definition,
    is_valid_enum_value,
)
from factledger.facts.normalization import (
    Contradiction,
    format_contradiction_reason,
    format_value,
    measure_contradiction,
    values_equivalent,
)
from factledger.facts.resolver import FactKeySnapshot
from factledger.facts.schemas import (
    ARBITRATION_ACTOR,
    FactEvent,
    FactEventType,
    FactSource,
    FactSubmission,
    SubmissionStatus,
    SubmitResult,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArbitrationPolicy:
    """Paramètres de la politique d'arbitrage (aucune constante en dur dans decide)."""

    source_ranks: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_SOURCE_RANKS))
    confidence_margin: int = 15
    always_supersede_sources: FrozenSet[str] = frozenset({FactSource.HUMAN_OVERRIDE.value})
    auto_reject_enabled: bool = True
    numeric_tolerance: float = 0.001
    minor_threshold: float = 0.05
    significant_threshold: float = 0.15
    major_threshold: float = 0.30
    strict_categories: bool = False

    @classmethod
    def from_settings(cls, settings: Any) -> "ArbitrationPolicy":
        return cls(
            source_ranks=dict(settings.source_ranks),
            confidence_margin=settings.arbitration_confidence_margin,
            always_supersede_sources=frozenset(settings.always_supersede_sources),
            auto_reject_enabled=settings.auto_reject_enabled,
            numeric_tolerance=settings.numeric_equivalence_tolerance,
            minor_threshold=settings.contradiction_minor_threshold,
            significant_threshold=settings.contradiction_significant_threshold,
            major_threshold=settings.contradiction_major_threshold,
            strict_categories=settings.strict_fact_categories,
        )

    def rank_of(self, source: FactSource) -> int:
        return self.source_ranks.get(FactSource(source).value, 0)

    def dominates(
        self,
        source: FactSource,
        confidence: int,
        other_source: FactSource,
        other_confidence: int,
    ) -> bool:
        """Rang strictement supérieur, ou même rang avec au moins la marge de confiance."""
        rank, other_rank = self.rank_of(source), self.rank_of(other_source)
        if rank != other_rank:
            return rank > other_rank
        return confidence >= other_confidence + self.confidence_margin

    def always_supersedes(self, source: FactSource) -> bool:
        return FactSource(source).value in self.always_supersede_sources


class ArbitrationDecision(str, Enum):
    ACCEPT = "ACCEPT"
    NO_OP = "NO_OP"
    SUPERSEDE = "SUPERSEDE"
    REJECT = "REJECT"
    REJECT_DUPLICATE = "REJECT_DUPLICATE"
    ESCALATE = "ESCALATE"
    MERGE = "MERGE"
    DUPLICATE_OF_PENDING = "DUPLICATE_OF_PENDING"


# Décisions sans écriture (vérifiables avant la transaction)
NO_WRITE_DECISIONS = frozenset({
    ArbitrationDecision.NO_OP,
    ArbitrationDecision.REJECT_DUPLICATE,
    ArbitrationDecision.DUPLICATE_OF_PENDING,
})


@dataclass(frozen=True)
class Decision:
    action: ArbitrationDecision
    reason: str
    target: Optional[FactEvent] = None
    contradiction: Optional[Contradiction] = None


def _conflict_reason(
    submission: FactSubmission,
    existing: FactEvent,
    policy: ArbitrationPolicy,
) -> Tuple[Optional[Contradiction], str]:
    contradiction = measure_contradiction(
        submission.fact_key,
        submission.value,
        submission.source,
        existing.value,
        existing.source,
        minor_threshold=policy.minor_threshold,
        significant_threshold=policy.significant_threshold,
        major_threshold=policy.major_threshold,
    )
    if contradiction is not None:
        return contradiction, format_contradiction_reason(contradiction)

    return None, (
        f"Conflicting value on \"{submission.fact_key}\": "
        f"{format_value(existing.value)} ({existing.source.value}) vs "
        f"{format_value(submission.value)} ({submission.source.value})"
    )


def decide(
    submission: FactSubmission,
    snapshot: FactKeySnapshot,
    policy: ArbitrationPolicy,
) -> Decision:
    """
    Décision déterministe pour une valeur candidate face à l'état actif.

    Fonction pure: aucun accès base, aucun effet de bord.
    """
    current = snapshot.current
    pending = snapshot.pending
    key = submission.fact_key

    if current is None:
        return Decision(ArbitrationDecision.ACCEPT, f"No current value for {key}")

    if values_equivalent(key, submission.value, current.value, policy.numeric_tolerance):
        return Decision(
            ArbitrationDecision.NO_OP,
            f"Value equivalent to current event {current.id}",
            target=current,
        )

    if policy.always_supersedes(submission.source):
        return Decision(
            ArbitrationDecision.SUPERSEDE,
            f"{submission.source.value} always supersedes",
            target=current,
        )

    if policy.dominates(
        submission.source, submission.source_confidence,
        current.source, current.source_confidence,
    ):
        return Decision(
            ArbitrationDecision.SUPERSEDE,
            f"{submission.source.value} ({submission.source_confidence}) dominates "
            f"{current.source.value} ({current.source_confidence})",
            target=current,
        )

    contradiction, conflict = _conflict_reason(submission, current, policy)

    if policy.auto_reject_enabled and policy.rank_of(current.source) >= policy.rank_of(submission.source) \
            and current.source_confidence >= submission.source_confidence + policy.confidence_margin:
        for rejected in snapshot.rejected_against(current.id):
            if rejected.source == submission.source and values_equivalent(
                key, submission.value, rejected.value, policy.numeric_tolerance
            ):
                return Decision(
                    ArbitrationDecision.REJECT_DUPLICATE,
                    f"Candidate already rejected as {rejected.id}",
                    target=rejected,
                )
        return Decision(
            ArbitrationDecision.REJECT,
            f"Current value dominates. {conflict}",
            target=current,
            contradiction=contradiction,
        )

    if pending is not None:
        if values_equivalent(key, submission.value, pending.value, policy.numeric_tolerance):
            return Decision(
                ArbitrationDecision.DUPLICATE_OF_PENDING,
                f"Value equivalent to pending review {pending.id}",
                target=pending,
            )
        for marker in snapshot.disputed:
            if marker.source == submission.source and values_equivalent(
                key, submission.value, marker.value, policy.numeric_tolerance
            ):
                return Decision(
                    ArbitrationDecision.DUPLICATE_OF_PENDING,
                    f"Value already merged into pending review {pending.id} as {marker.id}",
                    target=marker,
                )
        return Decision(
            ArbitrationDecision.MERGE,
            conflict,
            target=pending,
            contradiction=contradiction,
        )

    return Decision(
        ArbitrationDecision.ESCALATE,
        conflict,
        target=current,
        contradiction=contradiction,
    )


class ArbitrationEngine:
    """
    Applique les décisions d'arbitrage de façon atomique par (deal, fact_key).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        policy: Optional[ArbitrationPolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.session_factory = session_factory
        self.policy = policy or ArbitrationPolicy()
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    def submit(self, submission: FactSubmission) -> SubmitResult:
        """
        Arbitre et applique une valeur candidate.

        Raises:
            FactValidationError: Candidat invalide (avant toute écriture)
            ArbitrationConflictError: Conflits de concurrence persistants
        """
        self.validate(submission)

        # Idempotence vérifiée hors transaction: les resoumissions restent peu coûteuses
        precheck = self._precheck(submission)
        if precheck is not None:
            return precheck

        return run_with_retry(
            lambda: self._decide_and_apply(submission),
            self.retry_policy,
            description=f"Arbitration {submission.deal_id}/{submission.fact_key}",
            sleep=self.sleep,
        )

    def validate(self, submission: FactSubmission) -> None:
        if self.policy.strict_categories:
            category_for_fact_key(submission.fact_key, strict=True)

        definition = get_fact_key_definition(submission.fact_key)
        if definition and definition.kind == ValueKind.ENUM and isinstance(submission.value, str):
            if not is_valid_enum_value(submission.fact_key, submission.value):
                raise FactValidationError(
                    f"Invalid value '{submission.value}' for {submission.fact_key} "
                    f"(expected one of: {', '.join(definition.enum_values)})"
                )

    def _precheck(self, submission: FactSubmission) -> Optional[SubmitResult]:
        with self.session_factory() as session:
            events = EventLog(session).list_by_fact_key(submission.deal_id, submission.fact_key)

        decision = decide(submission, FactKeySnapshot.from_events(events), self.policy)
        if decision.action in NO_WRITE_DECISIONS:
            return self._no_write_result(submission, decision)
        return None

    def _decide_and_apply(self, submission: FactSubmission) -> SubmitResult:
        try:
            with self.session_factory() as session, session.begin():
                log = EventLog(session, strict_categories=self.policy.strict_categories)

                # Version lue avant les events: un writer intercalé rend le bump caduc
                seen_version = log.current_version(submission.deal_id, submission.fact_key)
                snapshot = FactKeySnapshot.from_events(
                    log.list_by_fact_key(submission.deal_id, submission.fact_key)
                )

                decision = decide(submission, snapshot, self.policy)
                if decision.action in NO_WRITE_DECISIONS:
                    return self._no_write_result(submission, decision)

                log.bump_version(submission.deal_id, submission.fact_key, seen_version)
                return self._apply(log, submission, decision)

        except IntegrityError as e:
            raise ConcurrentModificationError(
                f"Concurrent write on {submission.deal_id}/{submission.fact_key}"
            ) from e

    def _no_write_result(self, submission: FactSubmission, decision: Decision) -> SubmitResult:
        target = decision.target
        logger.debug(
            f"Submission is a no-op - Deal: {submission.deal_id}, Key: {submission.fact_key}, "
            f"Decision: {decision.action.value}"
        )

        if decision.action == ArbitrationDecision.NO_OP:
            return SubmitResult(
                status=SubmissionStatus.UNCHANGED, event_id=target.id, reason=decision.reason
            )
        if decision.action == ArbitrationDecision.REJECT_DUPLICATE:
            return SubmitResult(
                status=SubmissionStatus.REJECTED, event_id=target.id, reason=decision.reason
            )
        # Marqueur DISPUTED: la review est l'event qu'il pointe
        review_id = target.supersedes_event_id if target.event_type == FactEventType.DISPUTED else target.id
        return SubmitResult(
            status=SubmissionStatus.ESCALATED,
            event_id=target.id,
            review_id=review_id,
            reason=decision.reason,
        )

    def _append_candidate(
        self,
        log: EventLog,
        submission: FactSubmission,
        event_type: FactEventType,
        supersedes_event_id: Optional[str] = None,
        reason: Optional[str] = None,
        **extra: Any,
    ) -> FactEvent:
        return log.append(
            deal_id=submission.deal_id,
            fact_key=submission.fact_key,
            value=submission.value,
            display_value=submission.display_value,
            unit=submission.unit,
            source=submission.source,
            source_confidence=submission.source_confidence,
            created_by=submission.created_by,
            event_type=event_type,
            supersedes_event_id=supersedes_event_id,
            reason=reason,
            source_document_id=submission.source_document_id,
            extracted_text=submission.extracted_text,
            **extra,
        )

    @staticmethod
    def _with_producer_note(reason: str, submission: FactSubmission) -> str:
        if submission.reason:
            return f"{reason}. Producer note: {submission.reason}"
        return reason

    def _apply(self, log: EventLog, submission: FactSubmission, decision: Decision) -> SubmitResult:
        action = decision.action
        target = decision.target

        if action == ArbitrationDecision.ACCEPT:
            event = self._append_candidate(
                log, submission, FactEventType.CREATED, reason=submission.reason
            )
            logger.info(
                f"Fact accepted - Deal: {submission.deal_id}, Key: {submission.fact_key}, "
                f"Event: {event.id}"
            )
            return SubmitResult(
                status=SubmissionStatus.ACCEPTED, event_id=event.id, reason=decision.reason
            )

        if action == ArbitrationDecision.SUPERSEDE:
            log.mark_terminal(target.id, FactEventType.SUPERSEDED)
            event = self._append_candidate(
                log,
                submission,
                FactEventType.CREATED,
                supersedes_event_id=target.id,
                reason=submission.reason,
            )
            logger.info(
                f"Fact superseded - Deal: {submission.deal_id}, Key: {submission.fact_key}, "
                f"Old: {target.id}, New: {event.id}"
            )
            return SubmitResult(
                status=SubmissionStatus.SUPERSEDED,
                event_id=event.id,
                superseded_event_id=target.id,
                reason=decision.reason,
            )

        if action == ArbitrationDecision.REJECT:
            event = self._append_candidate(
                log,
                submission,
                FactEventType.RESOLVED,
                supersedes_event_id=target.id,
                reason=submission.reason,
                resolved_by=ARBITRATION_ACTOR,
                resolution_reason=f"Rejected by arbitration: {decision.reason}",
            )
            logger.info(
                f"Fact rejected - Deal: {submission.deal_id}, Key: {submission.fact_key}, "
                f"Event: {event.id}, Current: {target.id}"
            )
            return SubmitResult(
                status=SubmissionStatus.REJECTED, event_id=event.id, reason=decision.reason
            )

        if action == ArbitrationDecision.MERGE:
            marker = self._append_candidate(
                log,
                submission,
                FactEventType.DISPUTED,
                supersedes_event_id=target.id,
                reason=self._with_producer_note(decision.reason, submission),
            )
            logger.info(
                f"Conflict merged into pending review - Deal: {submission.deal_id}, "
                f"Key: {submission.fact_key}, Review: {target.id}, Marker: {marker.id}"
            )
            return SubmitResult(
                status=SubmissionStatus.ESCALATED,
                event_id=marker.id,
                review_id=target.id,
                reason=decision.reason,
            )

        # ESCALATE
        review = self._append_candidate(
            log,
            submission,
            FactEventType.PENDING_REVIEW,
            supersedes_event_id=target.id,
            reason=self._with_producer_note(decision.reason, submission),
        )
        logger.info(
            f"Fact escalated to review - Deal: {submission.deal_id}, Key: {submission.fact_key}, "
            f"Review: {review.id}, Current: {target.id}"
        )
        return SubmitResult(
            status=SubmissionStatus.ESCALATED,
            event_id=review.id,
            review_id=review.id,
            reason=decision.reason,
        )


def summarize_decisions(results: List[SubmitResult]) -> Dict[str, int]:
    """Compte les résultats d'un lot par statut."""
    counts: Dict[str, int] = {}
    for result in results:
        counts[result.status.value] = counts.get(result.status.value, 0) + 1
    return counts
