"""
State Resolver - projection "vérité courante" dérivée du log.

Fonctions pures sur une liste d'events: jamais de cache ni de mutation, le
résultat est recalculable à tout moment depuis le log seul.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from factledger.facts.event_log import EventLog
from factledger.facts.schemas import (
    ARBITRATION_ACTOR,
    VALUE_EVENT_TYPES,
    CompetingCandidate,
    CurrentFact,
    DisputeDetails,
    FactCategory,
    FactEvent,
    FactEventType,
    FactState,
)

logger = logging.getLogger(__name__)


@dataclass
class FactKeySnapshot:
    """Etat actif d'une fact_key à un instant donné."""

    events: List[FactEvent]
    current: Optional[FactEvent] = None
    pending: Optional[FactEvent] = None
    # Marqueurs DISPUTED rattachés à la review ouverte (plus ancien d'abord)
    disputed: List[FactEvent] = field(default_factory=list)

    @classmethod
    def from_events(cls, events: Sequence[FactEvent]) -> "FactKeySnapshot":
        ordered = sorted(events, key=lambda e: e.ordering_key)
        newest_first = list(reversed(ordered))

        current = next((e for e in newest_first if e.event_type in VALUE_EVENT_TYPES), None)
        pending = next(
            (e for e in newest_first if e.event_type == FactEventType.PENDING_REVIEW), None
        )

        disputed: List[FactEvent] = []
        if pending is not None:
            disputed = [
                e for e in ordered
                if e.event_type == FactEventType.DISPUTED and e.supersedes_event_id == pending.id
            ]

        return cls(events=ordered, current=current, pending=pending, disputed=disputed)

    def rejected_against(self, event_id: str) -> List[FactEvent]:
        """Candidats nés RESOLVED (rejetés) face à l'event donné."""
        return [
            e for e in self.events
            if e.event_type == FactEventType.RESOLVED
            and e.supersedes_event_id == event_id
            and e.resolved_by == ARBITRATION_ACTOR
        ]


def competing_candidate(event: FactEvent) -> CompetingCandidate:
    return CompetingCandidate(
        event_id=event.id,
        value=event.value,
        display_value=event.display_value,
        source=event.source,
        source_confidence=event.source_confidence,
        created_by=event.created_by,
        created_at=event.created_at,
    )


def _dispute_details(snapshot: FactKeySnapshot) -> Optional[DisputeDetails]:
    pending = snapshot.pending
    if pending is None:
        return None

    return DisputeDetails(
        review_id=pending.id,
        conflicting_value=pending.value,
        conflicting_display_value=pending.display_value,
        conflicting_source=pending.source,
        conflicting_confidence=pending.source_confidence,
        contradiction_reason=pending.reason,
        additional_candidates=[competing_candidate(e) for e in snapshot.disputed],
    )


def resolve_fact_key(events: Sequence[FactEvent], include_history: bool = False) -> Optional[CurrentFact]:
    """
    Dérive l'état courant d'une fact_key.

    Args:
        events: Events d'une seule (deal, fact_key), ordre quelconque
        include_history: Joindre l'historique complet (plus récent d'abord)

    Returns:
        CurrentFact, ou None si aucun event
    """
    if not events:
        return None

    snapshot = FactKeySnapshot.from_events(events)
    current = snapshot.current
    first = snapshot.events[0]

    if snapshot.pending is not None:
        state = FactState.DISPUTED
    elif current is not None:
        state = FactState.CONFIRMED
    else:
        state = FactState.NO_VALUE

    fact = CurrentFact(
        deal_id=first.deal_id,
        fact_key=first.fact_key,
        category=first.category,
        state=state,
        is_disputed=snapshot.pending is not None,
        dispute_details=_dispute_details(snapshot),
        first_seen_at=first.created_at,
    )

    if current is not None:
        fact.current_event_id = current.id
        fact.current_value = current.value
        fact.current_display_value = current.display_value
        fact.current_unit = current.unit
        fact.current_source = current.source
        fact.current_confidence = current.source_confidence
        fact.last_updated_at = current.created_at

    if include_history:
        fact.event_history = list(reversed(snapshot.events))

    return fact


def resolve_current_facts(
    events: Iterable[FactEvent],
    category: Optional[FactCategory] = None,
    include_history: bool = False,
    include_empty: bool = False,
) -> List[CurrentFact]:
    """
    Projection courante de toutes les fact_keys d'un ensemble d'events.

    Les fact_keys sans valeur ni dispute (NO_VALUE) ne sont listées qu'avec
    include_empty. Résultat trié par fact_key.
    """
    grouped: Dict[Tuple[str, str], List[FactEvent]] = defaultdict(list)
    for event in events:
        if category is not None and event.category != category:
            continue
        grouped[(event.deal_id, event.fact_key)].append(event)

    facts: List[CurrentFact] = []
    for key in sorted(grouped):
        fact = resolve_fact_key(grouped[key], include_history=include_history)
        if fact is None:
            continue
        if fact.state == FactState.NO_VALUE and not include_empty:
            continue
        facts.append(fact)

    return facts


class StateResolver:
    """Lecture de la projection courante depuis la base (lecture seule)."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def get_current_facts(
        self,
        deal_id: str,
        category: Optional[FactCategory] = None,
        include_history: bool = False,
        include_empty: bool = False,
    ) -> List[CurrentFact]:
        with self.session_factory() as session:
            events = EventLog(session).list_by_deal(deal_id)

        facts = resolve_current_facts(
            events,
            category=category,
            include_history=include_history,
            include_empty=include_empty,
        )
        logger.debug(f"Current facts resolved - Deal: {deal_id}, Facts: {len(facts)}")
        return facts

    def get_current_fact(
        self,
        deal_id: str,
        fact_key: str,
        include_history: bool = False,
    ) -> Optional[CurrentFact]:
        with self.session_factory() as session:
            events = EventLog(session).list_by_fact_key(deal_id, fact_key)
        return resolve_fact_key(events, include_history=include_history)

    def get_fact_history(self, deal_id: str, fact_key: str) -> List[FactEvent]:
        """Historique complet, ordre createdAt croissant."""
        with self.session_factory() as session:
            return EventLog(session).list_by_fact_key(deal_id, fact_key)
