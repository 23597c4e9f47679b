"""
Tests State Resolver (fonctions pures sur des events).
"""

from datetime import datetime, timedelta, timezone

from factledger.facts.resolver import FactKeySnapshot, resolve_current_facts, resolve_fact_key
from factledger.facts.schemas import FactCategory, FactEvent, FactEventType, FactSource, FactState


BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_event(sequence, event_type=FactEventType.CREATED, value=500000, fact_key="financial.arr",
               minutes=None, **kwargs):
    category = FactCategory(fact_key.split(".")[0].upper())
    defaults = dict(
        id=f"evt-{sequence}",
        sequence=sequence,
        deal_id="deal_2024_acme",
        fact_key=fact_key,
        category=category,
        value=value,
        display_value=str(value),
        source=FactSource.DOCUMENT_EXTRACTION,
        source_confidence=70,
        event_type=event_type,
        created_by="document-extractor",
        created_at=BASE_TIME + timedelta(minutes=sequence if minutes is None else minutes),
    )
    defaults.update(kwargs)
    return FactEvent(**defaults)


class TestResolveFactKey:
    """Tests dérivation de la valeur courante."""

    def test_empty(self):
        assert resolve_fact_key([]) is None

    def test_single_created(self):
        fact = resolve_fact_key([make_event(1)])

        assert fact.state == FactState.CONFIRMED
        assert fact.current_value == 500000
        assert fact.is_disputed is False
        assert fact.dispute_details is None
        assert fact.event_history is None
        assert fact.first_seen_at == fact.last_updated_at

    def test_superseded_chain(self):
        """La valeur courante est le CREATED le plus récent."""
        events = [
            make_event(1, FactEventType.SUPERSEDED),
            make_event(2, value=520000, supersedes_event_id="evt-1"),
        ]
        fact = resolve_fact_key(events)

        assert fact.current_value == 520000
        assert fact.current_event_id == "evt-2"
        assert fact.first_seen_at == events[0].created_at
        assert fact.last_updated_at == events[1].created_at

    def test_pending_review_does_not_supply_value(self):
        """Review ouverte: valeur courante inchangée, dispute exposée."""
        events = [
            make_event(1),
            make_event(
                2, FactEventType.PENDING_REVIEW, value=520000,
                source=FactSource.LLM_AGENT, source_confidence=72,
                supersedes_event_id="evt-1", reason="MINOR contradiction",
            ),
        ]
        fact = resolve_fact_key(events)

        assert fact.state == FactState.DISPUTED
        assert fact.current_value == 500000
        assert fact.is_disputed is True
        assert fact.dispute_details.review_id == "evt-2"
        assert fact.dispute_details.conflicting_value == 520000
        assert fact.dispute_details.conflicting_source == FactSource.LLM_AGENT
        assert fact.dispute_details.contradiction_reason == "MINOR contradiction"

    def test_disputed_markers_listed_as_candidates(self):
        events = [
            make_event(1),
            make_event(2, FactEventType.PENDING_REVIEW, value=520000, supersedes_event_id="evt-1"),
            make_event(3, FactEventType.DISPUTED, value=530000, supersedes_event_id="evt-2"),
        ]
        fact = resolve_fact_key(events)

        candidates = fact.dispute_details.additional_candidates
        assert [c.event_id for c in candidates] == ["evt-3"]
        assert fact.current_value == 500000

    def test_resolved_and_deleted_contribute_nothing(self):
        """Tout terminal -> NO_VALUE, historique conservé."""
        events = [
            make_event(1, FactEventType.DELETED),
            make_event(2, FactEventType.RESOLVED, value=520000, supersedes_event_id="evt-1"),
        ]
        fact = resolve_fact_key(events, include_history=True)

        assert fact.state == FactState.NO_VALUE
        assert fact.current_value is None
        assert fact.last_updated_at is None
        assert [e.id for e in fact.event_history] == ["evt-2", "evt-1"]

    def test_ties_broken_by_sequence(self):
        """Même created_at: l'ordre d'insertion départage."""
        events = [
            make_event(2, value=520000, minutes=5),
            make_event(1, FactEventType.SUPERSEDED, minutes=5),
        ]
        fact = resolve_fact_key(events, include_history=True)

        assert [e.id for e in fact.event_history] == ["evt-2", "evt-1"]
        assert fact.current_event_id == "evt-2"

    def test_deterministic(self):
        """Deux résolutions du même log donnent le même résultat."""
        events = [
            make_event(1),
            make_event(2, FactEventType.PENDING_REVIEW, value=520000, supersedes_event_id="evt-1"),
        ]
        assert resolve_fact_key(events, True) == resolve_fact_key(list(reversed(events)), True)


class TestResolveCurrentFacts:
    """Tests projection par deal."""

    def test_sorted_and_filtered(self):
        events = [
            make_event(1, fact_key="team.size", value=12),
            make_event(2, fact_key="financial.arr"),
            make_event(3, fact_key="market.tam", value=1e9, event_type=FactEventType.DELETED),
        ]

        facts = resolve_current_facts(events)
        assert [f.fact_key for f in facts] == ["financial.arr", "team.size"]

        with_empty = resolve_current_facts(events, include_empty=True)
        assert [f.fact_key for f in with_empty] == ["financial.arr", "market.tam", "team.size"]
        assert with_empty[1].state == FactState.NO_VALUE

        financial = resolve_current_facts(events, category=FactCategory.FINANCIAL)
        assert [f.fact_key for f in financial] == ["financial.arr"]


class TestSnapshot:
    """Tests FactKeySnapshot."""

    def test_rejected_against(self):
        """Seuls les candidats rejetés par l'arbitrage comptent, pas les reviews clôturées."""
        current = make_event(1)
        rejected = make_event(
            2, FactEventType.RESOLVED, value=400000, supersedes_event_id="evt-1",
            resolved_by="arbitration", resolved_at=BASE_TIME + timedelta(minutes=2),
        )
        dismissed = make_event(
            3, FactEventType.RESOLVED, value=450000, supersedes_event_id="evt-1",
            resolved_by="jane", resolved_at=BASE_TIME + timedelta(minutes=3),
        )
        snapshot = FactKeySnapshot.from_events([current, rejected, dismissed])

        assert snapshot.current.id == "evt-1"
        assert [e.id for e in snapshot.rejected_against("evt-1")] == ["evt-2"]
