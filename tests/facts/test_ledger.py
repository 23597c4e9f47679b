"""
Tests FactLedger (requêtes, suppression, lot, résumé, export JSON, invariants).
"""

from collections import Counter

import pytest

from factledger.facts.errors import FactNotFoundError, FactValidationError
from factledger.facts.schemas import (
    TERMINAL_EVENT_TYPES,
    FactEventType,
    FactState,
    SubmissionStatus,
)


DEAL_ID = "deal_2024_acme"


@pytest.fixture
def populated(ledger, submit):
    """Deal avec valeurs confirmées, une dispute et une valeur supprimée."""
    submit("financial.arr", 500000, unit="EUR")
    submit("financial.arr", 520000, source="LLM_AGENT", source_confidence=72, created_by="agent")
    submit("team.size", 12, source="FOUNDER_RESPONSE", source_confidence=90, created_by="founder")
    submit("market.tam", 2_000_000_000, source="LLM_AGENT", source_confidence=55, created_by="agent")
    submit("other.website", "https://acme.io", source="LLM_AGENT", source_confidence=60, created_by="agent")
    ledger.delete_fact(DEAL_ID, "other.website", "jane", "Wrong company")
    return ledger


def assert_invariants(ledger, deal_id=DEAL_ID):
    """
    Par fact_key: au plus une valeur active et une review ouverte; tout
    marqueur DISPUTED actif annote cette review unique.
    """
    for fact in ledger.get_current_facts(deal_id, include_empty=True):
        history = ledger.get_fact_history(deal_id, fact.fact_key)
        active = [e for e in history if e.event_type not in TERMINAL_EVENT_TYPES]
        counts = Counter(e.event_type for e in active)

        assert counts[FactEventType.CREATED] <= 1
        assert counts[FactEventType.PENDING_REVIEW] <= 1

        reviews = [e.id for e in active if e.event_type == FactEventType.PENDING_REVIEW]
        markers = [e for e in active if e.event_type == FactEventType.DISPUTED]
        if not reviews:
            assert markers == []
        for marker in markers:
            assert marker.supersedes_event_id == reviews[0]


class TestGetCurrentFacts:
    """Tests projection courante."""

    def test_states(self, populated):
        facts = {f.fact_key: f for f in populated.get_current_facts(DEAL_ID, include_empty=True)}

        assert facts["financial.arr"].state == FactState.DISPUTED
        assert facts["team.size"].state == FactState.CONFIRMED
        assert facts["other.website"].state == FactState.NO_VALUE
        assert_invariants(populated)

    def test_default_excludes_empty(self, populated):
        keys = [f.fact_key for f in populated.get_current_facts(DEAL_ID)]
        assert keys == ["financial.arr", "market.tam", "team.size"]

    def test_category_filter(self, populated):
        facts = populated.get_current_facts(DEAL_ID, category="team")
        assert [f.fact_key for f in facts] == ["team.size"]

    def test_invalid_category(self, populated):
        with pytest.raises(FactValidationError):
            populated.get_current_facts(DEAL_ID, category="esg")

    def test_history_only_on_request(self, populated):
        default = populated.get_current_fact(DEAL_ID, "financial.arr")
        detailed = populated.get_current_fact(DEAL_ID, "financial.arr", include_history=True)

        assert default.event_history is None
        assert len(detailed.event_history) == 2
        assert detailed.event_history[0].event_type == FactEventType.PENDING_REVIEW

    def test_disputed_facts(self, populated):
        disputed = populated.get_disputed_facts(DEAL_ID)
        assert [f.fact_key for f in disputed] == ["financial.arr"]
        assert disputed[0].dispute_details.conflicting_value == 520000

    def test_unknown_key(self, ledger):
        assert ledger.get_current_fact(DEAL_ID, "financial.arr") is None

    def test_queries_normalize_fact_key(self, ledger, submit):
        submit(fact_key="Financial.ARR ")

        fact = ledger.get_current_fact(DEAL_ID, " Financial.ARR")

        assert fact.fact_key == "financial.arr"
        assert len(ledger.get_fact_history(DEAL_ID, "FINANCIAL.arr")) == 1

    def test_resolver_is_deterministic(self, populated):
        first = populated.get_current_facts(DEAL_ID, include_history=True, include_empty=True)
        second = populated.get_current_facts(DEAL_ID, include_history=True, include_empty=True)
        assert first == second


class TestDeleteFact:
    """Tests suppression (tombstone)."""

    def test_delete_tombstones_current(self, ledger, submit):
        created = submit()

        deleted = ledger.delete_fact(DEAL_ID, "financial.arr", "jane", "Duplicate entry")

        assert deleted.id == created.event_id
        assert deleted.event_type == FactEventType.DELETED
        assert deleted.resolution_reason == "Deleted by jane: Duplicate entry"
        assert ledger.get_current_fact(DEAL_ID, "financial.arr").state == FactState.NO_VALUE
        assert len(ledger.get_fact_history(DEAL_ID, "financial.arr")) == 1

    def test_delete_then_resubmit(self, ledger, submit):
        submit()
        ledger.delete_fact(DEAL_ID, "financial.arr", "jane", "Duplicate entry")

        result = submit(value=450000)

        assert result.status == SubmissionStatus.ACCEPTED
        assert ledger.get_current_fact(DEAL_ID, "financial.arr").current_value == 450000

    def test_delete_requires_reason(self, ledger, submit):
        submit()
        with pytest.raises(FactValidationError):
            ledger.delete_fact(DEAL_ID, "financial.arr", "jane", "")

    def test_delete_without_current_value(self, ledger):
        with pytest.raises(FactNotFoundError):
            ledger.delete_fact(DEAL_ID, "financial.arr", "jane", "Nothing there")


class TestSubmitFacts:
    """Tests ingestion par lot."""

    def test_batch_results(self, ledger):
        results = ledger.submit_facts(DEAL_ID, [
            {"fact_key": "financial.arr", "value": 500000, "source": "DOCUMENT_EXTRACTION",
             "source_confidence": 70, "created_by": "document-extractor"},
            {"fact_key": "financial.arr", "value": 500000, "source": "DOCUMENT_EXTRACTION",
             "source_confidence": 70, "created_by": "document-extractor"},
            {"fact_key": "team.size", "value": 12, "source": "FOUNDER_RESPONSE",
             "source_confidence": 90, "created_by": "founder"},
        ])

        assert [r.status for r in results] == [
            SubmissionStatus.ACCEPTED,
            SubmissionStatus.UNCHANGED,
            SubmissionStatus.ACCEPTED,
        ]

    def test_batch_validated_before_writes(self, ledger):
        """❌ Un candidat invalide bloque tout le lot."""
        with pytest.raises(FactValidationError):
            ledger.submit_facts(DEAL_ID, [
                {"fact_key": "financial.arr", "value": 500000, "source": "DOCUMENT_EXTRACTION",
                 "source_confidence": 70, "created_by": "document-extractor"},
                {"fact_key": "team.size", "value": 12, "source": "FOUNDER_RESPONSE",
                 "source_confidence": 900, "created_by": "founder"},
            ])

        assert ledger.get_current_facts(DEAL_ID) == []

    def test_batch_rejects_foreign_deal(self, ledger):
        with pytest.raises(FactValidationError):
            ledger.submit_facts(DEAL_ID, [
                {"deal_id": "other_deal", "fact_key": "financial.arr", "value": 1,
                 "source": "LLM_AGENT", "source_confidence": 50, "created_by": "agent"},
            ])


class TestSummaryAndExport:
    """Tests résumé et export JSON."""

    def test_summary(self, populated):
        summary = populated.get_fact_store_summary(DEAL_ID)

        assert summary.total_facts == 3
        assert summary.by_category == {"FINANCIAL": 1, "MARKET": 1, "TEAM": 1}
        assert summary.by_source == {"DOCUMENT_EXTRACTION": 1, "FOUNDER_RESPONSE": 1, "LLM_AGENT": 1}
        assert summary.average_confidence == 72
        assert summary.disputed_count == 1
        assert summary.low_confidence_count == 1

    def test_empty_summary(self, ledger):
        summary = ledger.get_fact_store_summary(DEAL_ID)
        assert summary.total_facts == 0
        assert summary.average_confidence == 0

    def test_format_facts_as_json(self, populated):
        exported = populated.format_facts_as_json(
            populated.get_current_facts(DEAL_ID, include_empty=True)
        )

        assert set(exported) == {"FINANCIAL", "MARKET", "TEAM"}
        assert exported["FINANCIAL"]["financial.arr"] == {
            "value": 500000,
            "display": "500,000 EUR",
            "confidence": 70,
            "source": "DOCUMENT_EXTRACTION",
            "disputed": True,
        }
        assert "disputed" not in exported["TEAM"]["team.size"]


class TestInvariants:
    """Invariants après une séquence mixte d'opérations."""

    def test_mixed_sequence(self, ledger, submit):
        submit()
        review = submit(value=520000, source="LLM_AGENT", source_confidence=72, created_by="agent")
        submit(value=540000, source="LLM_AGENT", source_confidence=68, created_by="agent-2")
        submit(value=505000, source="FOUNDER_RESPONSE", source_confidence=85, created_by="founder")
        ledger.resolve_review(review.review_id, "OVERRIDE", "Audited", override_value=512000)
        submit(value=300000, source="LLM_AGENT", source_confidence=20, created_by="agent")
        submit(value=600000, source="DOCUMENT_EXTRACTION", source_confidence=75, created_by="parser")

        assert_invariants(ledger)
        assert ledger.get_current_fact(DEAL_ID, "financial.arr").current_value == 512000

    def test_history_is_immutable(self, ledger, submit):
        """Seuls event_type et l'audit de clôture évoluent."""
        submit()
        before = {e.id: e for e in ledger.get_fact_history(DEAL_ID, "financial.arr")}
        review = submit(value=520000, source="LLM_AGENT", source_confidence=72, created_by="agent")
        ledger.resolve_review(review.review_id, "ACCEPT_NEW", "Confirmed")

        after = {e.id: e for e in ledger.get_fact_history(DEAL_ID, "financial.arr")}
        for event_id, event in before.items():
            assert after[event_id].value == event.value
            assert after[event_id].source == event.source
            assert after[event_id].fact_key == event.fact_key
            assert after[event_id].created_at == event.created_at

    def test_merged_markers_follow_the_open_review(self, ledger, submit):
        """Marqueurs DISPUTED: rattachés à la review ouverte, résolus avec elle."""
        submit()
        review = submit(value=520000, source="LLM_AGENT", source_confidence=72, created_by="agent")
        for _ in range(2):
            submit(value=540000, source="LLM_AGENT", source_confidence=68, created_by="agent-2")
        submit(value=530000, source="DOCUMENT_EXTRACTION", source_confidence=60, created_by="parser")

        assert_invariants(ledger)
        assert len(ledger.get_fact_history(DEAL_ID, "financial.arr")) == 4

        ledger.resolve_review(review.review_id, "KEEP_EXISTING", "Deck figures are stale")

        assert_invariants(ledger)
