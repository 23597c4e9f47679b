"""
Tests concurrence: un writer concurrent s'intercale juste avant le bump de version.

Base SQLite fichier (connexions distinctes); l'écriture concurrente est jouée
de façon déterministe depuis EventLog.bump_version.
"""

from collections import Counter

import pytest

from factledger.facts.errors import (
    ArbitrationConflictError,
    ConcurrentModificationError,
    ReviewNotFoundError,
)
from factledger.facts.event_log import EventLog
from factledger.facts.schemas import FactEventType, SubmissionStatus


DEAL_ID = "deal_2024_acme"


def _submit(ledger, value=500000, source="DOCUMENT_EXTRACTION", source_confidence=70,
            created_by="document-extractor"):
    return ledger.submit_fact(
        deal_id=DEAL_ID,
        fact_key="financial.arr",
        value=value,
        source=source,
        source_confidence=source_confidence,
        created_by=created_by,
    )


@pytest.fixture
def interleave(monkeypatch):
    """
    Exécute une écriture concurrente au premier bump_version, puis délègue.

    Usage:
        interleave(lambda: _submit(ledger, ...))
    """
    original = EventLog.bump_version
    state = {"competitor": None, "done": False, "calls": 0}

    def bump_version(self, deal_id, fact_key, seen_version):
        state["calls"] += 1
        if state["competitor"] is not None and not state["done"]:
            state["done"] = True
            state["competitor"]()
        return original(self, deal_id, fact_key, seen_version)

    monkeypatch.setattr(EventLog, "bump_version", bump_version)

    def _interleave(competitor):
        state["competitor"] = competitor
        return state

    return _interleave


def _event_types(ledger):
    return Counter(e.event_type for e in ledger.get_fact_history(DEAL_ID, "financial.arr"))


class TestConcurrentSubmissions:
    """Deux writers sur la même fact_key."""

    def test_first_write_race_retries_against_winner(self, file_ledger, interleave):
        """Même valeur soumise deux fois en parallèle -> un seul CREATED."""
        competitor = {}
        state = interleave(lambda: competitor.setdefault("result", _submit(file_ledger)))

        result = _submit(file_ledger)

        assert competitor["result"].status == SubmissionStatus.ACCEPTED
        assert result.status == SubmissionStatus.UNCHANGED
        assert result.event_id == competitor["result"].event_id
        assert state["calls"] == 2
        assert _event_types(file_ledger) == {FactEventType.CREATED: 1}

    def test_stale_version_redecides_on_fresh_state(self, file_ledger, interleave):
        """La décision rejouée voit l'escalade concurrente."""
        first = _submit(file_ledger)
        competitor = {}
        interleave(lambda: competitor.setdefault("result", _submit(
            file_ledger, value=520000, source="LLM_AGENT", source_confidence=72, created_by="agent"
        )))

        result = _submit(
            file_ledger, value=505000, source="FOUNDER_RESPONSE", source_confidence=90, created_by="founder"
        )

        assert competitor["result"].status == SubmissionStatus.ESCALATED
        assert result.status == SubmissionStatus.SUPERSEDED
        assert result.superseded_event_id == first.event_id

        assert _event_types(file_ledger) == {
            FactEventType.SUPERSEDED: 1,
            FactEventType.PENDING_REVIEW: 1,
            FactEventType.CREATED: 1,
        }
        fact = file_ledger.get_current_fact(DEAL_ID, "financial.arr")
        assert fact.current_value == 505000
        assert fact.is_disputed

    def test_concurrent_conflicts_open_a_single_review(self, file_ledger, interleave):
        _submit(file_ledger)
        competitor = {}
        interleave(lambda: competitor.setdefault("result", _submit(
            file_ledger, value=520000, source="LLM_AGENT", source_confidence=72, created_by="agent"
        )))

        result = _submit(file_ledger, value=540000, source="LLM_AGENT", source_confidence=68, created_by="agent-2")

        assert result.status == SubmissionStatus.ESCALATED
        assert result.review_id == competitor["result"].review_id
        assert _event_types(file_ledger)[FactEventType.PENDING_REVIEW] == 1
        assert _event_types(file_ledger)[FactEventType.DISPUTED] == 1

    def test_retries_exhausted(self, file_ledger, monkeypatch):
        """❌ Conflit permanent -> ArbitrationConflictError, rien n'est écrit."""
        def always_stale(self, deal_id, fact_key, seen_version):
            raise ConcurrentModificationError(f"{deal_id}/{fact_key} changed concurrently")

        monkeypatch.setattr(EventLog, "bump_version", always_stale)

        with pytest.raises(ArbitrationConflictError) as exc_info:
            _submit(file_ledger)

        assert exc_info.value.attempts == 3
        assert file_ledger.get_fact_history(DEAL_ID, "financial.arr") == []


class TestConcurrentReviewClosure:
    """Clôture de review en concurrence avec d'autres writers."""

    def test_closure_after_concurrent_supersede(self, file_ledger, interleave):
        _submit(file_ledger)
        review = _submit(file_ledger, value=520000, source="LLM_AGENT", source_confidence=72, created_by="agent")
        competitor = {}
        interleave(lambda: competitor.setdefault("result", _submit(
            file_ledger, value=505000, source="FOUNDER_RESPONSE", source_confidence=90, created_by="founder"
        )))

        file_ledger.resolve_review(review.review_id, "ACCEPT_NEW", "Confirmed with the CFO")

        history = {e.id: e for e in file_ledger.get_fact_history(DEAL_ID, "financial.arr")}
        assert history[competitor["result"].event_id].event_type == FactEventType.SUPERSEDED
        created = [e.id for e in history.values() if e.event_type == FactEventType.CREATED]
        assert created == [review.review_id]

    def test_double_closure(self, file_ledger, interleave):
        """Deux reviewers: le second voit une review déjà clôturée."""
        _submit(file_ledger)
        review = _submit(file_ledger, value=520000, source="LLM_AGENT", source_confidence=72, created_by="agent")
        interleave(lambda: file_ledger.resolve_review(review.review_id, "KEEP_EXISTING", "Stale deck"))

        with pytest.raises(ReviewNotFoundError):
            file_ledger.resolve_review(review.review_id, "ACCEPT_NEW", "Confirmed with the CFO")

        fact = file_ledger.get_current_fact(DEAL_ID, "financial.arr")
        assert fact.current_value == 500000
        assert not fact.is_disputed

    def test_closure_committed_before_version_read(self, file_ledger, monkeypatch):
        """La review clôturée entre sa lecture et celle de la version reste introuvable."""
        _submit(file_ledger)
        review = _submit(file_ledger, value=520000, source="LLM_AGENT", source_confidence=72, created_by="agent")

        original = EventLog.current_version
        state = {"done": False}

        def current_version(self, deal_id, fact_key):
            if not state["done"]:
                state["done"] = True
                file_ledger.resolve_review(review.review_id, "KEEP_EXISTING", "Stale deck")
            return original(self, deal_id, fact_key)

        monkeypatch.setattr(EventLog, "current_version", current_version)

        with pytest.raises(ReviewNotFoundError):
            file_ledger.resolve_review(review.review_id, "ACCEPT_NEW", "Confirmed with the CFO")

        history = {e.id: e for e in file_ledger.get_fact_history(DEAL_ID, "financial.arr")}
        assert history[review.review_id].event_type == FactEventType.RESOLVED
        assert history[review.review_id].resolution_reason == "Dismissed by reviewer: Stale deck"
        assert file_ledger.get_current_fact(DEAL_ID, "financial.arr").current_value == 500000
