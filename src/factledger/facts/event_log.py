"""
Event Log - stockage append-only des FactEvents.

Toutes les méthodes travaillent dans la session (et donc la transaction) de
l'appelant: l'Arbitration Engine et le Review Workflow ouvrent une transaction
par unité décision+application, l'Event Log ne commit jamais lui-même.

Transitions autorisées:
    CREATED        -> SUPERSEDED | DELETED
    PENDING_REVIEW -> CREATED (promotion) | RESOLVED | SUPERSEDED
    DISPUTED       -> RESOLVED
SUPERSEDED, DELETED et RESOLVED sont terminaux.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from factledger.db.models import FactEventRecord, FactKeyVersion
from factledger.facts.errors import (
    ConcurrentModificationError,
    FactNotFoundError,
    FactValidationError,
    IllegalTransitionError,
)
from factledger.facts.fact_keys import category_for_fact_key
from factledger.facts.normalization import display_for
from factledger.facts.schemas import (
    FACT_KEY_PATTERN,
    HUMAN_SOURCES,
    TERMINAL_EVENT_TYPES,
    FactEvent,
    FactEventType,
    FactSource,
    _as_utc,
)

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[FactEventType, FrozenSet[FactEventType]] = {
    FactEventType.CREATED: frozenset({FactEventType.SUPERSEDED, FactEventType.DELETED}),
    FactEventType.PENDING_REVIEW: frozenset({
        FactEventType.CREATED,
        FactEventType.RESOLVED,
        FactEventType.SUPERSEDED,
    }),
    FactEventType.DISPUTED: frozenset({FactEventType.RESOLVED}),
}

# Types qu'un append peut écrire (RESOLVED: candidat rejeté, tracé pour audit)
APPENDABLE_EVENT_TYPES = frozenset({
    FactEventType.CREATED,
    FactEventType.PENDING_REVIEW,
    FactEventType.DISPUTED,
    FactEventType.RESOLVED,
})


class EventLog:
    """
    Accès au ledger pour une session SQLAlchemy.

    Provides:
    - append / mark_terminal / promote
    - lookup par event id, (deal, fact_key) ou deal
    - jeton de version par (deal, fact_key) pour la concurrence optimiste
    """

    def __init__(self, session: Session, strict_categories: bool = False):
        self.session = session
        self.strict_categories = strict_categories

    # ========================================
    # ÉCRITURE
    # ========================================

    def append(
        self,
        *,
        deal_id: str,
        fact_key: str,
        value: Any,
        source: FactSource,
        source_confidence: int,
        created_by: str,
        event_type: FactEventType = FactEventType.CREATED,
        display_value: Optional[str] = None,
        unit: Optional[str] = None,
        supersedes_event_id: Optional[str] = None,
        reason: Optional[str] = None,
        source_document_id: Optional[str] = None,
        extracted_text: Optional[str] = None,
        resolved_by: Optional[str] = None,
        resolution_reason: Optional[str] = None,
    ) -> FactEvent:
        """
        Persiste un nouvel event immuable.

        Raises:
            FactValidationError: Champ requis manquant ou malformé
            CategoryMismatchError: Préfixe inconnu en mode strict
        """
        self._validate_new_event(
            deal_id, fact_key, value, source, source_confidence, created_by, event_type, reason
        )
        source = FactSource(source)
        event_type = FactEventType(event_type)

        category = category_for_fact_key(fact_key, strict=self.strict_categories)
        created_at = self._next_timestamp(deal_id, fact_key)

        record = FactEventRecord(
            id=str(uuid.uuid4()),
            deal_id=deal_id,
            fact_key=fact_key,
            category=category.value,
            value=value,
            display_value=display_for(value, display_value, unit),
            unit=unit,
            source=source.value,
            source_confidence=source_confidence,
            source_document_id=source_document_id,
            extracted_text=extracted_text,
            event_type=event_type.value,
            supersedes_event_id=supersedes_event_id,
            created_by=created_by,
            reason=reason,
            created_at=created_at,
            resolved_by=resolved_by,
            resolved_at=created_at if event_type == FactEventType.RESOLVED else None,
            resolution_reason=resolution_reason,
        )
        self.session.add(record)
        self.session.flush()

        logger.info(
            f"Fact event appended - ID: {record.id}, Deal: {deal_id}, "
            f"Key: {fact_key}, Type: {event_type.value}, Source: {source.value}"
        )
        return FactEvent.model_validate(record)

    def mark_terminal(
        self,
        event_id: str,
        new_event_type: FactEventType,
        resolved_by: Optional[str] = None,
        resolution_reason: Optional[str] = None,
    ) -> FactEvent:
        """
        Passe un event en état terminal (SUPERSEDED, DELETED ou RESOLVED).

        Raises:
            FactNotFoundError: Event inexistant
            IllegalTransitionError: Event déjà terminal ou transition hors table
            ConcurrentModificationError: Event modifié par un writer concurrent
        """
        new_event_type = FactEventType(new_event_type)
        if new_event_type not in TERMINAL_EVENT_TYPES:
            raise IllegalTransitionError(
                f"{new_event_type.value} is not a terminal event type"
            )
        return self._transition(event_id, new_event_type, resolved_by, resolution_reason)

    def promote(
        self,
        event_id: str,
        resolved_by: Optional[str] = None,
        resolution_reason: Optional[str] = None,
    ) -> FactEvent:
        """Promeut une PENDING_REVIEW en CREATED (nouvelle valeur courante)."""
        record = self._get_record(event_id)
        if FactEventType(record.event_type) != FactEventType.PENDING_REVIEW:
            raise IllegalTransitionError(
                f"Only PENDING_REVIEW events can be promoted (event {event_id} is {record.event_type})"
            )
        return self._transition(event_id, FactEventType.CREATED, resolved_by, resolution_reason)

    def _transition(
        self,
        event_id: str,
        new_event_type: FactEventType,
        resolved_by: Optional[str],
        resolution_reason: Optional[str],
    ) -> FactEvent:
        record = self._get_record(event_id)
        current_type = FactEventType(record.event_type)

        if FactEvent.model_validate(record).is_terminal:
            raise IllegalTransitionError(
                f"Event {event_id} is already terminal ({current_type.value})"
            )
        if new_event_type not in ALLOWED_TRANSITIONS.get(current_type, frozenset()):
            raise IllegalTransitionError(
                f"Transition {current_type.value} -> {new_event_type.value} not allowed (event {event_id})"
            )

        values: Dict[str, Any] = {"event_type": new_event_type.value}
        if resolved_by is not None or resolution_reason is not None:
            values.update(
                resolved_by=resolved_by,
                resolved_at=datetime.now(timezone.utc),
                resolution_reason=resolution_reason,
            )

        # UPDATE conditionnel sur le type lu: un writer concurrent fait échouer
        result = self.session.execute(
            update(FactEventRecord)
            .where(FactEventRecord.id == event_id)
            .where(FactEventRecord.event_type == current_type.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"Event {event_id} changed concurrently (expected {current_type.value})"
            )

        self.session.refresh(record)
        logger.info(
            f"Fact event transitioned - ID: {event_id}, "
            f"{current_type.value} -> {new_event_type.value}"
        )
        return FactEvent.model_validate(record)

    # ========================================
    # LECTURE
    # ========================================

    def get(self, event_id: str) -> FactEvent:
        """Event par ID (FactNotFoundError si absent)."""
        return FactEvent.model_validate(self._get_record(event_id))

    def find(self, event_id: str) -> Optional[FactEvent]:
        record = self._find_record(event_id)
        return FactEvent.model_validate(record) if record is not None else None

    def list_by_deal(self, deal_id: str) -> List[FactEvent]:
        """Events du deal, ordre createdAt croissant (ordre d'insertion en départage)."""
        stmt = (
            select(FactEventRecord)
            .where(FactEventRecord.deal_id == deal_id)
            .order_by(FactEventRecord.created_at, FactEventRecord.sequence)
        )
        return [FactEvent.model_validate(r) for r in self.session.scalars(stmt)]

    def list_by_fact_key(self, deal_id: str, fact_key: str) -> List[FactEvent]:
        stmt = (
            select(FactEventRecord)
            .where(FactEventRecord.deal_id == deal_id)
            .where(FactEventRecord.fact_key == fact_key)
            .order_by(FactEventRecord.created_at, FactEventRecord.sequence)
        )
        return [FactEvent.model_validate(r) for r in self.session.scalars(stmt)]

    def list_pending(self, deal_id: Optional[str] = None) -> List[FactEvent]:
        """PENDING_REVIEW ouvertes (index event_type)."""
        stmt = select(FactEventRecord).where(
            FactEventRecord.event_type == FactEventType.PENDING_REVIEW.value
        )
        if deal_id is not None:
            stmt = stmt.where(FactEventRecord.deal_id == deal_id)
        stmt = stmt.order_by(FactEventRecord.created_at, FactEventRecord.sequence)
        return [FactEvent.model_validate(r) for r in self.session.scalars(stmt)]

    # ========================================
    # VERSION (concurrence optimiste)
    # ========================================

    def current_version(self, deal_id: str, fact_key: str) -> int:
        """Version courante de la fact_key (0 si jamais écrite)."""
        version = self.session.scalar(
            select(FactKeyVersion.version)
            .where(FactKeyVersion.deal_id == deal_id)
            .where(FactKeyVersion.fact_key == fact_key)
        )
        return version or 0

    def bump_version(self, deal_id: str, fact_key: str, seen_version: int) -> int:
        """
        Incrémente la version si elle vaut toujours seen_version.

        Raises:
            ConcurrentModificationError: Un autre writer a modifié la fact_key
        """
        now = datetime.now(timezone.utc)

        if seen_version == 0:
            try:
                self.session.execute(
                    insert(FactKeyVersion).values(
                        deal_id=deal_id, fact_key=fact_key, version=1, updated_at=now
                    )
                )
            except IntegrityError as e:
                raise ConcurrentModificationError(
                    f"Concurrent first write on {deal_id}/{fact_key}"
                ) from e
            return 1

        result = self.session.execute(
            update(FactKeyVersion)
            .where(FactKeyVersion.deal_id == deal_id)
            .where(FactKeyVersion.fact_key == fact_key)
            .where(FactKeyVersion.version == seen_version)
            .values(version=seen_version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModificationError(
                f"{deal_id}/{fact_key} changed concurrently (version {seen_version} is stale)"
            )

        logger.debug(f"Version bumped - {deal_id}/{fact_key}: {seen_version} -> {seen_version + 1}")
        return seen_version + 1

    # ========================================
    # HELPERS
    # ========================================

    def _find_record(self, event_id: str) -> Optional[FactEventRecord]:
        return self.session.scalar(
            select(FactEventRecord).where(FactEventRecord.id == event_id)
        )

    def _get_record(self, event_id: str) -> FactEventRecord:
        record = self._find_record(event_id)
        if record is None:
            raise FactNotFoundError(f"Fact event not found: {event_id}")
        return record

    def _next_timestamp(self, deal_id: str, fact_key: str) -> datetime:
        """Horodatage jamais antérieur au dernier event de la fact_key."""
        now = datetime.now(timezone.utc)
        latest = self.session.scalar(
            select(func.max(FactEventRecord.created_at))
            .where(FactEventRecord.deal_id == deal_id)
            .where(FactEventRecord.fact_key == fact_key)
        )
        if latest is not None and _as_utc(latest) > now:
            return _as_utc(latest)
        return now

    @staticmethod
    def _validate_new_event(
        deal_id: str,
        fact_key: str,
        value: Any,
        source: Any,
        source_confidence: Any,
        created_by: str,
        event_type: Any,
        reason: Optional[str],
    ) -> None:
        if not deal_id:
            raise FactValidationError("deal_id is required")
        if not fact_key or not FACT_KEY_PATTERN.match(fact_key):
            raise FactValidationError(f"Invalid fact_key: '{fact_key}'")
        if value is None:
            raise FactValidationError("value is required")
        if not created_by or not created_by.strip():
            raise FactValidationError("created_by is required")

        try:
            source = FactSource(source)
        except ValueError as e:
            raise FactValidationError(f"Invalid source: {source}") from e

        try:
            event_type = FactEventType(event_type)
        except ValueError as e:
            raise FactValidationError(f"Invalid event_type: {event_type}") from e

        if event_type not in APPENDABLE_EVENT_TYPES:
            raise IllegalTransitionError(
                f"Events cannot be born {event_type.value}, use mark_terminal"
            )

        if isinstance(source_confidence, bool) or not isinstance(source_confidence, int) \
                or not 0 <= source_confidence <= 100:
            raise FactValidationError(
                f"source_confidence must be an integer in [0, 100] (got {source_confidence})"
            )

        if source in HUMAN_SOURCES and not (reason and reason.strip()):
            raise FactValidationError(f"reason is required for {source.value} events")
