"""
Modèles SQLAlchemy du Fact Ledger.

- fact_events : table append-only, seule source de vérité
- fact_key_versions : jeton de concurrence optimiste par (deal, fact_key)
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Text, Index, JSON

from factledger.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FactEventRecord(Base):
    """
    Event immuable du ledger.

    Seuls event_type et les colonnes d'audit de clôture (resolved_*) évoluent
    après insertion. value, source, fact_key et created_at ne changent jamais.
    """

    __tablename__ = "fact_events"

    # Ordre d'insertion, départage les created_at identiques
    sequence = Column(Integer, primary_key=True, autoincrement=True)

    id = Column(
        String(36),
        nullable=False,
        unique=True,
        comment="UUID de l'event (jamais réutilisé)"
    )

    deal_id = Column(String(100), nullable=False, comment="Deal propriétaire")

    fact_key = Column(
        String(200),
        nullable=False,
        comment="Clé pointée (ex: financial.arr)"
    )

    category = Column(
        String(20),
        nullable=False,
        comment="FINANCIAL | TEAM | MARKET | PRODUCT | LEGAL | COMPETITION | TRACTION | OTHER"
    )

    # Valeur
    value = Column(JSON, nullable=False, comment="Valeur structurée")
    display_value = Column(String(500), nullable=False, comment="Rendu lisible")
    unit = Column(String(50), nullable=True)

    # Provenance
    source = Column(
        String(30),
        nullable=False,
        comment="DOCUMENT_EXTRACTION | LLM_AGENT | FOUNDER_RESPONSE | HUMAN_OVERRIDE"
    )
    source_confidence = Column(Integer, nullable=False, comment="Fiabilité 0-100")
    source_document_id = Column(String(100), nullable=True)
    extracted_text = Column(Text, nullable=True)

    # Cycle de vie
    event_type = Column(
        String(20),
        nullable=False,
        comment="CREATED | SUPERSEDED | DELETED | DISPUTED | PENDING_REVIEW | RESOLVED"
    )
    supersedes_event_id = Column(
        String(36),
        nullable=True,
        comment="Lignée informative (event remplacé ou review visée)"
    )

    created_by = Column(String(200), nullable=False, comment="Producteur ou humain")
    reason = Column(Text, nullable=True, comment="Justification (requise si humain)")

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        comment="Horodatage monotone par fact_key"
    )

    # Audit de clôture (review fermée, suppression)
    resolved_by = Column(String(200), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_reason = Column(Text, nullable=True, comment="Raison préfixée par la décision")

    # Indexes composites pour queries fréquentes
    __table_args__ = (
        Index('ix_fact_events_deal_key_created', 'deal_id', 'fact_key', 'created_at'),
        Index('ix_fact_events_type', 'event_type'),
        Index('ix_fact_events_deal_type', 'deal_id', 'event_type'),
        Index('ix_fact_events_deal_category', 'deal_id', 'category'),
    )

    def __repr__(self) -> str:
        return (
            f"<FactEventRecord(id='{self.id}', deal_id='{self.deal_id}', "
            f"fact_key='{self.fact_key}', event_type='{self.event_type}')>"
        )


class FactKeyVersion(Base):
    """
    Version par (deal, fact_key).

    Chaque unité décision+application incrémente la version par un UPDATE
    conditionnel. Un rowcount nul signale un writer concurrent.
    """

    __tablename__ = "fact_key_versions"

    deal_id = Column(String(100), primary_key=True)
    fact_key = Column(String(200), primary_key=True)

    version = Column(Integer, nullable=False, default=1)

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return f"<FactKeyVersion(deal_id='{self.deal_id}', fact_key='{self.fact_key}', version={self.version})>"
