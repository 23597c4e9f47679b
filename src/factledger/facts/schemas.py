"""
Schémas Pydantic du Fact Ledger

Définit les enums fermés (catégories, sources, types d'events) et les modèles
Request/Response exposés aux producteurs (ingestion), au dashboard (query)
et à l'UI de review.
"""

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


FACT_KEY_PATTERN = re.compile(r"^[a-z0-9_]+(\.[a-z0-9_]+)*$")


# ===================================
# ENUMS
# ===================================

class FactCategory(str, Enum):
    """Catégorie d'un fact (premier segment de la fact_key)."""
    FINANCIAL = "FINANCIAL"
    TEAM = "TEAM"
    MARKET = "MARKET"
    PRODUCT = "PRODUCT"
    LEGAL = "LEGAL"
    COMPETITION = "COMPETITION"
    TRACTION = "TRACTION"
    OTHER = "OTHER"


class FactSource(str, Enum):
    """Classe de producteur qui affirme une valeur."""
    DOCUMENT_EXTRACTION = "DOCUMENT_EXTRACTION"
    LLM_AGENT = "LLM_AGENT"
    FOUNDER_RESPONSE = "FOUNDER_RESPONSE"
    HUMAN_OVERRIDE = "HUMAN_OVERRIDE"


class FactEventType(str, Enum):
    """Type d'event dans le ledger."""
    CREATED = "CREATED"
    SUPERSEDED = "SUPERSEDED"
    DELETED = "DELETED"
    DISPUTED = "DISPUTED"
    PENDING_REVIEW = "PENDING_REVIEW"
    RESOLVED = "RESOLVED"


class SubmissionStatus(str, Enum):
    """Résultat d'une soumission producteur."""
    ACCEPTED = "ACCEPTED"
    SUPERSEDED = "SUPERSEDED"
    ESCALATED = "ESCALATED"
    REJECTED = "REJECTED"
    UNCHANGED = "UNCHANGED"


class ReviewDecision(str, Enum):
    """Décision humaine de clôture d'une review."""
    ACCEPT_NEW = "ACCEPT_NEW"
    KEEP_EXISTING = "KEEP_EXISTING"
    OVERRIDE = "OVERRIDE"


class FactState(str, Enum):
    """Etat visible d'un fact: connu, disputé, ou sans valeur."""
    CONFIRMED = "CONFIRMED"
    DISPUTED = "DISPUTED"
    NO_VALUE = "NO_VALUE"


class ContradictionSignificance(str, Enum):
    """Importance d'une contradiction entre deux valeurs."""
    MINOR = "MINOR"
    SIGNIFICANT = "SIGNIFICANT"
    MAJOR = "MAJOR"


HUMAN_SOURCES = frozenset({FactSource.HUMAN_OVERRIDE})

# Acteur des candidats rejetés automatiquement (nés RESOLVED)
ARBITRATION_ACTOR = "arbitration"

TERMINAL_EVENT_TYPES = frozenset({
    FactEventType.SUPERSEDED,
    FactEventType.DELETED,
    FactEventType.RESOLVED,
})

# Seul un event CREATED non terminal fournit la valeur courante
VALUE_EVENT_TYPES = frozenset({FactEventType.CREATED})


def _as_utc(value: datetime) -> datetime:
    # SQLite restitue des datetimes naïfs
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ===================================
# REQUEST SCHEMAS
# ===================================

class FactSubmission(BaseModel):
    """Valeur candidate soumise par un producteur."""

    deal_id: str = Field(..., min_length=1, max_length=100, description="ID du deal")
    fact_key: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Clé pointée (ex: 'financial.arr')",
        examples=["financial.arr"]
    )
    value: Any = Field(..., description="Valeur structurée (nombre, texte, booléen, objet)")
    display_value: Optional[str] = Field(
        default=None,
        max_length=500,
        description="Rendu lisible (dérivé de value si absent)"
    )
    unit: Optional[str] = Field(default=None, max_length=50)
    source: FactSource = Field(..., description="Classe de producteur")
    source_confidence: int = Field(..., ge=0, le=100, description="Fiabilité affirmée (0-100)")
    created_by: str = Field(..., min_length=1, max_length=200, description="Acteur (producteur ou humain)")
    reason: Optional[str] = Field(default=None, max_length=2000)
    source_document_id: Optional[str] = Field(default=None, max_length=100)
    extracted_text: Optional[str] = Field(default=None, max_length=5000)

    @field_validator("fact_key")
    @classmethod
    def validate_fact_key(cls, v: str) -> str:
        """Normalise et valide le format pointé."""
        key = v.strip().lower()
        if not FACT_KEY_PATTERN.match(key):
            raise ValueError(
                f"fact_key '{v}' must be a dotted path of [a-z0-9_] segments"
            )
        return key

    @field_validator("value")
    @classmethod
    def validate_value(cls, v: Any) -> Any:
        """Valeur requise et sérialisable JSON."""
        if v is None:
            raise ValueError("value is required")
        try:
            json.dumps(v)
        except (TypeError, ValueError):
            raise ValueError("value must be JSON-serializable")
        return v

    @field_validator("created_by")
    @classmethod
    def validate_created_by(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("created_by is required")
        return v.strip()

    @model_validator(mode="after")
    def validate_human_reason(self) -> "FactSubmission":
        """Un event d'origine humaine doit être justifié."""
        if self.source in HUMAN_SOURCES and not (self.reason and self.reason.strip()):
            raise ValueError(f"reason is required for {self.source.value} submissions")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "deal_id": "deal_2024_acme",
                "fact_key": "financial.arr",
                "value": 500000,
                "display_value": "500,000 EUR",
                "unit": "EUR",
                "source": "DOCUMENT_EXTRACTION",
                "source_confidence": 70,
                "created_by": "document-extractor",
            }
        }
    }


class ReviewResolution(BaseModel):
    """Clôture humaine d'une review."""

    review_id: str = Field(..., min_length=1)
    decision: ReviewDecision
    reason: str = Field(..., min_length=1, max_length=2000, description="Justification (requise)")
    override_value: Any = Field(default=None, description="Valeur imposée (OVERRIDE uniquement)")
    override_display_value: Optional[str] = Field(default=None, max_length=500)
    resolved_by: str = Field(default="reviewer", min_length=1, max_length=200)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason is required")
        return v.strip()

    @model_validator(mode="after")
    def validate_override(self) -> "ReviewResolution":
        if self.decision == ReviewDecision.OVERRIDE:
            if self.override_value is None:
                raise ValueError("override_value is required for OVERRIDE")
            try:
                json.dumps(self.override_value)
            except (TypeError, ValueError):
                raise ValueError("override_value must be JSON-serializable")
        return self


# ===================================
# RESPONSE SCHEMAS
# ===================================

class FactEvent(BaseModel):
    """Event immuable du ledger (vue domaine d'un FactEventRecord)."""

    id: str
    sequence: int = Field(..., description="Ordre d'insertion (départage created_at)")
    deal_id: str
    fact_key: str
    category: FactCategory
    value: Any
    display_value: str
    unit: Optional[str] = None
    source: FactSource
    source_confidence: int
    source_document_id: Optional[str] = None
    extracted_text: Optional[str] = None
    event_type: FactEventType
    supersedes_event_id: Optional[str] = None
    created_by: str
    reason: Optional[str] = None
    created_at: datetime
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_reason: Optional[str] = None

    model_config = {"from_attributes": True}

    @field_validator("created_at", "resolved_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES

    @property
    def ordering_key(self) -> tuple:
        return (self.created_at, self.sequence)


class SubmitResult(BaseModel):
    """Réponse synchrone à un producteur."""

    status: SubmissionStatus
    event_id: Optional[str] = Field(None, description="Event écrit (ou courant si UNCHANGED)")
    review_id: Optional[str] = Field(None, description="Review concernée si ESCALATED")
    superseded_event_id: Optional[str] = None
    reason: str = ""


class CompetingCandidate(BaseModel):
    """Valeur concurrente en attente de décision."""

    event_id: str
    value: Any
    display_value: str
    source: FactSource
    source_confidence: int
    created_by: str
    created_at: datetime


class DisputeDetails(BaseModel):
    """Valeur concurrente affichée à côté de la valeur courante."""

    review_id: str
    conflicting_value: Any
    conflicting_display_value: str
    conflicting_source: FactSource
    conflicting_confidence: int
    contradiction_reason: Optional[str] = None
    additional_candidates: List[CompetingCandidate] = Field(default_factory=list)


class CurrentFact(BaseModel):
    """Projection courante d'une fact_key."""

    deal_id: str
    fact_key: str
    category: FactCategory
    state: FactState
    current_event_id: Optional[str] = None
    current_value: Any = None
    current_display_value: Optional[str] = None
    current_unit: Optional[str] = None
    current_source: Optional[FactSource] = None
    current_confidence: Optional[int] = None
    is_disputed: bool = False
    dispute_details: Optional[DisputeDetails] = None
    event_history: Optional[List[FactEvent]] = Field(
        None, description="Historique complet (plus récent d'abord), sur demande"
    )
    first_seen_at: datetime
    last_updated_at: Optional[datetime] = None


class PendingReview(BaseModel):
    """Review en attente pour l'UI humaine."""

    review_id: str
    deal_id: str
    fact_key: str
    category: FactCategory
    new_value: Any
    new_display_value: str
    new_source: FactSource
    new_confidence: int
    existing_event_id: Optional[str] = None
    existing_value: Any = None
    existing_display_value: Optional[str] = None
    existing_source: Optional[FactSource] = None
    existing_confidence: Optional[int] = None
    contradiction_reason: Optional[str] = None
    competing_candidates: List[CompetingCandidate] = Field(default_factory=list)
    created_at: datetime


class ResolveResult(BaseModel):
    """Résultat d'une clôture de review."""

    success: bool
    review_id: str
    decision: ReviewDecision
    current_event_id: Optional[str] = None


class FactStoreSummary(BaseModel):
    """Statistiques agrégées des facts courants d'un deal."""

    total_facts: int
    by_category: Dict[str, int]
    by_source: Dict[str, int]
    average_confidence: int
    disputed_count: int
    low_confidence_count: int
