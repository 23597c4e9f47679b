from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from .paths import DATA_DIR, LOGS_DIR, PROJECT_ROOT, ensure_directories


DEFAULT_SOURCE_RANKS: Dict[str, int] = {
    "HUMAN_OVERRIDE": 100,
    "FOUNDER_RESPONSE": 80,
    "DOCUMENT_EXTRACTION": 60,
    "LLM_AGENT": 40,
}


class Settings(BaseSettings):
    """Configuration centralisee du Fact Ledger."""

    debug_mode: bool = Field(default=False, alias="DEBUG_MODE")

    # Base de données (fallback SQLite sous data_dir si absent)
    database_url: Optional[str] = Field(default=None, alias="DATABASE_URL")

    data_dir: Path = Field(default=DATA_DIR, alias="FACTLEDGER_DATA_DIR")
    logs_dir: Path = Field(default=LOGS_DIR, alias="FACTLEDGER_LOGS_DIR")

    # === Politique d'arbitrage ===
    arbitration_confidence_margin: int = Field(
        default=15,
        ge=0,
        le=100,
        alias="ARBITRATION_CONFIDENCE_MARGIN",
        description="Points de confiance requis pour qu'une source de même rang remplace la valeur courante",
    )
    source_ranks: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_SOURCE_RANKS),
        alias="ARBITRATION_SOURCE_RANKS",
    )
    always_supersede_sources: List[str] = Field(
        default_factory=lambda: ["HUMAN_OVERRIDE"],
        alias="ARBITRATION_ALWAYS_SUPERSEDE_SOURCES",
    )
    auto_reject_enabled: bool = Field(default=True, alias="ARBITRATION_AUTO_REJECT")
    numeric_equivalence_tolerance: float = Field(
        default=0.001, ge=0.0, lt=1.0, alias="NUMERIC_EQUIVALENCE_TOLERANCE"
    )
    strict_fact_categories: bool = Field(default=False, alias="STRICT_FACT_CATEGORIES")

    # Seuils de contradiction (delta relatif sur valeurs numériques)
    contradiction_minor_threshold: float = Field(default=0.05, alias="CONTRADICTION_MINOR_THRESHOLD")
    contradiction_significant_threshold: float = Field(
        default=0.15, alias="CONTRADICTION_SIGNIFICANT_THRESHOLD"
    )
    contradiction_major_threshold: float = Field(default=0.30, alias="CONTRADICTION_MAJOR_THRESHOLD")

    # === Concurrence ===
    arbitration_max_attempts: int = Field(default=3, ge=1, alias="ARBITRATION_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=0.05, ge=0.0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=1.0, ge=0.0, alias="RETRY_MAX_DELAY")

    low_confidence_threshold: int = Field(default=70, ge=0, le=100, alias="LOW_CONFIDENCE_THRESHOLD")

    class Config:
        env_file = PROJECT_ROOT / ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        populate_by_name = True
        extra = "ignore"

    @model_validator(mode="before")
    @classmethod
    def derive_logs_dir(cls, data: Any) -> Any:
        """
        Place les logs sous data_dir quand seul FACTLEDGER_DATA_DIR est fourni.
        """
        if isinstance(data, dict):
            keys = {str(k).lower(): k for k in data}
            data_key = keys.get("factledger_data_dir") or keys.get("data_dir")
            data_dir = data.get(data_key) if data_key else None
            has_logs = "factledger_logs_dir" in keys or "logs_dir" in keys
            if data_dir and not has_logs:
                data["logs_dir"] = Path(data_dir) / "logs"

        return data

    @field_validator("source_ranks")
    @classmethod
    def validate_source_ranks(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Normalise les clés en UPPERCASE."""
        return {str(source).upper(): int(rank) for source, rank in v.items()}

    @field_validator("always_supersede_sources")
    @classmethod
    def validate_always_supersede(cls, v: List[str]) -> List[str]:
        return [str(source).upper() for source in v]

    @property
    def resolved_database_url(self) -> str:
        """URL effective: DATABASE_URL sinon SQLite sous data_dir."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir}/factledger.db"

    def configure_runtime(self) -> None:
        """Cree les repertoires utiles."""
        ensure_directories([self.data_dir, self.logs_dir])


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()  # type: ignore[arg-type]
    settings.configure_runtime()
    return settings
