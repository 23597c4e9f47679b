from __future__ import annotations

import importlib
from dataclasses import dataclass
from pathlib import Path
import sys
from types import ModuleType
from typing import Callable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from factledger.common.retry import RetryPolicy  # noqa: E402
from factledger.db.base import Base  # noqa: E402
from factledger.db import models  # noqa: E402,F401
from factledger.facts.arbitration import ArbitrationPolicy  # noqa: E402
from factledger.facts.ledger import FactLedger  # noqa: E402


DEAL_ID = "deal_2024_acme"


@dataclass
class RuntimeEnv:
    """Container providing access to reloaded config modules for tests."""

    data_dir: Path
    paths: ModuleType
    settings_module: ModuleType


@pytest.fixture
def runtime_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> RuntimeEnv:
    """Reload configuration modules against an isolated data directory."""

    data_dir = tmp_path / "data"
    monkeypatch.setenv("FACTLEDGER_DATA_DIR", str(data_dir))
    monkeypatch.delenv("FACTLEDGER_LOGS_DIR", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    paths_module = importlib.import_module("factledger.config.paths")
    paths_module = importlib.reload(paths_module)

    settings_module = importlib.import_module("factledger.config.settings")
    settings_module = importlib.reload(settings_module)
    settings_module.get_settings.cache_clear()

    yield RuntimeEnv(
        data_dir=data_dir,
        paths=paths_module,
        settings_module=settings_module,
    )

    settings_module.get_settings.cache_clear()


# ========================================
# Fixtures base de données
# ========================================

@pytest.fixture
def engine():
    """Base SQLite en mémoire, une connexion partagée par test."""
    test_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)

    yield test_engine

    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def file_engine(tmp_path: Path):
    """Base SQLite fichier: connexions distinctes pour les tests de concurrence."""
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=test_engine)

    yield test_engine

    test_engine.dispose()


def _session_factory(bind) -> Callable[[], Session]:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


@pytest.fixture
def session_factory(engine) -> Callable[[], Session]:
    return _session_factory(engine)


# ========================================
# Fixtures ledger
# ========================================

@pytest.fixture
def policy() -> ArbitrationPolicy:
    return ArbitrationPolicy()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def ledger(session_factory, policy, retry_policy) -> FactLedger:
    return FactLedger(
        session_factory,
        policy=policy,
        retry_policy=retry_policy,
        sleep=lambda _: None,
    )


@pytest.fixture
def file_ledger(file_engine, policy, retry_policy) -> FactLedger:
    return FactLedger(
        _session_factory(file_engine),
        policy=policy,
        retry_policy=retry_policy,
        sleep=lambda _: None,
    )


@pytest.fixture
def submit(ledger):
    """Soumission avec valeurs par défaut (deal de test, DOCUMENT_EXTRACTION 70)."""

    def _submit(fact_key="financial.arr", value=500000, source="DOCUMENT_EXTRACTION",
                source_confidence=70, created_by="document-extractor", **kwargs):
        kwargs.setdefault("deal_id", DEAL_ID)
        return ledger.submit_fact(
            fact_key=fact_key,
            value=value,
            source=source,
            source_confidence=source_confidence,
            created_by=created_by,
            **kwargs,
        )

    return _submit
