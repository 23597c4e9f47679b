"""
Base SQLAlchemy et session management.

L'engine est créé à la demande depuis les settings (DATABASE_URL, sinon
fallback SQLite sous data_dir). Les tests passent leur propre engine à init_db.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from factledger.config.settings import get_settings

logger = logging.getLogger(__name__)

# Session factory (liée à l'engine par init_db)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)

# Base declarative pour modèles
Base = declarative_base()

_engine: Optional[Engine] = None


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Engine SQLAlchemy avec configuration adaptée au backend."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo
        )

    # PostgreSQL avec connection pooling
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,  # Vérifie connexion avant utilisation
        echo=echo
    )


def get_engine() -> Engine:
    """Engine par défaut, construit depuis les settings au premier appel."""
    global _engine

    if _engine is None:
        settings = get_settings()
        database_url = settings.resolved_database_url

        if settings.database_url:
            logger.info("[DB] Using DATABASE_URL from environment")
        else:
            logger.warning(f"[DB] DATABASE_URL not configured, using SQLite fallback: {database_url}")

        _engine = create_db_engine(database_url, echo=settings.debug_mode)

    return _engine


def init_db(engine: Optional[Engine] = None) -> Engine:
    """
    Initialise la base de données (créé toutes les tables).

    Args:
        engine: Engine explicite (tests), sinon engine des settings

    Returns:
        Engine lié à SessionLocal
    """
    # Import tous les modèles pour que Base.metadata les connaisse
    from factledger.db.models import FactEventRecord, FactKeyVersion  # noqa: F401

    engine = engine or get_engine()
    SessionLocal.configure(bind=engine)

    Base.metadata.create_all(bind=engine)
    logger.info("[DB] Tables created/verified successfully")
    return engine


__all__ = ["Base", "SessionLocal", "create_db_engine", "get_engine", "init_db"]
