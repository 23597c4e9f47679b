"""
Package database - Modèles SQLAlchemy et session management.
"""
from .base import Base, SessionLocal, create_db_engine, get_engine, init_db
from .models import FactEventRecord, FactKeyVersion

__all__ = [
    "Base",
    "SessionLocal",
    "create_db_engine",
    "get_engine",
    "init_db",
    "FactEventRecord",
    "FactKeyVersion",
]
