"""Configuration runtime du Fact Ledger (paths + settings pydantic)."""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
