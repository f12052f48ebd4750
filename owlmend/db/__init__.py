"""OwlMend database layer: declarative Base, engine and session factory."""

from owlmend.db.base import Base
from owlmend.db.engine import create_engine, create_session_factory, resolve_database_url

__all__ = ["Base", "create_engine", "create_session_factory", "resolve_database_url"]
