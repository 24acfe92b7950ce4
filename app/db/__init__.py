"""Database layer: declarative base, async engine and request-scoped sessions."""

from app.db.base import Base
from app.db.session import async_session_maker, engine, get_db, init_db

__all__ = ["Base", "async_session_maker", "engine", "get_db", "init_db"]
