from src.database.base import Base, TimestampMixin
from src.database.engine import async_session, engine
from src.database.session import get_session_factory, unit_of_work

__all__ = [
    "Base",
    "TimestampMixin",
    "async_session",
    "engine",
    "get_session_factory",
    "unit_of_work",
]
