"""Storage layer for PostgreSQL persistence."""

from .database import Base, async_session_factory, close_db, engine, get_session, init_db
from .memory import InMemoryJobTracker, InMemoryResultStore
from .orm_models import ExtractionJobORM, ExtractionResultORM
from .repositories import JobRepository, ResultRepository
from .stores import SqlJobTracker, SqlResultStore

__all__ = [
    # Database
    "Base",
    "engine",
    "async_session_factory",
    "get_session",
    "init_db",
    "close_db",
    # ORM Models
    "ExtractionJobORM",
    "ExtractionResultORM",
    # Repositories
    "JobRepository",
    "ResultRepository",
    # Stores
    "SqlJobTracker",
    "SqlResultStore",
    "InMemoryJobTracker",
    "InMemoryResultStore",
]
