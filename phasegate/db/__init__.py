"""Database package: engine, session factory, Redis client and project stores."""

from phasegate.db.base import (
    Base,
    build_engine,
    build_session_factory,
    close_db,
    create_tables,
    get_session_factory,
    init_db,
)
from phasegate.db.memory_store import InMemoryProjectStore
from phasegate.db.redis import close_redis, get_redis, init_redis
from phasegate.db.sql_store import SqlAlchemyProjectStore
from phasegate.db.store import ProjectStore

__all__ = [
    "Base",
    "InMemoryProjectStore",
    "ProjectStore",
    "SqlAlchemyProjectStore",
    "build_engine",
    "build_session_factory",
    "close_db",
    "close_redis",
    "create_tables",
    "get_redis",
    "get_session_factory",
    "init_db",
    "init_redis",
]
