"""
Persistence

SQLAlchemy-backed keyword and rank sheet storage plus keyword locks.
"""

from .locks import (
    LockProvider,
    PostgresAdvisoryLockProvider,
    RedisLockProvider,
    advisory_lock_id,
    fnv1a32,
)
from .models import Base, KeywordModel, RankSheetModel
from .session import (
    check_db_connection,
    create_db_engine,
    create_session_factory,
    get_database_url,
    init_db,
    is_postgres_url,
)
from .store import (
    KeywordStore,
    PersistenceStore,
    RankSheetStore,
    SqlKeywordStore,
)

__all__ = [
    "LockProvider",
    "PostgresAdvisoryLockProvider",
    "RedisLockProvider",
    "advisory_lock_id",
    "fnv1a32",
    "Base",
    "KeywordModel",
    "RankSheetModel",
    "check_db_connection",
    "create_db_engine",
    "create_session_factory",
    "get_database_url",
    "init_db",
    "is_postgres_url",
    "KeywordStore",
    "PersistenceStore",
    "RankSheetStore",
    "SqlKeywordStore",
]
