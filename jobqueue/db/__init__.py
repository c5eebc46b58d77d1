"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobqueue.db.connection import (
    close_db,
    create_engine,
    create_session_factory,
    create_tables,
    get_engine,
    get_session_factory,
    init_db,
)
from jobqueue.db.models import Base, Job, JobEventRow

__all__ = [
    "create_engine",
    "create_session_factory",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_db",
    "close_db",
    "Job",
    "JobEventRow",
    "Base",
]
