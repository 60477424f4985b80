"""Database access layer."""

from tollgate.db.session import (
    SessionScope,
    close_db,
    get_async_session,
    get_session_factory,
    init_db,
    make_session_factory,
    session_scope,
)
from tollgate.db.users import create_user, load_user

__all__ = [
    "SessionScope",
    "close_db",
    "create_user",
    "get_async_session",
    "get_session_factory",
    "init_db",
    "load_user",
    "make_session_factory",
    "session_scope",
]
