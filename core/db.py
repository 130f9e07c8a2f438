"""
core/db.py -- SQLAlchemy engine construction shared by every store.

Each repository (IdentityStore, SessionStore, LoginAttemptTracker, AuditStore)
owns its tables but builds its engine here so SQLite connections are
configured the same way everywhere.

Layer rule: core/ is the kernel. No imports from api/, auth/, or audit/.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    WAL (Write-Ahead Logging) allows readers to proceed without blocking
    during writes. Set per-connection because SQLite PRAGMAs are not
    inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Return an Engine for db_url with SQLite-specific connection settings.

    check_same_thread=False: FastAPI runs sync route handlers in a thread
    pool, so one pooled connection may be used from several threads.
    timeout=30: concurrent writers wait for the database lock instead of
    failing immediately with "database is locked".
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine
