"""Database helpers."""

import logging
import sqlite3
from pathlib import Path

from sqlalchemy.engine import Engine, make_url
from sqlalchemy.engine.interfaces import DBAPIConnection
from sqlalchemy.event import listens_for
from sqlalchemy.pool import ConnectionPoolEntry
from sqlmodel import SQLModel, create_engine

from .constants import DB_URL, NAMING_CONVENTION  # noqa: F401
from .models import CatalogEntry  # noqa: F401 # register the catalog table

logger = logging.getLogger(__name__)


@listens_for(Engine, "connect", insert=True)
def on_engine_connect(
    dbapi_connection: DBAPIConnection,
    connection_record: ConnectionPoolEntry,
) -> None:
    """Event listener for synchronous engine connections."""
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    try:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        # several nodes' CLIs may share one catalog file
        cursor.execute("PRAGMA busy_timeout=5000;")
        cursor.close()
        logger.debug("Enabled SQLite foreign key support.")
    except Exception as e:
        logger.exception(f"Error setting SQLite PRAGMA: {e}")
        raise e


def get_engine(url: str | None = None, echo: bool = False) -> Engine:
    """Create an engine for the catalog database, creating the SQLite directory if needed."""
    url = url or DB_URL
    parsed = make_url(url)
    connect_args = {}
    if parsed.get_backend_name() == "sqlite":
        # scheduler ticks run in worker threads
        connect_args["check_same_thread"] = False
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, echo=echo, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    """Create the catalog tables if they do not exist yet."""
    SQLModel.metadata.create_all(engine)
