import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path

from .errors import StoreUnavailable
from .schema_sql import SCHEMA_SQL

logger = logging.getLogger(__name__)

DB_DIR = Path(os.getenv("DB_DIR", "./data"))
DB_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH = DB_DIR / os.getenv("DB_FILE", "airlog.sqlite")
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "30"))
DB_CONNECT_RETRIES = int(os.getenv("DB_CONNECT_RETRIES", "3"))


def get_connection(db_path=None):
    """
    Open a connection with sqlite3.Row rows and foreign keys on.

    isolation_level=None leaves transaction control to transaction() so that
    a record write and its propagation sweep share one BEGIN/COMMIT.
    Retries "database is locked" with exponential backoff.
    """
    path = db_path or DB_PATH
    last_err = None
    for attempt in range(max(1, DB_CONNECT_RETRIES)):
        try:
            con = sqlite3.connect(
                path,
                timeout=DB_TIMEOUT_SECONDS,
                check_same_thread=False,
                isolation_level=None,
            )
            break
        except sqlite3.OperationalError as e:
            last_err = e
            if "locked" in str(e).lower() and attempt < DB_CONNECT_RETRIES - 1:
                logger.warning("Database locked, retrying connect (attempt %d)", attempt + 1)
                time.sleep(0.1 * (2 ** attempt))
                continue
            raise StoreUnavailable(f"No se pudo abrir la base de datos: {e}") from e
    else:
        raise StoreUnavailable(f"No se pudo abrir la base de datos: {last_err}")
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON")
    return con


@contextmanager
def connect():
    con = get_connection()
    try:
        yield con
    finally:
        con.close()


@contextmanager
def transaction(con: sqlite3.Connection):
    """
    BEGIN IMMEDIATE ... COMMIT around a unit of work, ROLLBACK on any error.

    IMMEDIATE takes the write lock up front, so two writers on the same
    database file never interleave a sweep.
    """
    try:
        con.execute("BEGIN IMMEDIATE")
    except sqlite3.OperationalError as e:
        raise StoreUnavailable(f"No se pudo iniciar la transacción: {e}") from e
    try:
        yield con
        con.execute("COMMIT")
    except Exception:
        logger.error("Transacción revertida", exc_info=True)
        con.execute("ROLLBACK")
        raise


def init_schema(con: sqlite3.Connection) -> None:
    con.executescript(SCHEMA_SQL)
