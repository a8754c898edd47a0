from __future__ import annotations

import contextlib
import psycopg2
from psycopg2.extras import Json, RealDictCursor

from dine_tokyo.config import get_database_url


@contextlib.contextmanager
def get_conn():
    conn = psycopg2.connect(get_database_url())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


@contextlib.contextmanager
def get_cursor(conn):
    with conn.cursor(cursor_factory=RealDictCursor) as cursor:
        yield cursor


@contextlib.contextmanager
def transaction():
    """Shortcut for the common `get_conn()` + `get_cursor()` pairing."""
    with get_conn() as conn:
        with get_cursor(conn) as cursor:
            yield cursor


@contextlib.contextmanager
def savepoint(cursor, name: str = "side_effect"):
    cursor.execute(f"SAVEPOINT {name}")
    try:
        yield cursor
    except Exception:
        cursor.execute(f"ROLLBACK TO SAVEPOINT {name}")
        raise
    cursor.execute(f"RELEASE SAVEPOINT {name}")


def as_json(value):
    return Json(value)
