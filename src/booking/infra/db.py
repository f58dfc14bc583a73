"""psycopg2 connections and transactions.

Every unit of work opens its own short connection through ``txn()``;
repositories receive the cursor and never commit themselves.
"""

import os
from contextlib import contextmanager
from typing import Any, Iterator, Sequence
from urllib.parse import urlparse

import psycopg2
from psycopg2.extensions import connection as PgConnection, cursor as PgCursor
from psycopg2.extras import register_uuid

register_uuid()


def _dsn_has_password(dsn: str) -> bool:
    if "://" in dsn:
        return bool(urlparse(dsn).password)
    return any(part.startswith("password=") for part in dsn.split())


def get_conn() -> PgConnection:
    """Connect using DATABASE_URL (URL or libpq ``key=value`` form).

    DB_PASSWORD is passed alongside when the DSN itself has no password,
    which lets the secret be mounted separately from the connection string.

    Raises:
        RuntimeError: DATABASE_URL is unset.
        psycopg2.Error: The server could not be reached.
    """
    dsn = os.environ.get("DATABASE_URL", "")
    if not dsn:
        raise RuntimeError("DATABASE_URL is not configured")

    password = os.environ.get("DB_PASSWORD")
    if password and not _dsn_has_password(dsn):
        return psycopg2.connect(dsn, password=password)
    return psycopg2.connect(dsn)


@contextmanager
def txn(conn: PgConnection | None = None) -> Iterator[PgCursor]:
    """Yield a cursor; commit when the block exits cleanly, roll back otherwise.

    A connection opened here is closed afterwards. A borrowed ``conn`` is
    left open for the caller.
    """
    own = conn is None
    if own:
        conn = get_conn()

    try:
        with conn.cursor() as cur:
            yield cur
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        if own:
            conn.close()


def for_update(
    cur: PgCursor,
    query: str,
    params: Sequence[Any] | None = None,
    *,
    nowait: bool = False,
    skip_locked: bool = False,
) -> list[tuple[Any, ...]]:
    """Run a SELECT with a FOR UPDATE suffix and return every locked row.

    Raises:
        ValueError: If both nowait and skip_locked are True.
    """
    if nowait and skip_locked:
        raise ValueError("Cannot use both nowait and skip_locked")

    suffix = " FOR UPDATE"
    if nowait:
        suffix += " NOWAIT"
    elif skip_locked:
        suffix += " SKIP LOCKED"

    cur.execute(query.rstrip().rstrip(";") + suffix, params)
    return cur.fetchall()
