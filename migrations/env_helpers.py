"""DATABASE_URL handling for alembic.

Kept apart from env.py so it can be unit tested without an alembic context.
The application connects with psycopg2 and accepts either a URL or a libpq
``key=value`` DSN; alembic needs a SQLAlchemy URL, so both are normalised here.
"""

from __future__ import annotations

import os
import re
from urllib.parse import quote_plus, urlparse, urlunparse

_DRIVER_PREFIX = "postgresql+psycopg2://"

# key=value pairs; values may be single-quoted with backslash escapes.
_DSN_PAIR = re.compile(r"(\w+)\s*=\s*('(?:[^'\\]|\\.)*'|\S*)")
_ESCAPE = re.compile(r"\\(.)")


def parse_libpq_dsn(dsn: str) -> dict[str, str]:
    params: dict[str, str] = {}
    for match in _DSN_PAIR.finditer(dsn):
        key, raw = match.group(1), match.group(2)
        if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
            raw = _ESCAPE.sub(r"\1", raw[1:-1])
        params[key] = raw
    return params


def libpq_dsn_to_url(dsn: str) -> str:
    """Build a SQLAlchemy URL from a libpq DSN.

    A host starting with ``/`` is a unix socket directory and is passed as
    the ``host`` query parameter.
    """
    params = parse_libpq_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD", "")

    credentials = quote_plus(params.get("user", ""))
    if password:
        credentials += ":" + quote_plus(password)
    dbname = quote_plus(params.get("dbname", ""))
    host = params.get("host", "localhost")

    if host.startswith("/"):
        return f"{_DRIVER_PREFIX}{credentials}@/{dbname}?host={quote_plus(host)}"
    port = params.get("port", "5432")
    return f"{_DRIVER_PREFIX}{credentials}@{host}:{port}/{dbname}"


def _with_driver(url: str) -> str:
    for scheme in ("postgres://", "postgresql://"):
        if url.startswith(scheme):
            return _DRIVER_PREFIX + url[len(scheme):]
    return url


def _inject_password(url: str, password: str) -> str:
    parsed = urlparse(url)
    if parsed.password or not password:
        return url
    netloc = f"{quote_plus(parsed.username or '')}:{quote_plus(password)}@{parsed.hostname or ''}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


def get_database_url() -> str:
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in url:
        return libpq_dsn_to_url(url)
    return _inject_password(_with_driver(url), os.environ.get("DB_PASSWORD", ""))
