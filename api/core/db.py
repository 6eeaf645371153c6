"""
Async database access helpers (raw SQL) using asyncpg.

The pool is created once in the application lifespan (see `api/main.py`),
stored on `app.state.pool` and handed to request code through `get_pool`.
Helpers take the connection explicitly so that every statement of a request
runs inside that request's transaction.

SQL parameter style:
- asyncpg uses positional placeholders: $1, $2, $3, ...
"""

from __future__ import annotations

import json
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import asyncpg
from fastapi import Request

from .settings import Settings


def _sanitize_database_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url

    params = [(k, v) for (k, v) in parse_qsl(parts.query, keep_blank_values=True) if k != "sslmode"]
    query = urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


async def _init_connection(conn: asyncpg.Connection) -> None:
    # jsonb columns round-trip as Python values instead of strings.
    await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")


async def create_pool(settings: Settings) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        dsn=_sanitize_database_url(settings.database_url),
        min_size=settings.pool_min_size,
        max_size=settings.pool_max_size,
        command_timeout=settings.command_timeout_s,
        init=_init_connection,
    )


async def close_pool(pool: asyncpg.Pool | None) -> None:
    if pool is None:
        return None
    await pool.close()


def get_pool(request: Request) -> asyncpg.Pool:
    pool = getattr(request.app.state, "pool", None)
    if pool is None:
        raise RuntimeError("DB pool is not initialized. It is created in the app lifespan.")
    return pool


def _record_to_dict(record: asyncpg.Record) -> dict[str, Any]:
    return dict(record)


async def fetch_one(conn: asyncpg.Connection, sql: str, *args: Any) -> dict[str, Any] | None:
    """
    Run a query and return a single row as a dict (or None).
    """
    row = await conn.fetchrow(sql, *args)
    return _record_to_dict(row) if row is not None else None


async def fetch_all(conn: asyncpg.Connection, sql: str, *args: Any) -> list[dict[str, Any]]:
    """
    Run a query and return all rows as a list of dicts.
    """
    rows = await conn.fetch(sql, *args)
    return [_record_to_dict(r) for r in rows]


async def execute(conn: asyncpg.Connection, sql: str, *args: Any) -> None:
    """
    Run a statement (INSERT/UPDATE/DELETE/DDL). No result returned.
    """
    await conn.execute(sql, *args)
