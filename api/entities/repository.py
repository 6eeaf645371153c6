"""
Entity persistence (machines, configs, products, benchmarks, metrics).

Inserts use `ON CONFLICT DO NOTHING RETURNING ...`: a row comes back only
when this transaction created it. `None` means the natural key already exists
(possibly committed by a concurrent request) and the caller re-reads it.
"""

from __future__ import annotations

from typing import Any

import asyncpg

from core import db


async def fetch_machine(conn: asyncpg.Connection, name: str) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        """
        SELECT name, architecture, is_dedicated
        FROM machine
        WHERE name = $1
        """,
        name,
    )


async def insert_machine(
    conn: asyncpg.Connection,
    *,
    name: str,
    architecture: str,
    is_dedicated: bool,
) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        """
        INSERT INTO machine (name, architecture, is_dedicated)
        VALUES ($1, $2, $3)
        ON CONFLICT (name) DO NOTHING
        RETURNING name, architecture, is_dedicated
        """,
        name,
        architecture,
        is_dedicated,
    )


async def fetch_config(conn: asyncpg.Connection, name: str) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        """
        SELECT name, executable, environment_variables, options
        FROM config
        WHERE name = $1
        """,
        name,
    )


async def insert_config(
    conn: asyncpg.Connection,
    *,
    name: str,
    executable: str | None,
    environment_variables: dict[str, str],
    options: list[str],
) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        """
        INSERT INTO config (name, executable, environment_variables, options)
        VALUES ($1, $2, $3::jsonb, $4::text[])
        ON CONFLICT (name) DO NOTHING
        RETURNING name, executable, environment_variables, options
        """,
        name,
        executable,
        environment_variables,
        options,
    )


async def fetch_product(conn: asyncpg.Connection, name: str, version: str) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        """
        SELECT id, name, version, commit
        FROM product
        WHERE name = $1
          AND version = $2
        """,
        name,
        version,
    )


async def insert_product(
    conn: asyncpg.Connection,
    *,
    name: str,
    version: str,
    commit: str,
) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        """
        INSERT INTO product (name, version, commit)
        VALUES ($1, $2, $3)
        ON CONFLICT (name, version) DO NOTHING
        RETURNING id, name, version, commit
        """,
        name,
        version,
        commit,
    )


async def fetch_benchmark(conn: asyncpg.Connection, name: str) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        "SELECT name FROM benchmark WHERE name = $1",
        name,
    )


async def insert_benchmark(conn: asyncpg.Connection, name: str) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        """
        INSERT INTO benchmark (name)
        VALUES ($1)
        ON CONFLICT (name) DO NOTHING
        RETURNING name
        """,
        name,
    )


async def list_benchmarks(conn: asyncpg.Connection, *, limit: int = 100) -> list[dict[str, Any]]:
    return await db.fetch_all(
        conn,
        """
        SELECT name
        FROM benchmark
        ORDER BY name
        LIMIT $1
        """,
        limit,
    )


async def fetch_metric(conn: asyncpg.Connection, name: str, unit: str) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        """
        SELECT id, name, unit
        FROM metric
        WHERE name = $1
          AND unit = $2
        """,
        name,
        unit,
    )


async def insert_metric(conn: asyncpg.Connection, *, name: str, unit: str) -> dict[str, Any] | None:
    return await db.fetch_one(
        conn,
        """
        INSERT INTO metric (name, unit)
        VALUES ($1, $2)
        ON CONFLICT (name, unit) DO NOTHING
        RETURNING id, name, unit
        """,
        name,
        unit,
    )
