"""
Run set persistence.
This module is where run set / run / result SQL lives.

All functions take the request's connection; the caller owns the transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import asyncpg

from core import db

_RUN_SET_COLUMNS = """
  rs.id,
  rs.started_at,
  rs.finished_at,
  rs.build_url,
  rs.log_urls,
  rs.timed_out_benchmarks,
  rs.crashed_benchmarks,
  rs.pull_request_id,
  rs.secondary_product_ids,
  rs.main_product_id,
  mp.name AS main_product_name,
  mp.commit AS main_product_commit,
  m.name AS machine_name,
  m.architecture AS machine_architecture,
  m.is_dedicated AS machine_is_dedicated,
  c.name AS config_name,
  c.executable AS config_executable,
  c.environment_variables AS config_environment_variables,
  c.options AS config_options
"""


async def insert_pull_request(conn: asyncpg.Connection, *, baseline_run_set_id: int, url: str) -> int:
    row = await db.fetch_one(
        conn,
        """
        INSERT INTO pull_request (baseline_run_set_id, url)
        VALUES ($1, $2)
        RETURNING id
        """,
        baseline_run_set_id,
        url,
    )
    if row is None or "id" not in row:
        raise RuntimeError("Failed to insert pull request.")
    return int(row["id"])


async def insert_run_set(
    conn: asyncpg.Connection,
    *,
    started_at: datetime,
    finished_at: datetime | None,
    build_url: str | None,
    log_urls: dict[str, str] | None,
    main_product_id: int,
    secondary_product_ids: list[int],
    machine: str,
    config: str,
    timed_out_benchmarks: list[str],
    crashed_benchmarks: list[str],
    pull_request_id: int | None,
) -> int:
    row = await db.fetch_one(
        conn,
        """
        INSERT INTO run_set (
          started_at, finished_at, build_url, log_urls,
          main_product_id, secondary_product_ids, machine, config,
          timed_out_benchmarks, crashed_benchmarks, pull_request_id
        )
        VALUES ($1, $2, $3, COALESCE($4::jsonb, '{}'::jsonb), $5, $6::bigint[], $7, $8,
                $9::text[], $10::text[], $11)
        RETURNING id
        """,
        started_at,
        finished_at,
        build_url,
        log_urls,
        main_product_id,
        secondary_product_ids,
        machine,
        config,
        timed_out_benchmarks,
        crashed_benchmarks,
        pull_request_id,
    )
    if row is None or "id" not in row:
        raise RuntimeError("Failed to insert run set.")
    return int(row["id"])


async def update_run_set(
    conn: asyncpg.Connection,
    run_set_id: int,
    *,
    finished_at: datetime | None,
    build_url: str | None,
    log_urls: dict[str, str] | None,
    timed_out_benchmarks: list[str],
    crashed_benchmarks: list[str],
) -> None:
    """
    Persist the mutable fields of a run set. Identity columns are not touched.
    """
    await db.execute(
        conn,
        """
        UPDATE run_set
        SET finished_at = $2,
            build_url = $3,
            log_urls = COALESCE($4::jsonb, '{}'::jsonb),
            timed_out_benchmarks = $5::text[],
            crashed_benchmarks = $6::text[]
        WHERE id = $1
        """,
        run_set_id,
        finished_at,
        build_url,
        log_urls,
        timed_out_benchmarks,
        crashed_benchmarks,
    )


async def fetch_run_set(
    conn: asyncpg.Connection,
    run_set_id: int,
    *,
    for_update: bool = False,
) -> dict[str, Any] | None:
    """
    Fetch one run set with its machine, config and main product joined in.
    `for_update` locks the row so concurrent amendments serialize.
    """
    lock = "FOR UPDATE OF rs" if for_update else ""
    return await db.fetch_one(
        conn,
        f"""
        SELECT {_RUN_SET_COLUMNS}
        FROM run_set rs
        JOIN product mp ON mp.id = rs.main_product_id
        JOIN machine m ON m.name = rs.machine
        JOIN config c ON c.name = rs.config
        WHERE rs.id = $1
        {lock}
        """,
        run_set_id,
    )


async def run_set_exists(conn: asyncpg.Connection, run_set_id: int) -> bool:
    row = await db.fetch_one(
        conn,
        "SELECT 1 AS ok FROM run_set WHERE id = $1 LIMIT 1",
        run_set_id,
    )
    return row is not None


async def fetch_products(conn: asyncpg.Connection, product_ids: list[int]) -> list[dict[str, Any]]:
    """
    Fetch products by id, preserving the order of `product_ids`.
    """
    if not product_ids:
        return []
    return await db.fetch_all(
        conn,
        """
        SELECT p.id, p.name, p.commit
        FROM unnest($1::bigint[]) WITH ORDINALITY AS s(product_id, ord)
        JOIN product p ON p.id = s.product_id
        ORDER BY s.ord
        """,
        product_ids,
    )


async def fetch_run_results(conn: asyncpg.Connection, run_set_id: int) -> list[dict[str, Any]]:
    """
    One row per result (or one row with NULL result columns for an empty run),
    ordered by run then result insertion order.
    """
    return await db.fetch_all(
        conn,
        """
        SELECT
          r.id AS run_id,
          res.id AS result_id,
          res.benchmark,
          met.name AS metric,
          met.unit,
          res.value
        FROM run r
        LEFT JOIN result res ON res.run_id = r.id
        LEFT JOIN metric met ON met.id = res.metric_id
        WHERE r.run_set_id = $1
        ORDER BY r.id, res.id
        """,
        run_set_id,
    )


async def list_run_set_summaries(
    conn: asyncpg.Connection,
    *,
    machine: str,
    config: str,
) -> list[dict[str, Any]]:
    return await db.fetch_all(
        conn,
        """
        SELECT
          rs.id,
          rs.started_at,
          rs.finished_at,
          rs.build_url,
          rs.timed_out_benchmarks,
          rs.crashed_benchmarks,
          rs.secondary_product_ids,
          mp.name AS main_product_name,
          mp.commit AS main_product_commit,
          COALESCE(stats.run_count, 0) AS run_count
        FROM run_set rs
        JOIN product mp ON mp.id = rs.main_product_id
        LEFT JOIN LATERAL (
          SELECT count(*) AS run_count
          FROM run r
          WHERE r.run_set_id = rs.id
        ) stats ON true
        WHERE rs.machine = $1
          AND rs.config = $2
        ORDER BY rs.started_at DESC, rs.id DESC
        """,
        machine,
        config,
    )


async def insert_run(conn: asyncpg.Connection, run_set_id: int) -> int:
    row = await db.fetch_one(
        conn,
        "INSERT INTO run (run_set_id) VALUES ($1) RETURNING id",
        run_set_id,
    )
    if row is None or "id" not in row:
        raise RuntimeError("Failed to insert run.")
    return int(row["id"])


async def run_exists(conn: asyncpg.Connection, run_id: int) -> bool:
    row = await db.fetch_one(
        conn,
        "SELECT 1 AS ok FROM run WHERE id = $1 LIMIT 1",
        run_id,
    )
    return row is not None


async def insert_results(
    conn: asyncpg.Connection,
    run_id: int,
    results: list[tuple[str, int, Any]],
) -> None:
    """
    Bulk insert results.

    `results` is [(benchmark, metric_id, value), ...]
    """
    if not results:
        return

    records = [(run_id, benchmark, metric_id, value) for (benchmark, metric_id, value) in results]
    await conn.executemany(
        """
        INSERT INTO result (run_id, benchmark, metric_id, value)
        VALUES ($1, $2, $3, $4::jsonb)
        """,
        records,
    )


async def delete_results_for_run_set(conn: asyncpg.Connection, run_set_id: int) -> int:
    row = await db.fetch_one(
        conn,
        """
        WITH deleted AS (
          DELETE FROM result res
          USING run r
          WHERE res.run_id = r.id
            AND r.run_set_id = $1
          RETURNING res.id
        )
        SELECT count(*) AS n FROM deleted
        """,
        run_set_id,
    )
    return int((row or {}).get("n", 0))


async def delete_runs_for_run_set(conn: asyncpg.Connection, run_set_id: int) -> int:
    row = await db.fetch_one(
        conn,
        """
        WITH deleted AS (
          DELETE FROM run
          WHERE run_set_id = $1
          RETURNING id
        )
        SELECT count(*) AS n FROM deleted
        """,
        run_set_id,
    )
    return int((row or {}).get("n", 0))


async def delete_run_set_row(conn: asyncpg.Connection, run_set_id: int) -> dict[str, Any] | None:
    """
    Delete the run set row itself. Returns None when it did not exist.
    """
    return await db.fetch_one(
        conn,
        """
        DELETE FROM run_set
        WHERE id = $1
        RETURNING id, pull_request_id
        """,
        run_set_id,
    )


async def delete_pull_request(conn: asyncpg.Connection, pull_request_id: int) -> None:
    await db.execute(
        conn,
        "DELETE FROM pull_request WHERE id = $1",
        pull_request_id,
    )
