"""
Run set business logic.

Flow for a new run set:
1) Resolve products (all commits first), then machine, benchmarks, metrics
   and config, each kind in sorted key order
2) Insert the optional pull request
3) Insert the run set row
4) Insert runs, each followed by its results

Amendment re-checks the stored identity (machine, config, main and secondary
product commits) before merging mutable fields and appending runs. Every
function runs on the caller's transaction; raising aborts all of it.
"""

from __future__ import annotations

import logging
from typing import Any

import asyncpg

from core.errors import BadRequestError
from core.github import CommitLookup
from entities import service as entities

from . import repository
from .schemas import (
    Config,
    Machine,
    Product,
    Result,
    Run,
    RunSet,
    RunSetCreated,
    RunSetDeleted,
    RunSetSummary,
    product_sets_equal,
)

logger = logging.getLogger(__name__)


async def _insert_runs(
    conn: asyncpg.Connection,
    run_set_id: int,
    runs: list[Run],
    metric_ids: dict[tuple[str, str], int],
) -> list[int]:
    run_ids: list[int] = []
    for run in runs:
        run_id = await repository.insert_run(conn, run_set_id)
        await repository.insert_results(conn, run_id, _result_records(run.results, metric_ids))
        run_ids.append(run_id)
    return run_ids


def _result_records(
    results: list[Result],
    metric_ids: dict[tuple[str, str], int],
) -> list[tuple[str, int, Any]]:
    return [(r.benchmark, metric_ids[(r.metric, r.unit)], r.value) for r in results]


async def create_run_set(conn: asyncpg.Connection, params: RunSet, *, lookup: CommitLookup) -> RunSetCreated:
    # Entity kinds are ensured in a fixed order: products, machine,
    # benchmarks, metrics, config. Product commits resolve before any insert.
    main_product, *secondary_products = await entities.ensure_products_exist(
        conn,
        [params.main_product, *params.secondary_products],
        lookup,
    )
    machine = await entities.ensure_machine_exists(conn, params.machine)
    metric_ids = await entities.ensure_benchmarks_and_metrics_exist(
        conn,
        params.results(),
        benchmarks=params.timed_out_benchmarks + params.crashed_benchmarks,
    )
    config = await entities.ensure_config_exists(conn, params.config)

    pull_request_id: int | None = None
    if params.pull_request is not None:
        baseline_id = params.pull_request.baseline_run_set_id
        if not await repository.run_set_exists(conn, baseline_id):
            raise BadRequestError(f"Baseline run set {baseline_id} does not exist")
        pull_request_id = await repository.insert_pull_request(
            conn,
            baseline_run_set_id=baseline_id,
            url=params.pull_request.url,
        )

    run_set_id = await repository.insert_run_set(
        conn,
        started_at=params.started_at,
        finished_at=params.finished_at,
        build_url=params.build_url,
        log_urls=params.log_urls,
        main_product_id=main_product.id,
        secondary_product_ids=[p.id for p in secondary_products],
        machine=machine,
        config=config,
        timed_out_benchmarks=params.timed_out_benchmarks,
        crashed_benchmarks=params.crashed_benchmarks,
        pull_request_id=pull_request_id,
    )
    run_ids = await _insert_runs(conn, run_set_id, params.runs, metric_ids)

    logger.info(
        "run_set_created run_set_id=%s runs=%s pull_request_id=%s",
        run_set_id,
        len(run_ids),
        pull_request_id,
    )
    return RunSetCreated(run_set_id=run_set_id, run_ids=run_ids, pull_request_id=pull_request_id)


async def amend_run_set(
    conn: asyncpg.Connection,
    run_set_id: int,
    params: RunSet,
    *,
    lookup: CommitLookup,
) -> RunSetCreated:
    if params.pull_request is not None:
        raise BadRequestError("PullRequest is not allowed for amending")

    main_commit = await entities.lookup_product_commit(conn, params.main_product, lookup)
    secondary_commits = [
        await entities.lookup_product_commit(conn, product, lookup)
        for product in params.secondary_products
    ]

    metric_ids = await entities.ensure_benchmarks_and_metrics_exist(
        conn,
        params.results(),
        benchmarks=params.timed_out_benchmarks + params.crashed_benchmarks,
    )

    stored = await fetch_run_set(conn, run_set_id, include_runs=False, for_update=True)
    main_product = Product(name=params.main_product.name, commit=main_commit)

    if (
        not main_product.is_same_as(stored.main_product)
        or not product_sets_equal(secondary_commits, [p.commit for p in stored.secondary_products])
        or not params.machine.is_same_as(stored.machine)
        or not params.config.is_same_as(stored.config)
    ):
        logger.info("run_set_amend_rejected run_set_id=%s reason=identity_mismatch", run_set_id)
        raise BadRequestError("Parameters do not match database")

    merged = stored.amended_with(params)
    await repository.update_run_set(
        conn,
        run_set_id,
        finished_at=merged.finished_at,
        build_url=merged.build_url,
        log_urls=merged.log_urls,
        timed_out_benchmarks=merged.timed_out_benchmarks,
        crashed_benchmarks=merged.crashed_benchmarks,
    )
    run_ids = await _insert_runs(conn, run_set_id, params.runs, metric_ids)

    logger.info("run_set_amended run_set_id=%s new_runs=%s", run_set_id, len(run_ids))
    return RunSetCreated(run_set_id=run_set_id, run_ids=run_ids)


def _products(rows: list[dict[str, Any]]) -> list[Product]:
    return [Product(name=str(row["name"]), commit=str(row["commit"])) for row in rows]


def _runs(rows: list[dict[str, Any]]) -> list[Run]:
    runs: dict[int, Run] = {}
    for row in rows:
        run_id = int(row["run_id"])
        run = runs.get(run_id)
        if run is None:
            run = runs[run_id] = Run(id=run_id, results=[])
        if row.get("result_id") is None:
            continue
        run.results.append(
            Result(
                benchmark=str(row["benchmark"]),
                metric=str(row["metric"]),
                unit=str(row["unit"] or ""),
                value=row["value"],
            )
        )
    return list(runs.values())


async def fetch_run_set(
    conn: asyncpg.Connection,
    run_set_id: int,
    *,
    include_runs: bool = True,
    for_update: bool = False,
) -> RunSet:
    row = await repository.fetch_run_set(conn, run_set_id, for_update=for_update)
    if row is None:
        raise BadRequestError("Run set not found")

    secondary_rows = await repository.fetch_products(conn, list(row["secondary_product_ids"] or []))
    runs = _runs(await repository.fetch_run_results(conn, run_set_id)) if include_runs else []

    return RunSet(
        id=int(row["id"]),
        main_product=Product(name=str(row["main_product_name"]), commit=str(row["main_product_commit"])),
        secondary_products=_products(secondary_rows),
        machine=Machine(
            name=str(row["machine_name"]),
            architecture=str(row["machine_architecture"] or ""),
            is_dedicated=bool(row["machine_is_dedicated"]),
        ),
        config=Config(
            name=str(row["config_name"]),
            executable=row["config_executable"],
            environment_variables=dict(row["config_environment_variables"] or {}),
            options=list(row["config_options"] or []),
        ),
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        build_url=row["build_url"],
        log_urls=dict(row["log_urls"] or {}),
        timed_out_benchmarks=list(row["timed_out_benchmarks"] or []),
        crashed_benchmarks=list(row["crashed_benchmarks"] or []),
        pull_request_id=row["pull_request_id"],
        runs=runs,
    )


async def list_run_set_summaries(
    conn: asyncpg.Connection,
    *,
    machine: str,
    config: str,
) -> list[RunSetSummary]:
    rows = await repository.list_run_set_summaries(conn, machine=machine, config=config)
    summaries: list[RunSetSummary] = []
    for row in rows:
        timed_out = list(row["timed_out_benchmarks"] or [])
        crashed = list(row["crashed_benchmarks"] or [])
        secondary_rows = await repository.fetch_products(conn, list(row["secondary_product_ids"] or []))
        summaries.append(
            RunSetSummary(
                id=int(row["id"]),
                main_product=Product(
                    name=str(row["main_product_name"]),
                    commit=str(row["main_product_commit"]),
                ),
                secondary_products=_products(secondary_rows),
                started_at=row["started_at"],
                finished_at=row["finished_at"],
                build_url=row["build_url"],
                run_count=int(row["run_count"]),
                timed_out_benchmarks=timed_out,
                crashed_benchmarks=crashed,
                failed=bool(timed_out or crashed),
            )
        )
    return summaries


async def delete_run_set(conn: asyncpg.Connection, run_set_id: int) -> RunSetDeleted:
    """
    Delete a run set with all its runs and results.
    """
    if await repository.fetch_run_set(conn, run_set_id, for_update=True) is None:
        raise BadRequestError("Run set not found")

    deleted_results = await repository.delete_results_for_run_set(conn, run_set_id)
    deleted_runs = await repository.delete_runs_for_run_set(conn, run_set_id)
    row = await repository.delete_run_set_row(conn, run_set_id)
    if row is not None and row.get("pull_request_id") is not None:
        await repository.delete_pull_request(conn, int(row["pull_request_id"]))

    logger.info(
        "run_set_deleted run_set_id=%s runs=%s results=%s",
        run_set_id,
        deleted_runs,
        deleted_results,
    )
    return RunSetDeleted(deleted_run_metrics=deleted_results, deleted_runs=deleted_runs)


async def append_results(conn: asyncpg.Connection, run_id: int, params: Run) -> None:
    """
    Append results to an existing run.
    """
    if not await repository.run_exists(conn, run_id):
        raise BadRequestError("Run not found")

    metric_ids = await entities.ensure_benchmarks_and_metrics_exist(conn, params.results)
    await repository.insert_results(conn, run_id, _result_records(params.results, metric_ids))
    logger.info("run_results_appended run_id=%s results=%s", run_id, len(params.results))
