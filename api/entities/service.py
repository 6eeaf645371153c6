"""
Entity resolution: "ensure exists, return identity" for everything a run set
references.

Each ensure call reads by natural key, inserts when absent, and re-reads when
the insert reports that a concurrent transaction got there first. Uniqueness
is enforced by the store, so concurrent requests for the same key converge on
one row without any in-process locking.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

import asyncpg

from core.errors import BadRequestError, InternalError
from core.github import CommitLookup, CommitLookupError, UnknownCommitError
from runsets.schemas import Config, Machine, Product, Result

from . import repository

logger = logging.getLogger(__name__)

Row = dict[str, Any]
MetricKey = tuple[str, str]


@dataclass(frozen=True)
class ResolvedProduct:
    id: int
    name: str
    version: str
    commit: str


async def _ensure_row(
    kind: str,
    key: Any,
    fetch: Callable[[], Awaitable[Row | None]],
    insert: Callable[[], Awaitable[Row | None]],
) -> Row:
    row = await fetch()
    if row is not None:
        return row

    row = await insert()
    if row is not None:
        logger.info("entity_created kind=%s key=%s", kind, key)
        return row

    # Lost the race against a concurrent insert of the same key.
    row = await fetch()
    if row is None:
        logger.error("entity_resolution_failed kind=%s key=%s", kind, key)
        raise InternalError(f"Could not create {kind}")
    return row


async def ensure_machine_exists(conn: asyncpg.Connection, machine: Machine) -> str:
    row = await _ensure_row(
        "machine",
        machine.name,
        lambda: repository.fetch_machine(conn, machine.name),
        lambda: repository.insert_machine(
            conn,
            name=machine.name,
            architecture=machine.architecture,
            is_dedicated=machine.is_dedicated,
        ),
    )
    return str(row["name"])


async def ensure_config_exists(conn: asyncpg.Connection, config: Config) -> str:
    row = await _ensure_row(
        "config",
        config.name,
        lambda: repository.fetch_config(conn, config.name),
        lambda: repository.insert_config(
            conn,
            name=config.name,
            executable=config.executable,
            environment_variables=config.environment_variables,
            options=config.options,
        ),
    )
    return str(row["name"])


async def ensure_benchmark_exists(conn: asyncpg.Connection, name: str) -> str:
    row = await _ensure_row(
        "benchmark",
        name,
        lambda: repository.fetch_benchmark(conn, name),
        lambda: repository.insert_benchmark(conn, name),
    )
    return str(row["name"])


async def ensure_metric_exists(conn: asyncpg.Connection, name: str, unit: str = "") -> int:
    row = await _ensure_row(
        "metric",
        (name, unit),
        lambda: repository.fetch_metric(conn, name, unit),
        lambda: repository.insert_metric(conn, name=name, unit=unit),
    )
    return int(row["id"])


async def resolve_commit(product: Product, lookup: CommitLookup) -> str:
    try:
        return await lookup.resolve(product.name, product.commit)
    except UnknownCommitError as exc:
        raise BadRequestError(str(exc)) from exc
    except CommitLookupError as exc:
        logger.warning("commit_lookup_failed product=%s ref=%s error=%s", product.name, product.commit, exc)
        raise InternalError("Could not resolve product commit") from exc


async def _ensure_product_row(conn: asyncpg.Connection, product: Product, commit: str) -> ResolvedProduct:
    row = await _ensure_row(
        "product",
        (product.name, product.commit),
        lambda: repository.fetch_product(conn, product.name, product.commit),
        lambda: repository.insert_product(
            conn,
            name=product.name,
            version=product.commit,
            commit=commit,
        ),
    )
    if str(row["commit"]) != commit:
        raise BadRequestError(
            f"Product {product.name} {product.commit} resolves to {commit}, "
            f"but the database has {row['commit']}"
        )
    return ResolvedProduct(
        id=int(row["id"]),
        name=str(row["name"]),
        version=str(row["version"]),
        commit=commit,
    )


async def ensure_product_exists(
    conn: asyncpg.Connection,
    product: Product,
    lookup: CommitLookup,
) -> ResolvedProduct:
    """
    Resolve the product's version reference and make sure the (name, version)
    row exists. An existing row must already point at the same commit.
    """
    commit = await resolve_commit(product, lookup)
    return await _ensure_product_row(conn, product, commit)


async def ensure_products_exist(
    conn: asyncpg.Connection,
    products: Iterable[Product],
    lookup: CommitLookup,
) -> list[ResolvedProduct]:
    """
    Ensure several products at once, returned in the order given.

    Every commit is resolved before the first insert, and rows are ensured in
    (name, version) order so that concurrent transactions lock keys in the
    same order.
    """
    products = list(products)
    commits: dict[tuple[str, str], str] = {}
    for product in products:
        key = (product.name, product.commit)
        if key not in commits:
            commits[key] = await resolve_commit(product, lookup)

    resolved: dict[tuple[str, str], ResolvedProduct] = {}
    for name, version in sorted(commits):
        product = Product(name=name, commit=version)
        resolved[(name, version)] = await _ensure_product_row(conn, product, commits[(name, version)])
    return [resolved[(p.name, p.commit)] for p in products]


async def lookup_product_commit(
    conn: asyncpg.Connection,
    product: Product,
    lookup: CommitLookup,
) -> str:
    """
    Commit for a product reference without creating anything: the stored
    resolution wins, otherwise ask the lookup.
    """
    row = await repository.fetch_product(conn, product.name, product.commit)
    if row is not None:
        return str(row["commit"])
    return await resolve_commit(product, lookup)


async def ensure_benchmarks_and_metrics_exist(
    conn: asyncpg.Connection,
    results: Iterable[Result],
    *,
    benchmarks: Iterable[str] = (),
) -> dict[MetricKey, int]:
    """
    Ensure every benchmark and metric referenced by `results` (plus any extra
    benchmark names, e.g. timed-out or crashed ones) exists.

    Keys are ensured in sorted order, never in request order.

    Returns metric ids keyed by (name, unit).
    """
    results = list(results)
    for name in sorted({r.benchmark for r in results} | set(benchmarks)):
        await ensure_benchmark_exists(conn, name)

    metric_ids: dict[MetricKey, int] = {}
    for name, unit in sorted({(r.metric, r.unit) for r in results}):
        metric_ids[(name, unit)] = await ensure_metric_exists(conn, name, unit)
    return metric_ids
