"""
Shared fixtures: an in-memory store standing in for PostgreSQL.

`FakeStore` implements the repository functions of `entities.repository` and
`runsets.repository` over plain dicts. `FakePool` hands out connections whose
transactions snapshot the store on start and restore it on rollback, so
atomicity is observable in tests.
"""

from __future__ import annotations

import copy
import itertools
from datetime import datetime, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from core.github import CommitLookup, UnknownCommitError, is_full_commit
from core.settings import Settings
from entities import repository as entity_repository
from main import create_app
from runsets import repository as runset_repository

API_TOKEN = "s3cret-token"

MONO_MAIN = "a" * 40
MONO_OTHER = "b" * 40
LLVM_MAIN = "c" * 40
MSBUILD_MAIN = "d" * 40


class StoreFailure(ConnectionResetError):
    """Raised by FakeStore when a function is configured to fail."""


class FakeStore:
    TABLES = (
        "machines",
        "configs",
        "products",
        "benchmarks",
        "metrics",
        "pull_requests",
        "run_sets",
        "runs",
        "results",
    )

    def __init__(self) -> None:
        self.tables: dict[str, dict] = {name: {} for name in self.TABLES}
        self._ids = itertools.count(1)
        self.fail_on: set[str] = set()
        self.calls: list[str] = []

    # -- test helpers -----------------------------------------------------

    def count(self, table: str) -> int:
        return len(self.tables[table])

    def snapshot(self) -> dict[str, dict]:
        return copy.deepcopy(self.tables)

    def restore(self, snapshot: dict[str, dict]) -> None:
        self.tables = snapshot

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise StoreFailure(f"{name} failed")

    def _next_id(self) -> int:
        return next(self._ids)

    def _product_by_id(self, product_id: int) -> dict[str, Any]:
        for row in self.tables["products"].values():
            if row["id"] == product_id:
                return row
        raise KeyError(product_id)

    # -- entities.repository ----------------------------------------------

    async def fetch_machine(self, conn, name):
        self._call("fetch_machine")
        row = self.tables["machines"].get(name)
        return dict(row) if row else None

    async def insert_machine(self, conn, *, name, architecture, is_dedicated):
        self._call("insert_machine")
        if name in self.tables["machines"]:
            return None
        row = {"name": name, "architecture": architecture, "is_dedicated": is_dedicated}
        self.tables["machines"][name] = row
        return dict(row)

    async def fetch_config(self, conn, name):
        self._call("fetch_config")
        row = self.tables["configs"].get(name)
        return copy.deepcopy(row) if row else None

    async def insert_config(self, conn, *, name, executable, environment_variables, options):
        self._call("insert_config")
        if name in self.tables["configs"]:
            return None
        row = {
            "name": name,
            "executable": executable,
            "environment_variables": dict(environment_variables),
            "options": list(options),
        }
        self.tables["configs"][name] = row
        return copy.deepcopy(row)

    async def fetch_product(self, conn, name, version):
        self._call("fetch_product")
        row = self.tables["products"].get((name, version))
        return dict(row) if row else None

    async def insert_product(self, conn, *, name, version, commit):
        self._call("insert_product")
        if (name, version) in self.tables["products"]:
            return None
        row = {"id": self._next_id(), "name": name, "version": version, "commit": commit}
        self.tables["products"][(name, version)] = row
        return dict(row)

    async def fetch_benchmark(self, conn, name):
        self._call("fetch_benchmark")
        return {"name": name} if name in self.tables["benchmarks"] else None

    async def insert_benchmark(self, conn, name):
        self._call("insert_benchmark")
        if name in self.tables["benchmarks"]:
            return None
        self.tables["benchmarks"][name] = {"name": name}
        return {"name": name}

    async def list_benchmarks(self, conn, *, limit=100):
        self._call("list_benchmarks")
        return [{"name": name} for name in sorted(self.tables["benchmarks"])][:limit]

    async def fetch_metric(self, conn, name, unit):
        self._call("fetch_metric")
        row = self.tables["metrics"].get((name, unit))
        return dict(row) if row else None

    async def insert_metric(self, conn, *, name, unit):
        self._call("insert_metric")
        if (name, unit) in self.tables["metrics"]:
            return None
        row = {"id": self._next_id(), "name": name, "unit": unit}
        self.tables["metrics"][(name, unit)] = row
        return dict(row)

    # -- runsets.repository -----------------------------------------------

    async def insert_pull_request(self, conn, *, baseline_run_set_id, url):
        self._call("insert_pull_request")
        pr_id = self._next_id()
        self.tables["pull_requests"][pr_id] = {
            "id": pr_id,
            "baseline_run_set_id": baseline_run_set_id,
            "url": url,
        }
        return pr_id

    async def insert_run_set(self, conn, **fields):
        self._call("insert_run_set")
        run_set_id = self._next_id()
        row = copy.deepcopy(fields)
        row["id"] = run_set_id
        row["log_urls"] = row.get("log_urls") or {}
        self.tables["run_sets"][run_set_id] = row
        return run_set_id

    async def update_run_set(self, conn, run_set_id, **fields):
        self._call("update_run_set")
        row = self.tables["run_sets"][run_set_id]
        row.update(copy.deepcopy(fields))
        row["log_urls"] = row.get("log_urls") or {}

    async def run_set_exists(self, conn, run_set_id):
        self._call("run_set_exists")
        return run_set_id in self.tables["run_sets"]

    async def fetch_run_set(self, conn, run_set_id, *, for_update=False):
        self._call("fetch_run_set")
        row = self.tables["run_sets"].get(run_set_id)
        if row is None:
            return None
        product = self._product_by_id(row["main_product_id"])
        machine = self.tables["machines"][row["machine"]]
        config = self.tables["configs"][row["config"]]
        return copy.deepcopy(
            {
                "id": row["id"],
                "started_at": row["started_at"],
                "finished_at": row["finished_at"],
                "build_url": row["build_url"],
                "log_urls": row["log_urls"],
                "timed_out_benchmarks": row["timed_out_benchmarks"],
                "crashed_benchmarks": row["crashed_benchmarks"],
                "pull_request_id": row["pull_request_id"],
                "secondary_product_ids": row["secondary_product_ids"],
                "main_product_id": row["main_product_id"],
                "main_product_name": product["name"],
                "main_product_commit": product["commit"],
                "machine_name": machine["name"],
                "machine_architecture": machine["architecture"],
                "machine_is_dedicated": machine["is_dedicated"],
                "config_name": config["name"],
                "config_executable": config["executable"],
                "config_environment_variables": config["environment_variables"],
                "config_options": config["options"],
            }
        )

    async def fetch_products(self, conn, product_ids):
        self._call("fetch_products")
        rows = []
        for product_id in product_ids:
            product = self._product_by_id(product_id)
            rows.append({"id": product["id"], "name": product["name"], "commit": product["commit"]})
        return rows

    async def fetch_run_results(self, conn, run_set_id):
        self._call("fetch_run_results")
        rows = []
        for run_id in sorted(r for r, run in self.tables["runs"].items() if run["run_set_id"] == run_set_id):
            results = sorted(
                (res for res in self.tables["results"].values() if res["run_id"] == run_id),
                key=lambda res: res["id"],
            )
            if not results:
                rows.append({"run_id": run_id, "result_id": None, "benchmark": None,
                             "metric": None, "unit": None, "value": None})
            for res in results:
                metric = next(m for m in self.tables["metrics"].values() if m["id"] == res["metric_id"])
                rows.append(
                    {
                        "run_id": run_id,
                        "result_id": res["id"],
                        "benchmark": res["benchmark"],
                        "metric": metric["name"],
                        "unit": metric["unit"],
                        "value": copy.deepcopy(res["value"]),
                    }
                )
        return rows

    async def list_run_set_summaries(self, conn, *, machine, config):
        self._call("list_run_set_summaries")
        rows = []
        for row in self.tables["run_sets"].values():
            if row["machine"] != machine or row["config"] != config:
                continue
            product = self._product_by_id(row["main_product_id"])
            rows.append(
                copy.deepcopy(
                    {
                        "id": row["id"],
                        "started_at": row["started_at"],
                        "finished_at": row["finished_at"],
                        "build_url": row["build_url"],
                        "timed_out_benchmarks": row["timed_out_benchmarks"],
                        "crashed_benchmarks": row["crashed_benchmarks"],
                        "secondary_product_ids": row["secondary_product_ids"],
                        "main_product_name": product["name"],
                        "main_product_commit": product["commit"],
                        "run_count": sum(
                            1 for run in self.tables["runs"].values() if run["run_set_id"] == row["id"]
                        ),
                    }
                )
            )
        rows.sort(key=lambda r: (r["started_at"], r["id"]), reverse=True)
        return rows

    async def insert_run(self, conn, run_set_id):
        self._call("insert_run")
        run_id = self._next_id()
        self.tables["runs"][run_id] = {"id": run_id, "run_set_id": run_set_id}
        return run_id

    async def run_exists(self, conn, run_id):
        self._call("run_exists")
        return run_id in self.tables["runs"]

    async def insert_results(self, conn, run_id, results):
        self._call("insert_results")
        for benchmark, metric_id, value in results:
            result_id = self._next_id()
            self.tables["results"][result_id] = {
                "id": result_id,
                "run_id": run_id,
                "benchmark": benchmark,
                "metric_id": metric_id,
                "value": copy.deepcopy(value),
            }

    async def delete_results_for_run_set(self, conn, run_set_id):
        self._call("delete_results_for_run_set")
        run_ids = {r for r, run in self.tables["runs"].items() if run["run_set_id"] == run_set_id}
        doomed = [k for k, res in self.tables["results"].items() if res["run_id"] in run_ids]
        for key in doomed:
            del self.tables["results"][key]
        return len(doomed)

    async def delete_runs_for_run_set(self, conn, run_set_id):
        self._call("delete_runs_for_run_set")
        doomed = [r for r, run in self.tables["runs"].items() if run["run_set_id"] == run_set_id]
        for key in doomed:
            del self.tables["runs"][key]
        return len(doomed)

    async def delete_run_set_row(self, conn, run_set_id):
        self._call("delete_run_set_row")
        row = self.tables["run_sets"].pop(run_set_id, None)
        if row is None:
            return None
        return {"id": run_set_id, "pull_request_id": row["pull_request_id"]}

    async def delete_pull_request(self, conn, pull_request_id):
        self._call("delete_pull_request")
        self.tables["pull_requests"].pop(pull_request_id, None)


class FakeTransaction:
    def __init__(self, pool: FakePool) -> None:
        self.pool = pool
        self._snapshot: dict[str, dict] | None = None

    async def start(self) -> None:
        if self.pool.fail_start:
            raise ConnectionRefusedError("cannot start transaction")
        self._snapshot = self.pool.store.snapshot()
        self.pool.started += 1

    async def commit(self) -> None:
        self._snapshot = None
        self.pool.commits += 1

    async def rollback(self) -> None:
        if self._snapshot is not None:
            self.pool.store.restore(self._snapshot)
            self._snapshot = None
        self.pool.rollbacks += 1


class FakeConnection:
    def __init__(self, pool: FakePool) -> None:
        self.pool = pool

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self.pool)


class FakePool:
    def __init__(self, store: FakeStore) -> None:
        self.store = store
        self.available = True
        self.fail_start = False
        self.acquired = 0
        self.released = 0
        self.started = 0
        self.commits = 0
        self.rollbacks = 0

    async def acquire(self, *, timeout: float | None = None) -> FakeConnection:
        if not self.available:
            raise ConnectionRefusedError("database unavailable")
        self.acquired += 1
        return FakeConnection(self)

    async def release(self, conn: FakeConnection) -> None:
        self.released += 1


class StaticCommitLookup(CommitLookup):
    """
    Resolves full hashes as-is and a fixed table of (product, ref) pairs.
    """

    def __init__(self, refs: dict[tuple[str, str], str] | None = None) -> None:
        super().__init__(base_url="", repositories={})
        self.refs = dict(refs or {})

    async def resolve(self, product: str, ref: str) -> str:
        if is_full_commit(ref):
            return ref.lower()
        commit = self.refs.get((product, ref))
        if commit is None:
            raise UnknownCommitError(f"Commit {ref} not found for product {product}.")
        return commit


REPOSITORY_FUNCTIONS = {
    entity_repository: (
        "fetch_machine",
        "insert_machine",
        "fetch_config",
        "insert_config",
        "fetch_product",
        "insert_product",
        "fetch_benchmark",
        "insert_benchmark",
        "list_benchmarks",
        "fetch_metric",
        "insert_metric",
    ),
    runset_repository: (
        "insert_pull_request",
        "insert_run_set",
        "update_run_set",
        "run_set_exists",
        "fetch_run_set",
        "fetch_products",
        "fetch_run_results",
        "list_run_set_summaries",
        "insert_run",
        "run_exists",
        "insert_results",
        "delete_results_for_run_set",
        "delete_runs_for_run_set",
        "delete_run_set_row",
        "delete_pull_request",
    ),
}


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore()
    for module, names in REPOSITORY_FUNCTIONS.items():
        for name in names:
            monkeypatch.setattr(module, name, getattr(fake, name))
    return fake


@pytest.fixture
def pool(store) -> FakePool:
    return FakePool(store)


@pytest.fixture
def conn(pool) -> FakeConnection:
    return FakeConnection(pool)


@pytest.fixture
def lookup() -> StaticCommitLookup:
    return StaticCommitLookup({("mono", "main"): MONO_MAIN, ("mono", "next"): MONO_OTHER})


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="postgresql://unused/db", api_token=API_TOKEN, acquire_timeout_s=1.0)


@pytest.fixture
def client(settings, pool, lookup):
    app = create_app(settings, pool=pool, commit_lookup=lookup)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"token {API_TOKEN}"}


def make_result(benchmark: str, metric: str = "time", value: Any = 1.5, unit: str = "ms") -> dict:
    return {"Benchmark": benchmark, "Metric": metric, "Unit": unit, "Value": value}


def make_run_set(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "MainProduct": {"Name": "mono", "Commit": MONO_MAIN},
        "SecondaryProducts": [
            {"Name": "llvm", "Commit": LLVM_MAIN},
            {"Name": "msbuild", "Commit": MSBUILD_MAIN},
        ],
        "Machine": {"Name": "bench-box-1", "Architecture": "amd64", "IsDedicated": True},
        "Config": {
            "Name": "default",
            "Executable": "mono",
            "EnvironmentVariables": {"MONO_GC_PARAMS": "major=marksweep"},
            "Options": ["--optimize=all"],
        },
        "StartedAt": datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc).isoformat(),
        "FinishedAt": datetime(2026, 10, 1, 13, 0, tzinfo=timezone.utc).isoformat(),
        "BuildURL": "https://ci.example.org/build/1",
        "LogURLs": {"stdout": "https://logs.example.org/1/stdout"},
        "TimedOutBenchmarks": [],
        "CrashedBenchmarks": [],
        "Runs": [
            {"Results": [make_result("nbody"), make_result("nbody", "memory", 2048, "bytes")]},
            {"Results": [make_result("binarytrees", value=[1.0, 1.1, 0.9])]},
        ],
    }
    body.update(overrides)
    return body
