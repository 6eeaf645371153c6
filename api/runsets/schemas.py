"""
Run set API schemas (wire format + value equality).

Keys on the wire are PascalCase, matching what the benchmark clients send.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


def _utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Machine(WireModel):
    name: str = Field(..., alias="Name", min_length=1, max_length=200)
    architecture: str = Field(default="", alias="Architecture", max_length=200)
    is_dedicated: bool = Field(default=False, alias="IsDedicated")

    def is_same_as(self, other: Machine) -> bool:
        return self.name == other.name


class Product(WireModel):
    name: str = Field(..., alias="Name", min_length=1, max_length=200)
    # Version reference on input; the resolved full hash on output.
    commit: str = Field(..., alias="Commit", min_length=1, max_length=200)

    def is_same_as(self, other: Product) -> bool:
        return self.name == other.name and self.commit == other.commit


def product_sets_equal(left: Iterable[str], right: Iterable[str]) -> bool:
    """
    Secondary products match when they resolve to the same set of commits,
    regardless of order.
    """
    return set(left) == set(right)


class Config(WireModel):
    name: str = Field(..., alias="Name", min_length=1, max_length=200)
    executable: str | None = Field(default=None, alias="Executable")
    environment_variables: dict[str, str] = Field(default_factory=dict, alias="EnvironmentVariables")
    options: list[str] = Field(default_factory=list, alias="Options")

    def is_same_as(self, other: Config) -> bool:
        return self.name == other.name


class PullRequest(WireModel):
    baseline_run_set_id: int = Field(..., alias="BaselineRunSetID", ge=0)
    url: str = Field(..., alias="URL", min_length=1)


class Result(WireModel):
    benchmark: str = Field(..., alias="Benchmark", min_length=1, max_length=200)
    metric: str = Field(..., alias="Metric", min_length=1, max_length=200)
    unit: str = Field(default="", alias="Unit", max_length=50)
    value: float | list[float] = Field(..., alias="Value")


class Run(WireModel):
    id: int | None = Field(default=None, alias="ID")
    results: list[Result] = Field(default_factory=list, alias="Results")


class RunSet(WireModel):
    id: int | None = Field(default=None, alias="ID")
    main_product: Product = Field(..., alias="MainProduct")
    secondary_products: list[Product] = Field(default_factory=list, alias="SecondaryProducts")
    machine: Machine = Field(..., alias="Machine")
    config: Config = Field(..., alias="Config")
    started_at: datetime = Field(..., alias="StartedAt")
    finished_at: datetime | None = Field(default=None, alias="FinishedAt")
    build_url: str | None = Field(default=None, alias="BuildURL")
    log_urls: dict[str, str] | None = Field(default=None, alias="LogURLs")
    timed_out_benchmarks: list[str] = Field(default_factory=list, alias="TimedOutBenchmarks")
    crashed_benchmarks: list[str] = Field(default_factory=list, alias="CrashedBenchmarks")
    pull_request: PullRequest | None = Field(default=None, alias="PullRequest")
    pull_request_id: int | None = Field(default=None, alias="PullRequestID")
    runs: list[Run] = Field(default_factory=list, alias="Runs")

    @field_validator("started_at", "finished_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return _utc(value)

    def results(self) -> Iterable[Result]:
        for run in self.runs:
            yield from run.results

    def amended_with(self, other: RunSet) -> RunSet:
        """
        Merge the mutable fields of `other` into a copy of this run set.

        Timed-out and crashed benchmarks are unioned (stored order first);
        finished-at, build URL and log URLs are replaced when provided.
        """
        update: dict = {
            "timed_out_benchmarks": _union(self.timed_out_benchmarks, other.timed_out_benchmarks),
            "crashed_benchmarks": _union(self.crashed_benchmarks, other.crashed_benchmarks),
        }
        if other.finished_at is not None:
            update["finished_at"] = other.finished_at
        if other.build_url is not None:
            update["build_url"] = other.build_url
        if other.log_urls is not None:
            update["log_urls"] = dict(other.log_urls)
        return self.model_copy(update=update)


def _union(existing: list[str], new: list[str]) -> list[str]:
    merged = list(existing)
    seen = set(existing)
    for name in new:
        if name not in seen:
            merged.append(name)
            seen.add(name)
    return merged


class RunSetSummary(WireModel):
    id: int = Field(..., alias="ID")
    main_product: Product = Field(..., alias="MainProduct")
    secondary_products: list[Product] = Field(default_factory=list, alias="SecondaryProducts")
    started_at: datetime = Field(..., alias="StartedAt")
    finished_at: datetime | None = Field(default=None, alias="FinishedAt")
    build_url: str | None = Field(default=None, alias="BuildURL")
    run_count: int = Field(default=0, alias="RunCount")
    timed_out_benchmarks: list[str] = Field(default_factory=list, alias="TimedOutBenchmarks")
    crashed_benchmarks: list[str] = Field(default_factory=list, alias="CrashedBenchmarks")
    failed: bool = Field(default=False, alias="Failed")


class RunSetCreated(WireModel):
    run_set_id: int = Field(..., alias="RunSetID")
    run_ids: list[int] = Field(default_factory=list, alias="RunIDs")
    pull_request_id: int | None = Field(default=None, alias="PullRequestID")


class RunSetDeleted(WireModel):
    deleted_run_metrics: int = Field(..., alias="DeletedRunMetrics")
    deleted_runs: int = Field(..., alias="DeletedRuns")
