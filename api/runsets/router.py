"""
FastAPI router for run set and run endpoints.

Every endpoint here requires the shared token (router dependency) and runs
its work through one request transaction. Mutating endpoints commit on
success; read endpoints always roll back.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, TypeVar

import asyncpg
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from auth import dependencies as auth_dependencies
from core import db, transactions
from core.errors import BadRequestError
from core.github import CommitLookup

from . import service
from .schemas import Run, RunSet

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", dependencies=[Depends(auth_dependencies.require_token)])

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

_ID_RE = re.compile(r"^[+-]?\d+$")
_MAX_ID = 2**63 - 1


def parse_id(path: str, *, what: str = "run set") -> int:
    """
    Parse the single id segment that follows a resource prefix.
    """
    parts = (path or "").split("/")
    if len(parts) != 1:
        raise BadRequestError("Incorrect path")
    raw = parts[0].strip()
    if not _ID_RE.match(raw):
        raise BadRequestError(f"Could not parse {what} id")
    value = int(raw)
    if value < 0:
        raise BadRequestError(f"{what.capitalize()} id must be a positive number")
    if value > _MAX_ID:
        raise BadRequestError(f"Could not parse {what} id")
    return value


async def _parse_body(request: Request, model: type[M]) -> M:
    body = await request.body()
    try:
        return model.model_validate_json(body)
    except ValidationError as exc:
        logger.info("request_body_invalid path=%s errors=%s", request.url.path, exc.errors())
        raise BadRequestError("Could not parse request body") from exc


def get_commit_lookup(request: Request) -> CommitLookup:
    return request.app.state.commit_lookup


async def _run(
    request: Request,
    operation: Callable[[asyncpg.Connection], Awaitable[T]],
    *,
    commit: bool,
) -> T:
    async def handler(conn: asyncpg.Connection) -> tuple[bool, T]:
        return commit, await operation(conn)

    return await transactions.run_in_transaction(
        db.get_pool(request),
        handler,
        acquire_timeout_s=request.app.state.settings.acquire_timeout_s,
    )


def _json(content: Any, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content)


@router.put("/runset")
async def create_run_set(
    request: Request,
    lookup: CommitLookup = Depends(get_commit_lookup),
) -> JSONResponse:
    params = await _parse_body(request, RunSet)
    created = await _run(
        request,
        lambda conn: service.create_run_set(conn, params, lookup=lookup),
        commit=True,
    )
    return _json(created.to_wire(), status.HTTP_201_CREATED)


@router.get("/runset/{run_set_path:path}")
async def get_run_set(run_set_path: str, request: Request) -> JSONResponse:
    run_set_id = parse_id(run_set_path)
    run_set = await _run(
        request,
        lambda conn: service.fetch_run_set(conn, run_set_id, include_runs=True),
        commit=False,
    )
    return _json(run_set.to_wire())


@router.post("/runset/{run_set_path:path}")
async def amend_run_set(
    run_set_path: str,
    request: Request,
    lookup: CommitLookup = Depends(get_commit_lookup),
) -> JSONResponse:
    run_set_id = parse_id(run_set_path)
    params = await _parse_body(request, RunSet)
    amended = await _run(
        request,
        lambda conn: service.amend_run_set(conn, run_set_id, params, lookup=lookup),
        commit=True,
    )
    return _json(amended.to_wire(), status.HTTP_201_CREATED)


@router.delete("/runset/{run_set_path:path}")
async def delete_run_set(run_set_path: str, request: Request) -> JSONResponse:
    run_set_id = parse_id(run_set_path)
    deleted = await _run(
        request,
        lambda conn: service.delete_run_set(conn, run_set_id),
        commit=True,
    )
    return _json(deleted.to_wire())


@router.post("/run/{run_path:path}")
async def append_run_results(run_path: str, request: Request) -> JSONResponse:
    run_id = parse_id(run_path, what="run")
    params = await _parse_body(request, Run)
    await _run(
        request,
        lambda conn: service.append_results(conn, run_id, params),
        commit=True,
    )
    return _json({}, status.HTTP_201_CREATED)


@router.get("/runsets")
async def list_run_sets(
    request: Request,
    machine: str = Query(default=""),
    config: str = Query(default=""),
) -> JSONResponse:
    machine, config = machine.strip(), config.strip()
    if not machine or not config:
        raise BadRequestError("Missing machine or config")
    summaries = await _run(
        request,
        lambda conn: service.list_run_set_summaries(conn, machine=machine, config=config),
        commit=False,
    )
    return _json([summary.to_wire() for summary in summaries])
