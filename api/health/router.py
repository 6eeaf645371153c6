"""
Health endpoint (no auth).

Reports whether the database answers a trivial read. The probe's
transaction is always rolled back.
"""

from __future__ import annotations

import logging

import asyncpg
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from core import db, transactions
from core.errors import RequestError
from entities import repository as entity_repository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


async def _probe(conn: asyncpg.Connection) -> tuple[bool, bool]:
    await entity_repository.list_benchmarks(conn, limit=1)
    return False, True


async def database_responds(request: Request) -> bool:
    try:
        return await transactions.run_in_transaction(
            db.get_pool(request),
            _probe,
            acquire_timeout_s=request.app.state.settings.acquire_timeout_s,
        )
    except RequestError as exc:
        logger.warning("health_probe_failed error=%s", exc.__cause__ or exc)
        return False


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    responds = await database_responds(request)
    return JSONResponse(
        status_code=status.HTTP_200_OK if responds else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"DatabaseResponds": responds},
    )
