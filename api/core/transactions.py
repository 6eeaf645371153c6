"""
One transaction per request.

`run_in_transaction` acquires a pooled connection, starts a transaction and
calls the handler with the connection. The handler returns
`(should_commit, result)`:

- `(True, result)` commits, then returns `result`
- `(False, result)` rolls back, then returns `result` (read-only handlers)
- any exception rolls back and propagates; store errors are logged and
  replaced by a generic `InternalError`

Cancellation of the request task is an exception like any other, so an
aborted request never leaves a transaction open. The connection goes back to
the pool on every path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import asyncpg

from .errors import GENERIC_INTERNAL_EXPLANATION, InternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Handler = Callable[[asyncpg.Connection], Awaitable[tuple[bool, T]]]

STORE_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    asyncio.TimeoutError,
)


async def _rollback(transaction: asyncpg.transaction.Transaction) -> None:
    try:
        await transaction.rollback()
    except STORE_ERRORS as exc:
        # Releasing the connection resets or terminates it.
        logger.warning("transaction_rollback_failed error=%s", exc)


async def run_in_transaction(
    pool: asyncpg.Pool,
    handler: Handler[T],
    *,
    acquire_timeout_s: float | None = None,
) -> T:
    try:
        conn = await pool.acquire(timeout=acquire_timeout_s)
    except STORE_ERRORS as exc:
        logger.warning("transaction_begin_failed stage=acquire error=%s", exc)
        raise InternalError("Could not begin transaction") from exc

    try:
        transaction = conn.transaction()
        try:
            await transaction.start()
        except STORE_ERRORS as exc:
            logger.warning("transaction_begin_failed stage=start error=%s", exc)
            raise InternalError("Could not begin transaction") from exc

        try:
            should_commit, result = await handler(conn)
        except STORE_ERRORS as exc:
            await _rollback(transaction)
            logger.exception("transaction_aborted reason=store_error")
            raise InternalError(GENERIC_INTERNAL_EXPLANATION) from exc
        except BaseException:
            await _rollback(transaction)
            raise

        if not should_commit:
            await _rollback(transaction)
            return result

        try:
            await transaction.commit()
        except STORE_ERRORS as exc:
            logger.exception("transaction_commit_failed")
            raise InternalError("Could not commit transaction") from exc
        return result
    finally:
        await pool.release(conn)
