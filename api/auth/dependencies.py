"""
Auth dependencies for protected FastAPI routes.

One shared token guards every endpoint except health. Clients pass it either
as `?authToken=<token>` or as `Authorization: token <token>`.
"""

from __future__ import annotations

import secrets

from fastapi import Header, Query, Request

from core.errors import UnauthorizedError


def _extract_header_token(authorization: str | None) -> str:
    raw = (authorization or "").strip()
    parts = raw.split(" ", 1)
    if len(parts) != 2:
        return ""

    scheme, token = parts[0].strip().lower(), parts[1].strip()
    if scheme != "token":
        return ""
    return token


def is_authorized(expected: str, *, query_token: str | None, authorization: str | None) -> bool:
    if not expected:
        return False
    candidates = [(query_token or "").strip(), _extract_header_token(authorization)]
    return any(
        token and secrets.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))
        for token in candidates
    )


async def require_token(
    request: Request,
    auth_token: str | None = Query(default=None, alias="authToken"),
    authorization: str | None = Header(default=None),
) -> None:
    expected = request.app.state.settings.api_token
    if not is_authorized(expected, query_token=auth_token, authorization=authorization):
        raise UnauthorizedError("Auth token invalid")
