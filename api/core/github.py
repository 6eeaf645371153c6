"""
GitHub commit lookup.

Resolves a product version reference (abbreviated hash, branch or tag) to the
full commit hash.

Used endpoint:
- GET /repos/{owner}/{repo}/commits/{ref}  -> {"sha": "...", ...}
"""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

logger = logging.getLogger(__name__)

FULL_COMMIT_RE = re.compile(r"^[0-9a-f]{40}$")


# Lookup failures are explicit and separable from other runtime errors.
class CommitLookupError(RuntimeError):
    pass


class UnknownCommitError(CommitLookupError):
    """
    The reference does not name a commit we can resolve (client fault).
    """


def is_full_commit(ref: str) -> bool:
    return bool(FULL_COMMIT_RE.match((ref or "").strip().lower()))


class CommitLookup:
    def __init__(
        self,
        *,
        base_url: str,
        repositories: dict[str, str],
        token: str | None = None,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or "").strip().rstrip("/")
        self.repositories = dict(repositories)
        self.token = token
        self.timeout_s = timeout_s
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    async def resolve(self, product: str, ref: str) -> str:
        """
        Return the full commit hash for `ref` in the repository of `product`.
        """
        ref = (ref or "").strip()
        if not ref:
            raise UnknownCommitError(f"Product {product} has no commit reference.")
        if is_full_commit(ref):
            return ref.lower()

        repo = self.repositories.get(product)
        if not repo:
            raise UnknownCommitError(f"No repository configured for product {product}.")
        if not self.base_url:
            raise CommitLookupError("GitHub API URL is empty.")

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_s,
                headers=self._headers(),
                transport=self.transport,
            ) as client:
                resp = await client.get(f"/repos/{repo}/commits/{ref}")
        except httpx.HTTPError as exc:
            raise CommitLookupError(f"GitHub commit request failed: {exc}") from exc

        if resp.status_code in (404, 422):
            raise UnknownCommitError(f"Commit {ref} not found for product {product}.")
        if resp.status_code != 200:
            # Avoid dumping huge bodies; include a small snippet.
            body = resp.text[:300]
            raise CommitLookupError(f"GitHub commit request failed: {resp.status_code} {body}")

        data: dict[str, Any] = resp.json()
        sha = str(data.get("sha") or "").strip().lower()
        if not is_full_commit(sha):
            raise CommitLookupError("GitHub returned no commit hash.")

        logger.info("commit_resolved product=%s ref=%s commit=%s", product, ref, sha)
        return sha
