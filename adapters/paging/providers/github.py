"""GitHub REST paginator: Link header pagination, token = next page URL.

Collections are API paths relative to the base URL. Nested collections
reference the joined parent with ``{parent}``::

    orgs/acme/teams                      -> teams (natural key: slug)
    orgs/acme/teams/{parent}/members     -> members of each team
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional
from urllib.parse import parse_qsl

import requests

from adapters.paging.config import PagingConfig
from adapters.paging.cursor import Token
from adapters.paging.errors import UpstreamFatal, UpstreamRetryable, error_for_status
from adapters.paging.paginator import UpstreamBatch, UpstreamPaginator, UpstreamRequest

logger = logging.getLogger("paging.github")

DEFAULT_TIMEOUT_SECONDS = 30

# Last path segment -> field nested collections join on
NATURAL_KEYS = {
    "teams": "slug",
    "repos": "full_name",
    "members": "login",
    "collaborators": "login",
    "orgs": "login",
}


def next_link(link_header: str) -> str:
    """URL tagged ``rel="next"`` in a Link header, or ``""``."""
    for part in link_header.split(","):
        if 'rel="next"' in part:
            return part.split(";")[0].strip().strip("<>")
    return ""


class GitHubPaginator(UpstreamPaginator):
    PROVIDER_NAME = "github"

    def __init__(self, config: PagingConfig, session: Optional[requests.Session] = None) -> None:
        gh = config.github
        if not gh:
            raise ValueError("GitHub config not set")
        self._base = gh.api_base_url.rstrip("/")
        self._page_size = gh.page_size
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"token {gh.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })

    def natural_key(self, collection: str) -> str:
        segment = collection.rstrip("/").rsplit("/", 1)[-1]
        return NATURAL_KEYS.get(segment, "id")

    def _first_url(self, request: UpstreamRequest) -> tuple[str, dict[str, Any]]:
        path = request.collection.strip("/")
        if "{parent}" in path:
            if request.parent is None or request.parent.key is None:
                raise UpstreamFatal(f"Collection {path} needs a parent record")
            path = path.replace("{parent}", request.parent.key)
        params: dict[str, Any] = {"per_page": str(self._page_size)}
        # Filters are query strings, e.g. "affiliation=all&state=open"
        params.update(parse_qsl(request.filter or ""))
        return f"{self._base}/{path}", params

    def next(
        self,
        request: UpstreamRequest,
        token: Optional[Token],
        timeout: Optional[float] = None,
    ) -> UpstreamBatch:
        if token:
            url, params = str(token), {}
        else:
            url, params = self._first_url(request)

        try:
            resp = self._session.get(url, params=params, timeout=timeout or DEFAULT_TIMEOUT_SECONDS)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise UpstreamRetryable(f"Request to GitHub failed: {exc}") from exc
        except requests.RequestException as exc:
            raise UpstreamFatal(f"Request to GitHub failed: {exc}") from exc

        if resp.status_code == 403 and "rate limit" in resp.text.lower():
            reset = int(resp.headers.get("X-RateLimit-Reset", "0"))
            wait = max(reset - int(time.time()), 1)
            logger.warning("GitHub rate limit hit, reset in %ds", wait, extra={"provider": self.PROVIDER_NAME})
            raise UpstreamRetryable("GitHub rate limit exceeded", status_code=403, retry_after=str(wait))

        error = error_for_status(resp.status_code, resp.headers.get("Retry-After"), resp.text)
        if error is not None:
            raise error

        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamFatal(f"Failed to parse GitHub response from {url}: {exc}") from exc
        records = data if isinstance(data, list) else [data]

        link = next_link(resp.headers.get("Link", ""))
        if link:
            return UpstreamBatch.more(records, link)
        return UpstreamBatch.last(records)

    def close(self) -> None:
        self._session.close()
