"""ServiceNow Table API paginator: offset pagination over sysparm_offset.

Users that are members of a group live on ``sys_user_grmember``, not on
``sys_user``; member frames joined to a ``sys_user_group`` scope are
redirected there and the ``user.`` prefix is stripped from the returned
fields so the records look like plain ``sys_user`` rows.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import requests

from adapters.paging.config import PagingConfig
from adapters.paging.cursor import Token
from adapters.paging.errors import UpstreamFatal, UpstreamRetryable, error_for_status
from adapters.paging.paginator import UpstreamBatch, UpstreamPaginator, UpstreamRequest

logger = logging.getLogger("paging.servicenow")

USER = "sys_user"
GROUP = "sys_user_group"
GROUP_MEMBER = "sys_user_grmember"
USER_PREFIX = "user."

DEFAULT_TIMEOUT_SECONDS = 30


def strip_user_prefix(record: dict[str, Any]) -> dict[str, Any]:
    """``{"sys_id": m1, "user.sys_id": u1}`` -> ``{"sys_id": u1}``; prefixed fields win."""
    plain = {k: v for k, v in record.items() if not k.startswith(USER_PREFIX)}
    plain.update({k[len(USER_PREFIX):]: v for k, v in record.items() if k.startswith(USER_PREFIX)})
    return plain


class ServiceNowPaginator(UpstreamPaginator):
    PROVIDER_NAME = "servicenow"

    def __init__(self, config: PagingConfig, session: Optional[requests.Session] = None) -> None:
        sn = config.servicenow
        if not sn:
            raise ValueError("ServiceNow config not set")
        self._base = sn.address.rstrip("/")
        if not self._base.startswith(("http://", "https://")):
            self._base = f"https://{self._base}"
        self._api_version = sn.api_version
        self._page_size = sn.page_size
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})
        if sn.token:
            self._session.headers["Authorization"] = f"Bearer {sn.token}"
        else:
            self._session.auth = (sn.username, sn.password)

    def natural_key(self, collection: str) -> str:
        return "sys_id"

    def _table_request(self, request: UpstreamRequest) -> tuple[str, list[str], str]:
        """(table, fields, query) for a request, applying the group member redirect."""
        fields = [a for a in request.attributes if a != "sys_id"]
        query = request.filter or ""

        if request.collection == USER and request.parent is not None and request.parent.entity == GROUP:
            member_query = f"group={request.parent.key}"
            if query:
                member_query = f"{member_query}^{query}"
            member_fields = [f"{USER_PREFIX}{f}" for f in fields] + [f"{USER_PREFIX}sys_id"]
            return GROUP_MEMBER, ["sys_id"] + member_fields, member_query

        return request.collection, (["sys_id"] + fields) if fields else [], query

    def next(
        self,
        request: UpstreamRequest,
        token: Optional[Token],
        timeout: Optional[float] = None,
    ) -> UpstreamBatch:
        table, fields, query = self._table_request(request)
        offset = int(token or 0)
        params: dict[str, Any] = {
            "sysparm_exclude_reference_link": "true",
            "sysparm_limit": self._page_size,
            "sysparm_offset": offset,
            "sysparm_query": f"{query}^ORDERBYsys_id" if query else "ORDERBYsys_id",
        }
        if fields:
            params["sysparm_fields"] = ",".join(fields)
        url = f"{self._base}/api/now/{self._api_version}/table/{table}"

        logger.debug("Sending request to datasource", extra={"collection": table, "provider": self.PROVIDER_NAME})
        try:
            resp = self._session.get(url, params=params, timeout=timeout or DEFAULT_TIMEOUT_SECONDS)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise UpstreamRetryable(f"Request to ServiceNow failed: {exc}") from exc
        except requests.RequestException as exc:
            raise UpstreamFatal(f"Request to ServiceNow failed: {exc}") from exc

        error = error_for_status(resp.status_code, resp.headers.get("Retry-After"), self._error_detail(resp))
        if error is not None:
            raise error

        try:
            records = resp.json()["result"]
        except (ValueError, KeyError, TypeError) as exc:
            raise UpstreamFatal(f"Failed to parse ServiceNow response for {table}: {exc}") from exc
        if not isinstance(records, list):
            raise UpstreamFatal(f"ServiceNow response for {table} has no result list")

        if table == GROUP_MEMBER and request.collection == USER:
            records = [strip_user_prefix(r) for r in records]

        if len(records) < self._page_size:
            return UpstreamBatch.last(records)
        return UpstreamBatch.more(records, offset + len(records))

    @staticmethod
    def _error_detail(resp: requests.Response) -> str:
        """``error.message`` / ``error.detail`` from a failed response, else the raw body."""
        if resp.ok:
            return ""
        try:
            error = resp.json().get("error") or {}
            return f"{error.get('message', '')} {error.get('detail', '')}".strip()
        except (ValueError, AttributeError):
            return resp.text

    def close(self) -> None:
        self._session.close()
