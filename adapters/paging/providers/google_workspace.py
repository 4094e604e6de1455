"""Google Workspace paginator: Admin SDK directory, pageToken pagination."""

from __future__ import annotations

import logging
import math
import socket
from typing import Any, Optional

import httplib2
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from adapters.paging.config import PagingConfig
from adapters.paging.cursor import Token
from adapters.paging.errors import UpstreamFatal, UpstreamRetryable, error_for_status
from adapters.paging.paginator import UpstreamBatch, UpstreamPaginator, UpstreamRequest

logger = logging.getLogger("paging.google_workspace")

SCOPES = [
    "https://www.googleapis.com/auth/admin.directory.user.readonly",
    "https://www.googleapis.com/auth/admin.directory.group.readonly",
    "https://www.googleapis.com/auth/admin.directory.group.member.readonly",
]

USERS = "users"
GROUPS = "groups"
MEMBERS = "members"

# API page size limits per collection
MAX_RESULTS = {USERS: 500, GROUPS: 200, MEMBERS: 200}

DEFAULT_TIMEOUT_SECONDS = 30


class GoogleWorkspacePaginator(UpstreamPaginator):
    PROVIDER_NAME = "google_workspace"

    def __init__(self, config: PagingConfig, service: Any = None, credentials: Any = None) -> None:
        gw = config.google_workspace
        if not gw:
            raise ValueError("Google Workspace config not set")
        self._customer_id = gw.customer_id
        self._page_size = gw.page_size
        if service is None:
            if gw.sa_key_file:
                # Local dev / explicit service account key file
                creds = service_account.Credentials.from_service_account_file(gw.sa_key_file, scopes=SCOPES)
            else:
                # Cloud Run / Workload Identity: use Application Default Credentials
                import google.auth
                creds, _ = google.auth.default(scopes=SCOPES)
            credentials = creds.with_subject(gw.admin_email)
            service = build("admin", "directory_v1", http=self._http(credentials, DEFAULT_TIMEOUT_SECONDS))
        self._credentials = credentials
        self._service = service

    @staticmethod
    def _http(credentials: Any, timeout: float) -> AuthorizedHttp:
        return AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))

    def _list_request(self, request: UpstreamRequest, token: Optional[Token]):
        collection = request.collection
        params: dict[str, Any] = {"maxResults": min(self._page_size, MAX_RESULTS.get(collection, 200))}
        if token:
            params["pageToken"] = str(token)

        if collection == USERS:
            if request.parent is not None and request.parent.key:
                raise UpstreamFatal("Users cannot be joined to a parent; use members")
            if request.filter:
                params["query"] = request.filter
            return self._service.users().list(customer=self._customer_id, orderBy="email", projection="full", **params)
        if collection == GROUPS:
            if request.filter:
                params["query"] = request.filter
            return self._service.groups().list(customer=self._customer_id, **params)
        if collection == MEMBERS:
            if request.parent is None or request.parent.key is None:
                raise UpstreamFatal("Members must be joined to a parent group")
            if request.filter:
                params["roles"] = request.filter
            return self._service.members().list(groupKey=request.parent.key, **params)
        raise UpstreamFatal(f"Unsupported Google Workspace collection {collection}")

    def next(
        self,
        request: UpstreamRequest,
        token: Optional[Token],
        timeout: Optional[float] = None,
    ) -> UpstreamBatch:
        list_request = self._list_request(request, token)
        try:
            if timeout is not None and self._credentials is not None:
                # Per-call socket timeout
                response = list_request.execute(http=self._http(self._credentials, max(1, math.ceil(timeout))))
            else:
                response = list_request.execute()
        except HttpError as exc:
            status = int(exc.resp.status)
            error = error_for_status(status, exc.resp.get("retry-after"), str(exc))
            if error is None:
                raise UpstreamFatal(f"Google API error: {exc}", status_code=status) from exc
            raise error from exc
        except (socket.timeout, TimeoutError, ConnectionError) as exc:
            raise UpstreamRetryable(f"Google API request failed: {exc}") from exc

        records = response.get(request.collection, [])
        if not isinstance(records, list):
            raise UpstreamFatal(f"Google API response has no {request.collection} list")

        page_token = response.get("nextPageToken")
        if page_token:
            return UpstreamBatch.more(records, page_token)
        return UpstreamBatch.last(records)
