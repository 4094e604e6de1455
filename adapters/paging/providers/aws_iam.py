"""AWS IAM paginator: Marker pagination, per-account role assumption.

Root collections list IAM entities; member collections are listed per
parent record and are normally planned as a collection join, e.g.::

    {"externalId": "GroupPolicy",
     "collection": {"externalId": "Group", "parentKey": "GroupName",
                    "memberKey": "PolicyArn"}}

Every record with an ARN gets an ``AccountId`` field parsed from it.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from adapters.paging.config import PagingConfig
from adapters.paging.cursor import Token
from adapters.paging.errors import (
    UpstreamFatal,
    UpstreamRetryable,
    error_for_status,
)
from adapters.paging.paginator import UpstreamBatch, UpstreamPaginator, UpstreamRequest

logger = logging.getLogger("paging.aws_iam")

THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
})

ACCOUNT_ID = "AccountId"

DEFAULT_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class CollectionSpec:
    """How one collection maps onto an IAM list call."""

    operation: str
    result_key: str
    arn_field: Optional[str] = None
    parent_param: Optional[str] = None  # request parameter holding the parent key
    natural_key: str = "Arn"
    path_prefix: bool = False
    paginated: bool = True


COLLECTIONS: dict[str, CollectionSpec] = {
    "User": CollectionSpec("list_users", "Users", "Arn", natural_key="UserName", path_prefix=True),
    "Group": CollectionSpec("list_groups", "Groups", "Arn", natural_key="GroupName", path_prefix=True),
    "Role": CollectionSpec("list_roles", "Roles", "Arn", natural_key="RoleName", path_prefix=True),
    "Policy": CollectionSpec("list_policies", "Policies", "Arn", path_prefix=True),
    "IdentityProvider": CollectionSpec("list_saml_providers", "SAMLProviderList", "Arn", paginated=False),
    "GroupMember": CollectionSpec("get_group", "Users", "Arn", parent_param="GroupName", natural_key="UserName"),
    "GroupPolicy": CollectionSpec(
        "list_attached_group_policies", "AttachedPolicies", "PolicyArn", parent_param="GroupName",
        natural_key="PolicyArn",
    ),
    "RolePolicy": CollectionSpec(
        "list_attached_role_policies", "AttachedPolicies", "PolicyArn", parent_param="RoleName",
        natural_key="PolicyArn",
    ),
    "UserPolicy": CollectionSpec(
        "list_attached_user_policies", "AttachedPolicies", "PolicyArn", parent_param="UserName",
        natural_key="PolicyArn",
    ),
}


def account_id_from_arn(arn: str) -> Optional[str]:
    """``arn:aws:iam::123456789012:user/alice`` -> ``123456789012``."""
    parts = arn.split(":")
    if len(parts) < 6 or parts[0] != "arn":
        return None
    return parts[4] or None


def classify_client_error(exc: ClientError) -> UpstreamFatal | UpstreamRetryable:
    error = exc.response.get("Error", {})
    code = error.get("Code", "")
    message = error.get("Message", str(exc))
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 400
    if code in THROTTLING_CODES:
        return UpstreamRetryable(f"AWS throttled the request: {code}: {message}", status_code=status)
    mapped = error_for_status(status, body=f"{code}: {message}")
    if mapped is None:
        return UpstreamFatal(f"AWS request failed: {code}: {message}", status_code=status)
    return mapped


class AwsIamPaginator(UpstreamPaginator):
    PROVIDER_NAME = "aws_iam"

    def __init__(self, config: PagingConfig, session: Optional[boto3.session.Session] = None) -> None:
        aws = config.aws_iam
        if not aws:
            raise ValueError("AWS IAM config not set")
        self._region = aws.region
        self._page_size = aws.page_size
        self._session_name = aws.role_session_name
        self._session = session or boto3.session.Session()
        self._boto_config = BotoConfig(retries={"max_attempts": 1, "mode": "standard"})
        # account id -> role ARN
        self._roles: dict[str, str] = {}
        for role_arn in aws.resource_account_roles:
            account = account_id_from_arn(role_arn)
            if account is None:
                raise ValueError(f"Invalid resource account role ARN: {role_arn}")
            self._roles[account] = role_arn
        self._clients: dict[tuple[Optional[str], int], Any] = {}
        self._credentials: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def natural_key(self, collection: str) -> str:
        spec = COLLECTIONS.get(collection)
        return spec.natural_key if spec else "Arn"

    def _client(self, account: Optional[str], timeout: Optional[float]):
        """IAM client for an account whose socket timeouts fit within ``timeout``.

        Clients are cached per (account, whole seconds); assumed-role
        credentials are cached per account.
        """
        seconds = DEFAULT_TIMEOUT_SECONDS if timeout is None else max(1, math.ceil(timeout))
        with self._lock:
            client = self._clients.get((account, seconds))
            if client is not None:
                return client
            config = self._boto_config.merge(BotoConfig(connect_timeout=seconds, read_timeout=seconds))
            credentials = {} if account is None else self._account_credentials(account, config)
            client = self._session.client("iam", region_name=self._region, config=config, **credentials)
            self._clients[(account, seconds)] = client
            return client

    def _account_credentials(self, account: str, config: BotoConfig) -> dict[str, str]:
        creds = self._credentials.get(account)
        if creds is None:
            role_arn = self._roles.get(account)
            if role_arn is None:
                raise UpstreamFatal(f"No resource account role configured for account {account}")
            sts = self._session.client("sts", region_name=self._region, config=config)
            try:
                creds = sts.assume_role(RoleArn=role_arn, RoleSessionName=self._session_name)["Credentials"]
            except ClientError as exc:
                raise classify_client_error(exc) from exc
            except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as exc:
                raise UpstreamRetryable(f"AWS STS request failed: {exc}") from exc
            logger.info(
                "Assumed role for account %s", account, extra={"account": account, "provider": self.PROVIDER_NAME},
            )
            self._credentials[account] = creds
        return {
            "aws_access_key_id": creds["AccessKeyId"],
            "aws_secret_access_key": creds["SecretAccessKey"],
            "aws_session_token": creds["SessionToken"],
        }

    def next(
        self,
        request: UpstreamRequest,
        token: Optional[Token],
        timeout: Optional[float] = None,
    ) -> UpstreamBatch:
        spec = COLLECTIONS.get(request.collection)
        if spec is None:
            raise UpstreamFatal(f"Unsupported AWS IAM collection {request.collection}")

        params: dict[str, Any] = {}
        if spec.parent_param:
            if request.parent is None or request.parent.key is None:
                raise UpstreamFatal(f"{request.collection} must be joined to a parent collection")
            params[spec.parent_param] = request.parent.key
        if spec.path_prefix and request.filter:
            params["PathPrefix"] = request.filter
        if spec.paginated:
            params["MaxItems"] = self._page_size
            if token:
                params["Marker"] = str(token)

        client = self._client(request.account, timeout)
        try:
            response = getattr(client, spec.operation)(**params)
        except ClientError as exc:
            raise classify_client_error(exc) from exc
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as exc:
            raise UpstreamRetryable(f"AWS request failed: {exc}") from exc
        except BotoCoreError as exc:
            raise UpstreamFatal(f"AWS request failed: {exc}") from exc

        records = [self._with_account_id(dict(item), spec) for item in response.get(spec.result_key, [])]

        if not spec.paginated:
            # No upstream pagination; slice locally so batches stay bounded.
            offset = int(token or 0)
            window = records[offset:offset + self._page_size]
            if offset + self._page_size < len(records):
                return UpstreamBatch.more(window, offset + self._page_size)
            return UpstreamBatch.last(window)

        if response.get("IsTruncated") and response.get("Marker"):
            return UpstreamBatch.more(records, response["Marker"])
        return UpstreamBatch.last(records)

    @staticmethod
    def _with_account_id(record: dict[str, Any], spec: CollectionSpec) -> dict[str, Any]:
        arn = record.get(spec.arn_field or "")
        if isinstance(arn, str):
            account = account_id_from_arn(arn)
            if account is not None:
                record[ACCOUNT_ID] = account
        return record
