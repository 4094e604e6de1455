"""Configuration via environment variables with cloud-native secret support.

Supports:
  - Environment variables and .env files (local dev)
  - AWS Secrets Manager (aws-secret://name#key)
  - GCP Secret Manager (gcp-secret://name)
  - IAM roles / Workload Identity for cloud credentials (no key files)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from adapters.paging.secrets import resolve_secret


@dataclass(frozen=True)
class EngineConfig:
    max_concurrency: int = 2  # 1 disables account prefetch
    request_timeout_seconds: Optional[float] = None
    default_page_size: int = 100


@dataclass(frozen=True)
class GitHubConfig:
    token: str
    api_base_url: str = "https://api.github.com"
    page_size: int = 100


@dataclass(frozen=True)
class ServiceNowConfig:
    address: str
    username: str = ""
    password: str = ""
    token: str = ""  # bearer token takes precedence over basic auth
    api_version: str = "v2"
    page_size: int = 100


@dataclass(frozen=True)
class AwsIamConfig:
    region: str = "us-east-1"
    # Role ARNs assumed per account for multi-account fan-out
    resource_account_roles: list[str] = field(default_factory=list)
    role_session_name: str = "paging-adapter"
    page_size: int = 100


@dataclass(frozen=True)
class GoogleWorkspaceConfig:
    admin_email: str
    customer_id: str
    sa_key_file: Optional[str] = None  # None = use Workload Identity / ADC
    page_size: int = 100


@dataclass(frozen=True)
class PagingConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    log_level: str = "INFO"
    github: Optional[GitHubConfig] = None
    servicenow: Optional[ServiceNowConfig] = None
    aws_iam: Optional[AwsIamConfig] = None
    google_workspace: Optional[GoogleWorkspaceConfig] = None


def _int_env(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _csv_env(name: str) -> list[str]:
    return [s.strip() for s in os.environ.get(name, "").split(",") if s.strip()]


def load_config() -> PagingConfig:
    """Load configuration from environment variables. Unconfigured providers are None."""
    load_dotenv()

    timeout_raw = os.environ.get("PAGING_REQUEST_TIMEOUT_SECONDS", "")
    try:
        timeout = float(timeout_raw) if timeout_raw else None
    except ValueError as exc:
        raise ValueError(f"PAGING_REQUEST_TIMEOUT_SECONDS must be a number, got {timeout_raw!r}") from exc

    engine = EngineConfig(
        max_concurrency=_int_env("PAGING_MAX_CONCURRENCY", 2),
        request_timeout_seconds=timeout,
        default_page_size=_int_env("PAGING_DEFAULT_PAGE_SIZE", 100),
    )

    # GitHub (optional) -- token may come from a secret manager
    github = None
    gh_token_raw = os.environ.get("GITHUB_TOKEN", "")
    if gh_token_raw:
        github = GitHubConfig(
            token=resolve_secret(gh_token_raw),
            api_base_url=os.environ.get("GITHUB_API_BASE_URL", "https://api.github.com"),
            page_size=_int_env("GITHUB_PAGE_SIZE", 100),
        )

    # ServiceNow (optional)
    servicenow = None
    sn_address = os.environ.get("SERVICENOW_ADDRESS", "")
    if sn_address:
        servicenow = ServiceNowConfig(
            address=sn_address,
            username=os.environ.get("SERVICENOW_USERNAME", ""),
            password=resolve_secret(os.environ.get("SERVICENOW_PASSWORD", "")),
            token=resolve_secret(os.environ.get("SERVICENOW_TOKEN", "")),
            api_version=os.environ.get("SERVICENOW_API_VERSION", "v2"),
            page_size=_int_env("SERVICENOW_PAGE_SIZE", 100),
        )
        if not servicenow.token and not (servicenow.username and servicenow.password):
            raise ValueError("SERVICENOW_TOKEN or SERVICENOW_USERNAME/SERVICENOW_PASSWORD is required")

    # AWS IAM (optional)
    # In AWS Lambda/ECS: IAM role provides credentials automatically
    aws_iam = None
    if (
        os.environ.get("AWS_ACCESS_KEY_ID")
        or os.environ.get("AWS_PROFILE")
        or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")  # running in Lambda
        or os.environ.get("AWS_IAM_ENABLED", "").lower() == "true"
    ):
        aws_iam = AwsIamConfig(
            region=os.environ.get("AWS_REGION", "us-east-1"),
            resource_account_roles=_csv_env("AWS_RESOURCE_ACCOUNT_ROLES"),
            role_session_name=os.environ.get("AWS_ROLE_SESSION_NAME", "paging-adapter"),
            page_size=_int_env("AWS_PAGE_SIZE", 100),
        )

    # Google Workspace (optional)
    # In GCP Cloud Run: sa_key_file=None -> uses Workload Identity / ADC
    google_workspace = None
    gw_admin = os.environ.get("GOOGLE_ADMIN_EMAIL")
    gw_customer = os.environ.get("GOOGLE_CUSTOMER_ID")
    if gw_admin and gw_customer:
        google_workspace = GoogleWorkspaceConfig(
            admin_email=gw_admin,
            customer_id=gw_customer,
            sa_key_file=os.environ.get("GOOGLE_SA_KEY_FILE"),  # optional
            page_size=_int_env("GOOGLE_PAGE_SIZE", 100),
        )

    return PagingConfig(
        engine=engine,
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        github=github,
        servicenow=servicenow,
        aws_iam=aws_iam,
        google_workspace=google_workspace,
    )
