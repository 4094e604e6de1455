"""Tests for configuration loading, secret resolution and log formatting."""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest

from adapters.paging.config import load_config
from adapters.paging.logging_config import JsonFormatter
from adapters.paging.secrets import is_secret_reference, resolve_secret

ENV_VARS = [
    "PAGING_MAX_CONCURRENCY",
    "PAGING_REQUEST_TIMEOUT_SECONDS",
    "PAGING_DEFAULT_PAGE_SIZE",
    "LOG_LEVEL",
    "GITHUB_TOKEN",
    "GITHUB_API_BASE_URL",
    "GITHUB_PAGE_SIZE",
    "SERVICENOW_ADDRESS",
    "SERVICENOW_USERNAME",
    "SERVICENOW_PASSWORD",
    "SERVICENOW_TOKEN",
    "SERVICENOW_API_VERSION",
    "SERVICENOW_PAGE_SIZE",
    "AWS_ACCESS_KEY_ID",
    "AWS_PROFILE",
    "AWS_LAMBDA_FUNCTION_NAME",
    "AWS_IAM_ENABLED",
    "AWS_REGION",
    "AWS_RESOURCE_ACCOUNT_ROLES",
    "AWS_PAGE_SIZE",
    "GOOGLE_ADMIN_EMAIL",
    "GOOGLE_CUSTOMER_ID",
    "GOOGLE_SA_KEY_FILE",
    "GOOGLE_PAGE_SIZE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    with patch("adapters.paging.config.load_dotenv"):
        yield monkeypatch


def test_defaults_without_providers():
    config = load_config()
    assert config.engine.max_concurrency == 2
    assert config.engine.request_timeout_seconds is None
    assert config.engine.default_page_size == 100
    assert config.log_level == "INFO"
    assert config.github is None
    assert config.servicenow is None
    assert config.aws_iam is None
    assert config.google_workspace is None


def test_engine_settings(clean_env):
    clean_env.setenv("PAGING_MAX_CONCURRENCY", "4")
    clean_env.setenv("PAGING_REQUEST_TIMEOUT_SECONDS", "2.5")
    clean_env.setenv("PAGING_DEFAULT_PAGE_SIZE", "25")
    engine = load_config().engine
    assert (engine.max_concurrency, engine.request_timeout_seconds, engine.default_page_size) == (4, 2.5, 25)


@pytest.mark.parametrize("name,value", [
    ("PAGING_MAX_CONCURRENCY", "0"),
    ("PAGING_DEFAULT_PAGE_SIZE", "many"),
    ("PAGING_REQUEST_TIMEOUT_SECONDS", "soon"),
])
def test_invalid_engine_settings(clean_env, name, value):
    clean_env.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        load_config()


def test_servicenow_requires_credentials(clean_env):
    clean_env.setenv("SERVICENOW_ADDRESS", "dev.service-now.com")
    clean_env.setenv("SERVICENOW_USERNAME", "admin")
    with pytest.raises(ValueError, match="SERVICENOW_TOKEN"):
        load_config()

    clean_env.setenv("SERVICENOW_PASSWORD", "pw")
    sn = load_config().servicenow
    assert (sn.address, sn.username, sn.password, sn.api_version) == ("dev.service-now.com", "admin", "pw", "v2")


def test_provider_sections(clean_env):
    clean_env.setenv("GITHUB_TOKEN", "ghp_x")
    clean_env.setenv("GITHUB_PAGE_SIZE", "30")
    clean_env.setenv("AWS_IAM_ENABLED", "true")
    clean_env.setenv("AWS_RESOURCE_ACCOUNT_ROLES", "arn:aws:iam::1:role/a, arn:aws:iam::2:role/b,")
    clean_env.setenv("GOOGLE_ADMIN_EMAIL", "admin@example.com")
    clean_env.setenv("GOOGLE_CUSTOMER_ID", "C123")

    config = load_config()
    assert config.github.token == "ghp_x"
    assert config.github.page_size == 30
    assert config.aws_iam.resource_account_roles == ["arn:aws:iam::1:role/a", "arn:aws:iam::2:role/b"]
    assert config.google_workspace.sa_key_file is None


def test_github_token_resolved_from_secret_manager(clean_env):
    clean_env.setenv("GITHUB_TOKEN", "aws-secret://paging/github#token")
    client = MagicMock()
    client.get_secret_value.return_value = {"SecretString": json.dumps({"token": "ghp_secret"})}
    with patch("boto3.client", return_value=client) as boto_client:
        assert load_config().github.token == "ghp_secret"
    assert boto_client.call_args.args[0] == "secretsmanager"
    client.get_secret_value.assert_called_once_with(SecretId="paging/github")


def test_literal_values_pass_through():
    assert not is_secret_reference("hunter2")
    assert resolve_secret("hunter2") == "hunter2"
    assert is_secret_reference("gcp-secret://github-token")


def test_aws_secret_missing_key():
    client = MagicMock()
    client.get_secret_value.return_value = {"SecretString": "{}"}
    with patch("boto3.client", return_value=client):
        with pytest.raises(ValueError, match="password"):
            resolve_secret("aws-secret://servicenow#password")


def test_gcp_secret_with_explicit_project(clean_env):
    clean_env.setenv("GCP_PROJECT_ID", "acme")
    client = MagicMock()
    client.access_secret_version.return_value.payload.data = b"s3cret"
    with patch("google.cloud.secretmanager.SecretManagerServiceClient", return_value=client):
        assert resolve_secret("gcp-secret://github-token") == "s3cret"
    client.access_secret_version.assert_called_once_with(
        request={"name": "projects/acme/secrets/github-token/versions/latest"},
    )


def test_json_formatter_includes_extras():
    record = logging.LogRecord("paging.assembler", logging.WARNING, __file__, 1, "Dropping record: %s", ("bad",), None)
    record.entity = "User"
    record.attribute = "age"
    line = json.loads(JsonFormatter().format(record))
    assert line["level"] == "WARNING"
    assert line["logger"] == "paging.assembler"
    assert line["message"] == "Dropping record: bad"
    assert line["entity"] == "User"
    assert line["attribute"] == "age"
    assert "account" not in line
