"""Cloud-native secret resolution for provider credentials.

Values in the environment may be literal or reference a secret held in AWS
Secrets Manager or GCP Secret Manager; references are resolved once at
config load time.
"""

from __future__ import annotations

import json
import logging
import os

import requests

logger = logging.getLogger("paging.secrets")

# Prefixes that indicate a cloud secret reference
_AWS_PREFIX = "aws-secret://"
_GCP_PREFIX = "gcp-secret://"

_GCP_METADATA_PROJECT_URL = "http://metadata.google.internal/computeMetadata/v1/project/project-id"


def is_secret_reference(value: str) -> bool:
    return value.startswith((_AWS_PREFIX, _GCP_PREFIX))


def resolve_secret(value: str) -> str:
    """Resolve a secret reference to its plaintext value.

    Supported formats:
      - "aws-secret://servicenow-creds#password" -> AWS Secrets Manager (JSON key)
      - "aws-secret://github-token"              -> AWS Secrets Manager (whole string)
      - "gcp-secret://github-token"              -> GCP Secret Manager, latest version
      - "gcp-secret://projects/p/secrets/s/versions/3"
      - anything else                            -> returned as-is
    """
    if not is_secret_reference(value):
        return value
    if value.startswith(_AWS_PREFIX):
        return _resolve_aws_secret(value[len(_AWS_PREFIX):])
    return _resolve_gcp_secret(value[len(_GCP_PREFIX):])


def _resolve_aws_secret(ref: str) -> str:
    import boto3

    secret_name, _, json_key = ref.partition("#")
    client = boto3.client("secretsmanager", region_name=os.environ.get("AWS_REGION", "us-east-1"))

    logger.debug("Resolving AWS secret %s", secret_name)
    secret_string = client.get_secret_value(SecretId=secret_name)["SecretString"]
    if not json_key:
        return secret_string
    data = json.loads(secret_string)
    if json_key not in data:
        raise ValueError(f"Secret {secret_name} has no key {json_key!r}")
    return str(data[json_key])


def _resolve_gcp_secret(ref: str) -> str:
    from google.cloud import secretmanager

    if ref.startswith("projects/"):
        name = ref
    else:
        project = os.environ.get("GCP_PROJECT_ID", "") or _gcp_project_from_metadata()
        name = f"projects/{project}/secrets/{ref}/versions/latest"

    logger.debug("Resolving GCP secret %s", name)
    client = secretmanager.SecretManagerServiceClient()
    response = client.access_secret_version(request={"name": name})
    return response.payload.data.decode("UTF-8")


def _gcp_project_from_metadata() -> str:
    """Project id from the metadata server (Cloud Run / GCE only)."""
    try:
        resp = requests.get(
            _GCP_METADATA_PROJECT_URL,
            headers={"Metadata-Flavor": "Google"},
            timeout=2,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise RuntimeError("Cannot determine GCP project ID. Set GCP_PROJECT_ID env var.") from exc
    return resp.text
