"""Credential lookup for the provisioning database.

The provisioning service needs one secret: a DSN with write access to
``profiles`` and the bookkeeping tables, plus read access to the identity
provider's user and audit tables. Deployments keep it in AWS Secrets Manager
(Lambda hook) or GCP Secret Manager (Cloud Run sweep and alert jobs); local
runs put the literal DSN or PG_* values in a .env file.
"""

from __future__ import annotations

import json
import logging
import os
from urllib.parse import quote, urlencode

logger = logging.getLogger("provisioning.secrets")

_AWS_PREFIX = "aws-secret://"
_GCP_PREFIX = "gcp-secret://"

_METADATA_PROJECT_URL = (
    "http://metadata.google.internal/computeMetadata/v1/project/project-id"
)

# Shows up in pg_stat_activity next to the identity provider's own sessions
APPLICATION_NAME = "profile-provisioning"


def is_secret_reference(value: str) -> bool:
    return value.startswith((_AWS_PREFIX, _GCP_PREFIX))


def resolve_secret(value: str) -> str:
    """Return the plaintext behind a secret reference, or ``value`` itself.

    References:
      - "aws-secret://provisioning/db"           whole SecretString
      - "aws-secret://provisioning/db#password"  one key of a JSON secret
      - "gcp-secret://provisioning-db-url"       latest version, current project
      - "gcp-secret://projects/P/secrets/S/versions/V"
    """
    if value.startswith(_AWS_PREFIX):
        logger.debug("Resolving provisioning credential from AWS Secrets Manager")
        return _resolve_aws_secret(value[len(_AWS_PREFIX):])
    if value.startswith(_GCP_PREFIX):
        logger.debug("Resolving provisioning credential from GCP Secret Manager")
        return _resolve_gcp_secret(value[len(_GCP_PREFIX):])
    return value


def _resolve_aws_secret(ref: str) -> str:
    import boto3

    secret_name, _, json_key = ref.partition("#")
    client = boto3.client(
        "secretsmanager", region_name=os.environ.get("AWS_REGION", "us-east-1")
    )
    secret_string = client.get_secret_value(SecretId=secret_name)["SecretString"]

    # RDS-managed credentials are a JSON blob: {"username": ..., "password": ...}
    if json_key:
        return str(json.loads(secret_string)[json_key])
    return secret_string


def _resolve_gcp_secret(ref: str) -> str:
    from google.cloud import secretmanager

    if ref.startswith("projects/"):
        name = ref
    else:
        project = os.environ.get("GCP_PROJECT_ID") or _gcp_project_from_metadata()
        name = f"projects/{project}/secrets/{ref}/versions/latest"

    client = secretmanager.SecretManagerServiceClient()
    response = client.access_secret_version(request={"name": name})
    return response.payload.data.decode("UTF-8")


def _gcp_project_from_metadata() -> str:
    """Project id of the Cloud Run job, from the metadata server."""
    import requests

    try:
        resp = requests.get(
            _METADATA_PROJECT_URL,
            headers={"Metadata-Flavor": "Google"},
            timeout=2,
        )
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise RuntimeError(
            "Cannot determine GCP project ID for the provisioning secret. "
            "Set GCP_PROJECT_ID."
        ) from exc
    return resp.text


def resolve_database_url() -> str:
    """DSN for the provisioning database.

    DATABASE_URL wins when set and may itself be a secret reference. Otherwise
    the DSN is assembled from PG_* variables; PG_USER and PG_PASSWORD may be
    secret references (typically two keys of the same RDS secret) and are
    percent-encoded, since generated passwords routinely contain ``@`` or
    ``/``. PG_SSLMODE is passed through when set.
    """
    url = os.environ.get("DATABASE_URL", "")
    if url:
        return resolve_secret(url)

    host = os.environ.get("PG_HOST", "localhost")
    port = os.environ.get("PG_PORT", "5432")
    user = resolve_secret(os.environ.get("PG_USER", "provisioning"))
    password = resolve_secret(os.environ.get("PG_PASSWORD", "provisioning"))
    database = os.environ.get("PG_DATABASE", "provisioning")

    params = {"application_name": APPLICATION_NAME}
    sslmode = os.environ.get("PG_SSLMODE", "")
    if sslmode:
        params["sslmode"] = sslmode

    return (
        f"postgresql://{quote(user, safe='')}:{quote(password, safe='')}"
        f"@{host}:{port}/{database}?{urlencode(params)}"
    )
