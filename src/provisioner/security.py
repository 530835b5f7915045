"""Credential policy for the Azure provider.

The provisioner never authenticates with stored secrets:
- In CI, workload identity federation exchanges the pipeline's OIDC token
  (AZURE_FEDERATED_TOKEN_FILE) for an Entra ID token
- On Azure compute, a managed identity is used

SECURITY INVARIANTS:
1. Client secrets, certificates and passwords must never be present in the environment
2. WorkloadIdentityCredential and ManagedIdentityCredential are the only credential types
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential, WorkloadIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

FEDERATED_TOKEN_ENV_VAR = "AZURE_FEDERATED_TOKEN_FILE"


class CredentialPolicyError(Exception):
    """Raised when the environment carries secret-based credentials."""

    pass


def enforce_secretless_environment() -> None:
    """Refuse to run when credential secrets are present in the environment.

    Raises:
        CredentialPolicyError: If any forbidden variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secret-based credential detected",
                extra={"security_event": "credential_detected", "env_var": env_var},
            )
            raise CredentialPolicyError(
                f"{env_var} is set. Secret-based authentication is not allowed; "
                f"use workload identity federation ({FEDERATED_TOKEN_ENV_VAR}) "
                f"or a managed identity instead."
            )


def get_credential(
    client_id: str | None = None,
) -> WorkloadIdentityCredential | ManagedIdentityCredential:
    """Return a secretless Azure credential.

    Workload identity is used when a federated token file is configured
    (CI pipelines); otherwise a managed identity.

    Args:
        client_id: Client ID of the identity (defaults to AZURE_CLIENT_ID).

    Raises:
        CredentialPolicyError: If secret-based credentials are configured.
    """
    enforce_secretless_environment()
    client_id = client_id or os.environ.get("AZURE_CLIENT_ID") or None

    token_file = os.environ.get(FEDERATED_TOKEN_ENV_VAR)
    if token_file:
        tenant_id = os.environ.get("AZURE_TENANT_ID")
        if not tenant_id or not client_id:
            raise CredentialPolicyError(
                f"{FEDERATED_TOKEN_ENV_VAR} requires AZURE_TENANT_ID and AZURE_CLIENT_ID"
            )
        logger.info("Using workload identity federation", extra={"credential_type": "WorkloadIdentity"})
        return WorkloadIdentityCredential(
            tenant_id=tenant_id,
            client_id=client_id,
            token_file_path=token_file,
        )

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
