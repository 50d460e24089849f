"""Credential handling for provider clients.

Steps never see a secret. They receive an opaque credential handle that in
production is always a managed identity, so a client secret, certificate or
password exported into the process environment means the deployment is
misconfigured and the reconciler refuses to start.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Variables the Azure and Terraform credential chains read secrets from
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
    "ARM_CLIENT_SECRET",
    "ARM_CLIENT_CERTIFICATE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """A credential secret was exported into the reconciler's environment."""

    def __init__(self, env_var: str) -> None:
        self.env_var = env_var
        super().__init__(
            f"{env_var} is set, but infraflow authenticates with a managed identity "
            "only. Unset it and grant the instance's managed identity the roles "
            "it needs on the resource group."
        )


def exported_credential_variables() -> list[str]:
    """Return the forbidden credential variables that carry a non-empty value."""
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if os.environ.get(name)]


def enforce_secretless_architecture() -> None:
    """Abort when any credential secret is present in the environment.

    Raises:
        SecretlessViolationError: For the first offending variable found.
    """
    offending = exported_credential_variables()
    if not offending:
        return

    logger.critical(
        "Credential secret in environment, refusing to contact the provider",
        extra={"env_vars": offending, "event": "secretless_violation"},
    )
    raise SecretlessViolationError(offending[0])


def _masked(client_id: str) -> str:
    return client_id if len(client_id) <= 8 else f"{client_id[:8]}..."


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Build the managed identity credential handed to provider clients.

    Args:
        client_id: Client id of a user-assigned identity; the system-assigned
            identity is used when omitted.

    Raises:
        SecretlessViolationError: If a credential secret is exported.
    """
    enforce_secretless_architecture()

    identity = "user-assigned" if client_id else "system-assigned"
    logger.info(
        "Authenticating with %s managed identity",
        identity,
        extra={"client_id": _masked(client_id) if client_id else None},
    )
    if client_id:
        return ManagedIdentityCredential(client_id=client_id)
    return ManagedIdentityCredential()
