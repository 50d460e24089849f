"""Configuration management with validation.

All limits are enforced at configuration load time so a misconfigured
reconciler fails before it touches the provider.
"""

from __future__ import annotations

import os
import random
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ReconcileAction(str, Enum):
    """Operation requested from the process entrypoint."""

    RECONCILE = "reconcile"
    DELETE = "delete"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 16

DEFAULT_MAX_STEP_ATTEMPTS = 3
MAX_STEP_ATTEMPTS = 10

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0
MAX_RETRY_BACKOFF_BASE_SECONDS = 60.0
RETRY_JITTER_RATIO = 0.2

DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS = 300
MIN_PROVIDER_CALL_TIMEOUT_SECONDS = 10
MAX_PROVIDER_CALL_TIMEOUT_SECONDS = 3600

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max flow state document
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

# Input validation patterns
VALID_INSTANCE_ID_PATTERN = r"^[a-z][a-z0-9-]{0,62}[a-z0-9]$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry policy for transient step failures.

    The backoff for attempt N is ``base * 2 ** (N - 1)`` plus up to 20% jitter.
    """

    max_attempts: int = DEFAULT_MAX_STEP_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.backoff_base_seconds < 0:
            raise ConfigurationError("backoff_base_seconds cannot be negative")

    def backoff_for(self, attempt: int) -> float:
        """Seconds to wait after a failed attempt before the next one.

        Args:
            attempt: The 1-based attempt that just failed.

        Returns:
            Wait time in seconds including jitter.
        """
        backoff = self.backoff_base_seconds * (2 ** (attempt - 1))
        jitter = random.uniform(0, backoff * RETRY_JITTER_RATIO)
        return backoff + jitter


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    instance_id: str
    subscription_id: str

    # Paths
    spec_file: Path = field(default_factory=lambda: Path("/specs/infrastructure.yaml"))
    state_dir: Path = field(default_factory=lambda: Path("/var/lib/infraflow"))

    action: ReconcileAction = ReconcileAction.RECONCILE

    # Flow execution
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_step_attempts: int = DEFAULT_MAX_STEP_ATTEMPTS
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    provider_call_timeout_seconds: int = DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS

    # Migration
    default_use_flow: bool = True

    # Identity - None means system-assigned managed identity
    managed_identity_client_id: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        The instance id becomes part of file names and resource tags, so
        its format is strictly checked.
        """
        import re

        errors: list[str] = []

        if not self.instance_id:
            errors.append("INSTANCE_ID is required")
        elif not re.match(VALID_INSTANCE_ID_PATTERN, self.instance_id):
            errors.append(
                f"INSTANCE_ID must match pattern {VALID_INSTANCE_ID_PATTERN}: {self.instance_id}"
            )

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not (MIN_CONCURRENCY <= self.max_concurrency <= MAX_CONCURRENCY):
            errors.append(
                f"MAX_CONCURRENCY must be between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}"
            )

        if not (1 <= self.max_step_attempts <= MAX_STEP_ATTEMPTS):
            errors.append(f"MAX_STEP_ATTEMPTS must be between 1 and {MAX_STEP_ATTEMPTS}")

        if not (0 <= self.retry_backoff_base_seconds <= MAX_RETRY_BACKOFF_BASE_SECONDS):
            errors.append(
                f"RETRY_BACKOFF_BASE_SECONDS must be between 0 and {MAX_RETRY_BACKOFF_BASE_SECONDS}"
            )

        if not (
            MIN_PROVIDER_CALL_TIMEOUT_SECONDS
            <= self.provider_call_timeout_seconds
            <= MAX_PROVIDER_CALL_TIMEOUT_SECONDS
        ):
            errors.append(
                f"PROVIDER_CALL_TIMEOUT must be between {MIN_PROVIDER_CALL_TIMEOUT_SECONDS} "
                f"and {MAX_PROVIDER_CALL_TIMEOUT_SECONDS} seconds"
            )

        if self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"STATE_DIR is not a directory: {self.state_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def retry_policy(self) -> RetryPolicy:
        """Build the executor retry policy from this configuration."""
        return RetryPolicy(
            max_attempts=self.max_step_attempts,
            backoff_base_seconds=self.retry_backoff_base_seconds,
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            INSTANCE_ID: Identifier of the infrastructure instance (ownership marker)
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            SPEC_FILE: Path to the infrastructure spec (default: /specs/infrastructure.yaml)
            STATE_DIR: Directory holding flow state documents (default: /var/lib/infraflow)
            ACTION: One of reconcile, delete (default: reconcile)
            MAX_CONCURRENCY: Concurrent steps per reconciliation (default: 4)
            MAX_STEP_ATTEMPTS: Attempt ceiling for transient failures (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: Base of the exponential backoff (default: 2)
            PROVIDER_CALL_TIMEOUT: Timeout per provider call in seconds (default: 300)
            DEFAULT_USE_FLOW: Use the flow path for instances without an
                explicit annotation (default: true)
            MANAGED_IDENTITY_CLIENT_ID: Client ID of a user-assigned identity
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_action(value: str | None) -> ReconcileAction:
            if not value:
                return ReconcileAction.RECONCILE
            try:
                return ReconcileAction(value.lower())
            except ValueError as e:
                valid = [a.value for a in ReconcileAction]
                raise ConfigurationError(f"ACTION must be one of {valid}: {value}") from e

        return cls(
            instance_id=os.environ.get("INSTANCE_ID", ""),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            spec_file=Path(os.environ.get("SPEC_FILE", "/specs/infrastructure.yaml")),
            state_dir=Path(os.environ.get("STATE_DIR", "/var/lib/infraflow")),
            action=get_action(os.environ.get("ACTION")),
            max_concurrency=get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            max_step_attempts=get_int("MAX_STEP_ATTEMPTS", DEFAULT_MAX_STEP_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            provider_call_timeout_seconds=get_int(
                "PROVIDER_CALL_TIMEOUT", DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS
            ),
            default_use_flow=get_bool("DEFAULT_USE_FLOW", True),
            managed_identity_client_id=os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
        )
