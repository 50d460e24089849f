"""Run provenance for audit.

Every reconcile or delete call emits one structured record answering:
- "Which path handled instance X, and when?"
- "What did the differ plan and what did the executor do?"
- "Which version of the reconciler was running?"
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
RECONCILER_VERSION = os.environ.get("INFRAFLOW_VERSION", "dev")


@dataclass
class StepCounts:
    """Executor outcome counts."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    blocked: int = 0


@dataclass
class FlowProvenance:
    """Provenance record of one reconcile or delete call."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    instance_id: str = ""
    reconciler_version: str = RECONCILER_VERSION
    host_instance_id: str = ""  # Container instance ID if available
    subscription_id: str = ""
    resource_group: str = ""

    # What ran
    operation: str = "reconcile"  # reconcile, delete
    path: str = "flow"  # flow, legacy, none
    plan_summary: dict[str, int] = field(default_factory=dict)
    drift_detected: bool = False
    step_counts: StepCounts = field(default_factory=StepCounts)

    duration_seconds: float = 0.0

    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._host_instance_id = os.environ.get("CONTAINER_INSTANCE_ID", "")

    def create_provenance(
        self,
        instance_id: str,
        subscription_id: str,
        operation: str,
        resource_group: str = "",
    ) -> FlowProvenance:
        return FlowProvenance(
            instance_id=instance_id,
            reconciler_version=RECONCILER_VERSION,
            host_instance_id=self._host_instance_id,
            subscription_id=subscription_id,
            resource_group=resource_group,
            operation=operation,
        )

    def log_provenance(self, provenance: FlowProvenance) -> None:
        """Log a completed provenance record.

        ERROR when the call failed, WARNING when steps failed or were
        blocked, INFO otherwise.
        """
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR
        elif provenance.step_counts.failed or provenance.step_counts.blocked:
            log_level = logging.WARNING

        logger.log(
            log_level,
            "Reconciliation provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "instance_id": provenance.instance_id,
                "operation": provenance.operation,
                "path": provenance.path,
                "drift_detected": provenance.drift_detected,
                "steps_succeeded": provenance.step_counts.succeeded,
                "steps_failed": provenance.step_counts.failed,
                "reconciler_version": provenance.reconciler_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )
