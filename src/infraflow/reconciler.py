"""Flow reconciler.

Inbound interface of the package: reconcile(spec, instance_id) converges
the provider towards the spec and returns the projected status;
delete(instance_id) tears everything down in reverse dependency order.

Control flow of one reconcile call:

    migration gate -> legacy path
                   -> cleanup legacy bookkeeping
                      -> observe -> diff -> build graph -> prepare state
                      -> execute -> project status

Errors never escape as exceptions: they are logged, recorded on the
ReconcileResult and in the provenance record. Cancellation is the
exception and propagates to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .clients import ClientFactory
from .config import Config, ReconcileAction
from .differ import OperationType, Plan, diff, observe
from .errors import (
    InfraFlowError,
    PartialFailureError,
    PersistenceError,
    ProviderError,
    SpecValidationError,
)
from .executor import FlowExecutor, FlowResult
from .graph import FlowGraph, build_graph, validate_references
from .migration import LegacyReconciler, MigrationGate
from .models import InfrastructureSpec
from .projector import InfrastructureStatus, project
from .provenance import FlowProvenance, ProvenanceLogger, StepCounts
from .security import SecretlessViolationError
from .state import FlowState, FlowStateStore, StepStatus

logger = logging.getLogger(__name__)


class ReconcilePath(str, Enum):
    """Which path handled a call."""

    FLOW = "flow"
    LEGACY = "legacy"
    NONE = "none"


@dataclass
class ReconcileResult:
    """Result of a single reconcile or delete call."""

    instance_id: str
    operation: ReconcileAction = ReconcileAction.RECONCILE
    path: ReconcilePath = ReconcilePath.FLOW
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    status: InfrastructureStatus | None = None
    state: FlowState | None = None
    plan: Plan | None = None
    flow: FlowResult | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the call succeeded."""
        return self.error is None

    @property
    def failed_steps(self) -> dict[str, str]:
        return dict(self.flow.failed) if self.flow is not None else {}


class FlowReconciler:
    """Reconciles instances through the flow path.

    Args:
        config: Reconciler configuration.
        client_factory: Builds provider clients for a resource group.
        store: Flow state persistence.
        gate: Migration gate choosing between legacy and flow paths.
        legacy: Legacy reconciler, if instances may still be gated to it.
        executor: Flow executor; built from ``config`` when omitted.
    """

    def __init__(
        self,
        config: Config,
        client_factory: ClientFactory,
        store: FlowStateStore,
        gate: MigrationGate,
        legacy: LegacyReconciler | None = None,
        executor: FlowExecutor | None = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory
        self._store = store
        self._gate = gate
        self._legacy = legacy
        self._executor = executor or FlowExecutor(
            store,
            retry_policy=config.retry_policy(),
            max_concurrency=config.max_concurrency,
        )
        self._provenance_logger = ProvenanceLogger()

    @property
    def config(self) -> Config:
        return self._config

    async def reconcile(
        self, spec: InfrastructureSpec, instance_id: str | None = None
    ) -> ReconcileResult:
        """Converge the provider towards ``spec``.

        Args:
            spec: Desired state.
            instance_id: Instance to reconcile; defaults to the configured one.

        Returns:
            The result with the projected status. On partial failure the
            status covers the steps that succeeded and ``error`` is a
            PartialFailureError naming the failed steps.
        """
        instance_id = instance_id or self._config.instance_id
        result = ReconcileResult(instance_id=instance_id, operation=ReconcileAction.RECONCILE)
        provenance = self._provenance_logger.create_provenance(
            instance_id=instance_id,
            subscription_id=self._config.subscription_id,
            operation=ReconcileAction.RECONCILE.value,
            resource_group=spec.resource_group,
        )

        logger.info(
            "Starting reconciliation",
            extra={"instance_id": instance_id, "resource_group": spec.resource_group},
        )

        try:
            # Input errors fail before the gate can clean up legacy bookkeeping
            self._validate(spec)
            prior = self._store.load(instance_id)
            if self._gate.should_use_flow(prior, spec):
                logger.info(
                    "Migration gate selected flow path",
                    extra={"instance_id": instance_id, "has_flow_state": prior is not None},
                )
                await self._gate.cleanup_legacy_state(instance_id)
                await self._reconcile_flow(spec, instance_id, prior, result)
            else:
                logger.info(
                    "Migration gate selected legacy path",
                    extra={"instance_id": instance_id},
                )
                result.path = ReconcilePath.LEGACY
                result.status = await self._legacy_reconciler().reconcile(spec, instance_id)
        except Exception as e:
            self._record_error(result, e)

        self._finish(result, provenance)
        return result

    async def delete(self, instance_id: str | None = None) -> ReconcileResult:
        """Destroy every resource of an instance, then its flow state.

        The flow state is removed only after every destroy step succeeded
        and no resource carrying the ownership marker remains.
        """
        instance_id = instance_id or self._config.instance_id
        result = ReconcileResult(instance_id=instance_id, operation=ReconcileAction.DELETE)
        provenance = self._provenance_logger.create_provenance(
            instance_id=instance_id,
            subscription_id=self._config.subscription_id,
            operation=ReconcileAction.DELETE.value,
        )

        logger.info("Starting deletion", extra={"instance_id": instance_id})

        try:
            state = self._store.load(instance_id)
            if state is not None:
                provenance.resource_group = state.resource_group or ""
                await self._delete_flow(instance_id, state, result)
            elif self._legacy is not None and not self._gate.should_use_flow(None, None):
                result.path = ReconcilePath.LEGACY
                await self._legacy.delete(instance_id)
            else:
                result.path = ReconcilePath.NONE
                logger.info(
                    "No flow state for instance, nothing to delete",
                    extra={"instance_id": instance_id},
                )
        except Exception as e:
            self._record_error(result, e)

        self._finish(result, provenance)
        return result

    async def plan(self, spec: InfrastructureSpec, instance_id: str | None = None) -> Plan:
        """Observe and diff without changing anything.

        Raises:
            SpecValidationError: If the spec references are inconsistent.
            PersistenceError: If the flow state cannot be read.
            ProviderError: If observing the provider fails.
        """
        instance_id = instance_id or self._config.instance_id
        self._validate(spec)
        prior = self._store.load(instance_id)
        clients = self._client_factory.for_resource_group(spec.resource_group)
        observed = await observe(
            clients, spec, instance_id, prior, concurrency=self._config.max_concurrency
        )
        return diff(spec, observed, instance_id, self._config.subscription_id)

    async def _reconcile_flow(
        self,
        spec: InfrastructureSpec,
        instance_id: str,
        prior: FlowState | None,
        result: ReconcileResult,
    ) -> None:
        if prior is not None and prior.resource_group and prior.resource_group != spec.resource_group:
            raise SpecValidationError(
                f"Resource group cannot change from {prior.resource_group} to "
                f"{spec.resource_group}; delete the instance first"
            )

        state = prior or FlowState(instance_id=instance_id)
        state.subscription_id = self._config.subscription_id
        state.resource_group = spec.resource_group
        state.location = spec.region
        result.state = state

        clients = self._client_factory.for_resource_group(spec.resource_group)
        observed = await observe(
            clients, spec, instance_id, prior, concurrency=self._config.max_concurrency
        )
        plan = diff(spec, observed, instance_id, self._config.subscription_id)
        result.plan = plan

        graph = build_graph(spec, instance_id, self._config.subscription_id, plan)
        self._prepare_state(state, graph, plan)

        flow = await self._executor.execute(graph, state, clients)
        result.flow = flow
        result.status = project(state, spec)

        if not flow.success:
            raise PartialFailureError(flow.failed, flow.blocked)

    async def _delete_flow(
        self, instance_id: str, state: FlowState, result: ReconcileResult
    ) -> None:
        result.state = state
        if not state.resource_group:
            raise PersistenceError(f"Flow state of {instance_id} has no resource group")

        clients = self._client_factory.for_resource_group(state.resource_group)
        flow = await self._executor.execute_destroy(FlowGraph.for_deletion(state), state, clients)
        result.flow = flow
        if not flow.success:
            raise PartialFailureError(flow.failed, flow.blocked)

        # Sweep resources still carrying the marker, e.g. created by a step
        # that was interrupted before its record was persisted
        observed = await observe(
            clients, None, instance_id, state, concurrency=self._config.max_concurrency
        )
        plan = diff(None, observed, instance_id, self._config.subscription_id)
        result.plan = plan
        if plan.by_type(OperationType.DELETE):
            sweep = await self._executor.execute(
                build_graph(None, instance_id, self._config.subscription_id, plan),
                state,
                clients,
            )
            flow.succeeded.extend(sweep.succeeded)
            flow.skipped.extend(sweep.skipped)
            flow.failed.update(sweep.failed)
            flow.blocked.extend(sweep.blocked)
            if not sweep.success:
                raise PartialFailureError(sweep.failed, sweep.blocked)

        self._store.delete(instance_id)
        result.state = None

    def _prepare_state(self, state: FlowState, graph: FlowGraph, plan: Plan) -> None:
        """Align persisted records with the graph of this call.

        Succeeded steps run again only when their desired fingerprint
        changed or the observed resource needs work. Records of resources
        that are neither desired nor pending deletion are dropped.
        """
        drifted = plan.drifted()
        for step in graph:
            record = state.record(step.id)
            if record is None:
                continue

            operation = plan.operation_for(step.ref)
            reason = None
            if record.action is not step.action:
                reason = f"action changed to {step.action.value}"
            elif record.status is StepStatus.SUCCEEDED:
                if record.fingerprint != step.fingerprint:
                    reason = "desired state changed"
                elif operation is not None and operation.type in (
                    OperationType.CREATE,
                    OperationType.UPDATE,
                ):
                    reason = f"resource needs {operation.type.value}"
                elif step.id in drifted:
                    reason = "immutable field drift"

            if reason is not None:
                logger.info(
                    "Scheduling step again",
                    extra={"instance_id": state.instance_id, "step_id": step.id, "reason": reason},
                )
                record.action = step.action
                record.status = StepStatus.PENDING

            if operation is not None and operation.type is OperationType.CREATE:
                record.resource_id = None
                record.outputs = {}
            record.depends_on = sorted(step.depends_on)

        for step_id in [step_id for step_id in state.steps if step_id not in graph]:
            logger.info(
                "Dropping record of resource no longer managed",
                extra={"instance_id": state.instance_id, "step_id": step_id},
            )
            del state.steps[step_id]

    def _validate(self, spec: InfrastructureSpec) -> None:
        errors = validate_references(spec)
        if errors:
            raise SpecValidationError(
                "Invalid infrastructure spec:\n" + "\n".join(f"  - {e}" for e in errors)
            )

    def _legacy_reconciler(self) -> LegacyReconciler:
        if self._legacy is None:
            raise InfraFlowError("Instance is gated to the legacy path but none is configured")
        return self._legacy

    def _record_error(self, result: ReconcileResult, error: Exception) -> None:
        extra: dict[str, Any] = {"instance_id": result.instance_id, "error": str(error)}
        if isinstance(error, SecretlessViolationError):
            logger.critical("Security violation", extra=extra)
        elif isinstance(error, SpecValidationError):
            logger.error("Invalid infrastructure spec", extra=extra)
        elif isinstance(error, PartialFailureError):
            logger.warning(
                "Reconciliation partially failed",
                extra={
                    **extra,
                    "failed_steps": sorted(error.failed_steps),
                    "blocked_steps": error.blocked_steps,
                },
            )
        elif isinstance(error, PersistenceError):
            logger.error("Flow state persistence failed", extra=extra)
        elif isinstance(error, ProviderError):
            logger.error(
                "Provider error",
                extra={**extra, "codes": [code.value for code in error.codes]},
            )
        elif isinstance(error, InfraFlowError):
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.exception("Unexpected error during reconciliation", extra=extra)
        result.error = error

    def _finish(self, result: ReconcileResult, provenance: FlowProvenance) -> None:
        result.end_time = datetime.now(UTC)

        provenance.path = result.path.value
        provenance.duration_seconds = result.duration_seconds
        if result.plan is not None:
            provenance.plan_summary = result.plan.summary()
            provenance.drift_detected = bool(result.plan.drifts)
        if result.flow is not None:
            provenance.step_counts = StepCounts(
                succeeded=len(result.flow.succeeded),
                failed=len(result.flow.failed),
                skipped=len(result.flow.skipped),
                blocked=len(result.flow.blocked),
            )
        if result.error is not None:
            provenance.error = str(result.error)
            provenance.error_type = type(result.error).__name__
        self._provenance_logger.log_provenance(provenance)
