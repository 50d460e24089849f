"""Desired/actual state differ.

observe() gathers a snapshot of existing provider resources relevant to an
instance; diff() compares it with the spec and produces the operations
needed per resource, keyed by deterministic logical name.

RULES:
- Missing resource: CREATE.
- Mutable field mismatch: UPDATE with the changed fields.
- Immutable field mismatch: reported as Drift, never re-created, because
  delete and recreate would orphan dependents.
- Observed but not desired: DELETE only when the resource carries this
  instance's ownership marker. Anything else is left alone and logged.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .clients import ObservedResource, ProviderClients, ResourceRef
from .handlers import KIND_HANDLERS, KindHandler, ResolveContext, desired_resources
from .models import InfrastructureSpec
from .state import FlowState, StepAction

logger = logging.getLogger(__name__)

# Observations beyond this many concurrent provider reads are queued
DEFAULT_OBSERVE_CONCURRENCY = 4


class OperationType(str, Enum):
    """Operation the differ requests for one resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


@dataclass(frozen=True)
class FieldChange:
    """Difference of one comparable field."""

    field: str
    desired: Any
    observed: Any


@dataclass(frozen=True)
class Operation:
    """Requested operation for one resource."""

    type: OperationType
    ref: ResourceRef
    changes: tuple[FieldChange, ...] = ()
    resource_id: str | None = None


@dataclass(frozen=True)
class Drift:
    """Immutable field that differs from the desired value."""

    ref: ResourceRef
    field: str
    desired: Any
    observed: Any

    @property
    def message(self) -> str:
        return f"{self.ref}: {self.field} is {self.observed!r}, desired {self.desired!r}"


@dataclass
class Plan:
    """Result of diffing desired against observed state."""

    operations: list[Operation] = field(default_factory=list)
    drifts: list[Drift] = field(default_factory=list)
    skipped_orphans: list[ResourceRef] = field(default_factory=list)

    def operation_for(self, ref: ResourceRef) -> Operation | None:
        for operation in self.operations:
            if operation.ref == ref:
                return operation
        return None

    def by_type(self, op_type: OperationType) -> list[Operation]:
        return [op for op in self.operations if op.type == op_type]

    def drifted(self) -> set[str]:
        return {drift.ref.key for drift in self.drifts}

    @property
    def has_changes(self) -> bool:
        return bool(self.drifts) or any(op.type != OperationType.NOOP for op in self.operations)

    def summary(self) -> dict[str, int]:
        counts = {op_type.value: 0 for op_type in OperationType}
        for operation in self.operations:
            counts[operation.type.value] += 1
        counts["drift"] = len(self.drifts)
        counts["skipped_orphans"] = len(self.skipped_orphans)
        return counts


def field_matches(desired: Any, observed: Any) -> bool:
    """Compare one field; dict fields (tags) only need the desired keys."""
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return False
        return all(observed.get(key) == value for key, value in desired.items())
    return desired == observed


def compare_fields(
    handler: KindHandler,
    desired: Mapping[str, Any],
    observed: Mapping[str, Any],
) -> tuple[list[FieldChange], list[FieldChange]]:
    """Split differences into immutable drift and mutable changes.

    Desired values of None are unknown (e.g. a principal id of an identity
    that does not exist yet) and are not compared.

    Returns:
        Tuple of (drifted immutable fields, changed mutable fields).
    """
    drifts: list[FieldChange] = []
    changes: list[FieldChange] = []
    for names, bucket in ((handler.immutable_fields, drifts), (handler.mutable_fields, changes)):
        for name in names:
            wanted = desired.get(name)
            if wanted is None:
                continue
            actual = observed.get(name)
            if not field_matches(wanted, actual):
                bucket.append(FieldChange(field=name, desired=wanted, observed=actual))
    return drifts, changes


def observed_outputs(observed: Mapping[str, ObservedResource]) -> dict[str, dict[str, str]]:
    """Outputs of observed resources, keyed by resource key."""
    outputs: dict[str, dict[str, str]] = {}
    for key, resource in observed.items():
        values = dict(KIND_HANDLERS[resource.ref.kind].outputs(resource))
        values["id"] = resource.resource_id
        outputs[key] = values
    return outputs


async def observe(
    clients: ProviderClients,
    spec: InfrastructureSpec | None,
    instance_id: str,
    state: FlowState | None = None,
    *,
    concurrency: int = DEFAULT_OBSERVE_CONCURRENCY,
) -> dict[str, ObservedResource]:
    """Fetch the provider snapshot relevant to one instance.

    The snapshot covers desired resources, resources recorded in flow state
    and everything tagged with the instance's ownership marker. Child
    resources (subnets, security rules) are expanded from their parents.

    Args:
        clients: Provider client handles.
        spec: Desired state, or None when only owned resources matter.
        instance_id: Owning instance.
        state: Prior flow state, if any.
        concurrency: Maximum concurrent provider reads.

    Returns:
        Observed resources keyed by ResourceRef.key, with ``owner`` set.

    Raises:
        ProviderError: If a provider read fails.
    """
    snapshot: dict[str, ObservedResource] = {}

    listed = await asyncio.gather(*(client.list_owned(instance_id) for client in clients.all()))
    for resources in listed:
        for resource in resources:
            snapshot[resource.ref.key] = resource

    recorded = [
        record.ref
        for record in (state.steps.values() if state is not None else [])
        if record.created or record.action is StepAction.DESTROY
    ]
    wanted: dict[str, ResourceRef] = {}
    for ref in [ref for ref, _ in desired_resources(spec)] + recorded:
        if ref.key not in snapshot:
            wanted[ref.key] = ref

    semaphore = asyncio.Semaphore(concurrency)

    async def fetch(ref: ResourceRef) -> ObservedResource | None:
        async with semaphore:
            return await clients.for_kind(ref.kind).get(ref)

    fetched = await asyncio.gather(*(fetch(ref) for ref in wanted.values()))
    for resource in fetched:
        if resource is not None:
            snapshot[resource.ref.key] = resource

    for resource in list(snapshot.values()):
        for child in KIND_HANDLERS[resource.ref.kind].children(resource):
            snapshot.setdefault(child.ref.key, child)

    recorded_keys = {ref.key for ref in recorded}
    for key, resource in snapshot.items():
        handler = KIND_HANDLERS[resource.ref.kind]
        owner = handler.owner_of(resource)
        if owner is None and not handler.ownership_marker and key in recorded_keys:
            # Untaggable resource we created ourselves
            owner = instance_id
        resource.owner = owner

    logger.info(
        "Observed provider state",
        extra={
            "instance_id": instance_id,
            "observed": len(snapshot),
            "owned": sum(1 for r in snapshot.values() if r.owner == instance_id),
        },
    )
    return snapshot


def diff(
    spec: InfrastructureSpec | None,
    observed: Mapping[str, ObservedResource],
    instance_id: str,
    subscription_id: str,
) -> Plan:
    """Compute the operations that bring observed state to the spec.

    Args:
        spec: Desired state; None means nothing is desired.
        observed: Snapshot from observe(), keyed by resource key.
        instance_id: Owning instance, used for the ownership check.
        subscription_id: Target subscription.

    Returns:
        The plan. Operations are ordered by kind dependency for desired
        resources, followed by deletions.
    """
    plan = Plan()
    ctx = ResolveContext(
        instance_id=instance_id,
        subscription_id=subscription_id,
        spec=spec,
        outputs=observed_outputs(observed),
    )

    desired_keys: set[str] = set()
    for ref, item in desired_resources(spec):
        desired_keys.add(ref.key)
        handler = KIND_HANDLERS[ref.kind]
        current = observed.get(ref.key)

        if current is None:
            plan.operations.append(Operation(type=OperationType.CREATE, ref=ref))
            continue

        drifts, changes = compare_fields(
            handler,
            handler.desired_fields(ref, item, ctx),
            handler.observed_fields(current),
        )
        for drift in drifts:
            plan.drifts.append(
                Drift(ref=ref, field=drift.field, desired=drift.desired, observed=drift.observed)
            )
        if drifts:
            logger.warning(
                "Immutable field drift detected",
                extra={
                    "instance_id": instance_id,
                    "resource": ref.key,
                    "fields": [d.field for d in drifts],
                },
            )

        op_type = OperationType.UPDATE if changes else OperationType.NOOP
        plan.operations.append(
            Operation(
                type=op_type,
                ref=ref,
                changes=tuple(changes),
                resource_id=current.resource_id,
            )
        )

    for key in sorted(set(observed) - desired_keys):
        resource = observed[key]
        if resource.owner == instance_id:
            plan.operations.append(
                Operation(
                    type=OperationType.DELETE,
                    ref=resource.ref,
                    resource_id=resource.resource_id,
                )
            )
        else:
            plan.skipped_orphans.append(resource.ref)
            logger.info(
                "Leaving resource without ownership marker untouched",
                extra={
                    "instance_id": instance_id,
                    "resource": key,
                    "owner": resource.owner,
                },
            )

    logger.info("Computed plan", extra={"instance_id": instance_id, **plan.summary()})
    return plan
