"""Dependency graph of reconciliation steps.

One step per desired resource. Edges come from the kind handlers
(subnet -> network, nat -> router and served subnets, firewall rule ->
network, security group, nat and target subnet, role binding -> service
account) and the graph is validated with Kahn's algorithm, so a cycle
fails before anything touches the provider.

Deletion runs the same graph with every edge reversed: a resource is
destroyed only after everything that depends on it is gone.
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from .clients import ObservedResource, ProviderClients, ResourceKind, ResourceRef
from .differ import OperationType, Plan, compare_fields
from .errors import DriftError, ErrorCode, InfraFlowError, PermanentProviderError, SpecValidationError
from .handlers import KIND_HANDLERS, ResolveContext, desired_resources
from .models import InfrastructureSpec
from .state import FlowState, StepAction

logger = logging.getLogger(__name__)

# Kind-level edges; every resource-level edge must follow one of these
KIND_DEPENDENCIES: dict[ResourceKind, tuple[ResourceKind, ...]] = {
    ResourceKind.NETWORK: (),
    ResourceKind.SUBNET: (ResourceKind.NETWORK,),
    ResourceKind.ROUTER: (ResourceKind.NETWORK,),
    ResourceKind.NAT: (ResourceKind.ROUTER, ResourceKind.SUBNET),
    ResourceKind.SECURITY_GROUP: (ResourceKind.NETWORK,),
    ResourceKind.FIREWALL_RULE: (
        ResourceKind.NETWORK,
        ResourceKind.SECURITY_GROUP,
        ResourceKind.NAT,
        ResourceKind.SUBNET,
    ),
    ResourceKind.SERVICE_ACCOUNT: (),
    ResourceKind.ROLE_BINDING: (ResourceKind.SERVICE_ACCOUNT,),
}


class DependencyError(InfraFlowError):
    """Raised when the step graph is inconsistent."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a circular dependency is detected."""

    pass


@dataclass
class StepOutcome:
    """What a step function reports back to the executor."""

    resource_id: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    # Nothing was done (resource already absent or not ours)
    skipped: bool = False


@dataclass
class StepContext:
    """Explicit inputs of one step execution."""

    step_id: str
    instance_id: str
    clients: ProviderClients | None
    dependency_outputs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    attempt: int = 1

    def require_clients(self) -> ProviderClients:
        if self.clients is None:
            raise DependencyError(f"Step {self.step_id} needs provider clients")
        return self.clients


StepFunction = Callable[[StepContext], Awaitable[StepOutcome]]


@dataclass(frozen=True)
class Step:
    """Node of the flow graph."""

    id: str
    ref: ResourceRef
    depends_on: frozenset[str] = frozenset()
    action: StepAction = StepAction.APPLY
    apply: StepFunction | None = None
    destroy: StepFunction | None = None
    fingerprint: str = ""

    def function(self) -> StepFunction:
        """The callable for this step's action."""
        fn = self.apply if self.action is StepAction.APPLY else self.destroy
        if fn is None:
            raise DependencyError(f"Step {self.id} has no {self.action.value} function")
        return fn


def _kind_closure() -> dict[ResourceKind, frozenset[ResourceKind]]:
    """Transitive kind dependencies."""
    closure: dict[ResourceKind, frozenset[ResourceKind]] = {}

    def visit(kind: ResourceKind, path: tuple[ResourceKind, ...]) -> frozenset[ResourceKind]:
        if kind in path:
            raise CyclicDependencyError(
                f"Circular kind dependency detected involving: {[k.value for k in path]}"
            )
        if kind not in closure:
            reached: set[ResourceKind] = set()
            for dep in KIND_DEPENDENCIES[kind]:
                reached.add(dep)
                reached |= visit(dep, path + (kind,))
            closure[kind] = frozenset(reached)
        return closure[kind]

    for kind in KIND_DEPENDENCIES:
        visit(kind, ())
    return closure


KIND_CLOSURE = _kind_closure()


class FlowGraph:
    """Validated DAG of steps.

    Raises:
        DependencyError: If a step depends on an unknown step or ids repeat.
        CyclicDependencyError: If the dependencies contain a cycle.
    """

    def __init__(self, steps: Iterable[Step]) -> None:
        self._steps: dict[str, Step] = {}
        for step in steps:
            if step.id in self._steps:
                raise DependencyError(f"Duplicate step id: {step.id}")
            self._steps[step.id] = step

        for step in self._steps.values():
            unknown = step.depends_on - self._steps.keys()
            if unknown:
                raise DependencyError(
                    f"Step {step.id} depends on unknown steps: {sorted(unknown)}"
                )

        self._order = self._topological_sort()

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __iter__(self) -> Iterator[Step]:
        return (self._steps[step_id] for step_id in self._order)

    def step(self, step_id: str) -> Step:
        return self._steps[step_id]

    @property
    def step_ids(self) -> list[str]:
        return list(self._order)

    def topological_order(self) -> list[str]:
        """Step ids with dependencies first, ties broken by id."""
        return list(self._order)

    def dependents(self, step_id: str) -> set[str]:
        return {step.id for step in self._steps.values() if step_id in step.depends_on}

    def ready(self, satisfied: set[str], exclude: set[str] | None = None) -> list[str]:
        """Steps whose dependencies are all satisfied.

        Args:
            satisfied: Step ids that count as done.
            exclude: Step ids not to offer (done, running or already tried).

        Returns:
            Ready step ids in topological order.
        """
        skip = satisfied | (exclude or set())
        return [
            step_id
            for step_id in self._order
            if step_id not in skip and self._steps[step_id].depends_on <= satisfied
        ]

    def reversed(self) -> FlowGraph:
        """The same steps with every edge reversed, as destroy steps."""
        return FlowGraph(
            replace(
                step,
                depends_on=frozenset(self.dependents(step.id)),
                action=StepAction.DESTROY,
            )
            for step in self._steps.values()
        )

    @classmethod
    def for_deletion(cls, state: FlowState) -> FlowGraph:
        """Forward graph over every recorded step, for teardown.

        Edges are derived from kinds, which covers every resource-level
        edge the apply graph had; reverse it before executing.
        """
        refs = {step_id: record.ref for step_id, record in state.steps.items()}
        steps = []
        for step_id, ref in refs.items():
            steps.append(
                Step(
                    id=step_id,
                    ref=ref,
                    depends_on=frozenset(
                        other_id
                        for other_id, other in refs.items()
                        if other_id != step_id and other.kind in KIND_CLOSURE[ref.kind]
                    ),
                    destroy=destroy_function(ref),
                )
            )
        return cls(steps)

    def _topological_sort(self) -> list[str]:
        # Kahn's algorithm, edges point from a dependency to its dependents
        dependents: dict[str, list[str]] = {step_id: [] for step_id in self._steps}
        in_degree: dict[str, int] = {step_id: 0 for step_id in self._steps}
        for step in self._steps.values():
            for dep in step.depends_on:
                dependents[dep].append(step.id)
                in_degree[step.id] += 1

        result: list[str] = []
        queue = [step_id for step_id, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among steps with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self._steps):
            cycle_steps = sorted(step_id for step_id, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_steps}")

        return result


def validate_references(spec: InfrastructureSpec) -> list[str]:
    """Cross-field checks that single-model validation cannot do.

    Returns:
        List of error messages, empty when the spec is consistent.
    """
    errors: list[str] = []

    def check_unique(label: str, names: list[str]) -> None:
        seen: set[str] = set()
        for name in names:
            if name in seen:
                errors.append(f"Duplicate {label} name: {name}")
            seen.add(name)

    check_unique("subnet", [s.name for s in spec.subnets])
    check_unique("firewall rule", [r.name for r in spec.firewall_rules])
    check_unique("service account", [a.name for a in spec.service_accounts])
    for account in spec.service_accounts:
        check_unique(f"role of service account {account.name}", list(account.roles))

    address_space = [ipaddress.ip_network(prefix) for prefix in spec.network.address_space]
    subnet_networks: list[tuple[str, Any]] = []
    for subnet in spec.subnets:
        cidr = ipaddress.ip_network(subnet.cidr)
        if not any(
            cidr.version == space.version and cidr.subnet_of(space) for space in address_space
        ):
            errors.append(
                f"Subnet {subnet.name} ({subnet.cidr}) is outside the network address space"
            )
        for other_name, other in subnet_networks:
            if cidr.version == other.version and cidr.overlaps(other):
                errors.append(f"Subnet {subnet.name} overlaps subnet {other_name}")
        subnet_networks.append((subnet.name, cidr))

    subnet_names = {s.name for s in spec.subnets}
    if spec.nat is not None:
        if spec.router is None:
            errors.append(f"NAT {spec.nat.name} requires a router")
        for name in spec.nat.subnets:
            if name not in subnet_names:
                errors.append(f"NAT {spec.nat.name} serves undefined subnet {name}")

    priorities: dict[tuple[str, int], str] = {}
    for rule in spec.firewall_rules:
        if rule.target_subnet and rule.target_subnet not in subnet_names:
            errors.append(
                f"Firewall rule {rule.name} targets undefined subnet {rule.target_subnet}"
            )
        key = (rule.direction.value, rule.priority)
        if key in priorities:
            errors.append(
                f"Firewall rules {priorities[key]} and {rule.name} share "
                f"{rule.direction.value} priority {rule.priority}"
            )
        else:
            priorities[key] = rule.name

    return errors


def _check_ownership(ref: ResourceRef, current: ObservedResource, instance_id: str) -> None:
    handler = KIND_HANDLERS[ref.kind]
    if not handler.ownership_marker:
        return
    owner = handler.owner_of(current)
    if owner is not None and owner != instance_id:
        raise PermanentProviderError(
            f"{ref} is owned by instance {owner}",
            codes=[ErrorCode.CONFIGURATION_PROBLEM],
        )


def apply_function(ref: ResourceRef, item: Any, base: ResolveContext) -> StepFunction:
    """Create or converge one resource.

    A missing resource is created. An existing one is compared field by
    field: immutable drift raises DriftError, mutable changes are applied
    with an update that keeps unrelated observed properties.
    """
    handler = KIND_HANDLERS[ref.kind]

    async def apply(ctx: StepContext) -> StepOutcome:
        clients = ctx.require_clients()
        client = clients.for_kind(ref.kind)
        resolve = base.with_outputs(ctx.dependency_outputs)

        async with clients.resource_lock(ref):
            current = await client.get(ref)
            if current is None:
                applied = await client.create(ref, handler.build_body(ref, item, resolve, None))
            else:
                _check_ownership(ref, current, ctx.instance_id)
                drifts, changes = compare_fields(
                    handler,
                    handler.desired_fields(ref, item, resolve),
                    handler.observed_fields(current),
                )
                if drifts:
                    raise DriftError(ref.key, [drift.field for drift in drifts])
                if changes:
                    applied = await client.update(
                        ref, handler.build_body(ref, item, resolve, current)
                    )
                else:
                    applied = current

        await handler.after_apply(ref, item, resolve, clients, applied)
        return StepOutcome(resource_id=applied.resource_id, outputs=handler.outputs(applied))

    return apply


def destroy_function(ref: ResourceRef) -> StepFunction:
    """Delete one resource, only if it carries this instance's marker.

    Kinds that cannot carry a marker (subnets, security rules) are deleted
    on the strength of the flow state record or the owning parent.
    """
    handler = KIND_HANDLERS[ref.kind]

    async def destroy(ctx: StepContext) -> StepOutcome:
        clients = ctx.require_clients()
        client = clients.for_kind(ref.kind)

        # Held through the delete so an association write cannot recreate a subnet
        async with clients.resource_lock(ref):
            current = await client.get(ref)
            if current is None:
                logger.info(
                    "Resource already absent",
                    extra={"instance_id": ctx.instance_id, "resource": ref.key},
                )
                return StepOutcome(skipped=True)

            if handler.ownership_marker and handler.owner_of(current) != ctx.instance_id:
                logger.warning(
                    "Not deleting resource without this instance's ownership marker",
                    extra={
                        "instance_id": ctx.instance_id,
                        "resource": ref.key,
                        "owner": handler.owner_of(current),
                    },
                )
                return StepOutcome(skipped=True)

            await handler.before_destroy(clients, current)
            await client.delete(ref)
        return StepOutcome(resource_id=current.resource_id)

    return destroy


def _deletion_steps(refs: list[ResourceRef]) -> list[Step]:
    # A resource is destroyed after everything whose kind depends on its kind
    return [
        Step(
            id=ref.key,
            ref=ref,
            depends_on=frozenset(
                other.key
                for other in refs
                if other != ref and ref.kind in KIND_CLOSURE[other.kind]
            ),
            action=StepAction.DESTROY,
            destroy=destroy_function(ref),
        )
        for ref in refs
    ]


def build_graph(
    spec: InfrastructureSpec | None,
    instance_id: str,
    subscription_id: str,
    plan: Plan | None = None,
) -> FlowGraph:
    """Build the step graph for one reconciliation.

    Args:
        spec: Desired state; None yields only the deletions of ``plan``.
        instance_id: Owning instance.
        subscription_id: Target subscription.
        plan: Differ output; its DELETE operations become destroy steps.

    Returns:
        The validated graph.

    Raises:
        SpecValidationError: If the spec references are inconsistent.
        CyclicDependencyError: If the dependencies contain a cycle.
    """
    steps: list[Step] = []

    if spec is not None:
        errors = validate_references(spec)
        if errors:
            raise SpecValidationError(
                "Invalid infrastructure spec:\n" + "\n".join(f"  - {e}" for e in errors)
            )

        base = ResolveContext(instance_id=instance_id, subscription_id=subscription_id, spec=spec)
        for ref, item in desired_resources(spec):
            handler = KIND_HANDLERS[ref.kind]
            deps = handler.dependencies(ref, item, spec)
            for dep in deps:
                if dep.kind not in KIND_DEPENDENCIES[ref.kind]:
                    raise DependencyError(
                        f"{ref} may not depend on {dep.kind.value} resources"
                    )
            steps.append(
                Step(
                    id=ref.key,
                    ref=ref,
                    depends_on=frozenset(dep.key for dep in deps),
                    apply=apply_function(ref, item, base),
                    destroy=destroy_function(ref),
                    fingerprint=handler.fingerprint(ref, item, spec),
                )
            )

    if plan is not None:
        steps.extend(_deletion_steps([op.ref for op in plan.by_type(OperationType.DELETE)]))

    graph = FlowGraph(steps)
    logger.debug(
        "Built flow graph",
        extra={"instance_id": instance_id, "steps": len(graph), "order": graph.step_ids},
    )
    return graph
