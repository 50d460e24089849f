"""Kind-specific resource behaviour.

Each resource kind is served by one handler selected from the static
KIND_HANDLERS mapping. A handler knows how to enumerate desired resources
of its kind from the spec, which other resources they need, which fields
are comparable (and which of those are immutable), how to build the ARM
request body and how to read outputs back from an observed resource.

Association side effects live here too: Azure attaches NAT gateways, route
tables and security groups on the subnet, so the NAT and firewall steps
patch the subnets they serve, and destroying those resources detaches
them first.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from .clients import (
    OWNERSHIP_TAG,
    ObservedResource,
    ProviderClients,
    ResourceKind,
    ResourceRef,
    normalize_location,
    ref_from_resource_id,
    same_resource_id,
)
from .errors import ErrorCode, PermanentProviderError, SpecValidationError
from .models import FirewallRuleConfig, InfrastructureSpec

logger = logging.getLogger(__name__)

# Role assignments cannot be tagged; ownership lives in the description
OWNERSHIP_DESCRIPTION_PREFIX = f"{OWNERSHIP_TAG}="

SUBNET_NAT_PROPERTY = "natGateway"
SUBNET_ROUTE_TABLE_PROPERTY = "routeTable"
SUBNET_SECURITY_GROUP_PROPERTY = "networkSecurityGroup"


@dataclass(frozen=True)
class ResolveContext:
    """Everything a handler may consult while rendering desired state.

    ``outputs`` maps resource keys to ``{"id": ..., **handler outputs}`` of
    resources that already exist: observed resources during diffing,
    dependency records while a step runs.
    """

    instance_id: str
    subscription_id: str
    spec: InfrastructureSpec | None = None
    outputs: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def require_spec(self) -> InfrastructureSpec:
        if self.spec is None:
            raise SpecValidationError("Rendering desired state needs an infrastructure spec")
        return self.spec

    def output(self, ref: ResourceRef, key: str = "id") -> str | None:
        return self.outputs.get(ref.key, {}).get(key)

    def desired_tags(self) -> dict[str, str]:
        tags = dict(self.spec.tags) if self.spec is not None else {}
        tags[OWNERSHIP_TAG] = self.instance_id
        return tags

    def with_outputs(self, outputs: Mapping[str, Mapping[str, str]]) -> ResolveContext:
        return ResolveContext(
            instance_id=self.instance_id,
            subscription_id=self.subscription_id,
            spec=self.spec,
            outputs=outputs,
        )


def merge_properties(current: Mapping[str, Any], desired: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge desired properties over observed ones.

    Keeps server-managed and externally attached properties (subnets of a
    network, rules of a security group, subnet associations) that a plain
    PUT of the desired properties would wipe.
    """
    merged = copy.deepcopy(dict(current))
    for key, value in desired.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_properties(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def security_group_name(spec: InfrastructureSpec) -> str:
    return f"{spec.network.name}-nsg"


def role_definition_id(subscription_id: str, role: str) -> str:
    return (
        f"/subscriptions/{subscription_id}"
        f"/providers/Microsoft.Authorization/roleDefinitions/{role}"
    )


def ownership_description(instance_id: str) -> str:
    return f"{OWNERSHIP_DESCRIPTION_PREFIX}{instance_id}"


async def set_subnet_association(
    clients: ProviderClients,
    subnet_ref: ResourceRef,
    prop: str,
    resource_id: str | None,
) -> bool:
    """Point a subnet association at ``resource_id`` (None detaches).

    Returns:
        True if the subnet was updated, False if it already matched or is gone.
    """
    client = clients.for_kind(ResourceKind.SUBNET)
    # The PUT carries every association, so concurrent writers must not interleave
    async with clients.resource_lock(subnet_ref):
        subnet = await client.get(subnet_ref)
        if subnet is None:
            return False

        current = (subnet.properties.get(prop) or {}).get("id")
        if same_resource_id(current, resource_id):
            return False

        properties = copy.deepcopy(subnet.properties)
        if resource_id is None:
            properties.pop(prop, None)
        else:
            properties[prop] = {"id": resource_id}

        await client.update(subnet_ref, {"properties": properties})
    logger.info(
        "Updated subnet association",
        extra={"subnet": subnet_ref.key, "association": prop, "target": resource_id},
    )
    return True


def attached_subnets(observed: ObservedResource) -> list[ResourceRef]:
    """Subnets referencing a NAT gateway, route table or security group."""
    refs = []
    for entry in observed.properties.get("subnets") or []:
        ref = ref_from_resource_id((entry or {}).get("id"))
        if ref is not None and ref.kind is ResourceKind.SUBNET:
            refs.append(ref)
    return refs


async def detach_subnets(clients: ProviderClients, observed: ObservedResource, prop: str) -> None:
    for subnet_ref in attached_subnets(observed):
        await set_subnet_association(clients, subnet_ref, prop, None)


class KindHandler:
    """Behaviour shared by all kinds; subclasses fill in the specifics."""

    kind: ResourceKind
    tagged: bool = True
    # Whether owner_of() can read an ownership marker off the resource
    ownership_marker: bool = True
    immutable_fields: tuple[str, ...] = ()
    mutable_fields: tuple[str, ...] = ()

    def items(self, spec: InfrastructureSpec) -> list[tuple[ResourceRef, Any]]:
        """Desired resources of this kind as (reference, spec entry) pairs."""
        raise NotImplementedError

    def dependencies(
        self, ref: ResourceRef, item: Any, spec: InfrastructureSpec
    ) -> list[ResourceRef]:
        return []

    def desired_fields(self, ref: ResourceRef, item: Any, ctx: ResolveContext) -> dict[str, Any]:
        raise NotImplementedError

    def observed_fields(self, observed: ObservedResource) -> dict[str, Any]:
        raise NotImplementedError

    def build_body(
        self,
        ref: ResourceRef,
        item: Any,
        ctx: ResolveContext,
        current: ObservedResource | None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def owner_of(self, observed: ObservedResource) -> str | None:
        if self.tagged:
            return observed.tags.get(OWNERSHIP_TAG)
        return None

    def outputs(self, observed: ObservedResource) -> dict[str, str]:
        return {}

    def children(self, observed: ObservedResource) -> list[ObservedResource]:
        return []

    async def after_apply(
        self,
        ref: ResourceRef,
        item: Any,
        ctx: ResolveContext,
        clients: ProviderClients,
        applied: ObservedResource,
    ) -> None:
        return None

    async def before_destroy(self, clients: ProviderClients, current: ObservedResource) -> None:
        return None

    def fingerprint(self, ref: ResourceRef, item: Any, spec: InfrastructureSpec) -> str:
        """Hash of everything that shapes the desired resource."""
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "ref": ref.key,
            "item": item.model_dump(mode="json", by_alias=True)
            if isinstance(item, BaseModel)
            else item,
            "depends_on": sorted(dep.key for dep in self.dependencies(ref, item, spec)),
        }
        if self.tagged:
            payload["location"] = spec.region
            payload["tags"] = spec.tags
        encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()[:16]


class _RegionalHandler(KindHandler):
    """Top-level, tagged resource living in the spec region."""

    immutable_fields = ("location",)
    mutable_fields = ("tags",)

    def desired_properties(self, ref: ResourceRef, item: Any, ctx: ResolveContext) -> dict[str, Any]:
        return {}

    def property_fields(self, properties: Mapping[str, Any]) -> dict[str, Any]:
        return {}

    def desired_fields(self, ref: ResourceRef, item: Any, ctx: ResolveContext) -> dict[str, Any]:
        return {
            "location": ctx.require_spec().region,
            "tags": ctx.desired_tags(),
            **self.property_fields(self.desired_properties(ref, item, ctx)),
        }

    def observed_fields(self, observed: ObservedResource) -> dict[str, Any]:
        return {
            "location": normalize_location(observed.location),
            "tags": dict(observed.tags),
            **self.property_fields(observed.properties),
        }

    def build_body(
        self,
        ref: ResourceRef,
        item: Any,
        ctx: ResolveContext,
        current: ObservedResource | None,
    ) -> dict[str, Any]:
        spec = ctx.require_spec()
        properties = self.desired_properties(ref, item, ctx)
        tags = ctx.desired_tags()
        if current is not None:
            properties = merge_properties(current.properties, properties)
            tags = {**current.tags, **tags}
        return {"location": spec.region, "tags": tags, "properties": properties}


class NetworkHandler(_RegionalHandler):
    kind = ResourceKind.NETWORK
    mutable_fields = ("addressPrefixes", "tags")

    def items(self, spec: InfrastructureSpec) -> list[tuple[ResourceRef, Any]]:
        return [(ResourceRef(self.kind, spec.network.name), spec.network)]

    def desired_properties(self, ref: ResourceRef, item: Any, ctx: ResolveContext) -> dict[str, Any]:
        return {"addressSpace": {"addressPrefixes": list(item.address_space)}}

    def property_fields(self, properties: Mapping[str, Any]) -> dict[str, Any]:
        prefixes = (properties.get("addressSpace") or {}).get("addressPrefixes") or []
        return {"addressPrefixes": sorted(prefixes)}

    def children(self, observed: ObservedResource) -> list[ObservedResource]:
        subnets = []
        for entry in observed.properties.get("subnets") or []:
            if not entry or not entry.get("name"):
                continue
            subnets.append(
                ObservedResource(
                    ref=ResourceRef(ResourceKind.SUBNET, entry["name"], parent=observed.ref.name),
                    resource_id=entry.get("id", ""),
                    properties=dict(entry.get("properties") or {}),
                )
            )
        return subnets


class SubnetHandler(KindHandler):
    kind = ResourceKind.SUBNET
    tagged = False
    ownership_marker = False
    immutable_fields = ("addressPrefix",)

    def items(self, spec: InfrastructureSpec) -> list[tuple[ResourceRef, Any]]:
        return [
            (ResourceRef(self.kind, subnet.name, parent=spec.network.name), subnet)
            for subnet in spec.subnets
        ]

    def dependencies(
        self, ref: ResourceRef, item: Any, spec: InfrastructureSpec
    ) -> list[ResourceRef]:
        return [ResourceRef(ResourceKind.NETWORK, spec.network.name)]

    def desired_fields(self, ref: ResourceRef, item: Any, ctx: ResolveContext) -> dict[str, Any]:
        return {"addressPrefix": item.cidr}

    def observed_fields(self, observed: ObservedResource) -> dict[str, Any]:
        return {"addressPrefix": observed.properties.get("addressPrefix")}

    def build_body(
        self,
        ref: ResourceRef,
        item: Any,
        ctx: ResolveContext,
        current: ObservedResource | None,
    ) -> dict[str, Any]:
        properties: dict[str, Any] = {"addressPrefix": item.cidr}
        if current is not None:
            properties = merge_properties(current.properties, properties)
        return {"properties": properties}


class RouterHandler(_RegionalHandler):
    kind = ResourceKind.ROUTER
    mutable_fields = ("disableBgpRoutePropagation", "tags")

    def items(self, spec: InfrastructureSpec) -> list[tuple[ResourceRef, Any]]:
        if spec.router is None:
            return []
        return [(ResourceRef(self.kind, spec.router.name), spec.router)]

    def dependencies(
        self, ref: ResourceRef, item: Any, spec: InfrastructureSpec
    ) -> list[ResourceRef]:
        return [ResourceRef(ResourceKind.NETWORK, spec.network.name)]

    def desired_properties(self, ref: ResourceRef, item: Any, ctx: ResolveContext) -> dict[str, Any]:
        return {"disableBgpRoutePropagation": item.disable_bgp_route_propagation}

    def property_fields(self, properties: Mapping[str, Any]) -> dict[str, Any]:
        return {"disableBgpRoutePropagation": bool(properties.get("disableBgpRoutePropagation"))}

    async def before_destroy(self, clients: ProviderClients, current: ObservedResource) -> None:
        await detach_subnets(clients, current, SUBNET_ROUTE_TABLE_PROPERTY)


class NatHandler(_RegionalHandler):
    kind = ResourceKind.NAT
    mutable_fields = ("idleTimeoutInMinutes", "tags")

    def items(self, spec: InfrastructureSpec) -> list[tuple[ResourceRef, Any]]:
        if spec.nat is None:
            return []
        return [(ResourceRef(self.kind, spec.nat.name), spec.nat)]

    def dependencies(
        self, ref: ResourceRef, item: Any, spec: InfrastructureSpec
    ) -> list[ResourceRef]:
        deps = []
        if spec.router is not None:
            deps.append(ResourceRef(ResourceKind.ROUTER, spec.router.name))
        deps.extend(
            ResourceRef(ResourceKind.SUBNET, subnet.name, parent=spec.network.name)
            for subnet in spec.nat_subnets()
        )
        return deps

    def desired_properties(self, ref: ResourceRef, item: Any, ctx: ResolveContext) -> dict[str, Any]:
        return {"idleTimeoutInMinutes": item.idle_timeout_minutes}

    def property_fields(self, properties: Mapping[str, Any]) -> dict[str, Any]:
        return {"idleTimeoutInMinutes": properties.get("idleTimeoutInMinutes")}

    async def after_apply(
        self,
        ref: ResourceRef,
        item: Any,
        ctx: ResolveContext,
        clients: ProviderClients,
        applied: ObservedResource,
    ) -> None:
        spec = ctx.require_spec()
        router_id = None
        if spec.router is not None:
            router_id = ctx.output(ResourceRef(ResourceKind.ROUTER, spec.router.name))

        served = [
            dep
            for dep in self.dependencies(ref, item, spec)
            if dep.kind is ResourceKind.SUBNET
        ]
        served_keys = {dep.key for dep in served}

        for subnet_ref in served:
            await set_subnet_association(
                clients, subnet_ref, SUBNET_NAT_PROPERTY, applied.resource_id
            )
            if router_id:
                await set_subnet_association(
                    clients, subnet_ref, SUBNET_ROUTE_TABLE_PROPERTY, router_id
                )

        # Subnets dropped from the served list keep no stale association
        for subnet_ref in attached_subnets(applied):
            if subnet_ref.key not in served_keys:
                await set_subnet_association(clients, subnet_ref, SUBNET_NAT_PROPERTY, None)

    async def before_destroy(self, clients: ProviderClients, current: ObservedResource) -> None:
        await detach_subnets(clients, current, SUBNET_NAT_PROPERTY)


class SecurityGroupHandler(_RegionalHandler):
    """Per-network security group holding the firewall rules."""

    kind = ResourceKind.SECURITY_GROUP

    def items(self, spec: InfrastructureSpec) -> list[tuple[ResourceRef, Any]]:
        if not spec.firewall_rules:
            return []
        return [(ResourceRef(self.kind, security_group_name(spec)), None)]

    def dependencies(
        self, ref: ResourceRef, item: Any, spec: InfrastructureSpec
    ) -> list[ResourceRef]:
        return [ResourceRef(ResourceKind.NETWORK, spec.network.name)]

    def children(self, observed: ObservedResource) -> list[ObservedResource]:
        rules = []
        for entry in observed.properties.get("securityRules") or []:
            if not entry or not entry.get("name"):
                continue
            rules.append(
                ObservedResource(
                    ref=ResourceRef(
                        ResourceKind.FIREWALL_RULE, entry["name"], parent=observed.ref.name
                    ),
                    resource_id=entry.get("id", ""),
                    properties=dict(entry.get("properties") or {}),
                )
            )
        return rules

    async def before_destroy(self, clients: ProviderClients, current: ObservedResource) -> None:
        await detach_subnets(clients, current, SUBNET_SECURITY_GROUP_PROPERTY)


def _single_or_list(singular: str, plural: str, values: list[str]) -> dict[str, Any]:
    if len(values) == 1:
        return {singular: values[0]}
    return {plural: list(values)}


def _collect(properties: Mapping[str, Any], singular: str, plural: str) -> list[str]:
    values = list(properties.get(plural) or [])
    if properties.get(singular):
        values.append(properties[singular])
    return sorted(values)


class FirewallRuleHandler(KindHandler):
    kind = ResourceKind.FIREWALL_RULE
    tagged = False
    ownership_marker = False
    immutable_fields = ("direction",)
    mutable_fields = (
        "access",
        "priority",
        "protocol",
        "sourceAddressPrefixes",
        "destinationPortRanges",
        "destinationAddressPrefix",
    )

    def items(self, spec: InfrastructureSpec) -> list[tuple[ResourceRef, Any]]:
        group = security_group_name(spec)
        return [
            (ResourceRef(self.kind, rule.name, parent=group), rule)
            for rule in spec.firewall_rules
        ]

    def dependencies(
        self, ref: ResourceRef, item: Any, spec: InfrastructureSpec
    ) -> list[ResourceRef]:
        deps = [
            ResourceRef(ResourceKind.NETWORK, spec.network.name),
            ResourceRef(ResourceKind.SECURITY_GROUP, security_group_name(spec)),
        ]
        if spec.nat is not None:
            deps.append(ResourceRef(ResourceKind.NAT, spec.nat.name))
        if item.target_subnet:
            deps.append(
                ResourceRef(ResourceKind.SUBNET, item.target_subnet, parent=spec.network.name)
            )
        return deps

    def _properties(self, rule: FirewallRuleConfig, spec: InfrastructureSpec) -> dict[str, Any]:
        destination = "*"
        if rule.target_subnet:
            target = spec.subnet(rule.target_subnet)
            if target is not None:
                destination = target.cidr
        return {
            "direction": rule.direction.value,
            "access": rule.access.value,
            "priority": rule.priority,
            "protocol": rule.protocol,
            "sourcePortRange": "*",
            "destinationAddressPrefix": destination,
            **_single_or_list("sourceAddressPrefix", "sourceAddressPrefixes", rule.source_ranges),
            **_single_or_list("destinationPortRange", "destinationPortRanges", rule.ports),
        }

    def _fields(self, properties: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "direction": properties.get("direction"),
            "access": properties.get("access"),
            "priority": properties.get("priority"),
            "protocol": properties.get("protocol"),
            "sourceAddressPrefixes": _collect(
                properties, "sourceAddressPrefix", "sourceAddressPrefixes"
            ),
            "destinationPortRanges": _collect(
                properties, "destinationPortRange", "destinationPortRanges"
            ),
            "destinationAddressPrefix": properties.get("destinationAddressPrefix"),
        }

    def desired_fields(self, ref: ResourceRef, item: Any, ctx: ResolveContext) -> dict[str, Any]:
        return self._fields(self._properties(item, ctx.require_spec()))

    def observed_fields(self, observed: ObservedResource) -> dict[str, Any]:
        return self._fields(observed.properties)

    def build_body(
        self,
        ref: ResourceRef,
        item: Any,
        ctx: ResolveContext,
        current: ObservedResource | None,
    ) -> dict[str, Any]:
        # Rules are fully specified; merging would mix singular and plural forms
        return {"properties": self._properties(item, ctx.require_spec())}

    async def after_apply(
        self,
        ref: ResourceRef,
        item: Any,
        ctx: ResolveContext,
        clients: ProviderClients,
        applied: ObservedResource,
    ) -> None:
        if not item.target_subnet or ctx.spec is None:
            return
        group_id = ctx.output(ResourceRef(ResourceKind.SECURITY_GROUP, ref.parent or ""))
        if group_id is None:
            return
        await set_subnet_association(
            clients,
            ResourceRef(ResourceKind.SUBNET, item.target_subnet, parent=ctx.spec.network.name),
            SUBNET_SECURITY_GROUP_PROPERTY,
            group_id,
        )


class ServiceAccountHandler(_RegionalHandler):
    kind = ResourceKind.SERVICE_ACCOUNT

    def items(self, spec: InfrastructureSpec) -> list[tuple[ResourceRef, Any]]:
        return [(ResourceRef(self.kind, account.name), account) for account in spec.service_accounts]

    def fingerprint(self, ref: ResourceRef, item: Any, spec: InfrastructureSpec) -> str:
        # Roles are separate steps; adding one must not reset the identity
        return super().fingerprint(ref, {"name": item.name}, spec)

    def outputs(self, observed: ObservedResource) -> dict[str, str]:
        outputs = {}
        for key in ("principalId", "clientId", "tenantId"):
            value = observed.properties.get(key)
            if value:
                outputs[key] = str(value)
        return outputs


class RoleBindingHandler(KindHandler):
    """Role assignment of a service account on the resource group."""

    kind = ResourceKind.ROLE_BINDING
    tagged = False
    immutable_fields = ("roleDefinitionId", "principalId")

    def items(self, spec: InfrastructureSpec) -> list[tuple[ResourceRef, Any]]:
        return [
            (ResourceRef(self.kind, role, parent=account.name), role)
            for account in spec.service_accounts
            for role in account.roles
        ]

    def dependencies(
        self, ref: ResourceRef, item: Any, spec: InfrastructureSpec
    ) -> list[ResourceRef]:
        return [ResourceRef(ResourceKind.SERVICE_ACCOUNT, ref.parent or "")]

    def _principal_id(self, ref: ResourceRef, ctx: ResolveContext) -> str | None:
        return ctx.output(ResourceRef(ResourceKind.SERVICE_ACCOUNT, ref.parent or ""), "principalId")

    def desired_fields(self, ref: ResourceRef, item: Any, ctx: ResolveContext) -> dict[str, Any]:
        return {
            "roleDefinitionId": role_definition_id(ctx.subscription_id, ref.name).lower(),
            "principalId": self._principal_id(ref, ctx),
        }

    def observed_fields(self, observed: ObservedResource) -> dict[str, Any]:
        return {
            "roleDefinitionId": (observed.properties.get("roleDefinitionId") or "").lower(),
            "principalId": observed.properties.get("principalId"),
        }

    def owner_of(self, observed: ObservedResource) -> str | None:
        description = observed.properties.get("description") or ""
        if description.startswith(OWNERSHIP_DESCRIPTION_PREFIX):
            return description[len(OWNERSHIP_DESCRIPTION_PREFIX) :]
        return None

    def build_body(
        self,
        ref: ResourceRef,
        item: Any,
        ctx: ResolveContext,
        current: ObservedResource | None,
    ) -> dict[str, Any]:
        principal_id = self._principal_id(ref, ctx)
        if not principal_id:
            raise PermanentProviderError(
                f"Principal id of service account {ref.parent} is not known",
                codes=[ErrorCode.CONFIGURATION_PROBLEM],
            )
        return {
            "properties": {
                "roleDefinitionId": role_definition_id(ctx.subscription_id, ref.name),
                "principalId": principal_id,
                "principalType": "ServicePrincipal",
                "description": ownership_description(ctx.instance_id),
            }
        }


# Static kind -> handler mapping, in dependency order
KIND_HANDLERS: dict[ResourceKind, KindHandler] = {
    ResourceKind.NETWORK: NetworkHandler(),
    ResourceKind.SUBNET: SubnetHandler(),
    ResourceKind.ROUTER: RouterHandler(),
    ResourceKind.NAT: NatHandler(),
    ResourceKind.SECURITY_GROUP: SecurityGroupHandler(),
    ResourceKind.FIREWALL_RULE: FirewallRuleHandler(),
    ResourceKind.SERVICE_ACCOUNT: ServiceAccountHandler(),
    ResourceKind.ROLE_BINDING: RoleBindingHandler(),
}


def desired_resources(spec: InfrastructureSpec | None) -> list[tuple[ResourceRef, Any]]:
    """All desired resources of a spec, in kind dependency order."""
    if spec is None:
        return []
    resources: list[tuple[ResourceRef, Any]] = []
    for handler in KIND_HANDLERS.values():
        resources.extend(handler.items(spec))
    return resources
