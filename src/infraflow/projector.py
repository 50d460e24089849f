"""Status projection.

project() derives the externally visible status document from the flow
state. It is a pure function: it reads apply records that carry a resource
id, so a resource that was never created (or is being destroyed) simply
does not appear. Missing pieces are omitted, never zero-valued.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .clients import ResourceKind, ResourceRef
from .handlers import security_group_name
from .models import InfrastructureSpec, SubnetPurpose
from .state import FlowState, StepAction, StepRecord

STATUS_API_VERSION = "infraflow.io/v1alpha1"
STATUS_KIND = "InfrastructureStatus"

_STATUS_CONFIG = {"extra": "ignore", "populate_by_name": True}


class NamedResourceStatus(BaseModel):
    model_config = _STATUS_CONFIG

    name: str
    id: str


class RouterStatus(NamedResourceStatus):
    pass


class VpcStatus(NamedResourceStatus):
    router: RouterStatus | None = None


class SubnetStatus(NamedResourceStatus):
    purpose: SubnetPurpose | None = None


class NatStatus(NamedResourceStatus):
    pass


class NetworksStatus(BaseModel):
    model_config = _STATUS_CONFIG

    vpc: VpcStatus | None = None
    subnets: list[SubnetStatus] | None = None
    nat: NatStatus | None = None


class FirewallRuleStatus(NamedResourceStatus):
    pass


class ServiceAccountStatus(NamedResourceStatus):
    client_id: str | None = Field(None, alias="clientId")
    principal_id: str | None = Field(None, alias="principalId")


class InfrastructureStatus(BaseModel):
    """Status document of one instance."""

    model_config = _STATUS_CONFIG

    api_version: str = Field(STATUS_API_VERSION, alias="apiVersion")
    kind: str = STATUS_KIND
    networks: NetworksStatus | None = None
    firewall_rules: list[FirewallRuleStatus] | None = Field(None, alias="firewallRules")
    service_accounts: list[ServiceAccountStatus] | None = Field(None, alias="serviceAccounts")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _applied(state: FlowState | None, ref: ResourceRef) -> StepRecord | None:
    """Apply record holding a known-good resource id, or None.

    The status does not matter: a resource whose later update failed or is
    pending still exists under the id its last successful apply recorded.
    """
    if state is None:
        return None
    record = state.record(ref.key)
    if record is None or record.action is not StepAction.APPLY or not record.resource_id:
        return None
    return record


def project(state: FlowState | None, spec: InfrastructureSpec) -> InfrastructureStatus:
    """Build the status for ``spec`` from the persisted flow state.

    Args:
        state: Flow state after execution; None yields an empty status.
        spec: Desired state, used to order and label the entries.

    Returns:
        The status. Entries exist only for resources with a known-good id.
    """
    network = spec.network.name

    vpc = None
    vpc_record = _applied(state, ResourceRef(ResourceKind.NETWORK, network))
    if vpc_record is not None:
        router = None
        if spec.router is not None:
            router_record = _applied(state, ResourceRef(ResourceKind.ROUTER, spec.router.name))
            if router_record is not None:
                router = RouterStatus(name=spec.router.name, id=router_record.resource_id)
        vpc = VpcStatus(name=network, id=vpc_record.resource_id, router=router)

    subnets = []
    for subnet in spec.subnets:
        record = _applied(state, ResourceRef(ResourceKind.SUBNET, subnet.name, parent=network))
        if record is not None:
            subnets.append(
                SubnetStatus(name=subnet.name, id=record.resource_id, purpose=subnet.purpose)
            )

    nat = None
    if spec.nat is not None:
        nat_record = _applied(state, ResourceRef(ResourceKind.NAT, spec.nat.name))
        if nat_record is not None:
            nat = NatStatus(name=spec.nat.name, id=nat_record.resource_id)

    networks = None
    if vpc is not None or subnets or nat is not None:
        networks = NetworksStatus(vpc=vpc, subnets=subnets or None, nat=nat)

    firewall_rules = []
    if spec.firewall_rules:
        group = security_group_name(spec)
        for rule in spec.firewall_rules:
            record = _applied(
                state, ResourceRef(ResourceKind.FIREWALL_RULE, rule.name, parent=group)
            )
            if record is not None:
                firewall_rules.append(FirewallRuleStatus(name=rule.name, id=record.resource_id))

    service_accounts = []
    for account in spec.service_accounts:
        record = _applied(state, ResourceRef(ResourceKind.SERVICE_ACCOUNT, account.name))
        if record is not None:
            service_accounts.append(
                ServiceAccountStatus(
                    name=account.name,
                    id=record.resource_id,
                    client_id=record.outputs.get("clientId"),
                    principal_id=record.outputs.get("principalId"),
                )
            )

    return InfrastructureStatus(
        networks=networks,
        firewall_rules=firewall_rules or None,
        service_accounts=service_accounts or None,
    )
