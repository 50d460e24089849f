"""Tests for kind-specific resource handlers."""

from __future__ import annotations

import asyncio
import copy
from unittest.mock import AsyncMock

import pytest
from builders import CONTRIBUTOR_ROLE, FULL_SPEC, INSTANCE_ID, SUBSCRIPTION_ID, make_spec

from infraflow.clients import (
    OWNERSHIP_TAG,
    ObservedResource,
    ProviderClients,
    ResourceKind,
    ResourceRef,
)
from infraflow.errors import PermanentProviderError, SpecValidationError
from infraflow.handlers import (
    KIND_HANDLERS,
    ResolveContext,
    attached_subnets,
    desired_resources,
    merge_properties,
    ownership_description,
    security_group_name,
    set_subnet_association,
)

NETWORK = ResourceRef(ResourceKind.NETWORK, "net-1")
NODES = ResourceRef(ResourceKind.SUBNET, "nodes-a", parent="net-1")


def context(spec_overrides: dict | None = None, outputs: dict | None = None) -> ResolveContext:
    spec = make_spec(FULL_SPEC, **(spec_overrides or {}))
    return ResolveContext(
        instance_id=INSTANCE_ID,
        subscription_id=SUBSCRIPTION_ID,
        spec=spec,
        outputs=outputs or {},
    )


class TestDesiredResources:
    """Tests for desired resource enumeration."""

    def test_full_spec(self) -> None:
        """Test that every spec entry yields one resource, in kind order."""
        keys = [ref.key for ref, _ in desired_resources(make_spec(FULL_SPEC))]

        assert keys == [
            "network/net-1",
            "subnet/net-1/nodes-a",
            "subnet/net-1/internal-a",
            "router/rt-1",
            "nat/nat-1",
            "security_group/net-1-nsg",
            "firewall_rule/net-1-nsg/allow-https",
            "service_account/sa-nodes",
            f"role_binding/sa-nodes/{CONTRIBUTOR_ROLE}",
        ]

    def test_minimal_spec(self) -> None:
        """Test that a lone network yields exactly one resource."""
        assert [ref.key for ref, _ in desired_resources(make_spec())] == ["network/net-1"]

    def test_no_spec(self) -> None:
        """Test that nothing is desired without a spec."""
        assert desired_resources(None) == []

    def test_security_group_only_with_rules(self) -> None:
        """Test that the security group exists only when rules do."""
        kinds = {ref.kind for ref, _ in desired_resources(make_spec(FULL_SPEC, firewallRules=[]))}

        assert ResourceKind.SECURITY_GROUP not in kinds
        assert security_group_name(make_spec()) == "net-1-nsg"


class TestDependencies:
    """Tests for per-resource dependencies."""

    def _deps(self, ref: ResourceRef, **overrides: object) -> set[str]:
        spec = make_spec(FULL_SPEC, **overrides)
        item = dict((r.key, i) for r, i in desired_resources(spec))[ref.key]
        return {dep.key for dep in KIND_HANDLERS[ref.kind].dependencies(ref, item, spec)}

    def test_subnet_depends_on_network(self) -> None:
        """Test the subnet -> network edge."""
        assert self._deps(NODES) == {"network/net-1"}

    def test_nat_depends_on_router_and_served_subnets(self) -> None:
        """Test the nat -> router and served subnet edges."""
        assert self._deps(ResourceRef(ResourceKind.NAT, "nat-1")) == {
            "router/rt-1",
            "subnet/net-1/nodes-a",
        }

    def test_firewall_rule_dependencies(self) -> None:
        """Test that rules wait for network, group, nat and target subnet."""
        rule = ResourceRef(ResourceKind.FIREWALL_RULE, "allow-https", parent="net-1-nsg")

        assert self._deps(rule) == {
            "network/net-1",
            "security_group/net-1-nsg",
            "nat/nat-1",
            "subnet/net-1/nodes-a",
        }

    def test_role_binding_depends_on_account(self) -> None:
        """Test the role binding -> service account edge."""
        ref = ResourceRef(ResourceKind.ROLE_BINDING, CONTRIBUTOR_ROLE, parent="sa-nodes")

        assert self._deps(ref) == {"service_account/sa-nodes"}


class TestNetworkHandler:
    """Tests for the network handler."""

    def test_desired_fields_carry_ownership_tag(self) -> None:
        """Test that desired tags merge spec tags with the ownership marker."""
        ctx = context()
        handler = KIND_HANDLERS[ResourceKind.NETWORK]

        fields = handler.desired_fields(NETWORK, ctx.spec.network, ctx)

        assert fields["tags"] == {"env": "test", OWNERSHIP_TAG: INSTANCE_ID}
        assert fields["location"] == "westeurope"
        assert fields["addressPrefixes"] == ["10.0.0.0/16"]

    def test_rendering_without_spec_fails(self) -> None:
        """Test that desired state cannot be rendered from a context without a spec."""
        ctx = ResolveContext(instance_id=INSTANCE_ID, subscription_id=SUBSCRIPTION_ID)
        handler = KIND_HANDLERS[ResourceKind.NETWORK]
        network = make_spec().network

        with pytest.raises(SpecValidationError):
            handler.desired_fields(NETWORK, network, ctx)
        with pytest.raises(SpecValidationError):
            handler.build_body(NETWORK, network, ctx, None)

    def test_update_body_keeps_observed_subnets(self) -> None:
        """Test that updates keep properties the spec does not manage."""
        ctx = context()
        handler = KIND_HANDLERS[ResourceKind.NETWORK]
        current = ObservedResource(
            ref=NETWORK,
            resource_id="/net-1",
            location="westeurope",
            tags={"owner-team": "platform"},
            properties={
                "addressSpace": {"addressPrefixes": ["10.1.0.0/16"]},
                "subnets": [{"name": "nodes-a"}],
            },
        )

        body = handler.build_body(NETWORK, ctx.spec.network, ctx, current)

        assert body["properties"]["addressSpace"] == {"addressPrefixes": ["10.0.0.0/16"]}
        assert body["properties"]["subnets"] == [{"name": "nodes-a"}]
        assert body["tags"]["owner-team"] == "platform"
        assert body["tags"][OWNERSHIP_TAG] == INSTANCE_ID

    def test_children_are_subnets(self) -> None:
        """Test that embedded subnets are expanded into child resources."""
        handler = KIND_HANDLERS[ResourceKind.NETWORK]
        observed = ObservedResource(
            ref=NETWORK,
            resource_id="/net-1",
            properties={
                "subnets": [
                    {"id": "/net-1/subnets/a", "name": "a", "properties": {"addressPrefix": "x"}}
                ]
            },
        )

        children = handler.children(observed)

        assert [child.ref.key for child in children] == ["subnet/net-1/a"]
        assert children[0].properties == {"addressPrefix": "x"}

    def test_owner_from_tag(self) -> None:
        """Test that ownership is read from the tag."""
        handler = KIND_HANDLERS[ResourceKind.NETWORK]
        observed = ObservedResource(ref=NETWORK, resource_id="/x", tags={OWNERSHIP_TAG: "a"})

        assert handler.owner_of(observed) == "a"


class TestFingerprint:
    """Tests for desired-state fingerprints."""

    def test_stable_for_same_spec(self) -> None:
        """Test that equal specs produce equal fingerprints."""
        spec = make_spec(FULL_SPEC)
        handler = KIND_HANDLERS[ResourceKind.NETWORK]

        assert handler.fingerprint(NETWORK, spec.network, spec) == handler.fingerprint(
            NETWORK, make_spec(FULL_SPEC).network, make_spec(FULL_SPEC)
        )

    def test_changes_with_tags(self) -> None:
        """Test that tag changes alter tagged resources' fingerprints."""
        handler = KIND_HANDLERS[ResourceKind.NETWORK]
        spec = make_spec(FULL_SPEC)
        retagged = make_spec(FULL_SPEC, tags={"env": "prod"})

        assert handler.fingerprint(NETWORK, spec.network, spec) != handler.fingerprint(
            NETWORK, retagged.network, retagged
        )

    def test_subnet_ignores_tags(self) -> None:
        """Test that untaggable resources ignore tag changes."""
        handler = KIND_HANDLERS[ResourceKind.SUBNET]
        spec = make_spec(FULL_SPEC)
        retagged = make_spec(FULL_SPEC, tags={"env": "prod"})

        assert handler.fingerprint(NODES, spec.subnets[0], spec) == handler.fingerprint(
            NODES, retagged.subnets[0], retagged
        )

    def test_service_account_ignores_roles(self) -> None:
        """Test that adding a role does not reset the identity step."""
        handler = KIND_HANDLERS[ResourceKind.SERVICE_ACCOUNT]
        ref = ResourceRef(ResourceKind.SERVICE_ACCOUNT, "sa-nodes")
        spec = make_spec(FULL_SPEC)
        more_roles = make_spec(
            FULL_SPEC,
            serviceAccounts=[
                {"name": "sa-nodes", "roles": [CONTRIBUTOR_ROLE, "acdd72a7-3385-48ef-bd42-f606fba81ae7"]}
            ],
        )

        assert handler.fingerprint(ref, spec.service_accounts[0], spec) == handler.fingerprint(
            ref, more_roles.service_accounts[0], more_roles
        )


class TestFirewallRuleHandler:
    """Tests for the firewall rule handler."""

    def test_rule_targets_subnet_cidr(self) -> None:
        """Test that a target subnet becomes the destination prefix."""
        ctx = context()
        rule = ctx.spec.firewall_rules[0]
        ref = ResourceRef(ResourceKind.FIREWALL_RULE, rule.name, parent="net-1-nsg")

        body = KIND_HANDLERS[ResourceKind.FIREWALL_RULE].build_body(ref, rule, ctx, None)

        assert body["properties"] == {
            "direction": "Inbound",
            "access": "Allow",
            "priority": 200,
            "protocol": "Tcp",
            "sourcePortRange": "*",
            "destinationAddressPrefix": "10.0.1.0/24",
            "sourceAddressPrefix": "*",
            "destinationPortRange": "443",
        }

    def test_multiple_ports_use_plural_form(self) -> None:
        """Test that several ports are sent as a list."""
        ctx = context(
            {"firewallRules": [{"name": "web", "priority": 300, "ports": ["80", "443"]}]}
        )
        rule = ctx.spec.firewall_rules[0]
        ref = ResourceRef(ResourceKind.FIREWALL_RULE, rule.name, parent="net-1-nsg")

        body = KIND_HANDLERS[ResourceKind.FIREWALL_RULE].build_body(ref, rule, ctx, None)

        assert body["properties"]["destinationPortRanges"] == ["80", "443"]
        assert body["properties"]["destinationAddressPrefix"] == "*"

    def test_singular_and_plural_compare_equal(self) -> None:
        """Test that observed singular fields match desired lists."""
        ctx = context()
        rule = ctx.spec.firewall_rules[0]
        ref = ResourceRef(ResourceKind.FIREWALL_RULE, rule.name, parent="net-1-nsg")
        handler = KIND_HANDLERS[ResourceKind.FIREWALL_RULE]
        observed = ObservedResource(
            ref=ref,
            resource_id="/rule",
            properties={
                **handler.build_body(ref, rule, ctx, None)["properties"],
                "provisioningState": "Succeeded",
            },
        )

        assert handler.observed_fields(observed) == handler.desired_fields(ref, rule, ctx)


class TestRoleBindingHandler:
    """Tests for the role binding handler."""

    REF = ResourceRef(ResourceKind.ROLE_BINDING, CONTRIBUTOR_ROLE, parent="sa-nodes")

    def test_body_needs_principal(self) -> None:
        """Test that a binding cannot be built before its identity exists."""
        with pytest.raises(PermanentProviderError):
            KIND_HANDLERS[ResourceKind.ROLE_BINDING].build_body(
                self.REF, CONTRIBUTOR_ROLE, context(), None
            )

    def test_body_carries_ownership_description(self) -> None:
        """Test that the ownership marker lives in the description."""
        ctx = context(outputs={"service_account/sa-nodes": {"principalId": "p-1"}})

        body = KIND_HANDLERS[ResourceKind.ROLE_BINDING].build_body(
            self.REF, CONTRIBUTOR_ROLE, ctx, None
        )

        assert body["properties"]["principalId"] == "p-1"
        assert body["properties"]["description"] == ownership_description(INSTANCE_ID)
        assert body["properties"]["roleDefinitionId"].endswith(
            f"/roleDefinitions/{CONTRIBUTOR_ROLE}"
        )

    def test_owner_from_description(self) -> None:
        """Test reading ownership back from the description."""
        handler = KIND_HANDLERS[ResourceKind.ROLE_BINDING]
        owned = ObservedResource(
            ref=self.REF,
            resource_id="/ra",
            properties={"description": ownership_description("inst-9")},
        )
        foreign = ObservedResource(ref=self.REF, resource_id="/ra", properties={})

        assert handler.owner_of(owned) == "inst-9"
        assert handler.owner_of(foreign) is None


class TestSubnetAssociations:
    """Tests for subnet association helpers."""

    def test_merge_properties(self) -> None:
        """Test that nested dicts merge and scalars are replaced."""
        merged = merge_properties(
            {"a": {"x": 1, "y": 2}, "b": 1, "keep": True},
            {"a": {"y": 3}, "b": 2},
        )

        assert merged == {"a": {"x": 1, "y": 3}, "b": 2, "keep": True}

    def test_attached_subnets(self) -> None:
        """Test reading subnet back-references of a NAT gateway."""
        nat = ObservedResource(
            ref=ResourceRef(ResourceKind.NAT, "nat-1"),
            resource_id="/nat",
            properties={
                "subnets": [
                    {
                        "id": "/subscriptions/s/resourceGroups/rg/providers/"
                        "Microsoft.Network/virtualNetworks/net-1/subnets/nodes-a"
                    }
                ]
            },
        )

        assert attached_subnets(nat) == [NODES]

    @pytest.mark.asyncio
    async def test_set_association_skips_matching(self) -> None:
        """Test that an already matching association is not rewritten."""
        subnet_client = AsyncMock()
        subnet_client.get.return_value = ObservedResource(
            ref=NODES,
            resource_id="/subnet",
            properties={"addressPrefix": "10.0.1.0/24", "natGateway": {"id": "/NAT"}},
        )
        clients = ProviderClients(network=subnet_client, iam=AsyncMock())

        changed = await set_subnet_association(clients, NODES, "natGateway", "/nat")

        assert changed is False
        subnet_client.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_set_association_detaches(self) -> None:
        """Test that None removes the association and keeps other properties."""
        subnet_client = AsyncMock()
        subnet_client.get.return_value = ObservedResource(
            ref=NODES,
            resource_id="/subnet",
            properties={"addressPrefix": "10.0.1.0/24", "natGateway": {"id": "/nat"}},
        )
        clients = ProviderClients(network=subnet_client, iam=AsyncMock())

        changed = await set_subnet_association(clients, NODES, "natGateway", None)

        assert changed is True
        subnet_client.update.assert_awaited_once_with(
            NODES, {"properties": {"addressPrefix": "10.0.1.0/24"}}
        )

    @pytest.mark.asyncio
    async def test_concurrent_detaches_keep_each_other(self) -> None:
        """Test that two steps detaching from one subnet do not undo each other."""
        stored = {
            "addressPrefix": "10.0.1.0/24",
            "natGateway": {"id": "/nat"},
            "networkSecurityGroup": {"id": "/nsg"},
        }

        class SlowSubnetClient:
            async def get(self, ref: ResourceRef) -> ObservedResource:
                snapshot = copy.deepcopy(stored)
                await asyncio.sleep(0.01)
                return ObservedResource(ref=ref, resource_id="/subnet", properties=snapshot)

            async def update(self, ref: ResourceRef, body: dict) -> None:
                await asyncio.sleep(0.01)
                stored.clear()
                stored.update(body["properties"])

        clients = ProviderClients(network=SlowSubnetClient(), iam=AsyncMock())

        await asyncio.gather(
            set_subnet_association(clients, NODES, "natGateway", None),
            set_subnet_association(clients, NODES, "networkSecurityGroup", None),
        )

        assert stored == {"addressPrefix": "10.0.1.0/24"}
