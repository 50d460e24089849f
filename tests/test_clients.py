"""Tests for the ARM-backed resource client."""

from __future__ import annotations

import pytest
from azure_mock import MockResource, MockResourceClient, MockResourceState, make_http_error
from builders import INSTANCE_ID, RESOURCE_GROUP, SUBSCRIPTION_ID, arm_id

from infraflow.clients import (
    IAM_KINDS,
    NETWORK_KINDS,
    OWNERSHIP_TAG,
    ArmResourceClient,
    ProviderClients,
    ResourceKind,
    ResourceRef,
    normalize_location,
    ref_from_resource_id,
    role_assignment_name,
    same_resource_id,
)
from infraflow.errors import PermanentProviderError, TransientProviderError

NETWORK = ResourceRef(ResourceKind.NETWORK, "net-1")
SUBNET = ResourceRef(ResourceKind.SUBNET, "nodes-a", parent="net-1")


@pytest.fixture
def state() -> MockResourceState:
    return MockResourceState()


@pytest.fixture
def client(state: MockResourceState) -> ArmResourceClient:
    return ArmResourceClient(
        MockResourceClient(state, SUBSCRIPTION_ID),  # type: ignore[arg-type]
        SUBSCRIPTION_ID,
        RESOURCE_GROUP,
        kinds=NETWORK_KINDS,
    )


class TestResourceRef:
    """Tests for logical resource references."""

    def test_key_without_parent(self) -> None:
        """Test the key of a top-level resource."""
        assert NETWORK.key == "network/net-1"

    def test_key_with_parent(self) -> None:
        """Test that child keys include the parent name."""
        assert SUBNET.key == "subnet/net-1/nodes-a"
        assert str(SUBNET) == SUBNET.key


class TestResourceIds:
    """Tests for resource id helpers."""

    def test_resource_id(self, client: ArmResourceClient) -> None:
        """Test building ARM ids from logical references."""
        assert client.resource_id(NETWORK) == arm_id("Microsoft.Network/virtualNetworks/net-1")
        assert client.resource_id(SUBNET) == arm_id(
            "Microsoft.Network/virtualNetworks/net-1/subnets/nodes-a"
        )

    def test_role_assignment_name_is_deterministic(self) -> None:
        """Test that role assignment GUIDs are stable per (account, role)."""
        ref = ResourceRef(ResourceKind.ROLE_BINDING, "role-a", parent="sa-1")
        other = ResourceRef(ResourceKind.ROLE_BINDING, "role-b", parent="sa-1")

        first = role_assignment_name(SUBSCRIPTION_ID, RESOURCE_GROUP, ref)

        assert first == role_assignment_name(SUBSCRIPTION_ID, RESOURCE_GROUP, ref)
        assert first != role_assignment_name(SUBSCRIPTION_ID, RESOURCE_GROUP, other)
        assert first != role_assignment_name(SUBSCRIPTION_ID, "rg-other", ref)

    def test_ref_from_resource_id(self) -> None:
        """Test parsing references back out of ARM ids."""
        assert ref_from_resource_id(arm_id("Microsoft.Network/natGateways/nat-1")) == ResourceRef(
            ResourceKind.NAT, "nat-1"
        )
        assert (
            ref_from_resource_id(
                arm_id("Microsoft.Network/networkSecurityGroups/nsg/securityRules/r1")
            )
            == ResourceRef(ResourceKind.FIREWALL_RULE, "r1", parent="nsg")
        )

    def test_ref_from_unmanaged_id(self) -> None:
        """Test that unmanaged types and junk yield None."""
        assert ref_from_resource_id(arm_id("Microsoft.Compute/virtualMachines/vm-1")) is None
        assert ref_from_resource_id("not-an-id") is None
        assert ref_from_resource_id(None) is None

    def test_same_resource_id_ignores_case(self) -> None:
        """Test case-insensitive id comparison."""
        assert same_resource_id("/A/b", "/a/B")
        assert not same_resource_id("/a", None)
        assert same_resource_id(None, None)

    def test_normalize_location(self) -> None:
        """Test location normalization."""
        assert normalize_location("West Europe") == "westeurope"
        assert normalize_location(None) is None


class TestArmResourceClient:
    """Tests for ArmResourceClient against the ARM mock."""

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, client: ArmResourceClient) -> None:
        """Test that a 404 on get means absent."""
        assert await client.get(NETWORK) is None

    @pytest.mark.asyncio
    async def test_create_and_get(
        self, client: ArmResourceClient, state: MockResourceState
    ) -> None:
        """Test that create puts the body and get reads it back."""
        created = await client.create(
            NETWORK,
            {
                "location": "westeurope",
                "tags": {OWNERSHIP_TAG: INSTANCE_ID},
                "properties": {"addressSpace": {"addressPrefixes": ["10.0.0.0/16"]}},
            },
        )

        assert created.resource_id == client.resource_id(NETWORK)
        assert state.call_count("put") == 1

        observed = await client.get(NETWORK)

        assert observed is not None
        assert observed.location == "westeurope"
        assert observed.tags == {OWNERSHIP_TAG: INSTANCE_ID}
        assert observed.properties["addressSpace"] == {"addressPrefixes": ["10.0.0.0/16"]}

    @pytest.mark.asyncio
    async def test_child_without_parent_is_permanent_failure(
        self, client: ArmResourceClient
    ) -> None:
        """Test that creating a subnet of a missing network fails permanently."""
        with pytest.raises(PermanentProviderError) as exc_info:
            await client.create(SUBNET, {"properties": {"addressPrefix": "10.0.1.0/24"}})

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_missing_is_noop(
        self, client: ArmResourceClient, state: MockResourceState
    ) -> None:
        """Test that deleting an absent resource succeeds."""
        await client.delete(NETWORK)

        assert state.call_count("delete") == 1

    @pytest.mark.asyncio
    async def test_delete_in_use_fails(
        self, client: ArmResourceClient, state: MockResourceState
    ) -> None:
        """Test that the provider's in-use refusal surfaces as permanent failure."""
        nat_id = arm_id("Microsoft.Network/natGateways/nat-1")
        state.put_resource(MockResource.from_id(nat_id))
        state.put_resource(MockResource.from_id(arm_id("Microsoft.Network/virtualNetworks/net-1")))
        state.put_resource(
            MockResource.from_id(
                arm_id("Microsoft.Network/virtualNetworks/net-1/subnets/nodes-a"),
                properties={"natGateway": {"id": nat_id}},
            )
        )

        with pytest.raises(PermanentProviderError) as exc_info:
            await client.delete(ResourceRef(ResourceKind.NAT, "nat-1"))

        assert "InUseResourceCannotBeDeleted" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_throttling_is_transient(
        self, client: ArmResourceClient, state: MockResourceState
    ) -> None:
        """Test that throttled calls are classified transient."""
        state.inject_error("get", make_http_error(429, "TooManyRequests", "slow down"))

        with pytest.raises(TransientProviderError):
            await client.get(NETWORK)

    @pytest.mark.asyncio
    async def test_list_owned_filters_by_tag(
        self, client: ArmResourceClient, state: MockResourceState
    ) -> None:
        """Test that only resources tagged for the instance are listed."""
        state.put_resource(
            MockResource.from_id(
                arm_id("Microsoft.Network/virtualNetworks/net-1"),
                tags={OWNERSHIP_TAG: INSTANCE_ID},
            )
        )
        state.put_resource(
            MockResource.from_id(
                arm_id("Microsoft.Network/virtualNetworks/net-2"),
                tags={OWNERSHIP_TAG: "other-inst"},
            )
        )
        state.put_resource(MockResource.from_id(arm_id("Microsoft.Network/routeTables/rt-1")))

        owned = await client.list_owned(INSTANCE_ID)

        assert [resource.ref for resource in owned] == [NETWORK]

    @pytest.mark.asyncio
    async def test_list_owned_skips_other_services(
        self, client: ArmResourceClient, state: MockResourceState
    ) -> None:
        """Test that a network client does not report identities."""
        state.put_resource(
            MockResource.from_id(
                arm_id("Microsoft.ManagedIdentity/userAssignedIdentities/sa-1"),
                tags={OWNERSHIP_TAG: INSTANCE_ID},
            )
        )

        assert await client.list_owned(INSTANCE_ID) == []

    @pytest.mark.asyncio
    async def test_rejects_foreign_kind(self, client: ArmResourceClient) -> None:
        """Test that a client only serves its own kinds."""
        with pytest.raises(ValueError):
            await client.get(ResourceRef(ResourceKind.SERVICE_ACCOUNT, "sa-1"))


class TestProviderClients:
    """Tests for kind-based client selection."""

    def test_for_kind(self, state: MockResourceState) -> None:
        """Test that each kind is served by its provider service client."""
        arm = MockResourceClient(state, SUBSCRIPTION_ID)
        network = ArmResourceClient(
            arm, SUBSCRIPTION_ID, RESOURCE_GROUP, kinds=NETWORK_KINDS  # type: ignore[arg-type]
        )
        iam = ArmResourceClient(
            arm, SUBSCRIPTION_ID, RESOURCE_GROUP, kinds=IAM_KINDS  # type: ignore[arg-type]
        )
        clients = ProviderClients(network=network, iam=iam)

        assert clients.for_kind(ResourceKind.FIREWALL_RULE) is network
        assert clients.for_kind(ResourceKind.ROLE_BINDING) is iam
        assert clients.all() == (network, iam)
