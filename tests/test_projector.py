"""Tests for status projection."""

from __future__ import annotations

from builders import CONTRIBUTOR_ROLE, FULL_SPEC, INSTANCE_ID, make_spec

from infraflow.clients import ResourceKind, ResourceRef
from infraflow.projector import STATUS_API_VERSION, STATUS_KIND, project
from infraflow.state import FlowState, StepAction, StepRecord, StepStatus


def applied(
    kind: ResourceKind,
    name: str,
    parent: str | None = None,
    *,
    status: StepStatus = StepStatus.SUCCEEDED,
    action: StepAction = StepAction.APPLY,
    outputs: dict[str, str] | None = None,
) -> StepRecord:
    return StepRecord(
        kind=kind,
        name=name,
        parent=parent,
        status=status,
        action=action,
        resource_id=f"/ids/{name}",
        outputs=outputs or {},
    )


def state_with(*records: StepRecord) -> FlowState:
    return FlowState(
        instance_id=INSTANCE_ID,
        steps={record.ref.key: record for record in records},
    )


def full_state() -> FlowState:
    return state_with(
        applied(ResourceKind.NETWORK, "net-1"),
        applied(ResourceKind.SUBNET, "nodes-a", "net-1"),
        applied(ResourceKind.SUBNET, "internal-a", "net-1"),
        applied(ResourceKind.ROUTER, "rt-1"),
        applied(ResourceKind.NAT, "nat-1"),
        applied(ResourceKind.SECURITY_GROUP, "net-1-nsg"),
        applied(ResourceKind.FIREWALL_RULE, "allow-https", "net-1-nsg"),
        applied(
            ResourceKind.SERVICE_ACCOUNT,
            "sa-nodes",
            outputs={"clientId": "client-1", "principalId": "principal-1"},
        ),
        applied(ResourceKind.ROLE_BINDING, CONTRIBUTOR_ROLE, "sa-nodes"),
    )


class TestProject:
    """Tests for project()."""

    def test_no_state_is_empty(self) -> None:
        """Test that nothing applied yields only the header."""
        document = project(None, make_spec(FULL_SPEC)).to_document()

        assert document == {"apiVersion": STATUS_API_VERSION, "kind": STATUS_KIND}

    def test_minimal_network(self) -> None:
        """Test the status of a network without optional pieces."""
        state = state_with(applied(ResourceKind.NETWORK, "net-1"))

        document = project(state, make_spec()).to_document()

        assert document["networks"] == {"vpc": {"name": "net-1", "id": "/ids/net-1"}}
        assert "firewallRules" not in document
        assert "serviceAccounts" not in document

    def test_full_status(self) -> None:
        """Test every section of a fully applied spec."""
        document = project(full_state(), make_spec(FULL_SPEC)).to_document()

        networks = document["networks"]
        assert networks["vpc"] == {
            "name": "net-1",
            "id": "/ids/net-1",
            "router": {"name": "rt-1", "id": "/ids/rt-1"},
        }
        assert networks["subnets"] == [
            {"name": "nodes-a", "id": "/ids/nodes-a", "purpose": "nodes"},
            {"name": "internal-a", "id": "/ids/internal-a", "purpose": "internal"},
        ]
        assert networks["nat"] == {"name": "nat-1", "id": "/ids/nat-1"}
        assert document["firewallRules"] == [{"name": "allow-https", "id": "/ids/allow-https"}]
        assert document["serviceAccounts"] == [
            {
                "name": "sa-nodes",
                "id": "/ids/sa-nodes",
                "clientId": "client-1",
                "principalId": "principal-1",
            }
        ]

    def test_uncreated_steps_are_omitted(self) -> None:
        """Test that resources without a recorded id do not appear."""
        state = full_state()
        state.steps["nat/nat-1"].status = StepStatus.FAILED
        state.steps["nat/nat-1"].resource_id = None
        state.steps["subnet/net-1/internal-a"].status = StepStatus.PENDING
        state.steps["subnet/net-1/internal-a"].resource_id = None

        document = project(state, make_spec(FULL_SPEC)).to_document()

        assert "nat" not in document["networks"]
        assert [s["name"] for s in document["networks"]["subnets"]] == ["nodes-a"]

    def test_failed_update_keeps_known_id(self) -> None:
        """Test that an existing resource whose update failed keeps its last id."""
        state = full_state()
        state.steps["network/net-1"].status = StepStatus.FAILED
        state.steps["service_account/sa-nodes"].status = StepStatus.PENDING

        document = project(state, make_spec(FULL_SPEC)).to_document()

        assert document["networks"]["vpc"]["id"] == "/ids/net-1"
        assert document["serviceAccounts"][0]["clientId"] == "client-1"

    def test_destroying_resources_are_omitted(self) -> None:
        """Test that records being destroyed are not reported."""
        state = full_state()
        state.steps["router/rt-1"].action = StepAction.DESTROY

        document = project(state, make_spec(FULL_SPEC)).to_document()

        assert "router" not in document["networks"]["vpc"]

    def test_subnets_without_network(self) -> None:
        """Test that subnets are reported even when the network record is missing."""
        state = state_with(applied(ResourceKind.SUBNET, "nodes-a", "net-1"))

        document = project(state, make_spec(FULL_SPEC)).to_document()

        assert "vpc" not in document["networks"]
        assert document["networks"]["subnets"][0]["name"] == "nodes-a"

    def test_records_outside_spec_are_ignored(self) -> None:
        """Test that only resources named by the spec appear."""
        state = full_state()

        document = project(state, make_spec()).to_document()

        assert set(document) == {"apiVersion", "kind", "networks"}
        assert set(document["networks"]) == {"vpc"}

    def test_is_pure(self) -> None:
        """Test that projecting twice gives the same result and leaves state alone."""
        state = full_state()
        before = state.to_document()

        first = project(state, make_spec(FULL_SPEC))
        second = project(state, make_spec(FULL_SPEC))

        assert first == second
        assert state.to_document() == before
