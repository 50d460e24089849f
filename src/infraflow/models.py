"""Pydantic models for the infrastructure spec with validation.

These models provide:
1. Type-safe YAML parsing
2. Field-level validation at the boundary (fail fast, fail loudly)

Cross-references between entries (a NAT serving an unknown subnet, a
firewall rule targeting an undefined subnet) are checked when the
dependency graph is built, see graph.validate_references().
"""

from __future__ import annotations

import ipaddress
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator

from .config import MAX_RESOURCE_GROUP_NAME_LENGTH

# Resource names end up in ARM resource IDs and must be stable
VALID_NAME_PATTERN = r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"
VALID_ROLE_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_PORT_PATTERN = r"^(\*|\d{1,5}(-\d{1,5})?)$"

ResourceName = Annotated[str, Field(pattern=VALID_NAME_PATTERN)]


def _validate_cidr(value: str) -> str:
    try:
        ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"invalid CIDR {value!r}: {e}") from e
    return value


class SubnetPurpose(str, Enum):
    """Role of a subnet inside the cluster network."""

    NODES = "nodes"
    INTERNAL = "internal"


class FirewallDirection(str, Enum):
    """Traffic direction of a firewall rule."""

    INBOUND = "Inbound"
    OUTBOUND = "Outbound"


class FirewallAccess(str, Enum):
    """Whether matching traffic is allowed or denied."""

    ALLOW = "Allow"
    DENY = "Deny"


class NetworkConfig(BaseModel):
    """Virtual network configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: ResourceName
    address_space: list[str] = Field(alias="addressSpace", min_length=1)

    @field_validator("address_space")
    @classmethod
    def validate_address_space(cls, v: list[str]) -> list[str]:
        for cidr in v:
            _validate_cidr(cidr)
        return v


class SubnetConfig(BaseModel):
    """Subnet configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: ResourceName
    cidr: str
    purpose: SubnetPurpose = SubnetPurpose.NODES

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)


class RouterConfig(BaseModel):
    """Route table configuration."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: ResourceName
    disable_bgp_route_propagation: bool = Field(False, alias="disableBgpRoutePropagation")


class NatConfig(BaseModel):
    """NAT gateway configuration.

    An empty ``subnets`` list means every subnet with purpose ``nodes``.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: ResourceName
    idle_timeout_minutes: Annotated[int, Field(ge=4, le=120, alias="idleTimeoutMinutes")] = 4
    subnets: list[str] = Field(default_factory=list)


class FirewallRuleConfig(BaseModel):
    """Firewall rule intent, realized as a network security rule."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: ResourceName
    direction: FirewallDirection = FirewallDirection.INBOUND
    access: FirewallAccess = FirewallAccess.ALLOW
    priority: Annotated[int, Field(ge=100, le=4096)]
    protocol: str = "Tcp"
    ports: list[str] = Field(default_factory=lambda: ["*"])
    source_ranges: list[str] = Field(default_factory=lambda: ["*"], alias="sourceRanges")
    target_subnet: str | None = Field(None, alias="targetSubnet")

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        valid_protocols = {"Tcp", "Udp", "Icmp", "*"}
        if v not in valid_protocols:
            raise ValueError(f"protocol must be one of {valid_protocols}")
        return v

    @field_validator("ports")
    @classmethod
    def validate_ports(cls, v: list[str]) -> list[str]:
        import re

        if not v:
            raise ValueError("ports cannot be empty, use ['*'] for any port")
        for port in v:
            if not re.match(VALID_PORT_PATTERN, port):
                raise ValueError(f"invalid port or port range: {port!r}")
        return v

    @field_validator("source_ranges")
    @classmethod
    def validate_source_ranges(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("sourceRanges cannot be empty, use ['*'] for any source")
        for source in v:
            if source != "*":
                _validate_cidr(source)
        return v


class ServiceAccountConfig(BaseModel):
    """User-assigned identity and the roles it is granted on the resource group."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: ResourceName
    roles: list[str] = Field(default_factory=list)

    @field_validator("roles")
    @classmethod
    def validate_roles(cls, v: list[str]) -> list[str]:
        import re

        normalized = [role.lower() for role in v]
        for role in normalized:
            if not re.match(VALID_ROLE_ID_PATTERN, role):
                raise ValueError(f"role must be a role definition GUID: {role!r}")
        return normalized


class InfrastructureSpec(BaseModel):
    """Desired infrastructure of one cluster instance.

    Immutable input owned by the caller; the reconciler never mutates it.
    """

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    region: Annotated[str, Field(min_length=1)]
    resource_group: Annotated[
        str,
        Field(min_length=1, max_length=MAX_RESOURCE_GROUP_NAME_LENGTH, alias="resourceGroup"),
    ]
    network: NetworkConfig
    subnets: list[SubnetConfig] = Field(default_factory=list)
    router: RouterConfig | None = None
    nat: NatConfig | None = None
    firewall_rules: list[FirewallRuleConfig] = Field(default_factory=list, alias="firewallRules")
    service_accounts: list[ServiceAccountConfig] = Field(
        default_factory=list, alias="serviceAccounts"
    )
    tags: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    @field_validator("region")
    @classmethod
    def normalize_region(cls, v: str) -> str:
        return v.replace(" ", "").lower()

    def subnet(self, name: str) -> SubnetConfig | None:
        """Look up a subnet by name."""
        for subnet in self.subnets:
            if subnet.name == name:
                return subnet
        return None

    def nat_subnets(self) -> list[SubnetConfig]:
        """Subnets served by the NAT gateway, in spec order."""
        if self.nat is None:
            return []
        if not self.nat.subnets:
            return [s for s in self.subnets if s.purpose == SubnetPurpose.NODES]
        return [s for s in self.subnets if s.name in self.nat.subnets]
