"""Provider client abstraction.

The reconciler core depends only on the ResourceClient contract: async
get/create/update/delete keyed by a deterministic logical name, plus a
listing of everything carrying the instance's ownership marker.

ArmResourceClient implements the contract on top of the generic
Azure Resource Manager ``resources`` operations (by-id get, put and delete),
so one implementation serves every resource kind. Each provider service
(network, iam) gets its own client instance restricted to its kinds.

SECURITY: Timeouts are enforced on all Azure API calls to prevent indefinite hangs.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .config import DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS, Config
from .errors import TransientProviderError, classify_provider_error
from .security import get_managed_identity_credential

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Tag carrying the owning instance id on every taggable resource
OWNERSHIP_TAG = "infraflow-instance"

NETWORK_API_VERSION = "2023-09-01"
IDENTITY_API_VERSION = "2023-01-31"
AUTHORIZATION_API_VERSION = "2022-04-01"


class ResourceKind(str, Enum):
    """Resource kinds managed by the reconciler."""

    NETWORK = "network"
    SUBNET = "subnet"
    ROUTER = "router"
    NAT = "nat"
    SECURITY_GROUP = "security_group"
    FIREWALL_RULE = "firewall_rule"
    SERVICE_ACCOUNT = "service_account"
    ROLE_BINDING = "role_binding"


class ProviderService(str, Enum):
    """Provider service a resource kind belongs to."""

    NETWORK = "network"
    IAM = "iam"


SERVICE_BY_KIND: dict[ResourceKind, ProviderService] = {
    ResourceKind.NETWORK: ProviderService.NETWORK,
    ResourceKind.SUBNET: ProviderService.NETWORK,
    ResourceKind.ROUTER: ProviderService.NETWORK,
    ResourceKind.NAT: ProviderService.NETWORK,
    ResourceKind.SECURITY_GROUP: ProviderService.NETWORK,
    ResourceKind.FIREWALL_RULE: ProviderService.NETWORK,
    ResourceKind.SERVICE_ACCOUNT: ProviderService.IAM,
    ResourceKind.ROLE_BINDING: ProviderService.IAM,
}

NETWORK_KINDS = frozenset(k for k, s in SERVICE_BY_KIND.items() if s is ProviderService.NETWORK)
IAM_KINDS = frozenset(k for k, s in SERVICE_BY_KIND.items() if s is ProviderService.IAM)

# Path below /subscriptions/{sub}/resourceGroups/{rg}/providers/ and API version
RESOURCE_PATHS: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.NETWORK: ("Microsoft.Network/virtualNetworks/{name}", NETWORK_API_VERSION),
    ResourceKind.SUBNET: (
        "Microsoft.Network/virtualNetworks/{parent}/subnets/{name}",
        NETWORK_API_VERSION,
    ),
    ResourceKind.ROUTER: ("Microsoft.Network/routeTables/{name}", NETWORK_API_VERSION),
    ResourceKind.NAT: ("Microsoft.Network/natGateways/{name}", NETWORK_API_VERSION),
    ResourceKind.SECURITY_GROUP: (
        "Microsoft.Network/networkSecurityGroups/{name}",
        NETWORK_API_VERSION,
    ),
    ResourceKind.FIREWALL_RULE: (
        "Microsoft.Network/networkSecurityGroups/{parent}/securityRules/{name}",
        NETWORK_API_VERSION,
    ),
    ResourceKind.SERVICE_ACCOUNT: (
        "Microsoft.ManagedIdentity/userAssignedIdentities/{name}",
        IDENTITY_API_VERSION,
    ),
    ResourceKind.ROLE_BINDING: (
        "Microsoft.Authorization/roleAssignments/{name}",
        AUTHORIZATION_API_VERSION,
    ),
}

# Lowercased ARM types of top-level resources that can be listed by tag
KIND_BY_ARM_TYPE: dict[str, ResourceKind] = {
    "microsoft.network/virtualnetworks": ResourceKind.NETWORK,
    "microsoft.network/routetables": ResourceKind.ROUTER,
    "microsoft.network/natgateways": ResourceKind.NAT,
    "microsoft.network/networksecuritygroups": ResourceKind.SECURITY_GROUP,
    "microsoft.managedidentity/userassignedidentities": ResourceKind.SERVICE_ACCOUNT,
}

CHILD_KIND_BY_ARM_TYPE: dict[str, ResourceKind] = {
    "microsoft.network/virtualnetworks/subnets": ResourceKind.SUBNET,
    "microsoft.network/networksecuritygroups/securityrules": ResourceKind.FIREWALL_RULE,
}


@dataclass(frozen=True)
class ResourceRef:
    """Deterministic logical reference to a provider resource.

    Logical names are stable across reconciliations; the provider id is
    discovered or created.
    """

    kind: ResourceKind
    name: str
    parent: str | None = None

    @property
    def key(self) -> str:
        """Stable key used for step ids and state records."""
        if self.parent:
            return f"{self.kind.value}/{self.parent}/{self.name}"
        return f"{self.kind.value}/{self.name}"

    def __str__(self) -> str:
        return self.key


@dataclass
class ObservedResource:
    """Snapshot of one provider resource."""

    ref: ResourceRef
    resource_id: str
    location: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    owner: str | None = None


class ResourceClient(Protocol):
    """Capability contract for one provider service."""

    async def get(self, ref: ResourceRef) -> ObservedResource | None: ...

    async def create(self, ref: ResourceRef, body: dict[str, Any]) -> ObservedResource: ...

    async def update(self, ref: ResourceRef, body: dict[str, Any]) -> ObservedResource: ...

    async def delete(self, ref: ResourceRef) -> None: ...

    async def list_owned(self, instance_id: str) -> list[ObservedResource]: ...


def normalize_location(location: str | None) -> str | None:
    """Normalize display names like 'West Europe' to 'westeurope'."""
    if not location:
        return None
    return location.replace(" ", "").lower()


def same_resource_id(left: str | None, right: str | None) -> bool:
    """ARM resource ids compare case-insensitively."""
    if not left or not right:
        return left == right
    return left.lower() == right.lower()


def ref_from_resource_id(resource_id: str | None) -> ResourceRef | None:
    """Derive a logical reference from an ARM resource id.

    Azure resource IDs follow the pattern:
    /subscriptions/{sub}/resourceGroups/{rg}/providers/{namespace}/{type}/{name}[/{child}/{name}]

    Args:
        resource_id: Azure resource ID.

    Returns:
        The reference, or None for ids of unmanaged types.
    """
    if not resource_id or "/providers/" not in resource_id:
        return None

    segments = resource_id.split("/providers/")[-1].strip("/").split("/")
    if len(segments) == 3:
        kind = KIND_BY_ARM_TYPE.get(f"{segments[0]}/{segments[1]}".lower())
        return ResourceRef(kind, segments[2]) if kind else None
    if len(segments) == 5:
        child_type = f"{segments[0]}/{segments[1]}/{segments[3]}".lower()
        kind = CHILD_KIND_BY_ARM_TYPE.get(child_type)
        return ResourceRef(kind, segments[4], parent=segments[2]) if kind else None
    return None


def role_assignment_name(subscription_id: str, resource_group: str, ref: ResourceRef) -> str:
    """Deterministic role assignment GUID for a (service account, role) pair."""
    seed = f"infraflow:{subscription_id}/{resource_group}/{ref.parent}/{ref.name}".lower()
    return str(uuid.uuid5(uuid.NAMESPACE_URL, seed))


class ArmResourceClient:
    """ResourceClient backed by generic ARM resource operations.

    Bound to one subscription and resource group. Every call runs in the
    default executor under a timeout; exceeding it is reported as a
    TransientProviderError. Azure SDK errors are translated with
    classify_provider_error().
    """

    def __init__(
        self,
        arm_client: ResourceManagementClient,
        subscription_id: str,
        resource_group: str,
        *,
        kinds: Iterable[ResourceKind],
        timeout_seconds: int = DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._arm = arm_client
        self._subscription_id = subscription_id
        self._resource_group = resource_group
        self._kinds = frozenset(kinds)
        self._timeout_seconds = timeout_seconds

    @property
    def kinds(self) -> frozenset[ResourceKind]:
        return self._kinds

    def resource_id(self, ref: ResourceRef) -> str:
        """Build the ARM resource id for a logical reference."""
        path, _ = RESOURCE_PATHS[ref.kind]
        name = ref.name
        if ref.kind is ResourceKind.ROLE_BINDING:
            name = role_assignment_name(self._subscription_id, self._resource_group, ref)
        return (
            f"/subscriptions/{self._subscription_id}"
            f"/resourceGroups/{self._resource_group}"
            f"/providers/{path.format(name=name, parent=ref.parent)}"
        )

    async def get(self, ref: ResourceRef) -> ObservedResource | None:
        self._check_kind(ref)
        resource_id = self.resource_id(ref)
        api_version = RESOURCE_PATHS[ref.kind][1]
        resource = await self._invoke(
            f"Get {ref}",
            lambda: self._arm.resources.get_by_id(resource_id, api_version),
            missing_ok=True,
        )
        if resource is None:
            return None
        return self._to_observed(ref, resource)

    async def create(self, ref: ResourceRef, body: dict[str, Any]) -> ObservedResource:
        return await self._put(f"Create {ref}", ref, body)

    async def update(self, ref: ResourceRef, body: dict[str, Any]) -> ObservedResource:
        return await self._put(f"Update {ref}", ref, body)

    async def delete(self, ref: ResourceRef) -> None:
        self._check_kind(ref)
        resource_id = self.resource_id(ref)
        api_version = RESOURCE_PATHS[ref.kind][1]
        await self._invoke(
            f"Delete {ref}",
            lambda: self._arm.resources.begin_delete_by_id(resource_id, api_version).result(),
            missing_ok=True,
        )

    async def list_owned(self, instance_id: str) -> list[ObservedResource]:
        """List top-level resources tagged with the instance's ownership marker.

        Child resources (subnets, security rules) and role assignments cannot
        carry tags; they are discovered through their parents or flow state.
        """
        tag_filter = f"tagName eq '{OWNERSHIP_TAG}' and tagValue eq '{instance_id}'"
        resources = await self._invoke(
            "List owned resources",
            lambda: list(
                self._arm.resources.list_by_resource_group(
                    self._resource_group, filter=tag_filter
                )
            ),
        )

        observed: list[ObservedResource] = []
        for resource in resources or []:
            ref = ref_from_resource_id(resource.id)
            if ref is None or ref.kind not in self._kinds:
                continue
            observed.append(self._to_observed(ref, resource))
        return observed

    async def _put(self, operation: str, ref: ResourceRef, body: dict[str, Any]) -> ObservedResource:
        self._check_kind(ref)
        resource_id = self.resource_id(ref)
        api_version = RESOURCE_PATHS[ref.kind][1]
        parameters = GenericResource(
            location=body.get("location"),
            tags=body.get("tags"),
            properties=body.get("properties", {}),
        )
        resource = await self._invoke(
            operation,
            lambda: self._arm.resources.begin_create_or_update_by_id(
                resource_id, api_version, parameters
            ).result(),
        )
        logger.info(
            f"{operation} completed",
            extra={"resource_id": resource_id, "resource_group": self._resource_group},
        )
        return self._to_observed(ref, resource)

    def _check_kind(self, ref: ResourceRef) -> None:
        if ref.kind not in self._kinds:
            raise ValueError(f"{ref.kind.value} is not served by this client")

    def _to_observed(self, ref: ResourceRef, resource: Any) -> ObservedResource:
        properties = getattr(resource, "properties", None)
        return ObservedResource(
            ref=ref,
            resource_id=getattr(resource, "id", None) or self.resource_id(ref),
            location=normalize_location(getattr(resource, "location", None)),
            tags=dict(getattr(resource, "tags", None) or {}),
            properties=dict(properties) if isinstance(properties, dict) else {},
        )

    async def _invoke(
        self,
        operation: str,
        call: Callable[[], T],
        *,
        missing_ok: bool = False,
    ) -> T | None:
        try:
            return await self._execute_with_timeout(operation, call)
        except ResourceNotFoundError as e:
            if missing_ok:
                return None
            raise classify_provider_error(e, operation) from e
        except HttpResponseError as e:
            if missing_ok and e.status_code == 404:
                return None
            raise classify_provider_error(e, operation) from e
        except AzureError as e:
            raise classify_provider_error(e, operation) from e

    async def _execute_with_timeout(self, operation: str, call: Callable[[], T]) -> T:
        """Run a blocking SDK call (including LRO polling) with a timeout.

        Raises:
            TransientProviderError: If the call exceeds the timeout.
            AzureError: If the Azure API returns an error.
        """
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, call),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            logger.error(
                f"{operation} timed out",
                extra={
                    "resource_group": self._resource_group,
                    "timeout_seconds": self._timeout_seconds,
                },
            )
            raise TransientProviderError(
                f"{operation} timed out after {self._timeout_seconds}s"
            ) from e


@dataclass(frozen=True)
class ProviderClients:
    """Explicit client handles passed into every step.

    Steps that read-modify-write a shared resource (subnet associations)
    serialize on the lock returned by resource_lock().
    """

    network: ResourceClient
    iam: ResourceClient
    _locks: dict[str, asyncio.Lock] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def for_kind(self, kind: ResourceKind) -> ResourceClient:
        """Select the capability client serving a resource kind."""
        if SERVICE_BY_KIND[kind] is ProviderService.NETWORK:
            return self.network
        return self.iam

    def all(self) -> tuple[ResourceClient, ...]:
        return (self.network, self.iam)

    def resource_lock(self, ref: ResourceRef) -> asyncio.Lock:
        """Lock guarding read-modify-write updates of one resource."""
        lock = self._locks.get(ref.key)
        if lock is None:
            lock = self._locks[ref.key] = asyncio.Lock()
        return lock


class ClientFactory:
    """Builds provider clients from an opaque authenticated credential.

    Without an explicit credential a managed identity credential is
    obtained on first use.
    """

    def __init__(
        self,
        subscription_id: str,
        *,
        credential: Any | None = None,
        managed_identity_client_id: str | None = None,
        timeout_seconds: int = DEFAULT_PROVIDER_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._subscription_id = subscription_id
        self._credential = credential
        self._managed_identity_client_id = managed_identity_client_id
        self._timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config: Config) -> ClientFactory:
        return cls(
            config.subscription_id,
            managed_identity_client_id=config.managed_identity_client_id,
            timeout_seconds=config.provider_call_timeout_seconds,
        )

    @property
    def subscription_id(self) -> str:
        return self._subscription_id

    def for_resource_group(self, resource_group: str) -> ProviderClients:
        """Create the network and iam clients for one resource group."""
        if self._credential is None:
            self._credential = get_managed_identity_credential(self._managed_identity_client_id)

        arm_client = ResourceManagementClient(self._credential, self._subscription_id)
        return ProviderClients(
            network=ArmResourceClient(
                arm_client,
                self._subscription_id,
                resource_group,
                kinds=NETWORK_KINDS,
                timeout_seconds=self._timeout_seconds,
            ),
            iam=ArmResourceClient(
                arm_client,
                self._subscription_id,
                resource_group,
                kinds=IAM_KINDS,
                timeout_seconds=self._timeout_seconds,
            ),
        )
