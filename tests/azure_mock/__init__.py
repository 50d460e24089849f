"""Azure API mock for integration testing.

In-memory implementation of the generic Azure Resource Manager resource
operations, so the reconciler runs end to end without Azure connectivity.

Key Features:
- In-memory resources addressed by ARM resource ID
- Parent/child composition (virtual network subnets, security rules)
- Subnet association back-references and in-use delete protection
- Tag-filtered resource group listing
- Call recording and error injection
- Managed identity simulation

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        result = await reconciler.reconcile(spec, "inst-1")
        assert ctx.state.resource_count == 2
"""

from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .resources import (
    MockGenericResource,
    MockResource,
    MockResourceClient,
    MockResourceState,
    make_http_error,
)

__all__ = [
    "MockAzureContext",
    "MockGenericResource",
    "MockManagedIdentityCredential",
    "MockResource",
    "MockResourceClient",
    "MockResourceState",
    "create_mock_credential",
    "make_http_error",
]
