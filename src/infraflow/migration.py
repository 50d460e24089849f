"""Migration gate between the legacy path and the flow path.

Instances reconciled by the legacy template-based path move to the flow
path one at a time. The gate decides per call; once an instance has flow
state it never goes back.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

from .errors import SpecValidationError
from .models import InfrastructureSpec
from .state import FlowState

if TYPE_CHECKING:
    from .projector import InfrastructureStatus

logger = logging.getLogger(__name__)

USE_FLOW_ANNOTATION = "infraflow.io/use-flow"

_TRUE_VALUES = ("true", "1", "yes")
_FALSE_VALUES = ("false", "0", "no")


class MigrationGate(Protocol):
    """Decides which path reconciles an instance."""

    def should_use_flow(
        self, prior_state: FlowState | None, spec: InfrastructureSpec | None
    ) -> bool: ...

    async def cleanup_legacy_state(self, instance_id: str) -> None: ...


class LegacyReconciler(Protocol):
    """The template-based path, opaque to the flow reconciler."""

    async def reconcile(
        self, spec: InfrastructureSpec, instance_id: str
    ) -> InfrastructureStatus: ...

    async def delete(self, instance_id: str) -> None: ...


class AnnotationMigrationGate:
    """Gate driven by flow state presence and a spec annotation.

    Decision order:
    1. Existing flow state: flow.
    2. ``infraflow.io/use-flow`` annotation on the spec: its value.
    3. ``default_use_flow``.

    Args:
        default_use_flow: Path for instances without state or annotation.
        legacy_state_cleaner: Coroutine function removing legacy
            bookkeeping (e.g. template deployment records) of an instance.
    """

    def __init__(
        self,
        default_use_flow: bool = True,
        legacy_state_cleaner: Callable[[str], Awaitable[None]] | None = None,
    ) -> None:
        self._default_use_flow = default_use_flow
        self._legacy_state_cleaner = legacy_state_cleaner

    def should_use_flow(
        self, prior_state: FlowState | None, spec: InfrastructureSpec | None
    ) -> bool:
        """Decide the path for one call.

        Raises:
            SpecValidationError: If the annotation value is not a boolean.
        """
        if prior_state is not None:
            return True

        if spec is None:
            return self._default_use_flow

        value = spec.annotations.get(USE_FLOW_ANNOTATION)
        if value is None:
            return self._default_use_flow

        normalized = value.strip().lower()
        if normalized in _TRUE_VALUES:
            return True
        if normalized in _FALSE_VALUES:
            return False
        raise SpecValidationError(
            f"Annotation {USE_FLOW_ANNOTATION} must be true or false, got {value!r}"
        )

    async def cleanup_legacy_state(self, instance_id: str) -> None:
        if self._legacy_state_cleaner is None:
            logger.debug(
                "No legacy state cleaner configured",
                extra={"instance_id": instance_id},
            )
            return
        await self._legacy_state_cleaner(instance_id)
        logger.info("Cleaned up legacy state", extra={"instance_id": instance_id})
