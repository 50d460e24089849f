"""Persisted flow state.

Flow state is a versioned document keyed by instance id that maps step ids
to their execution record. It survives process restarts so a reconciliation
resumes from the last persisted status instead of starting from scratch.

SCHEMA EVOLUTION:
- Unknown fields (from newer writers) are ignored.
- A step record that fails validation is dropped, which is the same as
  "not yet run"; the next reconciliation looks the resource up by name.
- A persisted ``running`` status (never written by this version) is read
  as ``pending``.

Storage is opaque to the core. The store contract is whole-document
replace: FileFlowStateStore writes a temporary file, fsyncs it and renames
it over the previous document, so a crash leaves either the old or the new
document, never a torn one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field, ValidationError

from .clients import ResourceKind, ResourceRef
from .config import MAX_STATE_FILE_SIZE_BYTES, VALID_INSTANCE_ID_PATTERN
from .errors import PersistenceError

logger = logging.getLogger(__name__)

FLOW_STATE_VERSION = "v1"


class StepStatus(str, Enum):
    """Execution status of a step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepAction(str, Enum):
    """Whether a step creates/updates or destroys its resource."""

    APPLY = "apply"
    DESTROY = "destroy"


class StepRecord(BaseModel):
    """Execution record of one step."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: ResourceKind
    name: str
    parent: str | None = None
    action: StepAction = StepAction.APPLY
    status: StepStatus = StepStatus.PENDING
    resource_id: str | None = Field(None, alias="resourceId")
    outputs: dict[str, str] = Field(default_factory=dict)
    fingerprint: str = ""
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    attempts: int = 0
    last_error: str | None = Field(None, alias="lastError")
    error_codes: list[str] = Field(default_factory=list, alias="errorCodes")
    updated_at: datetime | None = Field(None, alias="updatedAt")
    last_succeeded_at: datetime | None = Field(None, alias="lastSucceededAt")

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.name, self.parent)

    @property
    def created(self) -> bool:
        """True once a resource id was recorded by a successful apply."""
        return self.resource_id is not None

    def dependency_outputs(self) -> dict[str, str]:
        outputs = dict(self.outputs)
        if self.resource_id:
            outputs["id"] = self.resource_id
        return outputs


class FlowState(BaseModel):
    """Flow state document of one instance."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    version: str = FLOW_STATE_VERSION
    instance_id: str = Field(alias="instanceId")
    subscription_id: str | None = Field(None, alias="subscriptionId")
    resource_group: str | None = Field(None, alias="resourceGroup")
    location: str | None = None
    steps: dict[str, StepRecord] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="createdAt")
    updated_at: datetime | None = Field(None, alias="updatedAt")

    @classmethod
    def from_document(cls, data: Mapping[str, Any]) -> FlowState:
        """Parse a persisted document, tolerating damaged step records.

        Raises:
            PersistenceError: If the document envelope itself is invalid.
        """
        if not isinstance(data, Mapping):
            raise PersistenceError("Flow state document must be a mapping")

        version = data.get("version", FLOW_STATE_VERSION)
        if version != FLOW_STATE_VERSION:
            logger.warning(
                "Reading flow state written with a different schema version",
                extra={"version": version, "supported_version": FLOW_STATE_VERSION},
            )

        raw_steps = data.get("steps") or {}
        envelope = {key: value for key, value in data.items() if key != "steps"}
        try:
            state = cls.model_validate(envelope)
        except ValidationError as e:
            raise PersistenceError(f"Invalid flow state document: {e}") from e

        if not isinstance(raw_steps, Mapping):
            logger.warning("Ignoring malformed steps section of flow state")
            raw_steps = {}

        for step_id, raw_record in raw_steps.items():
            try:
                record = StepRecord.model_validate(raw_record)
            except ValidationError as e:
                logger.warning(
                    "Dropping unreadable step record, treating step as not yet run",
                    extra={"step_id": step_id, "error": str(e)},
                )
                continue
            if record.status is StepStatus.RUNNING:
                record.status = StepStatus.PENDING
            state.steps[step_id] = record

        return state

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def record(self, step_id: str) -> StepRecord | None:
        return self.steps.get(step_id)

    def checkpoint(self, overrides: Mapping[str, StepRecord | None]) -> FlowState:
        """Copy of this state with selected records replaced.

        The executor uses this to persist the pre-run record of steps that
        are currently running. A None override leaves the step out.
        """
        steps: dict[str, StepRecord] = {}
        for step_id, record in self.steps.items():
            if step_id in overrides:
                replacement = overrides[step_id]
                if replacement is not None:
                    steps[step_id] = replacement
            else:
                steps[step_id] = record
        return self.model_copy(update={"steps": steps}, deep=True)

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in StepStatus}
        for record in self.steps.values():
            counts[record.status.value] += 1
        return counts


class FlowStateStore(Protocol):
    """Persistence collaborator for flow state."""

    def load(self, instance_id: str) -> FlowState | None: ...

    def save(self, instance_id: str, state: FlowState) -> None: ...

    def delete(self, instance_id: str) -> None: ...


class FileFlowStateStore:
    """Stores one JSON document per instance in a directory."""

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    def path_for(self, instance_id: str) -> Path:
        # SECURITY: instance id becomes a file name, reject path tricks
        if not re.match(VALID_INSTANCE_ID_PATTERN, instance_id):
            raise PersistenceError(f"Invalid instance id for flow state: {instance_id!r}")
        return self._directory / f"{instance_id}.json"

    def load(self, instance_id: str) -> FlowState | None:
        path = self.path_for(instance_id)
        if not path.exists():
            return None

        try:
            if path.stat().st_size > MAX_STATE_FILE_SIZE_BYTES:
                raise PersistenceError(
                    f"Flow state exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: {path}"
                )
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Failed to read flow state {path}: {e}") from e

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt flow state document {path}: {e}") from e

        return FlowState.from_document(data)

    def save(self, instance_id: str, state: FlowState) -> None:
        path = self.path_for(instance_id)
        state.updated_at = datetime.now(UTC)
        payload = json.dumps(state.to_document(), indent=2, sort_keys=True)

        tmp_name: str | None = None
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self._directory,
                prefix=f".{instance_id}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_name = handle.name
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as e:
            raise PersistenceError(f"Failed to save flow state {path}: {e}") from e
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

        logger.debug(
            "Saved flow state",
            extra={"instance_id": instance_id, "steps": len(state.steps)},
        )

    def delete(self, instance_id: str) -> None:
        path = self.path_for(instance_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete flow state {path}: {e}") from e
        logger.info("Deleted flow state", extra={"instance_id": instance_id})


class InMemoryFlowStateStore:
    """Keeps serialized documents in memory, mainly for tests and dry runs."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}
        self.save_count = 0

    def load(self, instance_id: str) -> FlowState | None:
        document = self._documents.get(instance_id)
        if document is None:
            return None
        return FlowState.from_document(json.loads(json.dumps(document)))

    def save(self, instance_id: str, state: FlowState) -> None:
        state.updated_at = datetime.now(UTC)
        self._documents[instance_id] = json.loads(json.dumps(state.to_document()))
        self.save_count += 1

    def delete(self, instance_id: str) -> None:
        self._documents.pop(instance_id, None)

    def document(self, instance_id: str) -> dict[str, Any] | None:
        return self._documents.get(instance_id)
