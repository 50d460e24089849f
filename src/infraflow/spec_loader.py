"""Spec file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .errors import SpecValidationError
from .models import InfrastructureSpec

logger = logging.getLogger(__name__)


class SpecLoadError(SpecValidationError):
    """Raised when spec loading or validation fails."""

    pass


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as one ``loc: msg`` line each."""
    errors = []
    for detail in error.errors():
        loc = ".".join(str(x) for x in detail["loc"])
        errors.append(f"  - {loc}: {detail['msg']}")
    return "\n".join(errors)


def parse_spec(raw_data: Any, source: str = "<inline>") -> InfrastructureSpec:
    """Validate an already-parsed spec document.

    Accepts both the flat format and a Kubernetes-style wrapper with
    ``apiVersion``/``kind``/``metadata``/``spec``. Annotations found in the
    wrapper's metadata are merged into the spec annotations.

    Args:
        raw_data: Parsed YAML/JSON document.
        source: Description of the origin, used in error messages.

    Returns:
        Validated spec instance.

    Raises:
        SpecLoadError: If the document is not a valid spec.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec must be a mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        metadata = raw_data.get("metadata") or {}
        annotations = metadata.get("annotations") if isinstance(metadata, dict) else None
        if isinstance(annotations, dict):
            spec_data = {
                **spec_data,
                "annotations": {**annotations, **(spec_data.get("annotations") or {})},
            }
    else:
        spec_data = raw_data

    try:
        return InfrastructureSpec.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(
            f"Validation failed for {source}:\n{format_validation_error(e)}"
        ) from e


def load_spec(spec_path: Path) -> InfrastructureSpec:
    """Load and validate an infrastructure spec from YAML.

    Args:
        spec_path: Path to the spec file.

    Returns:
        Validated spec instance.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    spec = parse_spec(raw_data, str(spec_path))
    logger.info("Loaded infrastructure spec from %s", spec_path)
    return spec
