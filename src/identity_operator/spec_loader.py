"""Desired-state loading and state file persistence.

SECURITY: File reads enforce a size limit before parsing. Input validation
is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

import yaml
from pydantic import ValidationError as PydanticValidationError

from .models import ManagedIdentitySpec, ManagedIdentityState

logger = logging.getLogger(__name__)

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_STATE_FILE_SIZE_BYTES = 1024 * 1024

STATE_FORMAT_VERSION = 1


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


class StateFileError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


def _format_validation_error(e: PydanticValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return "\n".join(errors)


def _read_limited(path: Path, limit: int, error_cls: type[Exception]) -> str:
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise error_cls(f"Failed to stat {path}: {e}") from e

    if file_size > limit:
        raise error_cls(f"{path} exceeds maximum size of {limit} bytes")

    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise error_cls(f"Failed to read {path}: {e}") from e


def load_spec(spec_path: Path) -> ManagedIdentitySpec:
    """Load and validate a managed identity spec from YAML.

    Both a flat mapping and a Kubernetes-style wrapper (apiVersion, kind,
    metadata, spec) are accepted.

    Raises:
        SpecLoadError: If the spec cannot be loaded or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    content = _read_limited(spec_path, MAX_SPEC_FILE_SIZE_BYTES, SpecLoadError)

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    try:
        spec = ManagedIdentitySpec.model_validate(spec_data)
    except PydanticValidationError as e:
        raise SpecLoadError(
            f"Validation failed for {spec_path}:\n{_format_validation_error(e)}"
        ) from e

    logger.info(
        "Loaded managed identity spec",
        extra={"spec_path": str(spec_path), "resource_path": spec.resource_path},
    )
    return spec


def load_state(state_path: Path) -> ManagedIdentityState | None:
    """Load the persisted state record.

    Returns:
        The state, or None if no state file exists or it tracks nothing.

    Raises:
        StateFileError: If the file is unreadable or malformed.
    """
    if not state_path.exists():
        return None

    content = _read_limited(state_path, MAX_STATE_FILE_SIZE_BYTES, StateFileError)

    try:
        document = json.loads(content)
    except json.JSONDecodeError as e:
        raise StateFileError(f"Invalid JSON in {state_path}: {e}") from e

    if not isinstance(document, dict):
        raise StateFileError(f"State file must contain a JSON object: {state_path}")

    version = document.get("version")
    if version != STATE_FORMAT_VERSION:
        raise StateFileError(f"Unsupported state format version {version!r} in {state_path}")

    resource = document.get("managedIdentity")
    if resource is None:
        return None

    try:
        return ManagedIdentityState.model_validate(resource)
    except PydanticValidationError as e:
        raise StateFileError(
            f"Invalid state in {state_path}:\n{_format_validation_error(e)}"
        ) from e


def save_state(state_path: Path, state: ManagedIdentityState | None) -> None:
    """Persist the state record atomically; None removes the state file."""
    if state is None:
        try:
            state_path.unlink(missing_ok=True)
        except OSError as e:
            raise StateFileError(f"Failed to remove {state_path}: {e}") from e
        logger.info("Removed state file", extra={"state_path": str(state_path)})
        return

    document = {
        "version": STATE_FORMAT_VERSION,
        "managedIdentity": state.model_dump(mode="json", by_alias=True),
    }
    content = json.dumps(document, indent=2, sort_keys=True) + "\n"

    directory = state_path.parent
    try:
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{state_path.name}.")
    except OSError as e:
        raise StateFileError(f"Failed to write {state_path}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, state_path)
    except OSError as e:
        Path(tmp_name).unlink(missing_ok=True)
        raise StateFileError(f"Failed to write {state_path}: {e}") from e

    logger.info(
        "Saved state file",
        extra={"state_path": str(state_path), "managed_identity_id": state.id},
    )
