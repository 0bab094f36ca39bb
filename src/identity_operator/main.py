"""Entry points for one-shot managed identity runs.

Each run loads configuration, desired state and the state file, drives the
Reconciler once and persists the resulting state. The CLI in cli.py is a
thin click layer over these functions.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from .config import Config
from .models import ManagedIdentityState
from .reconciler import Reconciler, ReconcileResult
from .remote import ManagedIdentityAPI
from .spec_loader import SpecLoadError, StateFileError, load_spec, load_state, save_state
from .tharsis_client import TharsisClient

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2

# LogRecord attributes that are not user-supplied extras
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, json_output: bool = True) -> None:
    """Configure root logging on stderr, as JSON lines or plain text."""
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level)

    # Reduce noise from the HTTP pipeline
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


ApiFactory = Callable[[Config], ManagedIdentityAPI]


def _default_api(config: Config) -> ManagedIdentityAPI:
    return TharsisClient(config)


def _run(
    config: Config,
    state_path: Path,
    operation: Callable[[Reconciler, ManagedIdentityState | None], ReconcileResult],
    *,
    dry_run: bool = False,
    save_on_failure: bool = True,
    api_factory: ApiFactory | None = None,
) -> int:
    logger = logging.getLogger(__name__)
    dry_run = dry_run or config.dry_run

    try:
        state = load_state(state_path)
    except StateFileError as e:
        logger.error("State file error", extra={"error": str(e)})
        return EXIT_FAILURE

    api = (api_factory or _default_api)(config)
    try:
        result = operation(Reconciler(api, dry_run=dry_run), state)
    finally:
        close = getattr(api, "close", None)
        if close is not None:
            close()

    if not dry_run and (result.success or save_on_failure):
        try:
            save_state(state_path, result.state)
        except StateFileError as e:
            logger.error("State file error", extra={"error": str(e)})
            return EXIT_FAILURE

    return EXIT_SUCCESS if result.success else EXIT_FAILURE


def apply(
    config: Config,
    spec_path: Path,
    state_path: Path,
    *,
    dry_run: bool = False,
    api_factory: ApiFactory | None = None,
) -> int:
    """Reconcile the identity described in spec_path.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        desired = load_spec(spec_path)
    except SpecLoadError as e:
        logging.getLogger(__name__).error("Spec loading failed", extra={"error": str(e)})
        return EXIT_FAILURE

    return _run(
        config,
        state_path,
        lambda reconciler, state: reconciler.reconcile(desired, state),
        dry_run=dry_run,
        api_factory=api_factory,
    )


def refresh(config: Config, state_path: Path, *, api_factory: ApiFactory | None = None) -> int:
    """Re-read the tracked identity and update the state file."""
    return _run(
        config,
        state_path,
        lambda reconciler, state: reconciler.refresh(state),
        api_factory=api_factory,
    )


def import_identity(
    config: Config,
    identity_id: str,
    state_path: Path,
    *,
    api_factory: ApiFactory | None = None,
) -> int:
    """Write the state of an existing remote identity to the state file."""
    logger = logging.getLogger(__name__)
    try:
        existing = load_state(state_path)
    except StateFileError as e:
        logger.error("State file error", extra={"error": str(e)})
        return EXIT_FAILURE

    if existing is not None and existing.id != identity_id:
        logger.error(
            "State file already tracks another managed identity",
            extra={"state_path": str(state_path), "managed_identity_id": existing.id},
        )
        return EXIT_FAILURE

    return _run(
        config,
        state_path,
        lambda reconciler, _state: reconciler.import_identity(identity_id),
        save_on_failure=False,
        api_factory=api_factory,
    )


def destroy(
    config: Config,
    state_path: Path,
    *,
    dry_run: bool = False,
    api_factory: ApiFactory | None = None,
) -> int:
    """Delete the tracked identity and remove the state file."""
    return _run(
        config,
        state_path,
        lambda reconciler, state: reconciler.destroy(state),
        dry_run=dry_run,
        api_factory=api_factory,
    )
