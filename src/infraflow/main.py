"""Main entry point for the infraflow reconciler.

Runs exactly one reconcile or delete for the configured instance and exits;
the control loop that re-invokes it lives outside this process.

SECRETLESS ARCHITECTURE:
- Provider clients authenticate with a managed identity only
- Credential variables in the environment abort startup (exit code 2)

Exit codes:
    0: Success.
    1: Configuration, spec, provider or partial step failure.
    2: Security violation (credentials in the environment).
    3: Flow state could not be read or written.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from .clients import ClientFactory
from .config import Config, ConfigurationError, ReconcileAction
from .errors import PersistenceError
from .migration import AnnotationMigrationGate
from .reconciler import FlowReconciler, ReconcileResult
from .security import SecretlessViolationError, enforce_secretless_architecture
from .spec_loader import SpecLoadError, load_spec
from .state import FileFlowStateStore

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_PERSISTENCE_FAILURE = 3


def setup_logging() -> None:
    """Configure structured logging with JSON output for production."""
    import json
    from datetime import datetime

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _STANDARD_RECORD_ATTRIBUTES:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


_STANDARD_RECORD_ATTRIBUTES = frozenset(
    (
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
    )
)


def exit_code_for(result: ReconcileResult) -> int:
    """Map a reconcile result to the process exit code."""
    if result.error is None:
        return EXIT_SUCCESS
    if isinstance(result.error, SecretlessViolationError):
        return EXIT_SECURITY_VIOLATION
    if isinstance(result.error, PersistenceError):
        return EXIT_PERSISTENCE_FAILURE
    return EXIT_FAILURE


async def main() -> int:
    """Run one reconciliation.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    logger.info(
        "Starting infraflow reconciler",
        extra={
            "instance_id": config.instance_id,
            "subscription_id": config.subscription_id,
            "action": config.action.value,
        },
    )

    try:
        enforce_secretless_architecture()
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    store = FileFlowStateStore(config.state_dir)
    reconciler = FlowReconciler(
        config,
        ClientFactory.from_config(config),
        store,
        AnnotationMigrationGate(default_use_flow=config.default_use_flow),
    )

    if config.action == ReconcileAction.DELETE:
        work = reconciler.delete(config.instance_id)
    else:
        try:
            spec = load_spec(config.spec_file)
        except SpecLoadError as e:
            logger.error(
                "Spec loading failed",
                extra={"error": str(e), "spec_file": str(config.spec_file)},
            )
            return EXIT_FAILURE
        work = reconciler.reconcile(spec, config.instance_id)

    # SIGTERM/SIGINT cancel the run; in-flight steps keep their persisted status
    task = asyncio.ensure_future(work)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, task.cancel)

    try:
        result = await task
    except asyncio.CancelledError:
        logger.warning("Reconciliation cancelled", extra={"instance_id": config.instance_id})
        return EXIT_FAILURE

    if result.success and result.status is not None:
        logger.info(
            "Reconciliation succeeded",
            extra={"instance_id": result.instance_id, "status": result.status.to_document()},
        )
    return exit_code_for(result)


def run() -> None:
    """Entry point for the reconciler CLI."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
