"""Runtime wiring: logging setup and plan execution with signal handling.

SECRETLESS ARCHITECTURE:
The Azure provider authenticates with workload identity federation (CI) or
a managed identity. Client secrets in the environment abort the run before
any provider call; see security.py.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import EngineConfig, LogFormat
from .executor import Executor
from .models import ExecutionReport, Plan
from .provider import Provider
from .state import StateStore

logger = logging.getLogger(__name__)

# LogRecord attributes that are not structured "extra" fields
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

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(config: EngineConfig) -> None:
    """Configure root logging.

    Logs go to stderr so that stdout carries only the JSON reports printed
    by the CLI.
    """
    handler = logging.StreamHandler(sys.stderr)
    if config.log_format == LogFormat.JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(config.log_level_value)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def execute_plan(
    plan: Plan,
    store: StateStore,
    provider: Provider,
    config: EngineConfig,
) -> ExecutionReport:
    """Execute ``plan``, cancelling gracefully on SIGINT/SIGTERM.

    A signal stops new operations from starting; in-flight provider calls
    finish and their state is committed.
    """
    executor = Executor(store, config)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        executor.cancel()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug("Signal handler not installed", extra={"signal": sig.name})

    try:
        return await executor.execute(plan, provider)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

