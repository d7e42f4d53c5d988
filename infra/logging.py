"""
Agent Memory Centralized Logging
--------------------------------
Structured logging with op_id propagation for store traceability.

Design:
- A caller may scope a batch of store calls with an op_id
- op_id propagates through: Secure store -> Hybrid -> Volatile/Durable -> Table
- Console output through Rich, file output as JSON lines
- Clear severity discipline: INFO=lifecycle, WARNING=recoverable, ERROR=abort

Usage:
    from infra.logging import get_logger, OperationContext

    logger = get_logger("memory.hybrid")

    with OperationContext() as op_id:
        store.add_message(conversation_id, {"role": "user", "content": "hi"})
"""

import contextvars
import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "agentmem"

# Context variable for op_id - thread-safe and async-safe
_op_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "op_id", default=None
)


def generate_op_id() -> str:
    """Generate a unique operation ID."""
    return f"op_{uuid.uuid4().hex[:12]}"


def get_op_id() -> Optional[str]:
    """Get the current operation ID from context."""
    return _op_id_var.get()


class OperationContext:
    """
    Context manager for operation scoping.

    Usage:
        with OperationContext() as op_id:
            # All logs within this block carry op_id
            logger.info("Syncing...")
    """

    def __init__(self, op_id: Optional[str] = None):
        self._op_id = op_id or generate_op_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = _op_id_var.set(self._op_id)
        return self._op_id

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _op_id_var.reset(self._token)
            self._token = None


class OperationIdFilter(logging.Filter):
    """Logging filter that adds op_id to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "op_id", None) is None:
            record.op_id = get_op_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured file logging."""

    EXTRA_FIELDS = ("conversation_id", "key", "operation", "synced", "failed")

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "op_id": getattr(record, "op_id", "-"),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in self.EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Prefixes the message with the op_id when one is set."""

    def format(self, record: logging.LogRecord) -> str:
        op_id = getattr(record, "op_id", "-")
        message = super().format(record)
        return f"[{op_id}] {message}" if op_id != "-" else message


class RotatingJSONFileHandler(logging.FileHandler):
    """Simple file handler with size-based rotation."""

    MAX_BYTES = 10 * 1024 * 1024  # 10 MB
    BACKUP_COUNT = 3

    def __init__(self, filename: str, max_bytes: Optional[int] = None, backup_count: Optional[int] = None):
        self._base_path = Path(filename)
        self._max_bytes = max_bytes or self.MAX_BYTES
        self._backup_count = backup_count or self.BACKUP_COUNT
        self._base_path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(str(self._base_path), mode="a", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        try:
            if self._base_path.exists() and self._base_path.stat().st_size > self._max_bytes:
                self._rotate()
        except OSError:
            self.handleError(record)
        super().emit(record)

    def _rotate(self) -> None:
        self.close()

        for i in range(self._backup_count - 1, 0, -1):
            src = self._base_path.with_suffix(f".{i}.log")
            dst = self._base_path.with_suffix(f".{i + 1}.log")
            if src.exists():
                if dst.exists():
                    dst.unlink()
                src.rename(dst)

        if self._base_path.exists():
            backup = self._base_path.with_suffix(".1.log")
            if backup.exists():
                backup.unlink()
            self._base_path.rename(backup)

        self.stream = self._open()


_logging_initialized = False


def configure_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    console: bool = True,
    file: bool = False,
    force: bool = False,
) -> None:
    """
    Configure the agentmem logging tree.

    Args:
        level: Logging level (default INFO)
        log_dir: Directory for the JSON log file (default: ./logs)
        console: Enable Rich console output
        file: Enable JSON file output
        force: Reconfigure even if already configured
    """
    global _logging_initialized

    if _logging_initialized and not force:
        return

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    op_filter = OperationIdFilter()

    if console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_path=False,
        )
        console_handler.setLevel(level)
        console_handler.setFormatter(ConsoleFormatter("%(name)s: %(message)s"))
        console_handler.addFilter(op_filter)
        root_logger.addHandler(console_handler)

    if file:
        log_path = Path(log_dir) if log_dir else Path("logs")
        file_handler = RotatingJSONFileHandler(str(log_path / "agentmem.log"))
        file_handler.setLevel(logging.DEBUG)  # File gets everything
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(op_filter)
        root_logger.addHandler(file_handler)

    _logging_initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the agentmem namespace.

    Args:
        name: Logger name (prefixed with 'agentmem.' if not already)
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
