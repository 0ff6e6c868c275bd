"""
Structured Logging Infrastructure

JSON lines with a correlation id and the active tenant (village) on every
record, so one pairing run or polling loop can be followed across the
session manager and the takeover coordinator.
"""
import logging
import json
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Iterator

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
tenant_id_var: ContextVar[str] = ContextVar("tenant_id", default="")

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s %(tenant_id)s] | %(message)s"
# Poll ticks are HTTP requests; these would log one line per tick
NOISY_LOGGERS = ("httpx", "httpcore")


def _context_fields() -> dict[str, str]:
    fields = {}
    if correlation_id := correlation_id_var.get():
        fields["correlation_id"] = correlation_id
    if tenant_id := tenant_id_var.get():
        fields["tenant_id"] = tenant_id
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            **_context_fields(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = extra_data
        return json.dumps(entry, ensure_ascii=False, default=str)


class ContextFilter(logging.Filter):
    """Fills the correlation/tenant placeholders of the text format"""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _context_fields()
        record.correlation_id = fields.get("correlation_id", "-")
        record.tenant_id = fields.get("tenant_id", "-")
        return True


class StructuredLogger(logging.Logger):
    """
    Logger whose level methods accept `extra_data=`, a dict that ends up
    under "extra" in the JSON output:

        logger.info("QR refreshed", extra_data={"tenant_id": tenant_id})
    """

    def _log(  # type: ignore[override]
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            # skip this frame so funcName/lineno point at the caller
            stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Route all logging to stdout.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines when True, the pipe-separated text format otherwise
    """
    numeric_level = getattr(logging, level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handler.addFilter(ContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation id (a fresh one when None) to the current context"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation id; one is created and bound if none is set yet"""
    return correlation_id_var.get() or set_correlation_id()


@contextmanager
def tenant_context(tenant_id: str) -> Iterator[None]:
    """Tag every record emitted inside the block with the tenant id"""
    token = tenant_id_var.set(tenant_id)
    try:
        yield
    finally:
        tenant_id_var.reset(token)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """
    Log start, completion and failure (with duration) of a coroutine.

    Failures are logged at WARNING and re-raised unchanged.
    """
    def decorator(func):
        logger = get_logger(func.__module__)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            started = time.perf_counter()
            logger.debug(
                f"{operation_name} started",
                extra_data={"operation": operation_name, "status": "started"},
            )
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:
                logger.warning(
                    f"{operation_name} failed: {exc}",
                    extra_data={
                        "operation": operation_name,
                        "status": "failed",
                        "duration_seconds": round(time.perf_counter() - started, 4),
                        "error_type": type(exc).__name__,
                    },
                )
                raise
            logger.debug(
                f"{operation_name} completed",
                extra_data={
                    "operation": operation_name,
                    "status": "completed",
                    "duration_seconds": round(time.perf_counter() - started, 4),
                },
            )
            return result

        return wrapper
    return decorator
