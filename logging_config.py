"""Logging setup for the gateway.

Records go to stderr as plain text and, when a Supabase client is supplied,
are also shipped in batches as JSON rows. Every record carries the
correlation id of the request that produced it, and secret values (codes,
state blobs, tokens, assertions) are masked before any handler sees them.
"""

import atexit
import contextvars
import logging
import logging.handlers
import re
import sys
import threading
from typing import Optional


# Correlation id of the request being served ("-" outside a request)
correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")

# key=value / "key": "value" pairs whose values must never be logged
_SECRET_KEYS = (
    "code",
    "state",
    "access_token",
    "refresh_token",
    "id_token",
    "client_assertion",
    "code_verifier",
    "request",
    "csrf_token",
)
_SECRET_PATTERN = re.compile(
    r'(?P<key>\b(?:' + "|".join(_SECRET_KEYS) + r')\b["\']?\s*[=:]\s*["\']?)(?P<value>[^\s&"\',}]+)'
)
_TAG_PATTERN = re.compile(r"\[([A-Z_]+)\]\s*(.*)", re.DOTALL)
REDACTED = "[REDACTED]"


def redact(message: str) -> str:
    return _SECRET_PATTERN.sub(lambda m: m.group("key") + REDACTED, message)


class CorrelationIdFilter(logging.Filter):
    """Attach the current correlation id to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get()
        return True


class RedactionFilter(logging.Filter):
    """Mask secret values in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """Turns a record into a log row: the `[TAG] message` prefix becomes a column."""

    def __init__(self, service_name: str = None):
        super().__init__()
        self.service_name = service_name or "oauth-gateway"

    def format(self, record: logging.LogRecord) -> dict:
        message = record.getMessage()
        tag = None
        match = _TAG_PATTERN.match(message)
        if match:
            tag, message = match.groups()

        row = {
            "service": self.service_name,
            "correlation_id": getattr(record, "correlation_id", "-"),
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "logger": record.name,
            "extra": {"function": record.funcName, "line": record.lineno},
        }
        if record.exc_info:
            row["extra"]["exception"] = self.formatException(record.exc_info)
        return row


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] [%(correlation_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class SupabaseHandler(logging.handlers.BufferingHandler):
    """Buffers log rows and inserts them into a Supabase table.

    The buffer is written when it holds `capacity` records, every
    `interval` seconds from a daemon thread, and when the handler closes.
    """

    def __init__(
        self,
        supabase_client,
        service_name: str,
        table: str = "gateway_logs",
        capacity: int = 20,
        interval: float = 10.0,
    ):
        super().__init__(capacity)
        self.supabase = supabase_client
        self.table = table
        self.interval = interval
        self.setFormatter(JSONFormatter(service_name))

        self._stopped = threading.Event()
        self._ticker = threading.Thread(target=self._tick, name="supabase-log-flush", daemon=True)
        self._ticker.start()
        atexit.register(self.close)

    def _tick(self):
        while not self._stopped.wait(self.interval):
            self.flush()

    def flush(self):
        self.acquire()
        try:
            rows = [self.formatter.format(record) for record in self.buffer]
            self.buffer = []
        finally:
            self.release()

        if not rows:
            return
        try:
            self.supabase.table(self.table).insert(rows).execute()
        except Exception as e:
            # stderr only; logging from a handler would recurse
            print(f"[WARNING] Dropped {len(rows)} log rows, Supabase insert failed: {e}", file=sys.stderr)

    def close(self):
        self._stopped.set()
        super().close()


_supabase_handler: Optional[SupabaseHandler] = None


def setup_logging(
    service_name: str = None,
    level: str = "INFO",
    supabase_client=None,
) -> logging.Logger:
    """Configure the root logger.

    Args:
        service_name: Service name stamped on shipped rows.
        level: Root log level name.
        supabase_client: When given, rows are also shipped to Supabase.

    Returns:
        The root logger.
    """
    global _supabase_handler

    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(PlainFormatter())
    handlers.append(console)

    _supabase_handler = None
    if supabase_client is not None:
        try:
            _supabase_handler = SupabaseHandler(supabase_client, service_name=service_name or "oauth-gateway")
            handlers.append(_supabase_handler)
        except Exception as e:
            print(f"[WARNING] Supabase logging unavailable: {e}", file=sys.stderr)

    for handler in handlers:
        handler.setLevel(log_level)
        handler.addFilter(CorrelationIdFilter())
        handler.addFilter(RedactionFilter())
        root.addHandler(handler)

    # Request URLs carry codes and state blobs
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"[STARTUP] Logging at {logging.getLevelName(log_level)}, "
        f"Supabase shipping {'on' if _supabase_handler else 'off'}"
    )
    return root


def flush_logs():
    """Write any buffered rows to Supabase now."""
    if _supabase_handler:
        _supabase_handler.flush()
