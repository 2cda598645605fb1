"""
Structured logging utility for the imagine queue service.

Provides consistent JSON logging for:
- HTTP requests (inbound from the API surface, outbound to the backend)
- Job lifecycle events (queued, dequeued, dispatched, finalized)
- Progress polling
- Error handling

Environment variables:
- LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR) [default: INFO]
- LOG_JSON: Enable JSON output (1) or pretty text (0) [default: 1]
- LOG_HTTP_BODY: Include request/response bodies in logs [default: 0]
- LOG_HTTP_MAXLEN: Max length for HTTP body logging [default: 2000]
"""

import json
import logging
import os
import socket
import sys
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextlib import contextmanager

# Configuration from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "1") == "1"
LOG_HTTP_BODY = os.getenv("LOG_HTTP_BODY", "0") == "1"
LOG_HTTP_MAXLEN = int(os.getenv("LOG_HTTP_MAXLEN", "2000"))

HOSTNAME = socket.gethostname()

# Service instance ID (set from config)
INSTANCE_ID: Optional[str] = None

# Values that must never reach a log line verbatim (e.g. the chat bot token)
_SECRETS: set = set()


def set_instance_id(instance_id: str):
    """Set the global instance ID for logging."""
    global INSTANCE_ID
    INSTANCE_ID = instance_id


def register_secret(value: Optional[str]):
    """Redact ``value`` from every structured log line from now on."""
    if value:
        _SECRETS.add(value)


def redact(text: Any) -> Any:
    if not isinstance(text, str) or not _SECRETS:
        return text
    for secret in _SECRETS:
        text = text.replace(secret, "[...]")
    return text


class StructuredLogger:
    """
    Structured logger that outputs JSON logs to stdout.

    Each log line includes:
    - ts: ISO8601 timestamp
    - level: Log level
    - event: Event name
    - instance_id: Service instance identifier
    - hostname: Machine hostname
    - Additional context fields under "details"
    """

    def __init__(self, name: str = "imagine"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, LOG_LEVEL))
        self.logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, LOG_LEVEL))

        if LOG_JSON:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(PrettyFormatter())

        self.logger.addHandler(handler)
        self.logger.propagate = False

    def _truncate_body(self, body: Any, max_len: int = LOG_HTTP_MAXLEN) -> Optional[str]:
        if body is None:
            return None

        body_str = redact(str(body))
        if len(body_str) > max_len:
            return body_str[:max_len] + f"... (truncated, {len(body_str)} total chars)"
        return body_str

    def _sanitize_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        """Remove credentials such as Authorization tokens."""
        if not headers:
            return {}

        sensitive_keys = {"authorization", "x-api-key", "api-key", "token", "cookie"}
        return {
            key: "***REDACTED***" if key.lower() in sensitive_keys else value
            for key, value in headers.items()
        }

    def log(
        self,
        level: str,
        event: str,
        job_id: Optional[str] = None,
        request_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        stack_trace: Optional[str] = None,
        **details
    ):
        """
        Log a structured event.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR)
            event: Event name (e.g., "job_enqueued", "http_out")
            job_id: Interaction ID of the job (if applicable)
            request_id: Request identifier (if applicable)
            duration_ms: Duration in milliseconds (if applicable)
            error: Error message (if applicable)
            stack_trace: Stack trace (if applicable)
            **details: Additional event-specific fields
        """
        log_data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "instance_id": INSTANCE_ID,
            "hostname": HOSTNAME,
        }

        if job_id:
            log_data["job_id"] = job_id
        if request_id:
            log_data["request_id"] = request_id
        if duration_ms is not None:
            log_data["duration_ms"] = round(duration_ms, 2)
        if error:
            log_data["error"] = redact(error)
        if stack_trace:
            log_data["stack_trace"] = redact(stack_trace)
        if details:
            log_data["details"] = {k: redact(v) for k, v in details.items()}

        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method("", extra={"structured": log_data})

    def debug(self, event: str, **kwargs):
        self.log("DEBUG", event, **kwargs)

    def info(self, event: str, **kwargs):
        self.log("INFO", event, **kwargs)

    def warning(self, event: str, **kwargs):
        self.log("WARNING", event, **kwargs)

    def error(self, event: str, **kwargs):
        self.log("ERROR", event, **kwargs)

    def http_in(
        self,
        method: str,
        path: str,
        remote_addr: str,
        request_id: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        status_code: Optional[int] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ):
        """Log an inbound API request."""
        details = {
            "method": method,
            "path": path,
            "remote_addr": remote_addr,
        }

        if headers:
            details["headers"] = self._sanitize_headers(headers)
        if LOG_HTTP_BODY and body is not None:
            details["request_body"] = self._truncate_body(body)
        if status_code is not None:
            details["status_code"] = status_code

        if error:
            self.error("http_in_error", request_id=request_id, duration_ms=duration_ms, error=error, **details)
        else:
            self.info("http_in", request_id=request_id, duration_ms=duration_ms, **details)

    def http_out(
        self,
        service: str,
        method: str,
        url: str,
        request_id: str,
        timeout: Optional[float] = None,
        request_body: Any = None,
        status_code: Optional[int] = None,
        response_body: Any = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ):
        """Log an outbound request to the rendering backend."""
        details = {
            "service": service,
            "method": method,
            "url": url,
        }

        if timeout is not None:
            details["timeout"] = timeout
        if LOG_HTTP_BODY and request_body is not None:
            details["request_body"] = self._truncate_body(request_body)
        if status_code is not None:
            details["status_code"] = status_code
        if LOG_HTTP_BODY and response_body is not None:
            details["response_body"] = self._truncate_body(response_body)

        # progress polling hits the backend every second; keep it out of INFO
        path = url.split("?", 1)[0]
        quiet = path.endswith("/progress") or path.endswith("/memory")

        if error:
            self.error("http_out_error", request_id=request_id, duration_ms=duration_ms, error=error, **details)
        elif quiet and (status_code or 0) < 400:
            self.debug("http_out", request_id=request_id, duration_ms=duration_ms, **details)
        else:
            self.info("http_out", request_id=request_id, duration_ms=duration_ms, **details)

    @contextmanager
    def job_context(self, job_id: str, job_type: str, **initial_details):
        """
        Context manager for tracking a generation job.

        Usage:
            with logger.job_context(job_id="123", job_type="imagine") as ctx:
                ctx.milestone("job_dispatched")
                # do work
                ctx.milestone("job_finalized", images=4)
        """
        start_time = time.time()

        class JobContext:
            def __init__(self, logger: StructuredLogger, job_id: str, job_type: str):
                self.logger = logger
                self.job_id = job_id
                self.job_type = job_type
                self.start_time = start_time

            def milestone(self, event: str, **details):
                duration_ms = (time.time() - self.start_time) * 1000
                self.logger.info(
                    event,
                    job_id=self.job_id,
                    duration_ms=duration_ms,
                    job_type=self.job_type,
                    **details
                )

            def error(self, event: str, error: str, **details):
                duration_ms = (time.time() - self.start_time) * 1000
                self.logger.error(
                    event,
                    job_id=self.job_id,
                    duration_ms=duration_ms,
                    job_type=self.job_type,
                    error=error,
                    stack_trace=traceback.format_exc(),
                    **details
                )

        ctx = JobContext(self, job_id, job_type)
        self.info("job_started", job_id=job_id, job_type=job_type, **initial_details)

        try:
            yield ctx
        except Exception as e:
            ctx.error("job_failed", error=str(e))
            raise


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "structured"):
            return json.dumps(record.structured, default=str)

        log_data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": redact(record.getMessage()),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


class PrettyFormatter(logging.Formatter):
    """Formats log records as human-readable text."""

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "structured"):
            data = record.structured
            timestamp = data.get("ts", "")[:19]
            level = data.get("level", "INFO")
            event = data.get("event", "")
            job_id = data.get("job_id", "")

            parts = [f"[{timestamp}]", f"[{level}]", f"[{event}]"]

            if job_id:
                parts.append(f"[job:{job_id[:8]}]")

            details = data.get("details", {})
            if details:
                parts.append(" ".join(f"{k}={v}" for k, v in details.items()))

            if data.get("error"):
                parts.append(f"ERROR: {data['error']}")

            return " ".join(parts)

        return super().format(record)


_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get the global structured logger instance."""
    global _logger
    if _logger is None:
        _logger = StructuredLogger()
    return _logger


def init_logging(instance_id: Optional[str] = None, secrets: Optional[list] = None):
    """
    Initialize logging system.

    Args:
        instance_id: Optional service instance identifier
        secrets: Values to redact from every log line
    """
    if instance_id:
        set_instance_id(instance_id)
    for secret in secrets or []:
        register_secret(secret)

    logger = get_logger()
    logger.info(
        "logger_config",
        log_level=LOG_LEVEL,
        log_json=LOG_JSON,
        log_http_body=LOG_HTTP_BODY,
        log_http_maxlen=LOG_HTTP_MAXLEN,
        hostname=HOSTNAME,
    )

    return logger


@contextmanager
def timer():
    """
    Context manager to measure duration.

    Usage:
        with timer() as t:
            # do work
        duration_ms = t.elapsed_ms
    """
    class Timer:
        def __init__(self):
            self.start = time.time()
            self.elapsed_ms = 0

        def stop(self):
            self.elapsed_ms = (time.time() - self.start) * 1000
            return self.elapsed_ms

    t = Timer()
    try:
        yield t
    finally:
        t.stop()
