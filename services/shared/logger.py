"""
Structured JSON Logging for OrderFlow
=====================================
One JSON object per log line on stdout, so the output of six services
interleaved in one terminal (or one log collector) stays greppable by
order_id, topic or service:

    jq 'select(.order_id == "3f2c...")' < saga.log

Usage:
  from shared.logger import get_logger
  logger = get_logger(__name__)
  logger.info("Payment processed", extra={"order_id": "abc", "status": "SUCCESS"})

Output:
  {"timestamp":"2024-01-01T00:00:00.123Z","level":"INFO","service":"payment-service",
   "logger":"payment_service.handler","message":"Payment processed",
   "order_id":"abc","status":"SUCCESS"}
"""
from __future__ import annotations

import json
import logging
import os
import sys
import time
from typing import Any

# Standard logging.LogRecord fields we don't want in the output
_STDLIB_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
    "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "created", "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "message", "taskName", "service",
}

_configured = False
_service_name = os.environ.get("SERVICE_NAME", "orderflow")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        timestamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))

        log_obj: dict[str, Any] = {
            "timestamp": f"{timestamp}.{int(record.msecs):03d}Z",
            "level": record.levelname,
            "service": getattr(record, "service", _service_name),
            "logger": record.name,
            "message": record.message,
        }

        # Merge any extra fields passed via logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _STDLIB_FIELDS:
                log_obj[key] = value

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_logging(service_name: str | None = None, level: str | None = None) -> None:
    """
    Install the JSON formatter on the root logger.

    Called once by the process entry point; get_logger() calls it lazily
    with defaults so library code can log before the runtime starts.
    """
    global _configured, _service_name
    if service_name:
        _service_name = service_name

    root = logging.getLogger()
    formatter = JsonFormatter()
    if root.handlers:
        for h in root.handlers:
            h.setFormatter(formatter)
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    # aiokafka is chatty at INFO (every group rebalance, every metadata refresh)
    logging.getLogger("aiokafka").setLevel(max(root.level, logging.WARNING))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger that emits structured JSON to stdout.
    Idempotent, safe to call multiple times.
    """
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
