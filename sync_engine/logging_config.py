"""Structured logging for the sync pipeline.

Console output stays human-readable; ``app.log`` and ``error.log`` carry
one JSON object per line for Loki/Promtail. Records logged through an
envelope logger carry the tenant, job and trace ids of the event being
handled, so one sync can be followed across every stage.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from pythonjsonlogger import jsonlogger

from sync_engine.config import settings

# Correlation fields copied from an EventEnvelope onto each record
CONTEXT_FIELDS = ("tenant_id", "integration_type", "entity_type", "job_id", "sync_id", "trace_id")

QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler", "aiosqlite")


class PipelineJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with a UTC timestamp, source location and any correlation ids."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["source"] = f"{record.filename}:{record.lineno}"
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value in (None, "-"):
                log_record.pop(field, None)


class ContextDefaultsFilter(logging.Filter):
    """Fill missing correlation fields so the console format never raises."""

    def filter(self, record):
        for field in CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, "-")
        return True


def setup_logging(log_dir: str | Path | None = None):
    """Configure root logging.

    Args:
        log_dir: Directory for the JSON log files. Defaults to
                 ``settings.log_dir`` relative to the working directory.
    """
    logs_dir = Path(log_dir or settings.log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()
    context_filter = ContextDefaultsFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.addFilter(context_filter)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - [trace %(trace_id)s] %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = PipelineJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    for filename, level in (("app.log", logging.DEBUG), ("error.log", logging.ERROR)):
        handler = logging.FileHandler(logs_dir / filename)
        handler.setLevel(level)
        handler.addFilter(context_filter)
        handler.setFormatter(json_formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class PipelineLoggerAdapter(logging.LoggerAdapter):
    """Merges the adapter's correlation ids into each call's ``extra``."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def envelope_logger(name: str, envelope) -> PipelineLoggerAdapter:
    """Logger carrying the correlation fields of an event envelope."""
    context = {field: getattr(envelope, field, None) for field in CONTEXT_FIELDS}
    return PipelineLoggerAdapter(logging.getLogger(name), {k: v for k, v in context.items() if v is not None})
