"""Agent logging configuration with JSON formatting.

Reconciliation logs carry container context through ``extra=``. The
fields in ``CONTEXT_FIELDS`` become top-level keys of a JSON entry and
a trailing ``key=value`` block of a text line, so one container's
history can be filtered out of interleaved reconciliations.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from runtime_agent.config import settings

# Record attributes promoted out of ``extra``, in output order
CONTEXT_FIELDS = ("container_uuid", "container_name", "docker_id", "event_id")

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


def container_context(record: logging.LogRecord) -> dict[str, str]:
    """Non-empty container context fields set on ``record``."""
    context = {}
    for key in CONTEXT_FIELDS:
        value = getattr(record, key, "")
        if value:
            context[key] = str(value)
    return context


class AgentJSONFormatter(logging.Formatter):
    """JSON log formatter for structured agent logs.

    Each record becomes one JSON object with ``timestamp``, ``level``,
    ``logger``, ``message`` and ``service`` keys, ``agent_id`` when
    known, any container context fields, and an ``extra`` object holding
    the remaining non-standard record attributes.
    """

    def __init__(self, agent_id: str = ""):
        super().__init__()
        self.agent_id = agent_id

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "runtime-agent",
        }

        if self.agent_id:
            log_entry["agent_id"] = self.agent_id

        log_entry.update(container_context(record))

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra = {
            key: _jsonable(value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and key not in CONTEXT_FIELDS
        }
        if extra:
            log_entry["extra"] = extra

        return json.dumps(log_entry)


class AgentTextFormatter(logging.Formatter):
    """Human-readable formatter.

    ``[timestamp] LEVEL [agent] logger: message [uuid=... docker=...]``;
    docker ids are shortened to 12 characters as ``docker ps`` shows them.
    """

    _LABELS = {
        "container_uuid": "uuid",
        "container_name": "name",
        "docker_id": "docker",
        "event_id": "event",
    }

    def __init__(self, agent_id: str = ""):
        super().__init__()
        self.agent_id = agent_id

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        agent_part = f" [{self.agent_id[:8]}]" if self.agent_id else ""

        message = f"[{timestamp}] {record.levelname:8}{agent_part} {record.name}: {record.getMessage()}"

        context = container_context(record)
        if context:
            if "docker_id" in context:
                context["docker_id"] = context["docker_id"][:12]
            fields = " ".join(f"{self._LABELS[key]}={value}" for key, value in context.items())
            message += f" [{fields}]"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


def setup_agent_logging(agent_id: str = "") -> None:
    """Configure the root logger from settings.

    Args:
        agent_id: The agent's ID for inclusion in log entries
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)

    if settings.log_format.lower() == "json":
        handler.setFormatter(AgentJSONFormatter(agent_id))
    else:
        handler.setFormatter(AgentTextFormatter(agent_id))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
