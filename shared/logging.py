"""
Structured logging for the Policy Engine.

Every engine component logs through structlog on top of the stdlib
logging module. Events are rendered as JSON lines and carry the
correlation fields of the call that produced them: the request id of the
current entry point, the acting user and, inside the simulation harness,
the session being replayed.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional, Tuple

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
actor_id_var: ContextVar[Optional[str]] = ContextVar('actor_id', default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar('session_id', default=None)

# Event key each correlation variable is rendered under
_CORRELATION_FIELDS: Tuple[Tuple[str, ContextVar], ...] = (
    ("request_id", request_id_var),
    ("actor_id", actor_id_var),
    ("session_id", session_id_var),
)

EventDict = Dict[str, Any]


def add_service_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag the event with the service prefix of its logger name."""
    service, _, component = event_dict.get("logger", "").partition(".")
    if component:
        event_dict["service"] = service
        event_dict["component"] = component
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Copy the bound correlation ids onto the event."""
    for key, var in _CORRELATION_FIELDS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def add_timestamp(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Epoch seconds next to the ISO timestamp, for ordering within a batch."""
    event_dict["timestamp"] = time.time()
    return event_dict


def _processors() -> List[Any]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", key="time"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
        add_correlation_context,
        add_timestamp,
        structlog.processors.JSONRenderer(sort_keys=True),
    ]


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Route structlog through stdlib logging at the given level.

    Safe to call more than once; the last call wins.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=_processors(),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger(service_name).setLevel(level)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id, generating one when none is supplied."""
    request_id = request_id or str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_actor_context(actor_id: Optional[str] = None, session_id: Optional[str] = None):
    """Bind the acting user and simulation session, leaving unset ones alone."""
    if actor_id:
        actor_id_var.set(actor_id)
    if session_id:
        session_id_var.set(session_id)


def clear_context():
    for _, var in _CORRELATION_FIELDS:
        var.set(None)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
