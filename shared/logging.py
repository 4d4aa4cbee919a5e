"""
Structured logging for the Helpdesk Access Layer.

Every service logs through structlog. Events carry the emitting service and
component (taken from ``helpdesk.<component>`` logger names), the active trace
and the request correlation fields bound by the HTTP middleware.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
client_ip_var: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "user_id": user_id_var,
    "client_ip": client_ip_var,
}


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structlog and the stdlib root logger for ``service_name``.

    JSON lines are emitted by default; ``json_logs=False`` switches to the
    human readable console renderer used for local development.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_component,
        add_trace_ids,
        add_request_context,
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger(service_name).setLevel(level)


def add_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Split ``helpdesk.cache_service`` into service and component fields."""
    service, _, component = event_dict.get("logger", "").partition(".")
    if component:
        event_dict["service"] = service
        event_dict["component"] = component
    return event_dict


def add_trace_ids(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach the active OpenTelemetry trace and span ids, if any."""
    span = trace.get_current_span()
    if not span.is_recording():
        return event_dict

    context = span.get_span_context()
    if context.trace_id:
        event_dict["trace_id"] = f"{context.trace_id:032x}"
    if context.span_id:
        event_dict["span_id"] = f"{context.span_id:016x}"
    return event_dict


def add_request_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy bound request correlation fields into the event."""
    for name, var in _CONTEXT_VARS.items():
        value = var.get()
        if value:
            event_dict.setdefault(name, value)
    return event_dict


def bind_request_context(
    request_id: Optional[str] = None,
    *,
    user_id: Optional[str] = None,
    client_ip: Optional[str] = None,
) -> str:
    """Bind correlation fields for the current request; returns the request id."""
    request_id = request_id or str(uuid.uuid4())
    request_id_var.set(request_id)
    if user_id:
        user_id_var.set(user_id)
    if client_ip:
        client_ip_var.set(client_ip)
    return request_id


def clear_request_context() -> None:
    for var in _CONTEXT_VARS.values():
        var.set(None)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
