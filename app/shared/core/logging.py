import logging
import re
import sys
from typing import Any, MutableMapping

import structlog

from app.shared.core.config import get_settings

REDACTED = "[REDACTED]"

# Customer emails appear in invoice context and gateway error bodies.
_EMAIL = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_SECRET_KEYS = frozenset(
    {
        "authorization",
        "password",
        "secret",
        "token",
        "api_key",
        "card_number",
        "cvc",
        "authorization_code",
        "payment_method_ref",
    }
)
_SECRET_SUFFIXES = ("_token", "_secret", "_password", "_api_key", "_signature")


def _is_secret(key: Any) -> bool:
    name = str(key).strip().lower().replace("-", "_")
    return name in _SECRET_KEYS or name.endswith(_SECRET_SUFFIXES)


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if _is_secret(k) else _scrub(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_scrub(item) for item in value]
    if isinstance(value, str):
        return _EMAIL.sub("[EMAIL_REDACTED]", value)
    return value


def redact_sensitive(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Keep gateway credentials, card data and customer emails out of log output."""
    return {
        key: REDACTED if _is_secret(key) else _scrub(value)
        for key, value in event_dict.items()
    }


def add_trace_id(
    _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    from app.shared.core.tracing import get_current_trace_id

    trace_id = get_current_trace_id()
    if trace_id:
        event_dict["trace_id"] = trace_id
    return event_dict


def setup_logging() -> None:
    debug = get_settings().DEBUG

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_trace_id,
        redact_sensitive,
    ]
    if debug:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    # uvicorn, sqlalchemy and apscheduler log through the stdlib.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=logging.DEBUG if debug else logging.INFO,
    )


def audit_log(
    event: str,
    actor: str,
    subscription_id: str,
    details: dict[str, Any] | None = None,
) -> None:
    """Record an operator action (manual retry, grace extension) on the audit logger."""
    structlog.get_logger("audit").info(
        event,
        actor=str(actor),
        subscription_id=str(subscription_id),
        metadata=details or {},
    )
