"""
Structured logging configuration.

Uses structlog for JSON-formatted logs. Request, order and event ids are
bound through contextvars so every line written while handling a delivery
or an order carries them. Stripe credentials and checkout client secrets
are masked before rendering.
"""
import logging
import re
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from pythonjsonlogger import jsonlogger

from marketplace_payments.config import get_settings

REDACTED = "[redacted]"

# Field names whose values are never logged
SENSITIVE_KEYS = frozenset(
    {
        "client_secret",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "webhook_secret",
        "api_key",
        "authorization",
        "stripe_signature",
        "signature_header",
    }
)

# Secret-shaped values: API keys, webhook secrets, payment intent client secrets
_SECRET_VALUE = re.compile(r"(sk|rk)_(test|live)_\w+|whsec_\w+|\w+_secret_\w+")


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _SECRET_VALUE.sub(REDACTED, value)
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else _scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    return value


def redact_secrets(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Mask Stripe credentials and client secrets in log events.

    Keys listed in ``SENSITIVE_KEYS`` are replaced outright; any other
    string (nested values included) has secret-shaped substrings masked.

    Args:
        logger: Logger instance
        method_name: Log method name
        event_dict: Event dictionary

    Returns:
        dict[str, Any]: Event dictionary without secrets
    """
    return _scrub(event_dict)


def add_app_context(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add application name, environment and Stripe mode to log events."""
    settings = get_settings()
    event_dict["app_name"] = settings.app_name
    event_dict["app_env"] = settings.app_env
    event_dict["stripe_mode"] = "test" if settings.is_test_mode else "live"
    return event_dict


@contextmanager
def payment_context(
    order_id: Optional[str] = None,
    event_id: Optional[str] = None,
    **ids: Optional[str],
) -> Iterator[None]:
    """
    Bind payment identifiers to every log line written inside the block.

    ``None`` values are skipped, so callers can pass whatever references
    they have. Bindings are restored on exit.

    Args:
        order_id: Order being worked on
        event_id: Webhook or outbox event being handled
        **ids: Further identifiers (``seller_id``, ``refund_id``, ...)
    """
    bound = {
        key: value
        for key, value in dict(ids, order_id=order_id, event_id=event_id).items()
        if value is not None
    }
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def setup_logging() -> None:
    """
    Configure structured logging with JSON formatter.

    Sets up:
    - JSON-formatted logs
    - Request, order and event ids from contextvars
    - Secret redaction before rendering
    """
    settings = get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_app_context,
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Library records (uvicorn, sqlalchemy) share the JSON layout
    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "timestamp",
                "levelname": "level",
                "name": "logger",
            },
        )
    )
    root_logger.addHandler(json_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        stripe_mode="test" if settings.is_test_mode else "live",
    )
