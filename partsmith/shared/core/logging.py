import sys
import structlog
import logging
from typing import Any, cast
from partsmith.shared.core.config import get_settings


_SENSITIVE_FIELDS = {
    "password",
    "api_key",
    "apikey",
    "authorization",
    "database_url",
    "secret",
    "token",
}
_SENSITIVE_SUFFIXES = ("_password", "_secret", "_token", "_key")


def secret_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Blank credentials before rendering.
    Connection strings and API keys end up in log context through CLI arguments.
    """

    def is_sensitive_key(key: Any) -> bool:
        key_norm = str(key).lower().strip().replace("-", "_")
        return key_norm in _SENSITIVE_FIELDS or key_norm.endswith(_SENSITIVE_SUFFIXES)

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if is_sensitive_key(k) else redact_recursive(v))
                for k, v in data.items()
            }
        elif isinstance(data, list):
            return [redact_recursive(item) for item in data]
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        secret_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Library logs (sqlalchemy, apscheduler, uvicorn) go to the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
