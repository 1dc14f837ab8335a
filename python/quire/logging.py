"""structlog setup and request-scoped log context.

Every entry carries whatever of these is known for the current request:
request_id, path, method, session_id, run_id. Values are held in ContextVars
so they follow the request across the threadpool hop FastAPI makes for sync
handlers.

Credentials never reach the output: `mask_credentials` replaces anything
JWT-shaped before rendering, as a backstop to `services.redact.safe_kv`.
"""

import logging
import re
import sys
from contextvars import ContextVar

import structlog

CONTEXT_FIELDS = ("request_id", "path", "method", "session_id", "run_id")

_context: dict[str, ContextVar[str | None]] = {
    name: ContextVar(name, default=None) for name in CONTEXT_FIELDS
}

_JWT_PATTERN = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]*")
MASKED_JWT = "[jwt]"

# Libraries that log full URLs or connection chatter at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "redis")


def add_request_context(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Processor: copy known context into the entry. Call-site keys win."""
    for name, var in _context.items():
        value = var.get()
        if value and name not in event_dict:
            event_dict[name] = value
    return event_dict


def mask_credentials(logger: logging.Logger, method_name: str, event_dict: dict) -> dict:
    """Processor: blank out bearer tokens that slipped into string values."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "eyJ" in value:
            event_dict[key] = _JWT_PATTERN.sub(MASKED_JWT, value)
    return event_dict


def configure_logging(json_format: bool = True, level: int = logging.INFO) -> None:
    """Install structlog and route stdlib loggers through the same renderer.

    Called once when `quire.app` is imported.
    """
    pre_chain = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        add_request_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        mask_credentials,
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = (
        structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def set_request_context(
    request_id: str | None, path: str | None = None, method: str | None = None
) -> None:
    """Start the log context for a request. Path never includes the query string."""
    _context["request_id"].set(request_id)
    if path is not None:
        _context["path"].set(path)
    if method is not None:
        _context["method"].set(method)


def set_session_context(session_id: str | None, run_id: str | None = None) -> None:
    """Bind the publish session, and the calling run for runner callbacks."""
    _context["session_id"].set(session_id)
    if run_id is not None:
        _context["run_id"].set(run_id)


def clear_request_context() -> None:
    for var in _context.values():
        var.set(None)


def get_request_id() -> str | None:
    return _context["request_id"].get()
