"""structlog configuration for the runtime and its diagnostics CLI.

Log entries are structured key/value events. Authorization material that
travels with requests and error reports is masked before rendering, so a
debug log can be shared without leaking session tokens.
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Mapping, MutableMapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from resilient_ui.config import LoggingSettings

_VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

SECRET_KEYS = frozenset({"token", "auth_token", "authToken", "nonce"})
MASK = "***"


def generate_session_id() -> str:
    """Generate a unique session identifier.

    Returns:
        A ``sess_``-prefixed identifier for the current UI session.
    """
    return f"sess_{uuid.uuid4().hex}"


def _mask(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            key: MASK if key in SECRET_KEYS and item else _mask(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_mask(item) for item in value]
    return value


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking authorization values, nested ones too."""
    for key, value in list(event_dict.items()):
        if key in SECRET_KEYS and value:
            event_dict[key] = MASK
        elif isinstance(value, Mapping | list):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: str | Path | None = None,
    session_id: str | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name, case-insensitive.
        fmt: ``"console"`` for human-readable output or ``"json"``.
        log_file: Optional file receiving the same output as stderr.
        session_id: Bound to every subsequent entry when given.

    Raises:
        ValueError: If ``level`` is not a recognized log level.
    """
    level_upper = level.upper()
    if level_upper not in _VALID_LEVELS:
        msg = f"Invalid log level: {level!r}. Must be one of {list(_VALID_LEVELS)}"
        raise ValueError(msg)
    numeric_level = logging.getLevelNamesMapping()[level_upper]

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(str(log_file), encoding="utf-8"))

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    # Re-configuration replaces handlers instead of stacking them
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    if session_id:
        structlog.contextvars.bind_contextvars(session_id=session_id)


def configure_from_settings(
    settings: LoggingSettings, session_id: str | None = None
) -> None:
    """Apply a ``LoggingSettings`` block."""
    configure_logging(
        level=settings.level,
        fmt=settings.format,
        log_file=settings.file,
        session_id=session_id,
    )


@contextmanager
def component_context(
    component: str,
    **extra: Any,
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Bind ``component`` (and ``extra``) to every entry logged inside.

    Start and end are logged; an exception escaping the block is logged
    with its traceback and re-raised.

    Example::

        with component_context("state") as log:
            log.info("loading_document")
    """
    structlog.contextvars.bind_contextvars(component=component, **extra)
    log: structlog.stdlib.BoundLogger = structlog.get_logger(component)
    log.debug("component_start")
    try:
        yield log
    except Exception:
        log.exception("component_error")
        raise
    finally:
        log.debug("component_end")
        structlog.contextvars.unbind_contextvars("component", *extra)
