"""Structured logging for the controller, built on structlog."""

import logging
import os
import sys
from typing import Any, List

import structlog

# Client libraries that log every request at INFO.
QUIET_LOGGERS = ("kubernetes", "urllib3", "httpx", "httpcore")


def resolve_level(verbose: bool = False) -> str:
    """``DEBUG`` when verbose, else ``LOG_LEVEL`` if it names a level, else ``INFO``."""
    if verbose:
        return "DEBUG"
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    return level if isinstance(logging.getLevelName(level), int) else "INFO"


def setup_logging(verbose: bool = False) -> None:
    """Route stdlib logging to stdout and configure structlog on top of it.

    ``LOG_FORMAT=json`` switches to one JSON object per line.
    """
    level = resolve_level(verbose)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)

    structlog.configure(
        processors=_processors(),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    structlog.get_logger(__name__).info("Logging configured", log_level=level, verbose=verbose)


def _processors() -> List[Any]:
    chain: List[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if os.getenv("LOG_FORMAT", "console").lower() == "json":
        chain.append(structlog.processors.JSONRenderer())
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty(),
                                                   exception_formatter=structlog.dev.plain_traceback))
    return chain


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_function_entry(logger: structlog.stdlib.BoundLogger, func_name: str, **kwargs: Any) -> None:
    logger.debug("Function entry", function=func_name, **kwargs)


def log_function_exit(logger: structlog.stdlib.BoundLogger, func_name: str, **kwargs: Any) -> None:
    logger.debug("Function exit", function=func_name, **kwargs)


def log_api_request(logger: structlog.stdlib.BoundLogger, method: str, path: str, **kwargs: Any) -> None:
    """Log an incoming HTTP request on the status API."""
    logger.info("API request", method=method, path=path, **kwargs)


def log_api_response(logger: structlog.stdlib.BoundLogger, method: str, path: str, status_code: int, **kwargs: Any) -> None:
    """Log the status API's reply to a request."""
    logger.info("API response", method=method, path=path, status_code=status_code, **kwargs)


def log_k8s_operation(logger: structlog.stdlib.BoundLogger, operation: str, kind: str, **kwargs: Any) -> None:
    """Log an object store operation.

    Args:
        logger: The logger instance
        operation: get, list, create, update, delete
        kind: Kubernetes kind the operation targets
        **kwargs: Additional operation details
    """
    logger.debug("Kubernetes operation", operation=operation, kind=kind, **kwargs)


def log_directory_operation(logger: structlog.stdlib.BoundLogger, operation: str, service: str, **kwargs: Any) -> None:
    """Log a tailnet directory call."""
    logger.debug("Directory operation", operation=operation, service=service, **kwargs)


def log_reconcile_event(logger: structlog.stdlib.BoundLogger, event_type: str, key: str, **kwargs: Any) -> None:
    """Log reconcile lifecycle events.

    Args:
        logger: The logger instance
        event_type: Type of reconcile event
        key: namespace/name of the Ingress
        **kwargs: Event details
    """
    logger.info("Reconcile event", event_type=event_type, key=key, **kwargs)
