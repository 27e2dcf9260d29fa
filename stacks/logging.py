"""
Structured logging configuration using structlog.

The CDK CLI reads the synthesized cloud assembly from disk and echoes the
app's standard streams, so logs go to stderr to keep them apart from any
tooling that parses stdout.

Usage:
    from stacks.logging import get_logger

    logger = get_logger(__name__)
    logger.info("vpc_declared", cidr="10.0.0.0/16", max_azs=2)

Context keys in cdk.json control the output:
    - log_json: true for JSON lines (CI), false for colored console output
    - log_level: minimum level (DEBUG, INFO, WARNING, ...)
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor


def _add_stack_field(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Rename stack_name to stack for shorter log lines.

    Ensures the field is always a string, since CDK construct paths can be
    passed in as tokens.
    """
    if "stack_name" in event_dict:
        event_dict["stack"] = str(event_dict.pop("stack_name"))
    return event_dict


def configure_logging(json_format: bool = False, log_level: str = "INFO") -> None:
    """
    Configure structlog for the CDK app.

    Uses stdlib integration so records from other libraries share the same format.

    Args:
        json_format: If True, output JSON (CI pipelines). If False, pretty console output.
        log_level: Minimum log level to output.
    """
    log_level_int = getattr(logging, log_level.upper(), logging.INFO)

    # Processors that run before passing to stdlib
    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _add_stack_field,
    ]

    if json_format:
        renderer: Processor = structlog.processors.JSONRenderer()
        pre_chain.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level_int)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name, typically __name__ of the calling module.

    Returns:
        A bound structlog logger with context support.
    """
    return structlog.get_logger(name)


def bind_contextvars(**kwargs: Any) -> None:
    """
    Bind key-value pairs to the current context.

    These values are included in every subsequent log message, e.g. the
    target account and region for the whole synth run.
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_contextvars() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
