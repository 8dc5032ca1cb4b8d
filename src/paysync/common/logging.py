import logging
import re
import sys
import structlog
from typing import Any, Dict

SENSITIVE_KEYS = {"token", "consumer_secret", "consumer_key", "api_key", "password", "secret", "signature"}

# Secrets that end up inside free-text messages (e.g. an exception echoing a request body).
SECRET_PATTERNS = [
    re.compile(r"(password['\":\s]*[:=]\s*['\"]?)[^'\",\s}]+", re.IGNORECASE),
    re.compile(r"(token['\":\s]*[:=]\s*['\"]?)[^'\",\s}]+", re.IGNORECASE),
    re.compile(r"(secret['\":\s]*[:=]\s*['\"]?)[^'\",\s}]+", re.IGNORECASE),
    re.compile(r"(api[_-]?key['\":\s]*[:=]\s*['\"]?)[^'\",\s}]+", re.IGNORECASE),
    re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+"),
]


def sanitize_message(message: str) -> str:
    for pattern in SECRET_PATTERNS:
        message = pattern.sub(r"\1***REDACTED***", message)
    return message


def redact_secrets(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Processor that masks credential-like values before rendering.
    Gateway tokens and consumer secrets must never reach log storage.
    """
    for key in list(event_dict.keys()):
        if key in SENSITIVE_KEYS and event_dict[key]:
            event_dict[key] = "***REDACTED***"
        elif isinstance(event_dict[key], str) and key in ("event", "error"):
            event_dict[key] = sanitize_message(event_dict[key])
    return event_dict


def add_temporal_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """
    Processor to rename Temporal's 'extra' fields.
    structlog.stdlib.ProcessorFormatter merges 'extra' from stdlib records into event_dict,
    so the notification worker's logs carry workflow ids under short names.
    """
    if "temporal_workflow_id" in event_dict:
        event_dict["workflow_id"] = event_dict.pop("temporal_workflow_id")
    if "temporal_run_id" in event_dict:
        event_dict["run_id"] = event_dict.pop("temporal_run_id")
    if "temporal_activity_id" in event_dict:
        event_dict["activity_id"] = event_dict.pop("temporal_activity_id")

    return event_dict


def configure_logging(level: int = logging.INFO):
    """
    Configure structured logging for the application.
    Interprets stdlib logging calls and outputs JSON.
    """

    # Processors applied to all loggers
    processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.contextvars.merge_contextvars, # tracking_id bound per reconciliation
        add_temporal_context,
        redact_secrets,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route stdlib logging (uvicorn, temporalio, httpx) through the same processors.
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    ))

    root_logger = logging.getLogger()
    # configure_logging runs on every app startup; don't stack handlers
    for existing in [h for h in root_logger.handlers if getattr(h, "paysync_handler", False)]:
        root_logger.removeHandler(existing)
    handler.paysync_handler = True
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    logging.getLogger("temporalio").setLevel(logging.INFO)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    # httpx logs full request URLs at INFO, which include tracking ids in query strings
    logging.getLogger("httpx").setLevel(logging.WARNING)
