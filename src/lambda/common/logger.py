"""JSON log lines for CloudWatch Logs Insights.

Every line carries the Lambda function name and the transfer request id so a
single recording can be traced across stages with one query.
"""

import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone

# SDK loggers switched to DEBUG when VERBOSE_LOGGING is on
SDK_LOGGERS = ("boto3", "botocore", "azure", "urllib3")


def _exception_block(exc_info) -> dict:
    exc_type, exc_value, exc_tb = exc_info
    return {
        "type": exc_type.__name__,
        "message": str(exc_value),
        "stacktrace": traceback.format_exception(exc_type, exc_value, exc_tb),
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record; ``extra_data`` keys are flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "function_name": os.environ.get("AWS_LAMBDA_FUNCTION_NAME", "local"),
            "request_id": getattr(record, "request_id", ""),
            "message": record.getMessage(),
        }

        event = getattr(record, "event", "")
        if event:
            entry["event"] = event
            entry["is_success"] = record.levelno < logging.ERROR

        fields = getattr(record, "extra_data", None)
        if isinstance(fields, dict):
            entry.update(fields)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = _exception_block(record.exc_info)

        return json.dumps(entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Logger writing JSON to stdout at ``LOG_LEVEL``; configured once per name."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(JSONFormatter())
    logger.addHandler(stream)
    logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
    logger.propagate = False
    return logger


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    request_id: str = "",
    event: str = "",
    error: BaseException | None = None,
    **kwargs,
) -> None:
    """Log a message with structured context data.

    ``event`` is a stable dotted key (``S3.Upload.Details``) that log
    queries can filter on. When ``error`` is given its traceback is attached.
    """
    exc_info = (type(error), error, error.__traceback__) if error is not None else None
    logger.log(
        level,
        message,
        extra={"request_id": request_id, "event": event, "extra_data": kwargs},
        exc_info=exc_info,
    )


def configure_sdk_logging(verbose: bool) -> None:
    """Route AWS and Azure SDK output through the JSON handler."""
    level = logging.DEBUG if verbose else logging.WARNING
    for name in SDK_LOGGERS:
        get_logger(name).setLevel(level)
