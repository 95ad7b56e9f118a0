"""CopyRecording Lambda: SQS batch entry point for recording migration."""

import logging
import threading

from common.config import ProcessorConfig
from common.exceptions import KeyDeferredError
from common.logger import configure_sdk_logging, get_logger, log_with_context
from copy_recording.processor import MessageProcessor

logger = get_logger(__name__)

_processor = None
_processor_lock = threading.Lock()


def get_processor() -> MessageProcessor:
    """Build the processor once per container; caches survive across invocations."""
    global _processor
    if _processor is None:
        with _processor_lock:
            if _processor is None:
                config = ProcessorConfig.from_env()
                configure_sdk_logging(config.verbose_logging)
                _processor = MessageProcessor.from_config(config)
    return _processor


def handler(event: dict, context) -> dict:
    """Process each SQS record and report the ones to redeliver.

    Input event (SQS trigger with ReportBatchItemFailures):
        {"Records": [{"messageId": "...", "receiptHandle": "...", "body": "{...}",
                      "attributes": {"ApproximateReceiveCount": "1"}}]}

    Returns:
        {"batchItemFailures": [{"itemIdentifier": "<messageId>"}]}
    """
    request_id = getattr(context, "aws_request_id", "local")
    records = event.get("Records") or []

    log_with_context(
        logger, logging.INFO, "CopyRecording started",
        request_id=request_id, record_count=len(records),
    )

    processor = get_processor()
    failures = []
    for record in records:
        message_id = record.get("messageId", "")
        try:
            stage = processor.process(record)
            log_with_context(
                logger, logging.INFO, f"Message {message_id} completed at {stage.value}",
                request_id=request_id, message_id=message_id,
            )
        except KeyDeferredError as e:
            log_with_context(
                logger, logging.WARNING, str(e),
                request_id=request_id, event="SQS.Message.Deferred", message_id=message_id,
            )
            failures.append({"itemIdentifier": message_id})
        except Exception as e:
            log_with_context(
                logger, logging.ERROR, f"Message {message_id} failed: {e}",
                request_id=request_id, event="SQS.Message.Failed",
                error=e, message_id=message_id,
            )
            failures.append({"itemIdentifier": message_id})

    log_with_context(
        logger, logging.INFO, "CopyRecording completed",
        request_id=request_id, record_count=len(records), failed=len(failures),
    )
    return {"batchItemFailures": failures}
