"""SQS helpers for deferring a message without failing it permanently."""

import logging

from common.logger import get_logger, log_with_context

logger = get_logger(__name__)

# SQS visibility timeout ceiling (12 hours)
MAX_VISIBILITY_TIMEOUT_SECONDS = 43200


def receive_count(record: dict) -> int:
    """``ApproximateReceiveCount`` of an SQS event record, 1 when absent."""
    value = (record.get("attributes") or {}).get("ApproximateReceiveCount")
    try:
        return int(value)
    except (TypeError, ValueError):
        return 1


def defer_message(
    sqs_client, queue_url: str, record: dict, delay_seconds: int, request_id: str = ""
) -> int:
    """Hide a message from consumers for ``delay_seconds`` (clamped)."""
    seconds = max(0, min(int(delay_seconds), MAX_VISIBILITY_TIMEOUT_SECONDS))
    sqs_client.change_message_visibility(
        QueueUrl=queue_url,
        ReceiptHandle=record["receiptHandle"],
        VisibilityTimeout=seconds,
    )
    log_with_context(
        logger, logging.INFO,
        f"Deferred message MessageId={record.get('messageId')} for {seconds} seconds",
        request_id=request_id, event="SQS.Visibility.Extended",
    )
    return seconds
