"""Move-and-finalize audit protocol.

The in-progress row for a request lives in ``dbo.azure_to_aws_request``.
Finalizing copies it into ``audit.azure_to_aws_request``, deletes it from the
primary table and appends a terminal status row, all in one transaction.
"""

import logging
import traceback
from datetime import datetime, timezone
from typing import Callable, Optional

from common import database
from common.logger import get_logger, log_with_context
from common.models import Status, TransferRequest
from common.secret_cache import SecretConnectionCache

logger = get_logger(__name__)

SELECT_IN_PROGRESS = """
    SELECT calldetailid, audiofile, status, createdby, createddate
      FROM dbo.azure_to_aws_request
     WHERE calldetailid = %(call_detail_id)s
       AND lower(audiofile) = lower(%(audio_file)s)
     LIMIT 1
       FOR UPDATE
"""

DELETE_IN_PROGRESS = """
    DELETE FROM dbo.azure_to_aws_request
     WHERE calldetailid = %(call_detail_id)s
       AND lower(audiofile) = lower(%(audio_file)s)
"""

INSERT_AUDIT = """
    INSERT INTO audit.azure_to_aws_request
        (calldetailid, audiofile, status, errordescription, requestid,
         createddate, createdby, updateddate, updatedby)
    VALUES
        (%(call_detail_id)s, %(audio_file)s, %(status)s, %(error_description)s,
         %(request_id)s, %(created_date)s, %(created_by)s, %(updated_date)s,
         %(updated_by)s)
"""

INSERT_IN_PROGRESS = """
    INSERT INTO dbo.azure_to_aws_request
        (calldetailid, audiofile, status, createdby, createddate)
    VALUES
        (%(call_detail_id)s, %(audio_file)s, %(status)s, %(created_by)s,
         %(created_date)s)
"""


def _as_naive_utc(value: datetime) -> datetime:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def describe_error(error: Optional[BaseException]) -> Optional[str]:
    """Full description of an error, traceback included when it was raised."""
    if error is None:
        return None
    return "".join(
        traceback.format_exception(type(error), error, error.__traceback__)
    ).strip()


class AuditTrail:
    def __init__(
        self,
        connections: SecretConnectionCache,
        actor: str = "AzureToAWS.Lambda",
        command_timeout: int = 300,
        connect_timeout: int = 15,
        connect: Callable = database.connect,
    ):
        self.connections = connections
        self.actor = actor
        self.command_timeout = command_timeout
        self.connect_timeout = connect_timeout
        self._connect = connect

    def finalize(self, request: TransferRequest, error: Optional[BaseException] = None) -> bool:
        """Archive the in-progress row and record SUCCESS or ERROR.

        Returns True only when the transaction committed.
        """
        status = Status.SUCCESS if error is None else Status.ERROR
        return self._move(request, error, status)

    def mark_key_wait(self, request: TransferRequest, error: Optional[BaseException] = None) -> bool:
        """Archive the in-progress row and re-open it as KMSKEYWAIT."""
        return self._move(request, error, Status.KMSKEYWAIT)

    def _move(self, request: TransferRequest, error: Optional[BaseException], status: Status) -> bool:
        connection_string = self.connections.resolve(request.country_code, writer=True)
        if not connection_string:
            log_with_context(
                logger, logging.ERROR,
                f"Database connection string not configured for countrycode:{request.country_code} Writer",
                request_id=request.request_id, event="Status_Update_Conn_Empty",
            )
            return False

        key = {"call_detail_id": request.call_detail_id, "audio_file": request.audio_file}
        try:
            conn = self._connect(
                connection_string,
                command_timeout=self.command_timeout,
                connect_timeout=self.connect_timeout,
            )
        except Exception as e:
            log_with_context(
                logger, logging.ERROR,
                f"Audit connection failed CallDetailID={request.call_detail_id}",
                request_id=request.request_id, event="Status_Exception", error=e,
            )
            return False

        try:
            with conn.cursor() as cur:
                cur.execute(SELECT_IN_PROGRESS, key)
                source = cur.fetchone()

                if source is not None:
                    cur.execute(INSERT_AUDIT, {
                        "call_detail_id": source["calldetailid"],
                        "audio_file": source["audiofile"],
                        "status": source["status"],
                        "error_description": None,
                        "request_id": request.request_id,
                        "created_date": _as_naive_utc(source["createddate"]),
                        "created_by": source["createdby"],
                        "updated_date": database.eastern_now(),
                        "updated_by": self.actor,
                    })
                    cur.execute(DELETE_IN_PROGRESS, key)
                else:
                    log_with_context(
                        logger, logging.INFO,
                        f"Source row already moved (CallDetailID={request.call_detail_id})",
                        request_id=request.request_id, event="CallDetailid.Moved",
                    )

                if status is Status.KMSKEYWAIT:
                    cur.execute(INSERT_IN_PROGRESS, {
                        **key,
                        "status": status.value,
                        "created_by": self.actor,
                        "created_date": database.eastern_now(),
                    })
                else:
                    cur.execute(INSERT_AUDIT, {
                        **key,
                        "status": status.value,
                        "error_description": describe_error(error),
                        "request_id": request.request_id,
                        "created_date": database.eastern_now(),
                        "created_by": self.actor,
                        "updated_date": None,
                        "updated_by": None,
                    })
            conn.commit()
        except Exception as e:
            conn.rollback()
            log_with_context(
                logger, logging.ERROR,
                f"Audit finalize failed CallDetailID={request.call_detail_id}",
                request_id=request.request_id, event="Status_Exception", error=e,
            )
            return False
        finally:
            conn.close()

        log_with_context(
            logger, logging.INFO,
            f"Status '{status.value}' recorded CallDetailID={request.call_detail_id}",
            request_id=request.request_id, event=f"Status_Update_{status.value}",
        )
        return True
