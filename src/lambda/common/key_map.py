"""Program code to KMS key mapping, cached for the life of the process."""

import logging
import threading
from typing import Dict, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from common.database import eastern_now
from common.exceptions import ConfigurationError, KeyResolutionError
from common.logger import get_logger, log_with_context
from common.models import KeyMapping

logger = get_logger(__name__)

ATTR_PROGRAM_CODE = "programcode"
ATTR_ARN = "arn"
ATTR_ALIAS = "alias"
ATTR_CLIENT_CODE = "clientcode"
ATTR_SYSTEM_NAME = "systemname"
ATTR_COUNTRY_CODE = "countrycode"
ATTR_CREATED_DATE = "createddate"

# More than one row per program code is unexpected
QUERY_LIMIT = 5


def _string_attr(item: dict, name: str) -> str:
    return (item.get(name) or {}).get("S") or ""


class EncryptionKeyMapCache:
    """Resolves program codes to KMS keys via a DynamoDB table.

    Only successful lookups are cached, so a missing mapping is looked up
    again on the next message.
    """

    def __init__(self, table_name: str, dynamodb_client=None, create_request_table: str = ""):
        self.table_name = table_name
        self.create_request_table = create_request_table
        self._client = dynamodb_client
        self._cache: Dict[str, KeyMapping] = {}
        self._lock = threading.Lock()

    def _dynamodb(self):
        if self._client is None:
            self._client = boto3.client("dynamodb")
        return self._client

    def resolve(
        self, program_code: Optional[str], request_id: str = ""
    ) -> Tuple[Optional[KeyMapping], Optional[Exception]]:
        if not program_code or not program_code.strip():
            return None, KeyResolutionError("Program code is empty")
        if not self.table_name:
            error = ConfigurationError("KMS_MAP_TABLE is not configured")
            log_with_context(
                logger, logging.ERROR, str(error),
                request_id=request_id, event="DynamoDB.Table.Missing", error=error,
            )
            return None, error

        cache_key = program_code.strip().lower()
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached, None

        try:
            response = self._dynamodb().query(
                TableName=self.table_name,
                KeyConditionExpression=f"{ATTR_PROGRAM_CODE} = :pc",
                ExpressionAttributeValues={":pc": {"S": program_code}},
                Limit=QUERY_LIMIT,
                ConsistentRead=False,
            )
        except Exception as e:
            log_with_context(
                logger, logging.ERROR, f"Key map query failed ProgramCode={program_code}",
                request_id=request_id, event="DynamoDB.KMS.Exception", error=e,
            )
            return None, KeyResolutionError(
                f"Key map query failed for program code {program_code}: {e}"
            )

        items = response.get("Items") or []
        if not items:
            error = KeyResolutionError(
                f"No mapping for programcode: {program_code} found in table: {self.table_name}",
                details={"program_code": program_code},
            )
            log_with_context(
                logger, logging.ERROR, str(error),
                request_id=request_id, event="DynamoDB.KMS.Program.NoMap", error=error,
            )
            return None, error

        item = items[0]
        arn = _string_attr(item, ATTR_ARN)
        if not arn.strip():
            error = KeyResolutionError(
                f"Mapping for programcode: {program_code} is missing the {ATTR_ARN} attribute",
                details={"program_code": program_code},
            )
            log_with_context(
                logger, logging.ERROR, str(error),
                request_id=request_id, event="DynamoDB.KMS.Program.NoMap", error=error,
            )
            return None, error

        mapping = KeyMapping(
            program_code=program_code,
            key_arn=arn,
            key_alias=_string_attr(item, ATTR_ALIAS),
            client_code=_string_attr(item, ATTR_CLIENT_CODE),
            target_region=_string_attr(item, ATTR_SYSTEM_NAME),
        )
        with self._lock:
            self._cache.setdefault(cache_key, mapping)
        return mapping, None

    def request_key_creation(
        self, program_code: str, request_id: str = ""
    ) -> Tuple[bool, Optional[Exception]]:
        """Record that a KMS key must be created for ``program_code``.

        An existing request, including one written concurrently by another
        worker, counts as success.
        """
        if not program_code or not program_code.strip():
            return False, KeyResolutionError("Program code is empty")
        if not self.create_request_table:
            return False, ConfigurationError("KMS_CREATE_REQUEST_TABLE is not configured")

        client_code = program_code[0:3]
        country_code = program_code[4:6].upper()

        try:
            existing = self._dynamodb().query(
                TableName=self.create_request_table,
                KeyConditionExpression=f"{ATTR_PROGRAM_CODE} = :pc",
                ExpressionAttributeValues={":pc": {"S": program_code}},
                Limit=1,
                ConsistentRead=False,
            )
            if existing.get("Count", 0) > 0:
                log_with_context(
                    logger, logging.INFO, f"programcode={program_code} already present",
                    request_id=request_id, event="KMS.CreateRequest.Exists",
                )
                return True, None

            self._dynamodb().put_item(
                TableName=self.create_request_table,
                Item={
                    ATTR_PROGRAM_CODE: {"S": program_code},
                    ATTR_CLIENT_CODE: {"S": client_code},
                    ATTR_COUNTRY_CODE: {"S": country_code},
                    ATTR_CREATED_DATE: {"S": eastern_now().isoformat()},
                },
                ConditionExpression=f"attribute_not_exists({ATTR_PROGRAM_CODE})",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                log_with_context(
                    logger, logging.INFO,
                    f"Another writer inserted programcode={program_code} concurrently",
                    request_id=request_id, event="KMS.CreateRequest.RaceWinOther",
                )
                return True, None
            log_with_context(
                logger, logging.ERROR,
                f"Failed ensuring create request programcode={program_code}",
                request_id=request_id, event="KMS.CreateRequest.Exception", error=e,
            )
            return False, e
        except Exception as e:
            log_with_context(
                logger, logging.ERROR,
                f"Failed ensuring create request programcode={program_code}",
                request_id=request_id, event="KMS.CreateRequest.Exception", error=e,
            )
            return False, e

        log_with_context(
            logger, logging.INFO,
            f"Create request inserted programcode={program_code} country={country_code}",
            request_id=request_id, event="KMS.CreateRequest.Inserted",
        )
        return True, None
