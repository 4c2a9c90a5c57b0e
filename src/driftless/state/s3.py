"""S3 state backend with a DynamoDB lock table."""

from __future__ import annotations

import json
import logging
from typing import Any

import aioboto3  # type: ignore[import-untyped]
from botocore.exceptions import ClientError

from ..exceptions import LockHeldError, StateError
from ..models import LockInfo, StateRecord
from .base import decode_state, encode_state, new_lock_info

logger = logging.getLogger(__name__)

LOCK_KEY_ATTR = "LockID"


class S3StateStore:
    """
    State stored as a single S3 object.

    S3 ``PutObject`` replaces an object atomically, so a failed save leaves the
    previous document in place. Runs are serialized with a conditional
    ``PutItem`` into a DynamoDB table keyed by ``LockID``.

    Args:
        bucket: S3 bucket name
        key: Object key of the state document
        lock_table: DynamoDB table used for locking
        region: AWS region (default: use boto3 defaults)
        endpoint_url: Optional endpoint URL (for LocalStack or other AWS-compatible services)
    """

    def __init__(
        self,
        bucket: str,
        key: str,
        lock_table: str,
        region: str | None = None,
        endpoint_url: str | None = None,
    ) -> None:
        self.bucket = bucket
        self.key = key
        self.lock_table = lock_table
        self.region = region
        self.endpoint_url = endpoint_url
        self._session: aioboto3.Session | None = None
        self._s3: Any = None
        self._dynamodb: Any = None

    @property
    def location(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    @property
    def lock_id(self) -> str:
        return f"{self.bucket}/{self.key}"

    async def _client(self, service: str) -> Any:
        """Get or create the S3 or DynamoDB client."""
        attr = "_s3" if service == "s3" else "_dynamodb"
        client = getattr(self, attr)
        if client is not None:
            return client

        if self._session is None:
            self._session = aioboto3.Session()

        kwargs: dict[str, Any] = {}
        if self.region:
            kwargs["region_name"] = self.region
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url

        client = await self._session.client(service, **kwargs).__aenter__()
        setattr(self, attr, client)
        return client

    async def close(self) -> None:
        """Close the S3 and DynamoDB clients."""
        for attr in ("_s3", "_dynamodb"):
            client = getattr(self, attr)
            if client is not None:
                await client.__aexit__(None, None, None)
                setattr(self, attr, None)
        self._session = None

    # -------------------------------------------------------------------------
    # State document
    # -------------------------------------------------------------------------

    async def load(self) -> dict[str, StateRecord]:
        s3 = await self._client("s3")
        try:
            response = await s3.get_object(Bucket=self.bucket, Key=self.key)
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                return {}
            raise StateError(f"Cannot read state {self.location}: {e}") from e
        data = await response["Body"].read()
        return decode_state(data, self.location)

    async def save(self, records: dict[str, StateRecord]) -> None:
        s3 = await self._client("s3")
        try:
            await s3.put_object(
                Bucket=self.bucket,
                Key=self.key,
                Body=encode_state(records),
                ContentType="application/json",
            )
        except ClientError as e:
            raise StateError(f"Cannot write state {self.location}: {e}") from e
        logger.debug("Saved %d record(s) to %s", len(records), self.location)

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    async def create_lock_table(self) -> None:
        """Create the DynamoDB lock table if it doesn't exist."""
        client = await self._client("dynamodb")
        try:
            await client.create_table(
                TableName=self.lock_table,
                KeySchema=[{"AttributeName": LOCK_KEY_ATTR, "KeyType": "HASH"}],
                AttributeDefinitions=[{"AttributeName": LOCK_KEY_ATTR, "AttributeType": "S"}],
                BillingMode="PAY_PER_REQUEST",
            )
            waiter = client.get_waiter("table_exists")
            await waiter.wait(TableName=self.lock_table)
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceInUseException":
                raise

    async def lock(self, run_id: str) -> LockInfo:
        client = await self._client("dynamodb")
        info = new_lock_info(run_id)
        try:
            await client.put_item(
                TableName=self.lock_table,
                Item={
                    LOCK_KEY_ATTR: {"S": self.lock_id},
                    "RunId": {"S": run_id},
                    "Info": {"S": json.dumps(info.to_dict())},
                },
                ConditionExpression="attribute_not_exists(LockID)",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise LockHeldError(self.location, await self._read_lock()) from None
            raise
        logger.debug("Acquired lock %s for run %s", self.lock_id, run_id)
        return info

    async def _read_lock(self) -> LockInfo | None:
        client = await self._client("dynamodb")
        response = await client.get_item(
            TableName=self.lock_table,
            Key={LOCK_KEY_ATTR: {"S": self.lock_id}},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        try:
            return LockInfo.from_dict(json.loads(item["Info"]["S"]))
        except (KeyError, ValueError):
            return None

    async def unlock(self, run_id: str) -> None:
        client = await self._client("dynamodb")
        try:
            await client.delete_item(
                TableName=self.lock_table,
                Key={LOCK_KEY_ATTR: {"S": self.lock_id}},
                ConditionExpression="RunId = :run_id",
                ExpressionAttributeValues={":run_id": {"S": run_id}},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                raise
            logger.warning("Not releasing lock %s: not held by run %s", self.lock_id, run_id)

    async def force_unlock(self) -> LockInfo | None:
        current = await self._read_lock()
        client = await self._client("dynamodb")
        await client.delete_item(
            TableName=self.lock_table,
            Key={LOCK_KEY_ATTR: {"S": self.lock_id}},
        )
        return current
