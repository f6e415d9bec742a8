"""DynamoDB-backed checkpoint store."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from aiobotocore.session import AioSession
from botocore.exceptions import BotoCoreError, ClientError

from streamcouch.config import DynamoDBSettings
from streamcouch.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

KEY_ATTRIBUTE = "key"
VALUE_ATTRIBUTE = "value"


def _error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


class DynamoDBSequenceStore:
    """
    Checkpoint storage in a two-attribute DynamoDB table.

    The table is keyed by ``key`` (hash key, string) and holds the token in
    ``value``. Reads are strongly consistent so the engine always sees the
    latest write made by this process or a previous instance.

    Use ``await DynamoDBSequenceStore.create(settings)``: it opens the
    client and, when ``create_table`` is set, provisions the table and
    blocks until it is ACTIVE.
    """

    def __init__(
        self,
        client: Any,
        table_name: str,
        *,
        client_cm: Any = None,
    ) -> None:
        self._client = client
        self._client_cm = client_cm
        self.table_name = table_name

    @classmethod
    async def create(
        cls,
        settings: DynamoDBSettings,
        *,
        session: AioSession | None = None,
    ) -> "DynamoDBSequenceStore":
        """Open a client from settings and optionally provision the table."""
        session = session or AioSession()
        client_kwargs: dict[str, Any] = {}
        if settings.region:
            client_kwargs["region_name"] = settings.region
        if settings.local_url:
            logger.info("using local DynamoDB", extra={"url": settings.local_url})
            client_kwargs["endpoint_url"] = settings.local_url

        client_cm = session.create_client("dynamodb", **client_kwargs)
        try:
            client = await client_cm.__aenter__()
        except (BotoCoreError, ClientError) as e:
            raise StoreUnavailableError(f"unable to open DynamoDB client: {e}") from e

        store = cls(client, settings.table, client_cm=client_cm)
        if settings.create_table:
            try:
                await store.create_table(
                    poll_interval=settings.poll_interval,
                    timeout=settings.provision_timeout,
                )
            except Exception:
                await store.close()
                raise
        return store

    async def create_table(
        self,
        poll_interval: float = 1.0,
        timeout: float | None = None,
    ) -> None:
        """
        Create the table if it does not exist, then wait for it to be ACTIVE.

        Args:
            poll_interval: Seconds between ``describe_table`` calls
            timeout: Maximum seconds to wait (None = no limit)

        Raises:
            StoreUnavailableError: On API errors or when the timeout expires
        """
        try:
            await self._client.describe_table(TableName=self.table_name)
        except ClientError as e:
            if _error_code(e) != "ResourceNotFoundException":
                raise StoreUnavailableError(f"describe_table failed: {e}") from e
            logger.info("creating table", extra={"table_name": self.table_name})
            try:
                await self._client.create_table(
                    TableName=self.table_name,
                    AttributeDefinitions=[
                        {"AttributeName": KEY_ATTRIBUTE, "AttributeType": "S"},
                    ],
                    KeySchema=[
                        {"AttributeName": KEY_ATTRIBUTE, "KeyType": "HASH"},
                    ],
                    BillingMode="PAY_PER_REQUEST",
                )
            except (BotoCoreError, ClientError) as create_error:
                raise StoreUnavailableError(
                    f"create_table failed: {create_error}"
                ) from create_error
        except BotoCoreError as e:
            raise StoreUnavailableError(f"describe_table failed: {e}") from e

        deadline = time.monotonic() + timeout if timeout is not None else None
        while True:
            logger.info(
                "waiting for table to become available",
                extra={"table_name": self.table_name},
            )
            try:
                response = await self._client.describe_table(TableName=self.table_name)
            except (BotoCoreError, ClientError) as e:
                raise StoreUnavailableError(f"describe_table failed: {e}") from e

            if response["Table"]["TableStatus"] == "ACTIVE":
                break

            if deadline is not None and time.monotonic() >= deadline:
                raise StoreUnavailableError(
                    f"table {self.table_name} not ACTIVE after {timeout}s"
                )
            await asyncio.sleep(poll_interval)

        logger.info("table is available", extra={"table_name": self.table_name})

    async def get(self, key: str) -> str | None:
        try:
            response = await self._client.get_item(
                TableName=self.table_name,
                Key={KEY_ATTRIBUTE: {"S": key}},
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as e:
            raise StoreUnavailableError(f"get_item failed: {e}") from e

        item = response.get("Item")
        if not item:
            return None
        value = item.get(VALUE_ATTRIBUTE, {})
        return value.get("S")

    async def set(self, key: str, value: str) -> None:
        try:
            await self._client.put_item(
                TableName=self.table_name,
                Item={
                    KEY_ATTRIBUTE: {"S": key},
                    VALUE_ATTRIBUTE: {"S": value},
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise StoreUnavailableError(f"put_item failed: {e}") from e

    async def close(self) -> None:
        """Close the client if this store opened it."""
        if self._client_cm is not None:
            await self._client_cm.__aexit__(None, None, None)
            self._client_cm = None
