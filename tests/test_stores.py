"""Tests for checkpoint store backends."""

import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError
from pydantic import SecretStr
from redis.exceptions import ConnectionError as RedisConnectionError

from streamcouch.config import (
    DynamoDBSettings,
    FileStoreSettings,
    RedisSettings,
    SequenceStoreKind,
    Settings,
)
from streamcouch.errors import ConfigurationError, StoreUnavailableError
from streamcouch.stores import (
    STORE_BUILDERS,
    DynamoDBSequenceStore,
    FileSequenceStore,
    NullSequenceStore,
    RedisSequenceStore,
    SequenceStore,
    create_sequence_store,
    generate_redis_url,
)


def not_found_error() -> ClientError:
    return ClientError(
        {"Error": {"Code": "ResourceNotFoundException", "Message": "Requested resource not found"}},
        "DescribeTable",
    )


class FakeDynamoClient:
    """Dict-backed stand-in for an aiobotocore DynamoDB client."""

    def __init__(self, statuses: list[str] | None = None, exists: bool = True) -> None:
        self.items: dict[str, dict[str, Any]] = {}
        self.statuses = list(statuses or ["ACTIVE"])
        self.exists = exists
        self.created: dict[str, Any] | None = None
        self.get_calls: list[dict[str, Any]] = []

    async def describe_table(self, TableName: str) -> dict[str, Any]:
        if not self.exists:
            raise not_found_error()
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return {"Table": {"TableName": TableName, "TableStatus": status}}

    async def create_table(self, **kwargs: Any) -> dict[str, Any]:
        self.created = kwargs
        self.exists = True
        return {"TableDescription": {"TableStatus": "CREATING"}}

    async def get_item(self, **kwargs: Any) -> dict[str, Any]:
        self.get_calls.append(kwargs)
        item = self.items.get(kwargs["Key"]["key"]["S"])
        return {"Item": item} if item else {}

    async def put_item(self, TableName: str, Item: dict[str, Any]) -> dict[str, Any]:
        self.items[Item["key"]["S"]] = Item
        return {}


class TestNullStore:
    """Test the in-memory backend."""

    @pytest.mark.asyncio
    async def test_round_trip(self) -> None:
        store = NullSequenceStore()
        assert await store.get("replica") is None
        await store.set("replica", "42-abc")
        assert await store.get("replica") == "42-abc"

    @pytest.mark.asyncio
    async def test_fresh_instance_is_empty(self) -> None:
        """Nothing survives into a new instance."""
        await NullSequenceStore().set("replica", "42-abc")
        assert await NullSequenceStore().get("replica") is None

    def test_satisfies_protocol(self) -> None:
        assert isinstance(NullSequenceStore(), SequenceStore)


class TestRedisUrl:
    """Test generate_redis_url()."""

    def test_plain(self) -> None:
        settings = RedisSettings(host="localhost", port=6379, db=0)
        assert generate_redis_url(settings) == "redis://localhost:6379/0"

    def test_tls(self) -> None:
        settings = RedisSettings(use_tls=True, host="cache.internal", port=6380, db=2)
        assert generate_redis_url(settings) == "rediss://cache.internal:6380/2"

    def test_password(self) -> None:
        settings = RedisSettings(password=SecretStr("mypassword"))
        assert generate_redis_url(settings) == "redis://:mypassword@localhost:6379/0"

    def test_tls_and_password(self) -> None:
        settings = RedisSettings(use_tls=True, password=SecretStr("mypassword"))
        assert generate_redis_url(settings) == "rediss://:mypassword@localhost:6379/0"


class TestRedisStore:
    """Test RedisSequenceStore against a mocked client."""

    @pytest.mark.asyncio
    async def test_prefixed_keys(self) -> None:
        client = MagicMock()
        client.get = AsyncMock(return_value="7-xyz")
        client.set = AsyncMock()
        store = RedisSequenceStore(client, prefix="streams")

        await store.set("replica", "8-abc")
        client.set.assert_awaited_once_with("streams:replica", "8-abc")

        assert await store.get("replica") == "7-xyz"
        client.get.assert_awaited_once_with("streams:replica")

    @pytest.mark.asyncio
    async def test_unprefixed_and_bytes(self) -> None:
        client = MagicMock()
        client.get = AsyncMock(return_value=b"9-def")
        store = RedisSequenceStore(client)

        assert await store.get("replica") == "9-def"
        client.get.assert_awaited_once_with("replica")

    @pytest.mark.asyncio
    async def test_absent_key(self) -> None:
        client = MagicMock()
        client.get = AsyncMock(return_value=None)
        assert await RedisSequenceStore(client).get("replica") is None

    @pytest.mark.asyncio
    async def test_errors_are_transient_store_errors(self) -> None:
        client = MagicMock()
        client.set = AsyncMock(side_effect=RedisConnectionError("refused"))
        store = RedisSequenceStore(client)

        with pytest.raises(StoreUnavailableError) as exc_info:
            await store.set("replica", "1-a")
        assert exc_info.value.transient is True

    @pytest.mark.asyncio
    async def test_close(self) -> None:
        client = MagicMock()
        client.aclose = AsyncMock()
        await RedisSequenceStore(client).close()
        client.aclose.assert_awaited_once()


class TestDynamoDBStore:
    """Test DynamoDBSequenceStore against a fake client."""

    @pytest.mark.asyncio
    async def test_get_absent_then_round_trip(self) -> None:
        client = FakeDynamoClient()
        store = DynamoDBSequenceStore(client, "checkpoints")

        assert await store.get("replica") is None
        await store.set("replica", "42")
        assert await store.get("replica") == "42"
        assert client.items["replica"] == {"key": {"S": "replica"}, "value": {"S": "42"}}

    @pytest.mark.asyncio
    async def test_reads_are_strongly_consistent(self) -> None:
        client = FakeDynamoClient()
        await DynamoDBSequenceStore(client, "checkpoints").get("replica")
        assert client.get_calls[0]["ConsistentRead"] is True
        assert client.get_calls[0]["TableName"] == "checkpoints"

    @pytest.mark.asyncio
    async def test_create_table_when_missing(self) -> None:
        """A missing table is created and polled until ACTIVE."""
        client = FakeDynamoClient(statuses=["CREATING", "CREATING", "ACTIVE"], exists=False)
        store = DynamoDBSequenceStore(client, "checkpoints")

        await store.create_table(poll_interval=0)

        assert client.created is not None
        assert client.created["TableName"] == "checkpoints"
        assert client.created["BillingMode"] == "PAY_PER_REQUEST"
        assert client.created["KeySchema"] == [{"AttributeName": "key", "KeyType": "HASH"}]
        assert client.statuses == ["ACTIVE"]

    @pytest.mark.asyncio
    async def test_existing_table_is_left_alone(self) -> None:
        client = FakeDynamoClient()
        await DynamoDBSequenceStore(client, "checkpoints").create_table(poll_interval=0)
        assert client.created is None

    @pytest.mark.asyncio
    async def test_provisioning_timeout(self) -> None:
        client = FakeDynamoClient(statuses=["CREATING"], exists=False)
        store = DynamoDBSequenceStore(client, "checkpoints")

        with pytest.raises(StoreUnavailableError, match="not ACTIVE"):
            await store.create_table(poll_interval=0.01, timeout=0.05)

    @pytest.mark.asyncio
    async def test_describe_failure(self) -> None:
        client = MagicMock()
        client.describe_table = AsyncMock(
            side_effect=ClientError({"Error": {"Code": "AccessDeniedException"}}, "DescribeTable")
        )
        with pytest.raises(StoreUnavailableError, match="describe_table failed"):
            await DynamoDBSequenceStore(client, "checkpoints").create_table()

    @pytest.mark.asyncio
    async def test_create_from_settings(self) -> None:
        """create() opens the client through the session and provisions the table."""
        client = FakeDynamoClient(exists=False)
        client_cm = MagicMock()
        client_cm.__aenter__ = AsyncMock(return_value=client)
        client_cm.__aexit__ = AsyncMock(return_value=None)
        session = MagicMock()
        session.create_client.return_value = client_cm

        settings = DynamoDBSettings(
            table="checkpoints",
            local_url="http://localhost:8000",
            region="us-east-1",
            poll_interval=0.01,
        )
        store = await DynamoDBSequenceStore.create(settings, session=session)

        session.create_client.assert_called_once_with(
            "dynamodb",
            region_name="us-east-1",
            endpoint_url="http://localhost:8000",
        )
        assert client.created is not None

        await store.close()
        client_cm.__aexit__.assert_awaited_once()


class TestFileStore:
    """Test the JSON-file backend."""

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, tmp_path: Path) -> None:
        path = tmp_path / "state" / "checkpoint.json"
        await FileSequenceStore(path).set("replica", "12-abc")

        assert await FileSequenceStore(path).get("replica") == "12-abc"
        assert json.loads(path.read_text()) == {"replica": "12-abc"}

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, tmp_path: Path) -> None:
        store = FileSequenceStore(tmp_path / "checkpoint.json")
        await store.set("a", "1")
        await store.set("b", "2")
        assert await store.get("a") == "1"
        assert await store.get("b") == "2"
        assert await store.get("c") is None

    @pytest.mark.asyncio
    async def test_corrupted_file(self, tmp_path: Path) -> None:
        path = tmp_path / "checkpoint.json"
        path.write_text("{not json")
        with pytest.raises(StoreUnavailableError, match="corrupted"):
            await FileSequenceStore(path).get("replica")


class TestStoreFactory:
    """Test create_sequence_store() dispatch."""

    def test_every_kind_has_a_builder(self) -> None:
        assert set(STORE_BUILDERS) == set(SequenceStoreKind)

    @pytest.mark.asyncio
    async def test_null(self) -> None:
        store = await create_sequence_store(Settings(sequence_store="null"))
        assert isinstance(store, NullSequenceStore)

    @pytest.mark.asyncio
    async def test_file(self, tmp_path: Path) -> None:
        settings = Settings(
            sequence_store="file",
            file=FileStoreSettings(path=tmp_path / "checkpoint.json"),
        )
        store = await create_sequence_store(settings)
        assert isinstance(store, FileSequenceStore)
        assert store.path == tmp_path / "checkpoint.json"

    @pytest.mark.asyncio
    async def test_redis(self) -> None:
        settings = Settings(sequence_store="redis", redis=RedisSettings(prefix="streams"))
        store = await create_sequence_store(settings)
        assert isinstance(store, RedisSequenceStore)
        await store.close()

    @pytest.mark.asyncio
    async def test_missing_section(self) -> None:
        with pytest.raises(ConfigurationError, match=r"\[redis\]"):
            await create_sequence_store(Settings(sequence_store="redis"))

    @pytest.mark.asyncio
    async def test_unset_kind(self) -> None:
        with pytest.raises(ConfigurationError, match="sequence_store is required"):
            await create_sequence_store(Settings())
