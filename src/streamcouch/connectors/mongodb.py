"""
MongoDB destination applier.

Executes routed deletes and upserts against a MongoDB database through
Motor. Both operations are keyed by ``_id`` and idempotent, so replaying
an event after a crash leaves the destination unchanged.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from bson.errors import InvalidDocument
from pymongo.errors import (
    AutoReconnect,
    ConfigurationError as MongoConfigurationError,
    ConnectionFailure,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from streamcouch.config import Settings
from streamcouch.errors import ApplyError, ConfigurationError, DestinationConnectionError

if TYPE_CHECKING:
    from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

logger = logging.getLogger(__name__)

# Errors worth another attempt: the server was unreachable or stepped down.
TRANSIENT_ERRORS = (AutoReconnect, NetworkTimeout)


class MongoApplier:
    """
    Apply routed changes to MongoDB.

    Example:
        applier = MongoApplier(client["replica"])
        await applier.upsert("orders", "order-1", {"_id": "order-1", "total": 3})
        await applier.delete("orders", "order-1")
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase[Any],
        *,
        client: AsyncIOMotorClient[Any] | None = None,
    ) -> None:
        self.database = database
        self._client = client

    def _collection(self, name: str) -> Any:
        return self.database[name]

    @staticmethod
    def _translate(error: PyMongoError, action: str, key: str) -> Exception:
        if isinstance(error, ServerSelectionTimeoutError) or (
            isinstance(error, ConnectionFailure) and not isinstance(error, TRANSIENT_ERRORS)
        ):
            return DestinationConnectionError(f"{action} failed, MongoDB unreachable: {error}", doc_id=key)
        transient = isinstance(error, TRANSIENT_ERRORS)
        if isinstance(error, OperationFailure) and error.has_error_label("RetryableWriteError"):
            transient = True
        return ApplyError(f"{action} failed: {error}", transient=transient, doc_id=key)

    @staticmethod
    def _unencodable(error: Exception, action: str, key: str) -> ApplyError:
        return ApplyError(
            f"{action} failed, document cannot be encoded as BSON: {error}",
            transient=False,
            doc_id=key,
        )

    async def delete(self, collection: str, key: str) -> bool:
        """Delete a document by id. Returns True when a document was removed."""
        try:
            result = await self._collection(collection).delete_one({"_id": key})
        except PyMongoError as e:
            raise self._translate(e, "delete", key) from e
        except (InvalidDocument, OverflowError) as e:
            raise self._unencodable(e, "delete", key) from e
        if result.deleted_count == 0:
            logger.debug(
                "delete matched no document",
                extra={"doc_id": key, "collection": collection},
            )
        return result.deleted_count > 0

    async def upsert(self, collection: str, key: str, document: dict[str, Any]) -> bool:
        """
        Replace a document by id, inserting it when absent.

        Returns:
            True when the write created a new document
        """
        try:
            result = await self._collection(collection).replace_one(
                {"_id": key},
                document,
                upsert=True,
            )
        except PyMongoError as e:
            raise self._translate(e, "replace", key) from e
        except (InvalidDocument, OverflowError) as e:
            raise self._unencodable(e, "replace", key) from e
        return result.upserted_id is not None

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def create_applier(settings: Settings) -> MongoApplier:
    """Create a MongoApplier from settings."""
    from motor.motor_asyncio import AsyncIOMotorClient

    try:
        client: AsyncIOMotorClient[Any] = AsyncIOMotorClient(
            settings.mongodb_connect_string.get_secret_value()
        )
    except MongoConfigurationError as e:
        raise ConfigurationError(f"invalid mongodb_connect_string: {e}") from e
    except PyMongoError as e:
        raise DestinationConnectionError(f"unable to create MongoDB client: {e}") from e
    return MongoApplier(client[settings.mongodb_database], client=client)
