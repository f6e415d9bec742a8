"""Checkpoint store backends for streamcouch."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from streamcouch.config import SequenceStoreKind, Settings
from streamcouch.errors import ConfigurationError
from streamcouch.stores.base import SequenceStore
from streamcouch.stores.dynamodb_store import DynamoDBSequenceStore
from streamcouch.stores.file_store import FileSequenceStore
from streamcouch.stores.null_store import NullSequenceStore
from streamcouch.stores.redis_store import RedisSequenceStore, generate_redis_url

logger = logging.getLogger(__name__)


async def _build_null(settings: Settings) -> SequenceStore:
    return NullSequenceStore()


async def _build_redis(settings: Settings) -> SequenceStore:
    if settings.redis is None:
        raise ConfigurationError("[redis] section is required for the redis sequence store")
    return RedisSequenceStore.from_settings(settings.redis)


async def _build_dynamodb(settings: Settings) -> SequenceStore:
    if settings.dynamodb is None:
        raise ConfigurationError("[dynamodb] section is required for the dynamodb sequence store")
    return await DynamoDBSequenceStore.create(settings.dynamodb)


async def _build_file(settings: Settings) -> SequenceStore:
    return FileSequenceStore(settings.file.path)


STORE_BUILDERS: dict[SequenceStoreKind, Callable[[Settings], Awaitable[SequenceStore]]] = {
    SequenceStoreKind.NULL: _build_null,
    SequenceStoreKind.REDIS: _build_redis,
    SequenceStoreKind.DYNAMODB: _build_dynamodb,
    SequenceStoreKind.FILE: _build_file,
}


async def create_sequence_store(settings: Settings) -> SequenceStore:
    """Build the checkpoint backend selected by ``settings.sequence_store``."""
    kind = settings.sequence_store
    if kind is None:
        raise ConfigurationError("sequence_store is required (redis, dynamodb, file or null)")
    logger.info("getting sequence store", extra={"sequence_store": kind.value})
    return await STORE_BUILDERS[kind](settings)


__all__ = [
    "SequenceStore",
    "NullSequenceStore",
    "RedisSequenceStore",
    "DynamoDBSequenceStore",
    "FileSequenceStore",
    "STORE_BUILDERS",
    "create_sequence_store",
    "generate_redis_url",
]
