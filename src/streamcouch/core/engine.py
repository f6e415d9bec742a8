"""
Replication Engine - the control loop of streamcouch.

Coordinates all components for one stream:
- Sequence store for the resumable checkpoint
- Change feed for ordered source events
- Router for the per-event decision
- Applier for destination writes

For every event the engine verifies that the stored checkpoint is still
the one it last wrote, routes the event, applies it and only then advances
the checkpoint to that event's ``seq``. Exactly one event is in flight at
a time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncGenerator, Awaitable, Callable, Protocol, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from streamcouch.config import RetryPolicy
from streamcouch.core.router import Action, RoutingConfig, RoutingDecision, route
from streamcouch.errors import (
    CheckpointMismatchError,
    FeedEndedError,
    StreamCouchError,
    StructuralError,
)
from streamcouch.models import ChangeEvent
from streamcouch.stores.base import SequenceStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChangeFeed(Protocol):
    def changes(self, since: str | None = None) -> AsyncGenerator[ChangeEvent, None]: ...


class Applier(Protocol):
    async def delete(self, collection: str, key: str) -> bool: ...

    async def upsert(self, collection: str, key: str, document: dict[str, Any]) -> bool: ...


class EngineState(str, Enum):
    """Where the engine is in its per-event cycle."""

    INIT = "init"
    STREAMING = "streaming"
    VERIFYING = "verifying"
    ROUTING = "routing"
    APPLYING = "applying"
    CHECKPOINTING = "checkpointing"
    STOPPED = "stopped"
    FATAL = "fatal"


@dataclass
class ReplicationStats:
    """Statistics for a replication run."""

    stream_key: str
    events_received: int = 0
    events_applied: int = 0
    events_skipped: int = 0
    documents_upserted: int = 0
    documents_inserted: int = 0
    documents_deleted: int = 0
    last_seq: str | None = None
    start_time: float = 0.0
    end_time: float = 0.0
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    @property
    def events_per_second(self) -> float:
        """Processing rate."""
        duration = self.duration_seconds
        if duration > 0:
            return self.events_received / duration
        return 0.0


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, StreamCouchError) and error.transient


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    extra: dict[str, Any] = {"attempt": retry_state.attempt_number}
    if isinstance(error, StreamCouchError):
        extra.update(error.context())
    logger.warning(f"transient failure, retrying: {error}", extra=extra)


class ReplicationEngine:
    """
    Drive one change stream from source to destination.

    Example:
        engine = ReplicationEngine(
            store=store,
            feed=feed,
            applier=applier,
            routing=RoutingConfig.from_settings(settings),
            stream_key=settings.get_sequence_store_key(),
            retry=settings.retry,
        )
        stats = await engine.run()
    """

    def __init__(
        self,
        store: SequenceStore,
        feed: ChangeFeed,
        applier: Applier,
        routing: RoutingConfig,
        stream_key: str,
        *,
        retry: RetryPolicy | None = None,
        expect_infinite: bool = True,
    ) -> None:
        """
        Initialize the engine.

        Args:
            store: Checkpoint backend
            feed: Source change feed
            applier: Destination writer
            routing: Collection routing settings
            stream_key: Checkpoint key for this stream
            retry: Backoff for transient failures
            expect_infinite: Treat the feed ending as an error
        """
        self.store = store
        self.feed = feed
        self.applier = applier
        self.routing = routing
        self.stream_key = stream_key
        self.retry = retry or RetryPolicy()
        self.expect_infinite = expect_infinite
        self.stats = ReplicationStats(stream_key=stream_key)
        self._state = EngineState.INIT
        self._last_known_seq: str | None = None
        self._in_flight: ChangeEvent | None = None
        self._stop = asyncio.Event()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def last_known_seq(self) -> str | None:
        """Checkpoint value this engine last read or wrote."""
        return self._last_known_seq

    def request_stop(self) -> None:
        """Stop after the event currently in flight, if any, is checkpointed."""
        if not self._stop.is_set():
            logger.info("stop requested", extra={"stream_key": self.stream_key})
        self._stop.set()

    async def _with_retry(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Call ``fn`` retrying transient streamcouch errors with backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_random_exponential(
                multiplier=self.retry.initial_delay,
                max=self.retry.max_delay,
            ),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )
        return await retrying(fn, *args)

    async def run(self) -> ReplicationStats:
        """
        Replicate until a stop is requested or a fatal error occurs.

        Returns:
            ReplicationStats for the run

        Raises:
            StreamCouchError: On any fatal condition, after logging it
        """
        self.stats.start_time = time.time()
        self._state = EngineState.INIT

        try:
            self._last_known_seq = await self._with_retry(self.store.get, self.stream_key)
            self.stats.last_seq = self._last_known_seq
            logger.info(
                "starting replication",
                extra={"stream_key": self.stream_key, "seq": self._last_known_seq},
            )

            feed = self.feed.changes(self._last_known_seq)
            stop_waiter = asyncio.ensure_future(self._stop.wait())
            try:
                while True:
                    self._state = EngineState.STREAMING
                    event = await self._next_event(feed, stop_waiter)
                    if event is None:
                        break
                    await self._process(event)
            finally:
                stop_waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stop_waiter
                await feed.aclose()

        except StreamCouchError as e:
            self._state = EngineState.FATAL
            self.stats.error = str(e)
            logger.error(
                f"replication stopped: {e.message}",
                extra={**e.context(), "stream_key": self.stream_key},
            )
            raise
        except Exception as e:
            self._state = EngineState.FATAL
            self.stats.error = str(e)
            extra: dict[str, Any] = {"stream_key": self.stream_key, "seq": self._last_known_seq}
            if self._in_flight is not None:
                extra.update(doc_id=self._in_flight.id, seq=self._in_flight.seq)
            logger.exception("replication stopped on unexpected error", extra=extra)
            raise
        finally:
            self.stats.end_time = time.time()

        self._state = EngineState.STOPPED
        logger.info(
            "replication stopped",
            extra={"stream_key": self.stream_key, "seq": self._last_known_seq},
        )
        return self.stats

    async def _next_event(
        self,
        feed: AsyncGenerator[ChangeEvent, None],
        stop_waiter: asyncio.Future[Any],
    ) -> ChangeEvent | None:
        """Wait for the next event. Returns None when stopping."""
        if self._stop.is_set():
            return None

        next_event = asyncio.ensure_future(anext(feed))
        await asyncio.wait({next_event, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)

        if not next_event.done():
            next_event.cancel()
            with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                await next_event
            return None

        try:
            return next_event.result()
        except StopAsyncIteration:
            if self.expect_infinite:
                raise FeedEndedError(
                    "change feed ended unexpectedly",
                    seq=self._last_known_seq,
                ) from None
            logger.info("change feed exhausted", extra={"seq": self._last_known_seq})
            return None

    async def _process(self, event: ChangeEvent) -> None:
        """Run one event through verify, route, apply and checkpoint."""
        self.stats.events_received += 1
        self._in_flight = event
        logger.debug("change received", extra={"doc_id": event.id, "seq": event.seq})

        try:
            self._state = EngineState.VERIFYING
            await self._verify(event)

            self._state = EngineState.ROUTING
            decision = route(event, self.routing)
            if decision.action is Action.SKIP:
                self.stats.events_skipped += 1
                logger.info(
                    "design document",
                    extra={"doc_id": event.id, "seq": event.seq},
                )
                self._in_flight = None
                return

            self._state = EngineState.APPLYING
            await self._apply(event, decision)

            self._state = EngineState.CHECKPOINTING
            await self._with_retry(self.store.set, self.stream_key, event.seq)
            self._last_known_seq = event.seq
            self.stats.last_seq = event.seq
            self.stats.events_applied += 1
            self._in_flight = None
        except StreamCouchError as e:
            if e.doc_id is None:
                e.doc_id = event.id
            if e.seq is None:
                e.seq = event.seq
            raise

    async def _verify(self, event: ChangeEvent) -> None:
        """Stop if someone else moved the checkpoint since our last write."""
        stored = await self._with_retry(self.store.get, self.stream_key)
        if stored != self._last_known_seq:
            raise CheckpointMismatchError(
                stored,
                self._last_known_seq,
                doc_id=event.id,
                seq=event.seq,
            )

    async def _apply(self, event: ChangeEvent, decision: RoutingDecision) -> None:
        if decision.collection is None:
            raise StructuralError("routing produced no destination collection")
        extra = {"doc_id": event.id, "seq": event.seq, "collection": decision.collection}

        if decision.action is Action.DELETE:
            logger.info("deleting document", extra=extra)
            await self._with_retry(self.applier.delete, decision.collection, decision.key)
            self.stats.documents_deleted += 1
            return

        if decision.document is None:
            raise StructuralError("routing produced an upsert without a document")
        logger.info("replacing document", extra=extra)
        inserted = await self._with_retry(
            self.applier.upsert,
            decision.collection,
            decision.key,
            decision.document,
        )
        self.stats.documents_upserted += 1
        if inserted:
            self.stats.documents_inserted += 1
            logger.info("document inserted", extra=extra)
