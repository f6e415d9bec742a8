"""
CouchDB change feed reader.

Streams ``/{db}/_changes`` over HTTP and turns each row into a
ChangeEvent:
- continuous feed with heartbeats for infinite mode
- resume from any previously returned ``seq``
- bounded reconnects with jittered exponential backoff
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncGenerator
from urllib.parse import quote

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from streamcouch.config import FeedSettings, RetryPolicy, Settings
from streamcouch.errors import SourceConnectionError, StructuralError
from streamcouch.models import ChangeEvent

logger = logging.getLogger(__name__)


class CouchServerError(Exception):
    """CouchDB answered with a 5xx status."""

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body[:200]}")
        self.status = status


class CouchChangeFeed:
    """
    Reader for a CouchDB database's change feed.

    The consumer handles each event before pulling the next one, so after
    a dropped connection the feed resumes from the last ``seq`` it yielded.

    Example:
        async with CouchChangeFeed("http://localhost:5984", "orders") as feed:
            async for event in feed.changes(since=checkpoint):
                ...
    """

    def __init__(
        self,
        base_url: str,
        database: str,
        *,
        username: str | None = None,
        password: str | None = None,
        feed_settings: FeedSettings | None = None,
        retry: RetryPolicy | None = None,
        infinite: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the feed reader.

        Args:
            base_url: CouchDB server URL
            database: Database to follow
            username: Optional basic-auth user
            password: Optional basic-auth password
            feed_settings: Heartbeat and timeout tuning
            retry: Reconnect budget and backoff
            infinite: Follow the feed forever (False = one catch-up pass)
            client: Pre-built HTTP client (tests, custom transports)
        """
        self.base_url = base_url.rstrip("/")
        self.database = database
        self.username = username
        self.password = password
        self.feed_settings = feed_settings or FeedSettings()
        self.retry = retry or RetryPolicy()
        self.infinite = infinite
        self._client = client
        self._owns_client = client is None

    @property
    def changes_url(self) -> str:
        return f"{self.base_url}/{quote(self.database, safe='')}/_changes"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            auth = None
            if self.username is not None:
                auth = httpx.BasicAuth(self.username, self.password or "")
            read_timeout = self.feed_settings.heartbeat_ms / 1000 * 2 + self.feed_settings.timeout
            self._client = httpx.AsyncClient(
                auth=auth,
                headers={"Accept": "application/json"},
                timeout=httpx.Timeout(self.feed_settings.timeout, read=read_timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this reader created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "CouchChangeFeed":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _params(self, since: str | None) -> dict[str, str]:
        params = {
            "feed": "continuous" if self.infinite else "normal",
            "include_docs": "true",
        }
        if self.infinite:
            params["heartbeat"] = str(self.feed_settings.heartbeat_ms)
        if since is not None:
            params["since"] = since
        return params

    def _backoff(self) -> wait_random_exponential:
        return wait_random_exponential(
            multiplier=self.retry.initial_delay,
            max=self.retry.max_delay,
        )

    def _reconnect_delay(self, drops: int) -> float:
        """Jittered backoff before reconnect number ``drops``."""
        state = RetryCallState(None, None, (), {})  # type: ignore[arg-type]
        state.attempt_number = drops
        return self._backoff()(state)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=self._backoff(),
            retry=retry_if_exception_type((httpx.TransportError, CouchServerError)),
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "change feed connection failed, retrying",
            extra={"attempt": retry_state.attempt_number, "error": str(error)},
        )

    async def _open(self, since: str | None) -> httpx.Response:
        client = await self._get_client()
        request = client.build_request("GET", self.changes_url, params=self._params(since))
        response = await client.send(request, stream=True)

        if response.status_code == 200:
            return response

        body = (await response.aread()).decode("utf-8", errors="replace")
        await response.aclose()
        if response.status_code >= 500:
            raise CouchServerError(response.status_code, body)
        raise SourceConnectionError(
            f"change feed request rejected with HTTP {response.status_code}: {body[:200]}",
            seq=since,
        )

    async def _connect(self, since: str | None) -> httpx.Response:
        """Open the feed, retrying transport errors and 5xx responses."""
        try:
            return await self._retrying()(self._open, since)
        except (httpx.TransportError, CouchServerError) as e:
            raise SourceConnectionError(
                f"unable to reach change feed at {self.changes_url}: {e}",
                seq=since,
            ) from e

    @staticmethod
    def _decode(line: str) -> dict[str, Any]:
        try:
            row = json.loads(line)
        except json.JSONDecodeError as e:
            raise StructuralError(f"malformed change feed line: {line[:200]!r}") from e
        if not isinstance(row, dict):
            raise StructuralError(f"malformed change feed line: {line[:200]!r}")
        if "error" in row:
            raise SourceConnectionError(
                f"change feed error: {row.get('error')}: {row.get('reason', '')}"
            )
        return row

    async def changes(self, since: str | None = None) -> AsyncGenerator[ChangeEvent, None]:
        """
        Yield change events strictly after ``since``.

        In infinite mode this never returns on its own. It raises
        SourceConnectionError once the reconnect budget is spent.
        """
        if not self.infinite:
            async for event in self._read_once(since):
                yield event
            return

        last_seq = since
        drops = 0
        # A connection idle for longer than this without being cut is healthy.
        idle_limit = self.feed_settings.heartbeat_ms / 1000 * 2 + self.feed_settings.timeout
        while True:
            response = await self._connect(last_seq)
            opened = time.monotonic()
            progressed = False
            try:
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue  # heartbeat
                    row = self._decode(line)
                    if "last_seq" in row:
                        break
                    if "id" not in row or "seq" not in row:
                        continue
                    event = ChangeEvent.from_feed_row(row)
                    last_seq = event.seq
                    progressed = True
                    drops = 0
                    yield event
            except (httpx.TransportError, httpx.StreamError) as e:
                logger.warning(
                    "change feed connection dropped",
                    extra={"seq": last_seq, "error": str(e)},
                )
            finally:
                await response.aclose()

            if progressed:
                continue
            if time.monotonic() - opened > idle_limit:
                drops = 0
                continue
            drops += 1
            if drops >= self.retry.max_attempts:
                raise SourceConnectionError(
                    f"change feed closed {drops} times without sending a change",
                    seq=last_seq,
                )
            logger.info("reconnecting change feed", extra={"seq": last_seq, "drops": drops})
            await asyncio.sleep(self._reconnect_delay(drops))

    async def _read_once(self, since: str | None) -> AsyncGenerator[ChangeEvent, None]:
        """Single ``feed=normal`` pass over everything after ``since``."""
        response = await self._connect(since)
        try:
            body = await response.aread()
        except (httpx.TransportError, httpx.StreamError) as e:
            raise SourceConnectionError(f"change feed read failed: {e}", seq=since) from e
        finally:
            await response.aclose()

        data = self._decode(body.decode("utf-8"))
        for row in data.get("results", []):
            yield ChangeEvent.from_feed_row(row)


def create_change_feed(settings: Settings, *, infinite: bool = True) -> CouchChangeFeed:
    """Create a CouchChangeFeed from settings."""
    return CouchChangeFeed(
        settings.source_url,
        settings.source_database,
        username=settings.couchdb_username,
        password=(
            settings.couchdb_password.get_secret_value()
            if settings.couchdb_password
            else None
        ),
        feed_settings=settings.feed,
        retry=settings.retry,
        infinite=infinite,
    )
