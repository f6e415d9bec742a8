"""In-process checkpoint store that forgets everything on exit."""

from __future__ import annotations

import asyncio


class NullSequenceStore:
    """
    Keeps the checkpoint in memory only.

    The key is ignored: a process drives a single stream, so one slot is
    enough. Useful for local testing or intentionally non-resumable runs.
    """

    def __init__(self) -> None:
        self._value: str | None = None
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._value

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._value = value

    async def close(self) -> None:
        return None
