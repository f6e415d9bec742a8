"""Checkpoint store interface."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class SequenceStore(Protocol):
    """
    Durable key -> sequence token mapping.

    ``get`` returns None for a key that was never set. Values come back
    exactly as they were stored. I/O failures surface as
    StoreUnavailableError.
    """

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def close(self) -> None: ...
