"""
Local JSON-file checkpoint store.

Keeps every stream's token in one JSON object on disk. Writes go to a
temporary file that replaces the old one, so a crash mid-write leaves the
previous checkpoint intact.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

from streamcouch.errors import StoreUnavailableError


class FileSequenceStore:
    """
    Checkpoint store for single-host deployments.

    Example:
        store = FileSequenceStore(Path(".streamcouch-checkpoint.json"))
        await store.set("orders", "42-g1AAAA")
        await store.get("orders")  # "42-g1AAAA"
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise StoreUnavailableError(f"corrupted checkpoint file {self.path}: {e}") from e
        except OSError as e:
            raise StoreUnavailableError(f"unable to read {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StoreUnavailableError(f"corrupted checkpoint file {self.path}: not an object")
        return data

    def _save(self, data: dict[str, str]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, indent=2))
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StoreUnavailableError(f"unable to write {self.path}: {e}") from e

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._load().get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    async def close(self) -> None:
        return None
