"""Data types shared across the replication pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

DESIGN_DOCUMENT_PREFIX = "_design"


@dataclass(frozen=True)
class ChangeEvent:
    """One entry of the source change feed."""

    id: str
    seq: str
    document: dict[str, Any] | None = None
    deleted: bool = False

    @property
    def is_design_document(self) -> bool:
        """True for CouchDB design documents, which are never replicated."""
        return self.id.startswith(DESIGN_DOCUMENT_PREFIX)

    @classmethod
    def from_feed_row(cls, row: dict[str, Any]) -> "ChangeEvent":
        """Build an event from one decoded ``_changes`` row."""
        seq = row["seq"]
        return cls(
            id=row["id"],
            seq=seq if isinstance(seq, str) else str(seq),
            document=row.get("doc"),
            deleted=bool(row.get("deleted", False)),
        )
