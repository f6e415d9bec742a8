"""
Event Router - decides what to do with each change event.

Pure logic, no I/O: given a ChangeEvent and the routing configuration it
returns a RoutingDecision that says whether to skip, delete or upsert, and
which MongoDB collection is targeted.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from streamcouch.config import Settings
from streamcouch.errors import StructuralError
from streamcouch.models import ChangeEvent

ID_FIELD = "_id"
DELETED_FIELD = "_deleted"


class Action(str, Enum):
    """Apply action for a routed event."""

    UPSERT = "upsert"
    DELETE = "delete"
    SKIP = "skip"


@dataclass(frozen=True)
class RoutingConfig:
    """Static routing settings."""

    source_database: str
    collection: str | None = None
    collection_field: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RoutingConfig":
        return cls(
            source_database=settings.source_database,
            collection=settings.mongodb_collection,
            collection_field=settings.mongodb_collection_field,
        )

    @property
    def default_collection(self) -> str:
        """Static collection, falling back to the source database name."""
        return self.collection or self.source_database


@dataclass(frozen=True)
class RoutingDecision:
    """What to do with one change event."""

    action: Action
    key: str
    collection: str | None = None
    document: dict[str, Any] | None = None


def resolve_collection(document: dict[str, Any], config: RoutingConfig, event: ChangeEvent) -> str:
    """
    Pick the destination collection for a document.

    Precedence: the configured collection field when the document has it,
    then the static collection, then the source database name. A collection
    field holding anything but a string is an error.
    """
    field = config.collection_field
    if field and field in document:
        value = document[field]
        if not isinstance(value, str):
            raise StructuralError(
                f"collection field {field!r} must be a string, got {type(value).__name__}",
                doc_id=event.id,
                seq=event.seq,
            )
        return value
    return config.default_collection


def route(event: ChangeEvent, config: RoutingConfig) -> RoutingDecision:
    """Classify a change event into a RoutingDecision."""
    if event.is_design_document:
        return RoutingDecision(action=Action.SKIP, key=event.id)

    document = event.document
    if document is None:
        if event.deleted:
            return RoutingDecision(
                action=Action.DELETE,
                key=event.id,
                collection=config.default_collection,
            )
        raise StructuralError(
            "change event carries no document",
            doc_id=event.id,
            seq=event.seq,
        )

    doc_id = document.get(ID_FIELD)
    if not isinstance(doc_id, str):
        raise StructuralError(
            "document has no string _id",
            doc_id=event.id,
            seq=event.seq,
        )

    collection = resolve_collection(document, config, event)

    if event.deleted or document.get(DELETED_FIELD):
        return RoutingDecision(action=Action.DELETE, key=doc_id, collection=collection)

    return RoutingDecision(
        action=Action.UPSERT,
        key=doc_id,
        collection=collection,
        document=document,
    )
