"""
Error taxonomy for streamcouch.

Every failure the replicator can hit maps onto one ErrorKind. The engine
uses ``transient`` to decide between retrying and stopping, and the CLI
uses ``kind`` to pick the message and exit code shown to the operator.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Category of a replication failure."""

    CONFIGURATION = "configuration"
    CONNECTION = "connection"
    CONSISTENCY = "consistency"
    STRUCTURAL = "structural"
    APPLY = "apply"
    CHECKPOINT = "checkpoint"


EXIT_CODES: dict[ErrorKind, int] = {
    ErrorKind.CONFIGURATION: 2,
    ErrorKind.CONNECTION: 3,
    ErrorKind.CONSISTENCY: 4,
    ErrorKind.STRUCTURAL: 5,
    ErrorKind.APPLY: 6,
    ErrorKind.CHECKPOINT: 7,
}


class StreamCouchError(Exception):
    """Base exception for replication errors."""

    kind: ErrorKind = ErrorKind.APPLY
    transient: bool = False

    def __init__(
        self,
        message: str,
        *,
        doc_id: str | None = None,
        seq: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.doc_id = doc_id
        self.seq = seq

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.kind]

    def context(self) -> dict[str, str]:
        """Event identifiers attached to this error, for log records."""
        ctx: dict[str, str] = {"error_kind": self.kind.value}
        if self.doc_id is not None:
            ctx["doc_id"] = self.doc_id
        if self.seq is not None:
            ctx["seq"] = self.seq
        return ctx

    def __str__(self) -> str:
        parts = [self.message]
        if self.doc_id is not None:
            parts.append(f"id={self.doc_id}")
        if self.seq is not None:
            parts.append(f"seq={self.seq}")
        return " ".join(parts)


class ConfigurationError(StreamCouchError):
    """Settings could not be loaded or are incomplete."""

    kind = ErrorKind.CONFIGURATION


class SourceConnectionError(StreamCouchError):
    """The CouchDB change feed could not be reached."""

    kind = ErrorKind.CONNECTION
    transient = True


class DestinationConnectionError(StreamCouchError):
    """MongoDB could not be reached."""

    kind = ErrorKind.CONNECTION
    transient = True


class FeedEndedError(StreamCouchError):
    """The change feed finished while the engine expected more events."""

    kind = ErrorKind.CONNECTION


class StoreUnavailableError(StreamCouchError):
    """The checkpoint backend failed a read or write."""

    kind = ErrorKind.CHECKPOINT
    transient = True


class CheckpointMismatchError(StreamCouchError):
    """The stored checkpoint changed underneath this process."""

    kind = ErrorKind.CONSISTENCY

    def __init__(
        self,
        stored: str | None,
        expected: str | None,
        *,
        doc_id: str | None = None,
        seq: str | None = None,
    ) -> None:
        super().__init__(
            f"sequence mismatch: stored={stored!r} expected={expected!r}",
            doc_id=doc_id,
            seq=seq,
        )
        self.stored = stored
        self.expected = expected


class StructuralError(StreamCouchError):
    """A change event cannot be routed (missing id, bad routing field)."""

    kind = ErrorKind.STRUCTURAL


class ApplyError(StreamCouchError):
    """The destination rejected a write."""

    kind = ErrorKind.APPLY

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        doc_id: str | None = None,
        seq: str | None = None,
    ) -> None:
        super().__init__(message, doc_id=doc_id, seq=seq)
        self.transient = transient


def describe(error: StreamCouchError) -> str:
    """Operator-facing headline for an error category."""
    headlines = {
        ErrorKind.CONFIGURATION: "Configuration error",
        ErrorKind.CONNECTION: "Connection error",
        ErrorKind.CONSISTENCY: "Checkpoint consistency violation",
        ErrorKind.STRUCTURAL: "Unroutable change event",
        ErrorKind.APPLY: "Destination write failed",
        ErrorKind.CHECKPOINT: "Checkpoint store unavailable",
    }
    return f"{headlines[error.kind]}: {error}"
