"""Asyncio client for S3-compatible object storage: server-side compose and S3 Select."""

from stratus.client import Client
from stratus.compose import ComposeOrchestrator, ComposeSession
from stratus.errors import (
    ChecksumMismatch,
    EntityTooLarge,
    EntityTooSmall,
    EventStreamError,
    InvalidArgument,
    InvalidRange,
    PlanningError,
    S3Error,
    SelectError,
    TooManyParts,
    TruncatedEventStream,
    UnexpectedContentType,
)
from stratus.eventstream import EventStreamDecoder
from stratus.models import (
    CompletedPart,
    CopyDestination,
    CopySource,
    Encryption,
    ObjectStat,
    ObjectWriteResult,
    SelectRequest,
    SelectResults,
)
from stratus.planner import DEFAULT_CONSTRAINTS, PartConstraints

__all__ = [
    "ChecksumMismatch",
    "Client",
    "CompletedPart",
    "ComposeOrchestrator",
    "ComposeSession",
    "CopyDestination",
    "CopySource",
    "DEFAULT_CONSTRAINTS",
    "Encryption",
    "EntityTooLarge",
    "EntityTooSmall",
    "EventStreamDecoder",
    "EventStreamError",
    "InvalidArgument",
    "InvalidRange",
    "ObjectStat",
    "ObjectWriteResult",
    "PartConstraints",
    "PlanningError",
    "S3Error",
    "SelectError",
    "SelectRequest",
    "SelectResults",
    "TooManyParts",
    "TruncatedEventStream",
    "UnexpectedContentType",
]
