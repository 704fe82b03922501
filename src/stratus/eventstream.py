"""Decoder for the select-object-content event stream.

The response body of a select call is a sequence of binary messages::

    [4 bytes total length][4 bytes header length][4 bytes prelude CRC32]
    [headers][payload][4 bytes message CRC32]

All integers are big-endian. The prelude CRC covers the two length fields,
the message CRC covers everything before it. Each header is::

    [1 byte name length][name][1 byte value type][2 bytes value length][value]

Messages are decoded strictly one after another from an async byte stream,
buffering only what the next read needs. Each message is classified into
one event variant and folded into a ``SelectResults`` until the ``End``
event arrives.
"""

from __future__ import annotations

import contextlib
import logging
import struct
import zlib
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Union

from stratus import metrics
from stratus.errors import (
    ChecksumMismatch,
    EventStreamError,
    SelectError,
    TruncatedEventStream,
    UnexpectedContentType,
)
from stratus.models import SelectResults

logger = logging.getLogger(__name__)

PRELUDE_LENGTH = 8
CRC_LENGTH = 4
# prelude + prelude CRC + message CRC
OVERHEAD_LENGTH = PRELUDE_LENGTH + 2 * CRC_LENGTH

_STRING_VALUE_TYPE = 7
_XML_CONTENT_TYPE = "text/xml"


# ---------------------------------------------------------------------------
# Messages and events
# ---------------------------------------------------------------------------


@dataclass
class DecodedMessage:
    """One framed message, CRC-checked."""

    total_length: int
    header_length: int
    headers: dict[str, str] = field(default_factory=dict)
    payload: bytes = b""


@dataclass(frozen=True)
class ErrorMessage:
    code: str
    message: str


@dataclass(frozen=True)
class RecordsEvent:
    payload: bytes


@dataclass(frozen=True)
class ProgressEvent:
    content_type: str | None
    payload: bytes


@dataclass(frozen=True)
class StatsEvent:
    content_type: str | None
    payload: bytes


@dataclass(frozen=True)
class EndEvent:
    pass


@dataclass(frozen=True)
class UnknownEvent:
    message_type: str | None
    event_type: str | None


Event = Union[ErrorMessage, RecordsEvent, ProgressEvent, StatsEvent, EndEvent, UnknownEvent]


def classify(message: DecodedMessage) -> Event:
    """Turn a decoded message into its event variant.

    Args:
        message: A decoded message.

    Returns:
        The matching event. Anything unrecognised becomes ``UnknownEvent``.
    """
    headers = message.headers
    message_type = headers.get("message-type")

    if message_type == "error":
        return ErrorMessage(
            code=headers.get("error-code", ""),
            message=headers.get("error-message", ""),
        )

    event_type = headers.get("event-type")
    if message_type == "event":
        content_type = headers.get("content-type")
        if event_type == "Records":
            return RecordsEvent(message.payload)
        if event_type == "Progress":
            return ProgressEvent(content_type, message.payload)
        if event_type == "Stats":
            return StatsEvent(content_type, message.payload)
        if event_type == "End":
            return EndEvent()

    return UnknownEvent(message_type, event_type)


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


def _decode_text(data: bytes, what: str) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EventStreamError(f"Malformed event-stream {what}") from e


def parse_headers(data: bytes) -> dict[str, str]:
    """Parse a header block into a name -> value map.

    The leading ``:`` of protocol header names is stripped, so
    ``:message-type`` becomes ``message-type``.

    Raises:
        EventStreamError: If an entry runs past the end of the block or is
            not valid UTF-8.
    """
    headers: dict[str, str] = {}
    offset = 0
    end = len(data)
    while offset < end:
        name_length = data[offset]
        offset += 1
        if offset + name_length + 3 > end:
            raise EventStreamError("Malformed event-stream header block")
        name = _decode_text(data[offset:offset + name_length], "header block")
        offset += name_length

        # value type byte, not needed for string headers
        offset += 1

        (value_length,) = struct.unpack_from(">H", data, offset)
        offset += 2
        if offset + value_length > end:
            raise EventStreamError("Malformed event-stream header block")
        value = _decode_text(data[offset:offset + value_length], "header block")
        offset += value_length

        headers[name[1:] if name.startswith(":") else name] = value
    return headers


def encode_message(headers: dict[str, str], payload: bytes = b"") -> bytes:
    """Frame ``headers`` and ``payload`` as one event-stream message.

    Header names are written verbatim; pass ``":message-type"`` style names
    to match what S3 sends. All values are encoded as strings.
    """
    header_block = bytearray()
    for name, value in headers.items():
        encoded_name = name.encode("utf-8")
        encoded_value = value.encode("utf-8")
        header_block.append(len(encoded_name))
        header_block += encoded_name
        header_block.append(_STRING_VALUE_TYPE)
        header_block += struct.pack(">H", len(encoded_value))
        header_block += encoded_value

    total_length = OVERHEAD_LENGTH + len(header_block) + len(payload)
    prelude = struct.pack(">II", total_length, len(header_block))
    prelude_crc = struct.pack(">I", zlib.crc32(prelude))
    body = prelude + prelude_crc + bytes(header_block) + payload
    return body + struct.pack(">I", zlib.crc32(body))


class _ChunkReader:
    """Reads exact byte counts from a chunked async byte source."""

    def __init__(self, source: bytes | AsyncIterator[bytes]) -> None:
        if isinstance(source, (bytes, bytearray, memoryview)):
            self._buffer = bytearray(source)
            self._chunks: AsyncIterator[bytes] | None = None
        else:
            self._buffer = bytearray()
            self._chunks = source.__aiter__()

    async def _fill(self, size: int) -> bool:
        """Buffer at least ``size`` bytes; False if the source runs dry first."""
        while len(self._buffer) < size:
            if self._chunks is None:
                return False
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                self._chunks = None
                return False
            self._buffer += chunk
        return True

    async def at_eof(self) -> bool:
        return not await self._fill(1)

    async def read_exactly(self, size: int) -> bytes:
        if not await self._fill(size):
            raise TruncatedEventStream(
                f"Event stream ended mid-message: wanted {size} bytes, "
                f"{len(self._buffer)} available"
            )
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------


class EventStreamDecoder:
    """Decodes a select-object-content response body.

    Args:
        body: The whole body as bytes, or an async iterator of byte chunks.
    """

    def __init__(self, body: bytes | AsyncIterator[bytes]) -> None:
        self._reader = _ChunkReader(body)

    async def read_message(self) -> DecodedMessage | None:
        """Read and CRC-check the next message.

        Returns:
            The message, or None if the stream is exhausted at a message
            boundary.

        Raises:
            ChecksumMismatch: If the prelude or message CRC is wrong.
            TruncatedEventStream: If the stream ends inside a message.
            EventStreamError: If the lengths are inconsistent.
        """
        if await self._reader.at_eof():
            return None

        prelude = await self._reader.read_exactly(PRELUDE_LENGTH)
        crc = zlib.crc32(prelude)
        prelude_crc_bytes = await self._reader.read_exactly(CRC_LENGTH)
        (prelude_crc,) = struct.unpack(">I", prelude_crc_bytes)
        if prelude_crc != crc:
            raise ChecksumMismatch(
                f"Header Checksum Mismatch, Prelude CRC of {prelude_crc} does not "
                f"equal expected CRC of {crc}"
            )
        crc = zlib.crc32(prelude_crc_bytes, crc)

        total_length, header_length = struct.unpack(">II", prelude)
        if total_length < OVERHEAD_LENGTH or header_length > total_length - OVERHEAD_LENGTH:
            raise EventStreamError(
                f"Invalid message lengths: total {total_length}, headers {header_length}"
            )

        header_bytes = await self._reader.read_exactly(header_length)
        crc = zlib.crc32(header_bytes, crc)

        payload = await self._reader.read_exactly(total_length - header_length - OVERHEAD_LENGTH)
        crc = zlib.crc32(payload, crc)

        (message_crc,) = struct.unpack(">I", await self._reader.read_exactly(CRC_LENGTH))
        if message_crc != crc:
            raise ChecksumMismatch(
                f"Message Checksum Mismatch, Message CRC of {message_crc} does not "
                f"equal expected CRC of {crc}"
            )

        return DecodedMessage(
            total_length=total_length,
            header_length=header_length,
            headers=parse_headers(header_bytes),
            payload=payload,
        )

    async def messages(self) -> AsyncIterator[DecodedMessage]:
        """Iterate over every message until the stream is exhausted."""
        while True:
            message = await self.read_message()
            if message is None:
                return
            yield message

    async def decode(self, response: Any = None) -> SelectResults:
        """Fold the stream into a ``SelectResults``.

        Args:
            response: The raw response object, stored on the results when the
                End event is reached.

        Returns:
            The populated results.

        Raises:
            SelectError: If the server sent an error message.
            UnexpectedContentType: If Progress/Stats is not ``text/xml``.
            EventStreamError: If a header or Progress/Stats payload is not
                valid UTF-8.
            TruncatedEventStream: If the stream ends without an End event.
            ChecksumMismatch: On any CRC failure.
        """
        results = SelectResults()

        async with contextlib.aclosing(self.messages()) as messages:
            async for message in messages:
                event = classify(message)

                if isinstance(event, ErrorMessage):
                    metrics.record_select_message("error")
                    raise SelectError(event.code, event.message)

                if isinstance(event, EndEvent):
                    metrics.record_select_message("End")
                    results.set_response(response)
                    return results

                if isinstance(event, RecordsEvent):
                    metrics.record_select_message("Records")
                    results.set_records(event.payload)
                elif isinstance(event, ProgressEvent):
                    metrics.record_select_message("Progress")
                    if event.content_type != _XML_CONTENT_TYPE:
                        raise UnexpectedContentType(event.content_type, "Progress")
                    results.set_progress(_decode_text(event.payload, "Progress payload"))
                elif isinstance(event, StatsEvent):
                    metrics.record_select_message("Stats")
                    if event.content_type != _XML_CONTENT_TYPE:
                        raise UnexpectedContentType(event.content_type, "Stats")
                    results.set_stats(_decode_text(event.payload, "Stats payload"))
                else:
                    metrics.record_select_message("unknown")
                    logger.warning(
                        "Skipping unrecognized event-stream message (message-type=%s, event-type=%s)",
                        event.message_type,
                        event.event_type,
                    )

        raise TruncatedEventStream()


async def decode_select_response(
    body: bytes | AsyncIterator[bytes], response: Any = None
) -> SelectResults:
    """Decode a select-object-content body into ``SelectResults``."""
    return await EventStreamDecoder(body).decode(response)
