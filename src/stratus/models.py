"""Data model types for stratus.

These dataclasses describe the inputs of compose/copy requests (sources and
destination), the intermediate multipart bookkeeping (upload-part tasks and
completed parts), and the result containers handed back to callers.
"""

from __future__ import annotations

import base64
import dataclasses
import hashlib
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from stratus.errors import InvalidArgument
from stratus.validation import validate_bucket_name, validate_byte_range, validate_object_name

_SSE_HEADER = "X-Amz-Server-Side-Encryption"
_SSEC_PREFIX = "X-Amz-Server-Side-Encryption-Customer-"
_COPY_SSEC_PREFIX = "X-Amz-Copy-Source-Server-Side-Encryption-Customer-"

# Headers that may be passed through as-is instead of as x-amz-meta-*.
_SUPPORTED_HEADERS = frozenset(
    {
        "content-type",
        "cache-control",
        "content-encoding",
        "content-disposition",
        "content-language",
        "expires",
        "x-amz-website-redirect-location",
        "x-amz-storage-class",
    }
)

_RETENTION_MODES = ("GOVERNANCE", "COMPLIANCE")
_METADATA_DIRECTIVES = ("COPY", "REPLACE")


def _http_date(value: datetime) -> str:
    """Format a datetime as an RFC 7231 HTTP date."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")


def _iso8601(value: datetime) -> str:
    """Format a datetime the way S3 expects in object-lock headers."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


@dataclass(frozen=True)
class Encryption:
    """Server-side encryption directive.

    Attributes:
        kind: One of "SSE-S3", "SSE-KMS", or "SSE-C".
        kms_key_id: Key id for SSE-KMS.
        customer_key: 32-byte customer key for SSE-C.
    """

    kind: str = "SSE-S3"
    kms_key_id: str = ""
    customer_key: bytes = b""

    def __post_init__(self) -> None:
        if self.kind not in ("SSE-S3", "SSE-KMS", "SSE-C"):
            raise InvalidArgument(f"Unknown encryption type: {self.kind}")
        if self.kind == "SSE-C" and len(self.customer_key) != 32:
            raise InvalidArgument("SSE-C customer key must be 32 bytes long")

    def _customer_headers(self, prefix: str) -> dict[str, str]:
        return {
            prefix + "Algorithm": "AES256",
            prefix + "Key": base64.b64encode(self.customer_key).decode("ascii"),
            prefix + "Key-MD5": base64.b64encode(
                hashlib.md5(self.customer_key).digest()
            ).decode("ascii"),
        }

    def headers(self) -> dict[str, str]:
        """Headers that apply this encryption to the object being written."""
        if self.kind == "SSE-C":
            return self._customer_headers(_SSEC_PREFIX)
        if self.kind == "SSE-KMS":
            headers = {_SSE_HEADER: "aws:kms"}
            if self.kms_key_id:
                headers[_SSE_HEADER + "-Aws-Kms-Key-Id"] = self.kms_key_id
            return headers
        return {_SSE_HEADER: "AES256"}

    def copy_source_headers(self) -> dict[str, str]:
        """Headers that let the server decrypt an SSE-C encrypted copy source."""
        if self.kind != "SSE-C":
            return {}
        return self._customer_headers(_COPY_SSEC_PREFIX)


@dataclass
class CopySource:
    """One input of a copy or compose operation.

    Attributes:
        bucket: Source bucket name.
        key: Source object key.
        version_id: Optional source version.
        start: First byte of the segment to copy (inclusive), or None.
        end: Last byte of the segment to copy (inclusive), or None.
        match_etag: Copy only if the source ETag matches. The compose
            orchestrator fills this from the stat result.
        no_match_etag: Copy only if the source ETag differs.
        modified_since: Copy only if modified after this time.
        unmodified_since: Copy only if not modified after this time.
        encryption: SSE-C key needed to read an encrypted source.
    """

    bucket: str
    key: str
    version_id: str | None = None
    start: int | None = None
    end: int | None = None
    match_etag: str | None = None
    no_match_etag: str | None = None
    modified_since: datetime | None = None
    unmodified_since: datetime | None = None
    encryption: Encryption | None = None

    @property
    def has_range(self) -> bool:
        """Whether a byte segment (rather than the whole object) is copied."""
        return self.start is not None and self.end is not None

    @property
    def path(self) -> str:
        """``bucket/key`` label used in log lines and error messages."""
        return f"{self.bucket}/{self.key}"

    def validate(self) -> None:
        """Check the descriptor's own shape.

        Raises:
            InvalidBucketName: If the bucket name is invalid.
            InvalidObjectName: If the key is invalid.
            InvalidArgument: If the byte range is malformed.
        """
        validate_bucket_name(self.bucket)
        validate_object_name(self.key)
        validate_byte_range(self.start, self.end)

    def with_etag(self, etag: str) -> CopySource:
        """Return a copy of this source pinned to ``etag``."""
        return dataclasses.replace(self, match_etag=etag)

    def copy_headers(self) -> dict[str, str]:
        """Build the x-amz-copy-source* headers for this source.

        The byte range is not included; upload-part-copy requests add their
        own ``x-amz-copy-source-range`` per part.
        """
        copy_source = "/" + urllib.parse.quote(f"{self.bucket}/{self.key}", safe="/")
        if self.version_id:
            copy_source += "?versionId=" + urllib.parse.quote(self.version_id, safe="")

        headers = {"x-amz-copy-source": copy_source}
        if self.match_etag:
            headers["x-amz-copy-source-if-match"] = self.match_etag
        if self.no_match_etag:
            headers["x-amz-copy-source-if-none-match"] = self.no_match_etag
        if self.modified_since is not None:
            headers["x-amz-copy-source-if-modified-since"] = _http_date(self.modified_since)
        if self.unmodified_since is not None:
            headers["x-amz-copy-source-if-unmodified-since"] = _http_date(
                self.unmodified_since
            )
        if self.encryption is not None:
            headers.update(self.encryption.copy_source_headers())
        return headers


@dataclass(frozen=True)
class CopyDestination:
    """Target of a copy or compose operation.

    Attributes:
        bucket: Destination bucket name.
        key: Destination object key.
        user_metadata: Metadata to store on the new object. Keys without an
            ``x-amz-meta-`` prefix get one unless they name a standard header.
        user_tags: Tags to store on the new object.
        headers: Extra raw request headers.
        metadata_directive: "COPY" or "REPLACE" for single-request copies;
            defaults to REPLACE when metadata is supplied.
        mode: Object-lock retention mode (GOVERNANCE or COMPLIANCE).
        retain_until_date: Object-lock retention date.
        legal_hold: Object-lock legal hold flag.
        encryption: Server-side encryption for the new object.
    """

    bucket: str
    key: str
    user_metadata: dict[str, str] = field(default_factory=dict)
    user_tags: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    metadata_directive: str | None = None
    mode: str | None = None
    retain_until_date: datetime | None = None
    legal_hold: bool | None = None
    encryption: Encryption | None = None

    @property
    def path(self) -> str:
        return f"{self.bucket}/{self.key}"

    def validate(self) -> None:
        """Check the descriptor's own shape.

        Raises:
            InvalidBucketName: If the bucket name is invalid.
            InvalidObjectName: If the key is invalid.
            InvalidArgument: If directive or retention settings are invalid.
        """
        validate_bucket_name(self.bucket)
        validate_object_name(self.key)
        if self.metadata_directive is not None and (
            self.metadata_directive not in _METADATA_DIRECTIVES
        ):
            raise InvalidArgument(f"Invalid metadata directive: {self.metadata_directive}")
        if self.mode is not None and self.mode not in _RETENTION_MODES:
            raise InvalidArgument(f"Invalid retention mode: {self.mode}")
        if (self.mode is None) != (self.retain_until_date is None):
            raise InvalidArgument("Retention mode and retain-until date must be set together")

    def headers_for_request(self, copy: bool = False) -> dict[str, str]:
        """Build the request headers describing the new object.

        Args:
            copy: True for a single-request PUT copy, which additionally
                carries metadata/tagging directives. Initiating a multipart
                upload takes the same headers without the directives.

        Returns:
            A header map.
        """
        headers: dict[str, str] = dict(self.headers)

        for name, value in self.user_metadata.items():
            lower = name.lower()
            if lower.startswith("x-amz-meta-") or lower in _SUPPORTED_HEADERS:
                headers[name] = str(value)
            else:
                headers["x-amz-meta-" + name] = str(value)

        if self.user_tags:
            headers["x-amz-tagging"] = urllib.parse.urlencode(self.user_tags)

        if copy:
            directive = self.metadata_directive
            if directive is None and self.user_metadata:
                directive = "REPLACE"
            if directive is not None:
                headers["x-amz-metadata-directive"] = directive
            if self.user_tags:
                headers["x-amz-tagging-directive"] = "REPLACE"

        if self.mode is not None and self.retain_until_date is not None:
            headers["x-amz-object-lock-mode"] = self.mode
            headers["x-amz-object-lock-retain-until-date"] = _iso8601(self.retain_until_date)
        if self.legal_hold is not None:
            headers["x-amz-object-lock-legal-hold"] = "ON" if self.legal_hold else "OFF"

        if self.encryption is not None:
            headers.update(self.encryption.headers())
        return headers


@dataclass
class ObjectStat:
    """Metadata of a remote object as returned by a HEAD request.

    Attributes:
        bucket: The bucket name.
        key: The object key.
        size: Size in bytes.
        etag: ETag with surrounding quotes removed.
        last_modified: Last-Modified timestamp, if the server sent one.
        version_id: Version id, if the bucket is versioned.
        content_type: MIME type.
        metadata: User metadata with the ``x-amz-meta-`` prefix stripped.
    """

    bucket: str
    key: str
    size: int
    etag: str
    last_modified: datetime | None = None
    version_id: str | None = None
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, order=True)
class CompletedPart:
    """One uploaded part, ordered by part number."""

    part_number: int
    etag: str = field(compare=False)


@dataclass(frozen=True)
class UploadPartTask:
    """A single upload-part-copy request in a compose operation.

    Attributes:
        bucket: Destination bucket.
        key: Destination key.
        upload_id: The multipart upload the part belongs to.
        part_number: 1-based part number, sequential across all sources.
        headers: Copy-source and copy-source-range headers for the part.
        source: The source this part reads from (for error attribution).
    """

    bucket: str
    key: str
    upload_id: str
    part_number: int
    headers: dict[str, str]
    source: CopySource


@dataclass
class ObjectWriteResult:
    """Result of a copy, compose, or complete-multipart-upload call."""

    bucket: str
    key: str
    etag: str = ""
    version_id: str | None = None
    source_version_id: str | None = None
    last_modified: datetime | None = None
    size: int | None = None
    location: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class SelectRequest:
    """Parameters of a select-object-content call.

    Attributes:
        expression: The SQL expression.
        input_serialization: Nested mapping rendered as
            ``<InputSerialization>``, e.g. ``{"CSV": {"FileHeaderInfo": "USE"}}``.
        output_serialization: Nested mapping rendered as
            ``<OutputSerialization>``.
        expression_type: Query language; only "SQL" is defined by S3.
        request_progress: Ask the server to send Progress events.
        scan_range: Optional ``{"Start": n, "End": m}`` scan range.
    """

    expression: str
    input_serialization: dict[str, Any]
    output_serialization: dict[str, Any]
    expression_type: str = "SQL"
    request_progress: bool = False
    scan_range: dict[str, int] | None = None

    def validate(self) -> None:
        if not isinstance(self.expression, str) or not self.expression:
            raise InvalidArgument("Select expression must be a non-empty string")
        if not self.input_serialization:
            raise InvalidArgument("Input serialization is required")
        if not self.output_serialization:
            raise InvalidArgument("Output serialization is required")


class SelectResults:
    """Accumulator for the outcome of a select-object-content call.

    Built incrementally by the event-stream decoder and handed back to the
    caller once the End event is seen. Records payloads are concatenated;
    progress and stats keep the most recent XML document.
    """

    def __init__(self) -> None:
        self._records = bytearray()
        self.progress: str | None = None
        self.stats: str | None = None
        self.response: Any = None

    @property
    def records(self) -> bytes:
        return bytes(self._records)

    def set_records(self, data: bytes) -> None:
        self._records.extend(data)

    def set_progress(self, xml: str) -> None:
        self.progress = xml

    def set_stats(self, xml: str) -> None:
        self.stats = xml

    def set_response(self, response: Any) -> None:
        self.response = response

    @property
    def progress_counters(self) -> dict[str, int]:
        """Byte counters from the latest Progress event."""
        from stratus.xml_utils import parse_scan_counters

        return parse_scan_counters(self.progress) if self.progress else {}

    @property
    def stats_counters(self) -> dict[str, int]:
        """Byte counters from the Stats event."""
        from stratus.xml_utils import parse_scan_counters

        return parse_scan_counters(self.stats) if self.stats else {}
