"""S3 XML request rendering and response parsing helpers for stratus."""

import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Any
from xml.sax.saxutils import escape as _sax_escape

from stratus.errors import InvalidResponse, S3Error, error_from_code
from stratus.models import CompletedPart, SelectRequest

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"

_SCAN_COUNTERS = ("BytesScanned", "BytesProcessed", "BytesReturned")


def _escape_xml(value: Any) -> str:
    """Escape special XML characters in a string value.

    Args:
        value: The raw value to escape (converted with ``str()``).

    Returns:
        The XML-safe escaped string.
    """
    return _sax_escape(str(value))


def _parse_document(body: bytes | str, http_status: int | None = None) -> ET.Element:
    """Parse an XML body, raising ``InvalidResponse`` if it is not XML."""
    try:
        return ET.fromstring(body)
    except ET.ParseError as e:
        raise InvalidResponse(f"Malformed XML in response: {e}", http_status=http_status) from e


def _local_name(tag: str) -> str:
    """Strip an ``{namespace}`` prefix from an element tag."""
    if tag.startswith("{"):
        return tag[tag.index("}") + 1:]
    return tag


def _find_text(root: ET.Element, name: str) -> str | None:
    """Return the text of the first direct child called ``name``, ignoring namespaces."""
    for child in root:
        if _local_name(child.tag) == name:
            return (child.text or "").strip()
    return None


def _require_text(root: ET.Element, name: str) -> str:
    value = _find_text(root, name)
    if value is None:
        raise InvalidResponse(f"Missing <{name}> element in <{_local_name(root.tag)}>")
    return value


def _error_from_element(root: ET.Element, http_status: int | None) -> S3Error:
    """Convert a parsed ``<Error>`` element into an ``S3Error``."""
    code = _find_text(root, "Code") or "UnknownError"
    message = _find_text(root, "Message") or ""
    extra_fields: dict[str, str] = {}
    for child in root:
        name = _local_name(child.tag)
        if name not in ("Code", "Message"):
            extra_fields[name] = (child.text or "").strip()
    return error_from_code(code, message, http_status=http_status, extra_fields=extra_fields)


def _raise_if_error(root: ET.Element, http_status: int | None) -> None:
    """Some S3 operations answer 200 OK with an ``<Error>`` document."""
    if _local_name(root.tag) == "Error":
        raise _error_from_element(root, http_status)


def sanitize_etag(etag: str | None) -> str:
    """Remove surrounding quotes (literal or entity-encoded) from an ETag."""
    if not etag:
        return ""
    for quote in ('"', "&quot;", "&#34;"):
        if etag.startswith(quote):
            etag = etag[len(quote):]
        if etag.endswith(quote):
            etag = etag[: -len(quote)]
    return etag


def parse_s3_datetime(value: str | None) -> datetime | None:
    """Parse an S3 ISO 8601 timestamp (``2024-01-02T03:04:05.000Z``)."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Response parsers
# ---------------------------------------------------------------------------


def parse_error(body: bytes | str, http_status: int | None = None) -> S3Error:
    """Parse an S3 XML error response body.

    Args:
        body: The raw response body.
        http_status: HTTP status of the response.

    Returns:
        The decoded ``S3Error``. Bodies that are not an ``<Error>`` document
        produce an ``InvalidResponse``.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return InvalidResponse(
            f"Unexpected non-XML error response (HTTP {http_status})", http_status=http_status
        )
    if _local_name(root.tag) != "Error":
        return InvalidResponse(
            f"Unexpected <{_local_name(root.tag)}> error response", http_status=http_status
        )
    return _error_from_element(root, http_status)


def parse_initiate_multipart_upload(body: bytes | str) -> str:
    """Extract the upload id from an InitiateMultipartUploadResult.

    Returns:
        The upload id.
    """
    root = _parse_document(body)
    _raise_if_error(root, 200)
    upload_id = _require_text(root, "UploadId")
    if not upload_id:
        raise InvalidResponse("Empty <UploadId> in InitiateMultipartUploadResult")
    return upload_id


def parse_complete_multipart_upload(body: bytes | str) -> dict[str, str]:
    """Parse a CompleteMultipartUploadResult.

    Raises:
        S3Error: If the server answered 200 OK with an ``<Error>`` document.

    Returns:
        A dict with ``location``, ``bucket``, ``key`` and ``etag``.
    """
    root = _parse_document(body)
    _raise_if_error(root, 200)
    return {
        "location": _find_text(root, "Location") or "",
        "bucket": _find_text(root, "Bucket") or "",
        "key": _find_text(root, "Key") or "",
        "etag": sanitize_etag(_find_text(root, "ETag")),
    }


def parse_copy_result(body: bytes | str) -> tuple[str, datetime | None]:
    """Parse a CopyObjectResult or CopyPartResult.

    Returns:
        A ``(etag, last_modified)`` tuple.
    """
    root = _parse_document(body)
    _raise_if_error(root, 200)
    etag = sanitize_etag(_require_text(root, "ETag"))
    return etag, parse_s3_datetime(_find_text(root, "LastModified"))


def parse_scan_counters(xml: str) -> dict[str, int]:
    """Parse the byte counters of a select Progress or Stats document."""
    root = _parse_document(xml)
    counters: dict[str, int] = {}
    for name in _SCAN_COUNTERS:
        value = _find_text(root, name)
        if value is not None and value.isdigit():
            counters[name] = int(value)
    return counters


# ---------------------------------------------------------------------------
# Request renderers
# ---------------------------------------------------------------------------


def render_complete_multipart_upload(parts: list[CompletedPart]) -> str:
    """Render a CompleteMultipartUpload request body.

    Args:
        parts: Completed parts, already sorted by part number.

    Returns:
        An XML string for CompleteMultipartUpload.
    """
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<CompleteMultipartUpload xmlns="{S3_NAMESPACE}">',
    ]
    for part in parts:
        lines.append(
            f"<Part><PartNumber>{part.part_number}</PartNumber>"
            f"<ETag>{_escape_xml(part.etag)}</ETag></Part>"
        )
    lines.append("</CompleteMultipartUpload>")
    return "\n".join(lines)


def _render_mapping(mapping: dict[str, Any]) -> str:
    """Render a nested mapping as XML elements (no root)."""
    parts = []
    for name, value in mapping.items():
        if isinstance(value, dict):
            inner = _render_mapping(value)
        elif isinstance(value, bool):
            inner = "true" if value else "false"
        elif value is None:
            inner = ""
        else:
            inner = _escape_xml(value)
        parts.append(f"<{name}>{inner}</{name}>")
    return "".join(parts)


def render_select_request(request: SelectRequest) -> str:
    """Render a SelectObjectContentRequest body.

    Args:
        request: The select parameters.

    Returns:
        An XML string for SelectObjectContentRequest.
    """
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<SelectObjectContentRequest xmlns="{S3_NAMESPACE}">',
        f"<Expression>{_escape_xml(request.expression)}</Expression>",
        f"<ExpressionType>{_escape_xml(request.expression_type)}</ExpressionType>",
        f"<InputSerialization>{_render_mapping(request.input_serialization)}</InputSerialization>",
        f"<OutputSerialization>{_render_mapping(request.output_serialization)}"
        "</OutputSerialization>",
    ]
    if request.request_progress:
        parts.append("<RequestProgress><Enabled>true</Enabled></RequestProgress>")
    if request.scan_range:
        parts.append(f"<ScanRange>{_render_mapping(request.scan_range)}</ScanRange>")
    parts.append("</SelectObjectContentRequest>")
    return "\n".join(parts)
