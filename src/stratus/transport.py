"""Transport layer: the S3 operations the compose and select code relies on.

``Transport`` is the protocol the orchestrator and the client façade talk
to. ``HttpTransport`` implements it over ``httpx.AsyncClient`` with SigV4
signing; tests substitute in-memory fakes.

Retries, redirects, connection pooling, and TLS are left to httpx.
"""

import email.utils
import hashlib
import logging
import time
import urllib.parse
from collections.abc import AsyncIterator, Iterable
from typing import Protocol

import httpx

from stratus import metrics
from stratus.errors import (
    AccessDenied,
    InvalidResponse,
    NoSuchBucket,
    NoSuchKey,
    PreconditionFailed,
    S3Error,
)
from stratus.models import (
    CompletedPart,
    CopyDestination,
    CopySource,
    ObjectStat,
    ObjectWriteResult,
    SelectRequest,
)
from stratus.signer import SigV4Signer, uri_encode
from stratus.xml_utils import (
    parse_complete_multipart_upload,
    parse_copy_result,
    parse_error,
    parse_initiate_multipart_upload,
    render_complete_multipart_upload,
    render_select_request,
    sanitize_etag,
)

logger = logging.getLogger(__name__)

_META_PREFIX = "x-amz-meta-"


class TransportResponse:
    """An HTTP response whose body can be consumed incrementally.

    Buffered responses carry their bytes in ``content``; streamed responses
    keep the underlying ``httpx.Response`` open until ``aclose()``.

    Attributes:
        status_code: HTTP status code.
        headers: Response headers with lowercase names.
        content: The body for buffered responses.
    """

    def __init__(
        self,
        status_code: int,
        headers: dict[str, str],
        content: bytes = b"",
        raw: httpx.Response | None = None,
    ) -> None:
        self.status_code = status_code
        self.headers = headers
        self.content = content
        self._raw = raw

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the body in chunks as they arrive."""
        if self._raw is None:
            if self.content:
                yield self.content
            return
        async for chunk in self._raw.aiter_bytes():
            yield chunk

    async def aclose(self) -> None:
        """Release the underlying connection of a streamed response."""
        if self._raw is not None:
            await self._raw.aclose()
            self._raw = None


class Transport(Protocol):
    """Protocol defining the S3 operations used by compose and select.

    Implementations raise ``S3Error`` (or a subclass) for error responses.
    """

    async def request(
        self,
        method: str,
        bucket: str | None = None,
        key: str | None = None,
        query: dict[str, str | None] | None = None,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
        expected: Iterable[int] = (200,),
        stream: bool = False,
    ) -> TransportResponse:
        """Send one signed request and return its response.

        Raises:
            S3Error: If the status code is not in ``expected``.
        """
        ...

    async def stat_object(
        self, bucket: str, key: str, version_id: str | None = None
    ) -> ObjectStat:
        """Fetch an object's size, ETag, and metadata.

        Args:
            bucket: The bucket name.
            key: The object key.
            version_id: Optional version to stat.

        Returns:
            The object's metadata.
        """
        ...

    async def copy_object(
        self, source: CopySource, destination: CopyDestination
    ) -> ObjectWriteResult:
        """Copy one whole object server-side with a single request.

        Args:
            source: The object to copy from.
            destination: Where to write the copy.

        Returns:
            The result describing the new object.
        """
        ...

    async def initiate_multipart_upload(
        self, bucket: str, key: str, headers: dict[str, str]
    ) -> str:
        """Start a multipart upload.

        Args:
            bucket: Destination bucket.
            key: Destination key.
            headers: Headers describing the final object (metadata, SSE, ...).

        Returns:
            The upload id.
        """
        ...

    async def upload_part_copy(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        headers: dict[str, str],
    ) -> CompletedPart:
        """Upload one part by copying a byte range of an existing object.

        Args:
            bucket: Destination bucket.
            key: Destination key.
            upload_id: The multipart upload identifier.
            part_number: 1-based part number.
            headers: x-amz-copy-source* headers for this part.

        Returns:
            The part number and ETag of the new part.
        """
        ...

    async def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: list[CompletedPart]
    ) -> ObjectWriteResult:
        """Assemble uploaded parts into the final object.

        Args:
            bucket: Destination bucket.
            key: Destination key.
            upload_id: The multipart upload identifier.
            parts: Completed parts sorted by part number.

        Returns:
            The result describing the new object.
        """
        ...

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        """Abort a multipart upload and discard its parts."""
        ...

    async def select_object_content(
        self, bucket: str, key: str, request: SelectRequest
    ) -> TransportResponse:
        """Send a select-object-content request and return the streamed response.

        The caller must ``aclose()`` the returned response.
        """
        ...


class HttpTransport:
    """``Transport`` implementation over ``httpx.AsyncClient``.

    Attributes:
        endpoint: Base URL of the service (scheme and host).
        path_style: Address buckets as ``/{bucket}/{key}`` rather than
            ``{bucket}.host/{key}``.
    """

    def __init__(
        self,
        endpoint: str,
        signer: SigV4Signer,
        path_style: bool = True,
        timeout: float = 60.0,
        max_connections: int = 64,
        verify_tls: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            endpoint: Base URL, e.g. ``https://s3.us-east-1.amazonaws.com``.
            signer: Request signer.
            path_style: Use path-style addressing.
            timeout: Request timeout in seconds.
            max_connections: Connection pool size.
            verify_tls: Verify server certificates.
            client: Pre-built httpx client (tests inject one with a mock or
                ASGI transport). The transport does not close a client it
                did not create.
        """
        self.endpoint = endpoint.rstrip("/")
        self.path_style = path_style
        self._signer = signer
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=max_connections),
            verify=verify_tls,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()

    # -- URL construction ------------------------------------------------------

    def url_for(
        self,
        bucket: str | None = None,
        key: str | None = None,
        query: dict[str, str | None] | None = None,
    ) -> str:
        """Build the request URL for a bucket/key and query parameters.

        Query parameters with a None value are sent without ``=`` (e.g.
        ``?uploads``).
        """
        parsed = urllib.parse.urlsplit(self.endpoint)
        netloc = parsed.netloc
        path = ""
        if bucket:
            if self.path_style:
                path = f"/{bucket}"
            else:
                netloc = f"{bucket}.{netloc}"
        if key:
            path += "/" + uri_encode(key, encode_slash=False)
        if not path:
            path = "/"

        query_string = ""
        if query:
            pairs = []
            for name, value in query.items():
                if value is None:
                    pairs.append(uri_encode(name))
                else:
                    pairs.append(f"{uri_encode(name)}={uri_encode(str(value))}")
            query_string = "&".join(pairs)

        return urllib.parse.urlunsplit((parsed.scheme, netloc, path, query_string, ""))

    # -- Core request ----------------------------------------------------------

    async def request(
        self,
        method: str,
        bucket: str | None = None,
        key: str | None = None,
        query: dict[str, str | None] | None = None,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
        expected: Iterable[int] = (200,),
        stream: bool = False,
    ) -> TransportResponse:
        """Send a signed request and check its status.

        Args:
            method: HTTP method.
            bucket: Bucket name, if any.
            key: Object key, if any.
            query: Query parameters.
            headers: Request headers.
            body: Request body.
            expected: Status codes treated as success.
            stream: Keep the body unread for incremental consumption.

        Returns:
            The response.

        Raises:
            S3Error: If the status code is not in ``expected``.
        """
        url = self.url_for(bucket, key, query)
        payload_hash = hashlib.sha256(body).hexdigest()
        signed = self._signer.sign_headers(method, url, headers or {}, payload_hash)

        start = time.monotonic()
        request = self._client.build_request(method, url, headers=signed, content=body)
        raw = await self._client.send(request, stream=stream)
        duration_ms = round((time.monotonic() - start) * 1000, 2)

        metrics.record_request(method, raw.status_code)
        logger.debug(
            "%s %s -> %d",
            method,
            url,
            raw.status_code,
            extra={"bucket": bucket, "key": key, "duration_ms": duration_ms},
        )

        response_headers = {name.lower(): value for name, value in raw.headers.items()}
        if raw.status_code not in expected:
            content = await raw.aread()
            await raw.aclose()
            raise self._error_for(method, bucket, key, raw.status_code, content)

        if stream:
            return TransportResponse(raw.status_code, response_headers, raw=raw)
        return TransportResponse(raw.status_code, response_headers, content=raw.content)

    @staticmethod
    def _error_for(
        method: str, bucket: str | None, key: str | None, status: int, content: bytes
    ) -> S3Error:
        """Turn an error response into an ``S3Error``.

        HEAD responses have no body, so the status code alone decides.
        """
        if content:
            return parse_error(content, status)
        if status == 404:
            return NoSuchKey(http_status=404) if key else NoSuchBucket(http_status=404)
        if status == 403:
            return AccessDenied(http_status=403)
        if status == 412:
            return PreconditionFailed(http_status=412)
        return S3Error(
            code=f"HTTP{status}",
            message=f"{method} request failed with HTTP {status}",
            http_status=status,
        )

    # -- Transport operations --------------------------------------------------

    async def stat_object(
        self, bucket: str, key: str, version_id: str | None = None
    ) -> ObjectStat:
        query = {"versionId": version_id} if version_id else None
        response = await self.request("HEAD", bucket, key, query=query)
        headers = response.headers

        try:
            size = int(headers.get("content-length", "0"))
        except ValueError as e:
            raise InvalidResponse("Invalid Content-Length in HEAD response") from e

        last_modified = None
        if headers.get("last-modified"):
            last_modified = email.utils.parsedate_to_datetime(headers["last-modified"])

        return ObjectStat(
            bucket=bucket,
            key=key,
            size=size,
            etag=sanitize_etag(headers.get("etag")),
            last_modified=last_modified,
            version_id=headers.get("x-amz-version-id"),
            content_type=headers.get("content-type"),
            metadata={
                name[len(_META_PREFIX):]: value
                for name, value in headers.items()
                if name.startswith(_META_PREFIX)
            },
        )

    async def copy_object(
        self, source: CopySource, destination: CopyDestination
    ) -> ObjectWriteResult:
        headers = {**source.copy_headers(), **destination.headers_for_request(copy=True)}
        response = await self.request("PUT", destination.bucket, destination.key, headers=headers)
        etag, last_modified = parse_copy_result(response.content)
        return ObjectWriteResult(
            bucket=destination.bucket,
            key=destination.key,
            etag=etag,
            version_id=response.headers.get("x-amz-version-id"),
            source_version_id=response.headers.get("x-amz-copy-source-version-id"),
            last_modified=last_modified,
        )

    async def initiate_multipart_upload(
        self, bucket: str, key: str, headers: dict[str, str]
    ) -> str:
        response = await self.request(
            "POST", bucket, key, query={"uploads": None}, headers=headers
        )
        upload_id = parse_initiate_multipart_upload(response.content)
        logger.debug(
            "Initiated multipart upload %s for %s/%s",
            upload_id,
            bucket,
            key,
            extra={"bucket": bucket, "key": key, "upload_id": upload_id},
        )
        return upload_id

    async def upload_part_copy(
        self,
        bucket: str,
        key: str,
        upload_id: str,
        part_number: int,
        headers: dict[str, str],
    ) -> CompletedPart:
        response = await self.request(
            "PUT",
            bucket,
            key,
            query={"partNumber": str(part_number), "uploadId": upload_id},
            headers=headers,
        )
        etag, _ = parse_copy_result(response.content)
        return CompletedPart(part_number=part_number, etag=etag)

    async def complete_multipart_upload(
        self, bucket: str, key: str, upload_id: str, parts: list[CompletedPart]
    ) -> ObjectWriteResult:
        body = render_complete_multipart_upload(parts).encode("utf-8")
        response = await self.request(
            "POST",
            bucket,
            key,
            query={"uploadId": upload_id},
            headers={"content-type": "application/xml"},
            body=body,
        )
        result = parse_complete_multipart_upload(response.content)
        return ObjectWriteResult(
            bucket=result["bucket"] or bucket,
            key=result["key"] or key,
            etag=result["etag"],
            version_id=response.headers.get("x-amz-version-id"),
            location=result["location"] or None,
        )

    async def abort_multipart_upload(self, bucket: str, key: str, upload_id: str) -> None:
        await self.request(
            "DELETE", bucket, key, query={"uploadId": upload_id}, expected=(204,)
        )

    async def select_object_content(
        self, bucket: str, key: str, request: SelectRequest
    ) -> TransportResponse:
        body = render_select_request(request).encode("utf-8")
        return await self.request(
            "POST",
            bucket,
            key,
            query={"select": None, "select-type": "2"},
            headers={"content-type": "application/xml"},
            body=body,
            stream=True,
        )

    def presigned_url(
        self,
        method: str,
        bucket: str,
        key: str,
        expires: int,
        query: dict[str, str | None] | None = None,
    ) -> str:
        """Build a presigned URL for ``method`` on ``bucket/key``."""
        return self._signer.presign_url(method, self.url_for(bucket, key, query), expires)
