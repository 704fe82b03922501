"""Public asyncio client for S3-compatible object storage.

``Client`` is a thin façade: it validates arguments, then hands compose work
to ``ComposeOrchestrator`` and select responses to ``EventStreamDecoder``.
All remote I/O goes through a ``Transport``; by default an ``HttpTransport``
built from the endpoint and credentials.

Example::

    async with Client("http://localhost:9000", "minioadmin", "minioadmin") as client:
        result = await client.compose_object(
            CopyDestination("bucket", "joined"),
            [CopySource("bucket", "part-a"), CopySource("bucket", "part-b")],
        )
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Union

import httpx

from stratus import metrics
from stratus.compose import ComposeOrchestrator
from stratus.config import StratusConfig
from stratus.errors import InvalidArgument
from stratus.eventstream import EventStreamDecoder
from stratus.models import (
    CopyDestination,
    CopySource,
    ObjectStat,
    ObjectWriteResult,
    SelectRequest,
    SelectResults,
)
from stratus.planner import DEFAULT_CONSTRAINTS, PartConstraints
from stratus.signer import MAX_PRESIGNED_EXPIRES, SigV4Signer
from stratus.transport import HttpTransport, Transport
from stratus.validation import validate_bucket_name, validate_object_name

logger = logging.getLogger(__name__)

ComposeCallback = Callable[
    [Union[ObjectWriteResult, None], Union[Exception, None]], Union[Awaitable[None], None]
]


def _normalize_endpoint(endpoint: str, secure: bool) -> str:
    """Add a scheme to bare ``host[:port]`` endpoints."""
    if "://" in endpoint:
        return endpoint
    return f"{'https' if secure else 'http'}://{endpoint}"


class Client:
    """Async client exposing compose, copy, stat, select, and presign calls.

    Attributes:
        transport: The transport every remote call goes through.
        constraints: Multipart limits used by compose.
    """

    def __init__(
        self,
        endpoint: str,
        access_key: str = "",
        secret_key: str = "",
        region: str = "us-east-1",
        secure: bool = True,
        session_token: str = "",
        path_style: bool = True,
        transport: Transport | None = None,
        constraints: PartConstraints = DEFAULT_CONSTRAINTS,
        timeout: float = 60.0,
        max_connections: int = 64,
        verify_tls: bool = True,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint: Service URL, or ``host[:port]`` combined with ``secure``.
            access_key: Access key id; empty for anonymous access.
            secret_key: Secret access key.
            region: Signing region.
            secure: Use HTTPS for endpoints given without a scheme.
            session_token: Optional STS session token.
            path_style: Use path-style bucket addressing.
            transport: Use this transport instead of building an
                ``HttpTransport``.
            constraints: Multipart limits used by compose.
            timeout: HTTP timeout in seconds.
            max_connections: HTTP connection pool size.
            verify_tls: Verify server certificates.
            http_client: Pre-built httpx client for the default transport.
        """
        self.constraints = constraints
        if transport is None:
            transport = HttpTransport(
                _normalize_endpoint(endpoint, secure),
                SigV4Signer(access_key, secret_key, region, session_token),
                path_style=path_style,
                timeout=timeout,
                max_connections=max_connections,
                verify_tls=verify_tls,
                client=http_client,
            )
        self.transport = transport
        self._orchestrator = ComposeOrchestrator(transport, constraints)

    @classmethod
    def from_config(
        cls, config: StratusConfig, http_client: httpx.AsyncClient | None = None
    ) -> "Client":
        """Build a client from a loaded ``StratusConfig``.

        Enables Prometheus metrics when the config asks for them.
        """
        if config.observability.metrics:
            metrics.init_metrics()
        return cls(
            config.endpoint.url,
            access_key=config.credentials.access_key,
            secret_key=config.credentials.secret_key,
            region=config.endpoint.region,
            session_token=config.credentials.session_token,
            path_style=config.endpoint.path_style,
            constraints=config.compose.constraints,
            timeout=config.transport.timeout,
            max_connections=config.transport.max_connections,
            verify_tls=config.transport.verify_tls,
            http_client=http_client,
        )

    async def close(self) -> None:
        """Release the transport's HTTP connections."""
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -- Object metadata and copies --------------------------------------------

    async def stat_object(
        self, bucket: str, key: str, version_id: str | None = None
    ) -> ObjectStat:
        """Fetch the size, ETag, and metadata of an object."""
        validate_bucket_name(bucket)
        validate_object_name(key)
        return await self.transport.stat_object(bucket, key, version_id)

    async def copy_object(
        self, destination: CopyDestination, source: CopySource
    ) -> ObjectWriteResult:
        """Copy a whole object server-side with one request.

        Raises:
            InvalidArgument: If ``source`` carries a byte range; ranged
                copies go through ``compose_object``.
        """
        if not isinstance(destination, CopyDestination):
            raise InvalidArgument("destination should be of type CopyDestination")
        if not isinstance(source, CopySource):
            raise InvalidArgument("source should be of type CopySource")
        source.validate()
        destination.validate()
        if source.has_range:
            raise InvalidArgument("A ranged copy needs compose_object")
        return await self.transport.copy_object(source, destination)

    async def compose_object(
        self,
        destination: CopyDestination,
        sources: list[CopySource],
        callback: ComposeCallback | None = None,
    ) -> ObjectWriteResult | None:
        """Create ``destination`` from the concatenation of ``sources``.

        Argument errors are raised immediately. Without a callback, remote
        errors are raised as well. With a callback, the callback receives
        exactly one ``(result, error)`` pair (one of them None) and the
        call returns the result, or None on failure.

        Args:
            destination: The object to create.
            sources: Objects or byte ranges to concatenate, in order.
            callback: Optional completion callback; may be a coroutine
                function.

        Returns:
            The result describing the new object (None when a callback
            received an error).
        """
        self._orchestrator.validate(destination, sources)
        if callback is None:
            return await self._orchestrator.compose(destination, sources)

        try:
            result = await self._orchestrator.compose(destination, sources)
        except Exception as e:
            logger.debug("Compose of %s failed: %s", destination.path, e)
            outcome = callback(None, e)
            if inspect.isawaitable(outcome):
                await outcome
            return None

        outcome = callback(result, None)
        if inspect.isawaitable(outcome):
            await outcome
        return result

    # -- Select ----------------------------------------------------------------

    async def select_object_content(
        self, bucket: str, key: str, request: SelectRequest
    ) -> SelectResults:
        """Run an S3 Select query and collect its records, progress, and stats.

        Raises:
            SelectError: If the server reported an error mid-stream.
            EventStreamError: If the response stream is corrupt or truncated.
        """
        validate_bucket_name(bucket)
        validate_object_name(key)
        request.validate()

        response = await self.transport.select_object_content(bucket, key, request)
        try:
            return await EventStreamDecoder(response.iter_bytes()).decode(response)
        finally:
            await response.aclose()

    # -- Presigned URLs --------------------------------------------------------

    def _presign(
        self,
        method: str,
        bucket: str,
        key: str,
        expires: int,
        query: dict[str, str | None] | None = None,
    ) -> str:
        validate_bucket_name(bucket)
        validate_object_name(key)
        presigned_url = getattr(self.transport, "presigned_url", None)
        if presigned_url is None:
            raise InvalidArgument("This transport cannot presign URLs")
        return presigned_url(method, bucket, key, expires, query)

    def presigned_get_object(
        self,
        bucket: str,
        key: str,
        expires: int = MAX_PRESIGNED_EXPIRES,
        version_id: str | None = None,
    ) -> str:
        """Presigned URL that downloads ``bucket/key`` without credentials."""
        query = {"versionId": version_id} if version_id else None
        return self._presign("GET", bucket, key, expires, query)

    def presigned_put_object(
        self, bucket: str, key: str, expires: int = MAX_PRESIGNED_EXPIRES
    ) -> str:
        """Presigned URL that uploads to ``bucket/key`` without credentials."""
        return self._presign("PUT", bucket, key, expires)
