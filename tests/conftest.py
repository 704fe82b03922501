"""Shared pytest fixtures for stratus tests.

Orchestrator and façade tests run against ``RecordingTransport``, an
in-memory ``Transport`` that records every call in order and can be told to
delay or fail individual parts. End-to-end tests run the real
``HttpTransport`` against the FastAPI stand-in in ``fake_s3.py`` through
``httpx.ASGITransport``, without a network socket.
"""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from fake_s3 import create_fake_s3
from stratus.client import Client
from stratus.errors import NoSuchKey
from stratus.models import (
    CompletedPart,
    CopyDestination,
    CopySource,
    ObjectStat,
    ObjectWriteResult,
    SelectRequest,
)
from stratus.planner import PartConstraints
from stratus.transport import TransportResponse

# Small limits so multi-part plans need only a few bytes: the optimal part
# size is 160 // (11 - 1) = 16 bytes.
SMALL_CONSTRAINTS = PartConstraints(
    abs_min_part_size=4,
    min_part_size=4,
    max_part_size=64,
    max_single_put_object_size=64,
    max_parts_count=11,
    max_multipart_object_size=160,
)


class RecordingTransport:
    """In-memory ``Transport`` that records calls.

    Attributes:
        calls: ``(operation, args)`` tuples in call order.
        completed: Part numbers in the order their copies finished.
        completed_at_abort: Snapshot of ``completed`` when abort was called.
        part_delays: Seconds to sleep before finishing a given part.
        part_errors: Exception to raise for a given part.
        abort_error: Exception to raise from abort.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], ObjectStat] = {}
        self.calls: list[tuple[str, tuple]] = []
        self.completed: list[int] = []
        self.completed_at_abort: list[int] | None = None
        self.part_delays: dict[int, float] = {}
        self.part_errors: dict[int, Exception] = {}
        self.abort_error: Exception | None = None
        self.select_body = b""
        self.closed = False

    def add_object(self, bucket: str, key: str, size: int, etag: str | None = None) -> ObjectStat:
        stat = ObjectStat(bucket=bucket, key=key, size=size, etag=etag or f"etag-{key}")
        self.objects[(bucket, key)] = stat
        return stat

    def operations(self) -> list[str]:
        return [name for name, _ in self.calls]

    def calls_named(self, name: str) -> list[tuple]:
        return [args for op, args in self.calls if op == name]

    async def stat_object(self, bucket, key, version_id=None):
        self.calls.append(("stat_object", (bucket, key, version_id)))
        await asyncio.sleep(0)
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise NoSuchKey() from None

    async def copy_object(self, source: CopySource, destination: CopyDestination):
        self.calls.append(("copy_object", (source, destination)))
        return ObjectWriteResult(bucket=destination.bucket, key=destination.key, etag="copy-etag")

    async def initiate_multipart_upload(self, bucket, key, headers):
        self.calls.append(("initiate_multipart_upload", (bucket, key, headers)))
        return "upload-1"

    async def upload_part_copy(self, bucket, key, upload_id, part_number, headers):
        self.calls.append(("upload_part_copy", (bucket, key, upload_id, part_number, headers)))
        await asyncio.sleep(self.part_delays.get(part_number, 0))
        if part_number in self.part_errors:
            raise self.part_errors[part_number]
        self.completed.append(part_number)
        return CompletedPart(part_number=part_number, etag=f"part-etag-{part_number}")

    async def complete_multipart_upload(self, bucket, key, upload_id, parts):
        self.calls.append(("complete_multipart_upload", (bucket, key, upload_id, list(parts))))
        return ObjectWriteResult(bucket=bucket, key=key, etag="final-etag")

    async def abort_multipart_upload(self, bucket, key, upload_id):
        self.calls.append(("abort_multipart_upload", (bucket, key, upload_id)))
        self.completed_at_abort = list(self.completed)
        if self.abort_error is not None:
            raise self.abort_error

    async def select_object_content(self, bucket, key, request: SelectRequest):
        self.calls.append(("select_object_content", (bucket, key, request)))
        return TransportResponse(200, {}, content=self.select_body)

    async def close(self):
        self.closed = True


@pytest.fixture
def transport() -> RecordingTransport:
    """A fresh recording transport."""
    return RecordingTransport()


@pytest.fixture
def fake_s3():
    """A fresh FastAPI S3 stand-in."""
    return create_fake_s3()


@pytest.fixture
async def s3_client(fake_s3) -> Client:
    """A ``Client`` whose HttpTransport talks to the stand-in in-process."""
    http_client = AsyncClient(transport=ASGITransport(app=fake_s3), base_url="http://testserver")
    client = Client(
        "http://testserver",
        access_key="test",
        secret_key="test-secret",
        constraints=SMALL_CONSTRAINTS,
        http_client=http_client,
    )
    yield client
    await client.close()
    await http_client.aclose()


@pytest.fixture
def small_constraints() -> PartConstraints:
    """Part limits with a 16-byte optimal part size."""
    return SMALL_CONSTRAINTS
