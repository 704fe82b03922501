"""Tests for HttpTransport using httpx.MockTransport."""

import inspect

import httpx
import pytest

from stratus.errors import (
    AccessDenied,
    InvalidResponse,
    NoSuchBucket,
    NoSuchKey,
    NoSuchUpload,
    S3Error,
)
from stratus.models import CompletedPart, CopyDestination, CopySource, SelectRequest
from stratus.signer import SigV4Signer
from stratus.transport import HttpTransport, Transport

NS = "http://s3.amazonaws.com/doc/2006-03-01/"


def make_transport(handler, path_style: bool = True) -> tuple[HttpTransport, list[httpx.Request]]:
    """Build an HttpTransport whose requests are answered by ``handler``."""
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    transport = HttpTransport(
        "http://s3.test:9000",
        SigV4Signer("AKIDEXAMPLE", "secret"),
        path_style=path_style,
        client=client,
    )
    return transport, seen


class TestTransportProtocol:
    """HttpTransport provides every operation the Transport protocol declares."""

    @pytest.mark.parametrize(
        "name",
        [
            "request",
            "stat_object",
            "copy_object",
            "initiate_multipart_upload",
            "upload_part_copy",
            "complete_multipart_upload",
            "abort_multipart_upload",
            "select_object_content",
        ],
    )
    def test_operation_signatures_match(self, name):
        declared = inspect.signature(getattr(Transport, name))
        implemented = inspect.signature(getattr(HttpTransport, name))
        assert list(declared.parameters) == list(implemented.parameters)
        assert inspect.iscoroutinefunction(getattr(HttpTransport, name))


class TestUrlFor:
    """Tests for request URL construction."""

    def test_path_style(self):
        transport, _ = make_transport(lambda r: httpx.Response(200))
        assert transport.url_for("bucket", "dir/my key") == "http://s3.test:9000/bucket/dir/my%20key"

    def test_virtual_host_style(self):
        transport, _ = make_transport(lambda r: httpx.Response(200), path_style=False)
        assert transport.url_for("bucket", "k") == "http://bucket.s3.test:9000/k"

    def test_bare_query_parameter(self):
        transport, _ = make_transport(lambda r: httpx.Response(200))
        url = transport.url_for("bucket", "k", {"uploads": None})
        assert url == "http://s3.test:9000/bucket/k?uploads"


class TestRequest:
    """Tests for the signed request core."""

    async def test_requests_are_signed(self):
        transport, seen = make_transport(lambda r: httpx.Response(204))
        await transport.abort_multipart_upload("bucket", "k", "up-1")

        request = seen[0]
        assert request.method == "DELETE"
        assert request.url.params["uploadId"] == "up-1"
        assert request.headers["authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
        assert "x-amz-date" in request.headers
        assert "x-amz-content-sha256" in request.headers

    async def test_error_document_is_parsed(self):
        body = (
            "<Error><Code>NoSuchUpload</Code><Message>gone</Message>"
            "<Resource>/bucket/k</Resource><RequestId>req-1</RequestId></Error>"
        )
        transport, _ = make_transport(lambda r: httpx.Response(404, text=body))

        with pytest.raises(NoSuchUpload) as excinfo:
            await transport.abort_multipart_upload("bucket", "k", "up-1")

        assert excinfo.value.http_status == 404
        assert excinfo.value.request_id == "req-1"
        assert excinfo.value.resource == "/bucket/k"

    async def test_unknown_error_code(self):
        body = "<Error><Code>SlowDown</Code><Message>Reduce your request rate.</Message></Error>"
        transport, _ = make_transport(lambda r: httpx.Response(503, text=body))

        with pytest.raises(S3Error) as excinfo:
            await transport.request("GET", "bucket")
        assert excinfo.value.code == "SlowDown"

    async def test_non_xml_error_body(self):
        transport, _ = make_transport(lambda r: httpx.Response(502, text="Bad Gateway"))
        with pytest.raises(InvalidResponse):
            await transport.request("GET", "bucket")


class TestStatObject:
    """Tests for HEAD handling."""

    async def test_headers_are_parsed(self):
        headers = {
            "content-length": "1234",
            "etag": '"abc123"',
            "last-modified": "Tue, 02 Jan 2024 03:04:05 GMT",
            "x-amz-version-id": "v7",
            "content-type": "text/csv",
            "x-amz-meta-owner": "data-team",
        }
        transport, seen = make_transport(lambda r: httpx.Response(200, headers=headers))

        stat = await transport.stat_object("bucket", "k", version_id="v7")

        assert seen[0].method == "HEAD"
        assert seen[0].url.params["versionId"] == "v7"
        assert stat.size == 1234
        assert stat.etag == "abc123"
        assert stat.last_modified.year == 2024
        assert stat.version_id == "v7"
        assert stat.content_type == "text/csv"
        assert stat.metadata == {"owner": "data-team"}

    async def test_missing_key(self):
        transport, _ = make_transport(lambda r: httpx.Response(404))
        with pytest.raises(NoSuchKey):
            await transport.stat_object("bucket", "k")

    async def test_forbidden(self):
        transport, _ = make_transport(lambda r: httpx.Response(403))
        with pytest.raises(AccessDenied):
            await transport.stat_object("bucket", "k")

    async def test_missing_bucket(self):
        transport, _ = make_transport(lambda r: httpx.Response(404))
        with pytest.raises(NoSuchBucket):
            await transport.request("HEAD", "bucket")


class TestMultipartCalls:
    """Tests for initiate, upload-part-copy, and complete."""

    async def test_initiate(self):
        body = (
            f'<InitiateMultipartUploadResult xmlns="{NS}"><Bucket>bucket</Bucket>'
            "<Key>k</Key><UploadId>up-42</UploadId></InitiateMultipartUploadResult>"
        )
        transport, seen = make_transport(lambda r: httpx.Response(200, text=body))

        upload_id = await transport.initiate_multipart_upload(
            "bucket", "k", {"x-amz-meta-a": "1"}
        )

        assert upload_id == "up-42"
        assert seen[0].method == "POST"
        assert seen[0].url.query == b"uploads"
        assert seen[0].headers["x-amz-meta-a"] == "1"

    async def test_upload_part_copy(self):
        body = f'<CopyPartResult xmlns="{NS}"><ETag>"part-etag"</ETag></CopyPartResult>'
        transport, seen = make_transport(lambda r: httpx.Response(200, text=body))

        part = await transport.upload_part_copy(
            "bucket",
            "k",
            "up-42",
            3,
            {"x-amz-copy-source": "/src/a", "x-amz-copy-source-range": "bytes=0-9"},
        )

        assert part == CompletedPart(part_number=3, etag="part-etag")
        assert part.etag == "part-etag"
        assert seen[0].method == "PUT"
        assert seen[0].url.params["partNumber"] == "3"
        assert seen[0].url.params["uploadId"] == "up-42"
        assert seen[0].headers["x-amz-copy-source-range"] == "bytes=0-9"

    async def test_complete_sends_parts(self):
        body = (
            f'<CompleteMultipartUploadResult xmlns="{NS}"><Location>http://s3.test/bucket/k</Location>'
            '<Bucket>bucket</Bucket><Key>k</Key><ETag>"final-2"</ETag></CompleteMultipartUploadResult>'
        )
        transport, seen = make_transport(
            lambda r: httpx.Response(200, text=body, headers={"x-amz-version-id": "v1"})
        )

        result = await transport.complete_multipart_upload(
            "bucket",
            "k",
            "up-42",
            [CompletedPart(1, "e1"), CompletedPart(2, "e2")],
        )

        sent = seen[0].content.decode()
        assert sent.index("<PartNumber>1</PartNumber>") < sent.index("<PartNumber>2</PartNumber>")
        assert "<ETag>e2</ETag>" in sent
        assert result.etag == "final-2"
        assert result.version_id == "v1"
        assert result.location == "http://s3.test/bucket/k"

    async def test_complete_with_error_in_200_body(self):
        body = "<Error><Code>InternalError</Code><Message>try again</Message></Error>"
        transport, _ = make_transport(lambda r: httpx.Response(200, text=body))

        with pytest.raises(S3Error) as excinfo:
            await transport.complete_multipart_upload("bucket", "k", "up-42", [CompletedPart(1, "e")])
        assert excinfo.value.code == "InternalError"


class TestCopyAndSelect:
    """Tests for copy_object and select_object_content."""

    async def test_copy_object_headers(self):
        body = (
            f'<CopyObjectResult xmlns="{NS}"><ETag>"copied"</ETag>'
            "<LastModified>2024-01-02T03:04:05.000Z</LastModified></CopyObjectResult>"
        )
        transport, seen = make_transport(lambda r: httpx.Response(200, text=body))
        source = CopySource("src", "a b", match_etag="abc")
        destination = CopyDestination("dst", "out", user_metadata={"k": "v"})

        result = await transport.copy_object(source, destination)

        headers = seen[0].headers
        assert headers["x-amz-copy-source"] == "/src/a%20b"
        assert headers["x-amz-copy-source-if-match"] == "abc"
        assert headers["x-amz-meta-k"] == "v"
        assert headers["x-amz-metadata-directive"] == "REPLACE"
        assert result.etag == "copied"
        assert result.last_modified.year == 2024

    async def test_select_is_streamed(self):
        transport, seen = make_transport(lambda r: httpx.Response(200, content=b"\x00\x01\x02"))
        request = SelectRequest(
            expression="SELECT * FROM S3Object",
            input_serialization={"CSV": {"FileHeaderInfo": "USE"}},
            output_serialization={"CSV": {}},
        )

        response = await transport.select_object_content("bucket", "k", request)
        chunks = [chunk async for chunk in response.iter_bytes()]
        await response.aclose()

        assert b"".join(chunks) == b"\x00\x01\x02"
        assert seen[0].url.params["select-type"] == "2"
        assert "<Expression>SELECT * FROM S3Object</Expression>" in seen[0].content.decode()


class TestPresign:
    """Tests for presigned URLs."""

    def test_presigned_get(self):
        transport, _ = make_transport(lambda r: httpx.Response(200))
        url = transport.presigned_url("GET", "bucket", "k", 3600)

        parsed = httpx.URL(url)
        assert parsed.path == "/bucket/k"
        assert parsed.params["X-Amz-Expires"] == "3600"
        assert parsed.params["X-Amz-SignedHeaders"] == "host"
        assert len(parsed.params["X-Amz-Signature"]) == 64
