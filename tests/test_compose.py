"""Tests for the compose orchestrator against a recording transport."""

import logging

import pytest

from stratus.compose import ComposeOrchestrator, ComposeSession
from stratus.errors import (
    EntityTooSmall,
    InvalidArgument,
    InvalidBucketName,
    InvalidObjectName,
    NoSuchKey,
    NoSuchUpload,
    S3Error,
)
from stratus.models import CopyDestination, CopySource, UploadPartTask
from stratus.planner import MiB

DEST = CopyDestination("dst", "composed")


class TestValidation:
    """Argument errors are raised before any remote call."""

    async def test_empty_sources(self, transport):
        with pytest.raises(InvalidArgument):
            await ComposeOrchestrator(transport).compose(DEST, [])
        assert transport.calls == []

    async def test_too_many_sources(self, transport):
        """10,001 sources fail without a single request."""
        sources = [CopySource("src", f"part-{i}") for i in range(10001)]
        with pytest.raises(InvalidArgument):
            await ComposeOrchestrator(transport).compose(DEST, sources)
        assert transport.calls == []

    async def test_source_of_wrong_type(self, transport):
        with pytest.raises(InvalidArgument):
            await ComposeOrchestrator(transport).compose(DEST, [("src", "a")])
        assert transport.calls == []

    async def test_destination_of_wrong_type(self, transport):
        with pytest.raises(InvalidArgument):
            await ComposeOrchestrator(transport).compose(("dst", "x"), [CopySource("src", "a")])

    async def test_invalid_bucket_name(self, transport):
        with pytest.raises(InvalidBucketName):
            await ComposeOrchestrator(transport).compose(DEST, [CopySource("Bad_Bucket", "a")])
        assert transport.calls == []

    async def test_invalid_object_name(self, transport):
        with pytest.raises(InvalidObjectName):
            await ComposeOrchestrator(transport).compose(CopyDestination("dst", ""), [CopySource("src", "a")])

    async def test_malformed_range(self, transport):
        with pytest.raises(InvalidArgument):
            await ComposeOrchestrator(transport).compose(DEST, [CopySource("src", "a", start=10, end=5)])
        assert transport.calls == []


class TestStatAndPlanning:
    """Stat fan-out and planning failures stop before multipart starts."""

    async def test_missing_source(self, transport):
        transport.add_object("src", "a", 6 * MiB)
        sources = [CopySource("src", "a"), CopySource("src", "missing")]

        with pytest.raises(NoSuchKey):
            await ComposeOrchestrator(transport).compose(DEST, sources)
        assert transport.operations() == ["stat_object", "stat_object"]

    async def test_stats_use_version_id(self, transport):
        transport.add_object("src", "a", 6 * MiB)
        await ComposeOrchestrator(transport).compose(DEST, [CopySource("src", "a", version_id="v1")])
        assert transport.calls_named("stat_object") == [("src", "a", "v1")]

    async def test_small_first_source(self, transport):
        transport.add_object("src", "a", MiB)
        transport.add_object("src", "b", 6 * MiB)
        sources = [CopySource("src", "a"), CopySource("src", "b")]

        with pytest.raises(EntityTooSmall):
            await ComposeOrchestrator(transport).compose(DEST, sources)
        assert "initiate_multipart_upload" not in transport.operations()


class TestShortcutCopy:
    """Single whole-object composes use one copy request."""

    async def test_single_source(self, transport):
        transport.add_object("src", "a", 6 * MiB)
        result = await ComposeOrchestrator(transport).compose(DEST, [CopySource("src", "a")])

        assert transport.operations() == ["stat_object", "copy_object"]
        source, destination = transport.calls_named("copy_object")[0]
        assert source.match_etag == "etag-a"
        assert destination is DEST
        assert result.etag == "copy-etag"
        assert result.size == 6 * MiB

    async def test_empty_source(self, transport):
        transport.add_object("src", "empty", 0)
        await ComposeOrchestrator(transport).compose(DEST, [CopySource("src", "empty")])
        assert transport.operations() == ["stat_object", "copy_object"]


class TestMultipart:
    """Multipart composes: numbering, headers, ordering."""

    async def test_parts_numbered_across_sources(self, transport, small_constraints):
        transport.add_object("src", "a", 40)
        transport.add_object("src", "b", 10)
        sources = [CopySource("src", "a"), CopySource("src", "b")]

        await ComposeOrchestrator(transport, small_constraints).compose(DEST, sources)

        uploads = {args[3]: args[4] for args in transport.calls_named("upload_part_copy")}
        assert sorted(uploads) == [1, 2, 3, 4]
        assert uploads[1]["x-amz-copy-source"] == "/src/a"
        assert uploads[1]["x-amz-copy-source-range"] == "bytes=0-13"
        assert uploads[2]["x-amz-copy-source-range"] == "bytes=14-26"
        assert uploads[3]["x-amz-copy-source-range"] == "bytes=27-39"
        assert uploads[4]["x-amz-copy-source"] == "/src/b"
        assert uploads[4]["x-amz-copy-source-range"] == "bytes=0-9"
        assert uploads[4]["x-amz-copy-source-if-match"] == "etag-b"

    async def test_ranged_source_headers(self, transport, small_constraints):
        transport.add_object("src", "a", 40)
        source = CopySource("src", "a", start=8, end=27)

        result = await ComposeOrchestrator(transport, small_constraints).compose(DEST, [source])

        ranges = [args[4]["x-amz-copy-source-range"] for args in transport.calls_named("upload_part_copy")]
        assert sorted(ranges) == ["bytes=18-27", "bytes=8-17"]
        assert result.size == 20

    async def test_complete_sorted_regardless_of_completion_order(self, transport, small_constraints):
        """Parts finishing in reverse order are still completed in part-number order."""
        transport.add_object("src", "a", 40)
        transport.add_object("src", "b", 10)
        transport.part_delays = {1: 0.04, 2: 0.03, 3: 0.02, 4: 0.0}
        sources = [CopySource("src", "a"), CopySource("src", "b")]

        result = await ComposeOrchestrator(transport, small_constraints).compose(DEST, sources)

        assert transport.completed == [4, 3, 2, 1]
        bucket, key, upload_id, parts = transport.calls_named("complete_multipart_upload")[0]
        assert (bucket, key, upload_id) == ("dst", "composed", "upload-1")
        assert [p.part_number for p in parts] == [1, 2, 3, 4]
        assert [p.etag for p in parts] == [f"part-etag-{n}" for n in (1, 2, 3, 4)]
        assert result.etag == "final-etag"
        assert result.size == 50

    async def test_session_parts_filled_only_after_join(self, transport, small_constraints):
        """Finished parts stay out of the session until every part has settled."""
        session = ComposeSession(upload_id="upload-1")
        tasks = [
            UploadPartTask("dst", "composed", "upload-1", n, {}, CopySource("src", "a"))
            for n in (1, 2, 3)
        ]
        transport.part_delays = {1: 0.03, 2: 0.0, 3: 0.01}
        seen_while_running = []
        upload_part_copy = transport.upload_part_copy

        async def watch(*args):
            part = await upload_part_copy(*args)
            seen_while_running.append(len(session.parts))
            return part

        transport.upload_part_copy = watch
        await ComposeOrchestrator(transport, small_constraints)._upload_parts(session, tasks, DEST)

        assert seen_while_running == [0, 0, 0]
        assert [p.part_number for p in session.parts] == [1, 2, 3]

    async def test_initiate_carries_destination_headers(self, transport, small_constraints):
        transport.add_object("src", "a", 40)
        destination = CopyDestination(
            "dst", "composed", user_metadata={"origin": "test"}, user_tags={"team": "data"}
        )

        await ComposeOrchestrator(transport, small_constraints).compose(destination, [CopySource("src", "a")])

        _, _, headers = transport.calls_named("initiate_multipart_upload")[0]
        assert headers["x-amz-meta-origin"] == "test"
        assert headers["x-amz-tagging"] == "team=data"
        assert "x-amz-metadata-directive" not in headers

    async def test_initiate_failure_is_not_aborted(self, transport, small_constraints):
        transport.add_object("src", "a", 40)

        async def fail(bucket, key, headers):
            raise S3Error("AccessDenied", "Access Denied", 403)

        transport.initiate_multipart_upload = fail
        with pytest.raises(S3Error):
            await ComposeOrchestrator(transport, small_constraints).compose(DEST, [CopySource("src", "a")])
        assert "abort_multipart_upload" not in transport.operations()
        assert "upload_part_copy" not in transport.operations()


class TestPartFailure:
    """A failed part aborts the upload and surfaces the part's error."""

    async def test_abort_once_and_raise_part_error(self, transport, small_constraints):
        transport.add_object("src", "a", 40)
        error = S3Error("InternalError", "part copy failed", 500)
        transport.part_errors = {2: error}
        transport.part_delays = {1: 0.05}

        with pytest.raises(S3Error) as excinfo:
            await ComposeOrchestrator(transport, small_constraints).compose(DEST, [CopySource("src", "a")])

        assert excinfo.value is error
        assert transport.calls_named("abort_multipart_upload") == [("dst", "composed", "upload-1")]
        assert "complete_multipart_upload" not in transport.operations()

    async def test_abort_before_in_flight_parts_settle(self, transport, small_constraints):
        """Abort goes out right away; slow parts are drained, not cancelled."""
        transport.add_object("src", "a", 40)
        transport.part_errors = {2: S3Error("InternalError", "boom", 500)}
        transport.part_delays = {1: 0.05}

        with pytest.raises(S3Error):
            await ComposeOrchestrator(transport, small_constraints).compose(DEST, [CopySource("src", "a")])

        assert 1 not in transport.completed_at_abort
        assert 1 in transport.completed

    async def test_abort_failure_does_not_mask_part_error(self, transport, small_constraints, caplog):
        transport.add_object("src", "a", 40)
        error = S3Error("SlowDown", "Reduce your request rate", 503)
        transport.part_errors = {3: error}
        transport.abort_error = NoSuchUpload()

        with caplog.at_level(logging.WARNING, logger="stratus.compose"):
            with pytest.raises(S3Error) as excinfo:
                await ComposeOrchestrator(transport, small_constraints).compose(DEST, [CopySource("src", "a")])

        assert excinfo.value is error
        assert len(transport.calls_named("abort_multipart_upload")) == 1
        assert any("Failed to abort" in r.getMessage() for r in caplog.records)

    async def test_failure_is_logged_with_part_number(self, transport, small_constraints, caplog):
        transport.add_object("src", "a", 40)
        transport.part_errors = {1: S3Error("InternalError", "boom", 500)}

        with caplog.at_level(logging.WARNING, logger="stratus.compose"):
            with pytest.raises(S3Error):
                await ComposeOrchestrator(transport, small_constraints).compose(DEST, [CopySource("src", "a")])

        records = [r for r in caplog.records if getattr(r, "part_number", None) == 1]
        assert records
        assert records[0].upload_id == "upload-1"
