"""Server-side compose: stitch existing objects (or byte ranges of them) into one.

Flow of a single compose call:
    - Validate the destination and every source before touching the network.
    - Stat every source concurrently; the first failure fails the call.
    - Plan the parts (see ``stratus.planner``) and pin each source to the
      ETag it had when it was stat'ed.
    - If the whole job is one whole-object copy (or an empty object), send a
      single copy request.
    - Otherwise initiate a multipart upload, run every upload-part-copy
      concurrently, and complete the upload with the parts sorted by part
      number. If any part fails, the upload is aborted once and the part's
      error is raised.

Parts still in flight when another part fails are not cancelled: the
orchestrator waits for them to settle (discarding their results) before
raising, so nothing keeps writing to the aborted upload after ``compose``
returns.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from stratus import metrics
from stratus.errors import InvalidArgument
from stratus.models import (
    CompletedPart,
    CopyDestination,
    CopySource,
    ObjectStat,
    ObjectWriteResult,
    UploadPartTask,
)
from stratus.planner import DEFAULT_CONSTRAINTS, ComposePlan, PartConstraints, build_compose_plan
from stratus.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class ComposeSession:
    """Bookkeeping of one multipart compose.

    Attributes:
        upload_id: The multipart upload created for the destination.
        parts: Completed parts sorted by part number. Filled once, after
            every upload-part-copy has succeeded.
        outcome: The final object once the upload is completed.
        aborted: Whether the upload was aborted.
    """

    upload_id: str
    parts: list[CompletedPart] = field(default_factory=list)
    outcome: ObjectWriteResult | None = None
    aborted: bool = False


class ComposeOrchestrator:
    """Drives compose operations against a ``Transport``.

    Attributes:
        constraints: Multipart protocol limits used for validation and
            planning.
    """

    def __init__(
        self, transport: Transport, constraints: PartConstraints = DEFAULT_CONSTRAINTS
    ) -> None:
        """Initialize the orchestrator.

        Args:
            transport: The transport used for every remote call.
            constraints: Multipart protocol limits.
        """
        self._transport = transport
        self.constraints = constraints

    def validate(self, destination: CopyDestination, sources: list[CopySource]) -> None:
        """Check the compose arguments without any I/O.

        Raises:
            InvalidArgument: If the argument types or source count are wrong,
                or a descriptor has a malformed range or directive.
            InvalidBucketName: If a bucket name is invalid.
            InvalidObjectName: If an object key is invalid.
        """
        if not isinstance(destination, CopyDestination):
            raise InvalidArgument("destination should be of type CopyDestination")
        if not isinstance(sources, (list, tuple)):
            raise InvalidArgument("sources should be a list of CopySource")
        if not sources:
            raise InvalidArgument("There must be at least one source to compose")
        if len(sources) > self.constraints.max_parts_count:
            raise InvalidArgument(
                f"There must be at most {self.constraints.max_parts_count} sources "
                f"to compose, got {len(sources)}"
            )
        for index, source in enumerate(sources):
            if not isinstance(source, CopySource):
                raise InvalidArgument(f"Source {index} should be of type CopySource")
            source.validate()
        destination.validate()

    async def stat_sources(self, sources: list[CopySource]) -> list[ObjectStat]:
        """Stat every source concurrently, failing on the first error."""
        return list(
            await asyncio.gather(
                *(
                    self._transport.stat_object(source.bucket, source.key, source.version_id)
                    for source in sources
                )
            )
        )

    def build_part_tasks(
        self, plan: ComposePlan, destination: CopyDestination, upload_id: str
    ) -> list[UploadPartTask]:
        """Flatten the plan into upload-part-copy tasks numbered from 1."""
        tasks: list[UploadPartTask] = []
        part_number = 0
        for split in plan.splits:
            copy_headers = split.source.copy_headers()
            for start, end in split.ranges:
                part_number += 1
                tasks.append(
                    UploadPartTask(
                        bucket=destination.bucket,
                        key=destination.key,
                        upload_id=upload_id,
                        part_number=part_number,
                        headers={
                            **copy_headers,
                            "x-amz-copy-source-range": f"bytes={start}-{end}",
                        },
                        source=split.source,
                    )
                )
        return tasks

    async def compose(
        self, destination: CopyDestination, sources: list[CopySource]
    ) -> ObjectWriteResult:
        """Compose ``sources`` into ``destination``.

        Args:
            destination: The object to create.
            sources: The objects (or byte ranges) to concatenate, in order.

        Returns:
            The result describing the new object.

        Raises:
            InvalidArgument: If validation or planning rejects the request.
            S3Error: If a remote call fails. For a failed part, this is the
                part's own error even when the cleanup abort also failed.
        """
        self.validate(destination, sources)

        start = time.monotonic()
        log_extra = {"operation": "compose", "bucket": destination.bucket, "key": destination.key}
        path = "planning"
        try:
            logger.debug(
                "Fetching metadata of %d source(s) for %s",
                len(sources),
                destination.path,
                extra=log_extra,
            )
            stats = await self.stat_sources(sources)
            plan = build_compose_plan(list(sources), stats, self.constraints)

            if plan.is_single_copy:
                path = "copy"
                logger.debug("Composing %s with a single copy request", destination.path, extra=log_extra)
                result = await self._transport.copy_object(plan.splits[0].source, destination)
            else:
                path = "multipart"
                result = await self._run_multipart(plan, destination)
        except Exception:
            metrics.record_compose(path, "error")
            raise

        if result.size is None:
            result.size = plan.total_size
        metrics.record_compose(path, "success")
        logger.debug(
            "Composed %s (%d bytes, %d part(s))",
            destination.path,
            plan.total_size,
            plan.total_parts,
            extra={**log_extra, "duration_ms": round((time.monotonic() - start) * 1000, 2)},
        )
        return result

    async def _run_multipart(
        self, plan: ComposePlan, destination: CopyDestination
    ) -> ObjectWriteResult:
        upload_id = await self._transport.initiate_multipart_upload(
            destination.bucket, destination.key, destination.headers_for_request()
        )
        session = ComposeSession(upload_id=upload_id)
        tasks = self.build_part_tasks(plan, destination, upload_id)
        logger.debug(
            "Uploading %d part(s) to %s",
            len(tasks),
            destination.path,
            extra={"bucket": destination.bucket, "key": destination.key, "upload_id": upload_id},
        )

        await self._upload_parts(session, tasks, destination)

        session.outcome = await self._transport.complete_multipart_upload(
            destination.bucket, destination.key, upload_id, session.parts
        )
        return session.outcome

    async def _upload_part(self, task: UploadPartTask) -> CompletedPart:
        return await self._transport.upload_part_copy(
            task.bucket, task.key, task.upload_id, task.part_number, task.headers
        )

    async def _upload_parts(
        self, session: ComposeSession, tasks: list[UploadPartTask], destination: CopyDestination
    ) -> None:
        """Run every part concurrently; abort the upload on the first failure."""
        futures = {
            asyncio.ensure_future(self._upload_part(task)): task for task in tasks
        }
        try:
            done, pending = await asyncio.wait(futures, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for future in futures:
                future.cancel()
            await self._abort(session, destination)
            raise

        failed_futures = sorted(
            (f for f in done if not f.cancelled() and f.exception() is not None),
            key=lambda f: futures[f].part_number,
        )
        if not failed_futures:
            session.parts = sorted(f.result() for f in futures)
            metrics.record_parts("success", len(done))
            return

        failed_task = futures[failed_futures[0]]
        error = failed_futures[0].exception()
        logger.warning(
            "Part %d (from %s) failed, aborting multipart upload %s: %s",
            failed_task.part_number,
            failed_task.source.path,
            session.upload_id,
            error,
            extra={
                "bucket": destination.bucket,
                "key": destination.key,
                "upload_id": session.upload_id,
                "part_number": failed_task.part_number,
            },
        )
        await self._abort(session, destination)

        if pending:
            await asyncio.wait(pending)

        failed = sum(1 for f in futures if f.cancelled() or f.exception() is not None)
        metrics.record_parts("error", failed)
        metrics.record_parts("success", len(futures) - failed)
        raise error

    async def _abort(self, session: ComposeSession, destination: CopyDestination) -> None:
        """Abort the upload once; a failed abort is logged, never raised."""
        if session.aborted:
            return
        session.aborted = True
        try:
            await self._transport.abort_multipart_upload(
                destination.bucket, destination.key, session.upload_id
            )
        except Exception:
            logger.warning(
                "Failed to abort multipart upload %s for %s",
                session.upload_id,
                destination.path,
                exc_info=True,
                extra={"upload_id": session.upload_id},
            )
