"""Part planning for server-side compose operations.

Pure functions: no I/O happens here. Given the sizes of the source objects,
the planner decides how many upload-part-copy requests each source needs and
which byte range each request copies, and rejects compose requests that
cannot be expressed as a valid multipart upload.

Sizing rules:
    - Every part except the very last one of the whole upload must be at
      least ``abs_min_part_size`` (5 MiB). Sources are never merged, so every
      source except the last must itself reach that size.
    - A multipart upload has at most ``max_parts_count`` parts and produces
      at most ``max_multipart_object_size`` bytes.
    - Each source is split evenly at the optimal part size
      ``max_multipart_object_size / (max_parts_count - 1)`` so no piece ends
      up as a tiny remainder.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pydantic import BaseModel, model_validator

from stratus.errors import EntityTooLarge, EntityTooSmall, InvalidRange, TooManyParts
from stratus.models import CopySource, ObjectStat

logger = logging.getLogger(__name__)

MiB = 1024 * 1024
GiB = 1024 * MiB
TiB = 1024 * GiB


class PartConstraints(BaseModel):
    """Size and count limits of the multipart upload protocol."""

    abs_min_part_size: int = 5 * MiB
    min_part_size: int = 16 * MiB
    max_part_size: int = 5 * GiB
    max_single_put_object_size: int = 5 * GiB
    max_parts_count: int = 10000
    max_multipart_object_size: int = 5 * TiB

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_limits(self) -> PartConstraints:
        if self.abs_min_part_size <= 0:
            raise ValueError("abs_min_part_size must be positive")
        if self.max_part_size < self.abs_min_part_size:
            raise ValueError("max_part_size must not be below abs_min_part_size")
        if self.max_parts_count < 2:
            raise ValueError("max_parts_count must be at least 2")
        if self.optimal_part_size > self.max_part_size:
            raise ValueError(
                "max_multipart_object_size / (max_parts_count - 1) exceeds max_part_size"
            )
        return self

    @property
    def optimal_part_size(self) -> int:
        """Largest even split size; exact value is a fraction, rounded down here."""
        return self.max_multipart_object_size // (self.max_parts_count - 1)


DEFAULT_CONSTRAINTS = PartConstraints()


@dataclass
class SplitPlan:
    """Byte ranges copied from one source, in order.

    Attributes:
        source: The source (already pinned to its ETag).
        ranges: Inclusive ``(start, end)`` byte offsets within the source
            object. Empty for a zero-length source.
    """

    source: CopySource
    ranges: list[tuple[int, int]] = field(default_factory=list)

    @property
    def size(self) -> int:
        return sum(end - start + 1 for start, end in self.ranges)


@dataclass
class ComposePlan:
    """The full plan of a compose operation."""

    splits: list[SplitPlan]
    total_size: int
    total_parts: int
    constraints: PartConstraints = DEFAULT_CONSTRAINTS

    @property
    def is_single_copy(self) -> bool:
        """Whether one server-side copy request can do the whole job.

        A ranged source cannot be copied with a plain PUT copy, so such a
        plan always goes through multipart even when it fits in one part.
        """
        if self.total_size == 0:
            return True
        return (
            self.total_parts == 1
            and self.total_size <= self.constraints.max_single_put_object_size
            and len(self.splits) == 1
            and not self.splits[0].source.has_range
        )


def parts_required(size: int, constraints: PartConstraints = DEFAULT_CONSTRAINTS) -> int:
    """Number of parts needed to copy ``size`` bytes at the optimal part size.

    Computes ``ceil(size / (max_multipart_object_size / (max_parts_count - 1)))``
    in integer arithmetic.

    Args:
        size: Number of bytes to copy.
        constraints: Protocol limits.

    Returns:
        The part count (0 for an empty copy).
    """
    if size <= 0:
        return 0
    numerator = size * (constraints.max_parts_count - 1)
    return -(-numerator // constraints.max_multipart_object_size)


def calculate_even_splits(
    size: int,
    start: int = 0,
    constraints: PartConstraints = DEFAULT_CONSTRAINTS,
) -> list[tuple[int, int]]:
    """Split ``size`` bytes starting at ``start`` into evenly sized ranges.

    The first ``size % n`` ranges are one byte longer than the others, so
    the ranges differ in length by at most one byte and none of them is a
    small leftover.

    Args:
        size: Number of bytes to copy.
        start: Offset of the first byte within the source object.
        constraints: Protocol limits.

    Returns:
        Inclusive ``(start, end)`` pairs covering ``[start, start + size)``.
    """
    if size <= 0:
        return []

    count = parts_required(size, constraints)
    base, remainder = divmod(size, count)

    ranges: list[tuple[int, int]] = []
    next_start = start
    for i in range(count):
        part_size = base + 1 if i < remainder else base
        ranges.append((next_start, next_start + part_size - 1))
        next_start += part_size
    return ranges


def build_compose_plan(
    sources: list[CopySource],
    stats: list[ObjectStat],
    constraints: PartConstraints = DEFAULT_CONSTRAINTS,
) -> ComposePlan:
    """Validate sources against their stat results and plan every part.

    Each returned ``SplitPlan`` carries a copy of the source pinned to the
    ETag reported by ``stats`` so later copy requests fail if the object
    changed in the meantime.

    Args:
        sources: Compose sources in order.
        stats: Stat results, one per source, in the same order.
        constraints: Protocol limits.

    Returns:
        The compose plan.

    Raises:
        InvalidRange: If a source range lies outside its object.
        EntityTooSmall: If a non-last source is below ``abs_min_part_size``.
        EntityTooLarge: If the total exceeds ``max_multipart_object_size``.
        TooManyParts: If more than ``max_parts_count`` parts are needed.
    """
    if len(sources) != len(stats):
        raise ValueError("sources and stats must have the same length")

    last_index = len(sources) - 1
    total_size = 0
    total_parts = 0
    splits: list[SplitPlan] = []

    for index, (source, stat) in enumerate(zip(sources, stats)):
        copy_size = stat.size
        offset = 0

        if source.has_range:
            if source.start < 0 or source.end < source.start or source.end >= stat.size:
                raise InvalidRange(
                    f"Source {index} ({source.path}) has invalid segment-to-copy "
                    f"[{source.start}, {source.end}] (size is {stat.size})"
                )
            copy_size = source.end - source.start + 1
            offset = source.start

        if copy_size < constraints.abs_min_part_size and index < last_index:
            raise EntityTooSmall(
                f"Source {index} ({source.path}) is too small ({copy_size}) "
                f"and it is not the last part"
            )

        total_size += copy_size
        if total_size > constraints.max_multipart_object_size:
            raise EntityTooLarge(
                f"Cannot compose an object of size {total_size} "
                f"(> {constraints.max_multipart_object_size})"
            )

        total_parts += parts_required(copy_size, constraints)
        if total_parts > constraints.max_parts_count:
            raise TooManyParts(
                f"Your proposed compose object requires more than "
                f"{constraints.max_parts_count} parts"
            )

        splits.append(
            SplitPlan(
                source=source.with_etag(stat.etag),
                ranges=calculate_even_splits(copy_size, offset, constraints),
            )
        )

    logger.debug(
        "Planned compose of %d source(s): %d bytes in %d part(s)",
        len(sources),
        total_size,
        total_parts,
    )
    return ComposePlan(
        splits=splits,
        total_size=total_size,
        total_parts=total_parts,
        constraints=constraints,
    )
