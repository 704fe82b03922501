"""S3 input validation helpers for stratus.

These functions enforce S3 naming and parameter rules on the client side so
that malformed requests are rejected before any network traffic happens.

Each function raises an appropriate ``S3Error`` subclass on invalid input.
"""

import re

from stratus.errors import InvalidArgument, InvalidBucketName, InvalidObjectName

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# S3 bucket naming rules:
#   - 3-63 characters
#   - lowercase letters, digits, hyphens, and periods
#   - must start and end with a letter or digit
#   - must not be formatted as an IP address
#   - no consecutive periods ("..") and no period next to a hyphen

_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9.\-]{1,61}[a-z0-9]$")
_IP_RE = re.compile(r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$")

_MAX_KEY_BYTES = 1024


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def validate_bucket_name(name: str) -> None:
    """Validate an S3 bucket name against AWS naming rules.

    Args:
        name: The candidate bucket name.

    Raises:
        InvalidBucketName: If the name violates any S3 bucket naming rule.
    """
    if not isinstance(name, str):
        raise InvalidBucketName(str(name))

    if len(name) < 3 or len(name) > 63:
        raise InvalidBucketName(name)

    if not _BUCKET_RE.match(name):
        raise InvalidBucketName(name)

    if _IP_RE.match(name):
        raise InvalidBucketName(name)

    if ".." in name or ".-" in name or "-." in name:
        raise InvalidBucketName(name)


def validate_object_name(key: str) -> None:
    """Validate an S3 object key.

    Args:
        key: The object key string.

    Raises:
        InvalidObjectName: If the key is empty or exceeds 1024 bytes when
            UTF-8 encoded.
    """
    if not isinstance(key, str) or not key:
        raise InvalidObjectName(str(key or ""))

    if len(key.encode("utf-8")) > _MAX_KEY_BYTES:
        raise InvalidObjectName(key)


def validate_byte_range(start: int | None, end: int | None) -> None:
    """Validate the shape of an inclusive byte range.

    Both bounds must be given together, be non-negative integers, and satisfy
    ``start <= end``. Checking the range against the object size happens
    later, once the size is known.

    Args:
        start: First byte offset, or None.
        end: Last byte offset (inclusive), or None.

    Raises:
        InvalidArgument: If the range is malformed.
    """
    if start is None and end is None:
        return

    if start is None or end is None:
        raise InvalidArgument("Both start and end must be given for a byte range")

    if isinstance(start, bool) or isinstance(end, bool):
        raise InvalidArgument("Byte range bounds must be integers")

    if not isinstance(start, int) or not isinstance(end, int):
        raise InvalidArgument("Byte range bounds must be integers")

    if start < 0 or end < start:
        raise InvalidArgument(f"Invalid byte range [{start}, {end}]")
