"""S3-compatible error definitions for stratus.

Errors fall into four families:

    - client-side validation (raised before any I/O),
    - compose planning (raised before any remote side effect),
    - remote errors decoded from an S3 ``<Error>`` response,
    - event-stream framing errors raised by the select decoder.

Every error carries an S3-style ``code`` so callers can branch on it the same
way regardless of where it originated.
"""


class S3Error(Exception):
    """An S3-compatible error with code, message, and HTTP status.

    Attributes:
        code: The S3 error code string (e.g. "NoSuchKey", "AccessDenied").
        message: Human-readable error description.
        http_status: The HTTP status code of the response, or None when the
            error was raised locally.
        extra_fields: Additional key-value pairs from the XML error response
            (Resource, RequestId, HostId, BucketName, Key, ...).
    """

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int | None = None,
        extra_fields: dict[str, str] | None = None,
    ) -> None:
        """Initialize the S3 error.

        Args:
            code: S3 error code.
            message: Error description.
            http_status: HTTP status code (None for local errors).
            extra_fields: Optional extra XML fields.
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra_fields = extra_fields or {}

    @property
    def request_id(self) -> str:
        """The server-assigned request id, if the response carried one."""
        return self.extra_fields.get("RequestId", "")

    @property
    def resource(self) -> str:
        """The resource the server reported for this error, if any."""
        return self.extra_fields.get("Resource", "")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# -- Client-side validation errors --------------------------------------------


class InvalidArgument(S3Error):
    """An invalid argument was provided."""

    def __init__(self, message: str = "Invalid Argument") -> None:
        super().__init__(code="InvalidArgument", message=message)


class InvalidBucketName(S3Error):
    """The specified bucket name is not valid."""

    def __init__(self, bucket: str = "") -> None:
        super().__init__(
            code="InvalidBucketName",
            message=f"Invalid bucket name: {bucket!r}",
            extra_fields={"BucketName": bucket} if bucket else {},
        )


class InvalidObjectName(S3Error):
    """The specified object key is empty or too long."""

    def __init__(self, key: str = "") -> None:
        super().__init__(
            code="InvalidObjectName",
            message=f"Invalid object name: {key!r}",
            extra_fields={"Key": key} if key else {},
        )


# -- Compose planning errors --------------------------------------------------


class PlanningError(InvalidArgument):
    """A compose request violates part size or part count constraints."""


class InvalidRange(PlanningError):
    """A source's byte range falls outside the source object."""

    def __init__(self, message: str = "The requested range is not satisfiable.") -> None:
        super().__init__(message)
        self.code = "InvalidRange"


class EntityTooSmall(PlanningError):
    """A non-last source is smaller than the minimum part size."""

    def __init__(
        self, message: str = "Your proposed upload is smaller than the minimum allowed size."
    ) -> None:
        super().__init__(message)
        self.code = "EntityTooSmall"


class EntityTooLarge(PlanningError):
    """The composed object would exceed the maximum multipart object size."""

    def __init__(
        self, message: str = "Your proposed upload exceeds the maximum allowed object size."
    ) -> None:
        super().__init__(message)
        self.code = "EntityTooLarge"


class TooManyParts(PlanningError):
    """The compose request needs more parts than a multipart upload allows."""

    def __init__(self, message: str = "Your proposed upload requires too many parts.") -> None:
        super().__init__(message)
        self.code = "TooManyParts"


# -- Remote errors -------------------------------------------------------------


class AccessDenied(S3Error):
    """Access denied error."""

    def __init__(self, message: str = "Access Denied", http_status: int = 403) -> None:
        super().__init__(code="AccessDenied", message=message, http_status=http_status)


class NoSuchBucket(S3Error):
    """The specified bucket does not exist."""

    def __init__(
        self, message: str = "The specified bucket does not exist.", http_status: int = 404
    ) -> None:
        super().__init__(code="NoSuchBucket", message=message, http_status=http_status)


class NoSuchKey(S3Error):
    """The specified key does not exist."""

    def __init__(
        self, message: str = "The specified key does not exist.", http_status: int = 404
    ) -> None:
        super().__init__(code="NoSuchKey", message=message, http_status=http_status)


class NoSuchUpload(S3Error):
    """The specified multipart upload does not exist."""

    def __init__(
        self,
        message: str = "The specified multipart upload does not exist.",
        http_status: int = 404,
    ) -> None:
        super().__init__(code="NoSuchUpload", message=message, http_status=http_status)


class PreconditionFailed(S3Error):
    """At least one of the preconditions did not hold (e.g. a changed ETag)."""

    def __init__(
        self,
        message: str = "At least one of the pre-conditions you specified did not hold.",
        http_status: int = 412,
    ) -> None:
        super().__init__(code="PreconditionFailed", message=message, http_status=http_status)


class InvalidResponse(S3Error):
    """The server returned a response the client could not interpret."""

    def __init__(self, message: str = "Invalid response", http_status: int | None = None) -> None:
        super().__init__(code="InvalidResponse", message=message, http_status=http_status)


_ERRORS_BY_CODE: dict[str, type[S3Error]] = {
    "AccessDenied": AccessDenied,
    "NoSuchBucket": NoSuchBucket,
    "NoSuchKey": NoSuchKey,
    "NoSuchUpload": NoSuchUpload,
    "PreconditionFailed": PreconditionFailed,
}


def error_from_code(
    code: str,
    message: str,
    http_status: int | None = None,
    extra_fields: dict[str, str] | None = None,
) -> S3Error:
    """Build the most specific ``S3Error`` subclass for a wire error code.

    Args:
        code: The ``<Code>`` value from the error document.
        message: The ``<Message>`` value.
        http_status: HTTP status of the response.
        extra_fields: Remaining fields of the error document.

    Returns:
        An ``S3Error`` instance (a subclass when the code is known).
    """
    cls = _ERRORS_BY_CODE.get(code)
    if cls is None:
        return S3Error(code, message, http_status=http_status, extra_fields=extra_fields)
    error = cls(message, http_status=http_status)
    error.extra_fields = extra_fields or {}
    return error


# -- Event-stream errors -------------------------------------------------------


class EventStreamError(S3Error):
    """The select-content event stream is malformed or reported a failure."""

    def __init__(self, message: str, code: str = "EventStreamError") -> None:
        super().__init__(code=code, message=message)


class ChecksumMismatch(EventStreamError):
    """A prelude or message CRC32 did not match the computed value."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="ChecksumMismatch")


class UnexpectedContentType(EventStreamError):
    """A Progress or Stats event carried a content-type other than text/xml."""

    def __init__(self, content_type: str | None, event_type: str) -> None:
        super().__init__(
            f"Unexpected content-type {content_type} sent for event-type {event_type}",
            code="UnexpectedContentType",
        )
        self.content_type = content_type
        self.event_type = event_type


class TruncatedEventStream(EventStreamError):
    """The event stream ended mid-message or without an End event."""

    def __init__(self, message: str = "Event stream ended before an End event") -> None:
        super().__init__(message, code="TruncatedEventStream")


class SelectError(EventStreamError):
    """The server sent an ``error`` message inside the event stream."""

    def __init__(self, error_code: str, error_message: str) -> None:
        super().__init__(f'{error_code}:"{error_message}"', code=error_code)
        self.error_message = error_message
