"""AWS Signature Version 4 request signing for stratus.

Implements SigV4 signing for header-based auth (Authorization header) and
query-string auth (presigned URLs).

References:
    - https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-authenticating-requests.html
"""

import hashlib
import hmac
import logging
import re
import urllib.parse
from datetime import datetime, timezone

from stratus.errors import InvalidArgument

logger = logging.getLogger(__name__)

# Constants
ALGORITHM = "AWS4-HMAC-SHA256"
KEY_PREFIX = "AWS4"
SCOPE_TERMINATOR = "aws4_request"
SERVICE_NAME = "s3"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
MAX_PRESIGNED_EXPIRES = 604800  # 7 days in seconds

# Headers never included in the signature: they may be rewritten in transit.
_UNSIGNED_HEADERS = frozenset({"authorization", "user-agent", "content-length", "expect"})


class SigV4Signer:
    """Signs outgoing S3 requests with AWS Signature Version 4.

    Attributes:
        access_key: The access key id.
        region: The region used in the credential scope.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        region: str = "us-east-1",
        session_token: str = "",
    ) -> None:
        """Initialize the signer.

        Args:
            access_key: The access key id.
            secret_key: The secret access key.
            region: Region used in the credential scope.
            session_token: Optional STS session token.
        """
        self.access_key = access_key
        self._secret_key = secret_key
        self.region = region
        self._session_token = session_token
        # Signing key cache: date -> signing_key bytes
        self._signing_key_cache: dict[str, bytes] = {}

    @property
    def anonymous(self) -> bool:
        """True when no credentials are configured; requests go out unsigned."""
        return not (self.access_key and self._secret_key)

    def sign_headers(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        payload_hash: str,
        now: datetime | None = None,
    ) -> dict[str, str]:
        """Return ``headers`` extended with SigV4 authentication headers.

        Args:
            method: HTTP method (uppercase).
            url: Full request URL including the query string.
            headers: Request headers; ``host`` is derived from ``url`` if absent.
            payload_hash: SHA-256 hex digest of the body or UNSIGNED-PAYLOAD.
            now: Signing time (defaults to the current time).

        Returns:
            A new header dict including Authorization, x-amz-date and
            x-amz-content-sha256.
        """
        signed = dict(headers)
        if self.anonymous:
            return signed

        now = now or datetime.now(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = amz_date[:8]

        parsed = urllib.parse.urlsplit(url)
        if not any(name.lower() == "host" for name in signed):
            signed["host"] = parsed.netloc
        signed["x-amz-date"] = amz_date
        signed["x-amz-content-sha256"] = payload_hash
        if self._session_token:
            signed["x-amz-security-token"] = self._session_token

        signed_headers = sorted(
            {name.lower() for name in signed if name.lower() not in _UNSIGNED_HEADERS}
        )
        canonical_request = build_canonical_request(
            method=method,
            uri=parsed.path,
            query_string=parsed.query,
            headers=signed,
            signed_headers=signed_headers,
            payload_hash=payload_hash,
        )
        scope = f"{date_stamp}/{self.region}/{SERVICE_NAME}/{SCOPE_TERMINATOR}"
        string_to_sign = build_string_to_sign(amz_date, scope, canonical_request)
        signature = compute_signature(self._signing_key(date_stamp), string_to_sign)

        signed["Authorization"] = (
            f"{ALGORITHM} Credential={self.access_key}/{scope}, "
            f"SignedHeaders={';'.join(signed_headers)}, Signature={signature}"
        )
        return signed

    def presign_url(
        self,
        method: str,
        url: str,
        expires: int = MAX_PRESIGNED_EXPIRES,
        now: datetime | None = None,
    ) -> str:
        """Build a presigned URL valid for ``expires`` seconds.

        Args:
            method: HTTP method the URL will be used with.
            url: Full URL, optionally with extra query parameters.
            expires: Validity in seconds (1 to 604800).
            now: Signing time (defaults to the current time).

        Returns:
            The URL with X-Amz-* query parameters appended.

        Raises:
            InvalidArgument: If ``expires`` is out of range or no credentials
                are configured.
        """
        if expires < 1 or expires > MAX_PRESIGNED_EXPIRES:
            raise InvalidArgument(
                f"Presigned URL expiry must be between 1 and {MAX_PRESIGNED_EXPIRES} seconds"
            )
        if self.anonymous:
            raise InvalidArgument("Presigned URLs cannot be generated for anonymous clients")

        now = now or datetime.now(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = amz_date[:8]
        scope = f"{date_stamp}/{self.region}/{SERVICE_NAME}/{SCOPE_TERMINATOR}"

        parsed = urllib.parse.urlsplit(url)
        params = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
        params.extend(
            [
                ("X-Amz-Algorithm", ALGORITHM),
                ("X-Amz-Credential", f"{self.access_key}/{scope}"),
                ("X-Amz-Date", amz_date),
                ("X-Amz-Expires", str(expires)),
                ("X-Amz-SignedHeaders", "host"),
            ]
        )
        if self._session_token:
            params.append(("X-Amz-Security-Token", self._session_token))

        query_string = "&".join(
            f"{uri_encode(name)}={uri_encode(value)}" for name, value in params
        )
        canonical_request = build_canonical_request(
            method=method,
            uri=parsed.path,
            query_string=query_string,
            headers={"host": parsed.netloc},
            signed_headers=["host"],
            payload_hash=UNSIGNED_PAYLOAD,
        )
        string_to_sign = build_string_to_sign(amz_date, scope, canonical_request)
        signature = compute_signature(self._signing_key(date_stamp), string_to_sign)

        return urllib.parse.urlunsplit(
            (
                parsed.scheme,
                parsed.netloc,
                parsed.path,
                f"{_build_canonical_query_string(query_string)}&X-Amz-Signature={signature}",
                "",
            )
        )

    def _signing_key(self, date: str) -> bytes:
        """Derive (or reuse) the signing key for ``date``."""
        cached = self._signing_key_cache.get(date)
        if cached is not None:
            return cached

        signing_key = derive_signing_key(self._secret_key, date, self.region, SERVICE_NAME)
        logger.debug("Derived signing key for %s/%s", date, self.region)

        # Only a handful of dates are ever live at once
        if len(self._signing_key_cache) > 8:
            self._signing_key_cache.clear()
        self._signing_key_cache[date] = signing_key
        return signing_key


# ---------------------------------------------------------------------------
# Module-level utility functions
# ---------------------------------------------------------------------------


def build_canonical_request(
    method: str,
    uri: str,
    query_string: str,
    headers: dict[str, str],
    signed_headers: list[str],
    payload_hash: str,
) -> str:
    """Build the canonical request string.

    Args:
        method: HTTP method (uppercase).
        uri: The request URI path, already percent-encoded.
        query_string: The raw query string.
        headers: All request headers (names may be mixed case).
        signed_headers: List of signed header names (lowercase).
        payload_hash: SHA-256 hex digest or UNSIGNED-PAYLOAD.

    Returns:
        The canonical request string.
    """
    canonical_uri = _uri_encode_path(urllib.parse.unquote(uri))
    canonical_query = _build_canonical_query_string(query_string)

    # Canonical headers: lowercase names, trim values, sort by name
    lower_headers: dict[str, str] = {}
    for name, value in headers.items():
        lower_name = name.lower()
        if lower_name in lower_headers:
            lower_headers[lower_name] += "," + _trim_header_value(str(value))
        else:
            lower_headers[lower_name] = _trim_header_value(str(value))

    sorted_signed = sorted(signed_headers)
    canonical_headers = "".join(
        f"{name}:{lower_headers.get(name, '')}\n" for name in sorted_signed
    )

    return "\n".join(
        [
            method,
            canonical_uri,
            canonical_query,
            canonical_headers,
            ";".join(sorted_signed),
            payload_hash,
        ]
    )


def build_string_to_sign(timestamp: str, scope: str, canonical_request: str) -> str:
    """Build the string to sign.

    Args:
        timestamp: ISO 8601 timestamp (YYYYMMDDTHHMMSSZ).
        scope: Credential scope (YYYYMMDD/region/s3/aws4_request).
        canonical_request: The assembled canonical request string.

    Returns:
        The string to sign.
    """
    canonical_hash = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()
    return f"{ALGORITHM}\n{timestamp}\n{scope}\n{canonical_hash}"


def compute_signature(signing_key: bytes, string_to_sign: str) -> str:
    """Compute the final HMAC-SHA256 hex signature."""
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def derive_signing_key(secret_key: str, date: str, region: str, service: str) -> bytes:
    """Derive the SigV4 signing key via the HMAC-SHA256 chain.

    Args:
        secret_key: The secret access key.
        date: Date string (YYYYMMDD).
        region: AWS region.
        service: AWS service name.

    Returns:
        The 32-byte signing key.
    """
    k_date = hmac.new(
        (KEY_PREFIX + secret_key).encode("utf-8"),
        date.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    k_region = hmac.new(k_date, region.encode("utf-8"), hashlib.sha256).digest()
    k_service = hmac.new(k_region, service.encode("utf-8"), hashlib.sha256).digest()
    return hmac.new(k_service, SCOPE_TERMINATOR.encode("utf-8"), hashlib.sha256).digest()


def uri_encode(s: str, encode_slash: bool = True) -> str:
    """S3-compatible URI encoding.

    Characters A-Z, a-z, 0-9, '-', '_', '.', '~' are not encoded.
    All other characters are percent-encoded with uppercase hex.
    Spaces become %20 (not +).
    """
    safe = "-_.~" if encode_slash else "-_.~/"
    return urllib.parse.quote(s, safe=safe)


def _uri_encode_path(path: str) -> str:
    """URI-encode a path, preserving forward slashes."""
    if not path:
        return "/"
    result = "/".join(uri_encode(seg, encode_slash=False) for seg in path.split("/"))
    if not result.startswith("/"):
        result = "/" + result
    return result


def _build_canonical_query_string(query_string: str) -> str:
    """Build the canonical query string from a raw query string.

    Parameters are sorted by name (byte-order), then by value.
    Each name and value is URI-encoded. Parameters with no value
    use empty value (e.g., 'uploads=').
    """
    if not query_string:
        return ""

    params: list[tuple[str, str]] = []
    for pair in query_string.split("&"):
        if not pair:
            continue
        if "=" in pair:
            name, value = pair.split("=", 1)
        else:
            name, value = pair, ""
        params.append((urllib.parse.unquote(name), urllib.parse.unquote(value)))

    params.sort()
    return "&".join(f"{uri_encode(name)}={uri_encode(value)}" for name, value in params)


def _trim_header_value(value: str) -> str:
    """Strip and collapse sequential spaces in a header value."""
    return re.sub(r" +", " ", value.strip())
