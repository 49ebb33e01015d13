"""
Request signing for the S3 REST API.

This module provides the two signing schemes supported by the engine:

- LegacySigner: AWS signature version 2 (HMAC-SHA1 over a newline-joined
  string of method, Content-MD5, Content-Type, date, x-amz-* headers and the
  canonicalized resource).
- V4Signer: AWS signature version 4 (HMAC-SHA256 over a canonical request,
  with a derived, scoped signing key).

Both are pure computations: the timestamp is always supplied by the caller
and no clock or randomness is involved, so identical inputs always produce
byte-identical Authorization values.

Example:
    >>> from datetime import UTC, datetime
    >>> signer = V4Signer(access_key_id="AKID", secret_access_key="secret", region="us-east-1")
    >>> headers = CaseInsensitiveDict({"Host": "bucket.s3.amazonaws.com"})
    >>> ts = datetime(2013, 5, 24, tzinfo=UTC)
    >>> signer.prepare_headers(headers, ts)
    >>> request = SigningRequest("GET", "/test.txt", "http://bucket.s3.amazonaws.com/test.txt", headers, ts)
    >>> signer.authorization(request)
    'AWS4-HMAC-SHA256 Credential=AKID/20130524/us-east-1/s3/aws4_request,SignedHeaders=...'

References:
    https://docs.aws.amazon.com/AmazonS3/latest/userguide/RESTAuthentication.html
    https://docs.aws.amazon.com/AmazonS3/latest/API/sig-v4-header-based-auth.html
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import format_datetime
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, quote, unquote, urlsplit

from requests.structures import CaseInsensitiveDict
from typing_extensions import override

from s3conn._errors import SigningError

if TYPE_CHECKING:
    from s3conn._config import S3Config

logger = logging.getLogger(__name__)

V4_ALGORITHM = "AWS4-HMAC-SHA256"
V4_TERMINATOR = "aws4_request"
SERVICE_NAME = "s3"

# SHA-256 of the empty payload
EMPTY_PAYLOAD_SHA256 = hashlib.sha256(b"").hexdigest()

# Sub-resources kept in the legacy canonicalized resource when they directly
# follow the bucket ("/?acl"). Any other query right after the bucket is dropped.
LEGACY_SUBRESOURCES = ("?acl", "?versioning", "?versions")


# =============================================================================
# Timestamps
# =============================================================================


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC)


def rfc1123_date(timestamp: datetime) -> str:
    """
    Format a timestamp as an HTTP date.

    Example:
        >>> rfc1123_date(datetime(2007, 3, 27, 19, 36, 42, tzinfo=UTC))
        'Tue, 27 Mar 2007 19:36:42 GMT'
    """
    return format_datetime(_as_utc(timestamp), usegmt=True)


def iso8601_basic(timestamp: datetime) -> str:
    """Format a timestamp as ``YYYYMMDDTHHMMSSZ`` (the x-amz-date format)."""
    return _as_utc(timestamp).strftime("%Y%m%dT%H%M%SZ")


def datestamp(timestamp: datetime) -> str:
    """Format a timestamp as ``YYYYMMDD`` (the credential scope date)."""
    return _as_utc(timestamp).strftime("%Y%m%d")


# =============================================================================
# Signing input
# =============================================================================


@dataclass(frozen=True)
class SigningRequest:
    """
    Everything a signer may look at.

    Attributes:
        method: HTTP method, upper-case.
        resource_path: Escaped resource path without the bucket prefix
            (e.g. ``/dir/file.txt`` or ``/?acl``).
        url: Full request URL as sent on the wire.
        headers: Headers of the outgoing request (Authorization excluded).
        timestamp: Request time; the only time source of the signature.
    """

    method: str
    resource_path: str
    url: str
    headers: Mapping[str, str]
    timestamp: datetime


# =============================================================================
# Legacy (v2) scheme
# =============================================================================


def canonicalized_resource(bucket_name: str | None, resource_path: str) -> str:
    """
    Build the legacy CanonicalizedResource element.

    Example:
        >>> canonicalized_resource("johnsmith", "/photos/puppy.jpg")
        '/johnsmith/photos/puppy.jpg'
        >>> canonicalized_resource("johnsmith", "/?acl")
        '/johnsmith/?acl'
        >>> canonicalized_resource("johnsmith", "/?delimiter=/&prefix=a")
        '/johnsmith/'
    """
    bucket = bucket_name or ""
    if len(resource_path) > 2 and resource_path[1] == "?":
        if any(sub in resource_path for sub in LEGACY_SUBRESOURCES):
            return f"/{bucket}{resource_path}"
        return f"/{bucket}/"
    return f"/{bucket}{resource_path}"


def legacy_string_to_sign(
    method: str,
    headers: Mapping[str, str],
    date: str,
    resource: str,
) -> str:
    """
    Build the legacy string-to-sign.

    x-amz-* headers are rendered as ``key:value`` lines in the order the
    mapping yields them.
    """
    content_md5 = ""
    content_type = ""
    amz_headers = []
    for key, value in headers.items():
        lowered = key.lower()
        if lowered == "content-md5":
            content_md5 = value
        elif lowered == "content-type":
            content_type = value
        elif lowered.startswith("x-amz-"):
            amz_headers.append(f"{key}:{value}\n")

    return f"{method}\n{content_md5}\n{content_type}\n{date}\n" + "".join(amz_headers) + resource


def sign_legacy(string_to_sign: str, secret_access_key: str) -> str:
    """Return base64(HMAC-SHA1(secret, string_to_sign))."""
    digest = hmac.new(
        secret_access_key.encode("utf-8"),
        string_to_sign.encode("utf-8"),
        hashlib.sha1,
    ).digest()
    return base64.b64encode(digest).decode("ascii")


# =============================================================================
# Canonical-request (v4) scheme
# =============================================================================


def canonical_headers(headers: Mapping[str, str]) -> tuple[str, str]:
    """
    Build the canonical header block and the signed header list.

    Names are lower-cased and sorted; values have surrounding whitespace
    trimmed and inner runs collapsed. Both results derive from the same
    sorted set.

    Returns:
        Tuple of (``name:value`` lines joined by newlines, names joined by ``;``).

    Example:
        >>> canonical_headers({"X-Amz-Date": "20130524T000000Z", "Host": "b.s3.amazonaws.com"})
        ('host:b.s3.amazonaws.com\\nx-amz-date:20130524T000000Z', 'host;x-amz-date')
    """
    entries = sorted(
        (key.strip().lower(), " ".join(str(value).split()))
        for key, value in headers.items()
    )
    block = "\n".join(f"{name}:{value}" for name, value in entries)
    signed = ";".join(name for name, _ in entries)
    return block, signed


def canonical_uri(path: str) -> str:
    """
    Normalise the percent-encoding of a request path.

    The path is decoded and re-encoded so equivalent spellings sign the same.

    Example:
        >>> canonical_uri("/my%20file (1).txt")
        '/my%20file%20%281%29.txt'
    """
    if not path:
        return "/"
    return quote(unquote(path), safe="/~")


def canonical_query(query: str) -> str:
    """
    Sort query parameters by key and encode them.

    Bare sub-resources get an empty value (``acl`` becomes ``acl=``).

    Example:
        >>> canonical_query("uploadId=abc&partNumber=2")
        'partNumber=2&uploadId=abc'
        >>> canonical_query("acl")
        'acl='
    """
    if not query:
        return ""
    pairs = parse_qsl(query, keep_blank_values=True)
    encoded = sorted(
        (quote(key, safe="-_.~"), quote(value, safe="-_.~"))
        for key, value in pairs
    )
    return "&".join(f"{key}={value}" for key, value in encoded)


def canonical_request(
    method: str,
    uri: str,
    query: str,
    header_block: str,
    signed_headers: str,
    payload_hash: str,
) -> str:
    """Join the canonical request fields (the header block ends with an empty line)."""
    return "\n".join([method, uri, query, header_block + "\n", signed_headers, payload_hash])


def credential_scope(timestamp: datetime, region: str, service: str = SERVICE_NAME) -> str:
    """
    Example:
        >>> credential_scope(datetime(2013, 5, 24, tzinfo=UTC), "us-east-1")
        '20130524/us-east-1/s3/aws4_request'
    """
    return f"{datestamp(timestamp)}/{region}/{service}/{V4_TERMINATOR}"


def v4_string_to_sign(timestamp: datetime, scope: str, canonical: str) -> str:
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{V4_ALGORITHM}\n{iso8601_basic(timestamp)}\n{scope}\n{digest}"


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(
    secret_access_key: str,
    timestamp: datetime,
    region: str,
    service: str = SERVICE_NAME,
) -> bytes:
    """Chain HMAC-SHA256 over date, region, service and ``aws4_request``."""
    key = _hmac_sha256(f"AWS4{secret_access_key}".encode("utf-8"), datestamp(timestamp))
    key = _hmac_sha256(key, region)
    key = _hmac_sha256(key, service)
    return _hmac_sha256(key, V4_TERMINATOR)


def sign_v4(signing_key: bytes, string_to_sign: str) -> str:
    """Return hex(HMAC-SHA256(signing_key, string_to_sign))."""
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


# =============================================================================
# Signers
# =============================================================================


class Signer(ABC):
    """
    Abstract base class for request signers.

    A signer contributes the scheme-specific headers it needs (before the
    request is signed) and computes the Authorization header value.
    """

    @abstractmethod
    def prepare_headers(self, headers: MutableMapping[str, str], timestamp: datetime) -> None:
        """
        Add the headers this scheme requires, without overriding caller values.

        Args:
            headers: The outgoing headers (modified in place).
            timestamp: Request time.
        """
        pass

    @abstractmethod
    def authorization(self, request: SigningRequest) -> str:
        """
        Compute the Authorization header value.

        Raises:
            SigningError: If the request cannot be signed.
        """
        pass


class LegacySigner(Signer):
    """
    AWS signature version 2.

    Args:
        access_key_id: Access key id.
        secret_access_key: Secret used as the HMAC-SHA1 key.
        bucket_name: Bucket used in the canonicalized resource.
    """

    def __init__(self, access_key_id: str, secret_access_key: str, bucket_name: str | None):
        assert access_key_id, "access_key_id cannot be empty"
        assert secret_access_key, "secret_access_key cannot be empty"

        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._bucket_name = bucket_name

    @override
    def prepare_headers(self, headers: MutableMapping[str, str], timestamp: datetime) -> None:
        if "Date" not in headers:
            headers["Date"] = rfc1123_date(timestamp)

    def string_to_sign(self, request: SigningRequest) -> str:
        # The signed date must be the one sent in the Date header
        date = CaseInsensitiveDict(request.headers).get("Date") or rfc1123_date(request.timestamp)
        return legacy_string_to_sign(
            method=request.method,
            headers=request.headers,
            date=date,
            resource=canonicalized_resource(self._bucket_name, request.resource_path),
        )

    @override
    def authorization(self, request: SigningRequest) -> str:
        signature = sign_legacy(self.string_to_sign(request), self._secret_access_key)
        return f"AWS {self._access_key_id}:{signature}"


class V4Signer(Signer):
    """
    AWS signature version 4 (header-based).

    Args:
        access_key_id: Access key id echoed in the credential.
        secret_access_key: Secret seeding the derived signing key.
        region: Region of the credential scope.
    """

    def __init__(self, access_key_id: str, secret_access_key: str, region: str):
        assert access_key_id, "access_key_id cannot be empty"
        assert secret_access_key, "secret_access_key cannot be empty"
        assert region, "region cannot be empty"

        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._region = region

    @override
    def prepare_headers(self, headers: MutableMapping[str, str], timestamp: datetime) -> None:
        if "x-amz-content-sha256" not in headers:
            headers["x-amz-content-sha256"] = EMPTY_PAYLOAD_SHA256
        if "x-amz-date" not in headers:
            headers["x-amz-date"] = iso8601_basic(timestamp)

    def canonical_request(self, request: SigningRequest) -> tuple[str, str]:
        """
        Build the canonical request of ``request``.

        Returns:
            Tuple of (canonical request, signed header list).

        Raises:
            SigningError: If the payload hash header is missing.
        """
        headers = CaseInsensitiveDict(request.headers)
        payload_hash = headers.get("x-amz-content-sha256")
        if not payload_hash:
            raise SigningError("Cannot sign request: 'x-amz-content-sha256' header is missing")

        parts = urlsplit(request.url)
        header_block, signed_headers = canonical_headers(request.headers)
        canonical = canonical_request(
            method=request.method,
            uri=canonical_uri(parts.path),
            query=canonical_query(parts.query),
            header_block=header_block,
            signed_headers=signed_headers,
            payload_hash=payload_hash,
        )
        return canonical, signed_headers

    @override
    def authorization(self, request: SigningRequest) -> str:
        canonical, signed_headers = self.canonical_request(request)
        logger.debug(f"Canonical request:\n{canonical}")

        scope = credential_scope(request.timestamp, self._region)
        string_to_sign = v4_string_to_sign(request.timestamp, scope, canonical)
        logger.debug(f"String to sign:\n{string_to_sign}")

        signing_key = derive_signing_key(self._secret_access_key, request.timestamp, self._region)
        signature = sign_v4(signing_key, string_to_sign)

        return (
            f"{V4_ALGORITHM} Credential={self._access_key_id}/{scope},"
            f"SignedHeaders={signed_headers},Signature={signature}"
        )


# =============================================================================
# Helper Functions
# =============================================================================


def create_signer(config: S3Config) -> Signer:
    """
    Create the signer selected by ``config.use_awsv4``.

    Raises:
        SigningError: If credentials are not configured.

    Example:
        >>> signer = create_signer(S3Config(access_key_id="x", secret_access_key="y", use_awsv4=True))
        >>> isinstance(signer, V4Signer)
        True
    """
    if not config.has_credentials():
        raise SigningError(
            "S3 credentials not configured. "
            "Set access_key_id and secret_access_key or the environment variables "
            "(S3CONN_S3_ACCESS_KEY_ID, S3CONN_S3_SECRET_ACCESS_KEY)."
        )

    if config.use_awsv4:
        return V4Signer(
            access_key_id=config.access_key_id,  # type: ignore[arg-type]
            secret_access_key=config.secret_access_key,  # type: ignore[arg-type]
            region=config.region,
        )
    return LegacySigner(
        access_key_id=config.access_key_id,  # type: ignore[arg-type]
        secret_access_key=config.secret_access_key,  # type: ignore[arg-type]
        bucket_name=config.bucket_name,
    )
