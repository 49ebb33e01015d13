"""
Utility functions for the s3conn engine.

These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import random
import time
from urllib.parse import quote

import requests

from s3conn._errors import RetryExhausted, S3ConnError

# Characters left untouched when escaping a caller-supplied resource path.
# The query part ("?acl", "?versioning", "?partNumber=1&uploadId=x") must
# survive so the signers can recognise sub-resources.
_RESOURCE_SAFE_CHARS = "/?=&"


def sleep_with_jitter(seconds: float, jitter_factor: float = 0.1) -> None:
    """
    Sleep for the given duration with random jitter.

    Adds random variation to sleep duration to prevent thundering herd
    problems when many connections retry at the same time.

    Args:
        seconds: Base sleep duration in seconds.
        jitter_factor: Maximum percentage variation (default: 10%).
            For example, 0.1 means sleep time varies by +/- 10%.

    Example:
        >>> sleep_with_jitter(10.0)  # Sleeps between 9.0 and 11.0 seconds
    """
    if seconds <= 0:
        return
    jitter = random.uniform(-jitter_factor, jitter_factor)
    sleep_time = max(0.0, seconds * (1 + jitter))
    time.sleep(sleep_time)


def url_escape(resource_path: str) -> str:
    """
    Percent-encode a resource path for the request line.

    Path separators and the query delimiters are kept as-is.

    Example:
        >>> url_escape("/dir/my file.txt")
        '/dir/my%20file.txt'
        >>> url_escape("/?acl")
        '/?acl'
    """
    return quote(resource_path, safe=_RESOURCE_SAFE_CHARS)


def is_timeout_exception(exc: BaseException | None) -> bool:
    """
    Determine if an exception indicates a timeout condition.

    This is the single source of truth for identifying timeout exceptions,
    including the ones wrapped in TransportFailure and RetryExhausted.

    Args:
        exc: The exception to check.

    Returns:
        True if the exception indicates a timeout, False otherwise.
    """

    if exc is None:
        return False

    if isinstance(exc, (requests.Timeout, TimeoutError)):
        return True

    if isinstance(exc, RetryExhausted):
        return is_timeout_exception(exc.last_exception)

    if isinstance(exc, S3ConnError):
        return is_timeout_exception(exc.cause)

    return False
