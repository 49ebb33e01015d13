"""
Exceptions raised and handled by the s3conn engine.

Transport and protocol failures are handled locally by the request
dispatcher (retry or redirect) and only surface to the caller as a failed
callback. The exception instances are still kept on the in-flight request
record and logged, so the cause of a terminal failure is never lost.

Hierarchy:
    S3ConnError
    ├── ConnectionInitError
    ├── RetryableError
    │   ├── TransportFailure
    │   └── ProtocolError
    ├── RedirectExhausted
    ├── RetryExhausted
    ├── UnsupportedMethod
    ├── MalformedResponse
    ├── SigningError
    └── InvalidStateTransitionError
"""

from __future__ import annotations


class S3ConnError(Exception):
    """Base class for every error raised by s3conn."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ConnectionInitError(S3ConnError):
    """
    Raised when the transport (or its TLS layer) cannot be created.

    Fatal for the current attempt. The dispatcher reports it to the caller
    as a failed callback.
    """


class RetryableError(S3ConnError):
    """
    Base class for failures that may be retried.

    The dispatcher retries any exception extending this class when the
    request was issued with retries enabled and the retry budget is not
    exhausted.

    Example:
        >>> error = TransportFailure("connection reset")
        >>> isinstance(error, RetryableError)
        True
    """


class TransportFailure(RetryableError):
    """Raised when no HTTP response was received (connect/read error, timeout)."""


class ProtocolError(RetryableError):
    """
    Raised when the server answered with a non-success status code.

    Attributes:
        status_code: The HTTP status code returned by the server.
        server_message: The ``/Error/Message`` text of the response body, if any.
    """

    def __init__(self, status_code: int, server_message: str | None = None):
        message = f"Server returned HTTP error: {status_code}"
        if server_message:
            message += f" ({server_message})"
        super().__init__(message)
        self.status_code = status_code
        self.server_message = server_message


class RedirectExhausted(S3ConnError):
    """Raised when a request was redirected more times than allowed."""

    def __init__(self, redirects: int, max_redirects: int):
        super().__init__(f"Too many redirects: {redirects} (max_redirects={max_redirects})")
        self.redirects = redirects
        self.max_redirects = max_redirects


class RetryExhausted(S3ConnError):
    """
    Raised when all retry attempts are exhausted.

    Attributes:
        retries: The number of retries performed.
        last_exception: The failure of the last attempt.
    """

    def __init__(self, retries: int, last_exception: Exception | None = None):
        super().__init__(
            f"Reached the maximum number of retries ({retries}). Last error: {last_exception}",
            cause=last_exception,
        )
        self.retries = retries
        self.last_exception = last_exception


class UnsupportedMethod(S3ConnError):
    """Raised when the caller passes an HTTP verb the engine does not send."""

    def __init__(self, method: str):
        super().__init__(f"Unsupported HTTP method: {method}")
        self.method = method


class MalformedResponse(S3ConnError):
    """
    Raised by error-body parsers when the XML cannot be read.

    Never escapes to the dispatcher: extraction helpers turn it into
    "no information available".
    """


class SigningError(S3ConnError):
    """
    Raised when a request cannot be signed.

    This is a configuration error (missing credentials, missing payload
    hash) and is never retried.
    """


class InvalidStateTransitionError(S3ConnError):
    """Raised when the dispatcher attempts a transition the state table forbids."""
