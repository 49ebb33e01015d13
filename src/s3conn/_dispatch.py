"""
Request dispatch and the retry/redirect state machine.

A logical request is tracked by one InFlightRequest record, advanced by one
RequestDispatcher running on the connection's worker. Retries and redirects
reuse the same record, so their counters persist across attempts, and the
record guarantees exactly one delivery to the caller's callback.

State machine:

    INIT ──(no or stale transport)──> REINIT ──> SEND
    INIT ──> SEND
    SEND ──> TRANSPORT_FAILURE   no response received
    SEND ──> REDIRECT            HTTP 301 / 307
    SEND ──> PROTOCOL_ERROR      any other non-success code
    SEND ──> SUCCESS             HTTP 200 / 204 / 206
    SEND ──> FAIL                signing or submission failure
    TRANSPORT_FAILURE | PROTOCOL_ERROR ──> RETRY | FAIL
    REDIRECT ──> REINIT          endpoint resolved
    REDIRECT ──> FAIL            too many redirects or no endpoint
    RETRY ──> SEND
    SUCCESS | FAIL ──> TERMINAL  callback invoked exactly once
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

import requests
from requests.structures import CaseInsensitiveDict

from s3conn._errors import (
    ConnectionInitError,
    InvalidStateTransitionError,
    ProtocolError,
    RedirectExhausted,
    RetryExhausted,
    SigningError,
    TransportFailure,
    UnsupportedMethod,
)
from s3conn._signing import SigningRequest, create_signer
from s3conn._stats import format_history_line
from s3conn._utils import is_timeout_exception, sleep_with_jitter, url_escape

if TYPE_CHECKING:
    from s3conn._config import S3Config
    from s3conn._connection import Connection

logger = logging.getLogger(__name__)

ResponseCallback = Callable[["Connection", Any, bool, bytes, "CaseInsensitiveDict[str] | None"], None]

SUPPORTED_METHODS = frozenset({"GET", "PUT", "POST", "DELETE", "HEAD"})
SUCCESS_CODES = frozenset({200, 204, 206})
REDIRECT_CODES = frozenset({301, 307})

# Response code recorded when no response arrived
NO_RESPONSE_CODE = 500


class RequestState(enum.StrEnum):
    """
    States of an in-flight request.

    Attributes:
        INIT: Record created, nothing sent yet.
        REINIT: The transport is being (re)built.
        SEND: An attempt is being signed and sent.
        TRANSPORT_FAILURE: The attempt got no response.
        REDIRECT: The attempt got HTTP 301/307.
        PROTOCOL_ERROR: The attempt got an unexpected status code.
        SUCCESS: The attempt got HTTP 200/204/206.
        RETRY: A new attempt will be sent.
        FAIL: The request failed for good.
        TERMINAL: The callback was invoked.
    """
    INIT = "INIT"
    REINIT = "REINIT"
    SEND = "SEND"
    TRANSPORT_FAILURE = "TRANSPORT_FAILURE"
    REDIRECT = "REDIRECT"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    SUCCESS = "SUCCESS"
    RETRY = "RETRY"
    FAIL = "FAIL"
    TERMINAL = "TERMINAL"

    def __str__(self) -> str:
        return self.value


_VALID_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.INIT:              frozenset({RequestState.REINIT, RequestState.SEND, RequestState.FAIL}),
    RequestState.REINIT:            frozenset({RequestState.SEND, RequestState.FAIL}),
    RequestState.SEND:              frozenset({RequestState.TRANSPORT_FAILURE, RequestState.REDIRECT, RequestState.PROTOCOL_ERROR, RequestState.SUCCESS, RequestState.FAIL}),
    RequestState.TRANSPORT_FAILURE: frozenset({RequestState.RETRY, RequestState.FAIL}),
    RequestState.PROTOCOL_ERROR:    frozenset({RequestState.RETRY, RequestState.FAIL}),
    RequestState.REDIRECT:          frozenset({RequestState.REINIT, RequestState.FAIL}),
    RequestState.RETRY:             frozenset({RequestState.SEND}),
    RequestState.SUCCESS:           frozenset({RequestState.TERMINAL}),
    RequestState.FAIL:              frozenset({RequestState.TERMINAL}),
    RequestState.TERMINAL:          frozenset(),
}


@dataclass(frozen=True)
class AttemptResult:
    """
    Outcome of one attempt.

    Attributes:
        status_code: Response code, None when no response arrived.
        body: Response body (empty when no response arrived).
        headers: Response headers, None when no response arrived.
    """
    status_code: int | None
    body: bytes = b""
    headers: CaseInsensitiveDict[str] | None = None

    @property
    def has_response(self) -> bool:
        return self.status_code is not None


@dataclass(eq=False)
class InFlightRequest:
    """
    Mutable record of one logical request across all its attempts.

    Attributes:
        connection: The connection the request runs on.
        method: Upper-case HTTP method.
        resource_path: Escaped resource path (without bucket prefix).
        body: Request body, resent unchanged on every attempt.
        headers: Snapshot of the staged headers taken when the request began.
        enable_retry: Whether retryable failures are retried.
        callback: Caller's completion callback.
        context: Opaque caller context passed back to the callback.
        redirects: Redirects followed so far.
        retries: Retryable failures counted so far.
        state: Current state.
        error: Cause of the last failure.
        started_at: Start of the logical request.
        delivered: Whether the callback was invoked.
        future: Resolved with the success flag after delivery.
    """
    connection: Connection
    method: str
    resource_path: str
    body: bytes
    headers: CaseInsensitiveDict[str]
    enable_retry: bool
    callback: ResponseCallback | None
    context: Any = None
    redirects: int = 0
    retries: int = 0
    state: RequestState = RequestState.INIT
    error: Exception | None = None
    started_at: datetime | None = None
    delivered: bool = False
    future: Future[bool] = field(default_factory=Future)

    def transition_to(self, new_state: RequestState) -> None:
        """
        Move to ``new_state``.

        Raises:
            InvalidStateTransitionError: If the state table forbids the transition.
        """
        if new_state not in _VALID_TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                f"Invalid request state transition: {self.state} -> {new_state}"
            )
        logger.debug(f"{self.connection.tag} | Con | {self.method} {self.resource_path}: {self.state} -> {new_state}")
        self.state = new_state

    def deliver(self, success: bool, body: bytes = b"", headers: CaseInsensitiveDict[str] | None = None) -> None:
        """
        Invoke the caller's callback; only the first delivery happens.

        On failure the callback gets an empty body and no headers. An
        exception raised by the callback is logged and swallowed so it can
        never trigger a second delivery.
        """
        tag = self.connection.tag
        if self.delivered:
            logger.error(f"{tag} | Con | ❌ Request already delivered, ignoring second delivery.")
            return
        self.delivered = True

        if not success:
            body, headers = b"", None

        if self.callback is not None:
            try:
                self.callback(self.connection, self.context, success, body, headers)
            except Exception:
                logger.exception(f"{tag} | Con | ❌ Response callback raised an exception.")
        else:
            logger.debug(f"{tag} | Con | NO callback function !")

        if not self.future.cancelled():
            self.future.set_result(success)


# =============================================================================
# Wire helpers
# =============================================================================


def host_header(s3: S3Config) -> str:
    """Host header value; the port is appended when it is not the scheme default."""
    default_port = 443 if s3.ssl else 80
    return s3.host if s3.port == default_port else f"{s3.host}:{s3.port}"


def wire_path(s3: S3Config, resource_path: str) -> str:
    """
    Request path for the configured addressing style.

    A host starting with the bucket name addresses the bucket by host
    (virtual-host style); otherwise the bucket is prefixed to the path.

    Example:
        >>> wire_path(S3Config(host="photos.s3.amazonaws.com", bucket_name="photos"), "/a.jpg")
        '/a.jpg'
        >>> wire_path(S3Config(host="s3.amazonaws.com", bucket_name="photos"), "/a.jpg")
        '/photos/a.jpg'
    """
    bucket = s3.bucket_name
    if not bucket or s3.host.lower().startswith(bucket.lower()):
        return resource_path
    return f"/{bucket}{resource_path}"


def assemble_headers(snapshot: CaseInsensitiveDict[str], s3: S3Config) -> CaseInsensitiveDict[str]:
    """
    Merge the header snapshot with the mandatory headers.

    Caller values always win; mandatory headers are only added when missing.
    """
    headers = CaseInsensitiveDict(snapshot)
    headers.setdefault("Host", host_header(s3))
    headers.setdefault("Connection", "keep-alive")
    headers.setdefault("Accept-Encoding", "identity")
    return headers


def headers_size(headers: Any) -> int:
    """Sum of key and value lengths of a header mapping."""
    if not headers:
        return 0
    return sum(len(str(key)) + len(str(value)) for key, value in headers.items())


# =============================================================================
# Dispatcher
# =============================================================================


class RequestDispatcher:
    """
    Advances one InFlightRequest until it is delivered.

    Each state has one handler; a handler performs the state's work and
    transitions the record to the next state. ``run()`` loops until the
    record reaches TERMINAL.
    """

    def __init__(self, request: InFlightRequest):
        self.request = request
        self.connection = request.connection
        self._last_result: AttemptResult | None = None
        self._handlers: dict[RequestState, Callable[[], None]] = {
            RequestState.INIT: self._on_init,
            RequestState.REINIT: self._on_reinit,
            RequestState.SEND: self._on_send,
            RequestState.TRANSPORT_FAILURE: self._on_retryable_failure,
            RequestState.PROTOCOL_ERROR: self._on_retryable_failure,
            RequestState.REDIRECT: self._on_redirect,
            RequestState.RETRY: self._on_retry,
            RequestState.SUCCESS: self._on_success,
            RequestState.FAIL: self._on_fail,
        }

    @property
    def _prefix(self) -> str:
        return f"{self.connection.tag} | Con |"

    def run(self) -> None:
        """Drive the request to a terminal state; always delivers exactly once."""
        request = self.request
        try:
            while request.state is not RequestState.TERMINAL:
                self._handlers[request.state]()
        except Exception as e:
            logger.exception(f"{self._prefix} ❌ Unexpected error while dispatching {request.method} {request.resource_path}")
            if not request.delivered:
                request.error = e
                request.deliver(False)
            request.state = RequestState.TERMINAL

    # ======================
    # State handlers
    # ======================

    def _on_init(self) -> None:
        if self.connection.has_transport and not self.connection.is_transport_stale:
            self.request.transition_to(RequestState.SEND)
        else:
            self.request.transition_to(RequestState.REINIT)

    def _on_reinit(self) -> None:
        try:
            self.connection.init()
        except ConnectionInitError as e:
            logger.error(f"{self._prefix} ❌ Failed to init HTTP connection !")
            self.request.error = e
            self.request.transition_to(RequestState.FAIL)
            return
        self.request.transition_to(RequestState.SEND)

    def _on_send(self) -> None:
        request = self.request
        connection = self.connection
        stats = connection.stats
        s3 = connection.context.config.s3

        timestamp = connection.clock()
        path = wire_path(s3, request.resource_path)
        url = f"{s3.scheme}://{host_header(s3)}{path}"
        headers = assemble_headers(request.headers, s3)

        try:
            signer = create_signer(s3)
            signer.prepare_headers(headers, timestamp)
            headers["Authorization"] = signer.authorization(
                SigningRequest(
                    method=request.method,
                    resource_path=request.resource_path,
                    url=url,
                    headers=headers,
                    timestamp=timestamp,
                )
            )
        except SigningError as e:
            logger.error(f"{self._prefix} ❌ Failed to sign request: {e}")
            request.error = e
            request.transition_to(RequestState.FAIL)
            return
        except (ValueError, OverflowError) as e:
            logger.error(f"{self._prefix} ❌ Failed to format request time: {e}")
            request.error = SigningError(f"Failed to format request time: {e}", cause=e)
            request.transition_to(RequestState.FAIL)
            return

        logger.info(
            f"{self._prefix} {request.method} {path}  bucket: {s3.bucket_name}, host: {s3.host}, "
            f"out_len: {len(request.body)}"
        )

        stats.last_command = request.method
        stats.last_url = url
        stats.time_start = timestamp
        stats.jobs += 1
        if request.started_at is None:
            request.started_at = timestamp

        sent_headers: Any = headers
        failure: TransportFailure | None = None
        try:
            response = connection.send(request.method, url, headers, request.body)
        except (requests.RequestException, ConnectionInitError) as e:
            result = AttemptResult(status_code=None)
            failure = TransportFailure(f"Request failed: {e}", cause=e)
        else:
            result = AttemptResult(
                status_code=response.status_code,
                body=response.content or b"",
                headers=CaseInsensitiveDict(response.headers),
            )
            if getattr(response, "request", None) is not None:
                sent_headers = response.request.headers

        self._record_completion(result, url, sent_headers)
        self._last_result = result

        if not result.has_response:
            stats.errors += 1
            kind = "timed out" if is_timeout_exception(failure) else "failed"
            logger.error(f"{self._prefix} Request {kind} ! {failure}")
            request.error = failure
            request.transition_to(RequestState.TRANSPORT_FAILURE)
            return

        code = result.status_code
        if code in REDIRECT_CODES:
            request.redirects += 1
            max_redirects = connection.context.config.connection.max_redirects
            if request.redirects > max_redirects:
                stats.errors += 1
                logger.error(f"{self._prefix} ❌ Too many redirects !")
                request.error = RedirectExhausted(request.redirects, max_redirects)
                request.transition_to(RequestState.FAIL)
                return
            request.transition_to(RequestState.REDIRECT)
            return

        if code not in SUCCESS_CODES:
            message = connection.context.error_parser.extract_error_message(result.body)
            logger.debug(f"{self._prefix} Server returned HTTP error: {code}. AWS message: {message}")
            stats.errors += 1
            request.error = ProtocolError(code, message)  # type: ignore[arg-type]
            request.transition_to(RequestState.PROTOCOL_ERROR)
            return

        request.transition_to(RequestState.SUCCESS)

    def _on_retryable_failure(self) -> None:
        request = self.request
        if not request.enable_retry:
            request.transition_to(RequestState.FAIL)
            return

        max_retries = self.connection.context.config.connection.max_retries
        request.retries += 1
        logger.warning(f"{self._prefix} {request.error} Retry ID: {request.retries} of {max_retries}")

        if request.retries >= max_retries:
            logger.error(f"{self._prefix} ❌ Reached the maximum number of retries !")
            request.error = RetryExhausted(request.retries, request.error)
            request.transition_to(RequestState.FAIL)
            return

        request.transition_to(RequestState.RETRY)

    def _on_retry(self) -> None:
        backoff = self.connection.context.config.connection.retry_backoff
        if backoff > 0:
            sleep_time = backoff * (2 ** (self.request.retries - 1))
            logger.warning(f"{self._prefix} Retrying in {sleep_time:.1f}s...")
            sleep_with_jitter(sleep_time)
        self.request.transition_to(RequestState.SEND)

    def _on_redirect(self) -> None:
        request = self.request
        context = self.connection.context
        result = self._last_result
        assert result is not None and result.headers is not None, "redirect without response"

        location = result.headers.get("Location")
        if not location:
            location = context.error_parser.extract_redirect_endpoint(result.body)

        if not location:
            logger.error(f"{self._prefix} ❌ Redirect URL not found !")
            request.error = ProtocolError(result.status_code or NO_RESPONSE_CODE, "Redirect URL not found")
            request.transition_to(RequestState.FAIL)
            return

        logger.debug(f"{self._prefix} New URL: {location}")
        if not context.set_url(location):
            request.error = ProtocolError(result.status_code or NO_RESPONSE_CODE, f"Invalid redirect URL: {location}")
            request.transition_to(RequestState.FAIL)
            return

        request.transition_to(RequestState.REINIT)

    def _on_success(self) -> None:
        result = self._last_result
        assert result is not None, "success without response"
        self.request.deliver(True, result.body, result.headers)
        self.request.transition_to(RequestState.TERMINAL)

    def _on_fail(self) -> None:
        request = self.request
        logger.error(f"{self._prefix} ❌ {request.method} {request.resource_path} failed: {request.error}")
        request.deliver(False)
        request.transition_to(RequestState.TERMINAL)

    # ======================
    # Instrumentation
    # ======================

    def _record_completion(self, result: AttemptResult, url: str, sent_headers: Any) -> None:
        request = self.request
        connection = self.connection
        stats = connection.stats

        stats.time_stop = connection.clock()
        stats.last_code = result.status_code if result.has_response else NO_RESPONSE_CODE

        stats.bytes_out += headers_size(sent_headers) + len(request.body)
        if result.has_response:
            stats.bytes_in += headers_size(result.headers) + len(result.body)

        line = format_history_line(
            tag=connection.tag,
            stats=stats,
            method=request.method,
            url=url,
            range_header=request.headers.get("Range"),
            bytes_sent=len(request.body),
            bytes_received=len(result.body),
        )
        connection.context.history.append(line)

        elapsed = (stats.time_stop - stats.time_start).total_seconds() * 1000 if stats.time_start else 0
        logger.debug(f"{self._prefix} Got HTTP response from server! ({elapsed:.0f}msec)")


# =============================================================================
# Entry point
# =============================================================================


def make_request(
    connection: Connection,
    resource_path: str,
    method: str,
    body: bytes | None = None,
    enable_retry: bool = True,
    callback: ResponseCallback | None = None,
    context: Any = None,
) -> Future[bool]:
    """
    Issue one logical request on ``connection``.

    Consumes the connection's staged headers, then runs the request on the
    connection's worker. The callback is invoked exactly once, with
    ``(connection, context, success, body, headers)``; on failure ``body`` is
    empty and ``headers`` is None. An unsupported method fails immediately,
    on the calling thread, without any network I/O.

    Args:
        connection: An acquired connection.
        resource_path: Object path (e.g. ``/dir/file.txt`` or ``/?acl``); escaped here.
        method: HTTP method (GET, PUT, POST, DELETE, HEAD; case-insensitive).
        body: Request body, resent unchanged by retries and redirects.
        enable_retry: Whether retryable failures are retried.
        callback: Completion callback.
        context: Opaque value passed back to the callback.

    Returns:
        Future resolved with the success flag once the callback ran.
    """
    if not connection.is_acquired:
        logger.warning(f"{connection.tag} | Con | Request issued on a connection that is not acquired.")

    request = InFlightRequest(
        connection=connection,
        method=(method or "").upper(),
        resource_path=url_escape(resource_path),
        body=bytes(body or b""),
        headers=connection.take_output_headers(),
        enable_retry=enable_retry,
        callback=callback,
        context=context,
    )

    if request.method not in SUPPORTED_METHODS:
        logger.error(f"{connection.tag} | Con | ❌ Unsupported HTTP method: {method}")
        request.error = UnsupportedMethod(method)
        request.transition_to(RequestState.FAIL)
        request.deliver(False)
        request.transition_to(RequestState.TERMINAL)
        return request.future

    try:
        connection.submit(RequestDispatcher(request).run)
    except RuntimeError as e:
        logger.error(f"{connection.tag} | Con | ❌ Failed to send request: {e}")
        request.error = TransportFailure(f"Failed to submit request: {e}", cause=e)
        request.transition_to(RequestState.FAIL)
        request.deliver(False)
        request.transition_to(RequestState.TERMINAL)

    return request.future
