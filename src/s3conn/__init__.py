"""
s3conn: S3-compatible client protocol engine.

Persistent HTTP(S) connections to an S3-compatible object store, request
signing (legacy v2 and v4), and a retry/redirect state machine delivering
every logical request to a single completion callback.

Quick Start:
    >>> from s3conn import ClientContext, Connection, S3ConnConfig
    >>> config = S3ConnConfig().with_env_vars().validate()
    >>> context = ClientContext(config)
    >>> connection = Connection.create(context)
    >>> connection.acquire()
    >>>
    >>> def on_done(con, ctx, success, body, headers):
    ...     print(success, len(body))
    >>>
    >>> connection.add_output_header("Range", "bytes=0-9")
    >>> connection.make_request("/hello.txt", "GET", callback=on_done).result()
    >>> connection.release()

Configuration:
    >>> config = S3ConnConfig().with_section_overrides(
    ...     s3={"host": "mybucket.s3.amazonaws.com", "bucket_name": "mybucket", "use_awsv4": True},
    ...     connection={"max_retries": 3},
    ... )
    >>> config.explain()

Connection:
    - Connection: One physical connection (pool slot) to the storage service.
    - ClientContext: Shared handle (config snapshot, TLS context, history, XML parser).
    - TLSContextAdapter: HTTPAdapter bound to a shared ssl.SSLContext.

Dispatch:
    - make_request: Issue one logical request on a connection.
    - RequestState: States of the retry/redirect state machine.
    - InFlightRequest: Record of one logical request across its attempts.
    - ResponseCallback: Signature of completion callbacks.

Signing:
    - Signer: Abstract base class of request signers.
    - LegacySigner: Legacy (v2) HMAC-SHA1 signer.
    - V4Signer: AWS Signature Version 4 signer.
    - create_signer: Select the signer for a configuration.

Configuration:
    - S3ConnConfig: Root configuration.
    - S3Config: Endpoint, bucket and credentials.
    - ConnectionConfig: Timeouts, retries and redirects.
    - ConfigEntry: One entry of the configuration explanation.
    - ConfigEnvVarError / ConfigValidationError: Configuration errors.

Instrumentation:
    - ConnectionStats: Per-connection counters.
    - PrintFormat / render_caption / render_row: Statistics table rendering.
    - HistorySink / InMemoryHistory / LoggingHistory: Operation history.

Errors:
    - S3ConnError: Base class of every s3conn error.
    - RetryableError: Base class of failures that may be retried.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("s3conn")

from s3conn._config import (
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    ConnectionConfig,
    S3Config,
    S3ConnConfig,
)
from s3conn._connection import Connection, TLSContextAdapter
from s3conn._context import ClientContext
from s3conn._dispatch import (
    InFlightRequest,
    RequestState,
    ResponseCallback,
    make_request,
)
from s3conn._errors import (
    ConnectionInitError,
    InvalidStateTransitionError,
    MalformedResponse,
    ProtocolError,
    RedirectExhausted,
    RetryableError,
    RetryExhausted,
    S3ConnError,
    SigningError,
    TransportFailure,
    UnsupportedMethod,
)
from s3conn._signing import (
    LegacySigner,
    Signer,
    SigningRequest,
    V4Signer,
    create_signer,
)
from s3conn._stats import (
    ConnectionStats,
    HistorySink,
    InMemoryHistory,
    LoggingHistory,
    PrintFormat,
    render_caption,
    render_row,
)
from s3conn._xml import (
    ElementTreeErrorBodyParser,
    ErrorBodyParser,
    extract_error_message,
    extract_redirect_endpoint,
)

__all__ = [
    "__version__",
    # Connection
    "Connection",
    "ClientContext",
    "TLSContextAdapter",
    # Dispatch
    "make_request",
    "RequestState",
    "InFlightRequest",
    "ResponseCallback",
    # Signing
    "Signer",
    "SigningRequest",
    "LegacySigner",
    "V4Signer",
    "create_signer",
    # Configuration
    "S3ConnConfig",
    "S3Config",
    "ConnectionConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    # Instrumentation
    "ConnectionStats",
    "PrintFormat",
    "render_caption",
    "render_row",
    "HistorySink",
    "InMemoryHistory",
    "LoggingHistory",
    # XML
    "ErrorBodyParser",
    "ElementTreeErrorBodyParser",
    "extract_error_message",
    "extract_redirect_endpoint",
    # Errors
    "S3ConnError",
    "ConnectionInitError",
    "RetryableError",
    "TransportFailure",
    "ProtocolError",
    "RedirectExhausted",
    "RetryExhausted",
    "UnsupportedMethod",
    "MalformedResponse",
    "SigningError",
    "InvalidStateTransitionError",
]
