"""
Connection lifecycle for the s3conn engine.

A Connection is one logical transport slot handed out by a pool. It owns a
``requests.Session`` bound to the configured endpoint (rebuilt on first use,
on redirect and whenever the pool asks for it), the headers staged for the
next request, the per-connection counters, and a single-worker executor that
serialises every request, completion and callback of the slot.

Pool contract:
    - is_ready(): True when not acquired.
    - set_on_released(callback, context): pool notification on release.
    - acquire() / release(): exclusive use of the slot.

Example:
    >>> context = ClientContext(S3ConnConfig().with_env_vars().validate())
    >>> connection = Connection.create(context)
    >>> connection.acquire()
    >>> connection.add_output_header("Content-Type", "text/plain")
    >>> future = connection.make_request("/hello.txt", "PUT", b"hi", True, on_done)
    >>> future.result()
    True
    >>> connection.release()
"""

from __future__ import annotations

import logging
import ssl
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import requests
from requests.adapters import DEFAULT_POOLBLOCK, HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.util.retry import Retry

from s3conn._dispatch import ResponseCallback, make_request as dispatch_request
from s3conn._errors import ConnectionInitError
from s3conn._stats import ConnectionStats

if TYPE_CHECKING:
    from s3conn._context import ClientContext

logger = logging.getLogger(__name__)

ReleasedCallback = Callable[["Connection", Any], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TLSContextAdapter(HTTPAdapter):
    """
    HTTPAdapter that builds its TLS sessions from a shared ``ssl.SSLContext``.

    Args:
        ssl_context: Context every HTTPS connection of the adapter is wrapped with.
        **kwargs: Forwarded to HTTPAdapter (max_retries, pool sizes).
    """

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs: Any):
        # init_poolmanager() runs inside HTTPAdapter.__init__
        self._ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, connections: int, maxsize: int, block: bool = DEFAULT_POOLBLOCK, **pool_kwargs: Any) -> None:
        pool_kwargs["ssl_context"] = self._ssl_context
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


class Connection:
    """
    One physical connection to the storage service.

    Prefer `Connection.create()`, which performs the initial transport setup.

    Attributes:
        context: Borrowed application handle (config, TLS context, history).
        stats: Counters rendered by the statistics surface.
        clock: Time source of request timestamps (UTC).

    Args:
        context: The shared ClientContext.
        clock: Time source; defaults to the system clock in UTC.
        executor: Executor running this slot's requests. Must run one task at
            a time; defaults to a private single-worker thread pool.
    """

    def __init__(
        self,
        context: ClientContext,
        clock: Callable[[], datetime] | None = None,
        executor: ThreadPoolExecutor | None = None,
    ):
        assert context is not None, "context cannot be None"

        self.context = context
        self.clock: Callable[[], datetime] = clock if clock is not None else _utcnow
        self.stats = ConnectionStats()
        self.tag = f"{id(self):x}"

        self._session: requests.Session | None = None
        self._timeout: int = context.config.connection.timeout
        self._output_headers: CaseInsensitiveDict[str] = CaseInsensitiveDict()
        self._is_acquired = False
        self._on_released: ReleasedCallback | None = None
        self._pool_ctx: Any = None
        if executor is None:
            executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"s3conn-{self.tag}")
        self._executor = executor
        # TLS setting the current transport was built for
        self._transport_ssl: bool | None = None

    # ======================
    # Create / destroy
    # ======================

    @classmethod
    def create(
        cls,
        context: ClientContext,
        clock: Callable[[], datetime] | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> Connection:
        """
        Create a connection and set up its transport.

        Raises:
            ConnectionInitError: If the transport cannot be created.
        """
        connection = cls(context, clock=clock, executor=executor)
        try:
            connection.init()
        except ConnectionInitError:
            connection._executor.shutdown(wait=False)
            logger.error(f"{connection.tag} | Con | ❌ Failed to create connection!")
            raise
        return connection

    def init(self) -> None:
        """
        (Re)build the transport for the configured endpoint.

        The previous transport, if any, is closed first. HTTPS transports use
        the context's shared TLS context.

        Raises:
            ConnectionInitError: If the TLS layer or the transport cannot be created.
        """
        config = self.context.config
        s3 = config.s3
        logger.debug(f"{self.tag} | Con | Connecting to {s3.host}:{s3.port}")

        self.stats.connects += 1

        if self._session is not None:
            self._session.close()
            self._session = None

        transport_retries = Retry(
            total=config.connection.retries,
            connect=config.connection.retries,
            read=0,
            redirect=0,
            status=0,
            raise_on_status=False,
        )

        try:
            if s3.ssl:
                adapter: HTTPAdapter = TLSContextAdapter(
                    ssl_context=self.context.ssl_context,
                    max_retries=transport_retries,
                    pool_connections=1,
                    pool_maxsize=1,
                )
            else:
                adapter = HTTPAdapter(
                    max_retries=transport_retries,
                    pool_connections=1,
                    pool_maxsize=1,
                )
        except (ssl.SSLError, OSError, ValueError) as e:
            logger.error(f"{self.tag} | Con | ❌ Failed to create SSL connection: {e}")
            raise ConnectionInitError(f"Failed to create SSL connection: {e}", cause=e) from e

        session = requests.Session()
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        session.hooks["response"].append(self._on_response)

        self._session = session
        self._timeout = config.connection.timeout
        self._transport_ssl = s3.ssl

    def destroy(self) -> None:
        """Close the transport and stop the worker (waits for a running request)."""
        self._executor.shutdown(wait=True)
        if self._session is not None:
            self._session.close()
            self._session = None
        self._output_headers.clear()
        logger.debug(f"{self.tag} | Con | Connection destroyed.")

    # ======================
    # Pool contract
    # ======================

    def set_on_released(self, callback: ReleasedCallback | None, context: Any = None) -> None:
        """Register the pool notification invoked on every release."""
        self._on_released = callback
        self._pool_ctx = context

    def is_ready(self) -> bool:
        """Return True if the connection is not acquired."""
        return not self._is_acquired

    @property
    def is_acquired(self) -> bool:
        return self._is_acquired

    def acquire(self) -> bool:
        """Mark the connection busy. The caller holds it until release()."""
        self._is_acquired = True
        logger.debug(f"{self.tag} | Con | Connection object is acquired!")
        return True

    def release(self) -> bool:
        """Mark the connection idle and notify the pool."""
        self._is_acquired = False
        logger.debug(f"{self.tag} | Con | Connection object is released!")

        if self._on_released:
            self._on_released(self, self._pool_ctx)
        return True

    # ======================
    # Transport
    # ======================

    @property
    def has_transport(self) -> bool:
        return self._session is not None

    @property
    def is_transport_stale(self) -> bool:
        """
        True when the shared endpoint changed TLS setting since the transport was built.

        Another connection of the same context may have followed a redirect
        from http to https (or back); the transport must then be rebuilt.
        """
        return self._session is not None and self._transport_ssl != self.context.config.s3.ssl

    def on_close(self) -> None:
        """
        Close notification of the transport.

        Only logs: in-flight bookkeeping is left untouched and a broken
        attempt surfaces through the transport timeout or error.
        """
        logger.debug(f"{self.tag} | Con | Connection closed !")

    def _on_response(self, response: requests.Response, *args: Any, **kwargs: Any) -> requests.Response:
        if response.headers.get("Connection", "").lower() == "close":
            self.on_close()
        return response

    def send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> requests.Response:
        """
        Put one request on the wire.

        Raises:
            ConnectionInitError: If the connection has no transport.
            requests.RequestException: If no response was received.
        """
        if self._session is None:
            raise ConnectionInitError("Connection has no transport")

        return self._session.request(
            method,
            url,
            data=body or None,
            headers=dict(headers),
            timeout=self._timeout,
            allow_redirects=False,
        )

    # ======================
    # Requests
    # ======================

    def add_output_header(self, key: str, value: str) -> None:
        """Stage a header for the next request (replaces a staged header with the same name)."""
        self._output_headers[key] = value

    def take_output_headers(self) -> CaseInsensitiveDict[str]:
        """Return the staged headers sorted by key and clear them."""
        staged = CaseInsensitiveDict(sorted(self._output_headers.items(), key=lambda item: item[0]))
        self._output_headers.clear()
        return staged

    def submit(self, task: Callable[[], None]) -> Future[None]:
        """
        Run ``task`` on this connection's worker.

        Raises:
            RuntimeError: If the connection was destroyed.
        """
        return self._executor.submit(task)

    def make_request(
        self,
        resource_path: str,
        method: str,
        body: bytes | None = None,
        enable_retry: bool = True,
        callback: ResponseCallback | None = None,
        context: Any = None,
    ) -> Future[bool]:
        """
        Issue a logical request; see `s3conn._dispatch.make_request`.

        Returns:
            Future resolved with the success flag once the callback ran.
        """
        return dispatch_request(
            self,
            resource_path=resource_path,
            method=method,
            body=body,
            enable_retry=enable_retry,
            callback=callback,
            context=context,
        )

    def __repr__(self) -> str:
        state = "Busy" if self._is_acquired else "Idle"
        return f"Connection(tag={self.tag}, state={state}, host={self.context.config.s3.host!r})"
