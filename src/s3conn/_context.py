"""
Shared handle of the connections of one pool.

A ClientContext is created once by the application and borrowed by every
Connection it creates. It holds what the connections share:

- the current configuration snapshot (replaced, never mutated, when a
  redirect moves the bucket to another endpoint);
- the TLS context from which every HTTPS transport is built;
- the history sink receiving one line per completed attempt;
- the error-body parser used during response handling.

Example:
    >>> from s3conn import ClientContext, Connection, S3ConnConfig
    >>> config = S3ConnConfig().with_env_vars().validate()
    >>> context = ClientContext(config)
    >>> connection = Connection.create(context)
"""

from __future__ import annotations

import logging
import ssl
import threading

from s3conn._config import ConfigValidationError, S3ConnConfig
from s3conn._stats import HistorySink, LoggingHistory
from s3conn._xml import ElementTreeErrorBodyParser, ErrorBodyParser

logger = logging.getLogger(__name__)


class ClientContext:
    """
    Explicitly passed application handle.

    Args:
        config: Initial configuration snapshot.
        ssl_context: TLS context shared by all HTTPS transports.
            If None, a default verifying context is created on first use.
        history: Sink for operation history lines. If None, lines are logged.
        error_parser: Error-body parser. If None, ElementTree is used.
    """

    def __init__(
        self,
        config: S3ConnConfig,
        ssl_context: ssl.SSLContext | None = None,
        history: HistorySink | None = None,
        error_parser: ErrorBodyParser | None = None,
    ):
        assert config is not None, "config cannot be None"

        self._config = config
        self._ssl_context = ssl_context
        self.history: HistorySink = history if history is not None else LoggingHistory()
        self.error_parser: ErrorBodyParser = error_parser if error_parser is not None else ElementTreeErrorBodyParser()
        self._lock = threading.Lock()

    @property
    def config(self) -> S3ConnConfig:
        """Current configuration snapshot (read-only)."""
        with self._lock:
            return self._config

    @property
    def ssl_context(self) -> ssl.SSLContext:
        """
        TLS context shared by the HTTPS transports.

        Raises:
            ssl.SSLError: If the default context cannot be created.
        """
        with self._lock:
            if self._ssl_context is None:
                self._ssl_context = ssl.create_default_context()
            return self._ssl_context

    def set_url(self, url: str) -> bool:
        """
        Point every connection of this context at a new endpoint.

        Args:
            url: Full URL (``Location`` header) or bare host (``/Error/Endpoint``).

        Returns:
            True if the endpoint was applied, False if it could not be parsed.
        """
        with self._lock:
            try:
                self._config = self._config.with_endpoint(url)
            except ConfigValidationError as e:
                logger.error(f"Failed to apply redirect endpoint '{url}': {e}")
                return False

            s3 = self._config.s3
            logger.debug(f"Endpoint changed to {s3.scheme}://{s3.host}:{s3.port}")
            return True
