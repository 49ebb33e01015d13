"""
Per-connection usage counters and operation history.

Available pieces:
    - ConnectionStats: Mutable counters owned by one Connection.
    - PrintFormat: Delimiters of the tabular text layout (supplied by the
      statistics surface that renders the table).
    - render_caption / render_row: Tabular text rendering.
    - HistorySink: Append-only sink receiving one line per completed attempt.
    - InMemoryHistory: Bounded in-memory sink.
    - LoggingHistory: Sink forwarding lines to a logger.

Example:
    >>> history = InMemoryHistory(max_lines=100)
    >>> context = ClientContext(config, history=history)
    >>> ...
    >>> print(render_caption(PrintFormat.plain()))
    >>> print(render_row(connection, PrintFormat.plain()))
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from typing_extensions import override

if TYPE_CHECKING:
    from s3conn._connection import Connection


@dataclass
class ConnectionStats:
    """
    Counters of one connection.

    Attributes:
        jobs: Requests put on the wire (every attempt counts).
        connects: Transport (re)initialisations.
        errors: Failed attempts (transport failures, HTTP errors, redirect overflow).
        bytes_out: Header key/value bytes plus body bytes sent.
        bytes_in: Header key/value bytes plus body bytes received.
        last_command: Method of the last request, None when idle since creation.
        last_url: URL of the last request.
        last_code: Response code of the last completed attempt (500 when no response).
        time_start: Start of the last attempt.
        time_stop: Completion of the last attempt.
    """

    jobs: int = 0
    connects: int = 0
    errors: int = 0
    bytes_out: int = 0
    bytes_in: int = 0
    last_command: str | None = None
    last_url: str | None = None
    last_code: int = 0
    time_start: datetime | None = None
    time_stop: datetime | None = None

    def elapsed_seconds(self) -> int:
        """Whole seconds between start and stop of the last attempt (0 when unknown)."""
        if self.time_start and self.time_stop and self.time_start < self.time_stop:
            return int((self.time_stop - self.time_start).total_seconds())
        return 0

    def started_at(self) -> str:
        """Local wall-clock time of the last start as ``HH:MM:SS`` (empty when unknown)."""
        if not self.time_start:
            return ""
        return self.time_start.astimezone().strftime("%H:%M:%S")


@dataclass(frozen=True)
class PrintFormat:
    """
    Delimiters of the statistics table.

    The statistics surface owns the layout (plain text, HTML, ...); the
    connection only fills the cells.
    """

    caption_start: str
    caption_end: str
    caption_col_div: str
    row_start: str
    row_end: str
    col_div: str

    @classmethod
    def plain(cls) -> PrintFormat:
        return cls(
            caption_start="",
            caption_end="\n",
            caption_col_div=" |",
            row_start="",
            row_end="\n",
            col_div=" |",
        )

    @classmethod
    def html(cls) -> PrintFormat:
        return cls(
            caption_start="<tr><th>",
            caption_end="</th></tr>\n",
            caption_col_div="</th><th>",
            row_start="<tr><td>",
            row_end="</td></tr>\n",
            col_div="</td><td>",
        )


_CAPTIONS = (
    "ID",
    "Current state",
    "Last CMD",
    "Last URL",
    "Last Code",
    "Time started (Response sec)",
    "Jobs (Errors)",
    "Connects Nr",
    "Total Out",
    "Total In",
)


def render_caption(print_format: PrintFormat) -> str:
    """Render the table caption."""
    return print_format.caption_start + f"{print_format.caption_col_div} ".join(_CAPTIONS) + print_format.caption_end


def render_row(connection: Connection, print_format: PrintFormat) -> str:
    """Render one table row for ``connection``."""
    stats = connection.stats
    cells = (
        connection.tag,
        "Busy" if connection.is_acquired else "Idle",
        stats.last_command or "-",
        stats.last_url or "-",
        str(stats.last_code),
        f"{stats.started_at()} ({stats.elapsed_seconds()} sec)",
        f"{stats.jobs} ({stats.errors})",
        str(stats.connects),
        f"~ {stats.bytes_out} b",
        f"~ {stats.bytes_in} b",
    )
    return print_format.row_start + f"{print_format.col_div} ".join(cells) + print_format.row_end


def format_history_line(
    tag: str,
    stats: ConnectionStats,
    method: str,
    url: str,
    range_header: str | None,
    bytes_sent: int,
    bytes_received: int,
) -> str:
    """
    Format the history line of one completed attempt.

    Timing and response code come from ``stats``; the request fields are
    passed explicitly.

    Example:
        >>> format_history_line("7f01", stats, "GET", "http://bucket.s3.amazonaws.com/a.txt", "bytes=0-9", 0, 10)
        '[7f01] 10:42:01 (0 sec) GET http://bucket.s3.amazonaws.com/a.txt bytes=0-9   HTTP Code: 206 (Sent: 0 Received: 10 bytes)'
    """
    return (
        f"[{tag}] {stats.started_at()} ({stats.elapsed_seconds()} sec) "
        f"{method} {url} {range_header or ''}   "
        f"HTTP Code: {stats.last_code} (Sent: {bytes_sent} Received: {bytes_received} bytes)"
    )


# =============================================================================
# History sinks
# =============================================================================


class HistorySink(ABC):
    """Append-only sink of operation history lines."""

    @abstractmethod
    def append(self, line: str) -> None:
        pass


class InMemoryHistory(HistorySink):
    """
    Keeps the most recent ``max_lines`` history lines.

    Thread-safe: connections of one pool share the sink.
    """

    def __init__(self, max_lines: int = 1000):
        assert max_lines > 0, "max_lines must be greater than 0"
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._lock = threading.Lock()

    @override
    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class LoggingHistory(HistorySink):
    """Forwards each history line to a logger at INFO level."""

    def __init__(self, target: logging.Logger | None = None):
        self._logger = target or logging.getLogger("s3conn.history")

    @override
    def append(self, line: str) -> None:
        self._logger.info(line)
