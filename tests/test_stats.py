"""Tests for connection statistics and operation history."""

import logging
import threading
import unittest
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

from s3conn._stats import (
    ConnectionStats,
    InMemoryHistory,
    LoggingHistory,
    PrintFormat,
    format_history_line,
    render_caption,
    render_row,
)

START = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)


def local_hms(ts: datetime) -> str:
    return ts.astimezone().strftime("%H:%M:%S")


class TestConnectionStats(unittest.TestCase):
    """Tests for ConnectionStats."""

    def test_defaults(self):
        stats = ConnectionStats()
        self.assertEqual((stats.jobs, stats.connects, stats.errors), (0, 0, 0))
        self.assertEqual((stats.bytes_out, stats.bytes_in), (0, 0))
        self.assertIsNone(stats.last_command)

    def test_elapsed_seconds(self):
        stats = ConnectionStats(time_start=START, time_stop=START + timedelta(seconds=3, milliseconds=700))
        self.assertEqual(stats.elapsed_seconds(), 3)

    def test_elapsed_seconds_unknown(self):
        self.assertEqual(ConnectionStats(time_start=START).elapsed_seconds(), 0)

    def test_started_at(self):
        self.assertEqual(ConnectionStats(time_start=START).started_at(), local_hms(START))
        self.assertEqual(ConnectionStats().started_at(), "")


class TestHistoryLine(unittest.TestCase):
    """Tests for format_history_line()."""

    def test_line_layout(self):
        stats = ConnectionStats(
            last_code=206,
            time_start=START,
            time_stop=START + timedelta(seconds=2),
        )
        line = format_history_line("7f01", stats, "GET", "http://photos.s3.amazonaws.com/a.txt", "bytes=0-9", 0, 10)

        self.assertEqual(
            line,
            f"[7f01] {local_hms(START)} (2 sec) GET http://photos.s3.amazonaws.com/a.txt bytes=0-9   "
            "HTTP Code: 206 (Sent: 0 Received: 10 bytes)",
        )

    def test_line_without_range(self):
        stats = ConnectionStats(last_code=500, time_start=START, time_stop=START)
        line = format_history_line("7f01", stats, "PUT", "http://h/a", None, 5, 0)
        self.assertIn("PUT http://h/a    HTTP Code: 500 (Sent: 5 Received: 0 bytes)", line)

    def test_url_argument_wins_over_stats(self):
        """Should print the URL it is given, whatever the stats last recorded."""
        stats = ConnectionStats(last_url="http://old/a", last_code=200, time_start=START, time_stop=START)
        line = format_history_line("7f01", stats, "GET", "http://new/a", None, 0, 0)
        self.assertIn("GET http://new/a ", line)
        self.assertNotIn("http://old/a", line)


class TestTableRendering(unittest.TestCase):
    """Tests for render_caption() and render_row()."""

    def _connection(self, acquired: bool) -> MagicMock:
        connection = MagicMock()
        connection.tag = "7f01"
        connection.is_acquired = acquired
        connection.stats = ConnectionStats(
            jobs=4,
            errors=1,
            connects=2,
            bytes_out=120,
            bytes_in=3400,
            last_command="GET",
            last_url="http://h/a",
            last_code=200,
            time_start=START,
            time_stop=START + timedelta(seconds=1),
        )
        return connection

    def test_plain_caption(self):
        caption = render_caption(PrintFormat.plain())
        self.assertTrue(caption.startswith("ID | Current state | Last CMD | Last URL | Last Code"))
        self.assertTrue(caption.endswith("Total Out | Total In\n"))

    def test_plain_row(self):
        row = render_row(self._connection(acquired=True), PrintFormat.plain())
        self.assertEqual(
            row,
            f"7f01 | Busy | GET | http://h/a | 200 | {local_hms(START)} (1 sec) | 4 (1) | 2 | ~ 120 b | ~ 3400 b\n",
        )

    def test_idle_row(self):
        row = render_row(self._connection(acquired=False), PrintFormat.plain())
        self.assertIn("| Idle |", row)

    def test_html_row(self):
        row = render_row(self._connection(acquired=False), PrintFormat.html())
        self.assertTrue(row.startswith("<tr><td>7f01</td><td> Idle"))
        self.assertTrue(row.endswith("</td></tr>\n"))

    def test_row_for_unused_connection(self):
        connection = MagicMock()
        connection.tag = "1"
        connection.is_acquired = False
        connection.stats = ConnectionStats()
        row = render_row(connection, PrintFormat.plain())
        self.assertEqual(row, "1 | Idle | - | - | 0 |  (0 sec) | 0 (0) | 0 | ~ 0 b | ~ 0 b\n")


class TestInMemoryHistory(unittest.TestCase):
    """Tests for InMemoryHistory."""

    def test_keeps_most_recent_lines(self):
        history = InMemoryHistory(max_lines=2)
        for line in ("a", "b", "c"):
            history.append(line)
        self.assertEqual(history.lines(), ["b", "c"])
        self.assertEqual(len(history), 2)

    def test_invalid_max_lines(self):
        with self.assertRaises(AssertionError):
            InMemoryHistory(max_lines=0)

    def test_concurrent_appends(self):
        history = InMemoryHistory(max_lines=1000)

        def worker():
            for i in range(100):
                history.append(str(i))

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(history), 500)


class TestLoggingHistory(unittest.TestCase):
    """Tests for LoggingHistory."""

    def test_default_logger(self):
        with self.assertLogs("s3conn.history", level=logging.INFO) as logs:
            LoggingHistory().append("[7f01] line")
        self.assertIn("[7f01] line", logs.output[0])

    def test_custom_logger(self):
        target = MagicMock()
        LoggingHistory(target=target).append("line")
        target.info.assert_called_once_with("line")


if __name__ == "__main__":
    unittest.main()
