"""Tests for utility functions."""

import unittest
from unittest.mock import patch

import requests

from s3conn._errors import RetryExhausted, TransportFailure
from s3conn._utils import is_timeout_exception, sleep_with_jitter, url_escape


class TestSleepWithJitter(unittest.TestCase):
    """Tests for sleep_with_jitter()."""

    @patch("s3conn._utils.time.sleep")
    def test_sleep_time_within_jitter_range(self, mock_sleep):
        for _ in range(20):
            sleep_with_jitter(10.0)
        for call in mock_sleep.call_args_list:
            self.assertGreaterEqual(call.args[0], 9.0)
            self.assertLessEqual(call.args[0], 11.0)

    @patch("s3conn._utils.time.sleep")
    def test_zero_seconds_does_not_sleep(self, mock_sleep):
        sleep_with_jitter(0)
        mock_sleep.assert_not_called()

    @patch("s3conn._utils.time.sleep")
    @patch("s3conn._utils.random.uniform", return_value=0.0)
    def test_no_jitter(self, mock_uniform, mock_sleep):
        sleep_with_jitter(2.0)
        mock_sleep.assert_called_once_with(2.0)


class TestUrlEscape(unittest.TestCase):
    """Tests for url_escape()."""

    def test_spaces_are_encoded(self):
        self.assertEqual(url_escape("/dir/my file.txt"), "/dir/my%20file.txt")

    def test_subresource_is_kept(self):
        self.assertEqual(url_escape("/?acl"), "/?acl")

    def test_query_delimiters_are_kept(self):
        self.assertEqual(url_escape("/a.txt?partNumber=1&uploadId=x"), "/a.txt?partNumber=1&uploadId=x")

    def test_non_ascii_is_encoded(self):
        self.assertEqual(url_escape("/café"), "/caf%C3%A9")


class TestIsTimeoutException(unittest.TestCase):
    """Tests for is_timeout_exception()."""

    def test_requests_timeout(self):
        self.assertTrue(is_timeout_exception(requests.Timeout()))

    def test_builtin_timeout(self):
        self.assertTrue(is_timeout_exception(TimeoutError()))

    def test_wrapped_in_transport_failure(self):
        error = TransportFailure("read timed out", cause=requests.ReadTimeout())
        self.assertTrue(is_timeout_exception(error))

    def test_wrapped_in_retry_exhausted(self):
        error = RetryExhausted(5, TransportFailure("timeout", cause=requests.ConnectTimeout()))
        self.assertTrue(is_timeout_exception(error))

    def test_connection_error_is_not_timeout(self):
        self.assertFalse(is_timeout_exception(requests.ConnectionError()))

    def test_none(self):
        self.assertFalse(is_timeout_exception(None))


if __name__ == "__main__":
    unittest.main()
