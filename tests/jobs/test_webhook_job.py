# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for conveyor_jobs.webhook."""

from unittest.mock import MagicMock, patch

import requests

from conveyor_jobs.webhook import post


def response(status_code, text=""):
    mock = MagicMock()
    mock.status_code = status_code
    mock.text = text
    return mock


class TestPost:
    """JSON POST of a run summary."""

    def test_sent(self):
        with patch("conveyor_jobs.webhook.requests.post", return_value=response(204)) as mock_post:
            result = post("https://hooks.example.com/ci", {"status": "Succeeded"}, headers={"X-Token": "t"})

        assert result == {"sent": True, "status_code": 204, "error": None}
        mock_post.assert_called_once_with(
            "https://hooks.example.com/ci",
            json={"status": "Succeeded"},
            headers={"X-Token": "t"},
            timeout=10,
        )

    def test_http_error_status(self):
        with patch("conveyor_jobs.webhook.requests.post", return_value=response(502, "bad gateway")):
            result = post("https://hooks", {})
        assert result["sent"] is False
        assert result["status_code"] == 502
        assert result["error"] == "Webhook returned HTTP 502: bad gateway"

    def test_transport_error(self):
        with patch("conveyor_jobs.webhook.requests.post", side_effect=requests.Timeout("timed out")):
            result = post("https://hooks", {}, timeout_s=1)
        assert result == {"sent": False, "status_code": None, "error": "timed out"}
