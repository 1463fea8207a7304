# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Tests for conveyor_jobs.email."""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from conveyor_jobs.email import TemplateFormatError, _load_template, render_summary, send

SUMMARY = {
    "run_id": "run-1",
    "pipeline_id": "ship-web",
    "status": "Failed",
    "commit_sha": "abc1234def",
    "actor": "octocat",
    "duration_s": 12.34,
    "stages": [
        {"stage_id": "quality", "status": "Failed", "attempts": 1, "error": "Quality gate ERROR", "blocked_by": None},
        {"stage_id": "build", "status": "Skipped", "attempts": 0, "error": None, "blocked_by": "quality"},
    ],
    "warnings": [],
}


class TestRenderSummary:
    """Default and file templates."""

    def test_default_template(self):
        subject, body, is_html = render_summary(SUMMARY)
        assert subject == "[Failed] ship-web @ abc1234"
        assert is_html is False
        assert "Took:   12.3s" in body
        assert "- quality: Failed - Quality gate ERROR" in body
        assert "- build: Skipped (blocked by quality)" in body
        assert "Warnings" not in body

    def test_warnings_rendered(self):
        _, body, _ = render_summary({**SUMMARY, "warnings": ["advisory scan failed"]})
        assert "- advisory scan failed" in body

    def test_template_file(self, tmp_path):
        template = tmp_path / "run.md"
        template.write_text("---\nsubject: \"{{ pipeline_id }} is {{ status }}\"\n---\nRun {{ run_id }}\n")
        subject, body, is_html = render_summary(SUMMARY, str(template))
        assert subject == "ship-web is Failed"
        assert body == "Run run-1"
        assert is_html is False

    def test_html_template_escapes(self, tmp_path):
        template = tmp_path / "run.html"
        template.write_text("---\nsubject: s\n---\n<p>{{ actor }}</p>\n")
        _, body, is_html = render_summary({**SUMMARY, "actor": "<bot>"}, str(template))
        assert is_html is True
        assert body == "<p>&lt;bot&gt;</p>"

    def test_template_without_frontmatter(self, tmp_path):
        template = tmp_path / "plain.txt"
        template.write_text("no frontmatter")
        with pytest.raises(TemplateFormatError, match="frontmatter"):
            _load_template(str(template))

    def test_missing_template(self, tmp_path):
        with pytest.raises(TemplateFormatError, match="Template not found"):
            _load_template(str(tmp_path / "none.md"))


class TestSend:
    """SMTP delivery."""

    def test_send(self):
        smtp = MagicMock()
        with patch("conveyor_jobs.email.smtplib.SMTP") as mock_smtp:
            mock_smtp.return_value.__enter__.return_value = smtp
            result = send(SUMMARY, "ops@example.com", "ci@example.com", "smtp.example.com",
                          smtp_port=587, username="ci", password="pw", starttls=True)

        assert result == {"sent": True, "to": ["ops@example.com"], "subject": "[Failed] ship-web @ abc1234",
                          "error": None}
        mock_smtp.assert_called_once_with("smtp.example.com", 587, timeout=30)
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("ci", "pw")
        message = smtp.send_message.call_args.args[0]
        assert message["To"] == "ops@example.com"
        assert message["From"] == "ci@example.com"

    def test_smtp_failure(self):
        with patch("conveyor_jobs.email.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "busy")):
            result = send(SUMMARY, ["a@example.com", "b@example.com"], "ci@example.com", "smtp")
        assert result["sent"] is False
        assert result["to"] == ["a@example.com", "b@example.com"]
        assert "busy" in result["error"]

    def test_no_recipients(self):
        result = send(SUMMARY, [], "ci@example.com", "smtp")
        assert result["error"] == "No recipients"

    def test_template_error(self, tmp_path):
        result = send(SUMMARY, "a@example.com", "ci@example.com", "smtp", template=str(tmp_path / "none.md"))
        assert result["sent"] is False
        assert result["error"].startswith("Template error")
