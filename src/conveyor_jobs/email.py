"""Run-summary email delivery via SMTP.

Implementation rules enforced here:
- Never print
- Never read global config or environment (except Path.expanduser)
- Always return simple dicts
- Side effects: template file reads, SMTP calls only

Transport: smtplib against an already configured relay
Auth: optional username/password passed as parameters

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import jinja2
import yaml

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["template"],
    "writes": [],
    "external": ["smtp.send_message"],
}

DEFAULT_SUBJECT = "[{{ status }}] {{ pipeline_id }}{% if commit_sha %} @ {{ commit_sha[:7] }}{% endif %}"

DEFAULT_BODY = """\
Pipeline {{ pipeline_id }} finished: {{ status }}

Run:    {{ run_id }}
Commit: {{ commit_sha or "-" }}
Actor:  {{ actor or "-" }}
Took:   {{ "%.1f"|format(duration_s) }}s

{% for stage in stages -%}
- {{ stage.stage_id }}: {{ stage.status }}{% if stage.blocked_by %} (blocked by {{ stage.blocked_by }}){% endif %}{% if stage.error %} - {{ stage.error }}{% endif %}
{% endfor %}
{%- if warnings %}
Warnings:
{% for warning in warnings -%}
- {{ warning }}
{% endfor %}
{%- endif %}
"""


class TemplateFormatError(Exception):
    """Raised when a template file is malformed."""
    pass


def _load_template(template: str) -> Tuple[str, str, bool]:
    """Read a template file with YAML frontmatter.

    Template file format:
    ```
    ---
    subject: "[{{ status }}] {{ pipeline_id }}"
    ---
    Body content with {{ jinja }} {{ variables }}
    ```

    Returns:
        (subject_template, body_template, is_html)
    """
    template_path = Path(template).expanduser()
    if not template_path.exists():
        raise TemplateFormatError(f"Template not found: {template}")

    content = template_path.read_text()
    if not content.startswith("---"):
        raise TemplateFormatError("Template must have YAML frontmatter with subject")

    parts = content.split("---", 2)
    if len(parts) < 3:
        raise TemplateFormatError("Invalid template format: missing closing ---")

    frontmatter = yaml.safe_load(parts[1]) or {}
    is_html = frontmatter.get("html", template_path.suffix == ".html")
    return frontmatter.get("subject", DEFAULT_SUBJECT), parts[2].strip(), is_html


def render_summary(
    summary: Dict[str, Any],
    template: Optional[str] = None,
) -> Tuple[str, str, bool]:
    """Render subject and body for a run summary dict.

    Raises:
        TemplateFormatError: Template file missing or malformed
        jinja2.TemplateError: Template fails to render
    """
    if template:
        subject_src, body_src, is_html = _load_template(template)
    else:
        subject_src, body_src, is_html = DEFAULT_SUBJECT, DEFAULT_BODY, False

    env = jinja2.Environment(autoescape=is_html)
    subject = env.from_string(subject_src).render(**summary)
    body = env.from_string(body_src).render(**summary)
    return subject.strip(), body, is_html


def send(
    summary: Dict[str, Any],
    to: Union[str, List[str]],
    sender: str,
    smtp_host: str,
    smtp_port: int = 25,
    username: Optional[str] = None,
    password: Optional[str] = None,
    starttls: bool = False,
    template: Optional[str] = None,
    timeout_s: float = 30,
) -> Dict[str, Any]:
    """Render a run summary and send it to the recipients.

    Reads: template file (optional)
    External: SMTP relay

    Returns:
        {sent: bool, to: list, subject: str|None, error: str|None}
    """
    recipients = [to] if isinstance(to, str) else list(to)

    try:
        subject, body, is_html = render_summary(summary, template)
    except (TemplateFormatError, jinja2.TemplateError) as e:
        return {"sent": False, "to": recipients, "subject": None, "error": f"Template error: {e}"}

    if not recipients:
        return {"sent": False, "to": recipients, "subject": subject, "error": "No recipients"}

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = sender
    message["To"] = ", ".join(recipients)
    message.set_content(body, subtype="html" if is_html else "plain")

    try:
        with smtplib.SMTP(smtp_host, smtp_port, timeout=timeout_s) as smtp:
            if starttls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(message)
        return {"sent": True, "to": recipients, "subject": subject, "error": None}

    except (smtplib.SMTPException, OSError) as e:
        return {"sent": False, "to": recipients, "subject": subject, "error": str(e)}
