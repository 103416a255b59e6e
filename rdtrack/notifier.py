"""Fire-and-forget email notifications for request events.

Configuration (env vars):
    NOTIFY_TO       Comma-separated default recipients (empty → events skipped)
    SMTP_HOST       SMTP host (unset → log-only mode)
    SMTP_PORT       SMTP port (default: 587)
    SMTP_USER       SMTP username
    SMTP_PASS       SMTP password
    SMTP_SECURE     "true" to connect with implicit TLS (SMTP_SSL)
    SMTP_FROM       From address (default: SMTP_USER)
    APP_BASE_URL    Used to build detail links in message bodies

:func:`notify_event` never raises: send failures are logged and swallowed so
a notification can never fail the mutation that triggered it.
"""
from __future__ import annotations

import logging
import os
import smtplib
from email.mime.text import MIMEText
from enum import StrEnum
from typing import Any

from rdtrack.utils import split_csv

log = logging.getLogger(__name__)


class EventType(StrEnum):
    REQUEST_CREATED = "REQUEST_CREATED"
    STAGE_TARGET_UPDATED = "STAGE_TARGET_UPDATED"


def is_configured() -> bool:
    return all(os.environ.get(k) for k in ("SMTP_HOST", "SMTP_USER", "SMTP_PASS"))


def detail_url(request_id: str | None) -> str | None:
    base = os.environ.get("APP_BASE_URL", "").rstrip("/")
    if not base or not request_id:
        return None
    return f"{base}/requests/{request_id}"


def send_mail(to: list[str], subject: str, text: str) -> bool:
    """Send a plain-text mail. Returns False (and logs) when SMTP is not configured."""
    if not is_configured():
        log.info("SMTP not configured, skipping email to=%s subject=%r", to, subject)
        return False
    host = os.environ["SMTP_HOST"]
    port = int(os.environ.get("SMTP_PORT", "587"))
    user = os.environ["SMTP_USER"]
    sender = os.environ.get("SMTP_FROM") or user

    msg = MIMEText(text, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = ", ".join(to)

    secure = os.environ.get("SMTP_SECURE", "").lower() == "true"
    smtp_cls = smtplib.SMTP_SSL if secure else smtplib.SMTP
    with smtp_cls(host, port, timeout=10) as server:
        if not secure:
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls()
                server.ehlo()
        server.login(user, os.environ["SMTP_PASS"])
        server.sendmail(sender, to, msg.as_string())
    return True


def subject_for(event_type: str, data: dict[str, Any]) -> str:
    ref = data.get("title") or data.get("id") or ""
    if event_type == EventType.REQUEST_CREATED:
        return f"[R&D request created] {ref}"
    if event_type == EventType.STAGE_TARGET_UPDATED:
        return f"[R&D target changed] {ref} ({data.get('stage') or ''})"
    return f"[Notice] {event_type}"


def body_for(event_type: str, data: dict[str, Any]) -> str:
    link = data.get("detail_url") or detail_url(data.get("id")) or "-"
    if event_type == EventType.REQUEST_CREATED:
        lines = [
            f"Title: {data.get('title')}",
            f"Created by: {data.get('created_by_name') or data.get('created_by_user_id') or '-'}",
            f"Product area: {data.get('product_area') or '-'}",
            f"Importance: {data.get('importance_flag') or '-'}",
            f"Customer deadline: {data.get('customer_deadline') or '-'}",
            f"Link: {link}",
        ]
    elif event_type == EventType.STAGE_TARGET_UPDATED:
        lines = [
            f"Request ID: {data.get('id')}",
            f"Title: {data.get('title')}",
            f"Stage: {data.get('stage')}",
            f"New target: {data.get('target_date')}",
            f"Previous target: {data.get('previous_target') or '-'}",
            f"Changed by: {data.get('changed_by_name') or data.get('changed_by_user_id') or '-'}",
            f"Link: {link}",
        ]
    else:
        lines = [f"{k}: {v}" for k, v in data.items()]
    return "\n".join(lines)


def notify_event(event_type: str, data: dict[str, Any], to: str | list[str] | None = None) -> bool:
    """Format and send an event notification. Returns True if a mail was sent."""
    recipients = split_csv(to if to else os.environ.get("NOTIFY_TO", ""))
    if not recipients:
        log.info("No notification recipients configured, skipping %s", event_type)
        return False
    try:
        return send_mail(recipients, subject_for(event_type, data), body_for(event_type, data))
    except Exception:
        log.exception("Failed to send %s notification", event_type)
        return False
