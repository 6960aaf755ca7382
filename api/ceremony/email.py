"""Outbound mail for ceremony notifications.

``build_message`` assembles the MIME message; ``send_email`` hands it to the
configured SMTP relay. Without credentials nothing leaves the process and the
skipped delivery is logged instead.
"""
import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import List, Optional

from .config import (
    EMAIL_SENDER, EMAIL_SENDER_NAME, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT,
    SMTP_STARTTLS, SMTP_TIMEOUT, SMTP_USER,
)

logger = logging.getLogger(__name__)


def format_sender_name(requester_name: Optional[str] = None) -> str:
    """Display name such as "Riley Agent via Envelope Signing"."""
    service = (EMAIL_SENDER_NAME or "").strip() or "Envelope Signing"
    requester = (requester_name or "").strip()
    return f"{requester} via {service}" if requester else service


def build_message(
    to: str,
    subject: str,
    body: str,
    html_body: Optional[str] = None,
    attachments: Optional[List[dict]] = None,
    sender_name: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = formataddr((sender_name or format_sender_name(), EMAIL_SENDER))
    msg["To"] = to
    msg["Subject"] = subject
    if reply_to:
        msg["Reply-To"] = reply_to
    msg.set_content(body or "")
    if html_body:
        msg.add_alternative(html_body, subtype="html")
    for attachment in attachments or []:
        content = attachment.get("content")
        if content is None:
            continue
        msg.add_attachment(
            content,
            maintype=attachment.get("maintype", "application"),
            subtype=attachment.get("subtype", "octet-stream"),
            filename=attachment.get("filename") or "attachment",
        )
    return msg


def delivery_enabled() -> bool:
    return bool(SMTP_USER and SMTP_PASSWORD)


def send_email(
    to: str,
    subject: str,
    body: str,
    html_body: Optional[str] = None,
    attachments: Optional[List[dict]] = None,
    sender_name: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> bool:
    """Send one message. Returns False when delivery is disabled; SMTP errors propagate."""
    msg = build_message(to, subject, body, html_body, attachments, sender_name, reply_to)
    if not delivery_enabled():
        logger.info("mail delivery disabled; skipped %r to %s (%d attachment(s))",
                    subject, to, len(attachments or []))
        return False
    with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=SMTP_TIMEOUT) as smtp:
        if SMTP_STARTTLS:
            smtp.starttls()
        smtp.login(SMTP_USER, SMTP_PASSWORD)
        smtp.send_message(msg)
    logger.info("mail %r sent to %s", subject, to)
    return True
