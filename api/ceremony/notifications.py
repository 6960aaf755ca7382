"""Outbound notifications.

Fire-and-forget from the ceremony's point of view: transport failures are
logged and reported as ``False``, never raised into the caller's transaction.
"""
import logging
from html import escape
from . import email

logger = logging.getLogger(__name__)

_CARD = """
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 520px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px; box-shadow: 0 10px 25px rgba(15,23,42,0.08);">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">{title}</h2>
      {content}
    </div>
  </body>
</html>
"""

def _paragraph(text: str, size: int = 14, color: str = "#1e293b") -> str:
    return f'<p style="font-size: {size}px; color: {color}; line-height: 1.5;">{escape(text)}</p>'

def _deliver(to: str, subject: str, text_body: str, html_body: str, **kwargs) -> bool:
    try:
        email.send_email(to, subject, text_body, html_body=html_body, **kwargs)
    except Exception:
        logger.exception("notification to %s failed (%s)", to, subject)
        return False
    return True

def notify_signer(signer, envelope, signing_url: str, reminder: bool = False) -> bool:
    if signer.notification_channel != "email":
        logger.warning(
            "signer %s prefers %s; no transport configured, falling back to email",
            signer.id, signer.notification_channel,
        )
    requester_name = envelope.requester_name or "Your contact"
    intro = envelope.message or f"{requester_name} invited you to review and sign this document."
    prefix = "Reminder" if reminder else "Signature Requested"
    subject = f"{prefix}: {(envelope.subject or '').strip() or 'Document'}"
    text_body = f"""{requester_name} sent you a document to review and sign.

{intro}

Open document: {signing_url}
"""
    link_html = escape(signing_url)
    content = (
        _paragraph(f"{requester_name} sent you a document to review and sign.")
        + _paragraph(intro)
        + f"""<div style="margin: 24px 0;">
        <a href="{link_html}" style="display: inline-block; background: #2563eb; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">
          Review &amp; Sign
        </a>
      </div>
      <p style="font-size: 12px; color: #64748b;">If the button doesn&apos;t work, copy this link into your browser:<br /><a href="{link_html}">{link_html}</a></p>"""
    )
    html_body = _CARD.format(title=escape(prefix), content=content)
    return _deliver(
        signer.email,
        subject,
        text_body,
        html_body,
        sender_name=email.format_sender_name(envelope.requester_name),
        reply_to=envelope.requester_email,
    )

def notify_comment(comment, signer, envelope) -> bool:
    if not envelope.requester_email:
        logger.info("envelope %s has no requester email; comment %s not forwarded", envelope.id, comment.id)
        return False
    subject = f"New comment on: {envelope.subject}"
    text_body = f"{signer.name} <{signer.email}> commented:\n\n{comment.body}\n"
    html_body = _CARD.format(
        title="New comment",
        content=_paragraph(f"{signer.name} commented:", 13, "#475569") + _paragraph(comment.body),
    )
    return _deliver(envelope.requester_email, subject, text_body, html_body, reply_to=signer.email)

def notify_completed(envelope, signers, sealed_pdf: bytes, sealed_hash: str) -> int:
    subject = f"Completed: {envelope.subject}"
    sha_line = f"Final SHA256: {sealed_hash}"
    text_body = (
        f"All parties have finished signing {envelope.subject}.\n\n"
        f"{sha_line}\n\nA copy of the executed PDF is attached for your records."
    )
    html_body = _CARD.format(
        title="Completed",
        content=(
            _paragraph(f"All parties have finished signing {envelope.subject}.")
            + _paragraph(sha_line, 13, "#475569")
            + _paragraph("A copy of the executed PDF is attached for your records.", 13, "#475569")
        ),
    )
    attachments = [{
        "filename": f"{envelope.subject or 'envelope'} - executed.pdf",
        "content": sealed_pdf,
        "maintype": "application",
        "subtype": "pdf",
    }]
    delivered = 0
    recipients = {s.email for s in signers if s.status != "delegated"}
    if envelope.requester_email:
        recipients.add(envelope.requester_email)
    for to in sorted(recipients):
        if _deliver(
            to,
            subject,
            text_body,
            html_body,
            attachments=attachments,
            sender_name=email.format_sender_name(envelope.requester_name),
            reply_to=envelope.requester_email,
        ):
            delivered += 1
    return delivered
