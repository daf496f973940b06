from __future__ import annotations

import base64
import html
from email import policy
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Optional

from .encoding import clean_content_for_utf8


def create_multipart_email(
    *,
    to: str,
    subject: str,
    html_content: str,
    plain_text_content: str,
    sender: Optional[str] = None,
    message_id: Optional[str] = None,
    in_reply_to: Optional[str] = None,
    references: Optional[str] = None,
) -> EmailMessage:
    """multipart/alternative mit Klartext zuerst und HTML als bevorzugter Variante."""
    msg = EmailMessage()
    msg["To"] = to
    if sender:
        msg["From"] = sender
    # Der Header wird beim Serialisieren als RFC-2047-Encoded-Word geschrieben.
    msg["Subject"] = subject or ""
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = message_id or make_msgid(domain="handwerkos.local")
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references

    msg.set_content(clean_content_for_utf8(plain_text_content), subtype="plain", charset="utf-8")
    msg.add_alternative(clean_content_for_utf8(html_content), subtype="html", charset="utf-8")
    return msg


def encode_gmail_raw(message: EmailMessage) -> str:
    """base64url ohne Padding, wie vom Gmail-API-Feld ``raw`` erwartet."""
    raw = message.as_bytes(policy=policy.SMTP)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def reply_html(
    *,
    reply_content: str,
    sender_name: str,
    original_subject: str,
    original_sender: str,
    company_name: str = "HandwerkOS",
) -> str:
    body = html.escape(reply_content or "").replace("\n", "<br>")
    return (
        '<!DOCTYPE html>\n<html lang="de">\n<head><meta charset="utf-8"></head>\n'
        '<body style="font-family:Arial,sans-serif;line-height:1.6;color:#333;">\n'
        f"<p style=\"color:#666;font-size:13px;\">Antwort auf: {html.escape(original_subject or '')}<br>"
        f"Ursprüngliche Nachricht von: {html.escape(original_sender or '')}</p>\n"
        f"<div>{body}</div>\n"
        f"<p>Mit freundlichen Grüßen,<br>{html.escape(sender_name or '')}</p>\n"
        f"<hr><p style=\"color:#999;font-size:12px;\">{html.escape(company_name)}</p>\n"
        "</body>\n</html>"
    )
