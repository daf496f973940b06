"""
MIME-Zerlegung eingehender E-Mails in HTML-/Textteil und Anhänge.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from email import message_from_bytes, message_from_string, policy
from email.message import Message
from typing import Any, Dict, List, Optional, Union

_MARKUP_RE = re.compile(r"<[a-z][\s\S]*>", re.IGNORECASE)
# Nur diese Kodierungen liefern Bytes, die mit dem Charset dekodiert werden.
_BINARY_ENCODINGS = {"base64", "quoted-printable"}

_UNSAFE_PATTERNS = [
    re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE),
    re.compile(r"<object[^>]*>[\s\S]*?</object>", re.IGNORECASE),
    re.compile(r"<embed[^>]*>", re.IGNORECASE),
    re.compile(r"<applet[^>]*>[\s\S]*?</applet>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
]


@dataclass
class EmailAttachment:
    filename: str
    content_type: str
    size: int
    content_id: Optional[str] = None
    inline: bool = False


@dataclass
class EmailHeaders:
    content_type: str
    charset: str
    content_transfer_encoding: str
    multipart: bool
    boundary: Optional[str] = None


@dataclass
class ParsedEmailContent:
    html_content: Optional[str]
    plain_text_content: Optional[str]
    preferred_content: str
    content_type: str
    has_attachments: bool
    headers: EmailHeaders
    attachments: List[EmailAttachment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _decode_part(part: Message, text_input: bool = False) -> str:
    encoding = str(part.get("Content-Transfer-Encoding") or "7bit").strip().lower()
    if text_input and encoding not in _BINARY_ENCODINGS:
        # Bereits dekodierter Text, das Charset beschreibt ihn nicht mehr.
        return str(part.get_payload(decode=False) or "")
    payload = part.get_payload(decode=True) or b""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _headers_of(msg: Message) -> EmailHeaders:
    ctype = str(msg.get_content_type() or "text/plain").lower()
    multipart = ctype.startswith("multipart/")
    return EmailHeaders(
        content_type=ctype,
        charset=str(msg.get_param("charset") or "utf-8"),
        content_transfer_encoding=str(msg.get("Content-Transfer-Encoding") or "8bit").strip().lower(),
        multipart=multipart,
        boundary=msg.get_boundary() if multipart else None,
    )


def _attachment_of(part: Message) -> EmailAttachment:
    content_id = part.get("Content-ID")
    return EmailAttachment(
        filename=part.get_filename() or "unknown",
        content_type=str(part.get_content_type() or "application/octet-stream").lower(),
        size=len(part.get_payload(decode=True) or b""),
        content_id=str(content_id).strip().strip("<>") if content_id else None,
        inline=part.get_content_disposition() == "inline",
    )


def _empty(headers: EmailHeaders) -> ParsedEmailContent:
    return ParsedEmailContent(
        html_content=None,
        plain_text_content=None,
        preferred_content="",
        content_type="text",
        has_attachments=False,
        headers=headers,
    )


def parse_email_content(raw: Union[str, bytes]) -> ParsedEmailContent:
    text_input = isinstance(raw, str)
    if text_input:
        msg = message_from_string(raw, policy=policy.default)
    else:
        msg = message_from_bytes(bytes(raw or b""), policy=policy.default)
    headers = _headers_of(msg)

    if headers.multipart and not headers.boundary:
        return _empty(headers)
    if not headers.multipart:
        return _parse_single_part(msg, headers, text_input)

    html: Optional[str] = None
    text: Optional[str] = None
    attachments: List[EmailAttachment] = []
    for part in msg.walk():
        if part.is_multipart():
            continue
        ctype = str(part.get_content_type() or "").lower()
        disposition = part.get_content_disposition()
        is_attachment = disposition == "attachment" or bool(part.get_filename())
        if not is_attachment and ctype == "text/html":
            if html is None:
                html = _decode_part(part, text_input)
        elif not is_attachment and ctype == "text/plain":
            if text is None:
                text = _decode_part(part, text_input)
        elif is_attachment:
            attachments.append(_attachment_of(part))

    return ParsedEmailContent(
        html_content=html,
        plain_text_content=text,
        preferred_content=html or text or "",
        content_type="html" if html else "text",
        has_attachments=bool(attachments),
        headers=headers,
        attachments=attachments,
    )


def _parse_single_part(
    msg: Message, headers: EmailHeaders, text_input: bool = False
) -> ParsedEmailContent:
    body = _decode_part(msg, text_input)
    is_html = "text/html" in headers.content_type or bool(_MARKUP_RE.search(body))
    return ParsedEmailContent(
        html_content=body if is_html else None,
        plain_text_content=None if is_html else body,
        preferred_content=body,
        content_type="html" if is_html else "text",
        has_attachments=False,
        headers=headers,
    )


def sanitize_html_content(html: str) -> str:
    if not html:
        return ""
    cleaned = html
    for pattern in _UNSAFE_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return cleaned


def should_display_as_html(parsed: ParsedEmailContent, preference: str = "html") -> bool:
    if preference == "text":
        return False
    if parsed.html_content and preference == "html":
        return True
    return bool(parsed.preferred_content and _MARKUP_RE.search(parsed.preferred_content))
