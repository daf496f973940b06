from .compose import create_multipart_email, encode_gmail_raw
from .encoding import clean_content_for_utf8, encode_email_subject
from .mime import ParsedEmailContent, parse_email_content, sanitize_html_content

__all__ = [
    "ParsedEmailContent",
    "parse_email_content",
    "sanitize_html_content",
    "clean_content_for_utf8",
    "encode_email_subject",
    "create_multipart_email",
    "encode_gmail_raw",
]
