"""
UTF-8-Hilfen für ausgehende E-Mails und Klartext-Vorlagen.
"""
from __future__ import annotations

import html
import quopri
import re
from email.header import Header
from typing import Any, Dict, List

# UTF-8, als Latin-1/CP1252 gelesen. Längere Sequenzen zuerst.
MOJIBAKE_MAP = [
    ("â‚¬", "€"),
    ("â€”", "—"),
    ("â€“", "–"),
    ("â€™", "'"),
    ("â€˜", "'"),
    ("â€œ", '"'),
    ("â€\x9d", '"'),
    ("â€", '"'),
    ("Ã¤", "ä"),
    ("Ã¶", "ö"),
    ("Ã¼", "ü"),
    ("Ã„", "Ä"),
    ("Ã–", "Ö"),
    ("Ãœ", "Ü"),
    ("ÃŸ", "ß"),
    ("âÍ", ""),
    ("Â\xad", ""),
    ("Â\xa0", " "),
    ("Â ", " "),
    ("Â", ""),
]

_EMOJI_RE = re.compile(
    "[\U0001F600-\U0001F64F\U0001F300-\U0001F5FF\U0001F680-\U0001F6FF☀-⛿✀-➿]"
)
_SMART_QUOTES_RE = re.compile("[“”‘’]")
MAX_LINE_LENGTH = 78


def to_quoted_printable(text: str) -> str:
    if not text:
        return ""
    return quopri.encodestring(text.encode("utf-8")).decode("ascii")


def encode_email_subject(subject: str) -> str:
    if not subject:
        return ""
    if subject.isascii():
        return subject
    return Header(subject, "utf-8").encode()


def clean_content_for_utf8(content: str) -> str:
    if not content:
        return ""
    cleaned = content
    for broken, fixed in MOJIBAKE_MAP:
        cleaned = cleaned.replace(broken, fixed)
    cleaned = re.sub(r"\r\n|\r", "\n", cleaned)
    cleaned = re.sub(r"[^\S\n]{3,}", "  ", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def validate_email_content(content: str) -> Dict[str, Any]:
    issues: List[str] = []
    suggestions: List[str] = []
    text = content or ""

    if any(broken in text for broken, _ in MOJIBAKE_MAP):
        issues.append("Broken UTF-8 sequences detected")
        suggestions.append("Run clean_content_for_utf8() to fix encoding issues")
    if _SMART_QUOTES_RE.search(text):
        issues.append("Smart quotes detected")
        suggestions.append("Consider replacing with standard quotes for better compatibility")
    if _EMOJI_RE.search(text):
        issues.append("Emojis detected")
        suggestions.append("Consider using text alternatives for better email client compatibility")

    long_lines = [line for line in text.split("\n") if len(line) > MAX_LINE_LENGTH]
    if long_lines:
        issues.append(f"{len(long_lines)} lines longer than {MAX_LINE_LENGTH} characters")
        suggestions.append("Consider breaking long lines for better email formatting")

    return {"is_valid": not issues, "issues": issues, "suggestions": suggestions}


def html_to_plain_text(markup: str) -> str:
    if not markup:
        return ""
    text = re.sub(r"<br\s*/?>", "\n", markup, flags=re.IGNORECASE)
    text = re.sub(r"</p\s*>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<(script|style)[^>]*>[\s\S]*?</\1>", "", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]*>", "", text)
    text = html.unescape(text).replace("\xa0", " ")
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def _footer(company_name: str, company_email: str, unsubscribe_url: str) -> str:
    lines = ["---", company_name]
    if company_email:
        lines.append(f"E-Mail: {company_email}")
    lines.append("")
    lines.append(
        f"Sie erhalten diese E-Mail, weil Sie ein registrierter Nutzer von {company_name} sind."
    )
    lines.append(f"Abmelden: {unsubscribe_url}")
    return "\n".join(lines)


def plain_text_reply(
    *,
    original_subject: str,
    original_sender: str,
    reply_content: str,
    sender_name: str,
    company_name: str = "HandwerkOS",
    company_email: str = "",
    unsubscribe_url: str = "#",
) -> str:
    return (
        f"Antwort auf: {original_subject}\n\n"
        f"Ursprüngliche Nachricht von: {original_sender}\n\n"
        f"{reply_content}\n\n"
        f"Mit freundlichen Grüßen,\n{sender_name}\n\n"
        f"{_footer(company_name, company_email, unsubscribe_url)}"
    )


def plain_text_welcome(
    employee_name: str,
    company_name: str,
    login_url: str,
    *,
    company_email: str = "",
    unsubscribe_url: str = "#",
) -> str:
    return (
        f"Willkommen bei {company_name}!\n\n"
        f"Hallo {employee_name},\n\n"
        "herzlich willkommen im Team! Ihr Account wurde erfolgreich erstellt und Sie "
        "können sich ab sofort in unserem System anmelden.\n\n"
        f"Jetzt anmelden: {login_url}\n\n"
        "Bei Fragen können Sie sich jederzeit an unser Support-Team wenden.\n\n"
        f"Mit freundlichen Grüßen,\n{company_name}\n\n"
        f"{_footer(company_name, company_email, unsubscribe_url)}"
    )


def plain_text_notification(
    *,
    title: str,
    message: str,
    action_url: str = "",
    action_text: str = "",
    company_name: str = "HandwerkOS",
    company_email: str = "",
    unsubscribe_url: str = "#",
) -> str:
    parts = [title, message]
    if action_url and action_text:
        parts.append(f"{action_text}: {action_url}")
    parts.append(_footer(company_name, company_email, unsubscribe_url))
    return "\n\n".join(parts)


def plain_text_project_notification(
    project_name: str,
    status: str,
    message: str,
    *,
    company_name: str = "HandwerkOS",
    company_email: str = "",
    unsubscribe_url: str = "#",
) -> str:
    return "\n\n".join(
        [
            f"Projekt Update: {project_name}",
            f"Status: {status.upper()}",
            message,
            _footer(company_name, company_email, unsubscribe_url),
        ]
    )
