from __future__ import annotations

import base64
from email import message_from_bytes, policy

from handwerkos.mail import create_multipart_email, encode_gmail_raw
from handwerkos.mail.compose import reply_html


def _message():
    return create_multipart_email(
        to="kunde@example.org",
        subject="Angebot für Ihr Bad",
        html_content="<p>Grüße</p>",
        plain_text_content="GrÃ¼ÃŸe",
        sender="info@meister.example",
        message_id="<abc@handwerkos.local>",
        in_reply_to="<orig@kunde>",
        references="<orig@kunde>",
    )


def test_create_multipart_email_structure() -> None:
    msg = _message()
    assert msg.get_content_type() == "multipart/alternative"
    parts = list(msg.iter_parts())
    assert [p.get_content_type() for p in parts] == ["text/plain", "text/html"]
    assert parts[0].get_content_charset() == "utf-8"
    assert parts[0].get_content().strip() == "Grüße"
    assert parts[1].get_content().strip() == "<p>Grüße</p>"

    assert msg["To"] == "kunde@example.org"
    assert msg["From"] == "info@meister.example"
    assert msg["Message-ID"] == "<abc@handwerkos.local>"
    assert msg["In-Reply-To"] == "<orig@kunde>"
    assert msg["References"] == "<orig@kunde>"
    assert msg["Date"]


def test_encode_gmail_raw_is_unpadded_base64url() -> None:
    raw = encode_gmail_raw(_message())
    assert "=" not in raw
    assert "+" not in raw and "/" not in raw

    padded = raw + "=" * (-len(raw) % 4)
    decoded = message_from_bytes(base64.urlsafe_b64decode(padded), policy=policy.default)
    assert decoded["Subject"] == "Angebot für Ihr Bad"
    assert decoded["In-Reply-To"] == "<orig@kunde>"
    assert decoded.get_body(preferencelist=("html",)).get_content().strip() == "<p>Grüße</p>"


def test_generated_message_id_when_missing() -> None:
    msg = create_multipart_email(
        to="a@example.org", subject="Hallo", html_content="<p>x</p>", plain_text_content="x"
    )
    assert msg["Message-ID"].endswith("@handwerkos.local>")
    assert msg["In-Reply-To"] is None
    assert msg["From"] is None


def test_reply_html_escapes_user_content() -> None:
    markup = reply_html(
        reply_content="Preis <b>10</b> & mehr\nZeile 2",
        sender_name="Max",
        original_subject="Anfrage <Bad>",
        original_sender="kunde@example.org",
    )
    assert "Preis &lt;b&gt;10&lt;/b&gt; &amp; mehr<br>Zeile 2" in markup
    assert "Antwort auf: Anfrage &lt;Bad&gt;" in markup
    assert "<b>10</b>" not in markup
