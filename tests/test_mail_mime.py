from __future__ import annotations

import base64

from handwerkos.mail import parse_email_content, sanitize_html_content
from handwerkos.mail.mime import should_display_as_html


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


RAW_MULTIPART = (
    "From: Kunde <kunde@example.org>\r\n"
    "To: info@handwerk.example\r\n"
    "Subject: Anfrage\r\n"
    "MIME-Version: 1.0\r\n"
    'Content-Type: multipart/mixed; boundary="outer"\r\n'
    "\r\n"
    "--outer\r\n"
    'Content-Type: multipart/alternative; boundary="inner"\r\n'
    "\r\n"
    "--inner\r\n"
    "Content-Type: text/plain; charset=utf-8\r\n"
    "Content-Transfer-Encoding: quoted-printable\r\n"
    "\r\n"
    "Gr=C3=BC=C3=9Fe aus M=C3=BCnchen\r\n"
    "--inner\r\n"
    "Content-Type: text/html; charset=utf-8\r\n"
    "Content-Transfer-Encoding: base64\r\n"
    "\r\n"
    f"{_b64('<p>Grüße</p>'.encode('utf-8'))}\r\n"
    "--inner--\r\n"
    "--outer\r\n"
    'Content-Type: application/pdf; name="angebot.pdf"\r\n'
    'Content-Disposition: attachment; filename="angebot.pdf"\r\n'
    "Content-Transfer-Encoding: base64\r\n"
    "\r\n"
    f"{_b64(b'%PDF-1.4 test')}\r\n"
    "--outer\r\n"
    "Content-Type: image/png\r\n"
    'Content-Disposition: inline; filename="logo.png"\r\n'
    "Content-ID: <logo@firma>\r\n"
    "Content-Transfer-Encoding: base64\r\n"
    "\r\n"
    f"{_b64(b'PNGDATA')}\r\n"
    "--outer--\r\n"
)


def test_multipart_prefers_html_and_lists_attachments() -> None:
    parsed = parse_email_content(RAW_MULTIPART)
    assert parsed.html_content == "<p>Grüße</p>"
    assert parsed.plain_text_content.strip() == "Grüße aus München"
    assert parsed.preferred_content == "<p>Grüße</p>"
    assert parsed.content_type == "html"
    assert parsed.has_attachments is True

    assert parsed.headers.content_type == "multipart/mixed"
    assert parsed.headers.multipart is True
    assert parsed.headers.boundary == "outer"
    assert parsed.headers.charset == "utf-8"
    assert parsed.headers.content_transfer_encoding == "8bit"

    pdf, logo = parsed.attachments
    assert pdf.filename == "angebot.pdf"
    assert pdf.content_type == "application/pdf"
    assert pdf.size == len(b"%PDF-1.4 test")
    assert pdf.inline is False
    assert logo.content_id == "logo@firma"
    assert logo.inline is True
    assert logo.size == 7


def test_bytes_input_is_accepted() -> None:
    parsed = parse_email_content(RAW_MULTIPART.encode("utf-8"))
    assert parsed.content_type == "html"
    assert parsed.to_dict()["headers"]["boundary"] == "outer"


def test_single_part_latin1_text() -> None:
    raw = (
        "Content-Type: text/plain; charset=iso-8859-1\r\n"
        "Content-Transfer-Encoding: quoted-printable\r\n"
        "\r\n"
        "Stra=DFe 5"
    )
    parsed = parse_email_content(raw)
    assert parsed.plain_text_content == "Straße 5"
    assert parsed.html_content is None
    assert parsed.content_type == "text"
    assert parsed.headers.charset == "iso-8859-1"
    assert parsed.headers.content_transfer_encoding == "quoted-printable"
    assert should_display_as_html(parsed) is False


def test_text_input_with_8bit_charset_keeps_umlauts() -> None:
    parsed = parse_email_content("Content-Type: text/plain; charset=iso-8859-1\r\n\r\nGrüße aus Köln")
    assert parsed.plain_text_content == "Grüße aus Köln"

    raw = (
        "Content-Type: multipart/alternative; boundary=\"b1\"\r\n"
        "\r\n"
        "--b1\r\n"
        "Content-Type: text/plain; charset=iso-8859-1\r\n"
        "Content-Transfer-Encoding: 8bit\r\n"
        "\r\n"
        "Hauptstraße 12\r\n"
        "--b1--\r\n"
    )
    parsed = parse_email_content(raw)
    assert parsed.plain_text_content.strip() == "Hauptstraße 12"


def test_bytes_input_with_8bit_charset_is_decoded() -> None:
    raw = "Content-Type: text/plain; charset=iso-8859-1\r\n\r\nStraße".encode("latin-1")
    assert parse_email_content(raw).plain_text_content == "Straße"


def test_single_part_markup_is_detected_as_html() -> None:
    parsed = parse_email_content("Content-Type: text/plain\r\n\r\n<div>Hallo</div>")
    assert parsed.content_type == "html"
    assert parsed.html_content == "<div>Hallo</div>"
    assert should_display_as_html(parsed) is True
    assert should_display_as_html(parsed, preference="text") is False


def test_multipart_without_boundary_is_empty() -> None:
    parsed = parse_email_content("Content-Type: multipart/alternative\r\n\r\nirgendwas")
    assert parsed.preferred_content == ""
    assert parsed.html_content is None
    assert parsed.plain_text_content is None
    assert parsed.content_type == "text"


def test_sanitize_html_content() -> None:
    dirty = (
        '<p onclick="steal()">Hallo</p><script>alert(1)</script>'
        '<a href="javascript:void(0)">x</a><embed src="x.swf">'
        "<object data='x'>y</object>"
    )
    clean = sanitize_html_content(dirty)
    assert "<script" not in clean
    assert "javascript:" not in clean
    assert "onclick" not in clean
    assert "<embed" not in clean
    assert "<object" not in clean
    assert "Hallo" in clean
    assert sanitize_html_content("") == ""
