"""
Gmail-Anbindung: verschlüsselte Token-Ablage, Token-Refresh, Antworten im
Original-Thread und Posteingang-Synchronisation.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from email import message_from_bytes, policy
from email.utils import parseaddr, parsedate_to_datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import Config
from ..db import connect, new_id, now_iso, run_write_txn
from ..errors import IntegrationError, ResourceNotFoundError, ValidationError
from ..eventlog import event_append
from .compose import create_multipart_email, encode_gmail_raw, reply_html
from .encoding import plain_text_reply
from .mime import parse_email_content

logger = logging.getLogger("handwerkos.mail")

TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
TOKEN_LIFETIME_S = 3600
_AAD = b"handwerkos-gmail"


def _email_key() -> bytes:
    raw = str(os.environ.get("EMAIL_ENCRYPTION_KEY") or Config.EMAIL_ENCRYPTION_KEY or "").strip()
    if not raw:
        raise ValueError("email_encryption_key_missing")
    if raw.startswith("base64:"):
        try:
            decoded = base64.urlsafe_b64decode(raw.split(":", 1)[1].encode("utf-8"))
        except binascii.Error as exc:
            raise ValueError("email_encryption_key_invalid") from exc
        if len(decoded) in {16, 24, 32}:
            return decoded
    try:
        maybe_hex = bytes.fromhex(raw)
        if len(maybe_hex) in {16, 24, 32}:
            return maybe_hex
    except ValueError:
        pass
    return hashlib.sha256(raw.encode("utf-8")).digest()


def encryption_ready() -> bool:
    try:
        _email_key()
        return True
    except ValueError:
        return False


def encrypt_text(value: str) -> str:
    aes = AESGCM(_email_key())
    nonce = os.urandom(12)
    encrypted = aes.encrypt(nonce, (value or "").encode("utf-8"), _AAD)
    return "aesgcm:" + base64.urlsafe_b64encode(nonce + encrypted).decode("ascii")


def decrypt_text(value: str) -> str:
    raw = str(value or "")
    if not raw.startswith("aesgcm:"):
        raise ValueError("invalid_ciphertext")
    aes = AESGCM(_email_key())
    try:
        packed = base64.urlsafe_b64decode(raw.split(":", 1)[1].encode("ascii"))
        plain = aes.decrypt(packed[:12], packed[12:], _AAD)
    except (binascii.Error, InvalidTag) as exc:
        raise ValueError("invalid_ciphertext") from exc
    return plain.decode("utf-8")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def save_connection(
    db_path: Path,
    *,
    company_id: str,
    user_id: str,
    email_address: str,
    access_token: str,
    refresh_token: str,
    expires_at: Optional[datetime] = None,
) -> str:
    if not encryption_ready():
        raise ValidationError(
            "EMAIL_ENCRYPTION_KEY fehlt, Zugangsdaten können nicht gespeichert werden.",
            field="EMAIL_ENCRYPTION_KEY",
        )
    expiry = (expires_at or _utcnow() + timedelta(seconds=TOKEN_LIFETIME_S)).isoformat(
        timespec="seconds"
    )
    cid = new_id()
    now = now_iso()

    def _tx(con: sqlite3.Connection) -> str:
        con.execute(
            """
            INSERT INTO email_connections(id, company_id, user_id, provider, email_address,
              access_token_enc, refresh_token_enc, token_expires_at, is_active,
              created_at, updated_at)
            VALUES (?,?,?,'gmail',?,?,?,?,1,?,?)
            ON CONFLICT(user_id, provider) DO UPDATE SET
              company_id=excluded.company_id,
              email_address=excluded.email_address,
              access_token_enc=excluded.access_token_enc,
              refresh_token_enc=excluded.refresh_token_enc,
              token_expires_at=excluded.token_expires_at,
              is_active=1,
              updated_at=excluded.updated_at
            """,
            (
                cid,
                company_id,
                user_id,
                email_address,
                encrypt_text(access_token),
                encrypt_text(refresh_token),
                expiry,
                now,
                now,
            ),
        )
        row = con.execute(
            "SELECT id FROM email_connections WHERE user_id=? AND provider='gmail'", (user_id,)
        ).fetchone()
        return str(row["id"])

    return run_write_txn(db_path, _tx)


def get_connection(db_path: Path, *, company_id: str, user_id: str) -> Dict[str, Any]:
    con = connect(db_path)
    try:
        row = con.execute(
            """
            SELECT * FROM email_connections
            WHERE company_id=? AND user_id=? AND provider='gmail' AND is_active=1
            """,
            (company_id, user_id),
        ).fetchone()
    finally:
        con.close()
    if row is None:
        raise ResourceNotFoundError("Gmail-Verbindung", user_id)
    item = dict(row)
    item["access_token"] = decrypt_text(item.pop("access_token_enc"))
    item["refresh_token"] = decrypt_text(item.pop("refresh_token_enc"))
    return item


def refresh_access_token(
    refresh_token: str,
    client_id: str,
    client_secret: str,
    *,
    session: Optional[requests.Session] = None,
    timeout_s: int = 15,
) -> Dict[str, Any]:
    if not client_id or not client_secret:
        raise IntegrationError("Google OAuth ist nicht konfiguriert.", "google_oauth")
    http = session or requests
    try:
        resp = http.post(
            TOKEN_URL,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=timeout_s,
        )
        resp.raise_for_status()
        data = resp.json()
    except requests.RequestException as exc:
        raise IntegrationError(
            "Access-Token konnte nicht erneuert werden.", "google_oauth", {"error": str(exc)}
        ) from exc
    token = str((data or {}).get("access_token") or "")
    if not token:
        raise IntegrationError("Antwort ohne access_token.", "google_oauth")
    lifetime = int(data.get("expires_in") or TOKEN_LIFETIME_S)
    return {"access_token": token, "expires_at": _utcnow() + timedelta(seconds=lifetime)}


class GmailClient:
    def __init__(
        self,
        access_token: str,
        *,
        session: Optional[requests.Session] = None,
        base_url: str = GMAIL_API,
        timeout_s: int = 30,
    ) -> None:
        self.access_token = str(access_token or "")
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout_s = max(1, int(timeout_s))

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = self.session.request(
                method,
                f"{self.base_url}/{path.lstrip('/')}",
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout_s,
                **kwargs,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            raise IntegrationError(
                "Gmail-API-Aufruf fehlgeschlagen.", "gmail", {"path": path, "error": str(exc)}
            ) from exc
        if not isinstance(data, dict):
            raise IntegrationError("Ungültige Antwort der Gmail-API.", "gmail", {"path": path})
        return data

    def send_raw(self, raw: str, thread_id: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"raw": raw}
        if thread_id:
            body["threadId"] = thread_id
        return self._request("POST", "messages/send", json=body)

    def list_message_ids(self, query: str = "in:inbox", limit: int = 25) -> List[str]:
        data = self._request(
            "GET", "messages", params={"q": query, "maxResults": max(1, min(int(limit), 500))}
        )
        return [str(m["id"]) for m in data.get("messages") or [] if m.get("id")]

    def get_raw_message(self, message_id: str) -> Dict[str, Any]:
        data = self._request("GET", f"messages/{message_id}", params={"format": "raw"})
        raw = str(data.get("raw") or "")
        padded = raw + "=" * (-len(raw) % 4)
        return {
            "id": str(data.get("id") or message_id),
            "thread_id": data.get("threadId"),
            "raw_bytes": base64.urlsafe_b64decode(padded.encode("ascii")),
        }


def _fresh_access_token(
    db_path: Path, connection: Dict[str, Any], session: Optional[requests.Session]
) -> str:
    expires_at = datetime.fromisoformat(str(connection["token_expires_at"]))
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    if expires_at > _utcnow():
        return connection["access_token"]

    logger.info("Gmail token expired, refreshing")
    refreshed = refresh_access_token(
        connection["refresh_token"],
        Config.GOOGLE_CLIENT_ID,
        Config.GOOGLE_CLIENT_SECRET,
        session=session,
    )
    token = refreshed["access_token"]
    expiry = (_utcnow() + timedelta(seconds=TOKEN_LIFETIME_S)).isoformat(timespec="seconds")

    def _tx(con: sqlite3.Connection) -> None:
        con.execute(
            """
            UPDATE email_connections SET access_token_enc=?, token_expires_at=?, updated_at=?
            WHERE id=?
            """,
            (encrypt_text(token), expiry, now_iso(), connection["id"]),
        )

    run_write_txn(db_path, _tx)
    connection["access_token"] = token
    connection["token_expires_at"] = expiry
    return token


def send_email_reply(
    db_path: Path,
    *,
    company_id: str,
    user_id: str,
    email_id: str,
    reply_content: str,
    subject: Optional[str] = None,
    sender_name: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    if not (reply_content or "").strip():
        raise ValidationError("Antworttext fehlt.", field="reply_content")
    con = connect(db_path)
    try:
        original = _load_email(con, company_id, email_id)
    finally:
        con.close()
    connection = get_connection(db_path, company_id=company_id, user_id=user_id)
    token = _fresh_access_token(db_path, connection, session)

    reply_subject = subject or f"Re: {original.get('subject') or ''}"
    reply_to = str(original.get("sender_email") or "")
    if not reply_to:
        raise ValidationError("Ursprüngliche E-Mail hat keinen Absender.", field="sender_email")
    name = sender_name or connection["email_address"]
    template = {
        "original_subject": original.get("subject") or "",
        "original_sender": original.get("sender_name") or reply_to,
        "reply_content": reply_content,
        "sender_name": name,
    }
    html_content = reply_html(company_name=Config.COMPANY_NAME, **template)
    plain_content = plain_text_reply(
        company_name=Config.COMPANY_NAME,
        company_email=connection["email_address"],
        unsubscribe_url=f"{Config.PUBLIC_BASE_URL}/unsubscribe?email={reply_to}",
        **template,
    )
    original_rfc_id = original.get("rfc_message_id") or None
    message = create_multipart_email(
        to=reply_to,
        subject=reply_subject,
        html_content=html_content,
        plain_text_content=plain_content,
        sender=connection["email_address"],
        in_reply_to=original_rfc_id,
        references=original_rfc_id,
    )
    sent = GmailClient(token, session=session).send_raw(
        encode_gmail_raw(message), thread_id=original.get("thread_id")
    )
    sent_id = str(sent.get("id") or "")
    stored_id = new_id()

    def _tx(con: sqlite3.Connection) -> None:
        now = now_iso()
        con.execute(
            """
            INSERT INTO emails(id, company_id, message_id, rfc_message_id, thread_id, direction,
              subject, sender_email, sender_name, recipient_email, content, content_type,
              in_reply_to, received_at, is_read, created_at)
            VALUES (?,?,?,?,?,'outbound',?,?,?,?,?,'html',?,?,1,?)
            """,
            (
                stored_id,
                company_id,
                sent_id or None,
                str(message["Message-ID"]),
                sent.get("threadId") or original.get("thread_id"),
                reply_subject,
                connection["email_address"],
                name,
                reply_to,
                html_content,
                original_rfc_id,
                now,
                now,
            ),
        )
        event_append(con, "email_reply_sent", "email", stored_id, {"reply_to_email_id": email_id})

    run_write_txn(db_path, _tx)
    logger.info(f"Reply to email {email_id} sent as {sent_id}")
    return {"success": True, "message_id": sent_id, "email_id": stored_id}


def _load_email(con: sqlite3.Connection, company_id: str, email_id: str) -> Dict[str, Any]:
    row = con.execute(
        "SELECT * FROM emails WHERE id=? AND company_id=?", (email_id, company_id)
    ).fetchone()
    if row is None:
        raise ResourceNotFoundError("E-Mail", email_id)
    return dict(row)


def _received_at(value: Optional[str]) -> str:
    if value:
        try:
            return parsedate_to_datetime(str(value)).isoformat(timespec="seconds")
        except (TypeError, ValueError):
            pass
    return now_iso()


def sync_inbox(
    db_path: Path,
    *,
    company_id: str,
    user_id: str,
    limit: int = 25,
    query: str = "in:inbox",
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    connection = get_connection(db_path, company_id=company_id, user_id=user_id)
    client = GmailClient(_fresh_access_token(db_path, connection, session), session=session)
    ids = client.list_message_ids(query=query, limit=max(1, min(int(limit or 25), 200)))

    con = connect(db_path)
    try:
        known = {
            str(r["message_id"])
            for r in con.execute(
                "SELECT message_id FROM emails WHERE company_id=? AND message_id IS NOT NULL",
                (company_id,),
            ).fetchall()
        }
    finally:
        con.close()

    imported = 0
    skipped = 0
    for gmail_id in ids:
        if gmail_id in known:
            skipped += 1
            continue
        fetched = client.get_raw_message(gmail_id)
        msg = message_from_bytes(fetched["raw_bytes"], policy=policy.default)
        parsed = parse_email_content(fetched["raw_bytes"])
        sender_name, sender_email = parseaddr(str(msg.get("from") or ""))
        _, recipient = parseaddr(str(msg.get("to") or ""))
        row = (
            new_id(),
            company_id,
            gmail_id,
            str(msg.get("message-id") or "") or None,
            fetched["thread_id"],
            str(msg.get("subject") or ""),
            sender_email,
            sender_name or None,
            recipient or connection["email_address"],
            parsed.preferred_content,
            parsed.content_type,
            1 if parsed.has_attachments else 0,
            str(msg.get("in-reply-to") or "") or None,
            _received_at(msg.get("date")),
            now_iso(),
        )

        def _tx(con: sqlite3.Connection) -> None:
            con.execute(
                """
                INSERT OR IGNORE INTO emails(id, company_id, message_id, rfc_message_id,
                  thread_id, direction, subject, sender_email, sender_name, recipient_email,
                  content, content_type, has_attachments, in_reply_to, received_at,
                  is_read, created_at)
                VALUES (?,?,?,?,?,'inbound',?,?,?,?,?,?,?,?,?,0,?)
                """,
                row,
            )

        run_write_txn(db_path, _tx)
        known.add(gmail_id)
        imported += 1

    logger.info(f"Gmail sync for company {company_id}: {imported} imported, {skipped} skipped")
    return {"ok": True, "imported": imported, "skipped": skipped}
