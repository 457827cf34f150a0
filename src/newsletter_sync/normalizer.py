"""Convert provider-native messages into CandidateMessage values.

Both normalizers are pure.  Missing fields become empty strings (or the
current time for dates) so classification can still run on malformed mail;
only a message without an id is rejected.
"""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, Mapping

from .errors import ClassificationSkipped
from .models import CandidateMessage, utcnow


def parse_from_header(from_value: str) -> tuple[str, str]:
    """Parse a From header into (display name, email address) of its first sender.

    Handles formats like:
      "John Doe <john@example.com>"           -> ("John Doe", "john@example.com")
      "<john@example.com>"                    -> ("", "john@example.com")
      "john@example.com"                      -> ("", "john@example.com")
      "A <a@example.com>, B <b@example.com>"  -> ("A", "a@example.com")
    """
    if not from_value:
        return ("", "")
    for name, address in getaddresses([from_value]):
        if address:
            return (name.strip().strip('"').strip("'"), address.strip().lower())
    return ("", "")


def decode_base64url(data: str) -> str:
    """Decode Gmail's base64url body data, tolerating missing padding."""
    if not data:
        return ""
    padding = -len(data) % 4
    try:
        return base64.urlsafe_b64decode(data + "=" * padding).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        return ""


def _headers_from_list(items: Any) -> dict[str, str]:
    headers: dict[str, str] = {}
    for h in items or []:
        if not isinstance(h, Mapping):
            continue
        name = (h.get("name") or "").lower()
        if name and name not in headers:
            headers[name] = h.get("value") or ""
    return headers


def _collect_gmail_bodies(part: Mapping, text: list[str], html: list[str]) -> None:
    data = (part.get("body") or {}).get("data")
    mime_type = part.get("mimeType", "")
    if data and not (part.get("filename") or ""):
        if mime_type == "text/plain":
            text.append(decode_base64url(data))
        elif mime_type == "text/html":
            html.append(decode_base64url(data))
    for child in part.get("parts") or []:
        if isinstance(child, Mapping):
            _collect_gmail_bodies(child, text, html)


def _gmail_timestamp(raw: Mapping, headers: dict[str, str]) -> datetime:
    internal = raw.get("internalDate")
    if internal:
        try:
            return datetime.fromtimestamp(int(internal) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            pass
    date_header = headers.get("date")
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            pass
    return utcnow()


def normalize_gmail(raw: Any) -> CandidateMessage:
    """Normalize a Gmail API ``users.messages.get`` resource."""
    if not isinstance(raw, Mapping) or not raw.get("id"):
        raise ClassificationSkipped("Gmail message without an id")

    payload = raw.get("payload") or {}
    headers = _headers_from_list(payload.get("headers"))
    name, email = parse_from_header(headers.get("from", ""))

    text: list[str] = []
    html: list[str] = []
    _collect_gmail_bodies(payload, text, html)

    return CandidateMessage(
        message_id=str(raw["id"]),
        sender_email=email,
        sender_name=name,
        subject=headers.get("subject", ""),
        text_body="".join(text),
        html_body="".join(html),
        received_at=_gmail_timestamp(raw, headers),
        headers=headers,
    )


def normalize_outlook(raw: Any) -> CandidateMessage:
    """Normalize a Microsoft Graph message resource."""
    if not isinstance(raw, Mapping) or not raw.get("id"):
        raise ClassificationSkipped("Outlook message without an id")

    sender = (raw.get("from") or raw.get("sender") or {}).get("emailAddress") or {}
    body = raw.get("body") or {}
    content = body.get("content") or ""
    if (body.get("contentType") or "").lower() == "html":
        html_body = content
        text_body = raw.get("bodyPreview") or ""
    else:
        html_body = ""
        text_body = content or raw.get("bodyPreview") or ""

    received = raw.get("receivedDateTime") or ""
    try:
        received_at = datetime.fromisoformat(received.replace("Z", "+00:00")) if received else utcnow()
    except ValueError:
        received_at = utcnow()
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    return CandidateMessage(
        message_id=str(raw["id"]),
        sender_email=(sender.get("address") or "").strip().lower(),
        sender_name=(sender.get("name") or "").strip(),
        subject=raw.get("subject") or "",
        text_body=text_body,
        html_body=html_body,
        received_at=received_at,
        headers=_headers_from_list(raw.get("internetMessageHeaders")),
    )
