# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Signed unsubscribe links appended to campaign emails.

Token format::

    base64url(json payload) "." base64url(hmac_sha256(secret, payload_part))

The payload carries ``contact_id``, ``tenant_id``, ``email`` and
``expires_at`` (epoch seconds, 14 days after issue). Base64 padding is
stripped.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import re
from dataclasses import dataclass
from html import escape
from typing import Any
from urllib.parse import quote

from .logger import get_logger

logger = get_logger("unsubscribe")

TOKEN_TTL = 14 * 24 * 60 * 60

INVALID_FORMAT = "invalid_format"
INVALID_SIGNATURE = "invalid_signature"
EXPIRED = "expired"
INVALID_TOKEN = "invalid_token"

FOOTER_TEXTS = {
    "en": (
        "If you no longer wish to receive these emails, you can",
        "unsubscribe here",
    ),
    "gr": (
        "Εάν δεν επιθυμείτε πλέον να λαμβάνετε αυτά τα emails, μπορείτε να",
        "καταργήσετε την εγγραφή σας εδώ",
    ),
}

FOOTER_TEMPLATE = (
    '<div style="margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; '
    'text-align: center; font-size: 12px; color: #6b7280;">'
    '<p style="margin: 0;">{text} <a href="{url}" '
    'style="color: #6b7280; text-decoration: underline;">{here}</a>.</p></div>'
)

_BODY_CLOSE = re.compile(r"</body\s*>", re.IGNORECASE)


@dataclass(frozen=True)
class TokenCheck:
    valid: bool
    payload: dict[str, Any] | None = None
    error: str | None = None


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(secret: str, payload_part: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_part.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def generate_token(
    secret: str, contact_id: int, tenant_id: str, email: str, now_ts: int, ttl: int = TOKEN_TTL
) -> str:
    payload = {
        "contact_id": contact_id,
        "tenant_id": tenant_id,
        "email": email,
        "expires_at": now_ts + ttl,
    }
    payload_part = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    return f"{payload_part}.{_sign(secret, payload_part)}"


def verify_token(secret: str, token: str, now_ts: int) -> TokenCheck:
    """Check signature and expiry of an unsubscribe token."""
    parts = (token or "").split(".")
    if len(parts) != 2:
        return TokenCheck(False, error=INVALID_FORMAT)
    payload_part, signature = parts
    try:
        expected = _sign(secret, payload_part)
    except UnicodeEncodeError:
        return TokenCheck(False, error=INVALID_TOKEN)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
        return TokenCheck(False, error=INVALID_SIGNATURE)
    try:
        payload = json.loads(_b64decode(payload_part).decode("utf-8"))
        expires_at = int(payload["expires_at"])
        int(payload["contact_id"])
    except (binascii.Error, UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        logger.warning("Undecodable unsubscribe token: %s", exc)
        return TokenCheck(False, error=INVALID_TOKEN)
    if now_ts > expires_at:
        return TokenCheck(False, payload=payload, error=EXPIRED)
    return TokenCheck(True, payload=payload)


def unsubscribe_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/unsubscribe?token={quote(token, safe='')}"


def unsubscribe_footer(url: str, language: str | None = "en") -> str:
    text, here = FOOTER_TEXTS.get((language or "en").lower(), FOOTER_TEXTS["en"])
    return FOOTER_TEMPLATE.format(text=text, url=escape(url, quote=True), here=here)


def inject_footer(html: str, footer: str) -> str:
    """Insert ``footer`` before the last ``</body>``, or append it."""
    matches = list(_BODY_CLOSE.finditer(html))
    if not matches:
        return html + footer
    pos = matches[-1].start()
    return html[:pos] + footer + html[pos:]


class UnsubscribeLinks:
    """Issues and checks unsubscribe links with one secret and base URL."""

    def __init__(self, secret: str, base_url: str):
        self.secret = secret
        self.base_url = base_url

    def url_for(self, contact_id: int, tenant_id: str, email: str, now_ts: int) -> str:
        return unsubscribe_url(self.base_url, generate_token(self.secret, contact_id, tenant_id, email, now_ts))

    def footer_for(
        self, contact_id: int, tenant_id: str, email: str, now_ts: int, language: str | None = "en"
    ) -> str:
        return unsubscribe_footer(self.url_for(contact_id, tenant_id, email, now_ts), language)

    def verify(self, token: str, now_ts: int) -> TokenCheck:
        return verify_token(self.secret, token, now_ts)
