# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Mail transport collaborators and error classification.

The dispatch engine only needs ``send(OutboundEmail) -> message_id``. Two
implementations ship here:

- SmtpTransport: aiosmtplib through an SMTPPool; the generated Message-ID
  is the provider message id.
- HttpTransport: aiohttp POST to a provider HTTP send endpoint that answers
  with ``{"message_id": ...}``.

Every failure surfaces as TransportError with one of four kinds:

- temporary: retry this recipient (4xx replies, throttling)
- unavailable: the provider cannot be reached (connection, timeout);
  retried, then dispatch pauses with the campaign left in ``sending``
- permanent: this recipient cannot be delivered (5xx replies)
- fatal: no recipient can be delivered (authentication, TLS setup,
  sender rejected); the campaign fails
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import TYPE_CHECKING, Any, Protocol

import aiohttp
import aiosmtplib

from .errors import TransportError
from .logger import get_logger
from .smtp_pool import SMTPPool

if TYPE_CHECKING:
    from .config_loader import TransportSettings

logger = get_logger("transport")

TEMPORARY = "temporary"
UNAVAILABLE = "unavailable"
PERMANENT = "permanent"
FATAL = "fatal"

AUTH_CODES = (530, 534, 535)

TEMPORARY_PATTERNS = (
    "421",  # Service not available
    "450",  # Mailbox unavailable
    "451",  # Local error in processing
    "452",  # Insufficient system storage
    "temporarily unavailable",
    "try again",
    "throttl",
)

TLS_PATTERNS = (
    "wrong_version_number",  # TLS/STARTTLS mismatch
    "certificate verify failed",
    "ssl handshake",
    "certificate_unknown",
    "unknown_ca",
    "certificate has expired",
    "self signed certificate",
)

AUTH_PATTERNS = (
    "authentication failed",
    "535",
    "534",
    "530",
)


@dataclass
class OutboundEmail:
    from_address: str
    to_address: str
    subject: str
    from_name: str | None = None
    text_body: str | None = None
    html_body: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


class MailTransport(Protocol):
    async def send(self, email: OutboundEmail) -> str:
        """Send one email and return the provider message id."""
        ...

    async def close(self) -> None:
        ...


def _smtp_code(exc: BaseException) -> int | None:
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused) and exc.recipients:
        return exc.recipients[0].code
    code = getattr(exc, "code", None)
    return code if isinstance(code, int) else None


def classify_transport_error(exc: BaseException) -> TransportError:
    """Map any exception raised while sending to a TransportError."""
    if isinstance(exc, TransportError):
        return exc

    code = _smtp_code(exc)
    error_msg = str(exc).lower()

    if isinstance(exc, aiosmtplib.SMTPAuthenticationError) or code in AUTH_CODES:
        return TransportError(str(exc), FATAL, code)
    if any(pattern in error_msg for pattern in TLS_PATTERNS):
        return TransportError(str(exc), FATAL, code)

    if code is not None:
        if isinstance(exc, aiosmtplib.SMTPSenderRefused) and 500 <= code < 600:
            return TransportError(str(exc), FATAL, code)
        if 400 <= code < 500:
            return TransportError(str(exc), TEMPORARY, code)
        if 500 <= code < 600:
            return TransportError(str(exc), PERMANENT, code)

    if isinstance(
        exc,
        (
            aiosmtplib.SMTPServerDisconnected,
            aiosmtplib.SMTPConnectError,
            aiosmtplib.SMTPTimeoutError,
            asyncio.TimeoutError,
            TimeoutError,
            ConnectionError,
            OSError,
            aiohttp.ClientConnectionError,
        ),
    ):
        return TransportError(str(exc) or type(exc).__name__, UNAVAILABLE, code)

    if any(pattern in error_msg for pattern in TEMPORARY_PATTERNS):
        return TransportError(str(exc), TEMPORARY, code)
    if any(pattern in error_msg for pattern in AUTH_PATTERNS):
        return TransportError(str(exc), FATAL, code)

    # Unknown errors are retried.
    return TransportError(str(exc) or type(exc).__name__, TEMPORARY, code)


def build_message(email: OutboundEmail) -> tuple[EmailMessage, str]:
    """Build a MIME message; return it with its Message-ID (without brackets)."""
    msg = EmailMessage()
    msg["From"] = formataddr((email.from_name, email.from_address)) if email.from_name else email.from_address
    msg["To"] = email.to_address
    msg["Subject"] = email.subject
    domain = email.from_address.rpartition("@")[2] or None
    message_id = make_msgid(domain=domain)
    msg["Message-ID"] = message_id
    for key, value in email.headers.items():
        msg[key] = value
    msg.set_content(email.text_body or "")
    if email.html_body:
        msg.add_alternative(email.html_body, subtype="html")
    return msg, message_id.strip("<>")


class SmtpTransport:
    """Sends through an SMTP relay using pooled aiosmtplib connections."""

    def __init__(self, pool: SMTPPool):
        self.pool = pool

    async def send(self, email: OutboundEmail) -> str:
        msg, message_id = build_message(email)
        try:
            smtp = await self.pool.acquire()
        except Exception as exc:
            raise classify_transport_error(exc) from exc
        try:
            await smtp.send_message(msg)
        except Exception as exc:
            await self.pool.release(smtp, reusable=False)
            raise classify_transport_error(exc) from exc
        await self.pool.release(smtp)
        return message_id

    async def close(self) -> None:
        await self.pool.close()


class HttpTransport:
    """Sends through a provider HTTP API.

    Request body::

        {"from": ..., "from_name": ..., "to": ..., "subject": ...,
         "text": ..., "html": ..., "headers": {...}}

    A 2xx answer must carry ``message_id`` (or ``messageId``).
    """

    def __init__(self, url: str, token: str | None = None, timeout: float = 30.0):
        self.url = url
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
        return self._session

    @staticmethod
    def _classify_status(status: int, detail: str) -> TransportError:
        if status in (401, 403):
            return TransportError(f"HTTP {status}: {detail}", FATAL, status)
        if status == 429 or status >= 500:
            return TransportError(f"HTTP {status}: {detail}", TEMPORARY, status)
        return TransportError(f"HTTP {status}: {detail}", PERMANENT, status)

    @staticmethod
    async def _read_accepted(resp: aiohttp.ClientResponse) -> dict[str, Any]:
        """Parse the body of a 2xx answer.

        The provider has already taken the email, so every failure here is
        permanent: retrying would send it twice.
        """
        try:
            data = await resp.json(content_type=None)
        except (ValueError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"HTTP {resp.status} with unreadable body: {exc}", PERMANENT, resp.status) from exc
        if not isinstance(data, dict):
            raise TransportError(f"HTTP {resp.status} body is not a JSON object", PERMANENT, resp.status)
        return data

    async def send(self, email: OutboundEmail) -> str:
        payload: dict[str, Any] = {
            "from": email.from_address,
            "from_name": email.from_name,
            "to": email.to_address,
            "subject": email.subject,
            "text": email.text_body,
            "html": email.html_body,
            "headers": email.headers,
        }
        try:
            async with self._get_session().post(self.url, json=payload) as resp:
                if resp.status >= 300:
                    raise self._classify_status(resp.status, (await resp.text())[:200])
                data = await self._read_accepted(resp)
        except TransportError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise classify_transport_error(exc) from exc
        message_id = data.get("message_id") or data.get("messageId")
        if not message_id:
            raise TransportError("provider response carried no message id", PERMANENT)
        return str(message_id)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


def build_transport(settings: TransportSettings) -> MailTransport:
    """Create the transport selected by ``settings.kind`` (smtp or http)."""
    if settings.kind == "http":
        if not settings.http_url:
            raise ValueError("http transport requires http_url")
        return HttpTransport(settings.http_url, settings.http_token, settings.timeout)
    if settings.kind == "smtp":
        pool = SMTPPool(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            ttl=settings.smtp_ttl,
            timeout=settings.timeout,
        )
        return SmtpTransport(pool)
    raise ValueError(f"Unknown transport kind: '{settings.kind}'. Supported: smtp, http")
