# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asyncio-friendly SMTP connection pool.

Connections are checked out of a shared idle list and checked back in
after use, so parallel send tasks of one campaign share them.

Example:
    pool = SMTPPool(host="smtp.example.com", port=587, user="u", password="p", use_tls=True)

    smtp = await pool.acquire()
    try:
        await smtp.send_message(message)
    except Exception:
        await pool.release(smtp, reusable=False)
        raise
    await pool.release(smtp)

    await pool.close()
"""

from __future__ import annotations

import asyncio
import time

import aiosmtplib

from .logger import get_logger

logger = get_logger("smtp_pool")


class SMTPPool:
    """Pool of authenticated SMTP connections to one server.

    Attributes:
        ttl: Maximum age in seconds of an idle connection before it is replaced.
        max_idle: Upper bound of idle connections kept open.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str | None = None,
        password: str | None = None,
        *,
        use_tls: bool = False,
        ttl: int = 300,
        max_idle: int = 10,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_tls = use_tls
        self.ttl = ttl
        self.max_idle = max_idle
        self.timeout = timeout
        self._idle: list[tuple[aiosmtplib.SMTP, float]] = []
        self._lock = asyncio.Lock()

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open and authenticate a new connection.

        TLS behavior based on port and use_tls flag:
        - Port 465 with use_tls=True: Direct TLS (implicit TLS)
        - Other ports with use_tls=True: STARTTLS
        - use_tls=False: Plain SMTP
        """
        if self.use_tls and self.port == 465:
            smtp = aiosmtplib.SMTP(
                hostname=self.host, port=self.port, use_tls=True, start_tls=False, timeout=self.timeout
            )
        elif self.use_tls:
            smtp = aiosmtplib.SMTP(
                hostname=self.host, port=self.port, use_tls=False, start_tls=True, timeout=self.timeout
            )
        else:
            smtp = aiosmtplib.SMTP(
                hostname=self.host, port=self.port, use_tls=False, start_tls=False, timeout=self.timeout
            )

        async def _do_connect() -> None:
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        return smtp

    @staticmethod
    async def _is_alive(smtp: aiosmtplib.SMTP) -> bool:
        """NOOP health check; any failure counts as dead."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            smtp.close()

    async def acquire(self) -> aiosmtplib.SMTP:
        """Return a live connection, reusing an idle one when fresh enough."""
        while True:
            async with self._lock:
                entry = self._idle.pop() if self._idle else None
            if entry is None:
                return await self._connect()
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                return smtp
            await self._quit(smtp)

    async def release(self, smtp: aiosmtplib.SMTP, reusable: bool = True) -> None:
        """Check a connection back in, or close it when not reusable."""
        if reusable and smtp.is_connected:
            async with self._lock:
                if len(self._idle) < self.max_idle:
                    self._idle.append((smtp, time.time()))
                    return
        await self._quit(smtp)

    async def close(self) -> None:
        """Close every idle connection."""
        async with self._lock:
            idle, self._idle = self._idle, []
        for smtp, _ in idle:
            await self._quit(smtp)
        logger.debug("Closed %d pooled SMTP connections", len(idle))
