# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatch engine: walks a campaign's recipients and sends through the transport.

For a campaign in ``sending``:

1. Load content, resolve the audience and read the quota. Any error here
   propagates before a single send (the campaign stays ``sending``).
2. Skip recipients that already have a terminal outcome: a campaign_messages
   row (sent) or a campaign_failures row (failed). This is what makes a
   re-run after a crash resume exactly where it stopped.
3. Before each send reserve one quota slot, in resolver order, against a
   fresh allowance and the persisted ``emails_sent_this_cycle`` plus the
   sends in flight. No slot left: stop and fail with "quota exhausted".
4. Send with at most ``max_concurrent_sends`` calls in flight. On success
   one transaction inserts the message row, bumps ``sent_count`` and
   consumes the tenant quota. Temporary errors are retried; per-recipient
   failures are recorded and the walk goes on.

Fatal transport errors fail the campaign; an unreachable transport pauses
the walk and leaves the campaign ``sending`` for a later tick.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .audience import AudienceFilter, Recipient, RecipientResolver
from .campaign_db import CampaignDb
from .entities.campaign import counter_increment_sql
from .entities.campaign_message.table import INSERT_SQL as INSERT_MESSAGE_SQL
from .entities.tenant import CONSUME_QUOTA_SQL
from .errors import CampaignStateError, TransportError
from .logger import get_logger
from .prometheus import CampaignMetrics
from .quota import QuotaCalculator
from .state import CampaignStateMachine, CampaignStatus
from .transport import UNAVAILABLE, MailTransport, OutboundEmail, classify_transport_error
from .unsubscribe import UnsubscribeLinks, inject_footer

logger = get_logger("dispatch")

DEFAULT_RETRY_DELAYS = [1, 5, 15]

REASON_QUOTA_EXHAUSTED = "quota exhausted"
REASON_NO_RECIPIENTS = "no recipients"
REASON_NO_CONTENT = "no content"

# Outcomes of one dispatch run
OUTCOME_SENT = "sent"
OUTCOME_FAILED = "failed"
OUTCOME_PAUSED = "paused"
OUTCOME_STOPPED = "stopped"
OUTCOME_SKIPPED = "skipped"


def retry_delay(retry_count: int, delays: list[int] | None = None) -> int:
    """Delay in seconds before retry number ``retry_count`` (0-indexed).

    Past the end of ``delays`` the last value is reused.
    """
    if not delays:
        delays = DEFAULT_RETRY_DELAYS
    if retry_count >= len(delays):
        return delays[-1]
    return delays[retry_count]


@dataclass
class DispatchResult:
    campaign_id: int
    outcome: str
    sent: int = 0
    failed: int = 0
    already_done: int = 0
    recipient_count: int = 0
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "outcome": self.outcome,
            "sent": self.sent,
            "failed": self.failed,
            "already_done": self.already_done,
            "recipient_count": self.recipient_count,
            "reason": self.reason,
        }


class _Run:
    """Mutable state of one campaign walk."""

    def __init__(self, campaign: dict[str, Any], html: str | None, text: str | None, concurrency: int):
        self.campaign = campaign
        self.campaign_id: int = campaign["id"]
        self.tenant_id: str = campaign["tenant_id"]
        self.html = html
        self.text = text
        self.semaphore = asyncio.Semaphore(concurrency)
        self.quota_lock = asyncio.Lock()
        self.in_flight = 0
        self.sent = 0
        self.failed = 0
        self.fatal: TransportError | None = None
        self.unavailable: TransportError | None = None
        self.broken = False

    @property
    def halted(self) -> bool:
        return self.fatal is not None or self.unavailable is not None or self.broken


class DispatchEngine:
    """Sends the resolved audience of ``sending`` campaigns.

    One dispatch per tenant runs at a time (per-tenant asyncio.Lock);
    campaigns of different tenants proceed concurrently.
    """

    def __init__(
        self,
        db: CampaignDb,
        transport: MailTransport,
        *,
        resolver: RecipientResolver | None = None,
        quota: QuotaCalculator | None = None,
        state: CampaignStateMachine | None = None,
        unsubscribe: UnsubscribeLinks | None = None,
        metrics: CampaignMetrics | None = None,
        max_concurrent_sends: int = 5,
        max_retries: int = 3,
        retry_delays: list[int] | None = None,
        log_delivery_activity: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.transport = transport
        self.resolver = resolver or RecipientResolver(db)
        self.quota = quota or QuotaCalculator(db)
        self.state = state or CampaignStateMachine(db)
        self.unsubscribe = unsubscribe
        self.metrics = metrics or CampaignMetrics()
        self.max_concurrent_sends = max(1, max_concurrent_sends)
        self.max_retries = max(0, max_retries)
        self.retry_delays = list(retry_delays or DEFAULT_RETRY_DELAYS)
        self.log_delivery_activity = log_delivery_activity
        self._clock = clock
        self._tenant_locks: dict[str, asyncio.Lock] = {}
        self._active: set[int] = set()
        self._stopping = False

    def now(self) -> int:
        return int(self._clock())

    def is_dispatching(self, campaign_id: int) -> bool:
        return campaign_id in self._active

    def stop(self) -> None:
        """Stop launching sends; running walks finish their in-flight calls."""
        self._stopping = True

    def resume(self) -> None:
        self._stopping = False

    def _tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._tenant_locks.get(tenant_id)
        if lock is None:
            lock = self._tenant_locks[tenant_id] = asyncio.Lock()
        return lock

    async def dispatch(self, campaign_id: int) -> DispatchResult:
        """Run (or resume) the walk of a ``sending`` campaign.

        Raises:
            CampaignNotFound: no such campaign.
            CampaignStateError: the campaign is not ``sending``.
        """
        campaign = await self.state.get(campaign_id)
        if campaign["status"] != CampaignStatus.SENDING.value:
            raise CampaignStateError(f"campaign {campaign_id} is {campaign['status']}, not sending")
        if campaign_id in self._active:
            return DispatchResult(campaign_id, OUTCOME_SKIPPED, reason="already dispatching")

        self._active.add(campaign_id)
        try:
            async with self._tenant_lock(campaign["tenant_id"]):
                self.metrics.dispatching.inc()
                try:
                    return await self._dispatch_locked(campaign_id)
                finally:
                    self.metrics.dispatching.dec()
        finally:
            self._active.discard(campaign_id)

    async def _load_content(self, campaign: dict[str, Any]) -> tuple[str | None, str | None]:
        html = campaign.get("body_html")
        template_id = campaign.get("template_id")
        if template_id is not None:
            template = await self.db.templates.get(template_id)
            if template and template["tenant_id"] == campaign["tenant_id"]:
                html = template.get("html") or html
        return html or None, campaign.get("message") or None

    async def _dispatch_locked(self, campaign_id: int) -> DispatchResult:
        # Re-read: the campaign may have been finished while waiting for the lock.
        campaign = await self.state.get(campaign_id)
        if campaign["status"] != CampaignStatus.SENDING.value:
            return DispatchResult(campaign_id, OUTCOME_SKIPPED, reason=f"campaign is {campaign['status']}")

        tenant_id = campaign["tenant_id"]
        html, text = await self._load_content(campaign)
        if not html and not text:
            await self.state.mark_failed(campaign_id, REASON_NO_CONTENT, self.now())
            return DispatchResult(campaign_id, OUTCOME_FAILED, reason=REASON_NO_CONTENT)

        recipients = await self.resolver.resolve(tenant_id, AudienceFilter.from_campaign(campaign))
        # Read before anything is sent: an unreadable quota store stops the run here.
        allowance, sent_this_cycle = await self.quota.usage(tenant_id, self.now())
        if not recipients:
            await self.state.mark_failed(campaign_id, REASON_NO_RECIPIENTS, self.now())
            return DispatchResult(campaign_id, OUTCOME_FAILED, reason=REASON_NO_RECIPIENTS)

        await self.db.campaigns.set_recipient_count(campaign_id, len(recipients))
        done = await self.db.campaign_messages.sent_emails(campaign_id)
        done |= await self.db.campaign_failures.failed_emails(campaign_id)
        pending = [r for r in recipients if r.email not in done]
        result = DispatchResult(
            campaign_id,
            OUTCOME_SENT,
            already_done=len(recipients) - len(pending),
            recipient_count=len(recipients),
        )
        logger.info(
            "Dispatching campaign %s (tenant %s): %d recipients, %d already done",
            campaign_id, tenant_id, len(recipients), result.already_done,
        )

        run = _Run(campaign, html, text, self.max_concurrent_sends)
        if pending and not allowance.permits(sent_this_cycle):
            exhausted = True
        else:
            exhausted = await self._walk(run, pending)
        result.sent, result.failed = run.sent, run.failed
        now = self.now()

        if run.fatal is not None:
            reason = f"transport failure: {run.fatal}"
            logger.error("Campaign %s: fatal transport error: %s", campaign_id, run.fatal)
            await self.state.mark_failed(campaign_id, reason, now)
            result.outcome, result.reason = OUTCOME_FAILED, reason
        elif run.broken:
            result.outcome, result.reason = OUTCOME_STOPPED, "store error"
        elif exhausted:
            logger.warning("Campaign %s: quota exhausted after %d sends", campaign_id, run.sent)
            self.metrics.inc_quota_exhausted(tenant_id)
            await self.state.mark_failed(campaign_id, REASON_QUOTA_EXHAUSTED, now)
            result.outcome, result.reason = OUTCOME_FAILED, REASON_QUOTA_EXHAUSTED
        elif run.unavailable is not None:
            logger.warning(
                "Campaign %s paused, transport unavailable: %s", campaign_id, run.unavailable
            )
            result.outcome, result.reason = OUTCOME_PAUSED, str(run.unavailable)
        elif self._stopping:
            result.outcome, result.reason = OUTCOME_STOPPED, "dispatcher stopping"
        else:
            await self.state.mark_sent(campaign_id, now)
        logger.info(
            "Campaign %s dispatch %s: sent=%d failed=%d",
            campaign_id, result.outcome, result.sent, result.failed,
        )
        return result

    async def _walk(self, run: _Run, pending: list[Recipient]) -> bool:
        """Send to ``pending`` in order. Returns True if quota ran out."""
        tasks: set[asyncio.Task] = set()
        exhausted = False
        try:
            for recipient in pending:
                await run.semaphore.acquire()
                if run.halted or self._stopping:
                    run.semaphore.release()
                    break
                reserved = await self._reserve(run)
                while not reserved and not run.halted:
                    # In-flight sends may fail and hand their slot back.
                    running = [t for t in tasks if not t.done()]
                    if not running:
                        break
                    await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                    reserved = not run.halted and await self._reserve(run)
                if not reserved:
                    run.semaphore.release()
                    exhausted = not run.halted
                    break
                task = asyncio.create_task(self._send_one(run, recipient))
                tasks.add(task)
        finally:
            if tasks:
                results = await asyncio.gather(*tasks, return_exceptions=True)
                errors = [r for r in results if isinstance(r, BaseException)]
                if errors:
                    raise errors[0]
        return exhausted

    async def _reserve(self, run: _Run) -> bool:
        async with run.quota_lock:
            allowance, sent = await self.quota.usage(run.tenant_id, self.now())
            if not allowance.permits(sent + run.in_flight):
                return False
            run.in_flight += 1
            return True

    def _build_email(self, run: _Run, recipient: Recipient) -> OutboundEmail:
        campaign = run.campaign
        html, text, headers = run.html, run.text, {}
        if self.unsubscribe is not None:
            url = self.unsubscribe.url_for(recipient.contact_id, run.tenant_id, recipient.email, self.now())
            headers["List-Unsubscribe"] = f"<{url}>"
            headers["List-Unsubscribe-Post"] = "List-Unsubscribe=One-Click"
            if html:
                footer = self.unsubscribe.footer_for(
                    recipient.contact_id, run.tenant_id, recipient.email, self.now(), campaign.get("language")
                )
                html = inject_footer(html, footer)
        return OutboundEmail(
            from_address=campaign["sender_email"],
            from_name=campaign.get("sender_name"),
            to_address=recipient.email,
            subject=campaign["subject"],
            text_body=text,
            html_body=html,
            headers=headers,
        )

    async def _send_one(self, run: _Run, recipient: Recipient) -> None:
        committed = False
        try:
            email = self._build_email(run, recipient)
            attempts = 0
            while True:
                attempts += 1
                try:
                    message_id = await self.transport.send(email)
                    break
                except Exception as exc:
                    error = classify_transport_error(exc)
                if error.fatal:
                    run.fatal = run.fatal or error
                    return
                if error.retryable and attempts <= self.max_retries and not run.halted:
                    delay = retry_delay(attempts - 1, self.retry_delays)
                    logger.warning(
                        "Temporary error for %s in campaign %s (attempt %d/%d): %s - retrying in %ds",
                        recipient.email, run.campaign_id, attempts, self.max_retries + 1, error, delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                if error.kind == UNAVAILABLE:
                    run.unavailable = run.unavailable or error
                    return
                await self._record_failure(run, recipient, error, attempts)
                return
            committed = await self._commit(run, recipient, message_id)
        except Exception:
            run.broken = True
            raise
        finally:
            if not committed:
                async with run.quota_lock:
                    run.in_flight -= 1
            run.semaphore.release()

    async def _commit(self, run: _Run, recipient: Recipient, message_id: str) -> bool:
        """Persist a successful send; quota slot moves from in-flight to persisted."""
        async with run.quota_lock:
            async with self.db.transaction() as tx:
                inserted = await tx.execute(
                    INSERT_MESSAGE_SQL,
                    {
                        "campaign_id": run.campaign_id,
                        "message_id": message_id,
                        "recipient_email": recipient.email,
                        "contact_id": recipient.contact_id,
                        "sent_ts": self.now(),
                    },
                )
                if inserted:
                    await tx.execute(counter_increment_sql("sent_count"), {"campaign_id": run.campaign_id})
                    await tx.execute(CONSUME_QUOTA_SQL, {"tenant_id": run.tenant_id})
            run.in_flight -= 1
        if inserted:
            run.sent += 1
            self.metrics.inc_sent(run.tenant_id)
            if self.log_delivery_activity:
                logger.info("Campaign %s: sent to %s (%s)", run.campaign_id, recipient.email, message_id)
        else:
            logger.warning(
                "Campaign %s: %s already has a message row, send not counted",
                run.campaign_id, recipient.email,
            )
        return True

    async def _record_failure(self, run: _Run, recipient: Recipient, error: TransportError, attempts: int) -> None:
        await self.db.campaign_failures.record(
            run.campaign_id,
            recipient.email,
            str(error),
            self.now(),
            attempts=attempts,
            error_code=error.smtp_code,
            contact_id=recipient.contact_id,
        )
        run.failed += 1
        self.metrics.inc_send_error(run.tenant_id)
        logger.warning(
            "Campaign %s: send to %s failed after %d attempt(s): %s",
            run.campaign_id, recipient.email, attempts, error,
        )
