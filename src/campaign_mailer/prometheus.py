# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for campaign dispatch and delivery tracking.

All metrics use the ``cmp_`` prefix (campaign mailer).

Metrics exposed:
    - ``cmp_sent_total``: Counter of sent campaign emails per tenant.
    - ``cmp_send_errors_total``: Counter of recipients whose send failed.
    - ``cmp_quota_exhausted_total``: Counter of campaigns stopped by quota.
    - ``cmp_delivery_events_total``: Counter of counted delivery events per type.
    - ``cmp_unknown_events_total``: Counter of events for unknown message ids.
    - ``cmp_campaigns_dispatching``: Gauge of campaigns currently dispatching.

Example:
    Scraped through the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class CampaignMetrics:
    """Prometheus collector for the campaign mailer.

    Attributes:
        registry: The CollectorRegistry holding all metrics.
        sent: Counter of successful sends, labelled by ``tenant_id``.
        send_errors: Counter of recorded per-recipient failures.
        quota_exhausted: Counter of campaigns failed with "quota exhausted".
        delivery_events: Counter of delivery events applied to campaigns.
        unknown_events: Counter of discarded events.
        dispatching: Gauge of running dispatches.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "cmp_sent_total",
            "Total campaign emails sent",
            ["tenant_id"],
            registry=self.registry,
        )
        self.send_errors = Counter(
            "cmp_send_errors_total",
            "Total recipients whose send failed",
            ["tenant_id"],
            registry=self.registry,
        )
        self.quota_exhausted = Counter(
            "cmp_quota_exhausted_total",
            "Total campaigns stopped by quota exhaustion",
            ["tenant_id"],
            registry=self.registry,
        )
        self.delivery_events = Counter(
            "cmp_delivery_events_total",
            "Total delivery events counted",
            ["event_type"],
            registry=self.registry,
        )
        self.unknown_events = Counter(
            "cmp_unknown_events_total",
            "Total delivery events discarded for unknown message ids",
            registry=self.registry,
        )
        self.dispatching = Gauge(
            "cmp_campaigns_dispatching",
            "Campaigns currently being dispatched",
            registry=self.registry,
        )

    def inc_sent(self, tenant_id: str) -> None:
        self.sent.labels(tenant_id=tenant_id or "default").inc()

    def inc_send_error(self, tenant_id: str) -> None:
        self.send_errors.labels(tenant_id=tenant_id or "default").inc()

    def inc_quota_exhausted(self, tenant_id: str) -> None:
        self.quota_exhausted.labels(tenant_id=tenant_id or "default").inc()

    def inc_delivery_event(self, event_type: str) -> None:
        self.delivery_events.labels(event_type=event_type).inc()

    def inc_unknown_event(self) -> None:
        self.unknown_events.inc()

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
