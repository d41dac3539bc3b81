"""Drains the notification queue through the configured delivery channels."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from django.db import connections, transaction
from django.utils import timezone

from .audit import AuditRecorder
from .channels import Content, DeliveryChannel, Recipient, build_channels, content_for, recipient_for
from .conf import workflow_setting
from .exceptions import DeliveryFailure
from .models import QueuedNotification
from .notification_queue import NotificationQueue

logger = logging.getLogger(__name__)

Status = QueuedNotification.Status


@dataclass(frozen=True)
class ChannelOutcome:
    channel: str
    primary: bool
    ok: bool
    error: str = ""


@dataclass
class DispatchReport:
    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0
    purged: int = 0


def _attempt(channel: DeliveryChannel, recipient: Recipient, content: Content) -> bool:
    try:
        return channel.deliver(recipient, content)
    except DeliveryFailure:
        raise
    except Exception as exc:
        raise DeliveryFailure(channel.name, repr(exc)) from exc
    finally:
        if channel.uses_database:
            # Worker threads open their own connections; do not leak them.
            connections.close_all()


class NotificationDispatcher:
    """One dispatch cycle per ``run_cycle`` call.

    Channel attempts for a batch fan out over a bounded thread pool, each with
    its own timeout. Status changes are written afterwards from the calling
    thread, once per entry, so no two workers ever touch the same row.
    """

    def __init__(
        self,
        queue: Optional[NotificationQueue] = None,
        channels: Optional[Sequence[DeliveryChannel]] = None,
        *,
        audit: Optional[AuditRecorder] = None,
        max_workers: Optional[int] = None,
        channel_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.queue = queue or NotificationQueue()
        self.channels = list(channels) if channels is not None else build_channels()
        self.audit = audit or AuditRecorder()
        self.max_workers = max_workers or workflow_setting("DISPATCH_WORKERS")
        self.channel_timeout = channel_timeout or workflow_setting("CHANNEL_TIMEOUT")
        self.max_attempts = max_attempts or workflow_setting("MAX_DELIVERY_ATTEMPTS")
        self.batch_size = batch_size or workflow_setting("DISPATCH_BATCH_SIZE")
        if not any(channel.primary for channel in self.channels):
            raise ValueError("NotificationDispatcher needs a primary channel.")

    def run_cycle(self, now: Optional[datetime] = None) -> DispatchReport:
        now = now or timezone.now()
        report = DispatchReport()
        report.expired = self.queue.expire_stale(now)
        batch = self.queue.next_batch(self.batch_size, now)
        outcomes = self._deliver_batch(batch)
        for entry in batch:
            self._apply_outcome(entry, outcomes[entry.pk], now, report)
        report.purged = self.queue.purge(now)
        if batch:
            logger.info(
                "Dispatch cycle: processed=%d sent=%d retried=%d failed=%d skipped=%d purged=%d",
                report.processed,
                report.sent,
                report.retried,
                report.failed,
                report.skipped,
                report.purged,
            )
        return report

    def _deliver_batch(self, batch: List[QueuedNotification]) -> Dict[int, List[ChannelOutcome]]:
        if not batch:
            return {}
        work = [(entry.pk, recipient_for(entry), content_for(entry)) for entry in batch]
        results: Dict[int, List[ChannelOutcome]] = {}
        channel_pool = ThreadPoolExecutor(
            max_workers=self.max_workers * len(self.channels),
            thread_name_prefix="leave-channel",
        )
        try:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="leave-dispatch") as pool:
                futures = {
                    pool.submit(self._deliver_one, channel_pool, recipient, content): pk
                    for pk, recipient, content in work
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
        finally:
            # A hung channel call keeps its thread; it is not waited on.
            channel_pool.shutdown(wait=False, cancel_futures=True)
        return results

    def _deliver_one(
        self,
        channel_pool: ThreadPoolExecutor,
        recipient: Recipient,
        content: Content,
    ) -> List[ChannelOutcome]:
        futures = {channel_pool.submit(_attempt, channel, recipient, content): channel for channel in self.channels}
        _, not_done = wait(futures, timeout=self.channel_timeout)
        outcomes = []
        for future, channel in futures.items():
            if future in not_done:
                future.cancel()
                outcomes.append(
                    ChannelOutcome(channel.name, channel.primary, False, f"timed out after {self.channel_timeout}s")
                )
                continue
            try:
                future.result()
            except DeliveryFailure as exc:
                outcomes.append(ChannelOutcome(channel.name, channel.primary, False, exc.reason))
            else:
                outcomes.append(ChannelOutcome(channel.name, channel.primary, True))
        return outcomes

    def _apply_outcome(
        self,
        entry: QueuedNotification,
        outcomes: List[ChannelOutcome],
        now: datetime,
        report: DispatchReport,
    ) -> None:
        report.processed += 1
        failures = [outcome for outcome in outcomes if not outcome.ok]
        for outcome in failures:
            logger.warning("Notification %s: %s channel failed: %s", entry.pk, outcome.channel, outcome.error)
        primary_ok = any(outcome.ok for outcome in outcomes if outcome.primary)
        error_text = "; ".join(f"{outcome.channel}: {outcome.error}" for outcome in failures)

        with transaction.atomic():
            if primary_ok:
                new_status = Status.SENT
                attempts = entry.delivery_attempts
                updated = QueuedNotification.objects.filter(pk=entry.pk, status=Status.PENDING).update(
                    status=new_status,
                    sent_at=now,
                    last_attempt_at=now,
                    last_error=error_text,
                    updated_at=now,
                )
            else:
                attempts = entry.delivery_attempts + 1
                new_status = Status.FAILED if attempts >= self.max_attempts else Status.PENDING
                # A refresh by a duplicate enqueue resets attempts; do not overwrite it.
                updated = QueuedNotification.objects.filter(
                    pk=entry.pk,
                    status=Status.PENDING,
                    delivery_attempts=entry.delivery_attempts,
                ).update(
                    status=new_status,
                    delivery_attempts=attempts,
                    last_attempt_at=now,
                    last_error=error_text,
                    updated_at=now,
                )
            if not updated:
                report.skipped += 1
                logger.info("Notification %s changed during dispatch; outcome not applied", entry.pk)
                return

            if new_status == Status.SENT:
                report.sent += 1
                action = "notification_sent"
            elif new_status == Status.FAILED:
                report.failed += 1
                action = "notification_failed"
                logger.error("Notification %s failed after %d attempts: %s", entry.pk, attempts, error_text)
            else:
                report.retried += 1
                action = "notification_retry"

            self.audit.record(
                action,
                request_id=entry.request_id,
                level_number=entry.metadata.get("level_number") if entry.metadata else None,
                previous_status=Status.PENDING,
                new_status=new_status,
                metadata={
                    "notification_id": entry.pk,
                    "type": entry.type,
                    "recipient_user_id": entry.recipient_user_id,
                    "delivery_attempts": attempts,
                    "channels": {outcome.channel: outcome.ok for outcome in outcomes},
                    "errors": {outcome.channel: outcome.error for outcome in failures},
                },
                at=now,
            )
