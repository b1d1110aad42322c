"""
Notification Service.

Outbox-style dispatcher for settlement events plus the user's in-app inbox.

Notifications are written after the financial transaction has committed,
in their own transaction, and delivery is retried independently. Nothing
here can change the outcome of a purchase or an approval.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Iterable

import httpx
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.clock import utcnow
from backend.app.core.config import settings
from backend.app.core.reliability import CircuitBreaker, CircuitOpenError, notification_circuit_breaker
from backend.app.models.notification import Notification, NotificationEvent, NotificationStatus
from backend.app.models.dlq import DeadLetterQueue, DLQStatus

logger = logging.getLogger(__name__)

DLQ_TASK_NAME = "notification.dispatch"


@dataclass(frozen=True)
class NotificationDraft:
    """A notification to enqueue once the owning transaction has committed."""
    user_id: str
    event: NotificationEvent
    title: str
    message: str
    order_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class NotificationSink:
    """Delivery channel. Raise to signal a failed delivery."""

    async def send(self, notification: Notification) -> None:
        raise NotImplementedError


class LoggingSink(NotificationSink):

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notification %s -> user=%s event=%s order=%s: %s",
            notification.id, notification.user_id, notification.event.value,
            notification.order_id, notification.title,
        )


class WebhookSink(NotificationSink):
    """POSTs each notification as JSON; any non-2xx response is a failure."""

    def __init__(self, url: str, timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(self, notification: Notification) -> None:
        body = {
            "id": notification.id,
            "user_id": notification.user_id,
            "order_id": notification.order_id,
            "event": notification.event.value,
            "title": notification.title,
            "message": notification.message,
            "metadata": notification.metadata_payload or {},
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()


def default_sink() -> NotificationSink:
    if settings.notification_webhook_url:
        return WebhookSink(settings.notification_webhook_url)
    return LoggingSink()


def retry_delay(attempts: int) -> timedelta:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return timedelta(seconds=settings.notification_retry_base_seconds * (2 ** max(attempts - 1, 0)))


class NotificationDispatcher:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        sink: Optional[NotificationSink] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.session_factory = session_factory
        self.sink = sink or default_sink()
        self.breaker = breaker or notification_circuit_breaker

    async def enqueue(self, drafts: Iterable[NotificationDraft]) -> int:
        """
        Persist drafts as pending notifications.

        Best-effort: any failure is logged and swallowed, so callers can
        invoke this after a commit without guarding it.
        """
        drafts = list(drafts)
        if not drafts:
            return 0

        try:
            async with self.session_factory() as db:
                async with db.begin():
                    db.add_all([
                        Notification(
                            user_id=draft.user_id,
                            order_id=draft.order_id,
                            event=draft.event,
                            title=draft.title,
                            message=draft.message,
                            metadata_payload=draft.metadata or None,
                            status=NotificationStatus.PENDING,
                            attempts=0,
                            next_attempt_at=utcnow(),
                        )
                        for draft in drafts
                    ])
        except Exception:
            logger.exception(
                "Failed to enqueue %d notification(s) for events %s",
                len(drafts), sorted({draft.event.value for draft in drafts}),
            )
            return 0

        return len(drafts)

    async def dispatch_pending(self, limit: int = 100, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Hand due notifications to the sink.

        Each outcome is written in its own short transaction so a slow sink
        never holds a database lock. Returns counts per outcome.
        """
        now = now or utcnow()
        stats = {"sent": 0, "retrying": 0, "failed": 0, "deferred": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(Notification)
                .where(
                    Notification.status == NotificationStatus.PENDING,
                    Notification.next_attempt_at <= now,
                )
                .order_by(Notification.next_attempt_at, Notification.id)
                .limit(limit)
            )
            due = result.scalars().all()

        for position, notification in enumerate(due):
            try:
                await self.breaker.call(self.sink.send, notification)
            except CircuitOpenError:
                # Sink is down; leave the rest pending for the next run
                stats["deferred"] = len(due) - position
                logger.warning("Notification sink circuit open, deferring %d notification(s)", stats["deferred"])
                break
            except Exception as exc:
                outcome = await self._record_failure(notification, exc, now)
                stats[outcome] += 1
                continue

            await self._record_sent(notification.id)
            stats["sent"] += 1

        if due:
            logger.info("Notification dispatch: %s", stats)
        return stats

    async def _record_sent(self, notification_id: int) -> None:
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(
                    update(Notification)
                    .where(Notification.id == notification_id)
                    .values(status=NotificationStatus.SENT, sent_at=utcnow(), last_error=None)
                )

    async def _record_failure(self, notification: Notification, exc: Exception, now: datetime) -> str:
        attempts = notification.attempts + 1
        error = f"{type(exc).__name__}: {exc}"

        async with self.session_factory() as db:
            async with db.begin():
                if attempts >= settings.notification_max_attempts:
                    await db.execute(
                        update(Notification)
                        .where(Notification.id == notification.id)
                        .values(status=NotificationStatus.FAILED, attempts=attempts, last_error=error)
                    )
                    db.add(DeadLetterQueue(
                        task_name=DLQ_TASK_NAME,
                        error_message=error,
                        payload={"notification_id": notification.id, "event": notification.event.value},
                        status=DLQStatus.FAILED,
                        retry_count=attempts,
                    ))
                    logger.error(
                        "Notification %s gave up after %d attempts: %s", notification.id, attempts, error
                    )
                    return "failed"

                await db.execute(
                    update(Notification)
                    .where(Notification.id == notification.id)
                    .values(attempts=attempts, last_error=error, next_attempt_at=now + retry_delay(attempts))
                )

        logger.warning("Notification %s delivery failed (attempt %d): %s", notification.id, attempts, error)
        return "retrying"

    async def requeue_dead_letter(self, dlq_id: int) -> bool:
        """Put a dead-lettered notification back in the outbox with a fresh attempt budget."""
        async with self.session_factory() as db:
            async with db.begin():
                entry = await db.get(DeadLetterQueue, dlq_id, with_for_update=True)
                if entry is None or entry.task_name != DLQ_TASK_NAME or entry.status != DLQStatus.FAILED:
                    return False

                notification_id = (entry.payload or {}).get("notification_id")
                result = await db.execute(
                    update(Notification)
                    .where(Notification.id == notification_id, Notification.status == NotificationStatus.FAILED)
                    .values(status=NotificationStatus.PENDING, attempts=0, next_attempt_at=utcnow())
                )
                entry.status = DLQStatus.RETRYING if result.rowcount else DLQStatus.ARCHIVED
                entry.last_retry_at = utcnow()
                logger.info("DLQ entry %s requeued notification %s", dlq_id, notification_id)
                return result.rowcount > 0


class NotificationInbox:
    """In-app inbox operations; caller commits."""

    @staticmethod
    async def list_for_user(
        db: AsyncSession, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> List[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read == False)
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        result = await db.execute(query)
        return result.scalars().all()

    @staticmethod
    async def unread_count(db: AsyncSession, user_id: str) -> int:
        result = await db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read == False,
            )
        )
        return result.scalar()

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: str) -> bool:
        """Mark a notification as read."""
        stmt = update(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id
        ).values(
            is_read=True,
            read_at=utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount > 0

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: str) -> int:
        """Mark all notifications for user as read."""
        stmt = update(Notification).where(
            Notification.user_id == user_id,
            Notification.is_read == False
        ).values(
            is_read=True,
            read_at=utcnow()
        )
        result = await db.execute(stmt)
        return result.rowcount
