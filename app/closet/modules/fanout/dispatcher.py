"""Fan-out dispatcher: propagates one publishing event to every follower.

FeedItems are written once per event and read through follow edges.
Notifications are written once per follower, in bounded batches, with a
per-batch timeout and a retry work list. Delivery is at-least-once; the read
model collapses duplicates.

Failures never reach the caller that triggered the event. Work that runs out
of attempts is parked in fanout_retries for scripts/redrive_fanout.py.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from concurrent.futures import wait
from dataclasses import dataclass, field
from typing import TypeVar

from app.closet.contracts import FanOutEvent, NotificationDraft, NotificationStore, SocialGraphStore
from app.closet.errors import ClosetError, FanOutPartialFailure, InvalidOperation
from app.closet.modules.fanout.backoff import ExponentialBackoff
from app.closet.modules.fanout.store import STATUS_DONE, STATUS_PENDING, SqlFanOutRetryStore, decode_event
from app.closet.modules.notifications.models import FeedItemType, NotificationType

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FanOutResult:
    event: FanOutEvent
    feed_item_id: int | None = None
    audience_size: int = 0
    delivered: int = 0
    undelivered: list[int] = field(default_factory=list)
    batches: int = 0
    attempts: int = 0
    parked_id: int | None = None

    @property
    def complete(self) -> bool:
        return self.feed_item_id is not None and not self.undelivered


@dataclass
class _WorkBatch:
    recipient_ids: list[int]
    backoff: ExponentialBackoff
    not_before: float = 0.0
    last_error: str | None = None


def _chunks(ids: list[int], size: int) -> Iterable[list[int]]:
    for i in range(0, len(ids), size):
        yield ids[i : i + size]


def new_article_draft(event: FanOutEvent, recipient_id: int) -> NotificationDraft:
    who = event.actor_name or "A seller"
    return NotificationDraft(
        type=NotificationType.NEW_ARTICLE_FROM_FOLLOWED,
        title="New article",
        message=f"{who} published a new article: {event.article_title}",
        user_id=recipient_id,
        actor_id=event.actor_id,
        entity_id=str(event.article_id) if event.article_id is not None else None,
        entity_type="article",
    )


class FanOutDispatcher:
    """Orchestrates feed + notification writes for publishing events."""

    def __init__(
        self,
        graph: SocialGraphStore,
        notifications: NotificationStore,
        parked: SqlFanOutRetryStore | None = None,
        *,
        batch_size: int = 500,
        batch_timeout_seconds: float = 15.0,
        max_attempts: int = 4,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 30.0,
        workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._graph = graph
        self._notifications = notifications
        self._parked = parked
        self.batch_size = batch_size
        self.batch_timeout_seconds = batch_timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep

        self._events = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fanout")
        self._writes = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fanout-batch")
        self._inflight: set[Future] = set()
        self._lock = threading.Lock()

    def _backoff(self) -> ExponentialBackoff:
        return ExponentialBackoff(base_delay=self.retry_base_delay, max_delay=self.retry_max_delay)

    # -- public entry points ------------------------------------------------

    def submit(self, event: FanOutEvent) -> Future:
        """Fire-and-continue: schedule the fan-out and return immediately."""
        fut = self._events.submit(self._run_in_background, event)
        with self._lock:
            self._inflight.add(fut)
        fut.add_done_callback(self._forget)
        logger.debug("Fan-out scheduled kind=%s actor=%s article=%s", event.kind, event.actor_id, event.article_id)
        return fut

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every scheduled fan-out. Returns False on timeout."""
        with self._lock:
            pending = list(self._inflight)
        if not pending:
            return True
        _done, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, wait_for_pending: bool = True) -> None:
        self._events.shutdown(wait=wait_for_pending)
        self._writes.shutdown(wait=wait_for_pending)

    def dispatch(self, event: FanOutEvent) -> FanOutResult:
        """
        Run the whole fan-out for one event on the calling thread.
        Raises FanOutPartialFailure (after parking the remainder) if any
        follower could not be notified within max_attempts.
        """
        if event.kind != FeedItemType.NEW_ARTICLE:
            raise InvalidOperation(f"Unsupported fan-out event kind: {event.kind}")
        result = FanOutResult(event=event)

        try:
            audience = self._with_retries(
                "load audience", lambda: self._graph.list_follower_ids(event.actor_id)
            )
        except ClosetError as e:
            self._give_up(result, None, e)

        audience = sorted(set(audience))
        result.audience_size = len(audience)

        try:
            feed_item = self._with_retries(
                "feed item",
                lambda: self._notifications.insert_feed_item(
                    type=FeedItemType.NEW_ARTICLE, user_id=event.actor_id, article_id=event.article_id
                ),
            )
        except ClosetError as e:
            self._give_up(result, audience, e)
        result.feed_item_id = feed_item.id

        self._deliver(event, audience, result)
        if result.undelivered:
            self._give_up(
                result,
                result.undelivered,
                FanOutPartialFailure("Batches exhausted their attempts.", undelivered=result.undelivered),
            )

        logger.info(
            "Fan-out complete kind=%s actor=%s article=%s audience=%d batches=%d attempts=%d",
            event.kind,
            event.actor_id,
            event.article_id,
            result.audience_size,
            result.batches,
            result.attempts,
        )
        return result

    def notify_new_follower(self, *, follower_id: int, follower_name: str, followed_id: int) -> bool:
        """Audience of one: written synchronously, no batching."""
        draft = NotificationDraft(
            type=NotificationType.NEW_FOLLOWER,
            title="New follower",
            message=f"{follower_name or 'Someone'} started following you",
            user_id=followed_id,
            actor_id=follower_id,
            entity_id=str(follower_id),
            entity_type="user",
        )
        try:
            self._notifications.insert_notifications_batch([draft])
        except ClosetError as e:
            logger.warning(
                "NEW_FOLLOWER notification failed follower=%s followed=%s: %s", follower_id, followed_id, e
            )
            return False
        return True

    def publish_feed_item(self, *, type: str, user_id: int, article_id: int | None = None, content: str | None = None):
        """Write-once activity record with no per-recipient rows."""
        return self._notifications.insert_feed_item(type=type, user_id=user_id, article_id=article_id, content=content)

    def redrive(self, limit: int = 100) -> dict[str, int]:
        """Re-run parked work. Returns counters for logging/CLI output."""
        if self._parked is None:
            return {"picked": 0, "done": 0, "failed": 0}
        picked = done = failed = 0
        for row in self._parked.list_pending(limit=limit):
            picked += 1
            event = decode_event(row.event_json)
            recipients: list[int] | None = json.loads(row.recipient_ids_json)
            result = FanOutResult(event=event, feed_item_id=row.feed_item_id)
            try:
                if recipients is None:
                    recipients = sorted(set(self._graph.list_follower_ids(event.actor_id)))
                if result.feed_item_id is None:
                    item = self._notifications.insert_feed_item(
                        type=FeedItemType.NEW_ARTICLE, user_id=event.actor_id, article_id=event.article_id
                    )
                    result.feed_item_id = item.id
                result.audience_size = len(recipients)
                self._deliver(event, recipients, result)
            except ClosetError as e:
                failed += 1
                self._parked.update(
                    row.id, status=STATUS_PENDING, recipient_ids=recipients, feed_item_id=result.feed_item_id, error=str(e)
                )
                logger.warning("Re-drive of parked fan-out %s failed: %s", row.id, e)
                continue

            if result.undelivered:
                failed += 1
                self._parked.update(
                    row.id,
                    status=STATUS_PENDING,
                    recipient_ids=result.undelivered,
                    feed_item_id=result.feed_item_id,
                    error="batches exhausted their attempts",
                )
            else:
                done += 1
                self._parked.update(row.id, status=STATUS_DONE, recipient_ids=[], feed_item_id=result.feed_item_id)
        logger.info("Fan-out re-drive picked=%d done=%d failed=%d", picked, done, failed)
        return {"picked": picked, "done": done, "failed": failed}

    # -- internals --------------------------------------------------------

    def _forget(self, fut: Future) -> None:
        with self._lock:
            self._inflight.discard(fut)

    def _run_in_background(self, event: FanOutEvent) -> FanOutResult | None:
        try:
            return self.dispatch(event)
        except FanOutPartialFailure as e:
            logger.error(
                "Fan-out partial failure kind=%s actor=%s article=%s undelivered=%d: %s",
                event.kind,
                event.actor_id,
                event.article_id,
                len(e.undelivered),
                e.message,
            )
            return e.details.get("result")  # type: ignore[return-value]
        except Exception:
            # Nobody awaits this future in production; make sure the failure is visible.
            logger.exception("Fan-out crashed kind=%s actor=%s article=%s", event.kind, event.actor_id, event.article_id)
            raise

    def _with_retries(self, what: str, fn: Callable[[], T]) -> T:
        backoff = self._backoff()
        while True:
            try:
                return fn()
            except ClosetError as e:
                if backoff.attempt + 1 >= self.max_attempts:
                    logger.error("Fan-out step '%s' failed after %d attempts: %s", what, backoff.attempt + 1, e)
                    raise
                delay = backoff.next_delay()
                logger.warning("Fan-out step '%s' failed (attempt %d), retrying in %.2fs: %s", what, backoff.attempt, delay, e)
                self._sleep(delay)

    def _deliver(self, event: FanOutEvent, recipient_ids: list[int], result: FanOutResult) -> None:
        """
        Drain a bounded work list of batches. A failed or timed-out batch goes
        to the back of the list with its own backoff; acknowledged batches are
        never re-sent.
        """
        queue: deque[_WorkBatch] = deque(
            _WorkBatch(recipient_ids=chunk, backoff=self._backoff()) for chunk in _chunks(recipient_ids, self.batch_size)
        )
        result.batches += len(queue)
        while queue:
            batch = queue.popleft()
            wait_for = batch.not_before - time.monotonic()
            if wait_for > 0:
                self._sleep(wait_for)

            result.attempts += 1
            drafts = [new_article_draft(event, rid) for rid in batch.recipient_ids]
            try:
                self._write_batch(drafts)
            except (ClosetError, FutureTimeout) as e:
                batch.last_error = str(e) or e.__class__.__name__
                if batch.backoff.attempt + 1 >= self.max_attempts:
                    logger.error(
                        "Fan-out batch of %d for article=%s gave up after %d attempts: %s",
                        len(batch.recipient_ids),
                        event.article_id,
                        batch.backoff.attempt + 1,
                        batch.last_error,
                    )
                    result.undelivered.extend(batch.recipient_ids)
                    continue
                delay = batch.backoff.next_delay()
                batch.not_before = time.monotonic() + delay
                logger.warning(
                    "Fan-out batch of %d for article=%s failed (attempt %d), requeued with %.2fs delay: %s",
                    len(batch.recipient_ids),
                    event.article_id,
                    batch.backoff.attempt,
                    delay,
                    batch.last_error,
                )
                queue.append(batch)
                continue
            result.delivered += len(batch.recipient_ids)

    def _write_batch(self, drafts: list[NotificationDraft]) -> int:
        fut = self._writes.submit(self._notifications.insert_notifications_batch, drafts)
        try:
            return fut.result(timeout=self.batch_timeout_seconds or None)
        except FutureTimeout:
            # The write may still land later; at-least-once delivery tolerates that.
            fut.cancel()
            raise

    def _give_up(self, result: FanOutResult, remaining: list[int] | None, cause: ClosetError) -> None:
        undelivered = list(remaining) if remaining is not None else []
        result.undelivered = undelivered
        if self._parked is not None:
            try:
                result.parked_id = self._parked.park(
                    result.event, remaining, feed_item_id=result.feed_item_id, error=cause.message
                )
                logger.error(
                    "Parked fan-out work id=%s article=%s recipients=%s",
                    result.parked_id,
                    result.event.article_id,
                    "all" if remaining is None else len(undelivered),
                )
            except ClosetError:
                logger.exception("Could not park fan-out work for article=%s", result.event.article_id)
        raise FanOutPartialFailure(
            f"Fan-out incomplete for article {result.event.article_id}: {cause.message}",
            undelivered=undelivered,
            result=result,
        ) from cause
