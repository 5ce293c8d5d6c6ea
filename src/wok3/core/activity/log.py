"""
Append-only activity log.

Events are kept in memory for queries and appended to
.wok3/activity.jsonl, one JSON object per line. Streaming subscribers get
their own bounded queue; publishing never blocks, and a subscriber that
falls behind loses events rather than slowing down the core.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from wok3.core.config.models import ActivityConfig

from .models import ActivityCategory, ActivityEvent, ActivitySeverity

logger = logging.getLogger(__name__)

ACTIVITY_FILE_NAME = "activity.jsonl"
DEFAULT_QUERY_LIMIT = 100
MAX_QUERY_LIMIT = 1000
DEFAULT_SUBSCRIBER_QUEUE_SIZE = 256

_TIMESTAMP_STEP = timedelta(microseconds=1)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO 8601 timestamp (a trailing 'Z' is accepted)."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


class ActivitySubscription:
    """
    A live feed of newly appended events.

    Iterate it with ``async for``; iteration ends once the subscription is
    closed and its queue drained.

    Example:
        >>> with activity_log.subscribe() as feed:
        ...     async for event in feed:
        ...         print(event.title)
    """

    def __init__(self, log: ActivityLog, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE):
        self._log = log
        self._queue: asyncio.Queue[Optional[ActivityEvent]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ActivityEvent) -> bool:
        """Queue ``event`` without blocking. Returns False if it was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Activity subscriber queue full, dropping event %s", event.id)
            return False

    async def get(self, timeout: float | None = None) -> ActivityEvent | None:
        """
        Wait for the next event.

        Returns:
            The event, or None on timeout or when the subscription is closed
        """
        if self._closed and self._queue.empty():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._log.unsubscribe(self)
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self) -> ActivitySubscription:
        return self

    async def __anext__(self) -> ActivityEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def __enter__(self) -> ActivitySubscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class ActivityLog:
    """
    Append-only, queryable, streamable log of lifecycle events.

    ``append``/``record`` are the only mutations apart from retention
    pruning. Timestamps are clamped to be strictly increasing so the log's
    order is also its time order.

    Example:
        >>> log = ActivityLog(Path(".wok3"), project_name="shop")
        >>> log.record(ActivityCategory.WORKTREE, "started", ActivitySeverity.SUCCESS,
        ...            'Started "auth-fix"', worktree_id="auth-fix")
        >>> [e.type for e in log.query(worktree_id="auth-fix")]
        ['started']
    """

    def __init__(
        self,
        state_dir: Path,
        config: ActivityConfig | None = None,
        project_name: str | None = None,
    ):
        self.log_file = Path(state_dir) / ACTIVITY_FILE_NAME
        self.project_name = project_name
        self._config = config or ActivityConfig()
        self._lock = threading.Lock()
        self._subscribers: set[ActivitySubscription] = set()
        self._events: list[ActivityEvent] = self._load()
        self.prune()

    @property
    def config(self) -> ActivityConfig:
        return self._config

    def update_config(self, config: ActivityConfig) -> None:
        self._config = config

    def _load(self) -> list[ActivityEvent]:
        if not self.log_file.exists():
            return []

        events: list[ActivityEvent] = []
        skipped = 0
        with self.log_file.open(encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(ActivityEvent.model_validate_json(line))
                except ValidationError:
                    skipped += 1
        if skipped:
            logger.warning("Skipped %d unreadable lines in %s", skipped, self.log_file)
        events.sort(key=lambda e: e.timestamp)
        return events

    def _write_line(self, event: ActivityEvent) -> None:
        try:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            with self.log_file.open("a", encoding="utf-8") as f:
                f.write(event.to_json_line())
                f.write("\n")
        except OSError as e:
            # The event is still kept in memory and published
            logger.warning("Failed to persist activity event %s: %s", event.id, e)

    def is_enabled(self, category: ActivityCategory | str) -> bool:
        key = category.value if isinstance(category, ActivityCategory) else str(category)
        return self._config.categories.get(key, True)

    def append(self, event: ActivityEvent) -> ActivityEvent:
        """
        Append an event, persist it and publish it to subscribers.

        Events of a disabled category are returned unchanged but neither
        stored nor published.

        Returns:
            The stored event (its timestamp may have been clamped)
        """
        if not self.is_enabled(event.category):
            return event

        with self._lock:
            timestamp = _as_utc(event.timestamp)
            if self._events and timestamp <= self._events[-1].timestamp:
                timestamp = self._events[-1].timestamp + _TIMESTAMP_STEP
            if timestamp != event.timestamp:
                event = event.model_copy(update={"timestamp": timestamp})

            self._events.append(event)
            self._write_line(event)
            for subscriber in list(self._subscribers):
                subscriber.publish(event)

        return event

    def record(
        self,
        category: ActivityCategory,
        type: str,
        severity: ActivitySeverity,
        title: str,
        detail: str | None = None,
        worktree_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ActivityEvent:
        """Build an event stamped with the project name and append it."""
        event = ActivityEvent(
            category=category,
            type=type,
            severity=severity,
            title=title,
            detail=detail,
            worktree_id=worktree_id,
            project_name=self.project_name,
            metadata=metadata or {},
        )
        return self.append(event)

    def query(
        self,
        since: Union[str, datetime, None] = None,
        category: ActivityCategory | str | None = None,
        worktree_id: str | None = None,
        limit: int | None = DEFAULT_QUERY_LIMIT,
    ) -> list[ActivityEvent]:
        """
        Return events in chronological order.

        Args:
            since: Cursor; an event id or a timestamp. Only events after it
                are returned, oldest first.
            category: Only events of this category
            worktree_id: Only events about this worktree
            limit: Maximum number of events, capped at MAX_QUERY_LIMIT

        Returns:
            Without ``since`` the most recent ``limit`` events; with it the
            first ``limit`` events after the cursor.
        """
        limit = DEFAULT_QUERY_LIMIT if not limit or limit < 1 else min(limit, MAX_QUERY_LIMIT)

        with self._lock:
            events = list(self._events)

        if since is not None:
            events = self._after_cursor(events, since)
        if category is not None:
            key = category.value if isinstance(category, ActivityCategory) else str(category)
            events = [e for e in events if e.category == key]
        if worktree_id is not None:
            events = [e for e in events if e.worktree_id == worktree_id]

        if since is not None:
            return events[:limit]
        return events[-limit:]

    @staticmethod
    def _after_cursor(
        events: list[ActivityEvent], since: Union[str, datetime]
    ) -> list[ActivityEvent]:
        if isinstance(since, datetime):
            cutoff = _as_utc(since)
            return [e for e in events if e.timestamp > cutoff]

        for index, event in enumerate(events):
            if event.id == since:
                return events[index + 1 :]

        cutoff_or_none = parse_timestamp(since)
        if cutoff_or_none is None:
            # Unknown id (e.g. pruned): replay from the oldest retained event
            logger.debug("Unknown activity cursor %r, returning from the start", since)
            return events
        return [e for e in events if e.timestamp > cutoff_or_none]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def subscribe(self, maxsize: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> ActivitySubscription:
        """Attach a streaming subscriber that receives events appended from now on."""
        subscription = ActivitySubscription(self, maxsize=maxsize)
        with self._lock:
            self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: ActivitySubscription) -> None:
        with self._lock:
            self._subscribers.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def prune(self, now: datetime | None = None) -> int:
        """
        Drop events older than the retention period, in memory and on disk.

        Returns:
            Number of events removed
        """
        cutoff = _as_utc(now or datetime.now(timezone.utc)) - timedelta(
            days=self._config.retention_days
        )
        with self._lock:
            kept = [e for e in self._events if e.timestamp > cutoff]
            removed = len(self._events) - len(kept)
            if removed == 0:
                return 0
            self._events = kept
            try:
                tmp = self.log_file.with_suffix(".jsonl.tmp")
                with tmp.open("w", encoding="utf-8") as f:
                    for event in kept:
                        f.write(event.to_json_line())
                        f.write("\n")
                tmp.replace(self.log_file)
            except OSError as e:
                logger.warning("Failed to rewrite %s while pruning: %s", self.log_file, e)

        logger.info("Pruned %d activity events older than %s", removed, cutoff.isoformat())
        return removed

    def is_toast_event(self, event_type: str) -> bool:
        return event_type in self._config.toast_events

    def is_os_notification_event(self, event_type: str) -> bool:
        return event_type in self._config.os_notification_events

    def close(self) -> None:
        """Close every subscription; their iterators finish after draining."""
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()
