"""
snippetfactory/features/usage/service.py

Usage accounting service.

Handles:
- Usage event emission (append-only; nothing here updates or deletes events)
- Fire-and-forget dispatch so recording never fails or delays a gated action
- Windowed counts and per-feature summaries

Quota state lives in the app_users counters, not in this ledger, so
at-least-once delivery here is fine.
"""

from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from functools import lru_cache
from threading import Lock
from typing import Any, Dict, List, Optional, Set
import logging

from sqlalchemy import func, insert, select

from snippetfactory.core.clock import ensure_utc, normalize_now
from snippetfactory.core.config import settings
from snippetfactory.core.database import session_scope, usage_events
from snippetfactory.models.usage_event import UsageEvent


logger = logging.getLogger(__name__)


class UsageRecorder:
    """
    Appends usage events.

    record() writes synchronously and raises on failure. The other entry
    points never raise: dispatch() hands the write to a worker thread and
    returns at once, record_with_timeout() waits a bounded time.
    """

    def __init__(self, max_workers: Optional[int] = None, timeout_seconds: Optional[float] = None):
        self.max_workers = max_workers or settings.USAGE_RECORDER_WORKERS
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.USAGE_RECORD_TIMEOUT_SECONDS
        )
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="usage-recorder",
        )
        self._pending: Set[Future] = set()
        self._lock = Lock()

    def record(
        self,
        user_id: str,
        feature: str,
        usage_type: str,
        quantity: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> UsageEvent:
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        event = UsageEvent(
            user_id=user_id,
            feature=feature,
            usage_type=usage_type,
            quantity=quantity,
            occurred_at=normalize_now(occurred_at),
            metadata=metadata,
        )
        with session_scope() as session:
            session.execute(
                insert(usage_events).values(
                    user_id=event.user_id,
                    feature=event.feature,
                    usage_type=event.usage_type,
                    quantity=event.quantity,
                    metadata=event.metadata,
                    occurred_at=event.occurred_at,
                )
            )
        return event

    def record_safely(self, user_id: str, feature: str, usage_type: str, **kwargs) -> Optional[UsageEvent]:
        """record() that logs and swallows every failure."""
        try:
            return self.record(user_id, feature, usage_type, **kwargs)
        except Exception as exc:
            logger.warning(
                "[usage] record failed",
                extra={
                    "user_id": user_id,
                    "feature": feature,
                    "usage_type": usage_type,
                    "error": str(exc),
                },
            )
            return None

    def dispatch(self, user_id: str, feature: str, usage_type: str, **kwargs) -> Optional[Future]:
        """Queue the write and return immediately."""
        try:
            future = self._executor.submit(self.record_safely, user_id, feature, usage_type, **kwargs)
        except RuntimeError as exc:
            # Executor already shut down
            logger.warning(
                "[usage] dispatch rejected",
                extra={"user_id": user_id, "feature": feature, "error": str(exc)},
            )
            return None
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def record_with_timeout(
        self,
        user_id: str,
        feature: str,
        usage_type: str,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> Optional[UsageEvent]:
        """Dispatch and wait at most `timeout` seconds; expiry is logged, not raised."""
        future = self.dispatch(user_id, feature, usage_type, **kwargs)
        if future is None:
            return None
        wait_for = self.timeout_seconds if timeout is None else timeout
        try:
            return future.result(timeout=wait_for)
        except FutureTimeoutError:
            logger.warning(
                "[usage] record timed out, continuing",
                extra={"user_id": user_id, "feature": feature, "timeout_seconds": wait_for},
            )
            return None

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every dispatched write has finished (tests, shutdown)."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            try:
                future.result(timeout=timeout)
            except FutureTimeoutError:
                logger.warning("[usage] flush timed out", extra={"pending": len(pending)})
                return

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)


@lru_cache(maxsize=1)
def get_usage_recorder() -> UsageRecorder:
    """Process-wide recorder. Tests reset it with get_usage_recorder.cache_clear()."""
    return UsageRecorder()


def get_usage_events(
    user_id: str,
    feature: Optional[str] = None,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
) -> List[UsageEvent]:
    """
    Get usage events for a user.

    Args:
        user_id: User to query
        feature: Optional filter by feature key
        start_time: Optional start of time window (inclusive)
        end_time: Optional end of time window (inclusive)

    Returns:
        List of UsageEvent instances, oldest first
    """
    with session_scope() as session:
        query = select(usage_events).where(usage_events.c.user_id == user_id)
        if feature:
            query = query.where(usage_events.c.feature == feature)
        if start_time:
            query = query.where(usage_events.c.occurred_at >= ensure_utc(start_time))
        if end_time:
            query = query.where(usage_events.c.occurred_at <= ensure_utc(end_time))

        rows = session.execute(query.order_by(usage_events.c.occurred_at, usage_events.c.id)).all()
        return [
            UsageEvent(
                user_id=row.user_id,
                feature=row.feature,
                usage_type=row.usage_type,
                quantity=row.quantity,
                occurred_at=ensure_utc(row.occurred_at),
                metadata=row.metadata,
            )
            for row in rows
        ]


def count_usage_events(
    user_id: str,
    feature: str,
    since: datetime,
    until: Optional[datetime] = None,
) -> int:
    """Number of events (not summed quantity) with since <= occurred_at [<= until]."""
    with session_scope() as session:
        query = (
            select(func.count())
            .select_from(usage_events)
            .where(usage_events.c.user_id == user_id)
            .where(usage_events.c.feature == feature)
            .where(usage_events.c.occurred_at >= ensure_utc(since))
        )
        if until is not None:
            query = query.where(usage_events.c.occurred_at <= ensure_utc(until))
        return int(session.execute(query).scalar() or 0)


def summarize_usage(
    user_id: str,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> Dict[str, int]:
    """
    Summed quantity per feature.

    Pure function: same user_id + same now + same window = same totals.

    Returns:
        Example: {"api": 42, "snippets": 7}
    """
    normalized_now = normalize_now(now)
    with session_scope() as session:
        query = (
            select(usage_events.c.feature, func.sum(usage_events.c.quantity))
            .where(usage_events.c.user_id == user_id)
            .where(usage_events.c.occurred_at <= normalized_now)
            .group_by(usage_events.c.feature)
        )
        if window_days:
            query = query.where(usage_events.c.occurred_at >= normalized_now - timedelta(days=window_days))
        rows = session.execute(query).all()
    return {feature: int(total or 0) for feature, total in rows}
