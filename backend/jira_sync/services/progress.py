"""Progress reporting for sync runs."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from jira_sync.models.sync_run import SyncRun
from jira_sync.models.types import utcnow
from jira_sync.schemas.sync import ProgressEvent

log = logging.getLogger(__name__)

ENTITIES = ("projects", "issues", "worklogs", "users")


class ProgressPublisher(ABC):
    """Channel progress events are pushed to."""

    @abstractmethod
    async def publish(self, event: ProgressEvent) -> None:
        pass


class LoggingPublisher(ProgressPublisher):
    async def publish(self, event: ProgressEvent) -> None:
        log.info(f"Run #{event.run_id}: {event.operation} ({event.percentage:.1f}%)")


class ProgressBroadcaster(ProgressPublisher):
    """In-process fan-out: one bounded queue per subscriber and run."""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[int, Set[asyncio.Queue]] = {}

    def subscribe(self, run_id: int) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.setdefault(run_id, set()).add(queue)
        return queue

    def unsubscribe(self, run_id: int, queue: asyncio.Queue):
        queues = self._subscribers.get(run_id)
        if queues:
            queues.discard(queue)
            if not queues:
                del self._subscribers[run_id]

    def subscriber_count(self, run_id: int) -> int:
        return len(self._subscribers.get(run_id, ()))

    async def publish(self, event: ProgressEvent) -> None:
        for queue in list(self._subscribers.get(event.run_id, ())):
            if queue.full():
                # Slow consumer: drop its oldest event
                queue.get_nowait()
            queue.put_nowait(event)


# Shared by the API (subscribers) and runs started from it (publisher)
broadcaster = ProgressBroadcaster()


def estimate_completion(processed: int, total: int, elapsed_seconds: float,
                        now: datetime) -> Optional[datetime]:
    """ETA from observed throughput; None until there is something to measure."""
    if total <= 0 or processed <= 0 or elapsed_seconds <= 0:
        return None
    remaining = max(total - processed, 0)
    rate = processed / elapsed_seconds
    return now + timedelta(seconds=remaining / rate)


class ProgressReporter:
    """
    Publishes coarse-grained progress for one run at a time.

    The run is passed explicitly on every call. Publishing is scheduled as a
    background task when an event loop is running so the sync never waits on
    observers, and publisher failures are only logged.
    """

    def __init__(self, publisher: Optional[ProgressPublisher] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.publisher = publisher or LoggingPublisher()
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()
        self.last_event: Optional[ProgressEvent] = None

    @staticmethod
    def counts_for(run: SyncRun) -> Dict[str, Dict[str, int]]:
        return {
            entity: {
                "total": getattr(run, f"total_{entity}") or 0,
                "processed": getattr(run, f"processed_{entity}") or 0,
            }
            for entity in ENTITIES
        }

    def report(self, run: SyncRun, operation: str, percentage: Optional[float] = None,
               deltas: Optional[Dict[str, int]] = None) -> ProgressEvent:
        """
        Update the run's progress fields and publish an event.

        Args:
            run: The run being reported on
            operation: Human-readable label of the current step
            percentage: New progress percentage (clamped to 0-100); unchanged when None
            deltas: Increments for processed counters, e.g. ``{"issues": 25}``
        """
        for entity, delta in (deltas or {}).items():
            attr = f"processed_{entity}"
            setattr(run, attr, (getattr(run, attr) or 0) + delta)
        if percentage is not None:
            run.progress_percentage = round(min(100.0, max(0.0, percentage)), 2)
        run.update_current_operation(operation)

        now = self._clock()
        elapsed = (now - run.started_at).total_seconds() if run.started_at else 0.0
        processed = (run.processed_issues or 0) + (run.processed_worklogs or 0)
        total = (run.total_issues or 0) + (run.total_worklogs or 0)

        event = ProgressEvent(
            run_id=run.id,
            operation=operation,
            percentage=run.progress_percentage or 0.0,
            counts=self.counts_for(run),
            estimated_completion=estimate_completion(processed, total, elapsed, now),
            emitted_at=now,
        )
        self.last_event = event
        self._dispatch(event)
        return event

    def _dispatch(self, event: ProgressEvent):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug(f"No running event loop; progress event for run #{event.run_id} not published")
            return
        task = loop.create_task(self._publish(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, event: ProgressEvent):
        try:
            await self.publisher.publish(event)
        except Exception as e:
            log.warning(f"Progress publish failed for run #{event.run_id}: {e}")

    async def drain(self):
        """Wait for in-flight publishes (used at the end of a run and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def pending_tasks(self) -> List[asyncio.Task]:
        return list(self._pending)
