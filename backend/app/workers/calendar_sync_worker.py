"""
Background calendar sync worker.

Booking requests never talk to the calendar provider. After the booking
transaction commits, the route enqueues the booking id here and returns.
A single worker task drains the queue and runs the reconciler, each job
in its own database session.

A failed sync is re-queued with exponential backoff until
CALENDAR_SYNC_MAX_ATTEMPTS is reached. After that the booking stays
`failed` and the operator resync endpoint picks it up.
"""

import asyncio
from typing import Callable, Optional

from app.core.config import get_settings
from app.core.logging import get_logger
from app.db.session import AsyncSessionLocal
from app.integrations.google_calendar import GoogleCalendarClient
from app.services import calendar_sync_service

logger = get_logger(__name__)


class CalendarSyncQueue:
    def __init__(
        self,
        session_factory: Callable = AsyncSessionLocal,
        client_factory: Callable[[], GoogleCalendarClient] = GoogleCalendarClient,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.max_attempts = max_attempts or settings.CALENDAR_SYNC_MAX_ATTEMPTS
        self.backoff = backoff if backoff is not None else settings.CALENDAR_SYNC_RETRY_BACKOFF
        self.queue: asyncio.Queue = asyncio.Queue()
        self.worker_task: Optional[asyncio.Task] = None
        self._retry_handles: set[asyncio.TimerHandle] = set()

    @property
    def running(self) -> bool:
        return self.worker_task is not None and not self.worker_task.done()

    def start(self) -> None:
        if self.running:
            return
        self.worker_task = asyncio.create_task(self._run())
        logger.info("calendar_sync_worker_started")

    async def stop(self) -> None:
        for handle in self._retry_handles:
            handle.cancel()
        self._retry_handles.clear()

        if self.worker_task is not None:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except asyncio.CancelledError:
                pass
            self.worker_task = None
        logger.info("calendar_sync_worker_stopped", pending=self.queue.qsize())

    def enqueue(self, booking_id: int, attempt: int = 1) -> None:
        """Schedule a sync for a committed booking. Never blocks the caller."""
        if not self.running:
            # Left as pending; the operator resync will reconcile it
            logger.debug("calendar_sync_worker_idle", booking_id=booking_id)
            return
        self.queue.put_nowait((booking_id, attempt))

    def _schedule_retry(self, booking_id: int, attempt: int) -> None:
        delay = self.backoff ** attempt
        loop = asyncio.get_running_loop()

        def _requeue():
            self._retry_handles.discard(handle)
            self.enqueue(booking_id, attempt + 1)

        handle = loop.call_later(delay, _requeue)
        self._retry_handles.add(handle)
        logger.info("calendar_sync_retry_scheduled", booking_id=booking_id, attempt=attempt + 1, delay=delay)

    async def process(self, booking_id: int, attempt: int = 1) -> str:
        async with self.session_factory() as db:
            outcome = await calendar_sync_service.sync_booking(db, booking_id, self.client_factory())

        if outcome == calendar_sync_service.SYNC_FAILED:
            if attempt < self.max_attempts:
                self._schedule_retry(booking_id, attempt)
            else:
                logger.warning("calendar_sync_gave_up", booking_id=booking_id, attempts=attempt)
        return outcome

    async def _run(self) -> None:
        while True:
            booking_id, attempt = await self.queue.get()
            try:
                await self.process(booking_id, attempt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("calendar_sync_worker_error", booking_id=booking_id, error=str(e))
            finally:
                self.queue.task_done()


_sync_queue: Optional[CalendarSyncQueue] = None


def get_sync_queue() -> CalendarSyncQueue:
    global _sync_queue
    if _sync_queue is None:
        _sync_queue = CalendarSyncQueue()
    return _sync_queue
