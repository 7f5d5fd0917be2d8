"""Reminder scheduler: a cancellable polling task owned by the engine.

Each tick materializes the instances around the tick time for every active
medication and compares them with the keys it has already announced. The
first tick after a (re)start only announces instances that are Due right now,
so doses whose time passed while the scheduler was stopped materialize as
Missed and nothing fires for them. Every later tick announces each
unannounced, unresolved instance scheduled in
``[previous tick, now + due_window)``: a late or failed tick delays a reminder
but never drops it, and a dose just after midnight is announced by the tick
just before it. A key is announced at most once; dedup state lives in memory.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from medtrack.core.clock import Clock, system_clock
from medtrack.core.config import settings
from medtrack.medications import crud
from medtrack.medications.schemas import CompletionRead, DedupKey, DoseInstance, DoseStatus, MedicationRead
from medtrack.medications.services import instance_order, materialize_all
from medtrack.reminders.events import DoseDue, DoseResolved
from medtrack.reminders.notifier import NotificationSurface

logger = logging.getLogger(__name__)

# A scheduler stalled for longer than this does not announce what it slept through.
CATCH_UP_LIMIT = timedelta(days=1)


@dataclass
class TickReport:
    now: datetime
    due: List[DoseDue] = field(default_factory=list)
    resolved: List[DoseResolved] = field(default_factory=list)


def _days_between(first: date, last: date) -> List[date]:
    return [first + timedelta(days=i) for i in range((last - first).days + 1)]


class ReminderScheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        notifier: NotificationSurface,
        clock: Clock = system_clock,
        *,
        poll_interval: Optional[float] = None,
        refetch_interval: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.poll_interval = poll_interval or settings.reminder_poll_seconds
        self.refetch_interval = settings.reminder_refetch_seconds if refetch_interval is None else refetch_interval
        self.due_window = timedelta(seconds=self.poll_interval)

        self.outstanding: Dict[DedupKey, DoseDue] = {}
        self.resolved: Set[DedupKey] = set()
        self.last_tick_at: Optional[datetime] = None

        self._snapshot: Optional[Tuple[List[MedicationRead], List[CompletionRead]]] = None
        self._snapshot_days: Optional[Tuple[date, date]] = None
        self._fetched_at: Optional[float] = None
        self._stale = True

        self._task: Optional[asyncio.Task] = None

    # ---- read throttling ----

    def invalidate(self, key: Optional[DedupKey] = None) -> None:
        """
        Force the next tick to refetch. Registered as a state-machine listener,
        which passes the key of the dose that changed; the whole snapshot is
        reloaded either way.
        """
        self._stale = True

    def _snapshot_fresh(self, days: Tuple[date, date]) -> bool:
        if self._stale or self._snapshot is None or self._snapshot_days != days:
            return False
        return time.monotonic() - self._fetched_at < self.refetch_interval

    async def _load(self, first_day: date, last_day: date) -> Tuple[List[MedicationRead], List[CompletionRead]]:
        days = (first_day, last_day)
        if self._snapshot_fresh(days):
            return self._snapshot
        # Clear before reading so an invalidate() during the fetch is not lost.
        self._stale = False
        async with self.session_factory() as db:
            meds = await crud.list_active_medications(db)
            views = [MedicationRead.model_validate(m) for m in meds]
            rows = await crud.list_completions(db, [m.id for m in views], first_day, last_day)
            completions = [CompletionRead.model_validate(r) for r in rows]
        self._snapshot = (views, completions)
        self._snapshot_days = days
        self._fetched_at = time.monotonic()
        return self._snapshot

    # ---- ticking ----

    def _window_start(self, now: datetime) -> Optional[datetime]:
        """Earliest scheduled time this tick may announce; None on a first tick."""
        if self.last_tick_at is None or self.last_tick_at > now:
            return None
        return max(self.last_tick_at, now - CATCH_UP_LIMIT)

    def _should_fire(self, inst: DoseInstance, window_start: Optional[datetime], now: datetime) -> bool:
        if inst.status.is_terminal:
            return False
        if window_start is None:
            return inst.status is DoseStatus.DUE
        return window_start <= inst.scheduled_time < now + self.due_window

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self.clock.now()
        report = TickReport(now=now)
        window_start = self._window_start(now)
        first_day = (window_start or now).date()
        last_day = (now + self.due_window).date()

        medications, completions = await self._load(first_day, last_day)
        owners = {m.id: m.user_id for m in medications}
        instances: List[DoseInstance] = []
        for day in _days_between(first_day, last_day):
            instances.extend(materialize_all(medications, completions, day, now, self.due_window))
        instances.sort(key=instance_order)
        current = {inst.dedup_key: inst for inst in instances}

        for key, event in sorted(self.outstanding.items(), key=lambda kv: kv[1].scheduled_time):
            inst = current.get(key)
            if inst is not None and inst.status is DoseStatus.DUE:
                continue
            del self.outstanding[key]
            self.resolved.add(key)
            resolved = DoseResolved(dedup_key=key, user_id=event.user_id)
            await self.notifier.dose_resolved(resolved)
            report.resolved.append(resolved)

        # Days before the window no longer materialize, so their keys cannot fire again.
        self.resolved = {key for key in self.resolved if key.dose_date >= first_day}

        for inst in instances:
            key = inst.dedup_key
            if key in self.outstanding or key in self.resolved or not self._should_fire(inst, window_start, now):
                continue
            event = DoseDue(
                dedup_key=key,
                user_id=owners[inst.medication_id],
                medication_name=inst.medication_name,
                dosage_text=inst.dosage_text,
                scheduled_time=inst.scheduled_time,
            )
            # Recorded before delivery: a failing surface must not cause a re-fire.
            self.outstanding[key] = event
            await self.notifier.dose_due(event)
            report.due.append(event)

        # Only a completed tick moves the window; a failed one is caught up next time.
        self.last_tick_at = now
        if report.due or report.resolved:
            logger.debug("Tick %s: %d due, %d resolved", now, len(report.due), len(report.resolved))
        return report

    # ---- lifecycle ----

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Reminder tick failed; continuing with the next one")
            next_tick += self.poll_interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="reminder-scheduler")
        logger.info("Reminder scheduler started (every %ss)", self.poll_interval)

    async def stop(self) -> None:
        # Nothing is owed for the time spent stopped.
        self.last_tick_at = None
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reminder scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
