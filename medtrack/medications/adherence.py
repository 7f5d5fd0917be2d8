import logging
import uuid
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.config import settings
from medtrack.db.models import AdherenceDay, CompletionRecord
from medtrack.medications import crud
from medtrack.medications.materializer import index_completions, materialize
from medtrack.medications.schemas import (
    AdherencePeriod,
    AdherenceRecord,
    AdherenceSummary,
    DoseStatus,
    MedicationRead,
)

logger = logging.getLogger(__name__)


def daily_record(
    day: date,
    times_scheduled: int,
    times_taken: int,
    times_missed: int = 0,
    times_skipped: int = 0,
) -> AdherenceRecord:
    rate = None
    if times_scheduled > 0:
        rate = min(1.0, max(0.0, times_taken / times_scheduled))
    return AdherenceRecord(
        day=day,
        times_scheduled=times_scheduled,
        times_taken=times_taken,
        times_missed=times_missed,
        times_skipped=times_skipped,
        adherence_rate=rate,
    )


def period_rate(records: Iterable[AdherenceRecord]) -> Optional[float]:
    """Mean of the defined daily rates; days with nothing scheduled are left out."""
    rates = [r.adherence_rate for r in records if r.adherence_rate is not None]
    if not rates:
        return None
    return sum(rates) / len(rates)


def current_streak(records: Iterable[AdherenceRecord], today: date) -> int:
    """
    Consecutive perfect days ending yesterday. Today is still in progress and
    never counts for or against the streak.
    """
    by_day = {r.day: r for r in records}
    streak = 0
    day = today - timedelta(days=1)
    while day in by_day and by_day[day].adherence_rate == 1.0:
        streak += 1
        day -= timedelta(days=1)
    return streak


def _date_range(start: date, end: date) -> List[date]:
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


class AdherenceAggregator:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_transition(self, medication_id: uuid.UUID, day: date, taken_delta: int) -> None:
        """Apply +1/-1 to the day's taken count. Runs inside the caller's transaction."""
        if taken_delta == 0:
            return
        insert = crud.dialect_insert(self.db)
        stmt = insert(AdherenceDay).values(
            id=uuid.uuid4(),
            medication_id=medication_id,
            day=day,
            times_taken=max(taken_delta, 0),
        )
        new_value = AdherenceDay.__table__.c.times_taken + taken_delta
        stmt = stmt.on_conflict_do_update(
            index_elements=["medication_id", "day"],
            set_={"times_taken": case((new_value < 0, 0), else_=new_value)},
        )
        await self.db.execute(stmt)

    async def _medications(self, user_id: str, medication_id: Optional[uuid.UUID]) -> List[MedicationRead]:
        if medication_id is not None:
            meds = [await crud.get_medication(self.db, medication_id, user_id)]
        else:
            meds = await crud.list_medications(self.db, user_id)
        return [MedicationRead.model_validate(m) for m in meds]

    async def _taken_counts(
        self,
        medication_ids: List[uuid.UUID],
        start: date,
        end: date,
    ) -> Dict[uuid.UUID, Dict[date, int]]:
        counts: Dict[uuid.UUID, Dict[date, int]] = defaultdict(dict)
        if not medication_ids:
            return counts
        res = await self.db.execute(
            select(AdherenceDay).where(
                AdherenceDay.medication_id.in_(medication_ids),
                AdherenceDay.day >= start,
                AdherenceDay.day <= end,
            )
        )
        for row in res.scalars().all():
            counts[row.medication_id][row.day] = row.times_taken
        return counts

    async def daily_records(
        self,
        *,
        user_id: str,
        start: date,
        end: date,
        medication_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> List[AdherenceRecord]:
        """
        One record per day in [start, end], summed over the user's medications
        (or just `medication_id`). Scheduled, missed and skipped counts come
        from the instances materialized as seen at `now` (default: the end of
        the range, so every day in it has elapsed); taken counts come from the
        rollup.
        """
        if end < start:
            return []
        now = now or datetime.combine(end + timedelta(days=1), time.min)
        meds = await self._medications(user_id, medication_id)
        ids = [m.id for m in meds]
        taken = await self._taken_counts(ids, start, end)
        grouped = index_completions(await crud.list_completions(self.db, ids, start, end))

        records = []
        for day in _date_range(start, end):
            scheduled_total = taken_total = missed_total = skipped_total = 0
            for med in meds:
                instances = materialize(med, day, now, grouped.get((med.id, day), {}))
                if not instances:
                    continue
                scheduled = len(instances)
                scheduled_total += scheduled
                # A schedule that shrank after doses were taken can leave more
                # taken than scheduled for that medication.
                taken_total += min(taken[med.id].get(day, 0), scheduled)
                missed_total += sum(1 for i in instances if i.status is DoseStatus.MISSED)
                skipped_total += sum(1 for i in instances if i.status is DoseStatus.SKIPPED)
            records.append(daily_record(day, scheduled_total, taken_total, missed_total, skipped_total))
        return records

    async def summary(
        self,
        *,
        user_id: str,
        start: date,
        end: date,
        today: date,
        medication_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None,
    ) -> AdherenceSummary:
        days = await self.daily_records(
            user_id=user_id, start=start, end=end, medication_id=medication_id, now=now
        )
        streak_days = await self.daily_records(
            user_id=user_id,
            start=today - timedelta(days=settings.streak_lookback_days),
            end=today - timedelta(days=1),
            medication_id=medication_id,
        )
        rate = period_rate(days)
        return AdherenceSummary(
            start=start,
            end=end,
            days=days,
            rate=rate,
            percentage=round(rate * 100) if rate is not None else None,
            streak=current_streak(streak_days, today),
            taken=sum(d.times_taken for d in days),
            scheduled=sum(d.times_scheduled for d in days),
            missed=sum(d.times_missed for d in days),
            skipped=sum(d.times_skipped for d in days),
            perfect_days=sum(1 for d in days if d.adherence_rate == 1.0),
        )

    async def period(
        self,
        *,
        user_id: str,
        period: AdherencePeriod,
        today: date,
        medication_id: Optional[uuid.UUID] = None,
    ) -> AdherenceSummary:
        """The `period.days` fully elapsed days ending yesterday."""
        return await self.summary(
            user_id=user_id,
            start=today - timedelta(days=period.days),
            end=today - timedelta(days=1),
            today=today,
            medication_id=medication_id,
        )

    async def rebuild(self, medication_id: uuid.UUID, start: date, end: date) -> int:
        """Recompute the rollup for [start, end] from completion records. Returns rows written."""
        await self.db.execute(
            delete(AdherenceDay).where(
                AdherenceDay.medication_id == medication_id,
                AdherenceDay.day >= start,
                AdherenceDay.day <= end,
            )
        )
        res = await self.db.execute(
            select(CompletionRecord.dose_date, func.count())
            .where(
                CompletionRecord.medication_id == medication_id,
                CompletionRecord.taken.is_(True),
                CompletionRecord.dose_date >= start,
                CompletionRecord.dose_date <= end,
            )
            .group_by(CompletionRecord.dose_date)
        )
        rows = res.all()
        for day, count in rows:
            self.db.add(AdherenceDay(medication_id=medication_id, day=day, times_taken=count))
        async with crud.storage_errors("rebuild adherence"):
            await self.db.commit()
        logger.info("Rebuilt %d adherence day(s) for %s", len(rows), medication_id)
        return len(rows)
