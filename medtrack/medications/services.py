import uuid
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.config import settings
from medtrack.medications import crud
from medtrack.medications.materializer import index_completions, materialize
from medtrack.medications.schemas import DoseInstance, MedicationRead


def instance_order(instance: DoseInstance):
    return (instance.scheduled_time, str(instance.medication_id), instance.slot_index)


def materialize_all(
    medications: List[MedicationRead],
    completions,
    day: date,
    now: datetime,
    due_window: timedelta,
) -> List[DoseInstance]:
    """Instances of every medication on `day`, ordered by time then medication."""
    grouped = index_completions(completions)
    instances = []
    for med in medications:
        instances.extend(materialize(med, day, now, grouped.get((med.id, day), {}), due_window))
    instances.sort(key=instance_order)
    return instances


class ScheduleService:
    """Pure reads over the schedule: nothing here writes."""

    def __init__(self, db: AsyncSession, due_window: Optional[timedelta] = None):
        self.db = db
        self.due_window = due_window or timedelta(seconds=settings.reminder_poll_seconds)

    async def instances_for_day(
        self,
        *,
        user_id: str,
        day: date,
        now: datetime,
        medication_id: Optional[uuid.UUID] = None,
    ) -> List[DoseInstance]:
        if medication_id is not None:
            meds = [await crud.get_medication(self.db, medication_id, user_id)]
        else:
            meds = await crud.list_medications(self.db, user_id, active_only=True)
        views = [MedicationRead.model_validate(m) for m in meds]
        completions = await crud.list_completions(self.db, [m.id for m in views], day, day)
        return materialize_all(views, completions, day, now, self.due_window)
