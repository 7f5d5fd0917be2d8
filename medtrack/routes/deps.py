from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.clock import Clock, get_clock
from medtrack.db.database import get_db
from medtrack.medications.doses import DoseStateMachine
from medtrack.reminders.notifier import InMemoryNotifier
from medtrack.reminders.scheduler import ReminderScheduler


def get_scheduler(request: Request) -> Optional[ReminderScheduler]:
    return getattr(request.app.state, "reminder_scheduler", None)


def get_alerts(request: Request) -> Optional[InMemoryNotifier]:
    return getattr(request.app.state, "alerts", None)


def get_dose_state_machine(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    scheduler: Optional[ReminderScheduler] = Depends(get_scheduler),
) -> DoseStateMachine:
    machine = DoseStateMachine(db, clock)
    if scheduler is not None:
        machine.add_listener(scheduler.invalidate)
    return machine
