import uuid
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.auth import CurrentUser, get_current_user
from medtrack.core.clock import Clock, get_clock
from medtrack.db.database import get_db
from medtrack.medications.doses import DoseStateMachine
from medtrack.medications.schemas import (
    DoseInstance,
    MarkSkippedRequest,
    MarkTakenRequest,
    TransitionResult,
)
from medtrack.medications.services import ScheduleService
from medtrack.reminders.notifier import InMemoryNotifier
from medtrack.routes.deps import get_alerts, get_dose_state_machine

router = APIRouter()


class AlertOut(BaseModel):
    key: str
    medication_id: uuid.UUID
    slot_index: int
    dose_date: date
    medication_name: str
    dosage_text: str
    scheduled_time: datetime


@router.get("/today", response_model=List[DoseInstance])
async def get_todays_doses(
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: CurrentUser = Depends(get_current_user),
):
    now = clock.now()
    return await ScheduleService(db).instances_for_day(user_id=current_user.user_id, day=now.date(), now=now)


@router.get("/medications/{medication_id}", response_model=List[DoseInstance])
async def get_medication_doses(
    medication_id: uuid.UUID,
    day: Optional[date] = None,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Dose instances of one medication on `day` (default today). Works for past
    and future dates alike.
    """
    now = clock.now()
    return await ScheduleService(db).instances_for_day(
        user_id=current_user.user_id,
        day=day or now.date(),
        now=now,
        medication_id=medication_id,
    )


# ---------------- MARK AS TAKEN ----------------
@router.post("/{medication_id}/{slot_index}/{dose_date}/taken", response_model=TransitionResult)
async def mark_taken(
    medication_id: uuid.UUID,
    slot_index: int,
    dose_date: date,
    payload: Optional[MarkTakenRequest] = None,
    machine: DoseStateMachine = Depends(get_dose_state_machine),
    current_user: CurrentUser = Depends(get_current_user),
):
    return await machine.mark_taken(
        user_id=current_user.user_id,
        medication_id=medication_id,
        slot_index=slot_index,
        dose_date=dose_date,
        taken_at=payload.taken_at if payload else None,
    )


# ---------------- SKIP ----------------
@router.post("/{medication_id}/{slot_index}/{dose_date}/skipped", response_model=TransitionResult)
async def mark_skipped(
    medication_id: uuid.UUID,
    slot_index: int,
    dose_date: date,
    payload: Optional[MarkSkippedRequest] = None,
    machine: DoseStateMachine = Depends(get_dose_state_machine),
    current_user: CurrentUser = Depends(get_current_user),
):
    return await machine.mark_skipped(
        user_id=current_user.user_id,
        medication_id=medication_id,
        slot_index=slot_index,
        dose_date=dose_date,
        reason=payload.reason if payload else None,
    )


@router.get("/alerts", response_model=List[AlertOut])
async def get_active_alerts(
    alerts: Optional[InMemoryNotifier] = Depends(get_alerts),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Reminders announced by the scheduler and not yet resolved."""
    if alerts is None:
        return []
    return [
        AlertOut(
            key=str(event.dedup_key),
            medication_id=event.dedup_key.medication_id,
            slot_index=event.dedup_key.slot_index,
            dose_date=event.dedup_key.dose_date,
            medication_name=event.medication_name,
            dosage_text=event.dosage_text,
            scheduled_time=event.scheduled_time,
        )
        for event in alerts.active_alerts(current_user.user_id)
    ]
