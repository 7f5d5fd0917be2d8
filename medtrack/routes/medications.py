import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.auth import CurrentUser, get_current_user
from medtrack.core.clock import Clock, get_clock
from medtrack.db.database import get_db
from medtrack.medications import crud
from medtrack.medications.schemas import (
    MedicationCreate,
    MedicationRead,
    MedicationUpdate,
    ScheduleUpdate,
)
from medtrack.reminders.scheduler import ReminderScheduler
from medtrack.routes.deps import get_scheduler

router = APIRouter()


def _invalidate(scheduler: Optional[ReminderScheduler]) -> None:
    if scheduler is not None:
        scheduler.invalidate()


@router.post("/", response_model=MedicationRead, status_code=status.HTTP_201_CREATED)
async def create_medication(
    payload: MedicationCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    scheduler: Optional[ReminderScheduler] = Depends(get_scheduler),
):
    med = await crud.create_medication(db, user_id=current_user.user_id, data=payload)
    _invalidate(scheduler)
    return MedicationRead.model_validate(med)


@router.get("/", response_model=List[MedicationRead])
async def list_medications(
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    meds = await crud.list_medications(db, current_user.user_id, active_only=active_only)
    return [MedicationRead.model_validate(med) for med in meds]


@router.get("/{medication_id}", response_model=MedicationRead)
async def get_medication(
    medication_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    med = await crud.get_medication(db, medication_id, current_user.user_id)
    return MedicationRead.model_validate(med)


@router.patch("/{medication_id}", response_model=MedicationRead)
async def update_medication(
    medication_id: uuid.UUID,
    payload: MedicationUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    scheduler: Optional[ReminderScheduler] = Depends(get_scheduler),
):
    med = await crud.get_medication(db, medication_id, current_user.user_id)
    med = await crud.update_medication(db, med, payload)
    _invalidate(scheduler)
    return MedicationRead.model_validate(med)


@router.put("/{medication_id}/schedule", response_model=MedicationRead)
async def replace_schedule(
    medication_id: uuid.UUID,
    payload: ScheduleUpdate,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: CurrentUser = Depends(get_current_user),
    scheduler: Optional[ReminderScheduler] = Depends(get_scheduler),
):
    """
    Replace the dosing times from `effective_from` (default: today) onwards.
    Earlier dates keep the slots they had.
    """
    med = await crud.get_medication(db, medication_id, current_user.user_id)
    med = await crud.replace_schedule(
        db,
        med,
        [slot.time for slot in payload.schedule],
        payload.effective_from or clock.today(),
    )
    _invalidate(scheduler)
    return MedicationRead.model_validate(med)


@router.delete("/{medication_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deactivate_medication(
    medication_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    scheduler: Optional[ReminderScheduler] = Depends(get_scheduler),
):
    # History still references the medication, so it is only switched off.
    med = await crud.get_medication(db, medication_id, current_user.user_id)
    await crud.set_active(db, med, False)
    _invalidate(scheduler)


@router.post("/{medication_id}/activate", response_model=MedicationRead)
async def activate_medication(
    medication_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    scheduler: Optional[ReminderScheduler] = Depends(get_scheduler),
):
    med = await crud.get_medication(db, medication_id, current_user.user_id)
    med = await crud.set_active(db, med, True)
    _invalidate(scheduler)
    return MedicationRead.model_validate(med)
