import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.errors import NotFoundError, TransientError, ValidationError
from medtrack.db.models import CompletionRecord, DoseEvent, Medication, ScheduleSlot
from medtrack.medications.schemas import MedicationCreate, MedicationUpdate

logger = logging.getLogger(__name__)


@asynccontextmanager
async def storage_errors(operation: str):
    """Surface connection-level failures as TransientError (safe to retry)."""
    try:
        yield
    except OperationalError as e:
        logger.warning("Storage failure during %s: %s", operation, e)
        raise TransientError(f"Storage unavailable during {operation}; retry") from e
    except DBAPIError as e:
        if not e.connection_invalidated:
            raise
        logger.warning("Connection lost during %s: %s", operation, e)
        raise TransientError(f"Storage connection lost during {operation}; retry") from e


def dialect_insert(db: AsyncSession):
    """INSERT construct with ON CONFLICT support for the bound dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


# ---------------------------------------------------------------------------
# MEDICATIONS
# ---------------------------------------------------------------------------

async def get_medication(
    db: AsyncSession,
    medication_id: uuid.UUID,
    user_id: Optional[str] = None,
) -> Medication:
    q = select(Medication).where(Medication.id == medication_id)
    if user_id is not None:
        q = q.where(Medication.user_id == user_id)
    res = await db.execute(q)
    med = res.scalar_one_or_none()
    if med is None:
        raise NotFoundError("Medication not found")
    return med


async def list_medications(db: AsyncSession, user_id: str, active_only: bool = False) -> List[Medication]:
    q = select(Medication).where(Medication.user_id == user_id)
    if active_only:
        q = q.where(Medication.is_active.is_(True))
    res = await db.execute(q.order_by(Medication.created_at.desc()))
    return list(res.scalars().all())


async def list_active_medications(db: AsyncSession, user_id: Optional[str] = None) -> List[Medication]:
    q = select(Medication).where(Medication.is_active.is_(True))
    if user_id is not None:
        q = q.where(Medication.user_id == user_id)
    res = await db.execute(q)
    return list(res.scalars().all())


async def create_medication(db: AsyncSession, *, user_id: str, data: MedicationCreate) -> Medication:
    med = Medication(
        user_id=user_id,
        name=data.name,
        dosage_amount=data.dosage.amount,
        dosage_unit=data.dosage.unit.value,
        frequency=data.frequency.value,
        category=data.category.value,
        instructions=data.instructions,
        prescribed_by_name=data.prescribed_by_name,
        prescribed_by_contact=data.prescribed_by_contact,
        color=data.color,
        start_date=data.start_date,
        end_date=data.end_date,
        is_active=True,
        refill_enabled=data.refill_reminder.enabled,
        current_supply=data.refill_reminder.current_supply,
        days_before_empty=data.refill_reminder.days_before_empty,
        slots=[ScheduleSlot(position=i, time=slot.time) for i, slot in enumerate(data.schedule)],
    )
    db.add(med)
    async with storage_errors("create medication"):
        await db.commit()
    await db.refresh(med)
    logger.info("Created medication %s with %d slot(s) for user %s", med.id, len(data.schedule), user_id)
    return med


async def update_medication(db: AsyncSession, med: Medication, data: MedicationUpdate) -> Medication:
    fields = data.model_dump(exclude_unset=True, exclude={"dosage", "refill_reminder"})
    end_date = fields.get("end_date")
    if end_date is not None and end_date < med.start_date:
        raise ValidationError("end_date must not precede start_date")
    for field, value in fields.items():
        setattr(med, field, value.value if hasattr(value, "value") else value)
    if data.dosage is not None:
        med.dosage_amount = data.dosage.amount
        med.dosage_unit = data.dosage.unit.value
    if data.refill_reminder is not None:
        if data.refill_reminder.enabled is not None:
            med.refill_enabled = data.refill_reminder.enabled
        if data.refill_reminder.days_before_empty is not None:
            med.days_before_empty = data.refill_reminder.days_before_empty
    async with storage_errors("update medication"):
        await db.commit()
    await db.refresh(med)
    return med


async def replace_schedule(
    db: AsyncSession,
    med: Medication,
    times: List[str],
    effective_from: date,
) -> Medication:
    """
    Close the slot rows open on `effective_from` and start a new set that day.
    Rows that had not yet taken effect are dropped outright.
    """
    for slot in list(med.slots):
        if slot.active_until is not None and slot.active_until < effective_from:
            continue
        if slot.active_from is not None and slot.active_from >= effective_from:
            med.slots.remove(slot)
        else:
            slot.active_until = effective_from - timedelta(days=1)

    for position, value in enumerate(times):
        med.slots.append(ScheduleSlot(position=position, time=value, active_from=effective_from))

    async with storage_errors("replace schedule"):
        await db.commit()
    await db.refresh(med)
    logger.info("Medication %s rescheduled to %s from %s", med.id, times, effective_from)
    return med


async def set_active(db: AsyncSession, med: Medication, active: bool) -> Medication:
    med.is_active = active
    async with storage_errors("toggle medication"):
        await db.commit()
    await db.refresh(med)
    return med


# ---------------------------------------------------------------------------
# COMPLETION RECORDS
# ---------------------------------------------------------------------------

async def get_completion(
    db: AsyncSession,
    medication_id: uuid.UUID,
    slot_index: int,
    dose_date: date,
) -> Optional[CompletionRecord]:
    res = await db.execute(
        select(CompletionRecord)
        .where(
            CompletionRecord.medication_id == medication_id,
            CompletionRecord.slot_index == slot_index,
            CompletionRecord.dose_date == dose_date,
        )
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def list_completions(
    db: AsyncSession,
    medication_ids: Iterable[uuid.UUID],
    start: date,
    end: date,
) -> List[CompletionRecord]:
    ids = list(medication_ids)
    if not ids:
        return []
    res = await db.execute(
        select(CompletionRecord).where(
            CompletionRecord.medication_id.in_(ids),
            CompletionRecord.dose_date >= start,
            CompletionRecord.dose_date <= end,
        )
    )
    return list(res.scalars().all())


async def insert_completion(db: AsyncSession, **values) -> bool:
    """Create the record for a key; False if another writer got there first."""
    insert = dialect_insert(db)
    stmt = (
        insert(CompletionRecord)
        .values(id=uuid.uuid4(), version=1, updated_at=datetime.utcnow(), **values)
        .on_conflict_do_nothing(index_elements=["medication_id", "slot_index", "dose_date"])
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def compare_and_swap_completion(
    db: AsyncSession,
    record_id: uuid.UUID,
    expected_version: int,
    **values,
) -> bool:
    """Overwrite the record only if nobody changed it since `expected_version` was read."""
    stmt = (
        update(CompletionRecord)
        .where(CompletionRecord.id == record_id, CompletionRecord.version == expected_version)
        .values(version=expected_version + 1, updated_at=datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def append_dose_event(
    db: AsyncSession,
    *,
    medication_id: uuid.UUID,
    slot_index: int,
    dose_date: date,
    action: str,
    previous_status: str,
    occurred_at: datetime,
    detail: Optional[str] = None,
) -> None:
    db.add(
        DoseEvent(
            medication_id=medication_id,
            slot_index=slot_index,
            dose_date=dose_date,
            action=action,
            previous_status=previous_status,
            occurred_at=occurred_at,
            detail=detail,
        )
    )


async def list_dose_events(db: AsyncSession, medication_id: uuid.UUID) -> List[DoseEvent]:
    res = await db.execute(
        select(DoseEvent)
        .where(DoseEvent.medication_id == medication_id)
        .order_by(DoseEvent.occurred_at)
    )
    return list(res.scalars().all())
