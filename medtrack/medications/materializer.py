"""Expands a medication's recurring slots into concrete dose instances.

Everything here is a pure function of its arguments: no session, no clock.
"""
import uuid
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Mapping, Optional, Tuple

from medtrack.core.errors import ValidationError
from medtrack.medications.schemas import (
    CompletionRead,
    DoseInstance,
    DoseStatus,
    MedicationRead,
    SlotRead,
    normalize_slot_time,
)

DEFAULT_DUE_WINDOW = timedelta(seconds=60)


def parse_slot_time(value: str) -> time:
    try:
        hh, mm = normalize_slot_time(value).split(":")
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return time(int(hh), int(mm))


def is_within_validity(medication: MedicationRead, day: date) -> bool:
    if day < medication.start_date:
        return False
    if medication.end_date is not None and day > medication.end_date:
        return False
    return True


def slots_for_date(medication: MedicationRead, day: date) -> List[SlotRead]:
    """Slot versions in effect on `day`, ordered by position."""
    return sorted(
        (slot for slot in medication.slots if slot.covers(day)),
        key=lambda slot: slot.position,
    )


def derive_status(
    scheduled_time: datetime,
    now: datetime,
    record: Optional[CompletionRead],
    due_window: timedelta = DEFAULT_DUE_WINDOW,
) -> DoseStatus:
    if record is not None and record.taken:
        return DoseStatus.TAKEN
    if record is not None and record.skipped:
        return DoseStatus.SKIPPED
    if now > scheduled_time:
        return DoseStatus.MISSED
    if now > scheduled_time - due_window:
        return DoseStatus.DUE
    return DoseStatus.UPCOMING


def materialize(
    medication: MedicationRead,
    day: date,
    now: datetime,
    completions: Optional[Mapping[int, CompletionRead]] = None,
    due_window: timedelta = DEFAULT_DUE_WINDOW,
) -> List[DoseInstance]:
    """
    Dose instances of `medication` on `day` as seen at `now`.

    `completions` maps slot index -> completion record for that same day.
    Returns [] for inactive medications and dates outside the validity window.
    """
    if not medication.is_active or not is_within_validity(medication, day):
        return []

    completions = completions or {}
    instances = [
        build_instance(medication, slot, day, now, completions.get(slot.position), due_window)
        for slot in slots_for_date(medication, day)
    ]
    instances.sort(key=lambda inst: (inst.scheduled_time, inst.slot_index))
    return instances


def build_instance(
    medication: MedicationRead,
    slot: SlotRead,
    day: date,
    now: datetime,
    record: Optional[CompletionRead] = None,
    due_window: timedelta = DEFAULT_DUE_WINDOW,
) -> DoseInstance:
    scheduled_time = datetime.combine(day, parse_slot_time(slot.time))
    return DoseInstance(
        medication_id=medication.id,
        slot_index=slot.position,
        dose_date=day,
        time=slot.time,
        scheduled_time=scheduled_time,
        status=derive_status(scheduled_time, now, record, due_window),
        taken_at=record.taken_at if record is not None and record.taken else None,
        skip_reason=record.skip_reason if record is not None and record.skipped else None,
        medication_name=medication.name,
        dosage_text=medication.dosage_text,
    )


def index_completions(records) -> Dict[Tuple[uuid.UUID, date], Dict[int, CompletionRead]]:
    """Group completion rows (ORM or schema) as {(medication_id, date): {slot_index: record}}."""
    grouped: Dict[Tuple[uuid.UUID, date], Dict[int, CompletionRead]] = {}
    for record in records:
        view = record if isinstance(record, CompletionRead) else CompletionRead.model_validate(record)
        grouped.setdefault((view.medication_id, view.dose_date), {})[view.slot_index] = view
    return grouped
