import re
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, NamedTuple, Optional

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from medtrack.core.config import settings

TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def normalize_slot_time(value: str) -> str:
    """'8:05' -> '08:05'. Raises ValueError for anything that is not 24h HH:MM."""
    match = TIME_PATTERN.match((value or "").strip())
    if not match:
        raise ValueError(f"Invalid slot time {value!r}; expected HH:MM (24h)")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


# ---------------------------------------------------------------------------
# TAGGED VARIANTS
# ---------------------------------------------------------------------------

class DosageUnit(str, Enum):
    MG = "mg"
    G = "g"
    MCG = "mcg"
    ML = "ml"
    UNITS = "units"
    TABLETS = "tablets"
    CAPSULES = "capsules"


class Frequency(str, Enum):
    ONCE_DAILY = "once_daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    EVERY_6_HOURS = "every_6_hours"
    EVERY_8_HOURS = "every_8_hours"
    EVERY_12_HOURS = "every_12_hours"
    AS_NEEDED = "as_needed"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class MedicationCategory(str, Enum):
    PRESCRIPTION = "prescription"
    OVER_THE_COUNTER = "over-the-counter"
    SUPPLEMENT = "supplement"
    VITAMIN = "vitamin"
    INJECTION = "injection"
    TOPICAL = "topical"
    OTHER = "other"


class DoseStatus(str, Enum):
    UPCOMING = "upcoming"
    DUE = "due"
    MISSED = "missed"
    TAKEN = "taken"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (DoseStatus.TAKEN, DoseStatus.SKIPPED)


class DoseAction(str, Enum):
    TAKEN = "taken"
    SKIPPED = "skipped"


class SupplyTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    GOOD = "good"


class AdherencePeriod(str, Enum):
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"

    @property
    def days(self) -> int:
        return {"week": 7, "month": 30, "quarter": 90}[self.value]


class DedupKey(NamedTuple):
    medication_id: uuid.UUID
    slot_index: int
    dose_date: date

    def __str__(self) -> str:
        return f"{self.medication_id}:{self.slot_index}:{self.dose_date.isoformat()}"


# ---------------------------------------------------------------------------
# MEDICATION
# ---------------------------------------------------------------------------

class Dosage(BaseModel):
    amount: float = Field(gt=0)
    unit: DosageUnit = DosageUnit.MG


class SlotIn(BaseModel):
    time: str

    @field_validator("time")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return normalize_slot_time(v)


class RefillReminderIn(BaseModel):
    enabled: bool = False
    current_supply: int = Field(0, ge=0)
    days_before_empty: int = Field(settings.default_days_before_empty, ge=1)


class RefillSettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    days_before_empty: Optional[int] = Field(None, ge=1)


class MedicationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    dosage: Dosage
    frequency: Frequency = Frequency.ONCE_DAILY
    category: MedicationCategory = MedicationCategory.PRESCRIPTION
    schedule: List[SlotIn] = []
    start_date: date
    end_date: Optional[date] = None
    refill_reminder: RefillReminderIn = RefillReminderIn()
    instructions: Optional[str] = None
    prescribed_by_name: Optional[str] = Field(None, max_length=200)
    prescribed_by_contact: Optional[str] = Field(None, max_length=200)
    color: Optional[str] = Field(None, max_length=16)

    @model_validator(mode="after")
    def _check_window(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


class MedicationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    dosage: Optional[Dosage] = None
    frequency: Optional[Frequency] = None
    category: Optional[MedicationCategory] = None
    end_date: Optional[date] = None
    refill_reminder: Optional[RefillSettingsUpdate] = None
    instructions: Optional[str] = None
    prescribed_by_name: Optional[str] = Field(None, max_length=200)
    prescribed_by_contact: Optional[str] = Field(None, max_length=200)
    color: Optional[str] = Field(None, max_length=16)


class ScheduleUpdate(BaseModel):
    schedule: List[SlotIn]
    effective_from: Optional[date] = None


class SlotRead(BaseModel):
    position: int
    time: str
    active_from: Optional[date] = None
    active_until: Optional[date] = None

    model_config = {"from_attributes": True}

    def covers(self, day: date) -> bool:
        if self.active_from is not None and day < self.active_from:
            return False
        if self.active_until is not None and day > self.active_until:
            return False
        return True


class MedicationRead(BaseModel):
    id: uuid.UUID
    user_id: str
    name: str
    dosage_amount: float
    dosage_unit: DosageUnit
    frequency: Frequency
    category: MedicationCategory
    instructions: Optional[str] = None
    prescribed_by_name: Optional[str] = None
    prescribed_by_contact: Optional[str] = None
    color: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None
    is_active: bool
    refill_enabled: bool
    current_supply: int
    days_before_empty: int
    last_refill_date: Optional[date] = None
    slots: List[SlotRead] = []

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def dosage_text(self) -> str:
        return f"{self.dosage_amount:g} {self.dosage_unit.value}"


# ---------------------------------------------------------------------------
# DOSE INSTANCES
# ---------------------------------------------------------------------------

class CompletionRead(BaseModel):
    medication_id: Optional[uuid.UUID] = None
    slot_index: int
    dose_date: date
    taken: bool = False
    taken_at: Optional[datetime] = None
    skipped: bool = False
    skip_reason: Optional[str] = None
    supply_consumed: bool = False
    version: int = 0

    model_config = {"from_attributes": True}


class DoseInstance(BaseModel):
    medication_id: uuid.UUID
    slot_index: int
    dose_date: date
    time: str
    scheduled_time: datetime
    status: DoseStatus
    taken_at: Optional[datetime] = None
    skip_reason: Optional[str] = None
    medication_name: str
    dosage_text: str

    @property
    def dedup_key(self) -> DedupKey:
        return DedupKey(self.medication_id, self.slot_index, self.dose_date)


class MarkTakenRequest(BaseModel):
    taken_at: Optional[datetime] = None


class MarkSkippedRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class TransitionResult(BaseModel):
    instance: DoseInstance
    previous_status: DoseStatus
    changed: bool


# ---------------------------------------------------------------------------
# SUPPLY
# ---------------------------------------------------------------------------

class RefillMetadata(BaseModel):
    pharmacy_name: Optional[str] = Field(None, max_length=200)
    pharmacy_phone: Optional[str] = Field(None, max_length=50)
    prescription_number: Optional[str] = Field(None, max_length=100)
    cost: Optional[Decimal] = None
    notes: Optional[str] = Field(None, max_length=500)


class RefillCreate(RefillMetadata):
    quantity: int
    refill_date: date
    request_key: Optional[str] = Field(None, max_length=100)


class RefillRead(RefillMetadata):
    id: uuid.UUID
    medication_id: uuid.UUID
    refill_date: date
    quantity: int
    previous_supply: int
    new_supply: int
    created_at: datetime

    model_config = {"from_attributes": True}


class RefillResult(BaseModel):
    previous_supply: int
    refill_amount: int
    new_supply: int
    refill: RefillRead
    duplicate: bool = False


class SupplyStatus(BaseModel):
    medication_id: uuid.UUID
    enabled: bool
    current_supply: int
    days_before_empty: int
    tier: SupplyTier
    last_refill_date: Optional[date] = None


# ---------------------------------------------------------------------------
# ADHERENCE
# ---------------------------------------------------------------------------

class AdherenceRecord(BaseModel):
    day: date
    times_scheduled: int
    times_taken: int
    times_missed: int = 0
    times_skipped: int = 0
    adherence_rate: Optional[float] = None


class AdherenceSummary(BaseModel):
    start: date
    end: date
    days: List[AdherenceRecord]
    rate: Optional[float] = None
    percentage: Optional[int] = None
    streak: int = 0
    taken: int = 0
    scheduled: int = 0
    missed: int = 0
    skipped: int = 0
    perfect_days: int = 0
