import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from medtrack.db.database import Base


class Medication(Base):
    __tablename__ = "medications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, index=True)
    user_id = Column(String(64), nullable=False, index=True)  # JWT 'sub' of the owner
    name = Column(String(200), nullable=False)
    dosage_amount = Column(Float, nullable=False)
    dosage_unit = Column(String(20), nullable=False, default="mg")
    frequency = Column(String(32), nullable=False, default="once_daily")
    category = Column(String(32), nullable=False, default="prescription")
    instructions = Column(Text, nullable=True)
    prescribed_by_name = Column(String(200), nullable=True)
    prescribed_by_contact = Column(String(200), nullable=True)
    color = Column(String(16), nullable=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    refill_enabled = Column(Boolean, default=False, nullable=False)
    current_supply = Column(Integer, default=0, nullable=False)
    days_before_empty = Column(Integer, default=7, nullable=False)
    last_refill_date = Column(Date, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Every version of every slot; the materializer picks the ones covering a date.
    slots = relationship(
        "ScheduleSlot",
        back_populates="medication",
        cascade="all, delete-orphan",
        order_by="ScheduleSlot.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Medication id={self.id} name={self.name} active={self.is_active}>"


class ScheduleSlot(Base):
    """A recurring HH:MM dosing time.

    Schedule edits close the current rows (``active_until``) and open new
    ones (``active_from``) instead of rewriting them, so dates before the edit
    keep materializing the slots they were scheduled with.
    """

    __tablename__ = "schedule_slots"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    medication_id = Column(Uuid, ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    time = Column(String(5), nullable=False)
    active_from = Column(Date, nullable=True)
    active_until = Column(Date, nullable=True)

    medication = relationship("Medication", back_populates="slots")

    def __repr__(self) -> str:
        return f"<ScheduleSlot medication={self.medication_id} position={self.position} time={self.time}>"


class CompletionRecord(Base):
    __tablename__ = "completion_records"
    __table_args__ = (
        UniqueConstraint("medication_id", "slot_index", "dose_date", name="uq_completion_key"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    medication_id = Column(Uuid, ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True)
    slot_index = Column(Integer, nullable=False)
    dose_date = Column(Date, nullable=False, index=True)

    taken = Column(Boolean, default=False, nullable=False)
    taken_at = Column(DateTime, nullable=True)
    skipped = Column(Boolean, default=False, nullable=False)
    skip_reason = Column(String(500), nullable=True)

    # True only if this instance actually removed a unit from supply
    supply_consumed = Column(Boolean, default=False, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<CompletionRecord medication={self.medication_id} slot={self.slot_index} "
            f"date={self.dose_date} taken={self.taken} skipped={self.skipped}>"
        )


class RefillEvent(Base):
    __tablename__ = "refill_events"
    __table_args__ = (
        UniqueConstraint("medication_id", "request_key", name="uq_refill_request_key"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    medication_id = Column(Uuid, ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True)
    refill_date = Column(Date, nullable=False)
    quantity = Column(Integer, nullable=False)
    previous_supply = Column(Integer, nullable=False)
    new_supply = Column(Integer, nullable=False)
    pharmacy_name = Column(String(200), nullable=True)
    pharmacy_phone = Column(String(50), nullable=True)
    prescription_number = Column(String(100), nullable=True)
    cost = Column(Numeric(10, 2), nullable=True)
    notes = Column(String(500), nullable=True)
    request_key = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AdherenceDay(Base):
    """Incremental per-day rollup of taken doses; rebuildable from completion records."""

    __tablename__ = "adherence_days"
    __table_args__ = (
        UniqueConstraint("medication_id", "day", name="uq_adherence_day"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    medication_id = Column(Uuid, ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True)
    day = Column(Date, nullable=False, index=True)
    times_taken = Column(Integer, default=0, nullable=False)


class DoseEvent(Base):
    """Append-only audit trail of dose transitions."""

    __tablename__ = "dose_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    medication_id = Column(Uuid, ForeignKey("medications.id", ondelete="CASCADE"), nullable=False, index=True)
    slot_index = Column(Integer, nullable=False)
    dose_date = Column(Date, nullable=False)
    action = Column(String(16), nullable=False)
    previous_status = Column(String(16), nullable=False)
    detail = Column(String(500), nullable=True)
    occurred_at = Column(DateTime, nullable=False)
