import logging
import uuid
from datetime import date
from typing import List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.config import settings
from medtrack.core.errors import NotFoundError, ValidationError
from medtrack.db.models import Medication, RefillEvent
from medtrack.medications import crud
from medtrack.medications.schemas import (
    RefillMetadata,
    RefillRead,
    RefillResult,
    SupplyStatus,
    SupplyTier,
)

logger = logging.getLogger(__name__)


def supply_tier(current_supply: int, days_before_empty: int, medium_multiplier: int = 2) -> SupplyTier:
    if current_supply <= days_before_empty:
        return SupplyTier.LOW
    if current_supply <= medium_multiplier * days_before_empty:
        return SupplyTier.MEDIUM
    return SupplyTier.GOOD


class SupplyLedger:
    """
    Remaining supply per medication.

    Refills are their own unit of work and commit. Consumption and restore are
    only ever called from inside a dose transition and leave committing to it,
    so the supply change lands atomically with the completion record.
    """

    def __init__(self, db: AsyncSession, medium_multiplier: Optional[int] = None):
        self.db = db
        self.medium_multiplier = medium_multiplier or settings.supply_medium_multiplier

    async def apply_refill(
        self,
        *,
        user_id: str,
        medication_id: uuid.UUID,
        quantity: int,
        refill_date: date,
        metadata: Optional[RefillMetadata] = None,
        request_key: Optional[str] = None,
    ) -> RefillResult:
        metadata = metadata or RefillMetadata()
        if quantity is None or quantity <= 0:
            raise ValidationError("Refill quantity must be a positive integer")
        if metadata.cost is not None and metadata.cost < 0:
            raise ValidationError("Cost must not be negative")

        med = await crud.get_medication(self.db, medication_id, user_id)

        if request_key:
            existing = await self._find_request(medication_id, request_key)
            if existing is not None:
                logger.info("Refill %s for %s already applied", request_key, medication_id)
                return self._as_result(existing, duplicate=True)

        async with crud.storage_errors("refill"):
            await self.db.execute(
                update(Medication)
                .where(Medication.id == medication_id)
                .values(
                    current_supply=Medication.current_supply + quantity,
                    last_refill_date=refill_date,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.refresh(med, attribute_names=["current_supply", "last_refill_date"])
            new_supply = med.current_supply

            event = RefillEvent(
                medication_id=medication_id,
                refill_date=refill_date,
                quantity=quantity,
                previous_supply=new_supply - quantity,
                new_supply=new_supply,
                request_key=request_key,
                **metadata.model_dump(),
            )
            self.db.add(event)
            try:
                await self.db.commit()
            except IntegrityError:
                # Same request_key landed concurrently; its refill is the one that counts.
                await self.db.rollback()
                existing = await self._find_request(medication_id, request_key) if request_key else None
                if existing is None:
                    raise
                return self._as_result(existing, duplicate=True)

        await self.db.refresh(event)
        logger.info(
            "Refill of %d applied to %s: %d -> %d",
            quantity, medication_id, event.previous_supply, event.new_supply,
        )
        return self._as_result(event)

    async def apply_consumption(self, medication_id: uuid.UUID, units: int = 1) -> int:
        """Remove up to `units` from supply, floored at zero. Returns what was removed."""
        res = await self.db.execute(
            select(Medication.current_supply).where(Medication.id == medication_id).with_for_update()
        )
        current = res.scalar_one_or_none()
        if current is None:
            raise NotFoundError("Medication not found")
        removed = min(current, units)
        if removed > 0:
            await self.db.execute(
                update(Medication)
                .where(Medication.id == medication_id)
                .values(
                    current_supply=case(
                        (Medication.current_supply >= removed, Medication.current_supply - removed),
                        else_=0,
                    )
                )
                .execution_options(synchronize_session=False)
            )
        return removed

    async def restore(self, medication_id: uuid.UUID, units: int = 1) -> None:
        if units <= 0:
            return
        await self.db.execute(
            update(Medication)
            .where(Medication.id == medication_id)
            .values(current_supply=Medication.current_supply + units)
            .execution_options(synchronize_session=False)
        )

    def tier(self, current_supply: int, days_before_empty: int) -> SupplyTier:
        return supply_tier(current_supply, days_before_empty, self.medium_multiplier)

    async def status(self, *, user_id: str, medication_id: uuid.UUID) -> SupplyStatus:
        med = await crud.get_medication(self.db, medication_id, user_id)
        await self.db.refresh(med, attribute_names=["current_supply", "last_refill_date"])
        return SupplyStatus(
            medication_id=med.id,
            enabled=med.refill_enabled,
            current_supply=med.current_supply,
            days_before_empty=med.days_before_empty,
            tier=self.tier(med.current_supply, med.days_before_empty),
            last_refill_date=med.last_refill_date,
        )

    async def history(self, *, user_id: str, medication_id: uuid.UUID) -> List[RefillRead]:
        await crud.get_medication(self.db, medication_id, user_id)
        res = await self.db.execute(
            select(RefillEvent)
            .where(RefillEvent.medication_id == medication_id)
            .order_by(RefillEvent.refill_date.desc(), RefillEvent.created_at.desc())
        )
        return [RefillRead.model_validate(row) for row in res.scalars().all()]

    async def _find_request(self, medication_id: uuid.UUID, request_key: str) -> Optional[RefillEvent]:
        res = await self.db.execute(
            select(RefillEvent).where(
                RefillEvent.medication_id == medication_id,
                RefillEvent.request_key == request_key,
            )
        )
        return res.scalar_one_or_none()

    @staticmethod
    def _as_result(event: RefillEvent, duplicate: bool = False) -> RefillResult:
        return RefillResult(
            previous_supply=event.previous_supply,
            refill_amount=event.quantity,
            new_supply=event.new_supply,
            refill=RefillRead.model_validate(event),
            duplicate=duplicate,
        )
