import uuid
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.auth import CurrentUser, get_current_user
from medtrack.db.database import get_db
from medtrack.medications.ledger import SupplyLedger
from medtrack.medications.schemas import (
    RefillCreate,
    RefillMetadata,
    RefillRead,
    RefillResult,
    SupplyStatus,
)

router = APIRouter()


@router.post("/{medication_id}/refills", response_model=RefillResult, status_code=status.HTTP_201_CREATED)
async def record_refill(
    medication_id: uuid.UUID,
    payload: RefillCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Record a refill. Send a `request_key` to make client retries safe:
    the same key is applied once and answered with the original result.
    """
    ledger = SupplyLedger(db)
    metadata = RefillMetadata(**payload.model_dump(include=set(RefillMetadata.model_fields)))
    return await ledger.apply_refill(
        user_id=current_user.user_id,
        medication_id=medication_id,
        quantity=payload.quantity,
        refill_date=payload.refill_date,
        metadata=metadata,
        request_key=payload.request_key,
    )


@router.get("/{medication_id}/refills", response_model=List[RefillRead])
async def refill_history(
    medication_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    return await SupplyLedger(db).history(user_id=current_user.user_id, medication_id=medication_id)


@router.get("/{medication_id}/supply", response_model=SupplyStatus)
async def supply_status(
    medication_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    return await SupplyLedger(db).status(user_id=current_user.user_id, medication_id=medication_id)
