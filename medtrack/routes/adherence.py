import uuid
from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.auth import CurrentUser, get_current_user
from medtrack.core.clock import Clock, get_clock
from medtrack.core.errors import ValidationError
from medtrack.db.database import get_db
from medtrack.medications.adherence import AdherenceAggregator
from medtrack.medications.schemas import AdherencePeriod, AdherenceSummary

router = APIRouter()

MAX_RANGE_DAYS = 366


@router.get("", response_model=AdherenceSummary)
async def get_adherence(
    start: Optional[date] = None,
    end: Optional[date] = None,
    medication_id: Optional[uuid.UUID] = None,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Daily adherence over [start, end] (default: the last 7 days), the mean of
    the defined daily rates, and the current perfect-day streak. Doses later
    today are not counted as missed yet.
    """
    now = clock.now()
    today = now.date()
    end = end or today
    start = start or end - timedelta(days=6)
    if start > end:
        raise ValidationError("start must not be after end")
    if (end - start).days + 1 > MAX_RANGE_DAYS:
        raise ValidationError(f"Date range is limited to {MAX_RANGE_DAYS} days")

    return await AdherenceAggregator(db).summary(
        user_id=current_user.user_id,
        start=start,
        end=end,
        today=today,
        medication_id=medication_id,
        now=now,
    )


@router.get("/{period}", response_model=AdherenceSummary)
async def get_period_adherence(
    period: AdherencePeriod,
    medication_id: Optional[uuid.UUID] = None,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: CurrentUser = Depends(get_current_user),
):
    """The last 7, 30 or 90 days, ending yesterday."""
    return await AdherenceAggregator(db).period(
        user_id=current_user.user_id,
        period=period,
        today=clock.today(),
        medication_id=medication_id,
    )
