"""Dose state machine: mark-taken / mark-skipped with at-most-once side effects.

Every call is keyed by (medication_id, slot_index, dose_date). The completion
record is written with compare-and-swap on its version, and the side effects
(supply, adherence rollup, audit event) are derived from the state that write
actually replaced and committed with it. A duplicate or retried call therefore
finds nothing to change, and a lost race is re-planned on top of the winner.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from medtrack.core.clock import Clock, system_clock
from medtrack.core.config import settings
from medtrack.core.errors import ConflictError, NotFoundError, ValidationError
from medtrack.db.models import CompletionRecord
from medtrack.medications import crud
from medtrack.medications.adherence import AdherenceAggregator
from medtrack.medications.ledger import SupplyLedger
from medtrack.medications.materializer import build_instance, is_within_validity, slots_for_date
from medtrack.medications.schemas import (
    CompletionRead,
    DedupKey,
    DoseAction,
    DoseStatus,
    MedicationRead,
    TransitionResult,
)

logger = logging.getLogger(__name__)

DEFAULT_SKIP_REASON = "No reason provided"

MutationListener = Callable[[DedupKey], None]


@dataclass
class TransitionPlan:
    write: bool
    state_changed: bool = False
    values: dict = field(default_factory=dict)
    consume: bool = False
    restore_units: int = 0
    taken_delta: int = 0


def plan_transition(
    record: Optional[CompletionRead],
    action: DoseAction,
    *,
    taken_at: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> TransitionPlan:
    """Work out what applying `action` on top of `record` changes."""
    was_taken = record is not None and record.taken
    was_skipped = record is not None and record.skipped

    if action is DoseAction.TAKEN:
        if was_taken:
            return TransitionPlan(write=False)
        return TransitionPlan(
            write=True,
            state_changed=True,
            values={
                "taken": True,
                "taken_at": taken_at,
                "skipped": False,
                "skip_reason": None,
                "supply_consumed": False,
            },
            consume=True,
            taken_delta=1,
        )

    reason = reason or DEFAULT_SKIP_REASON
    if was_skipped:
        if record.skip_reason == reason:
            return TransitionPlan(write=False)
        return TransitionPlan(write=True, values={"skip_reason": reason})
    return TransitionPlan(
        write=True,
        state_changed=True,
        values={
            "skipped": True,
            "skip_reason": reason,
            "taken": False,
            "taken_at": None,
            "supply_consumed": False,
        },
        restore_units=1 if record is not None and record.supply_consumed else 0,
        taken_delta=-1 if was_taken else 0,
    )


class DoseStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = system_clock,
        *,
        decrement_supply_on_take: Optional[bool] = None,
        retries: Optional[int] = None,
        listeners: Optional[List[MutationListener]] = None,
    ):
        self.db = db
        self.clock = clock
        self.decrement_supply_on_take = (
            settings.decrement_supply_on_take if decrement_supply_on_take is None else decrement_supply_on_take
        )
        self.retries = retries or settings.transition_retries
        self.listeners = list(listeners or [])
        self.ledger = SupplyLedger(db)
        self.aggregator = AdherenceAggregator(db)
        self.due_window = timedelta(seconds=settings.reminder_poll_seconds)

    def add_listener(self, listener: MutationListener) -> None:
        self.listeners.append(listener)

    async def mark_taken(
        self,
        *,
        user_id: str,
        medication_id: uuid.UUID,
        slot_index: int,
        dose_date: date,
        taken_at: Optional[datetime] = None,
    ) -> TransitionResult:
        return await self._transition(
            user_id, medication_id, slot_index, dose_date, DoseAction.TAKEN, taken_at=taken_at
        )

    async def mark_skipped(
        self,
        *,
        user_id: str,
        medication_id: uuid.UUID,
        slot_index: int,
        dose_date: date,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        return await self._transition(
            user_id, medication_id, slot_index, dose_date, DoseAction.SKIPPED, reason=reason
        )

    async def _transition(
        self,
        user_id: str,
        medication_id: uuid.UUID,
        slot_index: int,
        dose_date: date,
        action: DoseAction,
        *,
        taken_at: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        now = self.clock.now()
        taken_at = taken_at or now
        key = DedupKey(medication_id, slot_index, dose_date)

        for attempt in range(1, self.retries + 1):
            med = await crud.get_medication(self.db, medication_id, user_id)
            view = MedicationRead.model_validate(med)
            if not is_within_validity(view, dose_date):
                raise ValidationError(
                    f"{dose_date.isoformat()} is outside the medication's validity window"
                )
            slot = next((s for s in slots_for_date(view, dose_date) if s.position == slot_index), None)
            if slot is None:
                raise NotFoundError(f"Schedule slot {slot_index} does not exist on {dose_date.isoformat()}")

            record = await crud.get_completion(self.db, medication_id, slot_index, dose_date)
            previous = CompletionRead.model_validate(record) if record is not None else None
            previous_status = build_instance(view, slot, dose_date, now, previous, self.due_window).status

            plan = plan_transition(previous, action, taken_at=taken_at, reason=reason)
            if not plan.write:
                await self.db.rollback()
                logger.debug("%s on %s is a no-op", action.value, key)
                return TransitionResult(
                    instance=build_instance(view, slot, dose_date, now, previous, self.due_window),
                    previous_status=previous_status,
                    changed=False,
                )

            async with crud.storage_errors(f"mark {action.value}"):
                if record is None:
                    won = await crud.insert_completion(
                        self.db,
                        medication_id=medication_id,
                        slot_index=slot_index,
                        dose_date=dose_date,
                        **plan.values,
                    )
                else:
                    won = await crud.compare_and_swap_completion(
                        self.db, record.id, record.version, **plan.values
                    )
                if not won:
                    await self.db.rollback()
                    logger.info("Concurrent write on %s; re-applying %s (attempt %d)", key, action.value, attempt)
                    continue

                supply_consumed = False
                if plan.state_changed:
                    await self.ledger.restore(medication_id, plan.restore_units)
                    if plan.consume and med.refill_enabled and self.decrement_supply_on_take:
                        supply_consumed = await self.ledger.apply_consumption(medication_id, 1) > 0
                        if supply_consumed:
                            await self._mark_supply_consumed(key)
                    await self.aggregator.record_transition(medication_id, dose_date, plan.taken_delta)
                    await crud.append_dose_event(
                        self.db,
                        medication_id=medication_id,
                        slot_index=slot_index,
                        dose_date=dose_date,
                        action=action.value,
                        previous_status=previous_status.value,
                        occurred_at=now,
                        detail=plan.values.get("skip_reason"),
                    )
                await self.db.commit()

            base = previous or CompletionRead(slot_index=slot_index, dose_date=dose_date)
            current = base.model_copy(update={**plan.values, "supply_consumed": supply_consumed})
            logger.info("Dose %s marked %s (was %s)", key, action.value, previous_status.value)
            self._notify(key)
            return TransitionResult(
                instance=build_instance(view, slot, dose_date, now, current, self.due_window),
                previous_status=previous_status,
                changed=plan.state_changed,
            )

        logger.warning("Gave up marking %s %s after %d attempts", key, action.value, self.retries)
        raise ConflictError(f"Dose {key} kept changing concurrently; retry")

    async def _mark_supply_consumed(self, key: DedupKey) -> None:
        await self.db.execute(
            update(CompletionRecord)
            .where(
                CompletionRecord.medication_id == key.medication_id,
                CompletionRecord.slot_index == key.slot_index,
                CompletionRecord.dose_date == key.dose_date,
            )
            .values(supply_consumed=True)
            .execution_options(synchronize_session=False)
        )

    def _notify(self, key: DedupKey) -> None:
        for listener in self.listeners:
            try:
                listener(key)
            except Exception:
                logger.exception("Mutation listener failed for %s", key)
