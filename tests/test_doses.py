import uuid
from datetime import date, datetime

import pytest
from sqlalchemy import select

from medtrack.core.errors import ConflictError, NotFoundError, ValidationError
from medtrack.db.models import AdherenceDay
from medtrack.medications import crud
from medtrack.medications.doses import DEFAULT_SKIP_REASON, DoseStateMachine, plan_transition
from medtrack.medications.schemas import CompletionRead, DoseAction, DoseStatus

DAY = date(2024, 1, 1)


async def supply_of(db, medication_id):
    med = await crud.get_medication(db, medication_id)
    await db.refresh(med, attribute_names=["current_supply"])
    return med.current_supply


async def taken_count(db, medication_id, day=DAY):
    res = await db.execute(
        select(AdherenceDay.times_taken).where(AdherenceDay.medication_id == medication_id, AdherenceDay.day == day)
    )
    return res.scalar_one_or_none() or 0


def test_plan_for_repeated_take_writes_nothing():
    record = CompletionRead(slot_index=0, dose_date=DAY, taken=True, taken_at=datetime(2024, 1, 1, 8, 0))
    assert plan_transition(record, DoseAction.TAKEN).write is False


def test_plan_for_reversal_restores_only_consumed_supply():
    consumed = CompletionRead(slot_index=0, dose_date=DAY, taken=True, supply_consumed=True)
    not_consumed = CompletionRead(slot_index=0, dose_date=DAY, taken=True, supply_consumed=False)
    assert plan_transition(consumed, DoseAction.SKIPPED).restore_units == 1
    assert plan_transition(not_consumed, DoseAction.SKIPPED).restore_units == 0
    assert plan_transition(consumed, DoseAction.SKIPPED).taken_delta == -1


def test_plan_for_new_skip_reason_only_touches_the_reason():
    record = CompletionRead(slot_index=0, dose_date=DAY, skipped=True, skip_reason="nausea")
    plan = plan_transition(record, DoseAction.SKIPPED, reason="travel")
    assert plan.write is True
    assert plan.state_changed is False
    assert plan.values == {"skip_reason": "travel"}


@pytest.mark.anyio
async def test_mark_taken_records_the_dose(db, clock, make_medication):
    med = await make_medication()
    machine = DoseStateMachine(db, clock)

    result = await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY)

    assert result.changed is True
    assert result.previous_status is DoseStatus.DUE
    assert result.instance.status is DoseStatus.TAKEN
    assert result.instance.taken_at == clock.now()

    record = await crud.get_completion(db, med.id, 0, DAY)
    assert record.taken is True and record.skipped is False
    assert await taken_count(db, med.id) == 1


@pytest.mark.anyio
async def test_repeated_mark_taken_decrements_supply_once(db, clock, make_medication):
    med = await make_medication(refill_enabled=True, current_supply=5)
    machine = DoseStateMachine(db, clock, decrement_supply_on_take=True)

    first = await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY)
    clock.set(datetime(2024, 1, 1, 8, 30))
    second = await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY)

    assert first.changed is True
    assert second.changed is False
    assert second.previous_status is DoseStatus.TAKEN
    assert second.instance.taken_at == datetime(2024, 1, 1, 8, 0)
    assert await supply_of(db, med.id) == 4
    assert await taken_count(db, med.id) == 1

    record = await crud.get_completion(db, med.id, 0, DAY)
    assert record.version == 1
    assert record.supply_consumed is True


@pytest.mark.anyio
async def test_skip_after_take_restores_supply(db, clock, make_medication):
    med = await make_medication(refill_enabled=True, current_supply=5)
    machine = DoseStateMachine(db, clock, decrement_supply_on_take=True)

    await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY)
    result = await machine.mark_skipped(
        user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY, reason="nausea"
    )

    assert result.previous_status is DoseStatus.TAKEN
    assert result.instance.status is DoseStatus.SKIPPED
    assert result.instance.skip_reason == "nausea"
    assert await supply_of(db, med.id) == 5
    assert await taken_count(db, med.id) == 0

    record = await crud.get_completion(db, med.id, 0, DAY)
    assert record.skipped is True
    assert record.taken is False
    assert record.taken_at is None


@pytest.mark.anyio
async def test_take_after_skip_consumes_supply(db, clock, make_medication):
    med = await make_medication(refill_enabled=True, current_supply=5)
    machine = DoseStateMachine(db, clock, decrement_supply_on_take=True)

    skipped = await machine.mark_skipped(user_id="user-1", medication_id=med.id, slot_index=1, dose_date=DAY)
    taken = await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=1, dose_date=DAY)

    assert skipped.instance.skip_reason == DEFAULT_SKIP_REASON
    assert taken.previous_status is DoseStatus.SKIPPED
    assert await supply_of(db, med.id) == 4

    record = await crud.get_completion(db, med.id, 1, DAY)
    assert record.taken is True and record.skipped is False
    assert record.skip_reason is None


@pytest.mark.anyio
async def test_repeated_skip_updates_reason_without_side_effects(db, clock, make_medication):
    med = await make_medication()
    machine = DoseStateMachine(db, clock)

    await machine.mark_skipped(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY, reason="nausea")
    again = await machine.mark_skipped(
        user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY, reason="nausea"
    )
    updated = await machine.mark_skipped(
        user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY, reason="travel"
    )

    assert again.changed is False
    assert updated.changed is False
    assert updated.instance.skip_reason == "travel"
    events = await crud.list_dose_events(db, med.id)
    assert [e.action for e in events] == ["skipped"]


@pytest.mark.anyio
async def test_empty_supply_is_not_driven_negative_or_restored(db, clock, make_medication):
    med = await make_medication(refill_enabled=True, current_supply=0)
    machine = DoseStateMachine(db, clock, decrement_supply_on_take=True)

    await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY)
    assert await supply_of(db, med.id) == 0
    assert (await crud.get_completion(db, med.id, 0, DAY)).supply_consumed is False

    await machine.mark_skipped(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY)
    assert await supply_of(db, med.id) == 0


@pytest.mark.anyio
async def test_supply_untouched_when_tracking_is_off(db, clock, make_medication):
    tracked_off = await make_medication(refill_enabled=False, current_supply=5)
    decrement_off = await make_medication(name="Metformin", refill_enabled=True, current_supply=5)

    await DoseStateMachine(db, clock, decrement_supply_on_take=True).mark_taken(
        user_id="user-1", medication_id=tracked_off.id, slot_index=0, dose_date=DAY
    )
    await DoseStateMachine(db, clock, decrement_supply_on_take=False).mark_taken(
        user_id="user-1", medication_id=decrement_off.id, slot_index=0, dose_date=DAY
    )

    assert await supply_of(db, tracked_off.id) == 5
    assert await supply_of(db, decrement_off.id) == 5


@pytest.mark.anyio
async def test_missed_dose_can_still_be_taken_late(db, clock, make_medication):
    med = await make_medication()
    clock.set(datetime(2024, 1, 1, 21, 0))

    result = await DoseStateMachine(db, clock).mark_taken(
        user_id="user-1", medication_id=med.id, slot_index=1, dose_date=DAY
    )

    assert result.previous_status is DoseStatus.MISSED
    assert result.instance.status is DoseStatus.TAKEN


@pytest.mark.anyio
async def test_explicit_taken_at_is_kept(db, clock, make_medication):
    med = await make_medication()
    taken_at = datetime(2024, 1, 1, 7, 55)

    result = await DoseStateMachine(db, clock).mark_taken(
        user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY, taken_at=taken_at
    )

    assert result.instance.taken_at == taken_at


@pytest.mark.anyio
async def test_unknown_medication_or_slot_is_not_found(db, clock, make_medication):
    med = await make_medication()
    machine = DoseStateMachine(db, clock)

    with pytest.raises(NotFoundError):
        await machine.mark_taken(user_id="user-1", medication_id=uuid.uuid4(), slot_index=0, dose_date=DAY)
    with pytest.raises(NotFoundError):
        await machine.mark_taken(user_id="someone-else", medication_id=med.id, slot_index=0, dose_date=DAY)
    with pytest.raises(NotFoundError):
        await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=5, dose_date=DAY)


@pytest.mark.anyio
async def test_dates_outside_validity_window_are_rejected(db, clock, make_medication):
    med = await make_medication(start_date=DAY, end_date=date(2024, 1, 31))
    machine = DoseStateMachine(db, clock)

    with pytest.raises(ValidationError):
        await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=date(2023, 12, 31))
    with pytest.raises(ValidationError):
        await machine.mark_skipped(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=date(2024, 2, 1))
    assert await crud.get_completion(db, med.id, 0, date(2023, 12, 31)) is None


@pytest.mark.anyio
async def test_transitions_leave_an_audit_trail(db, clock, make_medication):
    med = await make_medication()
    machine = DoseStateMachine(db, clock)

    await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY)
    clock.set(datetime(2024, 1, 1, 9, 0))
    await machine.mark_skipped(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY, reason="dropped it")

    events = await crud.list_dose_events(db, med.id)
    assert [(e.action, e.previous_status) for e in events] == [("taken", "due"), ("skipped", "taken")]
    assert events[1].detail == "dropped it"


@pytest.mark.anyio
async def test_listeners_hear_about_every_write(db, clock, make_medication):
    med = await make_medication()
    heard = []
    machine = DoseStateMachine(db, clock, listeners=[heard.append])

    await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY)
    await machine.mark_taken(user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY)

    assert len(heard) == 1
    assert heard[0].medication_id == med.id


@pytest.mark.anyio
async def test_concurrent_skip_then_take_last_applied_wins(session_factory, db, clock, make_medication, monkeypatch):
    med = await make_medication(refill_enabled=True, current_supply=10)
    original = crud.get_completion
    state = {"raced": False}

    async def stale_read(session, medication_id, slot_index, dose_date):
        record = await original(session, medication_id, slot_index, dose_date)
        if not state["raced"]:
            state["raced"] = True
            # Another device lands a skip between this read and the write.
            async with session_factory() as other:
                await DoseStateMachine(other, clock).mark_skipped(
                    user_id="user-1", medication_id=medication_id, slot_index=slot_index, dose_date=dose_date
                )
        return record

    monkeypatch.setattr(crud, "get_completion", stale_read)

    result = await DoseStateMachine(db, clock, decrement_supply_on_take=True).mark_taken(
        user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY
    )
    monkeypatch.setattr(crud, "get_completion", original)

    assert result.previous_status is DoseStatus.SKIPPED
    record = await crud.get_completion(db, med.id, 0, DAY)
    assert record.taken is True
    assert record.skipped is False
    assert record.version == 2
    assert await supply_of(db, med.id) == 9
    assert await taken_count(db, med.id) == 1


@pytest.mark.anyio
async def test_concurrent_take_then_skip_restores_supply(session_factory, db, clock, make_medication, monkeypatch):
    med = await make_medication(refill_enabled=True, current_supply=10)
    original = crud.get_completion
    state = {"raced": False}

    async def stale_read(session, medication_id, slot_index, dose_date):
        record = await original(session, medication_id, slot_index, dose_date)
        if not state["raced"]:
            state["raced"] = True
            async with session_factory() as other:
                await DoseStateMachine(other, clock, decrement_supply_on_take=True).mark_taken(
                    user_id="user-1", medication_id=medication_id, slot_index=slot_index, dose_date=dose_date
                )
        return record

    monkeypatch.setattr(crud, "get_completion", stale_read)

    await DoseStateMachine(db, clock).mark_skipped(
        user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY, reason="changed my mind"
    )
    monkeypatch.setattr(crud, "get_completion", original)

    record = await crud.get_completion(db, med.id, 0, DAY)
    assert record.skipped is True
    assert record.taken is False
    assert await supply_of(db, med.id) == 10
    assert await taken_count(db, med.id) == 0


@pytest.mark.anyio
async def test_exhausted_retries_raise_conflict(db, clock, make_medication, monkeypatch):
    med = await make_medication()

    async def always_lose(*args, **kwargs):
        return False

    monkeypatch.setattr(crud, "insert_completion", always_lose)

    with pytest.raises(ConflictError):
        await DoseStateMachine(db, clock, retries=2).mark_taken(
            user_id="user-1", medication_id=med.id, slot_index=0, dose_date=DAY
        )
