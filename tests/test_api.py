from datetime import datetime

import httpx
import pytest

from medtrack.core.auth import create_access_token
from medtrack.core.clock import get_clock
from medtrack.db.database import get_db
from medtrack.main import app
from medtrack.reminders.notifier import InMemoryNotifier
from medtrack.reminders.scheduler import ReminderScheduler

LISINOPRIL = {
    "name": "Lisinopril",
    "dosage": {"amount": 10, "unit": "mg"},
    "frequency": "twice_daily",
    "schedule": [{"time": "8:00"}, {"time": "20:00"}],
    "start_date": "2024-01-01",
    "refill_reminder": {"enabled": True, "current_supply": 5, "days_before_empty": 7},
}


def auth(user_id="user-1"):
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id)}"}


@pytest.fixture
async def client(session_factory, clock):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    alerts = InMemoryNotifier()
    saved_state = (app.state.alerts, app.state.reminder_scheduler)
    app.state.alerts = alerts
    app.state.reminder_scheduler = ReminderScheduler(session_factory, alerts, clock, refetch_interval=0)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
    app.state.alerts, app.state.reminder_scheduler = saved_state


async def create_lisinopril(client, user_id="user-1", **overrides):
    resp = await client.post("/medications/", json={**LISINOPRIL, **overrides}, headers=auth(user_id))
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.anyio
async def test_health_check(client):
    resp = await client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.anyio
async def test_requests_without_token_are_rejected(client):
    resp = await client.get("/medications/")
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_create_and_read_medication(client):
    med = await create_lisinopril(client)

    assert med["dosage_text"] == "10 mg"
    assert [s["time"] for s in med["slots"]] == ["08:00", "20:00"]

    listed = (await client.get("/medications/", headers=auth())).json()
    assert [m["id"] for m in listed] == [med["id"]]

    other = await client.get(f"/medications/{med['id']}", headers=auth("someone-else"))
    assert other.status_code == 404


@pytest.mark.anyio
async def test_invalid_slot_time_is_rejected(client):
    resp = await client.post(
        "/medications/", json={**LISINOPRIL, "schedule": [{"time": "25:00"}]}, headers=auth()
    )
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_todays_doses_and_marking(client, clock):
    med = await create_lisinopril(client)

    today = (await client.get("/reminders/today", headers=auth())).json()
    assert [(d["time"], d["status"]) for d in today] == [("08:00", "due"), ("20:00", "upcoming")]

    taken = await client.post(f"/reminders/{med['id']}/0/2024-01-01/taken", headers=auth())
    assert taken.status_code == 200
    body = taken.json()
    assert body["previous_status"] == "due"
    assert body["instance"]["status"] == "taken"

    skipped = await client.post(
        f"/reminders/{med['id']}/1/2024-01-01/skipped", json={"reason": "nausea"}, headers=auth()
    )
    assert skipped.json()["instance"]["skip_reason"] == "nausea"

    supply = (await client.get(f"/medications/{med['id']}/supply", headers=auth())).json()
    assert supply["current_supply"] == 4
    assert supply["tier"] == "low"

    clock.set(datetime(2024, 1, 1, 21, 0))
    adherence = (await client.get("/adherence?start=2024-01-01&end=2024-01-01", headers=auth())).json()
    assert adherence["rate"] == 0.5
    assert adherence["percentage"] == 50
    assert (adherence["missed"], adherence["skipped"]) == (0, 1)


@pytest.mark.anyio
async def test_marking_unknown_slot_or_out_of_window_date(client):
    med = await create_lisinopril(client, end_date="2024-01-31")

    missing = await client.post(f"/reminders/{med['id']}/7/2024-01-01/taken", headers=auth())
    assert missing.status_code == 404

    late = await client.post(f"/reminders/{med['id']}/0/2024-02-01/taken", headers=auth())
    assert late.status_code == 422


@pytest.mark.anyio
async def test_refill_flow(client):
    med = await create_lisinopril(client)

    resp = await client.post(
        f"/medications/{med['id']}/refills",
        json={"quantity": 30, "refill_date": "2024-01-03", "request_key": "r-1", "pharmacy_name": "Main St"},
        headers=auth(),
    )
    assert resp.status_code == 201
    assert resp.json()["new_supply"] == 35

    again = await client.post(
        f"/medications/{med['id']}/refills",
        json={"quantity": 30, "refill_date": "2024-01-03", "request_key": "r-1"},
        headers=auth(),
    )
    assert again.json()["duplicate"] is True

    supply = (await client.get(f"/medications/{med['id']}/supply", headers=auth())).json()
    assert (supply["current_supply"], supply["tier"]) == (35, "good")

    history = (await client.get(f"/medications/{med['id']}/refills", headers=auth())).json()
    assert len(history) == 1
    assert history[0]["pharmacy_name"] == "Main St"

    bad = await client.post(
        f"/medications/{med['id']}/refills", json={"quantity": 0, "refill_date": "2024-01-03"}, headers=auth()
    )
    assert bad.status_code == 422


@pytest.mark.anyio
async def test_schedule_change_keeps_past_days(client, clock):
    med = await create_lisinopril(client)
    clock.set(datetime(2024, 1, 10, 6, 0))

    resp = await client.put(
        f"/medications/{med['id']}/schedule", json={"schedule": [{"time": "09:00"}]}, headers=auth()
    )
    assert resp.status_code == 200

    past = (await client.get(f"/reminders/medications/{med['id']}?day=2024-01-09", headers=auth())).json()
    today = (await client.get(f"/reminders/medications/{med['id']}", headers=auth())).json()
    assert [d["time"] for d in past] == ["08:00", "20:00"]
    assert [d["time"] for d in today] == ["09:00"]


@pytest.mark.anyio
async def test_deactivated_medication_leaves_todays_list(client):
    med = await create_lisinopril(client)

    resp = await client.delete(f"/medications/{med['id']}", headers=auth())
    assert resp.status_code == 204
    assert (await client.get("/reminders/today", headers=auth())).json() == []

    reactivated = await client.post(f"/medications/{med['id']}/activate", headers=auth())
    assert reactivated.json()["is_active"] is True


@pytest.mark.anyio
async def test_update_rejects_end_before_start(client):
    med = await create_lisinopril(client)

    resp = await client.patch(f"/medications/{med['id']}", json={"end_date": "2023-12-01"}, headers=auth())
    assert resp.status_code == 422

    renamed = await client.patch(f"/medications/{med['id']}", json={"name": "Zestril"}, headers=auth())
    assert renamed.json()["name"] == "Zestril"


@pytest.mark.anyio
async def test_alerts_follow_the_scheduler(client):
    med = await create_lisinopril(client)
    await app.state.reminder_scheduler.tick()

    alerts = (await client.get("/reminders/alerts", headers=auth())).json()
    assert [a["medication_id"] for a in alerts] == [med["id"]]
    assert alerts[0]["key"] == f"{med['id']}:0:2024-01-01"

    await client.post(f"/reminders/{med['id']}/0/2024-01-01/taken", headers=auth())
    await app.state.reminder_scheduler.tick()
    assert (await client.get("/reminders/alerts", headers=auth())).json() == []


@pytest.mark.anyio
async def test_period_adherence(client):
    await create_lisinopril(client)

    resp = await client.get("/adherence/week", headers=auth())
    assert resp.status_code == 200
    assert len(resp.json()["days"]) == 7
    assert resp.json()["end"] == "2023-12-31"

    assert (await client.get("/adherence/decade", headers=auth())).status_code == 422
