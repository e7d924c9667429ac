import json
import time

import jwt

from societix import auth
from societix.mockpay import MOCK_SIGNATURE_HEADER, sign_payload

HEADERS = {"X-Admin-Password": "test-admin-pw"}


async def _login(client, password="test-admin-pw"):
    return await client.post("/api/admin/login", json={"password": password})


async def _book(client, event_id, quantity=1, name="Ada Lovelace"):
    psid = f"mock_{name.split()[0].lower()}_{quantity}"
    payload = json.dumps({
        "type": "payment.succeeded",
        "payment_session_id": psid,
        "amount": 1250 * quantity,
        "currency": "gbp",
        "metadata": {
            "order_id": f"order-{psid}", "event_id": event_id,
            "name": name, "email": "ada@example.com", "phone": "",
            "quantity": str(quantity),
        },
    }).encode()
    resp = await client.post("/payments/webhook", content=payload, headers={
        MOCK_SIGNATURE_HEADER: sign_payload(payload),
        "content-type": "application/json",
    })
    assert resp.status_code == 200
    return resp.json()["codes"]


async def test_admin_routes_require_credentials(client, db):
    for method, path in (
        ("GET", "/api/admin/summary"),
        ("GET", "/api/admin/attendees"),
        ("GET", "/api/admin/pending"),
        ("POST", "/api/admin/checkin/SS-AAAAAAAA"),
        ("POST", "/api/events"),
        ("DELETE", "/api/events/x"),
    ):
        resp = await client.request(method, path)
        assert resp.status_code == 401, path
        assert resp.json()["error"] == "unauthorized"


async def test_wrong_password_header(client, db):
    resp = await client.get("/api/admin/summary",
                            headers={"X-Admin-Password": "guess"})
    assert resp.status_code == 401


async def test_token_login(client, db):
    assert (await _login(client, "guess")).status_code == 401

    resp = await _login(client)
    assert resp.status_code == 200
    body = resp.json()
    assert body["token_type"] == "bearer"
    assert body["expires_in"] == auth.ADMIN_TOKEN_TTL_SECONDS

    resp = await client.get("/api/admin/summary", headers={
        "Authorization": f"Bearer {body['token']}"})
    assert resp.status_code == 200


async def test_bad_tokens(client, db):
    resp = await client.get("/api/admin/summary",
                            headers={"Authorization": "Bearer garbage"})
    assert resp.status_code == 401

    expired = jwt.encode(
        {"sub": "admin", "role": "admin", "exp": int(time.time()) - 10},
        auth.ADMIN_JWT_SECRET, algorithm="HS256",
    )
    resp = await client.get("/api/admin/summary",
                            headers={"Authorization": f"Bearer {expired}"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Authentication token expired"

    forged = jwt.encode({"sub": "admin", "role": "admin"}, "other-secret",
                        algorithm="HS256")
    resp = await client.get("/api/admin/summary",
                            headers={"Authorization": f"Bearer {forged}"})
    assert resp.status_code == 401


async def test_form_login_sets_session_cookie(client, db):
    resp = await client.get("/admin")
    assert resp.status_code == 307
    assert resp.headers["location"] == "/admin/login?next=/admin"

    resp = await client.post("/admin/login", data={
        "username": "admin", "password": "nope", "next": "/admin"})
    assert resp.status_code == 401

    resp = await client.post("/admin/login", data={
        "username": "admin", "password": "test-admin-pw",
        "next": "/admin"})
    assert resp.status_code == 303
    assert resp.headers["location"] == "/admin"

    assert (await client.get("/admin")).status_code == 200
    assert (await client.get("/api/admin/summary")).status_code == 200

    await client.get("/admin/logout")
    assert (await client.get("/api/admin/summary")).status_code == 401


async def test_attendee_admin(client, make_event):
    event = await make_event()
    await _book(client, event.id, quantity=2, name="Ada Lovelace")
    await _book(client, event.id, name="Alan Turing")

    resp = await client.get("/api/admin/attendees", params={"q": "alan"},
                            headers=HEADERS)
    assert resp.json()["total"] == 1
    alan = resp.json()["items"][0]

    resp = await client.put(f"/api/admin/attendees/{alan['id']}",
                            json={"phone": "07700 900123"}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["phone"] == "07700 900123"

    # code is not part of the editable shape
    resp = await client.put(f"/api/admin/attendees/{alan['id']}",
                            json={"code": "SS-AAAAAAAA"}, headers=HEADERS)
    assert resp.status_code == 400
    resp = await client.get(f"/api/admin/attendees/{alan['id']}",
                            headers=HEADERS)
    assert resp.json()["code"] == alan["code"]

    resp = await client.put(f"/api/admin/attendees/{alan['id']}",
                            json={"email": "bad"}, headers=HEADERS)
    assert resp.status_code == 400

    resp = await client.delete(f"/api/admin/attendees/{alan['id']}",
                               headers=HEADERS)
    assert resp.json() == {"ok": True, "deleted": alan["id"]}
    resp = await client.get(f"/api/admin/attendees/{alan['id']}",
                            headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json()["error"] == "attendee_not_found"

    resp = await client.get(f"/api/events/{event.id}/attendees",
                            headers=HEADERS)
    assert resp.json()["total"] == 2


async def test_toggle_checkin(client, make_event):
    event = await make_event()
    code = (await _book(client, event.id))[0]

    resp = await client.post(f"/api/admin/attendees/{code}/checkin",
                             headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["checked_in"] is True
    assert resp.json()["event_name"] == "Spring Ball"

    resp = await client.post(f"/api/admin/attendees/{code.lower()}/checkin",
                             headers=HEADERS)
    assert resp.json()["checked_in"] is False


async def test_scanner_checkin(client, make_event):
    event = await make_event()
    code = (await _book(client, event.id))[0]

    resp = await client.post(f"/api/admin/checkin/{code}", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["already_checked_in"] is False
    assert resp.json()["attendee"]["checked_in"] is True

    resp = await client.post(f"/api/admin/checkin/{code}", headers=HEADERS)
    assert resp.json()["already_checked_in"] is True
    assert resp.json()["attendee"]["checked_in"] is True

    resp = await client.post("/api/admin/checkin/not-a-code",
                             headers=HEADERS)
    assert resp.status_code == 400
    resp = await client.post("/api/admin/checkin/SS-ZZZZZZZZ",
                             headers=HEADERS)
    assert resp.status_code == 404


async def test_summary(client, make_event):
    event = await make_event(capacity=10)
    codes = await _book(client, event.id, quantity=3)
    await client.post(f"/api/admin/checkin/{codes[0]}", headers=HEADERS)

    resp = await client.get("/api/admin/summary", headers=HEADERS)
    assert resp.json() == {"paid": 1, "guests": 2, "total": 3,
                           "checked_in": 1, "capacity": 10, "remaining": 7}

    resp = await client.get(f"/api/events/{event.id}/summary",
                            headers=HEADERS)
    assert resp.json()["revenue"] == 37.5


async def test_event_admin(client, db):
    resp = await client.post("/api/events", headers=HEADERS, json={
        "name": "Winter Formal", "location": "Ballroom",
        "event_date": "2030-12-12", "event_time": "19:30-23:30",
        "price": "25.00", "capacity": 120,
    })
    assert resp.status_code == 201
    event = resp.json()
    assert event["price"] == 25.0
    assert event["is_active"] is True

    resp = await client.post("/api/events", headers=HEADERS, json={
        "name": "Broken", "location": "Nowhere", "event_date": "soon",
        "event_time": "19:00", "price": "-1", "capacity": -5,
    })
    assert resp.status_code == 400

    resp = await client.put(f"/api/events/{event['id']}", headers=HEADERS,
                            json={"capacity": 150, "price": 20})
    assert resp.json()["capacity"] == 150
    assert resp.json()["price"] == 20.0

    resp = await client.delete(f"/api/events/{event['id']}",
                               headers=HEADERS)
    assert resp.json() == {"ok": True, "deleted": event["id"],
                           "hard": False}
    listed = await client.get("/api/events")
    assert listed.json()["total"] == 0


async def test_hard_delete_refused_with_attendees(client, make_event):
    event = await make_event()
    await _book(client, event.id)
    resp = await client.delete(f"/api/events/{event.id}",
                               params={"hard": "true"}, headers=HEADERS)
    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


async def test_null_updates_are_rejected(client, make_event):
    event = await make_event()
    await _book(client, event.id)
    for change in ({"capacity": None}, {"price": None},
                   {"is_active": None}, {"name": None},
                   {"event_date": None}):
        resp = await client.put(f"/api/events/{event.id}", json=change,
                                headers=HEADERS)
        assert resp.status_code == 400, change
        assert resp.json()["error"] == "validation_error"

    resp = await client.get(f"/api/events/{event.id}")
    assert resp.json()["capacity"] == 10
    assert resp.json()["is_active"] is True

    resp = await client.put(f"/api/events/{event.id}",
                            json={"description": None}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["description"] is None

    listed = await client.get("/api/admin/attendees", headers=HEADERS)
    attendee = listed.json()["items"][0]
    for change in ({"checked_in": None}, {"email": None}, {"name": None}):
        resp = await client.put(f"/api/admin/attendees/{attendee['id']}",
                                json=change, headers=HEADERS)
        assert resp.status_code == 400, change

    resp = await client.put(f"/api/admin/attendees/{attendee['id']}",
                            json={"phone": None}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["phone"] is None
