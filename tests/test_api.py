from tests.conftest import wib


def room_payload(asset="R1", start=None, end=None, items=()):
    return {
        "kind": "room",
        "asset_code": asset,
        "start_at": (start or wib(2, 7)).isoformat(),
        "end_at": (end or wib(2, 16)).isoformat(),
        "requester_name": "Ani",
        "person_in_charge": "Ani",
        "pic_phone": "0813",
        "notes": "bring chairs",
        "activity_name": "Workshop",
        "borrowed_items": [{"asset_code": c, "quantity": q} for c, q in items],
    }


def vehicle_payload(asset="V1", driver_id=None):
    return {
        "kind": "vehicle",
        "asset_code": asset,
        "start_at": wib(2, 7).isoformat(),
        "end_at": wib(2, 16).isoformat(),
        "requester_name": "Ani",
        "person_in_charge": "Ani",
        "pic_phone": "0813",
        "destination": "Bandung",
        "driver_id": driver_id,
    }


def test_assets_grouped_by_kind(client, catalog):
    res = client.get("/assets")
    assert res.status_code == 200
    body = res.json()
    assert [a["code"] for a in body["room"]] == ["R1", "R2"]
    assert {a["code"] for a in body["countable-item"]} == {"MIC", "OLD", "PRJ"}


def test_asset_crud(client):
    res = client.post("/assets", json={"code": "CAM", "name": "Camera", "kind": "countable-item", "capacity": 3})
    assert res.status_code == 201
    assert client.post("/assets", json={"code": "CAM", "name": "Other", "kind": "room"}).status_code == 409
    # items without stock are refused
    assert client.post("/assets", json={"code": "X", "name": "X", "kind": "countable-item"}).status_code == 422

    res = client.put("/assets/CAM", json={"name": "Camera Kit"})
    assert res.json()["name"] == "Camera Kit"
    assert client.put("/assets/CAM", json={"capacity": 0}).status_code == 400

    assert client.delete("/assets/CAM").status_code == 200
    assert client.get("/assets/CAM").status_code == 404


def test_driver_crud(client):
    res = client.post("/drivers", json={"code": "D9", "name": "Joko"})
    assert res.status_code == 201
    driver_id = res.json()["id"]
    assert client.post("/drivers", json={"code": "D9", "name": "Dup"}).status_code == 409

    res = client.put(f"/drivers/{driver_id}", json={"phone": "0899"})
    assert res.json()["phone"] == "0899"
    assert [d["code"] for d in client.get("/drivers").json()] == ["D9"]

    assert client.delete(f"/drivers/{driver_id}").status_code == 200
    assert client.delete(f"/drivers/{driver_id}").status_code == 404


def test_create_booking_and_conflict(client, catalog):
    res = client.post("/bookings", json=room_payload(items=[("PRJ", 2)]))
    assert res.status_code == 201
    booking = res.json()
    assert booking["asset_name"] == "Main Hall"
    assert booking["borrowed_items"][0]["asset_name"] == "Projector"

    res = client.post("/bookings", json=room_payload(start=wib(2, 9), end=wib(2, 10)))
    assert res.status_code == 409
    assert res.json()["error"] == "ConflictError"


def test_capacity_error_reports_remaining(client, catalog):
    client.post("/bookings", json=room_payload(asset="R1", items=[("PRJ", 6)]))
    res = client.post("/bookings", json=room_payload(asset="R2", items=[("PRJ", 5)]))
    assert res.status_code == 409
    assert res.json()["error"] == "CapacityError"
    assert res.json()["remaining"] == 4


def test_business_hours_and_bad_windows(client, catalog):
    res = client.post("/bookings", json=room_payload(start=wib(2, 6), end=wib(2, 8)))
    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"

    res = client.post("/bookings", json=room_payload(start=wib(2, 10), end=wib(2, 9)))
    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"

    res = client.post("/requests", json=room_payload(start=wib(2, 10), end=wib(2, 10)))
    assert res.status_code == 400


def test_public_listing_hides_personal_data(client, catalog):
    booking_id = client.post("/bookings", json=room_payload()).json()["booking_id"]
    listing = client.get("/bookings").json()
    assert len(listing) == 1
    assert "pic_phone" not in listing[0]
    assert "requester_name" not in listing[0]

    res = client.get(f"/bookings/{booking_id.lower()}")
    assert res.status_code == 200
    assert "notes" not in res.json()

    assert client.get("/bookings", params={"kind": "vehicle"}).json() == []
    window = {"start": wib(3, 7).isoformat(), "end": wib(3, 8).isoformat()}
    assert client.get("/bookings", params=window).json() == []


def test_reschedule_and_delete_booking(client, catalog):
    booking_id = client.post("/bookings", json=room_payload()).json()["booking_id"]
    res = client.put(f"/bookings/{booking_id}", json=room_payload(start=wib(2, 8), end=wib(2, 9)))
    assert res.status_code == 200
    assert res.json()["booking_id"] == booking_id

    assert client.delete(f"/bookings/{booking_id}").status_code == 200
    assert client.get(f"/bookings/{booking_id}").status_code == 404


def test_request_approval_flow(client, catalog):
    res = client.post("/requests", json={**vehicle_payload(), "letter_file": "surat.pdf"})
    assert res.status_code == 201
    request = res.json()
    assert request["status"] == "pending"
    assert client.get(f"/requests/code/{request['request_id']}").json()["id"] == request["id"]

    res = client.post(f"/requests/{request['id']}/approve", json={"approved_by": "kepala", "driver_id": catalog["D2"]})
    assert res.status_code == 200
    body = res.json()
    assert body["request"]["status"] == "approved"
    assert body["request"]["booking_id"] == body["booking"]["booking_id"]
    assert body["booking"]["driver_name"] == "Sari"

    res = client.post(f"/requests/{request['id']}/approve", json={})
    assert res.status_code == 409
    assert res.json()["error"] == "StateError"
    res = client.post(f"/requests/{request['id']}/reject", json={"rejection_reason": "no"})
    assert res.json()["error"] == "StateError"


def test_request_rejection_and_listing(client, catalog):
    first = client.post("/requests", json=room_payload()).json()
    second = client.post("/requests", json=room_payload(asset="R2")).json()

    res = client.post(f"/requests/{first['id']}/reject", json={"rejection_reason": "Hall is closed"})
    assert res.json()["status"] == "rejected"
    assert res.json()["rejection_reason"] == "Hall is closed"

    pending = client.get("/requests", params={"status": "pending"}).json()
    assert [r["id"] for r in pending] == [second["id"]]

    assert client.delete(f"/requests/{second['id']}").status_code == 200
    assert client.get(f"/requests/{second['id']}").status_code == 404
    assert client.post("/requests/999/approve", json={}).status_code == 404


def test_refused_approval_stays_pending(client, catalog):
    client.post("/bookings", json=room_payload())
    request = client.post("/requests", json=room_payload(start=wib(2, 8), end=wib(2, 9))).json()
    res = client.post(f"/requests/{request['id']}/approve", json={})
    assert res.status_code == 409
    assert client.get(f"/requests/{request['id']}").json()["status"] == "pending"


def test_availability_endpoints(client, catalog):
    client.post("/bookings", json=room_payload(items=[("MIC", 1)]))
    client.post("/bookings", json=vehicle_payload(driver_id=catalog["D1"]))
    window = {"start": wib(2, 9).isoformat(), "end": wib(2, 10).isoformat()}

    items = {row["asset_code"]: row["remaining"] for row in client.get("/availability/items", params=window).json()}
    assert items == {"MIC": 1, "OLD": 0, "PRJ": 10}

    vehicles = client.get("/availability/assets", params={**window, "kind": "vehicle"}).json()
    assert [v["code"] for v in vehicles] == ["V2"]
    drivers = client.get("/availability/drivers", params=window).json()
    assert [d["code"] for d in drivers] == ["D2"]

    res = client.get("/availability/assets", params={**window, "kind": "countable-item"})
    assert res.status_code == 400


def test_listing_window_needs_both_ends(client, catalog):
    client.post("/bookings", json=room_payload())
    res = client.get("/bookings", params={"start": wib(3, 7).isoformat()})
    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"
    res = client.get("/bookings", params={"end": wib(3, 8).isoformat()})
    assert res.status_code == 400
