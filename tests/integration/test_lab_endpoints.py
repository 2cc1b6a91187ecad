"""
Integration tests for lab, computer and seat occupancy endpoints.
"""
import sqlite3
import datetime
from datetime import timezone

import pytest
import app as app_module

NOW = datetime.datetime(2030, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def client(monkeypatch):
    """Create a test client with in-memory database."""
    app_module.app.config["TESTING"] = True
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    monkeypatch.setattr("app.get_db_connection", lambda: conn)
    monkeypatch.setattr("app.DATABASE", ":memory:")
    monkeypatch.setattr("app._utcnow", lambda: NOW)
    app_module.init_db()
    with app_module.app.test_client() as client_obj:
        yield client_obj
    conn.close()


def login_as(client, college_id, role):
    client.post(
        "/api/register",
        json={
            "college_id": college_id,
            "name": f"User {college_id}",
            "email": f"{college_id.lower()}@test.com",
            "password": "Secret123!",
            "role": role,
        },
    )
    resp = client.post("/api/login", json={"college_id": college_id, "password": "Secret123!"})
    return {"Authorization": f"Bearer {resp.get_json()['token']}"}


@pytest.fixture
def admin(client):
    return login_as(client, "ADM1", "admin")


@pytest.fixture
def student(client):
    return login_as(client, "STU1", "student")


def create_lab(client, admin, name="Lab A", computers=5):
    resp = client.post(
        "/api/labs",
        json={"name": name, "location": "Building A", "description": "Main lab", "capacity": max(computers, 1)},
        headers=admin,
    )
    lab_id = resp.get_json()["lab"]["id"]
    ids = []
    for i in range(1, computers + 1):
        resp = client.post(f"/api/labs/{lab_id}/computers", json={"name": f"PC-{i:02d}"}, headers=admin)
        ids.append(resp.get_json()["computer"]["id"])
    return lab_id, ids


@pytest.fixture
def busy_lab(client, admin, student, monkeypatch):
    """
    Five computers seen at 09:00: PC-01 and PC-02 occupied, PC-03 reserved
    by a pending booking, PC-04 in maintenance, PC-05 free.
    """
    lab_id, ids = create_lab(client, admin)
    monkeypatch.setattr("app._utcnow", lambda: NOW.replace(hour=8))
    for computer_id, start, end in [
        (ids[0], "2030-01-15T08:30:00Z", "2030-01-15T10:00:00Z"),
        (ids[1], "2030-01-15T08:30:00Z", "2030-01-15T10:00:00Z"),
        (ids[2], "2030-01-15T10:00:00Z", "2030-01-15T11:00:00Z"),
    ]:
        resp = client.post(
            "/api/bookings",
            json={"lab_id": lab_id, "computer_id": computer_id, "start_time": start, "end_time": end},
            headers=student,
        )
        assert resp.status_code == 201
        if computer_id != ids[2]:
            booking_id = resp.get_json()["booking_id"]
            client.patch(f"/api/admin/bookings/{booking_id}", json={"status": "approved"}, headers=admin)
    client.put(f"/api/computers/{ids[3]}/status", json={"is_working": False}, headers=admin)
    monkeypatch.setattr("app._utcnow", lambda: NOW)
    return lab_id, ids


# --- Labs ---

def test_admin_creates_lab(client, admin):
    resp = client.post(
        "/api/labs", json={"name": "Lab A", "location": "Room 1", "capacity": 20}, headers=admin
    )
    assert resp.status_code == 201
    lab = resp.get_json()["lab"]
    assert lab["name"] == "Lab A"
    assert lab["is_active"] is True


def test_student_cannot_create_lab(client, student):
    resp = client.post(
        "/api/labs", json={"name": "Lab A", "location": "Room 1", "capacity": 20}, headers=student
    )
    assert resp.status_code == 403


@pytest.mark.parametrize("payload", [
    {"name": "Lab A", "location": "Room 1"},
    {"name": "", "location": "Room 1", "capacity": 20},
    {"name": "Lab A", "location": "Room 1", "capacity": 0},
    {"name": "Lab A", "location": "Room 1", "capacity": "many"},
    {"name": "Lab A", "location": "Room 1", "capacity": 20, "is_active": "yes"},
])
def test_lab_validation(client, admin, payload):
    resp = client.post("/api/labs", json=payload, headers=admin)
    assert resp.status_code == 400
    assert resp.get_json()["success"] is False


def test_duplicate_lab_name(client, admin):
    create_lab(client, admin, computers=0)
    resp = client.post(
        "/api/labs", json={"name": "Lab A", "location": "Elsewhere", "capacity": 5}, headers=admin
    )
    assert resp.status_code == 400
    assert "already exists" in resp.get_json()["message"]


def test_list_labs_with_computer_counts(client, admin, student):
    lab_id, ids = create_lab(client, admin, computers=3)
    client.put(f"/api/computers/{ids[0]}/status", json={"is_working": False}, headers=admin)
    create_lab(client, admin, name="Closed Lab", computers=1)
    closed = client.get("/api/labs", headers=student).get_json()["labs"][0]
    client.put(f"/api/labs/{closed['id']}", json={"is_active": False}, headers=admin)

    labs = client.get("/api/labs", headers=student).get_json()["labs"]
    assert [lab["name"] for lab in labs] == ["Lab A"]
    assert labs[0]["computer_count"] == 3
    assert labs[0]["working_count"] == 2


def test_update_lab(client, admin):
    lab_id, _ = create_lab(client, admin, computers=0)
    resp = client.put(f"/api/labs/{lab_id}", json={"location": "Room 9", "capacity": 12}, headers=admin)
    assert resp.status_code == 200
    lab = resp.get_json()["lab"]
    assert lab["location"] == "Room 9"
    assert lab["capacity"] == 12
    assert lab["name"] == "Lab A"
    assert client.put("/api/labs/999", json={"capacity": 1}, headers=admin).status_code == 404


def test_get_lab_details(client, busy_lab, student):
    lab_id, _ = busy_lab
    resp = client.get(f"/api/labs/{lab_id}", headers=student)
    assert resp.status_code == 200
    lab = resp.get_json()["lab"]
    assert len(lab["computers"]) == 5
    assert len(lab["bookings"]) == 3
    assert {b["effective_status"] for b in lab["bookings"]} == {"in_progress", "pending"}
    assert lab["occupancy"]["occupancy_rate"] == 60.0
    assert client.get("/api/labs/999", headers=student).status_code == 404


# --- Computers ---

def test_add_computer_validation(client, admin):
    lab_id, _ = create_lab(client, admin, computers=1)
    assert client.post(
        f"/api/labs/{lab_id}/computers", json={"name": "PC-01"}, headers=admin
    ).status_code == 400
    assert client.post(
        f"/api/labs/{lab_id}/computers", json={"name": "  "}, headers=admin
    ).status_code == 400
    assert client.post(
        f"/api/labs/{lab_id}/computers", json={"name": "PC-02", "is_working": "no"}, headers=admin
    ).status_code == 400
    assert client.post(
        "/api/labs/999/computers", json={"name": "PC-02"}, headers=admin
    ).status_code == 404


def test_computer_status_update(client, admin):
    _, ids = create_lab(client, admin, computers=1)
    assert client.put(
        f"/api/computers/{ids[0]}/status", json={"is_working": "false"}, headers=admin
    ).status_code == 400
    assert client.put(
        "/api/computers/999/status", json={"is_working": False}, headers=admin
    ).status_code == 404
    resp = client.put(f"/api/computers/{ids[0]}/status", json={"is_working": False}, headers=admin)
    assert resp.status_code == 200


def test_computer_booking_history(client, busy_lab, student):
    _, ids = busy_lab
    resp = client.get(f"/api/computers/{ids[0]}/bookings", headers=student)
    assert resp.status_code == 200
    bookings = resp.get_json()["bookings"]
    assert len(bookings) == 1
    assert bookings[0]["effective_status"] == "in_progress"
    assert client.get("/api/computers/999/bookings", headers=student).status_code == 404


def test_available_computers_for_interval(client, busy_lab, student):
    lab_id, ids = busy_lab
    resp = client.get(
        f"/api/labs/{lab_id}/available-computers"
        "?start_time=2030-01-15T09:30:00Z&end_time=2030-01-15T10:30:00Z",
        headers=student,
    )
    assert resp.status_code == 200
    assert [c["id"] for c in resp.get_json()["computers"]] == [ids[4]]

    resp = client.get(
        f"/api/labs/{lab_id}/available-computers"
        "?start_time=2030-01-15T11:00:00Z&end_time=2030-01-15T12:00:00Z",
        headers=student,
    )
    assert [c["id"] for c in resp.get_json()["computers"]] == [ids[0], ids[1], ids[2], ids[4]]


def test_available_computers_validation(client, busy_lab, student):
    lab_id, _ = busy_lab
    resp = client.get(f"/api/labs/{lab_id}/available-computers", headers=student)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "INVALID_TIMESTAMP"
    resp = client.get(
        f"/api/labs/{lab_id}/available-computers"
        "?start_time=2030-01-15T11:00:00Z&end_time=2030-01-15T10:00:00Z",
        headers=student,
    )
    assert resp.get_json()["error"] == "INVALID_INTERVAL"
    resp = client.get(
        "/api/labs/999/available-computers"
        "?start_time=2030-01-15T10:00:00Z&end_time=2030-01-15T11:00:00Z",
        headers=student,
    )
    assert resp.status_code == 404


# --- Seat occupancy ---

def test_seat_occupancy_for_one_lab(client, busy_lab, student):
    lab_id, ids = busy_lab
    resp = client.get(f"/api/seat-occupancy?lab_id={lab_id}", headers=student)
    assert resp.status_code == 200
    occupancy = resp.get_json()["occupancy"]
    assert occupancy["total_seats"] == 5
    assert occupancy["occupied_seats"] == 2
    assert occupancy["reserved_seats"] == 1
    assert occupancy["maintenance_seats"] == 1
    assert occupancy["available_seats"] == 1
    assert occupancy["occupancy_rate"] == 60.0
    assert occupancy["occupancy_level"] == "moderate"

    seats = {c["id"]: c for c in occupancy["computers"]}
    assert seats[ids[0]]["occupancy_status"] == "occupied"
    assert seats[ids[0]]["current_booking"]["user_name"] == "User STU1"
    assert seats[ids[2]]["occupancy_status"] == "reserved"
    assert seats[ids[3]]["occupancy_status"] == "maintenance"
    assert seats[ids[4]]["current_booking"] is None


def test_seat_occupancy_follows_the_clock(client, busy_lab, student, monkeypatch):
    lab_id, _ = busy_lab
    monkeypatch.setattr("app._utcnow", lambda: NOW.replace(hour=10, minute=15))
    occupancy = client.get(f"/api/seat-occupancy?lab_id={lab_id}", headers=student).get_json()["occupancy"]
    # The approved sessions ended at 10:00 and the pending one has started without approval
    assert occupancy["occupied_seats"] == 0
    assert occupancy["reserved_seats"] == 0
    assert occupancy["available_seats"] == 4
    assert occupancy["occupancy_rate"] == 0


def test_lookahead_horizon_is_configurable(client, busy_lab, student, monkeypatch):
    lab_id, _ = busy_lab
    monkeypatch.setattr("app.RESERVED_LOOKAHEAD_HOURS", 0.5)
    occupancy = client.get(f"/api/seat-occupancy?lab_id={lab_id}", headers=student).get_json()["occupancy"]
    assert occupancy["reserved_seats"] == 0
    assert occupancy["available_seats"] == 2


def test_seat_occupancy_for_all_labs(client, busy_lab, admin, student):
    create_lab(client, admin, name="Empty Lab", computers=0)
    resp = client.get("/api/seat-occupancy", headers=student)
    assert resp.status_code == 200
    labs = {lab["lab_name"]: lab for lab in resp.get_json()["labs"]}
    assert labs["Lab A"]["occupancy_rate"] == 60.0
    assert labs["Empty Lab"]["total_seats"] == 0
    assert labs["Empty Lab"]["occupancy_rate"] == 0


def test_seat_occupancy_errors(client, student):
    assert client.get("/api/seat-occupancy?lab_id=abc", headers=student).status_code == 400
    assert client.get("/api/seat-occupancy?lab_id=999", headers=student).status_code == 404
    assert client.get("/api/seat-occupancy").status_code == 401


# --- Admin stats ---

def test_admin_stats(client, busy_lab, admin, student):
    resp = client.get("/api/admin/stats", headers=admin)
    assert resp.status_code == 200
    stats = resp.get_json()
    assert stats["total_users"] == 2
    assert stats["total_labs"] == 1
    assert stats["total_bookings"] == 3
    # Only the pending 10:00 booking has not started yet
    assert stats["active_bookings"] == 1
    assert client.get("/api/admin/stats", headers=student).status_code == 403


def test_available_computers_rejects_timestamps_outside_utc_range(client, busy_lab, student):
    lab_id, _ = busy_lab
    resp = client.get(
        f"/api/labs/{lab_id}/available-computers"
        "?start_time=2030-01-15T10:00:00Z&end_time=9999-12-31T23:59:59-01:00",
        headers=student,
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "INVALID_TIMESTAMP"


def test_occupancy_includes_seat_map(client, busy_lab, student):
    lab_id, ids = busy_lab
    occupancy = client.get(f"/api/seat-occupancy?lab_id={lab_id}", headers=student).get_json()["occupancy"]
    assert occupancy["seat_map"] == [ids]
    lab = client.get(f"/api/labs/{lab_id}", headers=student).get_json()["lab"]
    assert lab["occupancy"]["seat_map"] == [ids]
