from datetime import datetime, timedelta, timezone

from conftest import bearer, register


def complete(client, admin, appointment_id):
    for status in ("confirmed", "in_progress", "completed"):
        resp = client.patch(f"/api/appointments/{appointment_id}/status", json={"status": status}, headers=admin["headers"])
        assert resp.status_code == 200, resp.text


def test_list_doctors_is_public_and_has_profile(client, doctor):
    resp = client.get("/api/doctors")
    assert resp.status_code == 200
    items = resp.json()["items"]
    assert len(items) == 1
    assert items[0]["full_name"] == "Nguyen Van An"
    assert items[0]["email"] == "doctor@hospital.vn"
    assert items[0]["availability_status"] == "available"


def test_search_doctors(client, doctor):
    assert client.get("/api/doctors", params={"search": "van an"}).json()["total"] == 1
    assert client.get("/api/doctors", params={"search": "cardio"}).json()["total"] == 1
    assert client.get("/api/doctors", params={"search": "dermatology"}).json()["total"] == 0


def test_get_doctor(client, doctor):
    doctor_id = doctor["user"]["doctor_id"]
    assert client.get(f"/api/doctors/{doctor_id}").json()["doctor_id"] == doctor_id
    assert client.get("/api/doctors/NOPE").status_code == 404
    by_profile = client.get(f"/api/doctors/by-profile/{doctor['user']['id']}", headers=doctor["headers"])
    assert by_profile.json()["doctor_id"] == doctor_id


def test_doctor_updates_own_profile_only(client, doctor, department):
    doctor_id = doctor["user"]["doctor_id"]
    resp = client.put(f"/api/doctors/{doctor_id}", json={"bio": "Heart specialist", "experience_years": 12}, headers=doctor["headers"])
    assert resp.status_code == 200
    assert resp.json()["experience_years"] == 12

    other = register(client, "doctor2@hospital.vn", role="doctor", department_id=department["department_id"])
    resp = client.put(f"/api/doctors/{doctor_id}", json={"bio": "hijack"}, headers=bearer(other))
    assert resp.status_code == 403


def test_update_doctor_unknown_department(client, admin, doctor):
    doctor_id = doctor["user"]["doctor_id"]
    resp = client.put(f"/api/doctors/{doctor_id}", json={"department_id": "DEPT404"}, headers=admin["headers"])
    assert resp.status_code == 400


def test_delete_doctor_is_soft(client, admin, doctor):
    doctor_id = doctor["user"]["doctor_id"]
    assert client.delete(f"/api/doctors/{doctor_id}", headers=admin["headers"]).status_code == 200
    assert client.get("/api/doctors").json()["total"] == 0
    assert client.get(f"/api/doctors/{doctor_id}").json()["availability_status"] == "off_duty"


def test_reviews_update_rating(client, admin, doctor, patient, other_patient, book):
    doctor_id = doctor["user"]["doctor_id"]
    appointment = book(patient, doctor, patient)

    early = client.post(
        f"/api/doctors/{doctor_id}/reviews",
        json={"rating": 5, "appointment_id": appointment["appointment_id"]},
        headers=patient["headers"],
    )
    assert early.status_code == 400

    complete(client, admin, appointment["appointment_id"])
    resp = client.post(
        f"/api/doctors/{doctor_id}/reviews",
        json={"rating": 5, "comment": "Great", "appointment_id": appointment["appointment_id"]},
        headers=patient["headers"],
    )
    assert resp.status_code == 201
    assert resp.json()["review_id"] == "REV-000001"
    assert resp.json()["is_verified"] is True

    again = client.post(
        f"/api/doctors/{doctor_id}/reviews",
        json={"rating": 1, "appointment_id": appointment["appointment_id"]},
        headers=patient["headers"],
    )
    assert again.status_code == 409

    client.post(f"/api/doctors/{doctor_id}/reviews", json={"rating": 4}, headers=other_patient["headers"])

    stats = client.get(f"/api/doctors/{doctor_id}/reviews/stats").json()
    assert stats["total_reviews"] == 2
    assert stats["average_rating"] == 4.5
    assert stats["rating_distribution"]["5"] == 1
    assert stats["rating_distribution"]["4"] == 1

    profile = client.get(f"/api/doctors/{doctor_id}").json()
    assert profile["rating"] == 4.5
    assert profile["total_reviews"] == 2

    # two reviews is not enough to be ranked
    assert client.get("/api/doctors/top-rated").json() == []


def test_review_requires_patient(client, doctor):
    doctor_id = doctor["user"]["doctor_id"]
    resp = client.post(f"/api/doctors/{doctor_id}/reviews", json={"rating": 5}, headers=doctor["headers"])
    assert resp.status_code == 403


def test_review_rating_range(client, doctor, patient):
    doctor_id = doctor["user"]["doctor_id"]
    resp = client.post(f"/api/doctors/{doctor_id}/reviews", json={"rating": 6}, headers=patient["headers"])
    assert resp.status_code == 422


def test_upcoming_appointments(client, doctor, patient, book):
    doctor_id = doctor["user"]["doctor_id"]
    tomorrow = (datetime.now(timezone.utc) + timedelta(days=1)).date().isoformat()
    soon = book(patient, doctor, patient, day=tomorrow)
    book(patient, doctor, patient, day="2030-01-15")
    resp = client.get(f"/api/doctors/{doctor_id}/appointments/upcoming", params={"days": 7}, headers=doctor["headers"])
    assert resp.status_code == 200
    assert [a["appointment_id"] for a in resp.json()] == [soon["appointment_id"]]


def test_top_rated_needs_enough_reviews_and_an_active_doctor(client, db):
    db["doctors"].insert_many([
        {"doctor_id": "CARD-DOC-000000-001", "is_active": True},
        {"doctor_id": "CARD-DOC-000000-002", "is_active": True},
        {"doctor_id": "CARD-DOC-000000-003", "is_active": False},
    ])
    ratings = {
        "CARD-DOC-000000-001": [5],
        "CARD-DOC-000000-002": [5, 5, 5, 4, 5],
        "CARD-DOC-000000-003": [5, 5, 5, 5],
    }
    for doctor_id, values in ratings.items():
        db["doctor_reviews"].insert_many([{"doctor_id": doctor_id, "rating": r} for r in values])

    top = client.get("/api/doctors/top-rated").json()
    assert top == [{"doctor_id": "CARD-DOC-000000-002", "average_rating": 4.8, "total_reviews": 5}]


def test_weekly_schedule_defaults(client, doctor):
    week = client.get(f"/api/doctors/{doctor['user']['doctor_id']}/schedule").json()
    assert [d["day_of_week"] for d in week] == list(range(7))
    assert all(d["is_default"] for d in week)
    assert week[1]["start_time"] == "08:00"
    assert week[1]["end_time"] == "17:00"


def test_update_schedule(client, admin, doctor, other_patient):
    doctor_id = doctor["user"]["doctor_id"]
    url = f"/api/doctors/{doctor_id}/schedule"
    body = {"schedules": [
        {"day_of_week": 2, "start_time": "09:00", "end_time": "12:00", "slot_duration": 45},
        {"day_of_week": 0, "is_available": False},
    ]}

    assert client.put(url, json=body, headers=other_patient["headers"]).status_code == 403
    week = client.put(url, json=body, headers=doctor["headers"]).json()
    assert week[2]["start_time"] == "09:00"
    assert week[2]["slot_duration"] == 45
    assert week[2]["is_default"] is False
    assert week[0]["is_available"] is False
    assert week[1]["is_default"] is True

    # upsert keeps one row per day
    client.put(url, json={"schedules": [{"day_of_week": 2, "start_time": "10:00", "end_time": "12:00"}]}, headers=admin["headers"])
    assert client.get(url).json()[2]["start_time"] == "10:00"

    reset = client.delete(f"{url}/2", headers=doctor["headers"]).json()
    assert reset["is_default"] is True
    assert client.delete(f"{url}/7", headers=doctor["headers"]).status_code == 422


def test_schedule_validation(client, doctor):
    url = f"/api/doctors/{doctor['user']['doctor_id']}/schedule"
    bad = [
        {"day_of_week": 1, "start_time": "12:00", "end_time": "09:00"},
        {"day_of_week": 1, "break_start": "12:00"},
        {"day_of_week": 1, "break_start": "07:00", "break_end": "08:30"},
        {"day_of_week": 9},
    ]
    for entry in bad:
        assert client.put(url, json={"schedules": [entry]}, headers=doctor["headers"]).status_code == 422
    duplicate = {"schedules": [{"day_of_week": 1}, {"day_of_week": 1}]}
    assert client.put(url, json=duplicate, headers=doctor["headers"]).status_code == 422


def test_other_doctor_cannot_edit_schedule(client, department, doctor):
    other = register(
        client, "second@hospital.vn", role="doctor", full_name="Le Thi Hoa", department_id=department["department_id"]
    )
    resp = client.put(
        f"/api/doctors/{doctor['user']['doctor_id']}/schedule",
        json={"schedules": [{"day_of_week": 1}]},
        headers=bearer(other),
    )
    assert resp.status_code == 403
