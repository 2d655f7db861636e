from appointments import can_transition, free_slots, overlaps
from conftest import bearer, register


def test_overlaps_is_half_open():
    assert overlaps("09:00", "10:00", "09:30", "10:30")
    assert overlaps("09:00", "10:00", "08:00", "11:00")
    assert not overlaps("09:00", "10:00", "10:00", "10:30")
    assert not overlaps("09:00", "10:00", "08:00", "09:00")


def test_transitions():
    assert can_transition("scheduled", "confirmed")
    assert can_transition("confirmed", "in_progress")
    assert can_transition("in_progress", "completed")
    assert not can_transition("scheduled", "completed")
    assert not can_transition("cancelled", "scheduled")
    assert not can_transition("completed", "cancelled")


def test_free_slots():
    slots = free_slots([{"start_time": "09:00", "end_time": "10:00"}], 60)
    starts = [s["start_time"] for s in slots]
    assert starts == ["08:00", "10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00"]


def test_book_appointment(client, doctor, patient, book):
    appointment = book(patient, doctor, patient)
    assert appointment["status"] == "scheduled"
    assert appointment["appointment_id"].startswith("APT-")
    assert appointment["appointment_date"] == "2030-01-15"

    detail = client.get(f"/api/appointments/{appointment['appointment_id']}", headers=patient["headers"]).json()
    assert detail["doctor"]["full_name"] == "Nguyen Van An"
    assert detail["patient"]["full_name"] == "Tran Thi Binh"


def test_conflicting_booking_rejected(client, doctor, patient, other_patient, book):
    book(patient, doctor, patient, start="09:00", end="10:00")
    resp = client.post(
        "/api/appointments",
        json={
            "patient_id": other_patient["user"]["patient_id"],
            "doctor_id": doctor["user"]["doctor_id"],
            "appointment_date": "2030-01-15",
            "start_time": "09:30",
            "end_time": "10:30",
        },
        headers=other_patient["headers"],
    )
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Time slot conflicts with existing appointment"

    # back-to-back is fine
    book(other_patient, doctor, other_patient, start="10:00", end="10:30")


def test_cancelled_slot_can_be_rebooked(client, doctor, patient, other_patient, book):
    first = book(patient, doctor, patient)
    assert client.post(f"/api/appointments/{first['appointment_id']}/cancel", json={"reason": "Travel"}, headers=patient["headers"]).status_code == 200
    book(other_patient, doctor, other_patient)


def test_patient_books_only_for_self(client, doctor, patient, other_patient):
    resp = client.post(
        "/api/appointments",
        json={
            "patient_id": other_patient["user"]["patient_id"],
            "doctor_id": doctor["user"]["doctor_id"],
            "appointment_date": "2030-01-15",
            "start_time": "09:00",
            "end_time": "10:00",
        },
        headers=patient["headers"],
    )
    assert resp.status_code == 403


def test_invalid_times(client, doctor, patient):
    base = {
        "patient_id": patient["user"]["patient_id"],
        "doctor_id": doctor["user"]["doctor_id"],
        "appointment_date": "2030-01-15",
    }
    backwards = client.post("/api/appointments", json={**base, "start_time": "10:00", "end_time": "09:00"}, headers=patient["headers"])
    assert backwards.status_code == 400
    malformed = client.post("/api/appointments", json={**base, "start_time": "9am", "end_time": "10:00"}, headers=patient["headers"])
    assert malformed.status_code == 422


def test_unknown_doctor(client, patient):
    resp = client.post(
        "/api/appointments",
        json={
            "patient_id": patient["user"]["patient_id"],
            "doctor_id": "CARD-DOC-000000-999",
            "appointment_date": "2030-01-15",
            "start_time": "09:00",
            "end_time": "10:00",
        },
        headers=patient["headers"],
    )
    assert resp.status_code == 404


def test_status_flow(client, admin, doctor, patient, book):
    appointment_id = book(patient, doctor, patient)["appointment_id"]
    url = f"/api/appointments/{appointment_id}/status"

    assert client.patch(url, json={"status": "completed"}, headers=doctor["headers"]).status_code == 400
    assert client.patch(url, json={"status": "confirmed"}, headers=patient["headers"]).status_code == 403
    assert client.patch(url, json={"status": "confirmed"}, headers=doctor["headers"]).status_code == 200
    assert client.patch(url, json={"status": "in_progress"}, headers=doctor["headers"]).status_code == 200
    done = client.patch(url, json={"status": "completed", "notes": "Follow up in 3 months"}, headers=doctor["headers"])
    assert done.status_code == 200
    assert done.json()["completed_at"]
    assert done.json()["notes"] == "Follow up in 3 months"

    assert client.post(f"/api/appointments/{appointment_id}/cancel", headers=patient["headers"]).status_code == 400
    assert client.put(f"/api/appointments/{appointment_id}", json={"reason": "x"}, headers=admin["headers"]).status_code == 400


def test_reschedule_checks_conflicts(client, doctor, patient, other_patient, book):
    first = book(patient, doctor, patient, start="09:00", end="10:00")
    second = book(other_patient, doctor, other_patient, start="11:00", end="12:00")

    # moving within its own slot does not clash with itself
    ok = client.put(f"/api/appointments/{first['appointment_id']}", json={"end_time": "09:30"}, headers=patient["headers"])
    assert ok.status_code == 200
    assert ok.json()["end_time"] == "09:30"

    clash = client.put(
        f"/api/appointments/{second['appointment_id']}",
        json={"start_time": "09:15", "end_time": "10:00"},
        headers=other_patient["headers"],
    )
    assert clash.status_code == 409

    backwards = client.put(f"/api/appointments/{first['appointment_id']}", json={"end_time": "08:00"}, headers=patient["headers"])
    assert backwards.status_code == 400


def test_list_is_scoped_to_caller(client, admin, doctor, patient, other_patient, book):
    book(patient, doctor, patient, start="09:00", end="10:00")
    book(other_patient, doctor, other_patient, start="10:00", end="11:00")

    assert client.get("/api/appointments", headers=patient["headers"]).json()["total"] == 1
    # patient_id filter cannot widen a patient's view
    spoof = client.get(
        "/api/appointments", params={"patient_id": other_patient["user"]["patient_id"]}, headers=patient["headers"]
    )
    assert spoof.json()["total"] == 1
    assert spoof.json()["items"][0]["patient_id"] == patient["user"]["patient_id"]

    assert client.get("/api/appointments", headers=doctor["headers"]).json()["total"] == 2
    assert client.get("/api/appointments", params={"search": "chest"}, headers=admin["headers"]).json()["total"] == 2


def test_available_slots_and_conflict_check(client, doctor, patient, book):
    doctor_id = doctor["user"]["doctor_id"]
    book(patient, doctor, patient, start="09:00", end="10:00")

    slots = client.get("/api/appointments/available-slots", params={"doctor_id": doctor_id, "date": "2030-01-15", "slot_minutes": 60}).json()
    assert len(slots["slots"]) == 8
    assert {"start_time": "09:00", "end_time": "10:00"} not in slots["slots"]

    check = client.post(
        "/api/appointments/check-conflicts",
        json={"doctor_id": doctor_id, "appointment_date": "2030-01-15", "start_time": "09:45", "end_time": "10:15"},
        headers=patient["headers"],
    ).json()
    assert check["has_conflict"] is True
    assert len(check["conflicting_appointments"]) == 1


def test_stats(client, admin, doctor, patient, book):
    book(patient, doctor, patient)
    stats = client.get("/api/appointments/stats", headers=admin["headers"]).json()
    assert stats["total"] == 1
    assert stats["by_status"]["scheduled"] == 1
    assert stats["by_type"]["consultation"] == 1
    assert stats["this_month"] == 1


def test_account_without_role_record_sees_nothing(client, db, doctor, patient, book):
    book(patient, doctor, patient)
    db["appointments"].insert_one({"appointment_id": "APT-20300115-0099", "doctor_id": doctor["user"]["doctor_id"], "appointment_date": "2030-01-15"})

    orphan = register(client, "orphan@hospital.vn")
    db["patients"].delete_one({"patient_id": orphan["user"]["patient_id"]})
    resp = client.get("/api/appointments", headers=bearer(orphan))
    assert resp.status_code == 200
    assert resp.json() == {"items": [], "total": 0, "page": 1, "limit": 20}


def test_free_slots_follow_schedule():
    schedule = {
        "start_time": "09:00",
        "end_time": "13:00",
        "is_available": True,
        "break_start": "11:00",
        "break_end": "12:00",
        "slot_duration": 60,
    }
    starts = [s["start_time"] for s in free_slots([{"start_time": "09:00", "end_time": "10:00"}], schedule=schedule)]
    assert starts == ["10:00", "12:00"]
    assert free_slots([], schedule={**schedule, "is_available": False}) == []


def test_available_slots_use_doctor_schedule(client, doctor):
    doctor_id = doctor["user"]["doctor_id"]
    # 2030-01-15 is a Tuesday, 2030-01-13 a Sunday
    client.put(
        f"/api/doctors/{doctor_id}/schedule",
        json={"schedules": [
            {"day_of_week": 2, "start_time": "13:00", "end_time": "16:00", "break_start": "14:00", "break_end": "14:30", "slot_duration": 30},
            {"day_of_week": 0, "is_available": False},
        ]},
        headers=doctor["headers"],
    )

    tuesday = client.get("/api/appointments/available-slots", params={"doctor_id": doctor_id, "date": "2030-01-15"}).json()
    assert tuesday["working_hours"] == {"start_time": "13:00", "end_time": "16:00"}
    assert [s["start_time"] for s in tuesday["slots"]] == ["13:00", "13:30", "14:30", "15:00", "15:30"]

    sunday = client.get("/api/appointments/available-slots", params={"doctor_id": doctor_id, "date": "2030-01-13"}).json()
    assert sunday["is_available"] is False
    assert sunday["slots"] == []

    # unconfigured Wednesday keeps the default day
    wednesday = client.get("/api/appointments/available-slots", params={"doctor_id": doctor_id, "date": "2030-01-16"}).json()
    assert wednesday["slots"][0] == {"start_time": "08:00", "end_time": "08:30"}
    assert len(wednesday["slots"]) == 18
