import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo.database import Database

from database import as_utc, attach_profiles, create_document, get_db, now_utc, paginate, serialize, update_document
from doctors import DEFAULT_SCHEDULE, schedule_for_day, weekday_index
from identifiers import generate_appointment_id
from schemas import (
    AppointmentCreate,
    AppointmentStatus,
    AppointmentType,
    AppointmentUpdate,
    CancelRequest,
    ConflictCheckRequest,
    StatusUpdate,
)
from security import get_current_user, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["appointments"])

STATUSES = ["scheduled", "confirmed", "in_progress", "completed", "cancelled", "no_show"]
TYPES = ["consultation", "follow_up", "emergency", "routine_checkup"]
ACTIVE_STATUSES = ["scheduled", "confirmed", "in_progress"]
TERMINAL_STATUSES = {"completed", "cancelled", "no_show"}

TRANSITIONS = {
    "scheduled": {"confirmed", "cancelled", "no_show", "in_progress"},
    "confirmed": {"in_progress", "cancelled", "no_show"},
    "in_progress": {"completed"},
    "completed": set(),
    "cancelled": set(),
    "no_show": set(),
}


# --------------------------
# Scheduling rules
# --------------------------

def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, set())


def overlaps(start: str, end: str, other_start: str, other_end: str) -> bool:
    """Half-open interval overlap on HH:MM strings."""
    return start < other_end and end > other_start


def find_conflicts(
    database: Database,
    doctor_id: str,
    appointment_date: str,
    start_time: str,
    end_time: str,
    exclude_appointment_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {
        "doctor_id": doctor_id,
        "appointment_date": appointment_date,
        "status": {"$in": ACTIVE_STATUSES},
    }
    if exclude_appointment_id:
        query["appointment_id"] = {"$ne": exclude_appointment_id}

    conflicts = []
    for other in database["appointments"].find(query):
        if overlaps(start_time, end_time, other["start_time"], other["end_time"]):
            conflicts.append({
                "appointment_id": other["appointment_id"],
                "start_time": other["start_time"],
                "end_time": other["end_time"],
                "status": other["status"],
            })
    return conflicts


def free_slots(
    booked: List[Dict[str, str]],
    slot_minutes: Optional[int] = None,
    schedule: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, str]]:
    """Open slots in a doctor's working day, skipping the break and booked times."""
    schedule = schedule or DEFAULT_SCHEDULE
    if not schedule.get("is_available", True):
        return []
    blocked = list(booked)
    if schedule.get("break_start") and schedule.get("break_end"):
        blocked.append({"start_time": schedule["break_start"], "end_time": schedule["break_end"]})

    slots = []
    cursor = datetime.strptime(schedule["start_time"], "%H:%M")
    close = datetime.strptime(schedule["end_time"], "%H:%M")
    step = timedelta(minutes=slot_minutes or schedule.get("slot_duration") or 30)
    while cursor + step <= close:
        start, end = cursor.strftime("%H:%M"), (cursor + step).strftime("%H:%M")
        if not any(overlaps(start, end, b["start_time"], b["end_time"]) for b in blocked):
            slots.append({"start_time": start, "end_time": end})
        cursor += step
    return slots


def get_appointment_or_404(database: Database, appointment_id: str) -> Dict[str, Any]:
    appointment = database["appointments"].find_one({"appointment_id": appointment_id})
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return appointment


def ensure_participant(user: Dict[str, Any], appointment: Dict[str, Any]) -> None:
    if user["role"] == "patient" and appointment["patient_id"] != user.get("patient_id"):
        raise HTTPException(status_code=403, detail="Not your appointment")
    if user["role"] == "doctor" and appointment["doctor_id"] != user.get("doctor_id"):
        raise HTTPException(status_code=403, detail="Not your appointment")


def with_details(database: Database, appointment: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize(appointment)
    patient = database["patients"].find_one({"patient_id": appointment["patient_id"]})
    doctor = database["doctors"].find_one({"doctor_id": appointment["doctor_id"]})
    if patient:
        p = attach_profiles(database, [serialize(patient)])[0]
        out["patient"] = {k: p.get(k) for k in ("patient_id", "full_name", "date_of_birth", "gender", "phone_number", "email")}
    if doctor:
        d = attach_profiles(database, [serialize(doctor)])[0]
        out["doctor"] = {k: d.get(k) for k in ("doctor_id", "full_name", "specialty", "phone_number", "email")}
    return out


# --------------------------
# Endpoints
# --------------------------

@router.get("")
def list_appointments(
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    appointment_date: Optional[date] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    status: Optional[AppointmentStatus] = None,
    appointment_type: Optional[AppointmentType] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if doctor_id:
        query["doctor_id"] = doctor_id
    if patient_id:
        query["patient_id"] = patient_id
    # Non-admins only ever see their own
    scope = {"patient": "patient_id", "doctor": "doctor_id"}.get(user["role"])
    if scope:
        if not user.get(scope):
            logger.warning("%s %s has no %s record", user["role"], user["id"], scope)
            return {"items": [], "total": 0, "page": page, "limit": limit}
        query[scope] = user[scope]

    if appointment_date:
        query["appointment_date"] = appointment_date.isoformat()
    elif date_from or date_to:
        query["appointment_date"] = {}
        if date_from:
            query["appointment_date"]["$gte"] = date_from.isoformat()
        if date_to:
            query["appointment_date"]["$lte"] = date_to.isoformat()
    if status:
        query["status"] = status
    if appointment_type:
        query["appointment_type"] = appointment_type
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"reason": pattern}, {"notes": pattern}]

    return paginate(database, "appointments", query, page, limit, sort=[("appointment_date", 1), ("start_time", 1)])


@router.get("/stats")
def appointment_stats(user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    now = now_utc()
    today = now.date()
    # Weeks start on Sunday
    week_start = today - timedelta(days=(today.weekday() + 1) % 7)
    week_end = week_start + timedelta(days=6)
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    stats = {
        "total": 0,
        "today": 0,
        "this_week": 0,
        "this_month": 0,
        "by_status": {s: 0 for s in STATUSES},
        "by_type": {t: 0 for t in TYPES},
    }
    for appointment in database["appointments"].find({}, {"status": 1, "appointment_type": 1, "appointment_date": 1, "created_at": 1}):
        stats["total"] += 1
        if appointment.get("status") in stats["by_status"]:
            stats["by_status"][appointment["status"]] += 1
        if appointment.get("appointment_type") in stats["by_type"]:
            stats["by_type"][appointment["appointment_type"]] += 1
        if appointment.get("appointment_date") == today.isoformat():
            stats["today"] += 1
        if week_start.isoformat() <= appointment.get("appointment_date", "") <= week_end.isoformat():
            stats["this_week"] += 1
        created = appointment.get("created_at")
        if created and as_utc(created) >= month_start:
            stats["this_month"] += 1
    return stats


@router.get("/available-slots")
def available_slots(
    doctor_id: str,
    day: date = Query(..., alias="date"),
    slot_minutes: Optional[int] = Query(None, ge=10, le=240),
    database: Database = Depends(get_db),
):
    if not database["doctors"].find_one({"doctor_id": doctor_id, "is_active": True}):
        raise HTTPException(status_code=404, detail="Doctor not found")
    schedule = schedule_for_day(database, doctor_id, weekday_index(day))
    booked = list(database["appointments"].find(
        {"doctor_id": doctor_id, "appointment_date": day.isoformat(), "status": {"$in": ACTIVE_STATUSES}},
        {"start_time": 1, "end_time": 1},
    ))
    return {
        "doctor_id": doctor_id,
        "date": day.isoformat(),
        "is_available": schedule["is_available"],
        "working_hours": {"start_time": schedule["start_time"], "end_time": schedule["end_time"]},
        "slots": free_slots(booked, slot_minutes, schedule),
    }


@router.post("/check-conflicts")
def check_conflicts(payload: ConflictCheckRequest, user=Depends(get_current_user), database: Database = Depends(get_db)):
    conflicts = find_conflicts(
        database,
        payload.doctor_id,
        payload.appointment_date.isoformat(),
        payload.start_time,
        payload.end_time,
        payload.exclude_appointment_id,
    )
    return {
        "has_conflict": bool(conflicts),
        "conflicting_appointments": conflicts,
        "message": "Time slot conflicts with existing appointment" if conflicts else None,
    }


@router.get("/{appointment_id}")
def get_appointment(appointment_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    appointment = get_appointment_or_404(database, appointment_id)
    ensure_participant(user, appointment)
    return with_details(database, appointment)


@router.post("", status_code=201)
def create_appointment(payload: AppointmentCreate, user=Depends(get_current_user), database: Database = Depends(get_db)):
    if user["role"] == "patient" and payload.patient_id != user.get("patient_id"):
        raise HTTPException(status_code=403, detail="Patients can only book for themselves")
    if not database["doctors"].find_one({"doctor_id": payload.doctor_id, "is_active": True}):
        raise HTTPException(status_code=404, detail="Doctor not found")
    if not database["patients"].find_one({"patient_id": payload.patient_id}):
        raise HTTPException(status_code=404, detail="Patient not found")

    if payload.end_time <= payload.start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")

    doc = payload.model_dump(mode="json")
    conflicts = find_conflicts(database, payload.doctor_id, doc["appointment_date"], payload.start_time, payload.end_time)
    if conflicts:
        raise HTTPException(status_code=409, detail="Time slot conflicts with existing appointment")

    doc.update({
        "appointment_id": generate_appointment_id(database),
        "status": "scheduled",
        "created_by": user["id"],
    })
    appointment = create_document(database, "appointments", doc)
    logger.info("Booked appointment %s with doctor %s on %s %s", appointment["appointment_id"], payload.doctor_id, doc["appointment_date"], payload.start_time)
    return serialize(appointment)


@router.put("/{appointment_id}")
def update_appointment(
    appointment_id: str,
    payload: AppointmentUpdate,
    user=Depends(get_current_user),
    database: Database = Depends(get_db),
):
    appointment = get_appointment_or_404(database, appointment_id)
    ensure_participant(user, appointment)
    if appointment["status"] in TERMINAL_STATUSES:
        raise HTTPException(status_code=400, detail=f"Cannot modify a {appointment['status']} appointment")

    changes = payload.model_dump(mode="json", exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    merged = {**appointment, **changes}
    if merged["end_time"] <= merged["start_time"]:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")
    if {"appointment_date", "start_time", "end_time"} & changes.keys():
        conflicts = find_conflicts(
            database, appointment["doctor_id"], merged["appointment_date"], merged["start_time"], merged["end_time"], appointment_id
        )
        if conflicts:
            raise HTTPException(status_code=409, detail="Time slot conflicts with existing appointment")

    updated = update_document(database, "appointments", {"appointment_id": appointment_id}, changes)
    logger.info("Updated appointment %s: %s", appointment_id, sorted(changes))
    return serialize(updated)


@router.patch("/{appointment_id}/status")
def update_status(
    appointment_id: str,
    payload: StatusUpdate,
    user=Depends(require_roles(["admin", "doctor"])),
    database: Database = Depends(get_db),
):
    appointment = get_appointment_or_404(database, appointment_id)
    ensure_participant(user, appointment)
    if not can_transition(appointment["status"], payload.status):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot change status from {appointment['status']} to {payload.status}",
        )

    changes: Dict[str, Any] = {"status": payload.status}
    if payload.notes:
        changes["notes"] = payload.notes
    if payload.status == "completed":
        changes["completed_at"] = now_utc()
    updated = update_document(database, "appointments", {"appointment_id": appointment_id}, changes)
    logger.info("Appointment %s: %s -> %s", appointment_id, appointment["status"], payload.status)
    return serialize(updated)


@router.post("/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: str,
    payload: Optional[CancelRequest] = None,
    user=Depends(get_current_user),
    database: Database = Depends(get_db),
):
    appointment = get_appointment_or_404(database, appointment_id)
    ensure_participant(user, appointment)
    if not can_transition(appointment["status"], "cancelled"):
        raise HTTPException(status_code=400, detail=f"Cannot cancel a {appointment['status']} appointment")

    changes: Dict[str, Any] = {"status": "cancelled", "cancelled_by": user["id"]}
    if payload and payload.reason:
        changes["notes"] = payload.reason
    update_document(database, "appointments", {"appointment_id": appointment_id}, changes)
    logger.info("Cancelled appointment %s", appointment_id)
    return {"message": "Appointment cancelled", "appointment_id": appointment_id}
