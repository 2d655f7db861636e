import logging
import re
from datetime import date, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pymongo.database import Database

from database import (
    attach_profiles,
    create_document,
    get_db,
    get_documents,
    now_utc,
    paginate,
    serialize,
    update_document,
)
from identifiers import generate_review_id
from schemas import AvailabilityStatus, DoctorUpdate, ReviewCreate, ScheduleUpdate
from security import get_current_user, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/doctors", tags=["doctors"])

# Fewer reviews than this and a doctor is left out of the top-rated list
MIN_REVIEWS_FOR_RANKING = 3


def get_doctor_or_404(database: Database, doctor_id: str) -> Dict[str, Any]:
    doctor = database["doctors"].find_one({"doctor_id": doctor_id})
    if not doctor:
        raise HTTPException(status_code=404, detail="Doctor not found")
    return doctor


def _with_profile(database: Database, doctor: Dict[str, Any]) -> Dict[str, Any]:
    return attach_profiles(database, [serialize(doctor)])[0]


def refresh_rating(database: Database, doctor_id: str) -> Dict[str, Any]:
    ratings = [r["rating"] for r in database["doctor_reviews"].find({"doctor_id": doctor_id}, {"rating": 1})]
    average = round(sum(ratings) / len(ratings), 2) if ratings else 0.0
    update_document(database, "doctors", {"doctor_id": doctor_id}, {"rating": average, "total_reviews": len(ratings)})
    return {"rating": average, "total_reviews": len(ratings)}


# --------------------------
# Doctors
# --------------------------

@router.get("")
def list_doctors(
    department_id: Optional[str] = None,
    specialty: Optional[str] = None,
    availability_status: Optional[AvailabilityStatus] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"is_active": True}
    if department_id:
        query["department_id"] = department_id
    if specialty:
        query["specialty"] = {"$regex": re.escape(specialty), "$options": "i"}
    if availability_status:
        query["availability_status"] = availability_status
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        profile_ids = [p["id"] for p in database["profiles"].find({"role": "doctor", "full_name": pattern}, {"id": 1})]
        query["$or"] = [{"profile_id": {"$in": profile_ids}}, {"specialty": pattern}]

    result = paginate(database, "doctors", query, page, limit, sort=[("doctor_id", 1)])
    attach_profiles(database, result["items"])
    return result


@router.get("/top-rated")
def top_rated(limit: int = Query(10, ge=1, le=50), database: Database = Depends(get_db)):
    active = {d["doctor_id"] for d in database["doctors"].find({"is_active": {"$ne": False}}, {"doctor_id": 1})}
    totals: Dict[str, list] = {}
    for review in database["doctor_reviews"].find({"doctor_id": {"$in": list(active)}}, {"doctor_id": 1, "rating": 1}):
        entry = totals.setdefault(review["doctor_id"], [0, 0])
        entry[0] += review["rating"]
        entry[1] += 1
    ranked = sorted(
        ({"doctor_id": doctor_id, "average_rating": round(total / count, 2), "total_reviews": count}
         for doctor_id, (total, count) in totals.items()
         if count >= MIN_REVIEWS_FOR_RANKING),
        key=lambda item: (-item["average_rating"], -item["total_reviews"], item["doctor_id"]),
    )
    return ranked[:limit]


@router.get("/by-profile/{profile_id}")
def doctor_by_profile(profile_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    doctor = database["doctors"].find_one({"profile_id": profile_id})
    if not doctor:
        raise HTTPException(status_code=404, detail="Doctor not found")
    return _with_profile(database, doctor)


@router.get("/{doctor_id}")
def get_doctor(doctor_id: str, database: Database = Depends(get_db)):
    return _with_profile(database, get_doctor_or_404(database, doctor_id))


@router.put("/{doctor_id}")
def update_doctor(
    doctor_id: str,
    payload: DoctorUpdate,
    user=Depends(require_roles(["admin", "doctor"])),
    database: Database = Depends(get_db),
):
    doctor = get_doctor_or_404(database, doctor_id)
    if user["role"] == "doctor" and user.get("doctor_id") != doctor_id:
        raise HTTPException(status_code=403, detail="Doctors can only edit their own profile")

    changes = payload.model_dump(mode="json", exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "department_id" in changes and not database["departments"].find_one({"department_id": changes["department_id"]}):
        raise HTTPException(status_code=400, detail=f"Unknown department: {changes['department_id']}")

    updated = update_document(database, "doctors", {"doctor_id": doctor["doctor_id"]}, changes)
    logger.info("Updated doctor %s: %s", doctor_id, sorted(changes))
    return _with_profile(database, updated)


@router.delete("/{doctor_id}")
def delete_doctor(doctor_id: str, user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    get_doctor_or_404(database, doctor_id)
    update_document(database, "doctors", {"doctor_id": doctor_id}, {"is_active": False, "availability_status": "off_duty"})
    logger.info("Deactivated doctor %s", doctor_id)
    return {"message": "Doctor deactivated", "doctor_id": doctor_id}


@router.get("/{doctor_id}/appointments/upcoming")
def upcoming_appointments(
    doctor_id: str,
    days: int = Query(7, ge=1, le=90),
    user=Depends(require_roles(["admin", "doctor"])),
    database: Database = Depends(get_db),
):
    get_doctor_or_404(database, doctor_id)
    today = now_utc().date()
    query = {
        "doctor_id": doctor_id,
        "appointment_date": {"$gte": today.isoformat(), "$lte": (today + timedelta(days=days)).isoformat()},
        "status": {"$in": ["scheduled", "confirmed"]},
    }
    return get_documents(database, "appointments", query, sort=[("appointment_date", 1), ("start_time", 1)])


# --------------------------
# Weekly schedules
# --------------------------

# Used for any day a doctor has not configured
DEFAULT_SCHEDULE = {
    "start_time": "08:00",
    "end_time": "17:00",
    "is_available": True,
    "break_start": None,
    "break_end": None,
    "slot_duration": 30,
}


def weekday_index(day: date) -> int:
    """Day number as stored in doctor_schedules: 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def schedule_for_day(database: Database, doctor_id: str, day_of_week: int) -> Dict[str, Any]:
    row = database["doctor_schedules"].find_one({"doctor_id": doctor_id, "day_of_week": day_of_week})
    if row is None:
        return {"doctor_id": doctor_id, "day_of_week": day_of_week, **DEFAULT_SCHEDULE, "is_default": True}
    return {**serialize(row), "is_default": False}


def _ensure_own_schedule(user: Dict[str, Any], doctor_id: str) -> None:
    if user["role"] == "doctor" and user.get("doctor_id") != doctor_id:
        raise HTTPException(status_code=403, detail="Doctors can only edit their own schedule")


@router.get("/{doctor_id}/schedule")
def weekly_schedule(doctor_id: str, database: Database = Depends(get_db)):
    get_doctor_or_404(database, doctor_id)
    return [schedule_for_day(database, doctor_id, day) for day in range(7)]


@router.put("/{doctor_id}/schedule")
def update_schedule(
    doctor_id: str,
    payload: ScheduleUpdate,
    user=Depends(require_roles(["admin", "doctor"])),
    database: Database = Depends(get_db),
):
    get_doctor_or_404(database, doctor_id)
    _ensure_own_schedule(user, doctor_id)

    now = now_utc()
    for entry in payload.schedules:
        fields = entry.model_dump(mode="json")
        database["doctor_schedules"].update_one(
            {"doctor_id": doctor_id, "day_of_week": entry.day_of_week},
            {"$set": {**fields, "updated_at": now}, "$setOnInsert": {"created_at": now}},
            upsert=True,
        )
    logger.info("Updated schedule for doctor %s: days %s", doctor_id, sorted(e.day_of_week for e in payload.schedules))
    return [schedule_for_day(database, doctor_id, day) for day in range(7)]


@router.delete("/{doctor_id}/schedule/{day_of_week}")
def reset_schedule_day(
    doctor_id: str,
    day_of_week: int = Path(..., ge=0, le=6),
    user=Depends(require_roles(["admin", "doctor"])),
    database: Database = Depends(get_db),
):
    get_doctor_or_404(database, doctor_id)
    _ensure_own_schedule(user, doctor_id)
    database["doctor_schedules"].delete_one({"doctor_id": doctor_id, "day_of_week": day_of_week})
    return schedule_for_day(database, doctor_id, day_of_week)


# --------------------------
# Reviews
# --------------------------

@router.get("/{doctor_id}/reviews")
def list_reviews(
    doctor_id: str,
    limit: int = Query(50, ge=1, le=200),
    database: Database = Depends(get_db),
):
    get_doctor_or_404(database, doctor_id)
    return get_documents(database, "doctor_reviews", {"doctor_id": doctor_id}, limit=limit, sort=[("created_at", -1)])


@router.get("/{doctor_id}/reviews/stats")
def review_stats(doctor_id: str, database: Database = Depends(get_db)):
    get_doctor_or_404(database, doctor_id)
    distribution = {str(star): 0 for star in range(1, 6)}
    ratings = []
    for review in database["doctor_reviews"].find({"doctor_id": doctor_id}, {"rating": 1}):
        distribution[str(review["rating"])] += 1
        ratings.append(review["rating"])
    return {
        "doctor_id": doctor_id,
        "total_reviews": len(ratings),
        "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
        "rating_distribution": distribution,
    }


@router.post("/{doctor_id}/reviews", status_code=201)
def create_review(
    doctor_id: str,
    payload: ReviewCreate,
    user=Depends(require_roles(["patient"])),
    database: Database = Depends(get_db),
):
    get_doctor_or_404(database, doctor_id)
    patient_id = user.get("patient_id")
    if not patient_id:
        raise HTTPException(status_code=403, detail="No patient record for this account")

    if payload.appointment_id:
        appointment = database["appointments"].find_one({"appointment_id": payload.appointment_id})
        if not appointment or appointment["doctor_id"] != doctor_id or appointment["patient_id"] != patient_id:
            raise HTTPException(status_code=400, detail="Appointment does not match this doctor and patient")
        if appointment["status"] != "completed":
            raise HTTPException(status_code=400, detail="Only completed appointments can be reviewed")
        if database["doctor_reviews"].find_one({"appointment_id": payload.appointment_id}):
            raise HTTPException(status_code=409, detail="Appointment already reviewed")

    review = create_document(database, "doctor_reviews", {
        "review_id": generate_review_id(database),
        "doctor_id": doctor_id,
        "patient_id": patient_id,
        "appointment_id": payload.appointment_id,
        "rating": payload.rating,
        "comment": payload.comment,
        "is_verified": payload.appointment_id is not None,
    })
    summary = refresh_rating(database, doctor_id)
    logger.info("Review %s for doctor %s, rating now %s", review["review_id"], doctor_id, summary["rating"])
    return {**serialize(review), "doctor_rating": summary}
