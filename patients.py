import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo.database import Database

from database import (
    attach_profiles,
    create_document,
    get_db,
    get_documents,
    paginate,
    serialize,
    update_document,
)
from identifiers import generate_medical_record_id
from schemas import BloodType, Gender, MedicalRecordCreate, MedicalRecordUpdate, PatientUpdate
from security import get_current_user, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/patients", tags=["patients"])
records_router = APIRouter(prefix="/api/medical-records", tags=["medical-records"])

PROFILE_UPDATE_FIELDS = ("full_name", "phone_number", "date_of_birth")


def get_patient_or_404(database: Database, patient_id: str) -> Dict[str, Any]:
    patient = database["patients"].find_one({"patient_id": patient_id})
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient


def ensure_can_view(user: Dict[str, Any], patient_id: str) -> None:
    if user["role"] == "patient" and user.get("patient_id") != patient_id:
        raise HTTPException(status_code=403, detail="Patients can only access their own records")


def _with_profile(database: Database, patient: Dict[str, Any]) -> Dict[str, Any]:
    return attach_profiles(database, [serialize(patient)])[0]


# --------------------------
# Patients
# --------------------------

@router.get("")
def list_patients(
    status: Optional[str] = None,
    gender: Optional[Gender] = None,
    blood_type: Optional[BloodType] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(require_roles(["admin", "doctor"])),
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if gender:
        query["gender"] = gender
    if blood_type:
        query["blood_type"] = blood_type
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        profile_ids = [
            p["id"]
            for p in database["profiles"].find(
                {"role": "patient", "$or": [{"full_name": pattern}, {"email": pattern}, {"phone_number": pattern}]},
                {"id": 1},
            )
        ]
        query["$or"] = [{"profile_id": {"$in": profile_ids}}, {"patient_id": pattern}]

    result = paginate(database, "patients", query, page, limit, sort=[("patient_id", 1)])
    attach_profiles(database, result["items"])
    return result


@router.get("/stats")
def patient_stats(user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    by_status: Dict[str, int] = {}
    by_gender: Dict[str, int] = {}
    total = 0
    for patient in database["patients"].find({}, {"status": 1, "gender": 1}):
        total += 1
        status = patient.get("status") or "unknown"
        gender = patient.get("gender") or "unknown"
        by_status[status] = by_status.get(status, 0) + 1
        by_gender[gender] = by_gender.get(gender, 0) + 1
    return {"total": total, "by_status": by_status, "by_gender": by_gender}


@router.get("/by-profile/{profile_id}")
def patient_by_profile(profile_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    patient = database["patients"].find_one({"profile_id": profile_id})
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    ensure_can_view(user, patient["patient_id"])
    return _with_profile(database, patient)


@router.get("/{patient_id}")
def get_patient(patient_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    ensure_can_view(user, patient_id)
    return _with_profile(database, get_patient_or_404(database, patient_id))


@router.put("/{patient_id}")
def update_patient(
    patient_id: str,
    payload: PatientUpdate,
    user=Depends(require_roles(["admin", "patient"])),
    database: Database = Depends(get_db),
):
    ensure_can_view(user, patient_id)
    patient = get_patient_or_404(database, patient_id)

    changes = payload.model_dump(mode="json", exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    profile_changes = {field: changes.pop(field) for field in PROFILE_UPDATE_FIELDS if field in changes}
    if profile_changes:
        update_document(database, "profiles", {"id": patient["profile_id"]}, profile_changes)
    updated = patient
    if changes:
        updated = update_document(database, "patients", {"patient_id": patient_id}, changes)

    logger.info("Updated patient %s: %s", patient_id, sorted(list(changes) + list(profile_changes)))
    return _with_profile(database, updated)


@router.delete("/{patient_id}")
def delete_patient(patient_id: str, user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    get_patient_or_404(database, patient_id)
    update_document(database, "patients", {"patient_id": patient_id}, {"status": "inactive"})
    logger.info("Deactivated patient %s", patient_id)
    return {"message": "Patient deactivated", "patient_id": patient_id}


@router.get("/{patient_id}/appointments")
def patient_appointments(patient_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    ensure_can_view(user, patient_id)
    get_patient_or_404(database, patient_id)
    return get_documents(
        database, "appointments", {"patient_id": patient_id}, sort=[("appointment_date", -1), ("start_time", -1)]
    )


# --------------------------
# Medical records
# --------------------------

@router.get("/{patient_id}/medical-records")
def list_medical_records(patient_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    ensure_can_view(user, patient_id)
    get_patient_or_404(database, patient_id)
    return get_documents(
        database, "medical_records", {"patient_id": patient_id, "status": "active"}, sort=[("created_at", -1)]
    )


@router.post("/{patient_id}/medical-records", status_code=201)
def create_medical_record(
    patient_id: str,
    payload: MedicalRecordCreate,
    user=Depends(require_roles(["doctor", "admin"])),
    database: Database = Depends(get_db),
):
    get_patient_or_404(database, patient_id)
    if payload.appointment_id:
        appointment = database["appointments"].find_one({"appointment_id": payload.appointment_id})
        if not appointment or appointment["patient_id"] != patient_id:
            raise HTTPException(status_code=400, detail="Appointment does not belong to this patient")

    doc = payload.model_dump(mode="json")
    doc.update({
        "record_id": generate_medical_record_id(database),
        "patient_id": patient_id,
        "doctor_id": user.get("doctor_id"),
        "status": "active",
        "created_by": user["id"],
    })
    record = create_document(database, "medical_records", doc)
    logger.info("Created medical record %s for patient %s", record["record_id"], patient_id)
    return serialize(record)


def get_record_or_404(database: Database, record_id: str) -> Dict[str, Any]:
    record = database["medical_records"].find_one({"record_id": record_id, "status": "active"})
    if not record:
        raise HTTPException(status_code=404, detail="Medical record not found")
    return record


@records_router.get("/{record_id}")
def get_medical_record(record_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    record = get_record_or_404(database, record_id)
    ensure_can_view(user, record["patient_id"])
    return serialize(record)


@records_router.put("/{record_id}")
def update_medical_record(
    record_id: str,
    payload: MedicalRecordUpdate,
    user=Depends(require_roles(["doctor", "admin"])),
    database: Database = Depends(get_db),
):
    get_record_or_404(database, record_id)
    changes = payload.model_dump(mode="json", exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    changes["updated_by"] = user["id"]
    return serialize(update_document(database, "medical_records", {"record_id": record_id}, changes))


@records_router.delete("/{record_id}")
def delete_medical_record(record_id: str, user=Depends(require_roles(["doctor", "admin"])), database: Database = Depends(get_db)):
    get_record_or_404(database, record_id)
    update_document(database, "medical_records", {"record_id": record_id}, {"status": "deleted", "updated_by": user["id"]})
    return {"message": "Medical record deleted", "record_id": record_id}
