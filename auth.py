import logging
import secrets
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pymongo.database import Database

from config import settings
from database import as_utc, create_document, get_db, get_documents, now_utc, update_document
from identifiers import generate_admin_id, generate_doctor_id, generate_patient_id
from schemas import AuthResponse, ChangePasswordRequest, LoginRequest, RefreshRequest, RegisterRequest
from security import (
    create_access_token,
    get_current_session,
    get_current_user,
    hash_password,
    public_user,
    require_roles,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# --------------------------
# Helpers
# --------------------------

def _client_info(request: Optional[Request]) -> Dict[str, Any]:
    if request is None:
        return {"ip_address": None, "user_agent": None}
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def record_login(database: Database, profile: Dict[str, Any], success: bool, request: Optional[Request], reason: Optional[str] = None) -> None:
    create_document(database, "login_history", {
        "profile_id": profile["id"],
        "email": profile.get("email"),
        "role": profile.get("role"),
        "success": success,
        "failure_reason": reason,
        "logged_at": now_utc(),
        **_client_info(request),
    })


def start_session(database: Database, profile: Dict[str, Any], request: Optional[Request] = None) -> Dict[str, Any]:
    """Insert a session row and issue its first access token."""
    session_id = str(uuid.uuid4())
    refresh_token = secrets.token_urlsafe(48)
    create_document(database, "sessions", {
        "session_id": session_id,
        "profile_id": profile["id"],
        "refresh_token": refresh_token,
        "is_active": True,
        "expires_at": now_utc() + timedelta(days=settings.auth.refresh_token_expire_days),
        "last_used_at": now_utc(),
        **_client_info(request),
    })
    access = create_access_token(profile, session_id)
    return {"refresh_token": refresh_token, "token_type": "bearer", **access}


def create_role_record(database: Database, profile: Dict[str, Any], payload: RegisterRequest) -> Dict[str, Any]:
    if payload.role == "doctor":
        if not database["departments"].find_one({"department_id": payload.department_id}):
            raise HTTPException(status_code=400, detail=f"Unknown department: {payload.department_id}")
        record = {
            "doctor_id": generate_doctor_id(database, payload.department_id),
            "profile_id": profile["id"],
            "specialty": payload.specialty or "General Medicine",
            "license_number": payload.license_number or "PENDING",
            "qualification": payload.qualification or "MD",
            "department_id": payload.department_id,
            "gender": payload.gender or "other",
            "bio": None,
            "experience_years": 0,
            "consultation_fee": None,
            "languages_spoken": ["Vietnamese"],
            "availability_status": "available",
            "rating": 0.0,
            "total_reviews": 0,
            "is_active": True,
            "created_by": None,
        }
        return create_document(database, "doctors", record)

    if payload.role == "patient":
        record = {
            "patient_id": generate_patient_id(database),
            "profile_id": profile["id"],
            "gender": payload.gender or "other",
            "blood_type": payload.blood_type,
            "address": payload.address or {},
            "emergency_contact": payload.emergency_contact or {},
            "insurance_info": payload.insurance_info or {},
            "medical_history": "No medical history recorded",
            "allergies": [],
            "chronic_conditions": [],
            "current_medications": {},
            "status": "active",
            "created_by": None,
        }
        return create_document(database, "patients", record)

    record = {
        "admin_id": generate_admin_id(database),
        "profile_id": profile["id"],
        "permissions": ["read", "write"],
        "access_level": "standard",
        "can_create_users": False,
        "can_modify_system": False,
        "status": "active",
        "created_by": None,
    }
    return create_document(database, "admins", record)


# --------------------------
# Endpoints
# --------------------------

@router.post("/register", response_model=AuthResponse)
def register(payload: RegisterRequest, request: Request, database: Database = Depends(get_db)):
    email = payload.email.lower()
    if database["profiles"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already registered")

    profile = create_document(database, "profiles", {
        "id": str(uuid.uuid4()),
        "email": email,
        "full_name": payload.full_name,
        "role": payload.role,
        "phone_number": payload.phone_number,
        "gender": payload.gender,
        "date_of_birth": payload.date_of_birth.isoformat() if payload.date_of_birth else None,
        "password_hash": hash_password(payload.password),
        "is_active": True,
        "last_sign_in_at": None,
    })

    try:
        create_role_record(database, profile, payload)
    except Exception:
        logger.exception("Creating %s record failed, removing profile %s", payload.role, profile["id"])
        database["profiles"].delete_one({"id": profile["id"]})
        raise

    logger.info("Registered %s %s", payload.role, profile["id"])
    session = start_session(database, profile, request)
    record_login(database, profile, True, request)
    update_document(database, "profiles", {"id": profile["id"]}, {"last_sign_in_at": now_utc()})
    return AuthResponse(user=public_user(database, profile), session=session)


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest, request: Request, database: Database = Depends(get_db)):
    profile = database["profiles"].find_one({"email": payload.email.lower()})
    if not profile:
        logger.warning("Login attempt for unknown email")
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not verify_password(payload.password, profile.get("password_hash", "")):
        logger.warning("Wrong password for profile %s", profile["id"])
        record_login(database, profile, False, request, "invalid_password")
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not profile.get("is_active", True):
        record_login(database, profile, False, request, "inactive")
        raise HTTPException(status_code=403, detail="User is inactive")

    session = start_session(database, profile, request)
    profile = update_document(database, "profiles", {"id": profile["id"]}, {"last_sign_in_at": now_utc()})
    record_login(database, profile, True, request)
    return AuthResponse(user=public_user(database, profile), session=session)


@router.post("/refresh")
def refresh(payload: RefreshRequest, database: Database = Depends(get_db)):
    session = database["sessions"].find_one({"refresh_token": payload.refresh_token})
    if not session or not session.get("is_active", False):
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    if as_utc(session["expires_at"]) < now_utc():
        raise HTTPException(status_code=401, detail="Refresh token expired")

    profile = database["profiles"].find_one({"id": session["profile_id"]})
    if not profile or not profile.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not available")

    update_document(database, "sessions", {"session_id": session["session_id"]}, {"last_used_at": now_utc()})
    access = create_access_token(profile, session["session_id"])
    return {"refresh_token": session["refresh_token"], "token_type": "bearer", **access}


@router.post("/logout")
def logout(current=Depends(get_current_session), database: Database = Depends(get_db)):
    update_document(database, "sessions", {"session_id": current["session_id"]}, {"is_active": False})
    logger.info("Signed out session %s", current["session_id"])
    return {"message": "Signed out"}


@router.get("/me")
def me(user=Depends(get_current_user)):
    return user


@router.post("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    current=Depends(get_current_session),
    database: Database = Depends(get_db),
):
    user = current["user"]
    profile = database["profiles"].find_one({"id": user["id"]})
    if not verify_password(payload.current_password, profile.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")

    update_document(database, "profiles", {"id": user["id"]}, {"password_hash": hash_password(payload.new_password)})
    revoked = database["sessions"].update_many(
        {"profile_id": user["id"], "session_id": {"$ne": current["session_id"]}, "is_active": True},
        {"$set": {"is_active": False, "updated_at": now_utc()}},
    )
    logger.info("Password changed for %s, revoked %d other sessions", user["id"], revoked.modified_count)
    return {"message": "Password updated", "revoked_sessions": revoked.modified_count}


@router.get("/sessions")
def list_sessions(user=Depends(get_current_user), database: Database = Depends(get_db)):
    items = get_documents(database, "sessions", {"profile_id": user["id"], "is_active": True}, sort=[("created_at", -1)])
    for it in items:
        it.pop("refresh_token", None)
    return items


@router.get("/login-history")
def login_history(
    profile_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    user=Depends(require_roles(["admin"])),
    database: Database = Depends(get_db),
):
    query = {"profile_id": profile_id} if profile_id else {}
    return get_documents(database, "login_history", query, limit=limit, sort=[("logged_at", -1)])
