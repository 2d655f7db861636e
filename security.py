import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import bcrypt
import jwt
from fastapi import Depends, Header, HTTPException
from pymongo.database import Database

from config import settings
from database import as_utc, get_db, now_utc

logger = logging.getLogger(__name__)

ROLE_ID_FIELDS = {
    "patient": ("patients", "patient_id"),
    "doctor": ("doctors", "doctor_id"),
    "admin": ("admins", "admin_id"),
}


# --------------------------
# Passwords
# --------------------------

def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.auth.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # not a bcrypt hash
        return False


# --------------------------
# Tokens
# --------------------------

def create_access_token(profile: Dict[str, Any], session_id: str) -> Dict[str, Any]:
    issued = now_utc()
    expires = issued + timedelta(minutes=settings.auth.access_token_expire_minutes)
    payload = {
        "sub": profile["id"],
        "role": profile["role"],
        "sid": session_id,
        "type": "access",
        "iat": issued,
        "exp": expires,
    }
    token = jwt.encode(payload, settings.auth.jwt_secret, algorithm=settings.auth.jwt_algorithm)
    return {
        "access_token": token,
        "expires_in": settings.auth.access_token_expire_minutes * 60,
        "expires_at": int(expires.timestamp()),
    }


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.auth.jwt_secret, algorithms=[settings.auth.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


# --------------------------
# Users
# --------------------------

def public_user(database: Database, profile: Dict[str, Any]) -> Dict[str, Any]:
    """Profile fields safe to return, plus the role-specific business id."""
    user = {
        "id": profile["id"],
        "email": profile.get("email"),
        "full_name": profile.get("full_name"),
        "role": profile.get("role"),
        "phone_number": profile.get("phone_number"),
        "is_active": profile.get("is_active", True),
        "created_at": as_utc(profile.get("created_at")).isoformat() if profile.get("created_at") else None,
        "last_sign_in_at": as_utc(profile.get("last_sign_in_at")).isoformat() if profile.get("last_sign_in_at") else None,
    }
    role_info = ROLE_ID_FIELDS.get(profile.get("role"))
    if role_info:
        collection, id_field = role_info
        record = database[collection].find_one({"profile_id": profile["id"]}, {id_field: 1})
        if record:
            user[id_field] = record[id_field]
    return user


def get_current_session(
    authorization: Optional[str] = Header(None),
    database: Database = Depends(get_db),
) -> Dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    # Expect Bearer <token>
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header")

    payload = decode_token(parts[1])
    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token")

    session = database["sessions"].find_one({"session_id": payload.get("sid")})
    if not session or not session.get("is_active", False):
        raise HTTPException(status_code=401, detail="Session revoked")
    if as_utc(session["expires_at"]) < now_utc():
        raise HTTPException(status_code=401, detail="Session expired")

    profile = database["profiles"].find_one({"id": payload.get("sub")})
    if not profile:
        raise HTTPException(status_code=401, detail="User not found for token")
    if not profile.get("is_active", True):
        raise HTTPException(status_code=403, detail="User is inactive")

    return {"user": public_user(database, profile), "session_id": session["session_id"]}


def get_current_user(current=Depends(get_current_session)) -> Dict[str, Any]:
    return current["user"]


def get_optional_user(
    authorization: Optional[str] = Header(None),
    database: Database = Depends(get_db),
) -> Optional[Dict[str, Any]]:
    if not authorization:
        return None
    return get_current_session(authorization, database)["user"]


def require_roles(allowed: List[str]):
    def dep(user=Depends(get_current_user)):
        if user["role"] not in allowed:
            raise HTTPException(status_code=403, detail="Forbidden for this role")
        return user
    return dep
