"""Business identifiers for hospital records.

Patients, admins and doctors carry month-scoped sequence numbers
(``PAT-202506-001``); doctors are additionally prefixed with their
department's short code (``CARD-DOC-202506-001``).
"""

import random
import re
import time
from datetime import datetime, timezone
from typing import Optional

from pymongo.database import Database

from database import next_sequence

DEPARTMENT_CODES = {
    "DEPT001": "CARD",  # Cardiology
    "DEPT002": "NEUR",  # Neurology
    "DEPT003": "PEDI",  # Pediatrics
    "DEPT004": "OBGY",  # Obstetrics & gynecology
    "DEPT005": "INTE",  # Internal medicine
    "DEPT006": "SURG",  # General surgery
    "DEPT007": "ORTH",  # Orthopedics
    "DEPT008": "EMER",  # Emergency
    "DEPT009": "OPHT",  # Ophthalmology
    "DEPT010": "ENT",   # Ear, nose & throat
    "DEPT011": "DERM",  # Dermatology
    "DEPT012": "ICU",   # Intensive care
}

_TOP_LEVEL_DEPARTMENT = re.compile(r"^DEPT(\d+)$")


def _year_month(when: Optional[datetime] = None) -> str:
    return (when or datetime.now(timezone.utc)).strftime("%Y%m")


def _monthly(db: Database, prefix: str, width: int = 3, when: Optional[datetime] = None) -> str:
    ym = _year_month(when)
    seq = next_sequence(db, f"{prefix}-{ym}")
    return f"{prefix}-{ym}-{seq:0{width}d}"


def department_code(department_id: Optional[str]) -> str:
    if not department_id:
        return "GEN"
    # Sub-departments (DEPT001-02) share their parent's code
    return DEPARTMENT_CODES.get(department_id.split("-")[0], "GEN")


def generate_patient_id(db: Database, when: Optional[datetime] = None) -> str:
    return _monthly(db, "PAT", when=when)


def generate_admin_id(db: Database, when: Optional[datetime] = None) -> str:
    return _monthly(db, "ADM", when=when)


def generate_doctor_id(db: Database, department_id: Optional[str], when: Optional[datetime] = None) -> str:
    return _monthly(db, f"{department_code(department_id)}-DOC", when=when)


def generate_medical_record_id(db: Database, when: Optional[datetime] = None) -> str:
    return _monthly(db, "MR", width=4, when=when)


def generate_appointment_id(db: Database, when: Optional[datetime] = None) -> str:
    day = (when or datetime.now(timezone.utc)).strftime("%Y%m%d")
    seq = next_sequence(db, f"APT-{day}")
    return f"APT-{day}-{seq:04d}"


def generate_review_id(db: Database) -> str:
    return f"REV-{next_sequence(db, 'REV'):06d}"


def generate_department_id(db: Database, parent_id: Optional[str] = None) -> str:
    """DEPTnnn for top-level departments, <parent>-nn for sub-departments."""
    if parent_id:
        highest = 0
        pattern = f"^{re.escape(parent_id)}-\\d+$"
        for doc in db["departments"].find({"department_id": {"$regex": pattern}}, {"department_id": 1}):
            highest = max(highest, int(doc["department_id"].rsplit("-", 1)[1]))
        return f"{parent_id}-{highest + 1:02d}"

    highest = 0
    for doc in db["departments"].find({"department_id": {"$regex": r"^DEPT\d+$"}}, {"department_id": 1}):
        match = _TOP_LEVEL_DEPARTMENT.match(doc["department_id"])
        if match:
            highest = max(highest, int(match.group(1)))
    return f"DEPT{highest + 1:03d}"


def generate_room_id(db: Database, department_id: str) -> str:
    seq = next_sequence(db, f"ROOM-{department_id}")
    return f"{department_id}-R{seq:03d}"


def generate_order_code() -> int:
    """Positive integer order code for the payment gateway."""
    millis = int(time.time() * 1000) % 1_000_000_000
    return millis * 1000 + random.randint(0, 999)
