import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo.database import Database

from database import create_document, get_db, get_documents, next_sequence, paginate, serialize, update_document
from identifiers import generate_department_id, generate_room_id
from schemas import DepartmentCreate, DepartmentUpdate, RoomCreate, RoomUpdate, RoomStatus, SpecialtyCreate, SpecialtyUpdate
from security import get_current_user, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/departments", tags=["departments"])
rooms_router = APIRouter(prefix="/api/rooms", tags=["rooms"])
specialties_router = APIRouter(prefix="/api/specialties", tags=["specialties"])

ROOM_STATUSES = ["available", "occupied", "maintenance", "reserved"]


def _contains(text: str) -> Dict[str, Any]:
    return {"$regex": re.escape(text), "$options": "i"}


def get_department_or_404(database: Database, department_id: str) -> Dict[str, Any]:
    department = database["departments"].find_one({"department_id": department_id})
    if not department:
        raise HTTPException(status_code=404, detail="Department not found")
    return department


# --------------------------
# Departments
# --------------------------

@router.get("")
def list_departments(
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    parent_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if search:
        query["department_name"] = _contains(search)
    if is_active is not None:
        query["is_active"] = is_active
    if parent_id:
        query["parent_department_id"] = parent_id
    return paginate(database, "departments", query, page, limit, sort=[("department_id", 1)])


@router.get("/tree")
def department_tree(user=Depends(get_current_user), database: Database = Depends(get_db)):
    departments = get_documents(database, "departments", {"is_active": True}, sort=[("department_id", 1)])
    by_parent: Dict[Optional[str], List[Dict[str, Any]]] = {}
    for dept in departments:
        by_parent.setdefault(dept.get("parent_department_id"), []).append(dept)

    def build(parent_id: Optional[str]) -> List[Dict[str, Any]]:
        nodes = []
        for dept in by_parent.get(parent_id, []):
            nodes.append({**dept, "children": build(dept["department_id"])})
        return nodes

    return build(None)


@router.get("/stats")
def department_stats(user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    total = database["departments"].count_documents({})
    active = database["departments"].count_documents({"is_active": True})
    with_head = database["departments"].count_documents({"is_active": True, "head_doctor_id": {"$ne": None}})
    total_doctors = database["doctors"].count_documents({"is_active": True})
    total_rooms = database["rooms"].count_documents({"is_active": True})
    return {
        "total_departments": total,
        "active_departments": active,
        "departments_with_head": with_head,
        "departments_without_head": active - with_head,
        "total_doctors": total_doctors,
        "total_rooms": total_rooms,
        "average_doctors_per_department": round(total_doctors / active, 2) if active else 0,
    }


@router.get("/{department_id}")
def get_department(department_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    department = serialize(get_department_or_404(database, department_id))
    department["doctor_count"] = database["doctors"].count_documents({"department_id": department_id, "is_active": True})
    department["room_count"] = database["rooms"].count_documents({"department_id": department_id, "is_active": True})
    department["sub_departments"] = get_documents(
        database, "departments", {"parent_department_id": department_id}, sort=[("department_id", 1)]
    )
    return department


@router.post("", status_code=201)
def create_department(payload: DepartmentCreate, user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    parent = None
    if payload.parent_department_id:
        parent = get_department_or_404(database, payload.parent_department_id)

    level = 1
    department_id = generate_department_id(database, payload.parent_department_id)
    path = f"/{department_id}"
    if parent:
        level = parent.get("level", 1) + 1
        path = f"{parent.get('path') or '/' + parent['department_id']}/{department_id}"

    doc = payload.model_dump(mode="json")
    doc.update({
        "department_id": department_id,
        "level": level,
        "path": path,
        "is_active": True,
        "created_by": user["id"],
    })
    created = create_document(database, "departments", doc)
    logger.info("Created department %s", department_id)
    return serialize(created)


@router.put("/{department_id}")
def update_department(
    department_id: str,
    payload: DepartmentUpdate,
    user=Depends(require_roles(["admin"])),
    database: Database = Depends(get_db),
):
    get_department_or_404(database, department_id)
    changes = payload.model_dump(mode="json", exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    updated = update_document(database, "departments", {"department_id": department_id}, changes)
    return serialize(updated)


@router.delete("/{department_id}")
def delete_department(department_id: str, user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    get_department_or_404(database, department_id)
    if database["doctors"].count_documents({"department_id": department_id, "is_active": True}):
        raise HTTPException(status_code=409, detail="Department still has active doctors")
    if database["departments"].count_documents({"parent_department_id": department_id, "is_active": True}):
        raise HTTPException(status_code=409, detail="Department still has active sub-departments")
    update_document(database, "departments", {"department_id": department_id}, {"is_active": False})
    logger.info("Deactivated department %s", department_id)
    return {"message": "Department deactivated", "department_id": department_id}


@router.get("/{department_id}/doctors")
def department_doctors(department_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    get_department_or_404(database, department_id)
    return get_documents(database, "doctors", {"department_id": department_id, "is_active": True}, sort=[("doctor_id", 1)])


@router.get("/{department_id}/rooms")
def department_rooms(department_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    get_department_or_404(database, department_id)
    return get_documents(database, "rooms", {"department_id": department_id, "is_active": True}, sort=[("room_number", 1)])


# --------------------------
# Rooms
# --------------------------

def get_room_or_404(database: Database, room_id: str) -> Dict[str, Any]:
    room = database["rooms"].find_one({"room_id": room_id})
    if not room:
        raise HTTPException(status_code=404, detail="Room not found")
    return room


@rooms_router.get("")
def list_rooms(
    department_id: Optional[str] = None,
    status: Optional[RoomStatus] = None,
    room_type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"is_active": True}
    if department_id:
        query["department_id"] = department_id
    if status:
        query["status"] = status
    if room_type:
        query["room_type"] = room_type
    return paginate(database, "rooms", query, page, limit, sort=[("room_id", 1)])


@rooms_router.get("/availability")
def room_availability(
    department_id: Optional[str] = None,
    room_type: Optional[str] = None,
    min_capacity: Optional[int] = Query(None, ge=1),
    user=Depends(get_current_user),
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"is_active": True, "status": "available"}
    if department_id:
        query["department_id"] = department_id
    if room_type:
        query["room_type"] = room_type
    if min_capacity:
        query["capacity"] = {"$gte": min_capacity}
    return get_documents(database, "rooms", query, sort=[("room_id", 1)])


@rooms_router.get("/stats")
def room_stats(user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    total = database["rooms"].count_documents({"is_active": True})
    by_status = {status: database["rooms"].count_documents({"is_active": True, "status": status}) for status in ROOM_STATUSES}
    return {
        "total_rooms": total,
        "by_status": by_status,
        "occupancy_rate": round(by_status["occupied"] / total * 100, 2) if total else 0,
    }


@rooms_router.get("/{room_id}")
def get_room(room_id: str, user=Depends(get_current_user), database: Database = Depends(get_db)):
    return serialize(get_room_or_404(database, room_id))


@rooms_router.post("", status_code=201)
def create_room(payload: RoomCreate, user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    get_department_or_404(database, payload.department_id)
    if database["rooms"].find_one({"department_id": payload.department_id, "room_number": payload.room_number, "is_active": True}):
        raise HTTPException(status_code=409, detail="Room number already exists in this department")

    doc = payload.model_dump(mode="json")
    doc.update({
        "room_id": generate_room_id(database, payload.department_id),
        "status": "available",
        "is_active": True,
    })
    created = create_document(database, "rooms", doc)
    logger.info("Created room %s", created["room_id"])
    return serialize(created)


@rooms_router.put("/{room_id}")
def update_room(room_id: str, payload: RoomUpdate, user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    room = get_room_or_404(database, room_id)
    changes = payload.model_dump(mode="json", exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    number = changes.get("room_number")
    if number and number != room["room_number"] and database["rooms"].find_one(
        {"department_id": room["department_id"], "room_number": number, "is_active": True}
    ):
        raise HTTPException(status_code=409, detail="Room number already exists in this department")
    return serialize(update_document(database, "rooms", {"room_id": room_id}, changes))


@rooms_router.delete("/{room_id}")
def delete_room(room_id: str, user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    room = get_room_or_404(database, room_id)
    if room.get("status") == "occupied":
        raise HTTPException(status_code=409, detail="Room is occupied")
    update_document(database, "rooms", {"room_id": room_id}, {"is_active": False})
    return {"message": "Room removed", "room_id": room_id}


# --------------------------
# Specialties
# --------------------------

@specialties_router.get("")
def list_specialties(
    department_id: Optional[str] = None,
    user=Depends(get_current_user),
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"is_active": True}
    if department_id:
        query["department_id"] = department_id
    return get_documents(database, "specialties", query, sort=[("specialty_name", 1)])


@specialties_router.post("", status_code=201)
def create_specialty(payload: SpecialtyCreate, user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    name_query = {"specialty_name": {"$regex": f"^{re.escape(payload.specialty_name)}$", "$options": "i"}, "is_active": True}
    if database["specialties"].find_one(name_query):
        raise HTTPException(status_code=409, detail="Specialty already exists")
    if payload.department_id:
        get_department_or_404(database, payload.department_id)

    doc = payload.model_dump(mode="json")
    doc.update({"specialty_id": f"SPEC{next_sequence(database, 'SPEC'):03d}", "is_active": True})
    return serialize(create_document(database, "specialties", doc))


@specialties_router.put("/{specialty_id}")
def update_specialty(
    specialty_id: str,
    payload: SpecialtyUpdate,
    user=Depends(require_roles(["admin"])),
    database: Database = Depends(get_db),
):
    changes = payload.model_dump(mode="json", exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    updated = update_document(database, "specialties", {"specialty_id": specialty_id}, changes)
    if not updated:
        raise HTTPException(status_code=404, detail="Specialty not found")
    return serialize(updated)


@specialties_router.delete("/{specialty_id}")
def delete_specialty(specialty_id: str, user=Depends(require_roles(["admin"])), database: Database = Depends(get_db)):
    updated = update_document(database, "specialties", {"specialty_id": specialty_id}, {"is_active": False})
    if not updated:
        raise HTTPException(status_code=404, detail="Specialty not found")
    return {"message": "Specialty removed", "specialty_id": specialty_id}
