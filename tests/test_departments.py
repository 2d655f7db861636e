def create_department(client, admin, name, parent=None):
    payload = {"department_name": name}
    if parent:
        payload["parent_department_id"] = parent
    resp = client.post("/api/departments", json=payload, headers=admin["headers"])
    assert resp.status_code == 201, resp.text
    return resp.json()


def create_room(client, admin, department_id, number):
    resp = client.post(
        "/api/rooms",
        json={"room_number": number, "department_id": department_id, "capacity": 2},
        headers=admin["headers"],
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


# --------------------------
# Departments
# --------------------------

def test_create_department_hierarchy(client, admin, department):
    assert department["department_id"] == "DEPT001"
    assert department["level"] == 1
    assert department["path"] == "/DEPT001"

    child = create_department(client, admin, "Interventional Cardiology", parent="DEPT001")
    assert child["department_id"] == "DEPT001-01"
    assert child["level"] == 2
    assert child["path"] == "/DEPT001/DEPT001-01"

    detail = client.get("/api/departments/DEPT001", headers=admin["headers"]).json()
    assert [d["department_id"] for d in detail["sub_departments"]] == ["DEPT001-01"]


def test_create_department_requires_admin(client, patient):
    resp = client.post("/api/departments", json={"department_name": "Neurology"}, headers=patient["headers"])
    assert resp.status_code == 403


def test_create_department_unknown_parent(client, admin):
    resp = client.post(
        "/api/departments",
        json={"department_name": "Orphan", "parent_department_id": "DEPT404"},
        headers=admin["headers"],
    )
    assert resp.status_code == 404


def test_department_tree(client, admin, department):
    create_department(client, admin, "Neurology")
    create_department(client, admin, "Pediatric Cardiology", parent="DEPT001")
    tree = client.get("/api/departments/tree", headers=admin["headers"]).json()
    assert [node["department_id"] for node in tree] == ["DEPT001", "DEPT002"]
    assert [child["department_id"] for child in tree[0]["children"]] == ["DEPT001-01"]
    assert tree[1]["children"] == []


def test_list_departments_search(client, admin, department):
    create_department(client, admin, "Neurology")
    resp = client.get("/api/departments", params={"search": "neuro"}, headers=admin["headers"]).json()
    assert resp["total"] == 1
    assert resp["items"][0]["department_name"] == "Neurology"


def test_delete_department_in_use(client, admin, department, doctor):
    resp = client.delete("/api/departments/DEPT001", headers=admin["headers"])
    assert resp.status_code == 409
    assert resp.json()["detail"] == "Department still has active doctors"


def test_delete_department_with_children(client, admin, department):
    create_department(client, admin, "Child", parent="DEPT001")
    assert client.delete("/api/departments/DEPT001", headers=admin["headers"]).status_code == 409
    assert client.delete("/api/departments/DEPT001-01", headers=admin["headers"]).status_code == 200
    assert client.delete("/api/departments/DEPT001", headers=admin["headers"]).status_code == 200
    assert client.get("/api/departments/DEPT001", headers=admin["headers"]).json()["is_active"] is False


def test_department_stats(client, admin, department, doctor):
    stats = client.get("/api/departments/stats", headers=admin["headers"]).json()
    assert stats["active_departments"] == 1
    assert stats["total_doctors"] == 1
    assert stats["departments_without_head"] == 1


# --------------------------
# Rooms
# --------------------------

def test_room_lifecycle(client, admin, department):
    room = create_room(client, admin, "DEPT001", "101")
    assert room["room_id"] == "DEPT001-R001"
    assert room["status"] == "available"

    dup = client.post(
        "/api/rooms", json={"room_number": "101", "department_id": "DEPT001"}, headers=admin["headers"]
    )
    assert dup.status_code == 409

    resp = client.put("/api/rooms/DEPT001-R001", json={"status": "occupied"}, headers=admin["headers"])
    assert resp.json()["status"] == "occupied"
    assert client.delete("/api/rooms/DEPT001-R001", headers=admin["headers"]).status_code == 409

    client.put("/api/rooms/DEPT001-R001", json={"status": "available"}, headers=admin["headers"])
    assert client.delete("/api/rooms/DEPT001-R001", headers=admin["headers"]).status_code == 200
    assert client.get("/api/rooms", headers=admin["headers"]).json()["total"] == 0


def test_room_in_unknown_department(client, admin):
    resp = client.post("/api/rooms", json={"room_number": "1", "department_id": "DEPT404"}, headers=admin["headers"])
    assert resp.status_code == 404


def test_room_availability_and_stats(client, admin, department):
    create_room(client, admin, "DEPT001", "101")
    create_room(client, admin, "DEPT001", "102")
    client.put("/api/rooms/DEPT001-R002", json={"status": "occupied"}, headers=admin["headers"])

    available = client.get("/api/rooms/availability", headers=admin["headers"]).json()
    assert [r["room_id"] for r in available] == ["DEPT001-R001"]
    assert client.get("/api/rooms/availability", params={"min_capacity": 3}, headers=admin["headers"]).json() == []

    stats = client.get("/api/rooms/stats", headers=admin["headers"]).json()
    assert stats["total_rooms"] == 2
    assert stats["occupancy_rate"] == 50.0


def test_rename_room_to_existing_number(client, admin, department):
    create_room(client, admin, "DEPT001", "101")
    create_room(client, admin, "DEPT001", "102")
    resp = client.put("/api/rooms/DEPT001-R002", json={"room_number": "101"}, headers=admin["headers"])
    assert resp.status_code == 409


# --------------------------
# Specialties
# --------------------------

def test_specialties(client, admin, department):
    resp = client.post(
        "/api/specialties",
        json={"specialty_name": "Cardiology", "department_id": "DEPT001"},
        headers=admin["headers"],
    )
    assert resp.status_code == 201
    assert resp.json()["specialty_id"] == "SPEC001"

    dup = client.post("/api/specialties", json={"specialty_name": "cardiology"}, headers=admin["headers"])
    assert dup.status_code == 409

    updated = client.put("/api/specialties/SPEC001", json={"description": "Heart"}, headers=admin["headers"])
    assert updated.json()["description"] == "Heart"
    assert client.put("/api/specialties/SPEC999", json={"description": "x"}, headers=admin["headers"]).status_code == 404

    assert client.delete("/api/specialties/SPEC001", headers=admin["headers"]).status_code == 200
    assert client.get("/api/specialties", headers=admin["headers"]).json() == []
