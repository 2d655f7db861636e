import mongomock
import pytest
from fastapi.testclient import TestClient

from config import settings

settings.auth.bcrypt_rounds = 4
settings.auth.jwt_secret = "test-secret"

import main  # noqa: E402
from chatbot import ChatService, get_chat_service  # noqa: E402
from database import get_db, get_optional_db  # noqa: E402

PASSWORD = "correct-horse-1"


@pytest.fixture
def db():
    return mongomock.MongoClient().hospital


@pytest.fixture
def chat_service():
    # No backends unless a test plugs some in
    return ChatService()


@pytest.fixture
def client(db, chat_service):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_optional_db] = lambda: db
    main.app.dependency_overrides[get_chat_service] = lambda: chat_service
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def register(client, email, role="patient", password=PASSWORD, **extra):
    payload = {"email": email, "password": password, "full_name": extra.pop("full_name", "Test User"), "role": role}
    payload.update(extra)
    resp = client.post("/api/auth/register", json=payload)
    assert resp.status_code == 200, resp.text
    return resp.json()


def bearer(auth_body):
    return {"Authorization": f"Bearer {auth_body['session']['access_token']}"}


@pytest.fixture
def admin(client):
    body = register(client, "admin@hospital.vn", role="admin", full_name="Admin User")
    return {**body, "headers": bearer(body)}


@pytest.fixture
def department(client, admin):
    resp = client.post("/api/departments", json={"department_name": "Cardiology"}, headers=admin["headers"])
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.fixture
def doctor(client, department):
    body = register(
        client,
        "doctor@hospital.vn",
        role="doctor",
        full_name="Nguyen Van An",
        department_id=department["department_id"],
        specialty="Cardiology",
    )
    return {**body, "headers": bearer(body)}


@pytest.fixture
def patient(client):
    body = register(client, "patient@hospital.vn", full_name="Tran Thi Binh")
    return {**body, "headers": bearer(body)}


@pytest.fixture
def other_patient(client):
    body = register(client, "other@hospital.vn", full_name="Le Van Cuong")
    return {**body, "headers": bearer(body)}


@pytest.fixture
def book(client):
    """Book an appointment as ``who`` and return the created appointment."""
    def _book(who, doctor, patient, day="2030-01-15", start="09:00", end="10:00"):
        resp = client.post(
            "/api/appointments",
            json={
                "patient_id": patient["user"]["patient_id"],
                "doctor_id": doctor["user"]["doctor_id"],
                "appointment_date": day,
                "start_time": start,
                "end_time": end,
                "reason": "Chest pain",
            },
            headers=who["headers"],
        )
        assert resp.status_code == 201, resp.text
        return resp.json()
    return _book
