"""
Database Schemas

Pydantic models used to validate request bodies before they are written to
the hospital collections. Collection names follow the hospital's tables:
- Profile -> "profiles"
- Doctor -> "doctors"
- Patient -> "patients"
- Appointment -> "appointments"
"""

from datetime import date
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

Role = Literal["admin", "doctor", "patient"]
Gender = Literal["male", "female", "other"]
BloodType = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]
AvailabilityStatus = Literal["available", "busy", "off_duty"]
RoomStatus = Literal["available", "occupied", "maintenance", "reserved"]
AppointmentStatus = Literal["scheduled", "confirmed", "in_progress", "completed", "cancelled", "no_show"]
AppointmentType = Literal["consultation", "follow_up", "emergency", "routine_checkup"]
PaymentMethod = Literal["cash", "payos"]

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


# --------------------------
# Auth
# --------------------------

class RegisterRequest(BaseModel):
    """
    Sign-up payload. Role-specific fields are only read for the matching role:
    doctors need a department_id, patients may send medical/contact details.
    """
    email: EmailStr
    password: str = Field(..., min_length=8)
    full_name: str = Field(..., min_length=2)
    role: Role = "patient"
    phone_number: Optional[str] = None
    gender: Optional[Gender] = None
    date_of_birth: Optional[date] = None
    # doctor
    specialty: Optional[str] = None
    license_number: Optional[str] = None
    qualification: Optional[str] = None
    department_id: Optional[str] = None
    # patient
    blood_type: Optional[BloodType] = None
    address: Optional[Dict[str, Any]] = None
    emergency_contact: Optional[Dict[str, Any]] = None
    insurance_info: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def doctor_needs_department(self):
        if self.role == "doctor" and not self.department_id:
            raise ValueError("Department ID is required for doctor registration")
        return self


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class SessionOut(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: int


class AuthResponse(BaseModel):
    user: Dict[str, Any]
    session: SessionOut


# --------------------------
# Departments, rooms, specialties
# --------------------------

class DepartmentCreate(BaseModel):
    department_name: str = Field(..., min_length=2)
    description: Optional[str] = None
    parent_department_id: Optional[str] = None
    head_doctor_id: Optional[str] = None
    location: Optional[str] = None
    phone_number: Optional[str] = None


class DepartmentUpdate(BaseModel):
    department_name: Optional[str] = Field(None, min_length=2)
    description: Optional[str] = None
    head_doctor_id: Optional[str] = None
    location: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: Optional[bool] = None


class RoomCreate(BaseModel):
    room_number: str
    department_id: str
    room_type: str = "standard"
    capacity: int = Field(1, ge=1)
    location: Optional[str] = None
    notes: Optional[str] = None


class RoomUpdate(BaseModel):
    room_number: Optional[str] = None
    room_type: Optional[str] = None
    capacity: Optional[int] = Field(None, ge=1)
    status: Optional[RoomStatus] = None
    location: Optional[str] = None
    notes: Optional[str] = None
    is_active: Optional[bool] = None


class SpecialtyCreate(BaseModel):
    specialty_name: str = Field(..., min_length=2)
    description: Optional[str] = None
    department_id: Optional[str] = None


class SpecialtyUpdate(BaseModel):
    specialty_name: Optional[str] = Field(None, min_length=2)
    description: Optional[str] = None
    department_id: Optional[str] = None
    is_active: Optional[bool] = None


# --------------------------
# Doctors
# --------------------------

class DoctorUpdate(BaseModel):
    specialty: Optional[str] = None
    qualification: Optional[str] = None
    license_number: Optional[str] = None
    bio: Optional[str] = None
    experience_years: Optional[int] = Field(None, ge=0)
    consultation_fee: Optional[float] = Field(None, ge=0)
    languages_spoken: Optional[List[str]] = None
    availability_status: Optional[AvailabilityStatus] = None
    department_id: Optional[str] = None


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    appointment_id: Optional[str] = None


class ScheduleEntry(BaseModel):
    # 0 = Sunday ... 6 = Saturday
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: str = Field("08:00", pattern=TIME_PATTERN)
    end_time: str = Field("17:00", pattern=TIME_PATTERN)
    is_available: bool = True
    break_start: Optional[str] = Field(None, pattern=TIME_PATTERN)
    break_end: Optional[str] = Field(None, pattern=TIME_PATTERN)
    slot_duration: int = Field(30, ge=10, le=240)

    @model_validator(mode="after")
    def check_hours(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if (self.break_start is None) != (self.break_end is None):
            raise ValueError("break_start and break_end go together")
        if self.break_start is not None:
            if not self.start_time <= self.break_start < self.break_end <= self.end_time:
                raise ValueError("Break must fall inside working hours")
        return self


class ScheduleUpdate(BaseModel):
    schedules: List[ScheduleEntry] = Field(..., min_length=1, max_length=7)

    @field_validator("schedules")
    @classmethod
    def one_entry_per_day(cls, v):
        days = [entry.day_of_week for entry in v]
        if len(days) != len(set(days)):
            raise ValueError("Each day_of_week may appear only once")
        return v


# --------------------------
# Patients & medical records
# --------------------------

class PatientUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=2)
    phone_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    blood_type: Optional[BloodType] = None
    address: Optional[Dict[str, Any]] = None
    emergency_contact: Optional[Dict[str, Any]] = None
    insurance_info: Optional[Dict[str, Any]] = None
    allergies: Optional[List[str]] = None
    chronic_conditions: Optional[List[str]] = None
    current_medications: Optional[Dict[str, Any]] = None
    medical_history: Optional[str] = None


class VitalSigns(BaseModel):
    temperature: Optional[float] = None
    blood_pressure: Optional[str] = None
    heart_rate: Optional[int] = None
    respiratory_rate: Optional[int] = None
    weight: Optional[float] = None
    height: Optional[float] = None


class MedicalRecordCreate(BaseModel):
    diagnosis: str
    symptoms: Optional[str] = None
    treatment: Optional[str] = None
    notes: Optional[str] = None
    appointment_id: Optional[str] = None
    vital_signs: Optional[VitalSigns] = None


class MedicalRecordUpdate(BaseModel):
    diagnosis: Optional[str] = None
    symptoms: Optional[str] = None
    treatment: Optional[str] = None
    notes: Optional[str] = None
    vital_signs: Optional[VitalSigns] = None


# --------------------------
# Appointments
# --------------------------

class AppointmentCreate(BaseModel):
    patient_id: str
    doctor_id: str
    appointment_date: date
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)
    appointment_type: AppointmentType = "consultation"
    reason: Optional[str] = None
    notes: Optional[str] = None


class AppointmentUpdate(BaseModel):
    appointment_date: Optional[date] = None
    start_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    appointment_type: Optional[AppointmentType] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: AppointmentStatus
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ConflictCheckRequest(BaseModel):
    doctor_id: str
    appointment_date: date
    start_time: str = Field(..., pattern=TIME_PATTERN)
    end_time: str = Field(..., pattern=TIME_PATTERN)
    exclude_appointment_id: Optional[str] = None


# --------------------------
# Payments
# --------------------------

class PaymentCreate(BaseModel):
    appointment_id: str
    amount: int = Field(..., gt=0, description="Amount in VND")
    description: Optional[str] = Field(None, max_length=255)
    method: PaymentMethod = "payos"


class GatewaySnapshot(BaseModel):
    """Payment state as reported by the gateway, used for manual sync."""
    status: Optional[str] = None
    code: Optional[str] = None
    amount: Optional[int] = None
    reference: Optional[str] = None
    transactions: List[Dict[str, Any]] = Field(default_factory=list)


# --------------------------
# Chatbot
# --------------------------

class ChatMessageRequest(BaseModel):
    message: str = Field(..., max_length=2000)
    session_id: Optional[str] = None

    @field_validator("message")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be empty")
        return value.strip()


class AnalyzeRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
