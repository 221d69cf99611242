# backend/myopia_api/schemas.py
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field
from pydantic.alias_generators import to_camel

from .models import Gender, Role, SeverityLevel

PHONE_PATTERN = r"^\+?[1-9]\d{1,14}$"


class ApiModel(BaseModel):
    """Base for request/response bodies: snake_case in Python, camelCase on the wire."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True
        str_strip_whitespace = True


# Users / auth
class UserRegister(ApiModel):
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    password: str = Field(min_length=6)
    role: Role = Role.doctor


class UserLogin(ApiModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserUpdate(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    email: Optional[EmailStr] = None


class UserOut(ApiModel):
    id: int
    name: str
    email: EmailStr
    role: Role
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LoginOut(ApiModel):
    token: str
    token_type: str = "bearer"
    user: UserOut


class PasswordResetRequest(ApiModel):
    email: EmailStr


class PasswordReset(ApiModel):
    token: str = Field(min_length=1)
    new_password: str = Field(min_length=6)


# Patients
class ContactInfo(ApiModel):
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)


class PatientCreate(ApiModel):
    name: str = Field(min_length=1, max_length=200)
    gender: Gender
    date_of_birth: Optional[date] = None
    contact_info: Optional[ContactInfo] = None
    address: Optional[str] = Field(default=None, max_length=500)


class PatientUpdate(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    gender: Optional[Gender] = None
    date_of_birth: Optional[date] = None
    contact_info: Optional[ContactInfo] = None
    address: Optional[str] = Field(default=None, max_length=500)


class PatientOut(ApiModel):
    id: int
    doctor_id: int
    name: str
    gender: Gender
    date_of_birth: Optional[date] = None
    contact_info: ContactInfo
    address: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, patient) -> "PatientOut":
        return cls(
            id=patient.id,
            doctor_id=patient.doctor_id,
            name=patient.name,
            gender=patient.gender,
            date_of_birth=patient.date_of_birth,
            contact_info=ContactInfo(email=patient.contact_email, phone=patient.contact_phone),
            address=patient.address,
            created_at=patient.created_at,
            updated_at=patient.updated_at,
        )


class PatientBrief(ApiModel):
    id: int
    name: str


# Retinal images
class RetinalImageUpdate(ApiModel):
    patient_id: Optional[int] = Field(default=None, ge=1)


class RetinalImageOut(ApiModel):
    id: int
    patient_id: int
    uploaded_by: int
    original_image_path: str
    yolo_output_path: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    patient: Optional[PatientBrief] = None


# Diagnoses
class BoundingBox(ApiModel):
    x: float
    y: float
    width: float
    height: float


class Detection(ApiModel):
    label: str
    confidence: float = Field(ge=0.0, le=1.0)
    bounding_box: BoundingBox


class DiagnosisCreate(ApiModel):
    retinal_image_id: int = Field(ge=1)
    notes: Optional[str] = Field(default=None, max_length=500)


class DiagnosisUpdate(ApiModel):
    notes: Optional[str] = Field(default=None, max_length=500)


class DiagnosisImage(ApiModel):
    id: int
    original_image_path: str
    yolo_output_path: Optional[str] = None
    patient: Optional[PatientBrief] = None


class DiagnosisOut(ApiModel):
    id: int
    retinal_image_id: int
    yolo_detections: List[Detection]
    severity_level: SeverityLevel
    notes: Optional[str] = None
    diagnosed_at: Optional[datetime] = None
    retinal_image: Optional[DiagnosisImage] = None


class RecentDiagnosis(ApiModel):
    id: int
    patient_name: str
    severity_level: SeverityLevel
    created_at: Optional[datetime] = None


# Recommendations
class RecommendationCreate(ApiModel):
    diagnosis_id: int = Field(ge=1)


class RecommendationOut(ApiModel):
    id: int
    diagnosis_id: int
    patient_id: int
    recommendation_text: str
    created_by: int
    created_at: Optional[datetime] = None
