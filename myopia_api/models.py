# backend/myopia_api/models.py
import enum

from sqlalchemy import Column, Integer, String, DateTime, Date, ForeignKey, Text, JSON, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Role(str, enum.Enum):
    doctor = "doctor"
    admin = "admin"


class Gender(str, enum.Enum):
    male = "male"
    female = "female"
    other = "other"


class SeverityLevel(str, enum.Enum):
    """Myopia severity, declared from mildest to most severe."""

    normal = "normal"
    low = "low"
    medium = "medium"
    high = "high"
    severe = "severe"

    @property
    def rank(self) -> int:
        return list(SeverityLevel).index(self)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(Enum(Role), nullable=False, default=Role.doctor)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Patient(Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    gender = Column(Enum(Gender), nullable=False)
    date_of_birth = Column(Date, nullable=True)
    contact_email = Column(String(255), nullable=True, index=True)
    contact_phone = Column(String(32), nullable=True)
    address = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    doctor = relationship("User")


class RetinalImage(Base):
    __tablename__ = "retinal_images"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False, index=True)
    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    original_image_path = Column(String(500), nullable=False)
    yolo_output_path = Column(String(500), nullable=True)
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now())

    patient = relationship("Patient")
    uploader = relationship("User")


class Diagnosis(Base):
    __tablename__ = "diagnoses"

    id = Column(Integer, primary_key=True, index=True)
    # unique: at most one diagnosis per retinal image
    retinal_image_id = Column(Integer, ForeignKey("retinal_images.id"), nullable=False, unique=True)
    yolo_detections = Column(JSON, nullable=False, default=list)
    severity_level = Column(Enum(SeverityLevel), nullable=False)
    notes = Column(String(500), nullable=True)
    diagnosed_at = Column(DateTime(timezone=True), server_default=func.now())

    retinal_image = relationship("RetinalImage")


class Recommendation(Base):
    __tablename__ = "recommendations"

    id = Column(Integer, primary_key=True, index=True)
    diagnosis_id = Column(Integer, ForeignKey("diagnoses.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    recommendation_text = Column(Text, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    # sha256 of the raw token, for lookup; `token` holds its bcrypt hash
    token_key = Column(String(64), nullable=False, unique=True, index=True)
    token = Column(String(255), nullable=False)
    expires = Column(DateTime(timezone=True), nullable=False)
