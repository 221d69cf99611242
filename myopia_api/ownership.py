# backend/myopia_api/ownership.py
"""Doctor -> Patient -> RetinalImage -> Diagnosis ownership checks.

Every read or write of a patient, retinal image or diagnosis resolves the
chain with plain sequential lookups and compares the patient's doctor with
the requesting user. A broken link is reported as NOT_FOUND, an intact chain
that ends at another doctor as DENIED.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from . import models
from .errors import Forbidden, NotFound

logger = logging.getLogger(__name__)


class Access(enum.Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PatientRef:
    id: int


@dataclass(frozen=True)
class ImageRef:
    id: int


@dataclass(frozen=True)
class DiagnosisRef:
    id: int


Resource = Union[PatientRef, ImageRef, DiagnosisRef]


@dataclass
class Resolution:
    access: Access
    missing: Optional[str] = None
    patient: Optional[models.Patient] = None
    image: Optional[models.RetinalImage] = None
    diagnosis: Optional[models.Diagnosis] = None

    @property
    def allowed(self) -> bool:
        return self.access is Access.ALLOWED


_LABELS = {
    PatientRef: "Patient",
    ImageRef: "Retinal image",
    DiagnosisRef: "Diagnosis",
}


def _check_patient(db: Session, user_id: int, patient_id: int, res: Resolution) -> Resolution:
    patient = db.get(models.Patient, patient_id)
    if patient is None:
        res.access, res.missing = Access.NOT_FOUND, "Patient"
        return res
    res.patient = patient
    if db.get(models.User, patient.doctor_id) is None:
        res.access, res.missing = Access.NOT_FOUND, "Doctor"
        return res
    res.access = Access.ALLOWED if patient.doctor_id == user_id else Access.DENIED
    return res


def _check_image(db: Session, user_id: int, image_id: int, res: Resolution) -> Resolution:
    image = db.get(models.RetinalImage, image_id)
    if image is None:
        res.access, res.missing = Access.NOT_FOUND, "Retinal image"
        return res
    res.image = image
    return _check_patient(db, user_id, image.patient_id, res)


def _check_diagnosis(db: Session, user_id: int, diagnosis_id: int, res: Resolution) -> Resolution:
    diagnosis = db.get(models.Diagnosis, diagnosis_id)
    if diagnosis is None:
        res.access, res.missing = Access.NOT_FOUND, "Diagnosis"
        return res
    res.diagnosis = diagnosis
    return _check_image(db, user_id, diagnosis.retinal_image_id, res)


def authorize(db: Session, user_id: int, resource: Resource) -> Resolution:
    res = Resolution(access=Access.NOT_FOUND)
    if isinstance(resource, PatientRef):
        return _check_patient(db, user_id, resource.id, res)
    if isinstance(resource, ImageRef):
        return _check_image(db, user_id, resource.id, res)
    if isinstance(resource, DiagnosisRef):
        return _check_diagnosis(db, user_id, resource.id, res)
    raise TypeError(f"unsupported resource: {resource!r}")


def require(db: Session, user_id: int, resource: Resource) -> Resolution:
    """Like authorize(), but raises NotFound / Forbidden unless access is allowed."""
    res = authorize(db, user_id, resource)
    if res.access is Access.NOT_FOUND:
        if res.missing == _LABELS[type(resource)]:
            raise NotFound(f"{res.missing} not found.")
        raise NotFound(f"{res.missing} linked to this {_LABELS[type(resource)].lower()} not found.")
    if res.access is Access.DENIED:
        logger.warning(
            "Unauthorized access attempt: user=%s resource=%s owner=%s",
            user_id, resource, res.patient.doctor_id if res.patient else None,
        )
        raise Forbidden("Unauthorized access.")
    return res
