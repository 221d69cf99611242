# backend/myopia_api/patients.py
from datetime import datetime, timedelta
from fastapi import APIRouter, Depends, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from . import database, models, ownership, schemas
from .deps import get_current_user
from .errors import Conflict
from .pagination import PageParams, page_params, paginate, page_envelope

router = APIRouter(prefix="/api/patients", tags=["patients"])


def _out(patient: models.Patient) -> dict:
    return schemas.PatientOut.from_row(patient).model_dump(by_alias=True, mode="json")


def _ensure_contact_email_free(db: Session, email: str, exclude_id: int = None) -> None:
    query = db.query(models.Patient).filter(models.Patient.contact_email == email)
    if exclude_id is not None:
        query = query.filter(models.Patient.id != exclude_id)
    if query.first():
        raise Conflict("Patient email already exists.")


# ---- Statistics (declared before /{patient_id})
@router.get("/count")
def patient_count(
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    return {"count": db.query(models.Patient).filter(models.Patient.doctor_id == current.id).count()}


@router.get("/active-count")
def active_patient_count(
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    since = datetime.utcnow() - timedelta(days=30)
    with_recent_images = (
        db.query(models.RetinalImage.patient_id)
        .filter(models.RetinalImage.uploaded_at >= since)
    )
    count = (
        db.query(models.Patient)
        .filter(
            models.Patient.doctor_id == current.id,
            or_(models.Patient.updated_at >= since, models.Patient.id.in_(with_recent_images)),
        )
        .count()
    )
    return {"count": count}


@router.get("/by-gender")
def patients_by_gender(
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    counts = {g.value: 0 for g in models.Gender}
    rows = (
        db.query(models.Patient.gender, func.count(models.Patient.id))
        .filter(models.Patient.doctor_id == current.id)
        .group_by(models.Patient.gender)
        .all()
    )
    for gender, n in rows:
        counts[models.Gender(gender).value] = n
    return counts


# ---- Create patient owned by current doctor
@router.post("/", status_code=status.HTTP_201_CREATED)
def create_patient(
    payload: schemas.PatientCreate,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    contact = payload.contact_info or schemas.ContactInfo()
    email = contact.email.lower() if contact.email else None
    if email:
        _ensure_contact_email_free(db, email)

    p = models.Patient(
        doctor_id=current.id,  # ← ownership
        name=payload.name,
        gender=payload.gender,
        date_of_birth=payload.date_of_birth,
        contact_email=email,
        contact_phone=contact.phone,
        address=payload.address,
    )
    db.add(p)
    db.commit()
    db.refresh(p)
    return {"message": "Patient created successfully.", "data": _out(p)}


# ---- List patients for current doctor
@router.get("/")
def list_patients(
    params: PageParams = Depends(page_params),
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    query = db.query(models.Patient).filter(models.Patient.doctor_id == current.id)
    if params.search:
        query = query.filter(models.Patient.name.ilike(f"%{params.search}%"))
    rows, total = paginate(query.order_by(models.Patient.name.asc(), models.Patient.id.asc()), params)
    return page_envelope("Patients retrieved successfully.", [_out(p) for p in rows], total, params)


# ---- Get a single patient (ensures ownership)
@router.get("/{patient_id}")
def get_patient(
    patient_id: int,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    patient = ownership.require(db, current.id, ownership.PatientRef(patient_id)).patient
    return {"message": "Patient retrieved successfully.", "data": _out(patient)}


@router.put("/{patient_id}")
def update_patient(
    patient_id: int,
    payload: schemas.PatientUpdate,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    patient = ownership.require(db, current.id, ownership.PatientRef(patient_id)).patient

    if payload.contact_info is not None:
        email = payload.contact_info.email.lower() if payload.contact_info.email else None
        if email:
            _ensure_contact_email_free(db, email, exclude_id=patient.id)
        patient.contact_email = email
        patient.contact_phone = payload.contact_info.phone
    if payload.name:
        patient.name = payload.name
    if payload.gender:
        patient.gender = payload.gender
    if payload.date_of_birth:
        patient.date_of_birth = payload.date_of_birth
    if payload.address:
        patient.address = payload.address

    db.commit()
    db.refresh(patient)
    return {"message": "Patient updated successfully.", "data": _out(patient)}


@router.delete("/{patient_id}")
def delete_patient(
    patient_id: int,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    patient = ownership.require(db, current.id, ownership.PatientRef(patient_id)).patient
    images = db.query(models.RetinalImage).filter(models.RetinalImage.patient_id == patient.id).count()
    if images:
        raise Conflict("Cannot delete patient with associated retinal images.")
    db.delete(patient)
    db.commit()
    return {"message": "Patient deleted successfully."}
