# backend/myopia_api/diagnoses.py
from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from . import database, diagnosis_service, schemas
from .deps import get_current_user
from .inference import InferenceClient, get_inference_client
from .models import SeverityLevel
from .pagination import PageParams, page_params, dump, page_envelope

router = APIRouter(prefix="/api/diagnoses", tags=["diagnoses"])


@router.get("/count")
def diagnosis_count(
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    return {"count": diagnosis_service.diagnosis_count(db, current.id)}


@router.get("/patients-by-severity")
def patients_by_severity(
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    return diagnosis_service.patients_by_severity(db, current.id)


@router.get("/by-severity")
def diagnoses_by_severity(
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    return diagnosis_service.diagnoses_by_severity(db, current.id)


@router.get("/recent")
def recent_diagnoses(
    limit: int = Query(5, ge=1, le=50),
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    rows = diagnosis_service.recent_diagnoses(db, current.id, limit)
    return [dump(schemas.RecentDiagnosis, r) for r in rows]


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_diagnosis(
    payload: schemas.DiagnosisCreate,
    db: Session = Depends(database.get_db),
    inference: InferenceClient = Depends(get_inference_client),
    current = Depends(get_current_user),
):
    orchestrator = diagnosis_service.DiagnosisOrchestrator(db, inference)
    diagnosis = await orchestrator.create(current.id, payload.retinal_image_id, payload.notes)
    return {"message": "Diagnosis created successfully.", "data": dump(schemas.DiagnosisOut, diagnosis)}


@router.get("/")
def list_diagnoses(
    params: PageParams = Depends(page_params),
    patient_id: Optional[int] = Query(None, alias="patientId", ge=1),
    severity: Optional[SeverityLevel] = Query(None),
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    rows, total = diagnosis_service.list_diagnoses(db, current.id, params, patient_id, severity)
    data = [dump(schemas.DiagnosisOut, d) for d in rows]
    return page_envelope("Diagnoses retrieved successfully.", data, total, params)


@router.get("/patient/{patient_id}")
def diagnoses_for_patient(
    patient_id: int,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    rows = diagnosis_service.diagnoses_for_patient(db, current.id, patient_id)
    return {"message": "Diagnoses retrieved successfully.", "data": [dump(schemas.DiagnosisOut, d) for d in rows]}


@router.get("/{diagnosis_id}")
def get_diagnosis(
    diagnosis_id: int,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    diagnosis = diagnosis_service.get_diagnosis(db, current.id, diagnosis_id)
    return {"message": "Diagnosis retrieved successfully.", "data": dump(schemas.DiagnosisOut, diagnosis)}


@router.put("/{diagnosis_id}")
def update_diagnosis(
    diagnosis_id: int,
    payload: schemas.DiagnosisUpdate,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    diagnosis = diagnosis_service.update_notes(db, current.id, diagnosis_id, payload.notes)
    return {"message": "Diagnosis updated successfully.", "data": dump(schemas.DiagnosisOut, diagnosis)}


@router.delete("/{diagnosis_id}")
def delete_diagnosis(
    diagnosis_id: int,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    diagnosis_service.delete_diagnosis(db, current.id, diagnosis_id)
    return {"message": "Diagnosis deleted successfully."}
