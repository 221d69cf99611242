# backend/myopia_api/retinal_images.py
import logging
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config, database, models, ownership, schemas, storage
from .deps import get_current_user
from .errors import Conflict, ServerError, ValidationFailed
from .pagination import PageParams, page_params, paginate, dump, page_envelope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/retinal-images", tags=["retinal-images"])


def _doctor_images(db: Session, doctor_id: int):
    return (
        db.query(models.RetinalImage)
        .join(models.Patient, models.RetinalImage.patient_id == models.Patient.id)
        .filter(models.Patient.doctor_id == doctor_id)
    )


@router.get("/count")
def image_count(
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    return {"count": _doctor_images(db, current.id).count()}


@router.post("/", status_code=status.HTTP_201_CREATED)
async def upload_image(
    patient_id: int = Form(..., alias="patientId", ge=1),
    image: UploadFile = File(...),
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    if not image or not image.filename:
        raise ValidationFailed("No file uploaded.")
    if image.content_type not in config.ALLOWED_IMAGE_TYPES:
        raise ValidationFailed("Only JPEG or PNG images are allowed.")

    # ownership is checked before anything touches the disk
    ownership.require(db, current.id, ownership.PatientRef(patient_id))

    path = await storage.save_upload(image)
    try:
        row = models.RetinalImage(
            patient_id=patient_id,
            uploaded_by=current.id,
            original_image_path=path,
        )
        db.add(row)
        db.commit()
        db.refresh(row)
    except Exception:
        db.rollback()
        storage.remove_file(path)
        raise
    logger.info("Retinal image %s uploaded for patient %s", row.id, patient_id)
    return {"message": "Image uploaded successfully.", "data": dump(schemas.RetinalImageOut, row)}


@router.get("/")
def list_images(
    params: PageParams = Depends(page_params),
    patient_id: Optional[int] = Query(None, alias="patientId", ge=1),
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    query = _doctor_images(db, current.id)
    if patient_id is not None:
        query = query.filter(models.RetinalImage.patient_id == patient_id)
    if params.search:
        query = query.filter(models.Patient.name.ilike(f"%{params.search}%"))
    query = query.order_by(models.RetinalImage.uploaded_at.desc(), models.RetinalImage.id.desc())
    rows, total = paginate(query, params)
    data = [dump(schemas.RetinalImageOut, r) for r in rows]
    return page_envelope("Retinal images retrieved successfully.", data, total, params)


@router.get("/patient/{patient_id}")
def images_for_patient(
    patient_id: int,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    ownership.require(db, current.id, ownership.PatientRef(patient_id))
    rows = (
        db.query(models.RetinalImage)
        .filter(models.RetinalImage.patient_id == patient_id)
        .order_by(models.RetinalImage.uploaded_at.desc(), models.RetinalImage.id.desc())
        .all()
    )
    return {
        "message": "Retinal images retrieved successfully.",
        "data": [dump(schemas.RetinalImageOut, r) for r in rows],
    }


@router.get("/{image_id}")
def get_image(
    image_id: int,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    image = ownership.require(db, current.id, ownership.ImageRef(image_id)).image
    return {"message": "Retinal image retrieved successfully.", "data": dump(schemas.RetinalImageOut, image)}


@router.put("/{image_id}")
def update_image(
    image_id: int,
    payload: schemas.RetinalImageUpdate,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    image = ownership.require(db, current.id, ownership.ImageRef(image_id)).image
    if payload.patient_id is not None:
        # the target patient must belong to the same doctor
        ownership.require(db, current.id, ownership.PatientRef(payload.patient_id))
        image.patient_id = payload.patient_id
        db.commit()
        db.refresh(image)
    return {"message": "Retinal image updated successfully.", "data": dump(schemas.RetinalImageOut, image)}


@router.delete("/{image_id}")
def delete_image(
    image_id: int,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    image = ownership.require(db, current.id, ownership.ImageRef(image_id)).image
    diagnoses = db.query(models.Diagnosis).filter(models.Diagnosis.retinal_image_id == image.id).count()
    if diagnoses:
        raise Conflict("Cannot delete retinal image with associated diagnoses.")

    refs = [image.original_image_path, image.yolo_output_path]
    db.delete(image)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise ServerError(f"Failed to delete retinal image: {exc}") from exc

    for ref in refs:
        if ref:
            storage.remove_file(ref)
    return {"message": "Retinal image deleted successfully."}
