# backend/myopia_api/diagnosis_service.py
"""Diagnosis creation workflow and the diagnosis read/update/delete helpers."""
import asyncio
import enum
import logging
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, ownership, storage
from .errors import DuplicateDiagnosis, NotFound, ServerError
from .inference import InferenceClient
from .models import SeverityLevel
from .pagination import PageParams, paginate

logger = logging.getLogger(__name__)


def most_severe(levels: Iterable[SeverityLevel]) -> Optional[SeverityLevel]:
    """Highest level by severity order; on ties the first one seen wins."""
    worst = None
    for level in levels:
        level = SeverityLevel(level)
        if worst is None or level.rank > worst.rank:
            worst = level
    return worst


def empty_severity_counts() -> Dict[str, int]:
    return {level.value: 0 for level in SeverityLevel}


async def run_both(first: Awaitable, second: Awaitable) -> Tuple[Any, Any]:
    """Await two calls concurrently; if either fails, cancel and drain the other before re-raising."""
    tasks = [asyncio.ensure_future(first), asyncio.ensure_future(second)]
    try:
        first_result, second_result = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return first_result, second_result


class Stage(enum.Enum):
    VALIDATING = "validating"
    AUTHORIZING = "authorizing"
    INFERRING = "inferring"
    MERGING = "merging"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


class DiagnosisOrchestrator:
    """Runs both models on a stored retinal image and records one Diagnosis.

    Nothing is written unless both models succeed; the diagnosis insert and
    the image's output-path update are committed together.
    """

    def __init__(self, db: Session, inference: InferenceClient):
        self.db = db
        self.inference = inference
        self.stage = Stage.VALIDATING
        self.failure: Optional[str] = None

    def _enter(self, stage: Stage, image_id: int) -> None:
        self.stage = stage
        logger.debug("diagnosis for image %s: %s", image_id, stage.value)

    async def create(self, user_id: int, retinal_image_id: int, notes: Optional[str] = None) -> models.Diagnosis:
        try:
            diagnosis = await self._run(user_id, retinal_image_id, notes)
        except Exception as exc:
            self.failure = str(exc)
            logger.warning("Diagnosis for image %s failed while %s: %s",
                           retinal_image_id, self.stage.value, exc)
            self.stage = Stage.FAILED
            raise
        self._enter(Stage.DONE, retinal_image_id)
        return diagnosis

    async def _run(self, user_id: int, image_id: int, notes: Optional[str]) -> models.Diagnosis:
        self._enter(Stage.VALIDATING, image_id)
        if self.db.get(models.RetinalImage, image_id) is None:
            raise NotFound("Retinal image not found.")
        # fast path only; the unique index on retinal_image_id is what enforces it
        if self.db.query(models.Diagnosis.id).filter(models.Diagnosis.retinal_image_id == image_id).first():
            raise DuplicateDiagnosis()

        self._enter(Stage.AUTHORIZING, image_id)
        image = ownership.require(self.db, user_id, ownership.ImageRef(image_id)).image

        self._enter(Stage.INFERRING, image_id)
        path = storage.local_path(image.original_image_path) or image.original_image_path
        detection, classification = await run_both(
            self.inference.detect(path),
            self.inference.classify(path),
        )

        self._enter(Stage.MERGING, image_id)
        diagnosis = models.Diagnosis(
            retinal_image_id=image_id,
            yolo_detections=detection.detections,
            severity_level=classification.severity_level,
            notes=notes or None,
        )

        self._enter(Stage.PERSISTING, image_id)
        image.yolo_output_path = detection.output_image
        self.db.add(diagnosis)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise DuplicateDiagnosis() from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise ServerError(f"Failed to create diagnosis: {exc}") from exc
        self.db.refresh(diagnosis)
        logger.info("Diagnosis %s created for image %s (severity=%s, detections=%d)",
                    diagnosis.id, image_id, diagnosis.severity_level.value, len(diagnosis.yolo_detections))
        return diagnosis


def _doctor_diagnoses(db: Session, doctor_id: int):
    return (
        db.query(models.Diagnosis)
        .join(models.RetinalImage, models.Diagnosis.retinal_image_id == models.RetinalImage.id)
        .join(models.Patient, models.RetinalImage.patient_id == models.Patient.id)
        .filter(models.Patient.doctor_id == doctor_id)
    )


def list_diagnoses(
    db: Session,
    doctor_id: int,
    params: PageParams,
    patient_id: Optional[int] = None,
    severity: Optional[SeverityLevel] = None,
):
    query = _doctor_diagnoses(db, doctor_id)
    if params.search:
        query = query.filter(models.Patient.name.ilike(f"%{params.search}%"))
    if patient_id is not None:
        query = query.filter(models.Patient.id == patient_id)
    if severity is not None:
        query = query.filter(models.Diagnosis.severity_level == severity)
    query = query.order_by(models.Diagnosis.diagnosed_at.desc(), models.Diagnosis.id.desc())
    return paginate(query, params)


def get_diagnosis(db: Session, user_id: int, diagnosis_id: int) -> models.Diagnosis:
    return ownership.require(db, user_id, ownership.DiagnosisRef(diagnosis_id)).diagnosis


def update_notes(db: Session, user_id: int, diagnosis_id: int, notes: Optional[str]) -> models.Diagnosis:
    diagnosis = get_diagnosis(db, user_id, diagnosis_id)
    if notes is not None:
        diagnosis.notes = notes
        db.commit()
        db.refresh(diagnosis)
    return diagnosis


def delete_diagnosis(db: Session, user_id: int, diagnosis_id: int) -> None:
    res = ownership.require(db, user_id, ownership.DiagnosisRef(diagnosis_id))
    image = res.image
    output_ref = image.yolo_output_path
    image.yolo_output_path = None
    db.query(models.Recommendation).filter(
        models.Recommendation.diagnosis_id == diagnosis_id
    ).delete(synchronize_session=False)
    db.delete(res.diagnosis)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise ServerError(f"Failed to delete diagnosis: {exc}") from exc
    logger.info("Diagnosis %s deleted by user %s", diagnosis_id, user_id)
    # files go only after the rows are gone
    if output_ref:
        storage.remove_file(output_ref)


def diagnoses_for_patient(db: Session, user_id: int, patient_id: int) -> List[models.Diagnosis]:
    ownership.require(db, user_id, ownership.PatientRef(patient_id))
    return (
        db.query(models.Diagnosis)
        .join(models.RetinalImage, models.Diagnosis.retinal_image_id == models.RetinalImage.id)
        .filter(models.RetinalImage.patient_id == patient_id)
        .order_by(models.Diagnosis.diagnosed_at.desc(), models.Diagnosis.id.desc())
        .all()
    )


def diagnosis_count(db: Session, doctor_id: int) -> int:
    return _doctor_diagnoses(db, doctor_id).count()


def diagnoses_by_severity(db: Session, doctor_id: int) -> Dict[str, int]:
    counts = empty_severity_counts()
    for (level,) in _doctor_diagnoses(db, doctor_id).with_entities(models.Diagnosis.severity_level):
        counts[SeverityLevel(level).value] += 1
    return counts


def patients_by_severity(db: Session, doctor_id: int) -> Dict[str, int]:
    """Count each patient once, at the most severe level across their images."""
    per_patient: Dict[int, List[SeverityLevel]] = {}
    rows = (
        _doctor_diagnoses(db, doctor_id)
        .with_entities(models.Patient.id, models.Diagnosis.severity_level)
        .order_by(models.Diagnosis.id)
    )
    for patient_id, level in rows:
        per_patient.setdefault(patient_id, []).append(level)

    counts = empty_severity_counts()
    for levels in per_patient.values():
        counts[most_severe(levels).value] += 1
    return counts


def recent_diagnoses(db: Session, doctor_id: int, limit: int = 5) -> List[dict]:
    rows = (
        _doctor_diagnoses(db, doctor_id)
        .with_entities(models.Diagnosis, models.Patient.name)
        .order_by(models.Diagnosis.diagnosed_at.desc(), models.Diagnosis.id.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": d.id,
            "patient_name": name or "Unknown",
            "severity_level": d.severity_level,
            "created_at": d.diagnosed_at,
        }
        for d, name in rows
    ]
