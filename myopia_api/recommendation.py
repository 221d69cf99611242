# backend/myopia_api/recommendation.py
import logging
from collections.abc import Mapping
from typing import Any, Callable, List, Optional

from fastapi import Depends
from fastapi.concurrency import run_in_threadpool
from google import genai
from sqlalchemy.orm import Session

from . import config, models, ownership
from .deps import get_current_doctor
from .errors import Forbidden, ServerError

logger = logging.getLogger(__name__)

FALLBACK_TEXT = "No recommendation generated."
MAX_RECOMMENDATION_LENGTH = 1000

SYSTEM_ROLE = (
    "You are a medical AI assistant specializing in ophthalmology. Based on the following "
    "diagnosis for pathological myopia, provide a concise, professional recommendation for "
    "treatment, follow-up, or further evaluation. Use clear, actionable language suitable for a doctor."
)


class TextGenerator:
    """Thin wrapper over the Gemini client so routes can swap it out."""

    def __init__(self, api_key: str, model: str = config.GEMINI_MODEL):
        self.model = model
        self.client = genai.Client(api_key=api_key)

    def generate(self, prompt: str) -> Any:
        return self.client.models.generate_content(model=self.model, contents=prompt)


def get_text_generator(current: models.User = Depends(get_current_doctor)) -> TextGenerator:
    # the role check resolves first, so non-doctors get 403 even without a key
    api_key = config.GEMINI_API_KEY
    if not api_key:
        raise ServerError("GenAI API key not configured")
    return TextGenerator(api_key)


# ---- response shapes -------------------------------------------------------

def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(name)
    try:
        return getattr(obj, name, None)
    except ValueError:
        # genai raises on .text for responses without usable candidates
        return None


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _top_level_text(response: Any) -> Optional[str]:
    return _as_text(_field(response, "text"))


def _nested_response_text(response: Any) -> Optional[str]:
    inner = _field(response, "response")
    return _as_text(_field(inner, "text")) if inner is not None else None


SHAPE_MATCHERS: List[Callable[[Any], Optional[str]]] = [
    _top_level_text,
    _nested_response_text,
]


def extract_text(response: Any) -> str:
    """First text found by SHAPE_MATCHERS, in order, else FALLBACK_TEXT."""
    if response is not None:
        for matcher in SHAPE_MATCHERS:
            text = matcher(response)
            if text:
                return text
    logger.error("Failed to extract text from generation response: %r", response)
    return FALLBACK_TEXT


# ---- prompt ----------------------------------------------------------------

def describe_detection(d: dict) -> str:
    box = d.get("boundingBox") or {}
    return (
        f"Label: {d.get('label')}, Confidence: {d.get('confidence')}, "
        f"Bounding Box: [x: {box.get('x')}, y: {box.get('y')}, "
        f"w: {box.get('width')}, h: {box.get('height')}]"
    )


def build_prompt(diagnosis: models.Diagnosis) -> str:
    severity = diagnosis.severity_level.value if diagnosis.severity_level else None
    detection_summary = "; ".join(describe_detection(d) for d in diagnosis.yolo_detections or [])
    return f"""
{SYSTEM_ROLE}

Diagnosis Details:
- Severity Level: {severity or "Not specified"}
- YOLO Detections: {detection_summary or "None"}
- Doctor's Notes: {diagnosis.notes or "None"}

Recommendation:
"""


class RecommendationGenerator:
    def __init__(self, db: Session, text_generator: TextGenerator):
        self.db = db
        self.text_generator = text_generator

    async def generate(self, diagnosis_id: int, user: models.User) -> models.Recommendation:
        if user.role != models.Role.doctor:
            raise Forbidden("Access denied: Doctors only")

        res = ownership.require(self.db, user.id, ownership.DiagnosisRef(diagnosis_id))
        prompt = build_prompt(res.diagnosis)

        logger.info("Requesting recommendation for diagnosis %s", diagnosis_id)
        try:
            response = await run_in_threadpool(self.text_generator.generate, prompt)
        except Exception as exc:
            logger.exception("Text generation failed for diagnosis %s", diagnosis_id)
            raise ServerError("Server error while generating recommendation") from exc

        text = extract_text(response)[:MAX_RECOMMENDATION_LENGTH]
        recommendation = models.Recommendation(
            diagnosis_id=diagnosis_id,
            patient_id=res.image.patient_id,
            recommendation_text=text,
            created_by=user.id,
        )
        self.db.add(recommendation)
        self.db.commit()
        self.db.refresh(recommendation)
        return recommendation


def recommendations_for_diagnosis(db: Session, user_id: int, diagnosis_id: int) -> List[models.Recommendation]:
    ownership.require(db, user_id, ownership.DiagnosisRef(diagnosis_id))
    return (
        db.query(models.Recommendation)
        .filter(models.Recommendation.diagnosis_id == diagnosis_id)
        .order_by(models.Recommendation.created_at.desc(), models.Recommendation.id.desc())
        .all()
    )
