# backend/myopia_api/recommendations.py
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from . import database, schemas
from .deps import get_current_doctor, get_current_user
from .pagination import dump
from .recommendation import (
    RecommendationGenerator,
    TextGenerator,
    get_text_generator,
    recommendations_for_diagnosis,
)

router = APIRouter(prefix="/api/recommendations", tags=["recommendations"])


@router.post("/", status_code=status.HTTP_201_CREATED)
async def generate_recommendation(
    payload: schemas.RecommendationCreate,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_doctor),
    text_generator: TextGenerator = Depends(get_text_generator),
):
    generator = RecommendationGenerator(db, text_generator)
    recommendation = await generator.generate(payload.diagnosis_id, current)
    return {
        "message": "Recommendation generated successfully",
        "data": dump(schemas.RecommendationOut, recommendation),
    }


@router.get("/diagnosis/{diagnosis_id}")
def list_recommendations(
    diagnosis_id: int,
    db: Session = Depends(database.get_db),
    current = Depends(get_current_user),
):
    rows = recommendations_for_diagnosis(db, current.id, diagnosis_id)
    return {
        "message": "Recommendations retrieved successfully.",
        "data": [dump(schemas.RecommendationOut, r) for r in rows],
    }
