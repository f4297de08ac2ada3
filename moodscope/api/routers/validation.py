"""
Validation API Router

Records human judgments of a unit's mood against the algorithm's score.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from moodscope.api.dependencies import get_mood_service
from moodscope.services.mood_service import MoodAnalysisService

router = APIRouter(prefix="/validation", tags=["validation"])


class ValidationRequest(BaseModel):
    """Human judgment of one unit"""
    human_score: Optional[float] = Field(
        default=None, description="Human mood rating 0-10; omit to record an incomplete validation"
    )
    validator_id: str = Field(min_length=1)
    method: str = Field(default="manual_rating", description="How the judgment was obtained")


class ValidationResponse(BaseModel):
    """Response model for a stored validation result"""
    id: int
    memory_id: str
    mood_score_id: Optional[int]
    human_score: Optional[float]
    algorithm_score: float
    algorithm_confidence: Optional[float]
    agreement: Optional[float] = Field(description="1 - |algorithm - human| / 10")
    discrepancy: Optional[float]
    incomplete: bool
    validator_id: str
    validation_method: str
    bias_indicators: Dict[str, Any]
    accuracy_metrics: Dict[str, Any]
    validated_at: datetime

    class Config:
        from_attributes = True


@router.post("/units/{unit_id}", response_model=ValidationResponse)
async def validate_unit(
    unit_id: str,
    request: ValidationRequest,
    service: MoodAnalysisService = Depends(get_mood_service),
):
    """Compare the unit's current score with a human judgment."""
    row = service.record_validation(
        unit_id,
        human_score=request.human_score,
        validator_id=request.validator_id,
        method=request.method,
    )
    return ValidationResponse.model_validate(row)
