"""
Mood API Router

Endpoints for scoring conversational units, tracking conversations and
reading participant mood trajectories. Every score is returned with its
confidence.
"""

from dataclasses import asdict
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from moodscope.api.dependencies import get_mood_service
from moodscope.domain.deltas import DetectedDelta, DetectedPattern, DetectedTurningPoint
from moodscope.domain.trajectory import EmotionalBaseline
from moodscope.services.mood_service import MoodAnalysisService

router = APIRouter(prefix="/mood", tags=["mood"])


# Response Models
class FactorResponse(BaseModel):
    """One weighted factor of a mood score"""
    type: str
    weight: float = Field(description="Weight the factor carried in the combination")
    internal_score: Optional[float] = Field(description="Factor score on the 0-10 scale")
    description: Optional[str]
    evidence: List[str]

    class Config:
        from_attributes = True


class MoodScoreResponse(BaseModel):
    """Response model for a persisted mood score"""
    id: int
    memory_id: str
    score: float = Field(description="Mood score, 0 (very negative) to 10 (very positive)")
    confidence: float = Field(description="Confidence in the score, 0 to 1")
    descriptors: List[str]
    algorithm_version: str
    configuration_version: int
    processing_time_ms: int
    low_signal: bool = Field(description="True when the unit carried no mood evidence")
    calculated_at: datetime
    factors: List[FactorResponse]

    class Config:
        from_attributes = True


class DeltaRecordResponse(BaseModel):
    """Persisted mood delta"""
    id: int
    memory_id: str
    delta_sequence: Optional[int]
    previous_score: float
    current_score: float
    magnitude: float
    direction: str
    delta_type: str
    confidence: float
    significance: float
    factors: List[str]
    detected_at: datetime

    class Config:
        from_attributes = True


class TurningPointRecordResponse(BaseModel):
    """Persisted turning point"""
    id: int
    memory_id: str
    delta_id: Optional[int]
    timestamp: datetime
    type: str
    magnitude: float
    significance: float
    confidence: float

    class Config:
        from_attributes = True


class PatternRecordResponse(BaseModel):
    """Persisted delta pattern"""
    id: int
    pattern_type: str
    direction: str
    significance: float
    confidence: float
    duration_seconds: int
    average_magnitude: float

    class Config:
        from_attributes = True


class TrackingResponse(BaseModel):
    """Rows appended by one tracking pass"""
    conversation_id: str
    scored_units: List[str] = Field(description="Units scored during this pass")
    deltas: List[DeltaRecordResponse]
    turning_points: List[TurningPointRecordResponse]
    patterns: List[PatternRecordResponse]
    pending_deltas: int = Field(description="Trailing deltas held back until the conversation grows or concludes")


class ConversationResponse(BaseModel):
    """Persisted mood history of a conversation"""
    conversation_id: str
    deltas: List[DeltaRecordResponse]
    turning_points: List[TurningPointRecordResponse]
    patterns: List[PatternRecordResponse]


class TrajectoryPointResponse(BaseModel):
    unit_id: str
    score: float
    confidence: float
    timestamp: datetime


class TrajectoryDeltaResponse(BaseModel):
    unit_id: str
    previous_unit_id: str
    previous_score: float
    current_score: float
    magnitude: float
    direction: str
    type: str
    confidence: float
    significance: float
    factors: List[str]
    timestamp: datetime


class TrajectoryTurningPointResponse(BaseModel):
    unit_id: str
    type: str
    timestamp: datetime
    magnitude: float
    significance: float
    confidence: float
    merged_indices: List[int] = Field(description="Indices of deltas folded into this turning point")


class TrajectoryPatternResponse(BaseModel):
    pattern_type: str
    direction: str
    member_units: List[str]
    average_magnitude: float
    duration_seconds: int
    significance: float
    confidence: float


class PlateauResponse(BaseModel):
    average_score: float
    variance: float
    duration_seconds: int


class TransitionResponse(BaseModel):
    unit_id: str
    type: str
    magnitude: float
    velocity: float = Field(description="Score points per hour")
    direction: str
    timestamp: datetime


class BaselineResponse(BaseModel):
    """Baseline built from every point except the latest"""
    average: float
    minimum: float
    maximum: float
    volatility: float
    cyclical_tendency: str
    data_points: int
    confidence: float


class DeviationResponse(BaseModel):
    """Latest score against the baseline"""
    score: float
    magnitude: float
    z_score: float
    percentile_rank: float
    type: str
    level: str


class TrajectoryResponse(BaseModel):
    """Mood trajectory of one participant"""
    participant_id: str
    since: datetime
    points: List[TrajectoryPointResponse]
    deltas: List[TrajectoryDeltaResponse]
    key_deltas: List[TrajectoryDeltaResponse] = Field(description="Top deltas by significance then magnitude")
    turning_points: List[TrajectoryTurningPointResponse]
    patterns: List[TrajectoryPatternResponse]
    velocity: float = Field(description="Net score change per hour across the window")
    plateau: Optional[PlateauResponse]
    transitions: List[TransitionResponse]
    baseline: Optional[BaselineResponse]
    deviation: Optional[DeviationResponse]


def _delta_response(delta: DetectedDelta) -> TrajectoryDeltaResponse:
    return TrajectoryDeltaResponse(
        unit_id=delta.unit_id,
        previous_unit_id=delta.previous_unit_id,
        previous_score=delta.previous_score,
        current_score=delta.current_score,
        magnitude=delta.magnitude,
        direction=delta.direction.value,
        type=delta.type.value,
        confidence=delta.confidence,
        significance=delta.significance,
        factors=list(delta.factors),
        timestamp=delta.timestamp,
    )


def _turning_point_response(tp: DetectedTurningPoint) -> TrajectoryTurningPointResponse:
    return TrajectoryTurningPointResponse(
        unit_id=tp.delta.unit_id,
        type=tp.type.value,
        timestamp=tp.timestamp,
        magnitude=tp.magnitude,
        significance=tp.significance,
        confidence=tp.delta.confidence,
        merged_indices=list(tp.merged_indices),
    )


def _pattern_response(pattern: DetectedPattern) -> TrajectoryPatternResponse:
    return TrajectoryPatternResponse(
        pattern_type=pattern.pattern_type.value,
        direction=pattern.direction.value,
        member_units=[d.unit_id for d in pattern.members],
        average_magnitude=pattern.average_magnitude,
        duration_seconds=pattern.duration_seconds,
        significance=pattern.significance,
        confidence=pattern.confidence,
    )


def _baseline_response(baseline: Optional[EmotionalBaseline]) -> Optional[BaselineResponse]:
    if baseline is None:
        return None
    return BaselineResponse(
        average=baseline.average,
        minimum=baseline.minimum,
        maximum=baseline.maximum,
        volatility=baseline.volatility,
        cyclical_tendency=baseline.cyclical_tendency,
        data_points=baseline.data_points,
        confidence=baseline.confidence,
    )


@router.get("/units/{unit_id}", response_model=MoodScoreResponse)
async def get_unit_mood(unit_id: str, service: MoodAnalysisService = Depends(get_mood_service)):
    """Current mood score of a unit."""
    return MoodScoreResponse.model_validate(service.get_current_mood(unit_id))


@router.post("/units/{unit_id}/score", response_model=MoodScoreResponse)
async def score_unit(unit_id: str, service: MoodAnalysisService = Depends(get_mood_service)):
    """Score a unit with the active configuration and append the result."""
    return MoodScoreResponse.model_validate(service.score_unit(unit_id))


@router.post("/conversations/{conversation_id}/track", response_model=TrackingResponse)
async def track_conversation(
    conversation_id: str,
    concluded: bool = Query(False, description="The conversation has ended; persist its final quartile too"),
    service: MoodAnalysisService = Depends(get_mood_service),
):
    """Score unscored units and append newly settled deltas, turning points and patterns."""
    tracking = service.track_conversation(conversation_id, concluded=concluded)
    return TrackingResponse(
        conversation_id=conversation_id,
        scored_units=tracking.scored_units,
        deltas=[DeltaRecordResponse.model_validate(d) for d in tracking.deltas],
        turning_points=[TurningPointRecordResponse.model_validate(t) for t in tracking.turning_points],
        patterns=[PatternRecordResponse.model_validate(p) for p in tracking.patterns],
        pending_deltas=tracking.pending_deltas,
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(conversation_id: str, service: MoodAnalysisService = Depends(get_mood_service)):
    """Persisted mood history of a conversation."""
    summary = service.conversation_summary(conversation_id)
    return ConversationResponse(
        conversation_id=conversation_id,
        deltas=[DeltaRecordResponse.model_validate(d) for d in summary["deltas"]],
        turning_points=[TurningPointRecordResponse.model_validate(t) for t in summary["turning_points"]],
        patterns=[PatternRecordResponse.model_validate(p) for p in summary["patterns"]],
    )


@router.get("/participants/{participant_id}/trajectory", response_model=TrajectoryResponse)
async def get_trajectory(
    participant_id: str,
    hours: int = Query(168, ge=1, le=24 * 365, description="Look-back window in hours"),
    limit: int = Query(200, ge=2, le=1000, description="Maximum number of units"),
    service: MoodAnalysisService = Depends(get_mood_service),
):
    """Mood timeline of a participant, computed on demand."""
    since = datetime.utcnow() - timedelta(hours=hours)
    trajectory = service.get_trajectory(participant_id, since, limit=limit)
    return TrajectoryResponse(
        participant_id=participant_id,
        since=since,
        points=[
            TrajectoryPointResponse(
                unit_id=p.unit_id, score=p.score, confidence=p.confidence, timestamp=p.timestamp
            )
            for p in trajectory.points
        ],
        deltas=[_delta_response(d) for d in trajectory.deltas],
        key_deltas=[_delta_response(d) for d in trajectory.key_deltas],
        turning_points=[_turning_point_response(t) for t in trajectory.turning_points],
        patterns=[_pattern_response(p) for p in trajectory.patterns],
        velocity=trajectory.velocity,
        plateau=PlateauResponse(**asdict(trajectory.plateau)) if trajectory.plateau else None,
        transitions=[
            TransitionResponse(**{**asdict(t), "type": t.type.value}) for t in trajectory.transitions
        ],
        baseline=_baseline_response(trajectory.baseline),
        deviation=(
            DeviationResponse(**{**asdict(trajectory.deviation), "type": trajectory.deviation.type.value})
            if trajectory.deviation
            else None
        ),
    )
