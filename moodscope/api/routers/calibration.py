"""
Calibration API Router

Read the active scoring configuration and the calibration audit log, run a
cycle on demand, resolve cycles held for manual review, and roll back.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from moodscope.api.dependencies import get_calibration_controller, get_config_store, get_db
from moodscope.db.repositories import CalibrationHistoryRepository, ValidationRepository
from moodscope.domain.configuration import ConfigurationStore
from moodscope.services.calibration_controller import (
    CalibrationController,
    CycleResult,
    ReviewDecision,
)
from moodscope.services.validation_engine import outcome_from_row

router = APIRouter(prefix="/calibration", tags=["calibration"])


class ConfigurationResponse(BaseModel):
    """Active scoring configuration"""
    version: int
    weights: Dict[str, float] = Field(description="Factor weights, summing to 1")
    confidence_ceiling: float


class CalibrationEntryResponse(BaseModel):
    """One calibration audit log entry"""
    calibration_id: str
    cycle_id: str
    adjustment_type: str
    target_component: str
    previous_value: Optional[Dict[str, Any]]
    new_value: Optional[Dict[str, Any]]
    performance_metrics: Dict[str, Any]
    status: str
    reason: Optional[str]
    applied_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class CycleResponse(BaseModel):
    """Outcome of one calibration cycle"""
    cycle_id: str
    outcome: str
    reason: str
    metrics: Dict[str, Any]
    configuration: ConfigurationResponse
    entries: List[CalibrationEntryResponse]


class ResolveRequest(BaseModel):
    decision: ReviewDecision


def _cycle_response(result: CycleResult) -> CycleResponse:
    return CycleResponse(
        cycle_id=result.cycle_id,
        outcome=result.outcome.value,
        reason=result.reason,
        metrics=result.metrics.to_dict(),
        configuration=ConfigurationResponse(**result.configuration.to_dict()),
        entries=[CalibrationEntryResponse.model_validate(e) for e in result.entries],
    )


@router.get("/configuration", response_model=ConfigurationResponse)
async def get_configuration(store: ConfigurationStore = Depends(get_config_store)):
    """Scoring configuration currently used by the scorer."""
    return ConfigurationResponse(**store.current().to_dict())


@router.get("/history", response_model=List[CalibrationEntryResponse])
async def get_history(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Calibration audit log, newest first."""
    entries = CalibrationHistoryRepository(db).get_all(limit=limit, offset=offset)
    return [CalibrationEntryResponse.model_validate(e) for e in entries]


@router.post("/run", response_model=CycleResponse)
async def run_calibration(
    db: Session = Depends(get_db),
    controller: CalibrationController = Depends(get_calibration_controller),
):
    """Run one calibration cycle over the recent complete validations."""
    rows = ValidationRepository(db).recent(controller.config.window_size, complete_only=True)
    window = [outcome_from_row(row) for row in rows]
    scheduled = len(window) < controller.config.min_sample_size
    result = controller.run_cycle(window, scheduled=scheduled)
    return _cycle_response(result)


@router.post("/cycles/{cycle_id}/resolve", response_model=CycleResponse)
async def resolve_cycle(
    cycle_id: str,
    request: ResolveRequest,
    controller: CalibrationController = Depends(get_calibration_controller),
):
    """Apply or close a cycle that was held for manual review."""
    result = controller.resolve_review(cycle_id, request.decision)
    return _cycle_response(result)


@router.post("/rollback", response_model=CycleResponse)
async def rollback_configuration(
    controller: CalibrationController = Depends(get_calibration_controller),
):
    """Restore the configuration that was active before the current one."""
    result = controller.rollback_last()
    return _cycle_response(result)
