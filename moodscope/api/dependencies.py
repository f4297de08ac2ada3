"""FastAPI dependencies"""
from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from moodscope.db.repositories import CalibrationHistoryRepository
from moodscope.db.session import close_db_session, get_db as get_db_session
from moodscope.domain.configuration import ConfigurationStore
from moodscope.domain.scoring import MoodScorer
from moodscope.services.calibration_controller import (
    AlwaysSucceeds,
    CalibrationController,
    OutcomeSource,
    shared_configuration_store,
)
from moodscope.services.mood_service import MoodAnalysisService


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = get_db_session()
    try:
        yield db
    finally:
        close_db_session(db)


def get_config_store(db: Session = Depends(get_db)) -> ConfigurationStore:
    """Process-wide scoring configuration store"""
    return shared_configuration_store(db)


def get_outcome_source() -> OutcomeSource:
    return AlwaysSucceeds()


def get_mood_service(
    db: Session = Depends(get_db),
    store: ConfigurationStore = Depends(get_config_store),
) -> MoodAnalysisService:
    """Mood service whose scorer reads the shared configuration"""
    return MoodAnalysisService(db, scorer=MoodScorer(config_source=store))


def get_calibration_controller(
    db: Session = Depends(get_db),
    store: ConfigurationStore = Depends(get_config_store),
    outcomes: OutcomeSource = Depends(get_outcome_source),
) -> CalibrationController:
    return CalibrationController(store, CalibrationHistoryRepository(db), outcomes=outcomes)
