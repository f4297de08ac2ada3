"""
Tests for the scheduled calibration job and its registration.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError

from moodscope.db.repositories import CalibrationHistoryRepository, ValidationRepository
from moodscope.jobs import calibration_job, scheduler
from moodscope.services.calibration_controller import (
    CycleOutcome,
    ScriptedOutcomes,
    shared_configuration_store,
)
from moodscope.utils.errors import DatabaseError

from tests.conftest import SCENARIO_C_FACTORS


@pytest.fixture
def job_session(db_session):
    """Route the job's transaction to the isolated test session."""

    @contextmanager
    def transaction():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    with patch.object(calibration_job, "get_db_transaction", transaction):
        yield db_session


def seed_validations(make_unit, db_session, count):
    repo = ValidationRepository(db_session)
    start = datetime(2026, 3, 1, 9, 0, 0)
    for i in range(count):
        make_unit(f"s-{i}", ["I am happy"], timestamp=start + timedelta(minutes=i))
        repo.create(
            memory_id=f"s-{i}",
            human_score=2.8,
            algorithm_score=7.3,
            algorithm_confidence=0.7,
            agreement=0.55,
            discrepancy=0.45,
            incomplete=False,
            validator_id="rater-1",
            validation_method="manual_rating",
            factor_scores=SCENARIO_C_FACTORS,
            validated_at=start + timedelta(minutes=i),
        )
    db_session.commit()


class TestCalibrationJob:
    def test_not_due_without_samples(self, job_session):
        assert calibration_job.run_calibration_cycle() is None

    def test_full_window_runs_cycle(self, job_session, make_unit):
        seed_validations(make_unit, job_session, 20)

        result = calibration_job.run_calibration_cycle()

        assert result.outcome == CycleOutcome.APPLIED
        assert shared_configuration_store(job_session).current().version == 2
        assert CalibrationHistoryRepository(job_session).latest().status == "applied"

    def test_scheduled_window_runs_cycle(self, job_session, make_unit):
        seed_validations(make_unit, job_session, 6)
        result = calibration_job.run_calibration_cycle()
        assert result.outcome == CycleOutcome.APPLIED

    def test_failed_application_leaves_retry(self, job_session, make_unit):
        seed_validations(make_unit, job_session, 20)

        result = calibration_job.run_calibration_cycle(outcomes=ScriptedOutcomes([False]))

        assert result.outcome == CycleOutcome.ROLLED_BACK
        latest = CalibrationHistoryRepository(job_session).latest()
        assert latest.performance_metrics["retry_pending"] is True
        assert shared_configuration_store(job_session).current().version == 1

    def test_failed_commit_keeps_configuration(self, job_session, make_unit, monkeypatch):
        seed_validations(make_unit, job_session, 20)

        def failing_commit():
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(job_session, "commit", failing_commit)
        with pytest.raises(DatabaseError):
            calibration_job.run_calibration_cycle()
        monkeypatch.undo()

        assert shared_configuration_store(job_session).current().version == 1
        assert CalibrationHistoryRepository(job_session).latest() is None


class TestScheduler:
    def test_register_jobs(self):
        target = AsyncIOScheduler()
        scheduler.register_jobs(target)

        job = target.get_job(scheduler.CALIBRATION_JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True

    def test_scheduled_run_logs_domain_failures(self):
        with patch.object(scheduler, "run_calibration_cycle", side_effect=DatabaseError("locked")) as run:
            scheduler.run_scheduled_calibration()
        run.assert_called_once()

    def test_stop_scheduler_when_not_running(self):
        scheduler.stop_scheduler()
        assert not scheduler.scheduler.running
