"""
Scheduled calibration cycle.

Reads the recent complete validation window, asks the controller whether a
cycle is due, and runs it. The controller commits the cycle's history entries
before it publishes a new configuration; a failed commit surfaces as
DatabaseError and the scheduler retries on the next interval.
"""

from typing import Optional

from moodscope.db.repositories import CalibrationHistoryRepository, ValidationRepository
from moodscope.db.session import get_db_transaction
from moodscope.log_config import logger
from moodscope.services.calibration_controller import (
    CalibrationController,
    CycleResult,
    OutcomeSource,
    shared_configuration_store,
)
from moodscope.services.validation_engine import outcome_from_row


def run_calibration_cycle(outcomes: Optional[OutcomeSource] = None) -> Optional[CycleResult]:
    """
    Run one calibration cycle if the trigger conditions hold.

    Returns:
        CycleResult, or None when no cycle was due
    """
    with get_db_transaction() as db:
        store = shared_configuration_store(db)
        controller = CalibrationController(store, CalibrationHistoryRepository(db), outcomes=outcomes)

        rows = ValidationRepository(db).recent(controller.config.window_size, complete_only=True)
        window = [outcome_from_row(row) for row in rows]

        if not controller.should_trigger(len(window)):
            logger.info(f"Calibration not due ({len(window)} complete validations in window)")
            return None

        scheduled = len(window) < controller.config.min_sample_size
        result = controller.run_cycle(window, scheduled=scheduled)
        logger.info(
            f"Calibration cycle {result.cycle_id} finished: {result.outcome.value} "
            f"(configuration version {result.configuration.version})"
        )
        return result


if __name__ == "__main__":
    run_calibration_cycle()
