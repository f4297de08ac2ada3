"""
Adaptive calibration of mood scoring weights from validation feedback.

One calibration cycle walks the state machine

    Idle -> Proposing -> Validating -> Applying -> {Applied | RolledBack}

and appends a CalibrationHistory entry for every proposed, applied, rejected
and rolled back transition. Cycles are serialized on the configuration
store's cycle lock; concurrent callers wait their turn.

The controller owns the transaction of its history entries. A cycle commits
them first and only then publishes the new configuration to the store, so
scorers never see weights without an applied entry behind them.

Decision bands on window agreement:
- below auto_reject_threshold: record a proposal flagged for manual review
- between the thresholds: propose a bounded gradient step on the weights
- at or above auto_approve_threshold: no adjustment

Whether an application attempt succeeds comes from an injected OutcomeSource.
Production uses AlwaysSucceeds; tests script exact success/failure sequences.
"""

import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from moodscope.config import settings
from moodscope.db.models import CalibrationHistory
from moodscope.db.repositories import CalibrationHistoryRepository
from moodscope.domain.configuration import (
    WEIGHT_SUM,
    ConfigurationStore,
    ScoringConfiguration,
    validate_weights,
)
from moodscope.log_config import get_logger, logger
from moodscope.services.validation_engine import (
    SCORE_RANGE,
    ValidationEngine,
    ValidationOutcome,
    WindowMetrics,
)
from moodscope.utils.errors import (
    CalibrationApplicationFailure,
    CalibrationRejected,
    ConfigurationError,
    DatabaseError,
    ValidationError,
)

audit_log = get_logger("moodscope.calibration")

TARGET_COMPONENT = "mood_scorer"
MIN_CONFIDENCE_CEILING = 0.5

# Makes a cycle's configuration live once its history entries are committed
Activation = Callable[[], ScoringConfiguration]


class CalibrationState(str, Enum):
    IDLE = "idle"
    PROPOSING = "proposing"
    VALIDATING = "validating"
    APPLYING = "applying"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"


class CalibrationStatus(str, Enum):
    PROPOSED = "proposed"
    APPLIED = "applied"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"


class CycleOutcome(str, Enum):
    SKIPPED = "skipped"
    NO_ADJUSTMENT = "no_adjustment"
    REVIEW_REQUIRED = "review_required"
    REJECTED = "rejected"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"


class ReviewDecision(str, Enum):
    APPLY = "apply"
    ROLLBACK = "rollback"


# ============================================================================
# Application outcome sources
# ============================================================================

class OutcomeSource(Protocol):
    def attempt_succeeds(self) -> bool:
        ...


class AlwaysSucceeds:
    """Production outcome source."""

    def attempt_succeeds(self) -> bool:
        return True


class ScriptedOutcomes:
    """Replays a fixed success/failure sequence."""

    def __init__(self, outcomes: Sequence[bool]):
        self._outcomes = list(outcomes)
        self._lock = threading.Lock()

    def attempt_succeeds(self) -> bool:
        with self._lock:
            if not self._outcomes:
                raise LookupError("Scripted outcome sequence exhausted")
            return self._outcomes.pop(0)

    @property
    def remaining(self) -> int:
        return len(self._outcomes)


class RandomOutcomes:
    """Succeeds with a fixed probability drawn from an injected generator."""

    def __init__(self, success_probability: float, rng: Optional[random.Random] = None):
        if not 0.0 <= success_probability <= 1.0:
            raise ValueError("success_probability must be within [0, 1]")
        self.success_probability = success_probability
        self.rng = rng or random.Random()

    def attempt_succeeds(self) -> bool:
        return self.rng.random() < self.success_probability


# ============================================================================
# Controller
# ============================================================================

@dataclass(frozen=True)
class CalibrationConfig:
    window_size: int
    min_sample_size: int
    scheduled_min_samples: int
    interval: timedelta
    auto_reject_threshold: float
    auto_approve_threshold: float
    max_weight_step: float
    learning_rate: float
    epsilon: float
    apply_timeout_seconds: float
    overconfidence_rate: float
    min_high_confidence_samples: int
    confidence_ceiling_step: float

    @classmethod
    def from_settings(cls) -> "CalibrationConfig":
        return cls(
            window_size=settings.validation_window_size,
            min_sample_size=settings.calibration_min_sample_size,
            scheduled_min_samples=settings.calibration_scheduled_min_samples,
            interval=timedelta(minutes=settings.calibration_interval_minutes),
            auto_reject_threshold=settings.auto_reject_threshold,
            auto_approve_threshold=settings.auto_approve_threshold,
            max_weight_step=settings.max_weight_step,
            learning_rate=settings.calibration_learning_rate,
            epsilon=settings.calibration_epsilon,
            apply_timeout_seconds=settings.calibration_apply_timeout_seconds,
            overconfidence_rate=settings.overconfidence_rate,
            min_high_confidence_samples=settings.calibration_scheduled_min_samples,
            confidence_ceiling_step=settings.confidence_ceiling_step,
        )


@dataclass(frozen=True)
class Proposal:
    """Candidate weights and ceiling; may be invalid until validated."""

    weights: Mapping[str, float]
    confidence_ceiling: float

    def to_dict(self) -> Dict[str, Any]:
        return {"weights": dict(self.weights), "confidence_ceiling": self.confidence_ceiling}


@dataclass
class CycleResult:
    cycle_id: str
    outcome: CycleOutcome
    metrics: WindowMetrics
    configuration: ScoringConfiguration
    proposal: Optional[Proposal] = None
    reason: str = ""
    entries: List[CalibrationHistory] = field(default_factory=list)


def backtest_agreement(
    window: Sequence[ValidationOutcome], weights: Mapping[str, float]
) -> Optional[float]:
    """
    Mean agreement the window would have had under weights.

    Each result is rescored from its stored factor scores. Results without
    factor scores keep their recorded algorithm score.
    """
    agreements = []
    for result in window:
        if result.human_score is None:
            continue
        present = {t: s for t, s in result.factor_scores.items() if t in weights}
        total = sum(weights[t] for t in present)
        if present and total > 0:
            score = sum(s * weights[t] for t, s in present.items()) / total
        else:
            score = result.algorithm_score
        agreements.append(1.0 - abs(result.human_score - score) / SCORE_RANGE)
    if not agreements:
        return None
    return sum(agreements) / len(agreements)


class CalibrationController:
    """
    Closes the feedback loop from validation results to scoring weights.

    Args:
        store: Configuration store shared with the scorers
        history: Calibration audit log repository
        engine: Validation aggregation
        config: Thresholds and bounds
        outcomes: Source deciding whether an application attempt succeeds
        clock: Monotonic clock used for the application timeout
        now: Wall clock used for trigger intervals and history timestamps
    """

    def __init__(
        self,
        store: ConfigurationStore,
        history: CalibrationHistoryRepository,
        engine: Optional[ValidationEngine] = None,
        config: Optional[CalibrationConfig] = None,
        outcomes: Optional[OutcomeSource] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.history = history
        self.engine = engine or ValidationEngine()
        self.config = config or CalibrationConfig.from_settings()
        self.outcomes = outcomes or AlwaysSucceeds()
        self._clock = clock
        self._now = now
        self._state = CalibrationState.IDLE

    @property
    def state(self) -> CalibrationState:
        return self._state

    def current_configuration(self) -> ScoringConfiguration:
        return self.store.current()

    def should_trigger(self, sample_count: int, now: Optional[datetime] = None) -> bool:
        """
        True when the window is large enough, a failed application awaits
        retry, or the scheduled interval has elapsed.
        """
        if sample_count >= self.config.min_sample_size:
            return True
        if sample_count < self.config.scheduled_min_samples:
            return False

        latest = self.history.latest()
        if latest is None:
            return True
        if (latest.performance_metrics or {}).get("retry_pending"):
            return True
        now = now or self._now()
        return now - latest.created_at >= self.config.interval

    def run_cycle(
        self, window: Sequence[ValidationOutcome], scheduled: bool = False
    ) -> CycleResult:
        """
        Run one calibration cycle over a window of validation results.

        Args:
            window: Validation results, oldest first. Incomplete ones are ignored
                and only the most recent window_size are used.
            scheduled: Apply the scheduled-trigger sample minimum instead of
                the regular one

        Returns:
            CycleResult describing what happened

        Raises:
            DatabaseError: If the cycle's history entries cannot be committed;
                the active configuration is left unchanged
        """
        with self.store.cycle_lock:
            return self._finish(*self._run_cycle(window, scheduled))

    def _run_cycle(
        self, window: Sequence[ValidationOutcome], scheduled: bool
    ) -> Tuple[CycleResult, Optional[Activation]]:
        cycle_id = f"cycle-{uuid.uuid4().hex[:16]}"
        complete = ValidationEngine.complete_only(window)[-self.config.window_size:]
        current = self.store.current()
        minimum = self.config.scheduled_min_samples if scheduled else self.config.min_sample_size

        if len(complete) < max(1, minimum):
            logger.info(
                f"Calibration skipped: {len(complete)} complete validations, need {minimum}"
            )
            return CycleResult(cycle_id, CycleOutcome.SKIPPED, WindowMetrics.empty(), current), None

        self._transition(CalibrationState.PROPOSING, cycle_id)
        metrics = self.engine.aggregate(complete)
        agreement = metrics.mean_agreement

        if agreement >= self.config.auto_approve_threshold:
            logger.info(f"Calibration {cycle_id}: agreement {agreement:.3f} needs no adjustment")
            return CycleResult(cycle_id, CycleOutcome.NO_ADJUSTMENT, metrics, current), None

        proposal = self.propose(current, metrics)

        if agreement < self.config.auto_reject_threshold:
            entry = self._record(
                cycle_id,
                CalibrationStatus.PROPOSED,
                adjustment_type="manual_review",
                previous=current.to_dict(),
                new=proposal.to_dict(),
                metrics=metrics,
                extra={"requires_review": True},
                reason=f"Agreement {agreement:.3f} below review threshold",
            )
            logger.warning(f"Calibration {cycle_id} flagged for manual review (agreement {agreement:.3f})")
            result = CycleResult(
                cycle_id, CycleOutcome.REVIEW_REQUIRED, metrics, current, proposal,
                reason=entry.reason, entries=[entry],
            )
            return result, None

        adjustment_type = self._adjustment_type(current, proposal)
        proposed_entry = self._record(
            cycle_id,
            CalibrationStatus.PROPOSED,
            adjustment_type=adjustment_type,
            previous=current.to_dict(),
            new=proposal.to_dict(),
            metrics=metrics,
        )

        self._transition(CalibrationState.VALIDATING, cycle_id)
        try:
            self._check_safety(current, proposal, complete)
        except CalibrationRejected as e:
            rejected_entry = self._record(
                cycle_id,
                CalibrationStatus.REJECTED,
                adjustment_type=adjustment_type,
                previous=current.to_dict(),
                new=proposal.to_dict(),
                metrics=metrics,
                extra=e.details,
                reason=e.message,
            )
            logger.info(f"Calibration {cycle_id} rejected: {e.message}")
            result = CycleResult(
                cycle_id, CycleOutcome.REJECTED, metrics, current, proposal,
                reason=e.message, entries=[proposed_entry, rejected_entry],
            )
            return result, None

        result, activation = self._apply(cycle_id, current, proposal, metrics, adjustment_type)
        result.entries.insert(0, proposed_entry)
        return result, activation

    def propose(self, current: ScoringConfiguration, metrics: WindowMetrics) -> Proposal:
        """
        Bounded gradient step on the weights, plus a confidence ceiling cut
        when high-confidence results keep missing badly.

        Each raw step is -learning_rate * factor_bias, clipped to the step cap.
        Steps are centered so the weight sum is unchanged, then scaled down
        uniformly if centering pushed any step past the cap.
        """
        step_cap = self.config.max_weight_step
        factor_types = list(current.weights.keys())
        raw = {
            t: max(-step_cap, min(step_cap, -self.config.learning_rate * metrics.factor_bias.get(t, 0.0)))
            for t in factor_types
        }
        mean_step = sum(raw.values()) / len(raw)
        centered = {t: s - mean_step for t, s in raw.items()}
        largest = max(abs(s) for s in centered.values())
        scale = step_cap / largest if largest > step_cap else 1.0

        weights = {t: current.weights[t] + centered[t] * scale for t in factor_types}
        total = sum(weights.values())
        if total > 0:
            weights = {t: w * WEIGHT_SUM / total for t, w in weights.items()}

        ceiling = current.confidence_ceiling
        if (
            metrics.overconfidence_rate is not None
            and metrics.high_confidence_count >= self.config.min_high_confidence_samples
            and metrics.overconfidence_rate > self.config.overconfidence_rate
        ):
            ceiling = max(MIN_CONFIDENCE_CEILING, ceiling - self.config.confidence_ceiling_step)

        return Proposal(weights=weights, confidence_ceiling=ceiling)

    def resolve_review(self, cycle_id: str, decision: ReviewDecision) -> CycleResult:
        """
        Human override for a cycle flagged for manual review.

        APPLY publishes the stored proposal after bounds checks; ROLLBACK
        closes the cycle without touching the active configuration.

        Raises:
            ValidationError: If the cycle is unknown or not awaiting review
        """
        with self.store.cycle_lock:
            return self._finish(*self._resolve_review(cycle_id, decision))

    def _resolve_review(
        self, cycle_id: str, decision: ReviewDecision
    ) -> Tuple[CycleResult, Optional[Activation]]:
        entries = self.history.for_cycle(cycle_id)
        if not entries:
            raise ValidationError(f"Calibration cycle {cycle_id} not found", details={"cycle_id": cycle_id})

        review = entries[0]
        if review.adjustment_type != "manual_review" or len(entries) > 1:
            raise ValidationError(
                f"Calibration cycle {cycle_id} is not awaiting review",
                details={"cycle_id": cycle_id, "statuses": [e.status for e in entries]},
            )

        current = self.store.current()
        metrics = WindowMetrics.empty()
        reviewed = dict(review.performance_metrics or {})

        if decision == ReviewDecision.ROLLBACK:
            entry = self._record(
                cycle_id,
                CalibrationStatus.ROLLED_BACK,
                adjustment_type="manual_review",
                previous=current.to_dict(),
                new=current.to_dict(),
                metrics=metrics,
                extra={"reviewed_metrics": reviewed},
                reason="Closed by reviewer without applying",
            )
            return CycleResult(cycle_id, CycleOutcome.ROLLED_BACK, metrics, current, entries=[entry]), None

        proposal = Proposal(
            weights=review.new_value["weights"],
            confidence_ceiling=review.new_value.get("confidence_ceiling", current.confidence_ceiling),
        )
        self._transition(CalibrationState.VALIDATING, cycle_id)
        try:
            self._check_bounds(proposal)
        except CalibrationRejected as e:
            entry = self._record(
                cycle_id,
                CalibrationStatus.REJECTED,
                adjustment_type="manual_override",
                previous=current.to_dict(),
                new=proposal.to_dict(),
                metrics=metrics,
                extra=e.details,
                reason=e.message,
            )
            result = CycleResult(
                cycle_id, CycleOutcome.REJECTED, metrics, current, proposal,
                reason=e.message, entries=[entry],
            )
            return result, None
        return self._apply(cycle_id, current, proposal, metrics, "manual_override")

    def rollback_last(self) -> CycleResult:
        """
        Restore the weight set applied before the current one.

        The restored weights are reissued under the next version number.

        Raises:
            ConfigurationError: If no earlier configuration is held
        """
        with self.store.cycle_lock:
            cycle_id = f"cycle-{uuid.uuid4().hex[:16]}"
            current = self.store.current()
            restored = self.store.restore_candidate()
            entry = self._record(
                cycle_id,
                CalibrationStatus.ROLLED_BACK,
                adjustment_type="manual_rollback",
                previous=current.to_dict(),
                new=restored.to_dict(),
                metrics=WindowMetrics.empty(),
                reason="Manual rollback to previous configuration",
            )
            result = CycleResult(
                cycle_id, CycleOutcome.ROLLED_BACK, WindowMetrics.empty(), restored, entries=[entry]
            )
            return self._finish(result, self.store.restore_previous)

    # ------------------------------------------------------------------

    def _check_bounds(self, proposal: Proposal) -> None:
        try:
            validate_weights(proposal.weights)
        except ConfigurationError as e:
            raise CalibrationRejected(f"Proposal outside safety bounds: {e.message}", details=e.details)

    def _check_safety(
        self,
        current: ScoringConfiguration,
        proposal: Proposal,
        window: Sequence[ValidationOutcome],
    ) -> None:
        self._check_bounds(proposal)

        before = backtest_agreement(window, current.weights)
        after = backtest_agreement(window, proposal.weights)
        change = (after or 0.0) - (before or 0.0)
        ceiling_changed = proposal.confidence_ceiling != current.confidence_ceiling
        details = {"backtest_before": before, "backtest_after": after}

        if abs(change) < self.config.epsilon and not ceiling_changed:
            raise CalibrationRejected(
                f"Back-tested agreement change {change:.6f} is below epsilon", details=details
            )
        if change < 0:
            raise CalibrationRejected(
                f"Back-tested agreement drops by {-change:.6f}", details=details
            )

    def _apply(
        self,
        cycle_id: str,
        current: ScoringConfiguration,
        proposal: Proposal,
        metrics: WindowMetrics,
        adjustment_type: str,
    ) -> Tuple[CycleResult, Optional[Activation]]:
        self._transition(CalibrationState.APPLYING, cycle_id)
        candidate = current.with_changes(
            weights=proposal.weights,
            confidence_ceiling=proposal.confidence_ceiling,
            version=self.store.next_version(),
        )

        started = self._clock()
        try:
            if not self.outcomes.attempt_succeeds():
                raise CalibrationApplicationFailure("Application attempt did not complete")
            elapsed = self._clock() - started
            if elapsed > self.config.apply_timeout_seconds:
                raise CalibrationApplicationFailure(
                    f"Application exceeded {self.config.apply_timeout_seconds}s timeout",
                    details={"elapsed_seconds": elapsed},
                )
        except CalibrationApplicationFailure as e:
            entry = self._record(
                cycle_id,
                CalibrationStatus.ROLLED_BACK,
                adjustment_type=adjustment_type,
                previous=candidate.to_dict(),
                new=current.to_dict(),
                metrics=metrics,
                extra={"retry_pending": True, **e.details},
                reason=e.message,
            )
            logger.warning(f"Calibration {cycle_id} rolled back: {e.message}")
            result = CycleResult(
                cycle_id, CycleOutcome.ROLLED_BACK, metrics, current, proposal,
                reason=e.message, entries=[entry],
            )
            return result, None

        entry = self._record(
            cycle_id,
            CalibrationStatus.APPLIED,
            adjustment_type=adjustment_type,
            previous=current.to_dict(),
            new=candidate.to_dict(),
            metrics=metrics,
        )

        def activate() -> ScoringConfiguration:
            self.store.publish(candidate)
            return candidate

        result = CycleResult(cycle_id, CycleOutcome.APPLIED, metrics, candidate, proposal, entries=[entry])
        return result, activate

    def _finish(self, result: CycleResult, activation: Optional[Activation] = None) -> CycleResult:
        """
        Commit the cycle's history entries, then make its configuration live.

        The store only changes after the entries are durable, so a failed
        commit leaves the audit log and the active configuration as they were.
        """
        if result.entries:
            db = self.history.db
            try:
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                self._transition(CalibrationState.IDLE, result.cycle_id)
                logger.error(f"Calibration {result.cycle_id} could not be recorded: {e}")
                raise DatabaseError(
                    f"Calibration cycle {result.cycle_id} could not be recorded: {e}",
                    details={"cycle_id": result.cycle_id, "outcome": result.outcome.value},
                )
            except Exception:
                db.rollback()
                self._transition(CalibrationState.IDLE, result.cycle_id)
                raise

        if activation is not None:
            result.configuration = activation()

        if result.outcome == CycleOutcome.APPLIED:
            logger.info(
                f"Calibration {result.cycle_id} applied configuration version {result.configuration.version}"
            )
            self._transition(CalibrationState.APPLIED, result.cycle_id)
        elif result.outcome == CycleOutcome.ROLLED_BACK:
            self._transition(CalibrationState.ROLLED_BACK, result.cycle_id)
        self._transition(CalibrationState.IDLE, result.cycle_id)
        return result

    def _record(
        self,
        cycle_id: str,
        status: CalibrationStatus,
        adjustment_type: str,
        previous: Optional[Dict[str, Any]],
        new: Optional[Dict[str, Any]],
        metrics: WindowMetrics,
        extra: Optional[Mapping[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> CalibrationHistory:
        now = self._now()
        entry = self.history.append(
            calibration_id=f"cal-{uuid.uuid4().hex}",
            cycle_id=cycle_id,
            adjustment_type=adjustment_type,
            target_component=TARGET_COMPONENT,
            previous_value=previous,
            new_value=new,
            performance_metrics={**metrics.to_dict(), **dict(extra or {})},
            status=status.value,
            reason=reason,
            applied_at=now if status == CalibrationStatus.APPLIED else None,
            created_at=now,
        )
        audit_log.info(
            "calibration_transition",
            cycle_id=cycle_id,
            status=status.value,
            adjustment_type=adjustment_type,
            sample_size=metrics.sample_size,
            mean_agreement=metrics.mean_agreement,
        )
        return entry

    def _transition(self, state: CalibrationState, cycle_id: str) -> None:
        audit_log.debug(
            "calibration_state_changed",
            cycle_id=cycle_id,
            from_state=self._state.value,
            to_state=state.value,
        )
        self._state = state

    @staticmethod
    def _adjustment_type(current: ScoringConfiguration, proposal: Proposal) -> str:
        weights_changed = any(
            abs(proposal.weights.get(t, 0.0) - w) > 0 for t, w in current.weights.items()
        )
        ceiling_changed = proposal.confidence_ceiling != current.confidence_ceiling
        if weights_changed and ceiling_changed:
            return "combined_adjustment"
        if ceiling_changed:
            return "threshold_adjustment"
        return "weight_adjustment"


# ============================================================================
# Shared configuration store
# ============================================================================

_shared_store: Optional[ConfigurationStore] = None
_shared_store_lock = threading.Lock()


def load_configuration_store(db: Session) -> ConfigurationStore:
    """Build a store seeded with the configuration the audit log left active."""
    active = CalibrationHistoryRepository(db).latest_active_configuration()
    if active:
        logger.info(f"Restoring scoring configuration version {active.get('version')}")
        return ConfigurationStore(ScoringConfiguration.from_dict(active))
    return ConfigurationStore()


def shared_configuration_store(db: Session) -> ConfigurationStore:
    """Process-wide store used by the API and the scheduled job."""
    global _shared_store
    with _shared_store_lock:
        if _shared_store is None:
            _shared_store = load_configuration_store(db)
        return _shared_store


def reset_shared_configuration_store() -> None:
    global _shared_store
    with _shared_store_lock:
        _shared_store = None
