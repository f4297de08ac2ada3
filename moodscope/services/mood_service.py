"""
Mood analysis service.

Ties the MemoryStore, MoodScorer, DeltaDetector and ValidationEngine to the
persistence layer. Everything written for one conversational unit goes into
a single transaction: the unit must already exist, and a failed write leaves
earlier history untouched.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Generator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from moodscope.db.models import DeltaPattern, MoodDelta, MoodScore, TurningPoint, ValidationResult
from moodscope.db.repositories import (
    AnalysisMetadataRepository,
    DeltaRepository,
    MoodScoreRepository,
    SqlMemoryStore,
    ValidationRepository,
)
from moodscope.domain.deltas import (
    DeltaDetector,
    DetectedDelta,
    DetectedPattern,
    DetectedTurningPoint,
    ScoredPoint,
    rank_deltas,
)
from moodscope.domain.scoring import MoodScorer, PriorContext
from moodscope.domain.trajectory import (
    DeviationAnalysis,
    EmotionalBaseline,
    Plateau,
    TrajectoryAnalyzer,
    Transition,
)
from moodscope.domain.units import ConversationalUnit, MemoryStore
from moodscope.log_config import get_logger, logger
from moodscope.services.validation_engine import (
    ValidationEngine,
    outcome_from_row,
    outcome_to_fields,
)
from moodscope.utils.errors import DatabaseError, RecordNotFoundError

audit_log = get_logger("moodscope.persistence")

PRIOR_CONTEXT_SIZE = 5


@dataclass
class TrackingResult:
    """Rows appended by one conversation tracking pass."""

    conversation_id: str
    scored_units: List[str] = field(default_factory=list)
    deltas: List[MoodDelta] = field(default_factory=list)
    turning_points: List[TurningPoint] = field(default_factory=list)
    patterns: List[DeltaPattern] = field(default_factory=list)
    pending_deltas: int = 0


@dataclass
class Trajectory:
    """Per-participant mood timeline computed on demand."""

    participant_id: str
    points: List[ScoredPoint]
    deltas: List[DetectedDelta]
    turning_points: List[DetectedTurningPoint]
    patterns: List[DetectedPattern]
    velocity: float = 0.0
    plateau: Optional[Plateau] = None
    transitions: List[Transition] = field(default_factory=list)
    # Built from every point but the latest, which is then judged against it
    baseline: Optional[EmotionalBaseline] = None
    deviation: Optional[DeviationAnalysis] = None

    @property
    def key_deltas(self) -> List[DetectedDelta]:
        return rank_deltas(self.deltas)[:3]


def point_from_score(mood_score: MoodScore, timestamp: datetime) -> ScoredPoint:
    return ScoredPoint(
        unit_id=mood_score.memory_id,
        score=mood_score.score,
        confidence=mood_score.confidence,
        timestamp=timestamp,
        factor_scores=mood_score.factor_scores,
        mood_score_id=mood_score.id,
    )


class MoodAnalysisService:
    """Scores units, tracks conversations and serves mood reads."""

    def __init__(
        self,
        db: Session,
        scorer: Optional[MoodScorer] = None,
        detector: Optional[DeltaDetector] = None,
        validation_engine: Optional[ValidationEngine] = None,
        memory_store: Optional[MemoryStore] = None,
        analyzer: Optional[TrajectoryAnalyzer] = None,
    ):
        self.db = db
        self.scorer = scorer or MoodScorer()
        self.detector = detector or DeltaDetector()
        self.validation_engine = validation_engine or ValidationEngine()
        self.memory_store = memory_store or SqlMemoryStore(db)
        self.analyzer = analyzer or TrajectoryAnalyzer()
        self.scores = MoodScoreRepository(db)
        self.metadata = AnalysisMetadataRepository(db)
        self.deltas = DeltaRepository(db)
        self.validations = ValidationRepository(db)

    @contextmanager
    def _unit_transaction(self, unit_id: str) -> Generator[None, None, None]:
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Persistence failed for unit {unit_id}: {e}")
            raise DatabaseError(f"Persistence failed for unit {unit_id}: {e}", details={"unit_id": unit_id})
        except Exception:
            self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def score_unit(self, unit_id: str, prior_context: Optional[PriorContext] = None) -> MoodScore:
        """
        Score a unit and append MoodScore, MoodFactors and AnalysisMetadata.

        Raises:
            RecordNotFoundError: If the MemoryStore has no such unit
            DatabaseError: If the write fails; nothing is committed
        """
        unit = self.memory_store.get_unit(unit_id)
        return self._score(unit, prior_context)

    def _score(self, unit: ConversationalUnit, prior_context: Optional[PriorContext]) -> MoodScore:
        result = self.scorer.score(unit, prior_context)
        issues = ["low_signal"] if result.low_signal else []

        with self._unit_transaction(unit.id):
            mood_score = self.scores.create_from_result(result)
            self.metadata.upsert(unit.id, result, issues=issues)

        audit_log.info(
            "mood_score_persisted",
            unit_id=unit.id,
            score=result.score,
            confidence=result.confidence,
            configuration_version=result.configuration_version,
            low_signal=result.low_signal,
        )
        return mood_score

    def track_conversation(self, conversation_id: str, concluded: bool = False) -> TrackingResult:
        """
        Score any unscored units of a conversation, then append the settled
        deltas, turning points and patterns not yet persisted.

        While the conversation is open, deltas in its final quartile stay
        pending because their position weight depends on how many units follow;
        a turning point waits for its merge window to close and a pattern for
        its run to end. Tracking with concluded=True persists everything.

        Raises:
            OrderingError: If the unit timestamps are not monotonic
        """
        units = self.memory_store.get_conversation_units(conversation_id)
        tracking = TrackingResult(conversation_id=conversation_id)
        version = self.scorer.config.algorithm_version

        points: List[ScoredPoint] = []
        for unit in units:
            mood_score = self.scores.current_for(unit.id, version)
            if mood_score is None:
                recent = tuple(p.score for p in points[-PRIOR_CONTEXT_SIZE:])
                mood_score = self._score(unit, PriorContext(recent_scores=recent) if recent else None)
                tracking.scored_units.append(unit.id)
            points.append(point_from_score(mood_score, unit.timestamp))

        settled = self.detector.settle(
            self.detector.detect(points, conversation_id=conversation_id), concluded=concluded
        )
        tracking.pending_deltas = settled.pending

        persisted = {row.delta_sequence: row for row in self.deltas.list_for_conversation(conversation_id)}
        recorded_turning_points = self.deltas.turning_point_sequences(conversation_id)
        recorded_patterns = self.deltas.pattern_start_sequences(conversation_id)

        for delta in settled.deltas:
            turning_points = [
                tp
                for tp in settled.turning_points
                if tp.delta.sequence == delta.sequence and delta.sequence not in recorded_turning_points
            ]
            patterns = [
                p
                for p in settled.patterns
                if p.members[-1].sequence == delta.sequence
                and p.members[0].sequence not in recorded_patterns
            ]
            if delta.sequence in persisted and not turning_points and not patterns:
                continue

            with self._unit_transaction(delta.unit_id):
                row = persisted.get(delta.sequence)
                if row is None:
                    row = self.deltas.create_delta(delta)
                    tracking.deltas.append(row)
                for tp in turning_points:
                    tp_row = self.deltas.create_turning_point(tp, self._delta_id(conversation_id, tp.delta))
                    tracking.turning_points.append(tp_row)
                for pattern in patterns:
                    tracking.patterns.append(self._persist_pattern(conversation_id, pattern))
            persisted[delta.sequence] = row

        logger.info(
            f"Tracked conversation {conversation_id}: {len(tracking.deltas)} new deltas, "
            f"{len(tracking.turning_points)} turning points, {len(tracking.patterns)} patterns, "
            f"{tracking.pending_deltas} pending"
        )
        return tracking

    def _delta_id(self, conversation_id: str, delta: DetectedDelta) -> int:
        row = self.deltas.get_by_sequence(conversation_id, delta.sequence)
        if row is None:
            raise RecordNotFoundError(
                f"Delta {delta.sequence} of conversation {conversation_id} not persisted",
                details={"conversation_id": conversation_id, "sequence": delta.sequence},
            )
        return row.id

    def _persist_pattern(self, conversation_id: str, pattern: DetectedPattern) -> DeltaPattern:
        delta_ids = [self._delta_id(conversation_id, member) for member in pattern.members]
        return self.deltas.create_pattern(pattern, delta_ids)

    def record_validation(
        self,
        unit_id: str,
        human_score: Optional[float],
        validator_id: str,
        method: str,
    ) -> ValidationResult:
        """
        Compare the unit's current score with a human judgment and append the result.

        Raises:
            RecordNotFoundError: If the unit has never been scored
        """
        mood_score = self.get_current_mood(unit_id)
        window = [
            outcome_from_row(row)
            for row in self.validations.recent(
                self.validation_engine.config.window_size, validator_id=validator_id
            )
        ]
        outcome = self.validation_engine.validate(
            unit_id=unit_id,
            algorithm_score=mood_score.score,
            human_score=human_score,
            method=method,
            validator_id=validator_id,
            algorithm_confidence=mood_score.confidence,
            factor_scores=mood_score.factor_scores,
            window=window,
            mood_score_id=mood_score.id,
        )
        with self._unit_transaction(unit_id):
            row = self.validations.create(**outcome_to_fields(outcome))
        return row

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_current_mood(self, unit_id: str) -> MoodScore:
        """
        Current score for the active algorithm version, falling back to the
        latest score of any version.
        """
        mood_score = self.scores.current_for(unit_id, self.scorer.config.algorithm_version)
        if mood_score is None:
            mood_score = self.scores.current_for(unit_id)
        if mood_score is None:
            raise RecordNotFoundError(f"No mood score for unit {unit_id}", details={"unit_id": unit_id})
        return mood_score

    def get_trajectory(self, participant_id: str, since: datetime, limit: int = 200) -> Trajectory:
        """
        Mood timeline of one participant since a point in time.

        Unscored units are left out. Nothing is persisted.
        """
        units = self.memory_store.get_recent_units(participant_id, since, limit=limit)
        points: List[ScoredPoint] = []
        for unit in units:
            mood_score = self.scores.current_for(unit.id, self.scorer.config.algorithm_version)
            if mood_score is None:
                mood_score = self.scores.current_for(unit.id)
            if mood_score is not None:
                points.append(point_from_score(mood_score, unit.timestamp))

        deltas = self.detector.detect(points)
        trajectory = Trajectory(
            participant_id=participant_id,
            points=points,
            deltas=deltas,
            turning_points=self.detector.find_turning_points(deltas),
            patterns=self.detector.find_patterns(deltas),
            velocity=self.analyzer.velocity(points),
            plateau=self.analyzer.detect_plateau(points),
            transitions=self.analyzer.detect_transitions(points),
        )

        history = [p.score for p in points[:-1]]
        if len(history) >= self.analyzer.config.baseline_min_data_points:
            trajectory.baseline = self.analyzer.establish_baseline(participant_id, history)
            trajectory.deviation = self.analyzer.analyze_deviation(trajectory.baseline, points[-1].score)
        return trajectory

    def conversation_summary(self, conversation_id: str) -> Dict[str, list]:
        """Persisted deltas, turning points and patterns of a conversation."""
        return {
            "deltas": self.deltas.list_for_conversation(conversation_id),
            "turning_points": self.deltas.turning_points_for_conversation(conversation_id),
            "patterns": self.deltas.patterns_for_conversation(conversation_id),
        }
