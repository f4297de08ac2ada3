"""
Trajectory analysis over a participant's scored history.

An emotional baseline summarizes past scores (mean, range, volatility) and is
revised as new scores arrive; a new score is then judged against it. Velocity,
plateau and transition detection read an ordered score sequence as a whole
rather than pair by pair.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np

from moodscope.config import settings
from moodscope.domain.deltas import ScoredPoint
from moodscope.log_config import logger
from moodscope.utils.errors import InsufficientHistory

SECONDS_PER_HOUR = 3600.0

# Volatility below this is treated as this, so a flat history still yields a z-score
MIN_VOLATILITY = 0.5


class DeviationType(str, Enum):
    SIGNIFICANT_DECLINE = "significant_decline"
    SIGNIFICANT_ELEVATION = "significant_elevation"
    NORMAL_VARIATION = "normal_variation"


class TransitionType(str, Enum):
    SUDDEN = "sudden"
    GRADUAL = "gradual"


@dataclass(frozen=True)
class TrajectoryConfig:
    baseline_min_data_points: int
    baseline_update_threshold: float
    deviation_threshold: float
    plateau_variance_threshold: float
    transition_magnitude: float
    sudden_velocity: float

    @classmethod
    def from_settings(cls) -> "TrajectoryConfig":
        return cls(
            baseline_min_data_points=settings.baseline_min_data_points,
            baseline_update_threshold=settings.baseline_update_threshold,
            deviation_threshold=settings.deviation_threshold,
            plateau_variance_threshold=settings.plateau_variance_threshold,
            transition_magnitude=settings.transition_magnitude,
            sudden_velocity=settings.sudden_velocity,
        )


@dataclass(frozen=True)
class EmotionalBaseline:
    """Typical mood of one participant, versioned as it is revised."""

    participant_id: str
    average: float
    minimum: float
    maximum: float
    volatility: float
    data_points: int
    confidence: float
    version: int = 1
    update_reason: Optional[str] = None

    @property
    def spread(self) -> float:
        return self.maximum - self.minimum

    @property
    def cyclical_tendency(self) -> str:
        if self.volatility > 2.0:
            return "high"
        if self.volatility > 1.0:
            return "medium"
        return "low"


@dataclass(frozen=True)
class DeviationAnalysis:
    score: float
    magnitude: float
    z_score: float
    percentile_rank: float
    type: DeviationType
    level: str


@dataclass(frozen=True)
class Plateau:
    average_score: float
    variance: float
    duration_seconds: int


@dataclass(frozen=True)
class Transition:
    unit_id: str
    type: TransitionType
    magnitude: float
    velocity: float
    direction: str
    timestamp: datetime


class TrajectoryAnalyzer:
    """Baseline, deviation, velocity, plateau and transition analysis."""

    def __init__(self, config: Optional[TrajectoryConfig] = None):
        self.config = config or TrajectoryConfig.from_settings()

    # ------------------------------------------------------------------
    # Baseline
    # ------------------------------------------------------------------

    def establish_baseline(self, participant_id: str, scores: Sequence[float]) -> EmotionalBaseline:
        """
        Build a baseline from historical scores.

        Confidence grows with the number of scores and shrinks with their
        volatility.

        Raises:
            InsufficientHistory: If fewer than baseline_min_data_points scores are given
        """
        if len(scores) < self.config.baseline_min_data_points:
            raise InsufficientHistory(
                f"{len(scores)} scores for {participant_id}, "
                f"{self.config.baseline_min_data_points} needed for a baseline",
                details={"participant_id": participant_id, "data_points": len(scores)},
            )

        values = np.asarray(scores, dtype=float)
        volatility = float(np.std(values))
        base_confidence = min(0.95, 0.5 + len(values) / 20)
        consistency = max(0.3, 1.0 - volatility / 5.0)

        baseline = EmotionalBaseline(
            participant_id=participant_id,
            average=float(np.mean(values)),
            minimum=float(np.min(values)),
            maximum=float(np.max(values)),
            volatility=volatility,
            data_points=len(values),
            confidence=base_confidence * consistency,
        )
        logger.debug(
            f"Baseline for {participant_id}: mean {baseline.average:.2f}, "
            f"volatility {baseline.volatility:.2f} over {baseline.data_points} scores"
        )
        return baseline

    def should_update(self, baseline: EmotionalBaseline, scores: Sequence[float]) -> bool:
        """True when the mean of the new scores has moved at least the update threshold."""
        if not scores:
            return False
        shift = abs(float(np.mean(scores)) - baseline.average)
        return shift >= self.config.baseline_update_threshold

    def update_baseline(self, baseline: EmotionalBaseline, scores: Sequence[float]) -> EmotionalBaseline:
        """
        Fold new scores into a baseline, weighting old and new by their counts.

        The result carries the next version and a reason graded by how far the
        new scores' mean moved.
        """
        if not scores:
            return baseline

        values = np.asarray(scores, dtype=float)
        new_mean = float(np.mean(values))
        total = baseline.data_points + len(values)
        # Pooled variance about each group's own mean
        variance = (
            baseline.volatility ** 2 * baseline.data_points + float(np.var(values)) * len(values)
        ) / total

        shift = abs(new_mean - baseline.average)
        if shift >= 2.0:
            reason = "major_shift"
        elif shift >= 1.0:
            reason = "significant_shift"
        else:
            reason = "routine_update"

        updated = replace(
            baseline,
            average=(baseline.average * baseline.data_points + new_mean * len(values)) / total,
            minimum=min(baseline.minimum, float(np.min(values))),
            maximum=max(baseline.maximum, float(np.max(values))),
            volatility=float(np.sqrt(variance)),
            data_points=total,
            confidence=min(0.95, baseline.confidence + 0.05),
            version=baseline.version + 1,
            update_reason=reason,
        )
        logger.debug(
            f"Baseline for {baseline.participant_id} updated to version {updated.version} ({reason})"
        )
        return updated

    def analyze_deviation(self, baseline: EmotionalBaseline, score: float) -> DeviationAnalysis:
        """Place a score against a baseline."""
        signed = score - baseline.average
        magnitude = abs(signed)
        z_score = signed / max(MIN_VOLATILITY, baseline.volatility)
        # Linear approximation of the normal percentile, clamped to [1, 99]
        percentile = min(99.0, max(1.0, 50.0 + z_score / 4.0 * 50.0))

        threshold = self.config.deviation_threshold
        if magnitude >= threshold:
            deviation_type = (
                DeviationType.SIGNIFICANT_ELEVATION if signed > 0 else DeviationType.SIGNIFICANT_DECLINE
            )
            level = "high"
        else:
            deviation_type = DeviationType.NORMAL_VARIATION
            level = "medium" if magnitude >= threshold / 2 else "low"

        return DeviationAnalysis(
            score=score,
            magnitude=magnitude,
            z_score=z_score,
            percentile_rank=percentile,
            type=deviation_type,
            level=level,
        )

    # ------------------------------------------------------------------
    # Sequence shape
    # ------------------------------------------------------------------

    @staticmethod
    def velocity(points: Sequence[ScoredPoint]) -> float:
        """Net score change per hour from the first point to the last; 0 without elapsed time."""
        if len(points) < 2:
            return 0.0
        elapsed = (points[-1].timestamp - points[0].timestamp).total_seconds()
        if elapsed <= 0:
            return 0.0
        return (points[-1].score - points[0].score) / elapsed * SECONDS_PER_HOUR

    def detect_plateau(self, points: Sequence[ScoredPoint]) -> Optional[Plateau]:
        """A plateau when three or more scores vary less than the plateau threshold."""
        if len(points) < 3:
            return None
        scores = np.asarray([p.score for p in points], dtype=float)
        variance = float(np.var(scores))
        if variance >= self.config.plateau_variance_threshold:
            return None
        return Plateau(
            average_score=float(np.mean(scores)),
            variance=variance,
            duration_seconds=int((points[-1].timestamp - points[0].timestamp).total_seconds()),
        )

    def detect_transitions(self, points: Sequence[ScoredPoint]) -> List[Transition]:
        """
        Steps of at least transition_magnitude between consecutive points.

        A step is sudden when its rate reaches sudden_velocity points per hour;
        a step with no elapsed time is sudden and reports a velocity of 0.
        """
        transitions = []
        for previous, current in zip(points, points[1:]):
            signed = current.score - previous.score
            magnitude = abs(signed)
            if magnitude < self.config.transition_magnitude:
                continue
            elapsed = (current.timestamp - previous.timestamp).total_seconds()
            velocity = magnitude / elapsed * SECONDS_PER_HOUR if elapsed > 0 else 0.0
            sudden = elapsed <= 0 or velocity >= self.config.sudden_velocity
            transitions.append(
                Transition(
                    unit_id=current.unit_id,
                    type=TransitionType.SUDDEN if sudden else TransitionType.GRADUAL,
                    magnitude=magnitude,
                    velocity=velocity,
                    direction="positive" if signed > 0 else "negative",
                    timestamp=current.timestamp,
                )
            )
        return transitions
