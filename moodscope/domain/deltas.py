"""
Delta, pattern and turning point detection over ordered mood score sequences.

Significance of a delta:

    significance = clamp01(magnitude / significance_scale
                           * position_weight * confidence_factor)

position_weight boosts deltas in the final quartile of the sequence, where
shifts around the close of a conversation matter more than mid-conversation
noise. confidence_factor is the geometric mean of the two scores' confidences.

A delta in the final quartile can lose its boost once the conversation grows,
so callers that persist results incrementally go through DeltaDetector.settle:
it returns only the deltas, turning points and patterns that later units can
no longer change.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from moodscope.config import settings
from moodscope.log_config import logger
from moodscope.utils.errors import OrderingError


class DeltaDirection(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class DeltaType(str, Enum):
    PLATEAU = "plateau"
    GRADUAL = "gradual"
    ABRUPT = "abrupt"
    REPAIR = "repair"
    CELEBRATION = "celebration"


class TurningPointType(str, Enum):
    SETBACK = "setback"
    RECOVERY = "recovery"
    BREAKTHROUGH = "breakthrough"


class PatternType(str, Enum):
    SUSTAINED_IMPROVEMENT = "sustained_improvement"
    SUSTAINED_DECLINE = "sustained_decline"


REPAIR_FLOOR = 4.5
REPAIR_TARGET = 5.5
CELEBRATION_FLOOR = 6.0
CELEBRATION_TARGET = 7.0

CONCLUSION_QUARTILE = 0.75


def in_conclusion(index: int, delta_count: int) -> bool:
    """True when the delta at index falls in the final quartile of delta_count deltas."""
    return (index + 1) / delta_count > CONCLUSION_QUARTILE


@dataclass(frozen=True)
class DetectorConfig:
    stability_band: float
    conclusion_position_weight: float
    turning_point_threshold: float
    significance_scale: float
    min_pattern_magnitude: float
    abrupt_magnitude: float
    turning_point_merge_seconds: int

    @classmethod
    def from_settings(cls) -> "DetectorConfig":
        return cls(
            stability_band=settings.stability_band,
            conclusion_position_weight=settings.conclusion_position_weight,
            turning_point_threshold=settings.turning_point_threshold,
            significance_scale=settings.significance_scale,
            min_pattern_magnitude=settings.min_pattern_magnitude,
            abrupt_magnitude=settings.abrupt_magnitude,
            turning_point_merge_seconds=settings.turning_point_merge_seconds,
        )


@dataclass(frozen=True)
class ScoredPoint:
    """One mood score placed on a timeline."""

    unit_id: str
    score: float
    confidence: float
    timestamp: datetime
    factor_scores: Mapping[str, float] = field(default_factory=dict)
    mood_score_id: Optional[int] = None


@dataclass(frozen=True)
class DetectedDelta:
    index: int
    sequence: int
    unit_id: str
    previous_unit_id: str
    previous_score: float
    current_score: float
    magnitude: float
    direction: DeltaDirection
    type: DeltaType
    confidence: float
    significance: float
    factors: Tuple[str, ...]
    timestamp: datetime
    previous_timestamp: datetime
    temporal_context: Mapping[str, Any]
    conversation_id: Optional[str] = None
    mood_score_id: Optional[int] = None
    previous_mood_score_id: Optional[int] = None


@dataclass(frozen=True)
class DetectedPattern:
    """A run of two or more consecutive same-direction deltas."""

    pattern_type: PatternType
    members: Tuple[DetectedDelta, ...]
    significance: float
    confidence: float

    @property
    def direction(self) -> DeltaDirection:
        return self.members[0].direction

    @property
    def average_magnitude(self) -> float:
        return sum(d.magnitude for d in self.members) / len(self.members)

    @property
    def duration_seconds(self) -> int:
        return int((self.members[-1].timestamp - self.members[0].timestamp).total_seconds())


@dataclass(frozen=True)
class DetectedTurningPoint:
    delta: DetectedDelta
    type: TurningPointType
    merged_indices: Tuple[int, ...] = ()

    @property
    def timestamp(self) -> datetime:
        return self.delta.timestamp

    @property
    def magnitude(self) -> float:
        return self.delta.magnitude

    @property
    def significance(self) -> float:
        return self.delta.significance

    @property
    def temporal_context(self) -> Dict[str, Any]:
        context = dict(self.delta.temporal_context)
        context["merged_delta_indices"] = list(self.merged_indices)
        return context


@dataclass(frozen=True)
class SettledDetection:
    """Detection results that later units of the conversation cannot change."""

    deltas: Tuple[DetectedDelta, ...]
    turning_points: Tuple[DetectedTurningPoint, ...]
    patterns: Tuple[DetectedPattern, ...]
    # Trailing deltas whose position weight may still change
    pending: int


def rank_deltas(deltas: Sequence[DetectedDelta]) -> List[DetectedDelta]:
    """Order by significance descending; the earlier delta wins ties."""
    return sorted(deltas, key=lambda d: (-d.significance, d.index))


class DeltaDetector:
    """Detects deltas, patterns and turning points in a score sequence."""

    def __init__(self, config: Optional[DetectorConfig] = None):
        self.config = config or DetectorConfig.from_settings()

    def detect(
        self,
        points: Sequence[ScoredPoint],
        conversation_id: Optional[str] = None,
        start_sequence: int = 0,
    ) -> List[DetectedDelta]:
        """
        Compute one delta per consecutive pair of points.

        Args:
            points: Scores ordered by timestamp
            conversation_id: Conversation the sequence belongs to, if any
            start_sequence: Sequence number preceding the first delta

        Returns:
            Deltas in time order; empty for fewer than two points

        Raises:
            OrderingError: If any timestamp precedes the one before it
        """
        self._check_ordering(points)
        if len(points) < 2:
            return []

        delta_count = len(points) - 1
        deltas = []
        for index in range(delta_count):
            previous, current = points[index], points[index + 1]
            deltas.append(
                self._build_delta(index, delta_count, previous, current, conversation_id, start_sequence)
            )
        return deltas

    def find_patterns(self, deltas: Sequence[DetectedDelta]) -> List[DetectedPattern]:
        """Greedily group consecutive same-direction deltas above the minimum magnitude."""
        patterns: List[DetectedPattern] = []
        run: List[DetectedDelta] = []

        for delta in deltas:
            qualifies = (
                delta.direction != DeltaDirection.STABLE
                and delta.magnitude >= self.config.min_pattern_magnitude
            )
            extends = (
                qualifies
                and run
                and run[-1].direction == delta.direction
                and delta.index == run[-1].index + 1
            )
            if extends:
                run.append(delta)
                continue
            self._close_run(run, patterns)
            run = [delta] if qualifies else []

        self._close_run(run, patterns)
        return patterns

    def find_turning_points(self, deltas: Sequence[DetectedDelta]) -> List[DetectedTurningPoint]:
        """
        Flag deltas whose significance exceeds the absolute threshold.

        A candidate starting within the merge window of the current episode's
        onset belongs to that episode; only the onset is reported.
        """
        merge_seconds = self.config.turning_point_merge_seconds
        onsets: List[DetectedDelta] = []
        merged: Dict[int, List[int]] = {}

        for delta in deltas:
            if delta.significance <= self.config.turning_point_threshold:
                continue
            if onsets:
                onset = onsets[-1]
                gap = (delta.previous_timestamp - onset.timestamp).total_seconds()
                if gap <= merge_seconds:
                    merged[onset.index].append(delta.index)
                    continue
            onsets.append(delta)
            merged[delta.index] = []

        turning_points = [
            DetectedTurningPoint(
                delta=onset,
                type=self._turning_point_type(onset),
                merged_indices=tuple(merged[onset.index]),
            )
            for onset in onsets
        ]
        if turning_points:
            logger.debug(
                f"Found {len(turning_points)} turning points in {len(deltas)} deltas"
            )
        return turning_points

    def settle(self, deltas: Sequence[DetectedDelta], concluded: bool = False) -> SettledDetection:
        """
        Keep what appending more units can no longer change.

        A delta outside the final quartile keeps its position weight however
        long the conversation grows, so it is settled; the final quartile only
        settles once the conversation is concluded. A turning point is kept
        when a settled delta starts past its merge window, and a pattern when
        a settled delta follows its run.

        Args:
            deltas: Every delta of the conversation, as returned by detect()
            concluded: Whether the conversation has ended

        Returns:
            SettledDetection over the settled prefix of deltas
        """
        if concluded:
            settled = list(deltas)
        else:
            settled = [d for d in deltas if not in_conclusion(d.index, len(deltas))]

        merge_seconds = self.config.turning_point_merge_seconds
        turning_points = []
        for tp in self.find_turning_points(settled):
            closed = concluded or any(
                (d.previous_timestamp - tp.delta.timestamp).total_seconds() > merge_seconds
                for d in settled
                if d.index > tp.delta.index
            )
            if closed:
                turning_points.append(tp)

        patterns = [
            p
            for p in self.find_patterns(settled)
            if concluded or p.members[-1].index + 1 < len(settled)
        ]

        return SettledDetection(
            deltas=tuple(settled),
            turning_points=tuple(turning_points),
            patterns=tuple(patterns),
            pending=len(deltas) - len(settled),
        )

    def _check_ordering(self, points: Sequence[ScoredPoint]) -> None:
        for earlier, later in zip(points, points[1:]):
            if later.timestamp < earlier.timestamp:
                raise OrderingError(
                    f"Score for unit {later.unit_id} precedes unit {earlier.unit_id}",
                    details={
                        "earlier_unit": earlier.unit_id,
                        "earlier_timestamp": earlier.timestamp.isoformat(),
                        "later_unit": later.unit_id,
                        "later_timestamp": later.timestamp.isoformat(),
                    },
                )

    def _build_delta(
        self,
        index: int,
        delta_count: int,
        previous: ScoredPoint,
        current: ScoredPoint,
        conversation_id: Optional[str],
        start_sequence: int,
    ) -> DetectedDelta:
        signed = current.score - previous.score
        magnitude = abs(signed)
        direction = self._direction(signed, magnitude)

        position = (index + 1) / delta_count
        concluding = in_conclusion(index, delta_count)
        position_weight = self.config.conclusion_position_weight if concluding else 1.0
        confidence_factor = math.sqrt(max(0.0, previous.confidence) * max(0.0, current.confidence))
        significance = min(
            1.0, magnitude / self.config.significance_scale * position_weight * confidence_factor
        )

        if concluding:
            stage = "conclusion"
        elif position <= 0.25:
            stage = "opening"
        else:
            stage = "middle"

        return DetectedDelta(
            index=index,
            sequence=start_sequence + index + 1,
            unit_id=current.unit_id,
            previous_unit_id=previous.unit_id,
            previous_score=previous.score,
            current_score=current.score,
            magnitude=magnitude,
            direction=direction,
            type=self._delta_type(previous.score, current.score, magnitude, direction),
            confidence=confidence_factor,
            significance=significance,
            factors=self._contributing_factors(previous, current, direction),
            timestamp=current.timestamp,
            previous_timestamp=previous.timestamp,
            temporal_context={
                "position": index,
                "delta_count": delta_count,
                "stage": stage,
                "position_weight": position_weight,
                "confidence_factor": confidence_factor,
                "elapsed_seconds": (current.timestamp - previous.timestamp).total_seconds(),
            },
            conversation_id=conversation_id,
            mood_score_id=current.mood_score_id,
            previous_mood_score_id=previous.mood_score_id,
        )

    def _direction(self, signed: float, magnitude: float) -> DeltaDirection:
        if magnitude < self.config.stability_band:
            return DeltaDirection.STABLE
        return DeltaDirection.IMPROVING if signed > 0 else DeltaDirection.DECLINING

    def _delta_type(
        self, previous: float, current: float, magnitude: float, direction: DeltaDirection
    ) -> DeltaType:
        if direction == DeltaDirection.STABLE:
            return DeltaType.PLATEAU
        if direction == DeltaDirection.IMPROVING:
            if previous < REPAIR_FLOOR and current >= REPAIR_TARGET:
                return DeltaType.REPAIR
            if previous > CELEBRATION_FLOOR and current > CELEBRATION_TARGET:
                return DeltaType.CELEBRATION
        if magnitude >= self.config.abrupt_magnitude:
            return DeltaType.ABRUPT
        return DeltaType.GRADUAL

    def _contributing_factors(
        self, previous: ScoredPoint, current: ScoredPoint, direction: DeltaDirection
    ) -> Tuple[str, ...]:
        if direction == DeltaDirection.STABLE:
            return ()
        band = self.config.stability_band
        contributing = []
        for factor_type, score in current.factor_scores.items():
            if factor_type not in previous.factor_scores:
                continue
            moved = score - previous.factor_scores[factor_type]
            if direction == DeltaDirection.IMPROVING and moved >= band:
                contributing.append(factor_type)
            elif direction == DeltaDirection.DECLINING and moved <= -band:
                contributing.append(factor_type)
        return tuple(contributing)

    def _turning_point_type(self, delta: DetectedDelta) -> TurningPointType:
        if delta.direction == DeltaDirection.DECLINING:
            return TurningPointType.SETBACK
        if delta.type == DeltaType.REPAIR:
            return TurningPointType.RECOVERY
        return TurningPointType.BREAKTHROUGH

    def _close_run(self, run: List[DetectedDelta], patterns: List[DetectedPattern]) -> None:
        if len(run) < 2:
            return
        pattern_type = (
            PatternType.SUSTAINED_IMPROVEMENT
            if run[0].direction == DeltaDirection.IMPROVING
            else PatternType.SUSTAINED_DECLINE
        )
        patterns.append(
            DetectedPattern(
                pattern_type=pattern_type,
                members=tuple(run),
                significance=sum(d.significance for d in run) / len(run),
                confidence=sum(d.confidence for d in run) / len(run),
            )
        )
