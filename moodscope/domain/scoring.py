"""
Multi-factor mood scoring.

MoodScorer runs the factor extractors over a conversational unit and combines
the factors that found evidence into one score:

    score = sum(internal_score_i * weight_i) / sum(weight_i), clamped to [0, 10]

Confidence is the product of cross-factor agreement and evidence support
(density, content length, weight coverage), capped by the configuration's
confidence ceiling. Units without evidence score a neutral 5.0 at near-zero
confidence instead of raising.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from moodscope.config import settings
from moodscope.domain.configuration import ConfigurationStore, ScoringConfiguration
from moodscope.domain.factors import (
    NEUTRAL_SCORE,
    FactorSignal,
    default_extractors,
    extract_signals,
)
from moodscope.domain.units import ConversationalUnit
from moodscope.log_config import logger
from moodscope.utils.errors import LowSignalInput

SCORE_MIN = 0.0
SCORE_MAX = 10.0

# Standard deviation of factor scores at which agreement reaches zero
AGREEMENT_SPREAD = 5.0
SINGLE_FACTOR_AGREEMENT = 0.7
BASELINE_DEPARTURE = 1.5
LOW_SIGNAL_DESCRIPTOR = "low signal"


@dataclass(frozen=True)
class ScorerConfig:
    algorithm_version: str
    descriptor_count: int
    low_signal_confidence: float
    evidence_saturation: int
    length_saturation_words: int

    @classmethod
    def from_settings(cls) -> "ScorerConfig":
        return cls(
            algorithm_version=settings.algorithm_version,
            descriptor_count=settings.descriptor_count,
            low_signal_confidence=settings.low_signal_confidence,
            evidence_saturation=settings.evidence_saturation,
            length_saturation_words=settings.length_saturation_words,
        )


@dataclass(frozen=True)
class PriorContext:
    """Earlier scores for the same subject, used only for descriptors."""

    recent_scores: Tuple[float, ...] = ()
    baseline: Optional[float] = None

    def effective_baseline(self) -> Optional[float]:
        if self.baseline is not None:
            return self.baseline
        if self.recent_scores:
            return float(np.mean(self.recent_scores))
        return None


@dataclass(frozen=True)
class ScoredFactor:
    type: str
    weight: float
    internal_score: float
    evidence: Tuple[str, ...]
    description: str


@dataclass(frozen=True)
class MoodScoreResult:
    """Score, confidence, descriptors and the factor set that produced them."""

    unit_id: str
    score: float
    confidence: float
    descriptors: Tuple[str, ...]
    factors: Tuple[ScoredFactor, ...]
    algorithm_version: str
    configuration_version: int
    processing_time_ms: int
    calculated_at: datetime
    low_signal: bool = False
    quality: Mapping[str, float] = field(default_factory=dict)

    def reconstructed_score(self) -> Optional[float]:
        """Weighted reconstruction of score from the factor set."""
        total_weight = sum(f.weight for f in self.factors)
        if total_weight <= 0:
            return None
        return sum(f.internal_score * f.weight for f in self.factors) / total_weight

    @property
    def factor_scores(self) -> Dict[str, float]:
        return {f.type: f.internal_score for f in self.factors}


def combine_factors(factors: Sequence[ScoredFactor]) -> float:
    """Weighted mean of factor internal scores, clamped to the mood scale."""
    total_weight = sum(f.weight for f in factors)
    weighted = sum(f.internal_score * f.weight for f in factors)
    return min(SCORE_MAX, max(SCORE_MIN, weighted / total_weight))


def compute_confidence(
    factors: Sequence[ScoredFactor],
    total_weight: float,
    word_count: int,
    config: ScorerConfig,
    ceiling: float,
) -> Tuple[float, Dict[str, float]]:
    """
    Confidence from factor agreement and evidence support.

    Args:
        factors: Participating factors
        total_weight: Sum of all configured weights
        word_count: Words in the unit content
        config: Scorer configuration
        ceiling: Upper bound from the active scoring configuration

    Returns:
        Tuple of (confidence, component breakdown)
    """
    internal = np.array([f.internal_score for f in factors], dtype=float)
    if len(internal) == 1:
        agreement = SINGLE_FACTOR_AGREEMENT
    else:
        agreement = max(0.0, 1.0 - float(np.std(internal)) / AGREEMENT_SPREAD)

    evidence_count = sum(len(f.evidence) for f in factors)
    density = min(1.0, evidence_count / config.evidence_saturation)
    length = min(1.0, word_count / config.length_saturation_words)
    coverage = sum(f.weight for f in factors) / total_weight if total_weight > 0 else 0.0

    support = 0.5 * density + 0.25 * length + 0.25 * coverage
    confidence = min(ceiling, max(0.0, agreement * support))
    return confidence, {
        "agreement": agreement,
        "evidence_density": density,
        "length_factor": length,
        "weight_coverage": coverage,
    }


def select_descriptors(factors: Sequence[ScoredFactor], limit: int) -> Tuple[str, ...]:
    """Top evidence phrases, heaviest factor first, deduplicated."""
    ranked = sorted(factors, key=lambda f: -f.weight)
    descriptors: List[str] = []
    for factor in ranked:
        for phrase in factor.evidence:
            if phrase not in descriptors:
                descriptors.append(phrase)
            if len(descriptors) >= limit:
                return tuple(descriptors)
    return tuple(descriptors)


class MoodScorer:
    """
    Scores conversational units against the active ScoringConfiguration.

    The configuration is read once per call; a concurrent publish by the
    calibration loop affects only later calls.
    """

    def __init__(
        self,
        config_source: Optional[ConfigurationStore] = None,
        extractors: Optional[Sequence] = None,
        config: Optional[ScorerConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        timer: Callable[[], float] = time.perf_counter,
    ):
        self.config_source = config_source or ConfigurationStore()
        self.extractors = list(extractors) if extractors is not None else default_extractors()
        self.config = config or ScorerConfig.from_settings()
        self._clock = clock
        self._timer = timer

    def score(
        self,
        unit: ConversationalUnit,
        prior_context: Optional[PriorContext] = None,
    ) -> MoodScoreResult:
        started = self._timer()
        snapshot = self.config_source.current()

        try:
            signals = extract_signals(unit, self.extractors)
            factors = self._weigh(signals, snapshot)
            if sum(f.weight for f in factors) <= 0:
                raise LowSignalInput(
                    f"Unit {unit.id} only has evidence for zero-weight factors",
                    details={"unit_id": unit.id},
                )
        except LowSignalInput as e:
            logger.debug(f"Low signal for unit {unit.id}: {e.message}")
            return self._low_signal(unit, snapshot, started)

        score = combine_factors(factors)
        confidence, quality = compute_confidence(
            factors,
            total_weight=sum(snapshot.weights.values()),
            word_count=unit.word_count,
            config=self.config,
            ceiling=snapshot.confidence_ceiling,
        )
        descriptors = list(select_descriptors(factors, self.config.descriptor_count))

        baseline = prior_context.effective_baseline() if prior_context else None
        if baseline is not None:
            quality["baseline_deviation"] = score - baseline
            if score - baseline >= BASELINE_DEPARTURE:
                descriptors.append("above baseline")
            elif baseline - score >= BASELINE_DEPARTURE:
                descriptors.append("below baseline")

        return MoodScoreResult(
            unit_id=unit.id,
            score=score,
            confidence=confidence,
            descriptors=tuple(descriptors),
            factors=tuple(factors),
            algorithm_version=self.config.algorithm_version,
            configuration_version=snapshot.version,
            processing_time_ms=self._elapsed_ms(started),
            calculated_at=self._clock(),
            quality=quality,
        )

    def _weigh(
        self, signals: Sequence[FactorSignal], snapshot: ScoringConfiguration
    ) -> List[ScoredFactor]:
        return [
            ScoredFactor(
                type=signal.type.value,
                weight=snapshot.weight_for(signal.type.value),
                internal_score=signal.internal_score,
                evidence=signal.evidence,
                description=signal.description,
            )
            for signal in signals
        ]

    def _low_signal(
        self, unit: ConversationalUnit, snapshot: ScoringConfiguration, started: float
    ) -> MoodScoreResult:
        return MoodScoreResult(
            unit_id=unit.id,
            score=NEUTRAL_SCORE,
            confidence=min(self.config.low_signal_confidence, snapshot.confidence_ceiling),
            descriptors=(LOW_SIGNAL_DESCRIPTOR,),
            factors=(),
            algorithm_version=self.config.algorithm_version,
            configuration_version=snapshot.version,
            processing_time_ms=self._elapsed_ms(started),
            calculated_at=self._clock(),
            low_signal=True,
            quality={"word_count": float(unit.word_count)},
        )

    def _elapsed_ms(self, started: float) -> int:
        return max(0, int(round((self._timer() - started) * 1000)))
