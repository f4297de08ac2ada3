"""
Validation of algorithm mood scores against human judgments.

ValidationEngine never scores content. It compares an algorithm score with a
human score, and aggregates bounded windows of such comparisons into the
agreement, accuracy and bias metrics the calibration loop consumes.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from moodscope.config import settings
from moodscope.db.models import ValidationResult
from moodscope.log_config import logger
from moodscope.utils.errors import IncompleteValidation, InvalidScoreError

SCORE_RANGE = 10.0


@dataclass(frozen=True)
class ValidationConfig:
    window_size: int
    bias_threshold: float
    bias_consistency: float
    overconfidence_confidence: float
    overconfidence_error: float

    @classmethod
    def from_settings(cls) -> "ValidationConfig":
        return cls(
            window_size=settings.validation_window_size,
            bias_threshold=settings.bias_threshold,
            bias_consistency=settings.bias_consistency,
            overconfidence_confidence=settings.overconfidence_confidence,
            overconfidence_error=settings.overconfidence_error,
        )


@dataclass(frozen=True)
class ValidationOutcome:
    """One algorithm-versus-human comparison."""

    unit_id: str
    algorithm_score: float
    human_score: Optional[float]
    validator_id: str
    method: str
    agreement: Optional[float] = None
    discrepancy: Optional[float] = None
    algorithm_confidence: Optional[float] = None
    factor_scores: Mapping[str, float] = field(default_factory=dict)
    bias_indicators: Mapping[str, Any] = field(default_factory=dict)
    accuracy_metrics: Mapping[str, Any] = field(default_factory=dict)
    validated_at: Optional[datetime] = None
    mood_score_id: Optional[int] = None

    @property
    def incomplete(self) -> bool:
        return self.human_score is None

    def training_pair(self) -> Tuple[float, float]:
        """
        (algorithm_score, human_score) for aggregation.

        Raises:
            IncompleteValidation: If there is no human score
        """
        if self.human_score is None:
            raise IncompleteValidation(
                f"Validation of unit {self.unit_id} has no human score",
                details={"unit_id": self.unit_id, "validator_id": self.validator_id},
            )
        return self.algorithm_score, self.human_score


@dataclass(frozen=True)
class WindowMetrics:
    """Aggregate agreement, accuracy and bias over a window of validations."""

    sample_size: int
    mean_agreement: Optional[float]
    mean_discrepancy: Optional[float]
    mae: Optional[float]
    rmse: Optional[float]
    correlation: Optional[float]
    mean_signed_error: Optional[float]
    bias_direction: str
    bias_consistency: Optional[float]
    factor_bias: Mapping[str, float] = field(default_factory=dict)
    high_confidence_count: int = 0
    overconfidence_rate: Optional[float] = None

    @classmethod
    def empty(cls) -> "WindowMetrics":
        return cls(
            sample_size=0,
            mean_agreement=None,
            mean_discrepancy=None,
            mae=None,
            rmse=None,
            correlation=None,
            mean_signed_error=None,
            bias_direction="none",
            bias_consistency=None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sample_size": self.sample_size,
            "mean_agreement": self.mean_agreement,
            "mean_discrepancy": self.mean_discrepancy,
            "mae": self.mae,
            "rmse": self.rmse,
            "correlation": self.correlation,
            "mean_signed_error": self.mean_signed_error,
            "bias_direction": self.bias_direction,
            "bias_consistency": self.bias_consistency,
            "factor_bias": dict(self.factor_bias),
            "high_confidence_count": self.high_confidence_count,
            "overconfidence_rate": self.overconfidence_rate,
        }


def _check_score(value: float, name: str) -> None:
    if not 0.0 <= value <= SCORE_RANGE:
        raise InvalidScoreError(
            f"{name} must be within [0, {SCORE_RANGE}], got {value}",
            details={name: value},
        )


class ValidationEngine:
    """Pure comparison and aggregation layer over validation results."""

    def __init__(
        self,
        config: Optional[ValidationConfig] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.config = config or ValidationConfig.from_settings()
        self._clock = clock

    def validate(
        self,
        unit_id: str,
        algorithm_score: float,
        human_score: Optional[float],
        method: str,
        validator_id: str,
        algorithm_confidence: Optional[float] = None,
        factor_scores: Optional[Mapping[str, float]] = None,
        window: Sequence[ValidationOutcome] = (),
        mood_score_id: Optional[int] = None,
    ) -> ValidationOutcome:
        """
        Compare one algorithm score with a human score.

        Args:
            unit_id: Unit being validated
            algorithm_score: Score produced by the scorer
            human_score: Human judgment, or None when the validator skipped
            method: How the human score was obtained
            validator_id: Who produced the human score
            algorithm_confidence: Scorer confidence for the unit
            factor_scores: Factor internal scores behind algorithm_score
            window: Earlier results from the same validator, oldest first

        Returns:
            ValidationOutcome; incomplete when human_score is None
        """
        _check_score(algorithm_score, "algorithm_score")
        if human_score is not None:
            _check_score(human_score, "human_score")

        discrepancy = abs(human_score - algorithm_score) / SCORE_RANGE if human_score is not None else None
        agreement = 1.0 - discrepancy if discrepancy is not None else None

        outcome = ValidationOutcome(
            unit_id=unit_id,
            algorithm_score=algorithm_score,
            human_score=human_score,
            validator_id=validator_id,
            method=method,
            agreement=agreement,
            discrepancy=discrepancy,
            algorithm_confidence=algorithm_confidence,
            factor_scores=dict(factor_scores or {}),
            validated_at=self._clock(),
            mood_score_id=mood_score_id,
        )

        peers = [r for r in window if r.validator_id == validator_id]
        metrics = self.aggregate(list(peers) + [outcome])
        if outcome.incomplete:
            logger.info(f"Validation of unit {unit_id} by {validator_id} is incomplete")

        return replace(
            outcome,
            bias_indicators={
                "direction": metrics.bias_direction,
                "mean_signed_error": metrics.mean_signed_error,
                "consistency": metrics.bias_consistency,
                "sample_size": metrics.sample_size,
            },
            accuracy_metrics={
                "correlation": metrics.correlation,
                "mae": metrics.mae,
                "rmse": metrics.rmse,
                "mean_agreement": metrics.mean_agreement,
                "sample_size": metrics.sample_size,
            },
        )

    def aggregate(self, results: Sequence[ValidationOutcome]) -> WindowMetrics:
        """
        Aggregate the most recent complete results, bounded by window_size.

        Incomplete results are skipped.
        """
        pairs: List[Tuple[float, float]] = []
        kept: List[ValidationOutcome] = []
        for result in list(results)[-self.config.window_size:]:
            try:
                pairs.append(result.training_pair())
            except IncompleteValidation:
                continue
            kept.append(result)

        if not pairs:
            return WindowMetrics.empty()

        algorithm = np.array([p[0] for p in pairs], dtype=float)
        human = np.array([p[1] for p in pairs], dtype=float)
        errors = algorithm - human
        abs_errors = np.abs(errors)

        mean_signed = float(np.mean(errors))
        direction, consistency = self._bias(errors, mean_signed)
        high_conf, over_rate = self._overconfidence(kept, abs_errors)

        return WindowMetrics(
            sample_size=len(pairs),
            mean_agreement=float(np.mean(1.0 - abs_errors / SCORE_RANGE)),
            mean_discrepancy=float(np.mean(abs_errors / SCORE_RANGE)),
            mae=float(np.mean(abs_errors)),
            rmse=float(np.sqrt(np.mean(errors ** 2))),
            correlation=self._correlation(algorithm, human),
            mean_signed_error=mean_signed,
            bias_direction=direction,
            bias_consistency=consistency,
            factor_bias=self._factor_bias(kept, errors),
            high_confidence_count=high_conf,
            overconfidence_rate=over_rate,
        )

    @staticmethod
    def complete_only(results: Sequence[ValidationOutcome]) -> List[ValidationOutcome]:
        return [r for r in results if not r.incomplete]

    def _bias(self, errors: np.ndarray, mean_signed: float) -> Tuple[str, float]:
        if mean_signed == 0:
            return "none", 0.0
        consistency = float(np.mean(np.sign(errors) == np.sign(mean_signed)))
        if abs(mean_signed) >= self.config.bias_threshold and consistency >= self.config.bias_consistency:
            return ("over_estimation" if mean_signed > 0 else "under_estimation"), consistency
        return "none", consistency

    @staticmethod
    def _correlation(algorithm: np.ndarray, human: np.ndarray) -> Optional[float]:
        if len(algorithm) < 3 or np.std(algorithm) == 0 or np.std(human) == 0:
            return None
        return float(np.corrcoef(algorithm, human)[0, 1])

    @staticmethod
    def _factor_bias(results: Sequence[ValidationOutcome], errors: np.ndarray) -> Dict[str, float]:
        """
        Per-factor contribution to squared-error loss.

        For factor f the contribution is mean((algorithm - human) * (s_f - algorithm))
        over the window, scaled to the mood range. A positive value means
        raising w_f would widen the error. Results without the factor
        contribute zero.
        """
        factor_types = sorted({t for r in results for t in r.factor_scores})
        bias: Dict[str, float] = {}
        for factor_type in factor_types:
            terms = [
                errors[i] * (r.factor_scores[factor_type] - r.algorithm_score)
                if factor_type in r.factor_scores
                else 0.0
                for i, r in enumerate(results)
            ]
            bias[factor_type] = float(np.mean(terms)) / SCORE_RANGE
        return bias

    def _overconfidence(
        self, results: Sequence[ValidationOutcome], abs_errors: np.ndarray
    ) -> Tuple[int, Optional[float]]:
        flags = [
            abs_errors[i] > self.config.overconfidence_error
            for i, r in enumerate(results)
            if r.algorithm_confidence is not None
            and r.algorithm_confidence > self.config.overconfidence_confidence
        ]
        if not flags:
            return 0, None
        return len(flags), float(np.mean(flags))


def outcome_from_row(row: ValidationResult) -> ValidationOutcome:
    """Rebuild a ValidationOutcome from its persisted row."""
    return ValidationOutcome(
        unit_id=row.memory_id,
        algorithm_score=row.algorithm_score,
        human_score=row.human_score,
        validator_id=row.validator_id,
        method=row.validation_method,
        agreement=row.agreement,
        discrepancy=row.discrepancy,
        algorithm_confidence=row.algorithm_confidence,
        factor_scores=dict(row.factor_scores or {}),
        bias_indicators=dict(row.bias_indicators or {}),
        accuracy_metrics=dict(row.accuracy_metrics or {}),
        validated_at=row.validated_at,
        mood_score_id=row.mood_score_id,
    )


def outcome_to_fields(outcome: ValidationOutcome) -> Dict[str, Any]:
    """Column values for persisting an outcome."""
    return {
        "memory_id": outcome.unit_id,
        "mood_score_id": outcome.mood_score_id,
        "human_score": outcome.human_score,
        "algorithm_score": outcome.algorithm_score,
        "algorithm_confidence": outcome.algorithm_confidence,
        "agreement": outcome.agreement,
        "discrepancy": outcome.discrepancy,
        "incomplete": outcome.incomplete,
        "validator_id": outcome.validator_id,
        "validation_method": outcome.method,
        "factor_scores": dict(outcome.factor_scores),
        "bias_indicators": dict(outcome.bias_indicators),
        "accuracy_metrics": dict(outcome.accuracy_metrics),
        "validated_at": outcome.validated_at or datetime.utcnow(),
    }
