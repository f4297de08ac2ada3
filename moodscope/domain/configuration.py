"""
Versioned scoring configuration and the store that publishes it.

Scorers bind to one immutable ScoringConfiguration per call. The calibration
loop publishes replacements through ConfigurationStore; nothing mutates a
configuration in place.
"""

import threading
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from moodscope.config import settings
from moodscope.utils.errors import ConfigurationError

WEIGHT_SUM = 1.0
WEIGHT_TOLERANCE = 1e-9

DEFAULT_WEIGHTS = {
    "sentiment_analysis": 0.35,
    "psychological_indicators": 0.25,
    "relationship_context": 0.20,
    "conversational_flow": 0.20,
}


@dataclass(frozen=True)
class ScoringConfiguration:
    """Immutable weight and threshold snapshot used by one scoring call."""

    weights: Mapping[str, float]
    version: int = 1
    confidence_ceiling: float = field(default_factory=lambda: settings.default_confidence_ceiling)

    def __post_init__(self):
        # Freeze the mapping so a caller-held dict cannot leak mutations in
        object.__setattr__(self, "weights", MappingProxyType(dict(self.weights)))
        validate_weights(self.weights)
        if not 0.0 < self.confidence_ceiling <= 1.0:
            raise ConfigurationError(
                f"confidence_ceiling must be in (0, 1], got {self.confidence_ceiling}",
                details={"confidence_ceiling": self.confidence_ceiling},
            )

    @classmethod
    def default(cls) -> "ScoringConfiguration":
        return cls(weights=DEFAULT_WEIGHTS)

    def weight_for(self, factor_type: str) -> float:
        return self.weights.get(factor_type, 0.0)

    def with_changes(
        self,
        weights: Optional[Mapping[str, float]] = None,
        confidence_ceiling: Optional[float] = None,
        version: Optional[int] = None,
    ) -> "ScoringConfiguration":
        """
        Return a new configuration with renormalized weights and/or a new
        ceiling. The version defaults to the next one after this configuration;
        stores pass the next version they will issue.
        """
        new_weights = normalize_weights(weights) if weights is not None else dict(self.weights)
        return ScoringConfiguration(
            weights=new_weights,
            version=version if version is not None else self.version + 1,
            confidence_ceiling=(
                confidence_ceiling if confidence_ceiling is not None else self.confidence_ceiling
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "weights": dict(self.weights),
            "confidence_ceiling": self.confidence_ceiling,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScoringConfiguration":
        return cls(
            weights=data["weights"],
            version=int(data.get("version", 1)),
            confidence_ceiling=float(data.get("confidence_ceiling", settings.default_confidence_ceiling)),
        )


def normalize_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """Scale weights so they sum to WEIGHT_SUM."""
    total = sum(weights.values())
    if total <= 0:
        raise ConfigurationError("Weights must have a positive sum", details={"weights": dict(weights)})
    return {k: v * WEIGHT_SUM / total for k, v in weights.items()}


def validate_weights(weights: Mapping[str, float]) -> None:
    """
    Raise ConfigurationError unless every weight is in [0, 1] and the set
    sums to the normalization constant.
    """
    if not weights:
        raise ConfigurationError("Weight set is empty")

    out_of_range = {k: v for k, v in weights.items() if v < 0.0 or v > 1.0}
    if out_of_range:
        raise ConfigurationError(
            "Weights must be within [0, 1]",
            details={"out_of_range": out_of_range},
        )

    total = sum(weights.values())
    if abs(total - WEIGHT_SUM) > WEIGHT_TOLERANCE:
        raise ConfigurationError(
            f"Weights must sum to {WEIGHT_SUM}, got {total}",
            details={"weights": dict(weights)},
        )


class ConfigurationStore:
    """
    Holds the active ScoringConfiguration and the stack of applied ones.

    Readers call current() and get an immutable reference. Writers publish a
    whole new configuration under the lock, so a reader can never observe a
    half-applied weight set.

    Version numbers only ever increase: a configuration must carry a version
    above every one the store has issued, and a restored weight set is
    reissued under a fresh version.
    """

    def __init__(self, initial: Optional[ScoringConfiguration] = None):
        self._lock = threading.Lock()
        # Held for a whole calibration cycle so cycles never interleave
        self.cycle_lock = threading.Lock()
        self._current = initial or ScoringConfiguration.default()
        self._applied: List[ScoringConfiguration] = [self._current]
        self._issued_version = self._current.version

    def current(self) -> ScoringConfiguration:
        return self._current

    def next_version(self) -> int:
        """Version the next published or restored configuration will carry."""
        return self._issued_version + 1

    def publish(self, config: ScoringConfiguration) -> ScoringConfiguration:
        """
        Make config active and return the configuration it replaced.

        Raises:
            ConfigurationError: If config reuses an already issued version
        """
        with self._lock:
            if config.version <= self._issued_version:
                raise ConfigurationError(
                    f"Configuration version {config.version} was already issued",
                    details={"version": config.version, "issued_version": self._issued_version},
                )
            previous = self._current
            self._applied.append(config)
            self._current = config
            self._issued_version = config.version
            return previous

    def restore_candidate(self) -> ScoringConfiguration:
        """
        Configuration restore_previous() would activate, without activating it.

        Raises:
            ConfigurationError: If no earlier configuration is held
        """
        with self._lock:
            return self._restorable()

    def restore_previous(self) -> ScoringConfiguration:
        """
        Reactivate the weight set applied before the current one under the
        next version number.

        Returns the restored configuration. The initial configuration is never
        popped.
        """
        with self._lock:
            restored = self._restorable()
            self._applied.pop()
            self._applied[-1] = restored
            self._current = restored
            self._issued_version = restored.version
            return restored

    def _restorable(self) -> ScoringConfiguration:
        if len(self._applied) < 2:
            raise ConfigurationError("No earlier applied configuration to restore")
        return replace(self._applied[-2], version=self._issued_version + 1)

    def applied_history(self) -> List[ScoringConfiguration]:
        with self._lock:
            return list(self._applied)
