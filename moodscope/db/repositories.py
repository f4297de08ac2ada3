"""
Repository pattern for data access.

Each repository handles a single aggregate. Repositories flush but never
commit; the caller owns the transaction boundary.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set

from sqlalchemy.orm import Session
from loguru import logger

from moodscope.db.models import (
    AnalysisMetadata,
    CalibrationHistory,
    DeltaPattern,
    DeltaPatternAssociation,
    Memory,
    MoodDelta,
    MoodFactor,
    MoodScore,
    TurningPoint,
    ValidationResult,
)
from moodscope.domain.deltas import DetectedDelta, DetectedPattern, DetectedTurningPoint
from moodscope.domain.scoring import MoodScoreResult
from moodscope.domain.units import ConversationalUnit, Message
from moodscope.utils.errors import DuplicateRecordError, RecordNotFoundError


class SqlMemoryStore:
    """MemoryStore adapter over the memories table."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, unit_id: str) -> Optional[Memory]:
        return self.db.query(Memory).filter(Memory.id == unit_id).first()

    def create(
        self,
        unit_id: str,
        participants: Sequence[str],
        messages: Sequence[Message],
        timestamp: datetime,
        summary: str = "",
        conversation_id: Optional[str] = None,
    ) -> Memory:
        """Create a new unit record."""
        if self.get_by_id(unit_id):
            raise DuplicateRecordError(f"Memory {unit_id} already exists")

        memory = Memory(
            id=unit_id,
            conversation_id=conversation_id,
            participants=list(participants),
            summary=summary,
            messages=[{"speaker": m.speaker, "role": m.role, "text": m.text} for m in messages],
            timestamp=timestamp,
        )
        self.db.add(memory)
        self.db.flush()
        return memory

    def get_unit(self, unit_id: str) -> ConversationalUnit:
        memory = self.get_by_id(unit_id)
        if not memory:
            raise RecordNotFoundError(f"Memory {unit_id} not found", details={"unit_id": unit_id})
        return self.to_unit(memory)

    def get_recent_units(
        self, participant_id: str, since: datetime, limit: int = 200
    ) -> List[ConversationalUnit]:
        """
        The newest `limit` units involving participant_id at or after since,
        oldest first.

        Rows are read newest first in pages of `limit` and reading stops once
        enough matches are found.
        """
        query = (
            self.db.query(Memory)
            .filter(Memory.timestamp >= since)
            .order_by(Memory.timestamp.desc(), Memory.id.desc())
        )
        units: List[ConversationalUnit] = []
        offset = 0
        while len(units) < limit:
            page = query.offset(offset).limit(limit).all()
            if not page:
                break
            # participants is a JSON list; filter portably in Python
            units.extend(self.to_unit(r) for r in page if participant_id in (r.participants or []))
            offset += len(page)
        units = units[:limit]
        units.reverse()
        return units

    def get_conversation_units(self, conversation_id: str, limit: int = 1000) -> List[ConversationalUnit]:
        """Units of one conversation, oldest first."""
        rows = (
            self.db.query(Memory)
            .filter(Memory.conversation_id == conversation_id)
            .order_by(Memory.timestamp.asc(), Memory.id.asc())
            .limit(limit)
            .all()
        )
        return [self.to_unit(r) for r in rows]

    @staticmethod
    def to_unit(memory: Memory) -> ConversationalUnit:
        return ConversationalUnit(
            id=memory.id,
            participants=tuple(memory.participants or ()),
            messages=tuple(
                Message(speaker=m.get("speaker", ""), text=m.get("text", ""), role=m.get("role", "participant"))
                for m in (memory.messages or [])
            ),
            timestamp=memory.timestamp,
            summary=memory.summary or "",
            conversation_id=memory.conversation_id,
        )


class MoodScoreRepository:
    """Repository for MoodScore and its MoodFactor set."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, score_id: int) -> Optional[MoodScore]:
        return self.db.query(MoodScore).filter(MoodScore.id == score_id).first()

    def create_from_result(self, result: MoodScoreResult) -> MoodScore:
        """Append a MoodScore and its factors."""
        mood_score = MoodScore(
            memory_id=result.unit_id,
            score=result.score,
            confidence=result.confidence,
            descriptors=list(result.descriptors),
            algorithm_version=result.algorithm_version,
            configuration_version=result.configuration_version,
            processing_time_ms=result.processing_time_ms,
            low_signal=result.low_signal,
            calculated_at=result.calculated_at,
        )
        self.db.add(mood_score)
        self.db.flush()

        for factor in result.factors:
            self.db.add(
                MoodFactor(
                    mood_score_id=mood_score.id,
                    type=factor.type,
                    weight=factor.weight,
                    description=factor.description,
                    evidence=list(factor.evidence),
                    internal_score=factor.internal_score,
                )
            )
        self.db.flush()
        self.db.refresh(mood_score)
        return mood_score

    def current_for(self, memory_id: str, algorithm_version: Optional[str] = None) -> Optional[MoodScore]:
        """Latest score for a unit, optionally restricted to one algorithm version."""
        query = self.db.query(MoodScore).filter(MoodScore.memory_id == memory_id)
        if algorithm_version:
            query = query.filter(MoodScore.algorithm_version == algorithm_version)
        return query.order_by(MoodScore.calculated_at.desc(), MoodScore.id.desc()).first()

    def history_for(self, memory_id: str) -> List[MoodScore]:
        return (
            self.db.query(MoodScore)
            .filter(MoodScore.memory_id == memory_id)
            .order_by(MoodScore.calculated_at.asc(), MoodScore.id.asc())
            .all()
        )


class AnalysisMetadataRepository:
    """Repository for per-unit diagnostics."""

    def __init__(self, db: Session):
        self.db = db

    def get_for(self, memory_id: str) -> Optional[AnalysisMetadata]:
        return self.db.query(AnalysisMetadata).filter(AnalysisMetadata.memory_id == memory_id).first()

    def upsert(self, memory_id: str, result: MoodScoreResult, issues: Sequence[str] = ()) -> AnalysisMetadata:
        metadata = self.get_for(memory_id)
        if metadata is None:
            metadata = AnalysisMetadata(memory_id=memory_id)
            self.db.add(metadata)

        metadata.processing_duration_ms = result.processing_time_ms
        metadata.confidence = result.confidence
        metadata.quality_metrics = dict(result.quality)
        metadata.issues = list(issues)
        metadata.updated_at = datetime.utcnow()
        self.db.flush()
        return metadata


class DeltaRepository:
    """Repository for deltas, turning points and patterns."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_sequence(self, conversation_id: str, sequence: int) -> Optional[MoodDelta]:
        return (
            self.db.query(MoodDelta)
            .filter(MoodDelta.conversation_id == conversation_id, MoodDelta.delta_sequence == sequence)
            .first()
        )

    def list_for_conversation(self, conversation_id: str) -> List[MoodDelta]:
        return (
            self.db.query(MoodDelta)
            .filter(MoodDelta.conversation_id == conversation_id)
            .order_by(MoodDelta.delta_sequence.asc())
            .all()
        )

    def create_delta(self, delta: DetectedDelta) -> MoodDelta:
        if delta.mood_score_id is None:
            raise RecordNotFoundError(
                f"Delta for unit {delta.unit_id} has no persisted MoodScore",
                details={"unit_id": delta.unit_id},
            )
        row = MoodDelta(
            memory_id=delta.unit_id,
            mood_score_id=delta.mood_score_id,
            previous_mood_score_id=delta.previous_mood_score_id,
            conversation_id=delta.conversation_id,
            delta_sequence=delta.sequence if delta.conversation_id else None,
            previous_score=delta.previous_score,
            current_score=delta.current_score,
            magnitude=delta.magnitude,
            direction=delta.direction.value,
            delta_type=delta.type.value,
            confidence=delta.confidence,
            significance=delta.significance,
            factors=list(delta.factors),
            temporal_context=dict(delta.temporal_context),
            detected_at=delta.timestamp,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def create_turning_point(self, turning_point: DetectedTurningPoint, delta_id: Optional[int]) -> TurningPoint:
        row = TurningPoint(
            memory_id=turning_point.delta.unit_id,
            delta_id=delta_id,
            conversation_id=turning_point.delta.conversation_id,
            timestamp=turning_point.timestamp,
            type=turning_point.type.value,
            magnitude=turning_point.magnitude,
            significance=turning_point.significance,
            confidence=turning_point.delta.confidence,
            temporal_context=turning_point.temporal_context,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def create_pattern(self, pattern: DetectedPattern, delta_ids: Sequence[int]) -> DeltaPattern:
        """Append a pattern and its member associations in rank order."""
        if len(delta_ids) != len(pattern.members):
            raise RecordNotFoundError(
                "Pattern members are not all persisted",
                details={"members": len(pattern.members), "persisted": len(delta_ids)},
            )
        last = pattern.members[-1]
        row = DeltaPattern(
            memory_id=last.unit_id,
            conversation_id=last.conversation_id,
            pattern_type=pattern.pattern_type.value,
            direction=pattern.direction.value,
            significance=pattern.significance,
            confidence=pattern.confidence,
            duration_seconds=pattern.duration_seconds,
            average_magnitude=pattern.average_magnitude,
        )
        self.db.add(row)
        self.db.flush()

        for order, delta_id in enumerate(delta_ids):
            self.db.add(DeltaPatternAssociation(pattern_id=row.id, delta_id=delta_id, sequence_order=order))
        self.db.flush()
        self.db.refresh(row)
        return row

    def turning_points_for_conversation(self, conversation_id: str) -> List[TurningPoint]:
        return (
            self.db.query(TurningPoint)
            .filter(TurningPoint.conversation_id == conversation_id)
            .order_by(TurningPoint.timestamp.asc(), TurningPoint.id.asc())
            .all()
        )

    def patterns_for_conversation(self, conversation_id: str) -> List[DeltaPattern]:
        return (
            self.db.query(DeltaPattern)
            .filter(DeltaPattern.conversation_id == conversation_id)
            .order_by(DeltaPattern.id.asc())
            .all()
        )

    def turning_point_sequences(self, conversation_id: str) -> Set[int]:
        """Delta sequences that already carry a turning point."""
        return {
            tp.delta.delta_sequence
            for tp in self.turning_points_for_conversation(conversation_id)
            if tp.delta is not None
        }

    def pattern_start_sequences(self, conversation_id: str) -> Set[int]:
        """Sequence of the first member of every persisted pattern."""
        return {
            min(a.delta.delta_sequence for a in pattern.associations)
            for pattern in self.patterns_for_conversation(conversation_id)
            if pattern.associations
        }


class ValidationRepository:
    """Repository for ValidationResult rows."""

    def __init__(self, db: Session):
        self.db = db

    def create(self, **fields: Any) -> ValidationResult:
        row = ValidationResult(**fields)
        self.db.add(row)
        self.db.flush()
        return row

    def recent(
        self,
        limit: int,
        validator_id: Optional[str] = None,
        complete_only: bool = False,
    ) -> List[ValidationResult]:
        """Most recent results, bounded by limit, returned oldest first."""
        query = self.db.query(ValidationResult)
        if validator_id:
            query = query.filter(ValidationResult.validator_id == validator_id)
        if complete_only:
            query = query.filter(ValidationResult.incomplete == False)  # noqa: E712
        rows = query.order_by(ValidationResult.validated_at.desc(), ValidationResult.id.desc()).limit(limit).all()
        return list(reversed(rows))


class CalibrationHistoryRepository:
    """Append-only access to the calibration audit log."""

    ACTIVE_STATUSES = ("applied", "rolled_back")

    def __init__(self, db: Session):
        self.db = db

    def append(self, calibration_id: str, **fields: Any) -> CalibrationHistory:
        existing = (
            self.db.query(CalibrationHistory)
            .filter(CalibrationHistory.calibration_id == calibration_id)
            .first()
        )
        if existing:
            raise DuplicateRecordError(f"Calibration entry {calibration_id} already exists")

        entry = CalibrationHistory(calibration_id=calibration_id, **fields)
        self.db.add(entry)
        self.db.flush()
        logger.debug(f"Calibration history appended: {entry}")
        return entry

    def get_all(self, limit: int = 100, offset: int = 0) -> List[CalibrationHistory]:
        """Entries newest first."""
        return (
            self.db.query(CalibrationHistory)
            .order_by(CalibrationHistory.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def for_cycle(self, cycle_id: str) -> List[CalibrationHistory]:
        return (
            self.db.query(CalibrationHistory)
            .filter(CalibrationHistory.cycle_id == cycle_id)
            .order_by(CalibrationHistory.id.asc())
            .all()
        )

    def latest(self) -> Optional[CalibrationHistory]:
        return self.db.query(CalibrationHistory).order_by(CalibrationHistory.id.desc()).first()

    def latest_active_configuration(self) -> Optional[Dict[str, Any]]:
        """Configuration left active by the most recent applied or rolled back entry."""
        entry = (
            self.db.query(CalibrationHistory)
            .filter(CalibrationHistory.status.in_(self.ACTIVE_STATUSES))
            .order_by(CalibrationHistory.id.desc())
            .first()
        )
        return entry.new_value if entry else None
