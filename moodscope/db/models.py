"""
SQLAlchemy 2.0 database models for MoodScope.

Scoring, delta, validation and calibration rows are append-only history tied
to the MemoryStore-owned unit by foreign key. AnalysisMetadata is the one
diagnostic table that may be rewritten.
"""

import sqlite3
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, relationship

from moodscope.utils.errors import AppendOnlyViolation

Base = declarative_base()


class Memory(Base):
    """Conversational unit as stored by the MemoryStore."""

    __tablename__ = "memories"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, nullable=True, index=True)
    participants = Column(JSON, nullable=False, default=list)
    summary = Column(Text, nullable=True)
    messages = Column(JSON, nullable=False, default=list)  # [{"speaker", "role", "text"}]
    timestamp = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Memory(id={self.id}, conversation={self.conversation_id}, timestamp={self.timestamp})>"


class MoodScore(Base):
    """Mood score for one unit under one algorithm version."""

    __tablename__ = "mood_scores"
    __table_args__ = (
        CheckConstraint("score >= 0 AND score <= 10", name="ck_mood_score_range"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_mood_score_confidence"),
        CheckConstraint("processing_time_ms >= 0", name="ck_mood_score_processing_time"),
        Index("ix_mood_scores_memory_version", "memory_id", "algorithm_version"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    memory_id = Column(String, ForeignKey("memories.id"), nullable=False, index=True)
    score = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    descriptors = Column(JSON, nullable=False, default=list)
    algorithm_version = Column(String, nullable=False)
    configuration_version = Column(Integer, nullable=False, default=1)
    processing_time_ms = Column(Integer, nullable=False, default=0)
    low_signal = Column(Boolean, nullable=False, default=False)
    calculated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    memory = relationship("Memory", backref="mood_scores")
    factors = relationship("MoodFactor", backref="mood_score", order_by="MoodFactor.id")

    @property
    def factor_scores(self) -> dict:
        return {f.type: f.internal_score for f in self.factors if f.internal_score is not None}

    def __repr__(self) -> str:
        return f"<MoodScore(memory_id={self.memory_id}, score={self.score:.2f}, conf={self.confidence:.2f})>"


class MoodFactor(Base):
    """One weighted factor contributing to a MoodScore."""

    __tablename__ = "mood_factors"
    __table_args__ = (
        CheckConstraint("weight >= 0 AND weight <= 1", name="ck_mood_factor_weight"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    mood_score_id = Column(Integer, ForeignKey("mood_scores.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    weight = Column(Float, nullable=False)
    description = Column(Text, nullable=True)
    evidence = Column(JSON, nullable=False, default=list)
    internal_score = Column(Float, nullable=True)

    def __repr__(self) -> str:
        return f"<MoodFactor(type={self.type}, weight={self.weight:.3f}, internal={self.internal_score})>"


class MoodDelta(Base):
    """Change between two consecutive mood scores."""

    __tablename__ = "mood_deltas"
    __table_args__ = (
        UniqueConstraint("conversation_id", "delta_sequence", name="uix_delta_conversation_sequence"),
        CheckConstraint("significance >= 0 AND significance <= 1", name="ck_mood_delta_significance"),
        CheckConstraint("magnitude >= 0", name="ck_mood_delta_magnitude"),
        Index("ix_mood_deltas_conversation", "conversation_id"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    memory_id = Column(String, ForeignKey("memories.id"), nullable=False, index=True)
    mood_score_id = Column(Integer, ForeignKey("mood_scores.id"), nullable=False)
    previous_mood_score_id = Column(Integer, ForeignKey("mood_scores.id"), nullable=True)
    conversation_id = Column(String, nullable=True)
    delta_sequence = Column(Integer, nullable=True)
    previous_score = Column(Float, nullable=False)
    current_score = Column(Float, nullable=False)
    magnitude = Column(Float, nullable=False)
    direction = Column(String, nullable=False)  # improving, declining, stable
    delta_type = Column(String, nullable=False)
    confidence = Column(Float, nullable=False)
    significance = Column(Float, nullable=False)
    factors = Column(JSON, nullable=False, default=list)
    temporal_context = Column(JSON, nullable=False, default=dict)
    detected_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return (
            f"<MoodDelta(conversation={self.conversation_id}, seq={self.delta_sequence}, "
            f"{self.previous_score:.1f}->{self.current_score:.1f}, {self.direction})>"
        )


class DeltaPattern(Base):
    """Run of same-direction deltas."""

    __tablename__ = "delta_patterns"
    __table_args__ = (
        CheckConstraint("significance >= 0 AND significance <= 1", name="ck_delta_pattern_significance"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    memory_id = Column(String, ForeignKey("memories.id"), nullable=False, index=True)
    conversation_id = Column(String, nullable=True, index=True)
    pattern_type = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    significance = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    average_magnitude = Column(Float, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    associations = relationship(
        "DeltaPatternAssociation", backref="pattern", order_by="DeltaPatternAssociation.sequence_order"
    )

    def __repr__(self) -> str:
        return f"<DeltaPattern(type={self.pattern_type}, members={len(self.associations)})>"


class DeltaPatternAssociation(Base):
    """Membership of a delta in a pattern, ranked by sequence_order from 0."""

    __tablename__ = "delta_pattern_associations"
    __table_args__ = (
        UniqueConstraint("pattern_id", "delta_id", name="uix_pattern_delta"),
        UniqueConstraint("pattern_id", "sequence_order", name="uix_pattern_sequence_order"),
        CheckConstraint("sequence_order >= 0", name="ck_pattern_sequence_order"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    pattern_id = Column(Integer, ForeignKey("delta_patterns.id"), nullable=False, index=True)
    delta_id = Column(Integer, ForeignKey("mood_deltas.id"), nullable=False, index=True)
    sequence_order = Column(Integer, nullable=False)

    delta = relationship("MoodDelta")


class TurningPoint(Base):
    """Delta whose significance crossed the turning point threshold."""

    __tablename__ = "turning_points"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    memory_id = Column(String, ForeignKey("memories.id"), nullable=False, index=True)
    delta_id = Column(Integer, ForeignKey("mood_deltas.id"), nullable=True)
    conversation_id = Column(String, nullable=True, index=True)
    timestamp = Column(DateTime, nullable=False)
    type = Column(String, nullable=False)
    magnitude = Column(Float, nullable=False)
    significance = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    temporal_context = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)

    delta = relationship("MoodDelta")

    def __repr__(self) -> str:
        return f"<TurningPoint(type={self.type}, magnitude={self.magnitude:.2f}, sig={self.significance:.2f})>"


class ValidationResult(Base):
    """Algorithm score compared against one human judgment."""

    __tablename__ = "validation_results"
    __table_args__ = (
        Index("ix_validation_results_validator", "validator_id", "validated_at"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    memory_id = Column(String, ForeignKey("memories.id"), nullable=False, index=True)
    mood_score_id = Column(Integer, ForeignKey("mood_scores.id"), nullable=True)
    human_score = Column(Float, nullable=True)
    algorithm_score = Column(Float, nullable=False)
    algorithm_confidence = Column(Float, nullable=True)
    agreement = Column(Float, nullable=True)
    discrepancy = Column(Float, nullable=True)
    incomplete = Column(Boolean, nullable=False, default=False)
    validator_id = Column(String, nullable=False)
    validation_method = Column(String, nullable=False)
    factor_scores = Column(JSON, nullable=False, default=dict)
    bias_indicators = Column(JSON, nullable=False, default=dict)
    accuracy_metrics = Column(JSON, nullable=False, default=dict)
    validated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<ValidationResult(memory_id={self.memory_id}, human={self.human_score}, algo={self.algorithm_score})>"


class CalibrationHistory(Base):
    """Audit entry for one calibration state transition."""

    __tablename__ = "calibration_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    calibration_id = Column(String, unique=True, nullable=False)
    cycle_id = Column(String, nullable=False, index=True)
    adjustment_type = Column(String, nullable=False)
    target_component = Column(String, nullable=False)
    previous_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    performance_metrics = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False)  # proposed, applied, rejected, rolled_back
    reason = Column(Text, nullable=True)
    applied_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<CalibrationHistory(cycle={self.cycle_id}, status={self.status}, type={self.adjustment_type})>"


class AnalysisMetadata(Base):
    """Diagnostics for the latest scoring pass of a unit."""

    __tablename__ = "analysis_metadata"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    memory_id = Column(String, ForeignKey("memories.id"), nullable=False, unique=True)
    processing_duration_ms = Column(Integer, nullable=False, default=0)
    confidence = Column(Float, nullable=False)
    quality_metrics = Column(JSON, nullable=False, default=dict)
    issues = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ============================================================================
# Integrity listeners
# ============================================================================

APPEND_ONLY_MODELS = (
    MoodScore,
    MoodFactor,
    MoodDelta,
    DeltaPattern,
    DeltaPatternAssociation,
    TurningPoint,
    ValidationResult,
    CalibrationHistory,
)


@event.listens_for(Session, "before_flush")
def reject_history_edits(session, flush_context, instances):
    """Refuse to flush updates or deletes of append-only rows."""
    for obj in session.dirty:
        if isinstance(obj, APPEND_ONLY_MODELS) and session.is_modified(obj, include_collections=False):
            raise AppendOnlyViolation(
                f"{type(obj).__name__} rows are append-only",
                details={"table": obj.__tablename__, "id": obj.id},
            )
    for obj in session.deleted:
        if isinstance(obj, APPEND_ONLY_MODELS):
            raise AppendOnlyViolation(
                f"{type(obj).__name__} rows cannot be deleted",
                details={"table": obj.__tablename__, "id": obj.id},
            )


@event.listens_for(Engine, "connect")
def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite only enforces foreign keys when asked to."""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
