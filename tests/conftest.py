"""
Shared pytest fixtures for the MoodScope test suite.

Provides an isolated SQLite database per test, unit and conversation
factories, a scorer with exactly controllable scores, and validation
outcome builders.
"""

import os
from datetime import datetime, timedelta

import pytest

# Keep the global engine and scheduler away from real resources
os.environ.setdefault("DATABASE_URL", "sqlite:///./moodscope_test.db")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from moodscope.db.models import Base
from moodscope.db.repositories import SqlMemoryStore
from moodscope.domain.configuration import ConfigurationStore
from moodscope.domain.factors import FactorSignal, FactorType
from moodscope.domain.scoring import MoodScorer
from moodscope.domain.units import Message
from moodscope.services.calibration_controller import reset_shared_configuration_store
from moodscope.services.validation_engine import ValidationOutcome

BASE_TIME = datetime(2026, 3, 1, 9, 0, 0)

SCENARIO_C_FACTORS = {
    "sentiment_analysis": 9.0,
    "psychological_indicators": 7.0,
    "relationship_context": 6.0,
    "conversational_flow": 6.0,
}


class SummaryScoreExtractor:
    """Reads the score encoded as the first token of the unit summary."""

    def __init__(self, factor_type: FactorType):
        self.factor_type = factor_type

    def extract(self, unit):
        score = float(unit.summary.split()[0])
        return FactorSignal(
            type=self.factor_type,
            internal_score=score,
            evidence=(f"{self.factor_type.value} cue", "scripted cue"),
            description="scripted",
        )


@pytest.fixture(autouse=True)
def reset_configuration_store():
    """Every test starts from the default scoring configuration."""
    reset_shared_configuration_store()
    yield
    reset_shared_configuration_store()


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'moodscope_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Fresh database session on an isolated database."""
    session = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def fixed_clock():
    return lambda: BASE_TIME


@pytest.fixture
def memory_store(db_session):
    return SqlMemoryStore(db_session)


@pytest.fixture
def make_unit(memory_store, db_session):
    """
    Create and commit a unit. Messages alternate between the first two
    participants.
    """

    def _make(
        unit_id,
        texts=(),
        timestamp=BASE_TIME,
        participants=("alice", "bob"),
        summary="",
        conversation_id=None,
    ):
        messages = [
            Message(speaker=participants[i % len(participants)], text=text)
            for i, text in enumerate(texts)
        ]
        memory = memory_store.create(
            unit_id,
            participants=participants,
            messages=messages,
            timestamp=timestamp,
            summary=summary,
            conversation_id=conversation_id,
        )
        db_session.commit()
        return memory

    return _make


@pytest.fixture
def scripted_scorer(fixed_clock):
    """
    Scorer whose four factors all report the score encoded in the unit
    summary, so the combined score equals it exactly at confidence 0.95.
    """
    return MoodScorer(
        config_source=ConfigurationStore(),
        extractors=[SummaryScoreExtractor(t) for t in FactorType],
        clock=fixed_clock,
        timer=lambda: 0.0,
    )


@pytest.fixture
def make_scored_conversation(make_unit):
    """Create one unit per score, step_minutes apart, scored by scripted_scorer."""

    def _make(conversation_id, scores, start=BASE_TIME, step_minutes=10, participants=("alice", "bob")):
        unit_ids = []
        for i, score in enumerate(scores):
            unit_id = f"{conversation_id}-{i}"
            make_unit(
                unit_id,
                texts=["checking in about the week"],
                timestamp=start + timedelta(minutes=step_minutes * i),
                participants=participants,
                summary=f"{score} " + "steady " * 40,
                conversation_id=conversation_id,
            )
            unit_ids.append(unit_id)
        return unit_ids

    return _make


@pytest.fixture
def make_outcome():
    """Build a complete ValidationOutcome for window tests."""

    def _make(
        algorithm_score,
        human_score,
        factor_scores=None,
        confidence=0.7,
        validator_id="rater-1",
        unit_id="unit",
        validated_at=BASE_TIME,
    ):
        agreement = None
        discrepancy = None
        if human_score is not None:
            discrepancy = abs(human_score - algorithm_score) / 10.0
            agreement = 1.0 - discrepancy
        return ValidationOutcome(
            unit_id=unit_id,
            algorithm_score=algorithm_score,
            human_score=human_score,
            validator_id=validator_id,
            method="manual_rating",
            agreement=agreement,
            discrepancy=discrepancy,
            algorithm_confidence=confidence,
            factor_scores=dict(factor_scores or {}),
            validated_at=validated_at,
        )

    return _make


@pytest.fixture
def scenario_c_window(make_outcome):
    """Twenty results at agreement 0.55 with sentiment pulling the score up."""
    return [
        make_outcome(7.3, 2.8, SCENARIO_C_FACTORS, unit_id=f"c-{i}")
        for i in range(20)
    ]


@pytest.fixture
def scenario_d_window(make_outcome):
    """Twenty results at agreement 0.40 with no factor disagreement."""
    factors = {t.value: 8.8 for t in FactorType}
    return [make_outcome(8.8, 2.8, factors, unit_id=f"d-{i}") for i in range(20)]
