"""
Integration tests for MoodAnalysisService against an isolated SQLite
database: persistence, transactions, append-only history and reads.
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from moodscope.db.models import AnalysisMetadata, MoodFactor, MoodScore
from moodscope.domain.deltas import DeltaDetector, DetectorConfig
from moodscope.domain.scoring import MoodScorer
from moodscope.domain.trajectory import DeviationType, TransitionType
from moodscope.services.mood_service import MoodAnalysisService
from moodscope.utils.errors import (
    AppendOnlyViolation,
    DatabaseError,
    DuplicateRecordError,
    InvalidScoreError,
    OrderingError,
    RecordNotFoundError,
)

from tests.conftest import BASE_TIME

DETECTOR_CONFIG = DetectorConfig(
    stability_band=0.5,
    conclusion_position_weight=1.2,
    turning_point_threshold=0.75,
    significance_scale=4.0,
    min_pattern_magnitude=0.5,
    abrupt_magnitude=2.0,
    turning_point_merge_seconds=1800,
)

POSITIVE_MESSAGES = [
    "I'm so happy today, I finally got the job and I feel really grateful and hopeful.",
    "That's wonderful news! I'm proud of you, we should celebrate together.",
    "Thank you, that really helps. I love how supportive you are.",
]


@pytest.fixture
def service(db_session, fixed_clock):
    return MoodAnalysisService(
        db_session,
        scorer=MoodScorer(clock=fixed_clock, timer=lambda: 0.0),
        detector=DeltaDetector(DETECTOR_CONFIG),
    )


@pytest.fixture
def scripted_service(db_session, scripted_scorer):
    return MoodAnalysisService(db_session, scorer=scripted_scorer, detector=DeltaDetector(DETECTOR_CONFIG))


class TestScoreUnit:
    def test_persists_score_factors_and_metadata(self, service, make_unit, db_session):
        make_unit("u-1", POSITIVE_MESSAGES)

        mood_score = service.score_unit("u-1")

        assert mood_score.id is not None
        assert mood_score.score >= 7.0
        assert 0.0 <= mood_score.confidence <= 1.0
        factors = db_session.query(MoodFactor).filter(MoodFactor.mood_score_id == mood_score.id).all()
        assert factors
        assert all(0.0 <= f.weight <= 1.0 for f in factors)
        metadata = db_session.query(AnalysisMetadata).filter(AnalysisMetadata.memory_id == "u-1").one()
        assert metadata.confidence == pytest.approx(mood_score.confidence)
        assert metadata.issues == []

    def test_missing_unit_raises(self, service, db_session):
        with pytest.raises(RecordNotFoundError):
            service.score_unit("missing")
        assert db_session.query(MoodScore).count() == 0

    def test_low_signal_unit_is_persisted_without_factors(self, service, make_unit, db_session):
        make_unit("u-empty", [])

        mood_score = service.score_unit("u-empty")

        assert mood_score.score == 5.0
        assert mood_score.low_signal
        assert mood_score.factors == []
        metadata = db_session.query(AnalysisMetadata).filter(AnalysisMetadata.memory_id == "u-empty").one()
        assert metadata.issues == ["low_signal"]

    def test_rescoring_appends_and_metadata_is_rewritten(self, service, make_unit, db_session):
        make_unit("u-1", POSITIVE_MESSAGES)
        first = service.score_unit("u-1")
        second = service.score_unit("u-1")

        assert first.id != second.id
        assert db_session.query(MoodScore).filter(MoodScore.memory_id == "u-1").count() == 2
        assert db_session.query(AnalysisMetadata).count() == 1
        assert service.get_current_mood("u-1").id == second.id

    def test_failed_write_leaves_no_partial_rows(self, service, make_unit, db_session, monkeypatch):
        make_unit("u-1", POSITIVE_MESSAGES)

        def fail(*args, **kwargs):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(service.metadata, "upsert", fail)

        with pytest.raises(DatabaseError):
            service.score_unit("u-1")
        assert db_session.query(MoodScore).count() == 0
        assert db_session.query(MoodFactor).count() == 0

    def test_duplicate_unit_rejected(self, make_unit):
        make_unit("u-1", POSITIVE_MESSAGES)
        with pytest.raises(DuplicateRecordError):
            make_unit("u-1", POSITIVE_MESSAGES)


class TestAppendOnlyHistory:
    def test_score_update_is_refused(self, service, make_unit, db_session):
        make_unit("u-1", POSITIVE_MESSAGES)
        mood_score = service.score_unit("u-1")

        mood_score.score = 1.0
        with pytest.raises(AppendOnlyViolation):
            db_session.commit()
        db_session.rollback()

        db_session.expire_all()
        assert db_session.get(MoodScore, mood_score.id).score != 1.0

    def test_score_delete_is_refused(self, service, make_unit, db_session):
        make_unit("u-1", POSITIVE_MESSAGES)
        mood_score = service.score_unit("u-1")

        db_session.delete(mood_score)
        with pytest.raises(AppendOnlyViolation):
            db_session.flush()
        db_session.rollback()


class TestTrackConversation:
    def test_stable_sequence_with_one_drop(self, scripted_service, make_scored_conversation):
        unit_ids = make_scored_conversation("conv-b", [6.0, 6.1, 6.0, 2.0, 6.3])

        tracking = scripted_service.track_conversation("conv-b", concluded=True)

        assert tracking.scored_units == unit_ids
        assert [d.delta_sequence for d in tracking.deltas] == [1, 2, 3, 4]
        assert tracking.pending_deltas == 0
        assert len(tracking.turning_points) == 1
        tp = tracking.turning_points[0]
        assert tp.memory_id == unit_ids[3]
        assert tp.type == "setback"
        assert tp.magnitude == pytest.approx(4.0)
        assert tp.confidence == pytest.approx(0.95)
        assert tp.delta_id == tracking.deltas[2].id
        assert tracking.patterns == []

    def test_rebound_folds_into_setback_with_hourly_units(self, scripted_service, make_scored_conversation):
        make_scored_conversation("conv-h", [6.0, 6.1, 6.0, 2.0, 6.3], step_minutes=60)

        tracking = scripted_service.track_conversation("conv-h", concluded=True)

        assert [tp.type for tp in tracking.turning_points] == ["setback"]
        assert tracking.turning_points[0].temporal_context["merged_delta_indices"] == [3]

    def test_open_conversation_holds_back_final_quartile(self, scripted_service, make_scored_conversation):
        make_scored_conversation("conv-b", [6.0, 6.1, 6.0, 2.0, 6.3])

        tracking = scripted_service.track_conversation("conv-b")

        assert [d.delta_sequence for d in tracking.deltas] == [1, 2, 3]
        assert tracking.pending_deltas == 1
        assert all(d.temporal_context["position_weight"] == 1.0 for d in tracking.deltas)
        # The setback's merge window is still open
        assert tracking.turning_points == []

    def test_closed_turning_point_is_kept_while_open(self, scripted_service, make_scored_conversation):
        make_scored_conversation("conv-h", [6.0, 6.1, 6.0, 2.0, 6.3, 6.2, 6.3, 6.2, 6.3], step_minutes=60)

        tracking = scripted_service.track_conversation("conv-h")
        assert [d.delta_sequence for d in tracking.deltas] == [1, 2, 3, 4, 5, 6]
        assert [tp.memory_id for tp in tracking.turning_points] == ["conv-h-3"]

        final = scripted_service.track_conversation("conv-h", concluded=True)
        assert [d.delta_sequence for d in final.deltas] == [7, 8]
        assert final.turning_points == []
        assert len(scripted_service.conversation_summary("conv-h")["turning_points"]) == 1

    def test_unit_by_unit_tracking_matches_one_pass(self, scripted_service, make_unit, make_scored_conversation):
        scores = [6.0, 3.0, 3.1, 3.0, 3.1]
        for i, score in enumerate(scores):
            make_unit(
                f"conv-i-{i}",
                texts=["checking in about the week"],
                timestamp=BASE_TIME + timedelta(minutes=10 * i),
                summary=f"{score} " + "steady " * 40,
                conversation_id="conv-i",
            )
            scripted_service.track_conversation("conv-i")
        scripted_service.track_conversation("conv-i", concluded=True)

        make_scored_conversation("conv-s", scores)
        scripted_service.track_conversation("conv-s", concluded=True)

        incremental = scripted_service.conversation_summary("conv-i")
        single = scripted_service.conversation_summary("conv-s")
        assert [d.delta_sequence for d in incremental["deltas"]] == [1, 2, 3, 4]
        assert [d.significance for d in incremental["deltas"]] == pytest.approx(
            [d.significance for d in single["deltas"]]
        )
        # 6.0 -> 3.0 at significance 0.7125 is below the threshold once it leaves the final quartile
        assert incremental["deltas"][0].significance == pytest.approx(0.7125)
        assert incremental["turning_points"] == single["turning_points"] == []
        assert incremental["patterns"] == single["patterns"] == []

    def test_tracking_is_idempotent(self, scripted_service, make_scored_conversation):
        make_scored_conversation("conv-b", [6.0, 6.1, 6.0, 2.0, 6.3])
        scripted_service.track_conversation("conv-b", concluded=True)

        again = scripted_service.track_conversation("conv-b", concluded=True)

        assert again.scored_units == []
        assert again.deltas == []
        assert again.turning_points == []
        assert again.patterns == []

    def test_new_units_append_new_deltas(self, scripted_service, make_scored_conversation, make_unit):
        make_scored_conversation("conv-b", [6.0, 6.1, 6.0, 2.0, 6.3])
        scripted_service.track_conversation("conv-b")

        make_unit(
            "conv-b-5",
            texts=["checking in about the week"],
            timestamp=BASE_TIME + timedelta(minutes=50),
            summary="6.4 " + "steady " * 40,
            conversation_id="conv-b",
        )
        tracking = scripted_service.track_conversation("conv-b")
        assert tracking.scored_units == ["conv-b-5"]
        assert tracking.deltas == []
        assert tracking.pending_deltas == 2

        tracking = scripted_service.track_conversation("conv-b", concluded=True)
        assert [d.delta_sequence for d in tracking.deltas] == [4, 5]
        summary = scripted_service.conversation_summary("conv-b")
        assert [d.delta_sequence for d in summary["deltas"]] == [1, 2, 3, 4, 5]
        assert len(summary["turning_points"]) == 1

    def test_patterns_are_persisted_with_ranked_members(self, scripted_service, make_scored_conversation):
        make_scored_conversation("conv-p", [3.0, 4.0, 5.0, 6.0])

        tracking = scripted_service.track_conversation("conv-p", concluded=True)

        assert len(tracking.patterns) == 1
        pattern = tracking.patterns[0]
        assert pattern.pattern_type == "sustained_improvement"
        assert [a.sequence_order for a in pattern.associations] == [0, 1, 2]
        assert [a.delta.delta_sequence for a in pattern.associations] == [1, 2, 3]

    def test_extended_run_is_persisted_once(self, scripted_service, make_scored_conversation, make_unit):
        make_scored_conversation("conv-p", [3.0, 4.0, 5.0])
        assert scripted_service.track_conversation("conv-p").patterns == []

        make_unit(
            "conv-p-3",
            texts=["checking in about the week"],
            timestamp=BASE_TIME + timedelta(minutes=30),
            summary="6.0 " + "steady " * 40,
            conversation_id="conv-p",
        )
        assert scripted_service.track_conversation("conv-p").patterns == []
        final = scripted_service.track_conversation("conv-p", concluded=True)

        patterns = scripted_service.conversation_summary("conv-p")["patterns"]
        assert len(patterns) == 1
        assert final.patterns == patterns
        assert [a.delta.delta_sequence for a in patterns[0].associations] == [1, 2, 3]

    def test_closed_run_is_not_duplicated(self, scripted_service, make_scored_conversation):
        make_scored_conversation("conv-p", [3.0, 4.0, 5.0, 5.1, 5.0, 5.1, 5.0, 5.1, 5.0])

        tracking = scripted_service.track_conversation("conv-p")
        assert len(tracking.patterns) == 1
        assert [a.delta.delta_sequence for a in tracking.patterns[0].associations] == [1, 2]

        final = scripted_service.track_conversation("conv-p", concluded=True)
        assert final.patterns == []
        assert len(scripted_service.conversation_summary("conv-p")["patterns"]) == 1

    def test_failure_keeps_earlier_deltas(self, scripted_service, make_scored_conversation, monkeypatch):
        make_scored_conversation("conv-b", [6.0, 6.1, 6.0, 2.0, 6.3])
        original = scripted_service.deltas.create_turning_point

        def fail(*args, **kwargs):
            raise SQLAlchemyError("constraint failed")

        monkeypatch.setattr(scripted_service.deltas, "create_turning_point", fail)
        with pytest.raises(DatabaseError):
            scripted_service.track_conversation("conv-b", concluded=True)

        summary = scripted_service.conversation_summary("conv-b")
        assert [d.delta_sequence for d in summary["deltas"]] == [1, 2]

        monkeypatch.setattr(scripted_service.deltas, "create_turning_point", original)
        tracking = scripted_service.track_conversation("conv-b", concluded=True)
        assert [d.delta_sequence for d in tracking.deltas] == [3, 4]
        assert len(tracking.turning_points) == 1

    def test_unknown_conversation_is_empty(self, scripted_service):
        tracking = scripted_service.track_conversation("nothing-here")
        assert tracking.deltas == []
        assert tracking.pending_deltas == 0


class TestTrajectory:
    def test_trajectory_for_participant(self, scripted_service, make_scored_conversation):
        unit_ids = make_scored_conversation("conv-b", [6.0, 6.1, 6.0, 2.0, 6.3])
        scripted_service.track_conversation("conv-b")

        trajectory = scripted_service.get_trajectory("alice", since=BASE_TIME - timedelta(days=1))

        assert [p.unit_id for p in trajectory.points] == unit_ids
        assert len(trajectory.deltas) == 4
        assert trajectory.key_deltas[0].unit_id == unit_ids[4]
        assert [tp.delta.unit_id for tp in trajectory.turning_points] == [unit_ids[3]]

    def test_other_participants_are_excluded(self, scripted_service, make_scored_conversation):
        make_scored_conversation("conv-b", [6.0, 2.0])
        scripted_service.track_conversation("conv-b")

        trajectory = scripted_service.get_trajectory("carol", since=BASE_TIME - timedelta(days=1))
        assert trajectory.points == []
        assert trajectory.deltas == []

    def test_since_bounds_the_window(self, scripted_service, make_scored_conversation):
        unit_ids = make_scored_conversation("conv-b", [6.0, 6.1, 6.0, 2.0, 6.3])
        scripted_service.track_conversation("conv-b")

        trajectory = scripted_service.get_trajectory("alice", since=BASE_TIME + timedelta(minutes=25))
        assert [p.unit_id for p in trajectory.points] == unit_ids[3:]

    def test_unscored_units_are_left_out(self, scripted_service, make_scored_conversation):
        make_scored_conversation("conv-b", [6.0, 2.0])
        trajectory = scripted_service.get_trajectory("alice", since=BASE_TIME - timedelta(days=1))
        assert trajectory.points == []

    def test_trajectory_shape_and_baseline(self, scripted_service, make_scored_conversation):
        unit_ids = make_scored_conversation("conv-t", [6.0, 6.1, 6.0, 6.2, 6.1, 2.0])
        scripted_service.track_conversation("conv-t")

        trajectory = scripted_service.get_trajectory("alice", since=BASE_TIME - timedelta(days=1))

        assert trajectory.baseline.data_points == 5
        assert trajectory.baseline.average == pytest.approx(6.08)
        assert trajectory.deviation.type == DeviationType.SIGNIFICANT_DECLINE
        # 4.1 points in 10 minutes
        assert [t.unit_id for t in trajectory.transitions] == [unit_ids[5]]
        assert trajectory.transitions[0].type == TransitionType.SUDDEN
        assert trajectory.velocity == pytest.approx(-4.8)
        assert trajectory.plateau is None

    def test_short_trajectory_has_no_baseline(self, scripted_service, make_scored_conversation):
        make_scored_conversation("conv-t", [6.0, 6.1, 6.0])
        scripted_service.track_conversation("conv-t")

        trajectory = scripted_service.get_trajectory("alice", since=BASE_TIME - timedelta(days=1))

        assert trajectory.baseline is None
        assert trajectory.deviation is None
        assert trajectory.plateau.average_score == pytest.approx(6.0333, abs=1e-3)

    def test_limit_keeps_the_newest_units(self, scripted_service, make_scored_conversation, make_unit):
        unit_ids = make_scored_conversation("conv-b", [6.0, 6.1, 6.0, 2.0, 6.3])
        for i in range(4):
            make_unit(
                f"other-{i}",
                texts=["checking in"],
                timestamp=BASE_TIME + timedelta(minutes=10 * i + 5),
                participants=("carol", "dave"),
            )
        scripted_service.track_conversation("conv-b")

        trajectory = scripted_service.get_trajectory("alice", since=BASE_TIME - timedelta(days=1), limit=2)

        assert [p.unit_id for p in trajectory.points] == unit_ids[3:]

    def test_out_of_order_scores_raise(self, scripted_service, make_unit, memory_store):
        class ReversedStore:
            def get_recent_units(self, participant_id, since, limit=200):
                return list(reversed(memory_store.get_recent_units(participant_id, since, limit)))

        for i, score in enumerate((6.0, 3.0)):
            make_unit(f"r-{i}", ["hi"], BASE_TIME + timedelta(minutes=i), summary=f"{score} " + "steady " * 40)
            scripted_service.score_unit(f"r-{i}")

        scripted_service.memory_store = ReversedStore()
        with pytest.raises(OrderingError):
            scripted_service.get_trajectory("alice", since=BASE_TIME - timedelta(days=1))


class TestValidation:
    def test_record_validation(self, service, make_unit):
        make_unit("u-1", POSITIVE_MESSAGES)
        mood_score = service.score_unit("u-1")

        row = service.record_validation("u-1", 6.0, "rater-1", "manual_rating")

        assert row.id is not None
        assert row.mood_score_id == mood_score.id
        assert row.algorithm_score == pytest.approx(mood_score.score)
        assert row.agreement == pytest.approx(1.0 - abs(6.0 - mood_score.score) / 10.0)
        assert row.factor_scores == mood_score.factor_scores
        assert not row.incomplete

    def test_incomplete_validation_is_stored(self, service, make_unit):
        make_unit("u-1", POSITIVE_MESSAGES)
        service.score_unit("u-1")

        row = service.record_validation("u-1", None, "rater-1", "manual_rating")

        assert row.incomplete
        assert row.agreement is None

    def test_out_of_range_human_score(self, service, make_unit):
        make_unit("u-1", POSITIVE_MESSAGES)
        service.score_unit("u-1")
        with pytest.raises(InvalidScoreError):
            service.record_validation("u-1", 11.0, "rater-1", "manual_rating")

    def test_unscored_unit(self, service, make_unit):
        make_unit("u-1", POSITIVE_MESSAGES)
        with pytest.raises(RecordNotFoundError):
            service.record_validation("u-1", 6.0, "rater-1", "manual_rating")
