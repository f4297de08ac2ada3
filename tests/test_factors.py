"""
Unit tests for the factor extractors.

Extractors are pure functions of a unit, so these tests build units in
memory without touching the database.
"""

import pytest

from moodscope.domain.factors import (
    MAX_SWING,
    NEUTRAL_SCORE,
    ConversationalFlowExtractor,
    FactorType,
    PsychologicalIndicatorExtractor,
    RelationshipContextExtractor,
    SentimentExtractor,
    balance_to_score,
    default_extractors,
    extract_signals,
)
from moodscope.domain.units import ConversationalUnit, Message
from moodscope.utils.errors import LowSignalInput

from tests.conftest import BASE_TIME


def unit_of(*texts, summary=""):
    return ConversationalUnit(
        id="u-1",
        participants=("alice", "bob"),
        messages=tuple(Message(speaker="alice" if i % 2 == 0 else "bob", text=t) for i, t in enumerate(texts)),
        timestamp=BASE_TIME,
        summary=summary,
    )


class TestBalanceToScore:
    def test_no_evidence_is_neutral(self):
        assert balance_to_score(0.0, 0.0, 0) == NEUTRAL_SCORE

    def test_one_hit_moves_only_part_way(self):
        score = balance_to_score(0.8, 0.0, 1)
        assert NEUTRAL_SCORE < score < NEUTRAL_SCORE + MAX_SWING

    def test_many_hits_reach_full_swing(self):
        assert balance_to_score(3.0, 0.0, 8) == pytest.approx(NEUTRAL_SCORE + MAX_SWING)
        assert balance_to_score(0.0, 3.0, 8) == pytest.approx(NEUTRAL_SCORE - MAX_SWING)

    def test_balanced_evidence_is_neutral(self):
        assert balance_to_score(1.0, 1.0, 4) == pytest.approx(NEUTRAL_SCORE)


class TestSentimentExtractor:
    def test_positive_words(self):
        signal = SentimentExtractor().extract(unit_of("I am happy and grateful today"))
        assert signal.type == FactorType.SENTIMENT_ANALYSIS
        assert signal.internal_score > 6.0
        assert "happy" in signal.evidence
        assert "grateful" in signal.evidence

    def test_negative_words(self):
        signal = SentimentExtractor().extract(unit_of("I feel sad and lonely and hopeless"))
        assert signal.internal_score < 4.0

    def test_negation_flips_polarity(self):
        signal = SentimentExtractor().extract(unit_of("I am not happy about this"))
        assert signal.internal_score < NEUTRAL_SCORE
        assert "not happy" in signal.evidence

    def test_negation_window_expires(self):
        extractor = SentimentExtractor()
        balance = extractor.message_balance("no, honestly it went on and on but I am happy")
        assert balance == pytest.approx(1.0)

    def test_amplifier_increases_weight(self):
        extractor = SentimentExtractor()
        plain = extractor.extract(unit_of("happy but tired"))
        amplified = extractor.extract(unit_of("extremely happy but tired"))
        assert amplified.internal_score > plain.internal_score

    def test_message_balance_without_sentiment(self):
        assert SentimentExtractor().message_balance("we met at noon") is None

    def test_evidence_is_deduplicated(self):
        signal = SentimentExtractor().extract(unit_of("happy happy happy"))
        assert signal.evidence == ("happy",)


class TestPhraseExtractors:
    def test_psychological_coping_language(self):
        signal = PsychologicalIndicatorExtractor().extract(
            unit_of("I'm making progress, taking it one day at a time")
        )
        assert signal.type == FactorType.PSYCHOLOGICAL_INDICATORS
        assert signal.internal_score > NEUTRAL_SCORE
        assert "making progress" in signal.evidence

    def test_psychological_distress_language(self):
        signal = PsychologicalIndicatorExtractor().extract(unit_of("I feel hopeless and I can't cope"))
        assert signal.internal_score < NEUTRAL_SCORE

    def test_phrases_match_on_word_boundaries(self):
        signal = PsychologicalIndicatorExtractor().extract(unit_of("the hopefully scheduled meeting"))
        assert signal.evidence == ()

    def test_relationship_conflict(self):
        signal = RelationshipContextExtractor().extract(unit_of("It's your fault, you never listen"))
        assert signal.type == FactorType.RELATIONSHIP_CONTEXT
        assert signal.internal_score < NEUTRAL_SCORE
        assert "your fault" in signal.evidence

    def test_relationship_connection(self):
        signal = RelationshipContextExtractor().extract(unit_of("Thank you, I'm here for you"))
        assert signal.internal_score > NEUTRAL_SCORE


class TestConversationalFlowExtractor:
    def test_only_closing_third_counts_for_markers(self):
        signal = ConversationalFlowExtractor().extract(
            unit_of("thanks for coming", "the weather was odd", "we walked home")
        )
        assert "thanks" not in signal.evidence

    def test_positive_close(self):
        signal = ConversationalFlowExtractor().extract(
            unit_of("I had a rough day", "tell me about it", "ok that helps, glad we talked")
        )
        assert signal.internal_score > NEUTRAL_SCORE
        assert "glad we talked" in signal.evidence

    def test_mood_trend_to_the_close(self):
        signal = ConversationalFlowExtractor().extract(
            unit_of("I feel awful and sad", "I'm so upset", "that is wonderful", "I'm happy now")
        )
        assert "mood lifted by the close" in signal.evidence
        assert signal.internal_score > NEUTRAL_SCORE

    def test_no_messages_is_neutral_without_evidence(self):
        signal = ConversationalFlowExtractor().extract(unit_of(summary="a summary only"))
        assert signal.internal_score == NEUTRAL_SCORE
        assert not signal.has_evidence


class TestExtractSignals:
    def test_empty_unit_raises_low_signal(self):
        with pytest.raises(LowSignalInput):
            extract_signals(unit_of(), default_extractors())

    def test_no_evidence_raises_low_signal(self):
        with pytest.raises(LowSignalInput):
            extract_signals(unit_of("we met at noon by the station"), default_extractors())

    def test_keeps_only_signals_with_evidence(self):
        signals = extract_signals(unit_of("I am happy"), default_extractors())
        assert [s.type for s in signals] == [FactorType.SENTIMENT_ANALYSIS]
