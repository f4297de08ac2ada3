"""
Tests for the structured audit log processors.
"""

import logging

from moodscope.log_config import LoguruHandler, get_logger, redact_conversation_text


def test_conversation_text_is_redacted():
    event = redact_conversation_text(
        None, "info", {"event": "mood_score_persisted", "summary": "I feel awful", "unit_id": "u-1"}
    )
    assert event == {"event": "mood_score_persisted", "summary": "[REDACTED]", "unit_id": "u-1"}


def test_identifiers_and_scores_pass_through():
    event = {"event": "calibration_transition", "cycle_id": "cycle-1", "mean_agreement": 0.55}
    assert redact_conversation_text(None, "info", dict(event)) == event


def test_stdlib_records_are_forwarded():
    assert any(isinstance(h, LoguruHandler) for h in logging.getLogger().handlers)
    assert get_logger("moodscope.test") is not None
