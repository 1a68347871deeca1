from __future__ import annotations

import json
import logging

import pytest

from concierge.reply_parser import normalize_reply, parse_merchant_reply


@pytest.mark.parametrize(
    "raw",
    ["yes", "YES", "Yes!", "tamam", "👍", "yeah", "ok", "OK", "okay", "TAMAM", "TAMAM!", "tamaam", "tamamdir", "evet", "✅", "yessss!!"],
)
def test_confirmations_are_high_confidence(raw):
    result = parse_merchant_reply(raw)
    assert result.intent == "confirm"
    assert result.confidence == "high"
    assert result.matched_pattern


@pytest.mark.parametrize("raw", ["no", "hayir", "hayır", "❌", "NO", "nope", "iptal", "cancel", "cannot"])
def test_rejections_are_high_confidence(raw):
    result = parse_merchant_reply(raw)
    assert result.intent == "reject"
    assert result.confidence == "high"


@pytest.mark.parametrize("raw", ["what time?", "more details please", "nerede?"])
def test_information_requests_are_medium_confidence(raw):
    result = parse_merchant_reply(raw)
    assert result.intent == "need_more_info"
    assert result.confidence == "medium"


@pytest.mark.parametrize("raw", ["maybe", "asdf", "...", "later", "", "   "])
def test_everything_else_requires_a_human(raw):
    result = parse_merchant_reply(raw)
    assert result.intent == "requires_human"
    assert result.confidence == "low"
    assert result.matched_pattern is None


def test_normalization_folds_diacritics_and_trailing_punctuation():
    assert normalize_reply("  Tamamdır!!  ") == "tamamdir"
    assert normalize_reply("Hayır,") == "hayir"
    assert normalize_reply("what   time?") == "what time?"
    assert normalize_reply("Güzel Şöyle Çok") == "guzel soyle cok"


def test_parse_is_deterministic_and_keeps_raw_input():
    first = parse_merchant_reply("  Yes!  ")
    second = parse_merchant_reply("  Yes!  ")
    assert first == second
    assert first.raw_input == "  Yes!  "
    assert first.normalized_input == "yes"


def test_parse_logs_raw_normalized_and_pattern(caplog):
    caplog.set_level(logging.INFO, logger="concierge.reply_parser")
    parse_merchant_reply("TAMAM!", trace_id="trace_parse_1")
    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "concierge.reply_parser"]
    assert events
    event = events[-1]
    assert event["event"] == "reply_parsed"
    assert event["raw_input"] == "TAMAM!"
    assert event["normalized_input"] == "tamam"
    assert event["intent"] == "confirm"
    assert event["matched_pattern"]
    assert event["trace_id"] == "trace_parse_1"
