from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from concierge.logging_utils import log_event

logger = logging.getLogger(__name__)

INTENT_CONFIRM = "confirm"
INTENT_REJECT = "reject"
INTENT_NEED_MORE_INFO = "need_more_info"
INTENT_REQUIRES_HUMAN = "requires_human"

_DIACRITIC_FOLD = str.maketrans(
    {
        "ğ": "g",
        "ş": "s",
        "ü": "u",
        "ö": "o",
        "ç": "c",
        "ı": "i",
        "\u0307": None,
    }
)

CONFIRM_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^(yes|yeah|yep|yup|ok|okay|sure|confirmed?|accept(ed)?|approve[d]?)$",
        r"^(ready|done|will\s*do|on\s*it)$",
        r"^(evet|tamam|tamamd[ıi]r|olur|kabul|hay[ıi]r\s*de[ğg]il)$",
        r"^(tama+m+!*|oke+y*!*|ye+s+!*|ye+a+h+!*)$",
        r"^(👍|✅|✔️|✔|💯|🆗)$",
        r"^(yes|ok|okay|tamam|evet)[!.]*$",
    )
)

REJECT_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^(no|nope|nah|cancel(led)?|reject(ed)?|decline[d]?|unavailable|can'?t|cannot)$",
        r"^(hay[ıi]r|iptal|red|m[üu]mk[üu]n\s*de[ğg]il|yok)$",
        r"^(❌|🚫|👎|✖️|✖)$",
        r"^(no|hayir|iptal)[!.]*$",
    )
)

INFO_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^(what|when|where|how|which|why|who|\?)",
        r"(more\s*info|details|explain|clarify)",
        r"^(ne|nerede|nas[ıi]l|kim|hangi)\b",
    )
)

_RULES: tuple[tuple[str, str, tuple[re.Pattern[str], ...]], ...] = (
    (INTENT_CONFIRM, "high", CONFIRM_PATTERNS),
    (INTENT_REJECT, "high", REJECT_PATTERNS),
    (INTENT_NEED_MORE_INFO, "medium", INFO_PATTERNS),
)


@dataclass(frozen=True)
class ReplyParseResult:
    intent: str
    confidence: str
    raw_input: str
    normalized_input: str
    matched_pattern: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent,
            "confidence": self.confidence,
            "raw_input": self.raw_input,
            "normalized_input": self.normalized_input,
            "matched_pattern": self.matched_pattern,
        }


def normalize_reply(text: str) -> str:
    normalized = text.strip().lower()
    normalized = re.sub(r"\s+", " ", normalized)
    normalized = re.sub(r"[,.!;:]+$", "", normalized)
    return normalized.translate(_DIACRITIC_FOLD).strip()


def parse_merchant_reply(raw_input: str, *, trace_id: str | None = None) -> ReplyParseResult:
    """Classify a vendor reply. Anything not clearly matched goes to a human."""
    raw = raw_input or ""
    normalized = normalize_reply(raw)
    candidates = [normalized, raw.strip()]

    result = ReplyParseResult(
        intent=INTENT_REQUIRES_HUMAN,
        confidence="low",
        raw_input=raw,
        normalized_input=normalized,
    )
    for intent, confidence, patterns in _RULES:
        matched = next(
            (pattern for pattern in patterns for text in candidates if text and pattern.search(text)),
            None,
        )
        if matched is not None:
            result = ReplyParseResult(
                intent=intent,
                confidence=confidence,
                raw_input=raw,
                normalized_input=normalized,
                matched_pattern=matched.pattern,
            )
            break

    log_event(
        logger,
        "reply_parsed",
        component="reply_parser",
        trace_id=trace_id,
        raw_input=raw,
        normalized_input=normalized,
        intent=result.intent,
        confidence=result.confidence,
        matched_pattern=result.matched_pattern,
    )
    return result
