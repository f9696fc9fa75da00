"""
Keyword intent classification for nudge replies.

The nudge scheduler only needs a yes/no answer: does the visitor want to
carry on? Any callable ``(text) -> bool`` can stand in for the default
classifier (e.g. an LLM-backed one).
"""
from __future__ import annotations

import re
from typing import Any, Callable, Iterable

from context import content

AffirmativeClassifier = Callable[[str], bool]

INTENT_KEYWORDS: dict[str, list[str]] = {
    "affirmative": [
        "yes", "yeah", "yep", "sure", "ok", "okay", "keep", "continue",
        "interested", "of course", "please", "go ahead", "let's go",
    ],
    "negative": [
        "no", "nope", "not", "later", "maybe later", "stop", "busy",
        "cancel", "not interested", "don't", "another time",
    ],
}


def _keyword_hits(message: str, keywords: Iterable[str]) -> int:
    hits = 0
    for kw in keywords:
        if re.search(r"(?<!\w)" + re.escape(kw) + r"(?!\w)", message):
            hits += 1
    return hits


def classify_intent(message: str, keywords: dict[str, list[str]] = None) -> dict[str, Any]:
    """
    Score each intent by the number of its keywords present in the message.

    Returns:
        dict with keys: matched_intent, confidence, all_scores
    """
    message_lower = (message or "").lower().strip()
    table = keywords or INTENT_KEYWORDS
    scores = {intent: _keyword_hits(message_lower, kws) for intent, kws in table.items()}

    best = max(scores, key=scores.get) if scores else None
    if best is None or scores[best] == 0:
        return {"matched_intent": "unknown", "confidence": 0.0, "all_scores": scores}

    total = sum(scores.values())
    if list(scores.values()).count(scores[best]) > 1:
        return {"matched_intent": "ambiguous", "confidence": 0.0, "all_scores": scores}
    return {
        "matched_intent": best,
        "confidence": scores[best] / total,
        "all_scores": scores,
    }


class KeywordAffirmativeClassifier:
    """
    Default affirmative test. The nudge quick replies are matched exactly
    first; free text falls back to keyword scoring, and anything unclear
    counts as a no.
    """

    def __init__(self, extra_affirmative: list[str] = None, extra_negative: list[str] = None):
        self.keywords = {
            "affirmative": INTENT_KEYWORDS["affirmative"] + [k.lower() for k in extra_affirmative or []],
            "negative": INTENT_KEYWORDS["negative"] + [k.lower() for k in extra_negative or []],
        }

    def __call__(self, text: str) -> bool:
        normalized = (text or "").strip().lower()
        if normalized == content.NUDGE_REPLIES[0].lower():
            return True
        if normalized == content.NUDGE_REPLIES[1].lower():
            return False
        return classify_intent(normalized, self.keywords)["matched_intent"] == "affirmative"
