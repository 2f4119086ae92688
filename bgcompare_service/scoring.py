"""
Parse free-text vision model replies into ScoreSets.

Everything here is pure: the same text always yields the same scores, and a
reply that cannot be parsed degrades to fallback scores instead of raising.

Grammar for a labelled score: label, optional long-form suffix, then one or
more colons/whitespace, then an integer. For example `Edge: 8`,
`edge accuracy 8` or `Transparency Quality: 9`.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional, Sequence

from .models import ScoreSet

DEFAULT_SCORE = 7
FALLBACK_TOP_SCORE = 8
RESULT_WINDOW = 80
METRIC_WINDOW = 30

_EDGE = r"edge(?:[\s_-]*accuracy)?"
_DETAIL = r"detail(?:[\s_-]*preservation)?"
_TRANSPARENCY = r"transparency(?:[\s_-]*quality)?"
_VALUE = r"[:\s]+(\d+)"

_SINGLE_PATTERNS = {
    "edge_accuracy": re.compile(rf"\b{_EDGE}{_VALUE}", re.IGNORECASE),
    "detail_preservation": re.compile(rf"\b{_DETAIL}{_VALUE}", re.IGNORECASE),
    "transparency": re.compile(rf"\b{_TRANSPARENCY}{_VALUE}", re.IGNORECASE),
}


def normalize_response_text(payload: Any) -> str:
    """
    Collapse the response envelopes of the supported vision APIs into one string.

    Handles Replicate-style output (a list of streamed string chunks or a single
    string, optionally still wrapped in the prediction body), Gemini's
    `candidates[0].content.parts[0].text` and Anthropic's `content[*].text`.
    """
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, (list, tuple)):
        if all(isinstance(item, str) for item in payload):
            return "".join(payload)
        return "".join(normalize_response_text(item) for item in payload)
    if isinstance(payload, dict):
        if "candidates" in payload:
            try:
                return str(payload["candidates"][0]["content"]["parts"][0]["text"])
            except (IndexError, KeyError, TypeError):
                return ""
        if "output" in payload:
            return normalize_response_text(payload["output"])
        if "content" in payload:
            return normalize_response_text(payload["content"])
        if payload.get("type") == "text" or "text" in payload:
            return str(payload.get("text") or "")
    return ""


def fallback_scores(index: int) -> ScoreSet:
    """Placeholder ranking for an unparsed comparative block: 8, 7, 6, ... by position."""
    return ScoreSet.uniform(FALLBACK_TOP_SCORE - index, defaulted=True)


def parse_single_scores(text: str) -> ScoreSet:
    """Extract Edge/Detail/Transparency from a single-result reply; misses default to 7."""
    values = {}
    defaulted = False
    for name, pattern in _SINGLE_PATTERNS.items():
        match = pattern.search(text or "")
        if match:
            values[name] = int(match.group(1))
        else:
            values[name] = DEFAULT_SCORE
            defaulted = True
    return ScoreSet(defaulted=defaulted, **values)


def _result_pattern(ordinal: int) -> "re.Pattern[str]":
    return re.compile(
        rf"Result\s*{ordinal}(?!\d)"
        rf"[\s\S]{{0,{RESULT_WINDOW}}}?\b{_EDGE}{_VALUE}"
        rf"[\s\S]{{0,{METRIC_WINDOW}}}?\b{_DETAIL}{_VALUE}"
        rf"[\s\S]{{0,{METRIC_WINDOW}}}?\b{_TRANSPARENCY}{_VALUE}",
        re.IGNORECASE,
    )


def parse_result_block(text: str, ordinal: int) -> Optional[ScoreSet]:
    """Scores for the `Result <ordinal>` block, or None when no block matches."""
    match = _result_pattern(ordinal).search(text or "")
    if not match:
        return None
    edge, detail, transparency = (int(g) for g in match.groups())
    return ScoreSet(edge, detail, transparency)


def parse_comparative_scores(text: str, labels: Sequence[str]) -> Dict[str, ScoreSet]:
    """
    Map each label to the scores of its ordinal block ("Result 1" is labels[0]).

    Every label gets a ScoreSet; missing blocks receive `fallback_scores(index)`.
    """
    scores: Dict[str, ScoreSet] = {}
    for index, label in enumerate(labels):
        parsed = parse_result_block(text, index + 1)
        scores[label] = parsed if parsed is not None else fallback_scores(index)
    return scores
