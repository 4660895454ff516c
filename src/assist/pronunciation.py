"""
Operator pronunciation scoring.

Scores each final operator utterance on a 0-100 scale from the recognizer's
confidence, adjusted by cheap text heuristics (word confidence spread,
syllable complexity, short "th" words). Samples are aggregated into a
summary with recommendations at the end of the session.

Informational only: nothing here feeds back into suggestions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

DEFAULT_WORD_CONFIDENCE = 0.7
LOW_CONFIDENCE_THRESHOLD = 0.6
RECOMMENDATION_THRESHOLD = 70.0
MAX_LISTED_ISSUES = 10
NEUTRAL_SCORE = 60.0

_VOWELS = set("aeiouy")


def _round1(value: float) -> float:
    return round(value, 1)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def estimate_syllables(word: str) -> int:
    """Vowel-group syllable estimate; short words and silent trailing e count once."""
    word = re.sub(r"[^a-z]", "", word.lower())
    if len(word) <= 3:
        return 1

    count = 0
    previous_was_vowel = False
    for ch in word:
        is_vowel = ch in _VOWELS
        if is_vowel and not previous_was_vowel:
            count += 1
        previous_was_vowel = is_vowel

    if word.endswith("e") and count > 1:
        count -= 1
    return max(1, count)


@dataclass
class PronunciationSample:
    """Score for one operator utterance."""
    text: str
    score: float
    confidence: float
    word_score: float
    syllable_accuracy: float
    phonetic_accuracy: float
    low_confidence_words: List[str] = field(default_factory=list)
    complex_words: List[Tuple[str, int]] = field(default_factory=list)
    phonetic_issues: List[str] = field(default_factory=list)
    adjustments: Dict[str, float] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "confidence": self.confidence,
            "segment": self.text,
            "timestamp": self.timestamp,
            "wordScore": self.word_score,
            "syllableAccuracy": self.syllable_accuracy,
            "phoneticAccuracy": self.phonetic_accuracy,
            "lowConfidenceWords": list(self.low_confidence_words),
            "adjustments": dict(self.adjustments),
        }


@dataclass
class PronunciationSummary:
    overall_score: float
    segment_scores: List[float]
    breakdown: Dict[str, float]
    recommendations: List[Dict[str, Any]]
    syllable_issues: List[Dict[str, Any]]
    phonetic_issues: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overallScore": self.overall_score,
            "segmentCount": len(self.segment_scores),
            "segmentScores": list(self.segment_scores),
            "breakdown": dict(self.breakdown),
            "recommendations": list(self.recommendations),
            "syllableIssues": list(self.syllable_issues),
            "phoneticIssues": list(self.phonetic_issues),
        }


def score_utterance(
    text: str,
    confidence: float,
    word_confidences: Optional[Sequence[float]] = None,
) -> PronunciationSample:
    """Score one final operator utterance."""
    words = text.split()
    confidences = list(word_confidences or [])
    confidence = _clamp(float(confidence or 0.0), 0.0, 1.0)

    per_word = [
        confidences[i] if i < len(confidences) and confidences[i] else DEFAULT_WORD_CONFIDENCE
        for i in range(len(words))
    ]
    word_score = _round1(sum(per_word) / len(per_word) * 100) if per_word else NEUTRAL_SCORE
    low_words = [w for w, c in zip(words, per_word) if c < LOW_CONFIDENCE_THRESHOLD]

    syllables = [(w, estimate_syllables(w)) for w in words]
    multi = [s for s in syllables if s[1] > 1]
    syllable_accuracy = _round1(min(100.0, 60 + len(multi) / len(words) * 40)) if multi else NEUTRAL_SCORE

    phonetic_issues = [w for w in words if "th" in w.lower() and len(w) < 5]
    phonetic_accuracy = _round1(max(50.0, 100 - 6 * len(phonetic_issues))) if phonetic_issues else 80.0

    adjustments: Dict[str, float] = {}
    if word_score > 80:
        adjustments["word_confidence"] = 4.0
    elif word_score < 60:
        adjustments["word_confidence"] = -6.0
    if syllable_accuracy > 80:
        adjustments["syllable_accuracy"] = 3.0
    elif syllable_accuracy < 60:
        adjustments["syllable_accuracy"] = -4.0
    if phonetic_accuracy > 80:
        adjustments["phonetic_accuracy"] = 3.0
    elif phonetic_accuracy < 60:
        adjustments["phonetic_accuracy"] = -4.0
    if len(low_words) > 3:
        adjustments["low_confidence_words"] = -6.0

    score = _round1(_clamp(confidence * 100 + sum(adjustments.values())))

    return PronunciationSample(
        text=text,
        score=score,
        confidence=confidence,
        word_score=word_score,
        syllable_accuracy=syllable_accuracy,
        phonetic_accuracy=phonetic_accuracy,
        low_confidence_words=low_words,
        complex_words=[s for s in syllables if s[1] > 2],
        phonetic_issues=phonetic_issues,
        adjustments=adjustments,
    )


def _average(values: Sequence[float], default: float) -> float:
    return sum(values) / len(values) if values else default


def summarize(samples: Sequence[PronunciationSample]) -> PronunciationSummary:
    """Aggregate session samples into an overall score and recommendations."""
    if not samples:
        neutral = {
            "confidence": NEUTRAL_SCORE,
            "fluency": NEUTRAL_SCORE,
            "naturalness": NEUTRAL_SCORE,
            "syllableAccuracy": NEUTRAL_SCORE,
            "phoneticAccuracy": NEUTRAL_SCORE,
        }
        return PronunciationSummary(NEUTRAL_SCORE, [], neutral, [], [], [])

    scores = [s.score for s in samples]
    overall = _average(scores, NEUTRAL_SCORE)
    breakdown = {
        "confidence": _round1(_average([s.confidence * 100 for s in samples], NEUTRAL_SCORE)),
        "fluency": _round1(min(100.0, overall + 4)),
        "naturalness": _round1(min(100.0, overall + 2)),
        "syllableAccuracy": _round1(_average([s.syllable_accuracy for s in samples], NEUTRAL_SCORE)),
        "phoneticAccuracy": _round1(_average([s.phonetic_accuracy for s in samples], NEUTRAL_SCORE)),
    }

    syllable_issues = [
        {"word": word, "issue": "Multi-syllable word - check stress pattern", "syllableCount": count}
        for sample in samples
        for word, count in sample.complex_words
    ]
    phonetic_issues = [
        {"word": word, "issue": "Check 'th' sound pronunciation"}
        for sample in samples
        for word in sample.phonetic_issues
    ]

    recommendations: List[Dict[str, Any]] = []
    if overall < RECOMMENDATION_THRESHOLD:
        recommendations.append({
            "type": "general",
            "priority": "high",
            "message": "Focus on pronunciation clarity. Speak slowly and clearly.",
        })
    if breakdown["syllableAccuracy"] < RECOMMENDATION_THRESHOLD:
        recommendations.append({
            "type": "syllable",
            "priority": "medium",
            "message": "Practice stress patterns on multi-syllable words.",
        })
    if breakdown["phoneticAccuracy"] < RECOMMENDATION_THRESHOLD:
        recommendations.append({
            "type": "phonetic",
            "priority": "medium",
            "message": "Work on specific sounds such as 'th'.",
        })
    if breakdown["fluency"] < RECOMMENDATION_THRESHOLD:
        recommendations.append({
            "type": "fluency",
            "priority": "medium",
            "message": "Improve speaking flow and natural pauses.",
        })
    if syllable_issues:
        listed = syllable_issues[:5]
        recommendations.append({
            "type": "specific_words",
            "priority": "low",
            "message": "Practice these multi-syllable words: " + ", ".join(i["word"] for i in listed),
            "words": listed,
        })

    return PronunciationSummary(
        overall_score=_round1(overall),
        segment_scores=scores,
        breakdown=breakdown,
        recommendations=recommendations,
        syllable_issues=syllable_issues[:MAX_LISTED_ISSUES],
        phonetic_issues=phonetic_issues[:MAX_LISTED_ISSUES],
    )
