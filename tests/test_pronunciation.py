"""
Tests for operator pronunciation scoring.
"""

import pytest

from src.assist.pronunciation import estimate_syllables, score_utterance, summarize


@pytest.mark.parametrize(
    "word,count",
    [("cat", 1), ("hello", 2), ("there", 1), ("portable", 2), ("Toilets!", 2)],
)
def test_estimate_syllables(word, count):
    assert estimate_syllables(word) == count


class TestScoreUtterance:

    def test_confident_utterance(self):
        sample = score_utterance("hello there", 0.9, [0.9, 0.9])

        assert sample.word_score == 90.0
        assert sample.syllable_accuracy == 80.0
        assert sample.adjustments == {"word_confidence": 4.0}
        assert sample.score == 94.0

    def test_score_is_clamped(self):
        sample = score_utterance("absolutely wonderful", 1.0, [1.0, 1.0])
        assert 0.0 <= sample.score <= 100.0

    def test_low_confidence_words_are_listed(self):
        sample = score_utterance("we can deliver tomorrow", 0.5, [0.9, 0.3, 0.4, 0.9])
        assert sample.low_confidence_words == ["can", "deliver"]

    def test_missing_word_confidences_use_default(self):
        sample = score_utterance("sounds good", 0.8)
        assert sample.word_score == 70.0

    def test_short_th_words_flagged(self):
        sample = score_utterance("the thin one", 0.8)
        assert sample.phonetic_issues == ["the", "thin"]
        assert sample.phonetic_accuracy == 88.0

    def test_empty_text(self):
        sample = score_utterance("", 0.0)
        assert sample.score >= 0.0
        assert sample.low_confidence_words == []


class TestSummarize:

    def test_empty_is_neutral(self):
        summary = summarize([])
        assert summary.overall_score == 60.0
        assert summary.segment_scores == []

    def test_average_and_wire_shape(self):
        samples = [
            score_utterance("hello there", 0.9, [0.9, 0.9]),
            score_utterance("sounds good", 0.8),
        ]
        data = summarize(samples).to_dict()

        assert data["segmentCount"] == 2
        assert data["overallScore"] == pytest.approx(round(sum(data["segmentScores"]) / 2, 1))
        assert set(data["breakdown"]) == {
            "confidence", "fluency", "naturalness", "syllableAccuracy", "phoneticAccuracy",
        }

    def test_low_scores_get_recommendations(self):
        samples = [score_utterance("the thin one", 0.3, [0.2, 0.2, 0.2])]
        types = {r["type"] for r in summarize(samples).recommendations}
        assert "general" in types
