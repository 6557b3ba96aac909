import pytest

from ai_grader.services.scoring.base import (
    DEFAULT_RUBRIC, MalformedScoreError, ScorerError, ScoringRequest, normalize_rubric,
)
from ai_grader.services.scoring.gemini_scorer import GeminiScorer, is_rate_limit_error
from ai_grader.services.scoring.prompt import build_grading_prompt
from ai_grader.services.scoring.result_parser import (
    clean_feedback, extract_json_object, parse_number, parse_score_payload,
)

FULL_RESPONSE = (
    '{"accuracy": 90, "completeness": 80, "clarity": 70, "objectivity": 100,'
    ' "overall_score": 84, "feedback": "Good comparison of letter slant."}'
)


def test_parse_full_payload():
    payload = parse_score_payload(FULL_RESPONSE, DEFAULT_RUBRIC)

    assert payload["score"] == 84
    assert payload["accuracy"] == 90
    assert payload["completeness"] == 80
    assert payload["clarity"] == 70
    assert payload["objectivity"] == 100
    assert payload["feedback"] == "Good comparison of letter slant."
    assert payload["raw_response"] == FULL_RESPONSE


def test_parse_fenced_json():
    payload = parse_score_payload(f"```json\n{FULL_RESPONSE}\n```", DEFAULT_RUBRIC)
    assert payload["score"] == 84


def test_parse_json_wrapped_in_prose():
    text = 'Here is the grade: {"overall_score": "75%", "feedback": "Solid."} Thanks!'

    payload = parse_score_payload(text, DEFAULT_RUBRIC)

    assert payload["score"] == 75
    # Missing components are derived from the overall score by weight
    assert payload["accuracy"] == 30
    assert payload["clarity"] == 15


def test_overall_derived_from_components():
    text = '{"accuracy": 100, "completeness": 50, "clarity": 100, "objectivity": 0}'

    payload = parse_score_payload(text, DEFAULT_RUBRIC)

    assert payload["score"] == 75
    assert payload["feedback"] == "Your findings were reviewed against the answer key."


@pytest.mark.parametrize("text", ["", "   ", "no json here", '{"feedback": "nice"}', "[1, 2]"])
def test_unusable_responses_raise(text):
    with pytest.raises(MalformedScoreError):
        parse_score_payload(text, DEFAULT_RUBRIC)


def test_extract_json_object_rejects_broken_json():
    with pytest.raises(MalformedScoreError):
        extract_json_object('prefix {"score": 80,, } suffix')


def test_parse_number():
    assert parse_number(80) == 80.0
    assert parse_number("80%") == 80.0
    assert parse_number("72.5 points") == 72.5
    assert parse_number(True) is None
    assert parse_number("n/a") is None
    assert parse_number(None) is None


def test_clean_feedback_drops_format_talk():
    feedback = "You noted the pen pressure. The JSON format was correct. Check the 'baseline' next time."

    cleaned = clean_feedback(feedback)

    assert cleaned == "You noted the pen pressure. Check the next time."


def test_normalize_rubric_fills_defaults():
    assert normalize_rubric(None) == DEFAULT_RUBRIC
    weights = normalize_rubric({"accuracy": "50", "clarity": "heavy"})
    assert weights["accuracy"] == 50.0
    assert weights["clarity"] == DEFAULT_RUBRIC["clarity"]


def test_prompt_includes_findings_and_weights():
    prompt = build_grading_prompt("Forged signature.", "Looks forged.", normalize_rubric({"accuracy": 55}))

    assert "Forged signature." in prompt
    assert "Looks forged." in prompt
    assert "Accuracy (55%)" in prompt


def test_rate_limit_detection():
    class FakeApiError(Exception):
        def __init__(self, code, status=None):
            super().__init__(f"{code} {status}")
            self.code = code
            self.status = status

    assert is_rate_limit_error(FakeApiError(429))
    assert is_rate_limit_error(FakeApiError(400, "RESOURCE_EXHAUSTED"))
    assert is_rate_limit_error(Exception("You exceeded your current quota"))
    assert not is_rate_limit_error(FakeApiError(400, "INVALID_ARGUMENT"))


async def test_gemini_scorer_parses_model_text(monkeypatch):
    scorer = GeminiScorer("gemini-test-model")
    seen = {}

    def fake_generate(api_key, prompt):
        seen["api_key"] = api_key
        return FULL_RESPONSE

    monkeypatch.setattr(scorer, "_sync_generate", fake_generate)
    request = ScoringRequest(job_id=1, teacher_findings="a", student_findings="b")

    payload = await scorer.score(request, "key-xyz")

    assert seen["api_key"] == "key-xyz"
    assert payload["score"] == 84
    assert payload["model"] == "gemini-test-model"


async def test_gemini_scorer_wraps_connection_errors(monkeypatch):
    scorer = GeminiScorer("gemini-test-model")

    def fake_generate(api_key, prompt):
        raise ConnectionError("connection reset")

    monkeypatch.setattr(scorer, "_sync_generate", fake_generate)
    request = ScoringRequest(job_id=1, teacher_findings="a", student_findings="b")

    with pytest.raises(ScorerError, match="connection reset"):
        await scorer.score(request, "key-xyz")


def test_gemini_scorer_requires_model():
    with pytest.raises(ValueError):
        GeminiScorer("")
