"""Turn raw scorer text into a normalized score payload."""
import json
import re
from typing import Any, Dict, Optional

from ai_grader.services.scoring.base import MalformedScoreError

COMPONENTS = ("accuracy", "completeness", "clarity", "objectivity")

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")

# Sentences the model tends to produce about the answer's formatting rather than its content
_BANNED_SENTENCE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bjson\b", r"\bformat\b", r"\bstructured?\b", r"\bfield\b", r"\barray\b",
    )
]


def parse_number(value: Any) -> Optional[float]:
    """Parse 80, "80", "80%", "80.5 points"; None if there is no number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        m = _NUMBER_RE.search(value)
        if m:
            return float(m.group(0))
    return None


def extract_json_object(text: str) -> dict:
    """Parse JSON that may be wrapped in markdown fences or surrounded by prose."""
    trimmed = text.strip()
    if trimmed.startswith("```"):
        trimmed = re.sub(r"^```(?:json)?", "", trimmed).strip()
        if trimmed.endswith("```"):
            trimmed = trimmed[:-3].strip()
    try:
        data = json.loads(trimmed)
    except json.JSONDecodeError:
        start = trimmed.find("{")
        end = trimmed.rfind("}")
        if start == -1 or end <= start:
            raise MalformedScoreError("Scorer response contained no JSON object")
        try:
            data = json.loads(trimmed[start:end + 1])
        except json.JSONDecodeError as e:
            raise MalformedScoreError(f"Scorer response is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise MalformedScoreError("Scorer response JSON is not an object")
    return data


def clean_feedback(feedback: str) -> str:
    """Drop quoted identifiers and sentences about formatting."""
    text = feedback.replace("`", "")
    text = re.sub(r"""['"][A-Za-z0-9_]+['"]""", "", text)
    sentences = [s for s in re.split(r"(?<=[.!?])\s+", text) if s.strip()]
    kept = [s for s in sentences if not any(p.search(s) for p in _BANNED_SENTENCE_PATTERNS)]
    text = re.sub(r"\s+", " ", " ".join(kept)).strip()
    return text or "Your findings were reviewed against the answer key."


def parse_score_payload(text: str, rubric: Dict[str, float]) -> Dict[str, Any]:
    """Normalize the model's JSON into score/components/feedback.

    Missing components are derived from the overall score by rubric weight;
    a missing overall score is the weighted mean of the components.
    """
    if not text or not text.strip():
        raise MalformedScoreError("Empty response from scorer")
    data = extract_json_object(text)

    overall = parse_number(data.get("overall_score", data.get("overall", data.get("score"))))
    raw = {
        name: parse_number(data.get(name, data.get(name.capitalize(), data.get(f"{name}_percent"))))
        for name in COMPONENTS
    }
    if overall is None and all(v is None for v in raw.values()):
        raise MalformedScoreError("Scorer response has no scores")

    total_weight = sum(rubric.get(name, 0) for name in COMPONENTS) or 100
    if overall is not None:
        for name in COMPONENTS:
            if raw[name] is None:
                raw[name] = overall * rubric.get(name, 0) / total_weight
    components = {name: round(raw[name] or 0) for name in COMPONENTS}
    if overall is None:
        overall = sum(components[name] * rubric.get(name, 0) for name in COMPONENTS) / total_weight

    feedback = data.get("feedback", data.get("comments")) or ""
    return {
        "score": round(overall),
        **components,
        "feedback": clean_feedback(str(feedback)),
        "raw_response": text[:50000],
    }
