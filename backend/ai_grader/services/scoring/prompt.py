"""Grading prompt for forensic findings comparison."""
from typing import Dict

SYSTEM_PROMPT = (
    "You are a forensic handwriting analysis expert grading student work. "
    "Write feedback in simple, clear language a criminology student can follow. "
    "Never mention field names, data formats or code."
)


def build_grading_prompt(teacher_findings: str, student_findings: str, rubric: Dict[str, float]) -> str:
    return f"""Compare the student's findings to the teacher's official findings (the answer key).

If the student's findings are identical or nearly identical to the answer key, give 100 for every component.

Grading criteria (weight):
1. Accuracy ({rubric['accuracy']:g}%) - how well the findings match the answer key. Deduct only for missing or incorrect details.
2. Completeness ({rubric['completeness']:g}%) - whether all important points of the answer key are covered.
3. Clarity ({rubric['clarity']:g}%) - whether the explanation is clear. Deduct only if it is confusing.
4. Objectivity ({rubric['objectivity']:g}%) - whether the student avoided personal opinions.

Teacher findings:
\"\"\"
{teacher_findings}
\"\"\"

Student findings:
\"\"\"
{student_findings}
\"\"\"

Return ONLY valid JSON with these fields:
{{
  "accuracy": (number 0-100),
  "completeness": (number 0-100),
  "clarity": (number 0-100),
  "objectivity": (number 0-100),
  "overall_score": (number 0-100),
  "feedback": "What the student did well, what they missed, and why this score was given."
}}"""
