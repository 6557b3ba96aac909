import pytest
from pydantic import ValidationError

from ai_grader.schemas.grading import JobSubmit, _explanation_text


@pytest.mark.parametrize("value, expected", [
    (None, ""),
    ("Plain explanation.", "Plain explanation."),
    ({"explanation": {"text": "Nested text."}}, "Nested text."),
    ({"explanation": "Flat text."}, "Flat text."),
    ('{"explanation": {"text": "From JSON string."}}', "From JSON string."),
    ("42", "42"),
])
def test_explanation_text_shapes(value, expected):
    assert _explanation_text(value) == expected


def test_submit_accepts_camel_case_and_builds_job_fields():
    body = JobSubmit.model_validate({
        "resultId": 1,
        "questionId": 2,
        "teacherFindings": {"explanation": {"text": "Answer key."}},
        "studentFindings": "Student text.",
        "rubric": {"accuracy": 50},
        "priority": 3,
    })

    fields = body.to_job_fields()

    assert fields["result_id"] == 1
    assert fields["teacher_findings"] == "Answer key."
    assert fields["priority"] == 3
    assert fields["rubric"] == {
        "accuracy": 50, "completeness": 30, "clarity": 20, "objectivity": 10,
    }


def test_submit_requires_identity_pair():
    with pytest.raises(ValidationError):
        JobSubmit.model_validate({"resultId": 1, "studentFindings": "Text."})


def test_submit_rejects_blank_student_findings():
    with pytest.raises(ValidationError):
        JobSubmit.model_validate({"studentId": 1, "examId": 2, "studentFindings": "   "})
