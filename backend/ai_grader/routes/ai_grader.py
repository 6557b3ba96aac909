"""AI grader API - submit answers for grading and look up their jobs."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ai_grader.schemas.grading import JobResponse, JobSubmit, RequeueRequest, SubmitResponse
from ai_grader.services.grading_runtime import GradingRuntime, get_runtime
from ai_grader.services.job_store import DuplicateJobError, JobNotFoundError, RequeueTooSoonError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai-grader", tags=["ai-grader"])


@router.post("/submit", response_model=SubmitResponse, status_code=202)
async def submit_for_grading(
    body: JobSubmit,
    runtime: GradingRuntime = Depends(get_runtime),
):
    """Enqueue a grading job and return immediately (acceptance, not completion)."""
    try:
        job = await runtime.store.enqueue(**body.to_job_fields())
    except DuplicateJobError as e:
        raise HTTPException(
            409, detail={"error": "Answer already queued for grading", "jobId": e.existing_id},
        )
    return SubmitResponse(message="Queued for AI grading", job_id=job.id)


@router.post("/requeue", response_model=SubmitResponse, status_code=202)
async def requeue_for_grading(
    body: RequeueRequest,
    runtime: GradingRuntime = Depends(get_runtime),
):
    """Grade a finished answer again. The earlier job row is kept as history."""
    try:
        job = await runtime.store.requeue(**body.model_dump())
    except JobNotFoundError:
        raise HTTPException(404, "No queue row found")
    except DuplicateJobError as e:
        raise HTTPException(
            409, detail={"error": "Answer is already queued for grading", "jobId": e.existing_id},
        )
    except RequeueTooSoonError as e:
        raise HTTPException(
            429,
            detail={"error": "Too recent to requeue. Please wait before retrying.", "jobId": e.job_id},
            headers={"Retry-After": str(int(e.retry_after) + 1)},
        )
    return SubmitResponse(message="Requeued for AI grading", job_id=job.id)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_grading_job(job_id: int, runtime: GradingRuntime = Depends(get_runtime)):
    """Get job status, attempts and result."""
    job = await runtime.store.get(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return job


@router.get("/queue", response_model=JobResponse)
async def find_grading_job(
    result_id: Optional[int] = Query(None, alias="resultId"),
    question_id: Optional[int] = Query(None, alias="questionId"),
    student_id: Optional[int] = Query(None, alias="studentId"),
    exam_id: Optional[int] = Query(None, alias="examId"),
    runtime: GradingRuntime = Depends(get_runtime),
):
    """Latest job for a result/question or student/exam pair."""
    job = await runtime.store.latest_for(
        result_id=result_id, question_id=question_id,
        student_id=student_id, exam_id=exam_id,
    )
    if not job:
        raise HTTPException(404, "No queue row found")
    return job
