"""
Router for the job endpoints used by the front end.
Every endpoint requires a bearer ID token.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from dependencies import Container, current_identity, get_container
from schemas import (
    CreateJobRequest,
    CreateJobResponse,
    JobIdRequest,
    JobListResponse,
    JobView,
    ResultUrlResponse,
    StartJobRequest,
    StartJobResponse,
)
from services import Identity

# Create the router
router = APIRouter(tags=["jobs"])


@router.post("/create-job", response_model=CreateJobResponse)
def create_job(
    request: Optional[CreateJobRequest] = None,
    identity: Identity = Depends(current_identity),
    container: Container = Depends(get_container),
):
    """
    Creates a pending job and returns where to upload the pet photo.
    """
    request = request or CreateJobRequest()
    return container.orchestrator.create_job(identity.user_id, request.dance_style, email=identity.email)


@router.post("/start-job", response_model=StartJobResponse)
def start_job(
    request: Optional[StartJobRequest] = None,
    identity: Identity = Depends(current_identity),
    container: Container = Depends(get_container),
):
    """
    Checks quota and the upload, then hands the job to the video model.
    """
    request = request or StartJobRequest()
    return container.orchestrator.start_job(request.job_id, identity.user_id, request.image_locator)


@router.get("/job-status", response_model=JobView)
def job_status(
    job_id: Optional[str] = Query(None, alias="jobId"),
    identity: Identity = Depends(current_identity),
    container: Container = Depends(get_container),
):
    """Poll this for job progress. Completed jobs carry a download URL."""
    return container.orchestrator.get_job_status(job_id, identity.user_id)


@router.post("/get-result-url", response_model=ResultUrlResponse)
def get_result_url(
    request: Optional[JobIdRequest] = None,
    identity: Identity = Depends(current_identity),
    container: Container = Depends(get_container),
):
    request = request or JobIdRequest()
    return container.orchestrator.get_result_url(request.job_id, identity.user_id)


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(current_identity),
    container: Container = Depends(get_container),
):
    """The caller's jobs, newest first (the history page)."""
    return JobListResponse(jobs=container.orchestrator.list_jobs(identity.user_id, limit=limit))


@router.get("/job-events")
def job_events(
    job_id: Optional[str] = Query(None, alias="jobId"),
    interval: float = Query(2.0, ge=0.5, le=30.0),
    identity: Identity = Depends(current_identity),
    container: Container = Depends(get_container),
):
    """
    Server-Sent Events stream of a job's status changes, closed once the job
    is terminal.
    """
    # Ownership and existence errors surface before the stream opens
    container.orchestrator.get_job_status(job_id, identity.user_id)

    def _stream():
        for view in container.watcher.iter_updates(job_id, identity.user_id, interval=interval):
            data = json.dumps(view.model_dump(mode="json", by_alias=True))
            yield f"event: status\ndata: {data}\n\n"
        logging.info(f"Closed event stream for job {job_id}")

    return StreamingResponse(_stream(), media_type="text/event-stream")
