"""
Shot detection router.

Workflow:
1. Upload service stores the video and calls POST /detect with its id + URL
2. Pipeline runs in the background (extract → analyze → process)
3. Client polls GET /progress every ~2 seconds until completed/failed
4. On completion, results are read from the persistence layer
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from services.analysis_pipeline import AnalysisPipeline
from services.pose_estimator import POSE_CONNECTIONS
from services.progress_store import progress_percent

logger = logging.getLogger(__name__)

router = APIRouter()


class DetectRequest(BaseModel):
    """Request body for the detection trigger."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str = Field(min_length=1)
    video_url: str = Field(min_length=1)


def get_pipeline(request: Request) -> AnalysisPipeline:
    return request.app.state.pipeline


@router.post("/detect", status_code=202)
async def trigger_detection(
    body: DetectRequest,
    background_tasks: BackgroundTasks,
    pipeline: AnalysisPipeline = Depends(get_pipeline),
):
    """
    Start shot detection for a video in the background.

    Returns immediately. A job that is still running for the same id is
    rejected with 409 so two passes never write the same progress record.
    """
    if not pipeline.submit(body.job_id):
        logger.info(f"Rejected duplicate detection trigger for job {body.job_id}")
        raise HTTPException(status_code=409, detail="Shot detection is already running for this job")

    # Sync function: runs in the threadpool, off the event loop
    background_tasks.add_task(pipeline.run_submitted, body.job_id, body.video_url)

    return {
        "jobId": body.job_id,
        "status": "accepted",
        "message": "Shot detection started",
    }


@router.get("/progress")
async def get_detection_progress(
    job_id: str = Query(..., alias="jobId", min_length=1),
    pipeline: AnalysisPipeline = Depends(get_pipeline),
):
    """
    Get the last known progress of a job.

    `progress` is null when the job has not been started (or its record has
    expired). Clients stop polling once stage is completed or failed.
    """
    state = pipeline.store.read(job_id)

    return {
        "jobId": job_id,
        "progress": state.model_dump(by_alias=True, mode="json") if state else None,
        "percent": progress_percent(state),
    }


@router.get("/pose-landmarks")
async def get_pose_landmarks(pipeline: AnalysisPipeline = Depends(get_pipeline)):
    """
    Get the keypoint vocabulary of the pose model.

    Key landmarks for shot analysis:
    - 5, 6: shoulders
    - 7, 8: elbows
    - 9, 10: wrists (used for swing speed)
    - 11, 12: hips
    - 13, 14: knees
    - 15, 16: ankles
    """
    names = pipeline.estimator.landmark_names

    return {
        "total_landmarks": len(names),
        "landmarks": dict(enumerate(names)),
        "connections": POSE_CONNECTIONS,
    }
