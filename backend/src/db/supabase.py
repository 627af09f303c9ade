"""
Supabase client for persisting shot detection results.

Tables:
  - videos: Uploaded video files and metadata (owned by the upload service)
  - shot_analyses: One row per analyzed video with the detected shots
"""

import os
import logging
from typing import Optional

from supabase import create_client, Client

from services.types import AnalysisResult

logger = logging.getLogger(__name__)

_supabase_client: Optional[Client] = None


def init_supabase() -> bool:
    """
    Initialize Supabase client on application startup.

    Returns:
        True if credentials were found and the client was created
    """
    global _supabase_client

    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")

    if not url or not key:
        logger.warning("Supabase credentials not configured. Shot analyses will not be persisted.")
        return False

    _supabase_client = create_client(url, key)
    logger.info("Supabase client initialized")
    return True


def get_supabase() -> Client:
    """Get Supabase client instance."""
    if _supabase_client is None:
        raise RuntimeError("Supabase client not initialized. Call init_supabase() first.")
    return _supabase_client


def update_video_status(
    video_id: str,
    status: str,
    error_message: str | None = None,
    **kwargs
) -> dict | None:
    """
    Update video status and metadata.

    Args:
        video_id: UUID of the video
        status: One of 'pending', 'processing', 'analyzed', 'failed'
        error_message: Optional error message if status is 'failed'
        **kwargs: Additional fields to update (duration, width, height, fps)
    """
    client = get_supabase()

    update_data = {"status": status, **kwargs}
    if error_message:
        update_data["error_message"] = error_message

    result = client.table("videos").update(update_data).eq("id", video_id).execute()
    return result.data[0] if result.data else None


def save_shot_analysis(result: AnalysisResult) -> None:
    """
    Persist a completed analysis (result sink for AnalysisPipeline).

    The job id is the video id assigned by the upload service.
    """
    client = get_supabase()

    client.table("shot_analyses").upsert({
        "video_id": result.job_id,
        "status": "completed",
        "shots_detected": len(result.shots),
        "analysis": result.to_dict(),
    }).execute()

    update_video_status(
        result.job_id,
        "analyzed",
        duration=result.video.duration,
        width=result.video.width,
        height=result.video.height,
        fps=result.video.fps,
    )
    logger.info(f"Saved shot analysis for video {result.job_id} ({len(result.shots)} shots)")


def record_failure(video_id: str, error: str) -> None:
    """
    Mark a video as failed (failure sink for AnalysisPipeline).

    The error message is stored so the upload service can show it.
    """
    update_video_status(video_id, "failed", error_message=error)
    logger.info(f"Recorded failed shot analysis for video {video_id}")
