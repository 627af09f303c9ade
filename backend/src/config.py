"""Runtime settings loaded from environment variables."""

import os
from dataclasses import dataclass, field
from typing import List, Optional

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """
    Shot detection settings.

    Attributes:
        target_fps: Frames per second sampled from each video.
        batch_size: Frames per batch; progress is published after each batch.
        min_pose_score: Threshold for pose validity (overall and per keypoint).
        pose_model_weights: Ultralytics weights file, downloaded on first use.
        pose_device: Inference device ("cpu", "cuda:0", ...). None = auto.
        job_timeout_seconds: Wall-clock ceiling for one job.
        progress_retention_seconds: How long finished jobs stay readable.
        download_timeout_seconds: HTTP timeout when fetching remote videos.
    """

    target_fps: float = 10.0
    batch_size: int = 30
    min_pose_score: float = 0.5
    pose_model_weights: str = "yolo11s-pose.pt"
    pose_device: Optional[str] = None
    job_timeout_seconds: float = 900.0
    progress_retention_seconds: float = 300.0
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    download_timeout_seconds: float = 60.0
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    def __post_init__(self):
        if self.target_fps <= 0:
            raise ValueError("target_fps must be positive")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if not 0 <= self.min_pose_score <= 1:
            raise ValueError("min_pose_score must be within [0, 1]")
        if self.job_timeout_seconds <= 0:
            raise ValueError("job_timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS")
        return cls(
            target_fps=_env_float("TARGET_FPS", 10.0),
            batch_size=_env_int("BATCH_SIZE", 30),
            min_pose_score=_env_float("MIN_POSE_SCORE", 0.5),
            pose_model_weights=os.getenv("POSE_MODEL_WEIGHTS", "yolo11s-pose.pt"),
            pose_device=os.getenv("POSE_DEVICE") or None,
            job_timeout_seconds=_env_float("JOB_TIMEOUT_SECONDS", 900.0),
            progress_retention_seconds=_env_float("PROGRESS_RETENTION_SECONDS", 300.0),
            ffmpeg_binary=os.getenv("FFMPEG_BINARY", "ffmpeg"),
            ffprobe_binary=os.getenv("FFPROBE_BINARY", "ffprobe"),
            download_timeout_seconds=_env_float("DOWNLOAD_TIMEOUT_SECONDS", 60.0),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()] if origins else list(DEFAULT_CORS_ORIGINS),
        )
