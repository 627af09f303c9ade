"""
Data types shared by the analysis pipeline.

================================================================================
COORDINATES
================================================================================

Keypoints are kept in PIXEL space of the source frame:
  - (0, 0) = top-left corner
  - x → right, y ↓ down

Angles are computed directly from pixel coordinates so they are not
distorted by the frame's aspect ratio. Shot detection normalizes distances
by torso length instead of frame size.

================================================================================
"""

from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class VideoInfo:
    """Source video metadata as reported by ffprobe."""
    fps: float
    duration: float
    width: int
    height: int
    frame_count: Optional[int] = None
    codec: str = "unknown"


@dataclass(frozen=True, eq=False)
class Frame:
    """A decoded frame sampled from the source video."""
    frame_number: int  # 1-based index in the sampled sequence
    timestamp_seconds: float
    width: int
    height: int
    pixels: np.ndarray  # BGR, shape (height, width, 3)


@dataclass(frozen=True)
class Keypoint:
    name: str
    x: float
    y: float
    confidence: float


@dataclass(frozen=True)
class Pose:
    """Keypoints for the single tracked subject in one frame."""
    frame_number: int
    timestamp_seconds: float
    keypoints: Tuple[Keypoint, ...]
    overall_score: float


@dataclass(frozen=True)
class BodyAngles:
    """Joint angles in degrees, each within [0, 180]."""
    left_elbow: float = 0.0
    right_elbow: float = 0.0
    left_knee: float = 0.0
    right_knee: float = 0.0
    left_shoulder: float = 0.0
    right_shoulder: float = 0.0
    left_hip: float = 0.0
    right_hip: float = 0.0
    torso_lean: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        """Angles keyed by camelCase joint name."""
        return {_camel(f.name): round(getattr(self, f.name), 2) for f in fields(self)}


@dataclass(frozen=True)
class ShotSegment:
    """A single detected swing."""
    shot_number: int
    hand: str  # "left" or "right"
    start_frame: int
    end_frame: int
    peak_frame: int
    start_time: float
    end_time: float
    peak_time: float
    peak_wrist_speed: float  # torso lengths per second
    frame_count: int
    shot_type: str
    quality: float
    contact_angles: BodyAngles
    average_angles: BodyAngles

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    def to_dict(self) -> Dict:
        return {
            "shotNumber": self.shot_number,
            "hand": self.hand,
            "shotType": self.shot_type,
            "quality": round(self.quality, 1),
            "startFrame": self.start_frame,
            "endFrame": self.end_frame,
            "peakFrame": self.peak_frame,
            "startTime": round(self.start_time, 3),
            "endTime": round(self.end_time, 3),
            "peakTime": round(self.peak_time, 3),
            "peakWristSpeed": round(self.peak_wrist_speed, 3),
            "frameCount": self.frame_count,
            "contactAngles": self.contact_angles.as_dict(),
            "averageAngles": self.average_angles.as_dict(),
        }


@dataclass
class AnalysisResult:
    """Everything a completed job hands to the persistence layer."""
    job_id: str
    video: VideoInfo
    stride: int
    frames_analyzed: int
    poses_detected: int
    valid_poses: int
    shots: List[ShotSegment] = field(default_factory=list)
    average_angles: BodyAngles = field(default_factory=BodyAngles)

    @property
    def shot_type_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for shot in self.shots:
            counts[shot.shot_type] = counts.get(shot.shot_type, 0) + 1
        return counts

    def to_dict(self) -> Dict:
        return {
            "jobId": self.job_id,
            "video": {
                "fps": self.video.fps,
                "duration": self.video.duration,
                "width": self.video.width,
                "height": self.video.height,
                "stride": self.stride,
            },
            "framesAnalyzed": self.frames_analyzed,
            "posesDetected": self.poses_detected,
            "validPoses": self.valid_poses,
            "totalShots": len(self.shots),
            "shotTypes": self.shot_type_counts,
            "averageAngles": self.average_angles.as_dict(),
            "shots": [shot.to_dict() for shot in self.shots],
        }


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)
