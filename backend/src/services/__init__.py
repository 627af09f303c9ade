"""Backend services for pickleball shot detection."""

from services.analysis_pipeline import AnalysisPipeline
from services.angle_calculator import compute_angles
from services.frame_extractor import FrameExtractor
from services.pose_estimator import PoseEstimator, PoseModel, YoloPoseModel
from services.progress_store import ProgressState, ProgressStore, Stage, progress_percent
from services.shot_detector import ShotDetector, merge_shots

__all__ = [
    "AnalysisPipeline",
    "compute_angles",
    "FrameExtractor",
    "PoseEstimator",
    "PoseModel",
    "YoloPoseModel",
    "ProgressState",
    "ProgressStore",
    "Stage",
    "progress_percent",
    "ShotDetector",
    "merge_shots",
]
