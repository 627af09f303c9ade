"""
Shot detection pipeline.

================================================================================
STAGES
================================================================================

  POST /detect ──► ProgressStore.start()        stage = extracting
        │
        ▼
  ┌─────────────────────────────────────────────────────────────┐
  │  EXTRACTING                                                 │
  │  video URL → local file → ffmpeg sampling → Frame[]         │
  │  unreadable source ────────────────────────────► failed     │
  └─────────────────────────────────────────────────────────────┘
        │
        ▼
  ┌─────────────────────────────────────────────────────────────┐
  │  ANALYZING (per batch of frames, in frame order)            │
  │  detect pose → validity gate → joint angles → ShotDetector  │
  │  publish currentBatch / currentFrame / shotsDetected        │
  │  model load failure / timeout ─────────────────► failed     │
  └─────────────────────────────────────────────────────────────┘
        │
        ▼
  ┌─────────────────────────────────────────────────────────────┐
  │  PROCESSING                                                 │
  │  close open shot, merge near-duplicates, summarize angles,  │
  │  hand AnalysisResult to the result sink                     │
  └─────────────────────────────────────────────────────────────┘
        │
        ▼
     COMPLETED

Per-frame problems (decode failure, no person, invalid pose, inference
exception) only skip that frame. The job itself fails only on an unreadable
source, a model that cannot load, the wall-clock ceiling, or an unexpected
exception.

================================================================================
"""

import logging
import math
import time
from typing import Callable, List, Optional

from config import Settings
from services.angle_calculator import average_angles, compute_angles
from services.errors import JobTimeoutError, PoseModelError, UnreadableSourceError
from services.frame_extractor import Extraction, FrameExtractor
from services.pose_estimator import PoseEstimator, YoloPoseModel
from services.progress_store import ProgressStore, Stage
from services.shot_detector import ShotDetector, merge_shots
from services.types import AnalysisResult, BodyAngles, Frame
from services.video_source import open_video_source

logger = logging.getLogger(__name__)

ResultSink = Callable[[AnalysisResult], None]
FailureSink = Callable[[str, str], None]  # job_id, error


def make_batches(frames: List[Frame], batch_size: int) -> List[List[Frame]]:
    """Split frames into contiguous batches, preserving order."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [frames[i:i + batch_size] for i in range(0, len(frames), batch_size)]


class AnalysisPipeline:
    """
    Owns the long-lived pipeline resources and runs jobs through them.

    One instance per process. The pose model inside `estimator` is loaded on
    the first job and reused by every later one.
    """

    def __init__(
        self,
        extractor: FrameExtractor,
        estimator: PoseEstimator,
        store: ProgressStore,
        settings: Optional[Settings] = None,
        result_sink: Optional[ResultSink] = None,
        failure_sink: Optional[FailureSink] = None,
        merge_gap_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.extractor = extractor
        self.estimator = estimator
        self.store = store
        self.settings = settings or Settings()
        self.result_sink = result_sink
        self.failure_sink = failure_sink
        self.merge_gap_seconds = merge_gap_seconds
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        result_sink: Optional[ResultSink] = None,
        failure_sink: Optional[FailureSink] = None,
    ) -> "AnalysisPipeline":
        """Production wiring: ffmpeg extractor + YOLO pose model."""
        extractor = FrameExtractor(
            ffmpeg_binary=settings.ffmpeg_binary,
            ffprobe_binary=settings.ffprobe_binary,
            timeout_seconds=settings.job_timeout_seconds,
        )
        model = YoloPoseModel(weights=settings.pose_model_weights, device=settings.pose_device)
        estimator = PoseEstimator(model, min_score=settings.min_pose_score)
        store = ProgressStore(retention_seconds=settings.progress_retention_seconds)
        return cls(extractor, estimator, store, settings, result_sink=result_sink, failure_sink=failure_sink)

    def submit(self, job_id: str) -> bool:
        """
        Register a job before scheduling run().

        Returns:
            False if the job is already running; nothing should be scheduled
        """
        return self.store.start(job_id)

    def new_shot_detector(self) -> ShotDetector:
        # Tolerate two dropped samples at low sampling rates
        max_gap = max(0.75, 2.5 / self.settings.target_fps)
        return ShotDetector(max_gap_seconds=max_gap)

    def run(self, job_id: str, video_url: str) -> Optional[AnalysisResult]:
        """
        Register and run one job. Blocking; never raises.

        Returns None without touching the job's progress when the job is
        already running elsewhere.
        """
        if not self.submit(job_id):
            logger.warning(f"Job {job_id} is already running, not starting another pass")
            return None
        return self.run_submitted(job_id, video_url)

    def run_submitted(self, job_id: str, video_url: str) -> Optional[AnalysisResult]:
        """
        Run a job registered with submit(). Blocking; never raises.

        Returns the analysis result, or None if the job failed.
        """
        started = self._clock()
        logger.info(f"Starting shot detection for job {job_id}")

        try:
            with open_video_source(video_url, timeout=self.settings.download_timeout_seconds) as video_path:
                extraction = self._extract(job_id, video_path)
            self._check_deadline(started)
            result = self._analyze(job_id, extraction, started)
        except UnreadableSourceError as e:
            self._fail(job_id, f"Unreadable source: {e}")
            return None
        except PoseModelError as e:
            self._fail(job_id, f"Pose model failed to load: {e}")
            return None
        except JobTimeoutError as e:
            self._fail(job_id, str(e))
            return None
        except Exception as e:
            logger.error(f"Shot detection crashed for job {job_id}: {e}", exc_info=True)
            self._fail(job_id, f"Unexpected error: {e}")
            return None

        elapsed = self._clock() - started
        logger.info(f"Shot detection completed for job {job_id}: {len(result.shots)} shots in {elapsed:.1f}s")
        return result

    # =========================================================================
    # STAGES
    # =========================================================================

    def _extract(self, job_id: str, video_path) -> Extraction:
        self.store.update(job_id, stage=Stage.EXTRACTING, message="Extracting frames from video...")
        extraction = self.extractor.extract(video_path, self.settings.target_fps)
        logger.info(
            f"Job {job_id}: {len(extraction.frames)}/{extraction.expected_frames} frames "
            f"(stride {extraction.stride})"
        )
        return extraction

    def _analyze(self, job_id: str, extraction: Extraction, started: float) -> AnalysisResult:
        frames = extraction.frames
        batches = make_batches(frames, self.settings.batch_size)

        self.store.update(
            job_id,
            stage=Stage.ANALYZING,
            total_frames=len(frames),
            total_batches=len(batches),
            message="Loading pose model...",
        )
        self.estimator.initialize()

        detector = self.new_shot_detector()
        pose_angles: List[BodyAngles] = []
        processed = 0
        poses_detected = 0

        for index, batch in enumerate(batches, start=1):
            self._check_deadline(started)

            for frame in batch:
                processed += 1
                pose = self.estimator.detect(frame)
                if pose is None:
                    logger.debug(f"Job {job_id}: no pose in frame {frame.frame_number}")
                    continue

                poses_detected += 1
                if not self.estimator.is_valid(pose):
                    logger.debug(
                        f"Job {job_id}: invalid pose in frame {frame.frame_number} "
                        f"(score {pose.overall_score:.2f})"
                    )
                    continue

                angles = compute_angles(pose)
                pose_angles.append(angles)
                detector.update(pose, angles)

            self.store.update(
                job_id,
                current_batch=index,
                current_frame=processed,
                shots_detected=detector.shots_detected,
                message=f"Analyzing batch {index} of {len(batches)}...",
            )
            logger.info(
                f"Job {job_id}: batch {index}/{len(batches)} | frames {processed}/{len(frames)} | "
                f"poses {poses_detected} (valid {len(pose_angles)}) | shots {detector.shots_detected}"
            )

        self.store.update(job_id, stage=Stage.PROCESSING, message="Summarizing detected shots...")

        shots = merge_shots(detector.finish(), self.merge_gap_seconds)
        result = AnalysisResult(
            job_id=job_id,
            video=extraction.info,
            stride=extraction.stride,
            frames_analyzed=processed,
            poses_detected=poses_detected,
            valid_poses=len(pose_angles),
            shots=shots,
            average_angles=average_angles(pose_angles),
        )

        if self.result_sink is not None:
            self.result_sink(result)

        self.store.update(
            job_id,
            stage=Stage.COMPLETED,
            shots_detected=len(shots),
            message=f"Shot detection complete: {len(shots)} shots detected",
        )
        return result

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _check_deadline(self, started: float) -> None:
        limit = self.settings.job_timeout_seconds
        if self._clock() - started > limit:
            raise JobTimeoutError(f"Analysis timed out after {math.ceil(limit)} seconds")

    def _fail(self, job_id: str, error: str) -> None:
        logger.error(f"Shot detection failed for job {job_id}: {error}")
        try:
            self.store.update(job_id, stage=Stage.FAILED, error=error, message="Shot detection failed")
        except Exception as e:
            logger.error(f"Could not record failure for job {job_id}: {e}")

        if self.failure_sink is not None:
            try:
                self.failure_sink(job_id, error)
            except Exception as e:
                logger.error(f"Could not persist failure for job {job_id}: {e}")
