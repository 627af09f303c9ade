"""
Shot segmentation from a stream of valid poses.

================================================================================
ALGORITHM
================================================================================

  Valid pose (ascending frame order)
        │
        ▼
  ┌─────────────────────────────────────────────────────────────┐
  │  HITTING WRIST                                              │
  │  More confident of right_wrist / left_wrist (right on ties) │
  └─────────────────────────────────────────────────────────────┘
        │
        ▼
  ┌─────────────────────────────────────────────────────────────┐
  │  WRIST SPEED                                                │
  │  scale = |shoulder_mid - hip_mid|  (torso length, px)       │
  │  speed = |wrist - prev_wrist| / scale / dt                  │
  │          (torso lengths per second, resolution independent) │
  │  dt > max_gap or hand switch → reset, no speed              │
  └─────────────────────────────────────────────────────────────┘
        │
        ▼
  ┌─────────────────────────────────────────────────────────────┐
  │  HYSTERESIS SEGMENTER                                       │
  │  idle → open   when speed >= start_speed                    │
  │  open → open   while speed >= end_speed                     │
  │  open → closed at first slower sample (or reset)            │
  │  peak = fastest sample of the segment (contact estimate)    │
  └─────────────────────────────────────────────────────────────┘
        │
        ▼
  merge_shots(): same-hand shots separated by < merge_gap seconds
  are one swing (backswing pause, occluded frame)

The segmenter holds no randomness and depends only on the order and content
of the poses it is fed, so the same pose sequence always yields the same
shots.

================================================================================
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from services.angle_calculator import average_angles, find_keypoint
from services.types import BodyAngles, Keypoint, Pose, ShotSegment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Sample:
    frame_number: int
    timestamp: float
    speed: float
    scale: float
    pose: Pose
    angles: BodyAngles


# =============================================================================
# BODY GEOMETRY
# =============================================================================

def _usable(kp: Optional[Keypoint], min_confidence: float) -> bool:
    return kp is not None and kp.confidence >= min_confidence


def torso_length(pose: Pose, min_confidence: float = 0.3) -> Optional[float]:
    """Distance from shoulder midpoint to hip midpoint, or None if not visible."""
    points = [
        find_keypoint(pose.keypoints, name)
        for name in ("left_shoulder", "right_shoulder", "left_hip", "right_hip")
    ]
    if not all(_usable(p, min_confidence) for p in points):
        return None

    ls, rs, lh, rh = points
    length = math.hypot(
        (ls.x + rs.x) / 2 - (lh.x + rh.x) / 2,
        (ls.y + rs.y) / 2 - (lh.y + rh.y) / 2,
    )
    if not math.isfinite(length) or length < 1e-6:
        return None
    return length


def hitting_wrist(pose: Pose, min_confidence: float = 0.3) -> Tuple[Optional[str], Optional[Keypoint]]:
    """The more confident wrist and its side. Right wins ties."""
    right = find_keypoint(pose.keypoints, "right_wrist")
    left = find_keypoint(pose.keypoints, "left_wrist")

    candidates = []
    if _usable(right, min_confidence):
        candidates.append(("right", right))
    if _usable(left, min_confidence):
        candidates.append(("left", left))

    if not candidates:
        return None, None

    # max() keeps the first of equal items, so right wins ties
    return max(candidates, key=lambda c: c[1].confidence)


def classify_shot(pose: Pose, hand: str = "right", scale: Optional[float] = None) -> str:
    """
    Classify a shot from the pose at contact.

    Rules, in order (image y grows downward):
    - smash:    wrist and elbow above the shoulder (overhead)
    - volley:   wrist above the shoulder
    - backhand: wrist crosses the body midline by > 0.1 torso
    - dink:     wrist more than 0.9 torso below the shoulder
    - forehand: everything else
    """
    other = "left" if hand == "right" else "right"
    wrist = find_keypoint(pose.keypoints, f"{hand}_wrist")
    elbow = find_keypoint(pose.keypoints, f"{hand}_elbow")
    shoulder = find_keypoint(pose.keypoints, f"{hand}_shoulder")
    other_shoulder = find_keypoint(pose.keypoints, f"{other}_shoulder")

    if wrist is None or elbow is None or shoulder is None:
        return "forehand"

    scale = scale or torso_length(pose, min_confidence=0.0) or 1.0

    if wrist.y < shoulder.y and elbow.y < shoulder.y:
        return "smash"

    if wrist.y < shoulder.y:
        return "volley"

    if other_shoulder is not None and other_shoulder.x != shoulder.x:
        midline = (shoulder.x + other_shoulder.x) / 2
        toward_other = 1.0 if other_shoulder.x > shoulder.x else -1.0
        if (wrist.x - midline) * toward_other > 0.1 * scale:
            return "backhand"

    if wrist.y > shoulder.y + 0.9 * scale:
        return "dink"

    return "forehand"


def score_shot_quality(
    pose: Pose,
    angles: BodyAngles,
    hand: str = "right",
    scale: Optional[float] = None,
) -> float:
    """
    Technique score in [50, 100].

    Base 70, +15 for level shoulders and hips, +15 for an extended hitting
    arm (elbow 140-170°).
    """
    quality = 70.0
    scale = scale or torso_length(pose, min_confidence=0.0) or 1.0

    ls = find_keypoint(pose.keypoints, "left_shoulder")
    rs = find_keypoint(pose.keypoints, "right_shoulder")
    lh = find_keypoint(pose.keypoints, "left_hip")
    rh = find_keypoint(pose.keypoints, "right_hip")

    if ls and rs and lh and rh:
        if abs(ls.y - rs.y) < 0.1 * scale and abs(lh.y - rh.y) < 0.1 * scale:
            quality += 15

    elbow = angles.right_elbow if hand == "right" else angles.left_elbow
    if 140 <= elbow <= 170:
        quality += 15

    return min(100.0, max(50.0, quality))


# =============================================================================
# SEGMENTER
# =============================================================================

class ShotDetector:
    """
    Incremental wrist-speed segmenter.

    Feed valid poses in ascending frame order with update(); call finish()
    once the sequence ends. State carries across batches.
    """

    def __init__(
        self,
        start_speed: float = 3.0,
        end_speed: float = 1.5,
        max_gap_seconds: float = 0.75,
        min_keypoint_confidence: float = 0.3,
    ):
        if end_speed > start_speed:
            raise ValueError("end_speed must not exceed start_speed")
        self.start_speed = start_speed
        self.end_speed = end_speed
        self.max_gap_seconds = max_gap_seconds
        self.min_keypoint_confidence = min_keypoint_confidence

        self.shots: List[ShotSegment] = []
        self._open: Optional[List[_Sample]] = None
        self._open_hand: Optional[str] = None
        self._prev: Optional[Tuple[str, float, float, float]] = None  # hand, x, y, t
        self._scale: Optional[float] = None
        self._last_frame = 0

    @property
    def shots_detected(self) -> int:
        """Closed shots plus the one in progress, if any."""
        return len(self.shots) + (1 if self._open else 0)

    def update(self, pose: Pose, angles: BodyAngles) -> Optional[ShotSegment]:
        """
        Consume one valid pose.

        Returns:
            The shot closed by this pose, if any
        """
        if pose.frame_number <= self._last_frame:
            raise ValueError(
                f"Poses must arrive in ascending frame order "
                f"(got {pose.frame_number} after {self._last_frame})"
            )
        self._last_frame = pose.frame_number

        scale = torso_length(pose, self.min_keypoint_confidence)
        if scale is not None:
            self._scale = scale

        hand, wrist = hitting_wrist(pose, self.min_keypoint_confidence)
        if wrist is None or self._scale is None:
            return None

        t = pose.timestamp_seconds
        speed = None
        if self._prev is not None:
            prev_hand, px, py, pt = self._prev
            dt = t - pt
            if prev_hand == hand and 0 < dt <= self.max_gap_seconds:
                speed = math.hypot(wrist.x - px, wrist.y - py) / self._scale / dt
        self._prev = (hand, wrist.x, wrist.y, t)

        if speed is None or not math.isfinite(speed):
            return self._close()

        sample = _Sample(
            frame_number=pose.frame_number,
            timestamp=t,
            speed=speed,
            scale=self._scale,
            pose=pose,
            angles=angles,
        )

        if self._open is None:
            if speed >= self.start_speed:
                self._open = [sample]
                self._open_hand = hand
            return None

        if hand == self._open_hand and speed >= self.end_speed:
            self._open.append(sample)
            return None

        return self._close()

    def finish(self) -> List[ShotSegment]:
        """Close any shot in progress and return all shots."""
        self._close()
        return list(self.shots)

    def _close(self) -> Optional[ShotSegment]:
        if not self._open:
            self._open = None
            return None

        samples = self._open
        hand = self._open_hand or "right"
        self._open = None
        self._open_hand = None

        peak = max(samples, key=lambda s: s.speed)
        shot = ShotSegment(
            shot_number=len(self.shots) + 1,
            hand=hand,
            start_frame=samples[0].frame_number,
            end_frame=samples[-1].frame_number,
            peak_frame=peak.frame_number,
            start_time=samples[0].timestamp,
            end_time=samples[-1].timestamp,
            peak_time=peak.timestamp,
            peak_wrist_speed=peak.speed,
            frame_count=len(samples),
            shot_type=classify_shot(peak.pose, hand, peak.scale),
            quality=score_shot_quality(peak.pose, peak.angles, hand, peak.scale),
            contact_angles=peak.angles,
            average_angles=average_angles([s.angles for s in samples]),
        )
        self.shots.append(shot)
        logger.debug(
            f"Shot {shot.shot_number}: {shot.shot_type} ({hand}) frames "
            f"{shot.start_frame}-{shot.end_frame}, peak {shot.peak_wrist_speed:.2f} torso/s"
        )
        return shot


def merge_shots(shots: List[ShotSegment], merge_gap_seconds: float = 0.5) -> List[ShotSegment]:
    """
    Merge near-duplicate detections of one swing.

    A shot is folded into its predecessor when it uses the same hand and
    starts within merge_gap_seconds of the predecessor's end. The merged shot
    keeps the faster peak (and its type, quality and contact angles).
    Shots are renumbered from 1.
    """
    merged: List[ShotSegment] = []

    for shot in sorted(shots, key=lambda s: s.start_frame):
        if merged:
            last = merged[-1]
            if shot.hand == last.hand and shot.start_time - last.end_time <= merge_gap_seconds:
                merged[-1] = _combine(last, shot)
                continue
        merged.append(shot)

    return [replace(shot, shot_number=i) for i, shot in enumerate(merged, start=1)]


def _combine(first: ShotSegment, second: ShotSegment) -> ShotSegment:
    peak = second if second.peak_wrist_speed > first.peak_wrist_speed else first
    total = first.frame_count + second.frame_count
    mean = BodyAngles(**{
        name: (getattr(first.average_angles, name) * first.frame_count
               + getattr(second.average_angles, name) * second.frame_count) / total
        for name in BodyAngles.__dataclass_fields__
    })
    return replace(
        peak,
        start_frame=first.start_frame,
        end_frame=second.end_frame,
        start_time=first.start_time,
        end_time=second.end_time,
        frame_count=total,
        average_angles=mean,
    )
