"""
Joint angle calculation from pose keypoints.

All functions are pure. Missing keypoints give 0° instead of raising, so a
partially visible athlete still produces a full BodyAngles record.

Keypoints are looked up by name (case-insensitive substring), not by index,
so any model using the same landmark names works regardless of ordering.
"""

import math
from typing import Iterable, List, Optional, Sequence

from services.types import BodyAngles, Keypoint, Pose


def find_keypoint(keypoints: Iterable[Keypoint], name: str) -> Optional[Keypoint]:
    """First keypoint whose name contains `name`, ignoring case."""
    needle = name.lower()
    for kp in keypoints:
        if kp.name and needle in kp.name.lower():
            return kp
    return None


def joint_angle(
    p1: Optional[Keypoint],
    p2: Optional[Keypoint],
    p3: Optional[Keypoint],
) -> float:
    """
    Calculate the angle at p2 formed by p1-p2-p3.

    Uses the arctangent difference of the two rays from p2 and reflects
    results above 180° so the value is always within [0, 180].

    Returns:
        Angle in degrees, or 0.0 if any point is missing
    """
    if p1 is None or p2 is None or p3 is None:
        return 0.0

    radians = math.atan2(p3.y - p2.y, p3.x - p2.x) - math.atan2(p1.y - p2.y, p1.x - p2.x)
    angle = abs(math.degrees(radians))

    if angle > 180.0:
        angle = 360.0 - angle

    return _bounded(angle)


def torso_lean(
    left_shoulder: Optional[Keypoint],
    right_shoulder: Optional[Keypoint],
    left_hip: Optional[Keypoint],
    right_hip: Optional[Keypoint],
) -> float:
    """
    Deviation from vertical of the hip-midpoint → shoulder-midpoint line.

    0° = upright. Image y grows downward, so an upright torso has the
    shoulders at a smaller y than the hips.
    """
    if None in (left_shoulder, right_shoulder, left_hip, right_hip):
        return 0.0

    shoulder_x = (left_shoulder.x + right_shoulder.x) / 2
    shoulder_y = (left_shoulder.y + right_shoulder.y) / 2
    hip_x = (left_hip.x + right_hip.x) / 2
    hip_y = (left_hip.y + right_hip.y) / 2

    lean = abs(math.degrees(math.atan2(shoulder_x - hip_x, hip_y - shoulder_y)))
    return _bounded(lean)


def compute_angles(pose: Pose) -> BodyAngles:
    """Major joint angles for one pose."""
    kps = pose.keypoints

    left_shoulder = find_keypoint(kps, "left_shoulder")
    right_shoulder = find_keypoint(kps, "right_shoulder")
    left_elbow = find_keypoint(kps, "left_elbow")
    right_elbow = find_keypoint(kps, "right_elbow")
    left_wrist = find_keypoint(kps, "left_wrist")
    right_wrist = find_keypoint(kps, "right_wrist")
    left_hip = find_keypoint(kps, "left_hip")
    right_hip = find_keypoint(kps, "right_hip")
    left_knee = find_keypoint(kps, "left_knee")
    right_knee = find_keypoint(kps, "right_knee")
    left_ankle = find_keypoint(kps, "left_ankle")
    right_ankle = find_keypoint(kps, "right_ankle")

    return BodyAngles(
        left_elbow=joint_angle(left_shoulder, left_elbow, left_wrist),
        right_elbow=joint_angle(right_shoulder, right_elbow, right_wrist),
        left_knee=joint_angle(left_hip, left_knee, left_ankle),
        right_knee=joint_angle(right_hip, right_knee, right_ankle),
        left_shoulder=joint_angle(left_hip, left_shoulder, left_elbow),
        right_shoulder=joint_angle(right_hip, right_shoulder, right_elbow),
        left_hip=joint_angle(left_shoulder, left_hip, left_knee),
        right_hip=joint_angle(right_shoulder, right_hip, right_knee),
        torso_lean=torso_lean(left_shoulder, right_shoulder, left_hip, right_hip),
    )


def average_angles(samples: Sequence[BodyAngles]) -> BodyAngles:
    """Per-joint mean. An empty sequence gives all zeros."""
    if not samples:
        return BodyAngles()

    count = len(samples)
    names: List[str] = list(BodyAngles.__dataclass_fields__)
    return BodyAngles(**{
        name: sum(getattr(s, name) for s in samples) / count
        for name in names
    })


def _bounded(angle: float) -> float:
    # NaN/inf coordinates must not leak out of the [0, 180] range
    if not math.isfinite(angle):
        return 0.0
    return min(180.0, max(0.0, angle))
