"""
Tests for wrist-speed shot segmentation.

Synthetic sequences are sampled at 10fps with a 100px torso, so a wrist
moving 50px between samples travels at 5 torso lengths per second.
"""

import pytest

from conftest import make_pose
from services.angle_calculator import compute_angles
from services.shot_detector import (
    ShotDetector,
    classify_shot,
    hitting_wrist,
    merge_shots,
    score_shot_quality,
    torso_length,
)
from services.types import BodyAngles, Pose


def wrist_track(xs, start_frame=1, y=200, frames=None):
    """Poses whose right wrist follows xs (one x per sample)."""
    frames = frames or range(start_frame, start_frame + len(xs))
    return [
        make_pose(n, overrides={"right_wrist": (x, y)})
        for n, x in zip(frames, xs)
    ]


def run(poses, detector=None):
    detector = detector or ShotDetector()
    for pose in poses:
        detector.update(pose, compute_angles(pose))
    return detector.finish()


STILL = [355] * 5
SWING = [405, 475, 525]
AFTER = [525] * 5


# =============================================================================
# BODY GEOMETRY
# =============================================================================

def test_torso_length():
    assert torso_length(make_pose()) == pytest.approx(100.0)


def test_torso_length_needs_confident_hips():
    pose = make_pose(confidences={"left_hip": 0.1})
    assert torso_length(pose) is None


def test_hitting_wrist_prefers_confident_side():
    hand, wrist = hitting_wrist(make_pose(confidences={"right_wrist": 0.4}))
    assert hand == "left"
    assert wrist.name == "left_wrist"


def test_hitting_wrist_right_wins_ties():
    hand, _ = hitting_wrist(make_pose())
    assert hand == "right"


def test_hitting_wrist_none_when_both_hidden():
    assert hitting_wrist(make_pose(confidences={"right_wrist": 0.0, "left_wrist": 0.0})) == (None, None)


# =============================================================================
# SEGMENTATION
# =============================================================================

def test_still_athlete_has_no_shots():
    assert run(wrist_track([355] * 30)) == []


def test_single_swing():
    shots = run(wrist_track(STILL + SWING + AFTER))

    assert len(shots) == 1
    shot = shots[0]
    assert shot.shot_number == 1
    assert shot.hand == "right"
    assert (shot.start_frame, shot.peak_frame, shot.end_frame) == (6, 7, 8)
    assert shot.frame_count == 3
    assert shot.peak_wrist_speed == pytest.approx(7.0)
    assert shot.start_time == pytest.approx(0.5)
    assert shot.duration == pytest.approx(0.2)
    assert shot.shot_type == "forehand"


def test_two_separated_swings():
    xs = STILL + SWING + [525] * 15 + [475, 405, 355] + STILL

    shots = run(wrist_track(xs))

    assert [s.shot_number for s in shots] == [1, 2]
    assert shots[1].start_frame > shots[0].end_frame


def test_shot_spans_batches():
    poses = wrist_track(STILL + SWING + AFTER)
    detector = ShotDetector()

    for pose in poses[:6]:
        detector.update(pose, compute_angles(pose))
    assert detector.shots_detected == 1
    assert detector.shots == []

    for pose in poses[6:]:
        detector.update(pose, compute_angles(pose))
    assert len(detector.finish()) == 1


def test_swing_still_open_at_end_is_closed_by_finish():
    shots = run(wrist_track(STILL + SWING))
    assert len(shots) == 1
    assert shots[0].end_frame == 8


def test_frame_gap_closes_shot():
    frames = [1, 2, 3, 4, 5, 6, 7, 20, 21]
    shots = run(wrist_track([355, 355, 355, 355, 355, 405, 455, 505, 505], frames=frames))

    assert len(shots) == 1
    assert shots[0].end_frame == 7


def test_hand_switch_closes_shot():
    poses = wrist_track(STILL + [405, 455])
    poses.append(make_pose(8, overrides={"right_wrist": (505, 200)}, confidences={"right_wrist": 0.4}))

    shots = run(poses)

    assert len(shots) == 1
    assert shots[0].hand == "right"
    assert shots[0].end_frame == 7


def test_out_of_order_poses_rejected():
    detector = ShotDetector()
    pose = make_pose(5)
    detector.update(pose, compute_angles(pose))

    with pytest.raises(ValueError):
        detector.update(pose, compute_angles(pose))


def test_thresholds_validated():
    with pytest.raises(ValueError):
        ShotDetector(start_speed=1.0, end_speed=2.0)


def test_segmentation_is_deterministic():
    xs = STILL + SWING + STILL + [300, 250, 200] + STILL
    assert run(wrist_track(xs)) == run(wrist_track(xs))


# =============================================================================
# MERGING
# =============================================================================

def test_merge_pause_within_swing():
    # Swing, one still sample, swing again within 0.5s
    shots = run(wrist_track(STILL + SWING + [525] + [575, 625] + [625] * 5))
    assert len(shots) == 2

    merged = merge_shots(shots)

    assert len(merged) == 1
    shot = merged[0]
    assert shot.shot_number == 1
    assert (shot.start_frame, shot.end_frame) == (6, 11)
    assert shot.frame_count == 5
    assert shot.peak_frame == 7


def test_merge_keeps_distant_shots():
    shots = run(wrist_track(STILL + SWING + [525] * 15 + [475, 405, 355] + STILL))
    assert len(merge_shots(shots)) == 2


def test_merge_renumbers():
    shots = run(wrist_track(
        STILL + SWING + [525] + [575, 625] + [625] * 15 + [575, 525] + STILL
    ))
    merged = merge_shots(shots)
    assert [s.shot_number for s in merged] == list(range(1, len(merged) + 1))


def test_merge_empty():
    assert merge_shots([]) == []


# =============================================================================
# CLASSIFICATION
# =============================================================================

@pytest.mark.parametrize("hand, overrides, expected", [
    ("right", {"right_wrist": (360, 50), "right_elbow": (350, 100)}, "smash"),
    ("right", {"right_wrist": (380, 120), "right_elbow": (370, 180)}, "volley"),
    ("right", {"right_wrist": (240, 220), "right_elbow": (300, 200)}, "backhand"),
    ("right", {}, "dink"),
    ("right", {"right_wrist": (420, 200)}, "forehand"),
    ("left", {"left_wrist": (360, 220), "left_elbow": (300, 200)}, "backhand"),
    ("left", {"left_wrist": (180, 200)}, "forehand"),
])
def test_classify_shot(hand, overrides, expected):
    assert classify_shot(make_pose(overrides=overrides), hand) == expected


def test_classify_without_arm_keypoints_defaults_to_forehand():
    pose = make_pose()
    trimmed = Pose(
        frame_number=1,
        timestamp_seconds=0.0,
        keypoints=tuple(kp for kp in pose.keypoints if kp.name != "right_elbow"),
        overall_score=0.9,
    )
    assert classify_shot(trimmed, "right") == "forehand"


def test_quality_full_marks():
    assert score_shot_quality(make_pose(), BodyAngles(right_elbow=155.0), "right", 100.0) == 100.0


def test_quality_level_body_only():
    assert score_shot_quality(make_pose(), BodyAngles(right_elbow=90.0), "right", 100.0) == 85.0


def test_quality_base():
    tilted = make_pose(overrides={"left_shoulder": (260, 100)})
    assert score_shot_quality(tilted, BodyAngles(left_elbow=155.0, right_elbow=90.0), "right", 100.0) == 70.0


def test_quality_uses_hitting_arm():
    assert score_shot_quality(make_pose(), BodyAngles(left_elbow=150.0), "left", 100.0) == 100.0
