"""Shared fixtures: synthetic poses, a scripted pose model and fake ffmpeg."""

import json
import math
import re
import subprocess
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import cv2
import numpy as np
import pytest

from services import frame_extractor
from services.frame_extractor import Extraction
from services.pose_estimator import COCO_KEYPOINT_NAMES, PoseModel
from services.types import Frame, Keypoint, Pose, VideoInfo

# Standing athlete, arms down. Torso length (shoulder mid → hip mid) = 100px.
BASE_POSITIONS = {
    "nose": (300, 100),
    "left_eye": (290, 95),
    "right_eye": (310, 95),
    "left_ear": (280, 100),
    "right_ear": (320, 100),
    "left_shoulder": (260, 150),
    "right_shoulder": (340, 150),
    "left_elbow": (250, 220),
    "right_elbow": (350, 220),
    "left_wrist": (245, 290),
    "right_wrist": (355, 290),
    "left_hip": (270, 250),
    "right_hip": (330, 250),
    "left_knee": (270, 350),
    "right_knee": (330, 350),
    "left_ankle": (270, 450),
    "right_ankle": (330, 450),
}


def make_pose(
    frame_number: int = 1,
    fps: float = 10.0,
    overrides: Optional[Dict[str, tuple]] = None,
    confidence: float = 0.9,
    score: float = 0.9,
    confidences: Optional[Dict[str, float]] = None,
) -> Pose:
    """17-keypoint pose at 10fps sampling; overrides move individual keypoints."""
    positions = dict(BASE_POSITIONS)
    positions.update(overrides or {})
    confidences = confidences or {}
    keypoints = tuple(
        Keypoint(
            name=name,
            x=float(positions[name][0]),
            y=float(positions[name][1]),
            confidence=confidences.get(name, confidence),
        )
        for name in COCO_KEYPOINT_NAMES
    )
    return Pose(
        frame_number=frame_number,
        timestamp_seconds=(frame_number - 1) / fps,
        keypoints=keypoints,
        overall_score=score,
    )


def make_frame(frame_number: int, fps: float = 10.0, width: int = 64, height: int = 48) -> Frame:
    return Frame(
        frame_number=frame_number,
        timestamp_seconds=(frame_number - 1) / fps,
        width=width,
        height=height,
        pixels=np.zeros((height, width, 3), dtype=np.uint8),
    )


class FakePoseModel(PoseModel):
    """Returns scripted poses. `script(frame)` may return a Pose, None, or raise."""

    def __init__(self, script: Optional[Callable[[Frame], Optional[Pose]]] = None, fail_init: bool = False):
        self.script = script or (lambda frame: make_pose(frame.frame_number))
        self.fail_init = fail_init
        self.init_calls = 0
        self.infer_calls: List[int] = []

    def initialize(self) -> None:
        self.init_calls += 1
        if self.fail_init:
            raise OSError("weights file is corrupt")

    def infer(self, frame: Frame) -> Optional[Pose]:
        self.infer_calls.append(frame.frame_number)
        return self.script(frame)


class FakeExtractor:
    """Stands in for FrameExtractor with pre-built frames."""

    def __init__(self, frame_count: int = 20, fps: float = 30.0, stride: int = 3, error: Optional[Exception] = None):
        self.frame_count = frame_count
        self.fps = fps
        self.stride = stride
        self.error = error
        self.calls = []

    def extract(self, video_path, target_fps):
        self.calls.append((video_path, target_fps))
        if self.error is not None:
            raise self.error
        frames = [make_frame(i, fps=target_fps) for i in range(1, self.frame_count + 1)]
        info = VideoInfo(fps=self.fps, duration=self.frame_count / target_fps, width=64, height=48)
        return Extraction(info=info, stride=self.stride, expected_frames=self.frame_count, frames=frames)


class FakeMedia:
    """
    Emulates ffprobe/ffmpeg for FrameExtractor.

    The ffmpeg fake honours the select stride and writes real JPEGs with
    OpenCV, so decoding is exercised for real.
    """

    def __init__(self):
        self.fps = "30/1"
        self.duration = 10.0
        self.width = 64
        self.height = 48
        self.has_video = True
        self.probe_fails = False
        self.corrupt = set()
        self.max_frames: Optional[int] = None
        self.ffmpeg_returncode = 0
        self.hang: Optional[str] = None  # "ffprobe" or "ffmpeg"
        self.calls: List[list] = []
        self.timeouts: List[Optional[float]] = []
        self.output_dirs: List[Path] = []

    def run(self, cmd, capture_output=False, text=False, check=False, **kwargs):
        self.calls.append(list(cmd))
        self.timeouts.append(kwargs.get("timeout"))
        if self.hang is not None and self.hang in cmd[0]:
            raise subprocess.TimeoutExpired(cmd, kwargs.get("timeout"))
        if "ffprobe" in cmd[0]:
            return self._probe(cmd, check)
        return self._ffmpeg(cmd)

    def _probe(self, cmd, check):
        if self.probe_fails:
            if check:
                raise subprocess.CalledProcessError(1, cmd, output="", stderr="Invalid data found when processing input")
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Invalid data")

        streams = [{"codec_type": "audio", "codec_name": "aac"}]
        if self.has_video:
            streams.append({
                "codec_type": "video",
                "codec_name": "h264",
                "width": self.width,
                "height": self.height,
                "r_frame_rate": self.fps,
                "avg_frame_rate": self.fps,
            })
        payload = {"streams": streams, "format": {"duration": str(self.duration)}}
        return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(payload), stderr="")

    def _ffmpeg(self, cmd):
        vf = cmd[cmd.index("-vf") + 1]
        stride = int(re.search(r"mod\(n\\,(\d+)\)", vf).group(1))
        pattern = cmd[-1]
        self.output_dirs.append(Path(pattern).parent)

        num, den = self.fps.split("/")
        native_total = round(self.duration * float(num) / float(den))
        count = math.ceil(native_total / stride)
        if self.max_frames is not None:
            count = min(count, self.max_frames)

        for i in range(1, count + 1):
            path = pattern % i
            if i in self.corrupt:
                Path(path).write_bytes(b"not a jpeg")
            else:
                cv2.imwrite(path, np.full((self.height, self.width, 3), i, dtype=np.uint8))

        stderr = "" if self.ffmpeg_returncode == 0 else "Error while decoding stream"
        return subprocess.CompletedProcess(cmd, self.ffmpeg_returncode, stdout="", stderr=stderr)


@pytest.fixture
def fake_media(monkeypatch):
    media = FakeMedia()
    monkeypatch.setattr(
        frame_extractor,
        "subprocess",
        SimpleNamespace(
            run=media.run,
            CalledProcessError=subprocess.CalledProcessError,
            TimeoutExpired=subprocess.TimeoutExpired,
        ),
    )
    return media


@pytest.fixture
def video_file(tmp_path):
    path = tmp_path / "rally.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42")
    return path
