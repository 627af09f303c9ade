"""
Frame extraction using ffprobe/ffmpeg.

Samples every Nth native frame of the source video, where
N = native_fps / target_fps rounded half up, and decodes each sampled image into a
BGR numpy array with OpenCV.

Example: 10s video @ 30fps, target 2fps → stride 15 → 20 frames
(native frames 0, 15, 30, ... 285). The whole video is always sampled: a
25fps source at 10fps gets stride 3 and 84 frames, the last at 9.96s.

Intermediate JPEGs are written to a temporary directory and each one is
deleted as soon as it has been read back, whether decoding succeeded or not.
"""

import json
import logging
import math
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

import cv2

from services.errors import JobTimeoutError, UnreadableSourceError
from services.types import Frame, VideoInfo

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_%06d.jpg"


@dataclass
class Extraction:
    """Result of sampling a video."""
    info: VideoInfo
    stride: int
    expected_frames: int
    frames: List[Frame] = field(default_factory=list)


def parse_frame_rate(rate: str) -> float:
    """Parse an ffprobe rate such as '30000/1001' or '25'. Returns 0 if unusable."""
    if not rate:
        return 0.0
    try:
        if "/" in rate:
            num, den = rate.split("/", 1)
            return float(num) / float(den) if float(den) != 0 else 0.0
        return float(rate)
    except ValueError:
        return 0.0


def compute_stride(native_fps: float, target_fps: float) -> int:
    """Number of native frames between two sampled frames, rounded half up."""
    return max(1, math.floor(native_fps / target_fps + 0.5))


def expected_frame_count(info: VideoInfo, stride: int) -> int:
    """
    Number of native frames the select filter keeps (n = 0, stride, 2·stride, ...).

    Uses the container's frame count when ffprobe reports one, otherwise
    round(duration × fps). Only used to detect truncated output.
    """
    native_frames = info.frame_count or round(info.duration * info.fps)
    return max(1, math.ceil(native_frames / stride))


class FrameExtractor:
    """Samples frames from a video with the ffmpeg command line tools."""

    def __init__(
        self,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        jpeg_quality: int = 2,
        timeout_seconds: Optional[float] = None,
    ):
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary
        self.jpeg_quality = jpeg_quality
        self.timeout_seconds = timeout_seconds

    def probe(self, video_path: Union[str, Path]) -> VideoInfo:
        """
        Read native frame rate, duration and size with ffprobe.

        Raises:
            UnreadableSourceError: missing file, ffprobe failure, or no usable
                video stream.
            JobTimeoutError: ffprobe ran longer than timeout_seconds.
        """
        path = Path(video_path)
        if not path.is_file():
            raise UnreadableSourceError(f"{path} does not exist")

        cmd = [
            self.ffprobe_binary, "-v", "quiet",
            "-print_format", "json",
            "-show_streams", "-show_format",
            str(path),
        ]

        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, check=True, timeout=self.timeout_seconds
            )
            data = json.loads(result.stdout or "{}")
        except subprocess.TimeoutExpired:
            raise JobTimeoutError(f"Reading video metadata timed out after {self.timeout_seconds:g} seconds")
        except FileNotFoundError:
            raise UnreadableSourceError(f"{self.ffprobe_binary} is not installed")
        except subprocess.CalledProcessError as e:
            raise UnreadableSourceError(f"ffprobe failed ({e.stderr.strip() if e.stderr else e.returncode})")
        except json.JSONDecodeError as e:
            raise UnreadableSourceError(f"could not parse ffprobe output ({e})")

        video_stream = None
        for stream in data.get("streams", []):
            if stream.get("codec_type") == "video":
                video_stream = stream
                break

        if video_stream is None:
            raise UnreadableSourceError("no video stream found")

        fps = parse_frame_rate(video_stream.get("avg_frame_rate", ""))
        if fps <= 0:
            fps = parse_frame_rate(video_stream.get("r_frame_rate", ""))

        try:
            duration = float(data.get("format", {}).get("duration") or video_stream.get("duration") or 0)
        except (TypeError, ValueError):
            duration = 0.0

        if fps <= 0 or duration <= 0:
            raise UnreadableSourceError(
                f"invalid stream metadata (fps={fps}, duration={duration})"
            )

        frame_count = video_stream.get("nb_frames")
        return VideoInfo(
            fps=fps,
            duration=duration,
            width=int(video_stream.get("width", 0)),
            height=int(video_stream.get("height", 0)),
            frame_count=int(frame_count) if frame_count and str(frame_count).isdigit() else None,
            codec=video_stream.get("codec_name", "unknown"),
        )

    def extract(self, video_path: Union[str, Path], target_fps: float) -> Extraction:
        """
        Probe the video and decode the sampled frames.

        A truncated or partially corrupt video yields the frames that could be
        decoded. Zero decodable frames is an error.

        Args:
            video_path: Local path of the source video
            target_fps: Frames per second to sample (> 0)

        Returns:
            Extraction with metadata and frames sorted by frame_number

        Raises:
            UnreadableSourceError: probe failure or no decodable frames
            JobTimeoutError: ffprobe or ffmpeg ran longer than timeout_seconds
        """
        if target_fps <= 0:
            raise ValueError(f"target_fps must be positive, got {target_fps}")

        info = self.probe(video_path)
        stride = compute_stride(info.fps, target_fps)
        expected = expected_frame_count(info, stride)

        logger.info(
            f"Extracting frames: {info.width}x{info.height} @ {info.fps:.2f}fps, "
            f"{info.duration:.1f}s, stride {stride}, expecting {expected} frames"
        )

        extraction = Extraction(info=info, stride=stride, expected_frames=expected)

        with tempfile.TemporaryDirectory(prefix="frames_") as tmp_dir:
            output_pattern = str(Path(tmp_dir) / FRAME_PATTERN)
            cmd = [
                self.ffmpeg_binary, "-v", "error", "-nostdin", "-y",
                "-i", str(video_path),
                "-vf", f"select='not(mod(n\\,{stride}))'",
                "-vsync", "vfr",
                "-q:v", str(self.jpeg_quality),
                output_pattern,
            ]

            try:
                result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout_seconds)
            except subprocess.TimeoutExpired:
                raise JobTimeoutError(f"Frame extraction timed out after {self.timeout_seconds:g} seconds")
            except FileNotFoundError:
                raise UnreadableSourceError(f"{self.ffmpeg_binary} is not installed")

            image_paths = sorted(Path(tmp_dir).glob("frame_*.jpg"))

            if result.returncode != 0:
                stderr = (result.stderr or "").strip()
                if not image_paths:
                    raise UnreadableSourceError(f"ffmpeg failed ({stderr or result.returncode})")
                logger.warning(
                    f"ffmpeg exited with {result.returncode} after {len(image_paths)} frames, "
                    f"keeping partial result: {stderr}"
                )

            for image_path in image_paths:
                frame = self._load_frame(image_path, info.fps, stride)
                if frame is not None:
                    extraction.frames.append(frame)

        if not extraction.frames:
            raise UnreadableSourceError("no decodable frames")

        extraction.frames.sort(key=lambda f: f.frame_number)

        if len(extraction.frames) < expected:
            logger.warning(f"Extracted {len(extraction.frames)}/{expected} frames (truncated or corrupt source)")
        else:
            logger.info(f"Extracted {len(extraction.frames)} frames")

        return extraction

    def extract_frames(self, video_path: Union[str, Path], target_fps: float) -> List[Frame]:
        """Sampled frames only, in ascending frame_number order."""
        return self.extract(video_path, target_fps).frames

    def _load_frame(self, image_path: Path, native_fps: float, stride: int) -> Frame | None:
        frame_number = int(image_path.stem.split("_")[1])
        try:
            pixels = cv2.imread(str(image_path), cv2.IMREAD_COLOR)
        except cv2.error as e:
            logger.warning(f"Could not decode frame {frame_number}: {e}")
            pixels = None
        finally:
            image_path.unlink(missing_ok=True)

        if pixels is None or pixels.size == 0:
            logger.warning(f"Skipping frame {frame_number}: decode failed")
            return None

        height, width = pixels.shape[:2]
        return Frame(
            frame_number=frame_number,
            timestamp_seconds=(frame_number - 1) * stride / native_fps,
            width=width,
            height=height,
            pixels=pixels,
        )
