"""Resolve a video URL supplied by the upload subsystem to a local file."""

import logging
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator
from urllib.parse import unquote, urlparse

import httpx

from services.errors import UnreadableSourceError

logger = logging.getLogger(__name__)


@contextmanager
def open_video_source(video_url: str, timeout: float = 60.0) -> Iterator[Path]:
    """
    Yield a readable local path for `video_url`.

    - http(s) URLs are downloaded to a temp file that is removed on exit
    - file:// URLs and plain paths are used as-is

    Raises:
        UnreadableSourceError: if the download fails
    """
    parsed = urlparse(video_url)

    if parsed.scheme not in ("http", "https"):
        if parsed.scheme == "file":
            yield Path(unquote(parsed.path))
        else:
            yield Path(video_url)
        return

    suffix = Path(parsed.path).suffix or ".mp4"
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        logger.info(f"Downloading video from {parsed.netloc}{parsed.path}")
        try:
            with httpx.stream("GET", video_url, timeout=timeout, follow_redirects=True) as response:
                response.raise_for_status()
                with tmp_path.open("wb") as out:
                    for chunk in response.iter_bytes():
                        out.write(chunk)
        except httpx.HTTPError as e:
            raise UnreadableSourceError(f"download failed ({e})") from e

        yield tmp_path
    finally:
        # Cleanup temp file
        tmp_path.unlink(missing_ok=True)
