import json
import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

class FFprobeAdapter:
    """Wrapper around ffprobe to pick the stream that gets converted."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def get_streams(self, file_path: Path) -> List[Dict[str, Any]]:
        """Executes ffprobe and returns the parsed stream list."""
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            str(file_path)
        ]

        result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        if result.returncode != 0:
            raise RuntimeError(f"ffprobe failed for {file_path}: {result.stderr.strip()}")

        data = json.loads(result.stdout or "{}")
        return data.get("streams", [])

    def primary_video_stream_index(self, file_path: Path) -> Optional[int]:
        """Index of the first real video stream, skipping embedded cover art.

        Returns None when ffprobe is unavailable or finds no such stream; the
        caller then falls back to ffmpeg's own selection.
        """
        try:
            streams = self.get_streams(file_path)
        except (OSError, RuntimeError, ValueError, subprocess.TimeoutExpired) as e:
            self.logger.debug(f"FFPROBE_UNAVAILABLE: {file_path.name} ({e})")
            return None

        for stream in streams:
            if stream.get("codec_type") != "video":
                continue
            disposition = stream.get("disposition") or {}
            if disposition.get("attached_pic"):
                continue
            try:
                return int(stream["index"])
            except (KeyError, TypeError, ValueError):
                continue
        return None
