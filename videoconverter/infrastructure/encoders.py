"""Hardware encoder detection.

Probes the transcoding backends in a fixed priority order and returns the
first one that works on this machine:

1. ``nvenc``  - NVIDIA driver answers ``nvidia-smi -L``
2. ``qsv``    - ``vainfo`` on the render node reports the Intel iHD driver
3. ``vaapi``  - ``vainfo`` on the render node lists an encode entry point
4. ``software`` - libx264, always available

Detection runs once per process unless forced; a configured override skips
probing entirely.
"""

import logging
import re
import subprocess
import threading
from typing import Dict, List, Optional, Set, Tuple
from videoconverter.domain.events import EncoderProbed, EncoderSelected
from videoconverter.domain.models import EncoderProfile
from videoconverter.infrastructure.event_bus import EventBus

SOFTWARE_PROFILE = EncoderProfile(
    name="software",
    tier=4,
    encoder="libx264",
    video_args=["-c:v", "libx264", "-preset", "medium", "-crf", "{quality}", "-pix_fmt", "yuv420p"],
    description="CPU (libx264)",
)

PROFILES: Dict[str, EncoderProfile] = {
    profile.name: profile
    for profile in (
        EncoderProfile(
            name="nvenc",
            tier=1,
            encoder="h264_nvenc",
            probe_command=["nvidia-smi", "-L"],
            probe_pattern=r"^GPU \d+:",
            video_args=[
                "-c:v", "h264_nvenc", "-preset", "p5", "-rc", "vbr",
                "-cq", "{quality}", "-b:v", "0", "-pix_fmt", "yuv420p",
            ],
            description="NVIDIA NVENC",
        ),
        EncoderProfile(
            name="qsv",
            tier=2,
            encoder="h264_qsv",
            probe_command=["vainfo", "--display", "drm", "--device", "{device}"],
            probe_pattern=r"Intel iHD driver",
            input_args=["-init_hw_device", "qsv=hw:{device}", "-filter_hw_device", "hw"],
            video_args=[
                "-vf", "format=nv12,hwupload=extra_hw_frames=64",
                "-c:v", "h264_qsv", "-preset", "medium", "-global_quality", "{quality}",
            ],
            description="Intel Quick Sync Video",
        ),
        EncoderProfile(
            name="vaapi",
            tier=3,
            encoder="h264_vaapi",
            probe_command=["vainfo", "--display", "drm", "--device", "{device}"],
            probe_pattern=r"VAProfileH264\w*\s*:\s*VAEntrypointEncSlice",
            input_args=["-vaapi_device", "{device}"],
            video_args=["-vf", "format=nv12,hwupload", "-c:v", "h264_vaapi", "-qp", "{quality}"],
            description="VA-API (Mesa / Intel i965)",
        ),
        SOFTWARE_PROFILE,
    )
}

PROBE_ORDER: List[str] = [name for name, _ in sorted(PROFILES.items(), key=lambda item: item[1].tier)]


class EncoderDetector:
    """Selects the encoder profile used by every worker."""

    def __init__(
        self,
        event_bus: EventBus,
        probe_timeout: float = 10.0,
        device: str = "/dev/dri/renderD128",
        override: Optional[str] = None,
        ffmpeg_path: str = "ffmpeg",
        profiles: Optional[List[EncoderProfile]] = None,
    ):
        self.event_bus = event_bus
        self.probe_timeout = probe_timeout
        self.device = device
        self.override = override
        self.ffmpeg_path = ffmpeg_path
        self.profiles = sorted(profiles or PROFILES.values(), key=lambda p: p.tier)
        self.logger = logging.getLogger(__name__)
        self._selected: Optional[EncoderProfile] = None
        self._ffmpeg_encoders: Optional[Set[str]] = None
        self._lock = threading.Lock()

    def detect(self, force: bool = False) -> EncoderProfile:
        """Returns the best available profile, probing at most once unless forced."""
        with self._lock:
            if self._selected is not None and not force:
                return self._selected

            if self.override:
                profile = PROFILES.get(self.override)
                if profile is None:
                    # Only reachable when constructed directly; AppConfig rejects unknown names
                    self.logger.warning(f"Unknown encoder override {self.override!r}, probing instead")
                else:
                    self._selected = profile
                    self.event_bus.publish(EncoderSelected(profile=profile, overridden=True))
                    return profile

            if force:
                self._ffmpeg_encoders = None

            selected = None
            for profile in self.profiles:
                if not profile.is_hardware:
                    continue
                available, reason = self.probe(profile)
                if available:
                    selected = profile
                    break

            if selected is None:
                selected = self._fallback()
            self._selected = selected
            self.event_bus.publish(EncoderSelected(profile=selected))
            return selected

    def probe_all(self) -> List[Tuple[EncoderProfile, bool, str]]:
        """Probes every hardware tier without selecting (used by the `detect` command)."""
        results = []
        for profile in self.profiles:
            if profile.is_hardware:
                available, reason = self.probe(profile)
            else:
                available, reason = True, "software fallback"
            results.append((profile, available, reason))
        return results

    def probe(self, profile: EncoderProfile) -> Tuple[bool, str]:
        available, reason = self._run_probe(profile)
        if available:
            encoders = self._list_ffmpeg_encoders()
            if encoders and profile.encoder not in encoders:
                available, reason = False, f"ffmpeg lacks {profile.encoder}"
        self.event_bus.publish(EncoderProbed(
            profile=profile.name,
            tier=profile.tier,
            available=available,
            reason=reason,
        ))
        return available, reason

    def _fallback(self) -> EncoderProfile:
        for profile in self.profiles:
            if not profile.is_hardware:
                return profile
        return SOFTWARE_PROFILE

    def _run_probe(self, profile: EncoderProfile) -> Tuple[bool, str]:
        cmd = [arg.format(device=self.device) for arg in profile.probe_command]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.probe_timeout,
            )
        except FileNotFoundError:
            return False, f"{cmd[0]} not installed"
        except subprocess.TimeoutExpired:
            return False, f"{cmd[0]} timed out after {self.probe_timeout:g}s"
        except OSError as e:
            return False, f"{cmd[0]} failed to start: {e}"

        if result.returncode != 0:
            return False, f"{cmd[0]} exited with code {result.returncode}"
        output = (result.stdout or "") + (result.stderr or "")
        if profile.probe_pattern and not re.search(profile.probe_pattern, output, re.MULTILINE):
            return False, f"{cmd[0]} output lacks {profile.probe_pattern!r}"
        return True, "ok"

    def _list_ffmpeg_encoders(self) -> Set[str]:
        """Encoders compiled into ffmpeg; empty when ffmpeg cannot be queried."""
        if self._ffmpeg_encoders is not None:
            return self._ffmpeg_encoders
        encoders: Set[str] = set()
        try:
            result = subprocess.run(
                [self.ffmpeg_path, "-hide_banner", "-encoders"],
                capture_output=True,
                text=True,
                timeout=self.probe_timeout,
            )
            if result.returncode == 0:
                encoders = parse_encoder_list(result.stdout)
        except (OSError, subprocess.TimeoutExpired) as e:
            self.logger.debug(f"Could not list ffmpeg encoders: {e}")
        self._ffmpeg_encoders = encoders
        return encoders


_ENCODER_LINE = re.compile(r"^\s*[VAS][F.][S.][X.][B.][D.]\s+(\S+)")

def parse_encoder_list(text: str) -> Set[str]:
    """Parses `ffmpeg -encoders` output into a set of encoder names."""
    names = set()
    for line in text.splitlines():
        match = _ENCODER_LINE.match(line)
        if match and match.group(1) != "=":
            names.add(match.group(1))
    return names
