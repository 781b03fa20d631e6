import subprocess
from unittest.mock import MagicMock, patch
import pytest
from videoconverter.domain.events import EncoderProbed, EncoderSelected
from videoconverter.infrastructure.encoders import (
    PROBE_ORDER,
    PROFILES,
    EncoderDetector,
    parse_encoder_list,
)

ENCODERS_OUTPUT = """Encoders:
 V..... = Video
 A..... = Audio
 ------
 V....D libx264              libx264 H.264 / AVC / MPEG-4 AVC (codec h264)
 V....D h264_nvenc           NVIDIA NVENC H.264 encoder (codec h264)
 V..... h264_qsv             H.264 / AVC (Intel Quick Sync Video acceleration) (codec h264)
 V....D h264_vaapi           H.264/AVC (VAAPI) (codec h264)
 A....D aac                  AAC (Advanced Audio Coding)
"""

VAINFO_IHD = """vainfo: VA-API version: 1.20 (libva 2.12.0)
vainfo: Driver version: Intel iHD driver for Intel(R) Gen Graphics - 24.1.0
      VAProfileH264Main               : VAEntrypointEncSlice
"""

VAINFO_MESA = """vainfo: Driver version: Mesa Gallium driver 23.2.1 for AMD Radeon
      VAProfileH264ConstrainedBaseline: VAEntrypointVLD
      VAProfileH264Main               : VAEntrypointEncSlice
"""


def _completed(returncode=0, stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")


def _fake_run(responses):
    """Builds a subprocess.run replacement keyed by the executable name."""
    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd)
        response = responses.get(cmd[0])
        if isinstance(response, BaseException):
            raise response
        if response is None:
            raise FileNotFoundError(cmd[0])
        return response

    return run, calls


def test_probe_order_is_tiered():
    assert PROBE_ORDER == ["nvenc", "qsv", "vaapi", "software"]
    assert not PROFILES["software"].is_hardware


def test_parse_encoder_list():
    names = parse_encoder_list(ENCODERS_OUTPUT)

    assert {"libx264", "h264_nvenc", "h264_qsv", "h264_vaapi", "aac"} <= names
    assert "=" not in names


def test_nvenc_wins_when_available():
    run, calls = _fake_run({
        "nvidia-smi": _completed(stdout="GPU 0: NVIDIA GeForce RTX 3060 (UUID: GPU-123)\n"),
        "ffmpeg": _completed(stdout=ENCODERS_OUTPUT),
    })
    bus = MagicMock()

    with patch("subprocess.run", side_effect=run):
        profile = EncoderDetector(bus).detect()

    assert profile.name == "nvenc"
    assert [c[0] for c in calls] == ["nvidia-smi", "ffmpeg"]
    published = [c.args[0] for c in bus.publish.call_args_list]
    assert isinstance(published[0], EncoderProbed) and published[0].available
    assert isinstance(published[-1], EncoderSelected)


def test_falls_through_to_qsv_on_intel():
    run, _ = _fake_run({
        "vainfo": _completed(stdout=VAINFO_IHD),
        "ffmpeg": _completed(stdout=ENCODERS_OUTPUT),
    })

    with patch("subprocess.run", side_effect=run):
        profile = EncoderDetector(MagicMock()).detect()

    assert profile.name == "qsv"


def test_vaapi_on_non_intel_driver():
    run, calls = _fake_run({
        "vainfo": _completed(stdout=VAINFO_MESA),
        "ffmpeg": _completed(stdout=ENCODERS_OUTPUT),
    })

    with patch("subprocess.run", side_effect=run):
        profile = EncoderDetector(MagicMock(), device="/dev/dri/renderD129").detect()

    assert profile.name == "vaapi"
    assert ["vainfo", "--display", "drm", "--device", "/dev/dri/renderD129"] in calls


def test_software_fallback_when_nothing_probes():
    run, _ = _fake_run({
        "nvidia-smi": _completed(returncode=9),
        "vainfo": subprocess.TimeoutExpired(cmd="vainfo", timeout=10),
    })
    bus = MagicMock()

    with patch("subprocess.run", side_effect=run):
        profile = EncoderDetector(bus).detect()

    assert profile.name == "software"
    probes = [c.args[0] for c in bus.publish.call_args_list if isinstance(c.args[0], EncoderProbed)]
    assert [p.profile for p in probes] == ["nvenc", "qsv", "vaapi"]
    assert not any(p.available for p in probes)
    assert "timed out" in probes[1].reason


def test_probe_rejected_when_ffmpeg_lacks_encoder():
    run, _ = _fake_run({
        "nvidia-smi": _completed(stdout="GPU 0: Tesla T4\n"),
        "ffmpeg": _completed(stdout=" V....D libx264   libx264 H.264\n"),
    })

    with patch("subprocess.run", side_effect=run):
        profile = EncoderDetector(MagicMock()).detect()

    assert profile.name == "software"


def test_detection_is_cached_until_forced():
    run, calls = _fake_run({})
    detector = EncoderDetector(MagicMock())

    with patch("subprocess.run", side_effect=run):
        first = detector.detect()
        probes_after_first = len(calls)
        second = detector.detect()
        assert len(calls) == probes_after_first
        detector.detect(force=True)

    assert first is second
    assert len(calls) > probes_after_first


def test_override_skips_probing():
    bus = MagicMock()

    with patch("subprocess.run") as mock_run:
        profile = EncoderDetector(bus, override="vaapi").detect()

    assert profile.name == "vaapi"
    mock_run.assert_not_called()
    event = bus.publish.call_args.args[0]
    assert isinstance(event, EncoderSelected) and event.overridden


def test_probe_all_reports_every_tier():
    run, _ = _fake_run({"vainfo": _completed(stdout=VAINFO_MESA)})

    with patch("subprocess.run", side_effect=run):
        results = EncoderDetector(MagicMock()).probe_all()

    summary = {profile.name: available for profile, available, _ in results}
    assert summary == {"nvenc": False, "qsv": False, "vaapi": True, "software": True}


@pytest.mark.parametrize("profile_name", ["nvenc", "qsv", "vaapi"])
def test_probe_commands_never_use_shell(profile_name):
    run, calls = _fake_run({})

    with patch("subprocess.run", side_effect=run) as mock_run:
        EncoderDetector(MagicMock()).probe(PROFILES[profile_name])

    assert isinstance(calls[0], list)
    assert "shell" not in mock_run.call_args.kwargs
