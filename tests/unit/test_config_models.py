import pytest
from pathlib import Path
from pydantic import ValidationError
from videoconverter.config.models import (
    AdvancedConfig,
    AppConfig,
    DirectoriesConfig,
    EncoderConfig,
    ServiceConfig,
)


def test_defaults_match_installer_layout():
    config = AppConfig()

    assert config.service.max_workers == 2
    assert config.service.conversion_timeout == 3600
    assert config.directories.file_patterns == ["*.mkv", "*.mp4", "*.avi"]
    assert config.directories.output_dir == "../converted"
    assert config.logging.rotation_size == 10485760
    assert config.logging.retention_days == 14
    assert config.error_handling.max_retries == 3
    assert config.error_handling.retry_delay == 60
    assert config.advanced.lockfile == "/var/run/videoconverter/videoconverter.lock"
    assert config.advanced.stability_check_interval == 2
    assert config.encoder.override is None


def test_log_level_is_normalized():
    assert ServiceConfig(log_level="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError):
        ServiceConfig(log_level="chatty")


def test_max_workers_bounds():
    with pytest.raises(ValidationError):
        ServiceConfig(max_workers=0)
    with pytest.raises(ValidationError):
        ServiceConfig(max_workers=33)


def test_file_patterns_must_not_be_empty():
    with pytest.raises(ValidationError):
        DirectoriesConfig(file_patterns=["", "  "])


def test_output_extension_gets_dot():
    assert DirectoriesConfig(output_extension="mkv").output_extension == ".mkv"


def test_stability_window_validation():
    with pytest.raises(ValidationError):
        AdvancedConfig(stability_check_interval=10, stability_check_duration=5)
    with pytest.raises(ValidationError):
        AdvancedConfig(stability_required_samples=1)


def test_unknown_encoder_override_rejected():
    with pytest.raises(ValidationError) as exc:
        AppConfig(encoder={"override": "quantum"})
    assert "Unknown encoder override" in str(exc.value)


def test_known_encoder_override_accepted():
    assert AppConfig(encoder={"override": "vaapi"}).encoder.override == "vaapi"


def test_audio_bitrate_validation():
    assert EncoderConfig(audio_bitrate="128k").audio_bitrate == "128k"
    with pytest.raises(ValidationError):
        EncoderConfig(audio_bitrate="loud")


def test_watched_paths_from_plain_strings(tmp_path):
    config = AppConfig(directories={
        "watch_paths": [str(tmp_path / "a"), str(tmp_path / "b")],
        "recursive": False,
        "file_patterns": ["*.mkv"],
    })

    paths = config.watched_paths()

    assert [p.root for p in paths] == [tmp_path / "a", tmp_path / "b"]
    assert all(p.recursive is False for p in paths)
    assert all(p.enabled for p in paths)
    assert all(p.patterns == ["*.mkv"] for p in paths)


def test_watched_paths_structured_entries_override_defaults(tmp_path):
    config = AppConfig(directories={
        "watch_paths": [
            {"path": str(tmp_path / "a"), "recursive": False, "file_patterns": ["*.avi"]},
            {"path": str(tmp_path / "b"), "enabled": False},
            str(tmp_path / "c"),
        ],
    })

    a, b, c = config.watched_paths()

    assert (a.recursive, a.patterns) == (False, ["*.avi"])
    assert b.enabled is False
    assert b.recursive is True
    assert c.patterns == ["*.mkv", "*.mp4", "*.avi"]


def test_watched_paths_single_string_and_dedupe(tmp_path):
    config = AppConfig(directories={"watch_paths": str(tmp_path)})
    assert [p.root for p in config.watched_paths()] == [tmp_path]

    config = AppConfig(directories={"watch_paths": [str(tmp_path), str(tmp_path) + "/"]})
    assert len(config.watched_paths()) == 1


def test_watched_paths_relative_become_absolute(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = AppConfig(directories={"watch_paths": ["videos"]})

    assert config.watched_paths()[0].root == tmp_path / "videos"


def test_output_dir_relative_to_root(tmp_path):
    config = AppConfig()
    assert config.output_dir_for(tmp_path / "incoming") == tmp_path / "converted"


def test_output_dir_absolute(tmp_path):
    config = AppConfig(directories={"output_dir": str(tmp_path / "out")})
    assert config.output_dir_for(Path("/anything")) == tmp_path / "out"


def test_output_dir_must_differ_from_watched_dir(tmp_path):
    with pytest.raises(ValidationError, match="must not be the watched directory"):
        AppConfig(directories={"watch_paths": [str(tmp_path)], "output_dir": "."})
