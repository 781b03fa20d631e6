import pytest
import yaml
from pathlib import Path
from videoconverter.config.models import AppConfig
from videoconverter.infrastructure.event_bus import EventBus

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def watch_root(tmp_path):
    """Creates a watched directory with a sibling output directory location."""
    root = tmp_path / "incoming"
    root.mkdir()
    return root

@pytest.fixture
def sample_config(watch_root, tmp_path):
    """Returns an AppConfig tuned for fast tests."""
    return AppConfig(
        service={"max_workers": 2, "conversion_timeout": 30},
        directories={
            "watch_paths": [str(watch_root)],
            "file_patterns": ["*.mkv", "*.mp4", "*.avi"],
            "recursive": True,
            "output_dir": "../converted",
        },
        logging={"log_dir": str(tmp_path / "logs")},
        file_handling={"delete_original": True},
        error_handling={"max_retries": 3, "retry_delay": 0},
        advanced={
            "lockfile": str(tmp_path / "run" / "videoconverter.lock"),
            "stability_check_interval": 0.05,
            "stability_check_duration": 2.0,
            "stability_required_samples": 2,
            "shutdown_grace_period": 2.0,
        },
    )

@pytest.fixture
def config_yaml_path(tmp_path, watch_root):
    """Creates a temporary YAML config file in the installer's layout."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "config.yml"

    content = {
        'service': {
            'log_level': 'info',
            'max_workers': 2,
            'conversion_timeout': 3600,
        },
        'directories': {
            'watch_paths': [str(watch_root)],
            'file_patterns': ['*.mkv', '*.mp4', '*.avi'],
            'recursive': True,
            'output_dir': '../converted',
        },
        'logging': {
            'log_dir': str(tmp_path / 'logs'),
            'rotation_size': 10485760,
            'retention_days': 14,
        },
        'file_handling': {
            'delete_original': True,
            'preserve_permissions': True,
        },
        'error_handling': {
            'max_retries': 3,
            'retry_delay': 60,
        },
        'advanced': {
            'lockfile': str(tmp_path / 'run' / 'videoconverter.lock'),
            'stability_check_interval': 2,
            'stability_check_duration': 5,
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

@pytest.fixture
def recorded_events(event_bus):
    """Collects every event published on `event_bus`."""
    from videoconverter.domain.events import Event
    events = []
    event_bus.subscribe(Event, events.append)
    return events

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def dummy_video_files(watch_root):
    """Creates finished dummy video files in the watched directory."""
    files = []

    for i in range(3):
        f = watch_root / f"video{i}.mkv"
        f.write_bytes(b"dummy video content " * 100)  # ~2KB
        files.append(f)

    # Create a subdirectory with a file
    subdir = watch_root / "subdir"
    subdir.mkdir()
    f = subdir / "subvideo.mp4"
    f.write_bytes(b"dummy video content " * 100)
    files.append(f)

    # Not a video
    (watch_root / "notes.txt").write_text("ignore me")

    return files

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (threaded end-to-end runs)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
