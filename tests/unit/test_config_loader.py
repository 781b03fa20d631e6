import pytest
from pydantic import ValidationError
from videoconverter.config.loader import load_config


def test_load_config_installer_layout(config_yaml_path, watch_root):
    config = load_config(config_yaml_path)

    assert config.service.log_level == "INFO"
    assert config.service.max_workers == 2
    assert config.file_handling.delete_original is True
    assert config.advanced.stability_check_duration == 5
    assert [p.root for p in config.watched_paths()] == [watch_root]


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yml")


def test_load_config_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yml"
    path.write_text("")

    config = load_config(path)

    assert config.service.max_workers == 2


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "list.yml"
    path.write_text("- a\n- b\n")

    with pytest.raises(ValueError, match="mapping"):
        load_config(path)


def test_load_config_validation_error(tmp_path):
    path = tmp_path / "bad.yml"
    path.write_text("service:\n  max_workers: 0\n")

    with pytest.raises(ValidationError):
        load_config(path)
