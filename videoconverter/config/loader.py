import yaml
from pathlib import Path
from .models import AppConfig

DEFAULT_CONFIG_PATH = Path("/etc/videoconverter/config.yml")

def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping at the top level: {config_path}")

    return AppConfig(**data)
