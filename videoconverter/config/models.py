import os
from pathlib import Path
from typing import List, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator
from videoconverter.domain.models import WatchedPath

DEFAULT_PATTERNS = ["*.mkv", "*.mp4", "*.avi"]
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

class ServiceConfig(BaseModel):
    log_level: str = "INFO"
    max_workers: int = Field(default=2, ge=1, le=32)
    conversion_timeout: float = Field(default=3600.0, gt=0)  # seconds per attempt

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unsupported log_level: {v}. Use one of {sorted(LOG_LEVELS)}")
        return level

class WatchPathEntry(BaseModel):
    """Structured form of a watch_paths entry; unset fields inherit directory defaults."""
    path: str
    recursive: Optional[bool] = None
    enabled: bool = True
    file_patterns: Optional[List[str]] = None

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        cleaned = v.strip()
        if not cleaned:
            raise ValueError("watch path must not be empty")
        return cleaned

class DirectoriesConfig(BaseModel):
    watch_paths: List[Union[str, WatchPathEntry]] = Field(default_factory=list)
    file_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_PATTERNS))
    recursive: bool = True
    # Relative paths are resolved against each watched root.
    output_dir: str = "../converted"
    output_extension: str = ".mp4"

    @field_validator("watch_paths", mode="before")
    @classmethod
    def coerce_single_path(cls, v):
        if isinstance(v, (str, dict)):
            return [v]
        return v

    @field_validator("file_patterns")
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        patterns = [p.strip() for p in v if p and p.strip()]
        if not patterns:
            raise ValueError("file_patterns must contain at least one pattern")
        return patterns

    @field_validator("output_extension")
    @classmethod
    def normalize_extension(cls, v: str) -> str:
        v = v.strip()
        return v if v.startswith(".") else f".{v}"

class LoggingConfig(BaseModel):
    log_dir: str = "/var/log/videoconverter"
    rotation_size: int = Field(default=10485760, ge=1024)  # bytes
    retention_days: int = Field(default=14, ge=1)

class FileHandlingConfig(BaseModel):
    delete_original: bool = True
    preserve_permissions: bool = True
    preserve_timestamps: bool = True

class ErrorHandlingConfig(BaseModel):
    max_retries: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=60.0, ge=0)
    retry_backoff: Literal["fixed", "exponential"] = "fixed"
    max_retry_delay: float = Field(default=3600.0, ge=0)

class AdvancedConfig(BaseModel):
    lockfile: str = "/var/run/videoconverter/videoconverter.lock"
    stale_lock_seconds: float = Field(default=300.0, gt=0)
    stability_check_interval: float = Field(default=2.0, gt=0)
    # Overall time a file may keep changing before it is dropped.
    stability_check_duration: float = Field(default=300.0, gt=0)
    stability_required_samples: int = Field(default=2, ge=2)
    stability_workers: int = Field(default=8, ge=1)
    shutdown_grace_period: float = Field(default=30.0, ge=0)

    @model_validator(mode="after")
    def validate_window(self):
        if self.stability_check_duration < self.stability_check_interval:
            raise ValueError("stability_check_duration must be >= stability_check_interval")
        return self

class EncoderConfig(BaseModel):
    override: Optional[str] = None
    probe_timeout: float = Field(default=10.0, gt=0)
    render_device: str = "/dev/dri/renderD128"
    quality: int = Field(default=23, ge=0, le=51)
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"
    container_format: str = "mp4"
    extra_args: List[str] = Field(default_factory=list)
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    @field_validator("audio_bitrate")
    @classmethod
    def validate_audio_bitrate(cls, v: str) -> str:
        v = v.strip()
        if not v or not v[:-1].isdigit() or v[-1] not in "kM":
            raise ValueError(f"audio_bitrate must look like 192k or 1M, got {v!r}")
        return v

class AppConfig(BaseModel):
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    directories: DirectoriesConfig = Field(default_factory=DirectoriesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    file_handling: FileHandlingConfig = Field(default_factory=FileHandlingConfig)
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    advanced: AdvancedConfig = Field(default_factory=AdvancedConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)

    @field_validator("encoder")
    @classmethod
    def validate_override(cls, v: EncoderConfig) -> EncoderConfig:
        if v.override is not None:
            from videoconverter.infrastructure.encoders import PROFILES
            if v.override not in PROFILES:
                raise ValueError(
                    f"Unknown encoder override: {v.override}. Use one of {sorted(PROFILES)}"
                )
        return v

    @model_validator(mode="after")
    def validate_output_dir(self):
        for wp in self.watched_paths():
            if self.output_dir_for(wp.root) == wp.root:
                raise ValueError(f"output_dir must not be the watched directory itself: {wp.root}")
        return self

    def watched_paths(self) -> List[WatchedPath]:
        """Normalizes watch_paths (plain strings or structured entries) into WatchedPath records."""
        dirs = self.directories
        result: List[WatchedPath] = []
        seen = set()
        for entry in dirs.watch_paths:
            if isinstance(entry, str):
                entry = WatchPathEntry(path=entry)
            root = Path(os.path.abspath(Path(entry.path).expanduser()))
            if root in seen:
                continue
            seen.add(root)
            result.append(WatchedPath(
                root=root,
                recursive=dirs.recursive if entry.recursive is None else entry.recursive,
                enabled=entry.enabled,
                patterns=list(entry.file_patterns or dirs.file_patterns),
            ))
        return result

    def output_dir_for(self, root: Path) -> Path:
        out = Path(self.directories.output_dir).expanduser()
        if not out.is_absolute():
            out = root / out
        return Path(os.path.normpath(str(out)))
