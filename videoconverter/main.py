import shutil
import signal
import typer
from pathlib import Path
from typing import Optional
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table
from videoconverter.config.loader import DEFAULT_CONFIG_PATH, load_config
from videoconverter.config.models import AppConfig
from videoconverter.domain.models import LockResult
from videoconverter.infrastructure.encoders import EncoderDetector
from videoconverter.infrastructure.event_bus import EventBus
from videoconverter.infrastructure.event_log import EventLogger
from videoconverter.infrastructure.ffmpeg import TranscodeExecutor
from videoconverter.infrastructure.ffprobe import FFprobeAdapter
from videoconverter.infrastructure.instance_lock import InstanceLock, LockError
from videoconverter.infrastructure.logging import setup_logging
from videoconverter.pipeline.orchestrator import Orchestrator

EXIT_STARTUP_FATAL = 1
EXIT_ALREADY_RUNNING = 3

app = typer.Typer(help="videoconverter - watch folders and convert new videos with the best available encoder")

def _load_or_exit(config_path: Path) -> AppConfig:
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_STARTUP_FATAL)
    except (ValidationError, ValueError) as e:
        typer.secho(f"Invalid config {config_path}:\n{e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_STARTUP_FATAL)


def _build_detector(config: AppConfig, bus: EventBus) -> EncoderDetector:
    enc = config.encoder
    return EncoderDetector(
        bus,
        probe_timeout=enc.probe_timeout,
        device=enc.render_device,
        override=enc.override,
        ffmpeg_path=enc.ffmpeg_path,
    )


def _install_signal_handlers(orchestrator: Orchestrator) -> None:
    def _handler(signum, frame):
        orchestrator.request_shutdown(signal.Signals(signum).name)

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


@app.command()
def run(
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_PATH, "--config", "-c", envvar="CONFIG_PATH", help="Path to YAML config"
    ),
    log_dir: Optional[Path] = typer.Option(
        None, "--log-dir", envvar="LOG_PATH", help="Log directory (overrides config)"
    ),
    lockfile: Optional[Path] = typer.Option(
        None, "--lockfile", envvar="LOCK_PATH", help="Instance lock file (overrides config)"
    ),
    workers: Optional[int] = typer.Option(
        None, "--workers", "-w", min=1, max=32, help="Override number of parallel conversions"
    ),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Run the conversion service until SIGTERM or SIGINT."""
    config = _load_or_exit(config_path)

    # Apply CLI / environment overrides
    if log_dir is not None: config.logging.log_dir = str(log_dir)
    if lockfile is not None: config.advanced.lockfile = str(lockfile)
    if workers: config.service.max_workers = workers

    try:
        logger = setup_logging(
            Path(config.logging.log_dir),
            level=config.service.log_level,
            debug=debug,
            rotation_size=config.logging.rotation_size,
            retention_days=config.logging.retention_days,
        )
    except OSError as e:
        typer.secho(f"Error: cannot open log directory {config.logging.log_dir}: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_STARTUP_FATAL)

    watched = config.watched_paths()
    logger.info(f"videoconverter started: config={config_path}, watch_paths={[str(wp.root) for wp in watched]}")
    logger.info(
        f"Config: workers={config.service.max_workers}, timeout={config.service.conversion_timeout:g}s, "
        f"max_retries={config.error_handling.max_retries}, delete_original={config.file_handling.delete_original}"
    )

    bus = EventBus()
    EventLogger(bus)

    if shutil.which(config.encoder.ffmpeg_path) is None:
        logger.critical(f"STARTUP_FATAL: ffmpeg not found ({config.encoder.ffmpeg_path})")
        typer.secho(f"Error: ffmpeg not found: {config.encoder.ffmpeg_path}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_STARTUP_FATAL)

    lock = InstanceLock(Path(config.advanced.lockfile), bus, stale_after=config.advanced.stale_lock_seconds)
    try:
        result = lock.acquire()
    except LockError as e:
        logger.critical(f"STARTUP_FATAL: {e}")
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_STARTUP_FATAL)
    if result == LockResult.ALREADY_RUNNING:
        typer.secho("Another videoconverter instance is already running.", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(code=EXIT_ALREADY_RUNNING)

    try:
        orchestrator = Orchestrator(
            config=config,
            event_bus=bus,
            detector=_build_detector(config, bus),
            executor=TranscodeExecutor(config, FFprobeAdapter(config.encoder.ffprobe_path)),
            instance_lock=lock,
        )
        _install_signal_handlers(orchestrator)
        orchestrator.run()
    except Exception as e:
        logger.exception("Fatal error in conversion service")
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=EXIT_STARTUP_FATAL)
    finally:
        lock.release()

    logger.info("videoconverter stopped")


@app.command()
def detect(
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_PATH, "--config", "-c", envvar="CONFIG_PATH", help="Path to YAML config"
    ),
):
    """Probe every encoder tier and show which one would be used."""
    config = _load_or_exit(config_path)
    bus = EventBus()
    detector = _build_detector(config, bus)
    selected = detector.detect()

    table = Table(title="Encoder detection")
    table.add_column("Tier", justify="right")
    table.add_column("Profile")
    table.add_column("Encoder")
    table.add_column("Available")
    table.add_column("Details")
    for profile, available, reason in detector.probe_all():
        marker = " *" if profile.name == selected.name else ""
        table.add_row(
            str(profile.tier),
            f"{profile.name}{marker}",
            profile.encoder,
            "[green]yes[/green]" if available else "[red]no[/red]",
            reason,
        )

    console = Console()
    console.print(table)
    how = " (config override)" if config.encoder.override else ""
    console.print(f"Selected: [bold]{selected.name}[/bold] ({selected.encoder}){how}")


@app.command("check-config")
def check_config(
    config_path: Path = typer.Option(
        DEFAULT_CONFIG_PATH, "--config", "-c", envvar="CONFIG_PATH", help="Path to YAML config"
    ),
):
    """Validate the YAML config and show the watched paths it resolves to."""
    config = _load_or_exit(config_path)

    table = Table(title=f"Watched paths ({config_path})")
    table.add_column("Path")
    table.add_column("Recursive")
    table.add_column("Enabled")
    table.add_column("Patterns")
    table.add_column("Output")
    table.add_column("Status")
    for wp in config.watched_paths():
        status = "[green]ok[/green]" if wp.root.is_dir() else "[yellow]missing[/yellow]"
        table.add_row(
            str(wp.root),
            "yes" if wp.recursive else "no",
            "yes" if wp.enabled else "no",
            ", ".join(wp.patterns),
            str(config.output_dir_for(wp.root)),
            status,
        )

    console = Console()
    console.print(table)
    console.print(
        f"Workers: {config.service.max_workers} | Retries: {config.error_handling.max_retries} "
        f"({config.error_handling.retry_backoff}, {config.error_handling.retry_delay:g}s) | "
        f"Lock: {config.advanced.lockfile}"
    )
    typer.secho("Config OK", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
