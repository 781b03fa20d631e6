import logging
import queue
import re
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Deque, List, Optional, Tuple
from videoconverter.config.models import AppConfig
from videoconverter.domain.models import ConversionJob, EncoderProfile, ErrorKind, TranscodeOutcome
from videoconverter.infrastructure.ffprobe import FFprobeAdapter

TMP_SUFFIX = ".tmp"

# Problems with the input or the requested output that no retry can fix.
FATAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"Could not find tag for codec",
        r"codec not currently supported in container",
        r"Invalid data found when processing input",
        r"moov atom not found",
        r"does not contain any stream",
        r"EBML header parsing failed",
        r"Decoder \(codec [^)]*\) not found",
        r"Unknown decoder",
        r"Unsupported codec",
        r"Output file #?\d* does not contain any stream",
        r"Invalid argument.*Error (?:initializing output stream|opening output)",
    )
]

# Transient conditions of the machine rather than the file.
RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"Input/output error",
        r"Device or resource busy",
        r"Resource temporarily unavailable",
        r"Cannot allocate memory",
        r"OpenEncodeSessionEx failed",
        r"No space left on device",
        r"Failed to initialise VAAPI connection",
        r"Error creating a MFX session",
    )
]


def tmp_path_for(destination: Path) -> Path:
    return destination.with_name(destination.name + TMP_SUFFIX)


def classify_failure(returncode: Optional[int], output: str) -> Tuple[ErrorKind, str]:
    """Maps a failed ffmpeg run to an ErrorKind and a one-line reason."""
    for pattern in FATAL_PATTERNS:
        match = pattern.search(output)
        if match:
            return ErrorKind.FATAL, _line_containing(output, match.start())
    for pattern in RETRYABLE_PATTERNS:
        match = pattern.search(output)
        if match:
            return ErrorKind.RETRYABLE, _line_containing(output, match.start())
    if returncode is not None and returncode < 0:
        return ErrorKind.RETRYABLE, f"ffmpeg killed by signal {-returncode}"
    return ErrorKind.RETRYABLE, f"ffmpeg exited with code {returncode}"


def _line_containing(text: str, pos: int) -> str:
    start = text.rfind("\n", 0, pos) + 1
    end = text.find("\n", pos)
    return text[start:end if end != -1 else len(text)].strip()


class TranscodeExecutor:
    """Runs one ffmpeg conversion per call and reports a TranscodeOutcome.

    Output goes to `<destination>.tmp` and is renamed into place only when
    ffmpeg exits 0; the temporary file is removed on every other path.
    """

    def __init__(
        self,
        config: AppConfig,
        ffprobe: Optional[FFprobeAdapter] = None,
        tail_lines: int = 40,
    ):
        self.config = config
        self.ffprobe = ffprobe or FFprobeAdapter(config.encoder.ffprobe_path)
        self.tail_lines = tail_lines
        self.logger = logging.getLogger(__name__)

    def _build_command(self, job: ConversionJob, profile: EncoderProfile, video_index: Optional[int]) -> List[str]:
        """Constructs the ffmpeg command line arguments."""
        enc = self.config.encoder
        cmd = [
            enc.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",  # Overwrite a leftover tmp file
        ]
        cmd.extend(profile.render_input_args(enc.render_device))
        cmd.extend(["-i", str(job.source_path)])

        # One primary video stream (never cover art), every audio stream, nothing else
        video_map = f"0:{video_index}" if video_index is not None else "0:V:0"
        cmd.extend(["-map", video_map, "-map", "0:a?"])

        cmd.extend(profile.render_video_args(enc.quality, enc.render_device))
        cmd.extend(["-c:a", enc.audio_codec, "-b:a", enc.audio_bitrate])
        cmd.extend(["-sn", "-dn", "-map_metadata", "0"])
        if enc.container_format in ("mp4", "mov"):
            cmd.extend(["-movflags", "+faststart"])
        cmd.extend(enc.extra_args)

        # The .tmp extension says nothing about the container, so force it
        cmd.extend(["-f", enc.container_format, str(tmp_path_for(job.destination_path))])
        return cmd

    def build_command(self, job: ConversionJob, profile: EncoderProfile) -> List[str]:
        video_index = self.ffprobe.primary_video_stream_index(job.source_path)
        return self._build_command(job, profile, video_index)

    def execute(
        self,
        job: ConversionJob,
        profile: EncoderProfile,
        kill_event: Optional[threading.Event] = None,
    ) -> TranscodeOutcome:
        """Executes the conversion; never raises for ffmpeg-level failures."""
        filename = job.source_path.name
        timeout = self.config.service.conversion_timeout
        tmp_path = tmp_path_for(job.destination_path)
        start_time = time.monotonic()

        try:
            job.destination_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return TranscodeOutcome(
                error_kind=ErrorKind.RETRYABLE,
                error_message=f"Cannot create output directory: {e}",
            )

        cmd = self.build_command(job, profile)
        self.logger.info(f"FFMPEG_START: {filename} (encoder={profile.encoder}, timeout={timeout}s)")
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                errors="replace",
                bufsize=1
            )
        except OSError as e:
            return TranscodeOutcome(
                error_kind=ErrorKind.RETRYABLE,
                error_message=f"Cannot start ffmpeg: {e}",
            )

        tail: Deque[str] = deque(maxlen=self.tail_lines)
        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()

        def _reader():
            if not process.stdout:
                output_queue.put(None)
                return
            for line in process.stdout:
                output_queue.put(line)
            output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        timed_out = False
        interrupted = False
        while True:
            if kill_event is not None and kill_event.is_set():
                self.logger.info(f"FFMPEG_INTERRUPTED: {filename} (shutdown)")
                self._stop_process(process)
                interrupted = True
                break
            if time.monotonic() - start_time > timeout:
                self.logger.warning(f"FFMPEG_TIMEOUT: {filename} exceeded {timeout}s")
                self._stop_process(process)
                timed_out = True
                break

            try:
                line = output_queue.get(timeout=0.1)
            except queue.Empty:
                if process.poll() is not None and not reader_thread.is_alive():
                    break
                continue

            if line is None:
                break
            tail.append(line.rstrip())

        process.wait()
        reader_thread.join(timeout=1.0)
        output = "\n".join(tail)
        elapsed = time.monotonic() - start_time
        outcome = TranscodeOutcome(
            exit_code=process.returncode,
            output=output,
            timed_out=timed_out,
            interrupted=interrupted,
            duration_seconds=elapsed,
        )

        if interrupted:
            outcome.error_message = "Interrupted by shutdown"
        elif timed_out:
            outcome.error_kind = ErrorKind.RETRYABLE
            outcome.error_message = f"Timed out after {timeout}s"
        elif process.returncode != 0:
            outcome.error_kind, outcome.error_message = classify_failure(process.returncode, output)
        else:
            try:
                tmp_path.replace(job.destination_path)
            except OSError as e:
                outcome.error_kind = ErrorKind.RETRYABLE
                outcome.error_message = f"Cannot move output into place: {e}"

        if not outcome.succeeded:
            self._remove_tmp(tmp_path)

        status = "ok" if outcome.succeeded else (outcome.error_kind.value if outcome.error_kind else "interrupted")
        self.logger.info(
            f"FFMPEG_END: {filename} status={status} code={process.returncode} elapsed={elapsed:.2f}s"
        )
        return outcome

    def _stop_process(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=3)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def _remove_tmp(self, tmp_path: Path) -> None:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Could not remove temporary output {tmp_path}: {e}")
