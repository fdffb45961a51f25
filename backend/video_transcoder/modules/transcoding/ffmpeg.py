"""FFmpeg and ffprobe invocation.

The prober and encoder are defined as abstract interfaces so the job
orchestrator can run against fakes; the ffmpeg/ffprobe implementations
shell out to the binaries and treat them as opaque tools.
"""

import logging
import math
import os
import re
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from video_transcoder.modules.transcoding.models import MediaMetadata, Rendition

logger = logging.getLogger(__name__)

PLAYLIST_FILENAME = "index.m3u8"
SEGMENT_FILENAME_TEMPLATE = "segment_%03d.ts"
SEGMENT_GLOB = "segment_*.ts"

# Keep the tail of ffmpeg's stderr; the useful part of its diagnostics is at the end
STDERR_TAIL_CHARS = 2000

_DIMENSIONS_RE = re.compile(r"(\d+)x(\d+)")
_SEGMENT_NUMBER_RE = re.compile(r"segment_(\d+)\.ts")


class FFmpegError(Exception):
    """Base class for failures of the external media tools."""


class ProbeError(FFmpegError):
    """Raised when ffprobe cannot report duration or dimensions."""


class EncodeError(FFmpegError):
    """Raised when ffmpeg fails to produce a rendition."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class ToolTimeoutError(FFmpegError):
    """Raised when a tool exceeds its allowed runtime."""


class ProcessCancelledError(FFmpegError):
    """Raised when a running tool is stopped because its job was cancelled."""


def run_tool(
    cmd: list[str],
    timeout: Optional[float] = None,
    cancel_event: Optional[threading.Event] = None,
    poll_interval: float = 0.5,
) -> subprocess.CompletedProcess:
    """Run an external tool to completion.

    The tool runs in its own process group so it can be killed together
    with any children. While it runs the cancel event and the deadline are
    polled every ``poll_interval`` seconds.

    Args:
        cmd: Command as list of arguments
        timeout: Maximum runtime in seconds (None for no limit)
        cancel_event: Event that, once set, kills the tool
        poll_interval: Seconds between cancel/deadline checks

    Returns:
        CompletedProcess with captured stdout and stderr

    Raises:
        OSError: If the tool cannot be started
        ToolTimeoutError: If the tool exceeds ``timeout``
        ProcessCancelledError: If ``cancel_event`` is set while the tool runs
    """
    logger.debug(f"Running: {' '.join(cmd)}")

    process = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=True,
    )
    deadline = time.monotonic() + timeout if timeout is not None else None

    try:
        while True:
            try:
                stdout, stderr = process.communicate(timeout=poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    raise ProcessCancelledError(f"{Path(cmd[0]).name} cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    raise ToolTimeoutError(
                        f"{Path(cmd[0]).name} exceeded timeout of {timeout} seconds"
                    )
    finally:
        if process.poll() is None:
            _kill_process_group(process)
            process.communicate()

    return subprocess.CompletedProcess(cmd, process.returncode, stdout, stderr)


def _kill_process_group(process: subprocess.Popen) -> None:
    """Kill a tool and its entire process group with SIGKILL."""
    try:
        pgid = os.getpgid(process.pid)
        logger.info(f"Killing process group {pgid}")
        os.killpg(pgid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug("Process already terminated")


def _stderr_tail(stderr: Optional[str]) -> str:
    stderr = (stderr or "").strip()
    return stderr[-STDERR_TAIL_CHARS:]


def parse_duration_millis(output: str) -> int:
    """Convert ffprobe's duration in seconds to whole milliseconds.

    Raises:
        ProbeError: If the output is not a finite, non-negative number
    """
    text = output.strip()
    try:
        seconds = float(text)
    except ValueError as e:
        raise ProbeError(f"failed to parse video duration: {text!r}") from e

    if not math.isfinite(seconds) or seconds < 0:
        raise ProbeError(f"failed to parse video duration: {text!r}")

    return int(seconds * 1000)


def parse_dimensions(output: str) -> tuple[int, int]:
    """Parse ffprobe's ``WIDTHxHEIGHT`` output.

    Raises:
        ProbeError: If the output has any other shape or a zero dimension
    """
    text = output.strip()
    match = _DIMENSIONS_RE.fullmatch(text)
    if match is None:
        raise ProbeError(f"invalid resolution format: {text!r}")

    width, height = int(match.group(1)), int(match.group(2))
    if width == 0 or height == 0:
        raise ProbeError(f"invalid resolution format: {text!r}")
    return width, height


class MediaProber(ABC):
    """Reads duration and dimensions from a local media file."""

    @abstractmethod
    def probe(
        self,
        input_path: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> MediaMetadata:
        """Probe a local file.

        Raises:
            ProbeError: If duration or dimensions cannot be determined
        """


class RenditionEncoder(ABC):
    """Produces one HLS rendition from a local source file."""

    @abstractmethod
    def encode(
        self,
        input_path: str,
        rendition: Rendition,
        output_dir: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """Encode ``rendition`` into ``output_dir``.

        Returns:
            Path of the written playlist

        Raises:
            EncodeError: If the encoder fails or writes no playlist
        """


class FFprobeProber(MediaProber):
    """ffprobe-based media prober."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: Optional[float] = 60.0):
        """Initialize prober.

        Args:
            ffprobe_path: Path to ffprobe binary
            timeout: Maximum runtime per ffprobe call in seconds
        """
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    def build_duration_command(self, input_path: str) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            input_path,
        ]

    def build_dimensions_command(self, input_path: str) -> list[str]:
        return [
            self.ffprobe_path,
            "-v", "error",
            "-select_streams", "v:0",
            "-show_entries", "stream=width,height",
            "-of", "csv=s=x:p=0",
            input_path,
        ]

    def _run(self, cmd: list[str], what: str, cancel_event: Optional[threading.Event]) -> str:
        try:
            result = run_tool(cmd, timeout=self.timeout, cancel_event=cancel_event)
        except (OSError, ToolTimeoutError) as e:
            raise ProbeError(f"failed to get video {what}: {e}") from e

        if result.returncode != 0:
            raise ProbeError(
                f"failed to get video {what}: ffprobe exited with code "
                f"{result.returncode}: {_stderr_tail(result.stderr)}"
            )
        return result.stdout

    def probe(
        self,
        input_path: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> MediaMetadata:
        duration_millis = parse_duration_millis(
            self._run(self.build_duration_command(input_path), "duration", cancel_event)
        )
        width, height = parse_dimensions(
            self._run(self.build_dimensions_command(input_path), "resolution", cancel_event)
        )

        metadata = MediaMetadata(duration_millis=duration_millis, width=width, height=height)
        logger.info(
            f"Probed {input_path}: {width}x{height}, {duration_millis} ms",
            extra={"width": width, "height": height, "duration_millis": duration_millis},
        )
        return metadata


@dataclass(frozen=True)
class EncodingProfile:
    """Quality settings applied identically to every rendition of a job."""
    video_codec: str = "libx264"
    preset: str = "medium"
    crf: int = 23
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    segment_seconds: int = 10
    playlist_type: str = "vod"

    @classmethod
    def from_settings(cls, settings) -> "EncodingProfile":
        return cls(
            video_codec=settings.VIDEO_CODEC,
            preset=settings.VIDEO_PRESET,
            crf=settings.VIDEO_CRF,
            audio_codec=settings.AUDIO_CODEC,
            audio_bitrate=settings.AUDIO_BITRATE,
            segment_seconds=settings.HLS_SEGMENT_SECONDS,
            playlist_type=settings.HLS_PLAYLIST_TYPE,
        )


def build_scale_filter(rendition: Rendition) -> str:
    """Shrink into the rendition's box keeping aspect ratio, then pad to even dimensions."""
    width, height = rendition.dimensions
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        "pad=ceil(iw/2)*2:ceil(ih/2)*2"
    )


def _segment_number(path: Path) -> int:
    match = _SEGMENT_NUMBER_RE.fullmatch(path.name)
    return int(match.group(1)) if match else -1


def list_segments(output_dir: str) -> list[Path]:
    """Segment files of a rendition directory, in playback order.

    Ordered by sequence number; the zero padding stops at three digits, so
    ``segment_1000.ts`` must still come after ``segment_999.ts``.
    """
    segments = Path(output_dir).glob(SEGMENT_GLOB)
    return sorted(segments, key=lambda path: (_segment_number(path), path.name))


class FFmpegEncoder(RenditionEncoder):
    """FFmpeg-based HLS rendition encoder."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        profile: Optional[EncodingProfile] = None,
        timeout: Optional[float] = 3600.0,
    ):
        """Initialize encoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            profile: Encoding profile (defaults used when omitted)
            timeout: Maximum runtime per rendition in seconds
        """
        self.ffmpeg_path = ffmpeg_path
        self.profile = profile or EncodingProfile()
        self.timeout = timeout

    def build_command(self, input_path: str, rendition: Rendition, output_dir: str) -> list[str]:
        """Build FFmpeg command for one HLS rendition.

        Args:
            input_path: Local source file
            rendition: Target rendition
            output_dir: Directory receiving playlist and segments

        Returns:
            FFmpeg command as list of arguments
        """
        profile = self.profile
        return [
            self.ffmpeg_path,
            "-y",  # Overwrite output
            "-i", input_path,
            # Video settings
            "-c:v", profile.video_codec,
            "-vf", build_scale_filter(rendition),
            "-preset", profile.preset,
            "-crf", str(profile.crf),
            # Audio settings
            "-c:a", profile.audio_codec,
            "-b:a", profile.audio_bitrate,
            # HLS output
            "-hls_time", str(profile.segment_seconds),
            "-hls_playlist_type", profile.playlist_type,
            "-hls_segment_filename", os.path.join(output_dir, SEGMENT_FILENAME_TEMPLATE),
            os.path.join(output_dir, PLAYLIST_FILENAME),
        ]

    def _clear_previous_output(self, output_dir: str) -> None:
        """Remove a previous run's playlist and segments so none are left over."""
        stale = [Path(output_dir) / PLAYLIST_FILENAME, *list_segments(output_dir)]
        for path in stale:
            path.unlink(missing_ok=True)

    def encode(
        self,
        input_path: str,
        rendition: Rendition,
        output_dir: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        self._clear_previous_output(output_dir)
        cmd = self.build_command(input_path, rendition, output_dir)

        start = time.perf_counter()
        try:
            result = run_tool(cmd, timeout=self.timeout, cancel_event=cancel_event)
        except (OSError, ToolTimeoutError) as e:
            raise EncodeError(f"transcode failed for {rendition.value}: {e}") from e

        if result.returncode != 0:
            stderr = _stderr_tail(result.stderr)
            raise EncodeError(
                f"transcode failed for {rendition.value}: ffmpeg exited with code "
                f"{result.returncode}\nffmpeg output: {stderr}",
                stderr=stderr,
            )

        playlist = Path(output_dir) / PLAYLIST_FILENAME
        if not playlist.is_file():
            raise EncodeError(
                f"transcode failed for {rendition.value}: ffmpeg wrote no playlist",
                stderr=_stderr_tail(result.stderr),
            )

        logger.info(
            f"Encoded {rendition.value} in {time.perf_counter() - start:.1f}s",
            extra={"rendition": rendition.value, "segments": len(list_segments(output_dir))},
        )
        return playlist
