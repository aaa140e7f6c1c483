import logging
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from django.conf import settings

from .exceptions import EncodeError
from .ladder import Resolution
from .manifest import SUB_MANIFEST_NAME

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

STDERR_TAIL_CHARS = 4000


@dataclass(frozen=True)
class OutputSpec:
    resolution: Resolution
    bitrate: str                 # ffmpeg notation, e.g. "800k"
    output_dir: Path
    segment_seconds: int = 10
    playlist_name: str = SUB_MANIFEST_NAME
    segment_pattern: str = "seg_%04d.ts"
    list_size: int = 0           # 0 = keep every segment in the playlist

    @property
    def playlist_path(self) -> Path:
        return self.output_dir / self.playlist_name


def parse_progress_line(line: str, duration: float | None) -> float | None:
    """
    Turn one line of ``ffmpeg -progress`` output into a 0..100 percentage.

    Only ``out_time_us``/``out_time_ms`` (both microseconds, despite the name)
    and ``progress=end`` are meaningful; everything else yields None.
    """
    key, sep, value = line.strip().partition("=")
    if not sep:
        return None
    if key == "progress" and value == "end":
        return 100.0
    if key not in ("out_time_us", "out_time_ms") or not duration or duration <= 0:
        return None
    try:
        micros = int(value)
    except ValueError:  # "N/A" before the first frame
        return None
    return max(0.0, min(100.0, micros / 1_000_000 / duration * 100))


class FfmpegEncoder:
    """Resample one input into a single HLS rendition with ffmpeg."""

    def __init__(self, ffmpeg_path: str | None = None, ffprobe_path: str | None = None):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.ffprobe_path = ffprobe_path or settings.FFPROBE_PATH

    def probe_duration(self, input_path) -> float | None:
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            str(input_path),
        ]
        try:
            out = subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
            return float(out.stdout.strip())
        except (OSError, subprocess.CalledProcessError, ValueError) as exc:
            # Encoding still works; we just cannot report fractional progress.
            logger.warning("Could not probe duration of %s: %s", input_path, exc)
            return None

    def build_command(self, input_path, spec: OutputSpec) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-i", str(input_path),
            "-vf", f"scale={spec.resolution.width}:{spec.resolution.height}",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-b:v", spec.bitrate,
            "-c:a", "aac",
            "-b:a", "128k",
            "-hls_time", str(spec.segment_seconds),
            "-hls_list_size", str(spec.list_size),
            "-hls_segment_filename", str(spec.output_dir / spec.segment_pattern),
            "-f", "hls",
            "-progress", "pipe:1",
            "-nostats",
            str(spec.playlist_path),
        ]

    def transcode(self, input_path, spec: OutputSpec, on_progress: ProgressCallback | None = None) -> None:
        """
        Blocks until ffmpeg exits. ``on_progress`` is called from this thread
        with non-decreasing percentages; it must return quickly.
        """
        spec.output_dir.mkdir(parents=True, exist_ok=True)
        duration = self.probe_duration(input_path)
        cmd = self.build_command(input_path, spec)
        logger.debug("Running %s", " ".join(cmd))

        with tempfile.TemporaryFile() as stderr:
            try:
                proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr, text=True)
            except OSError as exc:
                raise EncodeError(str(exc), reason=f"encoder unavailable: {exc}") from exc

            with proc:
                for line in proc.stdout:
                    percent = parse_progress_line(line, duration)
                    if percent is not None and on_progress is not None:
                        on_progress(percent)
                returncode = proc.wait()

            if returncode != 0:
                stderr.seek(0)
                tail = stderr.read().decode("utf-8", errors="ignore")[-STDERR_TAIL_CHARS:]
                last_line = tail.strip().splitlines()[-1] if tail.strip() else f"exit status {returncode}"
                raise EncodeError(tail or last_line, reason=f"encode failed: {last_line}")
