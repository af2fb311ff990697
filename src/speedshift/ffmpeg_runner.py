"""FFmpeg runner for tempo changes with progress monitoring.

Runs one FFmpeg process per call, parses ``-progress`` output from stderr
and keeps the remaining stderr lines as the diagnostic text reported on
failure. A global timeout is optional; without one a stuck FFmpeg call
blocks only the job that started it.
"""

import logging
import os
import re
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from speedshift.planner import build_filter

logger = logging.getLogger(__name__)

# Keys FFmpeg writes with "-progress pipe:2"
PROGRESS_KEYS = {
    "frame", "fps", "stream_0_0_q", "bitrate", "total_size", "out_time_us",
    "out_time_ms", "out_time", "dup_frames", "drop_frames", "speed", "progress",
}


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current output position in seconds
    bitrate_kbps: float = 0.0        # Current bitrate
    speed: float = 0.0               # Processing speed multiplier (e.g., 40x)
    last_update: float = 0.0         # Timestamp of last update


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    timed_out: bool = False
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)


class FfmpegRunner:
    """FFmpeg orchestration for audio tempo changes.

    Example:
        >>> runner = FfmpegRunner()
        >>> result = runner.change_tempo("clip.mp3", [0.5, 0.6], "speed_0.3x_clip.mp3")
        >>> if not result.success:
        ...     print(result.stderr)
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        global_timeout_s: Optional[int] = None,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = False,
        ffmpeg_loglevel: str = "error",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None
    ):
        """Initialize FFmpeg runner.

        Args:
            ffmpeg_path: FFmpeg executable (None = imageio-ffmpeg binary)
            global_timeout_s: Maximum duration for one FFmpeg call (None = no limit)
            kill_grace_period_s: Grace period between terminate and kill
            save_artifacts_on_failure: Save command and stderr on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Directory for failure artifacts
            progress_callback: Optional callback for progress updates
        """
        self.ffmpeg_path = ffmpeg_path
        self.global_timeout_s = global_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback

    @classmethod
    def from_config(cls, encoding) -> "FfmpegRunner":
        """Build a runner from an ``EncodingConfig``."""
        return cls(
            ffmpeg_path=encoding.ffmpeg_path,
            global_timeout_s=encoding.global_timeout_s,
            kill_grace_period_s=encoding.kill_grace_period_s,
            save_artifacts_on_failure=encoding.save_artifacts_on_failure,
            ffmpeg_loglevel=encoding.ffmpeg_loglevel,
            temp_dir=encoding.temp_dir,
        )

    def build_tempo_command(self, source_path: str, steps: List[float], output_path: str) -> List[str]:
        return [
            self._get_ffmpeg_exe(),
            "-y",  # Overwrite output
            "-i", source_path,
            "-filter:a", build_filter(steps),
            "-progress", "pipe:2",  # Progress to stderr
            "-nostats",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ]

    def change_tempo(self, source_path: str, steps: List[float], output_path: str) -> FfmpegResult:
        """Re-encode ``source_path`` with a chained atempo filter.

        Args:
            source_path: Input audio file
            steps: Per-step atempo factors, each in [0.5, 2.0]
            output_path: Output file path (overwritten)

        Returns:
            FfmpegResult with success status and diagnostic stderr
        """
        cmd = self.build_tempo_command(source_path, steps, output_path)
        return self._run_ffmpeg(cmd)

    def _run_ffmpeg(self, cmd: List[str]) -> FfmpegResult:
        """Execute FFmpeg, collecting diagnostics and progress from stderr."""
        start_time = time.time()
        progress = FfmpegProgress()
        diagnostic: List[str] = []
        logger.debug("Running: %s", " ".join(cmd))

        process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            bufsize=1  # Line buffered for real-time progress
        )

        monitor = threading.Thread(
            target=self._monitor_progress,
            args=(process.stderr, progress, diagnostic),
            daemon=True
        )
        monitor.start()

        timed_out = False
        try:
            returncode = process.wait(timeout=self.global_timeout_s)
        except subprocess.TimeoutExpired:
            timed_out = True
            self._kill_process(process)
            returncode = -1
            diagnostic.append(f"FFmpeg timed out after {self.global_timeout_s}s\n")
        except BaseException:
            self._kill_process(process)
            raise
        finally:
            monitor.join(timeout=2)

        stderr = "".join(diagnostic)
        artifacts = []
        if returncode != 0 and self.save_artifacts_on_failure:
            artifacts = self._save_failure_artifacts(cmd, stderr)

        return FfmpegResult(
            success=(returncode == 0),
            returncode=returncode,
            stderr=stderr,
            duration_s=time.time() - start_time,
            timed_out=timed_out,
            final_progress=progress,
            artifacts_saved=artifacts
        )

    def _monitor_progress(self, stderr_stream, progress: FfmpegProgress, diagnostic: List[str]) -> None:
        """Split stderr into progress updates and diagnostic lines.

        FFmpeg progress format:
            bitrate= 128.0kbits/s
            out_time=00:00:05.123456
            speed=42.5x
            progress=continue
        """
        last_callback = 0.0

        for line in stderr_stream:
            key, sep, value = line.strip().partition("=")
            if not sep or key not in PROGRESS_KEYS:
                diagnostic.append(line)
                continue

            if key == "out_time":
                match = re.match(r'(\d+):(\d+):(\d+)\.(\d+)', value)
                if match:
                    h, m, s, frac = match.groups()
                    progress.current_time_s = (
                        int(h) * 3600 + int(m) * 60 + int(s) + float(f"0.{frac}")
                    )
                    progress.last_update = time.time()
            elif key == "bitrate":
                match = re.match(r'\s*([\d.]+)kbits/s', value)
                if match:
                    progress.bitrate_kbps = float(match.group(1))
            elif key == "speed":
                match = re.match(r'\s*([\d.]+)x', value)
                if match:
                    progress.speed = float(match.group(1))

            now = time.time()
            if self.progress_callback and now - last_callback >= 2.0:
                last_callback = now
                try:
                    self.progress_callback(progress)
                except Exception:
                    logger.exception("Progress callback error")

    def _kill_process(self, process: subprocess.Popen) -> None:
        """Terminate FFmpeg, escalating to kill after the grace period."""
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Write the failed command line and its stderr next to each other."""
        log_path = self._get_temp_dir() / f"speedshift_ffmpeg_{int(time.time())}_{os.getpid()}.log"
        body = "\n".join([
            f"# FFmpeg failure at {time.ctime()}",
            "$ " + " ".join(cmd),
            "",
            stderr or "(no stderr)",
        ])
        try:
            log_path.write_text(body + "\n")
        except OSError as e:
            logger.warning("Could not write FFmpeg log %s: %s", log_path, e)
            return []
        logger.info("FFmpeg failure log written to %s", log_path)
        return [log_path]

    def _get_temp_dir(self) -> Path:
        path = Path(self.temp_dir or tempfile.gettempdir())
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _get_ffmpeg_exe(self) -> str:
        if self.ffmpeg_path:
            return self.ffmpeg_path
        return get_ffmpeg_exe()


def get_ffmpeg_exe() -> str:
    """FFmpeg executable bundled with imageio-ffmpeg."""
    import imageio_ffmpeg
    return imageio_ffmpeg.get_ffmpeg_exe()


def check_ffmpeg(ffmpeg_path: Optional[str] = None) -> bool:
    """Verify ffmpeg is installed and runs."""
    try:
        exe = ffmpeg_path or get_ffmpeg_exe()
        subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (OSError, RuntimeError, subprocess.CalledProcessError):
        return False
