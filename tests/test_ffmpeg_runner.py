"""Unit tests for the FFmpeg tempo runner."""

import io
import subprocess
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from speedshift.ffmpeg_runner import FfmpegProgress, FfmpegResult, FfmpegRunner, check_ffmpeg


class TestProgressParsing:
    """Test FFmpeg progress parsing from stderr."""

    def test_parse_progress_keys(self):
        """Progress key=value lines update the progress record."""
        runner = FfmpegRunner(ffmpeg_path="ffmpeg")
        progress = FfmpegProgress()
        diagnostic = []

        mock_stderr = [
            "bitrate= 128.0kbits/s\n",
            "out_time=00:00:05.500000\n",
            "speed=42.5x\n",
            "progress=continue\n",
        ]
        runner._monitor_progress(iter(mock_stderr), progress, diagnostic)

        assert progress.current_time_s == pytest.approx(5.5, rel=0.01)
        assert progress.bitrate_kbps == pytest.approx(128.0)
        assert progress.speed == pytest.approx(42.5)
        assert diagnostic == []

    def test_parse_large_time(self):
        """Test parsing large time values (hours)."""
        runner = FfmpegRunner(ffmpeg_path="ffmpeg")
        progress = FfmpegProgress()

        runner._monitor_progress(iter(["out_time=01:23:45.670000\n"]), progress, [])

        expected_time = 1 * 3600 + 23 * 60 + 45.67
        assert progress.current_time_s == pytest.approx(expected_time, rel=0.001)

    def test_non_progress_lines_kept_as_diagnostic(self):
        """Error output is preserved verbatim and separate from progress."""
        runner = FfmpegRunner(ffmpeg_path="ffmpeg")
        diagnostic = []
        lines = [
            "clip.mp3: Invalid data found when processing input\n",
            "progress=end\n",
            "Error opening input files: Invalid data\n",
        ]
        runner._monitor_progress(iter(lines), FfmpegProgress(), diagnostic)

        assert diagnostic == [lines[0], lines[2]]

    def test_progress_callback_invoked(self):
        received = []
        runner = FfmpegRunner(ffmpeg_path="ffmpeg", progress_callback=received.append)

        runner._monitor_progress(iter(["out_time=00:00:01.000000\n"]), FfmpegProgress(), [])

        assert len(received) == 1

    def test_progress_callback_error_does_not_stop_monitoring(self):
        def broken(progress):
            raise RuntimeError("boom")

        runner = FfmpegRunner(ffmpeg_path="ffmpeg", progress_callback=broken)
        progress = FfmpegProgress()
        runner._monitor_progress(
            iter(["out_time=00:00:01.000000\n", "speed=2.0x\n"]), progress, []
        )
        assert progress.speed == 2.0


class TestCommandGeneration:
    """Test FFmpeg command generation."""

    def test_single_step_command(self):
        runner = FfmpegRunner(ffmpeg_path="/usr/bin/ffmpeg")
        cmd = runner.build_tempo_command("clip.mp3", [1.5], "speed_1.5x_clip.mp3")

        assert cmd[0] == "/usr/bin/ffmpeg"
        assert "-y" in cmd
        assert cmd[cmd.index("-i") + 1] == "clip.mp3"
        assert cmd[cmd.index("-filter:a") + 1] == "atempo=1.5"
        assert cmd[-1] == "speed_1.5x_clip.mp3"

    def test_chained_steps_command(self):
        runner = FfmpegRunner(ffmpeg_path="ffmpeg")
        cmd = runner.build_tempo_command("clip.mp3", [2.0, 1.5], "out.mp3")
        assert cmd[cmd.index("-filter:a") + 1] == "atempo=2.0,atempo=1.5"

    def test_loglevel_passed_through(self):
        runner = FfmpegRunner(ffmpeg_path="ffmpeg", ffmpeg_loglevel="warning")
        cmd = runner.build_tempo_command("a.mp3", [1.5], "b.mp3")
        assert cmd[cmd.index("-loglevel") + 1] == "warning"

    def test_change_tempo_delegates_to_run(self):
        runner = FfmpegRunner(ffmpeg_path="ffmpeg")
        captured = []

        def mock_run_ffmpeg(cmd):
            captured.append(cmd)
            return FfmpegResult(success=True, returncode=0, stderr="", duration_s=0.1)

        runner._run_ffmpeg = mock_run_ffmpeg
        result = runner.change_tempo("clip.mp3", [0.5, 0.6], "speed_0.3x_clip.mp3")

        assert result.success
        assert "atempo=0.5,atempo=0.6" in captured[0]

    def test_default_executable_from_imageio(self):
        runner = FfmpegRunner()
        with patch("speedshift.ffmpeg_runner.get_ffmpeg_exe", return_value="/bundled/ffmpeg"):
            cmd = runner.build_tempo_command("a.mp3", [1.5], "b.mp3")
        assert cmd[0] == "/bundled/ffmpeg"


def _fake_popen(returncode, stderr_text):
    process = MagicMock()
    process.stderr = io.StringIO(stderr_text)
    process.wait.return_value = returncode
    process.poll.return_value = returncode
    return process


class TestRunFfmpeg:
    """Test process execution with a mocked subprocess."""

    def test_success(self):
        runner = FfmpegRunner(ffmpeg_path="ffmpeg")
        with patch("subprocess.Popen", return_value=_fake_popen(0, "progress=end\n")):
            result = runner._run_ffmpeg(["ffmpeg"])
        assert result.success
        assert result.returncode == 0
        assert result.stderr == ""

    def test_failure_keeps_stderr(self):
        runner = FfmpegRunner(ffmpeg_path="ffmpeg")
        stderr = "clip.mp3: Invalid data found when processing input\n"
        with patch("subprocess.Popen", return_value=_fake_popen(1, stderr)):
            result = runner._run_ffmpeg(["ffmpeg"])
        assert not result.success
        assert result.returncode == 1
        assert result.stderr == stderr

    def test_timeout_kills_process(self):
        runner = FfmpegRunner(ffmpeg_path="ffmpeg", global_timeout_s=1, kill_grace_period_s=1)
        process = _fake_popen(None, "")
        process.poll.return_value = None
        process.wait.side_effect = [subprocess.TimeoutExpired("ffmpeg", 1), 0]
        with patch("subprocess.Popen", return_value=process):
            result = runner._run_ffmpeg(["ffmpeg"])

        assert not result.success
        assert result.timed_out
        assert "timed out" in result.stderr
        process.terminate.assert_called_once()

    def test_failure_artifacts_saved(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = FfmpegRunner(
                ffmpeg_path="ffmpeg", save_artifacts_on_failure=True, temp_dir=tmpdir
            )
            with patch("subprocess.Popen", return_value=_fake_popen(1, "bad input\n")):
                result = runner._run_ffmpeg(["ffmpeg", "-i", "x.mp3"])

            assert len(result.artifacts_saved) == 1
            log = Path(result.artifacts_saved[0]).read_text()
            assert "ffmpeg -i x.mp3" in log
            assert "bad input" in log


def test_check_ffmpeg_missing_binary():
    assert check_ffmpeg("/nonexistent/ffmpeg") is False


def test_check_ffmpeg_runs_version():
    with patch("subprocess.run") as mock_run:
        assert check_ffmpeg("ffmpeg") is True
    assert mock_run.call_args[0][0] == ["ffmpeg", "-version"]
