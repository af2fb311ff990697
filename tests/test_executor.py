"""Tests for the job executor wrapper around the FFmpeg runner."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from speedshift.exceptions import ExecutionError
from speedshift.executor import JobExecutor
from speedshift.ffmpeg_runner import FfmpegResult


@pytest.mark.asyncio
async def test_run_success_returns_output_path():
    runner = MagicMock()
    runner.change_tempo.return_value = FfmpegResult(
        success=True, returncode=0, stderr="", duration_s=0.2
    )
    executor = JobExecutor(runner)

    output = await executor.run(Path("/data/clip.mp3"), [1.5], Path("/data/speed_1.5x_clip.mp3"))

    assert output == Path("/data/speed_1.5x_clip.mp3")
    runner.change_tempo.assert_called_once_with(
        "/data/clip.mp3", [1.5], "/data/speed_1.5x_clip.mp3"
    )


@pytest.mark.asyncio
async def test_run_failure_carries_diagnostic_verbatim():
    stderr = "clip.mp3: Invalid data found when processing input"
    runner = MagicMock()
    runner.change_tempo.return_value = FfmpegResult(
        success=False, returncode=1, stderr=stderr + "\n", duration_s=0.1
    )
    executor = JobExecutor(runner)

    with pytest.raises(ExecutionError) as exc_info:
        await executor.run(Path("clip.mp3"), [1.5], Path("out.mp3"))

    assert exc_info.value.diagnostic == stderr
    assert exc_info.value.returncode == 1


@pytest.mark.asyncio
async def test_run_failure_without_stderr_reports_exit_code():
    runner = MagicMock()
    runner.change_tempo.return_value = FfmpegResult(
        success=False, returncode=137, stderr="", duration_s=0.1
    )
    with pytest.raises(ExecutionError, match="code 137"):
        await JobExecutor(runner).run(Path("a.mp3"), [2.0, 2.0], Path("b.mp3"))
