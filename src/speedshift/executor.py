"""Job executor: one FFmpeg pass per transform job, off the event loop."""

import asyncio
import logging
from pathlib import Path
from typing import List

from speedshift.exceptions import ExecutionError
from speedshift.ffmpeg_runner import FfmpegRunner

logger = logging.getLogger(__name__)


class JobExecutor:
    """Runs a step list through the encoding engine.

    Single attempt, no retry. On failure the output path may hold a partial
    file; callers must not expose it until a run succeeds.
    """

    def __init__(self, runner: FfmpegRunner):
        self.runner = runner

    async def run(self, input_path: Path, steps: List[float], output_path: Path) -> Path:
        """Write ``output_path`` from ``input_path`` with ``steps`` applied.

        Raises:
            ExecutionError: carrying the engine's stderr verbatim.
        """
        result = await asyncio.to_thread(
            self.runner.change_tempo, str(input_path), list(steps), str(output_path)
        )
        if not result.success:
            diagnostic = result.stderr.strip() or f"ffmpeg exited with code {result.returncode}"
            raise ExecutionError(diagnostic, returncode=result.returncode)

        logger.debug("Encoded %s in %.2fs", output_path, result.duration_s)
        return Path(output_path)
