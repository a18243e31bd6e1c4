"""Filesystem utilities for run artifacts."""

from pathlib import Path
from typing import Optional

import aiofiles
import structlog

from devicemedic.domain.models import RunSummary

logger = structlog.get_logger()

SUMMARY_FILE = "medic-run.json"


class OutputDirectory:
    """Manages the directory reporters and device logs write into."""

    def __init__(self, output_dir: Optional[str], fallback: Optional[Path] = None):
        self.path: Optional[Path] = Path(output_dir) if output_dir else fallback

    def ensure(self) -> Optional[Path]:
        if self.path is not None:
            self.path.mkdir(parents=True, exist_ok=True)
        return self.path

    def get_summary_path(self) -> Optional[Path]:
        if self.path is None:
            return None
        return self.path / SUMMARY_FILE


async def save_run_summary(output: OutputDirectory, summary: RunSummary) -> Optional[Path]:
    """Save the run summary, if there is somewhere to save it."""
    path = output.get_summary_path()
    if path is None:
        return None
    output.ensure()

    async with aiofiles.open(path, "w") as f:
        await f.write(summary.model_dump_json(indent=2))

    logger.info("Run summary saved", path=str(path), verdict=summary.verdict.value)
    return path


def load_run_summary(path: Path) -> RunSummary:
    return RunSummary.model_validate_json(path.read_text())
