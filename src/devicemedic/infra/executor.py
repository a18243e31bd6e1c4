"""Running external build and device commands."""

import asyncio
import subprocess
from pathlib import Path
from typing import Optional, Union

import structlog

from devicemedic.domain.errors import CommandError
from devicemedic.domain.types import CommandResult

logger = structlog.get_logger()

PathLike = Union[str, Path]


class CommandExecutor:
    """Runs shell commands synchronously or on the event loop.

    In verbose mode captured output is logged as soon as a command finishes,
    so callers only need to surface it themselves when not verbose.
    """

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def exec_sync(self, cmd: str, cwd: Optional[PathLike] = None) -> CommandResult:
        """Run ``cmd`` to completion and return its status and output."""
        logger.debug("Running command", command=cmd, cwd=str(cwd) if cwd else None)
        result = subprocess.run(
            cmd,
            shell=True,
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
        )
        self._trace(cmd, result.returncode, result.stdout or "", result.stderr or "")
        return {
            "code": result.returncode,
            "stdout": result.stdout or "",
            "stderr": result.stderr or "",
        }

    def exec_checked(self, cmd: str, cwd: Optional[PathLike] = None) -> CommandResult:
        """Like :meth:`exec_sync` but raise :class:`CommandError` on failure."""
        result = self.exec_sync(cmd, cwd=cwd)
        if result["code"] != 0:
            raise CommandError(cmd, result["code"], result["stdout"] + result["stderr"])
        return result

    async def exec_async(self, cmd: str, cwd: Optional[PathLike] = None) -> str:
        """Run ``cmd`` without blocking the loop; return stdout.

        Raises :class:`CommandError` carrying the combined output when the
        command exits non-zero.
        """
        logger.debug("Running command", command=cmd, cwd=str(cwd) if cwd else None)
        proc = await asyncio.create_subprocess_shell(
            cmd,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        stdout_b, _ = await proc.communicate()
        stdout = stdout_b.decode(errors="replace") if stdout_b else ""
        code = proc.returncode if proc.returncode is not None else -1
        self._trace(cmd, code, stdout, "")
        if code != 0:
            raise CommandError(cmd, code, stdout)
        return stdout

    def _trace(self, cmd: str, code: int, stdout: str, stderr: str) -> None:
        if not self.verbose:
            return
        logger.info(
            "Command finished",
            command=cmd,
            exit_code=code,
            stdout=stdout[-4000:],
            stderr=stderr[-4000:],
        )
