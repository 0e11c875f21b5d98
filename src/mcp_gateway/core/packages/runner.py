"""
Subprocess execution for package tooling (npm, venv, pip).
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CommandResult:
    """Captured outcome of one command."""

    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs commands with ``asyncio.create_subprocess_exec``; no deadline."""

    async def run(
        self,
        args: List[str],
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> CommandResult:
        logger.debug(f"Running: {' '.join(args)}", extra={"cwd": str(cwd) if cwd else None})
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        result = CommandResult(
            args=list(args),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace") if stdout else "",
            stderr=stderr.decode(errors="replace") if stderr else "",
        )
        if not result.ok:
            logger.debug(f"Command exited with {result.returncode}: {' '.join(args)}")
        return result
