import asyncio
import logging
from pathlib import Path
from typing import Mapping, Optional, Sequence

from modbump.domain.exceptions import CommandFailedException

logger = logging.getLogger(__name__)


async def run_command(
    args: Sequence[str],
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Runs an external command and returns its stdout.

    Raises:
        CommandFailedException: If the command exits with a non-zero status.
        OSError: If the executable cannot be started.
    """
    logger.debug(f"Running '{' '.join(args)}' in {cwd or '.'}")
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd else None,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise CommandFailedException(args, proc.returncode, stderr.decode(errors="replace").strip())
    return stdout.decode(errors="replace")
