"""Utility functions for tunnel management."""

import asyncio
import contextlib
import subprocess
import sys
from typing import Awaitable, Callable, List, Optional, Tuple

from .exceptions import CommandError, CommandTimeoutError
from ..logging_utility import logger

DEFAULT_COMMAND_TIMEOUT = 30.0

Runner = Callable[..., Awaitable[Tuple[str, str]]]


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
    await proc.wait()


async def run_command(cmd: List[str], check: bool = True,
                      timeout: Optional[float] = DEFAULT_COMMAND_TIMEOUT) -> Tuple[str, str]:
    """
    Run command without a shell and return its output.

    Args:
        cmd: Command as list of strings
        check: Whether to raise exception on a non-zero exit code
        timeout: Seconds to wait before the command is killed

    Returns:
        Tuple of (stdout, stderr)
    """
    logger.debug(f"Running command: {' '.join(cmd)}")
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CommandError(f"Command could not be started: {' '.join(cmd)}\n{e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        await _kill(proc)
        raise CommandTimeoutError(f"Command timed out after {timeout}s: {' '.join(cmd)}") from e
    except asyncio.CancelledError:
        # the child must not outlive a cancelled caller
        await _kill(proc)
        raise

    out = stdout.decode(errors="replace") if stdout else ""
    err = stderr.decode(errors="replace") if stderr else ""
    if check and proc.returncode != 0:
        # netsh reports its errors on stdout
        raise CommandError(
            f"Command failed: {' '.join(cmd)}\n{err.strip() or out.strip()}",
            returncode=proc.returncode,
            stderr=err,
        )
    return out, err


def spawn_detached(cmd: List[str]) -> None:
    """Start a command that outlives this process and is never waited on."""
    logger.info(f"Starting detached command: {' '.join(cmd)}")
    if sys.platform == "win32":
        flags = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                         stderr=subprocess.DEVNULL, creationflags=flags)
    else:
        subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                         stderr=subprocess.DEVNULL, start_new_session=True)
