"""Spawning and stopping the tunnel's helper processes."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .exceptions import ProcessError, ReadinessTimeoutError
from ..logging_utility import logger

DEFAULT_READY_TIMEOUT = 30.0
DEFAULT_STOP_TIMEOUT = 10.0


@dataclass(frozen=True)
class ReadinessMarker:
    """Output a process prints once it is ready: every fragment on a single line"""
    fragments: Tuple[str, ...]

    @classmethod
    def literal(cls, text: str) -> 'ReadinessMarker':
        return cls((text,))

    def matches(self, line: str) -> bool:
        return all(fragment in line for fragment in self.fragments)

    def __str__(self) -> str:
        return " ... ".join(self.fragments)


@dataclass
class ManagedProcess:
    name: str
    process: asyncio.subprocess.Process
    tasks: List[asyncio.Task] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.process.returncode is None


class ProcessSupervisor:
    """Owns child processes by name from spawn until they are stopped."""

    def __init__(self, ready_timeout: float = DEFAULT_READY_TIMEOUT,
                 stop_timeout: float = DEFAULT_STOP_TIMEOUT):
        self.ready_timeout = ready_timeout
        self.stop_timeout = stop_timeout
        self._processes: Dict[str, ManagedProcess] = {}

    def is_running(self, name: str) -> bool:
        managed = self._processes.get(name)
        return managed is not None and managed.running

    def pid(self, name: str) -> Optional[int]:
        managed = self._processes.get(name)
        return managed.process.pid if managed else None

    @property
    def names(self) -> List[str]:
        return list(self._processes)

    async def start(self, name: str, cmd: List[str], marker: ReadinessMarker,
                    timeout: Optional[float] = None) -> int:
        """
        Spawn a process and wait until its stdout shows the readiness marker.

        Args:
            name: Handle name, e.g. 'tunnel'
            cmd: Command as list of strings
            marker: Line content that signals readiness
            timeout: Seconds to wait for the marker

        Returns:
            int: PID of the ready process
        """
        if self.is_running(name):
            raise ProcessError(f"{name} process is already running")

        logger.info(f"Starting {name} process: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessError(f"Failed to start {name} process: {e}") from e

        managed = ManagedProcess(name=name, process=proc)
        self._processes[name] = managed
        managed.tasks.append(
            asyncio.create_task(self._pump(name, "stderr", proc.stderr, logging.WARNING))
        )

        timeout = self.ready_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._wait_ready(name, proc, marker), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ReadinessTimeoutError(
                f"{name} process did not report '{marker}' within {timeout}s"
            ) from e

        # Keep draining stdout so the child never blocks on a full pipe
        managed.tasks.append(
            asyncio.create_task(self._pump(name, "stdout", proc.stdout, logging.DEBUG))
        )
        logger.info(f"{name} process ready (pid {proc.pid})")
        return proc.pid

    async def _wait_ready(self, name: str, proc: asyncio.subprocess.Process,
                          marker: ReadinessMarker) -> None:
        while True:
            line = await proc.stdout.readline()
            if not line:
                code = await proc.wait()
                raise ProcessError(f"{name} process exited with code {code} before it was ready")
            text = line.decode(errors="replace").rstrip()
            if text:
                logger.debug(f"{name} stdout: {text}")
            if marker.matches(text):
                return

    @staticmethod
    async def _pump(name: str, label: str, stream: Optional[asyncio.StreamReader], level: int) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if text:
                logger.log(level, f"{name} {label}: {text}")

    async def stop(self, name: str) -> bool:
        """
        Terminate a process and forget its handle.

        A missing handle or an already exited process counts as stopped.

        Returns:
            bool: False if terminating the process raised
        """
        managed = self._processes.pop(name, None)
        if managed is None:
            logger.warning(f"No {name} process found to stop.")
            return True

        proc = managed.process
        try:
            if proc.returncode is None:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"{name} process ignored terminate, killing it")
                    proc.kill()
                    await proc.wait()
            logger.info(f"{name} process exited with code {proc.returncode}")
            return True
        except ProcessLookupError:
            logger.info(f"{name} process already exited")
            return True
        except OSError as e:
            logger.error(f"Exception in stopping {name} process: {e}")
            return False
        finally:
            for task in managed.tasks:
                task.cancel()

    async def stop_all(self) -> bool:
        results = [await self.stop(name) for name in self.names]
        return all(results)
