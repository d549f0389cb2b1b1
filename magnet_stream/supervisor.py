"""
Supervised external process.

Spawns a helper daemon, waits until its HTTP health endpoint answers and
stops it with a bounded grace period before killing it.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import aiohttp

logger = logging.getLogger(__name__)


class ProcessState(Enum):
    """Lifecycle of a supervised process."""
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"


class StopOutcome(Enum):
    """How a stop request ended."""
    NOT_RUNNING = "not_running"
    TERMINATED = "terminated"
    KILLED = "killed"


class SupervisedProcess:
    """
    Start / healthcheck / stop wrapper around an asyncio subprocess.

    `probe` defaults to an HTTP GET of `health_url` that succeeds on any 2xx.
    `spawn` defaults to asyncio.create_subprocess_exec. Both can be replaced
    for testing.
    """

    def __init__(
        self,
        name: str,
        command: List[str],
        health_url: str,
        env: Optional[Dict[str, str]] = None,
        health_attempts: int = 60,
        health_interval: float = 0.5,
        probe: Callable[[], Awaitable[bool]] = None,
        spawn: Callable[..., Awaitable] = None,
    ):
        self.name = name
        self.command = command
        self.health_url = health_url
        self.env = env
        self.health_attempts = health_attempts
        self.health_interval = health_interval
        self._probe = probe or self._http_probe
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._process = None
        self._output_task: Optional[asyncio.Task] = None
        self.state = ProcessState.STOPPED

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _http_probe(self) -> bool:
        timeout = aiohttp.ClientTimeout(total=2)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.health_url) as response:
                    return 200 <= response.status < 300
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
            return False

    async def healthcheck(self) -> bool:
        """Single probe of the health endpoint."""
        return await self._probe()

    async def start(self) -> ProcessState:
        """
        Spawn the process and poll its health endpoint.

        Returns READY on the first successful probe, ERROR if the process
        dies or never becomes healthy.
        """
        if self.state == ProcessState.READY and self.alive:
            return self.state

        self.state = ProcessState.STARTING
        logger.info(f"Starting {self.name}: {' '.join(self.command)}")

        try:
            self._process = await self._spawn(
                *self.command,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to spawn {self.name}: {e}")
            self.state = ProcessState.ERROR
            return self.state

        if getattr(self._process, "stdout", None) is not None:
            self._output_task = asyncio.create_task(self._drain_output())

        for attempt in range(1, self.health_attempts + 1):
            if not self.alive:
                logger.error(
                    f"{self.name} exited during startup (code {self._process.returncode})"
                )
                self.state = ProcessState.ERROR
                return self.state

            if await self.healthcheck():
                self.state = ProcessState.READY
                logger.info(f"{self.name} ready after {attempt} health check(s)")
                return self.state

            await asyncio.sleep(self.health_interval)

        logger.error(
            f"{self.name} not healthy after {self.health_attempts} attempts, stopping it"
        )
        await self._terminate(grace=0.5)
        self.state = ProcessState.ERROR
        return self.state

    async def _drain_output(self) -> None:
        try:
            while True:
                line = await self._process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    logger.debug(f"[{self.name}] {text}")
        except asyncio.CancelledError:
            pass

    async def _terminate(self, grace: float) -> StopOutcome:
        if not self.alive:
            return StopOutcome.NOT_RUNNING

        try:
            self._process.terminate()
        except ProcessLookupError:
            return StopOutcome.NOT_RUNNING

        try:
            await asyncio.wait_for(self._process.wait(), timeout=grace)
            return StopOutcome.TERMINATED
        except asyncio.TimeoutError:
            pass

        logger.warning(f"{self.name} ignored SIGTERM for {grace}s, killing")
        try:
            self._process.kill()
        except ProcessLookupError:
            return StopOutcome.TERMINATED
        await self._process.wait()
        return StopOutcome.KILLED

    async def stop(self, grace: float = 0.5) -> StopOutcome:
        """Terminate, wait up to `grace` seconds, then kill."""
        outcome = await self._terminate(grace)

        if self._output_task:
            self._output_task.cancel()
            try:
                await self._output_task
            except asyncio.CancelledError:
                pass
            self._output_task = None

        self._process = None
        self.state = ProcessState.STOPPED
        if outcome != StopOutcome.NOT_RUNNING:
            logger.info(f"{self.name} stopped ({outcome.value})")
        return outcome
