"""Process execution for scheduled tasks.

This module spawns a task's command without a shell, captures its output
and exit status, and reports an ExecutionResult. Results are consumed by
logging only; nothing here retries or blocks the scheduler.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime

import httpx

from chronsync.cron.errors import SpawnError
from chronsync.cron.types import TaskDefinition

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """Result of one run of a task.

    Attributes:
        task_name: Name of the task that ran.
        started_at: When the spawn was attempted.
        exit_status: Child exit code (negative for a signal), None if never started.
        spawn_error: Why the child could not be started.
        timed_out: Whether the child was killed for exceeding its timeout.
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration_ms: Wall time from spawn to exit in milliseconds.
    """

    task_name: str
    started_at: datetime
    exit_status: int | None = None
    spawn_error: str | None = None
    timed_out: bool = False
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0

    @property
    def success(self) -> bool:
        return self.spawn_error is None and not self.timed_out and self.exit_status == 0

    def describe_failure(self) -> str:
        if self.spawn_error is not None:
            return f"Failed to spawn: {self.spawn_error}"
        if self.timed_out:
            return f"Timed out and killed (status {self.exit_status})"
        message = f"Command exited with status: {self.exit_status}"
        if self.stderr:
            message += f"\nStderr: {self.stderr}"
        return message


class ProcessExecutor:
    """Runs task commands as child processes.

    ``dispatch`` is fire-and-forget: the returned asyncio task is tracked
    until it finishes so it is not garbage collected mid-run. Runs of the
    same task may overlap.

    Example:
        executor = ProcessExecutor()
        result = await executor.execute(task)
        executor.dispatch(task)  # returns immediately
    """

    def __init__(self, webhook_timeout: float = 10.0) -> None:
        """Initialize the executor.

        Args:
            webhook_timeout: HTTP timeout for failure alerts, in seconds.
        """
        self._webhook_timeout = webhook_timeout
        self._in_flight: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        """Number of dispatched runs that have not finished."""
        return len(self._in_flight)

    def dispatch(self, task: TaskDefinition) -> asyncio.Task:
        """Start a run of ``task`` in the background."""
        run = asyncio.create_task(self.execute(task), name=f"run:{task.name}")
        self._in_flight.add(run)
        run.add_done_callback(self._in_flight.discard)
        return run

    async def wait_idle(self) -> None:
        """Wait until every dispatched run has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def execute(self, task: TaskDefinition) -> ExecutionResult:
        """Run ``task`` to completion.

        Spawn failures are reported in the result, never raised.

        Args:
            task: The task to run.

        Returns:
            Execution result.
        """
        started_at = datetime.now().astimezone()
        loop = asyncio.get_running_loop()
        start = loop.time()
        name = task.name

        logger.info(f"[{name}] -> Command starting: {task.command} {list(task.args)}")

        try:
            process = await self._spawn(task)
        except SpawnError as e:
            logger.error(f"[{name}] -> Failed to spawn command '{task.command}': {e}")
            result = ExecutionResult(task_name=name, started_at=started_at, spawn_error=str(e))
            await self._alert(task, result)
            return result

        timed_out = False
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=task.timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.error(
                f"[{name}] -> Command TIMEOUT after {task.timeout} seconds. "
                f"Killing process {process.pid}."
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
            stdout, stderr = await process.communicate()

        result = ExecutionResult(
            task_name=name,
            started_at=started_at,
            exit_status=process.returncode,
            timed_out=timed_out,
            stdout=(stdout or b"").decode(errors="replace").strip(),
            stderr=(stderr or b"").decode(errors="replace").strip(),
            duration_ms=(loop.time() - start) * 1000,
        )

        if result.success:
            logger.info(
                f"[{name}] -> Command SUCCESS. Status: {result.exit_status} "
                f"in {result.duration_ms:.0f}ms"
            )
            if result.stdout:
                logger.info(f"[{name}] -> STDOUT:\n{result.stdout}")
        else:
            logger.error(f"[{name}] -> Command FAILED. Status: {result.exit_status}")
            if result.stderr:
                logger.error(f"[{name}] -> STDERR:\n{result.stderr}")
            await self._alert(task, result)

        return result

    async def _spawn(self, task: TaskDefinition) -> asyncio.subprocess.Process:
        env = None
        if task.env:
            env = {**os.environ, **task.env}
            logger.info(f"[{task.name}] Envs set: {sorted(task.env)}")
        if task.cwd:
            logger.info(f"[{task.name}] CWD set to: {task.cwd}")

        try:
            return await asyncio.create_subprocess_exec(
                task.command,
                *task.args,
                cwd=task.cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(str(e)) from e

    async def _alert(self, task: TaskDefinition, result: ExecutionResult) -> None:
        """POST a failure notice to the task's webhook, if it has one."""
        if not task.webhook_url:
            return

        payload = {
            "text": (
                f"**Chronsync Task Failed**\n\n"
                f"**Task:** `{task.name}`\n"
                f"**Error:** {result.describe_failure()}"
            )
        }
        try:
            async with httpx.AsyncClient(timeout=self._webhook_timeout) as client:
                response = await client.post(task.webhook_url, json=payload)
                response.raise_for_status()
            logger.info(f"[{task.name}] Webhook alert sent successfully.")
        except httpx.HTTPStatusError as e:
            logger.error(
                f"[{task.name}] Failed to send webhook. Status: {e.response.status_code}"
            )
        except httpx.HTTPError as e:
            logger.error(f"[{task.name}] Failed to send webhook: {e}")
