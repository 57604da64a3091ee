"""Scheduler core: one independent timer loop per task.

The SchedulerCore owns the live ScheduleSet and its RunningScheduleHandles.
Both are replaced only through ``cutover`` and ``shutdown``, which are
serialized by a single lock.
"""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from datetime import datetime
from typing import Any

from chronsync.cron.errors import SchedulingError
from chronsync.cron.executor import ProcessExecutor
from chronsync.cron.schedule import DEFAULT_LOOKAHEAD_YEARS, local_now, next_fire_after, to_utc
from chronsync.cron.types import ScheduleSet, TaskDefinition

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class RunningScheduleHandle:
    """Control handle for one task's timer loop.

    Holds the loop's cancellation token. Cancellation is cooperative: the
    loop only observes it while suspended waiting for its next fire time.

    Attributes:
        task: The task definition being scheduled.
        next_fire_at: The fire time the loop is currently waiting for.
        fire_count: Number of dispatches made by this loop.
    """

    def __init__(self, task: TaskDefinition) -> None:
        self.task = task
        self.next_fire_at: datetime | None = None
        self.fire_count = 0
        self._cancel_event = asyncio.Event()
        self._loop_task: asyncio.Task | None = None

    def __repr__(self) -> str:
        return f"RunningScheduleHandle({self.task.name!r}, next_fire_at={self.next_fire_at})"

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self._loop_task is None or self._loop_task.done()

    def launch(self, loop: Coroutine[Any, Any, None]) -> None:
        """Run the timer loop coroutine for this handle."""
        self._loop_task = asyncio.create_task(loop, name=f"schedule:{self.task.name}")

    def cancel(self) -> None:
        """Signal the loop to exit at its next suspend point."""
        self._cancel_event.set()

    async def wait_cancelled(self, timeout: float) -> bool:
        """Suspend until cancelled or ``timeout`` seconds elapse.

        Returns:
            True if the handle was cancelled.
        """
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._cancel_event.is_set()

    async def join(self) -> None:
        """Wait for the loop to exit."""
        if self._loop_task is not None:
            await self._loop_task


class SchedulerCore:
    """Runs every task of the live ScheduleSet on its own timer loop.

    Example:
        core = SchedulerCore(ProcessExecutor())
        await core.cutover(schedule_set)   # start (or replace) the schedule
        ...
        await core.shutdown()
    """

    def __init__(
        self,
        executor: ProcessExecutor | None = None,
        clock: Clock | None = None,
        lookahead_years: int = DEFAULT_LOOKAHEAD_YEARS,
    ) -> None:
        """Initialize the scheduler.

        Args:
            executor: Executor that runs dispatched tasks.
            clock: Source of the current time.
            lookahead_years: Search window for next fire times.
        """
        self._executor = executor or ProcessExecutor()
        self._clock = clock or local_now
        self._lookahead_years = lookahead_years
        self._live = ScheduleSet()
        self._handles: list[RunningScheduleHandle] = []
        self._lock = asyncio.Lock()

    @property
    def live(self) -> ScheduleSet:
        """The schedule set currently running."""
        return self._live

    @property
    def handles(self) -> list[RunningScheduleHandle]:
        """Handles of the running task loops."""
        return list(self._handles)

    @property
    def is_running(self) -> bool:
        return any(not handle.done for handle in self._handles)

    @property
    def executor(self) -> ProcessExecutor:
        return self._executor

    def start(self, schedule_set: ScheduleSet) -> list[RunningScheduleHandle]:
        """Start one timer loop per task.

        Must be called from within the running event loop.

        Args:
            schedule_set: Tasks to schedule.

        Returns:
            One handle per task, in the set's order.
        """
        handles = []
        for task in schedule_set:
            logger.info(
                f"[Scheduler] Registering task '{task.name}' with schedule: {task.cron_schedule}"
            )
            handle = RunningScheduleHandle(task)
            handle.launch(self._run_task_loop(handle))
            handles.append(handle)
        return handles

    async def stop_all(self, handles: list[RunningScheduleHandle]) -> None:
        """Cancel every handle and wait for all loops to exit.

        Dispatched child processes are not waited for.
        """
        if not handles:
            return

        for handle in handles:
            handle.cancel()

        results = await asyncio.gather(
            *(handle.join() for handle in handles),
            return_exceptions=True,
        )
        for handle, result in zip(handles, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error(f"[{handle.task.name}] Timer loop ended with error: {result}")

    async def cutover(self, schedule_set: ScheduleSet) -> list[RunningScheduleHandle]:
        """Replace the live schedule.

        Stops every current loop, then starts loops for ``schedule_set``.
        No old loop can fire once this begins, and no new loop exists
        until the old ones have exited.

        Returns:
            Handles of the new loops.
        """
        async with self._lock:
            old_handles, self._handles = self._handles, []
            logger.info(f"[Scheduler] Stopping {len(old_handles)} existing tasks...")
            await self.stop_all(old_handles)

            logger.info(
                f"[Scheduler] Existing tasks stopped. Registering {len(schedule_set)} new tasks..."
            )
            self._live = schedule_set
            self._handles = self.start(schedule_set)
            return list(self._handles)

    async def shutdown(self) -> None:
        """Stop every loop and clear the live schedule."""
        async with self._lock:
            old_handles, self._handles = self._handles, []
            self._live = ScheduleSet()
            await self.stop_all(old_handles)
        logger.info(f"[Scheduler] Stopped {len(old_handles)} tasks")

    async def _run_task_loop(self, handle: RunningScheduleHandle) -> None:
        """Wait for each fire time of one task and dispatch it."""
        task = handle.task
        now = self._clock()

        while not handle.cancelled:
            try:
                fire_at = next_fire_after(task.cron_schedule, now, self._lookahead_years)
            except SchedulingError as e:
                logger.error(f"[{task.name}] Schedule ended or failed to calculate next time: {e}")
                return

            handle.next_fire_at = fire_at
            delay = max((to_utc(fire_at) - to_utc(self._clock())).total_seconds(), 0.0)
            logger.debug(f"[{task.name}] Next run at {fire_at.isoformat()} (in {delay:.1f}s)")

            if await handle.wait_cancelled(delay):
                break

            try:
                self._executor.dispatch(task)
                handle.fire_count += 1
            except Exception as e:
                logger.exception(f"[{task.name}] Error dispatching task: {e}")

            # Never compute from before the instant just fired
            now = max(self._clock(), fire_at, key=to_utc)

        handle.next_fire_at = None
        logger.debug(f"[{task.name}] Timer loop cancelled")
