"""Tests for the reload coordinator."""

import asyncio
import json
import sys
import time
from datetime import datetime, timezone

import pytest

from chronsync.cron.executor import ProcessExecutor
from chronsync.cron.loader import JsonConfigLoader
from chronsync.cron.reload import ReloadCoordinator, ReloadState
from chronsync.cron.service import SchedulerCore
from chronsync.cron.types import ScheduleSet
from conftest import make_task

YEARLY = "0 0 0 1 1 *"


def yearly_tasks(*names: str) -> list[dict]:
    return [{"name": name, "cron_schedule": YEARLY, "command": "/bin/true"} for name in names]


class CountingLoader(JsonConfigLoader):
    """JsonConfigLoader that records each load and the coordinator state."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0
        self.states: list[ReloadState] = []
        self.coordinator: ReloadCoordinator | None = None

    def load(self, path):
        self.calls += 1
        if self.coordinator is not None:
            self.states.append(self.coordinator.state)
        return super().load(path)


class RecordingExecutor(ProcessExecutor):
    """ProcessExecutor that keeps every result."""

    def __init__(self) -> None:
        super().__init__()
        self.results = []

    async def execute(self, task):
        result = await super().execute(task)
        self.results.append(result)
        return result


class TestDebounce:
    """Bursts of notifications collapse into one reload."""

    @pytest.mark.asyncio
    async def test_burst_triggers_single_reload(self, write_config) -> None:
        path = write_config(yearly_tasks("first"))
        loader = CountingLoader()
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, loader, path, debounce_ms=100)
        runner = asyncio.create_task(coordinator.run())
        try:
            write_config(yearly_tasks("second"))
            for _ in range(5):
                coordinator.notify()
                await asyncio.sleep(0.02)
            await asyncio.sleep(0.4)

            assert loader.calls == 1
            assert coordinator.reload_count == 1
            assert core.live.names() == ["second"]
        finally:
            runner.cancel()
            await core.shutdown()

    @pytest.mark.asyncio
    async def test_separate_bursts_reload_separately(self, write_config) -> None:
        path = write_config(yearly_tasks("a"))
        loader = CountingLoader()
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, loader, path, debounce_ms=50)
        runner = asyncio.create_task(coordinator.run())
        try:
            coordinator.notify()
            await asyncio.sleep(0.3)
            coordinator.notify()
            await asyncio.sleep(0.3)

            assert loader.calls == 2
            assert coordinator.reload_count == 2
        finally:
            runner.cancel()
            await core.shutdown()

    @pytest.mark.asyncio
    async def test_no_reload_without_notification(self, write_config) -> None:
        loader = CountingLoader()
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, loader, write_config([]), debounce_ms=10)
        runner = asyncio.create_task(coordinator.run())
        await asyncio.sleep(0.1)
        runner.cancel()

        assert loader.calls == 0
        assert coordinator.state is ReloadState.IDLE


class TestReload:
    """Tests for a single reload cycle."""

    @pytest.mark.asyncio
    async def test_valid_config_replaces_schedule(self, write_config) -> None:
        path = write_config(yearly_tasks("old"))
        loader = CountingLoader()
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, loader, path)
        loader.coordinator = coordinator
        old_handles = await core.cutover(loader.load(path))
        try:
            write_config(yearly_tasks("new_a", "new_b"))

            assert await coordinator.reload() is True

            assert core.live.names() == ["new_a", "new_b"]
            assert all(h.done for h in old_handles)
            assert ReloadState.VALIDATING in loader.states
            assert coordinator.state is ReloadState.IDLE
        finally:
            await core.shutdown()

    @pytest.mark.asyncio
    async def test_malformed_json_keeps_live_schedule(self, write_config, caplog) -> None:
        path = write_config(yearly_tasks("keep"))
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, JsonConfigLoader(), path)
        live = JsonConfigLoader().load(path)
        handles = await core.cutover(live)
        try:
            write_config("{ this is not json")

            assert await coordinator.reload() is False

            assert core.live is live
            assert core.handles == handles
            assert not any(h.done for h in handles)
            assert coordinator.failed_count == 1
            assert coordinator.reload_count == 0
            assert "Configuration rejected" in caplog.text
        finally:
            await core.shutdown()

    @pytest.mark.asyncio
    async def test_one_bad_cron_rejects_whole_reload(self, write_config, caplog) -> None:
        path = write_config(yearly_tasks("keep"))
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, JsonConfigLoader(), path)
        live = JsonConfigLoader().load(path)
        await core.cutover(live)
        try:
            write_config([
                {"name": "fine", "cron_schedule": YEARLY, "command": "/bin/true"},
                {"name": "broken", "cron_schedule": "61 * * * * *", "command": "/bin/true"},
            ])

            assert await coordinator.reload() is False

            assert core.live is live
            assert "invalid cron schedule" in caplog.text
            assert "broken" in caplog.text
        finally:
            await core.shutdown()

    @pytest.mark.asyncio
    async def test_missing_file_keeps_live_schedule(self, write_config) -> None:
        path = write_config(yearly_tasks("keep"))
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, JsonConfigLoader(), path)
        live = JsonConfigLoader().load(path)
        await core.cutover(live)
        try:
            path.unlink()

            assert await coordinator.reload() is False
            assert core.live is live
        finally:
            await core.shutdown()

    @pytest.mark.asyncio
    async def test_reload_does_not_interrupt_running_process(self, write_config) -> None:
        """A child started before a reload runs to completion."""
        path = write_config(yearly_tasks("replacement"))
        executor = RecordingExecutor()
        clock = lambda: datetime(2026, 3, 1, 10, 0, 0, 950000, tzinfo=timezone.utc)  # noqa: E731
        core = SchedulerCore(executor, clock=clock)
        coordinator = ReloadCoordinator(core, JsonConfigLoader(), path)
        sleeper = make_task(
            "sleeper",
            command=sys.executable,
            args=["-c", "import time; time.sleep(1); print('done')"],
        )
        try:
            await core.cutover(ScheduleSet([sleeper]))
            await asyncio.sleep(0.3)
            assert executor.in_flight == 1

            assert await coordinator.reload() is True
            assert executor.in_flight == 1

            await asyncio.wait_for(executor.wait_idle(), timeout=10)
            assert len(executor.results) == 1
            assert executor.results[0].success
            assert executor.results[0].stdout == "done"
        finally:
            await core.shutdown()
            await executor.wait_idle()


class TestCoordinatorResilience:
    """A failed cycle never stops later reloads."""

    @pytest.mark.asyncio
    async def test_undecodable_file_then_valid_edit(self, write_config) -> None:
        path = write_config(yearly_tasks("keep"))
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, JsonConfigLoader(), path, debounce_ms=20)
        live = JsonConfigLoader().load(path)
        await core.cutover(live)
        runner = asyncio.create_task(coordinator.run())
        try:
            path.write_bytes(b'{"tasks": [\xff\xfe]}')
            coordinator.notify()
            await asyncio.sleep(0.3)

            assert not runner.done()
            assert core.live is live
            assert coordinator.failed_count == 1

            write_config(yearly_tasks("new"))
            coordinator.notify()
            await asyncio.sleep(0.3)

            assert core.live.names() == ["new"]
        finally:
            runner.cancel()
            await core.shutdown()

    @pytest.mark.asyncio
    async def test_unexpected_loader_error_is_logged(self, write_config, caplog) -> None:
        class ExplodingOnceLoader(JsonConfigLoader):
            calls = 0

            def load(self, path):
                self.calls += 1
                if self.calls == 1:
                    raise RuntimeError("disk on fire")
                return super().load(path)

        path = write_config(yearly_tasks("after"))
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, ExplodingOnceLoader(), path, debounce_ms=20)
        runner = asyncio.create_task(coordinator.run())
        try:
            coordinator.notify()
            await asyncio.sleep(0.3)

            assert not runner.done()
            assert coordinator.state is ReloadState.IDLE
            assert "disk on fire" in caplog.text

            coordinator.notify()
            await asyncio.sleep(0.3)

            assert core.live.names() == ["after"]
        finally:
            runner.cancel()
            await core.shutdown()

    @pytest.mark.asyncio
    async def test_slow_load_does_not_block_event_loop(self, write_config) -> None:
        """Loading runs off the event loop so timer loops keep running."""
        class SlowLoader(JsonConfigLoader):
            def load(self, path):
                time.sleep(0.5)
                return super().load(path)

        path = write_config(yearly_tasks("slow"))
        core = SchedulerCore(ProcessExecutor())
        coordinator = ReloadCoordinator(core, SlowLoader(), path)
        try:
            reload_task = asyncio.create_task(coordinator.reload())
            await asyncio.sleep(0.1)

            assert not reload_task.done()
            assert coordinator.state is ReloadState.VALIDATING

            assert await reload_task is True
            assert core.live.names() == ["slow"]
        finally:
            await core.shutdown()


def test_reload_state_values() -> None:
    assert [state.value for state in ReloadState] == ["idle", "validating", "cutover"]
    assert json.dumps(ReloadState.CUTOVER) == '"cutover"'
