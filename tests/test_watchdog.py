import asyncio

import pytest

from conftest import FakeManager, write
from deploy_supervisor.errors import FatalSupervisorError
from deploy_supervisor.results import Failure, FailureKind
from deploy_supervisor.signals import RecordSlot, RestartSignal
from deploy_supervisor.watchdog import State, Supervisor


def make_backup(cfg, name="v1.3-2026-01-01T00-00-00", content="good"):
    write(cfg.backup_root / name / "src" / "index.py", content)
    write(cfg.backup_root / name / "skills" / "reader" / "handler", "good handler")
    return cfg.backup_root / name


def request_restart(cfg, reason="test"):
    RecordSlot(cfg.signal_file, RestartSignal).put(RestartSignal(reason=reason))


async def test_start_and_stop(cfg, fake_manager):
    supervisor = Supervisor(cfg, manager=fake_manager)

    started = await supervisor.start()
    assert started.ok
    assert supervisor.state == State.RUNNING
    assert supervisor.current is fake_manager.started[0]

    again = await supervisor.start()
    assert isinstance(again, Failure)
    assert again.kind == FailureKind.BUSY
    assert len(fake_manager.started) == 1

    stopped = await supervisor.stop()
    assert stopped.ok
    assert supervisor.state == State.STOPPED
    assert supervisor.current is None
    assert fake_manager.stopped == fake_manager.started


async def test_crash_loop_rolls_back_to_latest_backup(cfg, fake_manager):
    make_backup(cfg, "v1.2-2026-01-01T00-00-00", content="older")
    backup = make_backup(cfg, "v1.3-2026-01-01T00-00-00", content="good")
    write(cfg.live_root / "src" / "index.py", "bad")
    write(cfg.live_root / "src" / "broken.py", "bad")
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()

    fake_manager.started[-1].exit(1)
    await supervisor.tick()
    assert supervisor.crash_count == 1
    assert len(fake_manager.started) == 2

    fake_manager.started[-1].exit(1)
    await supervisor.tick()
    assert supervisor.crash_count == 2
    assert len(fake_manager.started) == 3

    fake_manager.started[-1].exit(1)
    await supervisor.tick()

    assert supervisor.crash_count == 0
    assert supervisor.last_rollback == backup.name
    assert (cfg.live_root / "src" / "index.py").read_text() == "good"
    assert not (cfg.live_root / "src" / "broken.py").exists()
    assert (cfg.live_root / "skills" / "reader" / "handler").read_text() == "good handler"
    assert len(fake_manager.started) == 4
    assert supervisor.state == State.RUNNING


async def test_crash_after_window_resets_count(make_config, fake_manager):
    cfg = make_config(crash_window=0)
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()

    for _ in range(5):
        fake_manager.started[-1].exit(1)
        await supervisor.tick()
        assert supervisor.crash_count == 0

    assert len(fake_manager.started) == 6
    assert supervisor.last_rollback is None


async def test_restart_waits_for_delay(make_config, fake_manager):
    cfg = make_config(restart_delay=60)
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()

    fake_manager.started[-1].exit(2)
    await supervisor.tick()
    await supervisor.tick()

    assert supervisor.state == State.CRASH_DETECTED
    assert supervisor.restart_pending
    assert len(fake_manager.started) == 1


async def test_crash_loop_without_backup_is_fatal(cfg, fake_manager):
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()

    fake_manager.started[-1].exit(1)
    await supervisor.tick()
    fake_manager.started[-1].exit(1)
    await supervisor.tick()
    fake_manager.started[-1].exit(1)

    with pytest.raises(FatalSupervisorError):
        await supervisor.tick()
    assert supervisor.state == State.ROLLING_BACK


async def test_run_exits_with_error_on_fatal(cfg):
    manager = FakeManager(exit_code=1)
    supervisor = Supervisor(cfg, manager=manager)

    code = await asyncio.wait_for(supervisor.run(), timeout=5)

    assert code == 1
    assert supervisor.state == State.FATAL
    assert len(manager.started) == 3


async def test_clean_exit_is_not_a_crash(cfg, fake_manager):
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()

    fake_manager.started[-1].exit(0)
    await supervisor.tick()
    await supervisor.tick()

    assert supervisor.state == State.STOPPED
    assert supervisor.crash_count == 0
    assert not supervisor.restart_pending
    assert len(fake_manager.started) == 1
    assert supervisor.last_exit_code == 0


async def test_restart_signal_causes_one_restart(cfg, fake_manager):
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()
    supervisor.crash_count = 1
    request_restart(cfg, "Promotion to v1.4")

    await supervisor.tick()
    await supervisor.tick()

    assert not cfg.signal_file.exists()
    assert len(fake_manager.stopped) == 1
    assert len(fake_manager.started) == 2
    assert supervisor.crash_count == 0
    assert supervisor.state == State.RUNNING


async def test_signal_consumed_once_while_stop_is_slow(cfg):
    manager = FakeManager(stop_delay=0.2)
    supervisor = Supervisor(cfg, manager=manager)
    await supervisor.start()
    request_restart(cfg)

    await asyncio.gather(supervisor.tick(), supervisor.tick(), supervisor.tick())
    await supervisor.tick()

    assert not cfg.signal_file.exists()
    assert len(manager.stopped) == 1
    assert len(manager.started) == 2


async def test_signal_during_pending_crash_restart_starts_once(make_config, fake_manager):
    cfg = make_config(restart_delay=60)
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()
    fake_manager.started[-1].exit(1)
    await supervisor.tick()
    assert supervisor.restart_pending

    request_restart(cfg)
    await supervisor.tick()

    assert not supervisor.restart_pending
    assert len(fake_manager.started) == 2
    assert supervisor.crash_count == 0
    assert supervisor.state == State.RUNNING


async def test_malformed_signal_is_ignored(cfg, fake_manager):
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()
    cfg.signal_file.write_text("garbage")

    await supervisor.tick()

    assert not cfg.signal_file.exists()
    assert len(fake_manager.started) == 1


async def test_operator_restart_refused_while_busy(cfg, fake_manager):
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()

    async with supervisor._lock:
        result = await supervisor.restart()

    assert isinstance(result, Failure)
    assert result.kind == FailureKind.BUSY


async def test_operator_restart_resets_crash_count(cfg, fake_manager):
    supervisor = Supervisor(cfg, manager=fake_manager)
    await supervisor.start()
    supervisor.crash_count = 2

    result = await supervisor.restart("config reload")

    assert result.ok
    assert supervisor.crash_count == 0
    assert len(fake_manager.stopped) == 1
    assert len(fake_manager.started) == 2


async def test_spawn_error_counts_as_crash(cfg, fake_manager):
    fake_manager.fail_spawn = True
    supervisor = Supervisor(cfg, manager=fake_manager)

    result = await supervisor.start()

    assert isinstance(result, Failure)
    assert result.kind == FailureKind.PROCESS
    assert supervisor.crash_count == 1
    assert supervisor.restart_pending


async def test_missing_credentials_refuses_start(make_config, fake_manager):
    cfg = make_config(credentials_file=".env")
    supervisor = Supervisor(cfg, manager=fake_manager)

    result = await supervisor.start()

    assert isinstance(result, Failure)
    assert result.kind == FailureKind.CONFIGURATION
    assert fake_manager.started == []
    assert supervisor.crash_count == 0


async def test_credentials_are_passed_to_process(make_config, fake_manager):
    cfg = make_config(credentials_file=".env")
    write(cfg.live_root / ".env", "APP_TOKEN=abc123\n")
    supervisor = Supervisor(cfg, manager=fake_manager)

    await supervisor.start()

    assert fake_manager.envs[0]["APP_TOKEN"] == "abc123"


async def test_run_clears_stale_signal_and_stops_on_shutdown(cfg, fake_manager):
    request_restart(cfg, "stale")
    supervisor = Supervisor(cfg, manager=fake_manager)

    task = asyncio.create_task(supervisor.run())
    await asyncio.sleep(0.1)
    supervisor.shutdown()
    code = await asyncio.wait_for(task, timeout=5)

    assert code == 0
    assert len(fake_manager.started) == 1
    assert fake_manager.stopped == fake_manager.started
    assert supervisor.state == State.STOPPED


async def test_events_are_reported(cfg, fake_manager):
    make_backup(cfg)
    events = []
    supervisor = Supervisor(cfg, manager=fake_manager)
    supervisor.set_event_callback(lambda kind, message, details: events.append(kind))
    await supervisor.start()
    for _ in range(3):
        fake_manager.started[-1].exit(1)
        await supervisor.tick()

    assert events.count("crash") == 3
    assert "rollback" in events
    assert events[0] == "start"


async def test_status(cfg, fake_manager):
    make_backup(cfg)
    supervisor = Supervisor(cfg, manager=fake_manager)

    status = supervisor.status()

    assert status["state"] == "stopped"
    assert status["running"] is False
    assert status["latest_backup"] == "v1.3-2026-01-01T00-00-00"
