from datetime import timedelta
from types import SimpleNamespace

import pytest

from vpnctl.cron import (
    CronError,
    CronManager,
    match_field,
    next_cron_run,
    validate_cron,
)
from vpnctl.state import AppState, CronJob, PersistedCron, parse_time


class FakeVPN:
    def __init__(self, devices):
        self.tunnels = [SimpleNamespace(index=i, tun_dev=d) for i, d in enumerate(devices)]
        self.calls = []

    def restart_tunnel(self, index):
        self.calls.append(("restart", index))

    def start_tunnel(self, index):
        self.calls.append(("start", index))

    def stop_tunnel(self, index):
        self.calls.append(("stop", index))


AFTER = parse_time("2024-03-06T10:17:42Z")


@pytest.fixture
def state(tmp_path):
    return AppState(tmp_path)


@pytest.fixture
def manager(state):
    return CronManager(FakeVPN(["tun0", "tun1"]), state)


@pytest.mark.parametrize("expression", ["", "* * * *", "* * * * * *"])
def test_validate_cron_rejects(expression):
    with pytest.raises(CronError, match="5 fields"):
        validate_cron(expression)


def test_validate_cron_accepts_five_fields(manager):
    assert validate_cron("*/5 * * * *") is None
    job = manager.add_job("*/5 * * * *", "tun0", "restart")
    assert job.expression == "*/5 * * * *"
    assert [j.expression for j in manager.jobs] == ["*/5 * * * *"]


@pytest.mark.parametrize(
    "field,value",
    [("*", 13), ("*/15", 30), ("1-5", 3), ("1-5", 5), ("1,2,3", 2), ("1, 2", 2), ("7", 7)],
)
def test_match_field_matches(field, value):
    assert match_field(field, value, 0, 59)


@pytest.mark.parametrize(
    "field,value",
    [("*/15", 31), ("*/0", 0), ("*/x", 0), ("1-5", 6), ("a-5", 3), ("1,2,3", 4), ("abc", 0), ("7", 8)],
)
def test_match_field_rejects(field, value):
    assert not match_field(field, value, 0, 59)


def test_next_cron_run_fixed_time():
    result = next_cron_run("30 2 * * *", AFTER)
    assert (result.hour, result.minute, result.second, result.microsecond) == (2, 30, 0, 0)
    assert AFTER < result <= AFTER + timedelta(days=1)


def test_next_cron_run_step():
    result = next_cron_run("*/5 * * * *", AFTER)
    assert result.minute % 5 == 0
    assert AFTER < result <= AFTER + timedelta(minutes=5)


def test_next_cron_run_every_minute_is_next_minute():
    result = next_cron_run("* * * * *", AFTER)
    assert result == AFTER.replace(second=0) + timedelta(minutes=1)


def test_next_cron_run_weekday():
    result = next_cron_run("0 0 * * 0", AFTER)
    assert result.strftime("%w") == "0"
    assert (result.hour, result.minute) == (0, 0)
    assert AFTER < result <= AFTER + timedelta(days=7)


def test_next_cron_run_invalid_expression():
    assert next_cron_run("bad", AFTER) == AFTER + timedelta(minutes=1)


def test_next_cron_run_never_matches():
    assert next_cron_run("99 * * * *", AFTER) == AFTER + timedelta(hours=1)


def test_add_job_defaults_and_persists(manager, state):
    job = manager.add_job("0 3 * * *", "tun0", "")
    assert job.action == "restart"
    assert job.enabled
    assert job.next_run > parse_time("2000-01-01T00:00:00Z")
    saved = state.snapshot().cron
    assert [j.id for j in saved.jobs] == [job.id]
    assert saved.next_id == job.id + 1


def test_add_job_ids_increase(manager):
    first = manager.add_job("* * * * *", "tun0", "stop")
    second = manager.add_job("* * * * *", "tun1", "start")
    assert second.id == first.id + 1
    assert [j.action for j in manager.jobs] == ["stop", "start"]


def test_add_job_invalid(manager):
    with pytest.raises(CronError):
        manager.add_job("* *", "tun0", "restart")
    assert manager.jobs == []


def test_delete_job(manager, state):
    job = manager.add_job("* * * * *", "tun0", "restart")
    manager.delete_job(job.id)
    assert manager.jobs == []
    assert state.snapshot().cron.jobs == []


def test_delete_unknown_job(manager):
    with pytest.raises(CronError, match="job not found"):
        manager.delete_job(42)


def test_jobs_returns_copies(manager):
    manager.add_job("* * * * *", "tun0", "restart")
    manager.jobs[0].target = "changed"
    assert manager.jobs[0].target == "tun0"


def test_load_from_state(state):
    job = CronJob(id=4, expression="*/10 * * * *", target="all", action="start", enabled=True)
    state.set_cron(PersistedCron(jobs=[job], next_id=5))
    manager = CronManager(FakeVPN([]), state)
    manager.load()
    loaded = manager.jobs
    assert [j.id for j in loaded] == [4]
    assert loaded[0].next_run.minute % 10 == 0
    assert manager.add_job("* * * * *", "tun0", "").id == 5


def test_tick_runs_due_jobs(manager, state):
    job = manager.add_job("* * * * *", "tun9", "restart")
    now = job.next_run + timedelta(seconds=1)
    due = manager.tick(now)
    assert [j.id for j in due] == [job.id]
    current = manager.jobs[0]
    assert current.last_run == now
    assert current.next_run > now
    assert state.snapshot().cron.jobs[0].last_run == now


def test_tick_skips_disabled_and_future(state):
    job = CronJob(id=1, expression="* * * * *", target="tun0", action="stop", enabled=False)
    state.set_cron(PersistedCron(jobs=[job], next_id=2))
    manager = CronManager(FakeVPN(["tun0"]), state)
    manager.load()
    manager.add_job("* * * * *", "tun0", "stop")
    assert manager.tick(AFTER) == []
    assert all(j.last_run is None for j in manager.jobs)


def test_execute_single_target(manager, state):
    vpn = FakeVPN(["tun0", "tun1"])
    cron = CronManager(vpn, state)
    cron.execute(CronJob(id=7, expression="* * * * *", target="tun1", action="stop"))
    assert vpn.calls == [("stop", 1)]
    assert state.logs[0].message == "[cron #7] stop tun1"
    assert state.logs[0].level == "warn"


def test_execute_all(state):
    vpn = FakeVPN(["tun0", "tun1"])
    cron = CronManager(vpn, state)
    cron.execute(CronJob(id=2, expression="* * * * *", target="all", action="restart"))
    assert vpn.calls == [("restart", 0), ("restart", 1)]


def test_execute_unknown_action(state):
    vpn = FakeVPN(["tun0"])
    cron = CronManager(vpn, state)
    cron.execute(CronJob(id=3, expression="* * * * *", target="tun0", action="reboot"))
    assert vpn.calls == []


def test_start_and_stop(manager):
    manager.start()
    manager.stop()
    assert manager._thread is None