"""Scheduled tunnel actions driven by cron-style expressions."""

import copy
import logging
import re
import threading
import time
from datetime import datetime, timedelta
from typing import Optional

from .state import AppState, CronJob, PersistedCron

log = logging.getLogger(__name__)

TICK_SECONDS = 15
ALL_PAUSE_SECONDS = 0.2
SEARCH_LIMIT = timedelta(days=366)

_INT_RE = re.compile(r"[+-]?\d+")


class CronError(ValueError):
    """Raised for invalid expressions and unknown jobs."""


def _now() -> datetime:
    return datetime.now().astimezone()


def _atoi(text: str) -> Optional[int]:
    return int(text) if _INT_RE.fullmatch(text) else None


def validate_cron(expression: str) -> None:
    """Raise CronError unless the expression has five fields."""
    if len(expression.split()) != 5:
        raise CronError("cron must have 5 fields: min hour dom month dow")


def match_field(field: str, value: int, low: int, high: int) -> bool:
    """Whether one cron field matches a value."""
    if field == "*":
        return True
    if field.startswith("*/"):
        step = _atoi(field[2:])
        if step is None or step <= 0:
            return False
        return value % step == 0
    if "-" in field:
        first, second = field.split("-", 1)
        lo, hi = _atoi(first), _atoi(second)
        if lo is None or hi is None:
            return False
        return lo <= value <= hi
    if "," in field:
        return any(_atoi(part.strip()) == value for part in field.split(","))
    return _atoi(field) == value


def _weekday(moment: datetime) -> int:
    return moment.isoweekday() % 7


def next_cron_run(expression: str, after: datetime) -> datetime:
    """First whole minute after `after` matching minute, hour and weekday."""
    fields = expression.split()
    if len(fields) != 5:
        return after + timedelta(minutes=1)
    minute, hour, dow = fields[0], fields[1], fields[4]
    moment = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = after + SEARCH_LIMIT
    while moment < limit:
        if not match_field(dow, _weekday(moment), 0, 6):
            moment = moment.replace(hour=0, minute=0) + timedelta(days=1)
            continue
        if not match_field(hour, moment.hour, 0, 23):
            moment = moment.replace(minute=0) + timedelta(hours=1)
            continue
        if match_field(minute, moment.minute, 0, 59):
            return moment
        moment += timedelta(minutes=1)
    return after + timedelta(hours=1)


class CronManager:
    """Keeps the job list, persists it and runs due jobs."""

    def __init__(self, vpn, state: AppState):
        self._vpn = vpn
        self._state = state
        self._lock = threading.Lock()
        self._jobs: list[CronJob] = []
        self._next_id = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def load(self) -> None:
        """Take the jobs from the state and recompute their next runs."""
        cron = self._state.snapshot().cron
        now = _now()
        with self._lock:
            self._jobs = cron.jobs
            self._next_id = cron.next_id
            for job in self._jobs:
                job.next_run = next_cron_run(job.expression, now)
            count = len(self._jobs)
        log.info("Loaded %d cron jobs", count)

    def _save(self) -> None:
        with self._lock:
            cron = PersistedCron(jobs=copy.deepcopy(self._jobs), next_id=self._next_id)
        self._state.set_cron(cron)

    def add_job(self, expression: str, target: str, action: str = "") -> CronJob:
        """Add an enabled job; the action defaults to restart."""
        validate_cron(expression)
        with self._lock:
            job = CronJob(
                id=self._next_id,
                expression=expression,
                target=target,
                action=action or "restart",
                enabled=True,
                next_run=next_cron_run(expression, _now()),
            )
            self._next_id += 1
            self._jobs.append(job)
            result = copy.deepcopy(job)
        self._save()
        return result

    def delete_job(self, job_id: int) -> None:
        """Remove a job, raising CronError if there is none with this id."""
        with self._lock:
            position = next(
                (i for i, job in enumerate(self._jobs) if job.id == job_id), None
            )
            if position is None:
                raise CronError(f"job not found: {job_id}")
            del self._jobs[position]
        self._save()

    @property
    def jobs(self) -> list[CronJob]:
        with self._lock:
            return copy.deepcopy(self._jobs)

    def start(self) -> None:
        """Check for due jobs in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="cron", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(TICK_SECONDS):
            self.tick(_now())

    def tick(self, now: Optional[datetime] = None) -> list[CronJob]:
        """Start every enabled job that is due; returns the jobs started."""
        now = now or _now()
        due = []
        with self._lock:
            for job in self._jobs:
                if job.enabled and now > job.next_run:
                    job.last_run = now
                    job.next_run = next_cron_run(job.expression, now)
                    due.append(copy.deepcopy(job))
        for job in due:
            threading.Thread(target=self.execute, args=(job,), daemon=True).start()
        if due:
            self._save()
        return due

    def execute(self, job: CronJob) -> None:
        """Apply the job's action to its target tunnel, or to all of them."""
        self._state.add_log("warn", f"[cron #{job.id}] {job.action} {job.target}")
        actions = {
            "restart": self._vpn.restart_tunnel,
            "start": self._vpn.start_tunnel,
            "stop": self._vpn.stop_tunnel,
        }
        action = actions.get(job.action)
        tunnels = self._vpn.tunnels
        if job.target == "all":
            for tunnel in tunnels:
                self._apply(action, tunnel.index)
                time.sleep(ALL_PAUSE_SECONDS)
            return
        for tunnel in tunnels:
            if tunnel.tun_dev == job.target:
                self._apply(action, tunnel.index)

    @staticmethod
    def _apply(action, index: int) -> None:
        if action is None:
            return
        try:
            action(index)
        except Exception as exc:  # a failed action must not stop the schedule
            log.warning("cron action on tunnel %d failed: %s", index, exc)