"""
Scheduling core for full-text catalog maintenance.

This module provides:
1) Inventory scan and triage of catalogs that need maintenance.
2) A fixed priority queue ordered by fragment count.
3) Duration estimates from the maintenance history.
4) Window budgeting (proceed / skip / abort) for a bounded run.
5) Dispatch of reorganize/rebuild with completion polling for rebuilds.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from db.history_store import (
    ACTION_REBUILD,
    ACTION_REORGANIZE,
    HistoryRecord,
    minutes_between,
    months_before,
    utc_now_naive,
    years_before,
)
from db.run_lock import MaintenanceRunLock, MaintenanceRunLocked

logger = logging.getLogger(__name__)

DECISION_PROCEED = "proceed"
DECISION_SKIP = "skip"

STATUS_QUEUE_EXHAUSTED = "queue_exhausted"
STATUS_QUOTA_REACHED = "quota_reached"
STATUS_WINDOW_EXCEEDED = "window_exceeded"
STATUS_RUNNING = "running"
STATUS_FAILED = "failed"

_BYTES_PER_GB = 1024 ** 3
_HISTORY_RETENTION_YEARS = 1

Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[Any]]


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _format_ts(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


# =============================================================================
# Run configuration and per-run state
# =============================================================================


@dataclass(frozen=True)
class RunConfig:
    reorg_threshold: int = 10
    rebuild_threshold: int = 30
    stop_after: int = 3
    window_minutes: int = 0
    history_months: int = 2
    max_size_gb: int = 0

    def __post_init__(self) -> None:
        for name in (
            "reorg_threshold",
            "rebuild_threshold",
            "stop_after",
            "window_minutes",
            "history_months",
            "max_size_gb",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValueError(f"{name} must be an integer.")
            if value < 0:
                raise ValueError(f"{name} must not be negative.")
        if self.rebuild_threshold < self.reorg_threshold:
            raise ValueError(
                "rebuild_threshold must be greater than or equal to reorg_threshold."
            )

    @classmethod
    def from_env(cls, **overrides: Optional[int]) -> "RunConfig":
        values = {
            "reorg_threshold": _env_int("CATALOG_REORG_THRESHOLD", 10),
            "rebuild_threshold": _env_int("CATALOG_REBUILD_THRESHOLD", 30),
            "stop_after": _env_int("CATALOG_STOP_AFTER", 3),
            "window_minutes": _env_int("CATALOG_WINDOW_MINUTES", 0),
            "history_months": _env_int("CATALOG_HISTORY_MONTHS", 2),
            "max_size_gb": _env_int("CATALOG_MAX_SIZE_GB", 0),
        }
        for key, value in overrides.items():
            if key not in values:
                raise ValueError(f"Unknown run option '{key}'.")
            if value is not None:
                values[key] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, int]:
        return {
            "reorg_threshold": self.reorg_threshold,
            "rebuild_threshold": self.rebuild_threshold,
            "stop_after": self.stop_after,
            "window_minutes": self.window_minutes,
            "history_months": self.history_months,
            "max_size_gb": self.max_size_gb,
        }


@dataclass
class Candidate:
    name: str
    fragment_count: int
    size_bytes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "database_name": self.name,
            "fragment_count": self.fragment_count,
            "size_bytes": self.size_bytes,
        }


@dataclass(frozen=True)
class WindowState:
    run_start: datetime
    window_end: Optional[datetime]

    @classmethod
    def open(cls, run_start: datetime, window_minutes: int) -> "WindowState":
        window_end = (
            run_start + timedelta(minutes=window_minutes) if window_minutes else None
        )
        return cls(run_start=run_start, window_end=window_end)

    @property
    def bounded(self) -> bool:
        return self.window_end is not None

    def exceeded(self, now: datetime) -> bool:
        return self.window_end is not None and now > self.window_end


@dataclass
class ScheduleProgress:
    """
    Loop accounting. A skip does not consume quota: the effective target
    grows by one for every skipped candidate.
    """

    stop_after: int
    cursor: int = 0
    attempted: int = 0
    skipped: int = 0

    @property
    def target_count(self) -> int:
        return self.stop_after + self.skipped

    def has_quota(self) -> bool:
        return self.attempted < self.stop_after


class RunNotices:
    """Operator-facing notices for one run; each is logged and kept for the report."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self.items: List[Dict[str, Any]] = []

    def emit(
        self,
        level: int,
        event: str,
        message: str,
        *,
        database_name: Optional[str] = None,
    ) -> None:
        logger.log(level, message)
        self.items.append(
            {
                "level": logging.getLevelName(level).lower(),
                "event": event,
                "database_name": database_name,
                "message": message,
                "at": self._clock().isoformat(),
            }
        )

    def info(self, event: str, message: str, **kwargs: Any) -> None:
        self.emit(logging.INFO, event, message, **kwargs)

    def warning(self, event: str, message: str, **kwargs: Any) -> None:
        self.emit(logging.WARNING, event, message, **kwargs)

    def error(self, event: str, message: str, **kwargs: Any) -> None:
        self.emit(logging.ERROR, event, message, **kwargs)


def select_action(candidate: Candidate, config: RunConfig) -> str:
    if candidate.fragment_count < config.rebuild_threshold:
        return ACTION_REORGANIZE
    return ACTION_REBUILD


# =============================================================================
# Inventory, triage and ordering
# =============================================================================


class InventoryScanner:
    """Builds the candidate list from the engine's eligible databases."""

    def __init__(self, engine: Any, notices: RunNotices) -> None:
        self._engine = engine
        self._notices = notices

    async def scan(self) -> List[Candidate]:
        database_names = await _maybe_await(self._engine.list_databases())
        candidates: List[Candidate] = []
        for database_name in database_names:
            try:
                hosts_catalog = bool(
                    await _maybe_await(self._engine.has_catalog(database_name))
                )
                if not hosts_catalog:
                    logger.debug("Database %s has no full-text catalog; skipping", database_name)
                    continue
                fragments = int(
                    await _maybe_await(self._engine.fragment_count(database_name))
                )
            except Exception as exc:
                self._notices.warning(
                    "scan_failed",
                    f"Could not inspect the full-text catalog on database {database_name}: {exc}",
                    database_name=database_name,
                )
                continue
            candidates.append(Candidate(name=database_name, fragment_count=fragments))
        return candidates


class TriageFilter:
    """Drops candidates below the reorganize threshold or above the size cap."""

    def __init__(self, engine: Any, config: RunConfig, notices: RunNotices) -> None:
        self._engine = engine
        self._config = config
        self._notices = notices

    async def apply(self, candidates: List[Candidate]) -> List[Candidate]:
        working = [
            candidate
            for candidate in candidates
            if candidate.fragment_count >= self._config.reorg_threshold
        ]
        if not self._config.max_size_gb:
            return working

        cap_bytes = self._config.max_size_gb * _BYTES_PER_GB
        kept: List[Candidate] = []
        for candidate in working:
            try:
                candidate.size_bytes = int(
                    await _maybe_await(self._engine.catalog_size_bytes(candidate.name))
                )
            except Exception as exc:
                self._notices.warning(
                    "size_check_failed",
                    f"Could not read the full-text catalog size for database "
                    f"{candidate.name}; leaving it out of this run: {exc}",
                    database_name=candidate.name,
                )
                continue
            if candidate.size_bytes > cap_bytes:
                logger.info(
                    "Full-text catalog for %s is larger than %s GB; skipping",
                    candidate.name,
                    self._config.max_size_gb,
                )
                continue
            kept.append(candidate)
        return kept


def build_priority_queue(candidates: List[Candidate]) -> List[Candidate]:
    """Most fragmented first; scan order breaks ties."""
    return sorted(candidates, key=lambda candidate: -candidate.fragment_count)


# =============================================================================
# Estimation and window budgeting
# =============================================================================


class DurationEstimator:
    def __init__(self, history_store: Any, history_months: int, notices: RunNotices) -> None:
        self._history = history_store
        self._history_months = history_months
        self._notices = notices

    async def estimate(self, database_name: str, action: str, now: datetime) -> float:
        since = months_before(now, self._history_months)
        average = await self._history.average_duration(database_name, action, since)
        if average is None:
            verb = "reorganizing" if action == ACTION_REORGANIZE else "rebuilding"
            self._notices.info(
                "no_history",
                f"There is no runtime history for {verb} the FTC on {database_name} "
                f"in the past {self._history_months} months, but maintenance will "
                "proceed. Runtime for this maintenance will be recorded for use in "
                "the future.",
                database_name=database_name,
            )
            return 0.0
        return float(average)


class WindowBudgetController:
    def __init__(self, window: WindowState, notices: RunNotices) -> None:
        self._window = window
        self._notices = notices

    def decide(self, database_name: str, estimate_minutes: float, now: datetime) -> str:
        if not self._window.bounded:
            return DECISION_PROCEED
        if now + timedelta(minutes=estimate_minutes) < self._window.window_end:
            return DECISION_PROCEED
        self._notices.warning(
            "skipped_window",
            f"The maintenance for database {database_name} is likely to exceed the "
            "allotted maintenance window. Skipping this database.",
            database_name=database_name,
        )
        return DECISION_SKIP

    def window_exceeded(self, now: datetime) -> bool:
        return self._window.exceeded(now)


# =============================================================================
# Dispatch
# =============================================================================


class MaintenanceDispatcher:
    """Runs one maintenance action and records it in the history on success."""

    def __init__(
        self,
        *,
        engine: Any,
        history_store: Any,
        window: WindowState,
        notices: RunNotices,
        clock: Clock,
        sleep: Sleeper,
        poll_interval_seconds: float,
    ) -> None:
        self._engine = engine
        self._history = history_store
        self._window = window
        self._notices = notices
        self._clock = clock
        self._sleep = sleep
        self._poll_interval_seconds = poll_interval_seconds

    async def dispatch(self, candidate: Candidate, action: str) -> Dict[str, Any]:
        if action == ACTION_REORGANIZE:
            return await self._run(candidate, action, self._reorganize)
        if action == ACTION_REBUILD:
            return await self._run(candidate, action, self._rebuild)
        raise ValueError(f"Unknown maintenance action '{action}'.")

    async def _reorganize(self, database_name: str) -> Dict[str, Any]:
        await _maybe_await(self._engine.reorganize(database_name))
        return {}

    async def _rebuild(self, database_name: str) -> Dict[str, Any]:
        await _maybe_await(self._engine.rebuild(database_name))
        polls = 0
        overrun_warned = False
        while await _maybe_await(self._engine.rebuild_in_progress(database_name)):
            await self._sleep(self._poll_interval_seconds)
            polls += 1
            if not overrun_warned and self._window.exceeded(self._clock()):
                self._notices.warning(
                    "rebuild_overrun",
                    "The maintenance window has been exceeded, but a full-text "
                    f"catalog rebuild is still in progress on database {database_name}. "
                    "Full-text (keyword) searching against this database will not be "
                    "accurate until the rebuild operation completes.",
                    database_name=database_name,
                )
                overrun_warned = True
        return {"polls": polls, "overrun_warned": overrun_warned}

    async def _run(
        self,
        candidate: Candidate,
        action: str,
        operation: Callable[[str], Awaitable[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        database_name = candidate.name
        noun = action.lower()
        begin_time = self._clock()
        self._notices.info(
            f"{noun}_started",
            f"Full-text catalog {noun} started for database {database_name} "
            f"on {_format_ts(begin_time)}",
            database_name=database_name,
        )
        try:
            details = await operation(database_name)
        except Exception as exc:
            label = "Reorganization" if action == ACTION_REORGANIZE else "Rebuild"
            self._notices.error(
                "dispatch_failed",
                f"{label} of catalog {database_name} failed with the following error: {exc}",
                database_name=database_name,
            )
            return {
                "ok": False,
                "database_name": database_name,
                "action": action,
                "start_time": begin_time.isoformat(),
                "error": str(exc),
            }

        end_time = self._clock()
        duration = minutes_between(begin_time, end_time)
        self._notices.info(
            f"{noun}_completed",
            f"Full-text catalog {noun} completed for database {database_name} "
            f"on {_format_ts(end_time)}",
            database_name=database_name,
        )
        self._notices.info(
            f"{noun}_duration",
            f"Time to {noun} full-text catalog for database {database_name}: "
            f"{duration} minutes.",
            database_name=database_name,
        )
        record = HistoryRecord(
            database_name=database_name,
            action=action,
            start_time=begin_time,
            finish_time=end_time,
            duration_minutes=duration,
        )
        await self._history.append(record)
        return {
            "ok": True,
            **record.to_dict(),
            **details,
        }


# =============================================================================
# Scheduler loop
# =============================================================================


class CatalogMaintenanceScheduler:
    """Processes the priority queue until the quota, queue or window runs out."""

    def __init__(
        self,
        *,
        engine: Any,
        history_store: Any,
        config: RunConfig,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
        poll_interval_seconds: Optional[float] = None,
    ) -> None:
        self._engine = engine
        self._history = history_store
        self._config = config
        self._clock = clock or utc_now_naive
        self._sleep = sleep or asyncio.sleep
        self._poll_interval_seconds = float(
            poll_interval_seconds
            if poll_interval_seconds is not None
            else _env_int("CATALOG_POLL_INTERVAL_SECONDS", 30, minimum=1)
        )

    async def run(self) -> Dict[str, Any]:
        config = self._config
        notices = RunNotices(self._clock)
        run_start = self._clock()
        window = WindowState.open(run_start, config.window_minutes)

        pruned = await self._history.prune_older_than(
            years_before(run_start, _HISTORY_RETENTION_YEARS)
        )
        if pruned:
            logger.info("Pruned %d maintenance log rows older than one year", pruned)

        scanned = await InventoryScanner(self._engine, notices).scan()
        eligible = await TriageFilter(self._engine, config, notices).apply(scanned)
        queue = build_priority_queue(eligible)

        estimator = DurationEstimator(self._history, config.history_months, notices)
        controller = WindowBudgetController(window, notices)
        dispatcher = MaintenanceDispatcher(
            engine=self._engine,
            history_store=self._history,
            window=window,
            notices=notices,
            clock=self._clock,
            sleep=self._sleep,
            poll_interval_seconds=self._poll_interval_seconds,
        )

        progress = ScheduleProgress(stop_after=config.stop_after)
        operations: List[Dict[str, Any]] = []
        aborted = controller.window_exceeded(self._clock())
        if aborted:
            self._notice_window_exceeded(notices)

        while not aborted and progress.has_quota() and progress.cursor < len(queue):
            candidate = queue[progress.cursor]
            action = select_action(candidate, config)
            estimate = await estimator.estimate(candidate.name, action, self._clock())
            decision = controller.decide(candidate.name, estimate, self._clock())
            if decision == DECISION_SKIP:
                progress.skipped += 1
                operations.append(
                    {
                        "ok": None,
                        "database_name": candidate.name,
                        "action": action,
                        "decision": decision,
                        "estimated_minutes": estimate,
                    }
                )
            else:
                progress.attempted += 1
                result = await dispatcher.dispatch(candidate, action)
                operations.append(
                    {**result, "decision": decision, "estimated_minutes": estimate}
                )
            progress.cursor += 1

            if controller.window_exceeded(self._clock()):
                aborted = True
                self._notice_window_exceeded(notices)

        if aborted:
            status = STATUS_WINDOW_EXCEEDED
        elif progress.has_quota():
            status = STATUS_QUEUE_EXHAUSTED
        else:
            status = STATUS_QUOTA_REACHED
        notices.info("run_complete", "Maintenance procedure complete.")

        dispatched = [item for item in operations if item.get("ok") is not None]
        return {
            "ok": True,
            "status": status,
            "config": config.to_dict(),
            "run_start": run_start.isoformat(),
            "window_end": window.window_end.isoformat() if window.window_end else None,
            "finished_at": self._clock().isoformat(),
            "pruned_records": pruned,
            "scanned": len(scanned),
            "queue": [
                {**candidate.to_dict(), "action": select_action(candidate, config)}
                for candidate in queue
            ],
            "target_count": progress.target_count,
            "attempted": progress.attempted,
            "succeeded": sum(1 for item in dispatched if item.get("ok")),
            "failed": sum(1 for item in dispatched if not item.get("ok")),
            "skipped": progress.skipped,
            "operations": operations,
            "notices": notices.items,
        }

    @staticmethod
    def _notice_window_exceeded(notices: RunNotices) -> None:
        notices.warning(
            "window_exceeded",
            "The maintenance window has been exceeded. No more work will be done in this run.",
        )


# =============================================================================
# Run entry point and last-run state
# =============================================================================




def _new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:10]}"


async def _run_scheduler(
    config: RunConfig,
    *,
    engine: Any,
    history_store: Any,
    clock: Optional[Clock] = None,
    sleep: Optional[Sleeper] = None,
    poll_interval_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    await history_store.init_db()
    scheduler = CatalogMaintenanceScheduler(
        engine=engine,
        history_store=history_store,
        config=config,
        clock=clock,
        sleep=sleep,
        poll_interval_seconds=poll_interval_seconds,
    )
    return await scheduler.run()


class MaintenanceRunState:
    """
    Owns the background maintenance run of this process and remembers the
    report of the most recent run. ``last()`` reports ``running`` until the
    task finishes; a task that raises leaves a ``failed`` report.
    """

    def __init__(self) -> None:
        self._guard = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._active_run_id: Optional[str] = None
        self._active_lock: Optional[MaintenanceRunLock] = None
        self._active_config: Optional[RunConfig] = None
        self._last_report: Optional[Dict[str, Any]] = None

    async def start(
        self,
        config: RunConfig,
        *,
        engine: Any,
        history_store: Any,
        run_lock: Optional[MaintenanceRunLock] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
        poll_interval_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Take the run lock and launch one pass as a background task.

        Raises MaintenanceRunLocked when a run is already active in this
        process or another process holds the lock.
        """
        run_id = _new_run_id()
        async with self._guard:
            if self._active_run_id is not None:
                raise MaintenanceRunLocked(
                    f"Catalog maintenance run {self._active_run_id} is already in progress."
                )
            self._active_run_id = run_id

        lock = run_lock or MaintenanceRunLock(getattr(history_store, "database_url", None))
        acquired = False
        try:
            await lock.acquire()
            acquired = True
        finally:
            if not acquired:
                async with self._guard:
                    self._active_run_id = None

        running = {
            "ok": True,
            "run_id": run_id,
            "status": STATUS_RUNNING,
            "requested_at": utc_now_naive().isoformat(),
            "config": config.to_dict(),
        }
        async with self._guard:
            self._last_report = running
            self._active_lock = lock
            self._active_config = config
            self._task = asyncio.create_task(
                self._execute(
                    run_id,
                    lock,
                    config,
                    engine=engine,
                    history_store=history_store,
                    clock=clock,
                    sleep=sleep,
                    poll_interval_seconds=poll_interval_seconds,
                ),
                name=f"catalog-maintenance-{run_id}",
            )
        return dict(running)

    async def _execute(
        self,
        run_id: str,
        lock: MaintenanceRunLock,
        config: RunConfig,
        **kwargs: Any,
    ) -> None:
        # Stays in place only when the task is cancelled.
        report = self._failure(run_id, config, "run_cancelled")
        try:
            report = {"run_id": run_id, **await _run_scheduler(config, **kwargs)}
        except Exception as exc:
            logger.exception("Catalog maintenance run %s failed", run_id)
            report = self._failure(run_id, config, str(exc) or type(exc).__name__)
        finally:
            await self._finish(lock, report)

    async def _finish(self, lock: MaintenanceRunLock, report: Dict[str, Any]) -> None:
        await lock.release()
        async with self._guard:
            self._last_report = report
            self._task = None
            self._active_run_id = None
            self._active_lock = None
            self._active_config = None

    @staticmethod
    def _failure(run_id: str, config: Optional[RunConfig], error: str) -> Dict[str, Any]:
        return {
            "ok": False,
            "run_id": run_id,
            "status": STATUS_FAILED,
            "config": config.to_dict() if config else None,
            "finished_at": utc_now_naive().isoformat(),
            "error": error,
        }

    async def record(self, report: Dict[str, Any]) -> None:
        async with self._guard:
            self._last_report = dict(report)

    async def last(self) -> Optional[Dict[str, Any]]:
        async with self._guard:
            return dict(self._last_report) if self._last_report else None

    async def wait(self) -> Optional[Dict[str, Any]]:
        """Wait for the active run, if any, and return the latest report."""
        async with self._guard:
            task = self._task
        if task is not None:
            await task
        return await self.last()

    async def shutdown(self) -> None:
        async with self._guard:
            task = self._task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        async with self._guard:
            run_id = self._active_run_id
            lock = self._active_lock
            config = self._active_config
        if run_id is not None and lock is not None:
            # Cancelled before its first step, so _execute never ran.
            await self._finish(lock, self._failure(run_id, config, "run_cancelled"))


run_state = MaintenanceRunState()


async def run_catalog_maintenance(
    config: RunConfig,
    *,
    engine: Any,
    history_store: Any,
    run_lock: Optional[MaintenanceRunLock] = None,
    clock: Optional[Clock] = None,
    sleep: Optional[Sleeper] = None,
    poll_interval_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Run one maintenance pass in the foreground under the single-writer lock.

    Raises MaintenanceRunLocked when another run holds the lock.
    """
    lock = run_lock or MaintenanceRunLock(getattr(history_store, "database_url", None))
    await lock.acquire()
    try:
        report = await _run_scheduler(
            config,
            engine=engine,
            history_store=history_store,
            clock=clock,
            sleep=sleep,
            poll_interval_seconds=poll_interval_seconds,
        )
    finally:
        await lock.release()
    report = {"run_id": _new_run_id(), **report}
    await run_state.record(report)
    return report
