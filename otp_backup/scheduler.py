"""Debounced automatic backups on top of a single-flight task queue.

Bursts of local changes (a bulk import, several quick edits) call
:meth:`AutoBackupScheduler.schedule` many times; only one backup runs once
things have been quiet for ``delay`` seconds.

Two counters replace a cancellable execution primitive:

* ``generation`` grows with every change. A run that finishes with a higher
  generation than it started with re-arms the timer, so late changes are
  never lost.
* ``token`` grows with every cancellation. A queued job compares the token
  it captured with the live one and does nothing on mismatch. A job that is
  already running always finishes.
"""
from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Mapping, Optional

from .config import BackupConfig

LOGGER = logging.getLogger(__name__)

DEFAULT_DELAY = 1.0

Job = Callable[[], Awaitable[Any]]
StatusListener = Callable[["SchedulerStatus"], None]


class TaskQueue:
    """FIFO chain that runs at most one job at a time.

    A failing job does not break the chain; its error is only visible
    through the future returned by :meth:`submit`.
    """

    def __init__(self) -> None:
        self._tail: Optional[asyncio.Future] = None
        self._pending = 0

    @property
    def pending(self) -> int:
        return self._pending

    def submit(self, job: Job) -> asyncio.Future:
        previous = self._tail
        self._pending += 1
        task = asyncio.ensure_future(self._run_after(previous, job))
        task.add_done_callback(self._finished)
        self._tail = task
        return task

    def _finished(self, _task: asyncio.Future) -> None:
        self._pending -= 1

    async def _run_after(self, previous: Optional[asyncio.Future], job: Job) -> Any:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        return await job()

    async def join(self) -> None:
        """Wait until everything submitted so far has finished."""

        while self._tail is not None and not self._tail.done():
            await asyncio.wait({self._tail})


@dataclass(frozen=True)
class SchedulerStatus:
    running: bool = False
    scheduled: bool = False


def threaded(func: Callable[..., Any]) -> Callable[..., Awaitable[Any]]:
    """Adapt a blocking callable so it runs off the event loop."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    return wrapper


def is_auto_backup_enabled(config: Optional[BackupConfig]) -> bool:
    return config is None or config.auto_backup is not False


def is_config_ready(config: Optional[BackupConfig]) -> bool:
    return config is not None and config.is_ready()


class AutoBackupScheduler:
    """Owns the debounce timer, the counters and the observer list.

    All collaborators are injected: ``get_config`` returns the current
    :class:`BackupConfig`, ``create_backup(config, payload)`` performs one
    backup (plain or coroutine function), ``get_payload`` snapshots the
    local items. Must be driven from a single event loop.
    """

    def __init__(
        self,
        get_config: Callable[[], Optional[BackupConfig]],
        create_backup: Callable[[BackupConfig, Mapping], Any],
        get_payload: Callable[[], Optional[Mapping]],
        task_queue: Optional[TaskQueue] = None,
        delay: float = DEFAULT_DELAY,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        logger: logging.Logger = LOGGER,
    ) -> None:
        self._get_config = get_config
        self._create_backup = create_backup
        self._get_payload = get_payload
        self.task_queue = task_queue or TaskQueue()
        self.delay = delay
        self.logger = logger
        self._loop = loop

        self._timer: Optional[asyncio.TimerHandle] = None
        self._running = False
        self._queued = False
        self._generation = 0
        self._desired_at: Optional[float] = None
        self._token = 0
        self._listeners: List[StatusListener] = []
        self._last_status = SchedulerStatus()

    # ------------------------------------------------------------------
    @property
    def generation(self) -> int:
        return self._generation

    @property
    def token(self) -> int:
        return self._token

    def _event_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _is_active(self, config: Optional[BackupConfig]) -> bool:
        return is_auto_backup_enabled(config) and is_config_ready(config)

    # ------------------------------------------------------------------
    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(running=self._running, scheduled=self._timer is not None or self._queued)

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        """Subscribe *listener*; it is called right away and then on every change."""

        self._listeners.append(listener)
        self._notify(listener, self.get_status())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, listener: StatusListener, status: SchedulerStatus) -> None:
        try:
            listener(status)
        except Exception:
            self.logger.warning("Auto backup status listener failed.", exc_info=True)

    def _emit_if_changed(self) -> None:
        status = self.get_status()
        if status == self._last_status:
            return
        self._last_status = status
        for listener in list(self._listeners):
            self._notify(listener, status)

    # ------------------------------------------------------------------
    def schedule(self, reason: str = "") -> None:
        """Record a local change and (re)start the debounce timer."""

        if not self._is_active(self._get_config()):
            self.cancel()
            return
        self._generation += 1
        self._desired_at = self._event_loop().time() + self.delay
        self.logger.debug("Auto backup requested (%s), generation %d.", reason or "change", self._generation)
        self._arm_timer()

    def cancel(self) -> None:
        self._token += 1
        self._desired_at = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._queued = False
        self._emit_if_changed()

    def sync_with_config(self) -> None:
        """Call after the configuration changed."""

        if not self._is_active(self._get_config()):
            self.cancel()
        else:
            self._emit_if_changed()

    # ------------------------------------------------------------------
    def _arm_timer(self) -> None:
        if not self._is_active(self._get_config()):
            self.cancel()
            return
        loop = self._event_loop()
        desired_at = self._desired_at if self._desired_at is not None else loop.time()
        wait = max(0.0, desired_at - loop.time())
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(wait, self._on_timer)
        self._emit_if_changed()

    def _on_timer(self) -> None:
        self._timer = None
        self._request_run()
        self._emit_if_changed()

    def _request_run(self) -> None:
        if self._running or self._queued:
            return
        if not self._is_active(self._get_config()):
            self.cancel()
            return
        token = self._token
        self._queued = True
        self._emit_if_changed()
        self.task_queue.submit(functools.partial(self._execute, token))

    async def _execute(self, token: int) -> None:
        if token != self._token:
            # cancel() already cleared the queued flag
            self.logger.debug("Queued auto backup skipped after cancellation.")
            return

        config = self._get_config()
        if not self._is_active(config):
            self._queued = False
            self._emit_if_changed()
            return

        self._queued = False
        self._running = True
        self._emit_if_changed()

        generation_at_start = self._generation
        try:
            payload = self._get_payload() or {}
            result = self._create_backup(config, payload)
            if inspect.isawaitable(result):
                await result
            self.logger.info("Automatic backup finished.")
        except Exception as exc:
            self.logger.warning("Automatic backup failed: %s", exc, exc_info=True)
        finally:
            self._running = False
            self._emit_if_changed()
            if self._generation > generation_at_start and self._desired_at is not None:
                self._arm_timer()


__all__ = [
    "AutoBackupScheduler",
    "SchedulerStatus",
    "TaskQueue",
    "is_auto_backup_enabled",
    "is_config_ready",
    "threaded",
]
