"""
Polling scheduler for one user session.

``RepeatingTask`` is a cancellable handle around an asyncio timer loop.
``PollingScheduler`` drives one poll coroutine through it and owns the
Idle/Polling state machine and the failure taxonomy: recoverable failures
skip a cycle, unrecoverable ones stop polling.
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from cgm_link.metrics import poll_cycles_total, poll_ticks_skipped_total
from cgm_link.utils.error_handling import CgmLinkError, is_recoverable

logger = logging.getLogger(__name__)


class RepeatingTask:
    """
    Run *callback* immediately and then every *interval* seconds.

    A tick that fires while the previous callback is still running is
    skipped, never queued. ``cancel()`` is synchronous: once it returns no
    further callbacks start. A callback already in flight is left to finish.
    ``run_exclusive()`` borrows the same in-flight slot for a one-off call.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[Any]],
        interval: float,
        on_skip: Optional[Callable[[], None]] = None,
        name: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.callback = callback
        self.interval = interval
        self.on_skip = on_skip
        self.name = name
        self._sleep = sleep
        self.ticks = 0
        self.skipped = 0
        self._cancelled = False
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Future] = None

    @property
    def active(self) -> bool:
        return self._timer is not None and not self._cancelled

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def start(self) -> "RepeatingTask":
        if self._timer is not None:
            raise RuntimeError("RepeatingTask already started")
        loop = asyncio.get_running_loop()
        self._tick()
        self._timer = loop.create_task(self._run(), name=self.name)
        return self

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()

    async def wait_idle(self) -> None:
        """Wait for the callback currently in flight, if any."""
        if self._in_flight is not None:
            await asyncio.wait({self._in_flight})

    async def run_exclusive(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run *func* in the in-flight slot and return its result.

        Waits for any callback already running; ticks that fire meanwhile are
        skipped. Errors propagate to the caller.
        """
        while self.in_flight:
            await self.wait_idle()
        self._in_flight = asyncio.ensure_future(func())
        return await self._in_flight

    async def _run(self) -> None:
        while not self._cancelled:
            await self._sleep(self.interval)
            self._tick()

    def _tick(self) -> None:
        if self._cancelled:
            return
        self.ticks += 1
        if self.in_flight:
            self.skipped += 1
            if self.on_skip is not None:
                self.on_skip()
            return
        self._in_flight = asyncio.ensure_future(self.callback())
        self._in_flight.add_done_callback(self._report_failure)

    def _report_failure(self, future: asyncio.Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Repeating task callback failed", exc_info=exc, extra={"log_type": "scheduler_error", "task": self.name})


class SchedulerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"


class PollingScheduler:
    """
    Idle/Polling state machine around a poll coroutine.

    Results are handed to *on_result*; an unrecoverable failure stops polling
    and is handed to *on_unrecoverable*. Results of a cycle that finishes
    after ``stop()`` (or a restart) are discarded.
    """

    def __init__(
        self,
        poll: Callable[[], Awaitable[Any]],
        on_result: Callable[[Any], None],
        on_unrecoverable: Optional[Callable[[CgmLinkError], None]] = None,
        interval: float = 300.0,
        name: str = "glucose-poll",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.poll = poll
        self.on_result = on_result
        self.on_unrecoverable = on_unrecoverable
        self.interval = interval
        self.name = name
        self._sleep = sleep
        self._state = SchedulerState.IDLE
        self._task: Optional[RepeatingTask] = None
        self._generation = 0

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def task(self) -> Optional[RepeatingTask]:
        return self._task

    def start(self) -> None:
        """Enter Polling: cancel any previous timer, poll now, then every interval."""
        self._cancel_task()
        self._generation += 1
        self._state = SchedulerState.POLLING
        generation = self._generation
        self._task = RepeatingTask(
            lambda: self._cycle(generation),
            self.interval,
            on_skip=self._on_skip,
            name=self.name,
            sleep=self._sleep,
        ).start()
        logger.info("Polling started", extra={"log_type": "scheduler_start", "task": self.name, "interval": self.interval})

    def stop(self) -> None:
        """Enter Idle. No further cycles start once this returns."""
        was_polling = self._state is SchedulerState.POLLING
        self._cancel_task()
        self._generation += 1
        self._state = SchedulerState.IDLE
        if was_polling:
            logger.info("Polling stopped", extra={"log_type": "scheduler_stop", "task": self.name})

    async def wait_idle(self) -> None:
        """Wait for an in-flight cycle to finish."""
        if self._task is not None:
            await self._task.wait_idle()

    async def run_exclusive(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run *func* outside the schedule without overlapping a poll cycle."""
        if self._task is None:
            return await func()
        return await self._task.run_exclusive(func)

    def halt(self, error: CgmLinkError) -> None:
        """Stop polling because of an unrecoverable *error* and report it."""
        poll_cycles_total.labels(outcome="stopped").inc()
        logger.error(
            f"Unrecoverable poll failure, stopping: {error.message}",
            extra={"log_type": "poll_stopped", "task": self.name, "error_type": error.__class__.__name__},
        )
        self.stop()
        if self.on_unrecoverable is not None:
            self.on_unrecoverable(error)

    def _cancel_task(self) -> None:
        if self._task is not None:
            self._task.cancel()

    def _on_skip(self) -> None:
        poll_ticks_skipped_total.inc()
        logger.warning("Previous poll still running, tick skipped", extra={"log_type": "scheduler_skip", "task": self.name})

    async def _cycle(self, generation: int) -> None:
        try:
            result = await self.poll()
        except CgmLinkError as e:
            if generation != self._generation:
                return
            if is_recoverable(e):
                poll_cycles_total.labels(outcome="skipped_error").inc()
                logger.warning(
                    f"Poll cycle skipped: {e.message}",
                    extra={"log_type": "poll_skipped", "task": self.name, "error_type": e.__class__.__name__},
                )
                return
            self.halt(e)
            return
        except Exception:
            if generation == self._generation:
                poll_cycles_total.labels(outcome="skipped_error").inc()
                logger.exception("Unexpected error in poll cycle, skipping", extra={"log_type": "poll_skipped", "task": self.name})
            return

        if generation != self._generation:
            logger.debug("Discarding result of a cycle from a previous polling run", extra={"task": self.name})
            return
        poll_cycles_total.labels(outcome="success").inc()
        self.on_result(result)
