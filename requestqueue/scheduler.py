import asyncio
import dataclasses
from typing import Any, Callable, List, Optional, Set

from .errors import RetryExhaustedError
from .models import ATTEMPTING, FAILED, SUCCEEDED, Task, TaskHooks, Work
from .taskqueue import TaskQueue

# Pause between a failed attempt and the next one (seconds).
RETRY_DELAY_SECONDS = 1.0


def _check_limit(name: str, value, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer.")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum} (got {value})")
    return value


class Scheduler:
    """Runs async work with at most `max_concurrent` tasks in flight.

    Each admitted task keeps its slot through all of its attempts. A failing
    attempt is retried after RETRY_DELAY_SECONDS until `retries` extra
    attempts have been used, then the task fails with RetryExhaustedError.
    Everything runs on the event loop thread: admission is a synchronous
    check-then-act with no await in between.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        retries: int = 3,
        *,
        name: str = "scheduler",
        verbose: bool = True,
        on_unhandled_error: Optional[Callable[[RetryExhaustedError], Any]] = None,
    ):
        self._max_concurrent = _check_limit("max_concurrent", max_concurrent, 1)
        self._retries = _check_limit("retries", retries, 0)
        self.name = name
        self.verbose = verbose
        self._on_unhandled_error = on_unhandled_error

        self._queue = TaskQueue()
        self._running = 0
        self._next_index = 0
        self._inflight: Set[asyncio.Future] = set()
        self._idle_waiters: List[asyncio.Future] = []

    # ---------- Properties ----------
    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def running_count(self) -> int:
        return self._running

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def idle(self) -> bool:
        return self._running == 0 and not self._queue

    # ---------- Public API ----------
    def enqueue(
        self,
        work: Work,
        hooks: Optional[TaskHooks] = None,
        *,
        on_success: Optional[Callable[[Any], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        on_retry: Optional[Callable[[BaseException], Any]] = None,
    ) -> int:
        """Queue `work` and try to admit the head of the queue.

        Returns the task index. Does not wait for the task to finish; its
        outcome is only reported through the hooks.
        """
        if not callable(work):
            raise TypeError("work must be a zero-argument callable returning an awaitable")
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("enqueue() must be called while an event loop is running") from None

        hooks = hooks or TaskHooks()
        overrides = {
            k: v
            for k, v in (("on_success", on_success), ("on_error", on_error), ("on_retry", on_retry))
            if v is not None
        }
        if overrides:
            hooks = dataclasses.replace(hooks, **overrides)

        task = Task(index=self._next_index, work=work, hooks=hooks)
        self._next_index += 1
        self._queue.push(task)
        self._admit_next()
        return task.index

    async def join(self) -> None:
        """Wait until the queue is empty and no task is running."""
        if self.idle:
            return
        waiter = asyncio.get_running_loop().create_future()
        self._idle_waiters.append(waiter)
        await waiter

    # ---------- Admission ----------
    def _admit_next(self) -> None:
        if self._running >= self._max_concurrent:
            return
        task = self._queue.pop_front()
        if task is None:
            return
        self._running += 1
        task.state = ATTEMPTING
        runner = asyncio.ensure_future(self._execute(task))
        self._inflight.add(runner)
        runner.add_done_callback(self._inflight.discard)

    async def _execute(self, task: Task) -> None:
        try:
            result = await self._run_with_retry(task)
        except RetryExhaustedError as exc:
            self._complete(task, FAILED, exc)
        except BaseException:
            # cancelled or interrupted: no hooks, but the slot still goes to the next task
            if not task.done:
                task.state = FAILED
                self._running -= 1
                self._admit_after_release()
            raise
        else:
            self._complete(task, SUCCEEDED, result)

    # ---------- Retry ----------
    async def _run_with_retry(self, task: Task) -> Any:
        attempts_remaining = self._retries
        while True:
            task.attempts += 1
            self._log(f"Task {task.index} start")
            try:
                return await task.work()
            except Exception as exc:
                if attempts_remaining <= 0:
                    raise RetryExhaustedError(task.index, self._retries, exc) from exc
                self._log(
                    f"Task {task.index} retry for {attempts_remaining} times, "
                    f"after {RETRY_DELAY_SECONDS:g} second(s)"
                )
                self._fire(task, "on_retry", exc)
                await asyncio.sleep(RETRY_DELAY_SECONDS)
                attempts_remaining -= 1

    # ---------- Completion ----------
    def _complete(self, task: Task, state: str, outcome: Any) -> None:
        if task.done:
            return
        task.state = state
        self._running -= 1

        if state == SUCCEEDED:
            self._log(f"Task {task.index} completed after {task.attempts} attempt(s)")
            self._fire(task, "on_success", outcome)
        else:
            self._log(f"{outcome} ({outcome.last_error!r})")
            if task.hooks.on_error is not None:
                self._fire(task, "on_error", outcome)
            else:
                self._report_unhandled(outcome)

        self._admit_after_release()

    def _admit_after_release(self) -> None:
        self._admit_next()
        if self.idle:
            self._wake_idle_waiters()

    def _fire(self, task: Task, hook_name: str, arg: Any) -> None:
        hook = getattr(task.hooks, hook_name)
        if hook is None:
            return
        try:
            hook(arg)
        except Exception as e:
            self._log(f"Task {task.index} {hook_name} hook raised: {e!r}")

    def _report_unhandled(self, error: RetryExhaustedError) -> None:
        if self._on_unhandled_error is None:
            return
        try:
            self._on_unhandled_error(error)
        except Exception as e:
            self._log(f"on_unhandled_error hook raised: {e!r}")

    def _wake_idle_waiters(self) -> None:
        waiters, self._idle_waiters = self._idle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[{self.name}] {message}")
