import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from .errors import RunCancelledError


class StepController:
    """Gates whether another model step may start.

    It never aborts in-flight calls; those race against ``cancel_event`` and
    ``remaining()`` through ``run_cancellable``.
    """

    def __init__(
        self,
        max_steps: int,
        timeout_s: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        self.max_steps = max_steps
        self.timeout_s = timeout_s
        self._clock = clock
        self.started_at = clock()
        self.deadline = self.started_at + timeout_s
        self.steps_taken = 0
        self.cancel_event = asyncio.Event()

    def record_step(self) -> int:
        self.steps_taken += 1
        return self.steps_taken

    def remaining(self) -> float:
        return max(0.0, self.deadline - self._clock())

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    @property
    def budget_exhausted(self) -> bool:
        return self.steps_taken >= self.max_steps

    @property
    def deadline_passed(self) -> bool:
        return self._clock() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        self.cancel_event.set()

    def permits_next_step(self) -> bool:
        return not (self.budget_exhausted or self.deadline_passed or self.cancelled)

    def stop_reason(self) -> str:
        if self.cancelled:
            return "cancelled by caller"
        if self.deadline_passed:
            return f"run deadline of {self.timeout_s:g}s elapsed"
        if self.budget_exhausted:
            return f"step budget of {self.max_steps} exhausted without a dossier"
        return ""


async def run_cancellable(
    awaitable: Awaitable[Any],
    cancel_event: Optional[asyncio.Event] = None,
    timeout: Optional[float] = None,
) -> Any:
    """Await ``awaitable`` unless the cancel event fires or the timeout elapses.

    Raises RunCancelledError or asyncio.TimeoutError; the inner task is
    cancelled on every exit path.
    """
    task = asyncio.ensure_future(awaitable)
    if cancel_event is None:
        try:
            return await asyncio.wait_for(task, timeout=timeout)
        finally:
            if not task.done():
                task.cancel()
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if task in done:
            return task.result()
        if waiter in done:
            raise RunCancelledError("cancelled by caller")
        raise asyncio.TimeoutError()
    finally:
        for pending in (task, waiter):
            if not pending.done():
                pending.cancel()
