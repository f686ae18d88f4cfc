from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

# Task States
PENDING = "pending"
ATTEMPTING = "attempting"
SUCCEEDED = "succeeded"
FAILED = "failed"

TERMINAL_STATES = (SUCCEEDED, FAILED)

Work = Callable[[], Awaitable[Any]]


@dataclass
class TaskHooks:
    on_success: Optional[Callable[[Any], Any]] = None
    on_error: Optional[Callable[[BaseException], Any]] = None
    on_retry: Optional[Callable[[BaseException], Any]] = None


@dataclass
class Task:
    index: int
    work: Work
    hooks: TaskHooks = field(default_factory=TaskHooks)
    state: str = PENDING
    attempts: int = 0

    @property
    def done(self) -> bool:
        return self.state in TERMINAL_STATES
