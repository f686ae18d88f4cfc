from collections import deque
from typing import Deque, Optional

from .models import Task


class TaskQueue:
    """FIFO of tasks waiting for an execution slot.

    Only the owning scheduler touches it, always from the event loop thread,
    so no locking is done here.
    """

    def __init__(self):
        self._items: Deque[Task] = deque()

    def push(self, task: Task) -> None:
        self._items.append(task)

    def pop_front(self) -> Optional[Task]:
        """Remove and return the head, or None when empty."""
        if not self._items:
            return None
        return self._items.popleft()

    def __len__(self) -> int:
        return len(self._items)
