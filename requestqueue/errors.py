from typing import Optional


class RetryExhaustedError(Exception):
    """Raised once a task has used up its whole attempt budget."""

    def __init__(self, index: int, retries: int, last_error: Optional[BaseException] = None):
        super().__init__(f"Task {index} failed to load after {retries} retries")
        self.index = index
        self.retries = retries
        self.last_error = last_error


class CommandFailedError(Exception):
    """A shell command job exited with a non-zero status."""

    def __init__(self, command: str, returncode: int, stderr: str = ""):
        detail = f": {stderr.strip()[:500]}" if stderr and stderr.strip() else ""
        super().__init__(f"Command `{command}` failed with code {returncode}{detail}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
