"""
Exception types raised by the video2text client, orchestrator and proxy.
"""

from typing import Optional


class Video2TextError(Exception):
    """Base class for all video2text errors."""


class RequestFailed(Video2TextError):
    """A request timed out or failed at the transport level on every attempt."""

    def __init__(self, url: str, attempts: int, cause: Optional[BaseException] = None):
        self.url = url
        self.attempts = attempts
        self.cause = cause
        reason = str(cause) if cause else "unknown error"
        super().__init__(f"Request to {url} failed after {attempts} attempts: {reason}")


class ProxyLoopDetected(Video2TextError):
    """The proxy upstream resolves to the host that received the request."""

    def __init__(self, hostname: str):
        self.hostname = hostname
        super().__init__(f"Proxy loop detected: upstream target equals current host ({hostname})")


class TaskSubmissionFailed(Video2TextError):
    """A submission call returned no usable task id."""


class TaskFailed(Video2TextError):
    """A collaborator reported an explicit failed status."""

    def __init__(self, task_id: str, message: Optional[str] = None):
        self.task_id = task_id
        self.message = message or "unknown error"
        super().__init__(f"Task {task_id} failed: {self.message}")


class DownloadFailed(TaskFailed):
    pass


class TranscriptionFailed(TaskFailed):
    pass


class PollingDegraded(Video2TextError):
    """Consecutive poll failures; raised once the tolerated count is exceeded."""

    def __init__(self, failures: int, cause: Optional[BaseException] = None):
        self.failures = failures
        self.cause = cause
        super().__init__(f"Polling failed {failures} times in a row: {cause}")


class ClipboardUnavailable(Video2TextError):
    """No system clipboard mechanism could be used."""
