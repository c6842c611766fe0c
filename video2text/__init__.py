"""
video2text

A Python client, task orchestrator and reverse proxy for the video download
and transcription services behind the "video to text" tool.
"""

__version__ = "0.3.0"

from .client import DownloadClient, TranscriptionClient
from .config import Settings
from .history import TaskHistory, JsonFileBackend, S3HistoryBackend
from .models import TaskItem, TaskStatus, SourceType, TranscriptSegment
from .orchestrator import TaskOrchestrator, TaskSession

__all__ = [
    "DownloadClient",
    "TranscriptionClient",
    "Settings",
    "TaskHistory",
    "JsonFileBackend",
    "S3HistoryBackend",
    "TaskItem",
    "TaskStatus",
    "SourceType",
    "TranscriptSegment",
    "TaskOrchestrator",
    "TaskSession",
]
