"""
Data models for video2text tasks and transcripts.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Any


class TaskStatus(Enum):
    """Local status of a video-to-text task."""
    QUEUEING = "queueing"
    DOWNLOADING = "downloading"
    TRANSCODING = "transcoding"
    UPLOADING = "uploading"
    TRANSCRIBING = "transcribing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR)


class SourceType(Enum):
    """Where the video of a task came from."""
    URL = "url"
    FILE = "file"


class RemoteStatus(Enum):
    """Status reported by the download and transcription services."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Any) -> Optional["RemoteStatus"]:
        try:
            return cls(value)
        except ValueError:
            return None

    def to_task_status(self) -> TaskStatus:
        """Map a remote status onto the local task status."""
        return {
            RemoteStatus.PENDING: TaskStatus.QUEUEING,
            RemoteStatus.RUNNING: TaskStatus.TRANSCRIBING,
            RemoteStatus.SUCCESS: TaskStatus.COMPLETED,
            RemoteStatus.FAILED: TaskStatus.ERROR,
        }[self]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_iso(value: datetime) -> str:
    """Serialize a datetime as ISO-8601 with millisecond precision and a Z suffix."""
    return value.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TaskItem:
    """A task record as kept in the persisted history."""
    id: str
    video_source: str
    status: TaskStatus
    created_at: datetime
    source_type: Optional[SourceType] = None
    remote_id: Optional[str] = None
    progress: int = 0
    completed_at: Optional[datetime] = None
    result_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert the task to its persisted JSON representation."""
        data = {
            "id": self.id,
            "sourceType": self.source_type.value if self.source_type else None,
            "videoSource": self.video_source,
            "status": self.status.value,
            "progress": self.progress,
            "createdAt": format_iso(self.created_at),
        }
        if self.remote_id:
            data["remoteId"] = self.remote_id
        if self.completed_at:
            data["completedAt"] = format_iso(self.completed_at)
        if self.result_url:
            data["resultUrl"] = self.result_url
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskItem":
        """Build a task from its persisted representation, parsing dates back."""
        source_type = data.get("sourceType")
        return cls(
            id=data["id"],
            remote_id=data.get("remoteId") or data.get("ttsId"),
            source_type=SourceType(source_type) if source_type else None,
            video_source=data.get("videoSource", ""),
            status=TaskStatus(data.get("status", TaskStatus.QUEUEING.value)),
            progress=int(data.get("progress") or 0),
            created_at=parse_iso(data["createdAt"]) if data.get("createdAt") else utcnow(),
            completed_at=parse_iso(data["completedAt"]) if data.get("completedAt") else None,
            result_url=data.get("resultUrl"),
        )

    @property
    def lookup_id(self) -> str:
        """Id to query the transcription service with."""
        return self.remote_id or self.id


@dataclass
class TranscriptSegment:
    """One timestamped line of transcript output."""
    start: str
    end: str
    text: str
    start_ms: int = 0

    def __str__(self) -> str:
        return f"[{self.start} → {self.end}] {self.text}"
