"""
Persistent task history.

The whole history is one JSON document: an array of task records with dates
as ISO-8601 strings. ``TaskHistory`` is the only writer. Every mutation
re-reads the stored document, applies the change to the matching record and
writes the full list back, so updates made through another ``TaskHistory``
(another process, or another CLI invocation) are not clobbered.
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Any

import boto3
from botocore.exceptions import ClientError

from .models import TaskItem, TaskStatus, SourceType, RemoteStatus, utcnow

logger = logging.getLogger(__name__)

TASK_HISTORY_KEY = 'taskHistory.json'


class JsonFileBackend:
    """Stores the history document in a local file."""

    def __init__(self, file_path: str):
        self.path = Path(file_path).expanduser()

    def load(self) -> Optional[List[Dict[str, Any]]]:
        """
        Read the stored document.

        Returns:
            The list of records, or None if nothing usable is stored
        """
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to parse task history {self.path}: {e}")
            return None
        if not isinstance(data, list):
            logger.error(f"Task history {self.path} is not a JSON array")
            return None
        return data

    def save(self, records: List[Dict[str, Any]]):
        """Write the document atomically; a crash leaves the previous version intact."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.taskHistory-', dir=str(self.path.parent))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(records, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def clear(self):
        if self.path.exists():
            self.path.unlink()


class S3HistoryBackend:
    """Stores the history document as a single S3 object."""

    def __init__(
        self,
        bucket: str,
        key: str = TASK_HISTORY_KEY,
        aws_region: str = 'us-east-1',
        aws_profile: Optional[str] = None,
        s3_endpoint: Optional[str] = None,
        s3_client=None
    ):
        """
        Initialize the S3 backend.

        Args:
            bucket: S3 bucket holding the history document
            key: Object key of the document
            aws_region: AWS region
            aws_profile: AWS profile name for credentials (uses ~/.aws/credentials)
            s3_endpoint: Custom S3 endpoint URL (optional)
            s3_client: Preconfigured client, mainly for tests
        """
        if not bucket:
            raise ValueError("bucket must be provided")
        self.bucket = bucket
        self.key = key

        if s3_client is None:
            session_kwargs = {'region_name': aws_region}
            if aws_profile:
                session_kwargs['profile_name'] = aws_profile
            session = boto3.Session(**session_kwargs)

            s3_kwargs = {}
            if s3_endpoint:
                s3_kwargs['endpoint_url'] = s3_endpoint
            s3_client = session.client('s3', **s3_kwargs)
        self.s3_client = s3_client

    def load(self) -> Optional[List[Dict[str, Any]]]:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=self.key)
            data = json.loads(response['Body'].read().decode('utf-8'))
        except ClientError as e:
            if e.response['Error']['Code'] in ('NoSuchKey', '404'):
                return None
            logger.error(f"Failed to download task history: {e}")
            raise
        except ValueError as e:
            logger.error(f"Failed to parse task history s3://{self.bucket}/{self.key}: {e}")
            return None
        return data if isinstance(data, list) else None

    def save(self, records: List[Dict[str, Any]]):
        body = json.dumps(records, indent=2, ensure_ascii=False)
        self.s3_client.put_object(
            Bucket=self.bucket,
            Key=self.key,
            Body=body.encode('utf-8'),
            ContentType='application/json'
        )
        logger.debug(f"Saved {len(records)} tasks to s3://{self.bucket}/{self.key}")

    def clear(self):
        self.s3_client.delete_object(Bucket=self.bucket, Key=self.key)


def _parse_records(records: List[Dict[str, Any]]) -> List[TaskItem]:
    tasks = []
    for record in records:
        try:
            tasks.append(TaskItem.from_dict(record))
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Skipping malformed task record {record!r}: {e}")
    return tasks


class TaskHistory:
    """Add, update and query persisted task records."""

    def __init__(self, backend):
        self.backend = backend
        self._lock = threading.RLock()

    def _latest(self) -> List[TaskItem]:
        records = self.backend.load()
        if records is None:
            # missing, or cleared by another writer
            return []
        return _parse_records(records)

    def _save(self, tasks: List[TaskItem]):
        self.backend.save([task.to_dict() for task in tasks])

    def _mutate(self, task_id: str, change: Callable[[TaskItem], None]) -> Optional[TaskItem]:
        with self._lock:
            tasks = self._latest()
            for task in tasks:
                if task.id == task_id:
                    change(task)
                    self._save(tasks)
                    return task
            logger.warning(f"Task {task_id} not found in history")
            return None

    def list_tasks(self) -> List[TaskItem]:
        """All tasks, newest first."""
        with self._lock:
            return self._latest()

    def get_task(self, task_id: str) -> Optional[TaskItem]:
        for task in self.list_tasks():
            if task.id == task_id or task.remote_id == task_id:
                return task
        return None

    def add_task(
        self,
        video_source: str,
        source_type: Optional[SourceType] = None,
        task_id: Optional[str] = None
    ) -> str:
        """
        Record a new task in the queueing state.

        Args:
            video_source: URL or original file name
            source_type: Whether the source is a URL or a file
            task_id: Id to use; generated from the current time if not given

        Returns:
            The task id
        """
        now = utcnow()
        task = TaskItem(
            id=task_id or f"task-{int(now.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}",
            source_type=source_type,
            video_source=video_source,
            status=TaskStatus.QUEUEING,
            progress=0,
            created_at=now,
        )
        with self._lock:
            tasks = self._latest()
            self._save([task] + tasks)
        logger.debug(f"Added task {task.id} for {video_source}")
        return task.id

    def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        progress: Optional[int] = None,
        result_url: Optional[str] = None
    ) -> Optional[TaskItem]:
        """
        Merge a status change into a task.

        ``completed_at`` is stamped on the first transition into a terminal
        status and never changed afterwards.
        """
        def change(task: TaskItem):
            task.status = status
            if progress is not None:
                task.progress = max(0, min(100, int(progress)))
            if status.is_terminal and task.completed_at is None:
                task.completed_at = utcnow()
            if result_url:
                task.result_url = result_url

        return self._mutate(task_id, change)

    def set_remote_id(self, task_id: str, remote_id: str) -> Optional[TaskItem]:
        def change(task: TaskItem):
            task.remote_id = remote_id

        return self._mutate(task_id, change)

    def remove_task(self, task_id: str) -> bool:
        with self._lock:
            tasks = self._latest()
            remaining = [task for task in tasks if task.id != task_id]
            if len(remaining) == len(tasks):
                return False
            self._save(remaining)
            return True

    def clear_all(self):
        with self._lock:
            self.backend.clear()

    def reconcile(self, client, max_workers: int = 4) -> int:
        """
        Refresh unfinished tasks from the transcription service.

        Each task is queried by its remote id (falling back to its local id).
        A failed query leaves that task untouched and does not affect the others.

        Args:
            client: TranscriptionClient to query
            max_workers: Number of concurrent status queries

        Returns:
            Number of tasks that were updated
        """
        pending = [task for task in self.list_tasks() if not task.status.is_terminal]
        if not pending:
            return 0

        def fetch(task: TaskItem):
            try:
                return task.id, client.get_task(task.lookup_id)
            except Exception as e:
                logger.warning(f"Could not refresh task {task.id}: {e}")
                return task.id, None

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = dict(pool.map(fetch, pending))

        updates = {task_id: data for task_id, data in results.items() if data}
        if not updates:
            return 0

        changed = 0
        with self._lock:
            tasks = self._latest()
            for task in tasks:
                data = updates.get(task.id)
                if data is None or task.status.is_terminal:
                    continue
                remote_status = RemoteStatus.parse(data.get('status'))
                if remote_status is not None:
                    task.status = remote_status.to_task_status()
                progress = data.get('progress')
                if isinstance(progress, (int, float)) and not isinstance(progress, bool):
                    task.progress = max(0, min(100, int(round(progress))))
                if data.get('output_name'):
                    task.result_url = client.result_url(data['output_name'])
                if task.status.is_terminal and task.completed_at is None:
                    task.completed_at = utcnow()
                changed += 1
            self._save(tasks)
        logger.info(f"Refreshed {changed} unfinished tasks")
        return changed


def create_history(settings) -> TaskHistory:
    """Build the history store selected by the settings."""
    if settings.history_bucket:
        backend = S3HistoryBackend(
            bucket=settings.history_bucket,
            key=settings.history_key,
            aws_region=settings.aws_region,
            aws_profile=settings.aws_profile,
            s3_endpoint=settings.s3_endpoint,
        )
    else:
        backend = JsonFileBackend(settings.history_file)
    return TaskHistory(backend)
