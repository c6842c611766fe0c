"""
Driving a video-to-text task from submission to a finished transcript.

A URL task is downloaded by the download service first, then handed to the
transcription service; a file task is uploaded to the transcription service
directly. Once a transcription task id exists, two consumers follow it at the
same time:

* the stream consumer reads the task's server-push stream, turning log lines
  into transcript segments and watching for a terminal status;
* the poll consumer fetches the task status every few seconds until the task
  is running, then leaves the rest to the stream.

Both publish into the same ``TaskSession``, whose status changes are
idempotent: a terminal status is never overwritten.
"""

import logging
import threading
from typing import Callable, List, Optional

import requests

from .client import DownloadClient, TranscriptionClient
from .config import Settings
from .errors import (
    Video2TextError, DownloadFailed, TranscriptionFailed, PollingDegraded,
)
from .history import TaskHistory
from .models import TaskStatus, SourceType, RemoteStatus, TranscriptSegment, utcnow
from .retry import with_retry
from .sse import EventStream
from .transcript import LineParser, normalize_duration, estimate_percent
from .utils import extract_real_url

logger = logging.getLogger(__name__)

# Errors a poll or submission step can raise that end up on the task, not in a traceback.
TASK_ERRORS = (Video2TextError, requests.RequestException, OSError, ValueError)


def _envelope_lines(envelope: dict) -> List[str]:
    lines = []
    for key in ('logs', 'content'):
        value = envelope.get(key)
        if isinstance(value, str):
            lines.append(value)
        elif isinstance(value, list):
            lines.extend(line for line in value if isinstance(line, str))
    return lines


class TaskSession:
    """
    In-memory state of one task run.

    All mutations go through methods holding the session lock. ``stopped``
    is set on cancellation and on any terminal status; every wait in the
    drivers is made on it, so setting it interrupts them.
    """

    def __init__(
        self,
        task_id: str,
        source_type: SourceType,
        video_source: str,
        success_threshold: int = 3,
        on_update: Optional[Callable[["TaskSession"], None]] = None,
        on_segment: Optional[Callable[["TaskSession", TranscriptSegment], None]] = None
    ):
        self.task_id = task_id
        self.source_type = source_type
        self.video_source = video_source
        self.success_threshold = success_threshold
        self.remote_id: Optional[str] = None

        self.status = TaskStatus.QUEUEING
        self.queue: Optional[int] = None
        self.percent = 0
        self.output_name: Optional[str] = None
        self.result_url: Optional[str] = None
        self.error: Optional[str] = None
        self.segments: List[TranscriptSegment] = []
        self.success_count = 0
        self.duration_ms: Optional[int] = None
        self.started_at = utcnow()

        self._on_update = on_update
        self._on_segment = on_segment
        self._parser = LineParser()
        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._done = threading.Event()
        self._stream: Optional[EventStream] = None

    def __repr__(self) -> str:
        return f"<TaskSession {self.task_id} {self.status.value} {self.percent}%>"

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def seen_lines(self) -> int:
        return len(self._parser)

    @property
    def stream_open(self) -> bool:
        return self._stream is not None and not self._stream.closed

    def wait_or_stop(self, seconds: float) -> bool:
        """Sleep for ``seconds``; returns True early if the session stops."""
        return self._stopped.wait(seconds)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session's driver has finished."""
        return self._done.wait(timeout)

    def _notify(self):
        if self._on_update:
            self._on_update(self)

    def set_status(self, status: TaskStatus, error: Optional[str] = None) -> bool:
        """
        Move to ``status`` unless the transition is stale.

        Terminal statuses are final, and a task already transcribing does not
        go back to queueing.

        Returns:
            True if the status changed
        """
        with self._lock:
            if self.status.is_terminal or self.stopped:
                return False
            if self.status is TaskStatus.TRANSCRIBING and status is TaskStatus.QUEUEING:
                return False
            if status is self.status:
                return False
            self.status = status
            if error:
                self.error = error
            if status is TaskStatus.COMPLETED:
                self.percent = 100
            if status.is_terminal:
                self._halt()

        if status is TaskStatus.ERROR:
            logger.error(f"Task {self.task_id} failed: {error}")
        elif status.is_terminal:
            logger.info(f"Task {self.task_id} {status.value}")
        else:
            logger.debug(f"Task {self.task_id} -> {status.value}")
        self._notify()
        return True

    def set_queue(self, queue: Optional[int]):
        with self._lock:
            if queue == self.queue:
                return
            self.queue = queue
        self._notify()

    def set_duration(self, raw) -> bool:
        """Record a duration hint and re-estimate progress from it."""
        duration_ms = normalize_duration(raw)
        if duration_ms is None:
            return False
        with self._lock:
            self.duration_ms = duration_ms
            changed = self._estimate()
        if changed:
            self._notify()
        return True

    def add_lines(self, lines: List[str]) -> List[TranscriptSegment]:
        """
        Parse raw log lines, appending segments for lines not seen before.

        Returns:
            The newly appended segments
        """
        with self._lock:
            if self.stopped:
                return []
            segments = self._parser.feed(lines)
            self.segments.extend(segments)
            changed = self._estimate() if segments else False

        for segment in segments:
            if self._on_segment:
                self._on_segment(self, segment)
        if changed:
            self._notify()
        return segments

    def _estimate(self) -> bool:
        if not self.segments or self.status.is_terminal:
            return False
        percent = estimate_percent(self.segments[-1].start_ms, self.duration_ms)
        if percent is None or percent == self.percent:
            return False
        self.percent = percent
        return True

    def record_success(self) -> bool:
        """
        Count one terminal-success signal from the stream.

        Returns:
            True once the signal has been seen ``success_threshold`` times
        """
        with self._lock:
            self.success_count += 1
            count = self.success_count
        logger.debug(f"Task {self.task_id} success signal {count}/{self.success_threshold}")
        return count >= self.success_threshold

    def set_result(self, output_name: str, result_url: str):
        with self._lock:
            self.output_name = output_name
            self.result_url = result_url
        self._notify()

    def attach_stream(self, stream: EventStream) -> bool:
        """Take ownership of an open stream; it is closed right away if the session has stopped."""
        with self._lock:
            if self.stopped:
                stream.close()
                return False
            self._stream = stream
            return True

    def detach_stream(self, stream: EventStream):
        with self._lock:
            stream.close()
            if self._stream is stream:
                self._stream = None

    def _halt(self):
        with self._lock:
            self._stopped.set()
            if self._stream is not None:
                self._stream.close()
                self._stream = None

    def cancel(self):
        """Stop the session: close its stream and forget the lines it has seen."""
        with self._lock:
            self._halt()
            self._parser.reset()
        logger.info(f"Task {self.task_id} stopped")

    def _finish(self):
        self._halt()
        self._done.set()


class TaskOrchestrator:
    """
    Runs one task at a time against the download and transcription services.

    Starting a task tears down the previous one first.
    """

    def __init__(
        self,
        download_client: DownloadClient,
        transcription_client: TranscriptionClient,
        history: Optional[TaskHistory] = None,
        settings: Optional[Settings] = None,
        on_update: Optional[Callable[[TaskSession], None]] = None,
        on_segment: Optional[Callable[[TaskSession, TranscriptSegment], None]] = None
    ):
        self.download_client = download_client
        self.transcription_client = transcription_client
        self.history = history
        self.settings = settings or Settings()
        self.on_update = on_update
        self.on_segment = on_segment
        self._lock = threading.Lock()
        self._current: Optional[TaskSession] = None

    @property
    def current(self) -> Optional[TaskSession]:
        return self._current

    def start_url(self, url: str) -> TaskSession:
        """Start a task for a video URL."""
        url = extract_real_url(url)
        return self._start(SourceType.URL, url, lambda session: self._submit_url(session, url))

    def start_file(self, file_path: str) -> TaskSession:
        """Start a task for a local video file."""
        return self._start(SourceType.FILE, file_path, lambda session: self._submit_file(session, file_path))

    def run_url(self, url: str, timeout: Optional[float] = None) -> TaskSession:
        session = self.start_url(url)
        session.wait(timeout)
        return session

    def run_file(self, file_path: str, timeout: Optional[float] = None) -> TaskSession:
        session = self.start_file(file_path)
        session.wait(timeout)
        return session

    def stop(self):
        """Tear down the current task, if any."""
        with self._lock:
            if self._current is not None:
                self._current.cancel()

    def _start(self, source_type: SourceType, video_source: str, submit) -> TaskSession:
        with self._lock:
            if self._current is not None:
                self._current.cancel()

            task_id = None
            if self.history is not None:
                task_id = self.history.add_task(video_source, source_type)
            session = TaskSession(
                task_id=task_id or f"task-{int(utcnow().timestamp() * 1000)}",
                source_type=source_type,
                video_source=video_source,
                success_threshold=self.settings.success_threshold,
                on_update=self._handle_update,
                on_segment=self.on_segment,
            )
            self._current = session

        thread = threading.Thread(
            target=self._drive, args=(session, submit), name=f"task-{session.task_id}", daemon=True
        )
        thread.start()
        return session

    def _handle_update(self, session: TaskSession):
        if self.history is not None and (session.status.is_terminal or not session.stopped):
            self._persist(session)
        if self.on_update:
            self.on_update(session)

    def _persist(self, session: TaskSession):
        if self.history is None:
            return
        try:
            self.history.update_task_status(
                session.task_id, session.status, session.percent, session.result_url
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Could not record task {session.task_id} in history: {e}")

    def _drive(self, session: TaskSession, submit):
        try:
            remote_id = submit(session)
            if remote_id is None or session.stopped:
                return
            session.remote_id = remote_id
            if self.history is not None:
                self.history.set_remote_id(session.task_id, remote_id)
            self._follow(session, remote_id)
        except TASK_ERRORS as e:
            session.set_status(TaskStatus.ERROR, error=str(e))
        finally:
            session._finish()

    def _submit_url(self, session: TaskSession, url: str) -> Optional[str]:
        session.set_status(TaskStatus.DOWNLOADING)
        download_id = with_retry(
            lambda: self.download_client.start_download(url, self.settings.download_quality),
            self.settings.max_retries, self.settings.retry_delay
        )
        task = self._await_download(session, download_id)
        if task is None:
            return None

        media_url = self.download_client.resolve_location(task)
        if not media_url:
            raise DownloadFailed(download_id, "finished task has no media location")

        session.set_status(TaskStatus.TRANSCODING)
        return with_retry(
            lambda: self.transcription_client.create_task(
                media_url, self.settings.model, self.settings.languages
            ),
            self.settings.max_retries, self.settings.retry_delay
        )

    def _submit_file(self, session: TaskSession, file_path: str) -> str:
        session.set_status(TaskStatus.UPLOADING)
        return with_retry(
            lambda: self.transcription_client.upload(
                file_path, self.settings.model, self.settings.languages
            ),
            self.settings.max_retries, self.settings.retry_delay
        )

    def _await_download(self, session: TaskSession, download_id: str) -> Optional[dict]:
        """
        Poll a download task until it succeeds.

        Up to ``max_poll_failures`` consecutive failed polls are tolerated.

        Returns:
            The finished task, or None if the session stopped first

        Raises:
            DownloadFailed: If the download service reports failure
            PollingDegraded: If too many polls in a row failed
        """
        failures = 0
        while not session.wait_or_stop(self.settings.download_poll_interval):
            try:
                task = self.download_client.get_task(download_id, retry=False)
            except TASK_ERRORS as e:
                failures += 1
                degraded = PollingDegraded(failures, e)
                if failures > self.settings.max_poll_failures:
                    raise degraded from e
                logger.warning(f"Download task {download_id}: {degraded}")
                continue

            failures = 0
            status = RemoteStatus.parse(task.get('status'))
            if status is RemoteStatus.SUCCESS:
                logger.info(f"Download task {download_id} finished")
                return task
            if status is RemoteStatus.FAILED:
                raise DownloadFailed(download_id, task.get('error'))
        return None

    def _follow(self, session: TaskSession, remote_id: str):
        poller = threading.Thread(
            target=self._poll_transcription, args=(session, remote_id),
            name=f"poll-{remote_id}", daemon=True
        )
        poller.start()
        self._consume_stream(session, remote_id)
        poller.join()

        if session.status is TaskStatus.COMPLETED:
            self._finalize(session, remote_id)

    def _poll_transcription(self, session: TaskSession, remote_id: str):
        failures = 0
        while not session.wait_or_stop(self.settings.transcription_poll_interval):
            try:
                data = self.transcription_client.get_task(remote_id, retry=False)
            except TASK_ERRORS as e:
                failures += 1
                if failures > self.settings.max_poll_failures:
                    logger.warning(f"Giving up polling task {remote_id}, stream remains: {e}")
                    return
                logger.warning(f"Task {remote_id}: {PollingDegraded(failures, e)}")
                continue

            failures = 0
            status = RemoteStatus.parse(data.get('status'))
            if status is RemoteStatus.PENDING:
                session.set_status(TaskStatus.QUEUEING)
                try:
                    session.set_queue(self.transcription_client.queue_status())
                except TASK_ERRORS as e:
                    logger.debug(f"Queue status unavailable: {e}")
            elif status is RemoteStatus.RUNNING:
                session.set_status(TaskStatus.TRANSCRIBING)
                logger.debug(f"Task {remote_id} running, stream takes over")
                return
            elif status is RemoteStatus.SUCCESS:
                # an open stream may still be delivering trailing lines
                if not session.stream_open or session.record_success():
                    session.set_status(TaskStatus.COMPLETED)
                    return
            elif status is RemoteStatus.FAILED:
                error = TranscriptionFailed(remote_id, data.get('error'))
                session.set_status(TaskStatus.ERROR, error=str(error))
                return

    def _consume_stream(self, session: TaskSession, remote_id: str):
        """
        Read the task's push stream until the session stops.

        A stream that ends or drops without a terminal status is reopened;
        lines delivered again are dropped by the session's dedup.
        """
        while not session.stopped:
            try:
                stream = self.transcription_client.open_event_stream(
                    remote_id, read_timeout=self.settings.stream_read_timeout
                )
            except TASK_ERRORS as e:
                logger.warning(f"Event stream for task {remote_id} unavailable: {e}")
            else:
                if session.attach_stream(stream):
                    try:
                        for envelope in stream:
                            if session.stopped:
                                break
                            self._apply_envelope(session, remote_id, envelope)
                    except (requests.RequestException, OSError, ValueError) as e:
                        if not session.stopped:
                            logger.info(f"Event stream for task {remote_id} dropped: {e}")
                    except Exception as e:
                        # closing the response under a blocked reader can surface anything
                        if not session.stopped:
                            raise
                        logger.debug(f"Event stream for task {remote_id} torn down: {e!r}")
                    finally:
                        session.detach_stream(stream)

            if session.wait_or_stop(self.settings.stream_reconnect_delay):
                break

    def _apply_envelope(self, session: TaskSession, remote_id: str, envelope: dict):
        if 'duration' in envelope:
            session.set_duration(envelope.get('duration'))

        lines = _envelope_lines(envelope)
        if lines:
            session.set_status(TaskStatus.TRANSCRIBING)
            session.add_lines(lines)

        status = RemoteStatus.parse(envelope.get('status'))
        if status is RemoteStatus.SUCCESS:
            if session.record_success():
                session.set_status(TaskStatus.COMPLETED)
        elif status is RemoteStatus.FAILED:
            error = TranscriptionFailed(remote_id, envelope.get('error'))
            session.set_status(TaskStatus.ERROR, error=str(error))
        elif status is RemoteStatus.RUNNING:
            session.set_status(TaskStatus.TRANSCRIBING)

    def _finalize(self, session: TaskSession, remote_id: str):
        """Fetch the finished task's output name, which locates its subtitle."""
        try:
            data = with_retry(
                lambda: self.transcription_client.get_task(remote_id),
                self.settings.max_retries, self.settings.retry_delay
            )
        except TASK_ERRORS as e:
            logger.error(f"Could not fetch result of task {remote_id}: {e}")
            return

        output_name = data.get('output_name')
        if not output_name:
            logger.warning(f"Task {remote_id} finished without an output name")
            return
        session.set_result(output_name, self.transcription_client.result_url(output_name))
