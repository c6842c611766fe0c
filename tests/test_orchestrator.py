#!/usr/bin/env python3
"""
Tests for the task orchestrator, driven against scripted fake services.
"""

import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from typing import List, Optional

import requests

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from video2text.config import Settings
from video2text.history import JsonFileBackend, TaskHistory
from video2text.models import TaskStatus
from video2text.orchestrator import TaskOrchestrator, TaskSession


def fast_settings(**overrides) -> Settings:
    values = dict(
        retry_delay=0,
        download_poll_interval=0.01,
        transcription_poll_interval=0.01,
        stream_reconnect_delay=0.01,
        stream_read_timeout=1,
    )
    values.update(overrides)
    return Settings(**values)


def wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeStream:
    """Yields scripted envelopes, then optionally blocks until closed."""

    def __init__(self, envelopes: List[dict], hold_open: bool = False):
        self.envelopes = envelopes
        self.hold_open = hold_open
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def __iter__(self):
        for envelope in self.envelopes:
            if self.closed:
                return
            yield envelope
        if self.hold_open:
            self._closed.wait(5)

    def close(self):
        self._closed.set()


class FakeDownloadClient:

    def __init__(self, polls: Optional[list] = None):
        self.polls = list(polls or [{'status': 'success', 'fullPath': 'files/a.m4a'}])
        self.poll_count = 0
        self.started = []

    def start_download(self, url, quality='audio_low'):
        self.started.append(url)
        return 'dv-1'

    def get_task(self, task_id, retry=True):
        self.poll_count += 1
        result = self.polls.pop(0) if len(self.polls) > 1 else self.polls[0]
        if isinstance(result, Exception):
            raise result
        return result

    def resolve_location(self, task):
        return f"http://dv/{task['fullPath']}"


class FakeTranscriptionClient:

    def __init__(
        self,
        streams: Optional[List[FakeStream]] = None,
        task: Optional[dict] = None,
        polls: Optional[List[dict]] = None
    ):
        self.streams = list(streams or [])
        self.opened: List[FakeStream] = []
        self.task = task or {'status': 'running', 'output_name': 'a.srt'}
        self.polls = list(polls or [])
        self.created = []
        self.uploaded = []

    def create_task(self, media_url, quality='base', languages=None):
        self.created.append((media_url, quality, languages))
        return 'tv-1'

    def upload(self, file_path, quality='base', languages=None):
        self.uploaded.append(file_path)
        return 'tv-1'

    def get_task(self, task_id, retry=True):
        # polls replay the scripted sequence, the final result lookup sees the task
        if not retry and self.polls:
            return dict(self.polls.pop(0))
        return dict(self.task)

    def queue_status(self):
        return 2

    def open_event_stream(self, task_id, read_timeout=60.0):
        stream = self.streams.pop(0) if self.streams else FakeStream([], hold_open=True)
        self.opened.append(stream)
        return stream

    def result_url(self, name):
        return f"http://tv/static/{name}"


def success(n: int) -> List[dict]:
    return [{'status': 'success'} for _ in range(n)]


class OrchestratorTestCase(unittest.TestCase):

    def make(self, download=None, transcription=None, history=None, **settings):
        self.download = download or FakeDownloadClient()
        self.transcription = transcription or FakeTranscriptionClient()
        self.statuses: List[TaskStatus] = []
        self.segments = []

        def on_update(session):
            if not self.statuses or self.statuses[-1] is not session.status:
                self.statuses.append(session.status)

        self.orchestrator = TaskOrchestrator(
            self.download, self.transcription, history, fast_settings(**settings),
            on_update=on_update,
            on_segment=lambda session, segment: self.segments.append(segment),
        )
        return self.orchestrator

    def tearDown(self):
        orchestrator = getattr(self, 'orchestrator', None)
        if orchestrator is not None and orchestrator.current is not None:
            orchestrator.stop()
            orchestrator.current.wait(3)


class TestStreamCompletion(OrchestratorTestCase):

    def test_three_successes_complete_the_task(self):
        stream = FakeStream([
            {'duration': 125},
            {'logs': ['[0.00s -> 25.00s] hello']},
            {'logs': ['[0.00s -> 25.00s] hello', '[25.00s -> 30.00s] world']},
        ] + success(3), hold_open=True)
        self.make(transcription=FakeTranscriptionClient([stream]))

        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

        self.assertTrue(session.done)
        self.assertEqual(session.status, TaskStatus.COMPLETED)
        self.assertEqual(session.percent, 100)
        self.assertEqual([s.text for s in session.segments], ['hello', 'world'])
        self.assertEqual(len(self.segments), 2)
        self.assertEqual(session.result_url, 'http://tv/static/a.srt')
        self.assertTrue(stream.closed)
        self.assertFalse(session.stream_open)

    def test_two_successes_do_not_complete(self):
        self.make(transcription=FakeTranscriptionClient([FakeStream(success(2), hold_open=True)]))
        session = self.orchestrator.start_url('https://youtu.be/x')

        self.assertTrue(wait_for(lambda: session.success_count == 2))
        self.assertFalse(session.wait(0.2))
        self.assertEqual(session.status, TaskStatus.TRANSCRIBING)

    def test_custom_threshold(self):
        self.make(
            transcription=FakeTranscriptionClient([FakeStream(success(1), hold_open=True)]),
            success_threshold=1,
        )
        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)
        self.assertEqual(session.status, TaskStatus.COMPLETED)

    def test_failed_status_errors_immediately(self):
        stream = FakeStream([{'status': 'failed', 'error': 'bad audio'}], hold_open=True)
        self.make(transcription=FakeTranscriptionClient([stream]))

        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

        self.assertEqual(session.status, TaskStatus.ERROR)
        self.assertIn('bad audio', session.error)
        self.assertTrue(stream.closed)

    def test_failed_status_ignores_prior_successes(self):
        stream = FakeStream(success(2) + [{'status': 'failed', 'error': 'decoder crashed'}], hold_open=True)
        self.make(transcription=FakeTranscriptionClient([stream]))

        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

        self.assertEqual(session.status, TaskStatus.ERROR)
        self.assertEqual(session.success_count, 2)
        self.assertIn('decoder crashed', session.error)
        self.assertTrue(stream.closed)

    def test_progress_from_duration_hint(self):
        stream = FakeStream([
            {'duration': 125},
            {'content': '[00:25 → 00:27] quarter'},
        ], hold_open=True)
        self.make(transcription=FakeTranscriptionClient([stream]))
        session = self.orchestrator.start_url('https://youtu.be/x')

        self.assertTrue(wait_for(lambda: session.percent == 20))
        self.assertEqual(session.status, TaskStatus.TRANSCRIBING)

    def test_reconnect_drops_replayed_lines(self):
        first = FakeStream([{'logs': ['[1.00s -> 2.00s] a']}])
        second = FakeStream([{'logs': ['[1.00s -> 2.00s] a', '[2.00s -> 3.00s] b']}] + success(3))
        self.make(transcription=FakeTranscriptionClient([first, second]))

        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

        self.assertEqual(session.status, TaskStatus.COMPLETED)
        self.assertEqual([s.text for s in session.segments], ['a', 'b'])
        self.assertGreaterEqual(len(self.transcription.opened), 2)


class TestSubmission(OrchestratorTestCase):

    def test_url_task_walks_through_statuses(self):
        self.make(transcription=FakeTranscriptionClient([FakeStream(success(3), hold_open=True)]))
        session = self.orchestrator.run_url('https://https://youtu.be/x', timeout=5)

        self.assertEqual(session.status, TaskStatus.COMPLETED)
        self.assertEqual(self.download.started, ['https://youtu.be/x'])
        self.assertEqual(self.transcription.created, [('http://dv/files/a.m4a', 'base', ['auto'])])
        self.assertEqual(session.remote_id, 'tv-1')
        self.assertEqual(self.statuses[:2], [TaskStatus.DOWNLOADING, TaskStatus.TRANSCODING])
        self.assertEqual(self.statuses[-1], TaskStatus.COMPLETED)

    def test_file_task_uploads(self):
        self.make(transcription=FakeTranscriptionClient([FakeStream(success(3), hold_open=True)]))
        session = self.orchestrator.run_file('/videos/talk.mp4', timeout=5)

        self.assertEqual(session.status, TaskStatus.COMPLETED)
        self.assertEqual(self.transcription.uploaded, ['/videos/talk.mp4'])
        self.assertEqual(self.download.started, [])
        self.assertEqual(self.statuses[0], TaskStatus.UPLOADING)

    def test_download_poll_tolerates_transient_failures(self):
        download = FakeDownloadClient([
            requests.Timeout("slow"),
            requests.ConnectionError("reset"),
            {'status': 'running'},
            {'status': 'success', 'fullPath': 'files/a.m4a'},
        ])
        self.make(download=download, transcription=FakeTranscriptionClient([FakeStream(success(3), hold_open=True)]))
        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

        self.assertEqual(session.status, TaskStatus.COMPLETED)
        self.assertIsNone(session.error)
        self.assertEqual(download.poll_count, 4)

    def test_download_poll_gives_up_after_repeated_failures(self):
        download = FakeDownloadClient([requests.Timeout("slow")])
        self.make(download=download)
        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

        self.assertEqual(session.status, TaskStatus.ERROR)
        self.assertIn('4 times', session.error)
        self.assertEqual(download.poll_count, 4)
        self.assertEqual(self.transcription.created, [])

    def test_download_failure(self):
        download = FakeDownloadClient([{'status': 'failed', 'error': 'video unavailable'}])
        self.make(download=download)
        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

        self.assertEqual(session.status, TaskStatus.ERROR)
        self.assertIn('video unavailable', session.error)


class TestPolling(OrchestratorTestCase):

    def test_pending_shows_queue(self):
        self.make(transcription=FakeTranscriptionClient(task={'status': 'pending'}))
        session = self.orchestrator.start_url('https://youtu.be/x')

        self.assertTrue(wait_for(lambda: session.queue == 2))
        self.assertEqual(session.status, TaskStatus.QUEUEING)

    def test_poll_success_counts_toward_threshold(self):
        self.make(
            transcription=FakeTranscriptionClient(task={'status': 'success', 'output_name': 'p.srt'}),
            transcription_poll_interval=0.05,
        )
        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

        self.assertEqual(session.status, TaskStatus.COMPLETED)
        self.assertEqual(session.success_count, 3)
        self.assertEqual(session.result_url, 'http://tv/static/p.srt')
        self.assertTrue(all(stream.closed for stream in self.transcription.opened))

    def test_poll_success_keeps_open_stream_draining(self):
        stream = FakeStream([{'logs': ['[1.00s -> 2.00s] a']}] + success(1), hold_open=True)
        polls = [{'status': 'pending'}, {'status': 'pending'}, {'status': 'success'}, {'status': 'running'}]
        self.make(
            transcription=FakeTranscriptionClient([stream], polls=polls),
            transcription_poll_interval=0.05,
        )
        session = self.orchestrator.start_url('https://youtu.be/x')

        self.assertTrue(wait_for(lambda: session.success_count == 2))
        self.assertTrue(wait_for(lambda: not self.transcription.polls))
        self.assertFalse(session.wait(0.2))
        self.assertEqual(session.status, TaskStatus.TRANSCRIBING)
        self.assertTrue(session.stream_open)
        self.assertFalse(stream.closed)
        self.assertEqual(session.seen_lines, 1)

    def test_poll_failure_errors(self):
        self.make(transcription=FakeTranscriptionClient(task={'status': 'failed', 'error': 'oom'}))
        session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

        self.assertEqual(session.status, TaskStatus.ERROR)
        self.assertIn('oom', session.error)

    def test_running_is_not_regressed_by_pending(self):
        session = TaskSession('t', None, 'x')
        session.set_status(TaskStatus.TRANSCRIBING)
        self.assertFalse(session.set_status(TaskStatus.QUEUEING))
        self.assertEqual(session.status, TaskStatus.TRANSCRIBING)


class TestSessionLifecycle(OrchestratorTestCase):

    def test_new_task_tears_down_previous(self):
        first_stream = FakeStream([{'logs': ['[1.00s -> 2.00s] a']}], hold_open=True)
        self.make(transcription=FakeTranscriptionClient([first_stream]))

        first = self.orchestrator.start_url('https://youtu.be/one')
        self.assertTrue(wait_for(lambda: first.seen_lines == 1 and first.stream_open))

        second = self.orchestrator.start_url('https://youtu.be/two')

        self.assertTrue(first.wait(3))
        self.assertTrue(first_stream.closed)
        self.assertEqual(first.seen_lines, 0)
        self.assertTrue(first.stopped)
        self.assertIs(self.orchestrator.current, second)
        self.assertFalse(second.stopped)

    def test_stopped_session_ignores_late_lines(self):
        session = TaskSession('t', None, 'x')
        session.cancel()
        self.assertEqual(session.add_lines(['[1.00s -> 2.00s] a']), [])
        self.assertFalse(session.set_status(TaskStatus.COMPLETED))

    def test_terminal_status_is_final(self):
        session = TaskSession('t', None, 'x')
        self.assertTrue(session.set_status(TaskStatus.ERROR, error='boom'))
        self.assertFalse(session.set_status(TaskStatus.COMPLETED))
        self.assertEqual(session.status, TaskStatus.ERROR)
        self.assertEqual(session.error, 'boom')


class TestHistoryIntegration(OrchestratorTestCase):

    def test_completed_task_is_recorded(self):
        with tempfile.TemporaryDirectory() as tmp:
            history = TaskHistory(JsonFileBackend(str(Path(tmp) / 'taskHistory.json')))
            self.make(
                transcription=FakeTranscriptionClient([FakeStream(success(3), hold_open=True)]),
                history=history,
            )
            session = self.orchestrator.run_url('https://youtu.be/x', timeout=5)

            task = history.get_task(session.task_id)
            self.assertEqual(task.status, TaskStatus.COMPLETED)
            self.assertEqual(task.progress, 100)
            self.assertEqual(task.remote_id, 'tv-1')
            self.assertEqual(task.result_url, 'http://tv/static/a.srt')
            self.assertIsNotNone(task.completed_at)
            self.assertEqual(history.get_task('tv-1').id, session.task_id)


if __name__ == '__main__':
    unittest.main()
