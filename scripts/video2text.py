#!/usr/bin/env python3
"""
Command-line front end for video-to-text transcription tasks.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from urllib.parse import unquote, urlparse

from tqdm import tqdm

# Add the parent directory to Python path to import video2text
sys.path.insert(0, str(Path(__file__).parent.parent))

from video2text.client import DownloadClient, TranscriptionClient
from video2text.config import Settings, load_env_file, validate_settings
from video2text.errors import ClipboardUnavailable
from video2text.history import create_history
from video2text.models import TaskStatus, SourceType, utcnow
from video2text.orchestrator import TaskOrchestrator
from video2text.utils import copy_to_clipboard, format_duration, sanitize_filename

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

STATUS_TEXT = {
    TaskStatus.QUEUEING: 'Queueing',
    TaskStatus.DOWNLOADING: 'Downloading video',
    TaskStatus.TRANSCODING: 'Transcoding audio',
    TaskStatus.UPLOADING: 'Uploading video',
    TaskStatus.TRANSCRIBING: 'Transcribing',
    TaskStatus.COMPLETED: 'Completed',
    TaskStatus.ERROR: 'Error',
}


def create_settings(args) -> Settings:
    settings = Settings.from_env()
    if getattr(args, 'model', None):
        settings.model = args.model
    if getattr(args, 'language', None):
        settings.languages = args.language
    return settings


def create_clients(settings: Settings):
    """Create the download and transcription clients from settings."""
    common = dict(
        api_key=settings.api_key,
        timeout=settings.timeout,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
    )
    return (
        DownloadClient(settings.dv_base, **common),
        TranscriptionClient(settings.tv_base, **common),
    )


def output_name_of(result_url: str) -> str:
    return unquote(urlparse(result_url).path.rsplit('/', 1)[-1])


def status_line(session) -> str:
    text = STATUS_TEXT[session.status]
    if session.status is TaskStatus.QUEUEING and session.queue is not None:
        text += f", {session.queue} tasks ahead"
    return text


def transcribe(args):
    """Run one transcription task and follow it to completion."""
    if bool(args.url) == bool(args.file):
        raise ValueError("Provide either a video URL or --file, not both")
    if args.file and not os.path.isfile(args.file):
        raise FileNotFoundError(f"File not found: {args.file}")

    settings = create_settings(args)
    download_client, transcription_client = create_clients(settings)
    history = create_history(settings)

    bar = tqdm(total=100, unit='%', desc=STATUS_TEXT[TaskStatus.QUEUEING], leave=True)

    def on_update(session):
        bar.set_description(status_line(session))
        bar.n = session.percent
        bar.refresh()

    def on_segment(session, segment):
        tqdm.write(str(segment))

    orchestrator = TaskOrchestrator(
        download_client, transcription_client, history, settings,
        on_update=on_update, on_segment=on_segment
    )

    try:
        if args.file:
            session = orchestrator.start_file(args.file)
        else:
            session = orchestrator.start_url(args.url)
        session.wait()
    except KeyboardInterrupt:
        orchestrator.stop()
        print(f"\n⏹️  Stopped task {orchestrator.current.task_id}")
        sys.exit(1)
    finally:
        bar.close()

    print(f"📋 Task ID: {session.task_id}")
    if session.remote_id:
        print(f"🔖 Transcription ID: {session.remote_id}")
    print(f"⏱️  Elapsed: {format_duration((utcnow() - session.started_at).total_seconds())}")
    print(f"🧾 Segments: {len(session.segments)}")

    if session.status is TaskStatus.ERROR:
        print(f"❌ {session.error}")
        sys.exit(1)

    if session.result_url:
        print(f"📄 Subtitle: {session.result_url}")
        if args.output:
            dest = os.path.join(args.output, sanitize_filename(session.output_name))
            transcription_client.download_result(session.output_name, dest)
            print(f"✅ Saved subtitle to {dest}")


def show_history(args):
    """List task history, refreshing unfinished tasks first."""
    settings = create_settings(args)
    history = create_history(settings)

    if not args.no_refresh:
        _, transcription_client = create_clients(settings)
        history.reconcile(transcription_client)

    tasks = history.list_tasks()
    if not tasks:
        print("No tasks found.")
        return

    print(f"Found {len(tasks)} tasks:\n")
    for task in tasks:
        if 0 < task.progress < 100:
            progress = f"{task.progress}%"
        elif task.status is TaskStatus.COMPLETED:
            progress = "100%"
        else:
            progress = "-"
        print(f"📋 {task.id}")
        print(f"   Source: {task.video_source}")
        print(f"   Status: {STATUS_TEXT[task.status]}  Progress: {progress}")
        print(f"   Created: {task.created_at.astimezone():%Y-%m-%d %H:%M:%S}")
        if task.completed_at:
            print(f"   Finished: {task.completed_at.astimezone():%Y-%m-%d %H:%M:%S}")
        if task.result_url:
            print(f"   Result: {task.result_url}")
        print()


def _completed_task(history, task_id):
    task = history.get_task(task_id)
    if task is None:
        raise ValueError(f"Task not found: {task_id}")
    if task.status is not TaskStatus.COMPLETED or not task.result_url:
        raise ValueError(f"Task {task_id} has no result yet (status: {task.status.value})")
    return task


def download_subtitle(args):
    """Download the subtitle of a completed task."""
    settings = create_settings(args)
    task = _completed_task(create_history(settings), args.task_id)
    _, transcription_client = create_clients(settings)

    output_name = output_name_of(task.result_url)
    dest = args.output or sanitize_filename(output_name)
    transcription_client.download_result(output_name, dest)
    print(f"✅ Downloaded subtitle to {dest}")


def copy_text(args):
    """Copy the plain text of a completed task to the clipboard."""
    settings = create_settings(args)
    task = _completed_task(create_history(settings), args.task_id)
    _, transcription_client = create_clients(settings)

    text = transcription_client.srt_to_txt(output_name_of(task.result_url))
    try:
        copy_to_clipboard(text)
        print(f"✅ Copied {len(text)} characters to the clipboard")
    except ClipboardUnavailable as e:
        logger.warning(f"{e}; printing the text instead")
        print(text)


def retry_task(args):
    """Start a new task from the source of a failed one."""
    settings = create_settings(args)
    task = create_history(settings).get_task(args.task_id)
    if task is None:
        raise ValueError(f"Task not found: {args.task_id}")
    if task.status is not TaskStatus.ERROR:
        raise ValueError(f"Only failed tasks can be retried (status: {task.status.value})")

    if task.source_type is SourceType.FILE:
        args.url, args.file = None, task.video_source
    else:
        args.url, args.file = task.video_source, None
    transcribe(args)


def remove_task(args):
    history = create_history(create_settings(args))
    if history.remove_task(args.task_id):
        print(f"🗑️  Removed task {args.task_id}")
    else:
        print(f"❌ Task not found: {args.task_id}")


def clear_history(args):
    create_history(create_settings(args)).clear_all()
    print("🗑️  Cleared task history")


def queue_status(args):
    settings = create_settings(args)
    _, transcription_client = create_clients(settings)
    queued = transcription_client.queue_status()
    print(f"📊 Tasks queued: {queued if queued is not None else 'unknown'}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Turn videos into text with the video download and transcription services",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Transcribe a video by URL and save the subtitle
  python -m scripts.video2text transcribe https://youtu.be/dQw4w9WgXcQ --output .

  # Transcribe a local file with the higher quality model
  python -m scripts.video2text transcribe --file talk.mp4 --model small --language en

  # Show task history (refreshes unfinished tasks)
  python -m scripts.video2text history

  # Download the subtitle or copy the text of a finished task
  python -m scripts.video2text download task-1700000000000-ab12cd
  python -m scripts.video2text copy task-1700000000000-ab12cd
        """
    )

    parser.add_argument('--env-file', default='.env', help='Environment file to load (default: .env)')
    parser.add_argument('--verbose', action='store_true', help='Enable debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    transcribe_parser = subparsers.add_parser('transcribe', help='Transcribe a video URL or file')
    transcribe_parser.add_argument('url', nargs='?', help='Video URL')
    transcribe_parser.add_argument('--file', help='Local video file to upload instead of a URL')
    transcribe_parser.add_argument('--model', choices=['base', 'small'],
                                   help='base = best speed, small = best quality')
    transcribe_parser.add_argument('--language', action='append',
                                   help='Spoken language (auto, zh, en, ja, ko, ...); repeatable')
    transcribe_parser.add_argument('--output', help='Directory to save the subtitle into')

    history_parser = subparsers.add_parser('history', help='List task history')
    history_parser.add_argument('--no-refresh', action='store_true',
                                help='Do not refresh unfinished tasks from the service')

    download_parser = subparsers.add_parser('download', help='Download the subtitle of a task')
    download_parser.add_argument('task_id', help='Task ID')
    download_parser.add_argument('--output', help='Output file path (default: the subtitle name)')

    copy_parser = subparsers.add_parser('copy', help='Copy the text of a task to the clipboard')
    copy_parser.add_argument('task_id', help='Task ID')

    retry_parser = subparsers.add_parser('retry', help='Retry a failed task')
    retry_parser.add_argument('task_id', help='Task ID')
    retry_parser.add_argument('--model', choices=['base', 'small'])
    retry_parser.add_argument('--language', action='append')
    retry_parser.add_argument('--output', help='Directory to save the subtitle into')

    remove_parser = subparsers.add_parser('remove', help='Remove a task from history')
    remove_parser.add_argument('task_id', help='Task ID')

    subparsers.add_parser('clear', help='Remove all tasks from history')
    subparsers.add_parser('queue', help='Show the transcription queue length')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    load_env_file(args.env_file)

    problems = validate_settings(create_settings(args))
    if problems:
        for problem in problems:
            logger.error(problem)
        sys.exit(1)

    commands = {
        'transcribe': transcribe,
        'history': show_history,
        'download': download_subtitle,
        'copy': copy_text,
        'retry': retry_task,
        'remove': remove_task,
        'clear': clear_history,
        'queue': queue_status,
    }

    try:
        commands[args.command](args)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
