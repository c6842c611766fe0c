"""
Clients for the video download service and the transcription service.
"""

import json
import logging
import os
from typing import Dict, List, Optional, Any
from urllib.parse import quote, urlparse

import requests
from requests.adapters import HTTPAdapter

from .errors import TaskSubmissionFailed
from .retry import fetch_with_retry, DEFAULT_TIMEOUT, DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY
from .sse import EventStream

logger = logging.getLogger(__name__)

USER_AGENT = 'video2text/0.3.0'


def extract_task_id(response: requests.Response, keys=('id', 'taskId')) -> str:
    """
    Pull a task id out of a submission response.

    The id is looked up in the JSON body under ``keys`` and then in the
    last path segment of a ``Location`` header.

    Raises:
        TaskSubmissionFailed: If the response is an error or carries no id
    """
    if not response.ok:
        raise TaskSubmissionFailed(
            f"Submission to {response.url} returned HTTP {response.status_code}: {response.text[:200]}"
        )

    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        for key in keys:
            if data.get(key):
                return str(data[key])

    location = response.headers.get('Location')
    if location:
        task_id = urlparse(location).path.rstrip('/').rsplit('/', 1)[-1]
        if task_id:
            return task_id

    raise TaskSubmissionFailed(f"No task id in response from {response.url}")


class ServiceClient:
    """Shared session handling for the two collaborator services."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the client.

        Args:
            base_url: Base URL of the service
            api_key: Optional API key for authentication
            timeout: Request timeout in seconds
            max_retries: Maximum number of attempts per request
            retry_delay: Fixed delay in seconds between attempts
            session: Optional preconfigured session
        """
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        if session is None:
            session = requests.Session()
            # stream, poll and reconciliation requests share the pool
            adapter = HTTPAdapter(pool_connections=4, pool_maxsize=16)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

        self.session.headers.update({'User-Agent': USER_AGENT})
        if self.api_key:
            self.session.headers.update({'Authorization': f'Bearer {self.api_key}'})

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', self.timeout)
        kwargs.setdefault('max_retries', self.max_retries)
        kwargs.setdefault('retry_delay', self.retry_delay)
        return fetch_with_retry(self.session, method, self.url(path), **kwargs)

    def _get_json(self, path: str, **kwargs) -> Dict[str, Any]:
        response = self._request('GET', path, **kwargs)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected response from {response.url}: {data!r}")
        return data


class DownloadClient(ServiceClient):
    """Client for the video download service."""

    def start_download(self, url: str, quality: str = 'audio_low') -> str:
        """
        Submit a download task.

        Args:
            url: URL of the video to fetch
            quality: Quality hint for the downloader

        Returns:
            Download task id
        """
        response = self._request('POST', '/download', json={'url': url, 'quality': quality})
        task_id = extract_task_id(response, keys=('taskId', 'id'))
        logger.info(f"Submitted download task {task_id} for {url}")
        return task_id

    def get_task(self, task_id: str, retry: bool = True) -> Dict[str, Any]:
        """Fetch the status of a download task; polling loops pass retry=False."""
        kwargs = {} if retry else {'max_retries': 1}
        return self._get_json(f'/task/{quote(task_id, safe="")}', **kwargs)

    def resolve_location(self, task: Dict[str, Any]) -> Optional[str]:
        """
        Turn a finished download task into a URL the transcription service can fetch.

        Relative locations are resolved against this service's base URL.
        """
        location = task.get('fullPath') or task.get('output') or task.get('location')
        if not location:
            return None
        if urlparse(location).scheme in ('http', 'https'):
            return location
        return self.url(location)


class TranscriptionClient(ServiceClient):
    """Client for the transcription service."""

    def create_task(self, media_url: str, quality: str = 'base', languages: Optional[List[str]] = None) -> str:
        """
        Create a transcription task for a media URL.

        Returns:
            Transcription task id
        """
        payload = {
            'url': media_url,
            'quality': quality,
            'languageArray': languages or ['auto'],
        }
        response = self._request('POST', '/tts/task', json=payload)
        task_id = extract_task_id(response)
        logger.info(f"Created transcription task {task_id}")
        return task_id

    def upload(self, file_path: str, quality: str = 'base', languages: Optional[List[str]] = None) -> str:
        """
        Upload a local file as a transcription task.

        The upload is sent once with no timeout; callers retry the whole call.

        Returns:
            Transcription task id
        """
        data = {
            'quality': quality,
            'languageArray': json.dumps(languages or ['auto']),
        }
        with open(file_path, 'rb') as f:
            response = self._request(
                'POST',
                '/tts/upload',
                data=data,
                files={'file': (os.path.basename(file_path), f)},
                is_upload=True,
                max_retries=1
            )
        task_id = extract_task_id(response)
        logger.info(f"Uploaded {file_path} as transcription task {task_id}")
        return task_id

    def get_task(self, task_id: str, retry: bool = True) -> Dict[str, Any]:
        """Fetch the status and details of a transcription task."""
        kwargs = {} if retry else {'max_retries': 1}
        return self._get_json(f'/tts/{quote(task_id, safe="")}', **kwargs)

    def queue_status(self) -> Optional[int]:
        """Number of tasks waiting ahead in the transcription queue."""
        data = self._get_json('/tts/queue/status')
        queued = data.get('queued')
        return int(queued) if isinstance(queued, (int, float)) else None

    def open_event_stream(self, task_id: str, read_timeout: Optional[float] = 60.0) -> EventStream:
        """Open the server-push stream of a transcription task."""
        stream = EventStream(
            self.session,
            self.url('/tts/sse'),
            params={'id': task_id},
            connect_timeout=self.timeout,
            read_timeout=read_timeout
        )
        return stream.open()

    def result_url(self, output_name: str) -> str:
        return self.url(f'/static/{quote(output_name)}')

    def srt_to_txt(self, output_name: str) -> str:
        """Fetch the plain-text rendition of a subtitle artifact."""
        response = self._request('GET', '/tts/srt-to-txt', params={'file': output_name})
        response.raise_for_status()
        return response.text

    def download_result(self, output_name: str, dest_path: str) -> str:
        """
        Save a result artifact to disk.

        Returns:
            The path written
        """
        response = self._request('GET', f'/static/{quote(output_name)}', stream=True)
        response.raise_for_status()
        with open(dest_path, 'wb') as f:
            for chunk in response.iter_content(chunk_size=65536):
                if chunk:
                    f.write(chunk)
        logger.info(f"Saved {output_name} to {dest_path}")
        return dest_path
