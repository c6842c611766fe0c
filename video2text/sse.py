"""
Reading a ``text/event-stream`` response as a sequence of JSON envelopes.
"""

import json
import logging
import threading
from typing import Dict, Iterable, Iterator, Optional, Any

import requests

logger = logging.getLogger(__name__)


def iter_sse_events(lines: Iterable[str]) -> Iterator[str]:
    """
    Yield the data payload of each event in an event-stream.

    Multiple ``data:`` lines of one event are joined with newlines; comments,
    ``event:``, ``id:`` and ``retry:`` fields are ignored.
    """
    data = []
    for line in lines:
        if line is None:
            continue
        if isinstance(line, bytes):
            line = line.decode('utf-8', errors='replace')
        line = line.rstrip('\r')
        if not line:
            if data:
                yield '\n'.join(data)
                data = []
            continue
        if line.startswith(':'):
            continue
        field, _, value = line.partition(':')
        if value.startswith(' '):
            value = value[1:]
        if field == 'data':
            data.append(value)
    if data:
        yield '\n'.join(data)


class EventStream:
    """
    A server-push connection to the transcription service.

    Iterating yields decoded JSON envelopes. ``close()`` may be called from
    another thread to tear the connection down.
    """

    def __init__(
        self,
        session: requests.Session,
        url: str,
        params: Optional[Dict[str, str]] = None,
        connect_timeout: float = 6.0,
        read_timeout: Optional[float] = 60.0
    ):
        self.session = session
        self.url = url
        self.params = params or {}
        self.timeout = (connect_timeout, read_timeout)
        self._response: Optional[requests.Response] = None
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def open(self) -> "EventStream":
        response = self.session.get(
            self.url,
            params=self.params,
            headers={'Accept': 'text/event-stream', 'Cache-Control': 'no-cache'},
            stream=True,
            timeout=self.timeout
        )
        response.raise_for_status()
        self._response = response
        if self.closed:
            response.close()
        logger.debug(f"Event stream opened: {self.url} {self.params}")
        return self

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        if self._response is None:
            self.open()
        for data in iter_sse_events(self._response.iter_lines(decode_unicode=True)):
            if self.closed:
                return
            try:
                envelope = json.loads(data)
            except ValueError:
                logger.debug(f"Ignoring non-JSON event: {data!r}")
                continue
            if isinstance(envelope, dict):
                yield envelope

    def close(self):
        self._closed.set()
        if self._response is not None:
            self._response.close()

    def __enter__(self) -> "EventStream":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
