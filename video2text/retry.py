"""
Bounded retry with a fixed delay for HTTP requests and arbitrary calls.
"""

import logging
from typing import Callable, Optional, TypeVar

import requests
from retrying import Retrying

from .errors import RequestFailed

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_TIMEOUT = 6.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0


def _is_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, requests.RequestException)


def _retrying(max_retries: int, retry_delay: float, retry_on_exception=None) -> Retrying:
    kwargs = {}
    if retry_on_exception is not None:
        kwargs['retry_on_exception'] = retry_on_exception
    return Retrying(
        stop_max_attempt_number=max(1, max_retries),
        wait_fixed=int(retry_delay * 1000),
        wrap_exception=False,
        **kwargs
    )


def fetch_with_retry(
    session: requests.Session,
    method: str,
    url: str,
    timeout: Optional[float] = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    is_upload: bool = False,
    **kwargs
) -> requests.Response:
    """
    Issue a request with a timeout, retrying on timeouts and transport errors.

    HTTP error statuses are returned to the caller, not retried.

    Args:
        session: Session used to send the request
        method: HTTP method
        url: Target URL
        timeout: Timeout in seconds; None or 0 disables it
        max_retries: Maximum number of attempts
        retry_delay: Fixed delay in seconds between attempts
        is_upload: Uploads never time out
        **kwargs: Passed through to ``session.request``

    Returns:
        The response of the first attempt that completed

    Raises:
        RequestFailed: If every attempt timed out or failed
    """
    effective_timeout = None if is_upload or not timeout else timeout
    attempt = 0

    def _attempt() -> requests.Response:
        nonlocal attempt
        attempt += 1
        try:
            return session.request(method, url, timeout=effective_timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning(f"Request attempt {attempt}/{max_retries} to {url} failed: {e}")
            raise

    try:
        return _retrying(max_retries, retry_delay, _is_transport_error).call(_attempt)
    except requests.RequestException as e:
        raise RequestFailed(url, attempt, e) from e


def with_retry(
    fn: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY
) -> T:
    """
    Call ``fn`` until it returns, up to ``max_retries`` attempts.

    The exception of the last attempt is re-raised unchanged.
    """
    attempt = 0

    def _attempt() -> T:
        nonlocal attempt
        attempt += 1
        try:
            return fn()
        except Exception as e:
            logger.warning(f"Attempt {attempt}/{max_retries} failed: {e}")
            raise

    return _retrying(max_retries, retry_delay).call(_attempt)
