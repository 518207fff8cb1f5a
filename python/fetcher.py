"""
HTTP fetch layer for ingestion jobs

Each job owns one SessionContext wrapping its own requests.Session, whose
cookie jar collects cookies from responses and redirects and replays them
on the following requests of that job only, so concurrent jobs never
share session state. Every request has a bounded (connect, read) timeout
and transient failures are retried with a linear backoff.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Any

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    wait_incrementing,
    retry_if_exception_type,
    before_sleep_log
)

from config_manager import FetchConfig, get_config
from pipeline_errors import FetchError
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)


class TransientFetchError(FetchError):
    """Fetch failure worth retrying (timeout, connection reset, 5xx)"""
    pass


def create_retry_decorator(
    max_attempts: int = 3,
    backoff_step: float = 0.8
) -> Callable:
    """
    Create a retry decorator for HTTP operations.

    Args:
        max_attempts: Maximum number of attempts
        backoff_step: Wait after the first failure; grows by the same step
            after each further failure

    Returns:
        Retry decorator
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_incrementing(start=backoff_step, increment=backoff_step),
        retry=retry_if_exception_type(TransientFetchError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


@dataclass
class CacheValidators:
    """Transport cache validators returned by a HEAD probe"""
    etag: str = ""
    last_modified: str = ""
    status_code: int = 0

    def to_dict(self) -> Dict[str, str]:
        return {'etag': self.etag, 'lastModified': self.last_modified}


class SessionContext:
    """Per-job HTTP session; cookies live in the session's own jar

    Use as a context manager so the underlying connection pool is
    released at job end.
    """

    def __init__(
        self,
        name: str = "",
        fetch_config: Optional[FetchConfig] = None,
        session: Optional[requests.Session] = None
    ):
        self.name = name
        self.config = fetch_config or get_config().fetch
        self.session = session or requests.Session()
        self.timeout = (self.config.connect_timeout, self.config.read_timeout)
        self._retry = create_retry_decorator(self.config.max_attempts, self.config.backoff_step)

    def __enter__(self) -> 'SessionContext':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.cookies.clear()
        self.session.close()

    @property
    def cookies(self) -> Dict[str, str]:
        return self.session.cookies.get_dict()

    def _send(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
              **kwargs: Any) -> requests.Response:
        merged = {'User-Agent': self.config.user_agent}
        merged.update(headers or {})

        try:
            response = self.session.request(
                method, url, headers=merged, timeout=self.timeout, **kwargs
            )
        except requests.Timeout as e:
            raise TransientFetchError(f"Timeout on {method} {url}: {e}", url=url)
        except requests.RequestException as e:
            raise TransientFetchError(f"{method} {url} failed: {e}", url=url)

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientFetchError(
                f"{method} {url} returned HTTP {response.status_code}",
                url=url, status_code=response.status_code
            )
        if response.status_code >= 400:
            snippet = sanitize_for_logging(response.text[:300]) if method != 'HEAD' else ''
            raise FetchError(
                f"{method} {url} returned HTTP {response.status_code} {snippet}".strip(),
                url=url, status_code=response.status_code
            )
        return response

    def request(self, method: str, url: str, retry: bool = True, **kwargs: Any) -> requests.Response:
        """Send a request, with retries unless ``retry`` is False

        Raises:
            FetchError: After the last attempt fails, or at once for 4xx
        """
        logger.debug(f"[{self.name}] {method} {url}")
        if not retry:
            return self._send(method, url, **kwargs)
        return self._retry(self._send)(method, url, **kwargs)

    def retrying(self, func: Callable) -> Callable:
        """Wrap ``func`` with this session's retry policy"""
        return self._retry(func)

    def get(self, url: str, params: Optional[Dict[str, Any]] = None,
            headers: Optional[Dict[str, str]] = None) -> requests.Response:
        return self.request('GET', url, params=params, headers=headers)

    def post(self, url: str, data: Optional[Dict[str, Any]] = None,
             headers: Optional[Dict[str, str]] = None) -> requests.Response:
        """POST a form-encoded body"""
        form_headers = {'Content-Type': 'application/x-www-form-urlencoded; charset=UTF-8'}
        form_headers.update(headers or {})
        return self.request('POST', url, data=data, headers=form_headers)

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None) -> Any:
        response = self.get(url, params=params, headers=headers)
        try:
            return response.json()
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {url}: {e}", url=url)

    def head(self, url: str, headers: Optional[Dict[str, str]] = None) -> CacheValidators:
        """Probe cache validators without downloading the body"""
        response = self.request('HEAD', url, headers=headers, allow_redirects=True)
        return CacheValidators(
            etag=(response.headers.get('ETag') or '').strip(),
            last_modified=(response.headers.get('Last-Modified') or '').strip(),
            status_code=response.status_code
        )
