# attendance_etl/adapters/_http.py
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from attendance_etl.core.errors import TransientFetchError

log = logging.getLogger(__name__)

DEFAULT_WAIT = wait_exponential(multiplier=1, min=1, max=10)


class RetryableStatus(Exception):
    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code} from {response.request.url}")
        self.response = response


def is_retryable_status(code: int) -> bool:
    return code == 429 or code >= 500


async def send_with_retry(client: httpx.AsyncClient, method: str, url: str, *,
                          limiter=None, attempts: int = 3, wait=None, **kwargs: Any) -> httpx.Response:
    """
    One logical request: transport errors and 429/5xx are retried with exponential
    backoff; any other status is returned to the caller as is.
    Raises TransientFetchError once ``attempts`` are used up.
    """
    response: Optional[httpx.Response] = None
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(attempts, 1)),
            wait=wait if wait is not None else DEFAULT_WAIT,
            retry=retry_if_exception_type((httpx.TransportError, RetryableStatus)),
            before_sleep=before_sleep_log(log, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                if limiter is not None:
                    await limiter.wait()
                response = await client.request(method, url, **kwargs)
                if is_retryable_status(response.status_code):
                    raise RetryableStatus(response)
    except (httpx.TransportError, RetryableStatus, RetryError) as e:
        raise TransientFetchError(f"{method} {url} failed after {attempts} attempt(s): {e}") from e
    return response
