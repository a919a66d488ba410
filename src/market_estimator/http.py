"""Unified HTTP client with timeout, retry, and exponential backoff."""

from __future__ import annotations

import logging
import time
from typing import Any

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10
DEFAULT_RETRIES = 3
BACKOFF_BASE = 2.0


class NetworkError(Exception):
    """Raised on unrecoverable HTTP / connectivity failures."""


class ParseError(Exception):
    """Raised when response content cannot be parsed."""


def _backoff(attempt: int) -> float:
    return BACKOFF_BASE ** attempt


def _request(
    method: str,
    url: str,
    *,
    timeout: float,
    retries: int,
    check_status: bool,
    session: requests.Session | None,
    **kwargs: Any,
) -> requests.Response:
    client = session or requests.Session()
    last_exc: Exception | None = None

    for attempt in range(retries):
        try:
            resp = client.request(method, url, timeout=timeout, **kwargs)
            # 4xx is a definitive answer; only 5xx is worth retrying
            if resp.status_code >= 500 or (check_status and resp.status_code >= 400):
                resp.raise_for_status()
            return resp
        except requests.exceptions.Timeout as exc:
            last_exc = exc
            logger.warning("Timeout on attempt %d/%d: %s %s", attempt + 1, retries, method, url)
        except requests.exceptions.ConnectionError as exc:
            last_exc = exc
            logger.warning(
                "Connection error on attempt %d/%d: %s %s", attempt + 1, retries, method, url
            )
        except requests.exceptions.HTTPError as exc:
            last_exc = exc
            status = exc.response.status_code if exc.response is not None else None
            logger.warning(
                "HTTP %s on attempt %d/%d: %s %s",
                status if status is not None else "?",
                attempt + 1,
                retries,
                method,
                url,
            )
            if status is not None and status < 500:
                break

        if attempt < retries - 1:
            wait = _backoff(attempt)
            logger.debug("Backing off %.1fs before retry…", wait)
            time.sleep(wait)

    raise NetworkError(f"Failed to {method} {url} after {retries} attempts: {last_exc}") from last_exc


def get(
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    retries: int = DEFAULT_RETRIES,
    headers: dict[str, str] | None = None,
    params: dict[str, Any] | None = None,
    check_status: bool = True,
    session: requests.Session | None = None,
) -> requests.Response:
    """GET with retry/backoff. Raises NetworkError on final failure."""
    return _request(
        "GET",
        url,
        timeout=timeout,
        retries=retries,
        check_status=check_status,
        session=session,
        headers=headers,
        params=params,
    )


def post(
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    retries: int = DEFAULT_RETRIES,
    headers: dict[str, str] | None = None,
    data: Any = None,
    check_status: bool = True,
    session: requests.Session | None = None,
) -> requests.Response:
    """
    POST with retry/backoff.

    With ``check_status=False`` a 4xx response is returned to the caller
    instead of raising, so quote endpoints can treat it as "no answer".
    5xx responses are always retried and raise NetworkError on final failure.
    """
    return _request(
        "POST",
        url,
        timeout=timeout,
        retries=retries,
        check_status=check_status,
        session=session,
        headers=headers,
        data=data,
    )


def decode_json(resp: requests.Response) -> Any:
    """Return the decoded JSON body or raise ParseError."""
    try:
        return resp.json()
    except ValueError as exc:
        raise ParseError(f"Cannot decode JSON response from {resp.url}") from exc
