from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import requests

from fastlane_sync.models.config_models import RetryConfig

from .envelope import Envelope, normalize_envelope
from .errors import (
    AuthenticationError,
    MalformedResponseError,
    TransientError,
    UpstreamError,
    classify_rejection,
)
from .filters import Node

"""Worksheet Service HTTP client.

POST {base_url}/v3/app/worksheets/{worksheet_id}/rows/list
  headers: HAP-Appkey / HAP-Sign
  body:    {pageSize, pageIndex, useFieldIdAsKey: true, filter?}

Every call carries a timeout. TransientError (network, timeout, 5xx, 429) is
retried with capped exponential backoff; every other failure surfaces at once.
"""

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.mingdao.com"
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class RowPage:
    rows: list[dict[str, Any]]
    total: int
    shape: str
    page_index: int = 1
    total_reported: bool = False


class WorksheetClient:
    """Thin client over one App-Key / Signature pair.

    ``session`` and ``sleep`` are injectable so tests can stub the transport
    and skip backoff waits.
    """

    def __init__(
        self,
        app_key: str,
        sign: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        retry: RetryConfig | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not app_key or not sign:
            raise AuthenticationError("worksheet credentials are empty")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry = retry or RetryConfig()
        self.session = session or requests.Session()
        self._sleep = sleep
        self._headers = {
            "Content-Type": "application/json",
            "HAP-Appkey": app_key,
            "HAP-Sign": sign,
        }

    def __enter__(self) -> WorksheetClient:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    # ------------------------------------------------------------------
    def list_rows(
        self,
        worksheet_id: str,
        page_size: int,
        page_index: int,
        filter: Node | dict[str, Any] | None = None,
    ) -> RowPage:
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size <= 0:
            raise ValueError(f"page_size must be a positive int: {page_size!r}")
        if isinstance(page_index, bool) or not isinstance(page_index, int) or page_index < 1:
            raise ValueError(f"page_index is 1-based: {page_index!r}")

        body: dict[str, Any] = {
            "pageSize": page_size,
            "pageIndex": page_index,
            "useFieldIdAsKey": True,
        }
        if filter is not None:
            body["filter"] = filter if isinstance(filter, dict) else filter.to_dict()

        url = f"{self.base_url}/v3/app/worksheets/{worksheet_id}/rows/list"
        payload = self._request("POST", url, body)
        env: Envelope = normalize_envelope(payload)
        logger.debug(
            "worksheet=%s page=%d rows=%d total=%d shape=%s",
            worksheet_id, page_index, len(env.rows), env.total, env.shape,
        )
        return RowPage(
            rows=env.rows, total=env.total, shape=env.shape,
            page_index=page_index, total_reported=env.total_reported,
        )

    def fetch_row(self, worksheet_id: str, row_id: str) -> dict[str, Any] | None:
        """Single row by id; None when the service answers 404."""
        url = f"{self.base_url}/v3/app/worksheets/{worksheet_id}/rows/{row_id}"
        payload = self._request("GET", url, None, allow_not_found=True)
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"unexpected row response type: {type(payload).__name__}")
        if payload.get("success") is False:
            raise classify_rejection(payload.get("error_code"), str(payload.get("error_msg") or ""))
        data = payload.get("data", payload)
        if not isinstance(data, dict):
            raise MalformedResponseError("row response without object data")
        return data

    # ------------------------------------------------------------------
    def _request(self, method: str, url: str, body: dict[str, Any] | None, allow_not_found: bool = False) -> Any:
        attempts = max(1, self.retry.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return self._send_once(method, url, body, allow_not_found)
            except TransientError as e:
                if attempt >= attempts:
                    logger.error("giving up after %d attempt(s): %s", attempt, e)
                    raise
                delay = min(self.retry.backoff_seconds * (2 ** (attempt - 1)), self.retry.max_backoff_seconds)
                logger.warning("transient upstream error (attempt %d/%d), retry in %.1fs: %s", attempt, attempts, delay, e)
                self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover

    def _send_once(self, method: str, url: str, body: dict[str, Any] | None, allow_not_found: bool) -> Any:
        try:
            resp = self.session.request(method, url, headers=self._headers, json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransientError(f"timeout after {self.timeout}s: {url}") from e
        except requests.ConnectionError as e:
            raise TransientError(f"connection error: {e}") from e
        except requests.RequestException as e:
            raise UpstreamError(f"request failed: {e}") from e

        status = resp.status_code
        if status in (401, 403):
            raise AuthenticationError(f"HTTP {status}: credentials rejected", status_code=status)
        if status == 429 or status >= 500:
            raise TransientError(f"HTTP {status}", status_code=status)
        if status == 404 and allow_not_found:
            return None
        if status >= 400:
            raise UpstreamError(f"HTTP {status}: {resp.text[:300]}", status_code=status)
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"non-JSON response body (HTTP {status}): {resp.text[:200]!r}") from e


def iter_pages(
    client: WorksheetClient,
    worksheet_id: str,
    page_size: int,
    filter: Node | dict[str, Any] | None = None,
    max_pages: int = 1000,
) -> Iterator[RowPage]:
    """Yield pages until a short page, the reported total, or max_pages."""
    fetched = 0
    for page_index in range(1, max_pages + 1):
        page = client.list_rows(worksheet_id, page_size, page_index, filter)
        yield page
        fetched += len(page.rows)
        if len(page.rows) < page_size:
            return
        if page.total_reported and fetched >= page.total:
            return
    logger.warning("worksheet=%s stopped at max_pages=%d (fetched %d rows)", worksheet_id, max_pages, fetched)
