"""Async HTTP client for the Azure DevOps REST API.

Single point of HTTP interaction for the provisioning core. Auth uses a
personal access token (Basic) or a bearer token, injected at construction and
never logged. Includes exponential backoff with jitter for throttling and
transient server errors, Retry-After header respect, and a total retry-time
budget so no call retries forever.

Response bodies are normalized: Azure DevOps returns listings either as a bare
array or wrapped in a ``{"count": n, "value": [...]}`` envelope depending on
the server edition, so callers always get a list for listings.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import random
import time
from typing import Any, Mapping

import httpx

from .errors import (
    DevOpsAPIError,
    DevOpsAuthError,
    DevOpsDuplicateError,
    DevOpsNotFoundError,
    DevOpsThrottledError,
    DevOpsTimeoutError,
    OperationFailedError,
    is_duplicate_response,
    parse_error_envelope,
)

logger = logging.getLogger(__name__)

# Status codes eligible for automatic retry.
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Default retry configuration.
_DEFAULT_MAX_RETRIES = 5
_DEFAULT_BASE_DELAY = 1.0  # seconds
_DEFAULT_MAX_DELAY = 30.0  # seconds
_DEFAULT_RETRY_BUDGET = 90.0  # seconds

_CONTINUATION_HEADER = 'x-ms-continuationtoken'
_OPERATION_TERMINAL_FAILURES = frozenset({'failed', 'cancelled'})


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    global _shared_async_client
    _shared_async_client = None


# ── Normalization ────────────────────────────────────────────────


def normalize_payload(payload: Any) -> Any:
    """Collapse the listing envelope variants into one shape.

    - bare array -> list
    - ``{"value": [...]}`` envelope -> the inner list
    - any other object or scalar -> returned as-is
    """
    if isinstance(payload, list):
        return list(payload)
    if isinstance(payload, dict) and isinstance(payload.get('value'), list):
        return list(payload['value'])
    return payload


def _decode_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


# ── Client ───────────────────────────────────────────────────────


class DevOpsClient:
    """Async HTTP client for an Azure DevOps organization or collection.

    Paths are relative to ``organization_url``; the configured api-version is
    appended to every request unless overridden per call.
    """

    def __init__(
        self,
        *,
        organization_url: str,
        credential: str,
        api_version: str = '7.1',
        auth_scheme: str = 'basic',
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
        retry_budget_seconds: float = _DEFAULT_RETRY_BUDGET,
    ) -> None:
        if not organization_url:
            raise ValueError('organization_url is required')
        if not credential:
            raise ValueError('credential is required')

        self._base_url = organization_url.rstrip('/')
        self._credential = credential
        self._auth_scheme = auth_scheme
        self._api_version = api_version
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._retry_budget = retry_budget_seconds
        self.attempts = 0

    @property
    def api_version(self) -> str:
        return self._api_version

    def _auth_headers(self) -> dict[str, str]:
        # Never log these headers.
        if self._auth_scheme == 'bearer':
            return {'Authorization': f'Bearer {self._credential}'}
        token = base64.b64encode(f':{self._credential}'.encode('utf-8')).decode('ascii')
        return {'Authorization': f'Basic {token}'}

    def _raise_for_status(self, resp: httpx.Response, method: str, path: str) -> None:
        if resp.status_code < 400:
            return

        body = resp.text
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        message, type_key, error_code = parse_error_envelope(body, payload)
        if not message:
            message = f'HTTP {resp.status_code}'

        err_cls: type[DevOpsAPIError]
        if resp.status_code in (401, 403):
            err_cls = DevOpsAuthError
        elif resp.status_code == 404:
            err_cls = DevOpsNotFoundError
        elif method != 'GET' and is_duplicate_response(resp.status_code, message, type_key):
            err_cls = DevOpsDuplicateError
        elif resp.status_code in _RETRYABLE_STATUS_CODES:
            err_cls = DevOpsThrottledError
        else:
            err_cls = DevOpsAPIError

        raise err_cls(
            resp.status_code,
            message,
            response_body=body,
            type_key=type_key,
            error_code=error_code,
        )

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        content_type: str | None = None,
        api_version: str | None = None,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential backoff retry for transient errors."""
        url = f'{self._base_url}/{path.lstrip("/")}'
        request_headers = {
            **self._auth_headers(),
            'Accept': 'application/json',
        }
        if json is not None:
            request_headers['Content-Type'] = content_type or 'application/json'
        if headers:
            request_headers.update(headers)
        request_params = {
            **(params or {}),
            'api-version': api_version or self._api_version,
        }

        slept = 0.0
        attempt = 0
        while True:
            self.attempts += 1
            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers=request_headers,
                    json=json,
                    params=request_params,
                    timeout=self._timeout,
                )
            except (httpx.TimeoutException, httpx.NetworkError) as e:
                delay = self._backoff_delay(attempt)
                if not self._may_retry(attempt, slept, delay):
                    raise DevOpsTimeoutError(f'{method} {path}: {e}') from e
                logger.warning(
                    'Azure DevOps request failed at network level (attempt %d/%d), retrying in %.1fs',
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                    extra={'method': method, 'path': path},
                )
                await asyncio.sleep(delay)
                slept += delay
                attempt += 1
                continue

            if resp.status_code not in _RETRYABLE_STATUS_CODES:
                return resp

            # Retryable status; compute delay.
            delay = self._retry_after_delay(resp, attempt)
            if not self._may_retry(attempt, slept, delay):
                return resp
            logger.warning(
                'Azure DevOps %s %s returned %d (attempt %d/%d), retrying in %.1fs',
                method,
                path,
                resp.status_code,
                attempt + 1,
                self._max_retries + 1,
                delay,
                extra={'method': method, 'path': path, 'status_code': resp.status_code},
            )
            await asyncio.sleep(delay)
            slept += delay
            attempt += 1

    def _may_retry(self, attempt: int, slept: float, delay: float) -> bool:
        if attempt >= self._max_retries:
            return False
        return slept + delay <= self._retry_budget

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        return random.uniform(0, delay)

    def _retry_after_delay(self, resp: httpx.Response, attempt: int) -> float:
        """Use Retry-After header if present, otherwise exponential backoff."""
        retry_after = resp.headers.get('retry-after')
        if retry_after:
            try:
                return min(max(float(retry_after), 0.1), self._max_delay)
            except ValueError:
                pass
        return self._backoff_delay(attempt)

    # ── Public API ───────────────────────────────────────────────

    async def call(
        self,
        method: str,
        path: str,
        *,
        body: Any | None = None,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        treat_not_found_as_null: bool = False,
        content_type: str | None = None,
        api_version: str | None = None,
    ) -> Any:
        """Issue one logical call and return the normalized JSON body.

        Returns ``None`` for an empty body, or for a 404 when
        ``treat_not_found_as_null`` is set.

        Raises:
            DevOpsAuthError: 401/403, never retried.
            DevOpsNotFoundError: 404 (unless treated as null).
            DevOpsDuplicateError: create rejected as a duplicate name.
            DevOpsThrottledError: 429/5xx past the retry budget.
            DevOpsTimeoutError: network failure past the retry budget.
            DevOpsAPIError: any other non-2xx response.
        """
        method = method.upper()
        resp = await self._request_with_retry(
            method,
            path,
            json=body,
            params=params,
            headers=headers,
            content_type=content_type,
            api_version=api_version,
        )
        if resp.status_code == 404 and treat_not_found_as_null:
            return None
        self._raise_for_status(resp, method, path)
        return normalize_payload(_decode_body(resp))

    async def list_all(
        self,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        api_version: str | None = None,
    ) -> list[Any]:
        """GET a listing, following ``x-ms-continuationtoken`` pages."""
        items: list[Any] = []
        query = dict(params or {})
        while True:
            resp = await self._request_with_retry(
                'GET', path, params=query, api_version=api_version,
            )
            self._raise_for_status(resp, 'GET', path)
            page = normalize_payload(_decode_body(resp))
            if isinstance(page, list):
                items.extend(page)
            elif page is not None:
                items.append(page)
            token = resp.headers.get(_CONTINUATION_HEADER)
            if not token:
                return items
            query['continuationToken'] = token

    async def wait_for_operation(
        self,
        operation: Mapping[str, Any],
        *,
        poll_interval: float = 2.0,
        timeout_seconds: float = 180.0,
    ) -> dict[str, Any]:
        """Poll a queued operation reference until it reaches a terminal state.

        Project creation and deletion are queued by Azure DevOps and answered
        with an operation reference instead of the resource.
        """
        operation_id = str(operation.get('id', ''))
        if not operation_id:
            raise ValueError('operation reference has no id')

        deadline = time.monotonic() + timeout_seconds
        status = str(operation.get('status', '')).lower()
        current: dict[str, Any] = dict(operation)
        while status != 'succeeded':
            if status in _OPERATION_TERMINAL_FAILURES:
                raise OperationFailedError(
                    operation_id, status, str(current.get('resultMessage') or ''),
                )
            if time.monotonic() >= deadline:
                raise OperationFailedError(
                    operation_id, status or 'unknown', f'operation {operation_id} timed out',
                )
            await asyncio.sleep(poll_interval)
            current = await self.call('GET', f'_apis/operations/{operation_id}')
            status = str(current.get('status', '')).lower()

        logger.info(
            'Operation %s succeeded',
            operation_id,
            extra={'operation_id': operation_id},
        )
        return current
