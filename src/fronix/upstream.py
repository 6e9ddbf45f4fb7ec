from __future__ import annotations

import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from .credentials import CredentialPool

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


class UpstreamError(Exception):
    """Base class for failures talking to an upstream provider."""

    status: int | None = None

    def __init__(self, message: str, *, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        self.body = body


class AllCredentialsExhausted(UpstreamError):
    status = 429

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        retry_after: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message, status=429, body=body)
        self.attempts = attempts
        self.retry_after = retry_after


class NonRetryableUpstreamError(UpstreamError):
    def __init__(self, message: str, *, status: int, body: str | None = None) -> None:
        super().__init__(message, status=status, body=body)

    @property
    def is_server_error(self) -> bool:
        return self.status is not None and self.status >= 500


class TransportError(UpstreamError):
    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


def retry_after_seconds(response: httpx.Response | None) -> int | None:
    if response is None:
        return None
    header = response.headers.get("Retry-After")
    if not header:
        return None
    value = header.strip()
    if not value:
        return None
    if value.isdigit():
        return max(int(value), 0)
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    delta = (parsed - datetime.now(timezone.utc)).total_seconds()
    return max(int(delta), 0)


def response_error_message(response: httpx.Response) -> str:
    message: str | None = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
        elif isinstance(error_field, str) and error_field:
            message = error_field
        if message is None:
            nested_message = payload.get("message")
            if isinstance(nested_message, str) and nested_message:
                message = nested_message
    if message is None and response.text:
        message = response.text
    if message is None:
        message = response.reason_phrase or f"HTTP {response.status_code}"
    return message


def _merge_options(base_options: dict[str, Any] | None, credential: str | None) -> dict[str, Any]:
    options = dict(base_options or {})
    headers = dict(options.get("headers") or {})
    if credential:
        headers["Authorization"] = f"Bearer {credential}"
    options["headers"] = headers
    return options


class ResilientRequester:
    """Single retry primitive: POST with credential rotation on HTTP 429."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        endpoint: str,
        body: dict[str, Any],
        base_options: dict[str, Any] | None = None,
        pool: CredentialPool | None = None,
        *,
        stream: bool = True,
    ) -> httpx.Response:
        max_attempts = max(1, len(pool)) if pool is not None else 1
        last_body: str | None = None
        last_retry_after: int | None = None
        for attempt in range(max_attempts):
            credential = pool.current_credential() if pool is not None else None
            options = _merge_options(base_options, credential)
            logger.info(
                "upstream attempt %d/%d endpoint=%s pool=%s key_index=%s",
                attempt + 1,
                max_attempts,
                endpoint,
                pool.name if pool is not None else "none",
                pool.cursor if pool is not None and credential else "-",
            )
            request = self.client.build_request(
                "POST",
                endpoint,
                json=body,
                headers=options["headers"],
                timeout=options.get("timeout", self._timeout),
            )
            try:
                response = await self.client.send(request, stream=stream)
            except httpx.RequestError as exc:
                logger.error("upstream transport error endpoint=%s error=%r", endpoint, exc)
                raise TransportError(
                    str(exc) or exc.__class__.__name__,
                    timed_out=isinstance(exc, httpx.TimeoutException),
                ) from exc

            if response.is_success:
                if attempt > 0 and pool is not None:
                    pool.reset_to_first()
                return response

            try:
                await response.aread()
            finally:
                await response.aclose()
            status = response.status_code
            message = response_error_message(response)
            if status == 429:
                last_body = response.text
                last_retry_after = retry_after_seconds(response)
                logger.warning(
                    "upstream rate limited endpoint=%s pool=%s key_index=%s",
                    endpoint,
                    pool.name if pool is not None else "none",
                    pool.cursor if pool is not None else "-",
                )
                if pool is not None and pool.rotate():
                    continue
                raise AllCredentialsExhausted(
                    message,
                    attempts=attempt + 1,
                    retry_after=last_retry_after,
                    body=last_body,
                )
            logger.error(
                "upstream rejected request endpoint=%s status=%d detail=%s",
                endpoint,
                status,
                message,
            )
            raise NonRetryableUpstreamError(message, status=status, body=response.text)

        raise AllCredentialsExhausted(
            "all credentials rate limited",
            attempts=max_attempts,
            retry_after=last_retry_after,
            body=last_body,
        )
