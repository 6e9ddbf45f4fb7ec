from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from .credentials import CredentialPool, NoCredentialsAvailable
from .relay import StreamRelay
from .router import RouteDecision, UpstreamRouter
from .upstream import (
    AllCredentialsExhausted,
    NonRetryableUpstreamError,
    ResilientRequester,
    TransportError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

SSE_HEADERS = {"Content-Type": "application/json", "Accept": "text/event-stream"}


@dataclass(frozen=True)
class Candidate:
    provider_name: str
    endpoint_url: str
    upstream_model_id: str
    pool: CredentialPool | None

    @property
    def anonymous(self) -> bool:
        return self.pool is None


class UpstreamStream:
    """Open upstream response paired with the candidate that produced it."""

    def __init__(self, response: httpx.Response, candidate: Candidate, attempts: int) -> None:
        self.response = response
        self.candidate = candidate
        self.attempts = attempts

    @property
    def provider_name(self) -> str:
        return self.candidate.provider_name

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        return self.response.aiter_bytes()

    async def aclose(self) -> None:
        await self.response.aclose()


class UpstreamExhausted(UpstreamError):
    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        all_rate_limited: bool,
        all_timed_out: bool = False,
        retry_after: int | None = None,
        last_error: UpstreamError | None = None,
    ) -> None:
        if all_rate_limited:
            status = 429
        elif all_timed_out:
            status = 504
        else:
            status = 503
        super().__init__(message, status=status)
        self.attempts = attempts
        self.all_rate_limited = all_rate_limited
        self.all_timed_out = all_timed_out
        self.retry_after = retry_after
        self.last_error = last_error


def should_fall_back(exc: UpstreamError) -> bool:
    if isinstance(exc, (TransportError, AllCredentialsExhausted)):
        return True
    if isinstance(exc, NonRetryableUpstreamError):
        return exc.is_server_error
    return False


class FallbackOrchestrator:
    def __init__(self, requester: ResilientRequester, router: UpstreamRouter) -> None:
        self.requester = requester
        self.router = router

    def candidates(self, decision: RouteDecision) -> list[Candidate]:
        primary_pool = decision.credential_pool
        ordered = [
            Candidate(
                provider_name=decision.provider_name,
                endpoint_url=decision.endpoint_url,
                upstream_model_id=decision.upstream_model_id,
                pool=None if primary_pool.anonymous and not len(primary_pool) else primary_pool,
            )
        ]
        seen = {decision.provider_name}
        for name in decision.fallbacks:
            if name in seen or name not in self.router.providers:
                continue
            seen.add(name)
            alternate = self.router.candidate(name, decision.requested_model)
            pool = alternate.credential_pool
            ordered.append(
                Candidate(
                    provider_name=name,
                    endpoint_url=alternate.endpoint_url,
                    upstream_model_id=alternate.upstream_model_id,
                    pool=None if pool.anonymous and not len(pool) else pool,
                )
            )
        return ordered

    def build_body(
        self,
        candidate: Candidate,
        messages: list[dict[str, Any]],
        extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"model": candidate.upstream_model_id, "messages": messages, "stream": True}
        for key, value in (extra or {}).items():
            if value is not None and key not in body:
                body[key] = value
        return body

    async def open_stream(
        self,
        decision: RouteDecision,
        messages: list[dict[str, Any]],
        extra: dict[str, Any] | None = None,
    ) -> UpstreamStream:
        candidates = self.candidates(decision)
        attempts = 0
        rate_limited_only = True
        timed_out_only = True
        retry_after: int | None = None
        last_error: UpstreamError | None = None
        for index, candidate in enumerate(candidates):
            attempts += 1
            body = self.build_body(candidate, messages, extra)
            try:
                response = await self.requester.execute(
                    candidate.endpoint_url,
                    body,
                    {"headers": dict(SSE_HEADERS)},
                    candidate.pool,
                    stream=True,
                )
            except NoCredentialsAvailable:
                logger.error("provider %s has no credentials configured", candidate.provider_name)
                raise
            except UpstreamError as exc:
                if not should_fall_back(exc):
                    raise
                last_error = exc
                if isinstance(exc, AllCredentialsExhausted):
                    if exc.retry_after is not None:
                        retry_after = exc.retry_after
                else:
                    rate_limited_only = False
                if not (isinstance(exc, TransportError) and exc.timed_out):
                    timed_out_only = False
                remaining = len(candidates) - index - 1
                logger.warning(
                    "candidate %s failed (%s: %s); %d fallback(s) left",
                    candidate.provider_name,
                    exc.__class__.__name__,
                    exc.message,
                    remaining,
                )
                continue
            if index > 0:
                logger.info("fallback candidate %s accepted the request", candidate.provider_name)
            return UpstreamStream(response, candidate, attempts)
        raise UpstreamExhausted(
            "all upstream candidates failed",
            attempts=attempts,
            all_rate_limited=rate_limited_only and last_error is not None,
            all_timed_out=timed_out_only and last_error is not None,
            retry_after=retry_after,
            last_error=last_error,
        )

    async def execute_with_fallback(
        self,
        decision: RouteDecision,
        messages: list[dict[str, Any]],
        relay: StreamRelay,
        extra: dict[str, Any] | None = None,
    ) -> tuple[UpstreamStream, AsyncGenerator[bytes, None]]:
        """Open the first usable candidate and attach the relay to it.

        Failures before a stream is open raise; the returned iterator reports
        later failures as in-band frames.
        """
        stream = await self.open_stream(decision, messages, extra)
        return stream, relay.relay(stream, messages)

    def reopener(self, decision: RouteDecision, extra: dict[str, Any] | None = None):
        async def reopen(messages: list[dict[str, Any]]) -> UpstreamStream:
            return await self.open_stream(decision, messages, extra)

        return reopen
