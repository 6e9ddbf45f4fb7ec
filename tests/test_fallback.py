from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from src.fronix.credentials import CredentialPool, NoCredentialsAvailable
from src.fronix.fallback import FallbackOrchestrator, UpstreamExhausted
from src.fronix.relay import DONE_FRAME, StreamRelay
from src.fronix.router import (
    ProviderDef,
    RouteRule,
    RouterConfig,
    RouterDefaults,
    RoutingContext,
    UpstreamRouter,
)
from src.fronix.upstream import NonRetryableUpstreamError, ResilientRequester

MESSAGES = [{"role": "user", "content": "hello there"}]


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _setup(handler: Any, *, primary_keys: tuple[str, ...] = ("k1", "k2")) -> tuple[FallbackOrchestrator, UpstreamRouter]:
    providers = {
        "a4f": ProviderDef(name="a4f", base_url="https://a4f.test/v1", model_prefix="provider-6"),
        "backup": ProviderDef(name="backup", base_url="https://backup.test/v1", keys_env=None),
        "open": ProviderDef(name="open", base_url="https://open.test/openai", anonymous=True),
    }
    cfg = RouterConfig(
        defaults=RouterDefaults(
            affinity_cooldown_s=60.0,
            request_timeout_s=5.0,
            max_function_depth=3,
            fallbacks=["open"],
        ),
        rules=[
            RouteRule(tier="v2", providers=["a4f"], models=frozenset({"kimi-k2"}), fallbacks=["backup", "open"]),
            RouteRule(tier="default", providers=["open"]),
        ],
    )
    pools = {
        "a4f": CredentialPool("a4f", list(primary_keys)),
        "backup": CredentialPool("backup", ["b1"]),
        "open": CredentialPool("open", anonymous=True),
    }
    router = UpstreamRouter(cfg, providers, pools)
    requester = ResilientRequester(httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return FallbackOrchestrator(requester, router), router


def _delta(content: str) -> str:
    return json.dumps({"choices": [{"delta": {"content": content}}]})


def _ok_stream(content: str) -> httpx.Response:
    return httpx.Response(
        200,
        content=f"data: {_delta(content)}\n\ndata: [DONE]\n\n".encode(),
        headers={"Content-Type": "text/event-stream"},
    )


def test_candidates_are_primary_then_fallbacks() -> None:
    orchestrator, router = _setup(lambda request: _ok_stream("x"))
    decision = router.route("kimi-k2", RoutingContext())

    candidates = orchestrator.candidates(decision)

    assert [c.provider_name for c in candidates] == ["a4f", "backup", "open"]
    assert candidates[0].upstream_model_id == "provider-6/kimi-k2"
    assert candidates[2].anonymous is True
    assert candidates[2].endpoint_url == "https://open.test/openai/chat/completions"


@pytest.mark.anyio
async def test_rate_limited_primary_falls_back_to_next_candidate() -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "a4f.test":
            return httpx.Response(429)
        return _ok_stream("from backup")

    orchestrator, router = _setup(handler)
    decision = router.route("kimi-k2", RoutingContext())

    stream = await orchestrator.open_stream(decision, MESSAGES)
    body = json.loads((await stream.response.aread()).decode().split("\n")[0][len("data: "):])
    await stream.aclose()

    assert hosts == ["a4f.test", "a4f.test", "backup.test"]
    assert stream.provider_name == "backup"
    assert stream.attempts == 2
    assert body["choices"][0]["delta"]["content"] == "from backup"


@pytest.mark.anyio
async def test_fallback_body_uses_each_candidates_model_id() -> None:
    models: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        models.append(payload["model"])
        assert payload["stream"] is True
        assert payload["messages"] == MESSAGES
        if request.url.host != "open.test":
            raise httpx.ConnectError("down", request=request)
        assert "authorization" not in request.headers
        return _ok_stream("ok")

    orchestrator, router = _setup(handler)
    stream = await orchestrator.open_stream(router.route("kimi-k2", RoutingContext()), MESSAGES)
    await stream.aclose()

    assert models == ["provider-6/kimi-k2", "kimi-k2", "kimi-k2"]
    assert stream.attempts == 3


@pytest.mark.anyio
async def test_all_candidates_rate_limited_reports_rate_limit() -> None:
    orchestrator, router = _setup(lambda request: httpx.Response(429, headers={"Retry-After": "9"}))

    with pytest.raises(UpstreamExhausted) as excinfo:
        await orchestrator.open_stream(router.route("kimi-k2", RoutingContext()), MESSAGES)

    assert excinfo.value.all_rate_limited is True
    assert excinfo.value.attempts == 3
    assert excinfo.value.retry_after == 9
    assert excinfo.value.status == 429


@pytest.mark.anyio
async def test_mixed_failures_report_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "a4f.test":
            return httpx.Response(429)
        return httpx.Response(503, text="maintenance")

    orchestrator, router = _setup(handler)

    with pytest.raises(UpstreamExhausted) as excinfo:
        await orchestrator.open_stream(router.route("kimi-k2", RoutingContext()), MESSAGES)

    assert excinfo.value.all_rate_limited is False
    assert excinfo.value.status == 503
    assert excinfo.value.all_timed_out is False


@pytest.mark.anyio
async def test_all_candidates_timing_out_reports_gateway_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    orchestrator, router = _setup(handler)

    with pytest.raises(UpstreamExhausted) as excinfo:
        await orchestrator.open_stream(router.route("kimi-k2", RoutingContext()), MESSAGES)

    assert excinfo.value.all_timed_out is True
    assert excinfo.value.attempts == 3
    assert excinfo.value.status == 504


@pytest.mark.anyio
async def test_timeout_mixed_with_server_error_reports_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "a4f.test":
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(502)

    orchestrator, router = _setup(handler)

    with pytest.raises(UpstreamExhausted) as excinfo:
        await orchestrator.open_stream(router.route("kimi-k2", RoutingContext()), MESSAGES)

    assert excinfo.value.all_timed_out is False
    assert excinfo.value.status == 503


@pytest.mark.anyio
async def test_client_error_does_not_fall_back() -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    orchestrator, router = _setup(handler)

    with pytest.raises(NonRetryableUpstreamError) as excinfo:
        await orchestrator.open_stream(router.route("kimi-k2", RoutingContext()), MESSAGES)

    assert excinfo.value.status == 401
    assert hosts == ["a4f.test"]


@pytest.mark.anyio
async def test_missing_credentials_are_fatal() -> None:
    orchestrator, router = _setup(lambda request: _ok_stream("unused"), primary_keys=())

    with pytest.raises(NoCredentialsAvailable):
        await orchestrator.open_stream(router.route("kimi-k2", RoutingContext()), MESSAGES)


@pytest.mark.anyio
async def test_failure_after_streaming_started_is_reported_in_band() -> None:
    class BrokenStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield f"data: {_delta('partial')}\n\n".encode()
            raise httpx.ReadError("connection lost")

        async def aclose(self) -> None:
            return None

    orchestrator, router = _setup(lambda request: httpx.Response(200, stream=BrokenStream()))
    decision = router.route("kimi-k2", RoutingContext())
    relay = StreamRelay(reopen=orchestrator.reopener(decision))

    stream, frames = await orchestrator.execute_with_fallback(decision, MESSAGES, relay)
    collected = [frame async for frame in frames]

    assert stream.provider_name == "a4f"
    assert collected[0] == f"data: {_delta('partial')}\n\n".encode()
    assert json.loads(collected[1][len(b"data: "):])["error"] == "Stream error occurred"
    assert collected[2] == DONE_FRAME
