from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from src.fronix.credentials import CredentialPool
from src.fronix.router import (
    ProviderDef,
    RouteRule,
    RouterConfig,
    RouterDefaults,
    TitleGenerationConfig,
    UpstreamRouter,
)
from src.fronix.store import InMemoryChatStore
from src.fronix.titles import clean_title, generate_chat_title, title_source_messages
from src.fronix.upstream import ResilientRequester


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _router() -> UpstreamRouter:
    providers = {"open": ProviderDef(name="open", base_url="https://open.test/openai", anonymous=True)}
    cfg = RouterConfig(
        defaults=RouterDefaults(affinity_cooldown_s=60.0, request_timeout_s=5.0, max_function_depth=3),
        rules=[RouteRule(tier="default", providers=["open"])],
        title_generation=TitleGenerationConfig(provider="open", model="mistral"),
    )
    return UpstreamRouter(cfg, providers, {"open": CredentialPool("open", anonymous=True)})


def _requester(handler: Any) -> ResilientRequester:
    return ResilientRequester(httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_source_messages_skip_greetings() -> None:
    messages = [
        {"role": "system", "content": "be nice"},
        {"role": "user", "content": "Hello!"},
        {"role": "user", "content": "How do I sort a dict by value?"},
        {"role": "assistant", "content": "Use sorted with a key."},
        {"role": "user", "content": "thanks"},
    ]

    assert title_source_messages(messages) == [
        {"role": "user", "content": "How do I sort a dict by value?"},
        {"role": "assistant", "content": "Use sorted with a key."},
    ]


def test_clean_title_limits_words() -> None:
    assert clean_title('"Sorting Python Dictionaries Quickly"\nextra') == "Sorting Python Dictionaries"
    assert clean_title("Title: Dict Sorting") == "Dict Sorting"
    assert clean_title("   ") == ""


@pytest.mark.anyio
async def test_generates_title_for_new_chat() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "Dict Sorting"}}]})

    store = InMemoryChatStore()
    chat = await store.create_chat("u1")
    messages = [{"role": "user", "content": "How do I sort a dict by value?"}]

    title = await generate_chat_title(_requester(handler), _router(), store, chat.id, "u1", messages)

    assert title == "Dict Sorting"
    assert captured["url"] == "https://open.test/openai/chat/completions"
    assert captured["body"]["model"] == "mistral"
    assert captured["body"]["stream"] is False
    assert "sort a dict" in captured["body"]["messages"][0]["content"]
    updated = await store.get_chat(chat.id, "u1")
    assert updated is not None and updated.title == "Dict Sorting" and updated.title_generated


@pytest.mark.anyio
async def test_renamed_chat_is_left_alone() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"choices": [{"message": {"content": "X"}}]})

    store = InMemoryChatStore()
    chat = await store.create_chat("u1")
    await store.update_chat(chat.id, title="My Notes")

    result = await generate_chat_title(
        _requester(handler), _router(), store, chat.id, "u1", [{"role": "user", "content": "question"}]
    )

    assert result is None
    assert calls == 0


@pytest.mark.anyio
async def test_upstream_failure_is_swallowed() -> None:
    store = InMemoryChatStore()
    chat = await store.create_chat("u1")

    result = await generate_chat_title(
        _requester(lambda request: httpx.Response(500)),
        _router(),
        store,
        chat.id,
        "u1",
        [{"role": "user", "content": "question"}],
    )

    assert result is None
    unchanged = await store.get_chat(chat.id, "u1")
    assert unchanged is not None and unchanged.title == "New Chat"
