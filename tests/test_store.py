from __future__ import annotations

import base64
from pathlib import Path

import pytest

from src.fronix.store import ChatAlreadyExists, InMemoryChatStore, InvalidImageData, LocalImageStore, decode_data_uri

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_chat_store_is_scoped_per_user() -> None:
    store = InMemoryChatStore()
    chat = await store.create_chat("alice", chat_id="c1", study_mode=True)

    assert (await store.get_chat("c1", "alice")) is chat
    assert await store.get_chat("c1", "bob") is None
    assert chat.title == "New Chat"
    assert chat.study_mode is True


@pytest.mark.anyio
async def test_create_chat_refuses_an_existing_id() -> None:
    store = InMemoryChatStore()
    original = await store.create_chat("alice", chat_id="c1", study_mode=True)
    await store.add_message("c1", {"role": "user", "content": "hello"})

    with pytest.raises(ChatAlreadyExists):
        await store.create_chat("bob", chat_id="c1")

    assert (await store.get_chat("c1", "alice")) is original
    assert await store.list_messages("c1") == [{"role": "user", "content": "hello"}]


@pytest.mark.anyio
async def test_messages_are_appended_in_order() -> None:
    store = InMemoryChatStore()
    await store.create_chat("alice", chat_id="c1")

    await store.add_message("c1", {"role": "user", "content": "q"})
    await store.add_message("c1", {"role": "assistant", "content": "a"})

    assert [m["role"] for m in await store.list_messages("c1")] == ["user", "assistant"]
    assert await store.list_messages("missing") == []
    with pytest.raises(KeyError):
        await store.add_message("missing", {"role": "user", "content": "q"})


@pytest.mark.anyio
async def test_update_chat_rejects_protected_fields() -> None:
    store = InMemoryChatStore()
    await store.create_chat("alice", chat_id="c1")

    updated = await store.update_chat("c1", title="Renamed")

    assert updated is not None and updated.title == "Renamed"
    with pytest.raises(AttributeError):
        await store.update_chat("c1", user_id="mallory")
    assert await store.update_chat("missing", title="x") is None


def test_decode_data_uri() -> None:
    uri = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()

    assert decode_data_uri(uri) == (PNG_BYTES, "image/png")


@pytest.mark.parametrize(
    "uri",
    [
        "not a data uri",
        "data:text/plain;base64,aGVsbG8=",
        "data:image/png;base64,@@@",
    ],
)
def test_decode_data_uri_rejects_invalid_input(uri: str) -> None:
    with pytest.raises(InvalidImageData):
        decode_data_uri(uri)


def test_image_store_save_and_delete(tmp_path: Path) -> None:
    store = LocalImageStore(str(tmp_path), "https://cdn.test/uploads/")

    saved = store.save(PNG_BYTES, "image/png", user_id="alice")

    assert saved["url"] == f"https://cdn.test/uploads/{saved['path']}"
    assert saved["path"].startswith("alice/") and saved["path"].endswith(".png")
    assert (tmp_path / saved["path"]).read_bytes() == PNG_BYTES
    assert store.delete(saved["path"]) is True
    assert store.delete(saved["path"]) is False
    with pytest.raises(ValueError):
        store.delete("../outside.png")
