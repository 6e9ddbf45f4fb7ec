from __future__ import annotations

import asyncio
import base64
import binascii
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

DEFAULT_CHAT_TITLE = "New Chat"
_DATA_URI = re.compile(r"^data:(?P<type>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)
_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}


@dataclass
class ChatRecord:
    id: str
    user_id: str
    title: str = DEFAULT_CHAT_TITLE
    title_generated: bool = False
    study_mode: bool = False
    created_at: float = field(default_factory=time.time)
    messages: list[dict[str, Any]] = field(default_factory=list)


class ChatAlreadyExists(KeyError):
    pass


class ChatStore(Protocol):
    async def get_chat(self, chat_id: str, user_id: str) -> ChatRecord | None: ...

    async def create_chat(self, user_id: str, *, chat_id: str | None = None, study_mode: bool = False) -> ChatRecord: ...

    async def update_chat(self, chat_id: str, **fields: Any) -> ChatRecord | None: ...

    async def add_message(self, chat_id: str, message: dict[str, Any]) -> None: ...

    async def list_messages(self, chat_id: str) -> list[dict[str, Any]]: ...


class InMemoryChatStore:
    def __init__(self) -> None:
        self._chats: dict[str, ChatRecord] = {}
        self._lock = asyncio.Lock()

    async def get_chat(self, chat_id: str, user_id: str) -> ChatRecord | None:
        record = self._chats.get(chat_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    async def create_chat(self, user_id: str, *, chat_id: str | None = None, study_mode: bool = False) -> ChatRecord:
        async with self._lock:
            if chat_id is not None and chat_id in self._chats:
                raise ChatAlreadyExists(chat_id)
            record = ChatRecord(id=chat_id or uuid.uuid4().hex, user_id=user_id, study_mode=study_mode)
            self._chats[record.id] = record
            return record

    async def update_chat(self, chat_id: str, **fields: Any) -> ChatRecord | None:
        async with self._lock:
            record = self._chats.get(chat_id)
            if record is None:
                return None
            for name, value in fields.items():
                if not hasattr(record, name) or name in ("id", "user_id", "messages"):
                    raise AttributeError(f"cannot update chat field '{name}'")
                setattr(record, name, value)
            return record

    async def add_message(self, chat_id: str, message: dict[str, Any]) -> None:
        async with self._lock:
            record = self._chats.get(chat_id)
            if record is None:
                raise KeyError(chat_id)
            record.messages.append(dict(message))

    async def list_messages(self, chat_id: str) -> list[dict[str, Any]]:
        record = self._chats.get(chat_id)
        return [dict(message) for message in record.messages] if record is not None else []


class InvalidImageData(ValueError):
    pass


def decode_data_uri(data_uri: str) -> tuple[bytes, str]:
    match = _DATA_URI.match(data_uri.strip())
    if match is None:
        raise InvalidImageData("Invalid image data. Expected a base64 data URI.")
    content_type = match.group("type").lower()
    if content_type not in _EXTENSIONS:
        raise InvalidImageData("Only image uploads are supported.")
    try:
        data = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImageData("Invalid image data. Expected a base64 data URI.") from exc
    if not data:
        raise InvalidImageData("Image data is empty.")
    return data, content_type


class LocalImageStore:
    """Stores uploaded images under ``root`` and serves them below ``base_url``."""

    def __init__(self, root: str, base_url: str = "/uploads") -> None:
        self.root = root
        self.base_url = base_url.rstrip("/")

    def save(self, data: bytes, content_type: str, *, user_id: str = "anonymous") -> dict[str, str]:
        extension = _EXTENSIONS.get(content_type)
        if extension is None:
            raise InvalidImageData("Only image uploads are supported.")
        safe_user = re.sub(r"[^A-Za-z0-9_-]", "_", user_id) or "anonymous"
        relative = f"{safe_user}/{int(time.time())}-{uuid.uuid4().hex[:12]}.{extension}"
        target = os.path.join(self.root, *relative.split("/"))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as handle:
            handle.write(data)
        return {"url": f"{self.base_url}/{relative}", "path": relative}

    def delete(self, path: str) -> bool:
        normalized = os.path.normpath(path).replace("\\", "/")
        if normalized.startswith("../") or normalized == ".." or os.path.isabs(normalized):
            raise ValueError(f"refusing to delete outside the upload root: {path}")
        target = os.path.join(self.root, normalized)
        try:
            os.remove(target)
        except FileNotFoundError:
            return False
        return True
