from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserIdentity:
    user_id: str
    plan: str | None = None
    email: str | None = None


class AuthProvider(Protocol):
    async def get_user(self, token: str) -> UserIdentity | None: ...


def parse_static_tokens(raw: str | None) -> dict[str, UserIdentity]:
    """Parse ``token:user_id[:plan]`` entries separated by commas."""
    tokens: dict[str, UserIdentity] = {}
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = [part.strip() for part in entry.split(":")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            logger.warning("ignoring malformed auth token entry")
            continue
        plan = parts[2] if len(parts) > 2 and parts[2] else None
        tokens[parts[0]] = UserIdentity(user_id=parts[1], plan=plan)
    return tokens


class StaticTokenAuth:
    def __init__(self, tokens: dict[str, UserIdentity]) -> None:
        self._tokens = dict(tokens)

    @classmethod
    def from_env_value(cls, raw: str | None) -> "StaticTokenAuth":
        return cls(parse_static_tokens(raw))

    def __len__(self) -> int:
        return len(self._tokens)

    async def get_user(self, token: str) -> UserIdentity | None:
        return self._tokens.get(token)


class RemoteAuth:
    """Resolves tokens with ``GET {base_url}/auth/v1/user``.

    Any transport failure or non-2xx answer is treated as an invalid token.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/auth/v1/user"
        self._api_key = api_key
        self._client = client
        self._timeout = timeout

    async def get_user(self, token: str) -> UserIdentity | None:
        headers = {"Authorization": f"Bearer {token}"}
        if self._api_key:
            headers["apikey"] = self._api_key
        try:
            if self._client is not None:
                response = await self._client.get(self._url, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self._url, headers=headers)
        except httpx.RequestError as exc:
            logger.error("auth lookup failed: %r", exc)
            return None
        if not response.is_success:
            logger.info("auth lookup rejected token status=%d", response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.error("auth service returned invalid JSON")
            return None
        if not isinstance(payload, dict) or not payload.get("id"):
            return None
        metadata = payload.get("user_metadata") or payload.get("app_metadata") or {}
        plan = metadata.get("plan") if isinstance(metadata, dict) else None
        return UserIdentity(user_id=str(payload["id"]), plan=plan, email=payload.get("email"))


def bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None
