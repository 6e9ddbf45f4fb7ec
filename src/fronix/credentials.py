from __future__ import annotations

import logging
import os
from typing import Any, Sequence

logger = logging.getLogger(__name__)


class NoCredentialsAvailable(RuntimeError):
    """Raised when a provider that requires auth has no configured credentials."""

    def __init__(self, pool_name: str) -> None:
        super().__init__(f"No API keys available for provider '{pool_name}'")
        self.pool_name = pool_name


def parse_env_list(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class CredentialPool:
    """Ordered bearer tokens for one upstream provider.

    The cursor is shared by every request that uses the provider. Rotation is
    not synchronized: concurrent requests that hit rate limits advance the
    same cursor, which spreads load round-robin rather than isolating requests.
    """

    def __init__(self, name: str, keys: Sequence[str] = (), *, anonymous: bool = False) -> None:
        self.name = name
        self.keys: tuple[str, ...] = tuple(key for key in keys if key and key.strip())
        self.anonymous = anonymous
        self.cursor = 0
        if not self.keys and not anonymous:
            logger.warning("credential pool %s has no keys; first use will fail", name)

    @classmethod
    def from_env(cls, name: str, env_name: str | None, *, anonymous: bool = False) -> "CredentialPool":
        keys = parse_env_list(os.environ.get(env_name)) if env_name else ()
        pool = cls(name, keys, anonymous=anonymous)
        logger.info("credential pool %s initialized with %d keys", name, len(pool.keys))
        return pool

    def __len__(self) -> int:
        return len(self.keys)

    def __repr__(self) -> str:
        return f"CredentialPool(name={self.name!r}, size={len(self.keys)}, cursor={self.cursor})"

    def current_credential(self) -> str | None:
        if not self.keys:
            if self.anonymous:
                return None
            raise NoCredentialsAvailable(self.name)
        return self.keys[self.cursor]

    def rotate(self) -> bool:
        if len(self.keys) <= 1:
            logger.warning("credential pool %s has %d key(s); cannot rotate", self.name, len(self.keys))
            return False
        previous = self.cursor
        self.cursor = (self.cursor + 1) % len(self.keys)
        logger.info("credential pool %s rotated from index %d to %d", self.name, previous, self.cursor)
        return True

    def reset_to_first(self) -> None:
        if self.cursor != 0:
            logger.info("credential pool %s reset to first key", self.name)
        self.cursor = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size": len(self.keys),
            "cursor": self.cursor,
            "anonymous": self.anonymous,
        }
