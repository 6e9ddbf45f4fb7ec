from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from .credentials import NoCredentialsAvailable
from .router import Forbidden, RoutingContext, UpstreamRouter
from .upstream import ResilientRequester, UpstreamError

logger = logging.getLogger(__name__)

PROBE_CONTEXT = RoutingContext(
    user_id=None,
    user_plan="pro",
    pro_models_enabled=True,
    beta_models_enabled=True,
)


class ModelStatusTracker:
    """Probes models with a one-token request and keeps the latest results."""

    def __init__(
        self,
        requester: ResilientRequester,
        router: UpstreamRouter,
        *,
        batch_size: int = 5,
        batch_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.requester = requester
        self.router = router
        self.batch_size = max(1, batch_size)
        self.batch_delay = batch_delay
        self._sleep = sleep
        self._status: dict[str, dict[str, Any]] = {}
        self.last_checked_at: float | None = None

    def known_models(self) -> list[str]:
        models: list[str] = []
        for rule in self.router.cfg.rules:
            for model_id in sorted(rule.models or ()):
                if model_id not in models:
                    models.append(model_id)
            for model_id in sorted(rule.pinned):
                if model_id not in models:
                    models.append(model_id)
        for model_id in self.router.cfg.public_models:
            if model_id not in models:
                models.append(model_id)
        return models

    async def probe(self, model_id: str) -> dict[str, Any]:
        checked_at = time.time()
        try:
            decision = self.router.route(model_id, PROBE_CONTEXT)
        except Forbidden as exc:
            return {"available": False, "status": 403, "error": exc.message, "checked_at": checked_at}
        pool = decision.credential_pool
        start = time.perf_counter()
        entry: dict[str, Any] = {"provider": decision.provider_name, "checked_at": checked_at}
        try:
            response = await self.requester.execute(
                decision.endpoint_url,
                {
                    "model": decision.upstream_model_id,
                    "messages": [{"role": "user", "content": "ping"}],
                    "max_tokens": 1,
                    "stream": False,
                },
                {"headers": {"Content-Type": "application/json"}},
                None if pool.anonymous and not len(pool) else pool,
                stream=False,
            )
        except NoCredentialsAvailable as exc:
            entry.update(available=False, status=None, error=str(exc))
        except UpstreamError as exc:
            entry.update(available=False, status=exc.status, error=exc.message)
        else:
            entry.update(available=True, status=response.status_code)
        entry["latency_ms"] = int((time.perf_counter() - start) * 1000)
        return entry

    async def check(self, models: Iterable[str] | None = None) -> dict[str, dict[str, Any]]:
        targets = list(models) if models is not None else self.known_models()
        for offset in range(0, len(targets), self.batch_size):
            if offset:
                await self._sleep(self.batch_delay)
            batch = targets[offset : offset + self.batch_size]
            results = await asyncio.gather(*(self.probe(model_id) for model_id in batch))
            for model_id, result in zip(batch, results):
                self._status[model_id] = result
        self.last_checked_at = time.time()
        available = sum(1 for model_id in targets if self._status.get(model_id, {}).get("available"))
        logger.info("model status sweep finished available=%d total=%d", available, len(targets))
        return self.snapshot()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {model_id: dict(entry) for model_id, entry in self._status.items()}
