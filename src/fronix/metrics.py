"""Request metrics: a daily JSONL audit log plus in-memory counters.

``MetricsLogger.snapshot`` backs ``/optimization-stats``. Stream failures are
appended to ``stream-errors.log`` in the same directory.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import time
from collections import defaultdict
from typing import Any, Optional

logger = logging.getLogger(__name__)

STREAM_ERROR_FILE = "stream-errors.log"
MAX_ERROR_BODY_CHARS = 2000


def _new_provider_state() -> dict[str, Any]:
    return {"requests": 0, "ok": 0, "errors": 0, "fallbacks": 0, "latency_ms_total": 0.0}


class MetricsLogger:
    def __init__(self, dirpath: str):
        self.dir = dirpath
        os.makedirs(self.dir, exist_ok=True)
        self._lock: Optional[asyncio.Lock] = None
        self._counter_lock = threading.Lock()
        self._providers: defaultdict[str, dict[str, Any]] = defaultdict(_new_provider_state)
        self._statuses: defaultdict[str, int] = defaultdict(int)
        self._stream_errors = 0
        self._started = time.time()

    def _file(self) -> str:
        return os.path.join(self.dir, f"requests-{time.strftime('%Y%m%d')}.jsonl")

    def _record_counters(self, record: dict[str, Any]) -> None:
        provider = str(record.get("provider") or "unknown")
        with self._counter_lock:
            state = self._providers[provider]
            state["requests"] += 1
            if record.get("ok"):
                state["ok"] += 1
            else:
                state["errors"] += 1
            attempts = record.get("attempts")
            if isinstance(attempts, int) and attempts > 1:
                state["fallbacks"] += 1
            latency = record.get("latency_ms")
            if isinstance(latency, (int, float)):
                state["latency_ms_total"] += float(latency)
            self._statuses[str(record.get("status") or 0)] += 1

    async def write(self, record: dict[str, Any]) -> None:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            with open(self._file(), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._record_counters(record)

    def log_stream_error(
        self,
        context: dict[str, Any],
        error: BaseException | None,
        *,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        entry: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()),
            "context": context,
            "error": None
            if error is None
            else {"type": error.__class__.__name__, "message": str(error)},
        }
        if status is None and error is not None:
            status = getattr(error, "status", None)
        if body is None and error is not None:
            body = getattr(error, "body", None)
        if status is not None:
            entry["status"] = status
        if body:
            entry["body"] = body[:MAX_ERROR_BODY_CHARS]
        with self._counter_lock:
            self._stream_errors += 1
        try:
            with open(os.path.join(self.dir, STREAM_ERROR_FILE), "a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        except OSError:
            logger.exception("failed to write stream error log")

    def snapshot(self) -> dict[str, Any]:
        with self._counter_lock:
            providers = {}
            for name, state in sorted(self._providers.items()):
                requests = state["requests"]
                providers[name] = {
                    "requests": requests,
                    "ok": state["ok"],
                    "errors": state["errors"],
                    "fallbacks": state["fallbacks"],
                    "avg_latency_ms": round(state["latency_ms_total"] / requests, 2) if requests else 0.0,
                }
            return {
                "uptime_s": round(time.time() - self._started, 1),
                "providers": providers,
                "statuses": dict(self._statuses),
                "stream_errors": self._stream_errors,
            }
