"""Relay of upstream SSE byte streams to the client.

The relay reassembles newline-delimited frames from arbitrarily chunked
bytes, forwards well-formed ``data:`` payloads and control fields, and runs
function-call continuations by asking ``reopen`` for a fresh upstream stream
with the extended message history. Every exit path ends with exactly one
``data: [DONE]`` frame.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar

from .functions import FunctionExecutionError
from .upstream import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DONE_FRAME = b"data: [DONE]\n\n"
DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"
CONTROL_PREFIXES = ("event:", "id:", "retry:")
DEFAULT_RELAY_TIMEOUT_SECONDS = 60.0


class RelayState(str, Enum):
    STREAMING = "streaming"
    FUNCTION_CALL_PENDING = "function_call_pending"
    FUNCTION_CONTINUATION_STREAMING = "function_continuation_streaming"
    DONE = "done"
    ERROR = "error"


class ByteStream(Protocol):
    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


Reopen = Callable[[list[dict[str, Any]]], Awaitable[ByteStream]]
FunctionRunner = Callable[[str, str], Awaitable[dict[str, Any]]]
ErrorHook = Callable[[str, BaseException | None], None]


def data_frame(payload: str) -> bytes:
    return f"data: {payload}\n\n".encode("utf-8")


def error_frame(message: str, *, code: str = "stream_error") -> bytes:
    return data_frame(json.dumps({"error": message, "code": code}))


class LineBuffer:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._pending += text
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return lines

    def flush(self) -> str:
        remainder = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return remainder


@dataclass
class FunctionCall:
    name: str = ""
    arguments: str = ""

    def absorb(self, fragment: dict[str, Any]) -> None:
        name = fragment.get("name")
        if isinstance(name, str) and name:
            self.name = name
        arguments = fragment.get("arguments")
        if isinstance(arguments, str):
            self.arguments += arguments
        elif isinstance(arguments, dict):
            self.arguments = json.dumps(arguments)


@dataclass
class _StreamOutcome:
    done: bool = False
    function_call: FunctionCall | None = None
    pending: FunctionCall = field(default_factory=FunctionCall)

    @property
    def finished(self) -> bool:
        return self.done or self.function_call is not None


class StreamRelay:
    def __init__(
        self,
        *,
        reopen: Reopen | None = None,
        functions: FunctionRunner | None = None,
        timeout: float = DEFAULT_RELAY_TIMEOUT_SECONDS,
        max_function_depth: int = 3,
        on_error: ErrorHook | None = None,
    ) -> None:
        self._reopen = reopen
        self._functions = functions
        self._timeout = timeout
        self._max_function_depth = max_function_depth
        self._on_error = on_error
        self.state = RelayState.STREAMING
        self.frames_sent = 0
        self.function_calls = 0

    def _report(self, reason: str, exc: BaseException | None) -> None:
        if self._on_error is not None:
            self._on_error(reason, exc)

    async def _wait(self, awaitable: Awaitable[T], deadline: float) -> T:
        async with asyncio.timeout_at(deadline):
            return await awaitable

    async def relay(
        self,
        upstream: ByteStream,
        messages: list[dict[str, Any]],
    ) -> AsyncGenerator[bytes, None]:
        deadline = asyncio.get_running_loop().time() + self._timeout
        current: ByteStream | None = upstream
        history = list(messages)
        self.state = RelayState.STREAMING
        try:
            while True:
                outcome = _StreamOutcome()
                async for frame in self._consume(current, deadline, outcome):
                    self.frames_sent += 1
                    yield frame
                await current.aclose()
                current = None
                call = outcome.function_call
                if call is None:
                    self.state = RelayState.DONE
                    yield DONE_FRAME
                    return
                self.state = RelayState.FUNCTION_CALL_PENDING
                if self.function_calls >= self._max_function_depth:
                    logger.warning("function call depth limit reached name=%s", call.name)
                    self.state = RelayState.ERROR
                    yield error_frame("Too many function calls in one response.", code="function_depth_exceeded")
                    yield DONE_FRAME
                    return
                if self._functions is None or self._reopen is None:
                    raise FunctionExecutionError(f"function calling is not available for '{call.name}'")
                self.function_calls += 1
                result = await self._wait(self._functions(call.name, call.arguments), deadline)
                history.append(
                    {
                        "role": "assistant",
                        "content": None,
                        "function_call": {"name": call.name, "arguments": call.arguments},
                    }
                )
                history.append({"role": "function", "name": call.name, "content": json.dumps(result)})
                current = await self._wait(self._reopen(history), deadline)
                self.state = RelayState.FUNCTION_CONTINUATION_STREAMING
        except asyncio.TimeoutError as exc:
            logger.warning("stream relay timed out after %.1fs", self._timeout)
            self._report("timeout", exc)
            self.state = RelayState.ERROR
            yield error_frame("Request timed out.", code="timeout")
            yield DONE_FRAME
        except FunctionExecutionError as exc:
            logger.error("function execution failed: %s", exc)
            self._report("function_execution", exc)
            self.state = RelayState.ERROR
            yield error_frame("Function execution failed.", code="function_execution_error")
            yield DONE_FRAME
        except UpstreamError as exc:
            logger.error("continuation request failed status=%s detail=%s", exc.status, exc.message)
            self._report("continuation", exc)
            self.state = RelayState.ERROR
            yield error_frame("AI service is temporarily unavailable. Please try again later.", code="upstream_error")
            yield DONE_FRAME
        except Exception as exc:
            logger.exception("stream relay failed")
            self._report("stream", exc)
            self.state = RelayState.ERROR
            yield error_frame("Stream error occurred")
            yield DONE_FRAME
        finally:
            if current is not None:
                await current.aclose()

    async def _consume(
        self,
        upstream: ByteStream,
        deadline: float,
        outcome: _StreamOutcome,
    ) -> AsyncIterator[bytes]:
        buffer = LineBuffer()
        iterator = upstream.aiter_bytes().__aiter__()
        while True:
            try:
                chunk = await self._wait(iterator.__anext__(), deadline)
            except StopAsyncIteration:
                break
            for line in buffer.feed(chunk):
                frame = self._process_line(line, outcome)
                if outcome.finished:
                    return
                if frame is not None:
                    yield frame
        trailing = buffer.flush()
        if trailing.strip():
            frame = self._process_line(trailing, outcome)
            if frame is not None and not outcome.finished:
                yield frame

    def _process_line(self, line: str, outcome: _StreamOutcome) -> bytes | None:
        stripped = line.strip()
        if not stripped:
            return None
        if stripped.startswith(DATA_PREFIX):
            payload = stripped[len(DATA_PREFIX):].strip()
            if payload == DONE_SENTINEL:
                outcome.done = True
                return None
            try:
                data = json.loads(payload)
            except json.JSONDecodeError as exc:
                logger.warning("discarding malformed stream payload: %s", exc)
                return None
            if not isinstance(data, dict):
                return None
            choices = data.get("choices")
            if not isinstance(choices, list) or not choices:
                if data.get("error") is not None:
                    logger.warning("upstream sent error payload: %s", payload[:500])
                return None
            first = choices[0] if isinstance(choices[0], dict) else {}
            carries_call = False
            for key in ("delta", "message"):
                section = first.get(key)
                if isinstance(section, dict) and isinstance(section.get("function_call"), dict):
                    outcome.pending.absorb(section["function_call"])
                    carries_call = True
            if first.get("finish_reason") == "function_call":
                outcome.function_call = outcome.pending
                return None
            if carries_call:
                return None
            return data_frame(payload)
        if stripped.startswith(CONTROL_PREFIXES):
            return f"{stripped}\n".encode("utf-8")
        return None
