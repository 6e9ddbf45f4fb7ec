import asyncio
import json
import logging
import os
import time
import uuid
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .auth import AuthProvider, RemoteAuth, StaticTokenAuth, UserIdentity, bearer_token
from .availability import ModelStatusTracker
from .credentials import NoCredentialsAvailable, parse_env_list
from .fallback import FallbackOrchestrator, UpstreamExhausted
from .functions import FunctionExecutionError, FunctionRegistry
from .metrics import MetricsLogger
from .relay import RelayState, StreamRelay
from .router import Forbidden, RouteDecision, RoutingContext, UpstreamRouter, build_pools, load_config
from .store import ChatAlreadyExists, InMemoryChatStore, InvalidImageData, LocalImageStore, decode_data_uri
from .titles import generate_chat_title
from .types import ChatRequest, ImageGenerationRequest, ImageUploadRequest
from .upstream import (
    AllCredentialsExhausted,
    NonRetryableUpstreamError,
    ResilientRequester,
    TransportError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="fronix")

_ROOT_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..")

CONFIG_DIR = os.environ.get("FRONIX_CONFIG_DIR", os.path.join(_ROOT_DIR, "config"))

TRUTHY_VALUES: frozenset[str] = frozenset({"1", "true", "yes", "on"})
FALSY_VALUES: frozenset[str] = frozenset({"0", "false", "no", "off"})

INVALID_CHAT_BODY = 'Invalid request body. "model" and a "messages" array are required.'
INVALID_IMAGE_BODY = 'Invalid request body. "model" and "prompt" are required.'
UNAVAILABLE_MESSAGE = "AI service is temporarily unavailable. Please try again later."
RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please try again later."
INTERNAL_MESSAGE = "Internal server error occurred while contacting the AI service."
TIMEOUT_MESSAGE = "AI service did not respond in time. Please try again later."
CHAT_NOT_FOUND_MESSAGE = "Chat not found."
DEFAULT_RETRY_AFTER_SECONDS = int(os.environ.get("FRONIX_RETRY_AFTER_SECONDS", "30"))


def _env_var_as_bool(name: str, *, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    normalized = raw.strip().lower()
    if not normalized:
        return default
    if normalized in TRUTHY_VALUES:
        return True
    if normalized in FALSY_VALUES:
        return False
    return default


def _env_var_as_float(name: str, *, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


CONFIG_REFRESH_INTERVAL: float = _env_var_as_float("FRONIX_CONFIG_REFRESH_INTERVAL", default=30.0)
MODEL_STATUS_INTERVAL: float = _env_var_as_float("FRONIX_MODEL_STATUS_INTERVAL", default=0.0)
ALLOWED_ORIGINS = parse_env_list(os.environ.get("FRONIX_CORS_ALLOW_ORIGINS", ""))
TITLES_ENABLED: bool = _env_var_as_bool("FRONIX_TITLES_ENABLED", default=True)


def _format_timestamp(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _make_response_headers(*, req_id: str, provider: str | None, attempts: int) -> dict[str, str]:
    return {
        "x-fronix-request-id": req_id,
        "x-fronix-provider": provider or "unknown",
        "x-fronix-fallback-attempts": str(max(attempts - 1, 0)),
    }


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    provider: str | None,
    attempts: int,
    detail: str | None = None,
) -> None:
    provider_value = provider or "unknown"
    message = f"{event} req_id={req_id} provider={provider_value} attempts={attempts}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


def _build_auth() -> AuthProvider:
    auth_url = os.environ.get("FRONIX_AUTH_URL", "").strip()
    if auth_url:
        return RemoteAuth(auth_url, os.environ.get("FRONIX_AUTH_API_KEY") or None)
    static = StaticTokenAuth.from_env_value(os.environ.get("FRONIX_AUTH_TOKENS"))
    if not len(static):
        logger.warning("no auth tokens configured: FRONIX_AUTH_TOKENS and FRONIX_AUTH_URL are unset")
    return static


cfg = load_config(CONFIG_DIR)
pools = build_pools(cfg.providers)
router = UpstreamRouter(cfg.router, cfg.providers, pools, config_dir=CONFIG_DIR, mtimes=cfg.mtimes)
requester = ResilientRequester(timeout=cfg.router.defaults.request_timeout_s)
orchestrator = FallbackOrchestrator(requester, router)
functions = FunctionRegistry(requester, cfg.providers, pools, cfg.router.images)
status_tracker = ModelStatusTracker(requester, router)
config_last_reload_at: float = time.time()
metrics = MetricsLogger(os.environ.get("FRONIX_METRICS_DIR", os.path.join(_ROOT_DIR, "metrics")))
auth_provider: AuthProvider = _build_auth()
chat_store = InMemoryChatStore()
image_store = LocalImageStore(
    os.environ.get("FRONIX_UPLOAD_DIR", os.path.join(_ROOT_DIR, "uploads")),
    os.environ.get("FRONIX_UPLOAD_BASE_URL", "/uploads"),
)

_config_refresh_task: asyncio.Task[None] | None = None
_model_status_task: asyncio.Task[None] | None = None
_background_tasks: set[asyncio.Task[Any]] = set()

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def reload_configuration() -> None:
    global cfg, pools, router, orchestrator, functions, config_last_reload_at
    new_cfg = load_config(CONFIG_DIR)
    cfg = new_cfg
    pools = build_pools(new_cfg.providers)
    router = UpstreamRouter(new_cfg.router, new_cfg.providers, pools, config_dir=CONFIG_DIR, mtimes=new_cfg.mtimes)
    orchestrator = FallbackOrchestrator(requester, router)
    functions = FunctionRegistry(requester, new_cfg.providers, pools, new_cfg.router.images)
    status_tracker.router = router
    status_tracker.requester = requester
    config_last_reload_at = time.time()
    logger.info("configuration reloaded providers=%s", ",".join(sorted(new_cfg.providers)))


async def _config_refresh_loop() -> None:
    while True:
        await asyncio.sleep(CONFIG_REFRESH_INTERVAL)
        if not router.needs_reload():
            continue
        try:
            reload_configuration()
        except (OSError, ValueError) as exc:
            logger.error("configuration reload failed; keeping previous config: %s", exc)


async def _model_status_loop() -> None:
    while True:
        try:
            await status_tracker.check()
        except Exception:
            logger.exception("model status sweep failed; retrying in %.0fs", MODEL_STATUS_INTERVAL)
        await asyncio.sleep(MODEL_STATUS_INTERVAL)


async def _cancel(task: asyncio.Task[Any] | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("background task failed before shutdown")


@app.on_event("startup")
async def _start_background_tasks() -> None:
    global _config_refresh_task, _model_status_task
    if CONFIG_REFRESH_INTERVAL > 0 and (_config_refresh_task is None or _config_refresh_task.done()):
        _config_refresh_task = asyncio.create_task(_config_refresh_loop())
    if MODEL_STATUS_INTERVAL > 0 and (_model_status_task is None or _model_status_task.done()):
        _model_status_task = asyncio.create_task(_model_status_loop())


@app.on_event("shutdown")
async def _stop_background_tasks() -> None:
    global _config_refresh_task, _model_status_task
    await _cancel(_config_refresh_task)
    await _cancel(_model_status_task)
    _config_refresh_task = None
    _model_status_task = None
    for task in list(_background_tasks):
        await _cancel(task)
    await requester.aclose()


def _spawn(coro: Any) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def _authenticate(req: Request) -> UserIdentity | JSONResponse:
    token = bearer_token(req.headers.get("authorization"))
    if token is None:
        return JSONResponse({"error": "No token provided"}, status_code=401)
    identity = await auth_provider.get_user(token)
    if identity is None:
        return JSONResponse({"error": "Invalid or expired token"}, status_code=401)
    return identity


async def _read_json(req: Request) -> Any:
    try:
        return await req.json()
    except ValueError:
        return None


def _upstream_failure(exc: BaseException) -> tuple[int, dict[str, Any]]:
    if isinstance(exc, UpstreamExhausted):
        if exc.all_rate_limited:
            retry_after = exc.retry_after if exc.retry_after is not None else DEFAULT_RETRY_AFTER_SECONDS
            return 429, {"error": RATE_LIMITED_MESSAGE, "retry_after": retry_after}
        if exc.all_timed_out:
            return 504, {"error": TIMEOUT_MESSAGE, "attempts": exc.attempts}
        return 503, {"error": UNAVAILABLE_MESSAGE, "attempts": exc.attempts}
    if isinstance(exc, AllCredentialsExhausted):
        retry_after = exc.retry_after if exc.retry_after is not None else DEFAULT_RETRY_AFTER_SECONDS
        return 429, {"error": RATE_LIMITED_MESSAGE, "retry_after": retry_after}
    if isinstance(exc, NonRetryableUpstreamError):
        if exc.status == 401:
            return 401, {"error": "Authentication failed with AI service."}
        if exc.status == 400:
            return 400, {"error": "Invalid request format for AI service."}
        if exc.is_server_error:
            return 503, {"error": UNAVAILABLE_MESSAGE}
        return exc.status or 502, {"error": "An error occurred while contacting the AI service."}
    if isinstance(exc, TransportError):
        if exc.timed_out:
            return 504, {"error": TIMEOUT_MESSAGE}
        return 503, {"error": UNAVAILABLE_MESSAGE}
    if isinstance(exc, NoCredentialsAvailable):
        return 500, {"error": "AI service is not configured."}
    return 500, {"error": INTERNAL_MESSAGE}


def _frame_text(frame: bytes) -> str:
    if not frame.startswith(b"data: {"):
        return ""
    try:
        payload = json.loads(frame[len(b"data: "):].decode("utf-8"))
    except ValueError:
        return ""
    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or choices[0].get("message") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


def _request_body(body: ChatRequest, functions_enabled: bool) -> dict[str, Any]:
    extra: dict[str, Any] = body.sampling()
    if functions_enabled:
        extra["functions"] = functions.schemas()
        extra["function_call"] = "auto"
    return extra


async def _stream_chat(
    req_id: str,
    route_name: str,
    decision: RouteDecision,
    body: ChatRequest,
    messages: list[dict[str, Any]],
    *,
    identity: UserIdentity | None = None,
) -> JSONResponse | StreamingResponse:
    start = time.perf_counter()
    extra = _request_body(body, body.functions_enabled)
    stream_context = {
        "req_id": req_id,
        "route": route_name,
        "model": body.model,
        "provider": decision.provider_name,
        "endpoint": decision.endpoint_url,
    }

    def _on_relay_error(reason: str, exc: BaseException | None) -> None:
        metrics.log_stream_error({**stream_context, "reason": reason}, exc)

    relay = StreamRelay(
        reopen=orchestrator.reopener(decision, extra),
        functions=functions.execute if body.functions_enabled else None,
        timeout=cfg.router.defaults.request_timeout_s,
        max_function_depth=cfg.router.defaults.max_function_depth,
        on_error=_on_relay_error,
    )
    _log_request_event(
        logging.INFO,
        event="chat.stream start",
        req_id=req_id,
        provider=decision.provider_name,
        attempts=0,
    )
    try:
        stream, frames = await orchestrator.execute_with_fallback(decision, messages, relay, extra)
    except Exception as exc:
        status, payload = _upstream_failure(exc)
        attempts = getattr(exc, "attempts", 1)
        if status == 500 and not isinstance(exc, NoCredentialsAvailable):
            logger.exception("unexpected failure opening upstream stream req_id=%s", req_id)
        _log_request_event(
            logging.ERROR,
            event="chat.stream failure",
            req_id=req_id,
            provider=decision.provider_name,
            attempts=attempts,
            detail=f"{exc.__class__.__name__}: {exc}",
        )
        metrics.log_stream_error(
            {**stream_context, "reason": "open", "messages": len(messages)},
            exc,
        )
        await metrics.write(
            {
                "req_id": req_id,
                "ts": time.time(),
                "route": route_name,
                "provider": decision.provider_name,
                "model": body.model,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "ok": False,
                "status": status,
                "attempts": attempts,
            }
        )
        headers = _make_response_headers(req_id=req_id, provider=decision.provider_name, attempts=attempts)
        return JSONResponse(payload, status_code=status, headers=headers)

    if stream.attempts > 1:
        _log_request_event(
            logging.WARNING,
            event="chat.stream fallback",
            req_id=req_id,
            provider=stream.provider_name,
            attempts=stream.attempts,
        )

    async def event_source() -> AsyncIterator[bytes]:
        collected: list[str] = []
        try:
            async for frame in frames:
                collected.append(_frame_text(frame))
                yield frame
        finally:
            await frames.aclose()
            await stream.aclose()
            ok = relay.state is RelayState.DONE
            _log_request_event(
                logging.INFO if ok else logging.ERROR,
                event="chat.stream success" if ok else "chat.stream failure",
                req_id=req_id,
                provider=stream.provider_name,
                attempts=stream.attempts,
                detail=None if ok else relay.state.value,
            )
            await metrics.write(
                {
                    "req_id": req_id,
                    "ts": time.time(),
                    "route": route_name,
                    "provider": stream.provider_name,
                    "model": body.model,
                    "latency_ms": int((time.perf_counter() - start) * 1000),
                    "ok": ok,
                    "status": 200,
                    "attempts": stream.attempts,
                }
            )
            if ok and identity is not None and body.chat_id:
                await _finish_chat(body, identity, messages, "".join(collected))

    response = StreamingResponse(event_source(), media_type="text/event-stream")
    response.headers.update(
        {
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
            **_make_response_headers(req_id=req_id, provider=stream.provider_name, attempts=stream.attempts),
        }
    )
    return response


async def _finish_chat(
    body: ChatRequest,
    identity: UserIdentity,
    messages: list[dict[str, Any]],
    reply: str,
) -> None:
    chat_id = body.chat_id
    if chat_id is None:
        return
    if reply:
        await chat_store.add_message(chat_id, {"role": "assistant", "content": reply, "model": body.model})
    if TITLES_ENABLED:
        history = [m for m in messages if m.get("role") != "system"]
        if reply:
            history.append({"role": "assistant", "content": reply})
        _spawn(generate_chat_title(requester, router, chat_store, chat_id, identity.user_id, history))


def _parse_chat_body(raw: Any) -> ChatRequest | None:
    if not isinstance(raw, dict):
        return None
    try:
        return ChatRequest.model_validate(raw)
    except ValidationError:
        return None


@app.post("/chat")
async def chat(req: Request):
    req_id = str(uuid.uuid4())
    identity = await _authenticate(req)
    if isinstance(identity, JSONResponse):
        return identity
    body = _parse_chat_body(await _read_json(req))
    if body is None:
        return JSONResponse({"error": INVALID_CHAT_BODY}, status_code=400)
    context = RoutingContext(
        user_id=identity.user_id,
        user_plan=identity.plan,
        pro_models_enabled=body.pro_models_enabled,
        beta_models_enabled=body.beta_models_enabled,
    )
    try:
        decision = router.route(body.model, context)
    except Forbidden as exc:
        logger.info("refused model=%s user=%s reason=%s", body.model, identity.user_id, exc.message)
        return JSONResponse({"error": exc.message}, status_code=403)

    study_mode = body.study_mode
    if body.chat_id:
        chat_record = await chat_store.get_chat(body.chat_id, identity.user_id)
        if chat_record is None:
            try:
                chat_record = await chat_store.create_chat(
                    identity.user_id, chat_id=body.chat_id, study_mode=body.study_mode
                )
            except ChatAlreadyExists:
                logger.warning("chat %s belongs to another user; refusing user=%s", body.chat_id, identity.user_id)
                return JSONResponse({"error": CHAT_NOT_FOUND_MESSAGE}, status_code=404)
        study_mode = study_mode or chat_record.study_mode
        last = body.messages[-1]
        if last.role == "user":
            await chat_store.add_message(body.chat_id, last.upstream())

    messages = [message.upstream() for message in body.messages]
    if study_mode and cfg.router.study_mode_prompt:
        messages.insert(0, {"role": "system", "content": cfg.router.study_mode_prompt})
    return await _stream_chat(req_id, "chat", decision, body, messages, identity=identity)


@app.post("/chat-public")
async def chat_public(req: Request):
    req_id = str(uuid.uuid4())
    body = _parse_chat_body(await _read_json(req))
    if body is None:
        return JSONResponse({"error": INVALID_CHAT_BODY}, status_code=400)
    if not router.is_public_model(body.model):
        return JSONResponse(
            {
                "error": "This model is not available without signing in.",
                "allowedModels": list(cfg.router.public_models),
            },
            status_code=403,
        )
    try:
        decision = router.route(body.model, RoutingContext())
    except Forbidden as exc:
        return JSONResponse(
            {"error": exc.message, "allowedModels": list(cfg.router.public_models)},
            status_code=403,
        )
    body.functions_enabled = False
    messages = [message.upstream() for message in body.messages]
    return await _stream_chat(req_id, "chat-public", decision, body, messages)


@app.post("/images/generations")
async def images_generations(req: Request):
    identity = await _authenticate(req)
    if isinstance(identity, JSONResponse):
        return identity
    raw = await _read_json(req)
    try:
        body = ImageGenerationRequest.model_validate(raw if isinstance(raw, dict) else {})
    except ValidationError:
        return JSONResponse({"error": INVALID_IMAGE_BODY}, status_code=400)
    images_cfg = cfg.router.images
    if images_cfg.provider is None:
        return JSONResponse({"error": "Image generation is not configured."}, status_code=500)
    payload = body.model_dump(exclude_none=True)
    payload["model"] = router.upstream_model_id(images_cfg.provider, body.model)
    payload.setdefault("user", identity.user_id)
    try:
        result = await functions.generate_images(payload)
    except FunctionExecutionError as exc:
        logger.error("image generation failed user=%s error=%s", identity.user_id, exc)
        return JSONResponse({"error": "Image generation failed."}, status_code=502)
    except (UpstreamError, NoCredentialsAvailable) as exc:
        status, error_payload = _upstream_failure(exc)
        logger.error("image generation failed user=%s status=%s error=%s", identity.user_id, status, exc)
        return JSONResponse(error_payload, status_code=status)
    data = [
        {"url": item.get("url"), "revised_prompt": item.get("revised_prompt") or body.prompt}
        for item in result.get("data") or []
        if isinstance(item, dict)
    ]
    return {
        "status": "success",
        "data": data,
        "model": body.model,
        "prompt": body.prompt,
        "created": result.get("created") or int(time.time()),
    }


@app.post("/images/upload")
async def images_upload(req: Request):
    identity = await _authenticate(req)
    if isinstance(identity, JSONResponse):
        return identity
    raw = await _read_json(req)
    try:
        body = ImageUploadRequest.model_validate(raw if isinstance(raw, dict) else {})
    except ValidationError:
        return JSONResponse({"error": 'Invalid request body. "image" is required.'}, status_code=400)
    try:
        data, content_type = decode_data_uri(body.image)
    except InvalidImageData as exc:
        return JSONResponse({"error": str(exc)}, status_code=400)
    try:
        stored = image_store.save(data, content_type, user_id=identity.user_id)
    except OSError:
        logger.exception("failed to store upload user=%s", identity.user_id)
        return JSONResponse({"error": "Failed to store image."}, status_code=500)
    return stored


@app.get("/model-status")
async def model_status(refresh: bool = False) -> dict[str, Any]:
    if refresh:
        await status_tracker.check()
    return {
        "models": status_tracker.snapshot(),
        "last_checked_at": _format_timestamp(status_tracker.last_checked_at),
    }


@app.get("/optimization-stats")
async def optimization_stats() -> dict[str, Any]:
    return {
        "metrics": metrics.snapshot(),
        "pools": [pool.snapshot() for _, pool in sorted(pools.items())],
        "affinity": router.affinity_snapshot(),
    }


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {
        "status": "ok",
        "providers": list(cfg.providers.keys()),
        "config": {"last_reload_at": _format_timestamp(config_last_reload_at)},
    }
