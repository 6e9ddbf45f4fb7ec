from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from .credentials import CredentialPool, NoCredentialsAvailable
from .router import ImagesConfig, ProviderDef, provider_url
from .upstream import ResilientRequester, UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_SEARCH_RESULTS = 5


class FunctionExecutionError(RuntimeError):
    """Raised when a model-requested function cannot be completed."""

    def __init__(self, message: str, *, name: str | None = None) -> None:
        super().__init__(message)
        self.name = name


FUNCTION_SCHEMAS: list[dict[str, Any]] = [
    {
        "name": "generate_image",
        "description": "Generate an image from a text description.",
        "parameters": {
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "Description of the image to create."},
                "size": {
                    "type": "string",
                    "enum": ["1024x1024", "1792x1024", "1024x1792"],
                    "description": "Image dimensions.",
                },
            },
            "required": ["prompt"],
        },
    },
    {
        "name": "edit_image",
        "description": "Edit an existing image according to an instruction.",
        "parameters": {
            "type": "object",
            "properties": {
                "image_url": {"type": "string", "description": "URL of the image to edit."},
                "prompt": {"type": "string", "description": "Instruction describing the edit."},
            },
            "required": ["image_url", "prompt"],
        },
    },
    {
        "name": "web_search",
        "description": "Search the web for recent information.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Search query."},
                "max_results": {"type": "integer", "minimum": 1, "maximum": 10},
            },
            "required": ["query"],
        },
    },
]


def _parse_arguments(name: str, arguments: str | dict[str, Any] | None) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise FunctionExecutionError(f"invalid arguments for '{name}': {exc}", name=name) from exc
    if not isinstance(parsed, dict):
        raise FunctionExecutionError(f"arguments for '{name}' must be an object", name=name)
    return parsed


def _require(name: str, args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise FunctionExecutionError(f"'{name}' requires a non-empty '{key}'", name=name)
    return value.strip()


class FunctionRegistry:
    """Executes the functions advertised to models in ``FUNCTION_SCHEMAS``."""

    def __init__(
        self,
        requester: ResilientRequester,
        providers: dict[str, ProviderDef],
        pools: dict[str, CredentialPool],
        images: ImagesConfig,
    ) -> None:
        self._requester = requester
        self._providers = providers
        self._pools = pools
        self._images = images
        self._handlers: dict[str, Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]] = {
            "generate_image": self._generate_image,
            "edit_image": self._edit_image,
            "web_search": self._web_search,
        }

    @property
    def names(self) -> list[str]:
        return list(self._handlers)

    def schemas(self) -> list[dict[str, Any]]:
        return [schema for schema in FUNCTION_SCHEMAS if schema["name"] in self._handlers]

    async def execute(self, name: str, arguments: str | dict[str, Any] | None) -> dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            raise FunctionExecutionError(f"unknown function '{name}'", name=name)
        args = _parse_arguments(name, arguments)
        logger.info("executing function name=%s", name)
        try:
            return await handler(args)
        except FunctionExecutionError:
            raise
        except (UpstreamError, NoCredentialsAvailable) as exc:
            logger.error("function %s failed upstream: %s", name, exc)
            raise FunctionExecutionError(f"'{name}' failed: {exc}", name=name) from exc

    async def _post_json(self, provider_name: str | None, path: str, body: dict[str, Any]) -> Any:
        if provider_name is None:
            raise FunctionExecutionError(f"no provider configured for {path}")
        defn = self._providers[provider_name]
        pool = self._pools.get(provider_name)
        response = await self._requester.execute(
            provider_url(defn.base_url, path),
            body,
            {"headers": {"Content-Type": "application/json"}},
            pool,
            stream=False,
        )
        try:
            return response.json()
        except ValueError as exc:
            raise FunctionExecutionError(f"{provider_name} returned invalid JSON for {path}") from exc

    async def generate_images(self, body: dict[str, Any]) -> dict[str, Any]:
        payload = dict(body)
        payload.setdefault("model", self._images.model)
        result = await self._post_json(self._images.provider, "images/generations", payload)
        if not isinstance(result, dict):
            raise FunctionExecutionError("image provider returned an unexpected payload", name="generate_image")
        return result

    async def _generate_image(self, args: dict[str, Any]) -> dict[str, Any]:
        prompt = _require("generate_image", args, "prompt")
        size = args.get("size") or DEFAULT_IMAGE_SIZE
        result = await self.generate_images({"prompt": prompt, "n": 1, "size": size})
        return {"status": "success", "prompt": prompt, "images": _image_entries(result)}

    async def _edit_image(self, args: dict[str, Any]) -> dict[str, Any]:
        image_url = _require("edit_image", args, "image_url")
        prompt = _require("edit_image", args, "prompt")
        result = await self._post_json(
            self._images.edit_provider,
            "images/edits",
            {"model": self._images.model, "image": image_url, "prompt": prompt, "n": 1},
        )
        if not isinstance(result, dict):
            raise FunctionExecutionError("image provider returned an unexpected payload", name="edit_image")
        return {"status": "success", "prompt": prompt, "source": image_url, "images": _image_entries(result)}

    async def _web_search(self, args: dict[str, Any]) -> dict[str, Any]:
        query = _require("web_search", args, "query")
        if not self._images.search_url:
            raise FunctionExecutionError("web search is not configured", name="web_search")
        try:
            max_results = int(args.get("max_results") or DEFAULT_SEARCH_RESULTS)
        except (TypeError, ValueError):
            max_results = DEFAULT_SEARCH_RESULTS
        max_results = min(max(max_results, 1), 10)
        response = await self._requester.execute(
            self._images.search_url,
            {"query": query, "max_results": max_results},
            {"headers": {"Content-Type": "application/json"}},
            None,
            stream=False,
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise FunctionExecutionError("search service returned invalid JSON", name="web_search") from exc
        raw_results = payload.get("results") if isinstance(payload, dict) else payload
        results = []
        for item in raw_results or []:
            if not isinstance(item, dict):
                continue
            results.append(
                {
                    "title": item.get("title", ""),
                    "url": item.get("url") or item.get("link", ""),
                    "snippet": item.get("snippet") or item.get("content", ""),
                }
            )
        return {"status": "success", "query": query, "results": results[:max_results]}


def _image_entries(result: dict[str, Any]) -> list[dict[str, Any]]:
    entries = []
    for item in result.get("data") or []:
        if not isinstance(item, dict):
            continue
        entry: dict[str, Any] = {}
        if item.get("url"):
            entry["url"] = item["url"]
        if item.get("b64_json"):
            entry["b64_json"] = item["b64_json"]
        if item.get("revised_prompt"):
            entry["revised_prompt"] = item["revised_prompt"]
        if entry:
            entries.append(entry)
    if not entries:
        raise FunctionExecutionError("image provider returned no images")
    return entries
