import logging
import os
import time
import tomllib
from dataclasses import dataclass, field
from typing import Dict, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, ValidationError, model_validator

from .credentials import CredentialPool

logger = logging.getLogger(__name__)

ContextFlag = Literal["pro_models_enabled", "beta_models_enabled"]


@dataclass
class ProviderDef:
    name: str
    base_url: str
    keys_env: str | None = None
    anonymous: bool = False
    model_prefix: str | None = None
    models: dict[str, str] = field(default_factory=dict)


@dataclass
class RouterDefaults:
    affinity_cooldown_s: float
    request_timeout_s: float
    max_function_depth: int
    fallbacks: list[str] = field(default_factory=list)


@dataclass
class RouteRule:
    tier: str
    providers: list[str]
    models: frozenset[str] | None = None
    pinned: dict[str, str] = field(default_factory=dict)
    requires_plan: str | None = None
    requires_flag: ContextFlag | None = None
    fallbacks: list[str] | None = None

    @property
    def is_catch_all(self) -> bool:
        return self.models is None

    def matches(self, model_id: str) -> bool:
        if self.models is None:
            return True
        return model_id in self.models or model_id in self.pinned


@dataclass
class TitleGenerationConfig:
    provider: str
    model: str


@dataclass
class ImagesConfig:
    provider: str | None = None
    model: str = "dall-e-3"
    edit_provider: str | None = None
    search_url: str | None = None


@dataclass
class RouterConfig:
    defaults: RouterDefaults
    rules: list[RouteRule]
    public_models: tuple[str, ...] = ()
    study_mode_prompt: str = ""
    title_generation: TitleGenerationConfig | None = None
    images: ImagesConfig = field(default_factory=ImagesConfig)


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    router: RouterConfig
    mtimes: dict[str, float] = field(default_factory=dict)
    watch_paths: tuple[str, ...] = field(default_factory=tuple)


@dataclass
class RoutingContext:
    user_id: str | None = None
    user_plan: str | None = None
    pro_models_enabled: bool = False
    beta_models_enabled: bool = False


@dataclass(frozen=True)
class RouteDecision:
    endpoint_url: str
    upstream_model_id: str
    credential_pool: CredentialPool
    provider_name: str
    tier: str
    requested_model: str
    fallbacks: tuple[str, ...] = ()


class Forbidden(Exception):
    def __init__(self, message: str, *, tier: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.tier = tier


class _ProviderModel(BaseModel):
    base_url: str = ""
    base_url_env: str | None = None
    keys_env: str | None = None
    anonymous: bool = False
    model_prefix: str | None = None
    models: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class _DefaultsModel(BaseModel):
    affinity_cooldown_s: PositiveFloat = Field(default=60.0)
    request_timeout_s: PositiveFloat = Field(default=60.0)
    max_function_depth: int = Field(default=3, ge=0)
    fallbacks: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class _RuleModel(BaseModel):
    tier: str
    models: list[str] | None = None
    providers: list[str] = Field(default_factory=list)
    provider: str | None = None
    pinned: dict[str, str] = Field(default_factory=dict)
    requires_plan: str | None = None
    requires_flag: ContextFlag | None = None
    fallbacks: list[str] | None = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _finalize(self) -> "_RuleModel":
        if self.provider and self.provider not in self.providers:
            self.providers = [self.provider, *self.providers]
        if not self.providers:
            raise ValueError(f"rule '{self.tier}' must specify at least one provider")
        for model_id, provider in self.pinned.items():
            if provider not in self.providers:
                raise ValueError(
                    f"rule '{self.tier}' pins '{model_id}' to '{provider}' which is not one of its providers"
                )
        return self


class _TitleModel(BaseModel):
    provider: str
    model: str = "mistral"

    model_config = ConfigDict(extra="forbid")


class _ImagesModel(BaseModel):
    provider: str | None = None
    model: str = "dall-e-3"
    edit_provider: str | None = None
    search_url: str | None = None

    model_config = ConfigDict(extra="forbid")


class _RouterModel(BaseModel):
    defaults: _DefaultsModel = Field(default_factory=_DefaultsModel)
    public_models: list[str] = Field(default_factory=list)
    study_mode_prompt: str = ""
    title_generation: _TitleModel | None = None
    images: _ImagesModel = Field(default_factory=_ImagesModel)
    rules: list[_RuleModel]

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_catch_all(self) -> "_RouterModel":
        catch_all = [index for index, rule in enumerate(self.rules) if rule.models is None]
        if len(catch_all) > 1:
            raise ValueError("only one catch-all rule (without 'models') may be defined")
        if catch_all and catch_all[0] != len(self.rules) - 1:
            raise ValueError("the catch-all rule must be the last rule")
        return self


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def load_config(config_dir: str) -> LoadedConfig:
    prov_path = os.path.join(config_dir, "providers.toml")
    with open(prov_path, "rb") as f:
        prov_data = tomllib.load(f)
    providers: Dict[str, ProviderDef] = {}
    for name, raw in prov_data.items():
        try:
            parsed_provider = _ProviderModel.model_validate(raw)
        except ValidationError as exc:
            raise ValueError(f"provider '{name}': {_format_validation_error(exc)}") from exc
        base_url = parsed_provider.base_url
        if parsed_provider.base_url_env:
            base_url = os.environ.get(parsed_provider.base_url_env, "").strip() or base_url
        providers[name] = ProviderDef(
            name=name,
            base_url=base_url,
            keys_env=parsed_provider.keys_env,
            anonymous=parsed_provider.anonymous,
            model_prefix=parsed_provider.model_prefix,
            models=dict(parsed_provider.models),
        )
    router_path = os.path.join(config_dir, "router.yaml")
    with open(router_path, "r", encoding="utf-8") as f:
        rdata = yaml.safe_load(f) or {}
    try:
        parsed = _RouterModel.model_validate(rdata)
    except ValidationError as exc:
        raise ValueError(_format_validation_error(exc)) from exc
    defs = parsed.defaults
    rules = [
        RouteRule(
            tier=rule.tier,
            providers=list(rule.providers),
            models=frozenset(rule.models) if rule.models is not None else None,
            pinned=dict(rule.pinned),
            requires_plan=rule.requires_plan,
            requires_flag=rule.requires_flag,
            fallbacks=list(rule.fallbacks) if rule.fallbacks is not None else None,
        )
        for rule in parsed.rules
    ]
    router = RouterConfig(
        defaults=RouterDefaults(
            affinity_cooldown_s=float(defs.affinity_cooldown_s),
            request_timeout_s=float(defs.request_timeout_s),
            max_function_depth=int(defs.max_function_depth),
            fallbacks=list(defs.fallbacks),
        ),
        rules=rules,
        public_models=tuple(parsed.public_models),
        study_mode_prompt=parsed.study_mode_prompt,
        title_generation=(
            TitleGenerationConfig(provider=parsed.title_generation.provider, model=parsed.title_generation.model)
            if parsed.title_generation is not None
            else None
        ),
        images=ImagesConfig(
            provider=parsed.images.provider,
            model=parsed.images.model,
            edit_provider=parsed.images.edit_provider or parsed.images.provider,
            search_url=parsed.images.search_url,
        ),
    )
    validate_router_config(router, providers)
    mtimes = {
        "providers": os.stat(prov_path).st_mtime,
        "router": os.stat(router_path).st_mtime,
    }
    return LoadedConfig(
        providers=providers,
        router=router,
        mtimes=mtimes,
        watch_paths=(prov_path, router_path),
    )


def validate_router_config(router: RouterConfig, providers: Dict[str, ProviderDef]) -> None:
    available = ", ".join(sorted(providers)) or "<none>"

    def _check(owner: str, provider_name: str | None) -> None:
        if provider_name is None or provider_name in providers:
            return
        raise ValueError(
            "{owner} references undefined provider '{provider}'. Available providers: {available}".format(
                owner=owner,
                provider=provider_name,
                available=available,
            )
        )

    for rule in router.rules:
        for provider_name in rule.providers:
            _check(f"Rule '{rule.tier}'", provider_name)
        for provider_name in rule.fallbacks or ():
            _check(f"Rule '{rule.tier}' fallbacks", provider_name)
    for provider_name in router.defaults.fallbacks:
        _check("Default fallbacks", provider_name)
    if router.title_generation is not None:
        _check("Title generation", router.title_generation.provider)
    _check("Images", router.images.provider)
    _check("Image edits", router.images.edit_provider)


def build_pools(providers: Dict[str, ProviderDef]) -> dict[str, CredentialPool]:
    return {
        name: CredentialPool.from_env(name, defn.keys_env, anonymous=defn.anonymous)
        for name, defn in providers.items()
    }


def _strip_endpoint_suffix(base_url: str) -> str:
    base = base_url.strip().rstrip("/")
    for suffix in ("/chat/completions", "/images/generations", "/images/edits"):
        if base.lower().endswith(suffix):
            return base[: -len(suffix)]
    return base


def chat_completions_url(base_url: str) -> str:
    base = base_url.strip().rstrip("/")
    lowered = base.lower()
    if lowered.endswith("/chat/completions"):
        return base
    if lowered.endswith("/chat"):
        return f"{base}/completions"
    return f"{base}/chat/completions"


def provider_url(base_url: str, path: str) -> str:
    return f"{_strip_endpoint_suffix(base_url)}/{path.lstrip('/')}"


class AffinityCache:
    """Per-user record of the last pro provider, expiring after ``ttl`` seconds.

    Lookups only expire the key they read; a full sweep runs every
    ``sweep_every`` writes so abandoned users do not accumulate.
    """

    def __init__(self, ttl: float, *, sweep_every: int = 256) -> None:
        self.ttl = ttl
        self.sweep_every = max(1, sweep_every)
        self._records: dict[str, tuple[str, float]] = {}
        self._writes = 0

    def __len__(self) -> int:
        return len(self._records)

    def get(self, user_id: str, now: float) -> tuple[str, float] | None:
        entry = self._records.get(user_id)
        if entry is not None and entry[1] + self.ttl <= now:
            del self._records[user_id]
            return None
        return entry

    def record(self, user_id: str, provider: str, now: float) -> None:
        self._records[user_id] = (provider, now)
        self._writes += 1
        if self._writes % self.sweep_every == 0:
            self._prune(now)

    def clear(self) -> None:
        self._records.clear()

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, stamp) in self._records.items() if stamp + self.ttl <= now]
        for key in expired:
            self._records.pop(key, None)


class UpstreamRouter:
    def __init__(
        self,
        cfg: RouterConfig,
        providers: Dict[str, ProviderDef],
        pools: dict[str, CredentialPool],
        *,
        affinity: AffinityCache | None = None,
        config_dir: str | None = None,
        mtimes: dict[str, float] | None = None,
    ):
        self.cfg = cfg
        self.providers = providers
        self.pools = pools
        self.affinity = affinity if affinity is not None else AffinityCache(cfg.defaults.affinity_cooldown_s)
        self._config_dir = config_dir
        self._mtimes = dict(mtimes or {})

    def needs_reload(self) -> bool:
        if self._config_dir is None:
            return False
        prov_path = os.path.join(self._config_dir, "providers.toml")
        router_path = os.path.join(self._config_dir, "router.yaml")
        try:
            providers_mtime = os.stat(prov_path).st_mtime
            router_mtime = os.stat(router_path).st_mtime
        except FileNotFoundError:
            return False
        return not (
            providers_mtime == self._mtimes.get("providers")
            and router_mtime == self._mtimes.get("router")
        )

    def is_public_model(self, model_id: str) -> bool:
        return model_id in self.cfg.public_models

    def match_rule(self, model_id: str) -> RouteRule:
        for rule in self.cfg.rules:
            if rule.matches(model_id):
                return rule
        raise Forbidden(f"Model '{model_id}' is not available.")

    def upstream_model_id(self, provider_name: str, requested_model_id: str) -> str:
        defn = self.providers[provider_name]
        mapped = defn.models.get(requested_model_id)
        if mapped:
            return mapped
        if defn.model_prefix and not requested_model_id.startswith(f"{defn.model_prefix}/"):
            return f"{defn.model_prefix}/{requested_model_id}"
        return requested_model_id

    def candidate(
        self,
        provider_name: str,
        requested_model_id: str,
        *,
        tier: str = "fallback",
        fallbacks: tuple[str, ...] = (),
    ) -> RouteDecision:
        defn = self.providers[provider_name]
        return RouteDecision(
            endpoint_url=chat_completions_url(defn.base_url),
            upstream_model_id=self.upstream_model_id(provider_name, requested_model_id),
            credential_pool=self.pools[provider_name],
            provider_name=provider_name,
            tier=tier,
            requested_model=requested_model_id,
            fallbacks=fallbacks,
        )

    def route(
        self,
        requested_model_id: str,
        context: RoutingContext,
        *,
        now: float | None = None,
    ) -> RouteDecision:
        rule = self.match_rule(requested_model_id)
        self._check_access(rule, context)
        current_time = time.monotonic() if now is None else now
        provider_name = self._select_provider(rule, requested_model_id, context, current_time)
        fallbacks = rule.fallbacks if rule.fallbacks is not None else self.cfg.defaults.fallbacks
        logger.debug(
            "routed model=%s tier=%s provider=%s user=%s",
            requested_model_id,
            rule.tier,
            provider_name,
            context.user_id or "anonymous",
        )
        return self.candidate(
            provider_name,
            requested_model_id,
            tier=rule.tier,
            fallbacks=tuple(name for name in fallbacks if name != provider_name),
        )

    def _check_access(self, rule: RouteRule, context: RoutingContext) -> None:
        label = rule.tier.capitalize()
        if rule.requires_flag is not None and not getattr(context, rule.requires_flag):
            raise Forbidden(f"{label} models are not enabled.", tier=rule.tier)
        if rule.requires_plan is not None and context.user_plan != rule.requires_plan:
            raise Forbidden(
                f"{label} models require an active {rule.requires_plan} plan.",
                tier=rule.tier,
            )

    def _select_provider(
        self,
        rule: RouteRule,
        model_id: str,
        context: RoutingContext,
        now: float,
    ) -> str:
        pinned = rule.pinned.get(model_id)
        spreads = len(rule.providers) >= 2
        if pinned is not None:
            selected = pinned
        elif spreads and context.user_id:
            primary, alternate = rule.providers[0], rule.providers[1]
            previous = self.affinity.get(context.user_id, now)
            if (
                previous is not None
                and previous[0] == primary
                and now - previous[1] < self.cfg.defaults.affinity_cooldown_s
            ):
                selected = alternate
            else:
                selected = primary
        else:
            selected = rule.providers[0]
        if spreads and context.user_id:
            self.affinity.record(context.user_id, selected, now)
        return selected

    def affinity_snapshot(self) -> dict[str, object]:
        return {
            "cooldown_s": self.cfg.defaults.affinity_cooldown_s,
            "tracked_users": len(self.affinity),
        }
