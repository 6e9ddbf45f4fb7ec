from __future__ import annotations

import pytest

from src.fronix.credentials import CredentialPool
from src.fronix.router import (
    AffinityCache,
    Forbidden,
    ProviderDef,
    RouteRule,
    RouterConfig,
    RouterDefaults,
    RoutingContext,
    UpstreamRouter,
)

COOLDOWN = 60.0


def _router(affinity: AffinityCache | None = None) -> UpstreamRouter:
    providers = {
        "pro_a": ProviderDef(name="pro_a", base_url="https://a.test/v1", models={"gpt-4.1": "a/gpt-4.1"}),
        "pro_b": ProviderDef(name="pro_b", base_url="https://b.test/v1", models={"gpt-4.1": "b/gpt-4.1"}),
        "beta": ProviderDef(name="beta", base_url="https://beta.test/v1", model_prefix="provider-2"),
        "open": ProviderDef(name="open", base_url="https://open.test/openai", anonymous=True),
    }
    rules = [
        RouteRule(
            tier="pro",
            providers=["pro_a", "pro_b"],
            models=frozenset({"gpt-4.1", "claude-opus-4.1"}),
            pinned={"claude-opus-4.1": "pro_a"},
            requires_plan="pro",
            requires_flag="pro_models_enabled",
        ),
        RouteRule(
            tier="beta",
            providers=["beta"],
            models=frozenset({"grok-4"}),
            requires_flag="beta_models_enabled",
        ),
        RouteRule(tier="default", providers=["open"], fallbacks=[]),
    ]
    cfg = RouterConfig(
        defaults=RouterDefaults(
            affinity_cooldown_s=COOLDOWN,
            request_timeout_s=60.0,
            max_function_depth=3,
            fallbacks=["open"],
        ),
        rules=rules,
        public_models=("mistral",),
    )
    pools = {
        name: CredentialPool(name, [] if defn.anonymous else [f"{name}-key"], anonymous=defn.anonymous)
        for name, defn in providers.items()
    }
    return UpstreamRouter(cfg, providers, pools, affinity=affinity)


def _pro_user(user_id: str | None = "u1") -> RoutingContext:
    return RoutingContext(user_id=user_id, user_plan="pro", pro_models_enabled=True)


def test_affinity_spreads_then_returns_to_primary_after_cooldown() -> None:
    router = _router()

    first = router.route("gpt-4.1", _pro_user(), now=1000.0)
    second = router.route("gpt-4.1", _pro_user(), now=1010.0)
    third = router.route("gpt-4.1", _pro_user(), now=1010.0 + COOLDOWN + 1)

    assert first.provider_name == "pro_a"
    assert second.provider_name == "pro_b"
    assert third.provider_name == "pro_a"
    assert second.upstream_model_id == "b/gpt-4.1"


def test_affinity_is_per_user() -> None:
    router = _router()

    router.route("gpt-4.1", _pro_user("u1"), now=100.0)
    other = router.route("gpt-4.1", _pro_user("u2"), now=101.0)

    assert other.provider_name == "pro_a"


def test_pinned_model_ignores_spreading_but_records_affinity() -> None:
    router = _router()

    router.route("gpt-4.1", _pro_user(), now=100.0)
    pinned = router.route("claude-opus-4.1", _pro_user(), now=101.0)
    after_pinned = router.route("gpt-4.1", _pro_user(), now=102.0)

    assert pinned.provider_name == "pro_a"
    assert after_pinned.provider_name == "pro_b"


def test_anonymous_requests_never_touch_affinity() -> None:
    router = _router()

    decisions = [router.route("gpt-4.1", _pro_user(None), now=100.0 + i) for i in range(3)]

    assert {decision.provider_name for decision in decisions} == {"pro_a"}
    assert len(router.affinity) == 0


def test_injected_affinity_cache_is_used_even_when_empty() -> None:
    cache = AffinityCache(COOLDOWN)
    router = _router(affinity=cache)

    router.route("gpt-4.1", _pro_user(), now=0.0)

    assert router.affinity is cache
    assert len(cache) == 1


def test_affinity_lookup_expires_only_the_requested_user() -> None:
    cache = AffinityCache(COOLDOWN)
    cache.record("u1", "pro_a", 0.0)
    cache.record("u2", "pro_a", 0.0)

    assert cache.get("u1", COOLDOWN + 1) is None
    assert len(cache) == 1


def test_affinity_sweep_drops_expired_users_periodically() -> None:
    cache = AffinityCache(COOLDOWN, sweep_every=3)
    cache.record("old-1", "pro_a", 0.0)
    cache.record("old-2", "pro_b", 0.0)

    cache.record("fresh", "pro_a", COOLDOWN + 5)

    assert len(cache) == 1
    assert cache.get("fresh", COOLDOWN + 6) == ("pro_a", COOLDOWN + 5)


def test_pro_model_requires_flag() -> None:
    router = _router()

    with pytest.raises(Forbidden) as excinfo:
        router.route("gpt-4.1", RoutingContext(user_id="u1", user_plan="pro", pro_models_enabled=False))

    assert excinfo.value.tier == "pro"
    assert excinfo.value.message == "Pro models are not enabled."


def test_pro_model_requires_plan() -> None:
    router = _router()

    with pytest.raises(Forbidden) as excinfo:
        router.route("gpt-4.1", RoutingContext(user_id="u1", user_plan="free", pro_models_enabled=True))

    assert excinfo.value.message == "Pro models require an active pro plan."


def test_refused_request_records_nothing() -> None:
    router = _router()

    with pytest.raises(Forbidden):
        router.route("gpt-4.1", RoutingContext(user_id="u1"))

    assert len(router.affinity) == 0


def test_beta_model_requires_beta_flag_only() -> None:
    router = _router()

    with pytest.raises(Forbidden):
        router.route("grok-4", RoutingContext(user_id="u1"))

    decision = router.route("grok-4", RoutingContext(user_id="u1", beta_models_enabled=True))
    assert decision.provider_name == "beta"
    assert decision.upstream_model_id == "provider-2/grok-4"
    assert decision.endpoint_url == "https://beta.test/v1/chat/completions"
    assert decision.fallbacks == ("open",)


def test_catch_all_routes_unknown_models_without_fallbacks() -> None:
    router = _router()

    decision = router.route("mistral", RoutingContext())

    assert decision.provider_name == "open"
    assert decision.tier == "default"
    assert decision.fallbacks == ()
    assert decision.endpoint_url == "https://open.test/openai/chat/completions"


def test_primary_is_excluded_from_fallbacks() -> None:
    router = _router()
    router.cfg.rules[1].fallbacks = ["beta", "open"]

    decision = router.route("grok-4", RoutingContext(beta_models_enabled=True))

    assert decision.fallbacks == ("open",)


def test_public_model_allow_list() -> None:
    router = _router()

    assert router.is_public_model("mistral") is True
    assert router.is_public_model("gpt-4.1") is False


def test_no_matching_rule_is_forbidden() -> None:
    router = _router()
    router.cfg.rules.pop()

    with pytest.raises(Forbidden, match="not available"):
        router.route("unknown-model", RoutingContext())
