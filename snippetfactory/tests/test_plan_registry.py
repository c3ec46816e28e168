"""Tests for the plan registry (tiers, features, limits, config loading)."""

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from snippetfactory.core.config import settings
from snippetfactory.features.plans.service import (
    DEFAULT_PLANS,
    PlanRegistry,
    PlanRegistryError,
    get_plan_registry,
)
from snippetfactory.models.plan import (
    FEATURE_DISPLAY_NAMES,
    Feature,
    PlanDefinition,
    Resource,
    UNLIMITED,
    parse_limit,
)


def test_default_tiers_are_ordered(plan_registry):
    assert plan_registry.plan_ids == ["free", "basic", "pro", "enterprise"]
    assert plan_registry.lowest_plan.plan_id == "free"
    assert not plan_registry.is_paid("free")
    assert plan_registry.is_paid("pro")


def test_default_limits(plan_registry):
    assert plan_registry.limit("free", Resource.SNIPPETS) == 50
    assert plan_registry.limit("free", Resource.TEAM_MEMBERS) == 1
    assert plan_registry.limit("basic", Resource.SNIPPETS) == 100
    assert plan_registry.limit("pro", Resource.SNIPPETS) is UNLIMITED
    assert plan_registry.limit("pro", Resource.TEAM_MEMBERS) == 10
    assert plan_registry.limit("enterprise", Resource.TEAM_MEMBERS) is UNLIMITED


def test_free_has_no_features_and_enterprise_has_all(plan_registry):
    assert plan_registry.features("free") == frozenset()
    assert plan_registry.features("enterprise") == frozenset(Feature)


def test_pro_features(plan_registry):
    assert plan_registry.has_feature("pro", Feature.API_ACCESS)
    assert plan_registry.has_feature("pro", Feature.TEAM_MANAGEMENT)
    assert not plan_registry.has_feature("pro", Feature.SSO)
    assert not plan_registry.has_feature("pro", Feature.WHITE_LABEL)


def test_unknown_plan_is_most_restrictive(plan_registry):
    assert plan_registry.get("platinum").plan_id == "free"
    assert plan_registry.get(None).plan_id == "free"
    assert plan_registry.features("platinum") == frozenset()
    assert plan_registry.limit("platinum", Resource.SNIPPETS) == 50


def test_cheapest_plan_with_feature(plan_registry):
    assert plan_registry.cheapest_plan_with(Feature.ANALYTICS).plan_id == "basic"
    assert plan_registry.cheapest_plan_with(Feature.API_ACCESS).plan_id == "pro"
    assert plan_registry.cheapest_plan_with(Feature.SSO).plan_id == "enterprise"


def test_cheapest_plan_above_for_resource(plan_registry):
    assert plan_registry.cheapest_plan_above("free", Resource.SNIPPETS).plan_id == "basic"
    assert plan_registry.cheapest_plan_above("free", Resource.TEAM_MEMBERS).plan_id == "pro"
    assert plan_registry.cheapest_plan_above("pro", Resource.SNIPPETS) is None


def test_api_rate_limits(plan_registry):
    assert plan_registry.api_rate_limit("free") == 0
    assert plan_registry.api_rate_limit("pro") == 100
    assert plan_registry.api_rate_limit("enterprise") == 10000


def test_every_feature_has_a_display_name():
    assert set(FEATURE_DISPLAY_NAMES) == set(Feature)
    assert PlanRegistry.display_name(Feature.SSO) == "Single Sign-On (SSO)"


@pytest.mark.parametrize("raw", [-1, None, "unlimited", "UNLIMITED", UNLIMITED])
def test_parse_limit_unlimited_spellings(raw):
    assert parse_limit(raw) is UNLIMITED


def test_parse_limit_rejects_bad_values():
    with pytest.raises(ValueError):
        parse_limit(-5)
    with pytest.raises(ValueError):
        parse_limit(True)


def test_unlimited_is_not_a_number():
    assert UNLIMITED != -1
    assert not isinstance(UNLIMITED, int)


def test_plan_definition_is_immutable():
    plan = get_plan_registry().get("pro")
    with pytest.raises(PydanticValidationError):
        plan.rank = 99


def test_plan_limits_cannot_be_mutated_through_registry(plan_registry):
    plan = plan_registry.get("free")
    with pytest.raises(TypeError):
        plan.limits[Resource.SNIPPETS] = 5
    assert plan_registry.limit("free", Resource.SNIPPETS) == 50
    assert plan_registry.get("free").limits[Resource.SNIPPETS] == 50


def test_plan_definition_requires_every_resource():
    with pytest.raises(PydanticValidationError):
        PlanDefinition(plan_id="x", name="X", rank=0, paid=False, limits={"snippet": 1})


def test_registry_rejects_paid_lowest_tier():
    config = {
        "starter": {**DEFAULT_PLANS["basic"], "rank": 0},
    }
    with pytest.raises(PlanRegistryError):
        PlanRegistry.from_mapping(config)


def test_registry_rejects_duplicate_ranks():
    config = {
        "free": DEFAULT_PLANS["free"],
        "other": {**DEFAULT_PLANS["basic"], "rank": 0},
    }
    with pytest.raises(PlanRegistryError):
        PlanRegistry.from_mapping(config)


def test_registry_loaded_from_json_file(tmp_path, monkeypatch):
    config = {
        "plans": {
            "free": {
                "name": "Free",
                "rank": 0,
                "paid": False,
                "features": [],
                "limits": {"snippet": 5, "team_member": 0},
            },
            "team": {
                "name": "Team",
                "rank": 1,
                "features": ["team_management", "api_access"],
                "limits": {"snippet": -1, "team_member": 25},
                "api_rate_limit_per_hour": 500,
            },
        }
    }
    path = tmp_path / "plans.json"
    path.write_text(json.dumps(config), encoding="utf-8")
    monkeypatch.setattr(settings, "PLAN_REGISTRY_PATH", str(path))
    get_plan_registry.cache_clear()

    registry = get_plan_registry()
    assert registry.plan_ids == ["free", "team"]
    assert registry.limit("free", Resource.SNIPPETS) == 5
    assert registry.limit("team", Resource.SNIPPETS) is UNLIMITED
    assert registry.cheapest_plan_with(Feature.API_ACCESS).plan_id == "team"
    assert registry.api_rate_limit("team") == 500


def test_registry_is_loaded_once(plan_registry):
    assert get_plan_registry() is plan_registry
