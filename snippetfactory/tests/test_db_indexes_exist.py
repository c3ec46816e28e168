"""
Schema checks for the indexes and constraints the quota and metering
paths depend on.
"""

from sqlalchemy import inspect

from snippetfactory.core.database import get_engine


def _indexes(table):
    return {idx["name"]: idx for idx in inspect(get_engine()).get_indexes(table)}


def test_api_key_hash_is_uniquely_indexed():
    indexes = _indexes("api_keys")
    assert "uq_api_keys_key_hash" in indexes, "Missing unique index on key_hash"
    assert indexes["uq_api_keys_key_hash"]["unique"]


def test_usage_events_window_index():
    indexes = _indexes("usage_events")
    assert "idx_usage_events_user_feature_occurred" in indexes, \
        "Missing composite index on (user_id, feature, occurred_at)"
    assert indexes["idx_usage_events_user_feature_occurred"]["column_names"] == [
        "user_id",
        "feature",
        "occurred_at",
    ]


def test_app_users_counter_checks():
    checks = {c["name"] for c in inspect(get_engine()).get_check_constraints("app_users")}
    assert "ck_app_users_snippet_count_nonneg" in checks
    assert "ck_app_users_team_member_count_nonneg" in checks


def test_team_members_unique_per_owner():
    uniques = inspect(get_engine()).get_unique_constraints("team_members")
    assert any(set(u["column_names"]) == {"team_owner_id", "user_id"} for u in uniques)


def test_snippets_creator_index():
    assert "idx_snippets_creator_created" in _indexes("snippets")
