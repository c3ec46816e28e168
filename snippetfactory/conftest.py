# snippetfactory/conftest.py
import os

import pytest

# Settings are read at import time; set test defaults before any app import
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("ENV", "test")
os.environ.pop("TEST_DATABASE_URL", None)

from sqlalchemy import update  # noqa: E402

from snippetfactory.core import database  # noqa: E402
from snippetfactory.features.plans.service import get_plan_registry  # noqa: E402
from snippetfactory.features.principals.service import (  # noqa: E402
    assign_plan,
    get_or_create_principal,
    get_principal,
)
from snippetfactory.features.usage.service import get_usage_recorder  # noqa: E402


@pytest.fixture(scope="function", autouse=True)
def db_url(tmp_path):
    """
    Fresh SQLite file database per test.

    A file (not :memory:) so that threads get separate connections and
    real lock contention, like a server database.
    """
    url = f"sqlite:///{tmp_path / 'snippetfactory_test.db'}"
    database.init_engine(url)
    database.create_all_tables()
    yield url
    database.dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def plan_registry():
    get_plan_registry.cache_clear()
    yield get_plan_registry()
    get_plan_registry.cache_clear()


@pytest.fixture(scope="function", autouse=True)
def usage_recorder(db_url):
    """Per-test recorder; pending writes are drained before the database goes away."""
    get_usage_recorder.cache_clear()
    recorder = get_usage_recorder()
    yield recorder
    recorder.flush(timeout=5)
    recorder.shutdown(wait=True)
    get_usage_recorder.cache_clear()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from snippetfactory.main import app

    return TestClient(app)


@pytest.fixture
def make_principal():
    """Create a principal on a plan, optionally with preset counters."""

    def _make(
        user_id: str,
        plan: str = "free",
        *,
        email=None,
        snippet_count=None,
        team_member_count=None,
        **plan_kwargs,
    ):
        get_or_create_principal(user_id, email=email)
        if plan != get_plan_registry().lowest_plan.plan_id or plan_kwargs:
            assign_plan(user_id, plan, **plan_kwargs)
        counters = {}
        if snippet_count is not None:
            counters["snippet_count"] = snippet_count
        if team_member_count is not None:
            counters["team_member_count"] = team_member_count
        if counters:
            with database.get_db_session() as session:
                session.execute(
                    update(database.users).where(database.users.c.user_id == user_id).values(**counters)
                )
        return get_principal(user_id)

    return _make


def user_headers(user_id: str) -> dict:
    return {"X-User-Id": user_id}


@pytest.fixture
def headers_for():
    return user_headers
