from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from obsy_insights.auth import TokenAuthenticator
from obsy_insights.main import app, get_pipeline
from obsy_insights.pipeline import InsightPipeline
from obsy_insights.quota import QuotaLedger

from .utils import FIXED_NOW, GOOD_TOKEN, FakeRedis, fake_firestore


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def service(fake_redis):
    """The app wired to in-memory collaborators and a scripted model."""
    users = {"user-1": {"subscription_tier": "free"}}
    state = SimpleNamespace(redis=fake_redis, users=users, prompts=[], reply="", error=None)

    async def generate(prompt):
        state.prompts.append(prompt)
        if state.error is not None:
            raise state.error
        return state.reply

    fake_redis.set("auth_token:" + GOOD_TOKEN, "user-1")
    ledger = QuotaLedger(fake_redis, fake_firestore(users), clock=lambda: FIXED_NOW)
    state.config_missing = []
    pipeline = InsightPipeline(
        TokenAuthenticator(fake_redis),
        ledger,
        generate,
        config_check=lambda: state.config_missing,
    )
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    state.client = TestClient(app)
    state.headers = {"Authorization": f"Bearer {GOOD_TOKEN}"}
    yield state
    app.dependency_overrides.clear()
