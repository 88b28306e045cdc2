from __future__ import annotations

import time
from collections.abc import Callable, Iterator

import pytest
from fastapi.testclient import TestClient

from fitplan_api.app.models import BodyData, ProviderAccount
from fitplan_api.app.providers import get_provider_client
from fitplan_api.app.settings import Settings
from fitplan_api.app.sources import InMemoryProfileSource, InMemoryProviderAccountSource
from fitplan_api.app.storage import InMemoryPlanRepository
from fitplan_api.main import create_app

from support import OTHER_USER_ID, OWNER_ID, FakeProviderClient


@pytest.fixture
def fake_client() -> FakeProviderClient:
    return FakeProviderClient()


@pytest.fixture
def client_factory(fake_client: FakeProviderClient) -> Callable[..., FakeProviderClient]:
    def factory(provider: str, *, timeout_s: float) -> FakeProviderClient:
        # Real lookup keeps unknown provider names failing the same way.
        get_provider_client(provider, timeout_s=timeout_s)
        return fake_client

    return factory


@pytest.fixture
def accounts() -> InMemoryProviderAccountSource:
    return InMemoryProviderAccountSource(
        [
            ProviderAccount(
                account_id=1,
                user_id=OWNER_ID,
                provider="openai",
                name="my openai",
                api_key="sk-owner",
                is_default=True,
            ),
            ProviderAccount(
                account_id=2,
                user_id=OTHER_USER_ID,
                provider="tongyi",
                name="someone else",
                api_key="sk-other",
                is_default=True,
            ),
            ProviderAccount(
                account_id=3,
                user_id=OWNER_ID,
                provider="claude-x",
                name="unsupported backend",
                api_key="sk-unknown",
            ),
            ProviderAccount(
                account_id=4,
                user_id=OWNER_ID,
                provider="openai",
                name="missing key",
                api_key="",
            ),
        ]
    )


@pytest.fixture
def profiles() -> InMemoryProfileSource:
    source = InMemoryProfileSource()
    source.set_body_data(
        OWNER_ID,
        BodyData(age=30, gender="male", height=180.0, weight=80.0, body_fat_percentage=18.5),
    )
    return source


@pytest.fixture
def plan_repository() -> InMemoryPlanRepository:
    return InMemoryPlanRepository()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_name="fitplan-test",
        max_retries=2,
        retry_delay_s=0.01,
        max_concurrent_generations=4,
    )


@pytest.fixture
def build_client(
    accounts: InMemoryProviderAccountSource,
    profiles: InMemoryProfileSource,
    plan_repository: InMemoryPlanRepository,
    client_factory: Callable[..., FakeProviderClient],
    settings: Settings,
) -> Iterator[Callable[..., TestClient]]:
    opened: list[TestClient] = []

    def build(**overrides: object) -> TestClient:
        options: dict[str, object] = {
            "plan_repository": plan_repository,
            "accounts": accounts,
            "profiles": profiles,
            "client_factory": client_factory,
            "settings_override": settings,
        }
        options.update(overrides)
        test_client = TestClient(create_app(**options))
        test_client.__enter__()
        opened.append(test_client)
        return test_client

    yield build
    for test_client in opened:
        test_client.__exit__(None, None, None)


@pytest.fixture
def client(build_client: Callable[..., TestClient]) -> TestClient:
    return build_client()


@pytest.fixture
def wait_for_task() -> Callable[..., dict[str, object]]:
    def wait(
        test_client: TestClient, path: str, *, timeout_s: float = 5.0
    ) -> dict[str, object]:
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            response = test_client.get(path)
            assert response.status_code == 200
            body = response.json()
            if body["status"] in {"completed", "failed"}:
                return body
            time.sleep(0.01)
        raise AssertionError(f"task at {path} did not finish within {timeout_s}s")

    return wait
