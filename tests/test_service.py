from __future__ import annotations

import json
import time

import pytest

from fitplan_api.app import providers
from fitplan_api.app.errors import ConfigurationError, UnsupportedProviderError
from fitplan_api.app.models import GenerateTrainingPlanRequest
from fitplan_api.app.orchestrator import PlanGenerator
from fitplan_api.app.providers import get_provider_client
from fitplan_api.app.registry import TaskRegistry
from fitplan_api.app.service import PlanGenerationService

from support import OWNER_ID, TRAINING_RESPONSE, FakeProviderClient

REQUEST = GenerateTrainingPlanRequest(
    plan_name="Block A",
    duration_weeks=2,
    goal="strength",
    difficulty_level="medium",
)


@pytest.fixture
def service(accounts, profiles, plan_repository, client_factory):
    built = PlanGenerationService(
        registry=TaskRegistry(),
        generator=PlanGenerator(max_retries=1, retry_delay_s=0.01),
        accounts=accounts,
        profiles=profiles,
        plans=plan_repository,
        client_factory=client_factory,
        max_workers=1,
    )
    yield built
    built.shutdown()


def _wait_terminal(service: PlanGenerationService, task_id: str, timeout_s: float = 5.0):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        record = service.get_task_status(task_id)
        if record is not None and record.status in {"completed", "failed"}:
            return record
        time.sleep(0.01)
    raise AssertionError("task did not finish")


def test_submit_returns_before_generation_finishes(
    service: PlanGenerationService, fake_client: FakeProviderClient
) -> None:
    fake_client.delay_s = 0.3

    started = time.monotonic()
    response = service.submit_training_plan(OWNER_ID, REQUEST)

    assert time.monotonic() - started < 0.2
    assert response.status == "pending"
    record = _wait_terminal(service, response.task_id)
    assert record.status == "completed"
    assert record.message == "Training plan generated"


def test_progress_observed_by_poller_never_decreases(
    service: PlanGenerationService, fake_client: FakeProviderClient
) -> None:
    fake_client.responses = ["not json", TRAINING_RESPONSE]
    fake_client.delay_s = 0.05
    task_id = service.submit_training_plan(OWNER_ID, REQUEST).task_id

    seen: list[int] = []
    messages: set[str] = set()
    while True:
        record = service.get_task_status(task_id)
        seen.append(record.progress)
        messages.add(record.message)
        if record.status in {"completed", "failed"}:
            break
        time.sleep(0.005)

    assert record.status == "completed"
    assert seen == sorted(seen)
    assert seen[-1] == 100
    assert "Generating training plan with AI (attempt 2/2)" in messages


def test_unknown_provider_creates_no_task(
    service: PlanGenerationService, fake_client: FakeProviderClient
) -> None:
    with pytest.raises(UnsupportedProviderError):
        service.submit_training_plan(OWNER_ID, REQUEST.model_copy(update={"ai_api_id": 3}))
    assert len(service.registry) == 0
    assert fake_client.calls == 0


def test_profile_lookup_failure_fails_task(service: PlanGenerationService) -> None:
    def broken(user_id: int):
        raise RuntimeError("profile service unavailable")

    service.profiles.get_latest_body_data = broken
    task_id = service.submit_training_plan(OWNER_ID, REQUEST).task_id

    record = _wait_terminal(service, task_id)
    assert record.status == "failed"
    assert record.error == "failed to load body data: profile service unavailable"


def test_cancel_and_get_status_for_unknown_task(service: PlanGenerationService) -> None:
    assert service.cancel_task("missing") is False
    assert service.get_task_status("missing") is None


def test_shutdown_fails_queued_and_running_tasks(
    accounts, profiles, plan_repository, client_factory, fake_client: FakeProviderClient
) -> None:
    fake_client.delay_s = 5.0
    service = PlanGenerationService(
        registry=TaskRegistry(),
        generator=PlanGenerator(max_retries=0),
        accounts=accounts,
        profiles=profiles,
        plans=plan_repository,
        client_factory=client_factory,
        max_workers=1,
    )
    running = service.submit_training_plan(OWNER_ID, REQUEST).task_id
    queued = service.submit_training_plan(OWNER_ID, REQUEST).task_id

    started = time.monotonic()
    service.shutdown(wait=True)

    assert time.monotonic() - started < 2.0
    for task_id in (running, queued):
        record = service.get_task_status(task_id)
        assert record.status == "failed"
        assert "cancelled" in record.error


def test_account_without_api_key_creates_no_task(
    service: PlanGenerationService, fake_client: FakeProviderClient
) -> None:
    with pytest.raises(ConfigurationError, match="API key is required"):
        service.submit_training_plan(OWNER_ID, REQUEST.model_copy(update={"ai_api_id": 4}))
    assert len(service.registry) == 0
    assert fake_client.calls == 0


def test_shutdown_after_generation_skips_saving(
    accounts, profiles, plan_repository
) -> None:
    class _ShutdownDuringCallClient(FakeProviderClient):
        def generate(self, prompt, config, *, cancel_event=None):
            # The reply is already in hand when shutdown lands.
            service.shutdown()
            return TRAINING_RESPONSE

    service = PlanGenerationService(
        registry=TaskRegistry(),
        generator=PlanGenerator(max_retries=0),
        accounts=accounts,
        profiles=profiles,
        plans=plan_repository,
        client_factory=lambda provider, *, timeout_s: _ShutdownDuringCallClient(),
        max_workers=1,
    )
    task_id = service.submit_training_plan(OWNER_ID, REQUEST).task_id

    record = _wait_terminal(service, task_id)
    assert record.status == "failed"
    assert record.error == "plan generation was cancelled before saving"
    assert plan_repository.training_plans == {}


class _FakeHTTPResponse:
    def __init__(self, payload: dict[str, object]) -> None:
        self._raw_body = json.dumps(payload).encode("utf-8")
        self.status = 200

    def read(self) -> bytes:
        return self._raw_body

    def __enter__(self) -> _FakeHTTPResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        _ = (exc_type, exc, tb)
        return False


def test_connectivity_check_reports_malformed_reply_as_failed(
    monkeypatch: pytest.MonkeyPatch, accounts, profiles, plan_repository
) -> None:
    monkeypatch.setattr(
        providers.request,
        "urlopen",
        lambda req, timeout: _FakeHTTPResponse({"choices": [{"message": None}]}),
    )
    service = PlanGenerationService(
        registry=TaskRegistry(),
        generator=PlanGenerator(max_retries=0),
        accounts=accounts,
        profiles=profiles,
        plans=plan_repository,
        client_factory=get_provider_client,
        max_workers=1,
    )

    result = service.test_provider_connection(1, OWNER_ID)
    service.shutdown()

    assert result.status == "failed"
    assert result.message == "no response from OpenAI"
    assert result.model_info.name == "gpt-3.5-turbo"
