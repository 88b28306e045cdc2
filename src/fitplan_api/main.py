"""FastAPI application wiring for the plan generation service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: startup/shutdown hook; shutdown cancels in-flight generations.
- app.state: shared runtime objects (registry, service) reused by routes.
- X-User-Id: caller identity set by the upstream gateway after authentication.
"""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request

from .app.errors import (
    ConfigurationError,
    PlanGenerationError,
    ProviderAccountForbiddenError,
    ProviderAccountNotFoundError,
)
from .app.models import (
    ConnectivityTestResult,
    GenerateNutritionPlanRequest,
    GenerateTrainingPlanRequest,
    PlanKind,
    SubmitTaskResponse,
    TaskStatusRecord,
)
from .app.orchestrator import PlanGenerator
from .app.providers import get_provider_client, supported_providers
from .app.registry import TaskRegistry
from .app.service import ClientFactory, PlanGenerationService
from .app.settings import Settings, get_settings
from .app.sources import (
    InMemoryProfileSource,
    InMemoryProviderAccountSource,
    ProfileSource,
    ProviderAccountSource,
)
from .app.storage import PlanRepository, PostgresPlanRepository

logger = logging.getLogger(__name__)

# Serializes first-request initialization when lifespan did not run.
_runtime_lock = threading.Lock()


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    plan_repository: PlanRepository | None,
    accounts: ProviderAccountSource | None,
    profiles: ProfileSource | None,
    client_factory: ClientFactory | None,
) -> None:
    with _runtime_lock:
        if hasattr(app.state, "service"):
            return
        _build_runtime_state(
            app,
            settings=settings,
            plan_repository=plan_repository,
            accounts=accounts,
            profiles=profiles,
            client_factory=client_factory,
        )


def _build_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    plan_repository: PlanRepository | None,
    accounts: ProviderAccountSource | None,
    profiles: ProfileSource | None,
    client_factory: ClientFactory | None,
) -> None:
    if plan_repository is None:
        if not settings.database_url:
            raise RuntimeError("FITPLAN_DATABASE_URL is required before starting the app.")
        plan_repository = PostgresPlanRepository(settings.database_url)
    plan_repository.migrate()

    if accounts is None:
        service_account = settings.service_account()
        accounts = InMemoryProviderAccountSource([service_account] if service_account else [])

    app.state.settings = settings
    app.state.registry = TaskRegistry()
    app.state.service = PlanGenerationService(
        registry=app.state.registry,
        generator=PlanGenerator(
            max_retries=settings.max_retries,
            retry_delay_s=settings.retry_delay_s,
        ),
        accounts=accounts,
        profiles=profiles if profiles is not None else InMemoryProfileSource(),
        plans=plan_repository,
        client_factory=client_factory or get_provider_client,
        provider_timeout_s=settings.provider_timeout_s,
        max_workers=settings.max_concurrent_generations,
    )
    logger.info(
        "app event=runtime_ready env=%s max_retries=%d max_workers=%d",
        settings.app_env,
        settings.max_retries,
        settings.max_concurrent_generations,
    )


def create_app(
    *,
    plan_repository: PlanRepository | None = None,
    accounts: ProviderAccountSource | None = None,
    profiles: ProfileSource | None = None,
    client_factory: ClientFactory | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    """Application factory; every collaborator can be overridden for tests."""
    settings = settings_override or get_settings()
    runtime: dict[str, Any] = {
        "settings": settings,
        "plan_repository": plan_repository,
        "accounts": accounts,
        "profiles": profiles,
        "client_factory": client_factory,
    }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, **runtime)
        yield
        app.state.service.shutdown()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if plan_repository is not None:
        _ensure_runtime_state(app, **runtime)

    def _service(request: Request) -> PlanGenerationService:
        if not hasattr(request.app.state, "service"):
            _ensure_runtime_state(request.app, **runtime)
        return request.app.state.service

    def _status_or_404(request: Request, task_id: str, kind: PlanKind) -> TaskStatusRecord:
        record = _service(request).get_task_status(task_id, kind)
        if record is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return record

    def _cancel(request: Request, task_id: str, kind: PlanKind) -> TaskStatusRecord:
        _status_or_404(request, task_id, kind)
        if not _service(request).cancel_task(task_id):
            raise HTTPException(status_code=409, detail="Task already finished")
        return _status_or_404(request, task_id, kind)

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/providers")
    def providers() -> dict[str, list[str]]:
        return {"providers": supported_providers()}

    @app.post("/training-plans/generate", response_model=SubmitTaskResponse)
    def generate_training_plan(
        payload: GenerateTrainingPlanRequest,
        request: Request,
        x_user_id: int = Header(alias="X-User-Id"),
    ) -> SubmitTaskResponse:
        try:
            return _service(request).submit_training_plan(x_user_id, payload)
        except PlanGenerationError as exc:
            raise _http_error(exc) from exc

    @app.get("/training-plans/tasks/{task_id}", response_model=TaskStatusRecord)
    def get_training_task(task_id: str, request: Request) -> TaskStatusRecord:
        return _status_or_404(request, task_id, "training")

    @app.post("/training-plans/tasks/{task_id}/cancel", response_model=TaskStatusRecord)
    def cancel_training_task(task_id: str, request: Request) -> TaskStatusRecord:
        return _cancel(request, task_id, "training")

    @app.post("/nutrition-plans/generate", response_model=SubmitTaskResponse)
    def generate_nutrition_plan(
        payload: GenerateNutritionPlanRequest,
        request: Request,
        x_user_id: int = Header(alias="X-User-Id"),
    ) -> SubmitTaskResponse:
        try:
            return _service(request).submit_nutrition_plan(x_user_id, payload)
        except PlanGenerationError as exc:
            raise _http_error(exc) from exc

    @app.get("/nutrition-plans/tasks/{task_id}", response_model=TaskStatusRecord)
    def get_nutrition_task(task_id: str, request: Request) -> TaskStatusRecord:
        return _status_or_404(request, task_id, "nutrition")

    @app.post("/nutrition-plans/tasks/{task_id}/cancel", response_model=TaskStatusRecord)
    def cancel_nutrition_task(task_id: str, request: Request) -> TaskStatusRecord:
        return _cancel(request, task_id, "nutrition")

    @app.post("/ai-apis/{account_id}/test", response_model=ConnectivityTestResult)
    def test_provider(
        account_id: int,
        request: Request,
        x_user_id: int = Header(alias="X-User-Id"),
    ) -> ConnectivityTestResult:
        try:
            return _service(request).test_provider_connection(account_id, x_user_id)
        except PlanGenerationError as exc:
            raise _http_error(exc) from exc

    return app


def _http_error(exc: PlanGenerationError) -> HTTPException:
    if isinstance(exc, ProviderAccountNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ProviderAccountForbiddenError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=str(exc))
    logger.error("app event=unhandled_error error=%s", exc)
    return HTTPException(status_code=500, detail=str(exc))


app = create_app()
