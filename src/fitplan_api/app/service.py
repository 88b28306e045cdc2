"""Submission, background execution, and cancellation of plan generation tasks.

Beginner terms:
- Detached unit: the background job that runs after the HTTP call returned;
  it owns the task from ``pending`` until a terminal state.
- Cancel event: one ``threading.Event`` per running task. Setting it stops
  the retry loop at its next wait or while a provider call is in flight.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar

from .calories import estimate_daily_calories
from .errors import (
    ConfigurationError,
    GenerationCancelledError,
    PlanGenerationError,
    ProviderAccountForbiddenError,
    ProviderAccountNotFoundError,
)
from .models import (
    TERMINAL_STATUSES,
    ConnectivityTestResult,
    GenerateNutritionPlanRequest,
    GenerateTrainingPlanRequest,
    ModelInfo,
    NutritionPlanParams,
    PlanKind,
    ProviderAccount,
    SubmitTaskResponse,
    TaskStatusRecord,
    TrainingPlanParams,
)
from .orchestrator import PlanGenerator
from .providers import (
    DEFAULT_MAX_TOKENS,
    REQUEST_TIMEOUT_S,
    ProviderClient,
    ProviderConfig,
    get_provider_client,
)
from .registry import TaskRegistry
from .sources import ProfileSource, ProviderAccountSource
from .storage import PlanRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[..., ProviderClient]


class _StageFailure(Exception):
    """A step of the detached unit failed; message is the task's error."""


class PlanGenerationService:
    def __init__(
        self,
        *,
        registry: TaskRegistry,
        generator: PlanGenerator,
        accounts: ProviderAccountSource,
        profiles: ProfileSource,
        plans: PlanRepository,
        client_factory: ClientFactory = get_provider_client,
        provider_timeout_s: float = REQUEST_TIMEOUT_S,
        max_workers: int = 10,
    ) -> None:
        self.registry = registry
        self.generator = generator
        self.accounts = accounts
        self.profiles = profiles
        self.plans = plans
        self._client_factory = client_factory
        self._provider_timeout_s = provider_timeout_s
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="plan-gen")
        self._events_lock = threading.Lock()
        self._cancel_events: dict[str, threading.Event] = {}
        self._futures: dict[str, Future[None]] = {}

    def submit_training_plan(
        self, user_id: int, request: GenerateTrainingPlanRequest
    ) -> SubmitTaskResponse:
        account = self._resolve_account(user_id, request.ai_api_id)
        client = self._prepare_client(account)
        task_id = self._schedule(
            "training",
            lambda task_id, cancel_event: self._run_training(
                task_id, user_id, request, account, client, cancel_event
            ),
        )
        logger.info(
            "plan_task event=submitted task_id=%s kind=training user_id=%s provider=%s",
            task_id,
            user_id,
            account.provider,
        )
        return SubmitTaskResponse(
            task_id=task_id, message="Training plan generation task created"
        )

    def submit_nutrition_plan(
        self, user_id: int, request: GenerateNutritionPlanRequest
    ) -> SubmitTaskResponse:
        account = self._resolve_account(user_id, request.ai_api_id)
        client = self._prepare_client(account)
        task_id = self._schedule(
            "nutrition",
            lambda task_id, cancel_event: self._run_nutrition(
                task_id, user_id, request, account, client, cancel_event
            ),
        )
        logger.info(
            "plan_task event=submitted task_id=%s kind=nutrition user_id=%s provider=%s",
            task_id,
            user_id,
            account.provider,
        )
        return SubmitTaskResponse(
            task_id=task_id, message="Nutrition plan generation task created"
        )

    def get_task_status(self, task_id: str, kind: PlanKind | None = None) -> TaskStatusRecord | None:
        record = self.registry.get(task_id)
        if record is None or (kind is not None and record.kind != kind):
            return None
        return record

    def cancel_task(self, task_id: str) -> bool:
        """Signal cancellation; False when the task is unknown or already finished."""
        with self._events_lock:
            event = self._cancel_events.get(task_id)
        record = self.registry.get(task_id)
        if event is None or record is None or record.status in TERMINAL_STATUSES:
            return False
        event.set()
        logger.info("plan_task event=cancel_requested task_id=%s", task_id)
        return True

    def shutdown(self, *, wait: bool = False) -> None:
        """Cancel every task; running units fail themselves at their next cancel check."""
        with self._events_lock:
            pending = dict(self._cancel_events)
            futures = dict(self._futures)
        for event in pending.values():
            event.set()
        self._pool.shutdown(wait=wait, cancel_futures=True)
        # Queued units that never started would otherwise stay pending forever.
        for task_id, future in futures.items():
            if future.cancelled():
                self._fail(task_id, "plan generation was cancelled: service shutting down")

    def test_provider_connection(self, account_id: int, user_id: int) -> ConnectivityTestResult:
        account = self.accounts.get_account(account_id)
        if account is None:
            raise ProviderAccountNotFoundError(f"AI API {account_id} not found")
        if account.user_id is not None and account.user_id != user_id:
            raise ProviderAccountForbiddenError(f"AI API {account_id} does not belong to user")

        client = self._client_factory(account.provider, timeout_s=self._provider_timeout_s)
        config = ProviderConfig.from_account(account)
        model_info = ModelInfo(
            name=config.model or getattr(client, "default_model", ""),
            max_tokens=config.max_tokens or DEFAULT_MAX_TOKENS,
        )
        started = time.perf_counter()
        try:
            client.verify_connectivity(config)
        except PlanGenerationError as exc:
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.warning(
                "provider_test event=failed account_id=%s provider=%s reason=%s",
                account_id,
                account.provider,
                exc,
            )
            return ConnectivityTestResult(
                status="failed",
                message=str(exc),
                response_time_ms=elapsed_ms,
                model_info=model_info,
            )
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "provider_test event=succeeded account_id=%s provider=%s elapsed_ms=%d",
            account_id,
            account.provider,
            elapsed_ms,
        )
        return ConnectivityTestResult(
            status="success",
            message="connection succeeded",
            response_time_ms=elapsed_ms,
            model_info=model_info,
        )

    def _resolve_account(self, user_id: int, account_id: int | None) -> ProviderAccount:
        if account_id is None:
            account = self.accounts.get_default_account(user_id)
            if account is None:
                raise ConfigurationError("no default AI API configured")
            return account

        account = self.accounts.get_account(account_id)
        if account is None:
            raise ProviderAccountNotFoundError(f"AI API {account_id} not found")
        if account.user_id is not None and account.user_id != user_id:
            raise ProviderAccountForbiddenError(f"AI API {account_id} does not belong to user")
        return account

    def _prepare_client(self, account: ProviderAccount) -> ProviderClient:
        client = self._client_factory(account.provider, timeout_s=self._provider_timeout_s)
        client.validate_config(ProviderConfig.from_account(account))
        return client

    def _schedule(self, kind: PlanKind, work: Callable[[str, threading.Event], Any]) -> str:
        record = self.registry.create(kind, message="Task created, waiting to be processed")
        event = threading.Event()
        with self._events_lock:
            self._cancel_events[record.task_id] = event
            self._futures[record.task_id] = self._pool.submit(
                self._execute, record.task_id, kind, work, event
            )
        return record.task_id

    def _execute(
        self,
        task_id: str,
        kind: PlanKind,
        work: Callable[[str, threading.Event], Any],
        cancel_event: threading.Event,
    ) -> None:
        logger.info("plan_task event=processing task_id=%s kind=%s", task_id, kind)
        try:
            if cancel_event.is_set():
                raise GenerationCancelledError()
            stored = work(task_id, cancel_event)
        except GenerationCancelledError as exc:
            logger.info("plan_task event=cancelled task_id=%s kind=%s", task_id, kind)
            self._fail(task_id, str(exc))
        except _StageFailure as exc:
            logger.warning(
                "plan_task event=failed task_id=%s kind=%s reason=%s", task_id, kind, exc
            )
            self._fail(task_id, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("plan_task event=failed task_id=%s kind=%s", task_id, kind)
            self._fail(task_id, f"unexpected error: {exc}")
        else:
            self.registry.update(
                task_id,
                status="completed",
                progress=100,
                message=f"{kind.capitalize()} plan generated",
                result=stored.model_dump(mode="json"),
            )
            logger.info(
                "plan_task event=completed task_id=%s kind=%s plan_id=%s",
                task_id,
                kind,
                stored.id,
            )
        finally:
            with self._events_lock:
                self._cancel_events.pop(task_id, None)
                self._futures.pop(task_id, None)

    def _run_training(
        self,
        task_id: str,
        user_id: int,
        request: GenerateTrainingPlanRequest,
        account: ProviderAccount,
        client: ProviderClient,
        cancel_event: threading.Event,
    ) -> Any:
        self._progress(task_id, 10, "Collecting user data")
        assessment = _stage(
            "failed to load fitness assessment", self.profiles.get_latest_assessment, user_id
        )
        self._progress(task_id, 20, "Loading body data")
        body_data = _stage("failed to load body data", self.profiles.get_latest_body_data, user_id)
        self._progress(task_id, 30, "Loading fitness goals")
        goals = _stage("failed to load fitness goals", self.profiles.get_active_goals, user_id)

        params = TrainingPlanParams(
            user_id=user_id,
            plan_name=request.plan_name,
            duration_weeks=request.duration_weeks,
            goal=request.goal,
            difficulty_level=request.difficulty_level,
            ai_api_id=account.account_id,
            assessment=assessment,
            body_data=body_data,
            fitness_goals=goals,
        )
        self._progress(task_id, 50, "Generating training plan with AI")
        plan = _stage(
            "AI plan generation failed",
            self.generator.generate_training_plan,
            params,
            client,
            ProviderConfig.from_account(account),
            cancel_event=cancel_event,
            on_attempt=self._attempt_hook(task_id, "training plan"),
        )
        _raise_if_cancelled(cancel_event)
        self._progress(task_id, 80, "Saving training plan")
        return _stage("failed to save plan", self.plans.save_training_plan, plan)

    def _run_nutrition(
        self,
        task_id: str,
        user_id: int,
        request: GenerateNutritionPlanRequest,
        account: ProviderAccount,
        client: ProviderClient,
        cancel_event: threading.Event,
    ) -> Any:
        self._progress(task_id, 10, "Collecting user data")
        body_data = _stage("failed to load body data", self.profiles.get_latest_body_data, user_id)
        self._progress(task_id, 20, "Loading fitness goals")
        goals = _stage("failed to load fitness goals", self.profiles.get_active_goals, user_id)
        self._progress(task_id, 30, "Estimating daily calories")
        daily_calories = request.daily_calories
        if daily_calories is None:
            daily_calories = estimate_daily_calories(body_data, goals)

        params = NutritionPlanParams(
            user_id=user_id,
            plan_name=request.plan_name,
            duration_days=request.duration_days,
            daily_calories=daily_calories,
            protein_ratio=request.protein_ratio,
            carb_ratio=request.carb_ratio,
            fat_ratio=request.fat_ratio,
            dietary_restrictions=request.dietary_restrictions,
            preferences=request.preferences,
            ai_api_id=account.account_id,
            body_data=body_data,
            fitness_goals=goals,
        )
        self._progress(task_id, 50, "Generating nutrition plan with AI")
        plan = _stage(
            "AI plan generation failed",
            self.generator.generate_nutrition_plan,
            params,
            client,
            ProviderConfig.from_account(account),
            cancel_event=cancel_event,
            on_attempt=self._attempt_hook(task_id, "nutrition plan"),
        )
        _raise_if_cancelled(cancel_event)
        self._progress(task_id, 80, "Saving nutrition plan")
        return _stage("failed to save plan", self.plans.save_nutrition_plan, plan)

    def _attempt_hook(self, task_id: str, label: str) -> Callable[[int, int], None]:
        def on_attempt(attempt: int, total: int) -> None:
            self._progress(task_id, 50, f"Generating {label} with AI (attempt {attempt}/{total})")

        return on_attempt

    def _progress(self, task_id: str, progress: int, message: str) -> None:
        self.registry.update(task_id, status="processing", progress=progress, message=message)

    def _fail(self, task_id: str, error: str) -> None:
        record = self.registry.get(task_id)
        progress = record.progress if record is not None else 0
        self.registry.update(
            task_id,
            status="failed",
            progress=progress,
            message="Plan generation failed",
            error=error,
        )


def _stage(prefix: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    try:
        return fn(*args, **kwargs)
    except GenerationCancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise _StageFailure(f"{prefix}: {exc}") from exc


def _raise_if_cancelled(cancel_event: threading.Event) -> None:
    # Last point where a cancelled unit can stop without leaving a stored plan.
    if cancel_event.is_set():
        raise GenerationCancelledError("plan generation was cancelled before saving")
