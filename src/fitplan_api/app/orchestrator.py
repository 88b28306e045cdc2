"""Retrying plan generation on top of a provider client.

One generation request runs this loop:

    attempt 0 .. max_retries (inclusive)
      - wait ``retry_delay_s * 2 ** (attempt - 1)`` before every retry
        (interruptible by the cancel event)
      - render prompt -> provider.generate -> extract JSON -> validate
      - any call, parse, or validation failure is recorded and retried

Beginner terms:
- Backoff: growing pause between retries so a struggling backend can recover.
- Envelope: the top-level ``{"weeks": ...}`` / ``{"days": ...}`` object. Some
  backends drop it and answer with a bare array, which is wrapped back.
- Cancel event: ``threading.Event`` owned by the caller; once set, the loop
  stops at the next wait or during the in-flight provider call.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from datetime import date, timedelta
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import (
    AttemptsExhaustedError,
    ConfigurationError,
    GenerationCancelledError,
    PayloadError,
    ProviderError,
)
from .extractor import extract_json_array, extract_json_payload
from .models import NutritionPlan, NutritionPlanParams, TrainingPlan, TrainingPlanParams
from .prompts import build_nutrition_plan_prompt, build_training_plan_prompt
from .providers import ProviderClient, ProviderConfig

logger = logging.getLogger(__name__)

TPayload = TypeVar("TPayload", bound=BaseModel)

# Called before each attempt with (attempt_number, total_attempts), 1-based.
AttemptHook = Callable[[int, int], None]


class TrainingPlanPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    weeks: list[Any]


class NutritionPlanPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    days: list[Any]


def backoff_delay(base_delay_s: float, attempt: int) -> float:
    """Delay before ``attempt`` (0-based); the first attempt never waits."""
    if attempt <= 0:
        return 0.0
    return base_delay_s * (2 ** (attempt - 1))


class PlanGenerator:
    def __init__(self, *, max_retries: int = 3, retry_delay_s: float = 5.0) -> None:
        self.max_retries = max(0, max_retries)
        self.retry_delay_s = max(0.0, retry_delay_s)

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    def generate_training_plan(
        self,
        params: TrainingPlanParams,
        client: ProviderClient,
        config: ProviderConfig,
        *,
        cancel_event: threading.Event | None = None,
        on_attempt: AttemptHook | None = None,
    ) -> TrainingPlan:
        payload = self._generate_payload(
            render_prompt=lambda: build_training_plan_prompt(params),
            client=client,
            config=config,
            payload_model=TrainingPlanPayload,
            envelope_key="weeks",
            label="training plan",
            cancel_event=cancel_event,
            on_attempt=on_attempt,
        )
        start_date = date.today()
        return TrainingPlan(
            user_id=params.user_id,
            plan_name=params.plan_name,
            start_date=start_date,
            end_date=start_date + timedelta(days=params.duration_weeks * 7),
            total_weeks=params.duration_weeks,
            difficulty_level=params.difficulty_level,
            training_purpose=params.goal,
            ai_api_id=params.ai_api_id,
            plan_data=payload.model_dump(),
        )

    def generate_nutrition_plan(
        self,
        params: NutritionPlanParams,
        client: ProviderClient,
        config: ProviderConfig,
        *,
        cancel_event: threading.Event | None = None,
        on_attempt: AttemptHook | None = None,
    ) -> NutritionPlan:
        payload = self._generate_payload(
            render_prompt=lambda: build_nutrition_plan_prompt(params),
            client=client,
            config=config,
            payload_model=NutritionPlanPayload,
            envelope_key="days",
            label="nutrition plan",
            cancel_event=cancel_event,
            on_attempt=on_attempt,
        )
        start_date = date.today()
        return NutritionPlan(
            user_id=params.user_id,
            plan_name=params.plan_name,
            start_date=start_date,
            end_date=start_date + timedelta(days=params.duration_days),
            daily_calories=params.daily_calories,
            protein_ratio=params.protein_ratio,
            carb_ratio=params.carb_ratio,
            fat_ratio=params.fat_ratio,
            dietary_restrictions=list(params.dietary_restrictions),
            preferences=list(params.preferences),
            ai_api_id=params.ai_api_id,
            plan_data=payload.model_dump(),
        )

    def _generate_payload(
        self,
        *,
        render_prompt: Callable[[], str],
        client: ProviderClient,
        config: ProviderConfig,
        payload_model: type[TPayload],
        envelope_key: str,
        label: str,
        cancel_event: threading.Event | None,
        on_attempt: AttemptHook | None,
    ) -> TPayload:
        total = self.total_attempts
        last_error: Exception | None = None
        attempt_errors: list[str] = []

        for attempt in range(total):
            delay_s = backoff_delay(self.retry_delay_s, attempt)
            if delay_s > 0:
                if _interruptible_sleep(delay_s, cancel_event):
                    logger.info(
                        "generation event=cancelled label=%s attempt=%d/%d phase=backoff",
                        label,
                        attempt + 1,
                        total,
                    )
                    raise GenerationCancelledError("plan generation was cancelled during backoff")
            elif cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelledError()

            if on_attempt is not None:
                on_attempt(attempt + 1, total)

            try:
                response = client.generate(render_prompt(), config, cancel_event=cancel_event)
                return parse_plan_payload(response, payload_model, envelope_key=envelope_key)
            except (GenerationCancelledError, ConfigurationError):
                raise
            except (ProviderError, PayloadError) as exc:
                last_error = exc
                attempt_errors.append(f"attempt {attempt + 1}: {exc}")
                logger.warning(
                    "generation event=attempt_failed label=%s attempt=%d/%d reason=%s",
                    label,
                    attempt + 1,
                    total,
                    exc,
                )

        raise AttemptsExhaustedError(
            label=label,
            attempts=total,
            last_error=last_error,
            attempt_errors=attempt_errors,
        )


def parse_plan_payload(
    response: str,
    payload_model: type[TPayload],
    *,
    envelope_key: str,
) -> TPayload:
    """Extract, decode, and validate a plan payload from raw provider text."""
    candidate = extract_json_payload(response)
    if not candidate:
        raise PayloadError("no valid JSON found in response")

    parsed = _loads(candidate)
    if isinstance(parsed, dict) and envelope_key not in parsed:
        # A bare array of objects extracts as its first element; prefer the
        # array when it opens before that object.
        array_candidate = extract_json_array(response)
        if array_candidate and response.find(array_candidate) < response.find(candidate):
            parsed = _loads(array_candidate)

    if isinstance(parsed, list):
        parsed = {envelope_key: parsed}
    if not isinstance(parsed, dict):
        raise PayloadError("invalid plan structure: expected a JSON object")
    if envelope_key not in parsed:
        raise PayloadError(f"invalid plan structure: missing '{envelope_key}' field")

    try:
        return payload_model.model_validate(parsed)
    except ValidationError as exc:
        raise PayloadError(f"invalid plan structure: {exc.errors()[0]['msg']}") from exc


def _loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise PayloadError(f"failed to decode JSON: {exc.msg}") from exc


def _interruptible_sleep(delay_s: float, cancel_event: threading.Event | None) -> bool:
    """Sleep up to ``delay_s``; return True if cancelled first."""
    event = cancel_event if cancel_event is not None else threading.Event()
    return event.wait(delay_s)
