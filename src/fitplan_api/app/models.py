"""Pydantic models shared across API, service, orchestrator, and storage.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Literal: restricts a field to a fixed set of allowed string values.
- frozen=True: instances cannot be mutated after construction.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Task lifecycle states exposed to polling callers.
TaskStatus = Literal["pending", "processing", "completed", "failed"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})

# Which kind of plan a task produces; status routes are scoped by kind.
PlanKind = Literal["training", "nutrition"]

DifficultyLevel = Literal["easy", "medium", "hard", "extreme"]

MACRO_RATIO_TOLERANCE = 0.01


class TaskStatusRecord(BaseModel):
    """Pollable status of one background generation task."""

    task_id: str
    kind: PlanKind
    status: TaskStatus = "pending"
    # Advisory only; never decreases.
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    # Populated only when status == "failed".
    error: str | None = None
    # Populated only when status == "completed".
    result: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class ProviderAccount(BaseModel):
    """A configured provider credential, already decrypted by its owner service."""

    model_config = ConfigDict(frozen=True)

    account_id: int
    # None marks a service-wide account any user may fall back to.
    user_id: int | None = None
    provider: str
    name: str = ""
    api_endpoint: str = ""
    api_key: str = Field(default="", repr=False)
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    is_default: bool = False


class BodyData(BaseModel):
    model_config = ConfigDict(frozen=True)

    age: int
    gender: Literal["male", "female", "other"]
    height: float
    weight: float
    body_fat_percentage: float | None = None
    muscle_percentage: float | None = None


class FitnessGoal(BaseModel):
    model_config = ConfigDict(frozen=True)

    goal_type: str
    goal_description: str | None = None
    target_weight: float | None = None
    deadline: date | None = None
    priority: int = 1


class FitnessAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    experience_level: Literal["beginner", "intermediate", "advanced"]
    weekly_available_days: int
    daily_available_minutes: int
    injury_history: str | None = None
    health_conditions: str | None = None
    equipment_available: list[str] = Field(default_factory=list)


class TrainingPlanParams(BaseModel):
    """Everything needed to render and run one training-plan generation."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    plan_name: str
    duration_weeks: int
    goal: str
    difficulty_level: DifficultyLevel
    ai_api_id: int
    assessment: FitnessAssessment | None = None
    body_data: BodyData | None = None
    fitness_goals: list[FitnessGoal] = Field(default_factory=list)


class NutritionPlanParams(BaseModel):
    """Everything needed to render and run one nutrition-plan generation."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    plan_name: str
    duration_days: int
    daily_calories: float
    protein_ratio: float
    carb_ratio: float
    fat_ratio: float
    dietary_restrictions: list[str] = Field(default_factory=list)
    preferences: list[str] = Field(default_factory=list)
    ai_api_id: int
    body_data: BodyData | None = None
    fitness_goals: list[FitnessGoal] = Field(default_factory=list)


class TrainingPlan(BaseModel):
    # Assigned by the plan repository on save.
    id: int | None = None
    user_id: int
    plan_name: str
    start_date: date
    end_date: date
    total_weeks: int
    difficulty_level: DifficultyLevel
    training_purpose: str | None = None
    ai_api_id: int
    plan_data: dict[str, Any]
    status: str = "active"


class NutritionPlan(BaseModel):
    id: int | None = None
    user_id: int
    plan_name: str
    start_date: date
    end_date: date
    daily_calories: float
    protein_ratio: float
    carb_ratio: float
    fat_ratio: float
    dietary_restrictions: list[str] = Field(default_factory=list)
    preferences: list[str] = Field(default_factory=list)
    ai_api_id: int
    plan_data: dict[str, Any]
    status: str = "active"


class GenerateTrainingPlanRequest(BaseModel):
    """Request body for POST /training-plans/generate."""

    plan_name: str = Field(min_length=1, max_length=200)
    duration_weeks: int = Field(ge=1, le=52)
    goal: str = Field(min_length=1, max_length=100)
    difficulty_level: DifficultyLevel
    # None means "use the caller's default provider account".
    ai_api_id: int | None = Field(default=None, ge=1)


class GenerateNutritionPlanRequest(BaseModel):
    """Request body for POST /nutrition-plans/generate."""

    plan_name: str = Field(min_length=1, max_length=200)
    duration_days: int = Field(ge=1, le=365)
    # None means "estimate from body data and goals".
    daily_calories: float | None = Field(default=None, ge=500, le=10000)
    protein_ratio: float = Field(ge=0, le=1)
    carb_ratio: float = Field(ge=0, le=1)
    fat_ratio: float = Field(ge=0, le=1)
    dietary_restrictions: list[str] = Field(default_factory=list)
    preferences: list[str] = Field(default_factory=list)
    ai_api_id: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _check_macro_ratios(self) -> GenerateNutritionPlanRequest:
        total = self.protein_ratio + self.carb_ratio + self.fat_ratio
        if abs(total - 1.0) > MACRO_RATIO_TOLERANCE:
            raise ValueError(f"macro ratios must sum to 1.0, got {total:.2f}")
        return self


class SubmitTaskResponse(BaseModel):
    """Response body returned immediately on submission."""

    task_id: str
    status: TaskStatus = "pending"
    message: str
    progress: int = 0
    # Rough seconds-to-completion hint for clients.
    estimated_time: int = 60


class ModelInfo(BaseModel):
    name: str = ""
    max_tokens: int = 0


class ConnectivityTestResult(BaseModel):
    status: Literal["success", "failed"]
    message: str
    response_time_ms: int
    model_info: ModelInfo = Field(default_factory=ModelInfo)
