"""Plan repositories: where finished plans are handed off.

Beginner terms:
- Migration: creating tables before normal reads/writes.
- JSONB: PostgreSQL JSON type used for the generated plan payload.
- Row factory: returns query rows as dict-like objects instead of tuples.
"""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any, Protocol

from .errors import PersistenceError
from .models import NutritionPlan, TrainingPlan


class PlanRepository(Protocol):
    def migrate(self) -> None: ...

    def save_training_plan(self, plan: TrainingPlan) -> TrainingPlan: ...

    def save_nutrition_plan(self, plan: NutritionPlan) -> NutritionPlan: ...


class InMemoryPlanRepository:
    """Thread-safe in-memory repository for local runs and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._next_id = 1
        self.training_plans: dict[int, TrainingPlan] = {}
        self.nutrition_plans: dict[int, NutritionPlan] = {}

    def migrate(self) -> None:
        return None

    def save_training_plan(self, plan: TrainingPlan) -> TrainingPlan:
        with self._lock:
            stored = plan.model_copy(update={"id": self._allocate_id()}, deep=True)
            self.training_plans[stored.id] = stored
        return stored

    def save_nutrition_plan(self, plan: NutritionPlan) -> NutritionPlan:
        with self._lock:
            stored = plan.model_copy(update={"id": self._allocate_id()}, deep=True)
            self.nutrition_plans[stored.id] = stored
        return stored

    def _allocate_id(self) -> int:
        plan_id = self._next_id
        self._next_id += 1
        return plan_id


class PostgresPlanRepository:
    """Persist generated plans in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("FITPLAN_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS training_plans (
                    id BIGSERIAL PRIMARY KEY,
                    user_id BIGINT NOT NULL,
                    plan_name TEXT NOT NULL,
                    start_date DATE NOT NULL,
                    end_date DATE NOT NULL,
                    total_weeks INTEGER NOT NULL,
                    difficulty_level TEXT NOT NULL,
                    training_purpose TEXT,
                    ai_api_id BIGINT NOT NULL,
                    plan_data JSONB NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_training_plans_user_id
                ON training_plans(user_id)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS nutrition_plans (
                    id BIGSERIAL PRIMARY KEY,
                    user_id BIGINT NOT NULL,
                    plan_name TEXT NOT NULL,
                    start_date DATE NOT NULL,
                    end_date DATE NOT NULL,
                    daily_calories NUMERIC(7, 2) NOT NULL,
                    protein_ratio NUMERIC(3, 2) NOT NULL,
                    carb_ratio NUMERIC(3, 2) NOT NULL,
                    fat_ratio NUMERIC(3, 2) NOT NULL,
                    dietary_restrictions JSONB NOT NULL DEFAULT '[]'::jsonb,
                    preferences JSONB NOT NULL DEFAULT '[]'::jsonb,
                    ai_api_id BIGINT NOT NULL,
                    plan_data JSONB NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_nutrition_plans_user_id
                ON nutrition_plans(user_id)
                """)
            conn.commit()

    def save_training_plan(self, plan: TrainingPlan) -> TrainingPlan:
        now = datetime.now(tz=UTC)
        row = self._insert_returning_id(
            """
            INSERT INTO training_plans (
                user_id,
                plan_name,
                start_date,
                end_date,
                total_weeks,
                difficulty_level,
                training_purpose,
                ai_api_id,
                plan_data,
                status,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                plan.user_id,
                plan.plan_name,
                plan.start_date,
                plan.end_date,
                plan.total_weeks,
                plan.difficulty_level,
                plan.training_purpose,
                plan.ai_api_id,
                self._json_wrapper(plan.plan_data),
                plan.status,
                now,
                now,
            ),
        )
        return plan.model_copy(update={"id": int(row["id"])})

    def save_nutrition_plan(self, plan: NutritionPlan) -> NutritionPlan:
        now = datetime.now(tz=UTC)
        row = self._insert_returning_id(
            """
            INSERT INTO nutrition_plans (
                user_id,
                plan_name,
                start_date,
                end_date,
                daily_calories,
                protein_ratio,
                carb_ratio,
                fat_ratio,
                dietary_restrictions,
                preferences,
                ai_api_id,
                plan_data,
                status,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                plan.user_id,
                plan.plan_name,
                plan.start_date,
                plan.end_date,
                plan.daily_calories,
                plan.protein_ratio,
                plan.carb_ratio,
                plan.fat_ratio,
                self._json_wrapper(plan.dietary_restrictions),
                self._json_wrapper(plan.preferences),
                plan.ai_api_id,
                self._json_wrapper(plan.plan_data),
                plan.status,
                now,
                now,
            ),
        )
        return plan.model_copy(update={"id": int(row["id"])})

    def _insert_returning_id(self, sql: str, params: tuple[Any, ...]) -> Any:
        try:
            with self._lock, self._connect() as conn:
                row = conn.execute(sql, params).fetchone()
                conn.commit()
        except self._psycopg.Error as exc:
            raise PersistenceError(f"failed to save plan: {exc}") from exc
        if row is None or row.get("id") is None:
            raise PersistenceError("failed to save plan: no id returned")
        return row

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json
