"""Daily calorie estimate used when a nutrition request omits a target."""

from __future__ import annotations

import math

from .models import BodyData, FitnessGoal

DEFAULT_DAILY_CALORIES = 2000.0
# Moderate activity.
ACTIVITY_MULTIPLIER = 1.55

_DEFICIT_GOALS = {"weight_loss", "fat_loss", "减脂", "减重"}
_SURPLUS_GOALS = {"muscle_gain", "bulk", "增肌"}


def estimate_daily_calories(body_data: BodyData | None, goals: list[FitnessGoal]) -> float:
    """Mifflin-St Jeor BMR x activity, adjusted by the first goal, rounded to 50 kcal."""
    if body_data is None:
        return DEFAULT_DAILY_CALORIES

    bmr = 10 * body_data.weight + 6.25 * body_data.height - 5 * body_data.age
    bmr += 5 if body_data.gender == "male" else -161
    tdee = bmr * ACTIVITY_MULTIPLIER

    if goals:
        goal_type = goals[0].goal_type
        if goal_type in _DEFICIT_GOALS:
            tdee *= 0.85
        elif goal_type in _SURPLUS_GOALS:
            tdee *= 1.15

    # Round half up.
    return float(math.floor(tdee / 50 + 0.5) * 50)
