"""Render plan-generation parameters into provider prompts.

Both builders are pure functions. Optional context sections are appended only
when the underlying data exists; an absent section is omitted entirely rather
than rendered as an empty placeholder.
"""

from __future__ import annotations

from .models import BodyData, FitnessGoal, NutritionPlanParams, TrainingPlanParams

TRAINING_PLAN_SCHEMA = """{
  "weeks": [
    {
      "week": 1,
      "days": [
        {
          "day": 1,
          "date": "YYYY-MM-DD",
          "type": "strength|cardio|rest",
          "focus_area": "upper_body|lower_body|full_body|cardio",
          "exercises": [
            {
              "name": "中文动作名称",
              "sets": 4,
              "reps": "8-10",
              "weight": "70kg or bodyweight",
              "rest": "90s",
              "difficulty": "easy|medium|hard",
              "safety_notes": "标准姿势与注意事项（中文，简洁）"
            }
          ],
          "duration": 60,
          "estimated_calories": 350
        }
      ]
    }
  ]
}"""

NUTRITION_PLAN_SCHEMA = """{
  "days": [
    {
      "day": 1,
      "date": "YYYY-MM-DD",
      "meals": {
        "breakfast": {
          "time": "07:00-08:00",
          "foods": [
            {
              "name": "Food name",
              "amount": "100g",
              "calories": 200,
              "protein": 10,
              "carbs": 25,
              "fat": 5,
              "fiber": 3
            }
          ],
          "total_calories": 450
        },
        "lunch": { ... },
        "dinner": { ... },
        "snacks": { ... }
      },
      "daily_totals": {
        "calories": 2000,
        "protein": 150,
        "carbs": 200,
        "fat": 67
      }
    }
  ]
}"""

TRAINING_PLAN_RULES = [
    "Progressively increases in difficulty",
    "Includes proper rest days",
    "Balances different muscle groups",
    "Considers any injuries or health conditions",
    "Fits within the user's available time",
    "Includes safety notes for complex exercises",
    "Uses Chinese exercise names and Chinese safety notes",
]

NUTRITION_PLAN_RULES = [
    "Meets the specified calorie and macro targets",
    "Respects all dietary restrictions",
    "Includes variety across days",
    "Provides balanced nutrition",
    "Includes meal timing suggestions",
    "Lists specific portion sizes",
]


def build_training_plan_prompt(params: TrainingPlanParams) -> str:
    lines = [
        f"Generate a detailed {params.duration_weeks}-week training plan "
        "with the following specifications:",
        "",
        f"Goal: {params.goal}",
        f"Difficulty Level: {params.difficulty_level}",
        f"Plan Name: {params.plan_name}",
        "",
    ]

    assessment = params.assessment
    if assessment is not None:
        lines.extend(
            [
                "User Assessment:",
                f"- Experience Level: {assessment.experience_level}",
                f"- Weekly Available Days: {assessment.weekly_available_days}",
                f"- Daily Available Minutes: {assessment.daily_available_minutes}",
            ]
        )
        if assessment.injury_history:
            lines.append(f"- Injury History: {assessment.injury_history}")
        if assessment.health_conditions:
            lines.append(f"- Health Conditions: {assessment.health_conditions}")
        if assessment.equipment_available:
            lines.append(f"- Equipment Available: {', '.join(assessment.equipment_available)}")

    lines.extend(_body_data_section(params.body_data, include_body_fat=True))
    lines.extend(_fitness_goals_section(params.fitness_goals))
    lines.extend(_closing_block(TRAINING_PLAN_SCHEMA, TRAINING_PLAN_RULES, key="weeks"))
    return "\n".join(lines)


def build_nutrition_plan_prompt(params: NutritionPlanParams) -> str:
    lines = [
        f"Generate a detailed {params.duration_days}-day nutrition plan "
        "with the following specifications:",
        "",
        f"Plan Name: {params.plan_name}",
        f"Daily Calories: {params.daily_calories:.0f} kcal",
        "Macronutrient Ratios:",
        f"- Protein: {params.protein_ratio * 100:.0f}%",
        f"- Carbohydrates: {params.carb_ratio * 100:.0f}%",
        f"- Fat: {params.fat_ratio * 100:.0f}%",
        "",
    ]
    if params.dietary_restrictions:
        lines.append(f"Dietary Restrictions: {', '.join(params.dietary_restrictions)}")
    if params.preferences:
        lines.append(f"Preferences: {', '.join(params.preferences)}")

    lines.extend(_body_data_section(params.body_data, include_body_fat=False))
    lines.extend(_fitness_goals_section(params.fitness_goals))
    lines.extend(_closing_block(NUTRITION_PLAN_SCHEMA, NUTRITION_PLAN_RULES, key="days"))
    return "\n".join(lines)


def _body_data_section(body_data: BodyData | None, *, include_body_fat: bool) -> list[str]:
    if body_data is None:
        return []
    section = [
        "",
        "User Body Data:",
        f"- Age: {body_data.age}",
        f"- Gender: {body_data.gender}",
        f"- Height: {body_data.height:.2f} cm",
        f"- Weight: {body_data.weight:.2f} kg",
    ]
    if include_body_fat and body_data.body_fat_percentage is not None:
        section.append(f"- Body Fat: {body_data.body_fat_percentage:.2f}%")
    return section


def _fitness_goals_section(goals: list[FitnessGoal]) -> list[str]:
    if not goals:
        return []
    section = ["", "Fitness Goals:"]
    for goal in goals:
        if goal.goal_description:
            section.append(f"- {goal.goal_type}: {goal.goal_description}")
        else:
            section.append(f"- {goal.goal_type}")
    return section


def _closing_block(schema: str, rules: list[str], *, key: str) -> list[str]:
    block = [
        "",
        "Please generate a comprehensive plan in JSON format with the following structure:",
        schema,
        "",
        "Ensure the plan:",
    ]
    block.extend(f"{index}. {rule}" for index, rule in enumerate(rules, start=1))
    block.extend(
        [
            "",
            "Return ONLY the JSON object, no additional text.",
            'The response must start with "{" and end with "}".',
            f'If you cannot generate the full plan, return {{"{key}": []}}.',
        ]
    )
    return block
