# tools/macro_calculator.py

from __future__ import annotations

from schemas.nutrition_schemas import PhysicalProfile, TargetVector

ACTIVITY_FACTORS = {
    "sedentary":         1.2,
    "lightly_active":    1.375,
    "light":             1.375,
    "moderately_active": 1.55,
    "moderate":          1.55,
    "active":            1.725,
    "very_active":       1.9,
    "very active":       1.9,
}

GOAL_CALORIE_ADJUSTMENT = {
    "weight_loss":        -0.20,
    "maintenance":         0.0,
    "muscle_gain":         0.15,
    "body_recomposition": -0.10,
}

PROTEIN_G_PER_KG = {
    "weight_loss":        1.2,
    "maintenance":        1.0,
    "muscle_gain":        1.6,
    "body_recomposition": 1.4,
}

FAT_SHARE            = 0.30
MIN_CARB_SHARE       = 0.10
FIBER_G_PER_1000KCAL = 14.0


def calculate_macros(age: int, gender: str, weight: float, height: float,
                     activity_level: str, goal: str) -> dict:
    """
    Calculate calorie needs and macro breakdown.
    weight in kg, height in cm
    """

    # 1️⃣ BMR Calculation (Mifflin-St Jeor Equation)
    if gender.lower() == "male":
        bmr = 10 * weight + 6.25 * height - 5 * age + 5
    else:
        bmr = 10 * weight + 6.25 * height - 5 * age - 161

    # 2️⃣ Activity Factor
    factor = ACTIVITY_FACTORS.get(activity_level.lower(), 1.2)
    maintenance_calories = bmr * factor

    # 3️⃣ Goal Adjustment
    target_calories = maintenance_calories * (1 + GOAL_CALORIE_ADJUSTMENT.get(goal, 0.0))

    # 4️⃣ Protein by body weight, heavier bodies need a bit more
    bmi = weight / (height / 100) ** 2
    protein = weight * PROTEIN_G_PER_KG.get(goal, 1.0)
    if bmi > 30:
        protein *= 1.1

    # 5️⃣ Fat fixed share, carbs take the remainder
    fats = target_calories * FAT_SHARE / 9
    carb_calories = max(
        target_calories - protein * 4 - fats * 9,
        target_calories * MIN_CARB_SHARE,
    )
    carbs = carb_calories / 4

    return {
        "target_calories": round(target_calories),
        "macros": {
            "protein_g": round(protein, 1),
            "carbs_g":   round(carbs, 1),
            "fat_g":     round(fats, 1),
            "fiber_g":   round(target_calories / 1000 * FIBER_G_PER_1000KCAL, 1),
        },
    }


def compute_targets(profile: PhysicalProfile, goal_type: str) -> TargetVector:
    """Goal-type tag + physiological profile -> TargetVector."""
    result = calculate_macros(
        age=profile.age,
        gender=profile.gender,
        weight=profile.weight_kg,
        height=profile.height_cm,
        activity_level=profile.activity_level,
        goal=goal_type,
    )
    return TargetVector(calories=result["target_calories"], **result["macros"])
