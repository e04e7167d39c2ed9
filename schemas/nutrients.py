"""
schemas/nutrients.py

Nutrient key catalogue shared by the rollup, trend and insight layers.

Keys follow the `<name>_<unit>` convention used by the intake log, e.g.
`protein_g`, `sodium_mg`, `vitamin_d_ug`. `calories` is the only unitless key.
The catalogue is informational: unknown keys are carried through untouched.
"""

from __future__ import annotations


# ── Macros ────────────────────────────────────────────────────────────────────
MACRO_KEYS: tuple[str, ...] = ("calories", "protein_g", "carbs_g", "fat_g")

CALORIES_PER_GRAM: dict[str, float] = {
    "protein_g": 4.0,
    "carbs_g":   4.0,
    "fat_g":     9.0,
}

# ── Full catalogue ────────────────────────────────────────────────────────────
NUTRIENT_KEYS: tuple[str, ...] = (
    *MACRO_KEYS,
    "fiber_g",
    # fats
    "saturated_fat_g", "monounsaturated_fat_g", "polyunsaturated_fat_g",
    "trans_fat_g", "cholesterol_mg",
    # sugars
    "total_sugars_g", "added_sugars_g",
    # minerals
    "sodium_mg", "potassium_mg", "calcium_mg", "iron_mg", "magnesium_mg",
    "zinc_mg", "phosphorus_mg", "copper_mg", "manganese_mg", "selenium_ug",
    # vitamins
    "vitamin_a_ug", "vitamin_c_mg", "vitamin_d_ug", "vitamin_e_mg",
    "vitamin_k_ug", "thiamin_b1_mg", "riboflavin_b2_mg", "niacin_b3_mg",
    "vitamin_b6_mg", "folate_b9_ug", "vitamin_b12_ug",
    "pantothenic_acid_b5_mg", "choline_mg",
)

# Nutrients where intake above target is penalised instead of capped.
MINIMIZE_NUTRIENTS: frozenset[str] = frozenset({
    "sodium_mg",
    "saturated_fat_g",
    "trans_fat_g",
    "added_sugars_g",
    "cholesterol_mg",
})

# Default daily amounts used when a TargetVector has no override for a key.
# Limits (sodium, saturated fat, added sugars, cholesterol) are upper bounds.
REFERENCE_INTAKES: dict[str, float] = {
    "fiber_g":         25.0,
    "saturated_fat_g": 20.0,
    "added_sugars_g":  50.0,
    "cholesterol_mg":  300.0,
    "sodium_mg":       2300.0,
    "potassium_mg":    2600.0,
    "calcium_mg":      1000.0,
    "iron_mg":         18.0,
    "magnesium_mg":    310.0,
    "zinc_mg":         8.0,
    "vitamin_a_ug":    700.0,
    "vitamin_c_mg":    75.0,
    "vitamin_d_ug":    15.0,
    "vitamin_b12_ug":  2.4,
    "folate_b9_ug":    400.0,
}


def nutrient_label(key: str) -> str:
    """`iron_mg` -> `iron`, `vitamin_b12_ug` -> `vitamin_b12`."""
    head, _, unit = key.rpartition("_")
    if head and unit in {"g", "mg", "ug"}:
        return head
    return key
