"""Display-only helpers: unit conversion and labels. Scores never pass through here."""
from __future__ import annotations

KM_PER_MILE = 1.609344

SHORT_UNITS = {"miles": "mi", "kilometers": "km", "steps": "k"}


def convert_distance(value: float, from_unit: str, to_unit: str) -> float:
    if from_unit == to_unit:
        return value
    if (from_unit, to_unit) == ("miles", "kilometers"):
        return value * KM_PER_MILE
    if (from_unit, to_unit) == ("kilometers", "miles"):
        return value / KM_PER_MILE
    raise ValueError(f"cannot convert {from_unit} to {to_unit}")


def format_goal(goal: float, unit: str) -> str:
    # Miles keep one decimal (1.5 mi); km and steps are whole numbers
    if unit == "miles":
        return f"{goal:.1f}"
    return f"{goal:.0f}"


def format_distance(value: float, unit: str) -> str:
    return f"{format_goal(value, unit)} {SHORT_UNITS.get(unit, unit)}"


def format_duration(hours: int | None) -> str | None:
    if not hours:
        return None
    if hours < 24:
        return f"{hours} hour{'' if hours == 1 else 's'}"
    days = hours // 24
    if days == 7:
        return "1 week"
    if days == 14:
        return "2 weeks"
    if days == 30:
        return "1 month"
    return f"{days} day{'' if days == 1 else 's'}"


def lives_label(lives: int) -> str:
    return f"{lives} {'life' if lives == 1 else 'lives'}"
