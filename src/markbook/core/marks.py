from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

MAX_SESSIONAL = 70.0
MAX_ATTENDANCE = 30.0
MAX_TOTAL = MAX_SESSIONAL + MAX_ATTENDANCE

SESSIONAL_FIELD = "sessional_score"
ATTENDANCE_FIELD = "attendance_score"

FIELD_LIMITS: dict[str, float] = {
    SESSIONAL_FIELD: MAX_SESSIONAL,
    ATTENDANCE_FIELD: MAX_ATTENDANCE,
}

GRADE_BANDS: list[tuple[float, str]] = [
    (90, "A+"),
    (80, "A"),
    (70, "B+"),
    (60, "B"),
    (50, "C"),
    (40, "D"),
    (0, "F"),
]

GRADES: tuple[str, ...] = tuple(letter for _, letter in GRADE_BANDS)


class MarkValidationError(ValueError):
    pass


class InvalidMarkError(MarkValidationError):
    def __init__(self, field: str, raw: Any) -> None:
        super().__init__(f"{field} must be a number, got {raw!r}")
        self.field = field
        self.raw = raw


class OutOfRangeError(MarkValidationError):
    def __init__(self, field: str, value: float, lower: float, upper: float) -> None:
        super().__init__(f"{field} must be between {lower:g} and {upper:g}, got {value:g}")
        self.field = field
        self.value = value
        self.lower = lower
        self.upper = upper


def derive_attendance_score(attendance_percentage: float) -> float:
    """Attendance contribution for a percentage in [0, 100], capped at MAX_ATTENDANCE.

    Rounds to one decimal with ties going up (7.5% gives 2.3, not 2.2).
    """
    score = Decimal(str(attendance_percentage)) * Decimal(str(MAX_ATTENDANCE)) / 100
    score = min(score, Decimal(str(MAX_ATTENDANCE)))
    return float(score.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def grade_from_total(total_score: float) -> str:
    for low, letter in GRADE_BANDS:
        if total_score >= low:
            return letter
    return "F"


def parse_mark_input(field: str, raw: Any) -> float:
    """
    Normalise an edited mark. A cleared field (None or blank text) counts as 0;
    anything that is not a finite number is rejected.
    """
    if raw is None:
        return 0.0
    if isinstance(raw, bool):
        raise InvalidMarkError(field, raw)
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            return 0.0
        try:
            value = float(text)
        except ValueError as exc:
            raise InvalidMarkError(field, raw) from exc
    else:
        raise InvalidMarkError(field, raw)

    if not math.isfinite(value):
        raise InvalidMarkError(field, raw)
    return value


def check_mark_range(field: str, value: float) -> float:
    try:
        upper = FIELD_LIMITS[field]
    except KeyError as exc:
        raise ValueError(f"Unsupported mark field: {field}") from exc
    if value < 0 or value > upper:
        raise OutOfRangeError(field, value, 0.0, upper)
    return value
