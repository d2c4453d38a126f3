from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from markbook.core.marks import GRADES, grade_from_total


class EmptyCohortError(ValueError):
    pass


@dataclass(frozen=True)
class CohortStats:
    count: int
    mean: float
    max: float
    min: float
    grade_distribution: dict[str, int]

    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "mean": round(self.mean, 2),
            "max": self.max,
            "min": self.min,
            "grade_distribution": dict(self.grade_distribution),
        }


def grade_distribution(totals: Iterable[float]) -> dict[str, int]:
    counts = {letter: 0 for letter in GRADES}
    for total in totals:
        counts[grade_from_total(total)] += 1
    return counts


def summarize_totals(totals: Iterable[float]) -> CohortStats:
    values = list(totals)
    if not values:
        raise EmptyCohortError("Cannot summarise an empty cohort")
    return CohortStats(
        count=len(values),
        mean=sum(values) / len(values),
        max=max(values),
        min=min(values),
        grade_distribution=grade_distribution(values),
    )


def summarize(store) -> CohortStats:
    """Statistics over the live totals of every record, saved or not."""
    return summarize_totals(record.total_score for record in store)
