from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass
class ScoreCell:
    mean_absolute_error: float = 0.0
    hours_tracked: int = 0


def interval_for_lead(lead_time_hours: int) -> str:
    """Lead-time bucket a scored forecast counts towards."""
    if lead_time_hours <= 24:
        return "24h"
    if lead_time_hours <= 48:
        return "48h"
    return "5d"


def absolute_error(forecasted: float, actual: float) -> float:
    return abs(forecasted - actual)


def fold_error(cell: Optional[ScoreCell], error: float) -> ScoreCell:
    """
    Incremental mean: (mae * n + e) / (n + 1).

    Folding e_1..e_N one at a time yields mean(e_1..e_N) up to float rounding.
    """
    if cell is None or cell.hours_tracked <= 0:
        return ScoreCell(mean_absolute_error=float(error), hours_tracked=1)
    n = cell.hours_tracked
    return ScoreCell(
        mean_absolute_error=(cell.mean_absolute_error * n + error) / (n + 1),
        hours_tracked=n + 1,
    )


def fold_errors(cell: Optional[ScoreCell], errors: Iterable[float]) -> ScoreCell:
    out = cell if cell is not None else ScoreCell()
    for e in errors:
        out = fold_error(out, e)
    return out
