from __future__ import annotations

import random

import pytest

from wxconsensus.services.scoring import ScoreCell, absolute_error, fold_error, fold_errors, interval_for_lead


@pytest.mark.parametrize(
    "lead,bucket",
    [(1, "24h"), (24, "24h"), (25, "48h"), (30, "48h"), (48, "48h"), (49, "5d"), (120, "5d")],
)
def test_interval_for_lead(lead, bucket):
    assert interval_for_lead(lead) == bucket


def test_absolute_error():
    assert absolute_error(3.0, 4.5) == 1.5
    assert absolute_error(-2.0, -5.0) == 3.0


def test_first_fold_starts_the_mean():
    assert fold_error(None, 2.5) == ScoreCell(2.5, 1)
    assert fold_error(ScoreCell(), 2.5) == ScoreCell(2.5, 1)


@pytest.mark.parametrize("seed", range(10))
def test_incremental_mae_equals_batch_mean_in_any_order(seed):
    rng = random.Random(seed)
    errors = [abs(rng.gauss(0, 3)) for _ in range(rng.randint(1, 60))]
    batch_mean = sum(errors) / len(errors)

    for _ in range(5):
        shuffled = errors[:]
        rng.shuffle(shuffled)
        cell = fold_errors(None, shuffled)
        assert cell.hours_tracked == len(errors)
        assert cell.mean_absolute_error == pytest.approx(batch_mean, rel=1e-9, abs=1e-12)


def test_fold_continues_existing_cell():
    cell = fold_errors(None, [1.0, 2.0, 3.0])
    cell = fold_error(cell, 6.0)
    assert cell.hours_tracked == 4
    assert cell.mean_absolute_error == pytest.approx(3.0)
