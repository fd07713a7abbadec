"""Rank-based estimators of the number of missing studies.

Both estimators of Duval & Tweedie (2000) work on effects that are
oriented so that studies are missing on the LEFT: the studies in
excess lie to the right of the centre.  With ``n`` studies, centred
values ``d = y - centre`` and signed ranks ``r* = rank(|d|) * sign(d)``:

* L0 = (4 T - n (n + 1)) / (2 n - 1), with T the sum of positive ranks;
* R0 = n - |min(r*)| - 1, i.e. the length of the run of right-most
  positive ranks minus one.

The count is the statistic rounded half up and floored at zero:
``floor(max(0, L0 + 0.5))`` and ``floor(max(0, R0))``.
"""

from __future__ import annotations

import math
from typing import Sequence, Union

import numpy as np
from scipy import stats

from ..core.models import EstimatorType, MissingEstimate


def signed_ranks(effects: Sequence[float], center: float) -> np.ndarray:
    """Ranks of absolute deviations from ``center``, carrying their sign."""
    centred = np.asarray(effects, dtype=float) - center
    return stats.rankdata(np.abs(centred)) * np.sign(centred)


def l0_statistic(r_star: np.ndarray) -> float:
    n = len(r_star)
    rank_sum = float(np.sum(r_star[r_star > 0]))
    return (4 * rank_sum - n * (n + 1)) / (2 * n - 1)


def r0_statistic(r_star: np.ndarray) -> float:
    n = len(r_star)
    return n - abs(float(np.min(r_star))) - 1.0


def estimate_missing(
    ordered_effects: Sequence[float],
    center: float,
    estimator: Union[EstimatorType, str] = EstimatorType.L,
) -> MissingEstimate:
    """Estimate how many studies are missing on the left of ``center``.

    Args:
        ordered_effects: All studies, sorted ascending after orientation.
        center: Current pooled estimate used as the axis of symmetry.
        estimator: ``"L"`` or ``"R"``.

    Returns:
        The raw statistic and the count of missing studies.  The
        count is not capped at ``k - 1``; the trim-and-fill iteration
        treats larger values as degenerate.
    """
    estimator = EstimatorType(estimator)
    r_star = signed_ranks(ordered_effects, center)
    if estimator == EstimatorType.L:
        statistic = l0_statistic(r_star)
        count = int(math.floor(max(0.0, statistic + 0.5)))
    else:
        statistic = r0_statistic(r_star)
        count = int(math.floor(max(0.0, statistic)))
    return MissingEstimate(estimator=estimator, count=count, statistic=float(statistic))
