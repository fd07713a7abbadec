"""Funnel plot asymmetry and the side on which studies are missing."""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np
from scipy import stats

from ..core.errors import InputShapeError, InsufficientDataError
from ..core.models import AsymmetryTest, Side
from ..utils.logging import get_logger

logger = get_logger(__name__)


def egger_test(effects: Sequence[float], ses: Sequence[float], k_min: int = 3) -> AsymmetryTest:
    """Egger's linear regression test for funnel plot asymmetry.

    Regresses the standardised effect ``effect / se`` on the precision
    ``1 / se``.  The intercept measures small-study bias: a positive
    value means that less precise studies report larger effects.  When
    all studies share the same precision the slope is undefined (NaN) and
    the bias is the mean standardised effect.

    Raises:
        InputShapeError: If ``effects`` and ``ses`` differ in length.
        InsufficientDataError: With fewer than ``k_min`` finite studies.
    """
    effects = np.asarray(effects, dtype=float)
    ses = np.asarray(ses, dtype=float)
    if len(effects) != len(ses):
        raise InputShapeError(f"'effects' and 'ses' must have equal length ({len(effects)} != {len(ses)})")
    keep = np.isfinite(effects) & np.isfinite(ses)
    effects, ses = effects[keep], ses[keep]
    k = len(effects)
    if k < k_min:
        raise InsufficientDataError(
            f"Need at least {k_min} studies for Egger's test, got {k}",
            k=k,
            required=k_min,
        )
    precision = 1.0 / ses
    standardised = effects / ses
    if np.ptp(precision) == 0:
        # Precision is collinear with the intercept: fit the intercept alone
        bias = float(np.mean(standardised))
        slope = math.nan
        df = k - 1
        se_bias = float(np.std(standardised, ddof=1) / math.sqrt(k))
    else:
        fit = stats.linregress(precision, standardised)
        bias = float(fit.intercept)
        slope = float(fit.slope)
        df = k - 2
        se_bias = float(fit.intercept_stderr)
    if se_bias > 0:
        statistic = bias / se_bias
        p_value = float(2 * stats.t.sf(abs(statistic), df))
    else:
        statistic = math.copysign(math.inf, bias) if bias != 0 else 0.0
        p_value = 0.0 if bias != 0 else 1.0
    return AsymmetryTest(
        bias=bias,
        se_bias=se_bias,
        slope=slope,
        statistic=statistic,
        df=df,
        pvalue=p_value,
        k=k,
    )


def detect_side(
    effects: Sequence[float],
    ses: Sequence[float],
    side: Optional[Side] = None,
) -> Side:
    """Side of the funnel on which studies are presumed missing.

    An explicit ``side`` is returned unchanged.  Otherwise studies are
    missing on the left when Egger's test estimates a positive bias and
    on the right otherwise.
    """
    if side is not None:
        return Side(side)
    test = egger_test(effects, ses, k_min=3)
    detected = Side.LEFT if np.sign(test.bias) == 1 else Side.RIGHT
    logger.info(f"Egger bias {test.bias:.4f} (p={test.pvalue:.4f}); studies assumed missing on the {detected.value}")
    return detected
