"""Heterogeneity statistics derived from Cochran's Q.

Implements H and I² with the confidence limits of Higgins & Thompson
(2002), the Rb statistic of Crippa et al. (2016), and the Q-profile
confidence interval for the between-study variance tau² (Viechtbauer
2007).
"""

from __future__ import annotations

import math
from typing import Tuple

import numpy as np
from scipy import optimize, stats

from ..core.models import HeterogeneityStat

_NAN_STAT = HeterogeneityStat(value=math.nan, lower=math.nan, upper=math.nan)


def _z(level: float) -> float:
    return float(stats.norm.ppf(1 - (1 - level) / 2))


def calc_h(Q: float, df: int, level: float = 0.95) -> HeterogeneityStat:
    """H = sqrt(Q / df) with a log-scale confidence interval.

    The interval is centred on ``log(H)``; the estimate and both limits
    are truncated at 1 afterwards.  Undefined for fewer than three studies.
    """
    k = df + 1
    if k < 3 or not math.isfinite(Q):
        return _NAN_STAT
    H = math.sqrt(Q / df)
    if Q > k:
        se_log_h = 0.5 * (math.log(Q) - math.log(k - 1)) / (math.sqrt(2 * Q) - math.sqrt(2 * k - 3))
    else:
        se_log_h = math.sqrt(1 / (2 * (k - 2)) * (1 - 1 / (3 * (k - 2) ** 2)))
    z = _z(level)
    if H > 0:
        log_h = math.log(H)
        lower = math.exp(log_h - z * se_log_h)
        upper = math.exp(log_h + z * se_log_h)
    else:
        lower = upper = 0.0
    return HeterogeneityStat(value=max(H, 1.0), lower=max(lower, 1.0), upper=max(upper, 1.0))


def isquared(Q: float, df: int, level: float = 0.95) -> HeterogeneityStat:
    """I² = (H² - 1) / H² on the 0-1 scale, limits transformed from H."""
    h = calc_h(Q, df, level)

    def to_i2(x: float) -> float:
        return (x ** 2 - 1) / x ** 2 if math.isfinite(x) else math.nan

    return HeterogeneityStat(value=to_i2(h.value), lower=to_i2(h.lower), upper=to_i2(h.upper))


def calc_rb(ses: np.ndarray, tau2: float, lower_tau2: float, upper_tau2: float) -> HeterogeneityStat:
    """Rb: average share of each study's variance due to between-study variance.

    The interval plugs the tau² confidence limits into the same
    (monotone) expression.
    """
    ses = np.asarray(ses, dtype=float)
    ses = ses[np.isfinite(ses)]
    if len(ses) < 2 or not math.isfinite(tau2):
        return _NAN_STAT
    v = ses ** 2

    def rb(t2: float) -> float:
        if not math.isfinite(t2):
            return math.nan
        return float(np.mean(t2 / (t2 + v)))

    return HeterogeneityStat(value=rb(tau2), lower=rb(lower_tau2), upper=rb(upper_tau2))


def generalized_q(effects: np.ndarray, variances: np.ndarray, tau2: float) -> float:
    """Generalised Q statistic for a given between-study variance."""
    w = 1.0 / (variances + tau2)
    mu = np.sum(w * effects) / np.sum(w)
    return float(np.sum(w * (effects - mu) ** 2))


def _solve_tau2(effects: np.ndarray, variances: np.ndarray, target: float) -> float:
    """Root of ``generalized_q(tau2) == target`` on [0, inf); 0 if Q(0) <= target."""
    if generalized_q(effects, variances, 0.0) <= target:
        return 0.0
    upper = max(float(np.var(effects, ddof=1)), float(np.max(variances)), 1e-8)
    while generalized_q(effects, variances, upper) > target:
        upper *= 2.0
        if upper > 1e12:
            return math.inf
    return float(optimize.brentq(lambda t2: generalized_q(effects, variances, t2) - target, 0.0, upper, xtol=1e-12))


def tau2_confidence_interval(
    effects: np.ndarray,
    ses: np.ndarray,
    level: float = 0.95,
) -> Tuple[float, float]:
    """Q-profile confidence interval for tau²."""
    effects = np.asarray(effects, dtype=float)
    variances = np.asarray(ses, dtype=float) ** 2
    df = len(effects) - 1
    if df < 1:
        return math.nan, math.nan
    alpha = 1 - level
    lower = _solve_tau2(effects, variances, float(stats.chi2.ppf(1 - alpha / 2, df)))
    upper = _solve_tau2(effects, variances, float(stats.chi2.ppf(alpha / 2, df)))
    return lower, upper
