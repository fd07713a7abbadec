"""Inverse-variance meta-analysis engine.

This module defines the :class:`MetaAnalyzer` class for pooling a
collection of effect sizes.  It supports both fixed effect and random
effects models (DerSimonian-Laird or Paule-Mandel estimators for the
between-study variance, optional Hartung-Knapp adjustment), Cochran's Q,
prediction intervals and the H, I² and Rb heterogeneity measures.  The
trim-and-fill procedure uses it both for the centre during iteration and
for the final summary of the augmented data.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import optimize, stats

from ..core.errors import InsufficientDataError
from ..core.models import (
    LOG_SCALE_MEASURES,
    MetaSummary,
    PooledEstimate,
    PoolingModel,
    TauMethod,
)
from ..core.studyset import StudySet
from ..utils.logging import get_logger
from .heterogeneity import calc_h, calc_rb, generalized_q, isquared, tau2_confidence_interval

logger = get_logger(__name__)


def _z(level: float) -> float:
    return float(stats.norm.ppf(1 - (1 - level) / 2))


class MetaAnalyzer:
    """Perform meta-analysis on a set of effect sizes.

    The analyser implements both fixed effect and random effects
    models.  Studies flagged as excluded, or with a missing effect or
    standard error, are reported with their individual confidence
    intervals but receive zero weight.
    """

    def __init__(
        self,
        method_tau: Union[TauMethod, str] = TauMethod.DL,
        level: float = 0.95,
        level_comb: Optional[float] = None,
        hakn: bool = False,
        level_predict: Optional[float] = None,
        null_effect: float = 0.0,
        sm: str = "",
        prediction: bool = False,
    ) -> None:
        self.method_tau = TauMethod(method_tau)
        self.level = level
        self.level_comb = level if level_comb is None else level_comb
        self.hakn = hakn
        self.level_predict = level if level_predict is None else level_predict
        self.null_effect = null_effect
        self.sm = sm
        self.prediction = prediction

    def compute_pooled_effect(
        self,
        effects: np.ndarray,
        ses: np.ndarray,
        method: Union[PoolingModel, str] = PoolingModel.RANDOM,
    ) -> PooledEstimate:
        """Compute the pooled effect size across a set of studies.

        Args:
            effects: Effects of the studies to pool (no missing values).
            ses: Their standard errors.
            method: Either ``'fixed'`` or ``'random'`` to select the
                pooling approach.

        Returns:
            The pooled estimate with its standard error, confidence
            interval, test statistic and p-value.
        """
        method = PoolingModel(method)
        effects = np.asarray(effects, dtype=float)
        ses = np.asarray(ses, dtype=float)
        k = len(effects)
        if k == 0:
            raise InsufficientDataError("No effect sizes provided", k=0, required=1)
        weights = 1.0 / (ses ** 2)
        if method == PoolingModel.RANDOM:
            tau_squared = self._estimate_tau_squared(effects, ses, weights)
            weights = 1.0 / (ses ** 2 + tau_squared)
        pooled_effect = float(np.sum(weights * effects) / np.sum(weights))
        pooled_se = float(np.sqrt(1.0 / np.sum(weights)))
        df: Optional[int] = None
        if method == PoolingModel.RANDOM and self.hakn and k > 1:
            q = float(np.sum(weights * (effects - pooled_effect) ** 2)) / (k - 1)
            pooled_se = math.sqrt(q / float(np.sum(weights)))
            df = k - 1
        if df is None:
            crit = _z(self.level_comb)
        else:
            crit = float(stats.t.ppf(1 - (1 - self.level_comb) / 2, df))
        statistic = (pooled_effect - self.null_effect) / pooled_se if pooled_se > 0 else 0.0
        if df is None:
            p_value = 2 * (1 - stats.norm.cdf(abs(statistic)))
        else:
            p_value = 2 * (1 - stats.t.cdf(abs(statistic), df))
        return PooledEstimate(
            model=method,
            effect=pooled_effect,
            se=pooled_se,
            lower=pooled_effect - crit * pooled_se,
            upper=pooled_effect + crit * pooled_se,
            statistic=float(statistic),
            pvalue=float(p_value),
            level=self.level_comb,
            df=df,
        )

    def _estimate_tau_squared(
        self,
        effects: np.ndarray,
        ses: np.ndarray,
        weights: np.ndarray,
    ) -> float:
        """Estimate between-study variance (tau²)."""
        k = len(effects)
        if k < 2:
            return 0.0
        if self.method_tau == TauMethod.PM:
            return self._paule_mandel(effects, ses ** 2)
        pooled = np.sum(weights * effects) / np.sum(weights)
        Q = np.sum(weights * (effects - pooled) ** 2)
        df = k - 1
        c = np.sum(weights) - np.sum(weights ** 2) / np.sum(weights)
        tau_squared = max(0.0, (Q - df) / c) if c > 0 else 0.0
        return float(tau_squared)

    @staticmethod
    def _paule_mandel(effects: np.ndarray, variances: np.ndarray) -> float:
        """Paule-Mandel: the tau² at which the generalised Q equals k - 1."""
        df = len(effects) - 1
        if generalized_q(effects, variances, 0.0) <= df:
            return 0.0
        upper = max(float(np.var(effects, ddof=1)), 1e-8)
        while generalized_q(effects, variances, upper) > df:
            upper *= 2.0
        return float(optimize.brentq(lambda t2: generalized_q(effects, variances, t2) - df, 0.0, upper, xtol=1e-12))

    def pool(self, studies: StudySet) -> MetaSummary:
        """Pool a study set under both fixed and random effects models.

        Raises:
            InsufficientDataError: If no study is usable.
        """
        sel = studies.usable_mask()
        k = int(sel.sum())
        if k == 0:
            raise InsufficientDataError("No usable studies to pool", k=0, required=1)
        effects = studies.effects[sel]
        ses = studies.ses[sel]

        # Individual studies
        z = _z(self.level)
        with np.errstate(divide="ignore", invalid="ignore"):
            lower = studies.effects - z * studies.ses
            upper = studies.effects + z * studies.ses
            zval = (studies.effects - self.null_effect) / studies.ses
            pval = 2 * (1 - stats.norm.cdf(np.abs(zval)))

        fixed = self.compute_pooled_effect(effects, ses, PoolingModel.FIXED)
        weights = 1.0 / ses ** 2
        Q = float(np.sum(weights * (effects - fixed.effect) ** 2))
        df_Q = k - 1
        pval_Q = float(1 - stats.chi2.cdf(Q, df_Q)) if df_Q > 0 else math.nan
        tau2 = self._estimate_tau_squared(effects, ses, weights)
        lower_tau2, upper_tau2 = tau2_confidence_interval(effects, ses, self.level_comb)
        random = self.compute_pooled_effect(effects, ses, PoolingModel.RANDOM)

        w_fixed = np.zeros(len(studies))
        w_random = np.zeros(len(studies))
        w_fixed[sel] = weights
        w_random[sel] = 1.0 / (ses ** 2 + tau2)

        se_predict = lower_predict = upper_predict = None
        if k >= 3:
            se_predict = math.sqrt(1.0 / float(np.sum(w_random[sel])) + tau2)
            t_crit = float(stats.t.ppf(1 - (1 - self.level_predict) / 2, k - 2))
            lower_predict = random.effect - t_crit * se_predict
            upper_predict = random.effect + t_crit * se_predict

        logger.debug(f"Pooled {k} studies: fixed={fixed.effect:.4f}, random={random.effect:.4f}, tau2={tau2:.4f}")
        return MetaSummary(
            studies=studies.copy(),
            lower=lower,
            upper=upper,
            zval=zval,
            pval=pval,
            w_fixed=w_fixed,
            w_random=w_random,
            fixed=fixed,
            random=random,
            k=k,
            Q=Q,
            df_Q=df_Q,
            pval_Q=pval_Q,
            tau2=tau2,
            lower_tau2=lower_tau2,
            upper_tau2=upper_tau2,
            tau=math.sqrt(tau2),
            lower_tau=math.sqrt(lower_tau2) if math.isfinite(lower_tau2) else math.nan,
            upper_tau=math.sqrt(upper_tau2) if math.isfinite(upper_tau2) else math.nan,
            H=calc_h(Q, df_Q, self.level_comb),
            I2=isquared(Q, df_Q, self.level_comb),
            Rb=calc_rb(ses, tau2, lower_tau2, upper_tau2),
            se_predict=se_predict,
            lower_predict=lower_predict,
            upper_predict=upper_predict,
            method_tau=self.method_tau,
            hakn=self.hakn,
            level=self.level,
            level_comb=self.level_comb,
            prediction=self.prediction,
            level_predict=self.level_predict,
            sm=self.sm,
            null_effect=self.null_effect,
        )

    def study_table(self, summary: MetaSummary, backtransf: bool = False) -> pd.DataFrame:
        """Create a per-study DataFrame for forest and funnel plot layers.

        With ``backtransf`` and a log-scale summary measure, effects and
        limits are exponentiated.
        """
        studies = summary.studies
        effect = studies.effects
        lower = summary.lower
        upper = summary.upper
        if backtransf and summary.sm in LOG_SCALE_MEASURES:
            effect, lower, upper = np.exp(effect), np.exp(lower), np.exp(upper)
        total_fixed = summary.w_fixed.sum()
        total_random = summary.w_random.sum()
        df = pd.DataFrame(
            {
                "study": studies.labels,
                "effect": effect,
                "se": studies.ses,
                "lower": lower,
                "upper": upper,
                "w_fixed": 100 * summary.w_fixed / total_fixed if total_fixed > 0 else 0.0,
                "w_random": 100 * summary.w_random / total_random if total_random > 0 else 0.0,
                "imputed": studies.imputed,
                "excluded": studies.exclude,
            }
        )
        for name in studies.covariate_names():
            df[name] = studies.covariates[name]
        return df


def pool(
    studies: StudySet,
    *,
    method_tau: Union[TauMethod, str] = TauMethod.DL,
    level: float = 0.95,
    level_comb: Optional[float] = None,
    hakn: bool = False,
    prediction: bool = False,
    level_predict: Optional[float] = None,
    null_effect: float = 0.0,
    sm: str = "",
) -> MetaSummary:
    """Pool a :class:`StudySet` under fixed and random effects models."""
    analyzer = MetaAnalyzer(
        method_tau=method_tau,
        level=level,
        level_comb=level_comb,
        hakn=hakn,
        level_predict=level_predict,
        null_effect=null_effect,
        sm=sm,
        prediction=prediction,
    )
    return analyzer.pool(studies)


def pool_effect(
    effects: np.ndarray,
    ses: np.ndarray,
    model: Union[PoolingModel, str] = PoolingModel.FIXED,
    method_tau: Union[TauMethod, str] = TauMethod.DL,
) -> float:
    """Pooled point estimate only; used as the symmetry centre."""
    return MetaAnalyzer(method_tau=method_tau).compute_pooled_effect(effects, ses, model).effect


def pool_vectors(
    effects: Sequence[float],
    ses: Sequence[float],
    labels: Optional[Sequence[object]] = None,
    **kwargs,
) -> MetaSummary:
    """Pool parallel effect and standard error vectors."""
    return pool(StudySet.from_vectors(effects, ses, labels=labels), **kwargs)
