"""Trim-and-fill adjustment for publication bias.

Implements the nonparametric method of Duval & Tweedie (2000):

1. Decide on which side of the funnel studies are missing (given, or
   from Egger's test) and orient the effects so that the missing
   studies are on the left.
2. Iterate: pool the ``k - k0`` smallest effects to obtain a centre,
   re-estimate ``k0`` from the ranks of all effects around that centre,
   until ``k0`` stabilises or the iteration budget is exhausted.
3. Fill: mirror the ``k0`` largest effects around the centre, append the
   pseudo-studies to the observed ones (restored to input order) and pool
   the augmented data once more.

By default the centre is estimated with a fixed effect model while the
reported summaries include the random effects model (the "fixed-random"
approach recommended by Peters et al. 2007).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from ..core.models import (
    MetaSummary,
    MissingEstimate,
    Side,
    TrimFillOptions,
    TrimFillResult,
    TrimFillStatus,
)
from ..core.studyset import StudySet
from ..meta.analyzer import MetaAnalyzer, pool_effect
from ..utils.logging import get_logger
from .asymmetry import detect_side
from .estimators import estimate_missing

logger = get_logger(__name__)

# k0 reported when a single study makes trimming meaningless.
K0_SINGLE_STUDY = -9

FILLED_PREFIX = "Filled: "


@dataclass
class TrimFillState:
    """Mutable state of one run of the trim-and-fill iteration."""

    center: float
    k0: int = 0
    k0_previous: int = -1
    iteration: int = 0
    status: Optional[TrimFillStatus] = None
    estimate: Optional[MissingEstimate] = None


class TrimFillIterator:
    """Fixed-point iteration for the number of missing studies."""

    def __init__(self, options: TrimFillOptions) -> None:
        self.options = options

    def _center(self, effects: np.ndarray, ses: np.ndarray) -> float:
        return pool_effect(effects, ses, self.options.estimation_model, self.options.method_tau)

    def run(self, effects: np.ndarray, ses: np.ndarray) -> TrimFillState:
        """Estimate ``k0`` for effects sorted ascending with missing studies on the left.

        The returned ``k0`` lies in ``[0, k - 1]``, except for the sentinel
        :data:`K0_SINGLE_STUDY` when ``k == 1``.
        """
        effects = np.asarray(effects, dtype=float)
        ses = np.asarray(ses, dtype=float)
        k = len(effects)
        state = TrimFillState(center=self._center(effects, ses))
        if k == 1:
            state.k0 = K0_SINGLE_STUDY
            state.status = TrimFillStatus.SINGLE_STUDY
            return state

        while (
            state.k0_previous != state.k0
            and state.k0 <= k - 1
            and state.iteration < self.options.max_iterations
        ):
            state.iteration += 1
            state.k0_previous = state.k0
            keep = k - state.k0
            state.center = self._center(effects[:keep], ses[:keep])
            state.estimate = estimate_missing(effects, state.center, self.options.estimator)
            self._log_iteration(state)
            state.k0 = state.estimate.count

        if state.k0 > k - 1:
            logger.warning(f"Estimated number of missing studies ({state.k0}) exceeds k - 1; set to {k - 1}")
            state.k0 = k - 1
            state.status = TrimFillStatus.DEGENERATE
        elif state.k0 == state.k0_previous:
            state.status = TrimFillStatus.CONVERGED
        else:
            logger.warning(
                f"Trim-and-fill did not converge within {self.options.max_iterations} iterations; "
                f"using k0 = {state.k0}"
            )
            state.status = TrimFillStatus.MAX_ITERATIONS
        return state

    def _log_iteration(self, state: TrimFillState) -> None:
        if state.estimate is None:
            return
        name = f"{state.estimate.estimator.value}0"
        message = f"n.iter = {state.iteration}, {name} = {round(state.estimate.statistic, 2)}"
        if self.options.verbose:
            logger.info(message)
        else:
            logger.debug(message)


def orient(effects: np.ndarray, side: Side) -> np.ndarray:
    """Flip signs so that missing studies are always on the left."""
    effects = np.asarray(effects, dtype=float)
    return effects.copy() if side == Side.LEFT else -effects


def fill(
    ordered: StudySet,
    order: np.ndarray,
    center: float,
    k0: int,
) -> Tuple[StudySet, np.ndarray]:
    """Append mirrored pseudo-studies for the ``k0`` largest effects.

    Args:
        ordered: Studies sorted ascending by oriented effect.
        order: Permutation that produced ``ordered`` from the input order.
        center: Axis of symmetry on the oriented scale.
        k0: Number of studies to impute; values ``<= 0`` impute nothing.

    Returns:
        The observed studies restored to input order followed by the
        imputed ones, and for each imputed study the input position of
        the study it mirrors.
    """
    observed = ordered.take(np.argsort(order, kind="stable"))
    if k0 <= 0:
        return observed, np.array([], dtype=int)
    k = len(ordered)
    source = np.arange(k - k0, k)
    filled = ordered.take(source)
    filled.effects = 2 * center - filled.effects
    filled.labels = [f"{FILLED_PREFIX}{label}" for label in filled.labels]
    filled.imputed = np.ones(k0, dtype=bool)
    filled.exclude = np.zeros(k0, dtype=bool)
    return observed.append(filled), order[source]


def _reunite_excluded(
    studies: StudySet,
    augmented: StudySet,
    keep_idx: np.ndarray,
    usable_idx: np.ndarray,
) -> StudySet:
    """Put excluded studies back at their input positions, before imputed rows."""
    reported = studies.take(keep_idx)
    n_reported = len(reported)
    n_usable = len(usable_idx)
    index = np.arange(n_reported + len(augmented) - n_usable)
    usable_rows = np.isin(keep_idx, usable_idx)
    index[:n_reported][usable_rows] = n_reported + np.arange(n_usable)
    index[n_reported:] = n_reported + np.arange(n_usable, len(augmented))
    return reported.append(augmented).take(index)


def _resolve_options(options: Optional[TrimFillOptions], overrides: dict) -> TrimFillOptions:
    base = options.model_dump() if options is not None else {}
    base.update(overrides)
    return TrimFillOptions(**base)


def trimfill(
    studies: StudySet,
    options: Optional[TrimFillOptions] = None,
    **overrides: Any,
) -> Optional[TrimFillResult]:
    """Run the trim-and-fill method on a study set.

    Args:
        studies: Observed studies; excluded rows are carried through for
            reporting, rows with missing effect or SE are dropped.
        options: Analysis options; keyword ``overrides`` replace fields.

    Returns:
        The adjusted analysis, or ``None`` (with a warning) when fewer
        than three usable studies remain.

    Raises:
        pydantic.ValidationError: If the option overrides are invalid.
    """
    options = _resolve_options(options, overrides)

    missing = studies.missing_mask()
    n_missing = int(missing.sum())
    if n_missing:
        logger.warning(f"{n_missing} observation(s) dropped due to missing values")

    usable_idx = np.flatnonzero(studies.usable_mask())
    work = studies.take(usable_idx)
    k = len(work)
    if k <= 2:
        logger.warning("Minimal number of three studies for trim-and-fill method")
        return None

    side = detect_side(work.effects, work.ses, options.side)
    oriented = orient(work.effects, side)
    order = np.argsort(oriented, kind="stable")
    ordered = work.with_effects(oriented).take(order)

    state = TrimFillIterator(options).run(ordered.effects, ordered.ses)
    augmented, filled_from = fill(ordered, order, state.center, state.k0)
    augmented = augmented.with_effects(orient(augmented.effects, side))

    exclude = None
    if studies.has_exclusions:
        keep_idx = np.flatnonzero(~missing)
        augmented = _reunite_excluded(studies, augmented, keep_idx, usable_idx)
        n_imputed = int(augmented.imputed.sum())
        exclude = [bool(x) for x in augmented.exclude[: len(augmented) - n_imputed]] + [None] * n_imputed

    meta = _final_pool(augmented, options)
    k0 = int(augmented.imputed.sum())
    center = state.center if side == Side.LEFT else -state.center
    logger.info(
        "Trim-and-fill finished",
        extra={
            "k": k,
            "k0": k0,
            "side": side.value,
            "iterations": state.iteration,
            "status": state.status.value,
        },
    )
    return TrimFillResult(
        meta=meta,
        k0=k0,
        iterations=state.iteration,
        side=side,
        center=float(center),
        status=state.status,
        options=options,
        n_missing=n_missing,
        exclude=exclude,
        filled_from=[int(i) for i in usable_idx[filled_from]],
    )


def _final_pool(studies: StudySet, options: TrimFillOptions) -> MetaSummary:
    analyzer = MetaAnalyzer(
        method_tau=options.method_tau,
        level=options.level,
        level_comb=options.pooled_level,
        hakn=options.hakn,
        level_predict=options.prediction_level,
        null_effect=options.null_effect,
        sm=options.sm,
        prediction=options.prediction,
    )
    return analyzer.pool(studies)


def trimfill_vectors(
    effects: Sequence[float],
    ses: Sequence[float],
    labels: Optional[Sequence[object]] = None,
    options: Optional[TrimFillOptions] = None,
    exclude: Optional[Sequence[bool]] = None,
    **overrides: Any,
) -> Optional[TrimFillResult]:
    """Trim-and-fill on parallel effect and standard error vectors."""
    studies = StudySet.from_vectors(effects, ses, labels=labels, exclude=exclude)
    return trimfill(studies, options, **overrides)


def trimfill_meta(
    summary: MetaSummary,
    options: Optional[TrimFillOptions] = None,
    **overrides: Any,
) -> Optional[TrimFillResult]:
    """Trim-and-fill on the studies of a prior pooling result.

    Levels, the tau² estimator, Hartung-Knapp, prediction, summary
    measure and null effect default to those of ``summary``.
    """
    inherited = {
        "level": summary.level,
        "level_comb": summary.level_comb,
        "method_tau": summary.method_tau,
        "hakn": summary.hakn,
        "prediction": summary.prediction,
        "level_predict": summary.level_predict,
        "sm": summary.sm,
        "null_effect": summary.null_effect,
    }
    if options is not None:
        inherited.update(options.model_dump(exclude_unset=True))
    inherited.update(overrides)
    return trimfill(StudySet.from_meta(summary), TrimFillOptions(**inherited))
