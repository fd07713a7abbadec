"""Parallel-array container for per-study effect estimates.

A :class:`StudySet` keeps effects, standard errors, labels, the
exclusion and imputation masks and any number of group-level covariates
(sample sizes, event counts, means, SDs, follow-up times, correlations)
co-indexed.  Every reorder or filter goes through :meth:`StudySet.take`
so that all arrays move in lock-step under a single index.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence

import numpy as np

from .errors import InputShapeError

if TYPE_CHECKING:  # pragma: no cover
    from .models import MetaSummary


# Covariates carried by the common effect-size families.  Any other
# name is accepted as well; this tuple only fixes the display order.
KNOWN_COVARIATES = (
    "n_e",
    "n_c",
    "n",
    "event_e",
    "event_c",
    "event",
    "time_e",
    "time_c",
    "time",
    "cor",
    "mean_e",
    "mean_c",
    "sd_e",
    "sd_c",
)


def _as_float_array(values: Iterable[float], name: str) -> np.ndarray:
    try:
        arr = np.array(values, dtype=float)
    except (TypeError, ValueError) as exc:
        raise InputShapeError(f"'{name}' must be numeric: {exc}") from exc
    if arr.ndim != 1:
        raise InputShapeError(f"'{name}' must be one-dimensional, got shape {arr.shape}")
    return arr


@dataclass
class StudySet:
    """Ordered collection of studies stored as parallel arrays."""

    effects: np.ndarray
    ses: np.ndarray
    labels: List[str]
    exclude: np.ndarray
    imputed: np.ndarray
    covariates: Dict[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        k = len(self.effects)
        lengths = {
            "ses": len(self.ses),
            "labels": len(self.labels),
            "exclude": len(self.exclude),
            "imputed": len(self.imputed),
        }
        lengths.update({name: len(values) for name, values in self.covariates.items()})
        bad = {name: n for name, n in lengths.items() if n != k}
        if bad:
            details = ", ".join(f"{name}={n}" for name, n in sorted(bad.items()))
            raise InputShapeError(f"All study arrays must have length {k} (effects); got {details}")

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_vectors(
        cls,
        effects: Sequence[float],
        ses: Sequence[float],
        labels: Optional[Sequence[object]] = None,
        exclude: Optional[Sequence[bool]] = None,
        **covariates: Sequence[float],
    ) -> "StudySet":
        """Build a study set from parallel sequences.

        Args:
            effects: Estimated effect of each study.
            ses: Standard error of each effect.
            labels: Optional study labels; defaults to ``"1"``..``"k"``.
            exclude: Optional mask of studies kept for reporting but never
                pooled.
            **covariates: Extra per-study arrays (e.g. ``n_e=[...]``).

        Raises:
            InputShapeError: If any array length differs from ``effects``.
        """
        eff = _as_float_array(effects, "effects")
        se = _as_float_array(ses, "ses")
        k = len(eff)
        if len(se) != k:
            raise InputShapeError(f"'effects' and 'ses' must have equal length ({k} != {len(se)})")
        if labels is None:
            labs = [str(i) for i in range(1, k + 1)]
        else:
            labs = [str(label) for label in labels]
        if exclude is None:
            excl = np.zeros(k, dtype=bool)
        else:
            excl = np.array([bool(x) for x in exclude], dtype=bool)
        covs = {name: np.asarray(values) for name, values in covariates.items() if values is not None}
        return cls(
            effects=eff,
            ses=se,
            labels=labs,
            exclude=excl,
            imputed=np.zeros(k, dtype=bool),
            covariates=covs,
        )

    @classmethod
    def from_meta(cls, summary: "MetaSummary") -> "StudySet":
        """Unpack the studies a prior pooling result was computed on."""
        return summary.studies.copy()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self.effects)

    @property
    def k(self) -> int:
        """Number of studies that contribute to pooling."""
        return int(self.usable_mask().sum())

    @property
    def has_exclusions(self) -> bool:
        return bool(self.exclude.any())

    def usable_mask(self) -> np.ndarray:
        """Studies with finite effect and standard error that are not excluded."""
        return self.finite_mask() & ~self.exclude

    def finite_mask(self) -> np.ndarray:
        return np.isfinite(self.effects) & np.isfinite(self.ses)

    def missing_mask(self) -> np.ndarray:
        """Non-excluded studies that must be dropped for missing values."""
        return ~self.finite_mask() & ~self.exclude

    # ------------------------------------------------------------------
    # Lock-step transformations
    # ------------------------------------------------------------------
    def take(self, index: Sequence[int]) -> "StudySet":
        """Return a new set with every parallel array indexed by ``index``.

        ``index`` may reorder, filter or repeat rows; it may also be a
        boolean mask of length ``len(self)``.
        """
        idx = np.asarray(index)
        if idx.dtype == bool:
            if len(idx) != len(self):
                raise InputShapeError(f"Mask length {len(idx)} does not match {len(self)} studies")
            idx = np.flatnonzero(idx)
        idx = idx.astype(int)
        return StudySet(
            effects=self.effects[idx].copy(),
            ses=self.ses[idx].copy(),
            labels=[self.labels[i] for i in idx],
            exclude=self.exclude[idx].copy(),
            imputed=self.imputed[idx].copy(),
            covariates={name: values[idx].copy() for name, values in self.covariates.items()},
        )

    def append(self, other: "StudySet") -> "StudySet":
        """Concatenate ``other`` after this set."""
        if set(self.covariates) != set(other.covariates):
            raise InputShapeError(
                f"Cannot append study sets with different covariates: "
                f"{sorted(self.covariates)} vs {sorted(other.covariates)}"
            )
        return StudySet(
            effects=np.concatenate([self.effects, other.effects]),
            ses=np.concatenate([self.ses, other.ses]),
            labels=list(self.labels) + list(other.labels),
            exclude=np.concatenate([self.exclude, other.exclude]),
            imputed=np.concatenate([self.imputed, other.imputed]),
            covariates={
                name: np.concatenate([values, other.covariates[name]])
                for name, values in self.covariates.items()
            },
        )

    def with_effects(self, effects: np.ndarray) -> "StudySet":
        """Copy of this set with the effect column replaced."""
        out = self.copy()
        eff = np.asarray(effects, dtype=float)
        if len(eff) != len(self):
            raise InputShapeError(f"Expected {len(self)} effects, got {len(eff)}")
        out.effects = eff.copy()
        return out

    def copy(self) -> "StudySet":
        return self.take(np.arange(len(self)))

    def covariate_names(self) -> List[str]:
        known = [name for name in KNOWN_COVARIATES if name in self.covariates]
        return known + sorted(name for name in self.covariates if name not in KNOWN_COVARIATES)
