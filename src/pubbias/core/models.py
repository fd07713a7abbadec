"""Models for trim-and-fill analyses.

Options and scalar summaries are Pydantic models so that they validate
on construction and serialise cleanly to JSON.  Results that carry
per-study arrays (:class:`MetaSummary`, :class:`TrimFillResult`) are
plain dataclasses holding a :class:`~pubbias.core.studyset.StudySet`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field, field_validator

from .studyset import StudySet


class Side(str, Enum):
    """Side of the funnel plot on which studies are assumed missing."""

    LEFT = "left"
    RIGHT = "right"


class PoolingModel(str, Enum):
    FIXED = "fixed"
    RANDOM = "random"


class EstimatorType(str, Enum):
    """Rank-based estimators of the number of missing studies.

    ``L`` uses the Wilcoxon-type rank sum of studies to the right of the
    centre; ``R`` uses the run of right-most ranks (Duval & Tweedie 2000).
    """

    L = "L"
    R = "R"


class TauMethod(str, Enum):
    DL = "DL"  # DerSimonian-Laird
    PM = "PM"  # Paule-Mandel


class TrimFillStatus(str, Enum):
    """Terminal state of the trim-and-fill iteration."""

    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    DEGENERATE = "degenerate"
    SINGLE_STUDY = "single_study"


# Summary measures estimated on the log scale and exponentiated for display.
LOG_SCALE_MEASURES = {"OR", "RR", "HR", "ROM", "IRR", "DOR"}


class TrimFillOptions(BaseModel):
    """Explicit configuration of one trim-and-fill run."""

    side: Optional[Side] = Field(None, description="Side with missing studies; None runs Egger's test")
    estimation_model: PoolingModel = Field(
        PoolingModel.FIXED,
        description="Model used for the centre while estimating the number of missing studies",
    )
    estimator: EstimatorType = EstimatorType.L
    max_iterations: int = Field(50, ge=1)

    level: float = Field(0.95, gt=0.0, lt=1.0)
    level_comb: Optional[float] = Field(None, gt=0.0, lt=1.0)
    prediction: bool = False
    level_predict: Optional[float] = Field(None, gt=0.0, lt=1.0)

    method_tau: TauMethod = TauMethod.DL
    hakn: bool = False
    comb_fixed: bool = False
    comb_random: bool = True

    sm: str = ""
    backtransf: bool = True
    null_effect: float = 0.0
    verbose: bool = False

    @field_validator("sm")
    @classmethod
    def _normalize_sm(cls, v: str) -> str:
        return (v or "").strip().upper()

    @property
    def pooled_level(self) -> float:
        return self.level if self.level_comb is None else self.level_comb

    @property
    def prediction_level(self) -> float:
        return self.level if self.level_predict is None else self.level_predict


class PooledEstimate(BaseModel):
    """Pooled effect under one model with its confidence interval."""

    model: PoolingModel
    effect: float
    se: float
    lower: float
    upper: float
    statistic: float
    pvalue: float
    level: float
    df: Optional[int] = Field(None, description="Degrees of freedom when a t distribution is used")


class HeterogeneityStat(BaseModel):
    """A heterogeneity measure with its confidence limits."""

    value: float
    lower: float
    upper: float


class AsymmetryTest(BaseModel):
    """Result of Egger's regression test for funnel plot asymmetry."""

    bias: float
    se_bias: float
    slope: float
    statistic: float
    df: int
    pvalue: float
    k: int


class MissingEstimate(BaseModel):
    """Estimated number of missing studies and the underlying statistic."""

    estimator: EstimatorType
    count: int
    statistic: float


@dataclass
class MetaSummary:
    """Output of the pooling engine.

    Per-study arrays are aligned with ``studies``; studies that are excluded
    or have missing values carry zero weight.
    """

    studies: StudySet
    lower: np.ndarray
    upper: np.ndarray
    zval: np.ndarray
    pval: np.ndarray
    w_fixed: np.ndarray
    w_random: np.ndarray

    fixed: PooledEstimate
    random: PooledEstimate

    k: int
    Q: float
    df_Q: int
    pval_Q: float
    tau2: float
    lower_tau2: float
    upper_tau2: float
    tau: float
    lower_tau: float
    upper_tau: float

    H: HeterogeneityStat
    I2: HeterogeneityStat
    Rb: HeterogeneityStat

    se_predict: Optional[float] = None
    lower_predict: Optional[float] = None
    upper_predict: Optional[float] = None

    method_tau: TauMethod = TauMethod.DL
    hakn: bool = False
    level: float = 0.95
    level_comb: float = 0.95
    prediction: bool = False
    level_predict: float = 0.95
    sm: str = ""
    null_effect: float = 0.0

    def pooled(self, model: PoolingModel) -> PooledEstimate:
        return self.fixed if model == PoolingModel.FIXED else self.random

    def heterogeneity(self) -> Dict[str, Any]:
        return {
            "Q": self.Q,
            "df_Q": self.df_Q,
            "pval_Q": self.pval_Q,
            "tau2": self.tau2,
            "lower_tau2": self.lower_tau2,
            "upper_tau2": self.upper_tau2,
            "tau": self.tau,
            "lower_tau": self.lower_tau,
            "upper_tau": self.upper_tau,
            "H": self.H.model_dump(),
            "I2": self.I2.model_dump(),
            "Rb": self.Rb.model_dump(),
        }


@dataclass
class TrimFillResult:
    """Result of a trim-and-fill analysis.

    ``meta`` holds the augmented study set (observed rows in input order,
    imputed rows appended) and the definitive pooled summaries.
    """

    meta: MetaSummary
    k0: int
    iterations: int
    side: Side
    center: float
    status: TrimFillStatus
    options: TrimFillOptions
    n_missing: int = 0
    exclude: Optional[List[Optional[bool]]] = None
    filled_from: List[int] = field(default_factory=list)

    @property
    def studies(self) -> StudySet:
        return self.meta.studies

    @property
    def trimfill(self) -> np.ndarray:
        """Mask of studies added by trim-and-fill."""
        return self.meta.studies.imputed

    @property
    def fixed(self) -> PooledEstimate:
        return self.meta.fixed

    @property
    def random(self) -> PooledEstimate:
        return self.meta.random

    def summary(self) -> Dict[str, Any]:
        """JSON-serialisable summary of the analysis."""
        return {
            "k": self.meta.k,
            "k0": self.k0,
            "iterations": self.iterations,
            "status": self.status.value,
            "side": self.side.value,
            "center": self.center,
            "n_missing": self.n_missing,
            "estimator": self.options.estimator.value,
            "estimation_model": self.options.estimation_model.value,
            "fixed": self.meta.fixed.model_dump(mode="json"),
            "random": self.meta.random.model_dump(mode="json"),
            "prediction": (
                {
                    "se": self.meta.se_predict,
                    "lower": self.meta.lower_predict,
                    "upper": self.meta.upper_predict,
                    "level": self.meta.level_predict,
                }
                if self.meta.prediction and self.meta.se_predict is not None
                else None
            ),
            "heterogeneity": self.meta.heterogeneity(),
            "sm": self.options.sm,
        }
