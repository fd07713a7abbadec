"""Core data structures: study sets, options, summaries and errors."""

from .errors import InputShapeError, InsufficientDataError, PubBiasError  # noqa: F401
from .models import (  # noqa: F401
    AsymmetryTest,
    EstimatorType,
    HeterogeneityStat,
    MetaSummary,
    MissingEstimate,
    PooledEstimate,
    PoolingModel,
    Side,
    TauMethod,
    TrimFillOptions,
    TrimFillResult,
    TrimFillStatus,
)
from .studyset import StudySet  # noqa: F401
