"""Trim-and-fill adjustment for publication bias in meta-analysis."""

__version__ = "0.1.0"

from .bias import detect_side, egger_test, estimate_missing, trimfill, trimfill_meta, trimfill_vectors  # noqa: E402,F401
from .core import (  # noqa: E402,F401
    InputShapeError,
    InsufficientDataError,
    MetaSummary,
    Side,
    StudySet,
    TrimFillOptions,
    TrimFillResult,
)
from .meta import MetaAnalyzer, pool, pool_vectors  # noqa: E402,F401
