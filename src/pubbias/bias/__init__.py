"""Publication bias: funnel asymmetry and the trim-and-fill method."""

from .asymmetry import detect_side, egger_test  # noqa: F401
from .estimators import estimate_missing  # noqa: F401
from .trimfill import (  # noqa: F401
    TrimFillIterator,
    TrimFillState,
    fill,
    trimfill,
    trimfill_meta,
    trimfill_vectors,
)
