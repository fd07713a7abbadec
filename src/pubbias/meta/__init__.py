"""Meta-analysis utilities.

This package contains the inverse-variance pooling engine used by the
trim-and-fill method.  It supports fixed and random effects models,
heterogeneity statistics and prediction intervals.
"""

from .analyzer import MetaAnalyzer, pool, pool_effect, pool_vectors  # noqa: F401
from .heterogeneity import calc_h, calc_rb, isquared, tau2_confidence_interval  # noqa: F401
