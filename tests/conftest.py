"""Shared fixtures for pubbias tests."""

import numpy as np
import pytest

from pubbias.core.studyset import StudySet


@pytest.fixture
def asymmetric_studies() -> StudySet:
    """Funnel with small imprecise studies reporting large effects (missing on the left)."""
    return StudySet.from_vectors(
        [0.1, 0.15, 0.3, 0.5, 0.8, 1.0],
        [0.05, 0.08, 0.15, 0.2, 0.3, 0.4],
        labels=["A", "B", "C", "D", "E", "F"],
    )


@pytest.fixture
def outlier_studies() -> StudySet:
    """Four clustered studies and one large effect on the right."""
    return StudySet.from_vectors(
        [1.0, 1.5, 2.0, 2.5, 6.0],
        np.full(5, 0.3),
        labels=["s1", "s2", "s3", "s4", "s5"],
    )
