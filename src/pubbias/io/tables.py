"""Tabular input and output for trim-and-fill analyses.

Studies are read from CSV files with pandas; results are exported as a
per-study CSV table (suitable for forest and funnel plot layers) and a
JSON summary written next to it.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from ..core.errors import InputShapeError
from ..core.models import TrimFillResult
from ..core.studyset import KNOWN_COVARIATES, StudySet
from ..meta.analyzer import MetaAnalyzer
from ..utils.logging import get_logger

logger = get_logger(__name__)

_TRUE_STRINGS = {"1", "true", "t", "yes", "y"}


def _parse_exclude(values: pd.Series) -> List[bool]:
    out: List[bool] = []
    for v in values:
        if isinstance(v, str):
            out.append(v.strip().lower() in _TRUE_STRINGS)
        elif pd.isna(v):
            out.append(False)
        else:
            out.append(bool(v))
    return out


def studies_from_frame(
    df: pd.DataFrame,
    effect_col: str = "effect",
    se_col: str = "se",
    study_col: Optional[str] = "study_id",
    exclude_col: Optional[str] = None,
    covariate_cols: Optional[Sequence[str]] = None,
) -> StudySet:
    """Build a :class:`StudySet` from a DataFrame.

    Non-numeric effects or standard errors become ``NaN`` and are later
    dropped (and counted) by the analysis.  When ``covariate_cols`` is
    ``None`` every known covariate column present is carried along.

    Raises:
        InputShapeError: If a required column is missing.
    """
    required = [effect_col, se_col] + [c for c in (study_col, exclude_col) if c]
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise InputShapeError(f"Columns not found: {', '.join(missing)}")
    if covariate_cols is None:
        covariate_cols = [c for c in KNOWN_COVARIATES if c in df.columns]
    absent = [c for c in covariate_cols if c not in df.columns]
    if absent:
        raise InputShapeError(f"Covariate columns not found: {', '.join(absent)}")
    labels = df[study_col].astype(str).tolist() if study_col else None
    exclude = _parse_exclude(df[exclude_col]) if exclude_col else None
    covariates: Dict[str, np.ndarray] = {c: df[c].to_numpy() for c in covariate_cols}
    return StudySet.from_vectors(
        pd.to_numeric(df[effect_col], errors="coerce").to_numpy(dtype=float),
        pd.to_numeric(df[se_col], errors="coerce").to_numpy(dtype=float),
        labels=labels,
        exclude=exclude,
        **covariates,
    )


def read_studies_csv(path: Path, **kwargs) -> StudySet:
    """Read studies from a CSV file; keyword arguments as in :func:`studies_from_frame`."""
    df = pd.read_csv(path)
    logger.debug(f"Read {len(df)} rows from {path}")
    return studies_from_frame(df, **kwargs)


def result_frame(result: TrimFillResult) -> pd.DataFrame:
    """Per-study table of a trim-and-fill result, imputed rows last."""
    df = MetaAnalyzer().study_table(result.meta, backtransf=result.options.backtransf)
    if result.exclude is not None:
        df["excluded"] = pd.array(result.exclude, dtype="boolean")
    return df


def write_result(result: TrimFillResult, output: Path) -> Path:
    """Write the per-study CSV to ``output`` and the summary to ``output`` with a .json suffix."""
    output.parent.mkdir(parents=True, exist_ok=True)
    result_frame(result).to_csv(output, index=False)
    summary_path = output.with_suffix(".json")
    summary_path.write_text(json.dumps(result.summary(), indent=2, default=str))
    logger.info(f"Saved trim-and-fill results to {output} and {summary_path}")
    return summary_path
