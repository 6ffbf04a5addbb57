"""Minimum unweighted cell-size policy for published survey estimates."""

from __future__ import annotations

import logging
from typing import Iterable

import pandas as pd


def policy_note(threshold: int) -> str:
    return f"Excluded: fewer than {threshold} unweighted respondents in cell (unreliable survey estimate)."


def _infer_count_columns(df: pd.DataFrame) -> list[str]:
    candidates: list[str] = []
    tokens = ("n", "count", "events", "nonevents", "n_missing", "n_observed")
    for col in df.columns:
        lower = col.lower()
        if (lower in tokens or lower.startswith("n_")) and pd.api.types.is_numeric_dtype(df[col]):
            candidates.append(col)
    return candidates


def suppress_small_cells(
    df: pd.DataFrame,
    threshold: int = 30,
    count_columns: Iterable[str] | None = None,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Return (kept_rows, excluded_rows); a row is excluded when any count column is below ``threshold``.
    Zero counts are kept.
    """
    if df.empty:
        return df.copy(), df.copy()

    cols = list(count_columns) if count_columns is not None else _infer_count_columns(df)
    cols = [c for c in cols if c in df.columns]

    if not cols:
        return df.copy(), pd.DataFrame(columns=[*df.columns, "policy_note", "suppression_columns"])

    mask = pd.Series(False, index=df.index)
    for col in cols:
        values = pd.to_numeric(df[col], errors="coerce")
        mask = mask | ((values > 0) & (values < threshold))

    kept = df.loc[~mask].copy()
    excluded = df.loc[mask].copy()
    if not excluded.empty:
        excluded["policy_note"] = policy_note(threshold)
        excluded["suppression_columns"] = ",".join(cols)
        logging.warning(
            "Suppressed %s rows due to n<%s policy. columns=%s",
            len(excluded),
            threshold,
            cols,
        )
    return kept, excluded


def model_is_policy_compliant(
    n: int,
    events: int,
    threshold: int,
    *,
    require_nonevents: bool = True,
) -> tuple[bool, str]:
    nonevents = n - events
    if n < threshold:
        return False, policy_note(threshold)
    if events < threshold:
        return False, policy_note(threshold)
    if require_nonevents and nonevents < threshold:
        return False, policy_note(threshold)
    return True, ""
