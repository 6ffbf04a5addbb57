from __future__ import annotations

import pandas as pd

from oral_cancer_pipeline.suppression import model_is_policy_compliant, policy_note, suppress_small_cells


def test_small_cells_are_excluded_and_zero_counts_kept():
    df = pd.DataFrame({"level": ["a", "b", "c"], "n": [120, 12, 0], "value": [0.1, 0.2, 0.3]})
    kept, excluded = suppress_small_cells(df, threshold=30, count_columns=["n"])
    assert kept["level"].tolist() == ["a", "c"]
    assert excluded["level"].tolist() == ["b"]
    assert excluded["policy_note"].iloc[0] == policy_note(30)
    assert excluded["suppression_columns"].iloc[0] == "n"


def test_count_columns_inferred_when_not_given():
    df = pd.DataFrame({"n_missing": [5, 100], "n_observed": [95, 20], "missing_rate": [0.05, 0.83]})
    kept, excluded = suppress_small_cells(df, threshold=30)
    assert len(kept) == 0
    assert len(excluded) == 2


def test_no_count_columns_keeps_everything():
    df = pd.DataFrame({"check": ["x"], "n": [3]})
    kept, excluded = suppress_small_cells(df, threshold=30, count_columns=[])
    assert len(kept) == 1
    assert excluded.empty


def test_empty_table_passes_through():
    kept, excluded = suppress_small_cells(pd.DataFrame(), threshold=30)
    assert kept.empty and excluded.empty


def test_model_policy():
    assert model_is_policy_compliant(200, 40, 30) == (True, "")
    ok, note = model_is_policy_compliant(200, 10, 30)
    assert not ok and note == policy_note(30)
    assert not model_is_policy_compliant(200, 185, 30)[0]
    assert model_is_policy_compliant(200, 185, 30, require_nonevents=False)[0]
