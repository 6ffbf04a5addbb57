from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from oral_cancer_pipeline.config import CONFIG, TEETH_FULL_DENTITION
from oral_cancer_pipeline.derivation import (
    DerivationContext,
    age_band,
    assemble_outcome,
    composite_score,
    derive_allostatic_load,
    derive_covariates,
    derive_missing_teeth,
    derive_svi,
    derive_variables,
    parse_coded_numeric,
    resolve_allostatic_variant,
    yes_no,
)


def _ctx(variant: str = "minimal") -> DerivationContext:
    return DerivationContext(variant=variant, primary_outcome="self_report", age_bands=list(CONFIG["age_bands"]))


# --- SVI -------------------------------------------------------------------


def test_svi_all_vulnerable_scores_one():
    raw = pd.DataFrame({"household_income": [100000.0], "education_level": [2], "crowding_ratio": [3.0]})
    out = derive_svi(raw, _ctx())
    assert out.loc[0, "income_vuln"] == 1.0
    assert out.loc[0, "edu_vuln"] == 1.0
    assert out.loc[0, "housing_vuln"] == 1.0
    assert out.loc[0, "svi_score"] == 1.0


def test_svi_missing_when_two_indicators_missing():
    raw = pd.DataFrame({"household_income": [np.nan], "education_level": [np.nan], "crowding_ratio": [1.0]})
    out = derive_svi(raw, _ctx())
    assert out.loc[0, "housing_vuln"] == 0.0
    assert np.isnan(out.loc[0, "svi_score"])


def test_svi_is_mean_of_observed_indicators_at_quorum():
    raw = pd.DataFrame({"household_income": [np.nan], "education_level": [2], "crowding_ratio": [1.0]})
    out = derive_svi(raw, _ctx())
    assert out.loc[0, "svi_score"] == pytest.approx(0.5)


def test_svi_absent_component_counts_as_missing():
    raw = pd.DataFrame({"household_income": [100000.0, np.nan], "education_level": [5, 5]})
    ctx = _ctx()
    out = derive_svi(raw, ctx)
    assert out["housing_vuln"].isna().all()
    assert out.loc[0, "svi_score"] == pytest.approx(0.5)
    assert np.isnan(out.loc[1, "svi_score"])
    assert any(q["check"] == "svi_component_absent" for q in ctx.quality)


# --- Composite aggregator --------------------------------------------------


def test_composite_score_tolerance_and_absent_columns():
    frame = pd.DataFrame({"a": [1.0, 1.0, np.nan], "b": [0.0, np.nan, np.nan]})
    score, n_missing = composite_score(frame, ["a", "b", "c"], how="sum", max_missing=1)
    assert n_missing.tolist() == [1, 2, 3]
    assert score.iloc[0] == 1.0
    assert score.isna().iloc[1:].all()


def test_composite_score_rejects_unknown_aggregation():
    with pytest.raises(ValueError):
        composite_score(pd.DataFrame({"a": [1.0]}), ["a"], how="median", max_missing=0)


def test_allostatic_load_monotone_in_each_flag():
    base = {f"risk_{c}": 0.0 for c in ["bp", "total_chol", "hdl", "glycemia", "waist", "crp"]}
    cols = list(base)
    for col in cols:
        lo = pd.DataFrame([base])
        hi = pd.DataFrame([{**base, col: 1.0}])
        s_lo, _ = composite_score(lo, cols, how="sum", max_missing=3)
        s_hi, _ = composite_score(hi, cols, how="sum", max_missing=3)
        assert s_hi.iloc[0] == s_lo.iloc[0] + 1


# --- Risk indicators -------------------------------------------------------


def test_bp_threshold_without_medication_field():
    raw = pd.DataFrame({"systolic_1": [150.0], "diastolic_1": [80.0]})
    out = derive_allostatic_load(raw, _ctx())
    assert out.loc[0, "risk_bp"] == 1.0


def test_bp_missing_when_either_mean_missing_even_on_medication():
    raw = pd.DataFrame(
        {
            "systolic_1": [np.nan, 120.0],
            "systolic_2": [np.nan, 124.0],
            "diastolic_1": [70.0, 70.0],
            "med_hypertension": [1, 1],
        }
    )
    out = derive_allostatic_load(raw, _ctx())
    assert np.isnan(out.loc[0, "risk_bp"])
    # Below threshold but on therapy.
    assert out.loc[1, "risk_bp"] == 1.0


def test_sex_specific_cutoffs_and_unknown_sex():
    raw = pd.DataFrame(
        {
            "sex": [1, 2, 9, np.nan],
            "hdl_cholesterol": [45.0, 45.0, 30.0, 30.0],
            "waist_circumference": [100.0, 100.0, 120.0, 120.0],
        }
    )
    out = derive_allostatic_load(raw, _ctx())
    assert out["risk_hdl"].tolist()[:2] == [0.0, 1.0]
    assert out["risk_waist"].tolist()[:2] == [0.0, 1.0]
    assert out["risk_hdl"].iloc[2:].isna().all()
    assert out["risk_waist"].iloc[2:].isna().all()


def test_glycemia_prefers_lab_and_parses_self_report_text():
    lab = pd.DataFrame({"hba1c_lab": [5.0], "hba1c_self_report": ["7,2"]})
    ctx = _ctx()
    assert derive_allostatic_load(lab, ctx).loc[0, "risk_glycemia"] == 0.0
    assert ctx.sources["hba1c"] == "hba1c_lab"

    self_report = pd.DataFrame({"hba1c_self_report": ["7,2", " 5.1 ", "n/a"]})
    ctx = _ctx()
    out = derive_allostatic_load(self_report, ctx)
    assert out["risk_glycemia"].tolist()[:2] == [1.0, 0.0]
    assert np.isnan(out.loc[2, "risk_glycemia"])
    assert ctx.sources["hba1c"] == "hba1c_self_report"


def test_implausible_hba1c_is_missing_and_recorded():
    raw = pd.DataFrame({"hba1c_lab": [25.0, 7.0]})
    ctx = _ctx()
    out = derive_allostatic_load(raw, ctx)
    assert np.isnan(out.loc[0, "risk_glycemia"])
    assert out.loc[1, "risk_glycemia"] == 1.0
    rows = [q for q in ctx.quality if q["check"] == "hba1c_implausible"]
    assert rows and rows[0]["n"] == 1


def test_parse_coded_numeric_and_yes_no():
    assert parse_coded_numeric(pd.Series(["6,8", "x"])).iloc[0] == pytest.approx(6.8)
    assert yes_no(pd.Series([1, 2, 8, 9, None])).tolist()[:2] == [1.0, 0.0]
    assert yes_no(pd.Series([8, 9])).isna().all()


# --- Allostatic-load variants ---------------------------------------------


def test_variant_autodetection(survey_factory):
    assert resolve_allostatic_variant(survey_factory(n=50)) == "extended"
    assert resolve_allostatic_variant(survey_factory(n=50, drop=("creatinine",))) == "standard"
    assert (
        resolve_allostatic_variant(survey_factory(n=50, drop=("creatinine", "pulse_1", "pulse_2")))
        == "minimal"
    )
    assert resolve_allostatic_variant(survey_factory(n=50), "minimal") == "minimal"
    with pytest.raises(ValueError):
        resolve_allostatic_variant(survey_factory(n=50), "maximal")


def test_minimal_variant_tolerance():
    # Three of six components observed: at tolerance.
    raw = pd.DataFrame(
        {
            "systolic_1": [150.0, 150.0],
            "diastolic_1": [80.0, 80.0],
            "total_cholesterol": [210.0, np.nan],
            "crp": [1.0, np.nan],
        }
    )
    out = derive_allostatic_load(raw, _ctx("minimal"))
    assert out.loc[0, "allostatic_load_n_missing"] == 3
    assert out.loc[0, "allostatic_load_score"] == 2.0
    assert out.loc[1, "allostatic_load_n_missing"] == 5
    assert np.isnan(out.loc[1, "allostatic_load_score"])
    assert (out["allostatic_load_n_components"] == 6).all()


def test_extended_variant_score_bounds(survey_df):
    derived = derive_variables(survey_df)
    assert derived.variant == "extended"
    score = derived.data["allostatic_load_score"].dropna()
    assert score.between(0, 8).all()
    assert {f"risk_{c}" for c in ["pulse", "creatinine"]} <= set(derived.data.columns)


# --- Teeth -----------------------------------------------------------------


def test_missing_teeth_from_adjusted_total():
    out = derive_missing_teeth(pd.DataFrame({"teeth_total_adjusted": [20]}), _ctx())
    assert out.loc[0, "missing_teeth"] == 12


def test_missing_teeth_from_arch_sum():
    ctx = _ctx()
    out = derive_missing_teeth(pd.DataFrame({"teeth_upper": [10], "teeth_lower": [8]}), ctx)
    assert out.loc[0, "missing_teeth"] == 14
    assert ctx.sources["teeth_total"] == "arch_sum"


def test_missing_teeth_prefers_adjusted_when_both_exist():
    raw = pd.DataFrame({"teeth_total_adjusted": [20], "teeth_upper": [10], "teeth_lower": [8]})
    assert derive_missing_teeth(raw, _ctx()).loc[0, "missing_teeth"] == 12


def test_negative_tooth_total_is_missing_and_counted():
    ctx = _ctx()
    out = derive_missing_teeth(pd.DataFrame({"teeth_total_adjusted": [-1, 0, np.nan]}), ctx)
    assert np.isnan(out.loc[0, "missing_teeth"])
    assert out.loc[1, "missing_teeth"] == TEETH_FULL_DENTITION
    assert np.isnan(out.loc[2, "missing_teeth"])
    rows = [q for q in ctx.quality if q["check"] == "teeth_negative_sentinel"]
    assert rows[0]["n"] == 1
    assert any("teeth_negative_sentinel" in note for note in ctx.notes)


def test_tooth_total_above_full_dentition_is_counted():
    ctx = _ctx()
    out = derive_missing_teeth(pd.DataFrame({"teeth_upper": [20, 16], "teeth_lower": [20, 10]}), ctx)
    assert out["missing_teeth"].tolist() == [-8.0, 6.0]
    rows = [q for q in ctx.quality if q["check"] == "teeth_above_full_dentition"]
    assert rows[0]["n"] == 1
    assert any("teeth_above_full_dentition" in note for note in ctx.notes)


# --- Outcomes --------------------------------------------------------------


def test_outcome_any_yes_wins_explicit_no_else_missing():
    raw = pd.DataFrame(
        {
            "cancer_diagnosis": [2, 2, 9, 9, np.nan],
            "cancer_breast_w": [1, 2, 2, 9, np.nan],
        }
    )
    out = assemble_outcome(raw, ["cancer_diagnosis", "cancer_breast_w", "cancer_prostate_m"], label="t")
    assert out.tolist()[:3] == [1.0, 0.0, 0.0]
    assert out.iloc[3:].isna().all()


def test_outcome_missing_for_everyone_when_no_field_exists():
    out = assemble_outcome(pd.DataFrame({"x": [1, 2]}), ["cancer_diagnosis"], label="t")
    assert out.isna().all()


def test_primary_outcome_alias(survey_df):
    narrow = derive_variables(survey_df).data
    broad = derive_variables(survey_df, primary_outcome="any_module").data
    pd.testing.assert_series_equal(
        narrow["cancer_history"], narrow["cancer_history_self_report"], check_names=False
    )
    pd.testing.assert_series_equal(
        broad["cancer_history"], broad["cancer_history_any_module"], check_names=False
    )
    # The broad endpoint only adds cases.
    assert broad["cancer_history"].eq(1).sum() >= narrow["cancer_history"].eq(1).sum()
    with pytest.raises(ValueError):
        derive_variables(survey_df, primary_outcome="registry")


# --- Covariates ------------------------------------------------------------


def test_smoking_falls_back_to_status_codes():
    raw = pd.DataFrame({"smoking_status": [1, 2, 3, 4, 9]})
    ctx = _ctx()
    out = derive_covariates(raw, ctx)
    assert out["smoking"].tolist()[:4] == [1.0, 1.0, 0.0, 0.0]
    assert np.isnan(out.loc[4, "smoking"])
    assert ctx.sources["smoking"] == "smoking_status"


def test_covariate_labels():
    raw = pd.DataFrame({"sex": [1, 2, 3], "zone": [1, 2, 7], "education_level": [4, 3, np.nan], "age": [40, 70, 17]})
    out = derive_covariates(raw, _ctx())
    assert out["sex_label"].tolist()[:2] == ["Male", "Female"]
    assert pd.isna(out.loc[2, "sex_label"])
    assert out["zone_label"].tolist()[:2] == ["Urban", "Rural"]
    assert out["education_higher"].tolist()[:2] == [1.0, 0.0]
    assert np.isnan(out.loc[2, "education_higher"])


def test_age_band_boundaries():
    bands = CONFIG["age_bands"]
    assert age_band(17, bands) == "<18"
    assert age_band(18, bands) == "18-29"
    assert age_band(44, bands) == "30-44"
    assert age_band(60, bands) == "60+"
    assert pd.isna(age_band(np.nan, bands))


def test_fractional_ages_between_integer_bands_are_banded():
    bands = CONFIG["age_bands"]
    assert age_band(17.9, bands) == "<18"
    assert age_band(29.5, bands) == "18-29"
    assert age_band(44.2, bands) == "30-44"
    assert age_band(59.9, bands) == "45-59"
    assert age_band(30.0, bands) == "30-44"
    assert age_band(85.5, [(18, 64, "18-64"), (65, 85, "65-85")]) == "65-85"
    assert pd.isna(age_band(86.0, [(18, 64, "18-64"), (65, 85, "65-85")]))

    raw = pd.DataFrame({"age": [29.5, 44.2, 59.9, 30.0, 45.0]})
    out = derive_variables(raw).data
    assert out["age_band"].tolist() == ["18-29", "30-44", "45-59", "30-44", "45-59"]


# --- Composition -----------------------------------------------------------


def test_engine_is_idempotent_and_leaves_raw_untouched(survey_df):
    before = survey_df.copy()
    first = derive_variables(survey_df)
    second = derive_variables(survey_df)
    pd.testing.assert_frame_equal(survey_df, before)
    pd.testing.assert_frame_equal(first.data, second.data)
    pd.testing.assert_frame_equal(first.derivation_flow, second.derivation_flow)


def test_derived_columns_and_flow(survey_df):
    derived = derive_variables(survey_df)
    df = derived.data
    for col in [
        "svi_score",
        "allostatic_load_score",
        "missing_teeth",
        "not_edentulous",
        "cancer_history",
        "sex_label",
        "age_band",
        "smoking",
        "education_higher",
        "zone_label",
    ]:
        assert col in df.columns
    assert derived.derivation_flow["step"].iloc[0] == "01_raw_respondents"
    assert derived.derivation_flow["n"].iloc[0] == len(survey_df)
    assert set(derived.data_quality.columns) == {"check", "n", "detail"}
    known = df["missing_teeth"].notna()
    assert (df.loc[known, "not_edentulous"] == (df.loc[known, "missing_teeth"] < 32).astype(float)).all()


def test_engine_refuses_to_overwrite_existing_columns(survey_df):
    raw = survey_df.assign(svi_score=0.0)
    with pytest.raises(ValueError, match="overwrite"):
        derive_variables(raw)
