"""Configuration for the tooth loss / allostatic load / cancer history survey analyses."""

from __future__ import annotations

import os
from pathlib import Path

CHANGE_LOG = [
    "2026-10-12: Split the single analysis script into loader, derivation, design, analysis and reporting modules with a single main() entrypoint.",
    "2026-10-12: Replaced ad hoc field-existence branches with an ordered FieldSource resolver (HbA1c, tooth count, smoking).",
    "2026-10-12: Derived columns are produced by pure derivation steps composed in a fixed order instead of in-place accumulation.",
    "2026-10-13: Fixed allostatic-load missingness tolerance per dataset variant (minimal/standard: 3, extended: 4).",
    "2026-10-13: Exposed the self-report and any-module cancer outcomes as two named endpoints.",
    "2026-10-14: Dental-examination weight falls back globally to the general weight when absent.",
    "2026-10-14: Added spline, interaction and non-edentulous sensitivity models; failed sensitivity fits are reported as skipped.",
    "2026-10-15: Added minimum-cell policy for descriptive and model outputs plus derivation flow / data-quality tables.",
]

ASSUMPTIONS = [
    "The input extract uses the agency questionnaire coding: yes=1, no=2, don't know / no answer=8/9.",
    "Blood pressure and pulse replicates are averaged over the replicates observed for each respondent.",
    "A respondent with a missing biomarker reading has a missing risk flag even when the medication flag is yes.",
    "Sex-specific cutoffs (HDL, waist, creatinine) yield a missing flag when sex is missing or not coded 1/2.",
    "Tooth totals below zero are data-entry sentinels and are set to missing, never clamped; totals above 32 are kept and counted.",
    "Age bands are half-open intervals, so a fractional age always falls in exactly one band.",
    "PSUs are nested within strata; variance uses a cluster-robust sandwich over stratum-PSU groups.",
    "Sampling weights are normalized to mean 1 within each model sample; point estimates are unaffected.",
]

# Raw field catalog. Names are owned by the survey agency; derived code only refers to roles.
FIELDS = {
    "cluster": "psu",
    "stratum": "stratum",
    "weight_general": "weight_general",
    "weight_dental": "weight_dental",
    "income": "household_income",
    "education": "education_level",
    "crowding": "crowding_ratio",
    "systolic": ["systolic_1", "systolic_2"],
    "diastolic": ["diastolic_1", "diastolic_2"],
    "total_cholesterol": "total_cholesterol",
    "hdl_cholesterol": "hdl_cholesterol",
    "hba1c_lab": "hba1c_lab",
    "hba1c_self_report": "hba1c_self_report",
    "waist": "waist_circumference",
    "crp": "crp",
    "pulse": ["pulse_1", "pulse_2"],
    "creatinine": "creatinine",
    "med_hypertension": "med_hypertension",
    "med_dyslipidemia": "med_dyslipidemia",
    "med_diabetes": "med_diabetes",
    "teeth_adjusted": "teeth_total_adjusted",
    "teeth_arches": ["teeth_upper", "teeth_lower"],
    "sex": "sex",
    "age": "age",
    "smoking_current": "smoking_current",
    "smoking_status": "smoking_status",
    "tobacco_use": "tobacco_use",
    "zone": "zone",
}

YES_CODE = 1
NO_CODE = 2
SEX_CODES = {1: "Male", 2: "Female"}
ZONE_CODES = {1: "Urban", 2: "Rural"}

SVI_THRESHOLDS = {
    "income_below": 158145.0,
    "education_below": 3,
    "crowding_at_least": 2.5,
}
SVI_MAX_MISSING = 1

CLINICAL_THRESHOLDS = {
    "systolic_at_least": 140.0,
    "diastolic_at_least": 90.0,
    "total_cholesterol_at_least": 200.0,
    "hdl_below": {"Male": 40.0, "Female": 50.0},
    "hba1c_at_least": 6.5,
    "waist_at_least": {"Male": 102.0, "Female": 88.0},
    "crp_at_least": 3.0,
    "pulse_at_least": 90.0,
    "creatinine_above": {"Male": 1.2, "Female": 1.0},
    "hba1c_plausible_min": 3.0,
    "hba1c_plausible_max": 20.0,
}

TEETH_FULL_DENTITION = 32

ALLOSTATIC_BASE_COMPONENTS = ["bp", "total_chol", "hdl", "glycemia", "waist", "crp"]
ALLOSTATIC_VARIANTS = {
    "minimal": {"components": ALLOSTATIC_BASE_COMPONENTS, "max_missing": 3},
    "standard": {"components": [*ALLOSTATIC_BASE_COMPONENTS, "pulse"], "max_missing": 3},
    "extended": {"components": [*ALLOSTATIC_BASE_COMPONENTS, "pulse", "creatinine"], "max_missing": 4},
}

OUTCOME_DEFINITIONS = {
    # Narrow endpoint: the single self-reported diagnosis item.
    "self_report": ["cancer_diagnosis"],
    # Broad endpoint: single item plus every site item of the women's and men's modules.
    "any_module": [
        "cancer_diagnosis",
        "cancer_cervix_w",
        "cancer_breast_w",
        "cancer_other_w",
        "cancer_prostate_m",
        "cancer_other_m",
    ],
}
OUTCOME_COLUMNS = {
    "self_report": "cancer_history_self_report",
    "any_module": "cancer_history_any_module",
}

CONFIG = {
    "input_path": os.environ.get("SURVEY_INPUT_PATH", "").strip(),
    "allostatic_variant": os.environ.get("AL_VARIANT", "auto").strip().lower(),
    "primary_outcome": os.environ.get("PRIMARY_OUTCOME", "self_report").strip().lower(),
    "age_bands": [(18, 29, "18-29"), (30, 44, "30-44"), (45, 59, "45-59"), (60, None, "60+")],
    "spline_df": 3,
    "spline_degree": 3,
    "small_cell_threshold": 30,
    "min_events_per_model": 30,
    "print_tables_in_notebook": False,
    "print_table_max_rows": 30,
    "reference_levels": {
        "sex_label": "Male",
        "zone_label": "Urban",
    },
    "category_levels": {
        "sex_label": ["Male", "Female"],
        "zone_label": ["Urban", "Rural"],
        "age_band": ["18-29", "30-44", "45-59", "60+"],
    },
    "adjustment_covariates": ["age_years", "sex_label", "smoking", "education_higher", "zone_label", "svi_score"],
    "figure_dpi": 300,
    "output_dir": os.environ.get(
        "PIPELINE_OUTPUT_DIR",
        str(Path(__file__).resolve().parents[1] / "pipeline_outputs"),
    ),
}

REQUIRED_OUTPUT_FILES = [
    "derivation_flow.csv",
    "data_quality.csv",
    "table1_by_cancer_history.csv",
    "derived_missingness.csv",
    "regression_baseline.csv",
    "regression_sensitivity.csv",
    "model_diagnostics.csv",
    "forest_plot_ready.csv",
    "figure1_forest_plot.png",
    "figure2_prevalence_by_exposure.png",
    "REPORT.md",
]


def validate_config(config: dict | None = None) -> None:
    cfg = CONFIG if config is None else config
    if not cfg.get("input_path"):
        raise ValueError("SURVEY_INPUT_PATH is empty. Set SURVEY_INPUT_PATH before running.")
    variant = cfg.get("allostatic_variant", "auto")
    if variant != "auto" and variant not in ALLOSTATIC_VARIANTS:
        raise ValueError(
            f"Unknown allostatic-load variant {variant!r}; expected 'auto' or one of {sorted(ALLOSTATIC_VARIANTS)}."
        )
    if cfg.get("primary_outcome") not in OUTCOME_DEFINITIONS:
        raise ValueError(
            f"Unknown primary outcome {cfg.get('primary_outcome')!r}; expected one of {sorted(OUTCOME_DEFINITIONS)}."
        )


def ensure_output_dir(config: dict | None = None) -> Path:
    cfg = CONFIG if config is None else config
    out_dir = Path(cfg["output_dir"]).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir
