from __future__ import annotations

from typing import Callable

import numpy as np
import pandas as pd
import pytest

from oral_cancer_pipeline.config import CONFIG


def make_survey_extract(n: int = 2000, seed: int = 42, drop: tuple[str, ...] = ()) -> pd.DataFrame:
    """Synthetic respondent table covering every catalog field plus the design columns."""
    rng = np.random.default_rng(seed)

    n_strata = 10
    psu_per_stratum = 4
    stratum = rng.integers(1, n_strata + 1, size=n)
    # PSU ids repeat across strata on purpose.
    psu = rng.integers(1, psu_per_stratum + 1, size=n)

    sex = rng.choice([1, 2], size=n)
    male = sex == 1
    age = rng.integers(18, 86, size=n).astype(float)
    age_c = (age - 50) / 10

    income = np.round(rng.lognormal(mean=12.0, sigma=0.6, size=n), 0)
    education = rng.integers(1, 6, size=n)
    crowding = np.round(rng.uniform(0.5, 4.0, size=n), 2)

    systolic_1 = rng.normal(125 + 4 * age_c, 15, size=n)
    systolic_2 = systolic_1 + rng.normal(0, 4, size=n)
    diastolic_1 = rng.normal(78 + age_c, 9, size=n)
    diastolic_2 = diastolic_1 + rng.normal(0, 3, size=n)
    total_chol = rng.normal(195, 35, size=n)
    hdl = rng.normal(np.where(male, 45, 55), 10)
    hba1c = np.clip(rng.normal(5.7 + 0.1 * age_c, 0.8, size=n), 4.0, 14.0)
    waist = rng.normal(np.where(male, 97, 89), 12)
    crp = np.round(rng.gamma(1.5, 1.6, size=n), 2)
    pulse_1 = rng.normal(74, 11, size=n)
    pulse_2 = pulse_1 + rng.normal(0, 3, size=n)
    creatinine = rng.normal(np.where(male, 1.0, 0.8), 0.2)

    upper = np.clip(np.round(16 - rng.gamma(1.2 + 0.5 * np.clip(age_c + 2, 0, None), 2.0, size=n)), 0, 16)
    lower = np.clip(np.round(16 - rng.gamma(1.0 + 0.4 * np.clip(age_c + 2, 0, None), 2.0, size=n)), 0, 16)
    teeth_total = upper + lower
    missing = 32 - teeth_total

    load = (
        (systolic_1 >= 140).astype(int)
        + (total_chol >= 200).astype(int)
        + (hba1c >= 6.5).astype(int)
        + (crp >= 3).astype(int)
    )
    lin = -2.1 + 0.03 * (missing - 10) + 0.2 * (load - 1.5) + 0.25 * age_c
    p_cancer = 1 / (1 + np.exp(-lin))
    cancer = rng.random(n) < p_cancer
    cancer_code = np.where(cancer, 1, 2).astype(float)
    cancer_code[rng.random(n) < 0.02] = 9

    def _site_item(eligible: np.ndarray, p: float) -> np.ndarray:
        out = np.where(rng.random(n) < p, 1.0, 2.0)
        return np.where(eligible, out, np.nan)

    smoking_current = np.where(rng.random(n) < 0.25, 1, 2)

    df = pd.DataFrame(
        {
            "psu": psu,
            "stratum": stratum,
            "weight_general": np.round(rng.uniform(200, 1800, size=n), 1),
            "weight_dental": np.round(rng.uniform(250, 2000, size=n), 1),
            "household_income": income,
            "education_level": education,
            "crowding_ratio": crowding,
            "systolic_1": np.round(systolic_1, 0),
            "systolic_2": np.round(systolic_2, 0),
            "diastolic_1": np.round(diastolic_1, 0),
            "diastolic_2": np.round(diastolic_2, 0),
            "total_cholesterol": np.round(total_chol, 0),
            "hdl_cholesterol": np.round(hdl, 0),
            "hba1c_lab": np.round(hba1c, 1),
            "hba1c_self_report": [f"{v:.1f}".replace(".", ",") for v in hba1c],
            "waist_circumference": np.round(waist, 1),
            "crp": crp,
            "pulse_1": np.round(pulse_1, 0),
            "pulse_2": np.round(pulse_2, 0),
            "creatinine": np.round(creatinine, 2),
            "med_hypertension": np.where(rng.random(n) < 0.15, 1, 2),
            "med_dyslipidemia": np.where(rng.random(n) < 0.10, 1, 2),
            "med_diabetes": np.where(rng.random(n) < 0.08, 1, 2),
            "teeth_total_adjusted": teeth_total,
            "teeth_upper": upper,
            "teeth_lower": lower,
            "cancer_diagnosis": cancer_code,
            "cancer_cervix_w": _site_item(~male, 0.02),
            "cancer_breast_w": _site_item(~male, 0.03),
            "cancer_other_w": _site_item(~male, 0.02),
            "cancer_prostate_m": _site_item(male, 0.03),
            "cancer_other_m": _site_item(male, 0.02),
            "sex": sex,
            "age": age,
            "smoking_current": smoking_current,
            "smoking_status": rng.integers(1, 5, size=n),
            "tobacco_use": smoking_current,
            "zone": rng.choice([1, 2], size=n, p=[0.75, 0.25]),
        }
    )

    for col in ["total_cholesterol", "hdl_cholesterol", "hba1c_lab", "crp", "household_income"]:
        df.loc[rng.random(n) < 0.05, col] = np.nan

    return df.drop(columns=list(drop))


@pytest.fixture
def survey_factory() -> Callable[..., pd.DataFrame]:
    return make_survey_extract


@pytest.fixture
def survey_df() -> pd.DataFrame:
    return make_survey_extract()


@pytest.fixture
def run_config(tmp_path) -> dict:
    cfg = dict(CONFIG)
    cfg["output_dir"] = str(tmp_path / "outputs")
    cfg["allostatic_variant"] = "auto"
    cfg["primary_outcome"] = "self_report"
    cfg["print_tables_in_notebook"] = False
    cfg["figure_dpi"] = 60
    return cfg
