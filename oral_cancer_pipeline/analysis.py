"""Descriptive tables and survey-weighted logistic models for cancer history."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Iterable

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from patsy import PatsyError
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
    SpecificationWarning,
)

from .config import OUTCOME_COLUMNS, OUTCOME_DEFINITIONS, TEETH_FULL_DENTITION
from .design import SurveyDesign, bind_design, design_frame, require_design
from .suppression import model_is_policy_compliant

try:
    from scipy.stats import chi2_contingency
except Exception:  # pragma: no cover - optional dependency
    chi2_contingency = None

TERM_KINDS = ("continuous", "categorical", "interaction", "spline")
EXPOSURES = ("allostatic_load_score", "missing_teeth")


@dataclass(frozen=True)
class Term:
    """One predictor of a model formula."""

    name: str
    kind: str = "continuous"
    reference: str | None = None
    other: str | None = None
    df: int = 3
    degree: int = 3

    def __post_init__(self) -> None:
        if self.kind not in TERM_KINDS:
            raise ValueError(f"Unknown term kind {self.kind!r}; expected one of {TERM_KINDS}.")
        if self.kind == "interaction" and not self.other:
            raise ValueError(f"Interaction term {self.name!r} needs a second variable.")

    def formula(self) -> str:
        if self.kind == "categorical":
            if self.reference:
                return f'C({self.name}, Treatment(reference="{self.reference}"))'
            return f"C({self.name})"
        if self.kind == "interaction":
            return f"{self.name}:{self.other}"
        if self.kind == "spline":
            return f"bs({self.name}, df={self.df}, degree={self.degree})"
        return self.name

    def columns(self) -> list[str]:
        if self.kind == "interaction":
            return [self.name, str(self.other)]
        return [self.name]


@dataclass
class ModelSpec:
    name: str
    exposure: str
    terms: list[Term]
    outcome: str = "cancer_history"
    weight_role: str = "general"
    subpopulation: str | None = None
    sensitivity: bool = False
    description: str = ""

    def formula(self) -> str:
        return f"{self.outcome} ~ " + " + ".join(t.formula() for t in self.terms)

    def columns(self) -> list[str]:
        cols = [self.outcome]
        for term in self.terms:
            cols.extend(c for c in term.columns() if c not in cols)
        return cols


@dataclass
class FittedModel:
    name: str
    status: str
    table: pd.DataFrame
    n: int
    events: int
    weight_column: str | None
    n_clusters: int = 0
    result: object | None = None
    message: str = ""


@dataclass
class ModelRunResult:
    models: dict[str, FittedModel]
    specs: dict[str, ModelSpec]
    diagnostics: pd.DataFrame
    notes: list[str]

    def coefficients(self, *, sensitivity: bool | None = None) -> pd.DataFrame:
        frames = [
            m.table
            for name, m in self.models.items()
            if sensitivity is None or self.specs[name].sensitivity == sensitivity
        ]
        frames = [f for f in frames if not f.empty]
        if not frames:
            return pd.DataFrame()
        return pd.concat(frames, ignore_index=True, sort=False)


@dataclass
class AnalysisBundle:
    table1: pd.DataFrame
    missingness: pd.DataFrame
    prevalence: pd.DataFrame
    regression_baseline: pd.DataFrame
    regression_sensitivity: pd.DataFrame
    model_diagnostics: pd.DataFrame
    forest_ready: pd.DataFrame
    model_run: ModelRunResult
    designs: dict[str, SurveyDesign]
    notes: list[str]


def _category_levels(config: dict, field_name: str, fallback: list[str]) -> list[str]:
    raw_levels = config.get("category_levels", {}).get(field_name)
    if raw_levels:
        return [str(x) for x in raw_levels]
    return fallback


def _covariate_terms(config: dict) -> list[Term]:
    refs = config.get("reference_levels", {})
    terms: list[Term] = []
    for name in config.get("adjustment_covariates", []):
        if name in refs:
            terms.append(Term(name, kind="categorical", reference=str(refs[name])))
        else:
            terms.append(Term(name))
    return terms


def build_model_specs(config: dict) -> list[ModelSpec]:
    """Baseline physiological/oral models plus the sensitivity variants."""
    covariates = _covariate_terms(config)
    spline_df = int(config.get("spline_df", 3))
    spline_degree = int(config.get("spline_degree", 3))
    primary = str(config.get("primary_outcome", "self_report"))

    specs = [
        ModelSpec(
            name="physiological",
            exposure="allostatic_load_score",
            terms=[Term("allostatic_load_score"), *covariates],
            description="Allostatic load score (linear), general weight.",
        ),
        ModelSpec(
            name="oral",
            exposure="missing_teeth",
            terms=[Term("missing_teeth"), *covariates],
            weight_role="dental",
            description="Missing teeth (linear), dental weight.",
        ),
        ModelSpec(
            name="oral_not_edentulous",
            exposure="missing_teeth",
            terms=[Term("missing_teeth"), *covariates],
            weight_role="dental",
            subpopulation="not_edentulous",
            sensitivity=True,
            description="Oral model excluding fully edentulous respondents.",
        ),
        ModelSpec(
            name="oral_age_interaction",
            exposure="missing_teeth",
            terms=[
                Term("missing_teeth"),
                *covariates,
                Term("missing_teeth", kind="interaction", other="age_years"),
            ],
            weight_role="dental",
            sensitivity=True,
            description="Oral model with missing teeth x age interaction.",
        ),
        ModelSpec(
            name="physiological_spline",
            exposure="allostatic_load_score",
            terms=[
                Term("allostatic_load_score", kind="spline", df=spline_df, degree=spline_degree),
                *covariates,
            ],
            sensitivity=True,
            description=f"Allostatic load as a B-spline (df={spline_df}).",
        ),
    ]

    for alt in OUTCOME_DEFINITIONS:
        if alt == primary:
            continue
        outcome_col = OUTCOME_COLUMNS[alt]
        specs.append(
            ModelSpec(
                name=f"physiological_{alt}",
                exposure="allostatic_load_score",
                terms=[Term("allostatic_load_score"), *covariates],
                outcome=outcome_col,
                sensitivity=True,
                description=f"Physiological model on the {alt} outcome definition.",
            )
        )
        specs.append(
            ModelSpec(
                name=f"oral_{alt}",
                exposure="missing_teeth",
                terms=[Term("missing_teeth"), *covariates],
                outcome=outcome_col,
                weight_role="dental",
                sensitivity=True,
                description=f"Oral model on the {alt} outcome definition.",
            )
        )
    return specs


def _weighted_mean(x: pd.Series, w: pd.Series) -> float:
    return float(np.average(x, weights=w)) if len(x) else np.nan


def _weighted_var(x: pd.Series, w: pd.Series) -> float:
    mu = _weighted_mean(x, w)
    return float(np.average((x - mu) ** 2, weights=w)) if len(x) else np.nan


def _history_label(x: object) -> str:
    if pd.isna(x):
        return "Unknown"
    return "Yes" if float(x) == 1.0 else "No"


def _ordered_levels(obs: pd.DataFrame, var: str, order: list[str] | None):
    groups = dict(list(obs.groupby(var, sort=True)))
    if not order:
        return list(groups.items())
    keys = [k for k in order if k in groups] + [k for k in groups if k not in order]
    return [(k, groups[k]) for k in keys]


def build_table1(
    df: pd.DataFrame,
    design: SurveyDesign,
    outcome: str = "cancer_history",
    category_levels: dict[str, list[str]] | None = None,
) -> pd.DataFrame:
    """Weighted means/proportions by cancer history, with unweighted respondent counts.

    Categorical levels follow ``category_levels`` where given; unlisted levels come after, sorted.
    """
    category_levels = category_levels or {}
    rows: list[dict[str, object]] = []
    numeric_vars = [
        "age_years",
        "svi_score",
        "allostatic_load_score",
        "missing_teeth",
    ]
    cat_vars = [
        "sex_label",
        "age_band",
        "zone_label",
        "smoking",
        "education_higher",
        "income_vuln",
        "edu_vuln",
        "housing_vuln",
        "not_edentulous",
    ]

    weights = pd.to_numeric(df[design.weight], errors="coerce")
    working = df.loc[weights.notna() & (weights > 0)].copy()
    working["_w"] = weights.loc[working.index]
    working["_group"] = working[outcome].map(_history_label)

    for group, g in working.groupby("_group", sort=True):
        rows.append(
            {
                "cancer_history": group,
                "variable": "N",
                "level": "overall",
                "n": int(len(g)),
                "value": float(g["_w"].sum()),
                "stat": "weighted_total",
            }
        )
        for var in numeric_vars:
            if var not in g.columns:
                continue
            obs = g.loc[g[var].notna()]
            rows.append(
                {
                    "cancer_history": group,
                    "variable": var,
                    "level": "mean",
                    "n": int(len(obs)),
                    "value": _weighted_mean(obs[var].astype(float), obs["_w"]),
                    "stat": "weighted_mean",
                }
            )
            rows.append(
                {
                    "cancer_history": group,
                    "variable": var,
                    "level": "sd",
                    "n": int(len(obs)),
                    "value": float(np.sqrt(_weighted_var(obs[var].astype(float), obs["_w"]))) if len(obs) else np.nan,
                    "stat": "weighted_sd",
                }
            )
        for var in cat_vars:
            if var not in g.columns:
                continue
            obs = g.loc[g[var].notna()]
            total_w = float(obs["_w"].sum())
            for level, lg in _ordered_levels(obs, var, category_levels.get(var)):
                rows.append(
                    {
                        "cancer_history": group,
                        "variable": var,
                        "level": str(level),
                        "n": int(len(lg)),
                        "value": float(lg["_w"].sum() / total_w) if total_w else np.nan,
                        "stat": "weighted_proportion",
                    }
                )
    return pd.DataFrame(rows)


def build_missingness_table(
    df: pd.DataFrame,
    threshold: int,
    notes: list[str],
    outcome: str = "cancer_history",
) -> pd.DataFrame:
    """Missingness of each derived variable, with a chi-square test against the outcome."""
    variables = [
        "svi_score",
        "allostatic_load_score",
        "missing_teeth",
        "smoking",
        "education_higher",
        "age_years",
        "sex_label",
        "zone_label",
        outcome,
    ]
    rows: list[dict[str, object]] = []
    for var in variables:
        if var not in df.columns:
            continue
        is_missing = df[var].isna()
        row: dict[str, object] = {
            "variable": var,
            "n_total": int(len(df)),
            "n_missing": int(is_missing.sum()),
            "n_observed": int((~is_missing).sum()),
            "missing_rate": float(is_missing.mean()) if len(df) else np.nan,
            "chi2_p_value": np.nan,
        }
        if chi2_contingency is not None and var != outcome and outcome in df.columns:
            known = df[outcome].notna()
            contingency = pd.crosstab(is_missing[known], df.loc[known, outcome])
            if contingency.shape == (2, 2) and int(contingency.values.min()) >= threshold:
                try:
                    _, pval, _, _ = chi2_contingency(contingency)
                    row["chi2_p_value"] = float(pval)
                except ValueError as exc:  # pragma: no cover
                    notes.append(f"Missingness chi-square failed for {var}: {exc}")
        rows.append(row)
    return pd.DataFrame(rows)


def teeth_band(x: float) -> object:
    if pd.isna(x):
        return np.nan
    if x >= TEETH_FULL_DENTITION:
        return "32 (edentulous)"
    low = int(x // 8) * 8
    return f"{low}-{low + 7}"


def build_prevalence_table(
    df: pd.DataFrame,
    designs: dict[str, SurveyDesign],
    outcome: str = "cancer_history",
) -> pd.DataFrame:
    """Weighted cancer-history prevalence by allostatic load score and by missing-teeth band."""
    groupings = [
        ("allostatic_load_score", "general", lambda s: s.map(lambda v: np.nan if pd.isna(v) else str(int(v)))),
        ("missing_teeth", "dental", lambda s: s.map(teeth_band)),
    ]
    rows: list[dict[str, object]] = []
    for exposure, role, to_level in groupings:
        if exposure not in df.columns or role not in designs:
            continue
        design = designs[role]
        weights = pd.to_numeric(df[design.weight], errors="coerce")
        mask = df[exposure].notna() & df[outcome].notna() & weights.notna() & (weights > 0)
        sub = df.loc[mask, [exposure, outcome]].copy()
        sub["_w"] = weights.loc[mask]
        sub["level"] = to_level(sub[exposure])
        for level, g in sub.groupby("level", sort=False):
            rows.append(
                {
                    "exposure": exposure,
                    "level": level,
                    "sort_key": float(g[exposure].min()),
                    "n": int(len(g)),
                    "events": int(g[outcome].sum()),
                    "weighted_prevalence": _weighted_mean(g[outcome].astype(float), g["_w"]),
                    "weight_column": design.weight,
                }
            )
    out = pd.DataFrame(rows)
    if out.empty:
        return out
    return out.sort_values(["exposure", "sort_key"]).drop(columns="sort_key").reset_index(drop=True)


def _or_table(fit, spec: ModelSpec, *, n: int, events: int, weight_column: str, n_clusters: int) -> pd.DataFrame:
    conf = fit.conf_int()
    stderr = fit.bse.values if hasattr(fit, "bse") else np.repeat(np.nan, len(fit.params))
    out = pd.DataFrame(
        {
            "term": fit.params.index,
            "coef": fit.params.values,
            "std_error": stderr,
            "or": np.exp(fit.params.values),
            "ci_low": np.exp(conf[0].values),
            "ci_high": np.exp(conf[1].values),
            "p_value": fit.pvalues.values,
            "model": spec.name,
            "outcome": spec.outcome,
            "n": n,
            "events": events,
            "n_clusters": n_clusters,
            "weight_column": weight_column,
            "analysis_set": "sensitivity" if spec.sensitivity else "baseline",
            "effect_type": "OR",
            "status": "fitted",
        }
    )
    return out


def _status_table(spec: ModelSpec, status: str, message: str, *, n: int = 0, events: int = 0) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "model": [spec.name],
            "outcome": [spec.outcome],
            "analysis_set": ["sensitivity" if spec.sensitivity else "baseline"],
            "status": [status],
            "policy_note": [message],
            "n": [n],
            "events": [events],
        }
    )


def model_sample(df: pd.DataFrame, spec: ModelSpec, design: SurveyDesign) -> tuple[pd.DataFrame, pd.DataFrame, int]:
    """Complete-case rows for ``spec`` with usable design values.

    Returns ``(sample, design_values, n_dropped_for_design)``.
    """
    sample = df
    if spec.subpopulation:
        sample = sample.loc[sample[spec.subpopulation] == 1]
    sample = sample.dropna(subset=spec.columns())
    dvals = design_frame(sample, design)
    dropped = int((~dvals["usable"]).sum())
    sample = sample.loc[dvals["usable"]].copy()
    dvals = design_frame(sample, design)
    return sample, dvals, dropped


def _fit_survey_glm(sample: pd.DataFrame, formula: str, dvals: pd.DataFrame):
    model = smf.glm(
        formula=formula,
        data=sample,
        family=sm.families.Binomial(),
        var_weights=np.asarray(dvals["design_weight"], dtype=float),
    )
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=SpecificationWarning)
        warnings.filterwarnings("error", category=PerfectSeparationWarning)
        warnings.filterwarnings("error", category=ConvergenceWarning)
        fit = model.fit(
            cov_type="cluster",
            cov_kwds={"groups": np.asarray(dvals["design_group"], dtype=int)},
        )
    if not bool(getattr(fit, "converged", True)):
        raise ConvergenceWarning("IRLS did not converge")
    if not (np.all(np.isfinite(fit.params)) and np.all(np.isfinite(fit.bse))):
        raise FloatingPointError("non-finite coefficients or standard errors (collinear design?)")
    return fit


def _diagnostic_row(
    spec: ModelSpec,
    *,
    status: str,
    n: int,
    events: int,
    n_clusters: int,
    n_parameters: int | None,
    design: SurveyDesign,
    dropped_for_design: int,
) -> dict[str, object]:
    return {
        "analysis": spec.name,
        "analysis_set": "sensitivity" if spec.sensitivity else "baseline",
        "outcome": spec.outcome,
        "status": status,
        "n": n,
        "events": events,
        "nonevents": n - events,
        "event_rate": (events / n) if n else np.nan,
        "n_parameters": n_parameters,
        "n_clusters": n_clusters,
        "weight_column": design.weight,
        "weight_fallback": design.fallback_used,
        "dropped_for_design": dropped_for_design,
        "subpopulation": spec.subpopulation or "",
    }


def run_model(
    df: pd.DataFrame,
    spec: ModelSpec,
    design: SurveyDesign | None,
    *,
    threshold: int,
    notes: list[str],
    diagnostics_store: list[dict[str, object]] | None = None,
) -> FittedModel:
    design = require_design(design, df)
    sample, dvals, dropped = model_sample(df, spec, design)
    if dropped:
        notes.append(f"{spec.name}: {dropped} rows excluded for missing/non-positive weight or design ids.")

    n = int(len(sample))
    events = int(sample[spec.outcome].sum()) if n else 0
    n_clusters = int(dvals["design_group"].nunique()) if n else 0
    formula = spec.formula()
    logging.info("%s: n=%s events=%s clusters=%s formula=%s", spec.name, n, events, n_clusters, formula)

    def _diag(status: str, n_parameters: int | None = None) -> None:
        if diagnostics_store is not None:
            diagnostics_store.append(
                _diagnostic_row(
                    spec,
                    status=status,
                    n=n,
                    events=events,
                    n_clusters=n_clusters,
                    n_parameters=n_parameters,
                    design=design,
                    dropped_for_design=dropped,
                )
            )

    compliant, note = model_is_policy_compliant(n=n, events=events, threshold=threshold)
    if not compliant:
        notes.append(f"{spec.name}: {note}")
        _diag("policy")
        return FittedModel(
            name=spec.name,
            status="policy",
            table=_status_table(spec, "policy", note, n=n, events=events),
            n=n,
            events=events,
            weight_column=design.weight,
            n_clusters=n_clusters,
            message=note,
        )

    try:
        fit = _fit_survey_glm(sample, formula, dvals)
    except (
        PerfectSeparationError,
        PerfectSeparationWarning,
        ConvergenceWarning,
        np.linalg.LinAlgError,
        FloatingPointError,
        OverflowError,
        PatsyError,
        ValueError,
    ) as exc:
        if spec.sensitivity:
            message = f"sensitivity check skipped ({exc})"
            status = "skipped"
            logging.warning("%s: %s", spec.name, message)
        else:
            message = f"model failed ({exc})"
            status = "error"
            logging.error("%s: %s", spec.name, message)
        notes.append(f"{spec.name}: {message}.")
        _diag(status)
        return FittedModel(
            name=spec.name,
            status=status,
            table=_status_table(spec, status, message, n=n, events=events),
            n=n,
            events=events,
            weight_column=design.weight,
            n_clusters=n_clusters,
            message=message,
        )

    _diag("fitted", int(len(fit.params)))
    return FittedModel(
        name=spec.name,
        status="fitted",
        table=_or_table(fit, spec, n=n, events=events, weight_column=design.weight, n_clusters=n_clusters),
        n=n,
        events=events,
        weight_column=design.weight,
        n_clusters=n_clusters,
        result=fit,
    )


def run_models(
    df: pd.DataFrame,
    designs: dict[str, SurveyDesign],
    specs: Iterable[ModelSpec],
    *,
    threshold: int,
    notes: list[str],
) -> ModelRunResult:
    models: dict[str, FittedModel] = {}
    spec_map: dict[str, ModelSpec] = {}
    diag_rows: list[dict[str, object]] = []
    for spec in specs:
        spec_map[spec.name] = spec
        models[spec.name] = run_model(
            df,
            spec,
            designs.get(spec.weight_role),
            threshold=threshold,
            notes=notes,
            diagnostics_store=diag_rows,
        )
    diagnostics = (
        pd.DataFrame(diag_rows)
        if diag_rows
        else pd.DataFrame(columns=["analysis", "status", "n", "events", "nonevents", "event_rate"])
    )
    return ModelRunResult(models=models, specs=spec_map, diagnostics=diagnostics, notes=notes)


def build_forest_ready(run: ModelRunResult) -> pd.DataFrame:
    """Exposure-term odds ratios of every fitted model (spline basis terms excluded)."""
    frames: list[pd.DataFrame] = []
    for name, fitted in run.models.items():
        if fitted.status != "fitted":
            continue
        spec = run.specs[name]
        tab = fitted.table
        keep = tab["term"].isin([spec.exposure]) | tab["term"].str.startswith(f"{spec.exposure}:")
        tmp = tab.loc[keep, ["term", "or", "ci_low", "ci_high", "model", "analysis_set", "n", "events"]].copy()
        tmp = tmp.rename(columns={"or": "estimate"})
        tmp["effect_type"] = "OR"
        frames.append(tmp)
    if not frames:
        return pd.DataFrame(columns=["term", "estimate", "ci_low", "ci_high", "model", "analysis_set", "effect_type"])
    return pd.concat(frames, ignore_index=True, sort=False)


def prepare_analysis_df(df: pd.DataFrame, config: dict) -> pd.DataFrame:
    """Stable category levels for reference groups; numeric outcome columns."""
    out = df.copy()
    for col in OUTCOME_COLUMNS.values():
        if col in out.columns:
            out[col] = pd.to_numeric(out[col], errors="coerce")
    out["cancer_history"] = pd.to_numeric(out["cancer_history"], errors="coerce")
    for col, fallback in [("sex_label", ["Male", "Female"]), ("zone_label", ["Urban", "Rural"])]:
        if col in out.columns:
            levels = _category_levels(config, col, fallback)
            out.loc[~out[col].isin(levels), col] = np.nan
    return out


def run_all_analyses(derived_df: pd.DataFrame, config: dict) -> AnalysisBundle:
    threshold = int(config["small_cell_threshold"])
    model_threshold = int(config.get("min_events_per_model", threshold))
    notes: list[str] = []

    df = prepare_analysis_df(derived_df, config)

    # Fatal for this stage when the design columns are absent.
    designs = {
        "general": bind_design(df, "general", notes=notes),
        "dental": bind_design(df, "dental", notes=notes),
    }

    table1 = build_table1(df, designs["general"], category_levels=config.get("category_levels"))
    missingness = build_missingness_table(df, threshold=threshold, notes=notes)
    prevalence = build_prevalence_table(df, designs)

    specs = build_model_specs(config)
    run = run_models(df, designs, specs, threshold=model_threshold, notes=notes)

    skipped = [name for name, m in run.models.items() if m.status == "skipped"]
    if skipped:
        notes.append(f"Sensitivity checks skipped: {', '.join(skipped)}.")

    return AnalysisBundle(
        table1=table1,
        missingness=missingness,
        prevalence=prevalence,
        regression_baseline=run.coefficients(sensitivity=False),
        regression_sensitivity=run.coefficients(sensitivity=True),
        model_diagnostics=run.diagnostics,
        forest_ready=build_forest_ready(run),
        model_run=run,
        designs=designs,
        notes=notes,
    )
