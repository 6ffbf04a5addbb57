"""Derived-variable construction: SVI, allostatic load, tooth loss, outcomes and covariates.

Every derived column is produced by a step that reads raw survey fields through the
probe in ``fields``; steps are composed in ``DERIVATION_STEPS`` order onto a copy of the
raw table. The only steps allowed to read another derived column are the dependent ones
at the end (``not_edentulous`` from ``missing_teeth``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np
import pandas as pd

from .config import (
    ALLOSTATIC_VARIANTS,
    CLINICAL_THRESHOLDS,
    CONFIG,
    FIELDS,
    NO_CODE,
    OUTCOME_COLUMNS,
    OUTCOME_DEFINITIONS,
    SEX_CODES,
    SVI_MAX_MISSING,
    SVI_THRESHOLDS,
    TEETH_FULL_DENTITION,
    YES_CODE,
    ZONE_CODES,
)
from .fields import (
    FieldSource,
    has_field,
    optional_numeric,
    read_field,
    replicate_mean,
    resolve_first,
    single_field,
)


@dataclass
class DerivationContext:
    variant: str
    primary_outcome: str
    age_bands: list[tuple[int, int | None, str]]
    sources: dict[str, str] = field(default_factory=dict)
    quality: list[dict[str, object]] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    def record(self, check: str, n: int, detail: str, *, warn: bool = True) -> None:
        self.quality.append({"check": check, "n": int(n), "detail": detail})
        if n and warn:
            logging.warning("%s: %s (n=%s)", check, detail, n)
            self.notes.append(f"{check}: {detail} (n={n}).")


@dataclass
class DerivedData:
    data: pd.DataFrame
    derivation_flow: pd.DataFrame
    data_quality: pd.DataFrame
    variant: str
    sources: dict[str, str]
    notes: list[str]


def _nan_series(index: pd.Index) -> pd.Series:
    return pd.Series(np.nan, index=index, dtype=float)


def yes_no(series: pd.Series) -> pd.Series:
    """Map questionnaire yes/no codes to 1.0/0.0; any other code is missing."""
    codes = pd.to_numeric(series, errors="coerce").astype(float)
    out = pd.Series(np.nan, index=series.index, dtype=float)
    out[codes == NO_CODE] = 0.0
    out[codes == YES_CODE] = 1.0
    return out


def parse_coded_numeric(series: pd.Series) -> pd.Series:
    """Numeric values stored as text, e.g. ``"6,8"`` or ``" 7.1 "``."""
    if pd.api.types.is_numeric_dtype(series):
        return series.astype(float)
    text = series.astype(str).str.strip().str.replace(",", ".", regex=False)
    return pd.to_numeric(text, errors="coerce").astype(float)


def sex_labels(raw: pd.DataFrame) -> pd.Series:
    if not has_field(raw, FIELDS["sex"]):
        return pd.Series(np.nan, index=raw.index, dtype="object")
    codes = pd.to_numeric(read_field(raw, FIELDS["sex"]), errors="coerce")
    return codes.map(SEX_CODES).astype("object")


def _medication(raw: pd.DataFrame, role: str) -> pd.Series | None:
    name = FIELDS[role]
    if not has_field(raw, name):
        return None
    return yes_no(read_field(raw, name))


def risk_indicator(
    crossed: pd.Series,
    observed: pd.Series,
    medication: pd.Series | None = None,
) -> pd.Series:
    """Binary risk flag: threshold crossed OR on therapy; missing when the reading is missing."""
    flag = crossed.fillna(False).astype(bool)
    if medication is not None:
        flag = flag | medication.eq(1.0)
    out = flag.astype(float)
    out[~observed.fillna(False).astype(bool)] = np.nan
    return out


def sex_specific_crossed(
    values: pd.Series,
    sex: pd.Series,
    cutoffs: dict[str, float],
    compare: Callable[[pd.Series, float], pd.Series],
) -> tuple[pd.Series, pd.Series]:
    crossed = pd.Series(False, index=values.index)
    for label, cutoff in cutoffs.items():
        is_sex = sex.eq(label).fillna(False).astype(bool)
        crossed = crossed | (is_sex & compare(values, cutoff).fillna(False).astype(bool))
    observed = values.notna() & sex.isin(list(cutoffs)).fillna(False).astype(bool)
    return crossed, observed


# ---------------------------------------------------------------------------
# Social vulnerability
# ---------------------------------------------------------------------------


def composite_score(
    frame: pd.DataFrame,
    components: Sequence[str],
    *,
    how: str,
    max_missing: int,
) -> tuple[pd.Series, pd.Series]:
    """Aggregate component columns; null the score where missing components exceed the tolerance.

    Components that are not columns of ``frame`` are treated as missing for every row.
    Returns ``(score, n_missing)``.
    """
    cols = [
        pd.to_numeric(frame[c], errors="coerce").astype(float) if c in frame.columns else _nan_series(frame.index)
        for c in components
    ]
    block = pd.concat(cols, axis=1, keys=list(components))
    n_missing = block.isna().sum(axis=1).astype(int)
    if how == "mean":
        score = block.mean(axis=1, skipna=True)
    elif how == "sum":
        score = block.sum(axis=1, skipna=True, min_count=1)
    else:
        raise ValueError(f"Unknown aggregation {how!r}; expected 'mean' or 'sum'.")
    score = score.astype(float)
    score[n_missing > max_missing] = np.nan
    return score, n_missing


def derive_svi(frame: pd.DataFrame, ctx: DerivationContext) -> pd.DataFrame:
    out = pd.DataFrame(index=frame.index)

    income = optional_numeric(frame, FIELDS["income"])
    education = optional_numeric(frame, FIELDS["education"])
    crowding = optional_numeric(frame, FIELDS["crowding"])

    for label, values in [("income", income), ("education", education), ("crowding", crowding)]:
        if values is None:
            ctx.record("svi_component_absent", len(frame), f"{FIELDS[label]} not in extract; treated as missing")

    out["income_vuln"] = (
        _nan_series(frame.index)
        if income is None
        else (income < SVI_THRESHOLDS["income_below"]).astype(float).where(income.notna())
    )
    out["edu_vuln"] = (
        _nan_series(frame.index)
        if education is None
        else (education < SVI_THRESHOLDS["education_below"]).astype(float).where(education.notna())
    )
    out["housing_vuln"] = (
        _nan_series(frame.index)
        if crowding is None
        else (crowding >= SVI_THRESHOLDS["crowding_at_least"]).astype(float).where(crowding.notna())
    )

    score, n_missing = composite_score(
        out,
        ["income_vuln", "edu_vuln", "housing_vuln"],
        how="mean",
        max_missing=SVI_MAX_MISSING,
    )
    out["svi_score"] = score
    ctx.record(
        "svi_under_quorum",
        int((n_missing > SVI_MAX_MISSING).sum()),
        f"more than {SVI_MAX_MISSING} of 3 vulnerability indicators missing; svi_score set to missing",
        warn=False,
    )
    return out


# ---------------------------------------------------------------------------
# Allostatic load
# ---------------------------------------------------------------------------


def hba1c_sources() -> list[FieldSource]:
    return [
        single_field(FIELDS["hba1c_lab"]),
        single_field(FIELDS["hba1c_self_report"], transform=parse_coded_numeric),
    ]


def _risk_bp(raw: pd.DataFrame, ctx: DerivationContext) -> pd.Series | None:
    sbp = replicate_mean(raw, FIELDS["systolic"])
    dbp = replicate_mean(raw, FIELDS["diastolic"])
    if sbp is None or dbp is None:
        return None
    crossed = (sbp >= CLINICAL_THRESHOLDS["systolic_at_least"]) | (dbp >= CLINICAL_THRESHOLDS["diastolic_at_least"])
    return risk_indicator(crossed, sbp.notna() & dbp.notna(), _medication(raw, "med_hypertension"))


def _risk_total_chol(raw: pd.DataFrame, ctx: DerivationContext) -> pd.Series | None:
    values = optional_numeric(raw, FIELDS["total_cholesterol"])
    if values is None:
        return None
    crossed = values >= CLINICAL_THRESHOLDS["total_cholesterol_at_least"]
    return risk_indicator(crossed, values.notna(), _medication(raw, "med_dyslipidemia"))


def _risk_hdl(raw: pd.DataFrame, ctx: DerivationContext) -> pd.Series | None:
    values = optional_numeric(raw, FIELDS["hdl_cholesterol"])
    if values is None:
        return None
    crossed, observed = sex_specific_crossed(
        values, sex_labels(raw), CLINICAL_THRESHOLDS["hdl_below"], lambda v, c: v < c
    )
    return risk_indicator(crossed, observed)


def _risk_glycemia(raw: pd.DataFrame, ctx: DerivationContext) -> pd.Series | None:
    resolved = resolve_first(raw, hba1c_sources(), label="hba1c")
    if resolved is None:
        return None
    ctx.sources["hba1c"] = resolved.source
    values = resolved.values.astype(float)

    lo = CLINICAL_THRESHOLDS["hba1c_plausible_min"]
    hi = CLINICAL_THRESHOLDS["hba1c_plausible_max"]
    implausible = values.notna() & ~values.between(lo, hi)
    ctx.record(
        "hba1c_implausible",
        int(implausible.sum()),
        f"HbA1c outside {lo}-{hi}% from {resolved.source}; set to missing",
    )
    values = values.mask(implausible)

    crossed = values >= CLINICAL_THRESHOLDS["hba1c_at_least"]
    return risk_indicator(crossed, values.notna(), _medication(raw, "med_diabetes"))


def _risk_waist(raw: pd.DataFrame, ctx: DerivationContext) -> pd.Series | None:
    values = optional_numeric(raw, FIELDS["waist"])
    if values is None:
        return None
    crossed, observed = sex_specific_crossed(
        values, sex_labels(raw), CLINICAL_THRESHOLDS["waist_at_least"], lambda v, c: v >= c
    )
    return risk_indicator(crossed, observed)


def _risk_crp(raw: pd.DataFrame, ctx: DerivationContext) -> pd.Series | None:
    values = optional_numeric(raw, FIELDS["crp"])
    if values is None:
        return None
    return risk_indicator(values >= CLINICAL_THRESHOLDS["crp_at_least"], values.notna())


def _risk_pulse(raw: pd.DataFrame, ctx: DerivationContext) -> pd.Series | None:
    values = replicate_mean(raw, FIELDS["pulse"])
    if values is None:
        return None
    return risk_indicator(values >= CLINICAL_THRESHOLDS["pulse_at_least"], values.notna())


def _risk_creatinine(raw: pd.DataFrame, ctx: DerivationContext) -> pd.Series | None:
    values = optional_numeric(raw, FIELDS["creatinine"])
    if values is None:
        return None
    crossed, observed = sex_specific_crossed(
        values, sex_labels(raw), CLINICAL_THRESHOLDS["creatinine_above"], lambda v, c: v > c
    )
    return risk_indicator(crossed, observed)


RISK_COMPONENTS: dict[str, Callable[[pd.DataFrame, DerivationContext], pd.Series | None]] = {
    "bp": _risk_bp,
    "total_chol": _risk_total_chol,
    "hdl": _risk_hdl,
    "glycemia": _risk_glycemia,
    "waist": _risk_waist,
    "crp": _risk_crp,
    "pulse": _risk_pulse,
    "creatinine": _risk_creatinine,
}


def resolve_allostatic_variant(raw: pd.DataFrame, requested: str = "auto") -> str:
    """Pick the allostatic-load variant; ``auto`` follows the optional biomarkers present."""
    requested = (requested or "auto").strip().lower()
    if requested != "auto":
        if requested not in ALLOSTATIC_VARIANTS:
            raise ValueError(f"Unknown allostatic-load variant {requested!r}.")
        return requested
    if has_field(raw, FIELDS["creatinine"]):
        return "extended"
    if any(has_field(raw, name) for name in FIELDS["pulse"]):
        return "standard"
    return "minimal"


def derive_allostatic_load(frame: pd.DataFrame, ctx: DerivationContext) -> pd.DataFrame:
    spec = ALLOSTATIC_VARIANTS[ctx.variant]
    components: list[str] = list(spec["components"])
    max_missing = int(spec["max_missing"])

    out = pd.DataFrame(index=frame.index)
    for component in components:
        col = f"risk_{component}"
        flag = RISK_COMPONENTS[component](frame, ctx)
        if flag is None:
            ctx.record(
                "allostatic_component_absent",
                len(frame),
                f"{component} fields not in extract; component missing for every respondent",
            )
            flag = _nan_series(frame.index)
        out[col] = flag

    risk_cols = [f"risk_{c}" for c in components]
    score, n_missing = composite_score(out, risk_cols, how="sum", max_missing=max_missing)
    out["allostatic_load_score"] = score
    out["allostatic_load_n_components"] = len(components)
    out["allostatic_load_n_missing"] = n_missing
    ctx.record(
        "allostatic_under_quorum",
        int((n_missing > max_missing).sum()),
        f"more than {max_missing} of {len(components)} risk indicators missing ({ctx.variant}); score set to missing",
        warn=False,
    )
    return out


# ---------------------------------------------------------------------------
# Oral health
# ---------------------------------------------------------------------------


def teeth_sources() -> list[FieldSource]:
    upper, lower = FIELDS["teeth_arches"]
    return [
        single_field(FIELDS["teeth_adjusted"]),
        FieldSource(
            name="arch_sum",
            fields=(upper, lower),
            transform=lambda frame: (
                pd.to_numeric(frame[upper], errors="coerce") + pd.to_numeric(frame[lower], errors="coerce")
            ).astype(float),
        ),
    ]


def derive_missing_teeth(frame: pd.DataFrame, ctx: DerivationContext) -> pd.DataFrame:
    out = pd.DataFrame(index=frame.index)
    resolved = resolve_first(frame, teeth_sources(), label="teeth_total")
    if resolved is None:
        ctx.record("teeth_fields_absent", len(frame), "no tooth-count source in extract; missing_teeth missing")
        out["teeth_total"] = _nan_series(frame.index)
        out["missing_teeth"] = _nan_series(frame.index)
        return out

    ctx.sources["teeth_total"] = resolved.source
    total = resolved.values.astype(float)
    negative = total < 0
    ctx.record(
        "teeth_negative_sentinel",
        int(negative.sum()),
        f"negative tooth total from {resolved.source}; treated as missing",
    )
    total = total.mask(negative)
    ctx.record(
        "teeth_above_full_dentition",
        int((total > TEETH_FULL_DENTITION).sum()),
        f"tooth total above {TEETH_FULL_DENTITION} from {resolved.source}; kept, missing_teeth is negative",
    )
    out["teeth_total"] = total
    out["missing_teeth"] = TEETH_FULL_DENTITION - total
    return out


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


def assemble_outcome(frame: pd.DataFrame, flag_fields: Sequence[str], *, label: str) -> pd.Series:
    """1 if any existing flag is yes, 0 if none is yes and one is an explicit no, else missing."""
    present = [name for name in flag_fields if has_field(frame, name)]
    if not present:
        logging.warning("%s: none of the outcome fields exist (%s)", label, ", ".join(flag_fields))
        return _nan_series(frame.index)
    if len(present) < len(flag_fields):
        logging.info(
            "%s: outcome fields absent from extract: %s",
            label,
            ", ".join(name for name in flag_fields if name not in present),
        )

    flags = pd.concat([yes_no(read_field(frame, name)) for name in present], axis=1)
    out = _nan_series(frame.index)
    out[flags.eq(0.0).any(axis=1)] = 0.0
    out[flags.eq(1.0).any(axis=1)] = 1.0
    return out


def derive_outcomes(frame: pd.DataFrame, ctx: DerivationContext) -> pd.DataFrame:
    out = pd.DataFrame(index=frame.index)
    for name, flag_fields in OUTCOME_DEFINITIONS.items():
        col = OUTCOME_COLUMNS[name]
        out[col] = assemble_outcome(frame, flag_fields, label=col)
        if out[col].isna().all():
            ctx.record("outcome_undefined", len(frame), f"{col} missing for every respondent")
    out["cancer_history"] = out[OUTCOME_COLUMNS[ctx.primary_outcome]]
    return out


# ---------------------------------------------------------------------------
# Covariates
# ---------------------------------------------------------------------------


def smoking_sources() -> list[FieldSource]:
    current = FIELDS["smoking_current"]
    status = FIELDS["smoking_status"]
    tobacco = FIELDS["tobacco_use"]
    # smoking_status: 1 daily, 2 occasional, 3 former, 4 never.
    status_map = {1: 1.0, 2: 1.0, 3: 0.0, 4: 0.0}
    return [
        FieldSource(name=current, fields=(current,), transform=lambda frame: yes_no(frame[current])),
        FieldSource(
            name=status,
            fields=(status,),
            transform=lambda frame: pd.to_numeric(frame[status], errors="coerce").map(status_map).astype(float),
        ),
        FieldSource(name=tobacco, fields=(tobacco,), transform=lambda frame: yes_no(frame[tobacco])),
    ]


def age_band(age: float, bands: Sequence[tuple[int, int | None, str]]) -> object:
    """Half-open bands ``[low, next_low)``; the last band runs to ``high + 1`` or is open-ended."""
    if pd.isna(age) or not bands:
        return np.nan
    if age < bands[0][0]:
        return f"<{bands[0][0]}"
    for i, (low, high, label) in enumerate(bands):
        if i + 1 < len(bands):
            upper = bands[i + 1][0]
        else:
            upper = None if high is None else high + 1
        if age >= low and (upper is None or age < upper):
            return label
    return np.nan


def derive_covariates(frame: pd.DataFrame, ctx: DerivationContext) -> pd.DataFrame:
    out = pd.DataFrame(index=frame.index)
    out["sex_label"] = sex_labels(frame)

    age = optional_numeric(frame, FIELDS["age"])
    out["age_years"] = _nan_series(frame.index) if age is None else age

    smoking = resolve_first(frame, smoking_sources(), label="smoking")
    if smoking is None:
        ctx.record("smoking_fields_absent", len(frame), "no smoking field in extract; smoking missing")
        out["smoking"] = _nan_series(frame.index)
    else:
        ctx.sources["smoking"] = smoking.source
        out["smoking"] = smoking.values.astype(float)

    education = optional_numeric(frame, FIELDS["education"])
    out["education_higher"] = (
        _nan_series(frame.index) if education is None else (education >= 4).astype(float).where(education.notna())
    )

    if has_field(frame, FIELDS["zone"]):
        out["zone_label"] = pd.to_numeric(read_field(frame, FIELDS["zone"]), errors="coerce").map(ZONE_CODES).astype("object")
    else:
        out["zone_label"] = pd.Series(np.nan, index=frame.index, dtype="object")
    return out


def derive_dependent(frame: pd.DataFrame, ctx: DerivationContext) -> pd.DataFrame:
    out = pd.DataFrame(index=frame.index)
    out["age_band"] = frame["age_years"].apply(lambda x: age_band(x, ctx.age_bands)).astype("object")
    missing = frame["missing_teeth"]
    out["not_edentulous"] = (missing < TEETH_FULL_DENTITION).astype(float).where(missing.notna())
    return out


DERIVATION_STEPS: list[tuple[str, Callable[[pd.DataFrame, DerivationContext], pd.DataFrame]]] = [
    ("svi", derive_svi),
    ("allostatic_load", derive_allostatic_load),
    ("missing_teeth", derive_missing_teeth),
    ("outcomes", derive_outcomes),
    ("covariates", derive_covariates),
    ("dependent", derive_dependent),
]


def _derivation_flow(df: pd.DataFrame) -> pd.DataFrame:
    rows = [
        ("01_raw_respondents", len(df)),
        ("02_svi_defined", int(df["svi_score"].notna().sum())),
        ("03_allostatic_load_defined", int(df["allostatic_load_score"].notna().sum())),
        ("04_missing_teeth_defined", int(df["missing_teeth"].notna().sum())),
        ("05_cancer_history_defined", int(df["cancer_history"].notna().sum())),
        ("06_cancer_history_cases", int(df["cancer_history"].eq(1.0).sum())),
        ("07_not_edentulous", int(df["not_edentulous"].eq(1.0).sum())),
    ]
    return pd.DataFrame(rows, columns=["step", "n"])


def derive_variables(
    raw: pd.DataFrame,
    *,
    variant: str = "auto",
    primary_outcome: str = "self_report",
    age_bands: Sequence[tuple[int, int | None, str]] | None = None,
) -> DerivedData:
    """Append every derived column to a copy of ``raw``; ``raw`` itself is left untouched."""
    if primary_outcome not in OUTCOME_DEFINITIONS:
        raise ValueError(f"Unknown outcome definition {primary_outcome!r}.")
    ctx = DerivationContext(
        variant=resolve_allostatic_variant(raw, variant),
        primary_outcome=primary_outcome,
        age_bands=list(age_bands if age_bands is not None else CONFIG["age_bands"]),
    )
    logging.info("Deriving variables. rows=%s allostatic_variant=%s", len(raw), ctx.variant)

    out = raw.copy()
    for name, step in DERIVATION_STEPS:
        new_cols = step(out, ctx)
        clash = [c for c in new_cols.columns if c in out.columns]
        if clash:
            raise ValueError(f"Derivation step {name} would overwrite existing columns: {', '.join(clash)}")
        out = pd.concat([out, new_cols], axis=1)
        logging.info("Derivation step %s added %s columns", name, len(new_cols.columns))

    flow = _derivation_flow(out)
    quality = pd.DataFrame(ctx.quality, columns=["check", "n", "detail"])
    return DerivedData(
        data=out,
        derivation_flow=flow,
        data_quality=quality,
        variant=ctx.variant,
        sources=dict(ctx.sources),
        notes=list(ctx.notes),
    )
