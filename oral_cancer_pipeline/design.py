"""Survey design binding (weight, stratum, cluster) for variance-correct model fits."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .config import FIELDS
from .fields import has_field, read_field

WEIGHT_ROLES = ("general", "dental")


class DesignBindingError(RuntimeError):
    """The survey design cannot be bound to the table; weighted models cannot be fitted."""


@dataclass(frozen=True)
class SurveyDesign:
    weight: str
    strata: str
    cluster: str
    weight_role: str
    fallback_used: bool = False

    def columns(self) -> list[str]:
        return [self.weight, self.strata, self.cluster]


def bind_design(df: pd.DataFrame, role: str = "general", notes: list[str] | None = None) -> SurveyDesign:
    """Bind the design columns for one model run.

    The dental role prefers the dental-examination weight and falls back to the general
    weight for the whole table when the dental column is absent.
    """
    if role not in WEIGHT_ROLES:
        raise ValueError(f"Unknown weight role {role!r}; expected one of {WEIGHT_ROLES}.")

    strata = FIELDS["stratum"]
    cluster = FIELDS["cluster"]
    weight = FIELDS["weight_general"]
    fallback_used = False

    if role == "dental":
        dental = FIELDS["weight_dental"]
        if has_field(df, dental):
            weight = dental
        else:
            fallback_used = True
            msg = f"Dental weight {dental} not in extract; dental models use {weight}."
            logging.warning(msg)
            if notes is not None:
                notes.append(msg)

    missing = [col for col in (weight, strata, cluster) if not has_field(df, col)]
    if missing:
        raise DesignBindingError(
            f"Survey design columns missing for the {role} weight role: {', '.join(missing)}. "
            "Weighted models cannot be fitted without sampling weights, strata and clusters."
        )

    design = SurveyDesign(
        weight=weight,
        strata=strata,
        cluster=cluster,
        weight_role=role,
        fallback_used=fallback_used,
    )
    logging.info("Bound survey design (%s): weight=%s strata=%s cluster=%s", role, weight, strata, cluster)
    return design


def require_design(design: SurveyDesign | None, df: pd.DataFrame) -> SurveyDesign:
    if design is None:
        raise DesignBindingError("No survey design bound; refusing to fit an unweighted model.")
    missing = [col for col in design.columns() if not has_field(df, col)]
    if missing:
        raise DesignBindingError(f"Bound design columns absent from the model table: {', '.join(missing)}.")
    return design


def design_frame(df: pd.DataFrame, design: SurveyDesign) -> pd.DataFrame:
    """Normalized weights and stratum-by-PSU cluster codes aligned to ``df``.

    Rows with a missing or non-positive weight, or a missing stratum/PSU, get
    ``usable == False``.
    """
    weights = pd.to_numeric(read_field(df, design.weight), errors="coerce").astype(float)
    strata = read_field(df, design.strata)
    clusters = read_field(df, design.cluster)

    usable = weights.notna() & (weights > 0) & strata.notna() & clusters.notna()
    # PSU ids are only unique within a stratum.
    group_key = strata.astype(str) + "::" + clusters.astype(str)
    codes = pd.Series(pd.factorize(group_key.where(usable))[0], index=df.index)

    mean_w = float(weights.loc[usable].mean()) if usable.any() else np.nan
    norm = (weights / mean_w).where(usable)
    return pd.DataFrame(
        {"design_weight": norm, "design_group": codes, "usable": usable},
        index=df.index,
    )
