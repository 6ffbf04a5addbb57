"""Report generation utilities: REPORT.md and the two study figures."""

from __future__ import annotations

from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

EXPOSURE_LABELS = {
    "allostatic_load_score": "Allostatic load score",
    "missing_teeth": "Missing teeth",
}


def _fmt_pct(x: float | int | None) -> str:
    if x is None or pd.isna(x):
        return "NA"
    return f"{100 * float(x):.1f}%"


def _fmt_or(row: pd.Series) -> str:
    return f"{row['or']:.2f} ({row['ci_low']:.2f}-{row['ci_high']:.2f}), p={row['p_value']:.3g}"


def _empty_figure(path: Path, message: str, dpi: int) -> Path:
    fig, ax = plt.subplots(figsize=(6, 3))
    ax.axis("off")
    ax.text(0.5, 0.5, message, ha="center", va="center", fontsize=11)
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return path


def plot_forest(forest_df: pd.DataFrame, path: Path, dpi: int = 300) -> Path:
    """Exposure odds ratios with 95% CI, one row per model, log x-axis."""
    if forest_df.empty:
        return _empty_figure(path, "No fitted models to plot.", dpi)

    df = forest_df.reset_index(drop=True)
    y = np.arange(len(df))[::-1]
    ratio = df["estimate"].astype(float).to_numpy()
    lcl = df["ci_low"].astype(float).to_numpy()
    ucl = df["ci_high"].astype(float).to_numpy()
    sig = (lcl > 1) | (ucl < 1)
    labels = [f"{m}: {EXPOSURE_LABELS.get(t, t)}" for m, t in zip(df["model"], df["term"])]
    colors = np.where(df["analysis_set"] == "baseline", "#0072B2", "#009E73")

    fig, ax = plt.subplots(figsize=(9, max(3, 0.45 * len(df) + 1)))
    ax.hlines(y, lcl, ucl, colors=np.where(sig, "#0072B2", "#999999"), linewidth=2)
    ax.scatter(ratio, y, s=50, c=colors, zorder=5)
    ax.axvline(1.0, linestyle="--", color="#D55E00", alpha=0.5, linewidth=1)
    ax.set_yticks(y)
    ax.set_yticklabels(labels)
    ax.set_xscale("log")
    ax.set_xlabel("Odds ratio of cancer history (95% CI)")
    ax.set_title("Tooth loss, allostatic load and cancer history\n(survey-weighted logistic models)")
    ax.grid(True, axis="x", alpha=0.2)
    fig.tight_layout()
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return path


def plot_prevalence(prevalence_df: pd.DataFrame, path: Path, dpi: int = 300) -> Path:
    """Weighted cancer-history prevalence across exposure levels, one panel per exposure."""
    if prevalence_df.empty:
        return _empty_figure(path, "No prevalence estimates available.", dpi)

    exposures = [e for e in EXPOSURE_LABELS if e in set(prevalence_df["exposure"])]
    fig, axes = plt.subplots(1, len(exposures), figsize=(6 * len(exposures), 4), squeeze=False)
    for ax, exposure in zip(axes[0], exposures):
        sub = prevalence_df.loc[prevalence_df["exposure"] == exposure]
        x = np.arange(len(sub))
        ax.bar(x, 100 * sub["weighted_prevalence"].astype(float), color="#0072B2", alpha=0.8)
        ax.set_xticks(x)
        ax.set_xticklabels(sub["level"].astype(str), rotation=45, ha="right")
        ax.set_xlabel(EXPOSURE_LABELS[exposure])
        ax.set_ylabel("Weighted prevalence of cancer history (%)")
        ax.grid(True, axis="y", alpha=0.2)
    fig.suptitle("Cancer history by exposure level")
    fig.tight_layout()
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return path


def write_report(
    *,
    output_dir: Path,
    change_log: list[str],
    assumptions: list[str],
    derivation_flow: pd.DataFrame,
    data_quality: pd.DataFrame,
    regression_baseline: pd.DataFrame,
    allostatic_variant: str,
    primary_outcome: str,
    sources: dict[str, str],
    generated_files: list[str],
    notes: list[str],
    suppression_log: pd.DataFrame,
    threshold: int,
    model_threshold: int | None = None,
) -> Path:
    report_path = output_dir / "REPORT.md"

    lines: list[str] = []
    lines.append("# REPORT: Tooth Loss, Allostatic Load and Cancer History")
    lines.append("")

    lines.append("## Change Log")
    for entry in change_log:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Assumptions")
    for entry in assumptions:
        lines.append(f"- {entry}")
    lines.append("")

    lines.append("## Run Settings")
    lines.append(f"- Allostatic-load variant: `{allostatic_variant}`")
    lines.append(f"- Primary outcome definition: `{primary_outcome}`")
    for role, source in sorted(sources.items()):
        lines.append(f"- {role} source: `{source}`")
    lines.append("")

    lines.append("## Derivation Flow")
    if derivation_flow.empty:
        lines.append("- Derivation flow unavailable.")
    else:
        total = None
        for _, row in derivation_flow.iterrows():
            step = row.get("step", "step")
            n = row.get("n", "NA")
            if total is None:
                total = n
                lines.append(f"- {step}: {n}")
            else:
                share = n / total if total else None
                lines.append(f"- {step}: {n} ({_fmt_pct(share)})")
    lines.append("")

    lines.append("## Data Quality")
    flagged = data_quality.loc[data_quality["n"] > 0] if not data_quality.empty else data_quality
    if data_quality.empty or flagged.empty:
        lines.append("- No data-quality issues recorded.")
    else:
        for _, row in flagged.iterrows():
            lines.append(f"- {row['check']}: {row['detail']} (n={row['n']})")
    lines.append("")

    lines.append("## Baseline Models")
    if regression_baseline.empty or "term" not in regression_baseline.columns:
        lines.append("- No baseline model produced estimates.")
    else:
        exposure_rows = regression_baseline.loc[regression_baseline["term"].isin(list(EXPOSURE_LABELS))]
        for _, row in exposure_rows.iterrows():
            if pd.isna(row.get("or")):
                continue
            lines.append(
                f"- `{row['model']}` {EXPOSURE_LABELS[row['term']]}: OR {_fmt_or(row)}; n={int(row['n'])}, "
                f"weight `{row['weight_column']}`"
            )
        if exposure_rows.empty:
            lines.append("- No baseline model produced estimates.")
    lines.append("")

    lines.append("## Generated Artifacts")
    for fp in sorted(generated_files):
        lines.append(f"- `{fp}`")
    lines.append("")

    lines.append(f"## Policy Exclusions (n<{threshold})")
    if suppression_log.empty:
        lines.append("- No table rows were removed by suppression checks.")
    else:
        for _, row in suppression_log.iterrows():
            file_name = row.get("file", "unknown")
            policy_note = row.get("policy_note", "")
            lines.append(f"- `{file_name}`: {policy_note}")
    lines.append("")

    lines.append("## Notes")
    if not notes:
        lines.append("- None.")
    else:
        for note in notes:
            lines.append(f"- {note}")
    lines.append("")

    lines.append("## Interpretation Guardrails")
    lines.append("- Cross-sectional survey data: odds ratios describe association, not causation.")
    lines.append("- Cancer history is self-reported and lifetime; tooth loss and biomarkers are measured at interview.")
    lines.append("- Variance uses a cluster-robust sandwich over stratum-PSU groups and ignores stratification (conservative).")
    lines.append("- Skipped sensitivity checks and outputs excluded under the small-cell policy are not interpreted.")
    model_min = threshold if model_threshold is None else model_threshold
    lines.append(
        f"- Baseline and sensitivity models with fewer than {model_min} cases or non-cases are withheld "
        "by the small-cell policy; their absence from the regression tables is not a null result."
    )

    report_path.write_text("\n".join(lines), encoding="utf-8")
    return report_path
