"""Main entrypoint for the tooth loss / allostatic load / cancer history pipeline."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

import pandas as pd

from .analysis import AnalysisBundle, run_all_analyses
from .config import ASSUMPTIONS, CHANGE_LOG, CONFIG, REQUIRED_OUTPUT_FILES, ensure_output_dir, validate_config
from .derivation import DerivedData, derive_variables
from .loader import SurveyExtract, load_survey_extract
from .reporting import plot_forest, plot_prevalence, write_report
from .suppression import suppress_small_cells


@dataclass
class PipelineRunResult:
    output_dir: Path
    generated_files: list[str]
    extract: SurveyExtract
    derived: DerivedData
    analyses: AnalysisBundle
    notes: list[str]
    suppression_log: pd.DataFrame


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
    )


def _print_df(label: str, df: pd.DataFrame, max_rows: int = 30) -> None:
    print(f"\n===== {label} =====")
    if df.empty:
        print("[empty]")
        return
    if len(df) > max_rows:
        print(df.head(max_rows).to_string(index=False))
        print(f"... ({len(df)} rows total)")
    else:
        print(df.to_string(index=False))


def _save_with_policy(
    *,
    file_name: str,
    df: pd.DataFrame,
    output_dir: Path,
    threshold: int,
    suppression_rows: list[pd.DataFrame],
    count_columns: list[str] | None = None,
    print_tables: bool = False,
    print_max_rows: int = 30,
) -> tuple[Path, pd.DataFrame]:
    kept, excluded = suppress_small_cells(df, threshold=threshold, count_columns=count_columns)
    out_path = output_dir / file_name
    kept.to_csv(out_path, index=False)

    if not excluded.empty:
        tmp = excluded.copy()
        tmp["file"] = file_name
        suppression_rows.append(tmp)

    logging.info("Saved %s (%s rows)", file_name, len(kept))
    if logging.getLogger().isEnabledFor(logging.DEBUG) and not kept.empty:
        logging.debug("%s preview:\n%s", file_name, kept.head(20).to_string(index=False))
    if print_tables:
        _print_df(file_name, kept, max_rows=print_max_rows)
    return out_path, kept


def _verify_outputs(output_dir: Path, notes: list[str], *, skip: tuple[str, ...] = ()) -> None:
    for file_name in REQUIRED_OUTPUT_FILES:
        if file_name in skip:
            continue
        if not (output_dir / file_name).exists():
            notes.append(f"Missing expected output artifact: {file_name}")


def main(config: dict | None = None) -> PipelineRunResult:
    cfg = CONFIG if config is None else config
    _configure_logging()
    validate_config(cfg)

    output_dir = ensure_output_dir(cfg)
    threshold = int(cfg["small_cell_threshold"])
    print_tables = bool(cfg.get("print_tables_in_notebook", False))
    print_max_rows = int(cfg.get("print_table_max_rows", 30))
    dpi = int(cfg.get("figure_dpi", 300))

    logging.info("Starting survey pipeline. input=%s", cfg["input_path"])
    logging.info("Output directory: %s", output_dir)

    extract = load_survey_extract(cfg["input_path"])
    derived = derive_variables(
        extract.data,
        variant=cfg.get("allostatic_variant", "auto"),
        primary_outcome=cfg.get("primary_outcome", "self_report"),
        age_bands=cfg.get("age_bands"),
    )

    suppression_rows: list[pd.DataFrame] = []
    generated_files: list[str] = []

    def _save(file_name: str, df: pd.DataFrame, count_cols: list[str] | None) -> pd.DataFrame:
        path, kept = _save_with_policy(
            file_name=file_name,
            df=df,
            output_dir=output_dir,
            threshold=threshold,
            suppression_rows=suppression_rows,
            count_columns=count_cols,
            print_tables=print_tables,
            print_max_rows=print_max_rows,
        )
        generated_files.append(path.name)
        return kept

    _save("derivation_flow.csv", derived.derivation_flow, ["n"])
    _save("data_quality.csv", derived.data_quality, [])

    analyses = run_all_analyses(derived.data, cfg)

    output_map: list[tuple[str, pd.DataFrame, list[str] | None]] = [
        ("table1_by_cancer_history.csv", analyses.table1, ["n"]),
        ("derived_missingness.csv", analyses.missingness, ["n_missing", "n_observed"]),
        ("regression_baseline.csv", analyses.regression_baseline, ["n", "events"]),
        ("regression_sensitivity.csv", analyses.regression_sensitivity, ["n", "events"]),
        ("model_diagnostics.csv", analyses.model_diagnostics, ["n", "events", "nonevents"]),
    ]
    for file_name, df, count_cols in output_map:
        _save(file_name, df, count_cols)

    forest_kept = _save("forest_plot_ready.csv", analyses.forest_ready, ["n", "events"])
    prevalence_kept = _save("prevalence_by_exposure.csv", analyses.prevalence, ["n", "events"])

    generated_files.append(plot_forest(forest_kept, output_dir / "figure1_forest_plot.png", dpi=dpi).name)
    generated_files.append(
        plot_prevalence(prevalence_kept, output_dir / "figure2_prevalence_by_exposure.png", dpi=dpi).name
    )

    suppression_log = (
        pd.concat(suppression_rows, ignore_index=True, sort=False)
        if suppression_rows
        else pd.DataFrame(columns=["file", "policy_note", "suppression_columns"])
    )

    if suppression_log.empty:
        logging.info("No rows suppressed under small-cell policy threshold n<%s", threshold)
    else:
        logging.warning("Suppression applied to %s rows total.", len(suppression_log))

    notes = [*derived.notes, *analyses.notes]
    _verify_outputs(output_dir, notes, skip=("REPORT.md",))

    report_path = write_report(
        output_dir=output_dir,
        change_log=CHANGE_LOG,
        assumptions=ASSUMPTIONS,
        derivation_flow=derived.derivation_flow,
        data_quality=derived.data_quality,
        regression_baseline=analyses.regression_baseline,
        allostatic_variant=derived.variant,
        primary_outcome=cfg.get("primary_outcome", "self_report"),
        sources=derived.sources,
        generated_files=generated_files,
        notes=notes,
        suppression_log=suppression_log[[c for c in ["file", "policy_note", "suppression_columns"] if c in suppression_log.columns]],
        threshold=threshold,
        model_threshold=int(cfg.get("min_events_per_model", threshold)),
    )
    generated_files.append(report_path.name)

    logging.info("Pipeline complete. Generated files:")
    for fp in sorted(generated_files):
        logging.info("- %s", fp)

    return PipelineRunResult(
        output_dir=output_dir,
        generated_files=sorted(generated_files),
        extract=extract,
        derived=derived,
        analyses=analyses,
        notes=notes,
        suppression_log=suppression_log,
    )


def cli() -> None:
    main()


if __name__ == "__main__":
    main()
