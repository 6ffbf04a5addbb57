"""Readers for the raw survey extract."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd
import pyreadstat

SUPPORTED_SUFFIXES = (".sav", ".zsav", ".dta", ".xpt", ".sas7bdat", ".csv", ".parquet")

_PYREADSTAT_READERS = {
    ".sav": pyreadstat.read_sav,
    ".zsav": pyreadstat.read_sav,
    ".dta": pyreadstat.read_dta,
    ".xpt": pyreadstat.read_xport,
    ".sas7bdat": pyreadstat.read_sas7bdat,
}


@dataclass
class SurveyExtract:
    data: pd.DataFrame
    source_path: Path
    file_format: str
    column_labels: dict[str, str] = field(default_factory=dict)

    @property
    def n_rows(self) -> int:
        return int(len(self.data))


def validate_input_path(path: str | Path) -> Path:
    if not str(path).strip():
        raise ValueError("SURVEY_INPUT_PATH is empty.")
    resolved = Path(path).expanduser().resolve()
    if resolved.suffix.lower() not in SUPPORTED_SUFFIXES:
        raise ValueError(
            f"Unsupported survey extract format {resolved.suffix!r}. "
            f"Supported: {', '.join(SUPPORTED_SUFFIXES)}."
        )
    if not resolved.exists():
        raise FileNotFoundError(f"Survey extract not found: {resolved}")
    return resolved


def load_survey_extract(path: str | Path) -> SurveyExtract:
    resolved = validate_input_path(path)
    suffix = resolved.suffix.lower()
    logging.info("Reading survey extract: %s", resolved)
    labels: dict[str, str] = {}
    try:
        if suffix in _PYREADSTAT_READERS:
            # Keep agency codes numeric; value labels are not applied.
            df, meta = _PYREADSTAT_READERS[suffix](str(resolved), apply_value_formats=False)
            labels = {
                name: label
                for name, label in zip(meta.column_names, meta.column_labels or [])
                if label
            }
        elif suffix == ".csv":
            df = pd.read_csv(resolved, low_memory=False)
        else:
            df = pd.read_parquet(resolved)
    except (pyreadstat.ReadstatError, pyreadstat.PyreadstatError, OSError, ValueError) as exc:
        logging.exception("Failed to read survey extract: %s", resolved)
        raise RuntimeError(f"Failed to read survey extract ({resolved}): {exc}") from exc

    logging.info("Finished reading %s | rows=%s columns=%s", resolved.name, len(df), len(df.columns))
    return SurveyExtract(
        data=df,
        source_path=resolved,
        file_format=suffix.lstrip("."),
        column_labels=labels,
    )
