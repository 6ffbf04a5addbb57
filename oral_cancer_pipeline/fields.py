"""Field existence probe and ordered source resolution over the raw survey table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

import pandas as pd


class MissingFieldError(KeyError):
    """Raised when a field that is not part of the loaded schema is read directly."""


def has_field(df: pd.DataFrame, name: str) -> bool:
    return name in df.columns


def has_fields(df: pd.DataFrame, names: Sequence[str]) -> bool:
    return all(has_field(df, name) for name in names)


def read_field(df: pd.DataFrame, name: str) -> pd.Series:
    if not has_field(df, name):
        raise MissingFieldError(f"Field {name!r} is not present in the survey extract.")
    return df[name]


def read_numeric(df: pd.DataFrame, name: str) -> pd.Series:
    return pd.to_numeric(read_field(df, name), errors="coerce").astype(float)


def optional_numeric(df: pd.DataFrame, name: str) -> pd.Series | None:
    """Numeric column when the field exists, None when it is absent from the schema."""
    if not has_field(df, name):
        return None
    return read_numeric(df, name)


def replicate_mean(df: pd.DataFrame, names: Sequence[str]) -> pd.Series | None:
    """Row mean over the replicate readings that exist; None when none of them exist."""
    present = [name for name in names if has_field(df, name)]
    if not present:
        return None
    values = pd.concat([read_numeric(df, name) for name in present], axis=1)
    return values.mean(axis=1, skipna=True)


@dataclass(frozen=True)
class FieldSource:
    """One candidate source in a fallback chain.

    ``fields`` must all exist for the source to be selected; ``transform`` receives the
    frame restricted to those fields and returns one value per respondent.
    """

    name: str
    fields: tuple[str, ...]
    transform: Callable[[pd.DataFrame], pd.Series]


@dataclass
class ResolvedField:
    source: str
    values: pd.Series


def single_field(name: str, transform: Callable[[pd.Series], pd.Series] | None = None) -> FieldSource:
    fn = transform or (lambda s: pd.to_numeric(s, errors="coerce").astype(float))
    return FieldSource(name=name, fields=(name,), transform=lambda frame: fn(frame[name]))


def resolve_first(df: pd.DataFrame, sources: Sequence[FieldSource], *, label: str) -> ResolvedField | None:
    """Return the first source whose fields all exist; later sources are never consulted."""
    for source in sources:
        if has_fields(df, source.fields):
            values = source.transform(df.loc[:, list(source.fields)])
            logging.info("%s: using source %s", label, source.name)
            return ResolvedField(source=source.name, values=values.reindex(df.index))
    logging.warning(
        "%s: none of the candidate sources exist (%s)",
        label,
        ", ".join(s.name for s in sources),
    )
    return None
