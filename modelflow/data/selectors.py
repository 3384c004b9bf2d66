"""Column selectors used by recipe steps.

A step receives either explicit column names or a selector. Selectors are
resolved against the frame the step is fitted on, so columns created by
earlier steps are picked up too.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import pandas as pd

from modelflow.data.utils import ROLE_OUTCOME, ROLE_PREDICTOR
from modelflow.errors import MissingColumnsError


def is_nominal(column: pd.Series) -> bool:
    return (
        isinstance(column.dtype, pd.CategoricalDtype)
        or pd.api.types.is_object_dtype(column)
        or pd.api.types.is_string_dtype(column)
        or pd.api.types.is_bool_dtype(column)
    )


def is_numeric(column: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(column) and not pd.api.types.is_bool_dtype(column)


@dataclass(frozen=True)
class Selector:
    """Role and type based column selection.

    Columns without an explicit role in ``roles`` are predictors.
    """

    role: str = ROLE_PREDICTOR
    dtype: str | None = None

    def resolve(self, frame: pd.DataFrame, roles: Mapping[str, str]) -> list[str]:
        selected = []
        for column in frame.columns:
            if roles.get(column, ROLE_PREDICTOR) != self.role:
                continue
            if self.dtype == "numeric" and not is_numeric(frame[column]):
                continue
            if self.dtype == "nominal" and not is_nominal(frame[column]):
                continue
            selected.append(column)
        return selected


def all_predictors() -> Selector:
    return Selector()


def all_numeric_predictors() -> Selector:
    return Selector(dtype="numeric")


def all_nominal_predictors() -> Selector:
    return Selector(dtype="nominal")


def all_outcomes() -> Selector:
    return Selector(role=ROLE_OUTCOME)


def has_role(role: str) -> Selector:
    return Selector(role=role)


SELECTORS = {
    "all_predictors": all_predictors,
    "all_numeric_predictors": all_numeric_predictors,
    "all_nominal_predictors": all_nominal_predictors,
    "all_outcomes": all_outcomes,
}

ColumnSpec = Selector | str | Sequence[str]


def parse_column_spec(spec: str | Sequence[str]) -> ColumnSpec:
    """Maps selector names from JSON settings (e.g. "all_predictors") to selectors."""
    if isinstance(spec, str) and spec.removesuffix("()") in SELECTORS:
        return SELECTORS[spec.removesuffix("()")]()
    return spec


def resolve_columns(
    spec: ColumnSpec, frame: pd.DataFrame, roles: Mapping[str, str]
) -> list[str]:
    """Resolves a column spec against a frame.

    Raises
    ------
    MissingColumnsError
        when explicitly named columns are not in the frame
    """
    if isinstance(spec, Selector):
        return spec.resolve(frame, roles)
    columns = [spec] if isinstance(spec, str) else list(spec)
    missing = [column for column in columns if column not in frame.columns]
    if missing:
        raise MissingColumnsError(missing, context="recipe input")
    return columns
