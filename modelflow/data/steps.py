import re
from collections.abc import Mapping, Sequence
from logging import getLogger

import numpy as np
import pandas as pd
from pandas.tseries.holiday import Holiday, USFederalHolidayCalendar
from sklearn.base import BaseEstimator, TransformerMixin

from modelflow.data.selectors import (
    ColumnSpec,
    all_nominal_predictors,
    all_numeric_predictors,
    all_predictors,
    is_numeric,
    resolve_columns,
)
from modelflow.data.utils import (
    DATE_FEATURES,
    DEFAULT_DATE_FEATURES,
    DOW_LABELS,
    HOLIDAY_WINDOW_DAYS,
    MONTH_LABELS,
    ROLE_PREDICTOR,
)
from modelflow.errors import (
    ColumnTypeError,
    InvalidSpecificationError,
    MissingColumnsError,
)

logger = getLogger(__name__)


def slugify(value) -> str:
    return re.sub(r"[^0-9a-zA-Z]+", "_", str(value)).strip("_")


def as_datetime(column: pd.Series) -> pd.Series:
    """Parses a column as dates, naive and normalized to midnight."""
    if not pd.api.types.is_datetime64_any_dtype(column):
        try:
            column = pd.to_datetime(column)
        except (ValueError, TypeError) as e:
            raise ColumnTypeError(f"Column '{column.name}' can't be parsed as dates") from e
    if column.dt.tz is not None:
        column = column.dt.tz_localize(None)
    return column


def _holiday_key(name: str) -> str:
    return slugify(str(name).replace("'", "")).lower()


def holiday_rules(names: Sequence[str] | None = None) -> list[Holiday]:
    """Looks up US federal holiday rules by name, all of them by default."""
    rules = list(USFederalHolidayCalendar.rules)
    if names is None:
        return rules
    # pandas renamed some rules across versions ("New Years Day"), so match by slug
    by_name = {_holiday_key(rule.name): rule for rule in rules}
    unknown = [name for name in names if _holiday_key(name) not in by_name]
    if unknown:
        raise InvalidSpecificationError(
            f"Unknown holidays {unknown}, available: {sorted(rule.name for rule in rules)}"
        )
    return [by_name[_holiday_key(name)] for name in names]


class RecipeStep(BaseEstimator, TransformerMixin):
    """Base for recipe steps.

    Steps take and return DataFrames. Column specs are resolved once in
    ``fit`` and the resolved names are replayed by ``transform``, so new
    data is processed exactly like the training data.
    """

    def _roles(self) -> Mapping[str, str]:
        return self.roles or {}

    def _resolve(self, X: pd.DataFrame) -> list[str]:
        return resolve_columns(self.columns, X, self._roles())


class InputSchema(RecipeStep):
    """Records the predictor input columns and checks them on new data."""

    def __init__(self, roles: Mapping[str, str] | None = None):
        self.roles = roles

    def fit(self, X: pd.DataFrame, y=None):
        roles = self._roles()
        self.columns_ = [
            column
            for column in X.columns
            if roles.get(column, ROLE_PREDICTOR) == ROLE_PREDICTOR
        ]
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        missing = [column for column in self.columns_ if column not in X.columns]
        if missing:
            raise MissingColumnsError(missing, context="new data")
        return X


class DateFeatures(RecipeStep):
    """Decomposes date columns into calendar features.

    ``dow`` and ``month`` become categoricals with all levels declared,
    so later dummy encoding yields the same columns on any data.
    """

    def __init__(
        self,
        columns: ColumnSpec = (),
        features: Sequence[str] = DEFAULT_DATE_FEATURES,
        keep_original_cols: bool = True,
        roles: Mapping[str, str] | None = None,
    ):
        self.columns = columns
        self.features = features
        self.keep_original_cols = keep_original_cols
        self.roles = roles

    def fit(self, X: pd.DataFrame, y=None):
        unknown = [feature for feature in self.features if feature not in DATE_FEATURES]
        if unknown:
            raise InvalidSpecificationError(f"Unknown date features: {unknown}")
        self.columns_ = self._resolve(X)
        for column in self.columns_:
            as_datetime(X[column])
        return self

    def _feature(self, dates: pd.Series, feature: str) -> pd.Series:
        if feature == "dow":
            return pd.Categorical(
                dates.dt.day_name().str[:3], categories=DOW_LABELS, ordered=True
            )
        if feature == "month":
            return pd.Categorical(
                dates.dt.month_name().str[:3], categories=MONTH_LABELS, ordered=True
            )
        if feature == "year":
            return dates.dt.year
        if feature == "doy":
            return dates.dt.dayofyear
        if feature == "week":
            return (dates.dt.dayofyear - 1) // 7 + 1
        if feature == "quarter":
            return dates.dt.quarter
        # decimal
        days_in_year = np.where(dates.dt.is_leap_year, 366, 365)
        return dates.dt.year + (dates.dt.dayofyear - 1) / days_in_year

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        X = X.copy()
        for column in self.columns_:
            dates = as_datetime(X[column])
            for feature in self.features:
                X[f"{column}_{feature}"] = self._feature(dates, feature)
        if not self.keep_original_cols:
            X = X.drop(columns=self.columns_)
        return X


class HolidayFlags(RecipeStep):
    """Adds 0/1 indicators for US federal holidays (observed dates)."""

    def __init__(
        self,
        columns: ColumnSpec = (),
        holidays: Sequence[str] | None = None,
        keep_original_cols: bool = True,
        roles: Mapping[str, str] | None = None,
    ):
        self.columns = columns
        self.holidays = holidays
        self.keep_original_cols = keep_original_cols
        self.roles = roles

    def fit(self, X: pd.DataFrame, y=None):
        self.rules_ = holiday_rules(self.holidays)
        self.columns_ = self._resolve(X)
        for column in self.columns_:
            as_datetime(X[column])
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        X = X.copy()
        window = pd.Timedelta(days=HOLIDAY_WINDOW_DAYS)
        for column in self.columns_:
            dates = as_datetime(X[column]).dt.normalize()
            observed = dates.dropna()
            for rule in self.rules_:
                flag_name = f"{column}_{slugify(rule.name)}"
                if observed.empty:
                    X[flag_name] = 0
                    continue
                holiday_dates = rule.dates(observed.min() - window, observed.max() + window)
                X[flag_name] = dates.isin(holiday_dates).astype(int)
        if not self.keep_original_cols:
            X = X.drop(columns=self.columns_)
        return X


class DummyEncoder(RecipeStep):
    """Encodes nominal columns as 0/1 indicator columns.

    The first level is the reference level and gets no column unless
    ``one_hot`` is set. Levels not seen during fit encode as all zeros,
    missing values stay missing.
    """

    def __init__(
        self,
        columns: ColumnSpec = all_nominal_predictors(),
        one_hot: bool = False,
        roles: Mapping[str, str] | None = None,
    ):
        self.columns = columns
        self.one_hot = one_hot
        self.roles = roles

    def fit(self, X: pd.DataFrame, y=None):
        self.columns_ = self._resolve(X)
        self.levels_ = {}
        for column in self.columns_:
            values = X[column]
            if isinstance(values.dtype, pd.CategoricalDtype):
                levels = list(values.cat.categories)
            else:
                levels = sorted(values.dropna().unique(), key=str)
            self.levels_[column] = levels
            names = [slugify(level) for level in levels]
            clashes = sorted({name for name in names if names.count(name) > 1})
            if clashes:
                raise ColumnTypeError(
                    f"Levels of '{column}' collide as dummy columns {clashes}, "
                    f"recode them first: {levels}"
                )
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        encoded = {}
        for column in self.columns_:
            levels = self.levels_[column]
            values = X[column].astype(object)
            missing = values.isna()
            new_levels = set(values[~missing & ~values.isin(levels)])
            if new_levels:
                logger.warning(
                    f"New levels in '{column}' encoded as zeros: {sorted(new_levels, key=str)}"
                )
            kept_levels = levels if self.one_hot else levels[1:]
            for level in kept_levels:
                encoded[f"{column}_{slugify(level)}"] = np.where(
                    missing, np.nan, (values == level).astype(float)
                )
        return pd.concat(
            [X.drop(columns=self.columns_), pd.DataFrame(encoded, index=X.index)],
            axis=1,
        )


class ZeroVarianceFilter(RecipeStep):
    """Drops columns holding fewer than two distinct non-missing values."""

    def __init__(
        self,
        columns: ColumnSpec = all_predictors(),
        roles: Mapping[str, str] | None = None,
    ):
        self.columns = columns
        self.roles = roles

    def fit(self, X: pd.DataFrame, y=None):
        self.removed_ = [
            column for column in self._resolve(X) if X[column].nunique(dropna=True) < 2
        ]
        if self.removed_:
            logger.info(f"Removing zero-variance columns: {self.removed_}")
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        return X.drop(columns=self.removed_, errors="ignore")


class Normalizer(RecipeStep):
    """Centers and scales numeric columns with training means and SDs."""

    def __init__(
        self,
        columns: ColumnSpec = all_numeric_predictors(),
        roles: Mapping[str, str] | None = None,
    ):
        self.columns = columns
        self.roles = roles

    def fit(self, X: pd.DataFrame, y=None):
        self.columns_ = self._resolve(X)
        not_numeric = [column for column in self.columns_ if not is_numeric(X[column])]
        if not_numeric:
            raise ColumnTypeError(f"Can't normalize non-numeric columns: {not_numeric}")
        self.means_ = X[self.columns_].mean()
        sds = X[self.columns_].std()
        constant = list(sds[(sds == 0) | sds.isna()].index)
        if constant:
            logger.warning(f"Columns {constant} have zero variance and are only centered")
        self.sds_ = sds.where((sds != 0) & sds.notna(), 1.0)
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        X = X.copy()
        if self.columns_:
            X[self.columns_] = (X[self.columns_] - self.means_) / self.sds_
        return X


class ColumnRemover(RecipeStep):
    """Removes columns, silently skipping ones already absent at bake time."""

    def __init__(self, columns: ColumnSpec = (), roles: Mapping[str, str] | None = None):
        self.columns = columns
        self.roles = roles

    def fit(self, X: pd.DataFrame, y=None):
        self.columns_ = self._resolve(X)
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        return X.drop(columns=self.columns_, errors="ignore")


class PredictorSelector(RecipeStep):
    """Keeps the predictor columns, in training order, for the model."""

    def __init__(self, roles: Mapping[str, str] | None = None):
        self.roles = roles

    def fit(self, X: pd.DataFrame, y=None):
        roles = self._roles()
        self.columns_ = [
            column
            for column in X.columns
            if roles.get(column, ROLE_PREDICTOR) == ROLE_PREDICTOR
        ]
        not_numeric = [
            column
            for column in self.columns_
            if not (is_numeric(X[column]) or pd.api.types.is_bool_dtype(X[column]))
        ]
        if not_numeric:
            raise ColumnTypeError(
                f"Predictors must be numeric after preprocessing, got: {not_numeric}. "
                "Add step_dummy or step_rm for them."
            )
        return self

    def transform(self, X: pd.DataFrame) -> pd.DataFrame:
        missing = [column for column in self.columns_ if column not in X.columns]
        if missing:
            raise MissingColumnsError(missing, context="baked data")
        return X[self.columns_]
