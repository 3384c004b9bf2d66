"""Train/test splits and resampling schemes.

All row counts follow one rounding rule: a subset sized by a proportion
``p`` of ``n`` rows gets ``floor(n * p)`` rows and the last subset gets the
remainder, so 100 rows with ``prop=0.75`` give 75 training and 25 testing
rows.
"""

from logging import getLogger

import numpy as np
import pandas as pd
from sklearn.model_selection import (
    KFold,
    RepeatedKFold,
    RepeatedStratifiedKFold,
    StratifiedKFold,
    train_test_split,
)

from modelflow.data.models import Dataset, Fold, Resamples, Split
from modelflow.data.utils import (
    DEFAULT_FOLDS,
    DEFAULT_SEED,
    DEFAULT_SPLIT_PROP,
    DEFAULT_VALIDATION_PROPS,
    MISSING_STRATUM,
    NUMERIC_STRATA_BREAKS,
)
from modelflow.errors import InvalidSplitError

logger = getLogger(__name__)


def _check_prop(prop: float, name: str = "prop") -> None:
    if not 0 < prop < 1:
        raise InvalidSplitError(f"{name} must be strictly between 0 and 1, got {prop}")


def _subset_size(n_rows: int, prop: float) -> int:
    return int(np.floor(n_rows * prop))


def strata_values(
    data: Dataset, strata: str, breaks: int = NUMERIC_STRATA_BREAKS
) -> np.ndarray:
    """Derives stratum labels for every row.

    Nominal columns are used as they are. Numeric columns with more distinct
    values than ``breaks`` are binned into quantile bins first. Missing
    values form a stratum of their own.

    Parameters
    ----------
    data : Dataset
        dataset to stratify
    strata : str
        stratification column
    breaks : int, optional
        number of quantile bins for numeric columns, by default 4

    Returns
    -------
    np.ndarray
        one stratum label (string) per row

    Raises
    ------
    InvalidSplitError
        if the stratification column is absent
    """
    if strata not in data.frame.columns:
        raise InvalidSplitError(f"Stratification column '{strata}' is not in the data")

    column = data.frame[strata]
    if (
        pd.api.types.is_numeric_dtype(column)
        and not pd.api.types.is_bool_dtype(column)
        and column.nunique() > breaks
    ):
        column = pd.qcut(column, q=breaks, labels=False, duplicates="drop")
    return column.astype(object).where(column.notna(), MISSING_STRATUM).astype(str).to_numpy()


def _partition(
    positions: np.ndarray,
    size: int,
    stratify: np.ndarray | None,
    seed: int,
) -> tuple[np.ndarray, np.ndarray]:
    if size <= 0 or size >= len(positions):
        raise InvalidSplitError(
            f"Split of {len(positions)} rows would leave an empty subset (size {size})"
        )
    try:
        first, second = train_test_split(
            positions, train_size=size, stratify=stratify, random_state=seed
        )
    except ValueError as e:
        raise InvalidSplitError(str(e)) from e
    return np.sort(first), np.sort(second)


def initial_split(
    data: Dataset,
    prop: float = DEFAULT_SPLIT_PROP,
    strata: str | None = None,
    seed: int = DEFAULT_SEED,
    breaks: int = NUMERIC_STRATA_BREAKS,
) -> Split:
    """Splits a dataset into training and testing rows.

    Parameters
    ----------
    data : Dataset
        dataset to split
    prop : float, optional
        proportion of rows for training, by default 0.75
    strata : str | None, optional
        column whose proportions are preserved in both subsets
    seed : int, optional
        random seed
    breaks : int, optional
        quantile bins used for a numeric stratification column

    Returns
    -------
    Split
        training rows ``floor(n * prop)``, testing rows the remainder
    """
    _check_prop(prop)
    positions = np.arange(data.n_rows)
    stratify = strata_values(data, strata, breaks) if strata is not None else None
    train_rows, test_rows = _partition(
        positions, _subset_size(data.n_rows, prop), stratify, seed
    )
    logger.debug(f"Initial split: {len(train_rows)} train / {len(test_rows)} test")
    return Split(data=data, train_rows=train_rows, test_rows=test_rows)


def initial_validation_split(
    data: Dataset,
    prop: tuple[float, float] = DEFAULT_VALIDATION_PROPS,
    strata: str | None = None,
    seed: int = DEFAULT_SEED,
    breaks: int = NUMERIC_STRATA_BREAKS,
) -> Split:
    """Splits a dataset into training, validation and testing rows.

    ``prop`` holds the training and validation proportions; the testing set
    gets what remains, so both must be positive and sum below 1.
    """
    if len(prop) != 2:
        raise InvalidSplitError("prop must hold the training and validation proportions")
    train_prop, validation_prop = prop
    _check_prop(train_prop, "training prop")
    _check_prop(validation_prop, "validation prop")
    if train_prop + validation_prop >= 1:
        raise InvalidSplitError(
            f"Training and validation proportions must sum below 1, got {train_prop + validation_prop}"
        )

    positions = np.arange(data.n_rows)
    stratify = strata_values(data, strata, breaks) if strata is not None else None
    train_rows, rest = _partition(
        positions, _subset_size(data.n_rows, train_prop), stratify, seed
    )
    rest_stratify = stratify[rest] if stratify is not None else None
    validation_rows, test_rows = _partition(
        rest, _subset_size(data.n_rows, validation_prop), rest_stratify, seed
    )
    return Split(
        data=data,
        train_rows=train_rows,
        test_rows=test_rows,
        validation_rows=validation_rows,
    )


def validation_split(
    data: Dataset,
    prop: float = DEFAULT_SPLIT_PROP,
    strata: str | None = None,
    seed: int = DEFAULT_SEED,
    breaks: int = NUMERIC_STRATA_BREAKS,
) -> Resamples:
    """Single analysis / assessment resample for tuning on a validation set."""
    split = initial_split(data, prop=prop, strata=strata, seed=seed, breaks=breaks)
    fold = Fold(
        data=data,
        analysis_rows=split.train_rows,
        assessment_rows=split.test_rows,
        id="validation",
    )
    return Resamples(
        folds=(fold,),
        kind="validation_split",
        options={"prop": prop, "strata": strata},
    )


def validation_set(split: Split) -> Resamples:
    """Resample made of the training and validation rows of a three-way split."""
    if split.validation_rows is None:
        raise InvalidSplitError("validation_set needs a split created by initial_validation_split")
    rows = np.sort(np.concatenate([split.train_rows, split.validation_rows]))
    # Fold rows are positions into the training+validation subset
    subset = split.data.subset(rows)
    analysis_rows = np.searchsorted(rows, split.train_rows)
    assessment_rows = np.searchsorted(rows, split.validation_rows)
    fold = Fold(
        data=subset,
        analysis_rows=analysis_rows,
        assessment_rows=assessment_rows,
        id="validation",
    )
    return Resamples(folds=(fold,), kind="validation_set")


def vfold_cv(
    data: Dataset,
    v: int = DEFAULT_FOLDS,
    repeats: int = 1,
    strata: str | None = None,
    seed: int = DEFAULT_SEED,
    breaks: int = NUMERIC_STRATA_BREAKS,
) -> Resamples:
    """V-fold (optionally repeated, optionally stratified) cross-validation.

    Parameters
    ----------
    data : Dataset
        dataset to resample, usually the training set of an initial split
    v : int, optional
        number of folds, by default 10
    repeats : int, optional
        number of times the whole partitioning is repeated, by default 1
    strata : str | None, optional
        column whose proportions are preserved within each fold
    seed : int, optional
        random seed
    breaks : int, optional
        quantile bins used for a numeric stratification column

    Returns
    -------
    Resamples
        ``v * repeats`` folds with ids ``Fold01``... (and ``Repeat1``...
        when repeated)
    """
    if v < 2 or v > data.n_rows:
        raise InvalidSplitError(f"v must be between 2 and the number of rows, got {v}")
    if repeats < 1:
        raise InvalidSplitError(f"repeats must be at least 1, got {repeats}")

    stratify = strata_values(data, strata, breaks) if strata is not None else None
    if stratify is None:
        splitter = (
            KFold(n_splits=v, shuffle=True, random_state=seed)
            if repeats == 1
            else RepeatedKFold(n_splits=v, n_repeats=repeats, random_state=seed)
        )
    else:
        splitter = (
            StratifiedKFold(n_splits=v, shuffle=True, random_state=seed)
            if repeats == 1
            else RepeatedStratifiedKFold(n_splits=v, n_repeats=repeats, random_state=seed)
        )

    positions = np.arange(data.n_rows)
    labels = stratify if stratify is not None else np.zeros(data.n_rows)
    width = len(str(v))
    folds = []
    try:
        for index, (analysis, assessment) in enumerate(splitter.split(positions, labels)):
            repeat, fold_number = divmod(index, v)
            fold_id = f"Fold{fold_number + 1:0{width}d}"
            folds.append(
                Fold(
                    data=data,
                    analysis_rows=np.sort(analysis),
                    assessment_rows=np.sort(assessment),
                    id=fold_id if repeats == 1 else f"Repeat{repeat + 1}",
                    id2=None if repeats == 1 else fold_id,
                )
            )
    except ValueError as e:
        raise InvalidSplitError(str(e)) from e

    return Resamples(
        folds=tuple(folds),
        kind="vfold_cv",
        options={"v": v, "repeats": repeats, "strata": strata},
    )
