from collections.abc import Iterator
from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from modelflow.errors import MissingColumnsError


@dataclass(frozen=True, eq=False)
class Dataset:
    """Immutable labeled table.

    The frame is copied on construction and never modified afterwards,
    every derived dataset (subsets, baked frames) is a new object.

    Attributes:
        frame (pd.DataFrame): rows and named columns, outcome included
        outcome (str): name of the outcome column
        id_columns (tuple[str, ...]): columns kept for reference but never
            used as predictors
    """

    frame: pd.DataFrame
    outcome: str
    id_columns: tuple[str, ...] = ()

    def __post_init__(self):
        missing = [
            column
            for column in (self.outcome, *self.id_columns)
            if column not in self.frame.columns
        ]
        if missing:
            raise MissingColumnsError(missing, context="dataset")
        object.__setattr__(self, "frame", self.frame.copy())
        object.__setattr__(self, "id_columns", tuple(self.id_columns))

    def __len__(self) -> int:
        return len(self.frame)

    @property
    def n_rows(self) -> int:
        return len(self.frame)

    @property
    def predictors(self) -> list[str]:
        excluded = {self.outcome, *self.id_columns}
        return [column for column in self.frame.columns if column not in excluded]

    def features(self) -> pd.DataFrame:
        return self.frame.drop(columns=[self.outcome])

    def target(self) -> pd.Series:
        return self.frame[self.outcome]

    def subset(self, rows: np.ndarray) -> "Dataset":
        """Dataset restricted to the given row positions, labels preserved."""
        return Dataset(self.frame.iloc[rows], self.outcome, self.id_columns)


@dataclass(frozen=True, eq=False)
class Split:
    """Partition of a dataset into training / testing (/ validation) rows.

    Row arrays hold sorted positions into ``data.frame``.
    """

    data: Dataset
    train_rows: np.ndarray
    test_rows: np.ndarray
    validation_rows: np.ndarray | None = None

    def training(self) -> Dataset:
        return self.data.subset(self.train_rows)

    def testing(self) -> Dataset:
        return self.data.subset(self.test_rows)

    def validation(self) -> Dataset:
        if self.validation_rows is None:
            raise ValueError("This split has no validation set.")
        return self.data.subset(self.validation_rows)


@dataclass(frozen=True, eq=False)
class Fold:
    """One analysis / assessment partition of a resampling scheme."""

    data: Dataset
    analysis_rows: np.ndarray
    assessment_rows: np.ndarray
    id: str
    id2: str | None = None

    def analysis(self) -> Dataset:
        return self.data.subset(self.analysis_rows)

    def assessment(self) -> Dataset:
        return self.data.subset(self.assessment_rows)

    @property
    def label(self) -> str:
        return self.id if self.id2 is None else f"{self.id}/{self.id2}"


@dataclass(frozen=True, eq=False)
class Resamples:
    """Ordered collection of folds created by one resampling scheme."""

    folds: tuple[Fold, ...]
    kind: str
    options: dict = field(default_factory=dict)

    def __iter__(self) -> Iterator[Fold]:
        return iter(self.folds)

    def __len__(self) -> int:
        return len(self.folds)

    def __getitem__(self, index: int) -> Fold:
        return self.folds[index]

    @property
    def data(self) -> Dataset:
        return self.folds[0].data
