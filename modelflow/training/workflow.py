import warnings
from dataclasses import dataclass, replace
from logging import getLogger

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict
from sklearn.exceptions import ConvergenceWarning
from sklearn.pipeline import Pipeline

from modelflow.data.models import Dataset
from modelflow.data.preprocessing import PreparedRecipe, Recipe
from modelflow.data.selectors import is_numeric
from modelflow.errors import (
    ColumnTypeError,
    ConvergenceError,
    InsufficientClassesError,
    InvalidSpecificationError,
    MissingColumnsError,
)
from modelflow.evaluation.metrics import PRED_CLASS, PRED_NUMERIC, prob_column
from modelflow.training.specs import ModelSpec
from modelflow.training.utils import MODE_CLASSIFICATION, RANDOM_STATE

logger = getLogger(__name__)


class FitSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    seed: int = RANDOM_STATE
    fail_on_convergence: bool = True


def outcome_levels(y: pd.Series) -> tuple:
    """Observed classes, in category order for categoricals, sorted otherwise."""
    observed = y.dropna()
    if isinstance(y.dtype, pd.CategoricalDtype):
        present = set(observed)
        return tuple(level for level in y.cat.categories if level in present)
    return tuple(sorted(observed.unique(), key=str))


def _outcome_values(y: pd.Series) -> np.ndarray:
    if isinstance(y.dtype, pd.CategoricalDtype):
        return y.to_numpy(dtype=y.cat.categories.dtype)
    return y.to_numpy()


def _frame(data: Dataset | pd.DataFrame) -> pd.DataFrame:
    return data.frame if isinstance(data, Dataset) else data


@dataclass(frozen=True)
class Workflow:
    """A recipe bound to a model specification."""

    recipe: Recipe
    model: ModelSpec

    @property
    def outcome(self) -> str:
        return self.recipe.outcome

    @property
    def is_classification(self) -> bool:
        return self.model.mode == MODE_CLASSIFICATION

    def update_model(self, model: ModelSpec) -> "Workflow":
        return replace(self, model=model)

    def update_recipe(self, recipe: Recipe) -> "Workflow":
        return replace(self, recipe=recipe)

    def tunable_parameters(self) -> list[str]:
        return self.model.tunable_parameters()

    def finalize(self, params) -> "Workflow":
        return replace(self, model=self.model.finalize(params))

    def fit(self, data: Dataset, settings: FitSettings | None = None) -> "FittedWorkflow":
        """Preps the recipe and fits the model on ``data``.

        Parameters
        ----------
        data : Dataset
            training data including the outcome column
        settings : FitSettings | None, optional
            seed and convergence handling, defaults if not given

        Returns
        -------
        FittedWorkflow
            the fitted preprocessing + model pipeline

        Raises
        ------
        MissingColumnsError
            when the outcome or a column used by the recipe is missing
        InsufficientClassesError
            when a classification outcome has fewer than two classes
        ConvergenceError
            when the estimator doesn't converge and
            ``settings.fail_on_convergence`` is set
        """
        settings = settings or FitSettings()
        frame = _frame(data)
        estimator = self.model.build_estimator(random_state=settings.seed, n_rows=len(frame))
        if self.outcome not in frame.columns:
            raise MissingColumnsError([self.outcome], context="training data")

        y = frame[self.outcome]
        levels = None
        if self.is_classification:
            levels = outcome_levels(y)
            if len(levels) < 2:
                raise InsufficientClassesError(
                    f"Outcome '{self.outcome}' needs at least two classes, observed {list(levels)}"
                )
        elif not is_numeric(y):
            raise ColumnTypeError(f"Regression outcome '{self.outcome}' must be numeric")

        pipeline = Pipeline(
            steps=[*self.recipe.get_preprocessing_stages(), ("model", estimator)]
        )
        with warnings.catch_warnings():
            if settings.fail_on_convergence:
                warnings.simplefilter("error", ConvergenceWarning)
            try:
                pipeline.fit(frame, _outcome_values(y))
            except ConvergenceWarning as e:
                raise ConvergenceError(f"{self.model.family} did not converge: {e}") from e

        logger.debug(f"Fitted {self.model!r} on {len(frame)} rows")
        return FittedWorkflow(workflow=self, pipeline=pipeline, levels=levels)


@dataclass(frozen=True)
class FittedWorkflow:
    """Immutable fitted workflow; refit the workflow to replace it."""

    workflow: Workflow
    pipeline: Pipeline
    levels: tuple | None = None

    @property
    def outcome(self) -> str:
        return self.workflow.outcome

    @property
    def is_classification(self) -> bool:
        return self.workflow.is_classification

    def extract_fit_engine(self):
        return self.pipeline.named_steps["model"]

    def extract_recipe(self) -> PreparedRecipe:
        return PreparedRecipe(
            recipe=self.workflow.recipe, pipeline=Pipeline(steps=self.pipeline.steps[:-1])
        )

    def bake(self, new_data: Dataset | pd.DataFrame) -> pd.DataFrame:
        return self.extract_recipe().bake(new_data)

    def _probabilities(self, frame: pd.DataFrame) -> pd.DataFrame:
        probabilities = self.pipeline.predict_proba(frame)
        class_index = {str(level): index for index, level in enumerate(self.pipeline.classes_)}
        return pd.DataFrame(
            {
                prob_column(level): probabilities[:, class_index[str(level)]]
                for level in self.levels
            },
            index=frame.index,
        )

    def predict(self, new_data: Dataset | pd.DataFrame, type: str | None = None) -> pd.DataFrame:
        """Predicts new data.

        ``type`` is "class" (``.pred_class``) or "prob" (``.pred_{level}``
        per class) for classification, "numeric" (``.pred``) for regression.
        The result keeps the index of ``new_data``.
        """
        frame = _frame(new_data)
        type = type or ("class" if self.is_classification else "numeric")
        if type == "numeric" and not self.is_classification:
            return pd.DataFrame({PRED_NUMERIC: self.pipeline.predict(frame)}, index=frame.index)
        if type not in ("class", "prob") or not self.is_classification:
            raise InvalidSpecificationError(
                f"Prediction type '{type}' doesn't apply to {self.workflow.model.mode} models"
            )

        probabilities = self._probabilities(frame)
        if type == "prob":
            return probabilities
        classes = np.asarray(self.levels, dtype=object)[probabilities.to_numpy().argmax(axis=1)]
        return pd.DataFrame({PRED_CLASS: classes}, index=frame.index)

    def predict_all(self, new_data: Dataset | pd.DataFrame) -> pd.DataFrame:
        """Class and probability predictions, or numeric ones for regression."""
        if not self.is_classification:
            return self.predict(new_data)
        probabilities = self.predict(new_data, type="prob")
        classes = np.asarray(self.levels, dtype=object)[probabilities.to_numpy().argmax(axis=1)]
        return pd.concat(
            [pd.DataFrame({PRED_CLASS: classes}, index=probabilities.index), probabilities],
            axis=1,
        )

    def augment(self, new_data: Dataset | pd.DataFrame) -> pd.DataFrame:
        """New data with prediction columns appended."""
        frame = _frame(new_data)
        return pd.concat([frame, self.predict_all(frame)], axis=1)
