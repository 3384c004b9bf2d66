import copy
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from logging import getLogger

import pandas as pd
from sklearn.base import clone
from sklearn.pipeline import Pipeline

from modelflow.data.models import Dataset
from modelflow.data.selectors import (
    ColumnSpec,
    all_nominal_predictors,
    all_numeric_predictors,
    all_predictors,
    parse_column_spec,
)
from modelflow.data.steps import (
    ColumnRemover,
    DateFeatures,
    DummyEncoder,
    HolidayFlags,
    InputSchema,
    Normalizer,
    PredictorSelector,
    RecipeStep,
    ZeroVarianceFilter,
    holiday_rules,
)
from modelflow.data.utils import DEFAULT_DATE_FEATURES, ROLE_ID, ROLE_OUTCOME
from modelflow.errors import InvalidSpecificationError, MissingColumnsError

logger = getLogger(__name__)


class Recipe:
    """Declarative preprocessing specification.

    A recipe only records steps and column roles; nothing is computed until
    ``prep`` fits it to data. Builder methods return a new recipe, so a base
    recipe can be shared between workflows.

    Example:
        recipe = (
            Recipe("children")
            .step_date("arrival_date", features=["dow", "month"])
            .step_holiday("arrival_date")
            .step_rm("arrival_date")
            .step_dummy()
            .step_zv()
            .step_normalize()
        )
    """

    def __init__(self, outcome: str, id_columns: Sequence[str] = ()):
        self.outcome = outcome
        self.roles: dict[str, str] = {outcome: ROLE_OUTCOME}
        self.roles.update({column: ROLE_ID for column in id_columns})
        self.steps: list[tuple[str, RecipeStep]] = []

    @classmethod
    def for_dataset(cls, dataset: Dataset) -> "Recipe":
        return cls(dataset.outcome, dataset.id_columns)

    @classmethod
    def from_config(
        cls,
        outcome: str,
        steps: Sequence[Mapping],
        id_columns: Sequence[str] = (),
    ) -> "Recipe":
        """Builds a recipe from step dictionaries.

        Each dictionary names the step (``date``, ``holiday``, ``dummy``,
        ``zv``, ``normalize``, ``rm`` or ``update_role``) under ``step``;
        the other keys are the step's arguments. Selector names such as
        ``"all_nominal_predictors"`` are accepted for ``columns``.
        """
        recipe = cls(outcome, id_columns)
        for config in steps:
            config = dict(config)
            name = config.pop("step", None)
            if name == "update_role":
                columns = config.pop("columns")
                columns = [columns] if isinstance(columns, str) else columns
                recipe = recipe.update_role(*columns, **config)
                continue
            builder = getattr(recipe, f"step_{name}", None)
            if builder is None:
                raise InvalidSpecificationError(f"Unknown recipe step: {name}")
            if "columns" in config:
                config["columns"] = parse_column_spec(config["columns"])
            recipe = builder(**config)
        return recipe

    def _copy(self) -> "Recipe":
        recipe = copy.copy(self)
        recipe.roles = dict(self.roles)
        recipe.steps = list(self.steps)
        return recipe

    def _add_step(self, kind: str, step: RecipeStep) -> "Recipe":
        recipe = self._copy()
        recipe.steps.append((f"step_{kind}_{len(self.steps) + 1}", step))
        return recipe

    def update_role(self, *columns: str, new_role: str = ROLE_ID) -> "Recipe":
        if self.outcome in columns:
            raise InvalidSpecificationError("The outcome role can't be changed")
        recipe = self._copy()
        recipe.roles.update({column: new_role for column in columns})
        return recipe

    def step_date(
        self,
        columns: ColumnSpec,
        features: Sequence[str] = DEFAULT_DATE_FEATURES,
        keep_original_cols: bool = True,
    ) -> "Recipe":
        return self._add_step(
            "date",
            DateFeatures(
                columns=columns,
                features=tuple(features),
                keep_original_cols=keep_original_cols,
            ),
        )

    def step_holiday(
        self,
        columns: ColumnSpec,
        holidays: Sequence[str] | None = None,
        keep_original_cols: bool = True,
    ) -> "Recipe":
        # fail early on unknown holiday names
        holiday_rules(holidays)
        return self._add_step(
            "holiday",
            HolidayFlags(
                columns=columns,
                holidays=None if holidays is None else tuple(holidays),
                keep_original_cols=keep_original_cols,
            ),
        )

    def step_dummy(
        self, columns: ColumnSpec = all_nominal_predictors(), one_hot: bool = False
    ) -> "Recipe":
        return self._add_step("dummy", DummyEncoder(columns=columns, one_hot=one_hot))

    def step_zv(self, columns: ColumnSpec = all_predictors()) -> "Recipe":
        return self._add_step("zv", ZeroVarianceFilter(columns=columns))

    def step_normalize(self, columns: ColumnSpec = all_numeric_predictors()) -> "Recipe":
        return self._add_step("normalize", Normalizer(columns=columns))

    def step_rm(self, columns: ColumnSpec) -> "Recipe":
        return self._add_step("rm", ColumnRemover(columns=columns))

    def get_preprocessing_stages(self) -> list[tuple[str, RecipeStep]]:
        """Get fresh, unfitted preprocessing stages for a sklearn Pipeline.

        The stages start with an input check, replay the recipe steps and
        end with the predictor selection, so the pipeline output is the
        model matrix.

        Returns
        -------
        list
            A list of (name, transformer) tuples.
        """
        roles = dict(self.roles)
        return [
            ("input_schema", InputSchema(roles=roles)),
            *((name, clone(step).set_params(roles=roles)) for name, step in self.steps),
            ("feature_selector", PredictorSelector(roles=roles)),
        ]

    def prep(self, data: Dataset | pd.DataFrame) -> "PreparedRecipe":
        """Fits every step on the given data."""
        frame = data.frame if isinstance(data, Dataset) else data
        if self.outcome not in frame.columns:
            raise MissingColumnsError([self.outcome], context="training data")
        pipeline = Pipeline(steps=self.get_preprocessing_stages())
        pipeline.fit(frame)
        return PreparedRecipe(recipe=self, pipeline=pipeline)

    def __repr__(self) -> str:
        steps = ", ".join(name for name, _ in self.steps) or "no steps"
        return f"Recipe(outcome={self.outcome!r}, {steps})"


@dataclass(frozen=True)
class PreparedRecipe:
    """Recipe fitted to training data, replayable on new data."""

    recipe: Recipe
    pipeline: Pipeline

    @property
    def predictors(self) -> list[str]:
        return list(self.pipeline.named_steps["feature_selector"].columns_)

    def bake(self, new_data: Dataset | pd.DataFrame) -> pd.DataFrame:
        """Applies the fitted steps.

        Returns the predictors in training order, followed by the outcome
        when ``new_data`` contains it.
        """
        frame = new_data.frame if isinstance(new_data, Dataset) else new_data
        baked = self.pipeline.transform(frame)
        if self.recipe.outcome in frame.columns:
            baked = baked.assign(**{self.recipe.outcome: frame[self.recipe.outcome]})
        return baked
