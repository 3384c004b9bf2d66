from typing import Any, Literal

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, field_validator

from modelflow.data.models import Resamples, Split
from modelflow.data.utils import DEFAULT_FOLDS, DEFAULT_SEED, DEFAULT_SPLIT_PROP, HOTELS_URL
from modelflow.evaluation.metrics import MetricSet
from modelflow.training.tuning import TuneControl
from modelflow.training.utils import (
    DEFAULT_EXPERIMENT_NAME,
    DEFAULT_GRID_LEVELS,
    DEFAULT_MODEL_NAME,
    MODE_UNKNOWN,
)
from modelflow.training.workflow import Workflow


class TrainingParamsUtils(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)
    workflow: Workflow
    split: Split
    resamples: Resamples
    grid: pd.DataFrame | int | None = None
    metrics: MetricSet | None = None
    select_metric: str | None = None
    tie_breakers: list[str] = []
    control: TuneControl = TuneControl()
    random_state: int = DEFAULT_SEED
    experiment_name: str = DEFAULT_EXPERIMENT_NAME
    run_name: str | None = None
    log_entire_dataset: bool = False
    description: str | None = None
    tags: dict | None = None


class DataSettings(BaseModel):
    source: str = HOTELS_URL
    schema_file: str = "dataset_schema.json"


class SplitSettings(BaseModel):
    prop: float = DEFAULT_SPLIT_PROP
    strata: str | None = None
    resamples: Literal["validation_split", "vfold_cv"] = "validation_split"
    validation_prop: float = 0.8
    v: int = DEFAULT_FOLDS
    repeats: int = 1


class ModelSettings(BaseModel):
    family: str
    mode: str = MODE_UNKNOWN
    engine: str | None = None
    args: dict[str, Any] = {}
    engine_args: dict[str, Any] = {}


class ParameterGrid(BaseModel):
    """Grid values of one parameter: explicit, or ``levels`` points over a range.

    ``log10_range`` is given in log10 units and expanded as ``10 ** x``.
    """

    values: list[float] | None = None
    range: tuple[float, float] | None = None
    log10_range: tuple[float, float] | None = None
    levels: int = DEFAULT_GRID_LEVELS

    def expand(self) -> list[float]:
        if self.values is not None:
            return list(self.values)
        if self.log10_range is not None:
            return [float(v) for v in 10.0 ** np.linspace(*self.log10_range, self.levels)]
        if self.range is not None:
            return [float(v) for v in np.linspace(*self.range, self.levels)]
        raise ValueError("A parameter grid needs values, range or log10_range")


class TuneSettings(BaseModel):
    grid: dict[str, ParameterGrid] | None = None
    grid_size: int | None = None
    metrics: list[str] | None = None
    select_metric: str | None = None
    tie_breakers: list[str] = []
    n_jobs: int = 1
    save_pred: bool = False
    verbose: bool = True
    fail_on_convergence: bool = True


class PipelineSettings(BaseModel):
    """Settings of a full training run, read from ``model_settings/*.json``."""

    model_config = ConfigDict(protected_namespaces=())
    experiment_name: str = DEFAULT_EXPERIMENT_NAME
    model_name: str = DEFAULT_MODEL_NAME
    description: str | None = None
    tags: dict | None = None
    random_seed: int = DEFAULT_SEED
    log_entire_dataset: bool = False
    data: DataSettings = DataSettings()
    split: SplitSettings = SplitSettings()
    recipe: list[dict[str, Any]] = Field(default_factory=list)
    model: ModelSettings
    tune: TuneSettings = TuneSettings()

    @field_validator("recipe")
    @classmethod
    def steps_are_named(cls, steps: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for step in steps:
            if "step" not in step:
                raise ValueError(f"Recipe step without a 'step' name: {step}")
        return steps
