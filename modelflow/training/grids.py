"""Hyperparameter grids.

Grid columns are named after the tunable parameters of a specification
(the ``tune()`` id, or the argument name when no id was given). Values
are validated against the parameter domains in ``training.utils``.
"""

from collections.abc import Mapping
from logging import getLogger

import numpy as np
import pandas as pd

from modelflow.data.models import Dataset
from modelflow.errors import InvalidGridError
from modelflow.training.specs import ModelSpec
from modelflow.training.utils import DEFAULT_GRID_LEVELS, DEFAULT_GRID_SIZE, PARAMETERS, RANDOM_STATE

logger = getLogger(__name__)

Ranges = Mapping[str, tuple[float, float]]


def _model(spec) -> ModelSpec:
    # accepts a Workflow too
    return getattr(spec, "model", spec)


def _tunable(spec) -> dict[str, str]:
    tunable = _model(spec).tunable_arguments()
    if not tunable:
        raise InvalidGridError(f"{_model(spec)!r} has no parameters marked for tuning")
    return tunable


def expand_grid(**values) -> pd.DataFrame:
    """All combinations of the given parameter values.

    >>> expand_grid(penalty=[0.1, 0.01], mixture=[0, 1]).shape
    (4, 2)
    """
    if not values or any(len(column) == 0 for column in values.values()):
        raise InvalidGridError("Every grid parameter needs at least one value")
    index = pd.MultiIndex.from_product(list(values.values()), names=list(values))
    return index.to_frame(index=False)


def grid_regular(
    spec,
    levels: int | Mapping[str, int] = DEFAULT_GRID_LEVELS,
    ranges: Ranges | None = None,
) -> pd.DataFrame:
    """Evenly spaced values per parameter, crossed.

    Parameters
    ----------
    spec : ModelSpec | Workflow
        specification with ``tune()`` placeholders
    levels : int | Mapping[str, int], optional
        number of values per parameter, by default 3
    ranges : Ranges | None, optional
        ranges overriding the default domain ranges, on the transformed
        (log10) scale for log parameters

    Returns
    -------
    pd.DataFrame
        one row per configuration, one column per tunable parameter
    """
    ranges = ranges or {}
    values = {}
    for name, arg in _tunable(spec).items():
        count = levels.get(name, DEFAULT_GRID_LEVELS) if isinstance(levels, Mapping) else levels
        if count < 1:
            raise InvalidGridError(f"{name}: levels must be positive, got {count}")
        values[name] = PARAMETERS[arg].regular(count, ranges.get(name))
    return expand_grid(**values)


def grid_random(
    spec,
    size: int = DEFAULT_GRID_SIZE,
    seed: int = RANDOM_STATE,
    ranges: Ranges | None = None,
) -> pd.DataFrame:
    """``size`` random configurations drawn uniformly over the parameter ranges.

    Duplicated draws (possible for integer parameters) are dropped.
    """
    if size < 1:
        raise InvalidGridError(f"Grid size must be positive, got {size}")
    ranges = ranges or {}
    rng = np.random.default_rng(seed)
    grid = pd.DataFrame(
        {
            name: PARAMETERS[arg].sample(rng, size, ranges.get(name))
            for name, arg in _tunable(spec).items()
        }
    )
    return grid.drop_duplicates().reset_index(drop=True)


def validate_grid(grid: pd.DataFrame, spec) -> pd.DataFrame:
    """Checks a grid against the tunable parameters of ``spec``.

    Returns the grid with values cast to their parameter type and duplicated
    rows removed.

    Raises
    ------
    InvalidGridError
        when the grid is empty, has missing or unknown columns, or holds
        values outside a parameter's domain
    """
    tunable = _tunable(spec)
    if grid is None or grid.empty:
        raise InvalidGridError("The grid is empty")
    missing = [name for name in tunable if name not in grid.columns]
    unknown = [column for column in grid.columns if column not in tunable]
    if missing or unknown:
        raise InvalidGridError(
            f"Grid columns don't match the tunable parameters {list(tunable)}: "
            f"missing {missing}, unknown {unknown}"
        )
    checked = pd.DataFrame(
        {
            name: [PARAMETERS[arg].check(value) for value in grid[name]]
            for name, arg in tunable.items()
        }
    )
    deduplicated = checked.drop_duplicates().reset_index(drop=True)
    if len(deduplicated) < len(checked):
        logger.info(f"Dropped {len(checked) - len(deduplicated)} duplicated grid rows")
    return deduplicated


def finalize_ranges(workflow, data: Dataset) -> dict[str, tuple[float, float]]:
    """Ranges for the data-dependent parameters of ``workflow``.

    ``mtry`` ranges from 1 to the number of predictors the recipe produces
    on ``data``.
    """
    ranges = {}
    data_dependent = {
        name: arg
        for name, arg in _model(workflow).tunable_arguments().items()
        if PARAMETERS[arg].high is None
    }
    if not data_dependent:
        return ranges
    n_predictors = len(workflow.recipe.prep(data).predictors)
    for name, arg in data_dependent.items():
        ranges[name] = (PARAMETERS[arg].low, n_predictors)
    return ranges
