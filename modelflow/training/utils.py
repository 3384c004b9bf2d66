from dataclasses import dataclass

import numpy as np

from modelflow.errors import InvalidGridError

RANDOM_STATE = 123
DEFAULT_GRID_SIZE = 10
DEFAULT_GRID_LEVELS = 3
DEFAULT_EXPERIMENT_NAME = "Default Experiment"
DEFAULT_MODEL_NAME = "hotel_children_classifier"
MAX_ITER = 5000

MODE_CLASSIFICATION = "classification"
MODE_REGRESSION = "regression"
MODE_UNKNOWN = "unknown"


@dataclass(frozen=True)
class Parameter:
    """Domain of a tunable hyperparameter.

    ``low`` and ``high`` bound the default grid range, on the log10 scale
    when ``log10`` is set. ``minimum`` / ``maximum`` bound the values a
    model accepts. A ``high`` of None means the range depends on the data
    and must be finalized (``mtry``).
    """

    name: str
    low: float
    high: float | None
    minimum: float
    maximum: float | None = None
    integer: bool = False
    log10: bool = False
    exclusive_minimum: bool = False

    def check(self, value) -> float | int:
        """Validates a single value, returning it as int or float."""
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise InvalidGridError(f"{self.name}: {value!r} is not a number") from e
        if np.isnan(number):
            raise InvalidGridError(f"{self.name}: missing value in grid")
        below = number <= self.minimum if self.exclusive_minimum else number < self.minimum
        if below or (self.maximum is not None and number > self.maximum):
            raise InvalidGridError(
                f"{self.name}: {value} is outside [{self.minimum}, {self.maximum}]"
            )
        if self.integer:
            if not number.is_integer():
                raise InvalidGridError(f"{self.name}: {value} is not an integer")
            return int(number)
        return number

    def _bounds(self, value_range: tuple[float, float] | None) -> tuple[float, float]:
        low, high = value_range if value_range is not None else (self.low, self.high)
        if high is None:
            raise InvalidGridError(
                f"{self.name} has a data-dependent range, finalize it or pass a range"
            )
        return low, high

    def _finish(self, values: np.ndarray) -> list:
        if self.log10:
            values = 10.0**values
        if self.integer:
            return sorted({int(round(v)) for v in values})
        return [float(v) for v in values]

    def regular(self, levels: int, value_range: tuple[float, float] | None = None) -> list:
        low, high = self._bounds(value_range)
        return self._finish(np.linspace(low, high, levels))

    def sample(
        self,
        rng: np.random.Generator,
        size: int,
        value_range: tuple[float, float] | None = None,
    ) -> list:
        low, high = self._bounds(value_range)
        values = rng.uniform(low, high, size)
        if self.log10:
            values = 10.0**values
        if self.integer:
            return [int(round(v)) for v in values]
        return [float(v) for v in values]


PARAMETERS = {
    "penalty": Parameter("penalty", -10, 0, minimum=0, log10=True),
    "mixture": Parameter("mixture", 0, 1, minimum=0, maximum=1),
    "cost_complexity": Parameter("cost_complexity", -10, -1, minimum=0, log10=True),
    "tree_depth": Parameter("tree_depth", 1, 15, minimum=1, integer=True),
    "min_n": Parameter("min_n", 2, 40, minimum=2, integer=True),
    "mtry": Parameter("mtry", 1, None, minimum=1, integer=True),
    "trees": Parameter("trees", 1, 2000, minimum=1, integer=True),
    "learn_rate": Parameter(
        "learn_rate", -10, -1, minimum=0, log10=True, exclusive_minimum=True
    ),
}


@dataclass(frozen=True)
class ModelFamily:
    args: tuple[str, ...]
    modes: tuple[str, ...]
    engines: tuple[str, ...]
    default_engine: str = "sklearn"


MODEL_FAMILIES = {
    "linear_reg": ModelFamily(
        args=("penalty", "mixture"),
        modes=(MODE_REGRESSION,),
        engines=("sklearn",),
    ),
    "logistic_reg": ModelFamily(
        args=("penalty", "mixture"),
        modes=(MODE_CLASSIFICATION,),
        engines=("sklearn",),
    ),
    "decision_tree": ModelFamily(
        args=("cost_complexity", "tree_depth", "min_n"),
        modes=(MODE_CLASSIFICATION, MODE_REGRESSION),
        engines=("sklearn",),
    ),
    "rand_forest": ModelFamily(
        args=("mtry", "trees", "min_n"),
        modes=(MODE_CLASSIFICATION, MODE_REGRESSION),
        engines=("sklearn",),
    ),
    "boost_tree": ModelFamily(
        args=("trees", "tree_depth", "learn_rate"),
        modes=(MODE_CLASSIFICATION, MODE_REGRESSION),
        engines=("catboost", "sklearn"),
        default_engine="catboost",
    ),
}
