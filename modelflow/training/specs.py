"""Model specifications.

A specification names a model family, its mode, the engine that fits it and
the family's main arguments. Arguments are fixed values, ``None`` for the
engine default, or ``tune()`` placeholders filled in later by ``finalize``.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np
from catboost import CatBoostClassifier, CatBoostRegressor
from sklearn.base import BaseEstimator
from sklearn.ensemble import (
    GradientBoostingClassifier,
    GradientBoostingRegressor,
    RandomForestClassifier,
    RandomForestRegressor,
)
from sklearn.linear_model import ElasticNet, Lasso, LinearRegression, LogisticRegression, Ridge
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor

from modelflow.errors import InvalidGridError, InvalidSpecificationError
from modelflow.training.utils import (
    MAX_ITER,
    MODE_CLASSIFICATION,
    MODE_REGRESSION,
    MODE_UNKNOWN,
    MODEL_FAMILIES,
    PARAMETERS,
    RANDOM_STATE,
)


class Tune:
    """Placeholder for a hyperparameter to be tuned."""

    def __init__(self, id: str | None = None):
        self.id = id

    def __repr__(self) -> str:
        return "tune()" if self.id is None else f"tune({self.id!r})"

    def __eq__(self, other) -> bool:
        return isinstance(other, Tune) and other.id == self.id

    def __hash__(self) -> int:
        return hash(("tune", self.id))


def tune(id: str | None = None) -> Tune:
    return Tune(id)


def is_tune(value) -> bool:
    return isinstance(value, Tune)


@dataclass(frozen=True)
class ModelSpec:
    family: str
    mode: str = MODE_UNKNOWN
    engine: str | None = None
    args: Mapping[str, Any] = field(default_factory=dict)
    engine_args: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        family = MODEL_FAMILIES.get(self.family)
        if family is None:
            raise InvalidSpecificationError(
                f"Unknown model family '{self.family}', expected one of {sorted(MODEL_FAMILIES)}"
            )
        if self.mode != MODE_UNKNOWN and self.mode not in family.modes:
            raise InvalidSpecificationError(
                f"{self.family} supports modes {family.modes}, got '{self.mode}'"
            )
        if self.mode == MODE_UNKNOWN and len(family.modes) == 1:
            object.__setattr__(self, "mode", family.modes[0])
        engine = self.engine or family.default_engine
        if engine not in family.engines:
            raise InvalidSpecificationError(
                f"{self.family} supports engines {family.engines}, got '{engine}'"
            )
        object.__setattr__(self, "engine", engine)

        unknown = [name for name in self.args if name not in family.args]
        if unknown:
            raise InvalidSpecificationError(
                f"Unknown arguments for {self.family}: {unknown}, expected {family.args}"
            )
        args = {name: self.args.get(name) for name in family.args}
        for name, value in args.items():
            if value is None or is_tune(value):
                continue
            try:
                args[name] = PARAMETERS[name].check(value)
            except InvalidGridError as e:
                raise InvalidSpecificationError(str(e)) from e
        object.__setattr__(self, "args", args)
        object.__setattr__(self, "engine_args", dict(self.engine_args))

    def set_mode(self, mode: str) -> "ModelSpec":
        return replace(self, mode=mode)

    def set_engine(self, engine: str, **engine_args) -> "ModelSpec":
        return replace(self, engine=engine, engine_args=engine_args)

    def set_args(self, **args) -> "ModelSpec":
        return replace(self, args={**self.args, **args})

    def _tune_names(self) -> dict[str, str]:
        """Maps grid column names (tune id or argument name) to arguments."""
        return {
            value.id or name: name for name, value in self.args.items() if is_tune(value)
        }

    def tunable_parameters(self) -> list[str]:
        return list(self._tune_names())

    def tunable_arguments(self) -> dict[str, str]:
        return self._tune_names()

    @property
    def is_finalized(self) -> bool:
        return not self._tune_names()

    def finalize(self, params: Mapping[str, Any]) -> "ModelSpec":
        """Replaces ``tune()`` placeholders with values from ``params``.

        Keys that don't name a tunable parameter (``.config`` and the like)
        are ignored.
        """
        names = self._tune_names()
        missing = [name for name in names if name not in params]
        if missing:
            raise InvalidSpecificationError(f"No values given for tunable parameters {missing}")
        return replace(
            self,
            args={**self.args, **{arg: params[name] for name, arg in names.items()}},
        )

    def build_estimator(self, random_state: int = RANDOM_STATE, n_rows: int = 1) -> BaseEstimator:
        """Creates the unfitted engine estimator for this specification.

        ``penalty`` is on the glmnet scale, a penalty per training row, so
        engines that sum their loss over rows are scaled by ``n_rows``.
        """
        if self.mode == MODE_UNKNOWN:
            raise InvalidSpecificationError(
                f"Set a mode for {self.family} with set_mode('classification' or 'regression')"
            )
        if not self.is_finalized:
            raise InvalidSpecificationError(
                f"Parameters {self.tunable_parameters()} are marked for tuning, finalize them first"
            )
        args = {name: value for name, value in self.args.items() if value is not None}
        builder = _BUILDERS[(self.family, self.engine)]
        return builder(self.mode, args, random_state, dict(self.engine_args), n_rows)

    def __repr__(self) -> str:
        args = ", ".join(f"{name}={value!r}" for name, value in self.args.items() if value is not None)
        return f"{self.family}({args}) mode={self.mode} engine={self.engine}"


def _rename(args: Mapping[str, Any], names: Mapping[str, str]) -> dict[str, Any]:
    return {names[name]: value for name, value in args.items() if name in names}


def _linear_reg(mode, args, random_state, engine_args, n_rows):
    penalty = args.get("penalty")
    if not penalty:
        return LinearRegression(**engine_args)
    mixture = args.get("mixture", 1.0)
    if mixture == 0:
        return Ridge(**{"alpha": n_rows * penalty, "random_state": random_state, **engine_args})
    options = {"alpha": penalty, "max_iter": MAX_ITER, "random_state": random_state}
    if mixture == 1:
        return Lasso(**{**options, **engine_args})
    return ElasticNet(**{**options, "l1_ratio": mixture, **engine_args})


def _logistic_reg(mode, args, random_state, engine_args, n_rows):
    penalty = args.get("penalty")
    options = {"max_iter": MAX_ITER, "random_state": random_state}
    if not penalty:
        return LogisticRegression(**{**options, "C": np.inf, **engine_args})
    mixture = args.get("mixture", 1.0)
    # l1_ratio alone picks the penalty: 0 is ridge, 1 is lasso
    options.update(C=1 / (n_rows * penalty), l1_ratio=mixture)
    if mixture > 0:
        options["solver"] = "saga"
    return LogisticRegression(**{**options, **engine_args})


def _decision_tree(mode, args, random_state, engine_args, n_rows):
    estimator = DecisionTreeClassifier if mode == MODE_CLASSIFICATION else DecisionTreeRegressor
    names = {"cost_complexity": "ccp_alpha", "tree_depth": "max_depth", "min_n": "min_samples_split"}
    return estimator(**{**_rename(args, names), "random_state": random_state, **engine_args})


def _rand_forest(mode, args, random_state, engine_args, n_rows):
    estimator = RandomForestClassifier if mode == MODE_CLASSIFICATION else RandomForestRegressor
    names = {"mtry": "max_features", "trees": "n_estimators", "min_n": "min_samples_split"}
    return estimator(**{**_rename(args, names), "random_state": random_state, **engine_args})


def _boost_tree_catboost(mode, args, random_state, engine_args, n_rows):
    estimator = CatBoostClassifier if mode == MODE_CLASSIFICATION else CatBoostRegressor
    names = {"trees": "iterations", "tree_depth": "depth", "learn_rate": "learning_rate"}
    options = {"random_seed": random_state, "verbose": False, "allow_writing_files": False}
    return estimator(**{**_rename(args, names), **options, **engine_args})


def _boost_tree_sklearn(mode, args, random_state, engine_args, n_rows):
    estimator = (
        GradientBoostingClassifier if mode == MODE_CLASSIFICATION else GradientBoostingRegressor
    )
    names = {"trees": "n_estimators", "tree_depth": "max_depth", "learn_rate": "learning_rate"}
    return estimator(**{**_rename(args, names), "random_state": random_state, **engine_args})


_BUILDERS = {
    ("linear_reg", "sklearn"): _linear_reg,
    ("logistic_reg", "sklearn"): _logistic_reg,
    ("decision_tree", "sklearn"): _decision_tree,
    ("rand_forest", "sklearn"): _rand_forest,
    ("boost_tree", "catboost"): _boost_tree_catboost,
    ("boost_tree", "sklearn"): _boost_tree_sklearn,
}


def linear_reg(penalty=None, mixture=None, engine: str | None = None) -> ModelSpec:
    return ModelSpec(
        "linear_reg", MODE_REGRESSION, engine, {"penalty": penalty, "mixture": mixture}
    )


def logistic_reg(penalty=None, mixture=None, engine: str | None = None) -> ModelSpec:
    return ModelSpec(
        "logistic_reg", MODE_CLASSIFICATION, engine, {"penalty": penalty, "mixture": mixture}
    )


def decision_tree(
    cost_complexity=None,
    tree_depth=None,
    min_n=None,
    mode: str = MODE_UNKNOWN,
    engine: str | None = None,
) -> ModelSpec:
    return ModelSpec(
        "decision_tree",
        mode,
        engine,
        {"cost_complexity": cost_complexity, "tree_depth": tree_depth, "min_n": min_n},
    )


def rand_forest(
    mtry=None,
    trees=None,
    min_n=None,
    mode: str = MODE_UNKNOWN,
    engine: str | None = None,
) -> ModelSpec:
    return ModelSpec(
        "rand_forest", mode, engine, {"mtry": mtry, "trees": trees, "min_n": min_n}
    )


def boost_tree(
    trees=None,
    tree_depth=None,
    learn_rate=None,
    mode: str = MODE_UNKNOWN,
    engine: str | None = None,
) -> ModelSpec:
    return ModelSpec(
        "boost_tree",
        mode,
        engine,
        {"trees": trees, "tree_depth": tree_depth, "learn_rate": learn_rate},
    )


def model_from_config(
    family: str,
    mode: str = MODE_UNKNOWN,
    engine: str | None = None,
    args: Mapping[str, Any] | None = None,
    engine_args: Mapping[str, Any] | None = None,
) -> ModelSpec:
    """Builds a specification from JSON settings, where "tune" marks tuning."""
    args = {
        name: tune() if value == "tune" else value for name, value in (args or {}).items()
    }
    return ModelSpec(family, mode, engine, args, engine_args or {})

