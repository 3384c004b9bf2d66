from collections.abc import Callable, Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
from sklearn.metrics import (
    accuracy_score,
    mean_absolute_error,
    roc_auc_score,
    root_mean_squared_error,
)

from modelflow.data.models import Dataset
from modelflow.errors import InvalidSpecificationError

PRED_CLASS = ".pred_class"
PRED_NUMERIC = ".pred"


def prob_column(level) -> str:
    return f".pred_{level}"


def accuracy(truth: Sequence, estimate: Sequence) -> float:
    """Fraction of correctly predicted classes."""
    return float(accuracy_score(np.asarray(truth, dtype=object), np.asarray(estimate, dtype=object)))


def roc_auc(
    truth: Sequence,
    probabilities: pd.DataFrame | np.ndarray,
    levels: Sequence,
    event_level: str = "first",
) -> float:
    """Area under the ROC curve.

    For two classes the event is the first level (or the second with
    ``event_level="second"``) and ``probabilities`` may be either the
    event probability or a column per level. For more classes the Hand-Till
    multiclass generalization is used.

    Parameters
    ----------
    truth : Sequence
        observed classes
    probabilities : pd.DataFrame | np.ndarray
        class probabilities, one column per level in ``levels`` order
    levels : Sequence
        outcome levels
    event_level : str, optional
        "first" or "second", by default "first"

    Returns
    -------
    float
        ROC-AUC
    """
    truth = np.asarray(truth, dtype=object)
    probabilities = np.asarray(probabilities, dtype=float)
    levels = list(levels)
    if len(levels) == 2:
        event = levels[0] if event_level == "first" else levels[1]
        if probabilities.ndim == 2:
            probabilities = probabilities[:, levels.index(event)]
        return float(roc_auc_score(truth == event, probabilities))
    # sklearn expects the labels (and probability columns) sorted
    order = sorted(range(len(levels)), key=lambda index: levels[index])
    return float(
        roc_auc_score(
            truth,
            probabilities[:, order],
            multi_class="ovo",
            labels=np.asarray([levels[index] for index in order], dtype=object),
        )
    )


def rmse(truth: Sequence, estimate: Sequence) -> float:
    return float(root_mean_squared_error(truth, estimate))


def rsq(truth: Sequence, estimate: Sequence) -> float:
    """Squared correlation between observed and predicted values."""
    return float(np.corrcoef(np.asarray(truth, dtype=float), np.asarray(estimate, dtype=float))[0, 1] ** 2)


def mae(truth: Sequence, estimate: Sequence) -> float:
    return float(mean_absolute_error(truth, estimate))


@dataclass(frozen=True)
class Metric:
    name: str
    kind: str
    direction: str
    fn: Callable

    @property
    def maximize(self) -> bool:
        return self.direction == "maximize"

    def compute(self, truth: pd.Series, predictions: pd.DataFrame, levels: Sequence | None):
        """Returns (estimator, estimate) for one set of predictions."""
        if self.kind == "class":
            estimator = "binary" if len(levels) == 2 else "multiclass"
            return estimator, self.fn(truth, predictions[PRED_CLASS])
        if self.kind == "prob":
            estimator = "binary" if len(levels) == 2 else "hand_till"
            columns = [prob_column(level) for level in levels]
            return estimator, self.fn(truth, predictions[columns], levels)
        return "standard", self.fn(truth, predictions[PRED_NUMERIC])


METRICS = {
    "roc_auc": Metric("roc_auc", "prob", "maximize", roc_auc),
    "accuracy": Metric("accuracy", "class", "maximize", accuracy),
    "rmse": Metric("rmse", "numeric", "minimize", rmse),
    "rsq": Metric("rsq", "numeric", "maximize", rsq),
    "mae": Metric("mae", "numeric", "minimize", mae),
}
CLASSIFICATION_METRICS = ("roc_auc", "accuracy")
REGRESSION_METRICS = ("rmse", "rsq")


class MetricSet:
    """A group of metrics computed together on the same predictions.

    The first metric is the default one for ranking and selecting models.
    """

    def __init__(self, *metrics: Metric):
        if not metrics:
            raise InvalidSpecificationError("A metric set needs at least one metric")
        numeric = {metric.kind == "numeric" for metric in metrics}
        if len(numeric) > 1:
            raise InvalidSpecificationError(
                "Classification and regression metrics can't be mixed in one metric set"
            )
        self.metrics = tuple(metrics)

    @property
    def names(self) -> list[str]:
        return [metric.name for metric in self.metrics]

    @property
    def is_classification(self) -> bool:
        return self.metrics[0].kind != "numeric"

    def __getitem__(self, name: str) -> Metric:
        for metric in self.metrics:
            if metric.name == name:
                return metric
        raise KeyError(f"Metric '{name}' is not in the metric set {self.names}")

    def __call__(
        self,
        truth: pd.Series,
        predictions: pd.DataFrame,
        levels: Sequence | None = None,
    ) -> pd.DataFrame:
        rows = []
        for metric in self.metrics:
            estimator, estimate = metric.compute(truth, predictions, levels)
            rows.append({".metric": metric.name, ".estimator": estimator, ".estimate": estimate})
        return pd.DataFrame(rows, columns=[".metric", ".estimator", ".estimate"])

    def __repr__(self) -> str:
        return f"MetricSet({', '.join(self.names)})"


def metric_set(*names: str) -> MetricSet:
    unknown = [name for name in names if name not in METRICS]
    if unknown:
        raise InvalidSpecificationError(
            f"Unknown metrics {unknown}, expected some of {sorted(METRICS)}"
        )
    return MetricSet(*(METRICS[name] for name in names))


def default_metrics(classification: bool) -> MetricSet:
    return metric_set(*(CLASSIFICATION_METRICS if classification else REGRESSION_METRICS))


def evaluate(fitted, data: Dataset, metrics: MetricSet | None = None) -> pd.DataFrame:
    """Scores a fitted workflow on held-out data.

    Parameters
    ----------
    fitted : FittedWorkflow
        the fitted workflow
    data : Dataset
        held-out data containing the outcome
    metrics : MetricSet | None, optional
        metrics to compute, the defaults of the model mode if not given

    Returns
    -------
    pd.DataFrame
        one row per metric with ``.metric``, ``.estimator``, ``.estimate``
    """
    metrics = metrics or default_metrics(fitted.is_classification)
    predictions = fitted.predict_all(data)
    return metrics(data.target(), predictions, fitted.levels)
