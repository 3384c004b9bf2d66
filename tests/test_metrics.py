import numpy as np
import pandas as pd
import pytest

from modelflow.data.preprocessing import Recipe
from modelflow.errors import InvalidSpecificationError
from modelflow.evaluation.metrics import (
    accuracy,
    default_metrics,
    evaluate,
    mae,
    metric_set,
    rmse,
    roc_auc,
    rsq,
)
from modelflow.training.specs import logistic_reg
from modelflow.training.workflow import Workflow


def test_accuracy():
    assert accuracy(["a", "b", "b", "a"], ["a", "b", "a", "a"]) == 0.75


def test_roc_auc_uses_first_level_as_event():
    """Tests the binary event level.

    The first level is the event, so its probability column is scored.
    """
    # Arrange
    truth = ["yes", "yes", "no", "no"]
    probabilities = pd.DataFrame({".pred_no": [0.1, 0.2, 0.8, 0.9], ".pred_yes": [0.9, 0.8, 0.2, 0.1]})

    # Act
    first = roc_auc(truth, probabilities, levels=["no", "yes"])
    second = roc_auc(truth, probabilities, levels=["no", "yes"], event_level="second")
    event_only = roc_auc(truth, probabilities[".pred_yes"], levels=["no", "yes"])

    # Assert
    assert first == 1.0
    assert second == 1.0
    # yes probabilities scored as if they were the "no" event
    assert event_only == 0.0


def test_roc_auc_multiclass():
    """Perfectly separated classes have a Hand-Till AUC of 1."""
    truth = ["b", "a", "c", "a"]
    probabilities = np.array(
        [
            [0.1, 0.8, 0.1],
            [0.7, 0.2, 0.1],
            [0.1, 0.1, 0.8],
            [0.9, 0.05, 0.05],
        ]
    )

    assert roc_auc(truth, probabilities, levels=["a", "b", "c"]) == pytest.approx(1.0)
    # column order follows the levels, not the alphabet
    assert roc_auc(truth, probabilities[:, [1, 0, 2]], levels=["b", "a", "c"]) == pytest.approx(1.0)


def test_regression_metrics():
    truth = [1.0, 2.0, 3.0, 4.0]
    estimate = [2.0, 3.0, 4.0, 5.0]

    assert rmse(truth, estimate) == pytest.approx(1.0)
    assert mae(truth, estimate) == pytest.approx(1.0)
    # a constant shift keeps the correlation perfect
    assert rsq(truth, estimate) == pytest.approx(1.0)


def test_metric_set_table():
    """A metric set returns one row per metric with the estimator type."""
    # Arrange
    metrics = metric_set("roc_auc", "accuracy")
    predictions = pd.DataFrame(
        {
            ".pred_class": ["no", "yes", "yes"],
            ".pred_no": [0.9, 0.3, 0.4],
            ".pred_yes": [0.1, 0.7, 0.6],
        }
    )

    # Act
    table = metrics(pd.Series(["no", "yes", "no"]), predictions, levels=("no", "yes"))

    # Assert
    assert list(table.columns) == [".metric", ".estimator", ".estimate"]
    assert list(table[".metric"]) == ["roc_auc", "accuracy"]
    assert list(table[".estimator"]) == ["binary", "binary"]
    assert table[".estimate"].iloc[0] == 1.0
    assert table[".estimate"].iloc[1] == pytest.approx(2 / 3)


def test_metric_set_validation():
    """Unknown metrics and mixed metric kinds are rejected."""
    with pytest.raises(InvalidSpecificationError):
        metric_set("f1_macro")
    with pytest.raises(InvalidSpecificationError):
        metric_set("roc_auc", "rmse")


def test_default_metrics():
    assert default_metrics(True).names == ["roc_auc", "accuracy"]
    assert default_metrics(False).names == ["rmse", "rsq"]
    assert default_metrics(False)["rmse"].direction == "minimize"


def test_evaluate(classification_data):
    """Tests scoring a fitted workflow on held-out data."""
    # Arrange
    recipe = Recipe.for_dataset(classification_data).step_rm("arrival_date").step_dummy()
    fitted = Workflow(recipe, logistic_reg()).fit(classification_data)

    # Act
    table = evaluate(fitted, classification_data)

    # Assert
    assert list(table[".metric"]) == ["roc_auc", "accuracy"]
    assert table[".estimate"].between(0.5, 1.0).all()
