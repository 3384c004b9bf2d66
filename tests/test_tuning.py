import numpy as np
import pandas as pd
import pytest

from modelflow.data.preprocessing import Recipe
from modelflow.data.splitting import initial_split, initial_validation_split, vfold_cv
from modelflow.errors import ConvergenceError, InvalidSpecificationError, TuningError
from modelflow.evaluation.metrics import metric_set
from modelflow.training.grids import expand_grid
from modelflow.training.specs import decision_tree, logistic_reg, rand_forest, tune
from modelflow.training.tuning import (
    TuneControl,
    TuneResults,
    desc,
    finalize_workflow,
    fit_resamples,
    last_fit,
    tune_grid,
)
from modelflow.training.workflow import FitSettings, Workflow


@pytest.fixture
def recipe(classification_data) -> Recipe:
    return (
        Recipe.for_dataset(classification_data)
        .step_rm("arrival_date")
        .step_dummy()
        .step_normalize()
    )


@pytest.fixture
def penalized_workflow(recipe) -> Workflow:
    return Workflow(recipe, logistic_reg(penalty=tune(), mixture=0))


@pytest.fixture
def folds(classification_data):
    return vfold_cv(classification_data, v=3, strata="label", seed=2)


def make_results(workflow, means: dict[str, list[float]], metric: str = "roc_auc") -> TuneResults:
    """Tuning results with the given per-fold estimates per penalty value."""
    params = pd.DataFrame(
        {"penalty": [float(penalty) for penalty in means], ".config": [f"Model{i}" for i in range(1, len(means) + 1)]}
    )
    rows = [
        {"id": f"Fold{fold + 1}", ".metric": metric, ".estimator": "binary", ".estimate": estimate, ".config": config}
        for config, estimates in zip(params[".config"], means.values())
        for fold, estimate in enumerate(estimates)
    ]
    return TuneResults(
        workflow=workflow,
        params=params,
        metrics=pd.DataFrame(rows),
        notes=pd.DataFrame(columns=["id", ".config", "type", "note"]),
        metric_set=metric_set(metric),
    )


def test_tune_grid_metrics(penalized_workflow, folds):
    """Tests grid tuning over cross-validation folds.

    Every configuration is scored on every fold for every metric.
    """
    # Arrange
    grid = expand_grid(penalty=[0.001, 0.01, 0.1])

    # Act
    results = tune_grid(penalized_workflow, folds, grid=grid)

    # Assert
    per_fold = results.collect_metrics(summarize=False)
    summary = results.collect_metrics()
    assert len(per_fold) == 3 * 3 * 2
    assert len(summary) == 3 * 2
    assert (summary["n"] == 3).all()
    assert list(summary.columns) == [
        "penalty", ".metric", ".estimator", "mean", "var", "n", "std_err", ".config"
    ]
    assert results.collect_notes().query("type == 'error'").empty


def test_aggregate_is_mean_of_folds(penalized_workflow, folds):
    """The aggregate metric of a configuration is the mean of its fold values."""
    results = tune_grid(penalized_workflow, folds, grid=expand_grid(penalty=[0.01, 0.1]))

    per_fold = results.collect_metrics(summarize=False)
    summary = results.collect_metrics()

    for row in summary.itertuples(index=False):
        values = per_fold[
            (per_fold[".config"] == row[-1]) & (per_fold[".metric"] == row[1])
        ][".estimate"]
        assert row.mean == pytest.approx(values.mean())
        assert row.std_err == pytest.approx(values.std(ddof=1) / np.sqrt(len(values)))


def test_select_best_maximizes(penalized_workflow):
    """select_best on A (auc 0.8) and B (auc 0.9) returns B."""
    results = make_results(penalized_workflow, {0.1: [0.8, 0.8], 0.01: [0.9, 0.9]})

    best = results.select_best("roc_auc")

    assert best == {"penalty": 0.01, ".config": "Model2"}


def test_select_best_minimizes_error_metrics(penalized_workflow):
    results = make_results(penalized_workflow, {0.1: [1.0, 1.2], 0.01: [2.0, 2.2]}, metric="rmse")

    assert results.select_best()["penalty"] == 0.1


def test_select_best_tie_breakers(penalized_workflow):
    """Ties go to the simplest model, here the highest penalty."""
    results = make_results(penalized_workflow, {0.001: [0.9], 0.1: [0.9], 0.01: [0.9]})

    assert results.select_best("roc_auc")["penalty"] == 0.001
    assert results.select_best("roc_auc", tie_breakers=[desc("penalty")])["penalty"] == 0.1
    assert results.select_best("roc_auc", tie_breakers=["penalty"])["penalty"] == 0.001


def test_select_by_one_std_err(penalized_workflow):
    """The simplest configuration within one standard error of the best wins."""
    results = make_results(
        penalized_workflow,
        {0.001: [0.90, 0.94], 0.01: [0.90, 0.92], 0.1: [0.70, 0.72]},
    )

    best = results.select_by_one_std_err("roc_auc", desc("penalty"))

    assert best["penalty"] == 0.01


def test_show_best(penalized_workflow):
    results = make_results(penalized_workflow, {0.1: [0.7], 0.01: [0.9], 0.001: [0.8]})

    best = results.show_best("roc_auc", n=2)

    assert list(best["penalty"]) == [0.01, 0.001]


def test_selection_errors(penalized_workflow):
    results = make_results(penalized_workflow, {0.1: [0.7]})

    with pytest.raises(InvalidSpecificationError):
        results.select_best("accuracy")
    with pytest.raises(InvalidSpecificationError):
        results.select_best("roc_auc", tie_breakers=["mixture"])


def test_failed_fits_are_recorded(recipe, folds):
    """Tests per-unit failure handling.

    Fits that fail are recorded in the notes instead of stopping the run,
    selecting from a run without results is a tuning error.
    """
    # Arrange
    workflow = Workflow(
        recipe, logistic_reg(penalty=tune(), mixture=0).set_engine("sklearn", max_iter=1)
    )

    # Act
    results = tune_grid(workflow, folds, grid=expand_grid(penalty=[0.0001, 0.001]))

    # Assert
    notes = results.collect_notes()
    errors = notes[notes["type"] == "error"]
    assert len(errors) == 2 * 3
    assert errors["note"].str.contains("ConvergenceError").all()
    assert results.collect_metrics().empty
    with pytest.raises(TuningError):
        results.select_best("roc_auc")


def test_random_grid_with_data_dependent_parameter(recipe, folds):
    """An integer grid draws random configurations, mtry limited to the predictors."""
    workflow = Workflow(
        recipe, rand_forest(mtry=tune(), trees=20, mode="classification")
    )

    results = tune_grid(workflow, folds, grid=3, control=TuneControl(seed=4))

    assert results.params["mtry"].between(1, 4).all()
    assert set(results.collect_metrics()[".config"]) <= {"Model01", "Model02", "Model03"}


def test_saved_predictions(penalized_workflow, folds, classification_data):
    """Assessment predictions are kept when requested."""
    results = tune_grid(
        penalized_workflow,
        folds,
        grid=expand_grid(penalty=[0.01, 0.1]),
        control=TuneControl(save_pred=True),
    )

    predictions = results.collect_predictions()

    assert len(predictions) == 2 * classification_data.n_rows
    assert {".row", ".pred_class", ".pred_no", ".pred_yes", "label", "id", ".config"} <= set(
        predictions.columns
    )


def test_predictions_not_saved(penalized_workflow, folds):
    results = tune_grid(penalized_workflow, folds, grid=expand_grid(penalty=[0.1]))

    with pytest.raises(TuningError):
        results.collect_predictions()


def test_fit_resamples(recipe, folds):
    """A workflow without tuning parameters is scored on every fold."""
    workflow = Workflow(recipe, decision_tree(tree_depth=3, mode="classification"))

    results = fit_resamples(workflow, folds, metrics=metric_set("accuracy"))

    summary = results.collect_metrics()
    assert list(summary[".config"]) == ["Model01"]
    assert summary["n"].iloc[0] == 3


def test_fit_resamples_rejects_placeholders(penalized_workflow, folds):
    with pytest.raises(InvalidSpecificationError):
        fit_resamples(penalized_workflow, folds)


def test_metrics_must_match_mode(penalized_workflow, folds):
    with pytest.raises(InvalidSpecificationError):
        tune_grid(penalized_workflow, folds, grid=expand_grid(penalty=[0.1]), metrics=metric_set("rmse"))


def test_last_fit(penalized_workflow, classification_data):
    """Tests the final fit.

    The selected configuration is fitted on the training rows and
    evaluated on the test rows.
    """
    # Arrange
    split = initial_split(classification_data, prop=0.75, strata="label", seed=1)
    workflow = finalize_workflow(penalized_workflow, {"penalty": 0.01, ".config": "Model01"})

    # Act
    result = last_fit(workflow, split)

    # Assert
    assert list(result.collect_metrics()[".metric"]) == ["roc_auc", "accuracy"]
    predictions = result.collect_predictions()
    assert len(predictions) == len(split.test_rows)
    assert list(predictions[".row"]) == list(split.test_rows)
    assert result.extract_workflow().workflow.model.is_finalized


def test_last_fit_with_validation_rows(penalized_workflow, classification_data):
    """With a three-way split the final model uses training and validation rows."""
    split = initial_validation_split(classification_data, prop=(0.6, 0.2), seed=1)
    workflow = finalize_workflow(penalized_workflow, {"penalty": 0.01})

    result = last_fit(workflow, split)

    assert len(result.collect_predictions()) == len(split.test_rows)


def test_parallel_tuning_matches_serial(penalized_workflow, folds):
    """Tests tuning on joblib workers.

    Units finish in any order on two workers, the merged table is the
    same as the serial one.
    """
    # Arrange
    grid = expand_grid(penalty=[0.001, 0.01, 0.1])

    # Act
    serial = tune_grid(penalized_workflow, folds, grid=grid, control=TuneControl(n_jobs=1))
    parallel = tune_grid(penalized_workflow, folds, grid=grid, control=TuneControl(n_jobs=2))

    # Assert
    pd.testing.assert_frame_equal(serial.collect_metrics(), parallel.collect_metrics())
    pd.testing.assert_frame_equal(
        serial.collect_metrics(summarize=False), parallel.collect_metrics(summarize=False)
    )


def test_last_fit_follows_convergence_settings(recipe, classification_data):
    """A last fit allowed not to converge returns a model instead of failing."""
    # Arrange
    split = initial_split(classification_data, prop=0.75, strata="label", seed=1)
    workflow = Workflow(
        recipe, logistic_reg(penalty=0.0001, mixture=0).set_engine("sklearn", max_iter=1)
    )

    # Act / Assert
    with pytest.raises(ConvergenceError):
        last_fit(workflow, split)
    with pytest.warns(Warning):
        result = last_fit(workflow, split, settings=FitSettings(fail_on_convergence=False))
    assert len(result.collect_predictions()) == len(split.test_rows)
