import hashlib
import tempfile
from logging import getLogger
from pathlib import Path

import mlflow
import mlflow.sklearn
import pandas as pd

from modelflow.data.models import Split
from modelflow.training.models import TrainingParamsUtils
from modelflow.training.tuning import (
    Desc,
    LastFitResult,
    TuneResults,
    desc,
    finalize_workflow,
    fit_resamples,
    last_fit,
    tune_grid,
)
from modelflow.training.workflow import FitSettings

logger = getLogger(__name__)


def log_data_version(split: Split, random_state: int, log_entire_dataset: bool = False):
    """Log data versioning information.

    Logs a hash of the training data together with the sizes of the
    training, validation and testing sets.

    Parameters
    ----------
    split : Split
        the initial split of the dataset
    random_state : int
        the random state for reproducibility
    log_entire_dataset : bool, optional
        also log the subsets as CSV artifacts, by default False
    """
    training = split.training()
    data_hash = hashlib.md5(
        pd.util.hash_pandas_object(training.frame, index=True).values
    ).hexdigest()
    mlflow.log_param("data_version", data_hash)
    mlflow.log_param("n_train_samples", len(split.train_rows))
    mlflow.log_param("n_test_samples", len(split.test_rows))
    if split.validation_rows is not None:
        mlflow.log_param("n_validation_samples", len(split.validation_rows))
    mlflow.log_param("n_columns", training.frame.shape[1])
    mlflow.log_param("outcome", training.outcome)
    mlflow.log_param("random_state", random_state)

    if log_entire_dataset:
        subsets = {"train": split.training(), "test": split.testing()}
        if split.validation_rows is not None:
            subsets["validation"] = split.validation()
        with tempfile.TemporaryDirectory() as temp_dir:
            for name, subset in subsets.items():
                path = Path(temp_dir) / f"{name}.csv"
                subset.frame.to_csv(path, index=False)
                mlflow.log_artifact(str(path), artifact_path="dataset")


def log_model_metrics(metrics: pd.DataFrame, prefix: str = "test"):
    """Log model evaluation metrics.

    Parameters
    ----------
    metrics : pd.DataFrame
        metric table with ``.metric`` and ``.estimate`` columns
    prefix : str, optional
        metric name prefix, by default "test"
    """
    for name, estimate in zip(metrics[".metric"], metrics[".estimate"]):
        mlflow.log_metric(f"{prefix}_{name}", float(estimate))


def log_tuning_results(results: TuneResults):
    """Log the tuning table and the resampled metrics of every configuration.

    The summarized table goes to ``tuning/metrics.csv``; the mean of each
    metric is logged per configuration, with the configuration index as
    the step so MLflow can plot them.
    """
    summary = results.collect_metrics()
    with tempfile.TemporaryDirectory() as temp_dir:
        path = Path(temp_dir) / "metrics.csv"
        summary.to_csv(path, index=False)
        mlflow.log_artifact(str(path), artifact_path="tuning")
        notes = results.collect_notes()
        if not notes.empty:
            notes_path = Path(temp_dir) / "notes.csv"
            notes.to_csv(notes_path, index=False)
            mlflow.log_artifact(str(notes_path), artifact_path="tuning")

    configs = list(results.params[".config"])
    for _, row in summary.iterrows():
        mlflow.log_metric(
            f"cv_{row['.metric']}", float(row["mean"]), step=configs.index(row[".config"])
        )
    mlflow.log_param("n_configurations", len(configs))
    mlflow.log_param("n_failed_fits", int((results.notes["type"] == "error").sum()))


def _tie_breakers(names: list[str]) -> list[str | Desc]:
    # "-penalty" sorts penalty descending
    return [desc(name[1:]) if name.startswith("-") else name for name in names]


def start_training(training_parameters: TrainingParamsUtils) -> LastFitResult:
    """Start training process with MLflow tracking.

    Tunes the workflow over its resamples (or just resamples it when it has
    nothing to tune), selects the best configuration, fits it on the
    training data, evaluates it on the test set and logs everything to
    MLflow.

    Parameters
    ----------
    training_parameters : TrainingParamsUtils
        An utility class containing all training parameters, given as such:
            workflow : Workflow
                recipe and model specification, possibly with tune() placeholders
            split : Split
                initial split; the test set is only used by the last fit
            resamples : Resamples
                folds to tune on
            grid : pd.DataFrame | int | None
                tuning grid, or the size of a random one
            metrics : MetricSet | None
                metrics to compute, the mode defaults if None
            select_metric : str | None
                metric for selection, the first metric if None
            tie_breakers : list[str]
                parameters breaking ties on the metric, "-name" for descending
            control : TuneControl
                tuning control
            random_state : int
                random state for reproducibility
            experiment_name : str
                MLflow experiment
            description : str | None, optional
                description of the run, by default None
            tags : dict | None, optional
                tags to apply to the run, by default None

    Returns
    -------
    LastFitResult
        the final fitted workflow with its test metrics and predictions
    """
    mlflow.set_experiment(training_parameters.experiment_name)
    workflow = training_parameters.workflow

    with mlflow.start_run(
        run_name=training_parameters.run_name or workflow.model.family,
        description=training_parameters.description,
        tags=training_parameters.tags,
    ):
        log_data_version(
            training_parameters.split,
            training_parameters.random_state,
            training_parameters.log_entire_dataset,
        )
        mlflow.log_param("model_family", workflow.model.family)
        mlflow.log_param("engine", workflow.model.engine)

        if workflow.tunable_parameters():
            results = tune_grid(
                workflow,
                training_parameters.resamples,
                grid=training_parameters.grid,
                metrics=training_parameters.metrics,
                control=training_parameters.control,
            )
            log_tuning_results(results)
            best = results.select_best(
                training_parameters.select_metric,
                tie_breakers=_tie_breakers(training_parameters.tie_breakers),
            )
            logger.info(f"Selected {best}")
            mlflow.log_params({f"best_{name}": value for name, value in best.items()})
            workflow = finalize_workflow(workflow, best)
        else:
            results = fit_resamples(
                workflow,
                training_parameters.resamples,
                metrics=training_parameters.metrics,
                control=training_parameters.control,
            )
            log_tuning_results(results)

        result = last_fit(
            workflow,
            training_parameters.split,
            metrics=training_parameters.metrics,
            settings=FitSettings(
                seed=training_parameters.random_state,
                fail_on_convergence=training_parameters.control.fail_on_convergence,
            ),
        )
        log_model_metrics(result.metrics)
        mlflow.log_params(
            {f"model_{name}": value for name, value in workflow.model.args.items()}
        )

        model_info = mlflow.sklearn.log_model(result.fitted.pipeline, "model")
        mlflow.set_tag("model_uri", model_info.model_uri)

    return result


def register_model(model_name: str, model_uri: str = "runs:/{run_id}/model"):
    """
    Register the trained model in MLflow Model Registry.

    Args:
        model_name : str
            the name to register the model under.
        model_uri : str
            the URI of the model to register.
    """
    return mlflow.register_model(model_uri=model_uri, name=model_name)
