"""Resampled evaluation and grid tuning of workflows.

Each (configuration, fold) pair is an independent unit: the finalized
workflow is fitted on the fold's analysis rows and scored on its assessment
rows. Units run through joblib and their results are merged afterwards, so
the order they finish in doesn't matter. A failing unit is recorded in the
notes of the results and doesn't stop the others.
"""

import warnings
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from logging import getLogger
from typing import Any

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from pydantic import BaseModel, ConfigDict
from tqdm.auto import tqdm

from modelflow.data.models import Dataset, Fold, Resamples, Split
from modelflow.errors import InvalidSpecificationError, TuningError
from modelflow.evaluation.metrics import MetricSet, default_metrics, evaluate
from modelflow.training.grids import finalize_ranges, grid_random, validate_grid
from modelflow.training.utils import DEFAULT_GRID_SIZE, MODE_UNKNOWN, RANDOM_STATE
from modelflow.training.workflow import FitSettings, FittedWorkflow, Workflow

logger = getLogger(__name__)

CONFIG = ".config"
SUMMARY_COLUMNS = [".metric", ".estimator", "mean", "var", "n", "std_err"]
NOTES_COLUMNS = ["id", CONFIG, "type", "note"]


class TuneControl(BaseModel):
    model_config = ConfigDict(frozen=True)
    n_jobs: int = 1
    save_pred: bool = False
    verbose: bool = False
    seed: int = RANDOM_STATE
    fail_on_convergence: bool = True

    def fit_settings(self) -> FitSettings:
        return FitSettings(seed=self.seed, fail_on_convergence=self.fail_on_convergence)


@dataclass(frozen=True)
class Desc:
    """Descending tie breaker."""

    name: str


def desc(name: str) -> Desc:
    return Desc(name)


def config_ids(n: int) -> list[str]:
    width = max(2, len(str(n)))
    return [f"Model{index:0{width}d}" for index in range(1, n + 1)]


@dataclass
class _UnitResult:
    metrics: pd.DataFrame | None = None
    predictions: pd.DataFrame | None = None
    notes: list[dict] = field(default_factory=list)


def _fold_ids(fold: Fold) -> dict[str, str]:
    ids = {"id": fold.id}
    if fold.id2 is not None:
        ids["id2"] = fold.id2
    return ids


def _run_unit(
    workflow: Workflow,
    config: str,
    params: dict[str, Any],
    fold: Fold,
    metrics: MetricSet,
    settings: FitSettings,
    save_pred: bool,
) -> _UnitResult:
    """Fits one configuration on one fold and scores its assessment rows."""
    result = _UnitResult()
    ids = _fold_ids(fold)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            fitted = workflow.finalize(params).fit(fold.analysis(), settings)
            assessment = fold.assessment()
            predictions = fitted.predict_all(assessment)
            scores = metrics(assessment.target(), predictions, fitted.levels)
        except Exception as e:
            logger.warning(f"{config} failed on {fold.label}: {type(e).__name__}: {e}")
            result.notes.append(
                {"id": fold.label, CONFIG: config, "type": "error", "note": f"{type(e).__name__}: {e}"}
            )
            return result
    for warning in caught:
        result.notes.append(
            {"id": fold.label, CONFIG: config, "type": "warning", "note": str(warning.message)}
        )

    result.metrics = scores.assign(**ids, **{CONFIG: config})
    if save_pred:
        predictions = predictions.reset_index(drop=True)
        predictions.insert(0, ".row", fold.assessment_rows)
        predictions[workflow.outcome] = assessment.target().to_numpy()
        result.predictions = predictions.assign(**ids, **{CONFIG: config})
    return result


def _check_workflow(workflow: Workflow, metrics: MetricSet | None) -> MetricSet:
    if workflow.model.mode == MODE_UNKNOWN:
        raise InvalidSpecificationError(
            f"Set a mode for {workflow.model.family} before resampling it"
        )
    metrics = metrics or default_metrics(workflow.is_classification)
    if metrics.is_classification != workflow.is_classification:
        raise InvalidSpecificationError(
            f"{metrics!r} doesn't fit a {workflow.model.mode} model"
        )
    return metrics


def _resample(
    workflow: Workflow,
    resamples: Resamples,
    params: pd.DataFrame,
    metrics: MetricSet,
    control: TuneControl,
) -> "TuneResults":
    param_names = [column for column in params.columns if column != CONFIG]
    configs = [
        (row[CONFIG], {name: row[name] for name in param_names})
        for row in params.to_dict(orient="records")
    ]
    n_units = len(configs) * len(resamples)
    logger.info(
        f"Resampling {len(configs)} configurations over {len(resamples)} folds "
        f"({n_units} fits, n_jobs={control.n_jobs})"
    )

    settings = control.fit_settings()
    parallel = Parallel(n_jobs=control.n_jobs, return_as="generator")
    units = parallel(
        delayed(_run_unit)(workflow, config, values, fold, metrics, settings, control.save_pred)
        for config, values in configs
        for fold in resamples
    )
    results = list(tqdm(units, total=n_units, desc="Resampling", disable=not control.verbose))

    metric_frames = [result.metrics for result in results if result.metrics is not None]
    prediction_frames = [
        result.predictions for result in results if result.predictions is not None
    ]
    notes = pd.DataFrame(
        [note for result in results for note in result.notes], columns=NOTES_COLUMNS
    )
    n_failed = sum(result.metrics is None for result in results)
    if n_failed:
        logger.warning(f"{n_failed} of {n_units} fits failed, see collect_notes()")

    return TuneResults(
        workflow=workflow,
        params=params.reset_index(drop=True),
        metrics=pd.concat(metric_frames, ignore_index=True) if metric_frames else pd.DataFrame(),
        notes=notes,
        metric_set=metrics,
        predictions=(
            pd.concat(prediction_frames, ignore_index=True) if prediction_frames else None
        ),
    )


def tune_grid(
    workflow: Workflow,
    resamples: Resamples,
    grid: pd.DataFrame | int | None = None,
    metrics: MetricSet | None = None,
    control: TuneControl | None = None,
) -> "TuneResults":
    """Evaluates every grid configuration on every resample.

    Parameters
    ----------
    workflow : Workflow
        workflow whose model has ``tune()`` placeholders
    resamples : Resamples
        folds to fit and score each configuration on
    grid : pd.DataFrame | int | None, optional
        explicit grid with one column per tunable parameter, or the number
        of random configurations to draw (10 if not given)
    metrics : MetricSet | None, optional
        metrics to compute, the defaults of the model mode if not given
    control : TuneControl | None, optional
        parallelism, prediction saving, seed

    Returns
    -------
    TuneResults
        per-fold metrics, notes of failed fits and, if requested, the
        assessment predictions
    """
    control = control or TuneControl()
    metrics = _check_workflow(workflow, metrics)
    if grid is None:
        grid = DEFAULT_GRID_SIZE
    if isinstance(grid, int):
        ranges = finalize_ranges(workflow, resamples.data)
        grid = grid_random(workflow, size=grid, seed=control.seed, ranges=ranges)
    params = validate_grid(grid, workflow)
    params[CONFIG] = config_ids(len(params))
    return _resample(workflow, resamples, params, metrics, control)


def fit_resamples(
    workflow: Workflow,
    resamples: Resamples,
    metrics: MetricSet | None = None,
    control: TuneControl | None = None,
) -> "TuneResults":
    """Evaluates a workflow without tuning parameters on every resample."""
    control = control or TuneControl()
    metrics = _check_workflow(workflow, metrics)
    if not workflow.model.is_finalized:
        raise InvalidSpecificationError(
            f"Parameters {workflow.tunable_parameters()} are marked for tuning, use tune_grid"
        )
    params = pd.DataFrame({CONFIG: config_ids(1)})
    return _resample(workflow, resamples, params, metrics, control)


@dataclass(eq=False)
class TuneResults:
    workflow: Workflow
    params: pd.DataFrame
    metrics: pd.DataFrame
    notes: pd.DataFrame
    metric_set: MetricSet
    predictions: pd.DataFrame | None = None

    @property
    def param_names(self) -> list[str]:
        return [column for column in self.params.columns if column != CONFIG]

    def collect_metrics(self, summarize: bool = True) -> pd.DataFrame:
        """Per-configuration metric summaries, or the per-fold values.

        The summary holds the mean over folds, the sample variance, the
        number of folds that succeeded and the standard error of the mean.
        """
        if not summarize:
            return self.metrics.copy()
        columns = [*self.param_names, *SUMMARY_COLUMNS, CONFIG]
        if self.metrics.empty:
            return pd.DataFrame(columns=columns)
        summary = (
            self.metrics.groupby([CONFIG, ".metric", ".estimator"], sort=False)[".estimate"]
            .agg(mean="mean", var="var", n="count")
            .reset_index()
        )
        summary["std_err"] = np.sqrt(summary["var"] / summary["n"])
        return self.params.merge(summary, on=CONFIG, how="inner")[columns]

    def collect_predictions(self) -> pd.DataFrame:
        if self.predictions is None:
            raise TuningError("Predictions weren't saved, rerun with TuneControl(save_pred=True)")
        return self.predictions.copy()

    def collect_notes(self) -> pd.DataFrame:
        return self.notes.copy()

    def _summary(self, metric: str | None) -> tuple[pd.DataFrame, bool]:
        metric = metric or self.metric_set.names[0]
        if metric not in self.metric_set.names:
            raise InvalidSpecificationError(
                f"Metric '{metric}' wasn't computed, expected one of {self.metric_set.names}"
            )
        summary = self.collect_metrics()
        summary = summary[summary[".metric"] == metric]
        if summary.empty:
            raise TuningError(
                f"No results for '{metric}', every configuration failed (see collect_notes())"
            )
        return summary, self.metric_set[metric].maximize

    def _sort_keys(self, tie_breakers: Sequence[str | Desc]) -> tuple[list[str], list[bool]]:
        names, ascending = [], []
        for breaker in tie_breakers:
            name = breaker.name if isinstance(breaker, Desc) else breaker
            if name not in self.param_names:
                raise InvalidSpecificationError(
                    f"Tie breaker '{name}' isn't a tuned parameter {self.param_names}"
                )
            names.append(name)
            ascending.append(not isinstance(breaker, Desc))
        return names, ascending

    def _as_params(self, row: pd.Series) -> dict[str, Any]:
        return {name: row[name] for name in [*self.param_names, CONFIG]}

    def show_best(self, metric: str | None = None, n: int = 5) -> pd.DataFrame:
        """The ``n`` best configurations for ``metric`` (first metric by default)."""
        summary, maximize = self._summary(metric)
        return summary.sort_values("mean", ascending=not maximize, kind="stable").head(n)

    def select_best(
        self,
        metric: str | None = None,
        tie_breakers: Sequence[str | Desc] = (),
    ) -> dict[str, Any]:
        """Parameters of the configuration with the best mean ``metric``.

        Ties on the mean are broken by ``tie_breakers`` (ascending, or
        descending with ``desc(name)``), then by configuration order.
        """
        summary, maximize = self._summary(metric)
        names, ascending = self._sort_keys(tie_breakers)
        best = summary.sort_values(
            ["mean", *names], ascending=[not maximize, *ascending], kind="stable"
        )
        return self._as_params(best.iloc[0])

    def select_by_one_std_err(
        self,
        metric: str | None = None,
        *tie_breakers: str | Desc,
    ) -> dict[str, Any]:
        """Simplest configuration within one standard error of the best.

        ``tie_breakers`` order the configurations from simplest to most
        complex, e.g. ``desc("penalty")`` for regularized models.
        """
        if not tie_breakers:
            raise InvalidSpecificationError("Give at least one parameter to sort by simplicity")
        summary, maximize = self._summary(metric)
        best = summary.sort_values("mean", ascending=not maximize, kind="stable").iloc[0]
        std_err = 0.0 if pd.isna(best["std_err"]) else best["std_err"]
        if maximize:
            candidates = summary[summary["mean"] >= best["mean"] - std_err]
        else:
            candidates = summary[summary["mean"] <= best["mean"] + std_err]
        names, ascending = self._sort_keys(tie_breakers)
        simplest = candidates.sort_values(names, ascending=ascending, kind="stable")
        return self._as_params(simplest.iloc[0])


def finalize_workflow(workflow: Workflow, params: Mapping[str, Any]) -> Workflow:
    return workflow.finalize(params)


@dataclass(frozen=True, eq=False)
class LastFitResult:
    """Final model fitted on the training rows and scored on the testing rows."""

    fitted: FittedWorkflow
    metrics: pd.DataFrame
    predictions: pd.DataFrame

    def collect_metrics(self) -> pd.DataFrame:
        return self.metrics.copy()

    def collect_predictions(self) -> pd.DataFrame:
        return self.predictions.copy()

    def extract_workflow(self) -> FittedWorkflow:
        return self.fitted


def _fit_rows(split: Split) -> Dataset:
    if split.validation_rows is None:
        return split.training()
    return split.data.subset(np.sort(np.concatenate([split.train_rows, split.validation_rows])))


def last_fit(
    workflow: Workflow,
    split: Split,
    metrics: MetricSet | None = None,
    seed: int = RANDOM_STATE,
    settings: FitSettings | None = None,
) -> LastFitResult:
    """Fits a finalized workflow on the training data and evaluates it on the test set.

    With a three-way split the model is fitted on the training and
    validation rows together. ``settings`` replaces ``seed`` when given,
    so the last fit can share the convergence handling of tuning. Errors
    are not caught here.
    """
    metrics = _check_workflow(workflow, metrics)
    fitted = workflow.fit(_fit_rows(split), settings or FitSettings(seed=seed))
    testing = split.testing()
    predictions = fitted.predict_all(testing).reset_index(drop=True)
    predictions.insert(0, ".row", split.test_rows)
    predictions[workflow.outcome] = testing.target().to_numpy()
    scores = evaluate(fitted, testing, metrics)
    logger.info(f"Last fit test metrics: {dict(zip(scores['.metric'], scores['.estimate']))}")
    return LastFitResult(fitted=fitted, metrics=scores, predictions=predictions)
