import argparse
import json
import logging
from pathlib import Path

import mlflow

from modelflow.data.dataloader import DataLoader
from modelflow.data.preprocessing import Recipe
from modelflow.data.splitting import initial_split, validation_split, vfold_cv
from modelflow.data.utils import DATA_PATH
from modelflow.evaluation.metrics import metric_set
from modelflow.training.grids import expand_grid
from modelflow.training.models import PipelineSettings, TrainingParamsUtils
from modelflow.training.specs import model_from_config
from modelflow.training.training import register_model, start_training
from modelflow.training.tuning import LastFitResult, TuneControl
from modelflow.training.workflow import Workflow

logger = logging.getLogger(__name__)

SETTINGS_PATH = Path(__file__).parent.parent / "model_settings"

parser = argparse.ArgumentParser(description="Tune, train and register a model")
parser.add_argument(
    "--settings_json_path",
    type=str,
    default="default_settings.json",
    help="Path to the settings JSON file name (default: default_settings.json)",
)
parser.add_argument(
    "--no-register",
    action="store_true",
    help="Skip registering the final model",
)


def load_settings(settings_json_path: str | Path) -> PipelineSettings:
    """Reads run settings from ``model_settings/`` (or from a path)."""
    path = Path(settings_json_path)
    if not path.is_file():
        path = SETTINGS_PATH / settings_json_path
    with path.open() as settings_file:
        return PipelineSettings.model_validate(json.load(settings_file))


def build_training_parameters(settings: PipelineSettings) -> TrainingParamsUtils:
    """Loads the data and builds the workflow, splits and grid of a run."""
    loader = DataLoader.from_schema(
        source=settings.data.source,
        schema_path=DATA_PATH / settings.data.schema_file,
    )
    dataset = loader.load_data()
    seed = settings.random_seed

    split = initial_split(
        dataset, prop=settings.split.prop, strata=settings.split.strata, seed=seed
    )
    training = split.training()
    if settings.split.resamples == "vfold_cv":
        resamples = vfold_cv(
            training,
            v=settings.split.v,
            repeats=settings.split.repeats,
            strata=settings.split.strata,
            seed=seed,
        )
    else:
        resamples = validation_split(
            training,
            prop=settings.split.validation_prop,
            strata=settings.split.strata,
            seed=seed,
        )

    recipe = Recipe.from_config(dataset.outcome, settings.recipe, dataset.id_columns)
    model = model_from_config(**settings.model.model_dump())
    tune = settings.tune
    if tune.grid is not None:
        grid = expand_grid(**{name: values.expand() for name, values in tune.grid.items()})
    else:
        grid = tune.grid_size

    return TrainingParamsUtils(
        workflow=Workflow(recipe=recipe, model=model),
        split=split,
        resamples=resamples,
        grid=grid,
        metrics=metric_set(*tune.metrics) if tune.metrics else None,
        select_metric=tune.select_metric,
        tie_breakers=tune.tie_breakers,
        control=TuneControl(
            n_jobs=tune.n_jobs,
            save_pred=tune.save_pred,
            verbose=tune.verbose,
            seed=seed,
            fail_on_convergence=tune.fail_on_convergence,
        ),
        random_state=seed,
        experiment_name=settings.experiment_name,
        description=settings.description,
        tags=settings.tags,
        log_entire_dataset=settings.log_entire_dataset,
    )


def run_pipeline(settings: PipelineSettings, register: bool = True) -> LastFitResult:
    """Runs a full training pipeline and registers the final model."""
    training_parameters = build_training_parameters(settings)
    result = start_training(training_parameters)
    logger.info(f"Test metrics:\n{result.metrics}")

    if register:
        run = mlflow.last_active_run()
        register_model(model_name=settings.model_name, model_uri=run.data.tags["model_uri"])
        logger.info(f"Registered model {settings.model_name} from run {run.info.run_id}")
    return result


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    args = parser.parse_args()
    run_pipeline(load_settings(args.settings_json_path), register=not args.no_register)
