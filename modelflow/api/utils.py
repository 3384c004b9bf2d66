import os

import mlflow
from mlflow.entities.model_registry import ModelVersion

from modelflow.training.utils import DEFAULT_MODEL_NAME

MODEL_NAME = os.environ.get("MODELFLOW_MODEL_NAME", DEFAULT_MODEL_NAME)


def latest_model_version(
    client: mlflow.tracking.MlflowClient, model_name: str = MODEL_NAME
) -> ModelVersion | None:
    """The most recently registered version of ``model_name``, if any."""
    versions = client.search_model_versions(f"name='{model_name}'")
    if not versions:
        return None
    return max(versions, key=lambda version: int(version.version))
