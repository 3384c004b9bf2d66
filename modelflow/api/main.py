import logging

import mlflow
import mlflow.sklearn
import numpy as np
import pandas as pd
from fastapi import FastAPI, HTTPException
from mlflow.models import get_model_info
from mlflow.models.model import ModelInfo
from pydantic import ValidationError
from sklearn.pipeline import Pipeline

from modelflow.api.schemas import BatchPredictionInput, PredictionInput
from modelflow.api.utils import MODEL_NAME, latest_model_version
from modelflow.errors import ModelFlowError

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("modelflow_api")

mlflow_client = mlflow.tracking.MlflowClient()

app = FastAPI(title="ModelFlow Prediction API")


def load_model_for_app() -> tuple[Pipeline | None, ModelInfo | None]:
    """Load the latest registered model and its information for the FastAPI app.

    The registered model is the fitted pipeline of a workflow, recipe steps
    included, so it takes raw feature records.

    Returns
    -------
    tuple[Pipeline | None, ModelInfo | None]
        The loaded pipeline and its metadata, or None if loading failed.
    """
    try:
        version = latest_model_version(mlflow_client, MODEL_NAME)
        if version is None:
            raise ValueError(f"No model versions found for {MODEL_NAME}")

        model_uri = f"models:/{MODEL_NAME}/{version.version}"
        loaded_model = mlflow.sklearn.load_model(model_uri)
        loaded_info = get_model_info(model_uri)
        logger.info(f"Loaded model {MODEL_NAME} version {version.version}")
    except Exception as e:
        logger.error(f"Failed to load model: {e}")
        loaded_model = None
        loaded_info = None

    return loaded_model, loaded_info


model, model_info = load_model_for_app()


def _predict(df: pd.DataFrame) -> list[dict]:
    if model is None:
        raise HTTPException(status_code=503, detail="Model not loaded")
    predictions = np.asarray(model.predict(df)).tolist()
    if not hasattr(model, "predict_proba"):
        return [{"prediction": prediction} for prediction in predictions]

    probabilities = np.asarray(model.predict_proba(df))
    classes = np.asarray(model.classes_).tolist()
    return [
        {
            "prediction": prediction,
            "probabilities": dict(zip(map(str, classes), row.tolist())),
        }
        for prediction, row in zip(predictions, probabilities)
    ]


@app.get("/health")
def health():
    global model, model_info
    if model is None:
        model, model_info = load_model_for_app()
        if model is None:
            raise HTTPException(status_code=503, detail="Model not loaded")
    return {"status": "ok"}


@app.get("/model/info")
def model_info_endpoint():
    if model_info is None:
        raise HTTPException(status_code=503, detail="Model info not available")
    version = latest_model_version(mlflow_client, MODEL_NAME)
    return {
        "model_name": MODEL_NAME,
        "run_id": model_info.run_id,
        "flavors": list(model_info.flavors),
        "latest_version": version.version if version is not None else None,
        "creation_timestamp": model_info.utc_time_created,
    }


@app.post("/predict")
def predict(input: PredictionInput):
    try:
        df = pd.DataFrame([input.features])
        return _predict(df)[0]
    except HTTPException:
        raise
    except (ValidationError, ModelFlowError, ValueError) as ve:
        logger.error(f"Validation error: {ve}")
        raise HTTPException(status_code=422, detail=str(ve))
    except Exception as e:
        logger.error(f"Prediction error: {e}")
        raise HTTPException(status_code=500, detail="Prediction failed")


@app.post("/batch_predict")
def batch_predict(batch: BatchPredictionInput):
    try:
        df = pd.DataFrame([item.features for item in batch.inputs])
        return {"predictions": _predict(df)}
    except HTTPException:
        raise
    except (ValidationError, ModelFlowError, ValueError) as ve:
        logger.error(f"Validation error: {ve}")
        raise HTTPException(status_code=422, detail=str(ve))
    except Exception as e:
        logger.error(f"Batch prediction error: {e}")
        raise HTTPException(status_code=500, detail="Batch prediction failed")
