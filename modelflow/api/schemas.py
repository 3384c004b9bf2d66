from typing import Any

from pydantic import BaseModel, Field


class PredictionInput(BaseModel):
    """FastAPI input model.

    Raw feature values of one record, keyed by column name. The served
    model contains the prepared recipe, so these are the columns of the
    original dataset (dates as ISO strings), not the baked predictors.

    If lost, refer to the models' signature in MLflow for the exact list.
    """

    features: dict[str, Any] = Field(min_length=1)


class BatchPredictionInput(BaseModel):
    inputs: list[PredictionInput] = Field(min_length=1)
