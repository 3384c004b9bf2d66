import numpy as np
import pandas as pd
import pytest

from modelflow.data.models import Dataset

N_ROWS = 200


def make_classification_frame(n_rows: int = N_ROWS, seed: int = 42) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    x1 = rng.normal(size=n_rows)
    x2 = rng.normal(size=n_rows)
    color = rng.choice(["blue", "green", "red"], size=n_rows)
    signal = 2 * x1 - x2 + (color == "red") + rng.normal(scale=0.5, size=n_rows)
    return pd.DataFrame(
        {
            "booking_id": np.arange(n_rows),
            "x1": x1,
            "x2": x2,
            "color": color,
            "arrival_date": pd.date_range("2016-01-01", periods=n_rows, freq="D"),
            "label": np.where(signal > 0, "yes", "no"),
        }
    )


def make_regression_frame(n_rows: int = N_ROWS, seed: int = 7) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    x1 = rng.normal(size=n_rows)
    x2 = rng.normal(size=n_rows)
    return pd.DataFrame(
        {"x1": x1, "x2": x2, "y": 3 * x1 - 2 * x2 + rng.normal(scale=0.1, size=n_rows)}
    )


@pytest.fixture
def classification_frame() -> pd.DataFrame:
    return make_classification_frame()


@pytest.fixture
def classification_data(classification_frame) -> Dataset:
    return Dataset(classification_frame, outcome="label", id_columns=("booking_id",))


@pytest.fixture
def regression_data() -> Dataset:
    return Dataset(make_regression_frame(), outcome="y")
