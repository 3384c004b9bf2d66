import logging

import numpy as np
import pandas as pd
import pytest

from modelflow.data.models import Dataset
from modelflow.data.preprocessing import Recipe
from modelflow.data.selectors import all_nominal_predictors, all_predictors, has_role
from modelflow.data.steps import holiday_rules
from modelflow.errors import ColumnTypeError, InvalidSpecificationError, MissingColumnsError


@pytest.fixture
def hotel_recipe(classification_data) -> Recipe:
    return (
        Recipe.for_dataset(classification_data)
        .step_date("arrival_date", features=["dow", "month"])
        .step_holiday("arrival_date")
        .step_rm("arrival_date")
        .step_dummy(all_nominal_predictors())
        .step_zv(all_predictors())
        .step_normalize(all_predictors())
    )


def test_prep_is_deterministic(hotel_recipe, classification_data):
    """Tests preprocessing determinism.

    Prepping the same recipe on the same data twice yields identical output.
    """
    # Act
    first = hotel_recipe.prep(classification_data).bake(classification_data)
    second = hotel_recipe.prep(classification_data).bake(classification_data)

    # Assert
    pd.testing.assert_frame_equal(first, second)


def test_bake_outputs_numeric_predictors(hotel_recipe, classification_data):
    """Tests the baked model matrix.

    Only numeric predictors remain, the ID column is excluded and the
    outcome is appended.
    """
    # Act
    prepared = hotel_recipe.prep(classification_data)
    baked = prepared.bake(classification_data)

    # Assert
    assert list(baked.columns) == [*prepared.predictors, "label"]
    assert "booking_id" not in prepared.predictors
    assert "arrival_date" not in prepared.predictors
    assert all(pd.api.types.is_numeric_dtype(baked[column]) for column in prepared.predictors)


def test_bake_without_outcome(hotel_recipe, classification_data):
    """New data without the outcome bakes to the predictors only."""
    prepared = hotel_recipe.prep(classification_data)

    baked = prepared.bake(classification_data.features().head(5))

    assert list(baked.columns) == prepared.predictors
    assert len(baked) == 5


def test_date_features(classification_data):
    """Day of week and month are categoricals with every level declared."""
    # Arrange
    recipe = Recipe.for_dataset(classification_data).step_date(
        "arrival_date", features=["dow", "month", "year"], keep_original_cols=False
    )

    # Act
    frame = recipe.prep(classification_data).pipeline[:-1].transform(classification_data.frame)

    # Assert
    assert "arrival_date" not in frame.columns
    assert list(frame["arrival_date_dow"].cat.categories) == [
        "Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"
    ]
    assert len(frame["arrival_date_month"].cat.categories) == 12
    # 2016-01-01 was a Friday
    assert frame["arrival_date_dow"].iloc[0] == "Fri"
    assert frame["arrival_date_year"].iloc[0] == 2016


def test_dummies_are_stable_across_data(hotel_recipe, classification_data):
    """Dummy columns for dates don't depend on the days present in new data."""
    prepared = hotel_recipe.prep(classification_data)

    baked = prepared.bake(classification_data.frame.head(1))

    assert list(baked.columns) == [*prepared.predictors, "label"]
    # Sun is the reference level
    assert "arrival_date_dow_Sun" not in prepared.predictors
    assert "arrival_date_dow_Sat" in prepared.predictors


def test_holiday_flags(classification_data):
    """New Year's Day is flagged on the first of January only."""
    # Arrange
    new_year = [rule.name for rule in holiday_rules() if "New Year" in rule.name]
    recipe = Recipe.for_dataset(classification_data).step_holiday(
        "arrival_date", holidays=new_year
    )

    # Act
    frame = recipe.prep(classification_data).pipeline[:-1].transform(classification_data.frame)

    # Assert
    flags = [column for column in frame.columns if column.startswith("arrival_date_New_Year")]
    assert len(flags) == 1
    assert frame[flags[0]].iloc[0] == 1
    assert frame[flags[0]].iloc[1:].sum() == 0


def test_unknown_holiday(classification_data):
    """Unknown holiday names are rejected when the step is added."""
    with pytest.raises(InvalidSpecificationError):
        Recipe.for_dataset(classification_data).step_holiday(
            "arrival_date", holidays=["Festivus"]
        )


def test_holiday_names_match_by_slug():
    """Holiday names match however pandas spells the rule."""
    [by_slug] = holiday_rules(["New_Years_Day"])
    [by_words] = holiday_rules(["new years day"])

    assert "New Year" in by_slug.name
    assert by_words is by_slug


def test_new_levels_encode_as_zeros(classification_data, caplog):
    """Levels unseen during prep become all-zero dummies with a warning."""
    # Arrange
    recipe = (
        Recipe.for_dataset(classification_data)
        .step_rm("arrival_date")
        .step_dummy(all_nominal_predictors())
    )
    prepared = recipe.prep(classification_data)
    new_data = classification_data.features().head(2).assign(color=["purple", "red"])

    # Act
    with caplog.at_level(logging.WARNING):
        baked = prepared.bake(new_data)

    # Assert
    assert list(baked.loc[:, ["color_green", "color_red"]].iloc[0]) == [0.0, 0.0]
    assert list(baked.loc[:, ["color_green", "color_red"]].iloc[1]) == [0.0, 1.0]
    assert "purple" in caplog.text


def test_one_hot_keeps_every_level(classification_data):
    recipe = (
        Recipe.for_dataset(classification_data)
        .step_rm("arrival_date")
        .step_dummy(all_nominal_predictors(), one_hot=True)
    )

    prepared = recipe.prep(classification_data)

    assert {"color_blue", "color_green", "color_red"} <= set(prepared.predictors)


def test_zero_variance_filter(classification_data):
    """Constant predictors are dropped."""
    data = classification_data.frame.assign(constant=1.0)
    recipe = Recipe("label", ["booking_id"]).step_rm("arrival_date").step_rm("color").step_zv()

    prepared = recipe.prep(data)

    assert "constant" not in prepared.predictors
    assert prepared.predictors == ["x1", "x2"]


def test_normalize(classification_data):
    """Normalized predictors have mean 0 and sample SD 1 on the training data."""
    recipe = (
        Recipe.for_dataset(classification_data)
        .step_rm(["arrival_date", "color"])
        .step_normalize()
    )

    baked = recipe.prep(classification_data).bake(classification_data)

    assert np.allclose(baked[["x1", "x2"]].mean(), 0)
    assert np.allclose(baked[["x1", "x2"]].std(), 1)


def test_missing_column_at_bake(hotel_recipe, classification_data):
    """Baking data without a column the recipe was prepped with fails."""
    prepared = hotel_recipe.prep(classification_data)

    with pytest.raises(MissingColumnsError) as error:
        prepared.bake(classification_data.frame.drop(columns=["x1"]))

    assert error.value.columns == ["x1"]


def test_non_numeric_predictors(classification_data):
    """Predictors left nominal after every step can't be used by a model."""
    recipe = Recipe.for_dataset(classification_data).step_rm("arrival_date")

    with pytest.raises(ColumnTypeError):
        recipe.prep(classification_data)


def test_update_role(classification_data):
    """Columns moved to another role are kept out of the predictors."""
    recipe = (
        Recipe("label")
        .update_role("booking_id", "arrival_date", new_role="ID")
        .step_dummy(all_nominal_predictors())
    )

    prepared = recipe.prep(classification_data)

    assert "booking_id" not in prepared.predictors
    assert "arrival_date" not in prepared.predictors
    assert recipe.roles["arrival_date"] == "ID"
    assert has_role("ID").resolve(classification_data.frame, recipe.roles) == [
        "booking_id",
        "arrival_date",
    ]


def test_builder_returns_new_recipes(classification_data):
    """Adding a step leaves the original recipe untouched."""
    base = Recipe.for_dataset(classification_data)

    extended = base.step_rm("arrival_date")

    assert base.steps == []
    assert len(extended.steps) == 1


def test_from_config_matches_builder(hotel_recipe, classification_data):
    """A recipe read from JSON-like settings equals the one built in code."""
    # Arrange
    steps = [
        {"step": "date", "columns": ["arrival_date"], "features": ["dow", "month"]},
        {"step": "holiday", "columns": ["arrival_date"]},
        {"step": "rm", "columns": ["arrival_date"]},
        {"step": "dummy", "columns": "all_nominal_predictors"},
        {"step": "zv", "columns": "all_predictors()"},
        {"step": "normalize", "columns": "all_predictors"},
    ]

    # Act
    recipe = Recipe.from_config("label", steps, id_columns=["booking_id"])

    # Assert
    pd.testing.assert_frame_equal(
        recipe.prep(classification_data).bake(classification_data),
        hotel_recipe.prep(classification_data).bake(classification_data),
    )


def test_from_config_unknown_step():
    with pytest.raises(InvalidSpecificationError):
        Recipe.from_config("label", [{"step": "impute"}])


def test_colliding_dummy_names(classification_data):
    """Levels that would share a dummy column are rejected at prep."""
    frame = classification_data.frame.assign(
        code=np.resize(["A-B", "A_B", "C"], classification_data.n_rows)
    )
    data = Dataset(frame, outcome="label", id_columns=("booking_id",))
    recipe = Recipe.for_dataset(data).step_rm("arrival_date").step_dummy(["code"])

    with pytest.raises(ColumnTypeError, match="collide"):
        recipe.prep(data)
