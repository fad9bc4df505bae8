"""Tests for the model module."""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from conftest import make_model
from trendcast.design import LinearDesignBuilder
from trendcast.draws import DrawStore
from trendcast.errors import InputValidationError
from trendcast.families import Poisson
from trendcast.model import FittedModel
from trendcast.trends import TrendModel


@pytest.fixture
def train():
    return pd.DataFrame({
        "series": ["a", "b", "a", "b"],
        "time": [2, 2, 1, 1],
        "y": [3.0, 4.0, 1.0, 2.0],
        "x": [0.1, 0.2, 0.3, 0.4],
    })


def build(train, **kwargs):
    options = dict(
        draws=DrawStore({"b": np.zeros((2, 2))}),
        obs_data=train,
        family="poisson",
        trend_model="None",
        obs_builder=LinearDesignBuilder(["x"]),
    )
    options.update(kwargs)
    return FittedModel(**options)


class TestFittedModel:
    def test_resolves_names(self, train):
        model = build(train)
        assert model.family == Poisson()
        assert model.trend_model is TrendModel.NONE
        assert model.series_index.labels == ("a", "b")
        assert not model.use_lv

    def test_time_axes(self):
        model = make_model("RW", n_train=5, n_test=2)
        np.testing.assert_array_equal(model.train_times, [1, 2, 3, 4, 5])
        np.testing.assert_array_equal(model.test_times, [6, 7])
        np.testing.assert_array_equal(model.stored_times, np.arange(1, 8))
        np.testing.assert_array_equal(model.stored_columns(np.array([6, 7])), [5, 6])

    def test_stored_columns_unknown_time(self):
        model = make_model("RW", n_train=5)
        with pytest.raises(InputValidationError):
            model.stored_columns(np.array([9]))

    def test_observations_sorted(self, train):
        model = build(train)
        np.testing.assert_array_equal(model.observations(train, 0), [1.0, 3.0])
        no_outcome = train.drop(columns="y")
        assert np.isnan(model.observations(no_outcome, 1)).all()

    def test_unknown_family(self, train):
        with pytest.raises(InputValidationError):
            build(train, family="weibull")

    def test_missing_columns(self, train):
        with pytest.raises(InputValidationError, match="missing columns"):
            build(train.drop(columns="time"))

    def test_duplicate_rows(self, train):
        with pytest.raises(InputValidationError, match="duplicate"):
            build(pd.concat([train, train.iloc[:1]]))

    def test_test_data_must_follow_training(self, train):
        with pytest.raises(InputValidationError, match="follow"):
            build(train, test_data=train.copy())

    def test_stored_frame(self):
        model = make_model("RW", n_series=2, n_train=3, n_test=1)
        frame = model.stored_frame()
        assert frame["time"].tolist() == [1, 1, 2, 2, 3, 3, 4, 4]
        assert frame["series"].tolist()[:2] == ["s0", "s1"]
