"""Tests for the forecaster module."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from conftest import future_frame, make_model
from trendcast.design import LinearDesignBuilder
from trendcast.errors import (
    DrawComputationError,
    InputValidationError,
    MissingTrendStateError,
    NoTrendConfiguredError,
    UnknownParameterError,
    UnsupportedFamilyOutputError,
)
from trendcast.families import OutputType
from trendcast.forecaster import (
    ForecastOrchestrator,
    ForecastRequest,
    forecast,
    hindcast,
)


# ---------------------------------------------------------------------------
# ForecastRequest
# ---------------------------------------------------------------------------


class TestForecastRequest:
    def test_defaults(self):
        request = ForecastRequest()
        assert request.all_series
        assert request.output_type is OutputType.RESPONSE
        assert request.n_workers == 1

    def test_string_output_type(self):
        assert ForecastRequest(output_type="trend").output_type is OutputType.TREND

    def test_frozen(self):
        request = ForecastRequest()
        with pytest.raises(Exception):
            request.n_workers = 4

    @pytest.mark.parametrize("options", [
        {"n_workers": 0},
        {"n_workers": -2},
        {"n_samples": 0},
        {"series": True},
        {"series": -1},
        {"output_type": "mean"},
    ])
    def test_invalid(self, options):
        with pytest.raises(InputValidationError):
            ForecastRequest.parse(**options)

    def test_position_selector(self):
        request = ForecastRequest(series=2)
        assert not request.all_series
        assert request.series == 2


# ---------------------------------------------------------------------------
# Shapes and the hindcast
# ---------------------------------------------------------------------------


class TestShapes:
    def test_all_series(self, rw_model):
        result = forecast(rw_model, future_frame(rw_model, 5))
        assert result.series_names == ("s0", "s1", "s2")
        for name in result.series_names:
            assert result.hindcasts[name].shape == (40, 12)
            assert result.forecasts[name].shape == (40, 5)
        np.testing.assert_array_equal(result.test_times, [13, 14, 15, 16, 17])
        np.testing.assert_array_equal(result.train_times, np.arange(1, 13))

    def test_single_series_by_label_and_position(self, rw_model):
        new = future_frame(rw_model, 4)
        by_label = forecast(rw_model, new, series="s1")
        by_pos = forecast(rw_model, new, series=1)
        assert by_label.series_names == by_pos.series_names == ("s1",)
        assert by_label.forecasts["s1"].shape == (40, 4)

    def test_observations_attached(self, rw_model):
        result = forecast(rw_model, future_frame(rw_model, 3))
        train = rw_model.obs_data
        expected = train.loc[train["series"] == "s2"].sort_values("time")["y"].to_numpy()
        np.testing.assert_allclose(result.train_observations["s2"], expected)
        # outcome omitted from new_data counts as unobserved
        assert np.isnan(result.test_observations["s2"]).all()

    @pytest.mark.parametrize("trend_model", ["RW", "AR1", "AR2", "AR3", "VAR1", "GP", "None"])
    def test_every_trend_family(self, trend_model):
        model = make_model(trend_model, n_draws=12)
        result = forecast(model, future_frame(model, 3))
        for name in result.series_names:
            assert result.forecasts[name].shape == (12, 3)
            assert np.isfinite(result.forecasts[name]).all()

    def test_latent_factors(self):
        model = make_model("RW", n_lv=2, n_draws=15)
        result = forecast(model, future_frame(model, 4), output_type="trend")
        assert result.use_lv
        assert result.forecasts["s0"].shape == (15, 4)
        single = forecast(model, future_frame(model, 4), series="s2", output_type="trend")
        assert single.forecasts["s2"].shape == (15, 4)

    def test_hindcast_is_stored_response(self, rw_model):
        hc = hindcast(rw_model, series="s1")
        np.testing.assert_array_equal(hc["s1"], rw_model.draws.block("ypred", 1, 3))

    def test_hindcast_idempotent(self, rw_model):
        new = future_frame(rw_model, 3)
        a = forecast(rw_model, new, rng_seed=1)
        b = forecast(rw_model, new, rng_seed=2)
        for name in a.series_names:
            np.testing.assert_array_equal(a.hindcasts[name], b.hindcasts[name])

    def test_expected_hindcast_gaussian_is_link(self, rw_model):
        expected = hindcast(rw_model, output_type="expected")
        link = hindcast(rw_model, output_type="link")
        np.testing.assert_allclose(expected["s0"], link["s0"], rtol=1e-6)

    def test_expected_hindcast_poisson(self):
        model = make_model("RW", family="poisson")
        expected = hindcast(model, series=0, output_type="expected")
        np.testing.assert_allclose(
            expected["s0"], np.exp(model.draws.block("mus", 0, 3)), rtol=1e-5,
        )


# ---------------------------------------------------------------------------
# Trend output
# ---------------------------------------------------------------------------


class TestTrendOutput:
    def test_round_trip_at_training_times(self, rw_model):
        result = forecast(rw_model, future_frame(rw_model, 2), output_type="trend")
        for s, name in enumerate(result.series_names):
            np.testing.assert_array_equal(
                result.hindcasts[name], rw_model.draws.block("trend", s, 3),
            )

    def test_no_trend_model(self):
        model = make_model("None")
        with pytest.raises(UnsupportedFamilyOutputError):
            forecast(model, future_frame(model, 2), output_type="trend")
        with pytest.raises(NoTrendConfiguredError):
            hindcast(model, output_type="trend")

    def test_no_trend_model_response(self):
        model = make_model("None", n_draws=10)
        result = forecast(model, future_frame(model, 2), output_type="link")
        new = future_frame(model, 2).sort_values(["time", "series"])
        x = new.loc[new["series"] == "s0", "x"].to_numpy()
        b = model.draws.get("b")
        np.testing.assert_allclose(result.forecasts["s0"], b[:, :1] + b[:, 1:] * x, rtol=1e-6)

    def test_analytic_mean_walk(self):
        model = make_model("RW", n_draws=100, trend_sd=0.1)
        result = forecast(model, future_frame(model, 5), output_type="trend")
        last = model.draws.get("trend").reshape(100, 12, 3)[:, -1, :]
        for s, name in enumerate(result.series_names):
            fc = result.forecasts[name]
            assert fc.shape == (100, 5)
            # mean walk stays at the mean last state; MC error ~ 0.1 * sqrt(5 / 100)
            np.testing.assert_allclose(fc.mean(axis=0), last[:, s].mean(), atol=0.1)

    def test_drift_moves_mean(self):
        model = make_model("RW", n_draws=100, trend_sd=0.05, drift=True)
        result = forecast(model, future_frame(model, 4), output_type="trend")
        last = model.draws.get("trend").reshape(100, 12, 3)[:, -1, 0].mean()
        np.testing.assert_allclose(
            result.forecasts["s0"].mean(axis=0), last + 0.2 * np.arange(1, 5), atol=0.05,
        )

    def test_single_versus_all_marginals(self):
        model = make_model("RW", n_draws=200, trend_sd=0.2)
        new = future_frame(model, 3)
        joint = forecast(model, new, output_type="trend").forecasts["s2"]
        single = forecast(model, new, series="s2", output_type="trend").forecasts["s2"]
        np.testing.assert_allclose(joint.mean(axis=0), single.mean(axis=0), atol=0.15)
        np.testing.assert_allclose(joint.std(axis=0), single.std(axis=0), rtol=0.3)

    def test_var1_single_series(self):
        model = make_model("VAR1", n_draws=20)
        result = forecast(model, future_frame(model, 3), series=0, output_type="trend")
        assert result.forecasts["s0"].shape == (20, 3)

    def test_trend_formula(self):
        model = make_model(
            "AR1", n_draws=10, trend_builder=LinearDesignBuilder(["x"], intercept=False),
        )
        result = forecast(model, future_frame(model, 3), output_type="trend")
        assert np.isfinite(result.forecasts["s1"]).all()
        single = forecast(model, future_frame(model, 3), series="s1", output_type="trend")
        assert single.forecasts["s1"].shape == (10, 3)


# ---------------------------------------------------------------------------
# Parallelism and reproducibility
# ---------------------------------------------------------------------------


class TestParallelism:
    def test_worker_count_does_not_change_output(self, rw_model):
        new = future_frame(rw_model, 4)
        one = forecast(rw_model, new, n_workers=1)
        two = forecast(rw_model, new, n_workers=3)
        for name in one.series_names:
            np.testing.assert_array_equal(one.forecasts[name], two.forecasts[name])

    def test_seeded(self, rw_model):
        new = future_frame(rw_model, 4)
        a = forecast(rw_model, new, rng_seed=7)
        b = forecast(rw_model, new, rng_seed=7)
        c = forecast(rw_model, new, rng_seed=8)
        np.testing.assert_array_equal(a.forecasts["s0"], b.forecasts["s0"])
        assert not np.allclose(a.forecasts["s0"], c.forecasts["s0"])

    def test_subsample_without_replacement(self, rw_model):
        result = forecast(rw_model, future_frame(rw_model, 2), n_samples=10)
        assert result.n_draws == 10
        assert len(set(result.draw_indices.tolist())) == 10
        np.testing.assert_array_equal(
            result.hindcasts["s0"], rw_model.draws.block("ypred", 0, 3)[result.draw_indices],
        )

    def test_subsample_with_replacement(self, rw_model):
        result = forecast(rw_model, future_frame(rw_model, 2), n_samples=100)
        assert result.forecasts["s1"].shape == (100, 2)
        assert result.draw_indices.max() < 40

    def test_draw_failure_wrapped(self, rw_model):
        model = make_model("RW", drop=("sigma_obs",))
        with pytest.raises(DrawComputationError) as info:
            forecast(model, future_frame(model, 2), n_workers=2)
        assert info.value.draw == 0
        assert info.value.output_type == "response"
        assert isinstance(info.value.__cause__, UnknownParameterError)


# ---------------------------------------------------------------------------
# Stored forecasts and rolling origin
# ---------------------------------------------------------------------------


class TestStoredForecast:
    @pytest.fixture
    def model(self):
        return make_model("AR1", n_test=4)

    def test_without_new_data(self, model, caplog):
        with caplog.at_level(logging.INFO, logger="trendcast.forecaster"):
            result = forecast(model)
        assert "stored forecast" in caplog.text
        np.testing.assert_array_equal(result.test_times, [13, 14, 15, 16])
        stored = model.draws.block("ypred", 2, 3)[:, 12:]
        np.testing.assert_array_equal(result.forecasts["s2"], stored)
        expected = model.test_data.loc[model.test_data["series"] == "s2"].sort_values("time")
        np.testing.assert_allclose(result.test_observations["s2"], expected["y"])

    def test_requested_subset_of_stored(self, model):
        new = model.test_data.loc[model.test_data["time"] <= 14]
        result = forecast(model, new, output_type="link")
        np.testing.assert_array_equal(result.test_times, [13, 14])
        np.testing.assert_array_equal(
            result.forecasts["s0"], model.draws.block("mus", 0, 3)[:, 12:14],
        )
        assert "sigma_obs" in result.family_pars

    def test_extends_beyond_stored(self, model):
        new = future_frame(model, 6, start=13)
        result = forecast(model, new)
        np.testing.assert_array_equal(result.test_times, np.arange(13, 19))
        fc = result.forecasts["s1"]
        assert fc.shape == (40, 6)
        np.testing.assert_array_equal(fc[:, :4], model.draws.block("ypred", 1, 3)[:, 12:])

    def test_requires_new_data_without_stored_test(self, rw_model):
        with pytest.raises(InputValidationError, match="new_data is required"):
            forecast(rw_model)

    def test_training_rows_dropped(self, rw_model):
        new = future_frame(rw_model, 5, start=10)
        result = forecast(rw_model, new)
        np.testing.assert_array_equal(result.test_times, [13, 14])

    def test_ending_time(self, rw_model):
        new = future_frame(rw_model, 4, start=9)
        result = forecast(rw_model, new, ending_time=8, output_type="trend")
        np.testing.assert_array_equal(result.test_times, [9, 10, 11, 12])
        assert result.forecasts["s0"].shape == (40, 4)

    def test_nothing_to_forecast(self, rw_model):
        with pytest.raises(InputValidationError, match="no rows"):
            forecast(rw_model, future_frame(rw_model, 3, start=1))


# ---------------------------------------------------------------------------
# Input validation (before any draw is simulated)
# ---------------------------------------------------------------------------


class TestValidation:
    def test_missing_covariate(self, rw_model):
        new = future_frame(rw_model, 3).drop(columns="x")
        with pytest.raises(InputValidationError, match="covariates"):
            forecast(rw_model, new)

    def test_unknown_series_in_data(self, rw_model):
        new = future_frame(rw_model, 3)
        new.loc[0, "series"] = "zz"
        with pytest.raises(InputValidationError, match="unknown series"):
            forecast(rw_model, new)

    def test_unknown_series_selector(self, rw_model):
        with pytest.raises(InputValidationError):
            forecast(rw_model, future_frame(rw_model, 3), series="zz")

    def test_series_out_of_range(self, rw_model):
        with pytest.raises(InputValidationError):
            forecast(rw_model, future_frame(rw_model, 3), series=3)

    def test_non_positive_workers(self, rw_model):
        with pytest.raises(InputValidationError):
            forecast(rw_model, future_frame(rw_model, 3), n_workers=0)

    def test_ragged_horizon(self, rw_model):
        new = future_frame(rw_model, 3)
        new = new.drop(index=new.index[(new["series"] == "s1") & (new["time"] == 14)])
        with pytest.raises(InputValidationError, match="every forecast time"):
            forecast(rw_model, new)

    def test_missing_trend_state(self):
        model = make_model("AR1", drop=("sigma",))
        with pytest.raises(MissingTrendStateError):
            forecast(model, future_frame(model, 2))

    def test_orchestrator_reusable(self, rw_model):
        orchestrator = ForecastOrchestrator(rw_model)
        request = ForecastRequest(series="s0", output_type="expected")
        a = orchestrator.forecast(future_frame(rw_model, 2), request)
        b = orchestrator.forecast(future_frame(rw_model, 2), request)
        np.testing.assert_array_equal(a.forecasts["s0"], b.forecasts["s0"])
