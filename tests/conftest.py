"""Synthetic fitted models shared by the test modules."""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd
import pytest

from trendcast.design import LinearDesignBuilder
from trendcast.draws import DrawStore
from trendcast.model import FittedModel


def make_frame(labels, times, rng, with_y: bool = True) -> pd.DataFrame:
    frame = pd.DataFrame(
        [{"series": s, "time": t, "x": rng.normal()} for t in times for s in labels]
    )
    if with_y:
        frame["y"] = rng.normal(size=len(frame))
    return frame


def make_model(
    trend_model: str = "RW",
    *,
    n_series: int = 3,
    n_draws: int = 40,
    n_train: int = 12,
    n_test: int = 0,
    n_lv: int | None = None,
    family: str = "gaussian",
    drift: bool = False,
    trend_sd: float = 0.3,
    trend_builder: Any = None,
    trend_map: dict[str, int] | None = None,
    overrides: dict[str, Any] | None = None,
    drop: tuple[str, ...] = (),
    seed: int = 0,
) -> FittedModel:
    """A model whose stored draws follow the layout written at fit time."""
    rng = np.random.default_rng(seed)
    labels = tuple(f"s{i}" for i in range(n_series))
    train = make_frame(labels, range(1, n_train + 1), rng)
    test = make_frame(labels, range(n_train + 1, n_train + n_test + 1), rng) if n_test else None
    T = n_train + n_test
    n_states = n_lv or n_series

    states = np.cumsum(rng.normal(0.0, trend_sd, (n_draws, T, n_states)), axis=1)
    samples: dict[str, np.ndarray] = {
        "b": np.column_stack([
            rng.normal(1.0, 0.1, n_draws), rng.normal(0.5, 0.1, n_draws),
        ]),
        "sigma_obs": np.abs(rng.normal(0.5, 0.05, (n_draws, 1))),
    }
    if n_lv:
        loadings = rng.normal(0.0, 1.0, (n_draws, n_series, n_lv))
        samples["LV"] = states.reshape(n_draws, -1)
        samples["lv_coefs"] = loadings.reshape(n_draws, -1)
        trend = np.einsum("dtk,dsk->dts", states, loadings)
    else:
        trend = states

    if trend_model == "None":
        trend = np.zeros_like(trend[..., :n_series])
    else:
        samples["trend"] = trend.reshape(n_draws, -1)

    if trend_model in ("RW", "AR1", "AR2", "AR3") and not n_lv:
        samples["sigma"] = np.full((n_draws, n_states), trend_sd)
    for lag in range(1, {"AR1": 1, "AR2": 2, "AR3": 3}.get(trend_model, 0) + 1):
        samples[f"ar{lag}"] = rng.uniform(0.1, 0.3, (n_draws, n_states))
    if trend_model == "VAR1":
        A = np.tile(0.5 * np.eye(n_states) + 0.1, (n_draws, 1, 1))
        Sigma = np.tile(0.05 * np.eye(n_states) + 0.01, (n_draws, 1, 1))
        samples["A"] = A
        samples["Sigma"] = Sigma
    if trend_model == "GP":
        samples["alpha_gp"] = np.abs(rng.normal(0.5, 0.05, (n_draws, n_states)))
        samples["rho_gp"] = np.abs(rng.normal(4.0, 0.2, (n_draws, n_states)))
    if drift:
        samples["drift"] = np.full((n_draws, n_states), 0.2)
    if trend_builder is not None:
        samples["b_trend"] = rng.normal(0.0, 0.1, (n_draws, 1))

    frames = [train] if test is None else [train, test]
    stored = pd.concat(frames).sort_values(["time", "series"])
    x = stored["x"].to_numpy().reshape(T, n_series)
    mus = samples["b"][:, 0, None, None] + samples["b"][:, 1, None, None] * x + trend
    samples["mus"] = mus.reshape(n_draws, -1)
    samples["ypred"] = (mus + rng.normal(0.0, 0.5, mus.shape)).reshape(n_draws, -1)

    samples.update(overrides or {})
    for name in drop:
        samples.pop(name, None)

    return FittedModel(
        draws=DrawStore(samples),
        obs_data=train,
        family=family,
        trend_model=trend_model,
        obs_builder=LinearDesignBuilder(["x"]),
        trend_builder=trend_builder,
        test_data=test,
        n_lv=n_lv,
        drift=drift,
        trend_map=trend_map,
    )


def future_frame(model: FittedModel, steps: int, start: int | None = None, seed: int = 1):
    """Covariate rows for every series after the last stored time."""
    rng = np.random.default_rng(seed)
    first = int(model.stored_times.max()) + 1 if start is None else start
    return make_frame(tuple(model.series_index), range(first, first + steps), rng, with_y=False)


@pytest.fixture
def rw_model():
    return make_model("RW")


@pytest.fixture
def rng():
    return np.random.default_rng(42)
