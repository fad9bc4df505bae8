"""Posterior-draw forecasting: proof of concept.

Demonstrates end-to-end: simulate two count series, fit a Poisson
model with an AR(1) trend in NumPyro, forecast 6 steps with
``trendcast``, then print a summary and save the result.

Run::

    python examples/forecast_poc.py
"""

from __future__ import annotations

import logging

import jax
import jax.numpy as jnp
import jax.random as jr
import numpy as np
import numpyro
import numpyro.distributions as dist
import pandas as pd
from numpyro.infer import MCMC, NUTS

from trendcast import DrawStore, FittedModel, LinearDesignBuilder, forecast

logging.basicConfig(level=logging.INFO)

# ============================================================
# 1.  Simulate data
# ============================================================
T, HORIZON, SERIES = 40, 6, ("north", "south")
rng = np.random.default_rng(0)
times = np.arange(1, T + HORIZON + 1)
temp = rng.normal(size=(len(times), len(SERIES)))
trend = np.zeros((len(times), len(SERIES)))
for t in range(1, len(times)):
    trend[t] = 0.8 * trend[t - 1] + rng.normal(0.0, 0.3, len(SERIES))
counts = rng.poisson(np.exp(1.0 + 0.4 * temp + trend))

frame = pd.DataFrame({
    "series": np.tile(SERIES, len(times)),
    "time": np.repeat(times, len(SERIES)),
    "temp": temp.reshape(-1),
    "y": counts.reshape(-1).astype(float),
})
train = frame[frame["time"] <= T]
future = frame[frame["time"] > T].drop(columns="y")
print(f"Training rows: {len(train)}  forecast rows: {len(future)}")

# ============================================================
# 2.  Fit: Poisson GLM with an AR(1) trend per series
# ============================================================
X = jnp.asarray(temp[:T])
Y = jnp.asarray(counts[:T])


def model(y=None):
    b = numpyro.sample("b", dist.Normal(0.0, 1.0).expand([2]))
    ar1 = numpyro.sample("ar1", dist.Uniform(-1.0, 1.0).expand([len(SERIES)]))
    sigma = numpyro.sample("sigma", dist.HalfNormal(0.5).expand([len(SERIES)]))
    eps = numpyro.sample("eps", dist.Normal(0.0, 1.0).expand([T, len(SERIES)]))

    def step(prev, e):
        new = ar1 * prev + sigma * e
        return new, new

    _, states = jax.lax.scan(step, jnp.zeros(len(SERIES)), eps)
    # time-major: column t * n_series + s
    numpyro.deterministic("trend", states.reshape(-1))
    mus = b[0] + b[1] * X + states
    numpyro.deterministic("mus", mus.reshape(-1))
    numpyro.sample("y", dist.Poisson(jnp.exp(mus)), obs=y)


mcmc = MCMC(NUTS(model), num_warmup=300, num_samples=200, progress_bar=False)
mcmc.run(jr.PRNGKey(0), y=Y)
samples = dict(mcmc.get_samples())
samples["ypred"] = rng.poisson(np.exp(np.asarray(samples["mus"]))).astype(float)

# ============================================================
# 3.  Forecast
# ============================================================
fitted = FittedModel(
    draws=DrawStore.from_samples(samples),
    obs_data=train,
    family="poisson",
    trend_model="AR1",
    obs_builder=LinearDesignBuilder(["temp"]),
)
result = forecast(fitted, future, n_workers=4)
print(result)
print(result.summary("north").tail(HORIZON + 2))

trend_only = forecast(fitted, future, series="south", output_type="trend")
print(trend_only.summary(quantiles=(0.1, 0.9)).tail(HORIZON))

result.save("results/forecast_poc")
