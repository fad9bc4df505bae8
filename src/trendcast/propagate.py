"""Forward simulation of dynamic trends for one posterior draw.

:func:`propagate` dispatches on the parameter struct produced by
:class:`~trendcast.trends.TrendParameterExtractor`; each family has
exactly one rule.  Recursions start from the last known state and stop
after ``horizon`` steps.
"""

from __future__ import annotations

import functools

import jax
import jax.numpy as jnp
import jax.random as jr
import jax.scipy.linalg as jsl
import numpy as np
import numpyro.distributions as dist

from trendcast.errors import InputValidationError, NoTrendConfiguredError
from trendcast.trends import (
    AutoregressiveParams,
    GaussianProcessParams,
    NoTrendParams,
    SharedInnovationParams,
    TrendParameters,
)

_GP_JITTER = 1e-4


# ---------------------------------------------------------------------------
# JAX kernels
# ---------------------------------------------------------------------------


@jax.jit
def _lagged_scan(
    lags: jnp.ndarray,
    drift: jnp.ndarray,
    init: jnp.ndarray,
    eps: jnp.ndarray,
) -> jnp.ndarray:
    """Run ``dev[t] = sum_k lags[k-1] @ dev[t-k] + drift + eps[t]``.

    Parameters: lags ``(p, n, n)``, drift ``(n,)``, init ``(p, n)``
    oldest first, eps ``(h, n)``.

    Returns: ``(h, n)`` simulated states.
    """

    def step(window, e):
        # window[-1] is lag 1
        new = jnp.einsum("kij,kj->i", lags, window[::-1]) + drift + e
        return jnp.concatenate([window[1:], new[None, :]], axis=0), new

    _, states = jax.lax.scan(step, init, eps)
    return states


def _se_kernel(t1: jnp.ndarray, t2: jnp.ndarray, alpha: float, rho: float) -> jnp.ndarray:
    sq = (t1[:, None] - t2[None, :]) ** 2
    return alpha**2 * jnp.exp(-0.5 * sq / rho**2)


@jax.jit
def _gp_conditional(
    rng_key: jax.Array,
    train_times: jnp.ndarray,
    train_values: jnp.ndarray,
    new_times: jnp.ndarray,
    alpha: float,
    rho: float,
) -> jnp.ndarray:
    """One draw from the GP predictive at *new_times* given the fitted values."""
    jitter = _GP_JITTER * (1.0 + alpha**2)
    K = _se_kernel(train_times, train_times, alpha, rho) + jitter * jnp.eye(train_times.shape[0])
    K_s = _se_kernel(train_times, new_times, alpha, rho)
    K_ss = _se_kernel(new_times, new_times, alpha, rho)

    L = jnp.linalg.cholesky(K)
    mean = K_s.T @ jsl.cho_solve((L, True), train_values)
    v = jsl.solve_triangular(L, K_s, lower=True)
    cov = K_ss - v.T @ v
    cov = 0.5 * (cov + cov.T) + jitter * jnp.eye(new_times.shape[0])
    return dist.MultivariateNormal(mean, covariance_matrix=cov).sample(rng_key)


# ---------------------------------------------------------------------------
# Trend predictor helpers
# ---------------------------------------------------------------------------


def _split_trend_mu(
    trend_mu: np.ndarray | None, order: int, horizon: int, n_states: int,
) -> tuple[np.ndarray, np.ndarray]:
    """Split stacked trend predictor rows into ``(history, future)``.

    *trend_mu* holds the reconstructed training rows followed by one row
    per forecast step.  The recursion needs the last *order* history rows.
    """
    if trend_mu is None:
        return np.zeros((order, n_states)), np.zeros((horizon, n_states))
    mu = np.asarray(trend_mu, dtype=np.float64).reshape(-1, n_states)
    n_hist = mu.shape[0] - horizon
    if n_hist < order:
        raise InputValidationError(
            f"trend predictor needs {order} history rows before the forecast, got {n_hist}",
        )
    return mu[n_hist - order:n_hist], mu[n_hist:]


# ---------------------------------------------------------------------------
# propagate: one rule per trend family
# ---------------------------------------------------------------------------


@functools.singledispatch
def propagate(
    params: object,
    horizon: int,
    rng_key: jax.Array,
    *,
    trend_mu: np.ndarray | None = None,
    new_times: np.ndarray | None = None,
) -> np.ndarray:
    """Simulate *horizon* future trend states from *params*.

    Parameters
    ----------
    params
        A trend parameter struct.
    horizon
        Number of future steps.
    rng_key
        JAX PRNG key of this draw.
    trend_mu
        Optional trend-formula predictor: history rows followed by
        ``horizon`` future rows (``(rows,)`` or ``(rows, n_states)``).
    new_times
        Future time values; required by Gaussian-process trends.

    Returns
    -------
    ndarray
        ``(horizon,)`` for a single state, ``(horizon, n_states)`` otherwise.
    """
    raise InputValidationError(f"no propagation rule for {type(params).__name__}")


@propagate.register(NoTrendParams)
def _propagate_none(params, horizon, rng_key, *, trend_mu=None, new_times=None):
    raise NoTrendConfiguredError("no dynamic trend was used in this model")


@propagate.register(AutoregressiveParams)
def _propagate_autoregressive(
    params, horizon, rng_key, *, trend_mu=None, new_times=None,
):
    p = params.order
    mu_hist, mu_future = _split_trend_mu(trend_mu, p, horizon, 1)
    eps = params.sigma * jr.normal(rng_key, (horizon, 1))
    dev = _lagged_scan(
        jnp.asarray(params.ar).reshape(p, 1, 1),
        jnp.asarray([params.drift]),
        jnp.asarray(params.last_states).reshape(p, 1) - mu_hist,
        eps,
    )
    return (np.asarray(dev, dtype=np.float64) + mu_future)[:, 0]


@propagate.register(SharedInnovationParams)
def _propagate_shared(
    params, horizon, rng_key, *, trend_mu=None, new_times=None,
):
    p, n = params.order, params.n_states
    mu_hist, mu_future = _split_trend_mu(trend_mu, p, horizon, n)
    # innovations drawn jointly so cross-series correlation survives
    eps = dist.MultivariateNormal(
        jnp.zeros(n), covariance_matrix=jnp.asarray(params.Sigma),
    ).sample(rng_key, (horizon,))
    dev = _lagged_scan(
        jnp.asarray(params.lags),
        jnp.asarray(params.drift),
        jnp.asarray(params.last_states) - mu_hist,
        eps,
    )
    states = np.asarray(dev, dtype=np.float64) + mu_future
    return states[:, 0] if n == 1 else states


@propagate.register(GaussianProcessParams)
def _propagate_gp(
    params, horizon, rng_key, *, trend_mu=None, new_times=None,
):
    if new_times is None or len(new_times) != horizon:
        raise InputValidationError("GP trends need one new time value per forecast step")
    n = params.n_states
    train_times = jnp.asarray(params.train_times)
    times = jnp.asarray(np.asarray(new_times, dtype=np.float64))
    keys = jr.split(rng_key, n)
    states = np.column_stack([
        np.asarray(_gp_conditional(
            keys[i], train_times, jnp.asarray(params.train_states[:, i]), times,
            float(params.alpha[i]), float(params.rho[i]),
        ), dtype=np.float64)
        for i in range(n)
    ])
    # the trend predictor is added after the GP draw, never fed back into it
    if trend_mu is not None:
        states = states + _split_trend_mu(trend_mu, 0, horizon, n)[1]
    return states[:, 0] if n == 1 else states


# ---------------------------------------------------------------------------
# forecast_trend: propagation plus latent-factor composition
# ---------------------------------------------------------------------------


def forecast_trend(
    params: TrendParameters,
    horizon: int,
    rng_key: jax.Array,
    *,
    trend_mu: np.ndarray | None = None,
    new_times: np.ndarray | None = None,
) -> np.ndarray:
    """Propagate one draw's trend and map latent factors onto series.

    Latent trajectories are propagated jointly first; the loadings are
    applied once, afterwards: ``trend[t, s] = loadings[s] . latent[t]``.
    """
    states = propagate(
        params.process, horizon, rng_key, trend_mu=trend_mu, new_times=new_times,
    )
    if params.loadings is None:
        return states
    latent = states.reshape(horizon, -1)
    return latent @ np.asarray(params.loadings, dtype=np.float64).T
