"""Observation families and the observation simulator.

Each family maps a linear predictor to a response distribution.  The
simulator combines the fixed-effect design matrix with the trend column
(coefficient fixed at 1), adds any offset, and returns the requested
output scale for one posterior draw.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from typing import Any, ClassVar

import jax
import jax.numpy as jnp
import numpy as np
import numpyro.distributions as dist

from trendcast.draws import DrawStore
from trendcast.errors import InputValidationError, UnsupportedFamilyOutputError


class OutputType(str, enum.Enum):
    """Scale on which predictions are returned."""

    RESPONSE = "response"
    LINK = "link"
    EXPECTED = "expected"
    TREND = "trend"


# ---------------------------------------------------------------------------
# ObservationFamily: registry of response distributions
# ---------------------------------------------------------------------------


class ObservationFamily(ABC):
    """Distributional assumption for the outcome given the linear predictor.

    Register a custom family by subclassing with a ``name`` keyword::

        class MyFamily(ObservationFamily, name="my_family"):
            ...
    """

    _registry: ClassVar[dict[str, type[ObservationFamily]]] = {}
    family_name: ClassVar[str]
    param_names: ClassVar[tuple[str, ...]] = ()

    def __init_subclass__(cls, *, name: str | None = None, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if name is not None:
            cls.family_name = name
            ObservationFamily._registry[name] = cls

    @classmethod
    def from_name(cls, name: str | ObservationFamily) -> ObservationFamily:
        """Resolve a family name once, at the boundary."""
        if isinstance(name, ObservationFamily):
            return name
        if name not in cls._registry:
            raise InputValidationError(
                f"Unknown observation family: {name!r}. "
                f"Available: {sorted(cls._registry)}"
            )
        return cls._registry[name]()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ObservationFamily) and other.family_name == self.family_name

    def __hash__(self) -> int:
        return hash(self.family_name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def extract_posterior(
        self, store: DrawStore, draw: int, series: int,
    ) -> dict[str, float]:
        """Family parameters of one draw, for one series.

        Parameters stored per series (``(draws, n_series)``) are sliced;
        shared ones (``(draws, 1)``) are broadcast.
        """
        params: dict[str, float] = {}
        for name in self.param_names:
            values = store.row(name, draw)
            params[name] = float(values[0] if values.shape[0] == 1 else values[series])
        return params

    @abstractmethod
    def inverse_link(self, eta: jnp.ndarray) -> jnp.ndarray:
        """Map the linear predictor to the mean scale."""

    def mean(self, eta: jnp.ndarray, params: dict[str, float]) -> jnp.ndarray:
        """Expected value of the response at *eta*."""
        return self.inverse_link(eta)

    @abstractmethod
    def distribution(self, eta: jnp.ndarray, params: dict[str, float]) -> dist.Distribution:
        """Response distribution at *eta*."""

    def sample(
        self, rng_key: jax.Array, eta: jnp.ndarray, params: dict[str, float],
    ) -> jnp.ndarray:
        """One stochastic realisation per element of *eta*."""
        return self.distribution(eta, params).sample(rng_key)


# ---------------------------------------------------------------------------
# Built-in families
# ---------------------------------------------------------------------------


class Gaussian(ObservationFamily, name="gaussian"):
    """Normal response, identity link."""

    param_names = ("sigma_obs",)

    def inverse_link(self, eta: jnp.ndarray) -> jnp.ndarray:
        return eta

    def distribution(self, eta: jnp.ndarray, params: dict[str, float]) -> dist.Distribution:
        return dist.Normal(eta, params["sigma_obs"])


class StudentT(ObservationFamily, name="student_t"):
    """Student-t response, identity link."""

    param_names = ("sigma_obs", "nu")

    def inverse_link(self, eta: jnp.ndarray) -> jnp.ndarray:
        return eta

    def distribution(self, eta: jnp.ndarray, params: dict[str, float]) -> dist.Distribution:
        return dist.StudentT(params["nu"], eta, params["sigma_obs"])


class LogNormal(ObservationFamily, name="lognormal"):
    """Log-normal response; the linear predictor is the log-scale location."""

    param_names = ("sigma_obs",)

    def inverse_link(self, eta: jnp.ndarray) -> jnp.ndarray:
        return eta

    def mean(self, eta: jnp.ndarray, params: dict[str, float]) -> jnp.ndarray:
        return jnp.exp(eta + params["sigma_obs"] ** 2 / 2.0)

    def distribution(self, eta: jnp.ndarray, params: dict[str, float]) -> dist.Distribution:
        return dist.LogNormal(eta, params["sigma_obs"])


class Poisson(ObservationFamily, name="poisson"):
    """Poisson counts, log link."""

    def inverse_link(self, eta: jnp.ndarray) -> jnp.ndarray:
        return jnp.exp(eta)

    def distribution(self, eta: jnp.ndarray, params: dict[str, float]) -> dist.Distribution:
        return dist.Poisson(jnp.exp(eta))


class NegativeBinomial(ObservationFamily, name="negative_binomial"):
    """Negative binomial counts (mean / dispersion ``phi``), log link."""

    param_names = ("phi",)

    def inverse_link(self, eta: jnp.ndarray) -> jnp.ndarray:
        return jnp.exp(eta)

    def distribution(self, eta: jnp.ndarray, params: dict[str, float]) -> dist.Distribution:
        return dist.NegativeBinomial2(jnp.exp(eta), params["phi"])


class Gamma(ObservationFamily, name="gamma"):
    """Gamma response with shape parameter, log link."""

    param_names = ("shape",)

    def inverse_link(self, eta: jnp.ndarray) -> jnp.ndarray:
        return jnp.exp(eta)

    def distribution(self, eta: jnp.ndarray, params: dict[str, float]) -> dist.Distribution:
        shape = params["shape"]
        return dist.Gamma(shape, shape / jnp.exp(eta))


class Beta(ObservationFamily, name="beta"):
    """Beta proportions with precision ``phi``, logit link."""

    param_names = ("phi",)

    def inverse_link(self, eta: jnp.ndarray) -> jnp.ndarray:
        return jax.nn.sigmoid(eta)

    def distribution(self, eta: jnp.ndarray, params: dict[str, float]) -> dist.Distribution:
        mu = jax.nn.sigmoid(eta)
        phi = params["phi"]
        return dist.Beta(mu * phi, (1.0 - mu) * phi)


# ---------------------------------------------------------------------------
# Observation simulator
# ---------------------------------------------------------------------------


def linear_predictor(
    Xp: np.ndarray, betas: np.ndarray, offset: np.ndarray | None = None,
) -> np.ndarray:
    """``Xp @ betas + offset``; missing offset entries count as zero."""
    eta = np.asarray(Xp, dtype=np.float64) @ np.asarray(betas, dtype=np.float64)
    if offset is not None:
        eta = eta + np.nan_to_num(np.asarray(offset, dtype=np.float64), nan=0.0)
    return eta


def simulate_observations(
    family: ObservationFamily,
    Xp: np.ndarray,
    betas: np.ndarray,
    output_type: OutputType,
    rng_key: jax.Array,
    family_params: dict[str, float] | None = None,
    offset: np.ndarray | None = None,
    *,
    has_trend: bool = True,
) -> np.ndarray:
    """Push one draw's combined predictor through the observation family.

    Parameters
    ----------
    Xp
        ``(rows, k + 1)`` fixed-effect columns followed by the trend column.
    betas
        ``(k + 1,)`` fixed-effect coefficients with a trailing ``1`` for
        the trend column.
    output_type
        ``link`` returns the raw linear predictor, ``expected`` the family
        mean, ``response`` one realisation and ``trend`` the trend column.
    has_trend
        Whether the last column of *Xp* is a dynamic trend.

    Returns
    -------
    ndarray
        ``(rows,)`` float64 values.
    """
    output_type = OutputType(output_type)
    if output_type is OutputType.TREND:
        if not has_trend:
            raise UnsupportedFamilyOutputError(
                "trend output requires a dynamic trend model", output_type=output_type.value,
            )
        return np.asarray(Xp, dtype=np.float64)[:, -1]

    eta = linear_predictor(Xp, betas, offset)
    if output_type is OutputType.LINK:
        return eta

    params = family_params or {}
    eta_j = jnp.asarray(eta)
    if output_type is OutputType.EXPECTED:
        return np.asarray(family.mean(eta_j, params), dtype=np.float64)
    return np.asarray(family.sample(rng_key, eta_j, params), dtype=np.float64)
