"""Dynamic trend families and per-draw trend parameter extraction.

Each trend family has its own strongly typed parameter struct.  The
:class:`TrendParameterExtractor` reads posterior draws once and hands out
the struct for a given draw (and series, when the family allows it).

Any recursive trend that carries an innovation scale (``Sigma``,
``sigma`` or ``tau``) is simulated with the joint lag-matrix recursion
of :class:`SharedInnovationParams`, whatever its nominal family.  A
random walk or AR(p) then becomes a diagonal lag matrix with a diagonal
innovation covariance.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

import numpy as np

from trendcast.draws import DrawStore
from trendcast.errors import InputValidationError, MissingTrendStateError

logger = logging.getLogger(__name__)

MAX_LAG = 3
"""Number of trailing states (and trend predictor rows) kept per draw."""

COVARIANCE_PARAMETERS = frozenset({"Sigma", "sigma", "tau"})


class TrendModel(str, enum.Enum):
    """Declared dynamic trend family of a fitted model."""

    NONE = "None"
    RW = "RW"
    AR1 = "AR1"
    AR2 = "AR2"
    AR3 = "AR3"
    VAR1 = "VAR1"
    GP = "GP"

    @property
    def order(self) -> int:
        """Autoregressive order of the state equation (0 for non-recursive)."""
        return {"RW": 1, "AR1": 1, "AR2": 2, "AR3": 3, "VAR1": 1}.get(self.value, 0)

    @property
    def is_dynamic(self) -> bool:
        return self is not TrendModel.NONE


# ---------------------------------------------------------------------------
# Parameter structs: one per propagation family
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoTrendParams:
    """Marker for models without a dynamic trend."""


@dataclass(frozen=True)
class AutoregressiveParams:
    """Series-independent random walk / AR(p) for a single state.

    Attributes
    ----------
    ar
        ``(p,)`` coefficients, lag 1 first.  A random walk is ``[1.0]``.
    sigma
        Innovation standard deviation.
    drift
        Per-step drift (0 when the model has none).
    last_states
        ``(p,)`` last known states, oldest first.
    """

    ar: np.ndarray
    sigma: float
    drift: float
    last_states: np.ndarray

    @property
    def order(self) -> int:
        return int(self.ar.shape[0])


@dataclass(frozen=True)
class SharedInnovationParams:
    """Joint VAR recursion ``state[t] = sum_k A_k state[t-k] + drift + eps``.

    Attributes
    ----------
    lags
        ``(p, n, n)`` lag matrices, lag 1 first.
    Sigma
        ``(n, n)`` innovation covariance.
    drift
        ``(n,)`` per-step drift.
    last_states
        ``(p, n)`` last known joint states, oldest first.
    """

    lags: np.ndarray
    Sigma: np.ndarray
    drift: np.ndarray
    last_states: np.ndarray

    @property
    def order(self) -> int:
        return int(self.lags.shape[0])

    @property
    def n_states(self) -> int:
        return int(self.Sigma.shape[0])

    @property
    def separable(self) -> bool:
        """True when lag matrices and covariance are all diagonal."""
        def _diag(m: np.ndarray) -> bool:
            return np.count_nonzero(m - np.diag(np.diagonal(m))) == 0

        return _diag(self.Sigma) and all(_diag(a) for a in self.lags)

    def marginal(self, state: int) -> AutoregressiveParams:
        """The independent recursion of one state of a separable process."""
        if not self.separable:
            raise InputValidationError(
                "cross-series dependence prevents a marginal recursion", series=state,
            )
        return AutoregressiveParams(
            ar=np.array([a[state, state] for a in self.lags]),
            sigma=float(np.sqrt(self.Sigma[state, state])),
            drift=float(self.drift[state]),
            last_states=self.last_states[:, state].copy(),
        )


@dataclass(frozen=True)
class GaussianProcessParams:
    """Squared-exponential GP trend conditioned on its fitted trajectory.

    Attributes
    ----------
    alpha, rho
        ``(n,)`` marginal amplitude and length scale per state.
    train_times
        ``(T,)`` time values of the fitted trajectory.
    train_states
        ``(T, n)`` fitted trend values.
    """

    alpha: np.ndarray
    rho: np.ndarray
    train_times: np.ndarray
    train_states: np.ndarray

    @property
    def n_states(self) -> int:
        return int(self.alpha.shape[0])


TrendProcess = NoTrendParams | AutoregressiveParams | SharedInnovationParams | GaussianProcessParams


@dataclass(frozen=True)
class TrendParameters:
    """Everything one draw needs to propagate its trend.

    Attributes
    ----------
    process
        Family-specific parameter struct.
    loadings
        Latent-factor loadings: ``(n_series, n_lv)`` for joint requests,
        ``(n_lv,)`` for a single series, ``None`` without latent factors.
    trend_betas
        Trend-formula coefficients, ``None`` without a trend formula.
    """

    process: TrendProcess
    loadings: np.ndarray | None = None
    trend_betas: np.ndarray | None = None

    @property
    def is_joint(self) -> bool:
        """Whether the process covers several states that must be sliced afterwards."""
        if self.loadings is not None:
            return True
        return getattr(self.process, "n_states", 1) > 1


# ---------------------------------------------------------------------------
# TrendParameterExtractor
# ---------------------------------------------------------------------------


class TrendParameterExtractor:
    """Per-draw trend parameters for a fitted model.

    Parameters
    ----------
    store
        Posterior draws of the fitted model.
    trend_model
        Declared trend family.
    n_series
        Number of observed series.
    stored_times
        Time values covered by the stored ``trend`` / ``LV`` trajectory.
    n_lv
        Number of latent factors, or ``None`` without latent factors.
    drift
        Whether the model was fit with a drift term.
    trend_formula
        Whether ``b_trend`` coefficients should be attached.
    ending_time
        Replay the state as of this time value instead of the last
        stored time (rolling-origin evaluation).
    """

    def __init__(
        self,
        store: DrawStore,
        trend_model: TrendModel | str,
        n_series: int,
        stored_times: np.ndarray,
        *,
        n_lv: int | None = None,
        drift: bool = False,
        trend_formula: bool = False,
        ending_time: float | None = None,
    ) -> None:
        self.store = store
        self.trend_model = TrendModel(trend_model)
        self.n_series = n_series
        self.n_lv = n_lv
        self.use_lv = n_lv is not None
        self.n_states = n_lv if n_lv is not None else n_series
        self.drift = drift
        self.trend_formula = trend_formula
        self.stored_times = np.asarray(stored_times)
        self.ending_time = ending_time
        self.propagation_model = self.trend_model
        self._raw: dict[str, np.ndarray] = {}

        if self.trend_model.is_dynamic:
            self._raw = self._extract_all()
            self._reclassify()

    # -- bulk extraction ---------------------------------------------------

    def _end_position(self) -> int:
        if self.ending_time is None:
            return len(self.stored_times)
        end = int(np.searchsorted(self.stored_times, self.ending_time, side="right"))
        if end == 0:
            raise InputValidationError(
                "ending_time precedes the first stored time", ending_time=self.ending_time,
            )
        return end

    def _stored_states(self) -> np.ndarray:
        """``(draws, T, n_states)`` fitted trend trajectory."""
        name = "LV" if self.use_lv else "trend"
        if name not in self.store:
            raise MissingTrendStateError(
                f"model declares a {self.trend_model.value} trend but no {name!r} "
                "states were stored; the fitted object is incompatible",
                parameter=name,
            )
        values = self.store.get(name)
        n_times = len(self.stored_times)
        if values.shape[1] != n_times * self.n_states:
            raise MissingTrendStateError(
                f"stored {name!r} has {values.shape[1]} columns, expected "
                f"{n_times} times x {self.n_states} states",
                parameter=name,
            )
        return values.reshape(values.shape[0], n_times, self.n_states)

    def _extract_all(self) -> dict[str, np.ndarray]:
        store = self.store
        states = self._stored_states()
        end = self._end_position()
        raw: dict[str, np.ndarray] = {}

        if self.trend_model is TrendModel.GP:
            raw["alpha_gp"] = store.get("alpha_gp")
            raw["rho_gp"] = store.get("rho_gp")
            raw["gp_states"] = states[:, :end, :]
            raw["gp_times"] = self.stored_times[:end]
        else:
            order = self.trend_model.order
            if end < order:
                raise InputValidationError(
                    f"{self.trend_model.value} needs {order} stored states before the cutoff",
                    ending_time=self.ending_time,
                )
            for name in ("A", "Sigma", "sigma", "tau"):
                if name in store:
                    raw[name] = store.get(name)
            if self.trend_model is TrendModel.VAR1:
                raw["A"] = store.get("A")
            elif self.trend_model is not TrendModel.RW:
                for lag in range(1, order + 1):
                    raw[f"ar{lag}"] = store.get(f"ar{lag}")
            raw["last_trends"] = states[:, end - order:end, :]

        if self.drift and "drift" in store:
            raw["drift"] = store.get("drift")
        if self.use_lv:
            if "lv_coefs" not in store:
                raise MissingTrendStateError(
                    "latent-factor model has no stored loadings", parameter="lv_coefs",
                )
            raw["lv_coefs"] = store.get("lv_coefs").reshape(-1, self.n_series, self.n_lv)
        if self.trend_formula:
            raw["b_trend"] = store.get("b_trend")
        return raw

    def _reclassify(self) -> None:
        if self.trend_model is TrendModel.GP:
            return
        covariance = COVARIANCE_PARAMETERS & self._raw.keys()
        if not covariance and not self.use_lv:
            raise MissingTrendStateError(
                f"{self.trend_model.value} trend has no innovation scale; "
                f"expected one of {sorted(COVARIANCE_PARAMETERS)}",
                parameter="sigma",
            )
        if self.trend_model is not TrendModel.VAR1:
            logger.debug(
                "Simulating %s trend with the joint VAR recursion (found %s)",
                self.trend_model.value, sorted(covariance) or "latent factors",
            )
        self.propagation_model = TrendModel.VAR1
        self._raw["last_states"] = self._raw.pop("last_trends")

    # -- per-draw accessors ------------------------------------------------

    @property
    def is_joint_family(self) -> bool:
        """Whether the trend must be propagated jointly across states."""
        return self.propagation_model is TrendModel.VAR1

    def general(self, draw: int) -> TrendParameters:
        """Parameters of *draw* covering every state jointly."""
        if not self.trend_model.is_dynamic:
            return TrendParameters(NoTrendParams())
        raw = self._raw
        if self.trend_model is TrendModel.GP:
            process: TrendProcess = GaussianProcessParams(
                alpha=self._per_state(raw["alpha_gp"][draw]),
                rho=self._per_state(raw["rho_gp"][draw]),
                train_times=np.asarray(raw["gp_times"], dtype=np.float64),
                train_states=raw["gp_states"][draw],
            )
        else:
            process = self._shared(draw)
        return TrendParameters(
            process=process,
            loadings=raw["lv_coefs"][draw] if self.use_lv else None,
            trend_betas=raw["b_trend"][draw] if self.trend_formula else None,
        )

    def for_series(self, draw: int, series: int) -> TrendParameters:
        """Parameters of *draw* for one series.

        Latent-factor and non-separable VAR processes stay joint; the
        caller propagates them once and slices the series afterwards.
        """
        params = self.general(draw)
        process = params.process
        if self.use_lv:
            return TrendParameters(process, params.loadings[series], params.trend_betas)
        if isinstance(process, GaussianProcessParams):
            process = GaussianProcessParams(
                alpha=process.alpha[series:series + 1],
                rho=process.rho[series:series + 1],
                train_times=process.train_times,
                train_states=process.train_states[:, series:series + 1],
            )
        elif isinstance(process, SharedInnovationParams) and process.separable:
            process = process.marginal(series)
        return TrendParameters(process, None, params.trend_betas)

    # -- struct builders ---------------------------------------------------

    def _per_state(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        if values.shape[0] == 1:
            return np.repeat(values, self.n_states)
        return values

    def _drift(self, draw: int) -> np.ndarray:
        if "drift" in self._raw:
            return self._per_state(self._raw["drift"][draw])
        return np.zeros(self.n_states)

    def _lag_matrices(self, draw: int) -> np.ndarray:
        n = self.n_states
        raw = self._raw
        if "A" in raw:
            return raw["A"][draw].reshape(1, n, n)
        if self.trend_model is TrendModel.RW:
            return np.eye(n)[None, :, :]
        return np.stack([
            np.diag(self._per_state(raw[f"ar{lag}"][draw]))
            for lag in range(1, self.trend_model.order + 1)
        ])

    def _covariance(self, draw: int) -> np.ndarray:
        n = self.n_states
        raw = self._raw
        if "Sigma" in raw:
            return raw["Sigma"][draw].reshape(n, n)
        if "sigma" in raw:
            return np.diag(self._per_state(raw["sigma"][draw]) ** 2)
        if "tau" in raw:
            return np.diag(1.0 / self._per_state(raw["tau"][draw]))
        # latent factors are identified with unit innovation variance
        return np.eye(n)

    def _shared(self, draw: int) -> SharedInnovationParams:
        return SharedInnovationParams(
            lags=self._lag_matrices(draw),
            Sigma=self._covariance(draw),
            drift=self._drift(draw),
            last_states=self._raw["last_states"][draw],
        )
