"""Forecast orchestration across posterior draws.

For every retained draw the orchestrator extracts the trend parameters,
propagates the trend over the requested horizon, combines it with the
fixed-effect predictor and pushes the result through the observation
family.  Draws are independent: each task receives an immutable payload
and its own PRNG key, so the output does not depend on the worker count.

Typical usage::

    from trendcast import forecast

    result = forecast(model, new_data, series="all", output_type="response")
    result.forecasts["s1"]          # (draws, horizon)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import jax
import jax.numpy as jnp
import jax.random as jr
import numpy as np
import pandas as pd
from pydantic import BaseModel, Field, ValidationError, field_validator

from trendcast.design import DesignMatrix, required_columns, sort_by_time
from trendcast.draws import DrawStore
from trendcast.errors import (
    DrawComputationError,
    InputValidationError,
    NoTrendConfiguredError,
)
from trendcast.families import ObservationFamily, OutputType, simulate_observations
from trendcast.model import FittedModel
from trendcast.propagate import forecast_trend
from trendcast.result import ForecastResult
from trendcast.trends import TrendModel, TrendParameterExtractor, TrendParameters

logger = logging.getLogger(__name__)

# Fit-time series holding each output scale.
_STORED_SERIES = {
    OutputType.RESPONSE: "ypred",
    OutputType.LINK: "mus",
    OutputType.EXPECTED: "mus",
    OutputType.TREND: "trend",
}


# ---------------------------------------------------------------------------
# ForecastRequest
# ---------------------------------------------------------------------------


class ForecastRequest(BaseModel):
    """Validated options of one forecast call.

    ``series`` is ``"all"``, a series label or a 0-based position.
    ``n_samples`` subsamples the stored draws, with replacement when it
    exceeds the number available.
    """

    series: int | str = "all"
    output_type: OutputType = OutputType.RESPONSE
    n_workers: int = Field(1, gt=0)
    n_samples: int | None = Field(None, gt=0)
    ending_time: float | None = None
    rng_seed: int = 1

    model_config = {"frozen": True}

    @field_validator("series", mode="before")
    @classmethod
    def _check_series(cls, value: object) -> object:
        if isinstance(value, bool):
            raise ValueError("series must be 'all', a label or a position")
        if isinstance(value, int) and value < 0:
            raise ValueError(f"series position must be non-negative, got {value}")
        return value

    @classmethod
    def parse(cls, **options: object) -> ForecastRequest:
        """Build a request, surfacing pydantic errors as ``InputValidationError``."""
        try:
            return cls(**options)
        except ValidationError as exc:
            raise InputValidationError(f"invalid forecast request: {exc}") from exc

    @property
    def all_series(self) -> bool:
        return isinstance(self.series, str) and self.series == "all"


# ---------------------------------------------------------------------------
# Per-draw task payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ForecastContext:
    """Read-only inputs shared by every draw task.

    Attributes
    ----------
    series
        Positions of the series returned by each task.
    joint
        Whether the trend is propagated once across all states and sliced.
    obs_design
        Fixed-effect design rows per series position, ordered by time.
    trend_design
        Trend-formula rows (history rows first), or ``None``.
    new_times
        Time values of the simulated steps.
    """

    family: ObservationFamily
    output_type: OutputType
    store: DrawStore
    extractor: TrendParameterExtractor
    series: tuple[int, ...]
    series_labels: tuple[str, ...]
    joint: bool
    obs_design: Mapping[int, DesignMatrix]
    trend_design: DesignMatrix | None
    new_times: np.ndarray
    n_trend_states: int

    @property
    def horizon(self) -> int:
        return len(self.new_times)

    @property
    def has_trend(self) -> bool:
        return self.extractor.trend_model.is_dynamic


@dataclass(frozen=True)
class DrawTask:
    """One unit of work: a DrawStore row and the PRNG key reserved for it."""

    position: int
    draw: int
    rng_key: jax.Array


def _trend_mu(context: ForecastContext, params: TrendParameters) -> np.ndarray | None:
    if context.trend_design is None or params.trend_betas is None:
        return None
    mu = context.trend_design.predict(params.trend_betas)
    return mu.reshape(-1, context.n_trend_states)


def _draw_trends(
    context: ForecastContext, draw: int, rng_key: jax.Array,
) -> dict[int, np.ndarray]:
    """Trend trajectory ``(horizon,)`` per requested series for one draw."""
    extractor = context.extractor
    horizon = context.horizon

    if context.joint:
        params = extractor.general(draw)
        states = forecast_trend(
            params, horizon, rng_key,
            trend_mu=_trend_mu(context, params), new_times=context.new_times,
        )
        states = np.asarray(states).reshape(horizon, -1)
        return {s: states[:, s] for s in context.series}

    (s,) = context.series
    params = extractor.for_series(draw, s)
    mu = _trend_mu(context, params)
    if mu is not None and not params.is_joint:
        mu = mu[:, s:s + 1]
    states = np.asarray(forecast_trend(
        params, horizon, rng_key, trend_mu=mu, new_times=context.new_times,
    ))
    if states.ndim == 2:
        # non-separable process: propagated jointly, then sliced
        states = states[:, s]
    return {s: states}


def _simulate_draw(context: ForecastContext, task: DrawTask) -> dict[int, np.ndarray]:
    trend_key, obs_key = jr.split(task.rng_key)
    horizon = context.horizon
    store = context.store

    if context.has_trend:
        trends = _draw_trends(context, task.draw, trend_key)
    else:
        trends = {s: np.zeros(horizon) for s in context.series}

    coefs = np.append(store.row("b", task.draw), 1.0)
    needs_family = context.output_type in (OutputType.RESPONSE, OutputType.EXPECTED)
    out: dict[int, np.ndarray] = {}
    for s in context.series:
        design = context.obs_design[s]
        family_params = (
            context.family.extract_posterior(store, task.draw, s) if needs_family else None
        )
        out[s] = simulate_observations(
            context.family,
            np.column_stack([design.X, trends[s]]),
            coefs,
            context.output_type,
            jr.fold_in(obs_key, s),
            family_params,
            design.offset,
            has_trend=context.has_trend,
        )
    return out


def simulate_draw(context: ForecastContext, task: DrawTask) -> dict[int, np.ndarray]:
    """Run one draw; any failure is re-raised as :class:`DrawComputationError`."""
    try:
        return _simulate_draw(context, task)
    except Exception as exc:
        series = context.series_labels[0] if len(context.series_labels) == 1 else "all"
        raise DrawComputationError(
            f"forecast simulation failed: {exc}",
            draw=task.draw,
            series=series,
            output_type=context.output_type.value,
        ) from exc


def run_tasks(
    context: ForecastContext, tasks: list[DrawTask], n_workers: int = 1,
) -> list[dict[int, np.ndarray]]:
    """Simulate every task; results come back in task order.

    The first failing draw aborts the call and pending draws are cancelled.
    """
    if n_workers == 1:
        return [simulate_draw(context, task) for task in tasks]
    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        futures = [executor.submit(simulate_draw, context, task) for task in tasks]
        try:
            return [future.result() for future in futures]
        except DrawComputationError:
            for future in futures:
                future.cancel()
            raise


# ---------------------------------------------------------------------------
# ForecastOrchestrator
# ---------------------------------------------------------------------------


class ForecastOrchestrator:
    """Hindcasts and forecasts for one fitted model.

    Parameters
    ----------
    model
        The fitted model; never mutated.

    Examples
    --------
    ```python
    orchestrator = ForecastOrchestrator(model)
    request = ForecastRequest(series="s1", output_type="trend", n_workers=4)
    result = orchestrator.forecast(new_data, request)
    ```
    """

    def __init__(self, model: FittedModel) -> None:
        self.model = model

    # -- helpers -----------------------------------------------------------

    def _positions(self, request: ForecastRequest) -> tuple[int, ...]:
        if request.all_series:
            return tuple(range(self.model.n_series))
        return (self.model.series_index.position(request.series),)

    def _check_output(self, output_type: OutputType) -> None:
        if output_type is OutputType.TREND and not self.model.trend_model.is_dynamic:
            raise NoTrendConfiguredError(
                "trend output requested from a model without a dynamic trend",
                output_type=output_type.value,
            )

    def select_draws(self, n_samples: int | None, rng_seed: int) -> np.ndarray:
        """DrawStore rows to use, in ascending order."""
        n = self.model.draws.n_draws
        if n_samples is None:
            return np.arange(n)
        rng = np.random.default_rng(rng_seed)
        return np.sort(rng.choice(n, size=n_samples, replace=n_samples > n))

    def stored_predictions(
        self,
        series: int,
        output_type: OutputType,
        times: np.ndarray,
        draws: np.ndarray,
    ) -> np.ndarray:
        """Fit-time predictions of one series at stored *times*: ``(draws, times)``."""
        model = self.model
        self._check_output(output_type)
        name = _STORED_SERIES[output_type]
        block = model.draws.block(name, series, model.n_series)
        if block.shape[1] != len(model.stored_times):
            raise InputValidationError(
                f"stored {name!r} covers {block.shape[1]} times, "
                f"expected {len(model.stored_times)}",
                parameter=name,
            )
        values = block[np.ix_(draws, model.stored_columns(times))]
        if output_type is not OutputType.EXPECTED:
            return np.array(values)
        family = model.family
        return np.stack([
            np.asarray(
                family.mean(jnp.asarray(row), family.extract_posterior(model.draws, draw, series)),
                dtype=np.float64,
            )
            for row, draw in zip(values, draws)
        ]) if len(draws) else np.empty((0, len(times)))

    def _plan(
        self, new_data: pd.DataFrame | None, request: ForecastRequest,
    ) -> tuple[np.ndarray, pd.DataFrame | None]:
        """Split the requested horizon into stored times and rows to simulate."""
        model = self.model
        if new_data is None:
            if not model.has_stored_forecast:
                raise InputValidationError("new_data is required: the model stored no test data")
            if request.ending_time is not None:
                raise InputValidationError("ending_time requires new_data to simulate")
            return model.test_times, None

        missing = [c for c in ("series", "time") if c not in new_data.columns]
        if missing:
            raise InputValidationError(f"new_data is missing columns {missing}")
        labels = set(new_data["series"].astype(str))
        unknown = sorted(labels - set(model.series_index))
        if unknown:
            raise InputValidationError("new_data contains unknown series", series=unknown)
        if new_data.duplicated(["series", "time"]).any():
            raise InputValidationError("new_data has duplicate (series, time) rows")

        times = new_data["time"]
        if request.ending_time is not None:
            stored = np.array([], dtype=model.train_times.dtype)
            frame = new_data.loc[times > request.ending_time]
        elif model.has_stored_forecast:
            test_times = model.test_times
            last = test_times.max()
            stored = np.intersect1d(times[times <= last].unique(), test_times)
            frame = new_data.loc[times > last]
        else:
            stored = np.array([], dtype=model.train_times.dtype)
            frame = new_data.loc[times > model.train_times.max()]

        if frame.empty and stored.size == 0:
            raise InputValidationError("new_data has no rows beyond the stored times")
        return stored, (None if frame.empty else sort_by_time(frame))

    def _context(
        self,
        frame: pd.DataFrame,
        request: ForecastRequest,
        positions: tuple[int, ...],
    ) -> ForecastContext:
        """Validate simulation inputs and build the shared task payload."""
        model = self.model
        design = model.design

        needed = required_columns(model.obs_builder) + required_columns(model.trend_builder)
        missing = sorted({c for c in needed if c not in frame.columns})
        if missing:
            raise InputValidationError(f"new_data is missing covariates {missing}")

        obs_design = design.observation_rows(frame)
        labels = frame["series"].astype(str)
        if request.all_series:
            new_times = np.sort(frame["time"].unique())
        else:
            label = model.series_index.label(positions[0])
            new_times = np.sort(frame.loc[labels == label, "time"].unique())
        for s in positions:
            label = model.series_index.label(s)
            series_times = np.sort(frame.loc[labels == label, "time"].unique())
            if s not in obs_design or not np.array_equal(series_times, new_times):
                raise InputValidationError(
                    "new_data must cover every forecast time for each requested series",
                    series=label,
                )

        n_coefs = model.draws.get("b").shape[1]
        for s in positions:
            if obs_design[s].n_columns != n_coefs:
                raise InputValidationError(
                    f"design has {obs_design[s].n_columns} columns for {n_coefs} coefficients",
                )

        extractor = TrendParameterExtractor(
            model.draws,
            model.trend_model,
            model.n_series,
            model.stored_times,
            n_lv=model.n_lv,
            drift=model.drift,
            trend_formula=model.trend_builder is not None,
            ending_time=request.ending_time,
        )

        trend_design = None
        if model.trend_builder is not None and model.trend_model.is_dynamic:
            if design.n_states != extractor.n_states:
                raise InputValidationError(
                    f"trend formula covers {design.n_states} states, trend has {extractor.n_states}",
                )
            trend_frame = frame.loc[frame["time"].isin(new_times)]
            history = None
            if model.trend_model is not TrendModel.GP:
                cutoff = (
                    request.ending_time if request.ending_time is not None
                    else model.stored_times.max()
                )
                stored = model.stored_frame()
                history = stored.loc[stored["time"] <= cutoff]
            trend_design = design.trend_rows(trend_frame, history)

        return ForecastContext(
            family=model.family,
            output_type=request.output_type,
            store=model.draws,
            extractor=extractor,
            series=positions,
            series_labels=tuple(model.series_index.label(s) for s in positions),
            joint=request.all_series,
            obs_design=obs_design,
            trend_design=trend_design,
            new_times=np.asarray(new_times, dtype=np.float64),
            n_trend_states=design.n_states,
        )

    # -- public API --------------------------------------------------------

    def hindcast(
        self,
        series: int | str = "all",
        output_type: OutputType | str = OutputType.RESPONSE,
        draws: np.ndarray | None = None,
    ) -> dict[str, np.ndarray]:
        """Stored fit-time distribution over the training times, per series."""
        request = ForecastRequest.parse(series=series, output_type=output_type)
        if draws is None:
            draws = np.arange(self.model.draws.n_draws)
        return {
            self.model.series_index.label(s): self.stored_predictions(
                s, request.output_type, self.model.train_times, draws,
            )
            for s in self._positions(request)
        }

    def forecast_draws(
        self,
        frame: pd.DataFrame,
        request: ForecastRequest,
        draws: np.ndarray | None = None,
    ) -> dict[str, np.ndarray]:
        """Simulate *frame* for every draw: ``(draws, horizon)`` per series.

        *frame* must only hold times after the forecast origin.
        """
        self._check_output(request.output_type)
        positions = self._positions(request)
        if draws is None:
            draws = self.select_draws(request.n_samples, request.rng_seed)
        context = self._context(frame, request, positions)

        base_key = jr.PRNGKey(request.rng_seed)
        tasks = [
            DrawTask(position=i, draw=int(d), rng_key=jr.fold_in(base_key, i))
            for i, d in enumerate(draws)
        ]
        rows = run_tasks(context, tasks, request.n_workers)
        return {
            label: np.stack([row[s] for row in rows]) if rows
            else np.empty((0, context.horizon))
            for s, label in zip(positions, context.series_labels)
        }

    def forecast(
        self,
        new_data: pd.DataFrame | None = None,
        request: ForecastRequest | None = None,
    ) -> ForecastResult:
        """Hindcast plus forecast for the requested series.

        Stored fit-time forecasts are reused for any requested time
        already covered by the model's test data; only later times are
        simulated, starting from the last stored state.
        """
        request = request or ForecastRequest()
        model = self.model
        self._check_output(request.output_type)
        positions = self._positions(request)
        labels = [model.series_index.label(s) for s in positions]
        stored_times, frame = self._plan(new_data, request)
        draws = self.select_draws(request.n_samples, request.rng_seed)

        start = time.perf_counter()
        logger.info(
            "Forecasting series=%s type=%s draws=%d workers=%d",
            request.series, request.output_type.value, len(draws), request.n_workers,
        )

        forecasts: dict[str, np.ndarray] = {}
        test_obs: dict[str, np.ndarray] = {}
        stored_test = None
        if stored_times.size:
            logger.info("Reusing %d stored forecast steps", stored_times.size)
            stored_test = model.test_data.loc[model.test_data["time"].isin(stored_times)]
        for s, label in zip(positions, labels):
            forecasts[label] = self.stored_predictions(s, request.output_type, stored_times, draws)
            test_obs[label] = (
                model.observations(stored_test, s) if stored_test is not None else np.empty(0)
            )

        new_times = np.empty(0)
        if frame is not None:
            simulated = self.forecast_draws(frame, request, draws)
            for s, label in zip(positions, labels):
                forecasts[label] = np.hstack([forecasts[label], simulated[label]])
                test_obs[label] = np.concatenate([test_obs[label], model.observations(frame, s)])
            reference = frame
            if not request.all_series:
                reference = frame.loc[frame["series"].astype(str) == labels[0]]
            new_times = np.sort(reference["time"].unique())

        family_pars = {}
        if request.output_type is OutputType.LINK:
            family_pars = {
                name: model.draws.get(name)[draws] for name in model.family.param_names
                if name in model.draws
            }

        result = ForecastResult(
            series_names=tuple(labels),
            output_type=request.output_type,
            family=model.family.family_name,
            trend_model=model.trend_model.value,
            use_lv=model.use_lv,
            drift=model.drift,
            train_times=model.train_times,
            test_times=np.concatenate([np.asarray(stored_times, dtype=np.float64), new_times]),
            train_observations={label: model.observations(model.obs_data, s)
                                for s, label in zip(positions, labels)},
            test_observations=test_obs,
            hindcasts={label: self.stored_predictions(s, request.output_type, model.train_times, draws)
                       for s, label in zip(positions, labels)},
            forecasts=forecasts,
            draw_indices=draws,
            family_pars=family_pars,
        )
        logger.info(
            "Forecast finished: %d series x %d steps in %.2fs",
            len(labels), result.horizon, time.perf_counter() - start,
        )
        return result


# ---------------------------------------------------------------------------
# Functional entry points
# ---------------------------------------------------------------------------


def forecast(
    model: FittedModel,
    new_data: pd.DataFrame | None = None,
    *,
    series: int | str = "all",
    output_type: OutputType | str = OutputType.RESPONSE,
    n_workers: int = 1,
    n_samples: int | None = None,
    ending_time: float | None = None,
    rng_seed: int = 1,
) -> ForecastResult:
    """Forecast a fitted model.

    Parameters
    ----------
    model
        The fitted model.
    new_data
        Future rows with ``series``, ``time`` and every covariate used at
        fit time; the outcome column is optional.  When omitted, the
        forecast stored with the model's test data is returned.
    series
        ``"all"``, a series label or a 0-based position.
    output_type
        ``response``, ``link``, ``expected`` or ``trend``.
    n_workers
        Number of worker threads; results do not depend on it.
    n_samples
        Number of draws to use; all stored draws when omitted.
    ending_time
        Simulate from the trend state at this earlier time value.
    rng_seed
        Seed for draw subsampling and simulation.

    Returns
    -------
    ForecastResult
    """
    request = ForecastRequest.parse(
        series=series,
        output_type=output_type,
        n_workers=n_workers,
        n_samples=n_samples,
        ending_time=ending_time,
        rng_seed=rng_seed,
    )
    return ForecastOrchestrator(model).forecast(new_data, request)


def hindcast(
    model: FittedModel,
    series: int | str = "all",
    output_type: OutputType | str = OutputType.RESPONSE,
) -> dict[str, np.ndarray]:
    """Stored fit-time ``(draws, train_times)`` matrices per series."""
    return ForecastOrchestrator(model).hindcast(series, output_type)
