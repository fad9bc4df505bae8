"""Immutable container for hindcasts and forecasts of one request."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

import numpy as np
import pandas as pd

from trendcast.errors import InputValidationError
from trendcast.families import OutputType

logger = logging.getLogger(__name__)


def _frozen(values: Any, ndim: int) -> np.ndarray:
    arr = np.array(values, dtype=np.float64, ndmin=ndim)
    arr.setflags(write=False)
    return arr


def _frozen_map(values: Mapping[str, Any], ndim: int) -> Mapping[str, np.ndarray]:
    return MappingProxyType({str(k): _frozen(v, ndim) for k, v in values.items()})


@dataclass(frozen=True)
class ForecastResult:
    """Hindcast and forecast draws per series, with provenance.

    Attributes
    ----------
    series_names
        Labels of the series in this result, in model order.
    output_type
        Scale of every matrix (``response``, ``link``, ``expected`` or ``trend``).
    family, trend_model
        Observation family and declared trend family of the model.
    use_lv, drift
        Whether the trend used latent factors / a drift term.
    train_times, test_times
        Time values of the hindcast and forecast columns.
    train_observations, test_observations
        Per-series outcomes ordered by time (``NaN`` when unobserved).
    hindcasts, forecasts
        Per-series ``(draws, times)`` matrices.
    draw_indices
        DrawStore rows behind each matrix row.
    family_pars
        Per-draw observation-family parameters, attached to link-scale
        results so they can be pushed through the family later.

    Examples
    --------
    ```python
    result = forecast(model, new_data, series="all")
    result.forecasts["s1"].shape        # (draws, horizon)
    result.summary("s1", quantiles=(0.1, 0.9))
    ```
    """

    series_names: tuple[str, ...]
    output_type: OutputType
    family: str
    trend_model: str
    use_lv: bool
    drift: bool
    train_times: np.ndarray
    test_times: np.ndarray
    train_observations: Mapping[str, np.ndarray]
    test_observations: Mapping[str, np.ndarray]
    hindcasts: Mapping[str, np.ndarray]
    forecasts: Mapping[str, np.ndarray]
    draw_indices: np.ndarray
    family_pars: Mapping[str, np.ndarray] = field(default_factory=dict)

    def __post_init__(self) -> None:
        set_ = object.__setattr__
        set_(self, "series_names", tuple(str(s) for s in self.series_names))
        set_(self, "output_type", OutputType(self.output_type))
        set_(self, "train_times", _frozen(self.train_times, 1))
        set_(self, "test_times", _frozen(self.test_times, 1))
        set_(self, "draw_indices", np.array(self.draw_indices, dtype=np.int64))
        self.draw_indices.setflags(write=False)
        set_(self, "train_observations", _frozen_map(self.train_observations, 1))
        set_(self, "test_observations", _frozen_map(self.test_observations, 1))
        set_(self, "hindcasts", _frozen_map(self.hindcasts, 2))
        set_(self, "forecasts", _frozen_map(self.forecasts, 2))
        set_(self, "family_pars", _frozen_map(self.family_pars, 2))
        self._validate()

    def _validate(self) -> None:
        n_draws = len(self.draw_indices)
        for name in self.series_names:
            if name not in self.hindcasts or name not in self.forecasts:
                raise InputValidationError("result is missing a series", series=name)
            hc, fc = self.hindcasts[name], self.forecasts[name]
            if hc.shape != (n_draws, len(self.train_times)):
                raise InputValidationError(
                    f"hindcast shape {hc.shape} != ({n_draws}, {len(self.train_times)})",
                    series=name,
                )
            if fc.shape != (n_draws, len(self.test_times)):
                raise InputValidationError(
                    f"forecast shape {fc.shape} != ({n_draws}, {len(self.test_times)})",
                    series=name,
                )

    # -- shape -------------------------------------------------------------

    @property
    def n_draws(self) -> int:
        return len(self.draw_indices)

    @property
    def horizon(self) -> int:
        return len(self.test_times)

    def __repr__(self) -> str:
        return (
            f"ForecastResult(series={list(self.series_names)}, "
            f"type={self.output_type.value}, draws={self.n_draws}, "
            f"horizon={self.horizon}, family={self.family}, trend={self.trend_model})"
        )

    # -- summaries ---------------------------------------------------------

    def summary(
        self,
        series: str | None = None,
        quantiles: tuple[float, ...] = (0.05, 0.5, 0.95),
    ) -> pd.DataFrame:
        """Posterior mean and quantiles per time point for one series.

        Parameters
        ----------
        series
            Series label; may be omitted when the result holds one series.
        quantiles
            Quantile levels in ``[0, 1]``.

        Returns
        -------
        pd.DataFrame
            Indexed by time, with ``period`` (``hindcast``/``forecast``),
            ``observed``, ``mean`` and one ``q<level>`` column per quantile.
        """
        if series is None:
            if len(self.series_names) != 1:
                raise InputValidationError("series is required for multi-series results")
            series = self.series_names[0]
        series = str(series)
        if series not in self.series_names:
            raise InputValidationError("series not in result", series=series)
        if any(not 0.0 <= q <= 1.0 for q in quantiles):
            raise InputValidationError(f"quantiles must lie in [0, 1], got {quantiles}")

        parts = []
        for period, times, draws, obs in (
            ("hindcast", self.train_times, self.hindcasts[series], self.train_observations.get(series)),
            ("forecast", self.test_times, self.forecasts[series], self.test_observations.get(series)),
        ):
            frame = pd.DataFrame({
                "time": times,
                "period": period,
                "observed": obs if obs is not None and len(obs) == len(times) else np.nan,
                "mean": np.nanmean(draws, axis=0) if len(times) else np.empty(0),
            })
            for q in quantiles:
                frame[f"q{q:g}"] = np.nanquantile(draws, q, axis=0) if len(times) else np.empty(0)
            parts.append(frame)
        return pd.concat(parts, ignore_index=True).set_index("time")

    def to_frame(self) -> pd.DataFrame:
        """Long format: one row per series, period, draw and time."""
        frames = []
        for series in self.series_names:
            for period, times, draws in (
                ("hindcast", self.train_times, self.hindcasts[series]),
                ("forecast", self.test_times, self.forecasts[series]),
            ):
                if draws.size == 0:
                    continue
                frames.append(pd.DataFrame({
                    "series": series,
                    "period": period,
                    "draw": np.repeat(self.draw_indices, len(times)),
                    "time": np.tile(times, self.n_draws),
                    "value": draws.reshape(-1),
                }))
        if not frames:
            return pd.DataFrame(columns=["series", "period", "draw", "time", "value"])
        return pd.concat(frames, ignore_index=True)

    # -- persistence -------------------------------------------------------

    def save(self, path: str | Path) -> Path:
        """Save the result to a directory.

        Directory layout::

            path/
                meta.json          # provenance and series names
                arrays.npz         # times, observations, hindcasts, forecasts

        Parameters
        ----------
        path
            Directory to write into.  Created if it doesn't exist.

        Returns
        -------
        Path
            The directory that was written to.
        """
        root = Path(path)
        root.mkdir(parents=True, exist_ok=True)
        meta = {
            "series_names": list(self.series_names),
            "output_type": self.output_type.value,
            "family": self.family,
            "trend_model": self.trend_model,
            "use_lv": self.use_lv,
            "drift": self.drift,
            "family_pars": sorted(self.family_pars),
        }
        (root / "meta.json").write_text(json.dumps(meta, indent=2))

        arrays: dict[str, np.ndarray] = {
            "train_times": self.train_times,
            "test_times": self.test_times,
            "draw_indices": self.draw_indices,
        }
        for i, name in enumerate(self.series_names):
            arrays[f"hindcast__{i}"] = self.hindcasts[name]
            arrays[f"forecast__{i}"] = self.forecasts[name]
            arrays[f"train_obs__{i}"] = self.train_observations.get(name, np.empty(0))
            arrays[f"test_obs__{i}"] = self.test_observations.get(name, np.empty(0))
        for name, values in self.family_pars.items():
            arrays[f"family__{name}"] = values
        np.savez_compressed(root / "arrays.npz", **arrays)

        logger.info("Saved forecast result to %s", root)
        return root

    @classmethod
    def load(cls, path: str | Path) -> ForecastResult:
        """Load a result written by :meth:`save`."""
        root = Path(path)
        meta = json.loads((root / "meta.json").read_text())
        with np.load(root / "arrays.npz") as data:
            names = meta["series_names"]
            return cls(
                series_names=tuple(names),
                output_type=OutputType(meta["output_type"]),
                family=meta["family"],
                trend_model=meta["trend_model"],
                use_lv=meta["use_lv"],
                drift=meta["drift"],
                train_times=data["train_times"],
                test_times=data["test_times"],
                train_observations={n: data[f"train_obs__{i}"] for i, n in enumerate(names)},
                test_observations={n: data[f"test_obs__{i}"] for i, n in enumerate(names)},
                hindcasts={n: data[f"hindcast__{i}"] for i, n in enumerate(names)},
                forecasts={n: data[f"forecast__{i}"] for i, n in enumerate(names)},
                draw_indices=data["draw_indices"],
                family_pars={p: data[f"family__{p}"] for p in meta["family_pars"]},
            )
