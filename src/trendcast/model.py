"""The fitted-model object consumed by the forecast engine.

A :class:`FittedModel` bundles what the sampler and the design library
leave behind: posterior draws, design-matrix builders, the declared
observation and trend families, and the training (and optional testing)
data tables.  It is read-only to every forecast component.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from trendcast.design import DesignMatrixBuilder, LinearPredictorBuilder, sort_by_time
from trendcast.draws import DrawStore, SeriesIndex
from trendcast.errors import InputValidationError
from trendcast.families import ObservationFamily
from trendcast.trends import TrendModel

REQUIRED_COLUMNS = ("series", "time")


def _check_frame(frame: pd.DataFrame, name: str) -> None:
    missing = [c for c in REQUIRED_COLUMNS if c not in frame.columns]
    if missing:
        raise InputValidationError(f"{name} is missing columns {missing}")
    if frame.duplicated(["series", "time"]).any():
        raise InputValidationError(f"{name} has duplicate (series, time) rows")


@dataclass
class FittedModel:
    """A fitted dynamic trend model.

    Attributes
    ----------
    draws
        Posterior draws (see :class:`~trendcast.draws.DrawStore`).
    obs_data
        Training table with ``series``, ``time``, the outcome and covariates.
    family
        Observation family, by name or instance.
    trend_model
        Declared dynamic trend family.
    obs_builder
        Builder of the fixed-effect design matrix.
    trend_builder
        Builder of the trend-formula design matrix, if the model has one.
    test_data
        Testing table forecast at fit time, if any.  Its times must all
        come after the training times.
    series_index
        Series label order; derived from ``obs_data`` when omitted.
    n_lv
        Number of latent factors, ``None`` without latent factors.
    drift
        Whether the trend was fit with a drift term.
    trend_map
        Series label to latent-state position for trend formulas with
        latent states.
    outcome
        Name of the outcome column.

    Examples
    --------
    ```python
    model = FittedModel(
        draws=DrawStore.from_samples(mcmc.get_samples()),
        obs_data=train,
        family="poisson",
        trend_model="AR1",
        obs_builder=LinearDesignBuilder(["temp"]),
        test_data=test,
    )
    ```
    """

    draws: DrawStore
    obs_data: pd.DataFrame
    family: ObservationFamily | str
    trend_model: TrendModel | str
    obs_builder: DesignMatrixBuilder
    trend_builder: DesignMatrixBuilder | None = None
    test_data: pd.DataFrame | None = None
    series_index: SeriesIndex | None = None
    n_lv: int | None = None
    drift: bool = False
    trend_map: dict[str, int] | None = None
    outcome: str = "y"
    _design: LinearPredictorBuilder = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.family = ObservationFamily.from_name(self.family)
        self.trend_model = TrendModel(self.trend_model)
        _check_frame(self.obs_data, "obs_data")
        if self.series_index is None:
            self.series_index = SeriesIndex.from_frame(self.obs_data)
        if self.test_data is not None:
            _check_frame(self.test_data, "test_data")
            if self.test_data["time"].min() <= self.obs_data["time"].max():
                raise InputValidationError("test_data times must follow the training times")
        if self.n_lv is not None and self.n_lv < 1:
            raise InputValidationError("n_lv must be positive", n_lv=self.n_lv)
        if self.trend_map is not None:
            self.trend_map = {str(k): int(v) for k, v in self.trend_map.items()}
        self._design = LinearPredictorBuilder(
            self.obs_builder, self.series_index, self.trend_builder, self.trend_map,
        )

    # -- shape -------------------------------------------------------------

    @property
    def n_series(self) -> int:
        return len(self.series_index)

    @property
    def use_lv(self) -> bool:
        return self.n_lv is not None

    @property
    def design(self) -> LinearPredictorBuilder:
        return self._design

    # -- time axes ---------------------------------------------------------

    @property
    def train_times(self) -> np.ndarray:
        return np.sort(self.obs_data["time"].unique())

    @property
    def test_times(self) -> np.ndarray:
        if self.test_data is None:
            return np.array([], dtype=self.train_times.dtype)
        return np.sort(self.test_data["time"].unique())

    @property
    def stored_times(self) -> np.ndarray:
        """Times covered by the stored fit-time series (training then testing)."""
        return np.concatenate([self.train_times, self.test_times])

    @property
    def has_stored_forecast(self) -> bool:
        return self.test_data is not None

    # -- data access -------------------------------------------------------

    def stored_frame(self) -> pd.DataFrame:
        """Training and testing rows together, ordered by time then series."""
        frames = [self.obs_data] if self.test_data is None else [self.obs_data, self.test_data]
        return sort_by_time(pd.concat(frames, ignore_index=True))

    def observations(self, frame: pd.DataFrame, series: int) -> np.ndarray:
        """Outcome values of one series in *frame*, ordered by time.

        A missing outcome column counts as unobserved.
        """
        label = self.series_index.label(series)
        rows = frame.loc[frame["series"].astype(str) == label].sort_values("time", kind="mergesort")
        if self.outcome not in rows.columns:
            return np.full(len(rows), np.nan)
        return rows[self.outcome].to_numpy(dtype=np.float64)

    def stored_columns(self, times: np.ndarray) -> np.ndarray:
        """Positions of *times* within :attr:`stored_times`."""
        stored = self.stored_times
        pos = np.searchsorted(stored, times)
        pos = np.clip(pos, 0, len(stored) - 1)
        if not np.array_equal(stored[pos], np.asarray(times)):
            raise InputValidationError("requested times are not all stored")
        return pos
