"""Design matrices for the observation and trend linear predictors.

Basis construction itself is delegated to a :class:`DesignMatrixBuilder`
(any object with a ``build(frame)`` method).  This module orders rows
by series and time, slices them per series, and rebuilds the
training-period trend rows that autoregressive trend formulas need to
start their recursion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np
import pandas as pd

from trendcast.draws import SeriesIndex
from trendcast.errors import InputValidationError
from trendcast.trends import MAX_LAG

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DesignMatrix / builder contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DesignMatrix:
    """Numeric design matrix with an optional additive offset."""

    X: np.ndarray
    offset: np.ndarray | None = None

    def __post_init__(self) -> None:
        X = np.asarray(self.X, dtype=np.float64)
        if X.ndim == 1:
            X = X[:, None]
        object.__setattr__(self, "X", X)
        if self.offset is not None:
            offset = np.asarray(self.offset, dtype=np.float64).reshape(-1)
            if offset.shape[0] != X.shape[0]:
                raise InputValidationError(
                    f"offset has {offset.shape[0]} entries for {X.shape[0]} rows",
                )
            object.__setattr__(self, "offset", offset)

    @property
    def n_rows(self) -> int:
        return self.X.shape[0]

    @property
    def n_columns(self) -> int:
        return self.X.shape[1]

    def take(self, rows: np.ndarray) -> DesignMatrix:
        """Subset of *rows*, in the given order."""
        offset = None if self.offset is None else self.offset[rows]
        return DesignMatrix(self.X[rows], offset)

    def predict(self, betas: np.ndarray) -> np.ndarray:
        """``X @ betas + offset`` with missing offsets treated as zero."""
        eta = self.X @ np.asarray(betas, dtype=np.float64)
        if self.offset is not None:
            eta = eta + np.nan_to_num(self.offset, nan=0.0)
        return eta


@runtime_checkable
class DesignMatrixBuilder(Protocol):
    """Anything that turns covariate rows into a :class:`DesignMatrix`.

    Rows of the returned matrix must follow the rows of *frame*.
    """

    def build(self, frame: pd.DataFrame) -> DesignMatrix: ...


class LinearDesignBuilder:
    """Covariate columns used as-is, with an optional intercept and offset.

    Parameters
    ----------
    columns
        Covariate column names, in coefficient order.
    intercept
        Prepend a column of ones.
    offset
        Column holding an additive offset (may contain ``NaN``).

    Examples
    --------
    ```python
    builder = LinearDesignBuilder(["temp", "rain"], offset="log_exposure")
    builder.build(frame).X.shape        # (len(frame), 3)
    ```
    """

    def __init__(
        self,
        columns: list[str] | tuple[str, ...] = (),
        *,
        intercept: bool = True,
        offset: str | None = None,
    ) -> None:
        self.columns = tuple(columns)
        self.intercept = intercept
        self.offset = offset

    @property
    def required_columns(self) -> tuple[str, ...]:
        return self.columns + ((self.offset,) if self.offset else ())

    def build(self, frame: pd.DataFrame) -> DesignMatrix:
        missing = [c for c in self.required_columns if c not in frame.columns]
        if missing:
            raise InputValidationError(f"missing covariates: {missing}")
        cols: list[np.ndarray] = []
        if self.intercept:
            cols.append(np.ones(len(frame)))
        for c in self.columns:
            cols.append(frame[c].to_numpy(dtype=np.float64))
        X = np.column_stack(cols) if cols else np.zeros((len(frame), 0))
        offset = frame[self.offset].to_numpy(dtype=np.float64) if self.offset else None
        return DesignMatrix(X, offset)

    def __repr__(self) -> str:
        return (
            f"LinearDesignBuilder(columns={list(self.columns)}, "
            f"intercept={self.intercept}, offset={self.offset!r})"
        )


def required_columns(builder: DesignMatrixBuilder | None) -> tuple[str, ...]:
    """Covariates a builder declares, if it declares any."""
    if builder is None:
        return ()
    return tuple(getattr(builder, "required_columns", ()))


def sort_by_time(frame: pd.DataFrame) -> pd.DataFrame:
    """Rows ordered by time then series, with a fresh positional index."""
    return frame.sort_values(["time", "series"], kind="mergesort").reset_index(drop=True)


# ---------------------------------------------------------------------------
# LinearPredictorBuilder
# ---------------------------------------------------------------------------


class LinearPredictorBuilder:
    """Builds observation and trend design matrices for new data.

    Parameters
    ----------
    obs_builder
        Builder of the fixed-effect (observation) design matrix.
    series_index
        Series label to position mapping of the fitted model.
    trend_builder
        Builder of the trend-formula design matrix, if any.
    trend_map
        Series label to latent-state position, for trend formulas whose
        states are latent factors.  Without it each series is a state.
    """

    def __init__(
        self,
        obs_builder: DesignMatrixBuilder,
        series_index: SeriesIndex,
        trend_builder: DesignMatrixBuilder | None = None,
        trend_map: dict[str, int] | None = None,
    ) -> None:
        self.obs_builder = obs_builder
        self.series_index = series_index
        self.trend_builder = trend_builder
        self.trend_map = trend_map

    @property
    def n_states(self) -> int:
        if self.trend_map is None:
            return len(self.series_index)
        return len(set(self.trend_map.values()))

    # -- observation model -------------------------------------------------

    def observation_rows(self, frame: pd.DataFrame) -> dict[int, DesignMatrix]:
        """Per-series design rows, each ordered by time.

        The builder sees the whole frame at once so data-dependent bases
        are evaluated consistently across series.
        """
        frame = sort_by_time(frame)
        design = self.obs_builder.build(frame)
        if design.n_rows != len(frame):
            raise InputValidationError(
                f"design builder returned {design.n_rows} rows for {len(frame)} input rows",
            )
        labels = frame["series"].astype(str).to_numpy()
        out: dict[int, DesignMatrix] = {}
        for pos, label in enumerate(self.series_index):
            rows = np.flatnonzero(labels == label)
            if rows.size:
                out[pos] = design.take(rows)
        return out

    # -- trend model -------------------------------------------------------

    def _state_frame(self, frame: pd.DataFrame) -> pd.DataFrame:
        """One row per (time, state), ordered by time then state."""
        frame = frame.copy()
        labels = frame["series"].astype(str)
        if self.trend_map is None:
            frame["_state"] = labels.map(self.series_index.position)
        else:
            frame["_state"] = labels.map(self.trend_map)
            if frame["_state"].isna().any():
                raise InputValidationError(
                    "trend_map does not cover every series",
                    series=sorted(set(labels[frame["_state"].isna()])),
                )
        frame = frame.drop_duplicates(["time", "_state"])
        frame = frame.sort_values(["time", "_state"], kind="mergesort").reset_index(drop=True)
        counts = frame.groupby("time")["_state"].nunique()
        if (counts != self.n_states).any():
            raise InputValidationError(
                f"trend predictor rows must cover all {self.n_states} states at every time",
            )
        return frame

    def trend_rows(
        self,
        frame: pd.DataFrame,
        history: pd.DataFrame | None = None,
    ) -> DesignMatrix | None:
        """Trend design rows ``(times * n_states, k)``, time-major.

        With *history*, the last ``MAX_LAG`` time points of the training
        period are rebuilt and stacked before the new rows, so that an
        autoregressive state equation written on ``state - mu`` can start
        from ``mu[t-1]``.  Missing offsets in those rows become zero.
        """
        if self.trend_builder is None:
            return None
        new_design = self.trend_builder.build(self._state_frame(frame))
        if history is None:
            return new_design

        hist_frame = self._state_frame(history)
        hist_design = self.trend_builder.build(hist_frame)
        keep = np.arange(hist_design.n_rows)[-MAX_LAG * self.n_states:]
        last = hist_design.take(keep)
        logger.debug("Rebuilt %d training trend rows before %d new rows", last.n_rows, new_design.n_rows)

        if last.offset is None and new_design.offset is None:
            offset = None
        else:
            last_off = np.zeros(last.n_rows) if last.offset is None else np.nan_to_num(last.offset, nan=0.0)
            new_off = np.zeros(new_design.n_rows) if new_design.offset is None else new_design.offset
            offset = np.concatenate([last_off, new_off])
        return DesignMatrix(np.vstack([last.X, new_design.X]), offset)
