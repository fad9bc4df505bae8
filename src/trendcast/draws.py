"""Read-only access to posterior draws and the series index of a fitted model."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd

from trendcast.errors import InputValidationError, UnknownParameterError


# ---------------------------------------------------------------------------
# DrawStore
# ---------------------------------------------------------------------------


class DrawStore:
    """Rectangular store of posterior samples keyed by parameter name.

    Every parameter is held as a ``(draws, dim)`` matrix.  Samples with
    more than one trailing dimension are flattened in C order, so a
    ``(draws, n, n)`` covariance becomes ``(draws, n * n)`` row-major.

    Latent series recorded at fit time (``trend``, ``LV``, ``mus``,
    ``ypred``) are laid out **time-major**: the value for time position
    ``t`` and state ``s`` lives in column ``t * n_states + s``.
    :meth:`block` is the single place that layout is decoded.

    Examples
    --------
    ```python
    store = DrawStore.from_samples(mcmc.get_samples())
    store.get("b").shape            # (1000, 4)
    store.block("trend", 2, 3)      # (1000, T) for the third series
    ```
    """

    def __init__(self, samples: Mapping[str, Any]) -> None:
        arrays: dict[str, np.ndarray] = {}
        n_draws: int | None = None
        for name, values in samples.items():
            arr = np.asarray(values, dtype=np.float64)
            if arr.ndim == 0:
                raise InputValidationError(
                    "posterior samples must have a leading draw dimension",
                    parameter=name,
                )
            arr = arr.reshape(arr.shape[0], -1).copy()
            arr.setflags(write=False)
            if n_draws is None:
                n_draws = arr.shape[0]
            elif arr.shape[0] != n_draws:
                raise InputValidationError(
                    f"parameter has {arr.shape[0]} draws, expected {n_draws}",
                    parameter=name,
                )
            arrays[name] = arr
        if n_draws is None:
            raise InputValidationError("DrawStore needs at least one parameter")
        self._arrays = arrays
        self._n_draws = n_draws

    @classmethod
    def from_samples(cls, samples: Mapping[str, Any]) -> DrawStore:
        """Build a store from a NumPyro ``MCMC.get_samples()`` dict."""
        return cls({name: np.asarray(values) for name, values in samples.items()})

    # -- queries -----------------------------------------------------------

    @property
    def n_draws(self) -> int:
        return self._n_draws

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._arrays)

    def __contains__(self, name: object) -> bool:
        return name in self._arrays

    def __len__(self) -> int:
        return self._n_draws

    def get(self, name: str) -> np.ndarray:
        """Return ``(draws, dim)`` samples for *name*."""
        try:
            return self._arrays[name]
        except KeyError:
            raise UnknownParameterError(
                f"parameter {name!r} was not sampled; available: {sorted(self._arrays)}",
                parameter=name,
            ) from None

    def row(self, name: str, draw: int) -> np.ndarray:
        """Return the ``(dim,)`` values of *name* for one draw."""
        return self.get(name)[draw]

    def block(self, name: str, position: int, n_states: int) -> np.ndarray:
        """Return the ``(draws, times)`` trajectory of one state.

        Decodes the time-major layout of latent series stored at fit time.
        """
        values = self.get(name)
        if values.shape[1] % n_states != 0:
            raise InputValidationError(
                f"{values.shape[1]} columns cannot be split into {n_states} states",
                parameter=name,
            )
        return values[:, position::n_states]

    def __repr__(self) -> str:
        return f"DrawStore(draws={self._n_draws}, parameters={sorted(self._arrays)})"


# ---------------------------------------------------------------------------
# SeriesIndex
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SeriesIndex:
    """Stable mapping from series label to integer column position."""

    labels: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.labels:
            raise InputValidationError("a model needs at least one series")
        if len(set(self.labels)) != len(self.labels):
            raise InputValidationError(f"duplicate series labels: {self.labels}")

    @classmethod
    def from_labels(cls, labels: Iterable[Any]) -> SeriesIndex:
        return cls(tuple(str(label) for label in labels))

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, column: str = "series") -> SeriesIndex:
        """Categorical columns keep their category order; others are sorted."""
        col = frame[column]
        if isinstance(col.dtype, pd.CategoricalDtype):
            return cls.from_labels(col.cat.categories)
        return cls.from_labels(sorted(col.astype(str).unique()))

    def __len__(self) -> int:
        return len(self.labels)

    def __iter__(self):
        return iter(self.labels)

    def position(self, series: int | str) -> int:
        """Resolve a label or 0-based position to a column position."""
        if isinstance(series, (bool, np.bool_)):
            raise InputValidationError("series must be a label or a position", series=series)
        if isinstance(series, (int, np.integer)):
            if not 0 <= series < len(self.labels):
                raise InputValidationError(
                    f"model only contains {len(self.labels)} series", series=int(series),
                )
            return int(series)
        try:
            return self.labels.index(str(series))
        except ValueError:
            raise InputValidationError(
                f"unknown series; available: {list(self.labels)}", series=series,
            ) from None

    def label(self, position: int) -> str:
        return self.labels[self.position(position)]
