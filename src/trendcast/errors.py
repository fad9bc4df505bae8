"""Exception taxonomy for forecast simulation.

Every error carries the context needed to replay the failing call
(series, draw index, requested output type) and renders it in its message.
"""

from __future__ import annotations

from typing import Any


class TrendcastError(Exception):
    """Base class for all trendcast errors."""

    def __init__(self, message: str, **context: Any) -> None:
        self.context = {k: v for k, v in context.items() if v is not None}
        if self.context:
            details = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            message = f"{message} ({details})"
        super().__init__(message)


class InputValidationError(TrendcastError, ValueError):
    """Malformed request: bad series selector, worker count, or missing covariates."""


class UnknownParameterError(TrendcastError, KeyError):
    """A parameter name was never sampled into the DrawStore."""

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return self.args[0]


class MissingTrendStateError(TrendcastError):
    """The fitted model declares a dynamic trend but lacks its stored state."""


class UnsupportedFamilyOutputError(TrendcastError):
    """The requested output type cannot be produced for this model."""


class NoTrendConfiguredError(UnsupportedFamilyOutputError):
    """Trend-scale output was requested from a model without a dynamic trend."""


class DrawComputationError(TrendcastError):
    """Wraps any failure raised while simulating a single posterior draw."""

    def __init__(
        self,
        message: str,
        *,
        draw: int,
        series: Any = None,
        output_type: Any = None,
    ) -> None:
        self.draw = draw
        self.series = series
        self.output_type = output_type
        super().__init__(message, draw=draw, series=series, output_type=output_type)
