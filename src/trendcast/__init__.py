"""Trendcast: posterior-draw forecasting for dynamic trend models."""

__version__ = "0.1.0"

from trendcast.errors import (
    TrendcastError,
    InputValidationError,
    UnknownParameterError,
    MissingTrendStateError,
    UnsupportedFamilyOutputError,
    NoTrendConfiguredError,
    DrawComputationError,
)
from trendcast.draws import DrawStore, SeriesIndex
from trendcast.families import (
    OutputType,
    ObservationFamily,
    Gaussian,
    StudentT,
    LogNormal,
    Poisson,
    NegativeBinomial,
    Gamma,
    Beta,
    simulate_observations,
)
from trendcast.trends import (
    TrendModel,
    NoTrendParams,
    AutoregressiveParams,
    SharedInnovationParams,
    GaussianProcessParams,
    TrendParameters,
    TrendParameterExtractor,
)
from trendcast.propagate import propagate, forecast_trend
from trendcast.design import (
    DesignMatrix,
    DesignMatrixBuilder,
    LinearDesignBuilder,
    LinearPredictorBuilder,
)
from trendcast.model import FittedModel
from trendcast.result import ForecastResult
from trendcast.forecaster import (
    ForecastRequest,
    ForecastOrchestrator,
    forecast,
    hindcast,
)
