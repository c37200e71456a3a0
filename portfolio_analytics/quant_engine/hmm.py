"""
Discrete hidden Markov model for market regimes.

Observations are joint (daily return, rolling volatility) buckets:

    return %        < -2 | < 0 | < 1 | < 3 | >= 3          -> 0..4
    volatility %    < 15 | < 25 | < 35 | >= 35  (annual)   -> 0..3
    symbol          return_bucket * 4 + volatility_bucket  -> 0..19

Four latent regimes in fixed order: bull, bear, high_volatility, normal.
Training runs hmmlearn's Baum-Welch starting from label-anchored emission
priors so that fitted states keep their names. Inference filters the
observation sequence and propagates the last distribution through the
transition matrix.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Sequence

import numpy as np
import pandas as pd
from hmmlearn.hmm import CategoricalHMM

from portfolio_analytics.core.exceptions import InsufficientData, InvalidDistribution

from .risk import TRADING_DAYS, clean_returns


logger = logging.getLogger(__name__)

PROBABILITY_TOLERANCE = 0.05
MIN_OBSERVATIONS = 252
MAX_FORECAST_HORIZON = 30


class Regime(str, Enum):
    """Latent market regime."""
    BULL = "bull"
    BEAR = "bear"
    HIGH_VOLATILITY = "high_volatility"
    NORMAL = "normal"


REGIME_STATES: tuple[str, ...] = tuple(regime.value for regime in Regime)

DEFAULT_INITIAL = np.array([0.30, 0.20, 0.10, 0.40])

DEFAULT_TRANSITIONS = np.array(
    [
        [0.85, 0.05, 0.02, 0.08],
        [0.05, 0.80, 0.10, 0.05],
        [0.10, 0.15, 0.65, 0.10],
        [0.15, 0.10, 0.05, 0.70],
    ]
)

# Per-regime preference over return buckets and volatility buckets.
_RETURN_PRIORS = np.array(
    [
        [0.05, 0.15, 0.30, 0.30, 0.20],
        [0.30, 0.35, 0.20, 0.10, 0.05],
        [0.25, 0.20, 0.10, 0.20, 0.25],
        [0.05, 0.30, 0.40, 0.20, 0.05],
    ]
)
_VOLATILITY_PRIORS = np.array(
    [
        [0.40, 0.35, 0.15, 0.10],
        [0.10, 0.30, 0.35, 0.25],
        [0.05, 0.10, 0.30, 0.55],
        [0.45, 0.35, 0.15, 0.05],
    ]
)


# =============================================================================
# Validation
# =============================================================================


def validate_distribution(
    values: Sequence[float] | np.ndarray,
    tolerance: float = PROBABILITY_TOLERANCE,
    label: str = "distribution",
) -> np.ndarray:
    """Reject vectors with negative entries or a sum outside 1 ± tolerance."""
    vector = np.asarray(values, dtype=float)
    if vector.ndim != 1 or vector.size == 0:
        raise InvalidDistribution(f"{label} must be a non-empty vector")
    if not np.all(np.isfinite(vector)) or np.any(vector < -1e-12):
        raise InvalidDistribution(f"{label} has negative or non-finite entries")
    total = float(vector.sum())
    if abs(total - 1.0) > tolerance:
        raise InvalidDistribution(
            f"{label} sums to {total:.4f}, outside 1 ± {tolerance}",
            details={"sum": total, "tolerance": tolerance},
        )
    return vector


def validate_stochastic(
    matrix: Sequence[Sequence[float]] | np.ndarray,
    tolerance: float = PROBABILITY_TOLERANCE,
    label: str = "matrix",
) -> np.ndarray:
    """Every row must be a valid distribution."""
    array = np.asarray(matrix, dtype=float)
    if array.ndim != 2:
        raise InvalidDistribution(f"{label} must be two-dimensional")
    for i, row in enumerate(array):
        validate_distribution(row, tolerance, f"{label} row {i}")
    return array


# =============================================================================
# Discretization
# =============================================================================


@dataclass(frozen=True)
class DiscretizationScheme:
    """Bucket edges for daily returns and rolling annualized volatility (both %)."""
    return_edges: tuple[float, ...] = (-2.0, 0.0, 1.0, 3.0)
    volatility_edges: tuple[float, ...] = (15.0, 25.0, 35.0)
    volatility_window: int = 20

    @property
    def n_return_buckets(self) -> int:
        return len(self.return_edges) + 1

    @property
    def n_volatility_buckets(self) -> int:
        return len(self.volatility_edges) + 1

    @property
    def n_symbols(self) -> int:
        return self.n_return_buckets * self.n_volatility_buckets

    def symbol(self, return_pct: float, volatility_pct: float) -> int:
        r = int(np.searchsorted(self.return_edges, return_pct, side="right"))
        v = int(np.searchsorted(self.volatility_edges, volatility_pct, side="right"))
        return r * self.n_volatility_buckets + v

    def encode(self, returns: pd.Series) -> pd.Series:
        """Observation symbols indexed by date; the first window-1 days are dropped."""
        series = clean_returns(returns)
        volatility = (
            series.rolling(self.volatility_window).std(ddof=1) * np.sqrt(TRADING_DAYS) * 100
        )
        frame = pd.DataFrame({"ret": series * 100, "vol": volatility}).dropna()
        if frame.empty:
            return pd.Series(dtype=int)
        r = np.searchsorted(self.return_edges, frame["ret"].to_numpy(), side="right")
        v = np.searchsorted(self.volatility_edges, frame["vol"].to_numpy(), side="right")
        return pd.Series(r * self.n_volatility_buckets + v, index=frame.index, dtype=int)

    def to_dict(self) -> dict[str, Any]:
        return {
            "return_edges": list(self.return_edges),
            "volatility_edges": list(self.volatility_edges),
            "volatility_window": self.volatility_window,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscretizationScheme:
        return cls(
            return_edges=tuple(float(x) for x in data["return_edges"]),
            volatility_edges=tuple(float(x) for x in data["volatility_edges"]),
            volatility_window=int(data["volatility_window"]),
        )


def default_emissions(scheme: DiscretizationScheme) -> np.ndarray:
    """Label-anchored emission priors (states x symbols)."""
    if (scheme.n_return_buckets, scheme.n_volatility_buckets) == (5, 4):
        emissions = np.einsum("sr,sv->srv", _RETURN_PRIORS, _VOLATILITY_PRIORS)
        emissions = emissions.reshape(len(REGIME_STATES), scheme.n_symbols)
    else:
        emissions = np.full((len(REGIME_STATES), scheme.n_symbols), 1.0)
    return emissions / emissions.sum(axis=1, keepdims=True)


# =============================================================================
# Model
# =============================================================================


@dataclass(frozen=True, eq=False)
class HmmModel:
    """A trained model version. Matrices are validated on construction."""
    market: str
    states: tuple[str, ...]
    transition: np.ndarray
    emission: np.ndarray
    initial: np.ndarray
    scheme: DiscretizationScheme
    training_start: date
    training_end: date
    trained_at: datetime
    accuracy: float
    validation_log_likelihood: float | None = None
    iterations: int = 0
    converged: bool = False
    version: str | None = None
    id: int | None = None
    tolerance: float = field(default=PROBABILITY_TOLERANCE, compare=False)

    def __post_init__(self):
        n = len(self.states)
        transition = validate_stochastic(self.transition, self.tolerance, "transition matrix")
        emission = validate_stochastic(self.emission, self.tolerance, "emission matrix")
        initial = validate_distribution(self.initial, self.tolerance, "initial distribution")
        if transition.shape != (n, n) or emission.shape[0] != n or initial.shape != (n,):
            raise InvalidDistribution("Model matrices do not match the number of states")
        if emission.shape[1] != self.scheme.n_symbols:
            raise InvalidDistribution("Emission matrix does not match the discretization")
        object.__setattr__(self, "transition", transition)
        object.__setattr__(self, "emission", emission)
        object.__setattr__(self, "initial", initial)




# =============================================================================
# Estimation
# =============================================================================


def build_hmm(
    initial: np.ndarray,
    transition: np.ndarray,
    emission: np.ndarray,
    max_iterations: int = 100,
    tolerance: float = 1e-4,
) -> CategoricalHMM:
    """
    Categorical HMM seeded with the given parameters.

    ``init_params`` is empty so fitting starts from these matrices instead of
    random ones, which keeps each fitted state aligned with its regime label.
    """
    emission = np.asarray(emission, dtype=float)
    model = CategoricalHMM(
        n_components=len(initial),
        n_features=emission.shape[1],
        n_iter=max_iterations,
        tol=tolerance,
        init_params="",
        params="ste",
    )
    model.startprob_ = np.asarray(initial, dtype=float)
    model.transmat_ = np.asarray(transition, dtype=float)
    model.emissionprob_ = emission
    return model


def _smooth(matrix: np.ndarray, smoothing: float) -> np.ndarray:
    # Unseen symbols must keep a nonzero probability or filtering breaks on them
    smoothed = np.asarray(matrix, dtype=float) + smoothing
    return smoothed / smoothed.sum(axis=-1, keepdims=True)


def filtered_distribution(hmm: CategoricalHMM, observations: np.ndarray) -> np.ndarray:
    """P(state_T | obs_0..T) for the last observation."""
    obs = np.asarray(observations, dtype=int).reshape(-1, 1)
    return hmm.predict_proba(obs)[-1]


def one_step_accuracy(
    hmm: CategoricalHMM, observations: np.ndarray, start: int
) -> tuple[float, float]:
    """
    Score one-step-ahead predictions on ``observations[start:]``.

    At each held-out step the sequence so far is filtered and the most likely
    next symbol is compared with the actual one.

    Returns
    -------
    tuple[float, float]
        (hit rate, mean log predictive probability) over the held-out steps.
    """
    obs = np.asarray(observations, dtype=int).reshape(-1, 1)
    n = len(obs)
    if start < 1 or start >= n:
        raise ValueError("Held-out window must be non-empty and follow at least one step")

    predictive_matrix = hmm.transmat_ @ hmm.emissionprob_
    hits = 0
    for t in range(start, n):
        filtered = hmm.predict_proba(obs[:t])[-1]
        hits += int((filtered @ predictive_matrix).argmax() == obs[t, 0])

    held_out_log_likelihood = (hmm.score(obs) - hmm.score(obs[:start])) / (n - start)
    return hits / (n - start), float(held_out_log_likelihood)


# =============================================================================
# Training & inference
# =============================================================================


def train_hmm(
    returns: pd.Series,
    market: str,
    scheme: DiscretizationScheme | None = None,
    max_iterations: int = 100,
    tolerance: float = 1e-4,
    min_observations: int = MIN_OBSERVATIONS,
    train_fraction: float = 0.8,
    trained_at: datetime | None = None,
    probability_tolerance: float = PROBABILITY_TOLERANCE,
    smoothing: float = 1e-6,
) -> HmmModel:
    """
    Train a regime model on a market's daily returns.

    The first ``train_fraction`` of the encoded observations fit the model;
    the rest score it.

    Raises
    ------
    InsufficientData
        If fewer than ``min_observations`` encoded observations exist.
    """
    scheme = scheme or DiscretizationScheme()
    encoded = scheme.encode(returns)
    n = len(encoded)
    if n < min_observations:
        raise InsufficientData(
            f"HMM training needs {min_observations} observations, got {n}",
            required=min_observations,
            available=n,
        )

    obs = encoded.to_numpy()
    split = int(n * train_fraction)
    split = min(max(split, 2), n - 1)

    estimator = build_hmm(
        DEFAULT_INITIAL,
        DEFAULT_TRANSITIONS,
        default_emissions(scheme),
        max_iterations=max_iterations,
        tolerance=tolerance,
    )
    estimator.fit(obs[:split].reshape(-1, 1))
    iterations = int(estimator.monitor_.iter)
    converged = bool(estimator.monitor_.converged)

    fitted = build_hmm(
        _smooth(estimator.startprob_, smoothing),
        _smooth(estimator.transmat_, smoothing),
        _smooth(estimator.emissionprob_, smoothing),
    )
    accuracy, validation_ll = one_step_accuracy(fitted, obs, split)

    trained_at = trained_at or datetime.now(timezone.utc)
    logger.info(
        f"Trained HMM for {market}: {split} train / {n - split} validation obs, "
        f"{iterations} iterations, converged={converged}, "
        f"accuracy={accuracy:.3f}"
    )

    return HmmModel(
        market=market,
        states=REGIME_STATES,
        transition=fitted.transmat_,
        emission=fitted.emissionprob_,
        initial=fitted.startprob_,
        scheme=scheme,
        training_start=_as_date(encoded.index[0]),
        training_end=_as_date(encoded.index[-1]),
        trained_at=trained_at,
        accuracy=accuracy,
        validation_log_likelihood=validation_ll,
        iterations=iterations,
        converged=converged,
        version=trained_at.strftime("%Y%m%dT%H%M%S"),
        tolerance=probability_tolerance,
    )


@dataclass(frozen=True)
class RegimeForecast:
    """Regime distribution now and at ``horizon`` days ahead."""
    market: str
    forecast_date: date
    horizon: int
    current_regime: str
    current_distribution: dict[str, float]
    predicted_regime: str
    distribution: dict[str, float]
    transition_probability: float
    confidence: str
    model_version: str | None
    model_accuracy: float


def confidence_label(probability: float) -> str:
    if probability > 0.7:
        return "high"
    if probability > 0.5:
        return "medium"
    return "low"


def forecast_distribution(current: np.ndarray, transition: np.ndarray, horizon: int) -> np.ndarray:
    """State distribution ``horizon`` steps after ``current``."""
    if horizon < 0:
        raise ValueError(f"horizon must be >= 0, got {horizon}")
    return current @ np.linalg.matrix_power(transition, horizon)


def forecast_regime(
    model: HmmModel,
    returns: pd.Series,
    horizon: int,
    forecast_date: date | None = None,
    tolerance: float = PROBABILITY_TOLERANCE,
) -> RegimeForecast:
    """
    Filter the recent observation sequence and project it ``horizon`` days ahead.

    The transition probability is the mass that leaves the currently most
    likely regime by the forecast horizon.
    """
    if not 1 <= horizon <= MAX_FORECAST_HORIZON:
        raise ValueError(f"horizon must be between 1 and {MAX_FORECAST_HORIZON}, got {horizon}")

    encoded = model.scheme.encode(returns)
    if encoded.empty:
        raise InsufficientData(
            "Not enough returns to build a single observation",
            required=model.scheme.volatility_window,
            available=len(clean_returns(returns)),
        )

    hmm = build_hmm(model.initial, model.transition, model.emission)
    current = validate_distribution(
        filtered_distribution(hmm, encoded.to_numpy()),
        tolerance,
        "current regime distribution",
    )
    projected = validate_distribution(
        forecast_distribution(current, model.transition, horizon),
        tolerance,
        "forecast regime distribution",
    )

    current_index = int(current.argmax())
    predicted_index = int(projected.argmax())

    return RegimeForecast(
        market=model.market,
        forecast_date=forecast_date or _as_date(encoded.index[-1]),
        horizon=horizon,
        current_regime=model.states[current_index],
        current_distribution=dict(zip(model.states, map(float, current))),
        predicted_regime=model.states[predicted_index],
        distribution=dict(zip(model.states, map(float, projected))),
        transition_probability=float(np.clip(1.0 - projected[current_index], 0.0, 1.0)),
        confidence=confidence_label(float(projected[predicted_index])),
        model_version=model.version,
        model_accuracy=model.accuracy,
    )


def _as_date(value) -> date:
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.Timestamp(value).date()
