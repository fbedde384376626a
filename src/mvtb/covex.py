"""
Covariance-explained ("covex") bookkeeping.

Every boosting round updates one outcome's residual. The change in the
residual covariance matrix over that round is attributed to the round tree's
most influential predictor:

    Δ = Σ_before − Σ_after
    covex[j, :] += Δ[triu] ** 2

Columns follow the upper triangle of Δ, diagonal included, in row-major order
(1-1, 1-2, ..., 1-Q, 2-2, ..., Q-Q). Diagonal columns hold variance explained,
off-diagonal columns covariance explained. The matrix is only ever added to.
"""

from typing import Iterable, Optional, Sequence
import numpy as np
import pandas as pd

from .exceptions import ShapeMismatch
from .utils import n_outcome_pairs, outcome_pairs, pair_labels


class CovarianceExplainedAccumulator:
    """Running predictor × outcome-pair covex matrix."""

    def __init__(self, n_predictors: int, n_outcomes: int):
        self.n_predictors = n_predictors
        self.n_outcomes = n_outcomes
        self._rows, self._cols = outcome_pairs(n_outcomes)
        self._covex = np.zeros((n_predictors, n_outcome_pairs(n_outcomes)))
        self.n_rounds = 0

    def increment(self, sigma_before: np.ndarray, sigma_after: np.ndarray) -> np.ndarray:
        """Squared upper-triangle of Σ_before − Σ_after, shape (Q(Q+1)/2,)."""
        expected = (self.n_outcomes, self.n_outcomes)
        if sigma_before.shape != expected or sigma_after.shape != expected:
            raise ShapeMismatch(
                f"covariance matrices must be {expected}, got "
                f"{sigma_before.shape} and {sigma_after.shape}"
            )
        delta = sigma_before - sigma_after
        return delta[self._rows, self._cols] ** 2

    def add(self, sigma_before: np.ndarray, sigma_after: np.ndarray, predictor: int) -> np.ndarray:
        """Accumulate one round into ``covex[predictor]`` and return the increment."""
        if not 0 <= predictor < self.n_predictors:
            raise ShapeMismatch(
                f"predictor index {predictor} outside 0..{self.n_predictors - 1}"
            )
        inc = self.increment(sigma_before, sigma_after)
        self._covex[predictor] += inc
        self.n_rounds += 1
        return inc

    def add_increment(self, increment: np.ndarray, predictor: int) -> None:
        """Replay a previously computed increment."""
        self._covex[predictor] += increment
        self.n_rounds += 1

    @property
    def covex(self) -> np.ndarray:
        return self._covex.copy()

    @classmethod
    def merged(cls, accumulators: Iterable["CovarianceExplainedAccumulator"]):
        """Element-wise sum of several accumulators (e.g. one per CV fold)."""
        accumulators = list(accumulators)
        if not accumulators:
            raise ValueError("need at least one accumulator to merge")
        first = accumulators[0]
        out = cls(first.n_predictors, first.n_outcomes)
        for acc in accumulators:
            if acc._covex.shape != out._covex.shape:
                raise ShapeMismatch("cannot merge covex matrices of different shapes")
            out._covex += acc._covex
            out.n_rounds += acc.n_rounds
        return out


def covex_frame(
    covex: np.ndarray,
    predictor_names: Optional[Sequence[str]] = None,
    outcome_names: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Label a covex matrix: predictors as index, outcome pairs as columns."""
    n_predictors, n_pairs = covex.shape
    if outcome_names is None:
        n_outcomes = int((np.sqrt(8 * n_pairs + 1) - 1) // 2)
        outcome_names = [f"y{k + 1}" for k in range(n_outcomes)]
    if predictor_names is None:
        predictor_names = [f"x{j + 1}" for j in range(n_predictors)]
    return pd.DataFrame(covex, index=list(predictor_names), columns=pair_labels(outcome_names))
