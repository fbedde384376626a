"""
Round-robin residual updates across outcomes.

One coordinator runs the full boosting loop for one data split: round r fits
a tree to outcome (r - 1) mod Q and hands the before/after residual covariance
matrices to the covex accumulator and the updated residuals to the error
tracker. Rounds are strictly sequential; independent coordinators (one per CV
fold) share nothing mutable.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
import logging
import numpy as np

from .config import BoostingConfig
from .covex import CovarianceExplainedAccumulator
from .exceptions import ShapeMismatch
from .tracking import ErrorTracker
from .tree import TreeEnsembleFitter, TreeFit, TreeRecord
from .utils import residual_covariance

logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    IDLE = "idle"
    FITTING = "fitting"
    UPDATED = "updated"
    TERMINAL = "terminal"


@dataclass
class RoundRecord:
    """Diagnostics for one boosting round."""

    round_index: int
    outcome: int
    predictor: int
    improvement: float
    degenerate: bool
    covex_increment: np.ndarray = field(repr=False)


class ResidualUpdateCoordinator:
    """
    Round-robin boosting loop over all outcomes.

    The residual matrix is passed in and handed back by every ``step``; the
    coordinator never keeps a reference to it, so several coordinators (one per
    CV fold) can run side by side on the same read-only predictors.

    Args:
        X: Encoded predictors, shape (n_samples, n_features).
        n_outcomes: Number of outcome columns Q.
        config: Validated boosting configuration.
        train_rows: Rows used to fit trees, compute covariances and train error.
        test_rows: Held-out rows whose error is tracked each round.
        tracker: ErrorTracker receiving per-round errors (created when None).
        accumulator: Covex accumulator (created when None).
        verbose: Log progress every 10 rounds at INFO level.
    """

    def __init__(
        self,
        X: np.ndarray,
        n_outcomes: int,
        config: BoostingConfig,
        train_rows: np.ndarray,
        test_rows: Optional[np.ndarray] = None,
        tracker: Optional[ErrorTracker] = None,
        accumulator: Optional[CovarianceExplainedAccumulator] = None,
        verbose: bool = False,
    ):
        self.X = X
        self.n_outcomes = n_outcomes
        self.config = config
        self.train_rows = np.asarray(train_rows)
        self.test_rows = np.asarray(test_rows) if test_rows is not None else np.arange(0)
        self.tracker = tracker if tracker is not None else ErrorTracker(n_outcomes)
        self.accumulator = (
            accumulator if accumulator is not None
            else CovarianceExplainedAccumulator(X.shape[1], n_outcomes)
        )
        self.verbose = verbose

        self.fitters = [
            TreeEnsembleFitter(
                outcome=k,
                shrinkage=config.shrinkage,
                interaction_depth=config.interaction_depth,
                n_minobsinnode=config.n_minobsinnode,
                random_state=config.random_state,
            )
            for k in range(n_outcomes)
        ]
        self.rounds: List[RoundRecord] = []
        self.state = CoordinatorState.IDLE
        self.current_outcome = 0
        self._rng = np.random.default_rng(config.random_state)

    @property
    def n_completed(self) -> int:
        return len(self.rounds)

    @property
    def n_degenerate(self) -> int:
        return sum(f.n_degenerate for f in self.fitters)

    @property
    def ensembles(self) -> List[List[TreeRecord]]:
        return [f.trees for f in self.fitters]

    def _bag_rows(self) -> np.ndarray:
        """Training rows for this round's tree (stochastic boosting)."""
        n_train = len(self.train_rows)
        if self.config.bag_fraction < 1.0:
            n_bag = max(1, int(self.config.bag_fraction * n_train))
            rows = self._rng.choice(self.train_rows, size=n_bag, replace=False)
            return np.sort(rows)
        return self.train_rows

    def step(self, residuals: np.ndarray) -> np.ndarray:
        """Run one round and return the updated residual matrix (a new array)."""
        if self.state is CoordinatorState.TERMINAL:
            raise RuntimeError(f"all {self.config.n_trees} rounds have already been run")
        if residuals.shape != (self.X.shape[0], self.n_outcomes):
            raise ShapeMismatch(
                f"residuals must have shape ({self.X.shape[0]}, {self.n_outcomes}), "
                f"got {residuals.shape}"
            )
        round_index = self.n_completed + 1
        k = self.current_outcome
        self.state = CoordinatorState.FITTING

        sigma_before = residual_covariance(residuals[self.train_rows])
        new_col, fit = self.fitters[k].boost(self.X, residuals[:, k], self._bag_rows(), round_index)
        updated = residuals.copy()
        updated[:, k] = new_col
        sigma_after = residual_covariance(updated[self.train_rows])

        increment = self.accumulator.add(sigma_before, sigma_after, fit.predictor)
        self.tracker.record(updated, self.train_rows, self.test_rows)
        self.rounds.append(self._round_record(round_index, k, fit, increment))

        self.current_outcome = (k + 1) % self.n_outcomes
        if self.n_completed >= self.config.n_trees:
            self.state = CoordinatorState.TERMINAL
        else:
            self.state = CoordinatorState.UPDATED

        if self.verbose and round_index % 10 == 0:
            train_err, test_err = self.tracker.latest()
            if test_err is not None:
                logger.info(
                    f"Round {round_index}/{self.config.n_trees}: "
                    f"train_mse={train_err:.6f}, test_mse={test_err:.6f}"
                )
            else:
                logger.info(f"Round {round_index}/{self.config.n_trees}: train_mse={train_err:.6f}")
        return updated

    def run(self, residuals: np.ndarray) -> np.ndarray:
        """Run the remaining rounds and return the final residual matrix."""
        while self.state is not CoordinatorState.TERMINAL:
            residuals = self.step(residuals)
        return residuals

    @staticmethod
    def _round_record(round_index: int, outcome: int, fit: TreeFit,
                      increment: np.ndarray) -> RoundRecord:
        return RoundRecord(
            round_index=round_index,
            outcome=outcome,
            predictor=fit.predictor,
            improvement=fit.improvement,
            degenerate=fit.degenerate,
            covex_increment=increment,
        )
