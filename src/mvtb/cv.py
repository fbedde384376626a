"""
K-fold cross-validation for choosing the number of boosting rounds.

Rows are assigned to folds at random (balanced, seeded). Each fold fits an
independent ``ResidualUpdateCoordinator`` on the other k - 1 folds and records
the held-out error after every round; the CV curve is the fold mean.

Folds run in worker processes when ``n_workers > 1``. A failing fold aborts
the whole run: pending folds are cancelled and ``FoldFailure`` is raised,
chained to the worker's exception. No partial CV curve is ever returned.
"""

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import List
import logging
import os
import numpy as np

from .config import BoostingConfig
from .coordinator import ResidualUpdateCoordinator
from .covex import CovarianceExplainedAccumulator
from .exceptions import FoldFailure
from .tracking import ErrorSource, ErrorTracker

logger = logging.getLogger(__name__)


@dataclass
class FoldResult:
    fold: int
    test_error: np.ndarray  # (n_rounds, n_outcomes)
    train_error: np.ndarray  # (n_rounds, n_outcomes)
    covex: np.ndarray
    n_degenerate: int = 0


@dataclass
class CVResult:
    """Aggregated cross-validation output."""

    assignment: np.ndarray
    folds: List[FoldResult] = field(default_factory=list)

    @property
    def curve(self) -> np.ndarray:
        """Fold-mean held-out error per round and outcome, shape (n_rounds, n_outcomes)."""
        return np.mean([f.test_error for f in self.folds], axis=0)

    @property
    def covex_sum(self) -> np.ndarray:
        return np.sum([f.covex for f in self.folds], axis=0)

    @property
    def covex_mean(self) -> np.ndarray:
        return np.mean([f.covex for f in self.folds], axis=0)

    @property
    def n_degenerate(self) -> int:
        return sum(f.n_degenerate for f in self.folds)


def fold_config(config: BoostingConfig, fold: int) -> BoostingConfig:
    """Per-fold config: distinct but reproducible seed, no nested CV."""
    seed = None if config.random_state is None else config.random_state + fold + 1
    return config.replace(random_state=seed, cv_folds=0, train_fraction=1.0)


def fit_fold(fold: int, X: np.ndarray, Y: np.ndarray, assignment: np.ndarray,
             config: BoostingConfig) -> FoldResult:
    """Fit one fold. Module-level so that worker processes can unpickle it."""
    train_rows = np.flatnonzero(assignment != fold)
    test_rows = np.flatnonzero(assignment == fold)
    cfg = fold_config(config, fold)

    init = Y[train_rows].mean(axis=0)
    tracker = ErrorTracker(Y.shape[1])
    accumulator = CovarianceExplainedAccumulator(X.shape[1], Y.shape[1])
    coordinator = ResidualUpdateCoordinator(
        X, Y.shape[1], cfg, train_rows, test_rows, tracker=tracker, accumulator=accumulator
    )
    coordinator.run(Y - init)
    tracker.finalize()
    return FoldResult(
        fold=fold,
        test_error=np.array(tracker.curve(ErrorSource.TEST, per_outcome=True)),
        train_error=np.array(tracker.curve(ErrorSource.TRAIN, per_outcome=True)),
        covex=accumulator.covex,
        n_degenerate=coordinator.n_degenerate,
    )


class CrossValidationOrchestrator:
    """
    Runs one independent boosting fit per fold and averages the held-out curves.

    Args:
        config: Validated configuration with ``cv_folds >= 2``.
        verbose: Log fold progress at INFO level.
    """

    def __init__(self, config: BoostingConfig, verbose: bool = False):
        self.config = config
        self.verbose = verbose

    @property
    def n_folds(self) -> int:
        return self.config.cv_folds

    def assign_folds(self, n_samples: int) -> np.ndarray:
        """Balanced random fold labels 0..k-1, reproducible from the config seed."""
        rng = np.random.default_rng(self.config.random_state)
        return rng.permutation(np.arange(n_samples) % self.n_folds)

    def run(self, X: np.ndarray, Y: np.ndarray) -> CVResult:
        assignment = self.assign_folds(X.shape[0])
        folds = list(range(self.n_folds))
        workers = self._resolve_workers(len(folds))

        if workers == 1:
            results = self._run_sequential(folds, X, Y, assignment)
        else:
            results = self._run_parallel(folds, X, Y, assignment, workers)

        results.sort(key=lambda r: r.fold)
        cv = CVResult(assignment=assignment, folds=results)
        if self.verbose:
            logger.info(
                f"CV finished: {len(results)} folds, best round "
                f"{int(np.argmin(cv.curve.sum(axis=1))) + 1}"
            )
        return cv

    # ---------------- internal ----------------

    def _resolve_workers(self, n_folds: int) -> int:
        cpu = os.cpu_count() or 1
        return max(1, min(self.config.n_workers, n_folds, cpu))

    def _run_sequential(self, folds, X, Y, assignment) -> List[FoldResult]:
        results = []
        for fold in folds:
            if self.verbose:
                logger.info(f"Fitting CV fold {fold + 1}/{self.n_folds}")
            try:
                results.append(fit_fold(fold, X, Y, assignment, self.config))
            except Exception as exc:
                raise FoldFailure(fold, repr(exc)) from exc
        return results

    def _run_parallel(self, folds, X, Y, assignment, workers: int) -> List[FoldResult]:
        logger.info(f"Running {len(folds)} CV folds on {workers} workers")
        results = []
        with ProcessPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(fit_fold, fold, X, Y, assignment, self.config): fold
                for fold in folds
            }
            for future in as_completed(futures):
                fold = futures[future]
                try:
                    results.append(future.result())
                except Exception as exc:
                    for pending in futures:
                        pending.cancel()
                    raise FoldFailure(fold, repr(exc)) from exc
                if self.verbose:
                    logger.info(f"CV fold {fold + 1}/{self.n_folds} done")
        return results
