"""
Evaluation of a fitted multivariate ensemble.

An iteration count c refers to the first c boosting rounds. For outcome k the
prediction at c is

    F_k(x) = init_k + ν * Σ_{r <= c, outcome(r) = k} tree_r(x)

Results are always 3-dimensional: (n_samples, n_outcomes, n_counts).
"""

from typing import Dict, List, Optional, Sequence, Union
import numpy as np

from .config import is_int
from .exceptions import ShapeMismatch
from .tree import TreeRecord
from .utils import tree_predictors


class PredictionEngine:
    """
    Stage-wise evaluator over per-outcome ensembles.

    Args:
        ensembles: One list of ``TreeRecord`` per outcome.
        init: Per-outcome intercept, shape (n_outcomes,).
        shrinkage: Learning rate used during fitting.
        n_rounds: Total number of boosting rounds N.
        n_features: Number of predictor columns the trees expect.
    """

    def __init__(
        self,
        ensembles: Sequence[Sequence[TreeRecord]],
        init: np.ndarray,
        shrinkage: float,
        n_rounds: int,
        n_features: int,
    ):
        self.ensembles = ensembles
        self.init = np.asarray(init, dtype=float)
        self.shrinkage = shrinkage
        self.n_rounds = n_rounds
        self.n_features = n_features

        self._records: List[TreeRecord] = sorted(
            (rec for ensemble in ensembles for rec in ensemble), key=lambda r: r.round_index
        )

    @property
    def n_outcomes(self) -> int:
        return len(self.ensembles)

    def resolve_counts(self, n_trees: Union[int, Sequence[int]]) -> List[int]:
        """
        Normalise an int or a sequence of ints into a validated list of counts.

        Raises:
            ShapeMismatch: A count is not an integer (floats and bools are
                rejected, never truncated) or lies outside 1..n_rounds.
        """
        values = [n_trees] if is_int(n_trees) else list(np.asarray(n_trees, dtype=object).ravel())
        if not values:
            raise ShapeMismatch("at least one iteration count is required")
        for c in values:
            if not is_int(c):
                raise ShapeMismatch(f"iteration count {c!r} is not an integer")
        counts = [int(c) for c in values]
        for c in counts:
            if not 1 <= c <= self.n_rounds:
                raise ShapeMismatch(
                    f"iteration count {c} outside 1..{self.n_rounds}"
                )
        return counts

    def tree_contributions(self, X: np.ndarray, rounds: Optional[Sequence[int]] = None) -> np.ndarray:
        """
        Shrinkage-scaled output of each round's tree.

        Returns:
            Array of shape (n_samples, n_rounds); column r-1 holds ν * tree_r(X).
            When ``rounds`` is given, only those (1-based) rounds are evaluated
            and the other columns stay zero.
        """
        X = self._check_X(X)
        wanted = None if rounds is None else set(int(r) for r in rounds)
        out = np.zeros((X.shape[0], self.n_rounds))
        for rec in self._records:
            if wanted is not None and rec.round_index not in wanted:
                continue
            out[:, rec.round_index - 1] = self.shrinkage * rec.tree.predict(X)
        return out

    def predict(self, X: np.ndarray, n_trees: Union[int, Sequence[int]]) -> np.ndarray:
        """
        Predictions at each requested iteration count.

        Returns:
            Array of shape (n_samples, n_outcomes, len(counts)).
        """
        X = self._check_X(X)
        counts = self.resolve_counts(n_trees)
        max_count = max(counts)
        snapshots: Dict[int, List[int]] = {}
        for pos, c in enumerate(counts):
            snapshots.setdefault(c, []).append(pos)

        out = np.empty((X.shape[0], self.n_outcomes, len(counts)))
        F = np.tile(self.init, (X.shape[0], 1))
        for rec in self._records:
            if rec.round_index > max_count:
                break
            F[:, rec.outcome] += self.shrinkage * rec.tree.predict(X)
            for pos in snapshots.get(rec.round_index, []):
                out[:, :, pos] = F
        return out

    def predictor_rounds(self, predictor: int, outcome: Optional[int] = None) -> List[int]:
        """Rounds whose tree splits on ``predictor`` (optionally for one outcome)."""
        return [
            rec.round_index for rec in self._records
            if (outcome is None or rec.outcome == outcome)
            and predictor in tree_predictors(rec.tree)
        ]

    def outcome_rounds(self, outcome: int, n_trees: Optional[int] = None) -> List[int]:
        limit = self.n_rounds if n_trees is None else n_trees
        return [rec.round_index for rec in self.ensembles[outcome] if rec.round_index <= limit]

    def _check_X(self, X: np.ndarray) -> np.ndarray:
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] != self.n_features:
            raise ShapeMismatch(
                f"X must have shape (n_samples, {self.n_features}), got {X.shape}"
            )
        return X
