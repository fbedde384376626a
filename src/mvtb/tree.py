"""
Single-outcome tree fitting for the multivariate boosting loop.

``fit_regression_tree`` grows one shallow least-squares tree on a residual
column. ``TreeEnsembleFitter`` owns one outcome's ensemble: it fits a tree per
round, shrinks it, appends it, and returns the updated residual column.

Missing predictor values are handled by scikit-learn's native NaN support:
at each split the rows with a missing value are sent to whichever child gives
the larger impurity reduction during fitting, and to the majority child when
no missing values were seen at that split.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging
import numpy as np
from sklearn.tree import DecisionTreeRegressor

from .exceptions import ShapeMismatch
from .utils import split_improvements

logger = logging.getLogger(__name__)

# Residual range, relative to its magnitude, below which a column is constant
CONSTANT_TOL = 1e-12


@dataclass
class TreeFit:
    """Outcome of fitting one tree to one residual column."""

    tree: DecisionTreeRegressor
    predictor: int
    improvements: np.ndarray
    fitted: np.ndarray
    degenerate: bool

    @property
    def improvement(self) -> float:
        return float(self.improvements[self.predictor])


@dataclass
class TreeRecord:
    """One member of an outcome's ensemble."""

    round_index: int  # 1-based boosting round that produced the tree
    outcome: int
    tree: DecisionTreeRegressor
    predictor: int
    improvement: float
    improvements: np.ndarray = field(repr=False)
    degenerate: bool = False


def fit_regression_tree(
    X: np.ndarray,
    residual: np.ndarray,
    rows: Optional[np.ndarray] = None,
    interaction_depth: int = 1,
    n_minobsinnode: int = 5,
    random_state: Optional[int] = None,
) -> TreeFit:
    """
    Fit one squared-error regression tree to a residual column.

    Args:
        X: Predictors, shape (n_samples, n_features). NaN marks missing.
        residual: Current residual for one outcome, shape (n_samples,).
        rows: Row indices to fit on (bag subsample); all rows when None.
        interaction_depth: Maximum tree depth.
        n_minobsinnode: Minimum rows per leaf.
        random_state: Seed for sklearn's feature permutation (tie-breaking).

    Returns:
        TreeFit whose ``fitted`` holds the tree's predictions on *all* rows of X.
        When no split improves the fit the tree is a single leaf and the fit is
        flagged ``degenerate``; its most influential predictor defaults to 0.
        A residual that is constant on the fitted rows is always fitted as a
        single leaf, so rounding noise cannot produce spurious splits.
    """
    if residual.ndim != 1 or residual.shape[0] != X.shape[0]:
        raise ShapeMismatch(
            f"residual has shape {residual.shape}, expected ({X.shape[0]},)"
        )
    idx = rows if rows is not None else np.arange(X.shape[0])
    target = residual[idx]

    # A root with fewer rows than min_samples_split is never split
    constant = np.ptp(target) <= CONSTANT_TOL * max(1.0, float(np.max(np.abs(target))))
    tree = DecisionTreeRegressor(
        criterion="squared_error",
        max_depth=interaction_depth,
        min_samples_leaf=n_minobsinnode,
        min_samples_split=len(idx) + 1 if constant else 2,
        random_state=random_state,
    )
    tree.fit(X[idx], target)

    improvements = split_improvements(tree, X.shape[1])
    degenerate = tree.tree_.node_count == 1
    return TreeFit(
        tree=tree,
        predictor=int(np.argmax(improvements)),
        improvements=improvements,
        fitted=tree.predict(X),
        degenerate=degenerate,
    )


class TreeEnsembleFitter:
    """
    Boosting driver for a single outcome.

    Each call to ``boost`` fits a tree to the outcome's residual, appends it to
    ``trees`` and returns ``residual - shrinkage * f`` as a new array.
    """

    def __init__(
        self,
        outcome: int,
        shrinkage: float = 0.01,
        interaction_depth: int = 1,
        n_minobsinnode: int = 5,
        random_state: Optional[int] = None,
    ):
        self.outcome = outcome
        self.shrinkage = shrinkage
        self.interaction_depth = interaction_depth
        self.n_minobsinnode = n_minobsinnode
        self.random_state = random_state

        self.trees: List[TreeRecord] = []
        self.n_degenerate = 0

    def boost(self, X: np.ndarray, residual: np.ndarray, rows: Optional[np.ndarray],
              round_index: int):
        """Fit one tree and return (updated residual column, TreeFit)."""
        fit = fit_regression_tree(
            X, residual, rows,
            interaction_depth=self.interaction_depth,
            n_minobsinnode=self.n_minobsinnode,
            random_state=self.random_state,
        )
        if fit.degenerate:
            self.n_degenerate += 1
            logger.debug(f"Round {round_index}: tree for outcome {self.outcome} is a single leaf")

        self.trees.append(TreeRecord(
            round_index=round_index,
            outcome=self.outcome,
            tree=fit.tree,
            predictor=fit.predictor,
            improvement=fit.improvement,
            improvements=fit.improvements,
            degenerate=fit.degenerate,
        ))
        return residual - self.shrinkage * fit.fitted, fit

    def __len__(self) -> int:
        return len(self.trees)
