"""
Interpretation helpers for fitted multivariate boosting models.

- Relative influence: total squared-error reduction credited to each
  predictor in each outcome's ensemble (Friedman, 2001, Section 8.1).
- Nonlinearity detection: for predictor pairs that occur together in at least
  one tree, the two-way partial dependence is compared with its best additive
  approximation; the mean squared departure ranks candidate interactions.

These functions only read the fitted model.
"""

from itertools import combinations
from typing import List, Optional, Sequence
import numpy as np
import pandas as pd

from .exceptions import InvalidConfiguration
from .tree import TreeRecord
from .utils import tree_predictors

RELATIVE_MODES = ("col", "tot", "none")


def relative_influence(model, n_trees: Optional[int] = None, relative: str = "col") -> pd.DataFrame:
    """
    Relative influence of each predictor on each outcome.

    Args:
        model: Fitted ``MultivariateTreeBoost``.
        n_trees: Use rounds 1..n_trees; defaults to the best iteration.
        relative: "col" scales each outcome's column to sum to 100, "tot"
            scales the whole table to sum to 100, "none" keeps raw reductions.

    Returns:
        DataFrame (predictors × outcomes).
    """
    if relative not in RELATIVE_MODES:
        raise InvalidConfiguration(f"relative must be one of {RELATIVE_MODES}, got {relative!r}")
    limit = _resolve_limit(model, n_trees)

    ri = np.zeros((len(model.feature_names_), len(model.outcome_names_)))
    for k, ensemble in enumerate(model.ensembles_):
        for rec in ensemble:
            if rec.round_index <= limit:
                ri[:, k] += rec.improvements

    if relative == "col":
        totals = ri.sum(axis=0)
        ri = np.divide(100.0 * ri, totals, out=np.zeros_like(ri), where=totals > 0)
    elif relative == "tot":
        total = ri.sum()
        ri = 100.0 * ri / total if total > 0 else ri
    return pd.DataFrame(ri, index=model.feature_names_, columns=model.outcome_names_)


def summary(model, n_trees: Optional[int] = None, relative: str = "col") -> dict:
    """Best iterations, relative influence, covex and diagnostics of a fitted model."""
    model._check_is_fitted()
    return {
        "n_trees": model.config.n_trees,
        "best_iteration": model.best_iteration_,
        "best_iterations": model.best_iterations_,
        "relative_influence": relative_influence(model, n_trees=n_trees, relative=relative),
        "covex": model.covex_frame(),
        "n_degenerate": model.n_degenerate_,
    }


# ===========================
# Nonlinearity detection
# ===========================

def grid_values(x: np.ndarray, n_grid: int = 10) -> np.ndarray:
    """Observed values of a predictor, thinned to at most n_grid quantiles."""
    x = x[~np.isnan(x)]
    values = np.unique(x)
    if len(values) > n_grid:
        values = np.unique(np.quantile(x, np.linspace(0.0, 1.0, n_grid)))
    return values


def partial_dependence(
    trees: Sequence[TreeRecord],
    shrinkage: float,
    X: np.ndarray,
    a: int,
    b: int,
    n_grid: int = 10,
):
    """
    Two-way partial dependence of the given trees on predictors a and b.

    Returns:
        (grid_a, grid_b, pd) where pd[i, j] is the mean over rows of X of the
        shrunken tree sum with x_a = grid_a[i] and x_b = grid_b[j].
    """
    ga = grid_values(X[:, a], n_grid)
    gb = grid_values(X[:, b], n_grid)
    A, B = np.meshgrid(ga, gb, indexing="ij")
    n = X.shape[0]

    stacked = np.tile(X, (A.size, 1))
    stacked[:, a] = np.repeat(A.ravel(), n)
    stacked[:, b] = np.repeat(B.ravel(), n)

    pred = np.zeros(stacked.shape[0])
    for rec in trees:
        pred += shrinkage * rec.tree.predict(stacked)
    return ga, gb, pred.reshape(A.size, n).mean(axis=1).reshape(A.shape)


def departure_from_additivity(grid: np.ndarray) -> float:
    """Mean squared residual of a two-way grid after removing both main effects."""
    grand = grid.mean()
    additive = grid.mean(axis=1, keepdims=True) + grid.mean(axis=0, keepdims=True) - grand
    return float(np.mean((grid - additive) ** 2))


def nonlinearity(
    model,
    X,
    n_trees: Optional[int] = None,
    n_grid: int = 10,
    outcomes: Optional[Sequence[int]] = None,
    top: Optional[int] = None,
) -> pd.DataFrame:
    """
    Rank predictor pairs by departure from additivity, per outcome.

    Only pairs that appear together in at least one tree are scored; any other
    pair contributes additively by construction. With ``interaction_depth=1``
    the result is therefore empty.

    Args:
        model: Fitted ``MultivariateTreeBoost``.
        X: Predictors used to average the partial dependence (usually the
            training data).
        n_trees: Use rounds 1..n_trees; defaults to the best iteration.
        n_grid: Grid points per predictor.
        outcomes: Outcome indices to score; all by default.
        top: Keep at most this many pairs per outcome.

    Returns:
        DataFrame with columns outcome, predictor1, predictor2, nonlin_size,
        sorted by outcome then decreasing nonlin_size.
    """
    limit = _resolve_limit(model, n_trees)
    Xa = model.encode(X)
    if outcomes is None:
        outcomes = range(len(model.outcome_names_))

    rows: List[dict] = []
    for k in outcomes:
        trees = [rec for rec in model.ensembles_[k] if rec.round_index <= limit]
        pairs = set()
        for rec in trees:
            pairs.update(combinations(tree_predictors(rec.tree).tolist(), 2))

        scored = []
        for a, b in sorted(pairs):
            _, _, grid = partial_dependence(trees, model.config.shrinkage, Xa, a, b, n_grid)
            scored.append({
                "outcome": model.outcome_names_[k],
                "predictor1": model.feature_names_[a],
                "predictor2": model.feature_names_[b],
                "nonlin_size": departure_from_additivity(grid),
            })
        scored.sort(key=lambda r: r["nonlin_size"], reverse=True)
        rows.extend(scored[:top] if top is not None else scored)

    return pd.DataFrame(rows, columns=["outcome", "predictor1", "predictor2", "nonlin_size"])


def _resolve_limit(model, n_trees: Optional[int]) -> int:
    model._check_is_fitted()
    if n_trees is None:
        return model.best_iteration_
    return model.prediction_engine().resolve_counts(n_trees)[0]
