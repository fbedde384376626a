"""
Utility functions for multivariate boosting: data preparation, losses,
covariance bookkeeping, and tree introspection.
"""

from typing import Dict, List, Optional, Sequence, Tuple
import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score
from sklearn.tree import DecisionTreeRegressor

from .exceptions import ShapeMismatch

# Marker sklearn uses for "no child" in tree_.children_left / children_right.
TREE_LEAF = -1


# ===========================
# Data preparation
# ===========================

class PredictorEncoder:
    """
    Turns a predictor table into a float matrix the trees can consume.

    Numeric columns pass through. Non-numeric and ``category`` columns are
    replaced by their category codes, with missing values (and categories not
    seen during fitting) mapped to NaN so that the trees route them with their
    missing-value policy.
    """

    def __init__(self):
        self.feature_names_: List[str] = []
        self.categories_: Dict[str, pd.Index] = {}

    def fit(self, X) -> "PredictorEncoder":
        frame = self._as_frame(X)
        self.feature_names_ = [str(c) for c in frame.columns]
        self.categories_ = {}
        for name, column in zip(self.feature_names_, frame.columns):
            series = frame[column]
            if isinstance(series.dtype, pd.CategoricalDtype):
                self.categories_[name] = series.cat.categories
            elif not pd.api.types.is_numeric_dtype(series):
                self.categories_[name] = pd.Categorical(series.dropna()).categories
        return self

    def transform(self, X) -> np.ndarray:
        frame = self._as_frame(X, columns=self.feature_names_)
        if frame.shape[1] != len(self.feature_names_):
            raise ShapeMismatch(
                f"X has {frame.shape[1]} predictors, model was fit with {len(self.feature_names_)}"
            )
        out = np.empty(frame.shape, dtype=float)
        for j, name in enumerate(self.feature_names_):
            series = frame.iloc[:, j]
            if name in self.categories_:
                codes = pd.Categorical(series, categories=self.categories_[name]).codes
                col = codes.astype(float)
                col[codes < 0] = np.nan
                out[:, j] = col
            else:
                out[:, j] = pd.to_numeric(series, errors="raise").to_numpy(dtype=float)
        return out

    def fit_transform(self, X) -> np.ndarray:
        return self.fit(X).transform(X)

    @staticmethod
    def _as_frame(X, columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
        if isinstance(X, pd.DataFrame):
            frame = X.copy()
            frame.columns = [str(c) for c in frame.columns]
            if columns is not None:
                missing = [c for c in columns if c not in frame.columns]
                if missing:
                    raise ShapeMismatch(f"X is missing predictor columns {missing}")
                frame = frame[list(columns)]
            return frame
        arr = np.asarray(X)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2:
            raise ShapeMismatch(f"X must be 2-dimensional, got {arr.ndim} dimensions")
        names = list(columns) if columns is not None and len(columns) == arr.shape[1] else None
        if names is None:
            names = [f"x{j + 1}" for j in range(arr.shape[1])]
        return pd.DataFrame(arr, columns=names)


def prepare_outcomes(Y) -> Tuple[np.ndarray, List[str]]:
    """
    Coerce outcomes to a float (n_samples, n_outcomes) matrix plus outcome names.

    A 1-D vector is treated as a single outcome.
    """
    if isinstance(Y, pd.Series):
        Y = Y.to_frame()
    if isinstance(Y, pd.DataFrame):
        names = [str(c) for c in Y.columns]
        values = Y.to_numpy(dtype=float)
    else:
        values = np.asarray(Y, dtype=float)
        if values.ndim == 1:
            values = values.reshape(-1, 1)
        if values.ndim != 2:
            raise ShapeMismatch(f"Y must be 1- or 2-dimensional, got {values.ndim} dimensions")
        names = [f"y{k + 1}" for k in range(values.shape[1])]
    if values.shape[1] < 1:
        raise ShapeMismatch("Y must contain at least one outcome")
    if np.isnan(values).any():
        raise ValueError("Y contains missing values; outcomes must be complete")
    return values, names


def split_train_test(n_samples: int, train_fraction: float) -> Tuple[np.ndarray, np.ndarray]:
    """The first floor(train_fraction * n) rows train, the rest are held out."""
    n_train = int(np.floor(train_fraction * n_samples))
    n_train = min(max(n_train, 1), n_samples)
    return np.arange(n_train), np.arange(n_train, n_samples)


# ===========================
# Losses and covariance
# ===========================

def mse_per_outcome(residuals: np.ndarray) -> np.ndarray:
    """Mean squared residual per outcome column, shape (n_outcomes,)."""
    return np.mean(residuals ** 2, axis=0)


def residual_covariance(residuals: np.ndarray) -> np.ndarray:
    """Sample covariance (ddof=1) between outcome columns, always (Q, Q)."""
    n_outcomes = residuals.shape[1]
    if residuals.shape[0] < 2:
        return np.zeros((n_outcomes, n_outcomes))
    return np.atleast_2d(np.cov(residuals, rowvar=False))


def outcome_pairs(n_outcomes: int) -> Tuple[np.ndarray, np.ndarray]:
    """Upper-triangle (incl. diagonal) index pairs in row-major order: 1-1, 1-2, ..., Q-Q."""
    return np.triu_indices(n_outcomes)


def n_outcome_pairs(n_outcomes: int) -> int:
    return n_outcomes * (n_outcomes + 1) // 2


def pair_labels(outcome_names: Sequence[str]) -> List[str]:
    rows, cols = outcome_pairs(len(outcome_names))
    return [f"{outcome_names[i]}-{outcome_names[j]}" for i, j in zip(rows, cols)]


# ===========================
# Tree introspection
# ===========================

def split_improvements(tree: DecisionTreeRegressor, n_features: int) -> np.ndarray:
    """
    Squared-error reduction contributed by each predictor in a fitted tree.

    For each internal node: N_t * imp_t - N_left * imp_left - N_right * imp_right,
    summed over the nodes splitting on that predictor.
    """
    t = tree.tree_
    left = t.children_left
    right = t.children_right
    internal = np.flatnonzero(left != TREE_LEAF)
    improvements = np.zeros(n_features)
    if internal.size == 0:
        return improvements
    w = t.weighted_n_node_samples
    imp = t.impurity
    gain = (
        w[internal] * imp[internal]
        - w[left[internal]] * imp[left[internal]]
        - w[right[internal]] * imp[right[internal]]
    )
    np.add.at(improvements, t.feature[internal], np.maximum(gain, 0.0))
    return improvements


def tree_predictors(tree: DecisionTreeRegressor) -> np.ndarray:
    """Sorted indices of predictors used in at least one split."""
    t = tree.tree_
    return np.unique(t.feature[t.children_left != TREE_LEAF])


# ===========================
# Metrics
# ===========================

def compute_metrics_regression(Y_true: np.ndarray, Y_pred: np.ndarray) -> dict:
    """Per-outcome regression metrics, each an array of shape (n_outcomes,)."""
    Y_true = np.atleast_2d(np.asarray(Y_true, dtype=float).T).T
    Y_pred = np.atleast_2d(np.asarray(Y_pred, dtype=float).T).T
    mse = mean_squared_error(Y_true, Y_pred, multioutput="raw_values")
    return {
        "mse": mse,
        "rmse": np.sqrt(mse),
        "mae": mean_absolute_error(Y_true, Y_pred, multioutput="raw_values"),
        "r2": r2_score(Y_true, Y_pred, multioutput="raw_values"),
    }
