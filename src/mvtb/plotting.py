"""
Plots for fitted multivariate boosting models: error curves and covex heatmaps.
"""

from typing import Optional
import numpy as np
import matplotlib.pyplot as plt

from .cluster import CovexClusterer
from .tracking import ErrorSource


def plot_error_curves(model, outcome: Optional[int] = None, ax=None):
    """
    Train / test / CV error against boosting round, with the best round marked.

    Args:
        model: Fitted ``MultivariateTreeBoost``.
        outcome: Plot one outcome's curves instead of the overall sum.
        ax: Axes to draw on; a new figure is created when None.
    """
    model._check_is_fitted()
    if ax is None:
        _, ax = plt.subplots(figsize=(7, 4))

    tracker = model.tracker_
    rounds = np.arange(1, tracker.n_rounds + 1)
    for source in (ErrorSource.TRAIN, ErrorSource.TEST, ErrorSource.CV):
        curve = tracker.curve(source, per_outcome=outcome is not None)
        if curve is None:
            continue
        if outcome is not None:
            curve = curve[:, outcome]
        ax.plot(rounds, curve, label=source.value.capitalize(), linewidth=2)

    best = tracker.best_iteration(outcome=outcome)
    ax.axvline(best, color="grey", linestyle="--", linewidth=1, label=f"Best = {best}")
    ax.set_xlabel("Round")
    ax.set_ylabel("MSE")
    title = "All outcomes" if outcome is None else model.outcome_names_[outcome]
    ax.set_title(title)
    ax.legend()
    ax.grid(True, alpha=0.3)
    return ax


def plot_covex_heatmap(
    model,
    clustered: bool = True,
    dist_method: str = "euclidean",
    linkage_method: str = "complete",
    cmap: str = "Blues",
    ax=None,
):
    """
    Heatmap of the covex matrix, optionally reordered by hierarchical clustering.

    Returns:
        The Axes holding the image.
    """
    model._check_is_fitted()
    if ax is None:
        _, ax = plt.subplots(figsize=(8, 6))

    frame = model.covex_frame()
    if clustered:
        result = CovexClusterer(dist_method, linkage_method).cluster(frame)
        matrix, rows, cols = result.matrix, result.row_labels, result.col_labels
    else:
        matrix, rows, cols = frame.to_numpy(), list(frame.index), list(frame.columns)

    image = ax.imshow(matrix, aspect="auto", cmap=cmap, interpolation="nearest")
    ax.set_xticks(np.arange(len(cols)))
    ax.set_xticklabels(cols, rotation=45, ha="right")
    ax.set_yticks(np.arange(len(rows)))
    ax.set_yticklabels(rows)
    ax.set_xlabel("Outcome pair")
    ax.set_ylabel("Predictor")
    ax.figure.colorbar(image, ax=ax, label="Covariance explained")
    return ax
