"""
Hierarchical clustering of the covariance-explained matrix.

Predictors (rows) with similar covex profiles, and optionally outcome pairs
(columns) explained by similar predictors, are placed next to each other so a
heatmap of the reordered matrix shows the block structure. The supported
distance and linkage methods form a closed set; each name maps to the scipy
implementation through a lookup table.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Union
import warnings
import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import leaves_list, linkage
from scipy.spatial.distance import pdist

from .exceptions import InvalidConfiguration


class DistanceMethod(str, Enum):
    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"
    MAXIMUM = "maximum"
    CANBERRA = "canberra"
    CORRELATION = "correlation"
    COSINE = "cosine"


class LinkageMethod(str, Enum):
    SINGLE = "single"
    COMPLETE = "complete"
    AVERAGE = "average"
    WEIGHTED = "weighted"
    CENTROID = "centroid"
    MEDIAN = "median"
    WARD = "ward"


_SCIPY_METRIC = {
    DistanceMethod.EUCLIDEAN: "euclidean",
    DistanceMethod.MANHATTAN: "cityblock",
    DistanceMethod.MAXIMUM: "chebyshev",
    DistanceMethod.CANBERRA: "canberra",
    DistanceMethod.CORRELATION: "correlation",
    DistanceMethod.COSINE: "cosine",
}

_EUCLIDEAN_LINKAGES = (LinkageMethod.CENTROID, LinkageMethod.MEDIAN, LinkageMethod.WARD)

_DISTANCE_ALIASES = {
    "cityblock": DistanceMethod.MANHATTAN,
    "chebyshev": DistanceMethod.MAXIMUM,
}

_LINKAGE_ALIASES = {
    "mcquitty": LinkageMethod.WEIGHTED,
    "ward.d2": LinkageMethod.WARD,
}


def _parse(value, enum_cls, aliases, kind: str):
    if isinstance(value, enum_cls):
        return value
    name = str(value).strip().lower()
    if name in aliases:
        return aliases[name]
    try:
        return enum_cls(name)
    except ValueError:
        options = ", ".join(m.value for m in enum_cls)
        raise InvalidConfiguration(f"unknown {kind} method {value!r}; choose from {options}") from None


def parse_distance(value: Union[str, DistanceMethod]) -> DistanceMethod:
    return _parse(value, DistanceMethod, _DISTANCE_ALIASES, "distance")


def parse_linkage(value: Union[str, LinkageMethod]) -> LinkageMethod:
    return _parse(value, LinkageMethod, _LINKAGE_ALIASES, "linkage")


def pairwise_distances(matrix: np.ndarray, method: Union[str, DistanceMethod], **dist_args) -> np.ndarray:
    """
    Condensed distance vector between the rows of ``matrix``.

    Correlation and cosine distances are undefined for all-zero rows (e.g. a
    predictor that never led a tree); those entries are set to 1, the distance
    of uncorrelated profiles.
    """
    d = pdist(np.asarray(matrix, dtype=float), metric=_SCIPY_METRIC[parse_distance(method)], **dist_args)
    return np.where(np.isfinite(d), d, 1.0)


@dataclass
class ClusterResult:
    """Reordering of a covex matrix plus the dendrograms that produced it."""

    matrix: np.ndarray  # reordered
    row_order: np.ndarray
    col_order: np.ndarray
    row_linkage: Optional[np.ndarray]
    col_linkage: Optional[np.ndarray]
    row_labels: List[str]
    col_labels: List[str]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.matrix, index=self.row_labels, columns=self.col_labels)


class CovexClusterer:
    """
    Agglomerative clustering of covex rows and columns.

    Args:
        dist_method: Distance between row (column) profiles.
        linkage_method: Agglomeration rule. Centroid, median and ward assume
            Euclidean distances and warn when combined with another metric.
        dist_args: Extra keyword arguments for ``scipy.spatial.distance.pdist``
            (e.g. ``p`` or ``w``).

    The linkage matrices follow scipy's convention: each row is a merge
    ``[cluster_a, cluster_b, height, size]``.
    """

    def __init__(
        self,
        dist_method: Union[str, DistanceMethod] = DistanceMethod.EUCLIDEAN,
        linkage_method: Union[str, LinkageMethod] = LinkageMethod.COMPLETE,
        dist_args: Optional[dict] = None,
    ):
        self.dist_method = parse_distance(dist_method)
        self.linkage_method = parse_linkage(linkage_method)
        self.dist_args = dict(dist_args or {})
        if self.linkage_method in _EUCLIDEAN_LINKAGES and self.dist_method is not DistanceMethod.EUCLIDEAN:
            warnings.warn(
                f"{self.linkage_method.value} linkage assumes Euclidean distances; "
                f"heights under {self.dist_method.value} distance are not geometrically meaningful",
                UserWarning,
                stacklevel=2,
            )

    def order(self, matrix: np.ndarray):
        """Dendrogram leaf order and linkage for the rows of ``matrix``."""
        n = matrix.shape[0]
        if n < 2:
            return np.arange(n), None
        Z = linkage(
            pairwise_distances(matrix, self.dist_method, **self.dist_args),
            method=self.linkage_method.value,
        )
        return leaves_list(Z), Z

    def cluster(
        self,
        covex: np.ndarray,
        cluster_rows: bool = True,
        cluster_cols: bool = True,
        row_labels: Optional[Sequence[str]] = None,
        col_labels: Optional[Sequence[str]] = None,
    ) -> ClusterResult:
        """Cluster a covex matrix without modifying it."""
        if isinstance(covex, pd.DataFrame):
            row_labels = row_labels if row_labels is not None else [str(i) for i in covex.index]
            col_labels = col_labels if col_labels is not None else [str(c) for c in covex.columns]
        matrix = np.array(covex, dtype=float)
        if matrix.ndim != 2:
            raise InvalidConfiguration(f"covex must be 2-dimensional, got {matrix.ndim} dimensions")
        n_rows, n_cols = matrix.shape
        row_labels = list(row_labels) if row_labels is not None else [f"x{j + 1}" for j in range(n_rows)]
        col_labels = list(col_labels) if col_labels is not None else [str(k) for k in range(n_cols)]

        row_order, row_Z = self.order(matrix) if cluster_rows else (np.arange(n_rows), None)
        col_order, col_Z = self.order(matrix.T) if cluster_cols else (np.arange(n_cols), None)

        return ClusterResult(
            matrix=matrix[np.ix_(row_order, col_order)],
            row_order=row_order,
            col_order=col_order,
            row_linkage=row_Z,
            col_linkage=col_Z,
            row_labels=[row_labels[i] for i in row_order],
            col_labels=[col_labels[i] for i in col_order],
        )
