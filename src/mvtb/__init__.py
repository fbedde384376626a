"""
Multivariate tree boosting.

Fits boosted regression trees to several continuous outcomes jointly, shares
the learning rate and ensemble size across them, and measures how much of the
covariance between outcomes each predictor explains.
"""

from .config import BoostingConfig
from .core import MultivariateTreeBoost, fit
from .cluster import ClusterResult, CovexClusterer, DistanceMethod, LinkageMethod
from .exceptions import FoldFailure, InvalidConfiguration, MVTBError, ShapeMismatch
from .interpret import nonlinearity, relative_influence, summary

__version__ = "0.1.0"
__all__ = [
    "MultivariateTreeBoost",
    "BoostingConfig",
    "fit",
    "CovexClusterer",
    "ClusterResult",
    "DistanceMethod",
    "LinkageMethod",
    "relative_influence",
    "summary",
    "nonlinearity",
    "MVTBError",
    "ShapeMismatch",
    "InvalidConfiguration",
    "FoldFailure",
]
