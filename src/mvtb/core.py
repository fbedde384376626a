"""
Multivariate tree boosting.

Fits one boosted tree ensemble per outcome, with the boosting rounds shared
round-robin across outcomes. Round r updates outcome (r - 1) mod Q:

1. Σ_before = cov(residuals on training rows).
2. Fit a depth-limited least-squares tree f to that outcome's residual
   (optionally on a bag subsample of the training rows).
3. residual_k ← residual_k − ν f   (all rows, so test error can be tracked).
4. Σ_after = cov(updated residuals on training rows).
5. Attribute (Σ_before − Σ_after)² to the tree's most influential predictor.

Because a single learning rate and a single round count govern all outcomes,
error curves and the covariance-explained matrix are comparable across them.

References:
- Friedman, J. H. (2001). Greedy function approximation: A gradient boosting machine.
  Annals of Statistics, 29(5), 1189-1232.
- Friedman, J. H. (2002). Stochastic gradient boosting. Computational Statistics
  & Data Analysis, 38(4), 367-378.
- Miller, P. J., Lubke, G. H., McArtor, D. B., & Bergeman, C. S. (2016). Finding
  structure in data using multivariate tree boosting. Psychological Methods,
  21(4), 583-602.
"""

from typing import Dict, List, Optional, Sequence, Union
import logging
import numpy as np
import pandas as pd
from sklearn.exceptions import NotFittedError

from .config import BoostingConfig
from .covex import CovarianceExplainedAccumulator, covex_frame
from .cluster import ClusterResult, CovexClusterer
from .coordinator import ResidualUpdateCoordinator, RoundRecord
from .cv import CrossValidationOrchestrator, CVResult
from .exceptions import InvalidConfiguration, ShapeMismatch
from .prediction import PredictionEngine
from .tracking import ErrorSource, ErrorTracker
from .tree import TreeRecord
from .utils import PredictorEncoder, prepare_outcomes, split_train_test
from . import interpret


class MultivariateTreeBoost:
    """
    Multivariate tree boosting for several continuous outcomes.

    Implements squared-error gradient tree boosting where each outcome owns its
    own ensemble but all outcomes share the learning rate, the number of rounds
    and the model-selection curve. Alongside the ensembles the fit produces the
    covariance-explained matrix ``covex_`` (predictors × outcome pairs).

    Example:
        >>> model = MultivariateTreeBoost(n_trees=500, shrinkage=0.05,
        ...                               interaction_depth=2, cv_folds=5)
        >>> model.fit(X, Y)
        >>> Y_hat = model.predict(X_new)          # (n, Q, 1) at best iteration
        >>> model.cluster("euclidean", "complete").matrix
    """

    def __init__(
        self,
        n_trees: int = 100,
        shrinkage: float = 0.01,
        interaction_depth: int = 1,
        bag_fraction: float = 1.0,
        train_fraction: float = 1.0,
        cv_folds: int = 0,
        n_workers: int = 1,
        random_state: Optional[int] = None,
        n_minobsinnode: int = 5,
        verbose: bool = False,
        config: Optional[BoostingConfig] = None,
    ):
        """
        Args:
            n_trees: Total boosting rounds N, shared round-robin across outcomes.
            shrinkage: Learning rate ν ∈ (0, 1].
            interaction_depth: Maximum depth of each tree.
            bag_fraction: Fraction of training rows sampled per tree.
            train_fraction: Fraction of leading rows used for training.
            cv_folds: Cross-validation folds (0 disables, must otherwise be >= 2).
            n_workers: Maximum number of fold workers run concurrently.
            random_state: Random seed for reproducibility.
            n_minobsinnode: Minimum rows per terminal node.
            verbose: Enable logging output.
            config: Complete configuration; overrides the individual arguments.
        """
        if config is None:
            config = BoostingConfig(
                n_trees=n_trees,
                shrinkage=shrinkage,
                interaction_depth=interaction_depth,
                bag_fraction=bag_fraction,
                train_fraction=train_fraction,
                cv_folds=cv_folds,
                n_workers=n_workers,
                random_state=random_state,
                n_minobsinnode=n_minobsinnode,
            )
        self.config = config
        self.verbose = verbose

        # Model state
        self.init_: Optional[np.ndarray] = None
        self.ensembles_: List[List[TreeRecord]] = []
        self.covex_: Optional[np.ndarray] = None
        self.covex_cv_: Optional[np.ndarray] = None
        self.cv_result_: Optional[CVResult] = None
        self.tracker_: Optional[ErrorTracker] = None
        self.rounds_: List[RoundRecord] = []
        self.n_degenerate_: int = 0
        self.feature_names_: List[str] = []
        self.outcome_names_: List[str] = []
        self.encoder_: Optional[PredictorEncoder] = None

        # Setup logging
        self.logger = logging.getLogger(__name__)
        if self.verbose:
            logging.basicConfig(level=logging.INFO)

    # ---------------- fitting ----------------

    def fit(self, X, Y) -> "MultivariateTreeBoost":
        """
        Fit the multivariate ensemble.

        Args:
            X: Predictors, array or DataFrame of shape (n_samples, n_features).
                Non-numeric columns are treated as categorical; NaN is missing.
            Y: Outcomes, shape (n_samples, n_outcomes) or (n_samples,).

        Returns:
            self
        """
        cfg = self.config.validate()
        encoder = PredictorEncoder()
        Xa = encoder.fit_transform(X)
        Ya, outcome_names = prepare_outcomes(Y)
        if Xa.shape[0] != Ya.shape[0]:
            raise ShapeMismatch(
                f"X has {Xa.shape[0]} rows but Y has {Ya.shape[0]}"
            )
        if Xa.shape[1] < 1:
            raise ShapeMismatch("X must contain at least one predictor")

        train_rows, test_rows = split_train_test(Xa.shape[0], cfg.train_fraction)
        if len(train_rows) < 2:
            raise InvalidConfiguration(
                f"train_fraction={cfg.train_fraction} leaves {len(train_rows)} training row(s); "
                "at least 2 are needed to estimate covariances"
            )
        if cfg.cross_validate and cfg.cv_folds > len(train_rows):
            raise InvalidConfiguration(
                f"cv_folds={cfg.cv_folds} exceeds the {len(train_rows)} training rows"
            )

        n_outcomes = Ya.shape[1]

        # Fitted attributes are only assigned once every stage has succeeded,
        # so a failed refit leaves the previous fit untouched
        tracker = ErrorTracker(n_outcomes)
        cv_result = None
        if cfg.cross_validate:
            self.logger.info(f"Running {cfg.cv_folds}-fold cross-validation")
            cv_result = CrossValidationOrchestrator(cfg, verbose=self.verbose).run(
                Xa[train_rows], Ya[train_rows]
            )
            tracker.set_cv_curve(cv_result.curve)

        # Initialise f_0 = mean of each outcome on the training rows
        init = Ya[train_rows].mean(axis=0)
        residuals = Ya - init

        accumulator = CovarianceExplainedAccumulator(Xa.shape[1], n_outcomes)
        coordinator = ResidualUpdateCoordinator(
            Xa, n_outcomes, cfg, train_rows, test_rows,
            tracker=tracker, accumulator=accumulator, verbose=self.verbose,
        )
        coordinator.run(residuals)

        self.encoder_ = encoder
        self.feature_names_ = list(encoder.feature_names_)
        self.outcome_names_ = outcome_names
        self.cv_result_ = cv_result
        self.covex_cv_ = None if cv_result is None else cv_result.covex_sum
        self.init_ = init
        self.tracker_ = tracker.finalize()
        self.ensembles_ = coordinator.ensembles
        self.rounds_ = coordinator.rounds
        self.covex_ = accumulator.covex
        self.n_degenerate_ = coordinator.n_degenerate
        if self.n_degenerate_:
            self.logger.warning(
                f"{self.n_degenerate_} of {cfg.n_trees} rounds produced a single-leaf tree"
            )
        self.logger.info(f"Best iterations: {self.best_iterations_}")
        return self

    # ---------------- fitted quantities ----------------

    def _check_is_fitted(self) -> None:
        if self.tracker_ is None:
            raise NotFittedError(
                "This MultivariateTreeBoost instance is not fitted yet. Call 'fit' first."
            )

    @property
    def n_trees_(self) -> int:
        self._check_is_fitted()
        return self.config.n_trees

    @property
    def best_iteration_(self) -> int:
        """Best round under the test > CV > train precedence."""
        self._check_is_fitted()
        return self.tracker_.best_iteration()

    @property
    def best_iterations_(self) -> Dict[str, int]:
        self._check_is_fitted()
        return self.tracker_.best_iterations()

    @property
    def train_error_(self) -> np.ndarray:
        self._check_is_fitted()
        return self.tracker_.curve(ErrorSource.TRAIN)

    @property
    def test_error_(self) -> Optional[np.ndarray]:
        self._check_is_fitted()
        return self.tracker_.curve(ErrorSource.TEST)

    @property
    def cv_error_(self) -> Optional[np.ndarray]:
        self._check_is_fitted()
        return self.tracker_.curve(ErrorSource.CV)

    def covex_cv(self, average: bool = False) -> Optional[np.ndarray]:
        """
        Covex accumulated over the CV folds (None without CV).

        Args:
            average: Return the fold mean instead of the fold sum.
        """
        self._check_is_fitted()
        if self.cv_result_ is None:
            return None
        return self.cv_result_.covex_mean if average else self.cv_result_.covex_sum

    def covex_frame(self) -> pd.DataFrame:
        self._check_is_fitted()
        return covex_frame(self.covex_, self.feature_names_, self.outcome_names_)

    def prediction_engine(self) -> PredictionEngine:
        self._check_is_fitted()
        return PredictionEngine(
            self.ensembles_, self.init_, self.config.shrinkage,
            self.config.n_trees, len(self.feature_names_),
        )

    # ---------------- prediction ----------------

    def encode(self, X) -> np.ndarray:
        """Apply the fitted predictor encoding (categorical codes, NaN for missing)."""
        self._check_is_fitted()
        return self.encoder_.transform(X)

    def predict(self, X, n_trees: Optional[Union[int, Sequence[int]]] = None) -> np.ndarray:
        """
        Predict all outcomes at one or more iteration counts.

        Args:
            X: Predictors with the same columns as in ``fit``.
            n_trees: Iteration count(s); defaults to ``best_iteration_``.

        Returns:
            Predictions, shape (n_samples, n_outcomes, n_counts).
        """
        self._check_is_fitted()
        if n_trees is None:
            n_trees = self.best_iteration_
        return self.prediction_engine().predict(self.encode(X), n_trees)

    # ---------------- interpretation ----------------

    def relative_influence(self, n_trees: Optional[int] = None, relative: str = "col") -> pd.DataFrame:
        return interpret.relative_influence(self, n_trees=n_trees, relative=relative)

    def summary(self, n_trees: Optional[int] = None, relative: str = "col") -> dict:
        return interpret.summary(self, n_trees=n_trees, relative=relative)

    def cluster(
        self,
        dist_method: str = "euclidean",
        linkage_method: str = "complete",
        cluster_cols: bool = True,
    ) -> ClusterResult:
        """Hierarchically cluster the covex matrix for display."""
        self._check_is_fitted()
        clusterer = CovexClusterer(dist_method, linkage_method)
        return clusterer.cluster(
            self.covex_,
            cluster_cols=cluster_cols,
            row_labels=self.feature_names_,
            col_labels=self.covex_frame().columns,
        )

    def uncompress(self) -> Dict[str, List]:
        """Per-outcome lists of fitted sklearn trees, in round order."""
        self._check_is_fitted()
        return {
            name: [rec.tree for rec in ensemble]
            for name, ensemble in zip(self.outcome_names_, self.ensembles_)
        }


def fit(X, Y, **params) -> MultivariateTreeBoost:
    """Shortcut for ``MultivariateTreeBoost(**params).fit(X, Y)``."""
    return MultivariateTreeBoost(**params).fit(X, Y)
