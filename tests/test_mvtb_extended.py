"""
Extended tests for multivariate tree boosting.

Coverage:
- Configuration validation happens before any fitting work
- Error tracking: tie-breaking, source precedence, immutability
- Coordinator state machine
- Cross-validation: curve length, reproducibility, parallel folds, fold failure
- Covex clustering: purity, determinism, method lookup
- Interpretation: relative influence, summary, nonlinearity detection
- Mixed-type predictors, missing values, single outcome
- Plotting and persistence
"""

import pickle
import sys
from pathlib import Path

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest
from sklearn.exceptions import NotFittedError

# ---------- path setup ----------
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

import mvtb.cv as cv_module
from mvtb.cluster import CovexClusterer, DistanceMethod, LinkageMethod
from mvtb.config import BoostingConfig
from mvtb.coordinator import CoordinatorState, ResidualUpdateCoordinator
from mvtb.core import MultivariateTreeBoost, fit
from mvtb.cv import CrossValidationOrchestrator
from mvtb.exceptions import FoldFailure, InvalidConfiguration, ShapeMismatch
from mvtb.interpret import departure_from_additivity, nonlinearity, relative_influence
from mvtb.plotting import plot_covex_heatmap, plot_error_curves
from mvtb.tracking import ErrorSource, ErrorTracker


def make_data(n_samples=150, n_features=4, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.uniform(-2, 2, size=(n_samples, n_features))
    shared = 2 * np.sin(X[:, 0])
    Y = np.column_stack([
        shared + X[:, 1] + 0.2 * rng.standard_normal(n_samples),
        shared - 0.5 * X[:, 2] + 0.2 * rng.standard_normal(n_samples),
    ])
    return X, Y


# =============================================================================
# Configuration
# =============================================================================


class TestConfigValidation:
    """Invalid settings are rejected eagerly with InvalidConfiguration."""

    @pytest.mark.parametrize("changes", [
        {"shrinkage": 0.0},
        {"shrinkage": -0.1},
        {"shrinkage": 1.5},
        {"bag_fraction": 1.2},
        {"bag_fraction": 0.0},
        {"train_fraction": 0.0},
        {"cv_folds": 1},
        {"cv_folds": -2},
        {"n_trees": 0},
        {"interaction_depth": 0},
        {"n_workers": 0},
        {"n_minobsinnode": 0},
        {"random_state": 1.5},
    ])
    def test_invalid_settings(self, changes):
        with pytest.raises(InvalidConfiguration):
            BoostingConfig(**changes).validate()

    def test_default_config_is_valid(self):
        cfg = BoostingConfig()
        assert cfg.validate() is cfg
        assert not cfg.cross_validate

    def test_configuration_checked_before_data(self):
        """A bad config wins over mismatched data: nothing is fitted."""
        X, Y = make_data()
        model = MultivariateTreeBoost(shrinkage=0.0)
        with pytest.raises(InvalidConfiguration):
            model.fit(X, Y[:-5])
        assert model.tracker_ is None

    def test_too_many_folds_for_data(self):
        X, Y = make_data(n_samples=10)
        with pytest.raises(InvalidConfiguration):
            MultivariateTreeBoost(n_trees=5, cv_folds=11).fit(X, Y)

    def test_config_object_overrides_arguments(self):
        cfg = BoostingConfig(n_trees=8, shrinkage=0.2, random_state=3)
        model = MultivariateTreeBoost(n_trees=500, config=cfg)
        X, Y = make_data(n_samples=40)
        model.fit(X, Y)
        assert model.n_trees_ == 8
        assert len(model.train_error_) == 8


# =============================================================================
# Error tracking
# =============================================================================


class TestErrorTracker:

    def test_ties_go_to_earliest_round(self):
        tracker = ErrorTracker(n_outcomes=1)
        train = np.array([0])
        for value in [2.0, 1.0, 1.0, 1.5]:
            tracker.record(np.array([[value]]), train)
        tracker.finalize()

        np.testing.assert_allclose(tracker.curve("train"), [4.0, 1.0, 1.0, 2.25])
        assert tracker.best_iteration("train") == 2

    def _tracker(self, with_test=True, with_cv=True):
        tracker = ErrorTracker(n_outcomes=1)
        for train_r, test_r in [(3.0, 1.0), (2.0, 2.0), (1.0, 3.0)]:
            residuals = np.array([[train_r], [test_r]])
            tracker.record(residuals, np.array([0]), np.array([1]) if with_test else None)
        if with_cv:
            tracker.set_cv_curve(np.array([[5.0], [0.5], [6.0]]))
        return tracker.finalize()

    def test_precedence_test_then_cv_then_train(self):
        full = self._tracker()
        assert full.best_iterations() == {"test": 1, "cv": 2, "train": 3}
        assert full.best_iteration() == 1

        no_test = self._tracker(with_test=False)
        assert no_test.available() == [ErrorSource.CV, ErrorSource.TRAIN]
        assert no_test.best_iteration() == 2

        train_only = self._tracker(with_test=False, with_cv=False)
        assert train_only.best_iteration() == 3
        assert train_only.curve(ErrorSource.TEST) is None

    def test_curves_are_frozen(self):
        tracker = self._tracker()
        curve = tracker.curve("cv", per_outcome=True)
        assert not curve.flags.writeable
        with pytest.raises(RuntimeError):
            tracker.record(np.array([[1.0], [1.0]]), np.array([0]))

    def test_per_outcome_and_overall(self):
        tracker = ErrorTracker(n_outcomes=2)
        tracker.record(np.array([[1.0, 2.0], [1.0, 2.0]]), np.array([0, 1]))
        tracker.finalize()
        np.testing.assert_allclose(tracker.curve("train", per_outcome=True), [[1.0, 4.0]])
        np.testing.assert_allclose(tracker.curve("train"), [5.0])

    def test_query_before_finalize_raises(self):
        tracker = ErrorTracker(n_outcomes=1)
        with pytest.raises(RuntimeError):
            tracker.best_iteration()


# =============================================================================
# Coordinator
# =============================================================================


class TestCoordinatorState:

    def test_state_transitions(self):
        X, Y = make_data(n_samples=40)
        cfg = BoostingConfig(n_trees=3, shrinkage=0.1, random_state=0)
        coord = ResidualUpdateCoordinator(X, 2, cfg, np.arange(40))
        assert coord.state is CoordinatorState.IDLE

        residuals = coord.step(Y - Y.mean(axis=0))
        assert coord.state is CoordinatorState.UPDATED
        assert coord.current_outcome == 1

        residuals = coord.run(residuals)
        assert coord.state is CoordinatorState.TERMINAL
        assert coord.n_completed == 3
        with pytest.raises(RuntimeError):
            coord.step(residuals)

    def test_wrong_residual_shape(self):
        X, Y = make_data(n_samples=40)
        coord = ResidualUpdateCoordinator(X, 2, BoostingConfig(n_trees=2), np.arange(40))
        with pytest.raises(ShapeMismatch):
            coord.step(Y[:, :1])

    def test_degenerate_rounds_are_counted_not_raised(self):
        """A constant outcome yields single-leaf trees; the other outcome keeps boosting."""
        X, Y = make_data(n_samples=60)
        Y[:, 1] = 3.0
        model = MultivariateTreeBoost(n_trees=10, shrinkage=0.1, random_state=0).fit(X, Y)

        assert model.n_degenerate_ == 5
        assert all(r.degenerate for r in model.rounds_ if r.outcome == 1)
        assert not any(r.degenerate for r in model.rounds_ if r.outcome == 0)
        assert model.summary()["n_degenerate"] == 5

    def test_constant_nonzero_outcome_adds_no_influence(self):
        X, Y = make_data(n_samples=60)
        Y[:, 1] = 0.7
        model = MultivariateTreeBoost(n_trees=10, shrinkage=0.1, interaction_depth=3,
                                      random_state=0).fit(X, Y)

        assert model.n_degenerate_ == 5
        ri = model.relative_influence(n_trees=10, relative="none")
        np.testing.assert_array_equal(ri["y2"].to_numpy(), 0.0)
        assert np.all(ri["y1"].to_numpy() >= 0.0)

    def test_test_rows_are_tracked(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=20, shrinkage=0.1, train_fraction=0.8,
                                      random_state=0).fit(X, Y)
        assert model.test_error_.shape == (20,)
        assert set(model.best_iterations_) == {"test", "train"}
        assert model.best_iteration_ == model.best_iterations_["test"]
        # f_0 uses the training rows only
        np.testing.assert_allclose(model.init_, Y[:120].mean(axis=0))


# =============================================================================
# Cross-validation
# =============================================================================


class TestCrossValidation:

    @pytest.mark.parametrize("k", [2, 3, 5])
    def test_cv_curve_length_equals_rounds(self, k):
        X, Y = make_data(n_samples=80)
        model = MultivariateTreeBoost(n_trees=15, shrinkage=0.1, cv_folds=k,
                                      random_state=0).fit(X, Y)
        assert model.cv_error_.shape == (15,)
        assert len(model.cv_result_.folds) == k
        assert model.best_iteration_ == model.best_iterations_["cv"]

    def test_fold_assignment_balanced_and_seeded(self):
        cfg = BoostingConfig(cv_folds=4, random_state=7)
        a = CrossValidationOrchestrator(cfg).assign_folds(42)
        b = CrossValidationOrchestrator(cfg).assign_folds(42)
        np.testing.assert_array_equal(a, b)
        counts = np.bincount(a)
        assert counts.max() - counts.min() <= 1

    def test_primary_covex_comes_from_full_fit(self):
        X, Y = make_data(n_samples=80)
        params = dict(n_trees=12, shrinkage=0.1, random_state=0)
        plain = MultivariateTreeBoost(**params).fit(X, Y)
        with_cv = MultivariateTreeBoost(cv_folds=3, **params).fit(X, Y)

        np.testing.assert_array_equal(plain.covex_, with_cv.covex_)
        assert plain.covex_cv() is None

    def test_cv_covex_sum_and_mean(self):
        X, Y = make_data(n_samples=80)
        model = MultivariateTreeBoost(n_trees=12, shrinkage=0.1, cv_folds=4,
                                      random_state=0).fit(X, Y)
        total = model.covex_cv()
        mean = model.covex_cv(average=True)
        np.testing.assert_allclose(total, 4 * mean)
        np.testing.assert_array_equal(model.covex_cv_, total)
        assert total.shape == model.covex_.shape

    def test_parallel_folds_match_sequential(self):
        X, Y = make_data(n_samples=80)
        params = dict(n_trees=10, shrinkage=0.1, cv_folds=3, bag_fraction=0.7, random_state=1)
        seq = MultivariateTreeBoost(n_workers=1, **params).fit(X, Y)
        par = MultivariateTreeBoost(n_workers=3, **params).fit(X, Y)
        np.testing.assert_allclose(seq.cv_error_, par.cv_error_)

    def test_fold_failure_aborts_run(self, monkeypatch):
        def failing_fold(fold, *args, **kwargs):
            raise ValueError("boom")

        monkeypatch.setattr(cv_module, "fit_fold", failing_fold)
        X, Y = make_data(n_samples=40)
        model = MultivariateTreeBoost(n_trees=5, cv_folds=2, random_state=0)
        with pytest.raises(FoldFailure) as info:
            model.fit(X, Y)
        assert info.value.fold == 0
        assert isinstance(info.value.__cause__, ValueError)
        assert model.tracker_ is None

    def test_parallel_fold_failure_aborts_run(self):
        """A non-finite outcome breaks every fold that trains on it, in worker processes."""
        X, Y = make_data(n_samples=60)
        Y[0, 1] = np.inf
        cfg = BoostingConfig(n_trees=4, shrinkage=0.1, cv_folds=3, n_workers=2, random_state=0)
        orchestrator = CrossValidationOrchestrator(cfg)
        assignment = orchestrator.assign_folds(len(X))

        with pytest.raises(FoldFailure) as info:
            orchestrator._run_parallel([0, 1, 2], X, Y, assignment, workers=2)
        assert info.value.fold != assignment[0]
        assert isinstance(info.value.__cause__, ValueError)

        with pytest.raises(FoldFailure):
            orchestrator.run(X, Y)

    def test_cv_with_held_out_test_rows(self):
        """Folds are drawn from the training rows only and test error takes precedence."""
        X, Y = make_data(n_samples=80)
        params = dict(n_trees=15, shrinkage=0.1, train_fraction=0.75, cv_folds=3, random_state=0)
        model = MultivariateTreeBoost(**params).fit(X, Y)

        assert len(model.cv_result_.assignment) == 60
        assert set(model.best_iterations_) == {"test", "cv", "train"}
        assert model.best_iteration_ == model.best_iterations_["test"]

        shifted = Y.copy()
        shifted[60:] += 100.0
        other = MultivariateTreeBoost(**params).fit(X, shifted)
        np.testing.assert_array_equal(model.cv_error_, other.cv_error_)
        assert not np.allclose(model.test_error_, other.test_error_)

    def test_failed_refit_keeps_previous_fit(self, monkeypatch):
        X, Y = make_data(n_samples=40)
        model = MultivariateTreeBoost(n_trees=6, shrinkage=0.1, cv_folds=2, random_state=0).fit(X, Y)
        before = model.predict(X, 6)
        covex_cv = model.covex_cv_.copy()

        def failing_fold(fold, *args, **kwargs):
            raise ValueError("boom")

        monkeypatch.setattr(cv_module, "fit_fold", failing_fold)
        with pytest.raises(FoldFailure):
            model.fit(X[:, :3], Y)

        assert model.feature_names_ == ["x1", "x2", "x3", "x4"]
        np.testing.assert_array_equal(model.predict(X, 6), before)
        np.testing.assert_array_equal(model.covex_cv_, covex_cv)


# =============================================================================
# Covex clustering
# =============================================================================


class TestCovexClusterer:

    BLOCKS = np.array([
        [10.0, 10.0, 0.0],
        [9.0, 11.0, 0.0],
        [0.0, 0.0, 10.0],
        [0.0, 1.0, 9.0],
    ])

    def test_block_structure_is_grouped(self):
        result = CovexClusterer("euclidean", "average").cluster(self.BLOCKS)
        assert sorted(result.row_order.tolist()) == [0, 1, 2, 3]
        assert set(result.row_order[:2].tolist()) in ({0, 1}, {2, 3})
        np.testing.assert_array_equal(
            result.matrix, self.BLOCKS[np.ix_(result.row_order, result.col_order)]
        )
        assert result.row_linkage.shape == (3, 4)
        assert result.col_linkage.shape == (2, 4)

    def test_clustering_is_pure_and_deterministic(self):
        covex = self.BLOCKS.copy()
        clusterer = CovexClusterer(DistanceMethod.EUCLIDEAN, LinkageMethod.WARD)
        first = clusterer.cluster(covex)
        second = clusterer.cluster(covex)

        np.testing.assert_array_equal(covex, self.BLOCKS)
        np.testing.assert_array_equal(first.row_order, second.row_order)
        np.testing.assert_array_equal(first.col_order, second.col_order)
        np.testing.assert_array_equal(first.row_linkage, second.row_linkage)

    def test_rows_only(self):
        result = CovexClusterer().cluster(self.BLOCKS, cluster_cols=False)
        np.testing.assert_array_equal(result.col_order, [0, 1, 2])
        assert result.col_linkage is None

    @pytest.mark.parametrize("dist", ["euclidean", "manhattan", "maximum", "canberra",
                                      "correlation", "cosine", "cityblock", "Chebyshev"])
    def test_distance_methods(self, dist):
        covex = np.vstack([self.BLOCKS, np.zeros(3)])
        result = CovexClusterer(dist, "complete").cluster(covex)
        assert np.all(np.isfinite(result.row_linkage))

    def test_unknown_methods_rejected(self):
        with pytest.raises(InvalidConfiguration):
            CovexClusterer("hamming-ish", "complete")
        with pytest.raises(InvalidConfiguration):
            CovexClusterer("euclidean", "fastest")

    @pytest.mark.parametrize("method", ["ward", "centroid", "median"])
    def test_euclidean_linkage_with_other_distance_warns(self, method):
        with pytest.warns(UserWarning, match="assumes Euclidean"):
            clusterer = CovexClusterer("manhattan", method)
        result = clusterer.cluster(self.BLOCKS)
        assert sorted(result.row_order.tolist()) == [0, 1, 2, 3]

    def test_distance_arguments_are_forwarded(self):
        """Weighting only the last column makes rows 0 and 1 coincide."""
        result = CovexClusterer("euclidean", "single", dist_args={"w": [0.0, 0.0, 1.0]}).cluster(
            self.BLOCKS, cluster_cols=False
        )
        assert result.row_linkage[0, 2] == 0.0
        assert {int(result.row_linkage[0, 0]), int(result.row_linkage[0, 1])} == {0, 1}

    def test_single_row(self):
        result = CovexClusterer().cluster(np.array([[1.0, 2.0, 3.0]]))
        np.testing.assert_array_equal(result.row_order, [0])
        assert result.row_linkage is None

    def test_model_cluster_uses_labels(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=30, shrinkage=0.1, random_state=0).fit(X, Y)
        result = model.cluster("euclidean", "complete")
        frame = result.to_frame()
        assert sorted(frame.index) == ["x1", "x2", "x3", "x4"]
        assert sorted(frame.columns) == ["y1-y1", "y1-y2", "y2-y2"]


# =============================================================================
# Interpretation
# =============================================================================


class TestInterpretation:

    def test_relative_influence_column_scaling(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=60, shrinkage=0.1, interaction_depth=2,
                                      random_state=0).fit(X, Y)
        ri = relative_influence(model, n_trees=60)
        assert ri.shape == (4, 2)
        np.testing.assert_allclose(ri.sum(axis=0), 100.0)
        assert ri["y2"].idxmax() == "x1"

        tot = model.relative_influence(n_trees=60, relative="tot")
        assert tot.to_numpy().sum() == pytest.approx(100.0)

        raw = model.relative_influence(n_trees=60, relative="none")
        np.testing.assert_allclose(
            raw["y1"].to_numpy(),
            sum(rec.improvements for rec in model.ensembles_[0]),
        )

    def test_relative_influence_invalid_mode(self):
        X, Y = make_data(n_samples=40)
        model = MultivariateTreeBoost(n_trees=4, random_state=0).fit(X, Y)
        with pytest.raises(InvalidConfiguration):
            relative_influence(model, relative="row")

    def test_summary_contents(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=20, shrinkage=0.1, train_fraction=0.8,
                                      random_state=0).fit(X, Y)
        out = model.summary()
        assert out["n_trees"] == 20
        assert out["best_iteration"] == out["best_iterations"]["test"]
        assert out["covex"].shape == (4, 3)
        assert list(out["relative_influence"].columns) == ["y1", "y2"]

    def test_departure_from_additivity(self):
        a = np.array([0.0, 1.0, 3.0])
        b = np.array([2.0, -1.0])
        assert departure_from_additivity(np.add.outer(a, b)) == pytest.approx(0.0, abs=1e-12)
        assert departure_from_additivity(np.multiply.outer(a, b)) > 0.1

    def test_nonlinearity_finds_interaction(self):
        rng = np.random.default_rng(3)
        X = rng.uniform(-1, 1, size=(300, 3))
        Y = np.column_stack([
            4 * X[:, 0] * X[:, 1] + 0.05 * rng.standard_normal(300),
            X[:, 2] + 0.05 * rng.standard_normal(300),
        ])
        model = MultivariateTreeBoost(n_trees=300, shrinkage=0.1, interaction_depth=2,
                                      random_state=0).fit(X, Y)

        table = nonlinearity(model, X, n_grid=8, outcomes=[0], top=3)
        assert list(table.columns) == ["outcome", "predictor1", "predictor2", "nonlin_size"]
        top = table.iloc[0]
        assert (top["predictor1"], top["predictor2"]) == ("x1", "x2")
        assert np.all(np.diff(table["nonlin_size"].to_numpy()) <= 0)

    def test_nonlinearity_empty_for_stumps(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=20, shrinkage=0.1, interaction_depth=1,
                                      random_state=0).fit(X, Y)
        assert nonlinearity(model, X).empty

    def test_per_predictor_tree_access(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=20, shrinkage=0.1, random_state=0).fit(X, Y)
        engine = model.prediction_engine()
        rounds = engine.predictor_rounds(0)
        assert rounds == sorted(rounds)
        assert rounds == [r.round_index for r in model.rounds_ if r.predictor == 0 and not r.degenerate]

        contrib = engine.tree_contributions(X, rounds=rounds)
        untouched = [r - 1 for r in range(1, 21) if r not in rounds]
        np.testing.assert_array_equal(contrib[:, untouched], 0.0)


# =============================================================================
# Data handling
# =============================================================================


class TestDataHandling:

    def test_dataframe_with_categorical_and_missing(self):
        rng = np.random.default_rng(0)
        n = 120
        group = rng.choice(["a", "b", "c"], size=n)
        frame = pd.DataFrame({
            "age": rng.uniform(20, 60, n),
            "group": pd.Categorical(group),
            "score": rng.standard_normal(n),
        })
        frame.loc[::10, "score"] = np.nan
        Y = pd.DataFrame({
            "wellbeing": (group == "b") * 2.0 + 0.1 * rng.standard_normal(n),
            "health": frame["age"] / 20 + 0.1 * rng.standard_normal(n),
        })

        model = fit(frame, Y, n_trees=40, shrinkage=0.2, random_state=0)

        assert model.feature_names_ == ["age", "group", "score"]
        assert model.outcome_names_ == ["wellbeing", "health"]
        assert model.relative_influence(n_trees=40)["wellbeing"].idxmax() == "group"

        new = frame.head(3).copy()
        new["group"] = pd.Categorical(["a", "zzz", None])
        pred = model.predict(new, n_trees=40)
        assert pred.shape == (3, 2, 1)
        assert np.all(np.isfinite(pred))

    def test_single_outcome(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=10, shrinkage=0.1, random_state=0).fit(X, Y[:, 0])
        assert model.covex_.shape == (4, 1)
        assert model.predict(X, [5, 10]).shape == (150, 1, 2)

    def test_missing_outcomes_rejected(self):
        X, Y = make_data()
        Y[0, 0] = np.nan
        with pytest.raises(ValueError):
            MultivariateTreeBoost(n_trees=5).fit(X, Y)

    def test_not_fitted(self):
        X, _ = make_data()
        with pytest.raises(NotFittedError):
            MultivariateTreeBoost().predict(X)


# =============================================================================
# Plotting and persistence
# =============================================================================


class TestPlottingAndPersistence:

    def test_plots_return_axes(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=20, shrinkage=0.1, train_fraction=0.8,
                                      random_state=0).fit(X, Y)

        ax = plot_error_curves(model)
        labels = [line.get_label() for line in ax.get_lines()]
        assert "Train" in labels and "Test" in labels

        ax = plot_error_curves(model, outcome=1)
        assert ax.get_title() == "y2"

        ax = plot_covex_heatmap(model)
        assert len(ax.images) == 1
        plt.close("all")

    def test_pickle_round_trip(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=15, shrinkage=0.1, random_state=0).fit(X, Y)
        restored = pickle.loads(pickle.dumps(model))
        np.testing.assert_array_equal(restored.predict(X, 15), model.predict(X, 15))
        np.testing.assert_array_equal(restored.covex_, model.covex_)

    def test_uncompress_lists_trees(self):
        X, Y = make_data()
        model = MultivariateTreeBoost(n_trees=9, random_state=0).fit(X, Y)
        trees = model.uncompress()
        assert list(trees) == ["y1", "y2"]
        assert [len(t) for t in trees.values()] == [5, 4]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
