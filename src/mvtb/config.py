"""
Hyper-parameters for multivariate tree boosting.

All checks that do not depend on the data live in ``BoostingConfig.validate``
so that a bad configuration fails before any tree is grown.
"""

from dataclasses import dataclass, replace
from typing import Optional
import numbers

from .exceptions import InvalidConfiguration


def is_int(value) -> bool:
    """True for integral numbers (Python or NumPy), excluding bools."""
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


@dataclass(frozen=True)
class BoostingConfig:
    """
    Settings steering one multivariate boosting fit.

    Args:
        n_trees: Total number of boosting rounds N. Rounds are shared
            round-robin across outcomes, so each outcome gets about N/Q trees.
        shrinkage: Learning rate ν ∈ (0, 1] applied to every tree.
        interaction_depth: Maximum depth of each tree (bounds interaction order).
        bag_fraction: Fraction of training rows sampled, without replacement,
            for each tree.
        train_fraction: Fraction of rows (taken from the top) used for
            training; the remainder is the held-out test set.
        cv_folds: Number of cross-validation folds. 0 disables CV, 1 is invalid.
        n_workers: Upper bound on concurrent fold workers.
        random_state: Seed for bagging, fold assignment and tree tie-breaking.
        n_minobsinnode: Minimum number of rows in a terminal node.
    """

    n_trees: int = 100
    shrinkage: float = 0.01
    interaction_depth: int = 1
    bag_fraction: float = 1.0
    train_fraction: float = 1.0
    cv_folds: int = 0
    n_workers: int = 1
    random_state: Optional[int] = None
    n_minobsinnode: int = 5

    def validate(self) -> "BoostingConfig":
        """Raise ``InvalidConfiguration`` on the first invalid setting, else return self."""
        if not is_int(self.n_trees) or self.n_trees < 1:
            raise InvalidConfiguration(f"n_trees must be a positive integer, got {self.n_trees!r}")
        if not 0.0 < self.shrinkage <= 1.0:
            raise InvalidConfiguration(f"shrinkage must lie in (0, 1], got {self.shrinkage!r}")
        if not is_int(self.interaction_depth) or self.interaction_depth < 1:
            raise InvalidConfiguration(
                f"interaction_depth must be an integer >= 1, got {self.interaction_depth!r}"
            )
        if not 0.0 < self.bag_fraction <= 1.0:
            raise InvalidConfiguration(f"bag_fraction must lie in (0, 1], got {self.bag_fraction!r}")
        if not 0.0 < self.train_fraction <= 1.0:
            raise InvalidConfiguration(
                f"train_fraction must lie in (0, 1], got {self.train_fraction!r}"
            )
        if not is_int(self.cv_folds) or self.cv_folds < 0 or self.cv_folds == 1:
            raise InvalidConfiguration(
                f"cv_folds must be 0 (disabled) or an integer >= 2, got {self.cv_folds!r}"
            )
        if not is_int(self.n_workers) or self.n_workers < 1:
            raise InvalidConfiguration(f"n_workers must be an integer >= 1, got {self.n_workers!r}")
        if self.random_state is not None and not is_int(self.random_state):
            raise InvalidConfiguration(
                f"random_state must be an integer or None, got {self.random_state!r}"
            )
        if not is_int(self.n_minobsinnode) or self.n_minobsinnode < 1:
            raise InvalidConfiguration(
                f"n_minobsinnode must be an integer >= 1, got {self.n_minobsinnode!r}"
            )
        return self

    @property
    def cross_validate(self) -> bool:
        return self.cv_folds >= 2

    def replace(self, **changes) -> "BoostingConfig":
        """Copy with some fields changed."""
        return replace(self, **changes)
