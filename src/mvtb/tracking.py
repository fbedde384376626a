"""
Error curves and best-iteration selection.

Three sources of error may be tracked for each boosting round: the training
rows, the held-out test rows (``train_fraction < 1``) and the cross-validation
fold mean (``cv_folds >= 2``). When a single best iteration is requested
without naming a source, the first available source in ``SELECTION_ORDER``
wins: out-of-sample error is preferred to in-sample error.
"""

from enum import Enum
from typing import Dict, List, Optional, Union
import numpy as np

from .exceptions import ShapeMismatch
from .utils import mse_per_outcome


class ErrorSource(str, Enum):
    TRAIN = "train"
    TEST = "test"
    CV = "cv"


# Precedence for combined model selection, highest first.
SELECTION_ORDER = (ErrorSource.TEST, ErrorSource.CV, ErrorSource.TRAIN)


class ErrorTracker:
    """
    Per-round mean squared error, per outcome and overall.

    Per-outcome curves have shape (n_rounds, n_outcomes); the overall curve is
    their sum across outcomes, shape (n_rounds,). Curves become read-only
    after ``finalize``.
    """

    def __init__(self, n_outcomes: int):
        self.n_outcomes = n_outcomes
        self._train: List[np.ndarray] = []
        self._test: List[np.ndarray] = []
        self._curves: Dict[ErrorSource, np.ndarray] = {}
        self._finalized = False

    def record(
        self,
        residuals: np.ndarray,
        train_rows: np.ndarray,
        test_rows: Optional[np.ndarray] = None,
    ) -> None:
        """Append one round's train (and test) error computed from residuals."""
        if self._finalized:
            raise RuntimeError("ErrorTracker is finalized; curves can no longer change")
        self._train.append(mse_per_outcome(residuals[train_rows]))
        if test_rows is not None and len(test_rows) > 0:
            self._test.append(mse_per_outcome(residuals[test_rows]))

    def set_cv_curve(self, curve: np.ndarray) -> None:
        """Attach the fold-mean CV error, shape (n_rounds, n_outcomes)."""
        if self._finalized:
            raise RuntimeError("ErrorTracker is finalized; curves can no longer change")
        curve = np.asarray(curve, dtype=float)
        if curve.ndim != 2 or curve.shape[1] != self.n_outcomes:
            raise ShapeMismatch(
                f"CV curve must have shape (n_rounds, {self.n_outcomes}), got {curve.shape}"
            )
        self._curves[ErrorSource.CV] = curve.copy()

    def finalize(self) -> "ErrorTracker":
        if self._finalized:
            return self
        self._curves[ErrorSource.TRAIN] = np.array(self._train).reshape(-1, self.n_outcomes)
        if self._test:
            self._curves[ErrorSource.TEST] = np.array(self._test).reshape(-1, self.n_outcomes)
        n_rounds = len(self._train)
        cv = self._curves.get(ErrorSource.CV)
        if cv is not None and n_rounds and cv.shape[0] != n_rounds:
            raise ShapeMismatch(
                f"CV curve has {cv.shape[0]} rounds, training ran {n_rounds}"
            )
        for curve in self._curves.values():
            curve.setflags(write=False)
        self._train, self._test = [], []
        self._finalized = True
        return self

    # ---------------- queries ----------------

    @property
    def n_rounds(self) -> int:
        if self._finalized:
            return self._curves[ErrorSource.TRAIN].shape[0]
        return len(self._train)

    def latest(self):
        """Overall (train, test) error of the most recent round; test is None when untracked."""
        if not self._train:
            raise RuntimeError("no round has been recorded")
        test = self._test[-1].sum() if self._test else None
        return self._train[-1].sum(), test

    def available(self) -> List[ErrorSource]:
        """Sources with a curve, in selection precedence order."""
        self._require_finalized()
        return [s for s in SELECTION_ORDER if s in self._curves]

    def curve(
        self,
        source: Union[ErrorSource, str] = ErrorSource.TRAIN,
        per_outcome: bool = False,
    ) -> Optional[np.ndarray]:
        """Error curve for a source, or None when it was not tracked."""
        self._require_finalized()
        curve = self._curves.get(ErrorSource(source))
        if curve is None:
            return None
        if per_outcome:
            return curve
        return curve.sum(axis=1)

    def best_iteration(
        self,
        source: Optional[Union[ErrorSource, str]] = None,
        outcome: Optional[int] = None,
    ) -> int:
        """
        1-based round minimising an error curve; ties go to the earliest round.

        Args:
            source: Error source to use. When None, the first available source
                in ``SELECTION_ORDER`` (test, then CV, then train).
            outcome: Restrict to one outcome's curve instead of the overall sum.
        """
        if source is None:
            source = self.available()[0]
        curve = self.curve(source, per_outcome=outcome is not None)
        if curve is None:
            raise ValueError(f"no {ErrorSource(source).value} error was tracked")
        if outcome is not None:
            curve = curve[:, outcome]
        return int(np.argmin(curve)) + 1

    def best_iterations(self) -> Dict[str, int]:
        """Best iteration for every tracked source, keyed by source name."""
        return {s.value: self.best_iteration(s) for s in self.available()}

    def _require_finalized(self) -> None:
        if not self._finalized:
            raise RuntimeError("ErrorTracker must be finalized before querying curves")
