"""
Exception hierarchy for multivariate tree boosting.

Degenerate tree fits are deliberately absent: a tree that collapses to a single
leaf is counted in the fitted model's diagnostics, never raised.
"""


class MVTBError(Exception):
    """Base class for all errors raised by mvtb."""


class ShapeMismatch(MVTBError, ValueError):
    """Row counts disagree, columns are missing, or an iteration count is out of range."""


class InvalidConfiguration(MVTBError, ValueError):
    """A hyper-parameter or method name is invalid. Raised before any fitting work."""


class FoldFailure(MVTBError, RuntimeError):
    """A cross-validation fold worker failed; the whole CV run is aborted."""

    def __init__(self, fold: int, message: str):
        super().__init__(f"cross-validation fold {fold} failed: {message}")
        self.fold = fold
        self.message = message

    def __reduce__(self):
        return (self.__class__, (self.fold, self.message))
